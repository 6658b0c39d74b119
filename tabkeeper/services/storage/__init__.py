"""
Storage Services Package

SQLAlchemy-backed persistence for the ledger, the recurring engine and the
audit trail. Any database SQLAlchemy supports will do; SQLite is the default.
"""

from tabkeeper.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    StorageError,
    StorageTransactionError,
)
from tabkeeper.services.storage.database import Database
from tabkeeper.services.storage.sql_audit import InMemoryAuditStorage, SQLAuditStorage

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    # Exceptions
    "DuplicateError",
    "StorageError",
    "StorageTransactionError",
    # SQL implementation
    "Database",
    "InMemoryAuditStorage",
    "SQLAuditStorage",
]
