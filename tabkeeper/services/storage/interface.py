"""
Storage Interface and Errors

The ledger itself talks to SQLAlchemy sessions handed out by
`tabkeeper.services.storage.database.Database`. The audit trail goes
through the abstract interface below, so audit events can be kept in the
ledger database, shipped elsewhere, or kept in memory for tests.

Storage errors are split by what the caller may do about them:
- StorageTransactionError: transient (lock timeout, dropped connection).
  The transaction was rolled back cleanly, so the command may be retried.
- DuplicateError: a constraint rejected the write. Retrying will not help.
"""

from abc import ABC, abstractmethod
from typing import Optional
from uuid import UUID

from tabkeeper.models.audit import AuditEvent


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    def get_events_by_correlation_id(
        self,
        user_id: str,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events related to one command.

        Returns:
            List of events in chronological order
        """
        pass

    @abstractmethod
    def get_events_by_entity(
        self,
        user_id: str,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Args:
            user_id: Owner of the events
            entity_type: Type of entity (e.g., 'counterparty', 'occurrence')
            entity_id: The entity's ID

        Returns:
            List of events in chronological order
        """
        pass

    @abstractmethod
    def get_recent_events(
        self,
        user_id: str,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events of one user.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""

    retryable = False


class StorageTransactionError(StorageError):
    """Transient failure; the transaction was rolled back and may be retried."""

    retryable = True


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""

    def __init__(self, message: str, constraint: Optional[str] = None):
        super().__init__(message)
        self.constraint = constraint
