"""
Database engine and unit of work.

Every ledger operation runs inside one `Database.transaction()` block: the
due write and its balance adjustment either commit together or not at all.

SQLite specifics: the pysqlite driver is taken out of its implicit
transaction handling and every transaction starts with BEGIN IMMEDIATE,
so concurrent writers queue on the database lock (bounded by the busy
timeout) instead of interleaving. On other back-ends the services take row
locks with SELECT ... FOR UPDATE, which SQLite simply does not render.
"""

from contextlib import contextmanager
from typing import Iterator, Optional

import structlog
from sqlalchemy import create_engine, event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from tabkeeper.config.settings import DatabaseSettings
from tabkeeper.services.storage.interface import (
    DuplicateError,
    StorageError,
    StorageTransactionError,
)
from tabkeeper.services.storage.orm import Base


logger = structlog.get_logger(__name__)


class Database:
    """Owns the engine and hands out transactional sessions."""

    def __init__(
        self,
        url: str,
        echo: bool = False,
        busy_timeout_seconds: float = 30.0,
        pool_pre_ping: bool = True,
    ):
        self.url = url
        self.is_sqlite = url.startswith("sqlite")

        kwargs: dict = dict(echo=echo, pool_pre_ping=pool_pre_ping)
        if self.is_sqlite:
            kwargs["connect_args"] = {
                "check_same_thread": False,
                "timeout": busy_timeout_seconds,
            }
            if make_url(url).database in (None, "", ":memory:"):
                # One shared connection, otherwise each session would get
                # its own empty in-memory database.
                kwargs["poolclass"] = StaticPool
        else:
            kwargs.update(pool_recycle=1800, pool_size=5, max_overflow=10)

        self.engine = create_engine(url, **kwargs)
        if self.is_sqlite:
            self._install_sqlite_hooks()

        self._session_factory = sessionmaker(
            bind=self.engine,
            autoflush=True,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> "Database":
        return cls(
            settings.url,
            echo=settings.echo,
            busy_timeout_seconds=settings.busy_timeout_seconds,
            pool_pre_ping=settings.pool_pre_ping,
        )

    def _install_sqlite_hooks(self) -> None:
        @event.listens_for(self.engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(self.engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    # ------------------------------------------------------------------
    # Schema management
    # ------------------------------------------------------------------
    def create_all(self) -> None:
        """Create all tables if they do not exist."""
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        """Close every pooled connection."""
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Unit of work
    # ------------------------------------------------------------------
    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """
        Run a block in one transaction.

        Commits when the block exits normally; any exception rolls back
        everything written inside the block. Driver errors are translated
        into the storage error hierarchy; domain errors pass through.
        """
        session = self._session_factory()
        try:
            with session.begin():
                yield session
        except IntegrityError as e:
            logger.warning("storage_constraint_violation", error=str(e.orig))
            raise DuplicateError(f"Constraint violation: {e.orig}") from e
        except OperationalError as e:
            logger.warning("storage_transaction_failed", error=str(e.orig))
            raise StorageTransactionError(f"Storage transaction failed: {e.orig}") from e
        except DBAPIError as e:
            if e.connection_invalidated:
                logger.warning("storage_connection_lost", error=str(e.orig))
                raise StorageTransactionError(f"Storage connection lost: {e.orig}") from e
            raise StorageError(f"Storage error: {e.orig}") from e
        except SQLAlchemyError as e:
            raise StorageError(f"Storage error: {e}") from e
        finally:
            session.close()

    @contextmanager
    def session_scope(self, session: Optional[Session] = None) -> Iterator[Session]:
        """
        Join the caller's transaction when one is given, else open a new one.

        Lets an operation be called on its own or composed into a larger
        unit of work (e.g. a due write plus its balance adjustment).
        """
        if session is not None:
            yield session
        else:
            with self.transaction() as new_session:
                yield new_session
