"""
SQL Audit Storage

Audit events are written to the `audit_events` table of the ledger
database, each in its own short transaction so a failed ledger command
can still leave a trace of why it failed.

Audit events are append-only.
"""

from typing import Optional
from uuid import UUID

from sqlalchemy import select
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tabkeeper.models.audit import AuditEvent, AuditEventType, AuditSeverity
from tabkeeper.services.storage.database import Database
from tabkeeper.services.storage.interface import (
    AuditStorageInterface,
    StorageTransactionError,
)
from tabkeeper.services.storage.orm import AuditEventRow


class SQLAuditStorage(AuditStorageInterface):
    """SQLAlchemy implementation of audit log storage."""

    def __init__(self, db: Database):
        self._db = db

    def _event_to_row(self, event: AuditEvent) -> AuditEventRow:
        """Convert an AuditEvent to a table row."""
        return AuditEventRow(
            event_id=str(event.event_id),
            timestamp=event.timestamp,
            user_id=event.user_id,
            event_type=event.event_type.value,
            severity=event.severity.value,
            entity_type=event.entity_type,
            entity_id=event.entity_id,
            correlation_id=str(event.correlation_id) if event.correlation_id else None,
            description=event.description,
            details=event.details or {},
            error_code=event.error_code,
            error_message=event.error_message,
            is_user_action=event.is_user_action,
        )

    def _row_to_event(self, row: AuditEventRow) -> AuditEvent:
        """Convert a table row to an AuditEvent."""
        return AuditEvent(
            event_id=UUID(row.event_id),
            timestamp=row.timestamp,
            user_id=row.user_id,
            event_type=AuditEventType(row.event_type),
            severity=AuditSeverity(row.severity),
            entity_type=row.entity_type,
            entity_id=row.entity_id,
            correlation_id=UUID(row.correlation_id) if row.correlation_id else None,
            description=row.description,
            details=row.details or {},
            error_code=row.error_code,
            error_message=row.error_message,
            is_user_action=row.is_user_action,
        )

    @retry(
        retry=retry_if_exception_type(StorageTransactionError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        reraise=True,
    )
    def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        with self._db.transaction() as session:
            session.add(self._event_to_row(event))
        return True

    def get_events_by_correlation_id(
        self,
        user_id: str,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """Get the events of one command, in chronological order."""
        with self._db.transaction() as session:
            rows = session.scalars(
                select(AuditEventRow)
                .where(
                    AuditEventRow.user_id == user_id,
                    AuditEventRow.correlation_id == str(correlation_id),
                )
                .order_by(AuditEventRow.timestamp, AuditEventRow.id)
            ).all()
            return [self._row_to_event(row) for row in rows]

    def get_events_by_entity(
        self,
        user_id: str,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """Get events by entity."""
        with self._db.transaction() as session:
            rows = session.scalars(
                select(AuditEventRow)
                .where(
                    AuditEventRow.user_id == user_id,
                    AuditEventRow.entity_type == entity_type,
                    AuditEventRow.entity_id == str(entity_id),
                )
                .order_by(AuditEventRow.timestamp, AuditEventRow.id)
            ).all()
            return [self._row_to_event(row) for row in rows]

    def get_recent_events(
        self,
        user_id: str,
        limit: int = 100,
        event_type: Optional[AuditEventType] = None,
    ) -> list[AuditEvent]:
        """Get recent events (newest first)."""
        stmt = select(AuditEventRow).where(AuditEventRow.user_id == user_id)
        if event_type is not None:
            stmt = stmt.where(AuditEventRow.event_type == event_type.value)
        stmt = stmt.order_by(AuditEventRow.timestamp.desc(), AuditEventRow.id.desc()).limit(limit)

        with self._db.transaction() as session:
            return [self._row_to_event(row) for row in session.scalars(stmt).all()]


class InMemoryAuditStorage(AuditStorageInterface):
    """
    Keeps audit events in a list.

    Used by tests and by callers that run without a persistent audit trail.
    """

    def __init__(self):
        self.events: list[AuditEvent] = []

    def append_event(self, event: AuditEvent) -> bool:
        self.events.append(event)
        return True

    def get_events_by_correlation_id(
        self,
        user_id: str,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        return [
            e for e in self.events
            if e.user_id == user_id and e.correlation_id == correlation_id
        ]

    def get_events_by_entity(
        self,
        user_id: str,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        return [
            e for e in self.events
            if e.user_id == user_id
            and e.entity_type == entity_type
            and e.entity_id == str(entity_id)
        ]

    def get_recent_events(
        self,
        user_id: str,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = [e for e in self.events if e.user_id == user_id]
        return list(reversed(events))[:limit]
