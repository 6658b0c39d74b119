"""
Audit Models for tabkeeper

Every ledger and reminder change is recorded as an audit event. The trail
lets a user (or a support engineer) reconstruct how a balance got where it
is, one command at a time.

Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every write operation of the ledger and the reminder engine has its own
    event type.
    """
    # Counterparties
    COUNTERPARTY_CREATED = "counterparty_created"

    # Ledger writes
    EXPENSE_RECORDED = "expense_recorded"
    LENDING_RECORDED = "lending_recorded"
    PERSONAL_EXPENSE_RECORDED = "personal_expense_recorded"
    PAYMENT_RECEIVED = "payment_received"
    DUES_SETTLED = "dues_settled"
    DUE_SETTLED = "due_settled"
    BALANCE_RECONCILED = "balance_reconciled"

    # Recurring rules
    RULE_CREATED = "rule_created"
    RULE_DEACTIVATED = "rule_deactivated"
    RULE_AMOUNT_UPDATED = "rule_amount_updated"

    # Occurrences
    OCCURRENCE_PAID = "occurrence_paid"
    OCCURRENCE_PAID_UNDONE = "occurrence_paid_undone"
    OCCURRENCE_SKIPPED = "occurrence_skipped"
    OCCURRENCES_OVERDUE = "occurrences_overdue"

    # Command handling
    COMMAND_REJECTED = "command_rejected"

    # System events
    STORAGE_ERROR = "storage_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Owner - audit events are never shared across users
    user_id: Optional[str] = Field(
        default=None,
        description="User the event belongs to (None for system-wide events)"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'counterparty', 'due', 'rule', 'occurrence')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events of one chat turn)"
    )

    # Event details
    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    # Additional data (event-specific)
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    # User action tracking
    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by a user command?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "user_id": self.user_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


def _money(amount: Decimal) -> str:
    return f"{amount:.2f}"


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.lending_recorded(user_id, due_id, "mike", amount, balance)
        event = AuditEventBuilder.occurrence_paid(user_id, occurrence_id, rule_name, None)
    """

    @staticmethod
    def counterparty_created(
        user_id: str,
        counterparty_id: int,
        name: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COUNTERPARTY_CREATED,
            user_id=user_id,
            entity_type="counterparty",
            entity_id=str(counterparty_id),
            correlation_id=correlation_id,
            description=f"New contact created: {name}",
            details={"name": name},
            is_user_action=True,
        )

    @staticmethod
    def expense_recorded(
        user_id: str,
        due_id: int,
        counterparty_name: str,
        amount: Decimal,
        new_balance: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.EXPENSE_RECORDED,
            user_id=user_id,
            entity_type="due",
            entity_id=str(due_id),
            correlation_id=correlation_id,
            description=f"{counterparty_name} paid {_money(amount)} - you owe",
            details={
                "counterparty": counterparty_name,
                "amount": _money(amount),
                "new_balance": _money(new_balance),
            },
            is_user_action=True,
        )

    @staticmethod
    def lending_recorded(
        user_id: str,
        due_id: int,
        counterparty_name: str,
        amount: Decimal,
        new_balance: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.LENDING_RECORDED,
            user_id=user_id,
            entity_type="due",
            entity_id=str(due_id),
            correlation_id=correlation_id,
            description=f"Lent {_money(amount)} to {counterparty_name}",
            details={
                "counterparty": counterparty_name,
                "amount": _money(amount),
                "new_balance": _money(new_balance),
            },
            is_user_action=True,
        )

    @staticmethod
    def personal_expense_recorded(
        user_id: str,
        event_id: int,
        category: str,
        amount: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PERSONAL_EXPENSE_RECORDED,
            user_id=user_id,
            entity_type="monetary_event",
            entity_id=str(event_id),
            correlation_id=correlation_id,
            description=f"Spent {_money(amount)} on {category}",
            details={"category": category, "amount": _money(amount)},
            is_user_action=True,
        )

    @staticmethod
    def payment_received(
        user_id: str,
        counterparty_id: int,
        counterparty_name: str,
        settled_amount: Decimal,
        new_balance: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.PAYMENT_RECEIVED,
            user_id=user_id,
            entity_type="counterparty",
            entity_id=str(counterparty_id),
            correlation_id=correlation_id,
            description=f"Received {_money(settled_amount)} from {counterparty_name}",
            details={
                "settled_amount": _money(settled_amount),
                "new_balance": _money(new_balance),
            },
            is_user_action=True,
        )

    @staticmethod
    def dues_settled(
        user_id: str,
        counterparty_id: int,
        counterparty_name: str,
        settled_amount: Decimal,
        new_balance: Decimal,
        due_ids: list[int],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DUES_SETTLED,
            user_id=user_id,
            entity_type="counterparty",
            entity_id=str(counterparty_id),
            correlation_id=correlation_id,
            description=f"Settled {_money(settled_amount)} with {counterparty_name}",
            details={
                "settled_amount": _money(settled_amount),
                "new_balance": _money(new_balance),
                "due_ids": due_ids,
            },
            is_user_action=True,
        )

    @staticmethod
    def due_settled(
        user_id: str,
        due_id: int,
        reduction: Decimal,
        remaining: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.DUE_SETTLED,
            user_id=user_id,
            entity_type="due",
            entity_id=str(due_id),
            correlation_id=correlation_id,
            description=f"Due {due_id} reduced by {_money(reduction)}",
            details={
                "reduction": _money(reduction),
                "remaining": _money(remaining),
            },
            is_user_action=True,
        )

    @staticmethod
    def balance_reconciled(
        user_id: str,
        counterparty_id: int,
        cached_balance: Decimal,
        derived_balance: Decimal,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.BALANCE_RECONCILED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="counterparty",
            entity_id=str(counterparty_id),
            description="Cached balance corrected from pending dues",
            details={
                "cached_balance": _money(cached_balance),
                "derived_balance": _money(derived_balance),
            },
        )

    @staticmethod
    def rule_created(
        user_id: str,
        rule_id: int,
        name: str,
        amount: Decimal,
        recurrence_kind: str,
        next_due_date: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RULE_CREATED,
            user_id=user_id,
            entity_type="rule",
            entity_id=str(rule_id),
            correlation_id=correlation_id,
            description=f"Reminder added: {name} - {_money(amount)} {recurrence_kind}, next due {next_due_date}",
            details={
                "name": name,
                "amount": _money(amount),
                "recurrence_kind": recurrence_kind,
                "next_due_date": next_due_date,
            },
            is_user_action=True,
        )

    @staticmethod
    def rule_deactivated(
        user_id: str,
        rule_id: int,
        name: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RULE_DEACTIVATED,
            user_id=user_id,
            entity_type="rule",
            entity_id=str(rule_id),
            correlation_id=correlation_id,
            description=f"Reminder stopped: {name}",
            details={"name": name},
            is_user_action=True,
        )

    @staticmethod
    def rule_amount_updated(
        user_id: str,
        rule_id: int,
        old_amount: Decimal,
        new_amount: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RULE_AMOUNT_UPDATED,
            user_id=user_id,
            entity_type="rule",
            entity_id=str(rule_id),
            correlation_id=correlation_id,
            description=f"Reminder amount changed from {_money(old_amount)} to {_money(new_amount)}",
            details={"old_amount": _money(old_amount), "new_amount": _money(new_amount)},
            is_user_action=True,
        )

    @staticmethod
    def occurrence_paid(
        user_id: str,
        occurrence_id: int,
        rule_name: str,
        next_occurrence_id: Optional[int],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.OCCURRENCE_PAID,
            user_id=user_id,
            entity_type="occurrence",
            entity_id=str(occurrence_id),
            correlation_id=correlation_id,
            description=f"Marked {rule_name} as paid",
            details={"next_occurrence_id": next_occurrence_id},
            is_user_action=True,
        )

    @staticmethod
    def occurrence_paid_undone(
        user_id: str,
        occurrence_id: int,
        deleted_occurrence_ids: list[int],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.OCCURRENCE_PAID_UNDONE,
            user_id=user_id,
            entity_type="occurrence",
            entity_id=str(occurrence_id),
            correlation_id=correlation_id,
            description="Payment undone",
            details={"deleted_occurrence_ids": deleted_occurrence_ids},
            is_user_action=True,
        )

    @staticmethod
    def occurrence_skipped(
        user_id: str,
        occurrence_id: int,
        next_occurrence_id: Optional[int],
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.OCCURRENCE_SKIPPED,
            user_id=user_id,
            entity_type="occurrence",
            entity_id=str(occurrence_id),
            correlation_id=correlation_id,
            description="Occurrence skipped",
            details={"next_occurrence_id": next_occurrence_id},
            is_user_action=True,
        )

    @staticmethod
    def occurrences_overdue(
        user_id: str,
        occurrence_ids: list[int],
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.OCCURRENCES_OVERDUE,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="occurrence",
            description=f"{len(occurrence_ids)} payment(s) became overdue",
            details={"occurrence_ids": occurrence_ids},
        )

    @staticmethod
    def command_rejected(
        user_id: Optional[str],
        command_kind: str,
        error_code: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.COMMAND_REJECTED,
            severity=AuditSeverity.WARNING,
            user_id=user_id,
            entity_type="command",
            correlation_id=correlation_id,
            description=f"Command {command_kind} rejected: {error_code}",
            error_code=error_code,
            error_message=error_message,
            details={"command_kind": command_kind},
            is_user_action=True,
        )

    @staticmethod
    def storage_error(
        user_id: Optional[str],
        command_kind: str,
        error_message: str,
        retryable: bool,
        correlation_id: Optional[UUID] = None,
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.STORAGE_ERROR,
            severity=AuditSeverity.ERROR,
            user_id=user_id,
            entity_type="command",
            correlation_id=correlation_id,
            description=f"Storage failure while running {command_kind}",
            error_message=error_message,
            details={"command_kind": command_kind, "retryable": retryable},
        )
