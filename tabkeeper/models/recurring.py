"""
Recurring Obligation Models

A RecurringRule is the template (name, amount, cadence). An Occurrence is
one concrete, payable instance of it. In steady state an active rule has
exactly one outstanding (pending or overdue) occurrence.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class RecurrenceKind(str, Enum):
    """Supported cadences."""
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class OccurrenceStatus(str, Enum):
    """
    Occurrence lifecycle.

    pending -> paid      (mark paid; undoable exactly once, while paid)
    pending -> skipped
    pending -> overdue   (overdue sweep; still payable)
    """
    PENDING = "pending"
    PAID = "paid"
    SKIPPED = "skipped"
    OVERDUE = "overdue"

    @classmethod
    def outstanding(cls) -> tuple["OccurrenceStatus", ...]:
        """Statuses that still need the user's attention."""
        return (cls.PENDING, cls.OVERDUE)


class RecurringRule(BaseModel):
    """
    A repeating obligation.

    `recurrence_day` is a weekday index for weekly rules (0=Sunday .. 6=Saturday)
    and a day of month (1-31) for monthly rules; None otherwise.
    """
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    name: str
    amount: Decimal = Field(..., ge=0)
    category: Optional[str] = None
    recurrence_kind: RecurrenceKind
    recurrence_day: Optional[int] = None
    next_due_date: date
    active: bool = True
    created_at: Optional[datetime] = None


class Occurrence(BaseModel):
    """
    One scheduled payment of a rule.

    `amount` is copied from the rule when the occurrence is created and is
    never re-read from the rule afterwards.
    """
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    rule_id: int
    due_date: date
    amount: Decimal = Field(..., ge=0)
    status: OccurrenceStatus
    paid_date: Optional[date] = None
    created_at: Optional[datetime] = None

    @property
    def can_undo(self) -> bool:
        """Undo is available if and only if the occurrence is currently paid."""
        return self.status == OccurrenceStatus.PAID

    def is_overdue_on(self, today: date) -> bool:
        return self.status in OccurrenceStatus.outstanding() and self.due_date < today


class RuleCreationResult(BaseModel):
    """A new rule together with its first pending occurrence."""

    rule: RecurringRule
    first_occurrence: Occurrence


class MarkPaidResult(BaseModel):
    """The paid occurrence, and the generated next one if any."""

    occurrence: Occurrence
    next_occurrence: Optional[Occurrence] = None
    rule: RecurringRule


class UndoPaidResult(BaseModel):
    """The reverted occurrence and the ids of later occurrences that were removed."""

    occurrence: Occurrence
    deleted_occurrence_ids: list[int] = Field(default_factory=list)
    rule: RecurringRule


class ScheduledPayment(BaseModel):
    """An outstanding occurrence joined with its rule's name (for listings)."""

    occurrence: Occurrence
    rule_name: str
    rule_active: bool
