"""
Ledger Data Models

Read models for counterparties, monetary events and dues, plus the result
objects returned by ledger operations. They are built from ORM rows
(`from_attributes=True`); the storage layer is the only writer.

SIGN CONVENTION (used by balances and dues alike):
    positive  -> the user owes the counterparty
    negative  -> the counterparty owes the user
    zero      -> settled

CRITICAL: a counterparty's balance equals the sum of the signed amounts of
its pending dues. The balance is a cached projection of the dues.
"""

from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


MONEY_QUANTUM = Decimal("0.01")
ZERO = Decimal("0.00")


def to_money(value: Union[Decimal, int, float, str]) -> Decimal:
    """Quantize a value to cents (floats go through str to avoid binary noise)."""
    if isinstance(value, float):
        value = str(value)
    return Decimal(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def format_money(amount: Decimal, currency_symbol: str = "$") -> str:
    return f"{currency_symbol}{abs(amount):,.2f}"


# =============================================================================
# ENUMS
# =============================================================================

class DueStatus(str, Enum):
    """Lifecycle of a due. Only settlement moves it."""
    PENDING = "pending"
    SETTLED = "settled"


class BalanceDirection(str, Enum):
    """Which way money is owed for a counterparty."""
    YOU_OWE = "you_owe"
    THEY_OWE = "they_owe"
    SETTLED = "settled"

    @classmethod
    def from_balance(cls, balance: Decimal) -> "BalanceDirection":
        if balance > 0:
            return cls.YOU_OWE
        if balance < 0:
            return cls.THEY_OWE
        return cls.SETTLED


# =============================================================================
# ENTITIES
# =============================================================================

class Counterparty(BaseModel):
    """
    A person the user transacts with.

    `name` is the canonical (trimmed, lower-cased) form used for
    deduplication. Counterparties are never hard-deleted.
    """
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    relationship: Optional[str] = None
    notes: Optional[str] = None
    balance: Decimal = ZERO
    created_at: Optional[datetime] = None

    @property
    def direction(self) -> BalanceDirection:
        return BalanceDirection.from_balance(self.balance)

    def describe_balance(self, currency_symbol: str = "$") -> str:
        """One-line, human-readable balance ("mike owes you $30.00")."""
        amount = format_money(self.balance, currency_symbol)
        if self.direction == BalanceDirection.YOU_OWE:
            return f"You owe {self.name} {amount}"
        if self.direction == BalanceDirection.THEY_OWE:
            return f"{self.name} owes you {amount}"
        return f"You and {self.name} are square"


class MonetaryEvent(BaseModel):
    """
    A spend event ("transaction"). Immutable once created.

    `paid_by_counterparty_id` is None when the user paid.
    """
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    amount: Decimal = Field(..., gt=0)
    category: str
    merchant: Optional[str] = None
    description: Optional[str] = None
    event_date: date
    paid_by_counterparty_id: Optional[int] = None
    created_at: Optional[datetime] = None

    @property
    def paid_by_user(self) -> bool:
        return self.paid_by_counterparty_id is None


class Due(BaseModel):
    """
    A signed, settlable obligation between the user and one counterparty.

    `amount` shrinks toward zero on partial settlement; `original_amount`
    keeps the amount the due was created with.
    """
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: str
    counterparty_id: int
    event_id: Optional[int] = None
    amount: Decimal
    original_amount: Decimal
    status: DueStatus
    created_at: Optional[datetime] = None
    settled_at: Optional[datetime] = None

    @property
    def owed_to_user(self) -> bool:
        """True when the counterparty owes the user on this due."""
        return self.original_amount < 0

    @property
    def is_pending(self) -> bool:
        return self.status == DueStatus.PENDING


# =============================================================================
# OPERATION RESULTS
# =============================================================================

class CounterpartyRef(BaseModel):
    """Result of get-or-create; `was_created` is explicit, never inferred."""

    counterparty: Counterparty
    was_created: bool


class LedgerEntryResult(BaseModel):
    """Result of recording an expense someone else paid, or a lending."""

    counterparty: Counterparty
    was_created: bool
    transaction: MonetaryEvent
    due: Due
    previous_balance: Decimal
    new_balance: Decimal


class SettlementResult(BaseModel):
    """Result of receiving a payment or settling dues with a counterparty."""

    counterparty: Counterparty
    settled_amount: Decimal
    previous_balance: Decimal
    new_balance: Decimal
    touched_dues: list[Due] = Field(default_factory=list)

    @property
    def fully_settled(self) -> bool:
        return self.new_balance == 0


class DueSettlementResult(BaseModel):
    """Result of settling a single due (fully or partially)."""

    due: Due
    reduction: Decimal
    new_balance: Decimal


class ReconciliationResult(BaseModel):
    """Cached balance versus the balance derived from pending dues."""

    counterparty_id: int
    cached_balance: Decimal
    derived_balance: Decimal
    corrected: bool = False

    @property
    def drift(self) -> Decimal:
        return self.cached_balance - self.derived_balance

    @property
    def consistent(self) -> bool:
        return self.drift == 0


class CounterpartyDetails(BaseModel):
    """Counterparty lookup result (balance direction plus pending due count)."""

    counterparty: Counterparty
    direction: BalanceDirection
    pending_dues: int


class ActivityItem(BaseModel):
    """One line of a counterparty's activity history."""

    id: int
    type: Literal["transaction", "due", "settlement"]
    occurred_at: datetime
    amount: Decimal
    description: str
    category: Optional[str] = None
    status: Optional[str] = None
    direction: Literal["in", "out"]


class CounterpartyHistory(BaseModel):
    """Unified, newest-first activity log with a balance summary."""

    counterparty: Counterparty
    activities: list[ActivityItem] = Field(default_factory=list)
    total_balance: Decimal
    transaction_count: int
    pending_dues_count: int
    direction: BalanceDirection
