"""Read-only rollup models for the dashboard."""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field

from tabkeeper.models.recurring import ScheduledPayment


class OutstandingBalance(BaseModel):
    counterparty_id: int
    name: str
    amount: Decimal = Field(..., ge=0, description="Magnitude of the balance")


class CategoryTotal(BaseModel):
    category: str
    total: Decimal


class Dashboard(BaseModel):
    """
    Summary of one user's money.

    All amounts are positive magnitudes; the list a balance sits in says
    which way it is owed.
    """

    user_id: str
    generated_at: datetime = Field(default_factory=datetime.utcnow)
    period_start: date
    period_end: date

    total_spent_this_month: Decimal
    top_category: Optional[CategoryTotal] = None
    category_totals: list[CategoryTotal] = Field(default_factory=list)

    you_owe: list[OutstandingBalance] = Field(default_factory=list)
    owed_to_you: list[OutstandingBalance] = Field(default_factory=list)

    upcoming: list[ScheduledPayment] = Field(default_factory=list)
    overdue: list[ScheduledPayment] = Field(default_factory=list)

    @property
    def total_you_owe(self) -> Decimal:
        return sum((b.amount for b in self.you_owe), Decimal("0.00"))

    @property
    def total_owed_to_you(self) -> Decimal:
        return sum((b.amount for b in self.owed_to_you), Decimal("0.00"))
