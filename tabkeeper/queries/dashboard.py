"""
Dashboard Aggregation

DESIGN DECISION: The dashboard is computed from stored data only, in one
read transaction, so every figure on it describes the same moment.

Totals are computed in Python over Decimal values, not with SQL SUM, so the
result does not depend on how the backend stores Numeric columns.
"""

from collections import defaultdict
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

import structlog
from dateutil.relativedelta import relativedelta
from sqlalchemy import select

from tabkeeper.config.settings import LedgerSettings
from tabkeeper.models.dashboard import CategoryTotal, Dashboard, OutstandingBalance
from tabkeeper.models.ledger import ZERO, to_money
from tabkeeper.models.recurring import Occurrence, OccurrenceStatus, ScheduledPayment
from tabkeeper.services.storage.database import Database
from tabkeeper.services.storage.orm import (
    CounterpartyRow,
    MonetaryEventRow,
    OccurrenceRow,
    RecurringRuleRow,
)


logger = structlog.get_logger(__name__)


class DashboardAggregator:
    """
    Builds the per-user dashboard.

    GUARANTEES:
    - Only returns real data from storage
    - Spending counts transactions the user paid for (personal expenses
      and money lent); expenses a counterparty covered are not spending
    """

    def __init__(self, db: Database, settings: Optional[LedgerSettings] = None):
        self._db = db
        self._settings = settings or LedgerSettings()

    def build(self, user_id: str, today: Optional[date] = None) -> Dashboard:
        today = today or date.today()
        period_start = today.replace(day=1)
        period_end = period_start + relativedelta(months=1, days=-1)
        horizon = today + timedelta(days=self._settings.upcoming_window_days)
        outstanding = [s.value for s in OccurrenceStatus.outstanding()]

        with self._db.transaction() as s:
            spending = s.execute(
                select(MonetaryEventRow.category, MonetaryEventRow.amount).where(
                    MonetaryEventRow.user_id == user_id,
                    MonetaryEventRow.paid_by_counterparty_id.is_(None),
                    MonetaryEventRow.event_date >= period_start,
                    MonetaryEventRow.event_date <= period_end,
                )
            ).all()

            counterparties = s.scalars(
                select(CounterpartyRow)
                .where(CounterpartyRow.user_id == user_id)
                .order_by(CounterpartyRow.name)
            ).all()

            scheduled = s.execute(
                select(OccurrenceRow, RecurringRuleRow)
                .join(RecurringRuleRow, RecurringRuleRow.id == OccurrenceRow.rule_id)
                .where(
                    OccurrenceRow.user_id == user_id,
                    OccurrenceRow.status.in_(outstanding),
                    OccurrenceRow.due_date <= horizon,
                )
                .order_by(OccurrenceRow.due_date, OccurrenceRow.id)
            ).all()

            totals: dict[str, Decimal] = defaultdict(lambda: ZERO)
            for category, amount in spending:
                totals[category] += to_money(amount)

            you_owe: list[OutstandingBalance] = []
            owed_to_you: list[OutstandingBalance] = []
            for row in counterparties:
                balance = to_money(row.balance)
                if balance > 0:
                    you_owe.append(OutstandingBalance(counterparty_id=row.id, name=row.name, amount=balance))
                elif balance < 0:
                    owed_to_you.append(OutstandingBalance(counterparty_id=row.id, name=row.name, amount=-balance))

            upcoming: list[ScheduledPayment] = []
            overdue: list[ScheduledPayment] = []
            for occurrence, rule in scheduled:
                payment = ScheduledPayment(
                    occurrence=Occurrence.model_validate(occurrence),
                    rule_name=rule.name,
                    rule_active=rule.active,
                )
                if payment.occurrence.is_overdue_on(today):
                    overdue.append(payment)
                else:
                    upcoming.append(payment)

        # Largest first; ties broken alphabetically for a stable order.
        category_totals = [
            CategoryTotal(category=category, total=total)
            for category, total in sorted(totals.items(), key=lambda kv: (-kv[1], kv[0]))
        ]

        dashboard = Dashboard(
            user_id=user_id,
            period_start=period_start,
            period_end=period_end,
            total_spent_this_month=sum(totals.values(), ZERO),
            top_category=category_totals[0] if category_totals else None,
            category_totals=category_totals,
            you_owe=you_owe,
            owed_to_you=owed_to_you,
            upcoming=upcoming,
            overdue=overdue,
        )
        logger.debug(
            "dashboard_built",
            user_id=user_id,
            upcoming=len(upcoming),
            overdue=len(overdue),
        )
        return dashboard
