"""
Recurring Rule Scheduler

Creates and maintains recurring rules. A rule and its first pending
occurrence are written in one transaction, so a rule never exists without
something to pay.
"""

from datetime import date
from decimal import Decimal
from typing import Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from tabkeeper.config.settings import LedgerSettings
from tabkeeper.errors import InvalidAmountError, RuleNotFound
from tabkeeper.models.ledger import to_money
from tabkeeper.models.recurring import (
    Occurrence,
    OccurrenceStatus,
    RecurrenceKind,
    RecurringRule,
    RuleCreationResult,
)
from tabkeeper.recurring.schedule import first_due_date, normalize_recurrence_day, parse_kind
from tabkeeper.services.storage.database import Database
from tabkeeper.services.storage.orm import OccurrenceRow, RecurringRuleRow


logger = structlog.get_logger(__name__)


def load_rule(
    session: Session,
    user_id: str,
    rule_id: int,
    lock: bool = False,
) -> RecurringRuleRow:
    stmt = select(RecurringRuleRow).where(
        RecurringRuleRow.id == rule_id,
        RecurringRuleRow.user_id == user_id,
    )
    if lock:
        stmt = stmt.with_for_update()
    row = session.execute(stmt).scalar_one_or_none()
    if row is None:
        raise RuleNotFound(f"Reminder {rule_id} not found.")
    return row


class RecurringScheduler:
    """Rule lifecycle: create, list, change amount, deactivate."""

    def __init__(self, db: Database, settings: Optional[LedgerSettings] = None):
        self._db = db
        self._settings = settings or LedgerSettings()

    def _validate_amount(self, amount: Union[Decimal, int, float, str]) -> Decimal:
        try:
            value = to_money(amount)
        except (ArithmeticError, ValueError, TypeError) as e:
            raise InvalidAmountError(f"Not a valid amount: {amount!r}") from e
        if value < 0:
            raise InvalidAmountError("Reminder amount cannot be negative.")
        if value > self._settings.max_transaction_amount:
            raise InvalidAmountError("Reminder amount is above the configured limit.")
        return value

    def create_rule(
        self,
        user_id: str,
        name: str,
        amount: Union[Decimal, int, float, str],
        recurrence_kind: Union[RecurrenceKind, str],
        recurrence_day: Optional[int] = None,
        category: Optional[str] = None,
        today: Optional[date] = None,
    ) -> RuleCreationResult:
        """
        Create a rule and its first pending occurrence.

        Raises:
            InvalidRecurrenceError: unknown cadence or day out of range
            InvalidAmountError: negative amount
        """
        kind = parse_kind(recurrence_kind)
        day = normalize_recurrence_day(
            kind,
            recurrence_day,
            default_weekly_day=self._settings.default_weekly_day,
            default_monthly_day=self._settings.default_monthly_day,
        )
        value = self._validate_amount(amount)
        label = name.strip()
        if not label:
            raise ValueError("Reminder name cannot be empty")

        due = first_due_date(kind, day, today or date.today())

        with self._db.transaction() as s:
            rule = RecurringRuleRow(
                user_id=user_id,
                name=label,
                amount=value,
                category=category or self._settings.default_rule_category,
                recurrence_kind=kind.value,
                recurrence_day=day,
                next_due_date=due,
                active=True,
            )
            s.add(rule)
            s.flush()

            occurrence = OccurrenceRow(
                user_id=user_id,
                rule_id=rule.id,
                due_date=due,
                amount=value,
                status=OccurrenceStatus.PENDING.value,
            )
            s.add(occurrence)
            s.flush()

            result = RuleCreationResult(
                rule=RecurringRule.model_validate(rule),
                first_occurrence=Occurrence.model_validate(occurrence),
            )

        logger.info(
            "rule_created",
            user_id=user_id,
            rule_id=result.rule.id,
            kind=kind.value,
            next_due_date=due.isoformat(),
        )
        return result

    def get_rule(self, user_id: str, rule_id: int) -> RecurringRule:
        with self._db.transaction() as s:
            return RecurringRule.model_validate(load_rule(s, user_id, rule_id))

    def list_rules(self, user_id: str, active_only: bool = True) -> list[RecurringRule]:
        """Rules of a user, soonest due first."""
        stmt = select(RecurringRuleRow).where(RecurringRuleRow.user_id == user_id)
        if active_only:
            stmt = stmt.where(RecurringRuleRow.active.is_(True))
        stmt = stmt.order_by(RecurringRuleRow.next_due_date, RecurringRuleRow.id)

        with self._db.transaction() as s:
            return [RecurringRule.model_validate(row) for row in s.scalars(stmt).all()]

    def deactivate_rule(self, user_id: str, rule_id: int) -> RecurringRule:
        """
        Stop a rule. Existing occurrences are kept; paying one of them no
        longer generates a successor.
        """
        with self._db.transaction() as s:
            rule = load_rule(s, user_id, rule_id, lock=True)
            rule.active = False
            s.flush()
            result = RecurringRule.model_validate(rule)

        logger.info("rule_deactivated", user_id=user_id, rule_id=rule_id)
        return result

    def update_rule_amount(
        self,
        user_id: str,
        rule_id: int,
        amount: Union[Decimal, int, float, str],
    ) -> tuple[RecurringRule, Decimal]:
        """
        Change the amount of future occurrences.

        Occurrences that already exist keep the amount they were created
        with. Returns the updated rule and the previous amount.
        """
        value = self._validate_amount(amount)
        with self._db.transaction() as s:
            rule = load_rule(s, user_id, rule_id, lock=True)
            previous = to_money(rule.amount)
            rule.amount = value
            s.flush()
            result = RecurringRule.model_validate(rule)

        logger.info(
            "rule_amount_updated",
            user_id=user_id,
            rule_id=rule_id,
            old_amount=str(previous),
            new_amount=str(value),
        )
        return result, previous
