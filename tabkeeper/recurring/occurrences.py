"""
Occurrence Tracker

Lifecycle of individual scheduled payments:

    pending/overdue --mark_paid--> paid --undo_paid--> pending
    pending/overdue --skip-------> skipped
    pending --------mark_overdue-> overdue

Undo eligibility lives in the occurrence's own status: an occurrence can be
undone if and only if it is currently paid. Only one undo step is
supported; paid occurrences further back stay paid.

The successor occurrence is written in a savepoint inside the mark-paid
transaction. Marking paid never fails because of the successor; the worst
case is that an outstanding successor already exists and is reused.
"""

from datetime import date
from typing import Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tabkeeper.errors import NotPaidError, OccurrenceNotFound, OccurrenceNotPayableError
from tabkeeper.models.recurring import (
    MarkPaidResult,
    Occurrence,
    OccurrenceStatus,
    RecurrenceKind,
    RecurringRule,
    ScheduledPayment,
    UndoPaidResult,
)
from tabkeeper.recurring.rules import load_rule
from tabkeeper.recurring.schedule import advance
from tabkeeper.services.storage.database import Database
from tabkeeper.services.storage.orm import OccurrenceRow, RecurringRuleRow


logger = structlog.get_logger(__name__)

_OUTSTANDING = [s.value for s in OccurrenceStatus.outstanding()]


class OccurrenceTracker:
    """Mark paid, undo, skip and sweep occurrences."""

    def __init__(self, db: Database):
        self._db = db

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _load(self, session: Session, user_id: str, occurrence_id: int) -> OccurrenceRow:
        row = session.execute(
            select(OccurrenceRow)
            .where(OccurrenceRow.id == occurrence_id, OccurrenceRow.user_id == user_id)
            .with_for_update()
        ).scalar_one_or_none()
        if row is None:
            raise OccurrenceNotFound(f"Payment {occurrence_id} not found.")
        return row

    def _find_at(self, session: Session, rule_id: int, due_date: date) -> Optional[OccurrenceRow]:
        return session.execute(
            select(OccurrenceRow).where(
                OccurrenceRow.rule_id == rule_id,
                OccurrenceRow.due_date == due_date,
            )
        ).scalar_one_or_none()

    def _generate_next(
        self,
        session: Session,
        rule: RecurringRuleRow,
        current: OccurrenceRow,
    ) -> Optional[OccurrenceRow]:
        """
        Create the occurrence one period after `current`, at the rule's
        current amount, and move the rule's next_due_date to it.

        An outstanding occurrence already on that date is reused. Dates
        already paid or skipped are stepped over, so the result is always
        outstanding. Inactive rules generate nothing.
        """
        if not rule.active:
            logger.info("next_occurrence_skipped_inactive_rule", rule_id=rule.id)
            return None

        kind = RecurrenceKind(rule.recurrence_kind)
        next_date = advance(kind, current.due_date, rule.recurrence_day)
        existing = self._find_at(session, rule.id, next_date)
        while existing is not None and existing.status not in _OUTSTANDING:
            next_date = advance(kind, next_date, rule.recurrence_day)
            existing = self._find_at(session, rule.id, next_date)
        rule.next_due_date = next_date

        if existing is not None:
            return existing

        try:
            with session.begin_nested():
                successor = OccurrenceRow(
                    user_id=rule.user_id,
                    rule_id=rule.id,
                    due_date=next_date,
                    amount=rule.amount,
                    status=OccurrenceStatus.PENDING.value,
                )
                session.add(successor)
        except IntegrityError:
            # A concurrent writer created it first.
            return self._find_at(session, rule.id, next_date)
        return successor

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def mark_paid(
        self,
        user_id: str,
        occurrence_id: int,
        generate_next: bool = False,
        today: Optional[date] = None,
    ) -> MarkPaidResult:
        """
        Mark a pending or overdue occurrence paid.

        With `generate_next` and an active rule, the successor is scheduled
        one period after this occurrence's due date (not after today).

        Raises:
            OccurrenceNotFound: no such occurrence for this user
            OccurrenceNotPayableError: already paid or skipped
        """
        with self._db.transaction() as s:
            occurrence = self._load(s, user_id, occurrence_id)
            if occurrence.status not in _OUTSTANDING:
                raise OccurrenceNotPayableError(
                    f"Payment {occurrence_id} is already {occurrence.status}."
                )

            occurrence.status = OccurrenceStatus.PAID.value
            occurrence.paid_date = today or date.today()

            rule = load_rule(s, user_id, occurrence.rule_id, lock=True)
            successor = self._generate_next(s, rule, occurrence) if generate_next else None
            s.flush()

            result = MarkPaidResult(
                occurrence=Occurrence.model_validate(occurrence),
                next_occurrence=Occurrence.model_validate(successor) if successor else None,
                rule=RecurringRule.model_validate(rule),
            )

        logger.info(
            "occurrence_marked_paid",
            user_id=user_id,
            occurrence_id=occurrence_id,
            next_occurrence_id=result.next_occurrence.id if result.next_occurrence else None,
        )
        return result

    def undo_paid(self, user_id: str, occurrence_id: int) -> UndoPaidResult:
        """
        Revert a paid occurrence to pending.

        Later outstanding occurrences of the same rule are deleted; they can
        only have come from generating the next occurrence on mark-paid.

        Raises:
            OccurrenceNotFound: no such occurrence for this user
            NotPaidError: the occurrence is not currently paid
        """
        with self._db.transaction() as s:
            occurrence = self._load(s, user_id, occurrence_id)
            if occurrence.status != OccurrenceStatus.PAID.value:
                raise NotPaidError(f"Payment {occurrence_id} is not marked as paid.")

            occurrence.status = OccurrenceStatus.PENDING.value
            occurrence.paid_date = None

            rule = load_rule(s, user_id, occurrence.rule_id, lock=True)
            later = s.scalars(
                select(OccurrenceRow).where(
                    OccurrenceRow.user_id == user_id,
                    OccurrenceRow.rule_id == rule.id,
                    OccurrenceRow.status.in_(_OUTSTANDING),
                    OccurrenceRow.due_date > occurrence.due_date,
                )
            ).all()
            deleted_ids = sorted(row.id for row in later)
            for row in later:
                s.delete(row)
            if deleted_ids:
                rule.next_due_date = occurrence.due_date
            s.flush()

            result = UndoPaidResult(
                occurrence=Occurrence.model_validate(occurrence),
                deleted_occurrence_ids=deleted_ids,
                rule=RecurringRule.model_validate(rule),
            )

        logger.info(
            "occurrence_paid_undone",
            user_id=user_id,
            occurrence_id=occurrence_id,
            deleted=deleted_ids,
        )
        return result

    def skip(
        self,
        user_id: str,
        occurrence_id: int,
        generate_next: bool = True,
    ) -> MarkPaidResult:
        """Skip a pending or overdue occurrence, optionally scheduling the next one."""
        with self._db.transaction() as s:
            occurrence = self._load(s, user_id, occurrence_id)
            if occurrence.status not in _OUTSTANDING:
                raise OccurrenceNotPayableError(
                    f"Payment {occurrence_id} is already {occurrence.status}."
                )
            occurrence.status = OccurrenceStatus.SKIPPED.value

            rule = load_rule(s, user_id, occurrence.rule_id, lock=True)
            successor = self._generate_next(s, rule, occurrence) if generate_next else None
            s.flush()

            result = MarkPaidResult(
                occurrence=Occurrence.model_validate(occurrence),
                next_occurrence=Occurrence.model_validate(successor) if successor else None,
                rule=RecurringRule.model_validate(rule),
            )

        logger.info("occurrence_skipped", user_id=user_id, occurrence_id=occurrence_id)
        return result

    def mark_overdue(self, user_id: str, today: Optional[date] = None) -> list[Occurrence]:
        """Flip pending occurrences due before `today` to overdue."""
        cutoff = today or date.today()
        with self._db.transaction() as s:
            rows = s.scalars(
                select(OccurrenceRow)
                .where(
                    OccurrenceRow.user_id == user_id,
                    OccurrenceRow.status == OccurrenceStatus.PENDING.value,
                    OccurrenceRow.due_date < cutoff,
                )
                .order_by(OccurrenceRow.due_date, OccurrenceRow.id)
                .with_for_update()
            ).all()
            for row in rows:
                row.status = OccurrenceStatus.OVERDUE.value
            s.flush()
            result = [Occurrence.model_validate(row) for row in rows]

        if result:
            logger.info("occurrences_marked_overdue", user_id=user_id, count=len(result))
        return result

    # =========================================================================
    # QUERIES
    # =========================================================================

    def list_outstanding(
        self,
        user_id: str,
        rule_id: Optional[int] = None,
        due_before: Optional[date] = None,
    ) -> list[ScheduledPayment]:
        """Pending and overdue occurrences, soonest due first."""
        stmt = (
            select(OccurrenceRow, RecurringRuleRow)
            .join(RecurringRuleRow, RecurringRuleRow.id == OccurrenceRow.rule_id)
            .where(
                OccurrenceRow.user_id == user_id,
                OccurrenceRow.status.in_(_OUTSTANDING),
            )
        )
        if rule_id is not None:
            stmt = stmt.where(OccurrenceRow.rule_id == rule_id)
        if due_before is not None:
            stmt = stmt.where(OccurrenceRow.due_date <= due_before)
        stmt = stmt.order_by(OccurrenceRow.due_date, OccurrenceRow.id)

        with self._db.transaction() as s:
            return [
                ScheduledPayment(
                    occurrence=Occurrence.model_validate(occurrence),
                    rule_name=rule.name,
                    rule_active=rule.active,
                )
                for occurrence, rule in s.execute(stmt).all()
            ]

    def list_occurrences(
        self,
        user_id: str,
        rule_id: Optional[int] = None,
        limit: int = 50,
    ) -> list[Occurrence]:
        """Occurrences in any status, latest due date first."""
        stmt = select(OccurrenceRow).where(OccurrenceRow.user_id == user_id)
        if rule_id is not None:
            stmt = stmt.where(OccurrenceRow.rule_id == rule_id)
        stmt = stmt.order_by(OccurrenceRow.due_date.desc(), OccurrenceRow.id.desc()).limit(limit)

        with self._db.transaction() as s:
            return [Occurrence.model_validate(row) for row in s.scalars(stmt).all()]
