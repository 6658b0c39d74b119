"""
Counterparty Directory

Resolves free-form names ("Mike ", "MIKE") to one canonical counterparty
per user, and answers read-only questions about a counterparty (details,
activity history).

Name matching is exact on the canonical form: whitespace is collapsed and
the name is lower-cased. No fuzzy matching.
"""

from datetime import datetime, time
from typing import Optional

import structlog
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tabkeeper.errors import CounterpartyNotFound
from tabkeeper.models.ledger import (
    ZERO,
    ActivityItem,
    BalanceDirection,
    Counterparty,
    CounterpartyDetails,
    CounterpartyHistory,
    CounterpartyRef,
    DueStatus,
    to_money,
)
from tabkeeper.services.storage.database import Database
from tabkeeper.services.storage.orm import CounterpartyRow, DueRow, MonetaryEventRow


logger = structlog.get_logger(__name__)


def normalize_name(name: str) -> str:
    """Canonical form of a counterparty name: trimmed, single-spaced, lower-case."""
    canonical = " ".join(name.split()).lower()
    if not canonical:
        raise ValueError("Counterparty name cannot be empty")
    return canonical


class CounterpartyDirectory:
    """Lookup and idempotent creation of counterparties."""

    def __init__(self, db: Database):
        self._db = db

    # =========================================================================
    # ROW ACCESS (shared with the settlement processor)
    # =========================================================================

    def find_row(
        self,
        session: Session,
        user_id: str,
        name: str,
        lock: bool = False,
    ) -> Optional[CounterpartyRow]:
        stmt = select(CounterpartyRow).where(
            CounterpartyRow.user_id == user_id,
            CounterpartyRow.name == normalize_name(name),
        )
        if lock:
            stmt = stmt.with_for_update()
        return session.execute(stmt).scalar_one_or_none()

    def require_row(
        self,
        session: Session,
        user_id: str,
        name: str,
        lock: bool = False,
    ) -> CounterpartyRow:
        """
        Like find_row, but a missing counterparty is an error.

        The error carries the user's known names so the caller can suggest one.
        """
        row = self.find_row(session, user_id, name, lock=lock)
        if row is None:
            known = session.scalars(
                select(CounterpartyRow.name)
                .where(CounterpartyRow.user_id == user_id)
                .order_by(CounterpartyRow.name)
            ).all()
            raise CounterpartyNotFound(name.strip(), known_names=list(known))
        return row

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    def get_or_create(
        self,
        user_id: str,
        name: str,
        session: Optional[Session] = None,
    ) -> CounterpartyRef:
        """
        Return the counterparty with this name, creating it if needed.

        Idempotent: concurrent calls with the same name resolve to one row.
        The insert runs in a savepoint; if the unique constraint on
        (user_id, name) rejects it, another writer won and its row is used.
        """
        canonical = normalize_name(name)
        with self._db.session_scope(session) as s:
            row = self.find_row(s, user_id, canonical)
            if row is not None:
                return CounterpartyRef(
                    counterparty=Counterparty.model_validate(row),
                    was_created=False,
                )

            try:
                with s.begin_nested():
                    row = CounterpartyRow(user_id=user_id, name=canonical, balance=ZERO)
                    s.add(row)
            except IntegrityError:
                logger.info("counterparty_create_race", user_id=user_id, name=canonical)
                row = self.find_row(s, user_id, canonical)
                if row is None:
                    raise
                return CounterpartyRef(
                    counterparty=Counterparty.model_validate(row),
                    was_created=False,
                )

            logger.info("counterparty_created", user_id=user_id, counterparty_id=row.id)
            return CounterpartyRef(
                counterparty=Counterparty.model_validate(row),
                was_created=True,
            )

    def find(self, user_id: str, name: str) -> Counterparty:
        """Counterparty by name; raises CounterpartyNotFound."""
        with self._db.transaction() as s:
            return Counterparty.model_validate(self.require_row(s, user_id, name))

    def get(self, user_id: str, counterparty_id: int) -> Counterparty:
        """Counterparty by id; raises CounterpartyNotFound."""
        with self._db.transaction() as s:
            row = s.execute(
                select(CounterpartyRow).where(
                    CounterpartyRow.id == counterparty_id,
                    CounterpartyRow.user_id == user_id,
                )
            ).scalar_one_or_none()
            if row is None:
                raise CounterpartyNotFound(f"contact #{counterparty_id}")
            return Counterparty.model_validate(row)

    def list_counterparties(self, user_id: str, with_balance_only: bool = False) -> list[Counterparty]:
        """All counterparties of a user, alphabetically."""
        stmt = select(CounterpartyRow).where(CounterpartyRow.user_id == user_id)
        with self._db.transaction() as s:
            rows = s.scalars(stmt.order_by(CounterpartyRow.name)).all()
            counterparties = [Counterparty.model_validate(row) for row in rows]
        if with_balance_only:
            counterparties = [c for c in counterparties if c.balance != 0]
        return counterparties

    def details(self, user_id: str, name: str) -> CounterpartyDetails:
        """Balance, direction and pending due count for one counterparty."""
        with self._db.transaction() as s:
            row = self.require_row(s, user_id, name)
            pending = s.scalars(
                select(DueRow.id).where(
                    DueRow.user_id == user_id,
                    DueRow.counterparty_id == row.id,
                    DueRow.status == DueStatus.PENDING.value,
                )
            ).all()
            counterparty = Counterparty.model_validate(row)

        return CounterpartyDetails(
            counterparty=counterparty,
            direction=counterparty.direction,
            pending_dues=len(pending),
        )

    def history(self, user_id: str, name: str) -> CounterpartyHistory:
        """
        Unified activity log for one counterparty, newest first.

        Transactions they paid for count as money "in"; money the user laid
        out for them counts as "out". Dues read "in" when they owe the user.
        Settled dues appear as settlements.
        """
        with self._db.transaction() as s:
            row = self.require_row(s, user_id, name)
            counterparty = Counterparty.model_validate(row)

            dues = s.scalars(
                select(DueRow)
                .where(DueRow.user_id == user_id, DueRow.counterparty_id == row.id)
                .order_by(DueRow.created_at.desc(), DueRow.id.desc())
            ).all()

            linked_event_ids = [d.event_id for d in dues if d.event_id is not None]
            events = s.scalars(
                select(MonetaryEventRow)
                .where(
                    MonetaryEventRow.user_id == user_id,
                    or_(
                        MonetaryEventRow.paid_by_counterparty_id == row.id,
                        MonetaryEventRow.id.in_(linked_event_ids),
                    ),
                )
            ).all()
            events_by_id = {e.id: e for e in events}

            activities: list[ActivityItem] = []
            for event in events:
                they_paid = event.paid_by_counterparty_id == row.id
                activities.append(ActivityItem(
                    id=event.id,
                    type="transaction",
                    occurred_at=event.created_at or datetime.combine(event.event_date, time.min),
                    amount=to_money(event.amount),
                    description=event.description or event.merchant or event.category,
                    category=event.category,
                    direction="in" if they_paid else "out",
                ))

            for due in dues:
                owed_to_user = due.original_amount < 0
                event = events_by_id.get(due.event_id)
                suffix = f" - {event.description}" if event is not None and event.description else ""
                settled = due.status == DueStatus.SETTLED.value
                if settled:
                    description = f"Settlement{suffix}"
                else:
                    description = f"{'They owe you' if owed_to_user else 'You owe'}{suffix}"
                activities.append(ActivityItem(
                    id=due.id,
                    type="settlement" if settled else "due",
                    occurred_at=due.settled_at if settled and due.settled_at else due.created_at,
                    amount=abs(to_money(due.original_amount if settled else due.amount)),
                    description=description,
                    status=due.status,
                    direction="in" if owed_to_user else "out",
                ))

        activities.sort(key=lambda a: (a.occurred_at, a.type, a.id), reverse=True)
        pending_count = sum(1 for d in dues if d.status == DueStatus.PENDING.value)

        return CounterpartyHistory(
            counterparty=counterparty,
            activities=activities,
            total_balance=counterparty.balance,
            transaction_count=len(events),
            pending_dues_count=pending_count,
            direction=BalanceDirection.from_balance(counterparty.balance),
        )
