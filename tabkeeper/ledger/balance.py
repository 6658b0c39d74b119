"""
Balance Ledger

CRITICAL: This is the only code that writes `counterparties.balance`.

The balance is changed with a single relative UPDATE
(`balance = balance + :delta`) executed in the caller's transaction, never
read-modify-written in Python. Two concurrent commands against the same
counterparty therefore cannot lose each other's update: the database
serializes the two UPDATE statements and both deltas land.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from tabkeeper.errors import CounterpartyNotFound
from tabkeeper.models.ledger import ZERO, DueStatus, ReconciliationResult, to_money
from tabkeeper.services.storage.database import Database
from tabkeeper.services.storage.orm import CounterpartyRow, DueRow


logger = structlog.get_logger(__name__)


class BalanceLedger:
    """Atomic balance updates and balance/dues consistency checks."""

    def __init__(self, db: Database):
        self._db = db

    def adjust_balance(
        self,
        user_id: str,
        counterparty_id: int,
        delta: Decimal,
        session: Optional[Session] = None,
    ) -> Decimal:
        """
        Add `delta` to a counterparty's balance and return the new balance.

        Joins `session` when given so the adjustment commits together with
        the due write that caused it.

        Raises:
            CounterpartyNotFound: no such counterparty for this user
        """
        delta = to_money(delta)
        with self._db.session_scope(session) as s:
            result = s.execute(
                update(CounterpartyRow)
                .where(
                    CounterpartyRow.id == counterparty_id,
                    CounterpartyRow.user_id == user_id,
                )
                .values(
                    balance=CounterpartyRow.balance + delta,
                    updated_at=datetime.utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise CounterpartyNotFound(f"contact #{counterparty_id}")

            row = s.get(CounterpartyRow, counterparty_id, populate_existing=True)
            new_balance = to_money(row.balance)

        logger.debug(
            "balance_adjusted",
            user_id=user_id,
            counterparty_id=counterparty_id,
            delta=str(delta),
            new_balance=str(new_balance),
        )
        return new_balance

    def get_balance(
        self,
        user_id: str,
        counterparty_id: int,
        session: Optional[Session] = None,
    ) -> Decimal:
        with self._db.session_scope(session) as s:
            balance = s.scalar(
                select(CounterpartyRow.balance).where(
                    CounterpartyRow.id == counterparty_id,
                    CounterpartyRow.user_id == user_id,
                )
            )
        if balance is None:
            raise CounterpartyNotFound(f"contact #{counterparty_id}")
        return to_money(balance)

    def pending_total(
        self,
        user_id: str,
        counterparty_id: int,
        session: Optional[Session] = None,
    ) -> Decimal:
        """Sum of the signed amounts of the counterparty's pending dues."""
        with self._db.session_scope(session) as s:
            amounts = s.scalars(
                select(DueRow.amount).where(
                    DueRow.user_id == user_id,
                    DueRow.counterparty_id == counterparty_id,
                    DueRow.status == DueStatus.PENDING.value,
                )
            ).all()
        return sum((to_money(a) for a in amounts), ZERO)

    def reconcile(
        self,
        user_id: str,
        counterparty_id: int,
        correct: bool = False,
    ) -> ReconciliationResult:
        """
        Compare the cached balance with the sum of pending dues.

        With `correct=True` a drifted balance is rewritten to the derived
        value. The pending dues are the source of truth.
        """
        with self._db.transaction() as s:
            row = s.execute(
                select(CounterpartyRow)
                .where(
                    CounterpartyRow.id == counterparty_id,
                    CounterpartyRow.user_id == user_id,
                )
                .with_for_update()
            ).scalar_one_or_none()
            if row is None:
                raise CounterpartyNotFound(f"contact #{counterparty_id}")

            cached = to_money(row.balance)
            derived = self.pending_total(user_id, counterparty_id, session=s)
            corrected = False
            if cached != derived:
                logger.warning(
                    "balance_drift_detected",
                    user_id=user_id,
                    counterparty_id=counterparty_id,
                    cached=str(cached),
                    derived=str(derived),
                )
                if correct:
                    self.adjust_balance(user_id, counterparty_id, derived - cached, session=s)
                    corrected = True

        return ReconciliationResult(
            counterparty_id=counterparty_id,
            cached_balance=cached,
            derived_balance=derived,
            corrected=corrected,
        )
