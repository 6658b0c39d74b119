"""
Settlement Processor

Records money moving between the user and a counterparty, and settles it.

DESIGN DECISION: Every operation here is one transaction that writes the
dues and adjusts the cached balance by exactly the net signed change it
made to pending dues. That keeps the ledger invariant

    counterparty.balance == sum(amount of its pending dues)

true after every committed operation. Domain errors raised mid-way roll
the whole transaction back.

Settlement order is always oldest first (created_at, then id).
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional, Union

import structlog
from sqlalchemy import select
from sqlalchemy.orm import Session

from tabkeeper.config.settings import LedgerSettings
from tabkeeper.errors import (
    DueNotFound,
    InvalidAmountError,
    NoPendingDuesError,
    NothingOwedError,
)
from tabkeeper.ledger.balance import BalanceLedger
from tabkeeper.ledger.counterparties import CounterpartyDirectory
from tabkeeper.models.ledger import (
    ZERO,
    Counterparty,
    Due,
    DueSettlementResult,
    DueStatus,
    LedgerEntryResult,
    MonetaryEvent,
    SettlementResult,
    format_money,
    to_money,
)
from tabkeeper.services.storage.database import Database
from tabkeeper.services.storage.orm import CounterpartyRow, DueRow, MonetaryEventRow


logger = structlog.get_logger(__name__)

Amount = Union[Decimal, int, float, str]


class SettlementProcessor:
    """Write side of the ledger: expenses, lendings, payments and settlements."""

    def __init__(
        self,
        db: Database,
        ledger: BalanceLedger,
        directory: CounterpartyDirectory,
        settings: Optional[LedgerSettings] = None,
    ):
        self._db = db
        self._ledger = ledger
        self._directory = directory
        self._settings = settings or LedgerSettings()

    # =========================================================================
    # HELPERS
    # =========================================================================

    def _validate_amount(self, amount: Amount) -> Decimal:
        try:
            value = to_money(amount)
        except (ArithmeticError, ValueError, TypeError) as e:
            raise InvalidAmountError(f"Not a valid amount: {amount!r}") from e
        if value <= 0:
            raise InvalidAmountError("Amount must be greater than zero.")
        if value > self._settings.max_transaction_amount:
            raise InvalidAmountError(
                f"Amount {self._money(value)} is above the limit of "
                f"{self._money(self._settings.max_transaction_amount)}."
            )
        return value

    def _money(self, amount: Decimal) -> str:
        return format_money(amount, self._settings.currency_symbol)

    def _describe(self, row: CounterpartyRow) -> str:
        return Counterparty.model_validate(row).describe_balance(self._settings.currency_symbol)

    def _pending_dues(
        self,
        session: Session,
        user_id: str,
        counterparty_id: int,
    ) -> list[DueRow]:
        """Pending dues of one counterparty, oldest first, locked for update."""
        return list(session.scalars(
            select(DueRow)
            .where(
                DueRow.user_id == user_id,
                DueRow.counterparty_id == counterparty_id,
                DueRow.status == DueStatus.PENDING.value,
            )
            .order_by(DueRow.created_at, DueRow.id)
            .with_for_update()
        ).all())

    @staticmethod
    def _reduce_due(due: DueRow, reduction: Decimal, now: datetime) -> Decimal:
        """
        Move a due `reduction` closer to zero; return the signed change made.

        The due is settled when its amount reaches zero.
        """
        amount = to_money(due.amount)
        sign = 1 if amount > 0 else -1
        remaining = abs(amount) - reduction
        due.amount = sign * remaining
        if remaining == 0:
            due.status = DueStatus.SETTLED.value
            due.settled_at = now
        return -sign * reduction

    def _settle_oldest_first(
        self,
        dues: list[DueRow],
        total: Decimal,
        now: datetime,
    ) -> tuple[Decimal, list[DueRow]]:
        """
        Spread `total` over `dues` in order.

        Returns the amount actually applied and the dues that were touched.
        """
        remaining = total
        touched: list[DueRow] = []
        for due in dues:
            if remaining == 0:
                break
            take = min(abs(to_money(due.amount)), remaining)
            if take == 0:
                continue
            self._reduce_due(due, take, now)
            touched.append(due)
            remaining -= take
        return total - remaining, touched

    def _net_off_if_square(
        self,
        session: Session,
        user_id: str,
        counterparty_id: int,
        new_balance: Decimal,
        now: datetime,
    ) -> list[DueRow]:
        """
        Close the remaining pending dues once the balance is exactly zero.

        Dues in opposite directions that cancel out (e.g. +50 and -50) are
        settled together; their sum is zero so the balance does not move.
        """
        if new_balance != 0:
            return []
        dues = self._pending_dues(session, user_id, counterparty_id)
        if not dues:
            return []
        if sum((to_money(d.amount) for d in dues), ZERO) != 0:
            logger.warning(
                "netting_skipped_balance_drift",
                user_id=user_id,
                counterparty_id=counterparty_id,
            )
            return []
        for due in dues:
            due.amount = ZERO
            due.status = DueStatus.SETTLED.value
            due.settled_at = now
        return dues

    def _record_due(
        self,
        user_id: str,
        counterparty_name: str,
        signed_amount: Decimal,
        category: str,
        description: Optional[str],
        merchant: Optional[str],
        event_date: Optional[date],
        paid_by_counterparty: bool,
    ) -> LedgerEntryResult:
        with self._db.transaction() as s:
            ref = self._directory.get_or_create(user_id, counterparty_name, session=s)
            cp_id = ref.counterparty.id
            row = s.execute(
                select(CounterpartyRow)
                .where(CounterpartyRow.id == cp_id, CounterpartyRow.user_id == user_id)
                .with_for_update()
            ).scalar_one()
            previous = to_money(row.balance)

            event = MonetaryEventRow(
                user_id=user_id,
                amount=abs(signed_amount),
                category=category,
                merchant=merchant,
                description=description,
                event_date=event_date or date.today(),
                paid_by_counterparty_id=cp_id if paid_by_counterparty else None,
            )
            s.add(event)
            s.flush()

            due = DueRow(
                user_id=user_id,
                counterparty_id=cp_id,
                event_id=event.id,
                amount=signed_amount,
                original_amount=signed_amount,
                status=DueStatus.PENDING.value,
            )
            s.add(due)
            s.flush()

            new_balance = self._ledger.adjust_balance(user_id, cp_id, signed_amount, session=s)

            result = LedgerEntryResult(
                counterparty=Counterparty.model_validate(row),
                was_created=ref.was_created,
                transaction=MonetaryEvent.model_validate(event),
                due=Due.model_validate(due),
                previous_balance=previous,
                new_balance=new_balance,
            )

        logger.info(
            "due_recorded",
            user_id=user_id,
            counterparty_id=cp_id,
            due_id=result.due.id,
            amount=str(signed_amount),
            new_balance=str(new_balance),
        )
        return result

    # =========================================================================
    # RECORDING
    # =========================================================================

    def record_expense_paid_by_counterparty(
        self,
        user_id: str,
        counterparty_name: str,
        amount: Amount,
        category: str,
        description: Optional[str] = None,
        merchant: Optional[str] = None,
        event_date: Optional[date] = None,
    ) -> LedgerEntryResult:
        """
        The counterparty paid for something on the user's behalf.

        Creates the counterparty if needed, a transaction paid by them and a
        positive due. The balance moves up by `amount` (user owes more).
        """
        value = self._validate_amount(amount)
        return self._record_due(
            user_id,
            counterparty_name,
            value,
            category=category,
            description=description,
            merchant=merchant,
            event_date=event_date,
            paid_by_counterparty=True,
        )

    def record_lending(
        self,
        user_id: str,
        counterparty_name: str,
        amount: Amount,
        category: Optional[str] = None,
        description: Optional[str] = None,
        merchant: Optional[str] = None,
        event_date: Optional[date] = None,
    ) -> LedgerEntryResult:
        """
        The user lent money to (or paid for) the counterparty.

        Creates a transaction paid by the user and a negative due. The
        balance moves down by `amount` (they owe the user more).
        """
        value = self._validate_amount(amount)
        return self._record_due(
            user_id,
            counterparty_name,
            -value,
            category=category or self._settings.lending_category,
            description=description or f"Lent to {counterparty_name.strip()}",
            merchant=merchant,
            event_date=event_date,
            paid_by_counterparty=False,
        )

    def record_personal_expense(
        self,
        user_id: str,
        amount: Amount,
        category: str,
        description: Optional[str] = None,
        merchant: Optional[str] = None,
        event_date: Optional[date] = None,
    ) -> MonetaryEvent:
        """The user paid for themselves. No due, no balance change."""
        value = self._validate_amount(amount)
        with self._db.transaction() as s:
            event = MonetaryEventRow(
                user_id=user_id,
                amount=value,
                category=category,
                merchant=merchant,
                description=description,
                event_date=event_date or date.today(),
                paid_by_counterparty_id=None,
            )
            s.add(event)
            s.flush()
            result = MonetaryEvent.model_validate(event)

        logger.info("personal_expense_recorded", user_id=user_id, event_id=result.id)
        return result

    # =========================================================================
    # SETTLING
    # =========================================================================

    def receive_payment(
        self,
        user_id: str,
        counterparty_name: str,
        amount: Optional[Amount] = None,
    ) -> SettlementResult:
        """
        The counterparty paid the user back.

        Omitting `amount` means "everything they owe". A payment larger than
        what they owe is clamped to what they owe. The settled amount is
        taken off their dues oldest first.

        Raises:
            CounterpartyNotFound: unknown name
            NothingOwedError: the counterparty owes the user nothing
        """
        requested = None if amount is None else self._validate_amount(amount)
        now = datetime.utcnow()

        with self._db.transaction() as s:
            row = self._directory.require_row(s, user_id, counterparty_name, lock=True)
            previous = to_money(row.balance)
            if previous >= 0:
                raise NothingOwedError(f"{row.name} doesn't owe you anything. {self._describe(row)}.")

            owed = -previous
            to_settle = owed if requested is None else min(requested, owed)

            owed_to_user = [
                d for d in self._pending_dues(s, user_id, row.id)
                if to_money(d.amount) < 0
            ]
            settled, touched = self._settle_oldest_first(owed_to_user, to_settle, now)
            if settled != to_settle:
                logger.warning(
                    "payment_exceeds_pending_dues",
                    user_id=user_id,
                    counterparty_id=row.id,
                    requested=str(to_settle),
                    settled=str(settled),
                )

            new_balance = self._ledger.adjust_balance(user_id, row.id, settled, session=s)
            touched += self._net_off_if_square(s, user_id, row.id, new_balance, now)

            result = SettlementResult(
                counterparty=Counterparty.model_validate(row),
                settled_amount=settled,
                previous_balance=previous,
                new_balance=new_balance,
                touched_dues=[Due.model_validate(d) for d in touched],
            )

        logger.info(
            "payment_received",
            user_id=user_id,
            counterparty_id=result.counterparty.id,
            settled=str(settled),
            new_balance=str(new_balance),
        )
        return result

    def settle_with_counterparty(
        self,
        user_id: str,
        counterparty_name: str,
        amount: Optional[Amount] = None,
    ) -> SettlementResult:
        """
        The user paid the counterparty back.

        Omitting `amount` settles everything the user owes them. The
        settled amount is clamped to what is owed and taken off the user's
        dues to them oldest first.

        Raises:
            CounterpartyNotFound: unknown name
            NoPendingDuesError: nothing pending with this counterparty
            NothingOwedError: the user owes this counterparty nothing
        """
        requested = None if amount is None else self._validate_amount(amount)
        now = datetime.utcnow()

        with self._db.transaction() as s:
            row = self._directory.require_row(s, user_id, counterparty_name, lock=True)
            pending = self._pending_dues(s, user_id, row.id)
            if not pending:
                raise NoPendingDuesError(f"No pending dues with {row.name}.")

            previous = to_money(row.balance)
            if previous <= 0:
                raise NothingOwedError(f"You don't owe {row.name} anything. {self._describe(row)}.")

            to_settle = previous if requested is None else min(requested, previous)
            owed_by_user = [d for d in pending if to_money(d.amount) > 0]
            settled, touched = self._settle_oldest_first(owed_by_user, to_settle, now)
            if settled != to_settle:
                logger.warning(
                    "settlement_exceeds_pending_dues",
                    user_id=user_id,
                    counterparty_id=row.id,
                    requested=str(to_settle),
                    settled=str(settled),
                )

            new_balance = self._ledger.adjust_balance(user_id, row.id, -settled, session=s)
            touched += self._net_off_if_square(s, user_id, row.id, new_balance, now)

            result = SettlementResult(
                counterparty=Counterparty.model_validate(row),
                settled_amount=settled,
                previous_balance=previous,
                new_balance=new_balance,
                touched_dues=[Due.model_validate(d) for d in touched],
            )

        logger.info(
            "dues_settled",
            user_id=user_id,
            counterparty_id=result.counterparty.id,
            settled=str(settled),
            new_balance=str(new_balance),
        )
        return result

    def settle_due(
        self,
        user_id: str,
        due_id: int,
        partial_amount: Optional[Amount] = None,
    ) -> DueSettlementResult:
        """
        Settle one due, fully or in part.

        The reduction works on the due's magnitude in either direction and
        is clamped to it. The balance moves by the signed reduction.

        Raises:
            DueNotFound: no such due for this user
            NoPendingDuesError: the due is already settled
        """
        requested = None if partial_amount is None else self._validate_amount(partial_amount)
        now = datetime.utcnow()

        with self._db.transaction() as s:
            due = s.execute(
                select(DueRow)
                .where(DueRow.id == due_id, DueRow.user_id == user_id)
                .with_for_update()
            ).scalar_one_or_none()
            if due is None:
                raise DueNotFound(f"Due {due_id} not found.")
            if due.status != DueStatus.PENDING.value:
                raise NoPendingDuesError(f"Due {due_id} is already settled.")

            magnitude = abs(to_money(due.amount))
            reduction = magnitude if requested is None else min(requested, magnitude)

            delta = self._reduce_due(due, reduction, now)
            new_balance = self._ledger.adjust_balance(user_id, due.counterparty_id, delta, session=s)
            self._net_off_if_square(s, user_id, due.counterparty_id, new_balance, now)

            result = DueSettlementResult(
                due=Due.model_validate(due),
                reduction=reduction,
                new_balance=new_balance,
            )

        logger.info(
            "due_settled",
            user_id=user_id,
            due_id=due_id,
            reduction=str(reduction),
            remaining=str(result.due.amount),
        )
        return result

    # =========================================================================
    # QUERIES
    # =========================================================================

    def get_pending_dues(
        self,
        user_id: str,
        counterparty_id: Optional[int] = None,
    ) -> list[Due]:
        """Pending dues of a user (optionally one counterparty), oldest first."""
        stmt = select(DueRow).where(
            DueRow.user_id == user_id,
            DueRow.status == DueStatus.PENDING.value,
        )
        if counterparty_id is not None:
            stmt = stmt.where(DueRow.counterparty_id == counterparty_id)

        with self._db.transaction() as s:
            rows = s.scalars(stmt.order_by(DueRow.created_at, DueRow.id)).all()
            return [Due.model_validate(row) for row in rows]
