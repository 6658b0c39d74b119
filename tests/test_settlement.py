"""
Tests for the settlement processor.

Every test that writes ends by checking the ledger invariant: each
counterparty's balance equals the sum of its pending dues.
"""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from tabkeeper.errors import (
    CounterpartyNotFound,
    DueNotFound,
    InvalidAmountError,
    NoPendingDuesError,
    NothingOwedError,
)
from tabkeeper.ledger import BalanceLedger
from tabkeeper.models.ledger import DueStatus
from tabkeeper.services.storage import StorageTransactionError
from tabkeeper.services.storage.orm import CounterpartyRow, DueRow, MonetaryEventRow


USER = "user-1"
OTHER_USER = "user-2"


class TestRecording:
    """Tests for recording expenses and lendings."""

    def test_expense_paid_by_counterparty(self, settlements, assert_invariant, today):
        """Someone paying for the user raises the balance."""
        result = settlements.record_expense_paid_by_counterparty(
            USER, "Mike", Decimal("40"), "food", merchant="Deli", event_date=today
        )

        assert result.was_created is True
        assert result.previous_balance == Decimal("0.00")
        assert result.new_balance == Decimal("40.00")
        assert result.due.amount == Decimal("40.00")
        assert result.due.original_amount == Decimal("40.00")
        assert result.due.status == DueStatus.PENDING
        assert result.transaction.paid_by_counterparty_id == result.counterparty.id
        assert result.transaction.event_date == today
        assert result.counterparty.balance == Decimal("40.00")
        assert_invariant()

    def test_lending(self, settlements, assert_invariant):
        """Lending lowers the balance and defaults the category."""
        result = settlements.record_lending(USER, "Sara", Decimal("30"))

        assert result.new_balance == Decimal("-30.00")
        assert result.due.amount == Decimal("-30.00")
        assert result.due.owed_to_user
        assert result.transaction.paid_by_user
        assert result.transaction.category == "lent"
        assert result.transaction.description == "Lent to Sara"
        assert_invariant()

    def test_second_entry_reuses_counterparty(self, settlements, assert_invariant):
        """Later entries for the same name update the same balance."""
        settlements.record_lending(USER, "Sara", Decimal("30"))
        result = settlements.record_expense_paid_by_counterparty(USER, "sara", Decimal("12.5"), "taxi")

        assert result.was_created is False
        assert result.previous_balance == Decimal("-30.00")
        assert result.new_balance == Decimal("-17.50")
        assert_invariant()

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), Decimal("100000.01")])
    def test_invalid_amounts_are_rejected(self, settlements, directory, amount):
        """Zero, negative and oversized amounts never reach storage."""
        with pytest.raises(InvalidAmountError):
            settlements.record_lending(USER, "Sara", amount)
        assert directory.list_counterparties(USER) == []

    def test_personal_expense_touches_no_balance(self, settlements, directory):
        """A personal expense creates a transaction and nothing else."""
        event = settlements.record_personal_expense(USER, Decimal("9.99"), "coffee", merchant="Cafe")

        assert event.paid_by_user
        assert event.amount == Decimal("9.99")
        assert directory.list_counterparties(USER) == []
        assert settlements.get_pending_dues(USER) == []


class TestReceivePayment:
    """Tests for receiving money back."""

    def test_round_trip(self, settlements, balance_ledger, assert_invariant):
        """Lending 30 then receiving 30 returns the balance exactly to zero."""
        lent = settlements.record_lending(USER, "Sara", Decimal("30"))
        result = settlements.receive_payment(USER, "Sara", Decimal("30"))

        assert result.settled_amount == Decimal("30.00")
        assert result.new_balance == Decimal("0.00")
        assert result.fully_settled
        assert balance_ledger.get_balance(USER, lent.counterparty.id) == Decimal("0.00")
        assert settlements.get_pending_dues(USER) == []
        assert_invariant()

    def test_overpayment_is_clamped(self, settlements, assert_invariant):
        """Receiving 1000 when 30 is owed settles 30, never flips the sign."""
        settlements.record_lending(USER, "Sara", Decimal("30"))
        result = settlements.receive_payment(USER, "Sara", Decimal("1000"))

        assert result.settled_amount == Decimal("30.00")
        assert result.new_balance == Decimal("0.00")
        assert_invariant()

    def test_no_amount_means_everything(self, settlements, assert_invariant):
        """Omitting the amount settles the whole debt."""
        settlements.record_lending(USER, "Sara", Decimal("30"))
        settlements.record_lending(USER, "Sara", Decimal("20"))

        result = settlements.receive_payment(USER, "Sara")
        assert result.settled_amount == Decimal("50.00")
        assert len(result.touched_dues) == 2
        assert_invariant()

    def test_partial_payment_settles_oldest_first(self, settlements, assert_invariant):
        """A partial payment closes the oldest due before touching newer ones."""
        first = settlements.record_lending(USER, "Sara", Decimal("10")).due
        second = settlements.record_lending(USER, "Sara", Decimal("20")).due

        result = settlements.receive_payment(USER, "Sara", Decimal("15"))

        assert result.new_balance == Decimal("-15.00")
        pending = settlements.get_pending_dues(USER)
        assert [d.id for d in pending] == [second.id]
        assert pending[0].amount == Decimal("-15.00")
        touched = {d.id: d for d in result.touched_dues}
        assert touched[first.id].status == DueStatus.SETTLED
        assert_invariant()

    def test_nothing_owed(self, settlements, balance_ledger):
        """Receiving from someone the user owes is an error and changes nothing."""
        entry = settlements.record_expense_paid_by_counterparty(USER, "Mike", Decimal("40"), "food")

        with pytest.raises(NothingOwedError) as exc:
            settlements.receive_payment(USER, "Mike", Decimal("10"))
        assert "mike" in exc.value.message
        assert balance_ledger.get_balance(USER, entry.counterparty.id) == Decimal("40.00")

    def test_settled_balance_is_nothing_owed(self, settlements, directory):
        """A zero balance owes nothing in either direction."""
        directory.get_or_create(USER, "Anna")
        with pytest.raises(NothingOwedError):
            settlements.receive_payment(USER, "Anna")

    def test_unknown_counterparty(self, settlements):
        """Receiving from an unknown name does not create it."""
        with pytest.raises(CounterpartyNotFound):
            settlements.receive_payment(USER, "Nobody", Decimal("5"))

    def test_netting_closes_offsetting_dues(self, settlements, assert_invariant):
        """When the balance reaches zero, dues that cancel out are closed too."""
        settlements.record_expense_paid_by_counterparty(USER, "Mike", Decimal("50"), "food")
        settlements.record_lending(USER, "Mike", Decimal("80"))

        result = settlements.receive_payment(USER, "Mike", Decimal("30"))

        assert result.new_balance == Decimal("0.00")
        assert settlements.get_pending_dues(USER) == []
        assert len({d.id for d in result.touched_dues}) == 2
        assert all(d.status == DueStatus.SETTLED for d in result.touched_dues)
        assert_invariant()


class TestSettleWithCounterparty:
    """Tests for the user paying a counterparty back."""

    def test_settle_everything(self, settlements, assert_invariant):
        """Settling without an amount pays off the whole balance."""
        settlements.record_expense_paid_by_counterparty(USER, "Mike", Decimal("40"), "food")
        result = settlements.settle_with_counterparty(USER, "Mike")

        assert result.settled_amount == Decimal("40.00")
        assert result.new_balance == Decimal("0.00")
        assert_invariant()

    def test_settle_is_clamped(self, settlements, assert_invariant):
        """Paying back more than owed settles only what is owed."""
        settlements.record_expense_paid_by_counterparty(USER, "Mike", Decimal("40"), "food")
        result = settlements.settle_with_counterparty(USER, "Mike", Decimal("100"))

        assert result.settled_amount == Decimal("40.00")
        assert result.new_balance == Decimal("0.00")
        assert_invariant()

    def test_partial_settle(self, settlements, assert_invariant):
        """A partial payback leaves the rest pending."""
        settlements.record_expense_paid_by_counterparty(USER, "Mike", Decimal("40"), "food")
        result = settlements.settle_with_counterparty(USER, "Mike", Decimal("15"))

        assert result.new_balance == Decimal("25.00")
        assert [d.amount for d in settlements.get_pending_dues(USER)] == [Decimal("25.00")]
        assert_invariant()

    def test_no_pending_dues(self, settlements, directory):
        """Settling with someone who has no pending dues fails."""
        directory.get_or_create(USER, "Anna")
        with pytest.raises(NoPendingDuesError):
            settlements.settle_with_counterparty(USER, "Anna")

    def test_nothing_owed_when_they_owe_the_user(self, settlements, assert_invariant):
        """The user cannot pay back someone who owes them."""
        settlements.record_lending(USER, "Sara", Decimal("30"))
        with pytest.raises(NothingOwedError):
            settlements.settle_with_counterparty(USER, "Sara", Decimal("10"))
        assert_invariant()


class TestSettleDue:
    """Tests for settling a single due."""

    def test_partial_then_full(self, settlements, assert_invariant):
        """A 40 payment on a 100 due leaves 60 pending, then settles."""
        due = settlements.record_expense_paid_by_counterparty(USER, "Mike", Decimal("100"), "rent").due

        partial = settlements.settle_due(USER, due.id, Decimal("40"))
        assert partial.due.amount == Decimal("60.00")
        assert partial.due.status == DueStatus.PENDING
        assert partial.new_balance == Decimal("60.00")
        assert_invariant()

        full = settlements.settle_due(USER, due.id)
        assert full.due.amount == Decimal("0.00")
        assert full.due.status == DueStatus.SETTLED
        assert full.due.settled_at is not None
        assert full.new_balance == Decimal("0.00")
        assert_invariant()

    def test_partial_larger_than_due_settles_it(self, settlements, assert_invariant):
        """A partial amount at or above the due is a full settlement."""
        due = settlements.record_expense_paid_by_counterparty(USER, "Mike", Decimal("25"), "food").due

        result = settlements.settle_due(USER, due.id, Decimal("30"))
        assert result.reduction == Decimal("25.00")
        assert result.due.status == DueStatus.SETTLED
        assert_invariant()

    def test_negative_due(self, settlements, assert_invariant):
        """Settling a due owed to the user moves the balance up."""
        due = settlements.record_lending(USER, "Sara", Decimal("50")).due

        result = settlements.settle_due(USER, due.id, Decimal("20"))
        assert result.due.amount == Decimal("-30.00")
        assert result.new_balance == Decimal("-30.00")
        assert_invariant()

    def test_already_settled(self, settlements):
        """A settled due cannot be settled again."""
        due = settlements.record_lending(USER, "Sara", Decimal("50")).due
        settlements.settle_due(USER, due.id)

        with pytest.raises(NoPendingDuesError):
            settlements.settle_due(USER, due.id)

    def test_other_users_due_is_not_found(self, settlements, balance_ledger):
        """A due id of another user behaves as missing."""
        entry = settlements.record_lending(USER, "Sara", Decimal("50"))

        with pytest.raises(DueNotFound):
            settlements.settle_due(OTHER_USER, entry.due.id)
        assert balance_ledger.get_balance(USER, entry.counterparty.id) == Decimal("-50.00")


class TestPendingDues:
    """Tests for listing pending dues."""

    def test_oldest_first_and_filtered(self, settlements, directory):
        """Pending dues come back oldest first, optionally per counterparty."""
        a = settlements.record_lending(USER, "Sara", Decimal("1")).due
        b = settlements.record_expense_paid_by_counterparty(USER, "Mike", Decimal("2"), "food").due
        c = settlements.record_lending(USER, "Sara", Decimal("3")).due

        assert [d.id for d in settlements.get_pending_dues(USER)] == [a.id, b.id, c.id]
        sara = directory.find(USER, "Sara")
        assert [d.id for d in settlements.get_pending_dues(USER, sara.id)] == [a.id, c.id]
        assert settlements.get_pending_dues(OTHER_USER) == []


class TestInvariantUnderMixedOperations:
    """A longer sequence of mixed operations keeps the ledger consistent."""

    def test_sequence(self, settlements, assert_invariant):
        """Balance equals pending dues after every step."""
        steps = [
            lambda: settlements.record_lending(USER, "Sara", Decimal("30")),
            lambda: settlements.record_expense_paid_by_counterparty(USER, "Sara", Decimal("12"), "taxi"),
            lambda: settlements.record_lending(USER, "Mike", Decimal("7.25")),
            lambda: settlements.receive_payment(USER, "Sara", Decimal("5")),
            lambda: settlements.record_expense_paid_by_counterparty(USER, "Mike", Decimal("20"), "food"),
            lambda: settlements.settle_with_counterparty(USER, "Mike", Decimal("4")),
            lambda: settlements.receive_payment(USER, "Sara"),
        ]
        for step in steps:
            step()
            assert_invariant()


def _fail_adjust(self, *args, **kwargs):
    raise StorageTransactionError("database is locked")


def _ledger_state(db):
    with db.transaction() as s:
        dues = [(d.id, d.amount, d.status) for d in s.scalars(select(DueRow).order_by(DueRow.id))]
        events = s.scalar(select(func.count()).select_from(MonetaryEventRow))
        balances = {c.name: c.balance for c in s.scalars(select(CounterpartyRow))}
    return dues, events, balances


class TestBalanceFailureRollsBack:
    """A failed balance adjustment leaves no due or transaction behind."""

    @pytest.fixture
    def seeded(self, settlements):
        settlements.record_lending(USER, "Sara", Decimal("50"))
        mike = settlements.record_expense_paid_by_counterparty(USER, "Mike", Decimal("40"), "food")
        return mike.due.id

    @pytest.mark.parametrize(
        "operation",
        [
            lambda s, due_id: s.record_lending(USER, "Sara", Decimal("10")),
            lambda s, due_id: s.record_lending(USER, "Tom", Decimal("10")),
            lambda s, due_id: s.record_expense_paid_by_counterparty(USER, "Mike", Decimal("8"), "taxi"),
            lambda s, due_id: s.receive_payment(USER, "Sara", Decimal("20")),
            lambda s, due_id: s.receive_payment(USER, "Sara"),
            lambda s, due_id: s.settle_with_counterparty(USER, "Mike", Decimal("15")),
            lambda s, due_id: s.settle_due(USER, due_id, Decimal("10")),
            lambda s, due_id: s.settle_due(USER, due_id),
        ],
        ids=[
            "lending",
            "lending_new_counterparty",
            "expense",
            "partial_payment",
            "full_payment",
            "settle_dues",
            "settle_due_partial",
            "settle_due_full",
        ],
    )
    def test_no_partial_writes(self, db, settlements, seeded, assert_invariant, monkeypatch, operation):
        """Dues, transactions and balances are exactly as before the failure."""
        before = _ledger_state(db)
        monkeypatch.setattr(BalanceLedger, "adjust_balance", _fail_adjust)

        with pytest.raises(StorageTransactionError):
            operation(settlements, seeded)

        monkeypatch.undo()
        assert _ledger_state(db) == before
        assert_invariant()

        # The same command succeeds once storage recovers.
        operation(settlements, seeded)
        assert_invariant()
