"""
Concurrency tests against a file-backed SQLite database.

Several threads write to the same counterparty at once; no update may be
lost and the balance must still equal the sum of pending dues.
"""

from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

from tabkeeper.config.settings import LedgerSettings
from tabkeeper.ledger import BalanceLedger, CounterpartyDirectory, SettlementProcessor
from tabkeeper.services.storage import Database


USER = "user-1"


@pytest.fixture
def file_db(tmp_path):
    database = Database(f"sqlite:///{tmp_path / 'ledger.db'}", busy_timeout_seconds=30)
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def components(file_db):
    ledger = BalanceLedger(file_db)
    directory = CounterpartyDirectory(file_db)
    settlements = SettlementProcessor(file_db, ledger, directory, LedgerSettings())
    return ledger, directory, settlements


class TestConcurrentWrites:
    """Concurrent commands against one counterparty."""

    def test_no_lost_updates(self, components):
        """Interleaved expenses and lendings all land in the balance."""
        ledger, directory, settlements = components
        directory.get_or_create(USER, "Mike")

        def expense(_):
            settlements.record_expense_paid_by_counterparty(USER, "Mike", Decimal("10"), "food")

        def lending(_):
            settlements.record_lending(USER, "Mike", Decimal("5"))

        with ThreadPoolExecutor(max_workers=8) as pool:
            futures = [pool.submit(expense, i) for i in range(20)]
            futures += [pool.submit(lending, i) for i in range(20)]
            for future in futures:
                future.result()

        mike = directory.find(USER, "mike")
        assert mike.balance == Decimal("100.00")
        assert ledger.pending_total(USER, mike.id) == Decimal("100.00")
        assert len(settlements.get_pending_dues(USER, mike.id)) == 40

    def test_concurrent_payments_never_overpay(self, components):
        """Racing full repayments settle the debt exactly once."""
        ledger, directory, settlements = components
        settlements.record_lending(USER, "Sara", Decimal("30"))

        def repay(_):
            try:
                return settlements.receive_payment(USER, "Sara").settled_amount
            except Exception as e:
                return type(e).__name__

        with ThreadPoolExecutor(max_workers=4) as pool:
            outcomes = list(pool.map(repay, range(4)))

        assert outcomes.count(Decimal("30.00")) == 1
        assert outcomes.count("NothingOwedError") == 3
        sara = directory.find(USER, "sara")
        assert sara.balance == Decimal("0.00")
        assert ledger.reconcile(USER, sara.id).consistent

    def test_concurrent_get_or_create(self, components):
        """Racing creations of the same name produce one counterparty."""
        _, directory, _ = components

        with ThreadPoolExecutor(max_workers=8) as pool:
            refs = list(pool.map(lambda _: directory.get_or_create(USER, "Anna"), range(8)))

        assert len({ref.counterparty.id for ref in refs}) == 1
        assert sum(ref.was_created for ref in refs) == 1
        assert len(directory.list_counterparties(USER)) == 1
