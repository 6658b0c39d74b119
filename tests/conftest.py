"""
Shared fixtures.

Every test gets its own in-memory SQLite database and a fixed "today" so
date arithmetic is deterministic. No network access.
"""

from datetime import date

import pytest

from tabkeeper.audit import AuditLogger
from tabkeeper.config.settings import LedgerSettings
from tabkeeper.ledger import BalanceLedger, CounterpartyDirectory, SettlementProcessor
from tabkeeper.orchestrator import CommandDispatcher
from tabkeeper.queries import DashboardAggregator
from tabkeeper.recurring import OccurrenceTracker, RecurringScheduler
from tabkeeper.services.storage import Database, InMemoryAuditStorage


# A Friday, mid-month.
TODAY = date(2024, 3, 15)

USER = "user-1"
OTHER_USER = "user-2"


@pytest.fixture
def today() -> date:
    return TODAY


@pytest.fixture
def db():
    database = Database("sqlite://")
    database.create_all()
    yield database
    database.dispose()


@pytest.fixture
def ledger_settings() -> LedgerSettings:
    return LedgerSettings(
        currency_symbol="$",
        max_transaction_amount="100000",
        lending_category="lent",
        default_rule_category="subscription",
        upcoming_window_days=7,
    )


@pytest.fixture
def balance_ledger(db) -> BalanceLedger:
    return BalanceLedger(db)


@pytest.fixture
def directory(db) -> CounterpartyDirectory:
    return CounterpartyDirectory(db)


@pytest.fixture
def settlements(db, balance_ledger, directory, ledger_settings) -> SettlementProcessor:
    return SettlementProcessor(db, balance_ledger, directory, ledger_settings)


@pytest.fixture
def scheduler(db, ledger_settings) -> RecurringScheduler:
    return RecurringScheduler(db, ledger_settings)


@pytest.fixture
def tracker(db) -> OccurrenceTracker:
    return OccurrenceTracker(db)


@pytest.fixture
def aggregator(db, ledger_settings) -> DashboardAggregator:
    return DashboardAggregator(db, ledger_settings)


@pytest.fixture
def audit_storage() -> InMemoryAuditStorage:
    return InMemoryAuditStorage()


@pytest.fixture
def dispatcher(
    directory,
    balance_ledger,
    settlements,
    scheduler,
    tracker,
    aggregator,
    audit_storage,
    ledger_settings,
) -> CommandDispatcher:
    return CommandDispatcher(
        directory=directory,
        ledger=balance_ledger,
        settlements=settlements,
        scheduler=scheduler,
        tracker=tracker,
        dashboard=aggregator,
        audit_logger=AuditLogger(audit_storage),
        ledger_settings=ledger_settings,
        retry_attempts=2,
        clock=lambda: TODAY,
    )


@pytest.fixture
def assert_invariant(balance_ledger, directory):
    """Check balance == sum of pending dues for every counterparty of a user."""

    def check(user_id: str = USER) -> None:
        for counterparty in directory.list_counterparties(user_id):
            derived = balance_ledger.pending_total(user_id, counterparty.id)
            assert counterparty.balance == derived, (
                f"{counterparty.name}: balance {counterparty.balance} != pending dues {derived}"
            )

    return check
