"""Tests for the dashboard rollup."""

from datetime import date
from decimal import Decimal

from tabkeeper.models.ledger import ZERO


USER = "user-1"
OTHER_USER = "user-2"


class TestDashboard:
    """Tests for DashboardAggregator.build."""

    def test_empty(self, aggregator, today):
        """A user with no data gets zeros and empty lists."""
        dashboard = aggregator.build(USER, today)

        assert dashboard.total_spent_this_month == ZERO
        assert dashboard.top_category is None
        assert dashboard.you_owe == []
        assert dashboard.owed_to_you == []
        assert dashboard.upcoming == []
        assert dashboard.overdue == []
        assert dashboard.period_start == date(2024, 3, 1)
        assert dashboard.period_end == date(2024, 3, 31)

    def test_spending_this_month(self, aggregator, settlements, today):
        """Only what the user paid this month counts as spending."""
        settlements.record_personal_expense(USER, Decimal("25"), "food", event_date=date(2024, 3, 2))
        settlements.record_personal_expense(USER, Decimal("20"), "food", event_date=date(2024, 3, 10))
        settlements.record_personal_expense(USER, Decimal("5"), "coffee", event_date=date(2024, 3, 12))
        settlements.record_personal_expense(USER, Decimal("99"), "food", event_date=date(2024, 2, 28))
        settlements.record_lending(USER, "Sara", Decimal("30"), event_date=today)
        settlements.record_expense_paid_by_counterparty(USER, "Mike", Decimal("40"), "food", event_date=today)

        dashboard = aggregator.build(USER, today)

        assert dashboard.total_spent_this_month == Decimal("80.00")
        assert dashboard.top_category.category == "food"
        assert dashboard.top_category.total == Decimal("45.00")
        assert [c.category for c in dashboard.category_totals] == ["food", "lent", "coffee"]

    def test_category_ties_are_alphabetical(self, aggregator, settlements, today):
        settlements.record_personal_expense(USER, Decimal("10"), "travel", event_date=today)
        settlements.record_personal_expense(USER, Decimal("10"), "books", event_date=today)

        dashboard = aggregator.build(USER, today)
        assert [c.category for c in dashboard.category_totals] == ["books", "travel"]

    def test_balances(self, aggregator, settlements, directory, today):
        """Balances are split by direction; settled counterparties are left out."""
        settlements.record_expense_paid_by_counterparty(USER, "Mike", Decimal("40"), "food", event_date=today)
        settlements.record_lending(USER, "Sara", Decimal("30"), event_date=today)
        directory.get_or_create(USER, "Anna")

        dashboard = aggregator.build(USER, today)

        assert [(b.name, b.amount) for b in dashboard.you_owe] == [("mike", Decimal("40.00"))]
        assert [(b.name, b.amount) for b in dashboard.owed_to_you] == [("sara", Decimal("30.00"))]
        assert dashboard.total_you_owe == Decimal("40.00")
        assert dashboard.total_owed_to_you == Decimal("30.00")

    def test_upcoming_and_overdue(self, aggregator, scheduler, today):
        """Payments due within the window are upcoming; past ones are overdue."""
        gym = scheduler.create_rule(USER, "Gym", Decimal("15"), "weekly", recurrence_day=1, today=today)
        scheduler.create_rule(USER, "Rent", Decimal("1200"), "monthly", recurrence_day=1, today=today)
        paper = scheduler.create_rule(USER, "Paper", Decimal("2"), "daily", today=date(2024, 3, 1))

        dashboard = aggregator.build(USER, today)

        assert [p.occurrence.id for p in dashboard.upcoming] == [gym.first_occurrence.id]
        assert dashboard.upcoming[0].rule_name == "Gym"
        assert [p.occurrence.id for p in dashboard.overdue] == [paper.first_occurrence.id]

    def test_paid_occurrences_are_not_listed(self, aggregator, scheduler, tracker, today):
        gym = scheduler.create_rule(USER, "Gym", Decimal("15"), "weekly", recurrence_day=1, today=today)
        tracker.mark_paid(USER, gym.first_occurrence.id, today=today)

        assert aggregator.build(USER, today).upcoming == []

    def test_other_users_data_is_excluded(self, aggregator, settlements, scheduler, today):
        settlements.record_personal_expense(OTHER_USER, Decimal("10"), "food", event_date=today)
        settlements.record_lending(OTHER_USER, "Sara", Decimal("30"), event_date=today)
        scheduler.create_rule(OTHER_USER, "Gym", Decimal("15"), "weekly", recurrence_day=1, today=today)

        dashboard = aggregator.build(USER, today)
        assert dashboard.total_spent_this_month == ZERO
        assert dashboard.owed_to_you == []
        assert dashboard.upcoming == []
