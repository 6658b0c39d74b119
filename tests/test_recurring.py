"""Tests for recurring rules and their occurrences."""

from datetime import date
from decimal import Decimal

import pytest

from tabkeeper.errors import (
    InvalidAmountError,
    InvalidRecurrenceError,
    NotPaidError,
    OccurrenceNotFound,
    OccurrenceNotPayableError,
    RuleNotFound,
)
from tabkeeper.models.recurring import OccurrenceStatus, RecurrenceKind
from tabkeeper.services.storage.orm import OccurrenceRow


USER = "user-1"
OTHER_USER = "user-2"


@pytest.fixture
def rent(scheduler, today):
    """Monthly rent on the 1st, created mid-March."""
    return scheduler.create_rule(USER, "Rent", Decimal("1200"), "monthly", recurrence_day=1, today=today)


class TestCreateRule:
    """Tests for RecurringScheduler.create_rule."""

    def test_rule_and_first_occurrence(self, rent):
        """A new rule comes with one pending occurrence on its first due date."""
        assert rent.rule.name == "Rent"
        assert rent.rule.recurrence_kind == RecurrenceKind.MONTHLY
        assert rent.rule.next_due_date == date(2024, 4, 1)
        assert rent.rule.active
        assert rent.first_occurrence.due_date == date(2024, 4, 1)
        assert rent.first_occurrence.amount == Decimal("1200.00")
        assert rent.first_occurrence.status == OccurrenceStatus.PENDING
        assert rent.first_occurrence.rule_id == rent.rule.id

    def test_weekly_rule(self, scheduler, today):
        """A weekly gym fee on Mondays is first due the coming Monday."""
        gym = scheduler.create_rule(USER, "Gym", Decimal("15"), RecurrenceKind.WEEKLY, recurrence_day=1, today=today)
        assert gym.first_occurrence.due_date == date(2024, 3, 18)

    def test_default_category(self, scheduler, today):
        result = scheduler.create_rule(USER, "Music", Decimal("9.99"), "monthly", recurrence_day=20, today=today)
        assert result.rule.category == "subscription"

    def test_zero_amount_is_allowed(self, scheduler, today):
        """Free-trial style reminders may carry no amount."""
        result = scheduler.create_rule(USER, "Trial", Decimal("0"), "yearly", today=today)
        assert result.rule.amount == Decimal("0.00")

    def test_invalid_day_persists_nothing(self, scheduler, today):
        """A rejected rule leaves no rule and no occurrence behind."""
        with pytest.raises(InvalidRecurrenceError):
            scheduler.create_rule(USER, "Rent", Decimal("1200"), "monthly", recurrence_day=32, today=today)
        assert scheduler.list_rules(USER, active_only=False) == []

    def test_unknown_cadence(self, scheduler, today):
        with pytest.raises(InvalidRecurrenceError):
            scheduler.create_rule(USER, "Rent", Decimal("1200"), "fortnightly", today=today)

    def test_negative_amount(self, scheduler, today):
        with pytest.raises(InvalidAmountError):
            scheduler.create_rule(USER, "Rent", Decimal("-1"), "monthly", today=today)

    def test_list_rules_soonest_first(self, scheduler, rent, today):
        """Rules are listed by their next due date."""
        gym = scheduler.create_rule(USER, "Gym", Decimal("15"), "weekly", recurrence_day=1, today=today)
        assert [r.id for r in scheduler.list_rules(USER)] == [gym.rule.id, rent.rule.id]
        assert scheduler.list_rules(OTHER_USER) == []

    def test_get_rule_of_other_user(self, scheduler, rent):
        with pytest.raises(RuleNotFound):
            scheduler.get_rule(OTHER_USER, rent.rule.id)


class TestMarkPaidAndUndo:
    """Tests for marking occurrences paid and undoing it."""

    def test_round_trip(self, tracker, scheduler, rent, today):
        """Undo right after mark-paid restores the exact prior state."""
        occurrence_id = rent.first_occurrence.id

        paid = tracker.mark_paid(USER, occurrence_id, generate_next=True, today=today)
        assert paid.occurrence.status == OccurrenceStatus.PAID
        assert paid.occurrence.paid_date == today
        assert paid.occurrence.can_undo
        assert paid.next_occurrence.due_date == date(2024, 5, 1)
        assert paid.rule.next_due_date == date(2024, 5, 1)

        undone = tracker.undo_paid(USER, occurrence_id)
        assert undone.occurrence.status == OccurrenceStatus.PENDING
        assert undone.occurrence.paid_date is None
        assert undone.deleted_occurrence_ids == [paid.next_occurrence.id]
        assert undone.rule.next_due_date == date(2024, 4, 1)

        outstanding = tracker.list_outstanding(USER)
        assert [p.occurrence.id for p in outstanding] == [occurrence_id]
        assert outstanding[0].rule_name == "Rent"
        assert scheduler.get_rule(USER, rent.rule.id).next_due_date == date(2024, 4, 1)

    def test_second_undo_fails(self, tracker, rent, today):
        """Only a currently paid occurrence can be undone."""
        occurrence_id = rent.first_occurrence.id
        tracker.mark_paid(USER, occurrence_id, generate_next=True, today=today)
        tracker.undo_paid(USER, occurrence_id)

        with pytest.raises(NotPaidError):
            tracker.undo_paid(USER, occurrence_id)

    def test_mark_paid_without_next(self, tracker, scheduler, rent, today):
        """Without generate_next the rule's schedule is untouched."""
        paid = tracker.mark_paid(USER, rent.first_occurrence.id, today=today)

        assert paid.next_occurrence is None
        assert scheduler.get_rule(USER, rent.rule.id).next_due_date == date(2024, 4, 1)
        assert tracker.list_outstanding(USER) == []

        undone = tracker.undo_paid(USER, rent.first_occurrence.id)
        assert undone.deleted_occurrence_ids == []

    def test_already_paid(self, tracker, rent, today):
        tracker.mark_paid(USER, rent.first_occurrence.id, today=today)
        with pytest.raises(OccurrenceNotPayableError):
            tracker.mark_paid(USER, rent.first_occurrence.id, today=today)

    def test_other_user_cannot_mark(self, tracker, rent, today):
        """Another user's occurrence behaves as missing."""
        with pytest.raises(OccurrenceNotFound):
            tracker.mark_paid(OTHER_USER, rent.first_occurrence.id, today=today)
        with pytest.raises(OccurrenceNotFound):
            tracker.undo_paid(OTHER_USER, rent.first_occurrence.id)

    def test_late_payment_advances_from_due_date(self, scheduler, tracker, today):
        """Paying two months late schedules the next one after the missed date."""
        result = scheduler.create_rule(
            USER, "Phone", Decimal("30"), "monthly", recurrence_day=15, today=date(2024, 1, 10)
        )
        assert result.first_occurrence.due_date == date(2024, 1, 15)

        paid = tracker.mark_paid(USER, result.first_occurrence.id, generate_next=True, today=today)
        assert paid.occurrence.paid_date == today
        assert paid.next_occurrence.due_date == date(2024, 2, 15)

    def test_steady_state_has_one_outstanding(self, tracker, rent, today):
        """Paying with generate_next keeps exactly one outstanding occurrence."""
        occurrence_id = rent.first_occurrence.id
        for _ in range(3):
            paid = tracker.mark_paid(USER, occurrence_id, generate_next=True, today=today)
            occurrence_id = paid.next_occurrence.id
            assert len(tracker.list_outstanding(USER, rule_id=rent.rule.id)) == 1
        assert tracker.list_outstanding(USER)[0].occurrence.due_date == date(2024, 7, 1)


class TestNextOccurrence:
    """Tests for the successor written by mark-paid."""

    def test_reuses_outstanding_occurrence_on_next_date(self, db, tracker, rent, today):
        """An outstanding occurrence already on the next date is returned, not duplicated."""
        with db.transaction() as s:
            row = OccurrenceRow(
                user_id=USER,
                rule_id=rent.rule.id,
                due_date=date(2024, 5, 1),
                amount=Decimal("1200"),
                status=OccurrenceStatus.PENDING.value,
            )
            s.add(row)
            s.flush()
            existing_id = row.id

        paid = tracker.mark_paid(USER, rent.first_occurrence.id, generate_next=True, today=today)

        assert paid.next_occurrence.id == existing_id
        assert paid.next_occurrence.status == OccurrenceStatus.PENDING
        assert len(tracker.list_occurrences(USER, rule_id=rent.rule.id)) == 2

    def test_steps_over_paid_occurrence(self, tracker, scheduler, rent, today):
        """Re-paying after an undo never hands back an already paid successor."""
        first_id = rent.first_occurrence.id
        may = tracker.mark_paid(USER, first_id, generate_next=True, today=today).next_occurrence
        tracker.mark_paid(USER, may.id, today=today)
        assert tracker.undo_paid(USER, first_id).deleted_occurrence_ids == []

        again = tracker.mark_paid(USER, first_id, generate_next=True, today=today)

        assert again.next_occurrence.id != may.id
        assert again.next_occurrence.status == OccurrenceStatus.PENDING
        assert again.next_occurrence.due_date == date(2024, 6, 1)
        assert again.rule.next_due_date == date(2024, 6, 1)
        assert scheduler.get_rule(USER, rent.rule.id).next_due_date == date(2024, 6, 1)

        outstanding = tracker.list_outstanding(USER, rule_id=rent.rule.id)
        assert [p.occurrence.id for p in outstanding] == [again.next_occurrence.id]
        statuses = {o.id: o.status for o in tracker.list_occurrences(USER, rule_id=rent.rule.id)}
        assert statuses[may.id] == OccurrenceStatus.PAID

    def test_skip_steps_over_skipped_occurrence(self, tracker, rent, today):
        """Skipping onto a skipped date moves on to the following period."""
        first_id = rent.first_occurrence.id
        may = tracker.mark_paid(USER, first_id, generate_next=True, today=today).next_occurrence
        tracker.skip(USER, may.id, generate_next=False)
        tracker.undo_paid(USER, first_id)

        skipped = tracker.skip(USER, first_id)

        assert skipped.next_occurrence.due_date == date(2024, 6, 1)
        assert skipped.next_occurrence.status == OccurrenceStatus.PENDING


class TestRuleChanges:
    """Tests for deactivation and amount changes."""

    def test_deactivated_rule_generates_nothing(self, scheduler, tracker, rent, today):
        """The existing occurrence stays payable but has no successor."""
        rule = scheduler.deactivate_rule(USER, rent.rule.id)
        assert not rule.active
        assert scheduler.list_rules(USER) == []
        assert len(scheduler.list_rules(USER, active_only=False)) == 1

        paid = tracker.mark_paid(USER, rent.first_occurrence.id, generate_next=True, today=today)
        assert paid.occurrence.status == OccurrenceStatus.PAID
        assert paid.next_occurrence is None

    def test_amount_change_applies_to_future_occurrences(self, scheduler, tracker, rent, today):
        """Existing occurrences keep their amount; new ones use the new one."""
        rule, previous = scheduler.update_rule_amount(USER, rent.rule.id, Decimal("1250"))
        assert previous == Decimal("1200.00")
        assert rule.amount == Decimal("1250.00")

        paid = tracker.mark_paid(USER, rent.first_occurrence.id, generate_next=True, today=today)
        assert paid.occurrence.amount == Decimal("1200.00")
        assert paid.next_occurrence.amount == Decimal("1250.00")

    def test_update_unknown_rule(self, scheduler):
        with pytest.raises(RuleNotFound):
            scheduler.update_rule_amount(USER, 999, Decimal("10"))


class TestSkipAndOverdue:
    """Tests for skipping and the overdue sweep."""

    def test_skip_schedules_next(self, tracker, rent):
        skipped = tracker.skip(USER, rent.first_occurrence.id)

        assert skipped.occurrence.status == OccurrenceStatus.SKIPPED
        assert not skipped.occurrence.can_undo
        assert skipped.next_occurrence.due_date == date(2024, 5, 1)
        with pytest.raises(NotPaidError):
            tracker.undo_paid(USER, rent.first_occurrence.id)

    def test_overdue_sweep(self, scheduler, tracker, today):
        """Pending occurrences due before today become overdue and stay payable."""
        late = scheduler.create_rule(USER, "Paper", Decimal("2"), "daily", today=date(2024, 3, 1))
        scheduler.create_rule(USER, "Rent", Decimal("1200"), "monthly", recurrence_day=1, today=today)

        swept = tracker.mark_overdue(USER, today)
        assert [o.id for o in swept] == [late.first_occurrence.id]
        assert swept[0].status == OccurrenceStatus.OVERDUE
        assert tracker.mark_overdue(USER, today) == []

        paid = tracker.mark_paid(USER, late.first_occurrence.id, today=today)
        assert paid.occurrence.status == OccurrenceStatus.PAID

    def test_list_occurrences_any_status(self, tracker, rent, today):
        paid = tracker.mark_paid(USER, rent.first_occurrence.id, generate_next=True, today=today)

        statuses = [o.status for o in tracker.list_occurrences(USER, rule_id=rent.rule.id)]
        assert statuses == [OccurrenceStatus.PENDING, OccurrenceStatus.PAID]
        assert tracker.list_occurrences(OTHER_USER) == []
        assert paid.next_occurrence.id in {o.id for o in tracker.list_occurrences(USER)}
