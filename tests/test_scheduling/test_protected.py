"""Tests for protected slots and urgent overrides."""

from datetime import date, time

from taskslot.models import (
    ConflictSeverity,
    ConflictType,
    DateRange,
    Priority,
    UserSchedulingPreferences,
)
from taskslot.scheduling.protected import (
    ADHOC_CALLS_SLOT_ID,
    LUNCH_SLOT_ID,
    default_protected_slots,
    effective_protected_slots,
    expand_protected_slots,
    is_urgent_task,
    overridable_slot_ids,
    protected_conflicts,
)

MONDAY = date(2025, 6, 2)
TUESDAY = date(2025, 6, 3)


class TestDefaults:
    """Tests for the default protected slots."""

    def test_default_slots(self):
        slots = {s.slot_id: s for s in default_protected_slots()}
        assert set(slots) == {ADHOC_CALLS_SLOT_ID, LUNCH_SLOT_ID}
        assert slots[ADHOC_CALLS_SLOT_ID].allow_override_for_urgent is True
        assert slots[LUNCH_SLOT_ID].allow_override_for_urgent is False
        assert slots[LUNCH_SLOT_ID].time_range.start == time(12)
        assert slots[ADHOC_CALLS_SLOT_ID].days_of_week == (1, 2, 3, 4, 5)

    def test_user_without_list_gets_defaults(self, preferences):
        assert len(effective_protected_slots(preferences)) == 2

    def test_user_list_replaces_defaults(self, open_preferences):
        assert effective_protected_slots(open_preferences) == []

    def test_calls_slot_can_be_turned_off(self):
        prefs = UserSchedulingPreferences(user_id="user-1", keep_slot_free_for_calls=False)
        slots = {s.slot_id: s for s in effective_protected_slots(prefs)}
        assert slots[ADHOC_CALLS_SLOT_ID].enabled is False
        assert slots[LUNCH_SLOT_ID].enabled is True


class TestUrgency:
    """Tests for urgent task detection."""

    def test_high_priority_is_urgent(self, make_task, monday_morning):
        assert is_urgent_task(make_task(priority=Priority.HIGH), monday_morning) is True

    def test_due_today_is_urgent(self, make_task, monday_morning):
        task = make_task(due_date=MONDAY)
        assert is_urgent_task(task, monday_morning) is True

    def test_due_date_without_time_means_end_of_day(self, make_task, monday_morning):
        # Tuesday 23:59 is more than a day after Monday 08:00
        task = make_task(due_date=TUESDAY)
        assert is_urgent_task(task, monday_morning) is False

    def test_due_time_within_a_day(self, make_task, monday_morning):
        task = make_task(due_date=TUESDAY, due_time=time(7, 0))
        assert is_urgent_task(task, monday_morning) is True

    def test_no_due_date(self, make_task, monday_morning):
        assert is_urgent_task(make_task(priority=Priority.LOW), monday_morning) is False

    def test_overridable_ids(self, make_task, monday_morning):
        slots = default_protected_slots()
        urgent = make_task(priority=Priority.HIGH)
        normal = make_task(priority=Priority.MEDIUM)
        assert overridable_slot_ids(urgent, slots, monday_morning) == {ADHOC_CALLS_SLOT_ID}
        assert overridable_slot_ids(normal, slots, monday_morning) == set()


class TestExpansion:
    """Tests for expanding protected slots onto dates."""

    def test_expand_sorted_by_start(self, at):
        instances = expand_protected_slots(default_protected_slots(), DateRange(MONDAY, TUESDAY))
        assert [(i.slot.slot_id, i.start) for i in instances] == [
            (LUNCH_SLOT_ID, at(MONDAY, 12)),
            (ADHOC_CALLS_SLOT_ID, at(MONDAY, 15)),
            (LUNCH_SLOT_ID, at(TUESDAY, 12)),
            (ADHOC_CALLS_SLOT_ID, at(TUESDAY, 15)),
        ]

    def test_weekend_has_no_instances(self):
        saturday = date(2025, 6, 7)
        sunday = date(2025, 6, 8)
        assert expand_protected_slots(default_protected_slots(), DateRange(saturday, sunday)) == []


class TestProtectedConflicts:
    """Tests for protected slot conflicts."""

    def test_lunch_is_an_error_even_for_urgent(self, make_task, at, monday_morning):
        task = make_task(priority=Priority.HIGH)
        conflicts = protected_conflicts(
            task, at(MONDAY, 12), at(MONDAY, 12, 30), default_protected_slots(), monday_morning
        )
        assert len(conflicts) == 1
        assert conflicts[0].conflict_type == ConflictType.PROTECTED_SLOT
        assert conflicts[0].severity == ConflictSeverity.ERROR

    def test_urgent_override_is_a_warning(self, make_task, at, monday_morning):
        task = make_task(priority=Priority.HIGH)
        conflicts = protected_conflicts(
            task, at(MONDAY, 15), at(MONDAY, 15, 30), default_protected_slots(), monday_morning
        )
        assert [c.severity for c in conflicts] == [ConflictSeverity.WARNING]

    def test_non_urgent_calls_slot_is_an_error(self, make_task, at, monday_morning):
        task = make_task(priority=Priority.LOW)
        conflicts = protected_conflicts(
            task, at(MONDAY, 15), at(MONDAY, 15, 30), default_protected_slots(), monday_morning
        )
        assert [c.severity for c in conflicts] == [ConflictSeverity.ERROR]

    def test_spanning_both_slots(self, make_task, at, monday_morning):
        task = make_task(priority=Priority.LOW)
        conflicts = protected_conflicts(
            task, at(MONDAY, 11), at(MONDAY, 16), default_protected_slots(), monday_morning
        )
        assert len(conflicts) == 2

    def test_clear_time_has_no_conflicts(self, make_task, at, monday_morning):
        conflicts = protected_conflicts(
            make_task(), at(MONDAY, 9), at(MONDAY, 11), default_protected_slots(), monday_morning
        )
        assert conflicts == []
