"""
Tests for the availability model.

Tests cover:
- Tiling of working hours at a fixed granularity
- Busy marking from timed, all-day and cancelled events
- Protected slots and their ids
- Free runs, claimed regions and region checks
- Memoization helpers
"""

import pytest
from datetime import date, time

from taskslot.errors import ValidationError
from taskslot.models import DateRange, EventStatus, TimeRange
from taskslot.scheduling.availability import (
    AvailabilityMemo,
    availability_fingerprint,
    claim_regions,
    compute_availability,
    free_runs,
    is_region_free,
    merge_intervals,
)
from taskslot.scheduling.protected import default_protected_slots

SUNDAY = date(2025, 6, 1)
MONDAY = date(2025, 6, 2)
TUESDAY = date(2025, 6, 3)


def monday_only():
    return DateRange(MONDAY, MONDAY)


class TestComputeAvailability:
    """Tests for compute_availability."""

    def test_empty_calendar_is_all_free(self, weekday_hours):
        """Test that a day without events is entirely free."""
        windows = compute_availability([], [], weekday_hours(), monday_only(), 30)
        assert len(windows) == 1
        window = windows[0]
        assert window.date == MONDAY
        assert len(window.slots) == 16
        assert all(s.available for s in window.slots)
        assert window.total_free_minutes == 480
        assert window.total_busy_minutes == 0

    def test_one_window_per_date(self, weekday_hours):
        """Test that every date in range gets a window, in order."""
        windows = compute_availability([], [], weekday_hours(), DateRange(SUNDAY, TUESDAY))
        assert [w.date for w in windows] == [SUNDAY, MONDAY, TUESDAY]

    def test_non_working_day_has_no_slots(self, weekday_hours):
        """Test that a day without working hours is empty."""
        window = compute_availability([], [], weekday_hours(), DateRange(SUNDAY, SUNDAY))[0]
        assert window.slots == []
        assert window.total_free_minutes == 0
        assert window.total_busy_minutes == 0

    def test_event_marks_slots_busy(self, weekday_hours, make_event, at):
        """Test that slots intersecting an event are unavailable."""
        event = make_event("e1", MONDAY, (10, 0), (11, 0))
        window = compute_availability([event], [], weekday_hours(), monday_only())[0]

        busy = [s for s in window.slots if not s.available]
        assert [s.start for s in busy] == [at(MONDAY, 10), at(MONDAY, 10, 30)]
        assert window.total_free_minutes == 420
        assert window.total_busy_minutes == 60

    def test_partial_overlap_blocks_whole_slot(self, weekday_hours, make_event):
        """Test that any intersection makes a slot busy."""
        event = make_event("e1", MONDAY, (10, 15), (10, 45))
        window = compute_availability([event], [], weekday_hours(), monday_only())[0]
        assert window.total_busy_minutes == 60

    def test_touching_event_does_not_block(self, weekday_hours, make_event, at):
        """Test that an event ending at a slot start leaves the slot free."""
        event = make_event("e1", MONDAY, (8, 0), (9, 0))
        window = compute_availability([event], [], weekday_hours(), monday_only())[0]
        assert window.slots[0].start == at(MONDAY, 9)
        assert window.slots[0].available is True

    def test_cancelled_event_is_ignored(self, weekday_hours, make_event):
        """Test that cancelled events do not block time."""
        event = make_event("e1", MONDAY, (10, 0), (11, 0), status=EventStatus.CANCELLED)
        window = compute_availability([event], [], weekday_hours(), monday_only())[0]
        assert window.total_busy_minutes == 0

    def test_all_day_event_blocks_the_day(self, weekday_hours, all_day_event):
        """Test that an all-day event makes its date fully busy."""
        event = all_day_event("e1", MONDAY)
        windows = compute_availability([event], [], weekday_hours(), DateRange(MONDAY, TUESDAY))
        assert windows[0].total_free_minutes == 0
        assert windows[0].total_busy_minutes == 480
        # End date is exclusive
        assert windows[1].total_busy_minutes == 0

    def test_last_slot_is_truncated(self):
        """Test that the final slot ends at the end of working hours."""
        hours = {1: TimeRange(time(9), time(10, 45))}
        window = compute_availability([], [], hours, monday_only(), 30)[0]
        durations = [s.duration_minutes for s in window.slots]
        assert durations == [30, 30, 30, 15]
        assert window.total_free_minutes == 105

    def test_slots_tile_working_hours(self, weekday_hours, make_event):
        """Test that slots are contiguous and minutes add up to working time."""
        events = [
            make_event("e1", MONDAY, (9, 20), (9, 50)),
            make_event("e2", MONDAY, (13, 0), (15, 30)),
        ]
        window = compute_availability(events, default_protected_slots(), weekday_hours(), monday_only(), 15)[0]
        for current, following in zip(window.slots, window.slots[1:]):
            assert current.end == following.start
        assert window.total_free_minutes + window.total_busy_minutes == 480

    def test_invalid_granularity(self, weekday_hours):
        """Test that a non-positive granularity is rejected."""
        with pytest.raises(ValidationError):
            compute_availability([], [], weekday_hours(), monday_only(), 0)

    def test_working_hours_follow_user_timezone(self, weekday_hours, at):
        """Test that events in UTC land on the right local slots."""
        from taskslot.models import CalendarEvent

        event = CalendarEvent(
            event_id="e1",
            calendar_id="primary",
            title="Call with London",
            start=at(MONDAY, 14),
            end=at(MONDAY, 15),
        )
        window = compute_availability(
            [event], [], weekday_hours(), monday_only(), 30, "America/New_York"
        )[0]
        busy = [s for s in window.slots if not s.available]
        # 14:00 UTC is 10:00 in New York in June
        assert [s.start for s in busy] == [
            at(MONDAY, 10, tz="America/New_York"),
            at(MONDAY, 10, 30, tz="America/New_York"),
        ]

    def test_is_deterministic(self, weekday_hours, make_event):
        """Test that identical inputs give identical windows."""
        events = [make_event("e1", MONDAY, (11, 0), (12, 0))]
        first = compute_availability(events, default_protected_slots(), weekday_hours(), monday_only())
        second = compute_availability(events, default_protected_slots(), weekday_hours(), monday_only())
        assert first == second


class TestProtectedSlots:
    """Tests for protected slot marking."""

    def test_protected_slots_are_unavailable(self, weekday_hours, at):
        """Test that lunch and the calls slot are blocked with their ids."""
        window = compute_availability([], default_protected_slots(), weekday_hours(), monday_only())[0]
        by_start = {s.start: s for s in window.slots}

        lunch = by_start[at(MONDAY, 12)]
        assert lunch.available is False
        assert lunch.protected_slot_id == "lunch"

        calls = by_start[at(MONDAY, 15, 30)]
        assert calls.available is False
        assert calls.protected_slot_id == "adhoc-calls"
        assert window.total_busy_minutes == 120

    def test_event_over_protected_slot_clears_id(self, weekday_hours, make_event, at):
        """Test that a slot also blocked by an event carries no protected id."""
        event = make_event("e1", MONDAY, (12, 0), (12, 30))
        window = compute_availability([event], default_protected_slots(), weekday_hours(), monday_only())[0]
        by_start = {s.start: s for s in window.slots}
        assert by_start[at(MONDAY, 12)].protected_slot_id is None
        assert by_start[at(MONDAY, 12, 30)].protected_slot_id == "lunch"

    def test_disabled_protected_slot_is_ignored(self, weekday_hours):
        """Test that disabled protected slots do not block time."""
        slots = default_protected_slots()
        slots[0].enabled = False
        slots[1].enabled = False
        window = compute_availability([], slots, weekday_hours(), monday_only())[0]
        assert window.total_busy_minutes == 0


class TestFreeRuns:
    """Tests for free_runs."""

    def test_runs_between_events(self, weekday_hours, make_event, at):
        """Test that free slots merge into runs around an event."""
        event = make_event("e1", MONDAY, (10, 0), (11, 0))
        window = compute_availability([event], [], weekday_hours(), monday_only())[0]
        runs = free_runs(window)
        assert [(r.start, r.end) for r in runs] == [
            (at(MONDAY, 9), at(MONDAY, 10)),
            (at(MONDAY, 11), at(MONDAY, 17)),
        ]

    def test_overridable_protected_slot_joins_runs(self, weekday_hours, at):
        """Test that an overridable protected slot counts as free when allowed."""
        window = compute_availability([], default_protected_slots(), weekday_hours(), monday_only())[0]

        plain = free_runs(window)
        assert [(r.start.hour, r.end.hour) for r in plain] == [(9, 12), (13, 15), (16, 17)]

        urgent = free_runs(window, {"adhoc-calls"})
        assert [(r.start.hour, r.end.hour) for r in urgent] == [(9, 12), (13, 17)]

    def test_empty_window(self, weekday_hours):
        """Test that a non-working day has no runs."""
        window = compute_availability([], [], weekday_hours(), DateRange(SUNDAY, SUNDAY))[0]
        assert free_runs(window) == []


class TestClaimRegions:
    """Tests for claim_regions and is_region_free."""

    def test_claim_splits_slots(self, weekday_hours, at):
        """Test that a claimed region splits partially covered slots."""
        windows = compute_availability([], [], weekday_hours(), monday_only())
        claimed = claim_regions(windows, [(at(MONDAY, 10, 15), at(MONDAY, 10, 45))])

        window = claimed[0]
        around = [s for s in window.slots if at(MONDAY, 10) <= s.start < at(MONDAY, 11)]
        assert [(s.start.minute, s.end.minute, s.available) for s in around] == [
            (0, 15, True),
            (15, 30, False),
            (30, 45, False),
            (45, 0, True),
        ]
        assert window.total_free_minutes == 450
        assert window.total_busy_minutes == 30

    def test_claim_does_not_modify_input(self, weekday_hours, at):
        """Test that the original windows are left untouched."""
        windows = compute_availability([], [], weekday_hours(), monday_only())
        claim_regions(windows, [(at(MONDAY, 9), at(MONDAY, 12))])
        assert windows[0].total_free_minutes == 480

    def test_no_regions_returns_same_windows(self, weekday_hours):
        windows = compute_availability([], [], weekday_hours(), monday_only())
        assert claim_regions(windows, []) == windows

    def test_is_region_free(self, weekday_hours, at):
        """Test region checks against free runs."""
        windows = compute_availability([], [], weekday_hours(), monday_only())
        claimed = claim_regions(windows, [(at(MONDAY, 10, 15), at(MONDAY, 10, 45))])

        assert is_region_free(claimed, at(MONDAY, 9), at(MONDAY, 10)) is True
        assert is_region_free(claimed, at(MONDAY, 10, 45), at(MONDAY, 12)) is True
        assert is_region_free(claimed, at(MONDAY, 9, 30), at(MONDAY, 10, 30)) is False
        assert is_region_free(claimed, at(MONDAY, 16), at(MONDAY, 18)) is False


class TestMergeIntervals:
    """Tests for merge_intervals."""

    def test_merges_overlapping_and_touching(self):
        merged = merge_intervals([(1, 3), (7, 8), (2, 5), (5, 6)])
        assert merged == [(1, 6), (7, 8)]

    def test_contained_interval(self):
        assert merge_intervals([(1, 10), (2, 3)]) == [(1, 10)]

    def test_empty(self):
        assert merge_intervals([]) == []


class TestAvailabilityMemo:
    """Tests for the caller-owned availability memo."""

    def test_get_or_compute_reuses_value(self):
        """Test that a fingerprint hit skips recomputation."""
        memo = AvailabilityMemo()
        calls = []

        def compute():
            calls.append(1)
            return ["windows"]

        assert memo.get_or_compute("fp", compute) == ["windows"]
        assert memo.get_or_compute("fp", compute) == ["windows"]
        assert len(calls) == 1
        assert memo.hits == 1
        assert memo.misses == 1

    def test_new_fingerprint_recomputes(self):
        memo = AvailabilityMemo()
        memo.get_or_compute("a", lambda: 1)
        assert memo.get_or_compute("b", lambda: 2) == 2
        assert len(memo) == 2

    def test_expired_entries_recompute(self):
        """Test that a zero TTL expires entries immediately."""
        memo = AvailabilityMemo(default_ttl=0)
        memo.set("fp", "old")
        assert memo.get("fp") is None
        assert memo.get_or_compute("fp", lambda: "new") == "new"

    def test_oldest_entry_evicted(self):
        memo = AvailabilityMemo(max_entries=2)
        memo.set("a", 1)
        memo.set("b", 2)
        memo.set("c", 3)
        assert memo.get("a") is None
        assert memo.get("b") == 2
        assert memo.get("c") == 3

    def test_invalidate_and_clear(self):
        memo = AvailabilityMemo()
        memo.set("a", 1)
        memo.set("b", 2)
        memo.invalidate("a")
        assert memo.get("a") is None
        memo.clear()
        assert len(memo) == 0

    def test_fingerprint_is_order_independent(self):
        """Test that dict key order does not change the fingerprint."""
        first = availability_fingerprint({"b": 1, "a": 2}, "user-1")
        second = availability_fingerprint({"a": 2, "b": 1}, "user-1")
        assert first == second
        assert first != availability_fingerprint({"a": 3, "b": 1}, "user-1")
