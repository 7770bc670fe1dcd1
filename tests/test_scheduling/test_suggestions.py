"""
Tests for the suggestion generator.

Tests cover:
- Candidate start enumeration
- Ranking, distinctness and the count limit
- Skipping past starts and protected time
- Date range filtering
"""

import pytest
from datetime import date

from taskslot.config import EngineConfig
from taskslot.errors import ValidationError
from taskslot.models import ConflictType, DateRange, Priority, SchedulingSuggestion, TaskType
from taskslot.scheduling.availability import compute_availability
from taskslot.scheduling.protected import default_protected_slots
from taskslot.scheduling.suggestions import candidate_starts, get_suggestions, select_distinct

MONDAY = date(2025, 6, 2)
TUESDAY = date(2025, 6, 3)


@pytest.fixture
def deep_task(make_task):
    return make_task("t-deep", "Write architecture proposal", task_type=TaskType.DEEP_WORK)


@pytest.fixture
def availability(weekday_hours):
    """Availability builder over Mon-Fri 09:00-17:00."""
    def _build(events=(), protected=(), days=(MONDAY, MONDAY)):
        return compute_availability(list(events), list(protected), weekday_hours(), DateRange(*days))
    return _build


def spans(suggestions):
    return [(s.slot.start.strftime("%a %H:%M"), s.slot.end.strftime("%H:%M")) for s in suggestions]


class TestCandidateStarts:
    """Tests for candidate_starts."""

    def test_run_start_then_clock_aligned(self, slot):
        starts = list(candidate_starts(slot(MONDAY, (9, 10), (10, 40)), 60, 15))
        assert [s.strftime("%H:%M") for s in starts] == ["09:10", "09:15", "09:30"]

    def test_exact_fit(self, slot):
        starts = list(candidate_starts(slot(MONDAY, (9, 0), (10, 0)), 60, 15))
        assert [s.strftime("%H:%M") for s in starts] == ["09:00"]

    def test_too_short(self, slot):
        assert list(candidate_starts(slot(MONDAY, (9, 0), (9, 30)), 60, 15)) == []


class TestSelectDistinct:
    """Tests for select_distinct."""

    def test_skips_overlapping(self, slot):
        ranked = [
            SchedulingSuggestion(slot(MONDAY, (9, 0), (10, 0)), 90, ""),
            SchedulingSuggestion(slot(MONDAY, (9, 30), (10, 30)), 85, ""),
            SchedulingSuggestion(slot(MONDAY, (10, 0), (11, 0)), 80, ""),
            SchedulingSuggestion(slot(MONDAY, (13, 0), (14, 0)), 70, ""),
        ]
        chosen = select_distinct(ranked, 2)
        assert [s.score for s in chosen] == [90, 80]


class TestGetSuggestions:
    """Tests for get_suggestions."""

    def test_deep_work_on_empty_morning(self, deep_task, availability, open_preferences, monday_morning):
        """Test that deep work lands in the morning, then the best remaining slots."""
        suggestions = get_suggestions(
            deep_task, [], [], availability(), 3,
            now=monday_morning, preferences=open_preferences,
        )
        assert spans(suggestions) == [
            ("Mon 09:00", "11:00"),
            ("Mon 11:00", "13:00"),
            ("Mon 13:00", "15:00"),
        ]
        assert suggestions[0].score == pytest.approx(82.5)
        assert suggestions[0].score >= suggestions[1].score >= suggestions[2].score
        assert suggestions[0].conflicts == []
        # Outside preferred hours shows up as an info conflict
        assert suggestions[1].conflicts[0].severity.value == "info"

    def test_suggestions_avoid_events(self, deep_task, availability, open_preferences, monday_morning, make_event):
        events = [make_event("e1", MONDAY, (9, 0), (10, 0), title="Standup")]
        suggestions = get_suggestions(
            deep_task, [], [], availability(events), 3,
            now=monday_morning, events=events, preferences=open_preferences,
        )
        assert spans(suggestions)[0] == ("Mon 10:00", "12:00")
        for suggestion in suggestions:
            assert not events[0].overlaps(suggestion.slot.start, suggestion.slot.end)

    def test_distinct_and_limited(self, deep_task, availability, open_preferences, monday_morning):
        suggestions = get_suggestions(
            deep_task, [], [], availability(days=(MONDAY, TUESDAY)), 5,
            now=monday_morning, preferences=open_preferences,
        )
        assert len(suggestions) == 5
        for i, first in enumerate(suggestions):
            for second in suggestions[i + 1:]:
                assert not first.slot.overlaps(second.slot.start, second.slot.end)

    def test_skips_starts_before_now(self, deep_task, availability, open_preferences, at):
        now = at(MONDAY, 10, 20)
        suggestions = get_suggestions(
            deep_task, [], [], availability(), 3, now=now, preferences=open_preferences,
        )
        assert suggestions
        assert all(s.slot.start >= now for s in suggestions)

    def test_protected_time_is_avoided(self, deep_task, availability, preferences, monday_morning):
        protected = default_protected_slots()
        suggestions = get_suggestions(
            deep_task, [], protected, availability(protected=protected), 3,
            now=monday_morning, preferences=preferences,
        )
        assert suggestions
        for suggestion in suggestions:
            assert not suggestion.slot.overlaps(
                suggestion.slot.start.replace(hour=12), suggestion.slot.start.replace(hour=13)
            )
            assert not suggestion.slot.overlaps(
                suggestion.slot.start.replace(hour=15), suggestion.slot.start.replace(hour=16)
            )

    def test_urgent_task_may_use_calls_slot(self, make_task, availability, preferences, monday_morning, at):
        """Test that an urgent task is offered the overridable calls slot with a warning."""
        protected = default_protected_slots()
        task = make_task("t-urgent", "Ring the bank", priority=Priority.HIGH, time_estimate=60)
        suggestions = get_suggestions(
            task, [], protected, availability(protected=protected), 10,
            now=monday_morning, preferences=preferences,
        )
        in_calls_slot = [s for s in suggestions if s.slot.start == at(MONDAY, 15)]
        assert len(in_calls_slot) == 1
        assert [c.severity.value for c in in_calls_slot[0].conflicts] == ["warning"]

    def test_date_range_filter(self, deep_task, availability, open_preferences, monday_morning):
        suggestions = get_suggestions(
            deep_task, [], [], availability(days=(MONDAY, TUESDAY)), 3,
            date_range=DateRange(TUESDAY, TUESDAY),
            now=monday_morning, preferences=open_preferences,
        )
        assert suggestions
        assert all(s.slot.start.date() == TUESDAY for s in suggestions)

    def test_duration_override(self, deep_task, availability, open_preferences, monday_morning):
        suggestions = get_suggestions(
            deep_task, [], [], availability(), 1,
            now=monday_morning, preferences=open_preferences, duration=45,
        )
        assert suggestions[0].slot.duration_minutes == 45

    def test_uses_time_estimate(self, make_task, availability, open_preferences, monday_morning):
        task = make_task(content="Write summary", time_estimate=30)
        suggestions = get_suggestions(
            task, [], [], availability(), 1, now=monday_morning, preferences=open_preferences,
        )
        assert suggestions[0].slot.duration_minutes == 30

    def test_no_room(self, deep_task, availability, open_preferences, monday_morning, all_day_event):
        events = [all_day_event("e1", MONDAY)]
        suggestions = get_suggestions(
            deep_task, [], [], availability(events), 3,
            now=monday_morning, events=events, preferences=open_preferences,
        )
        assert suggestions == []

    def test_deterministic(self, deep_task, availability, open_preferences, monday_morning):
        first = get_suggestions(deep_task, [], [], availability(), 3, now=monday_morning, preferences=open_preferences)
        second = get_suggestions(deep_task, [], [], availability(), 3, now=monday_morning, preferences=open_preferences)
        assert first == second

    def test_count_must_be_positive(self, deep_task, availability, monday_morning):
        with pytest.raises(ValidationError):
            get_suggestions(deep_task, [], [], availability(), 0, now=monday_morning)

    def test_candidate_interval_from_config(self, make_task, availability, open_preferences, monday_morning):
        """Test that a coarser interval yields fewer distinct candidates."""
        task = make_task(content="Write summary", time_estimate=60)
        config = EngineConfig(candidate_interval_minutes=60)
        suggestions = get_suggestions(
            task, [], [], availability(), 20,
            now=monday_morning, preferences=open_preferences, config=config,
        )
        assert all(s.slot.start.minute == 0 for s in suggestions)
        assert len(suggestions) == 8

    def test_buffers_follow_arguments(self, make_task, availability, open_preferences, monday_morning, make_event):
        """Test that buffer conflicts use the buffers passed in, not the rule's."""
        call = make_task("t-call", "Call supplier", task_type=TaskType.CALL)
        events = [
            make_event("morning", MONDAY, (9, 0), (13, 0)),
            make_event("afternoon", MONDAY, (13, 30), (17, 0)),
        ]

        def buffer_conflicts(**buffers):
            suggestions = get_suggestions(
                call, [], [], availability(events), 3,
                now=monday_morning, events=events, preferences=open_preferences, **buffers,
            )
            return [c for s in suggestions for c in s.conflicts if c.conflict_type == ConflictType.BUFFER]

        # The only free half hour sits between the two blocks
        assert buffer_conflicts() != []
        assert buffer_conflicts(buffer_before=0, buffer_after=0) == []
