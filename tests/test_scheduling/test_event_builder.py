"""
Tests for calendar event payloads.

Tests cover:
- Task and buffer event bodies
- Metadata round trip through parse_event
- Parsing of all-day, cancelled and malformed events
"""

from datetime import date, time

from taskslot.models import BufferType, EventStatus, Priority, TaskType
from taskslot.scheduling.event_builder import (
    BUFFER_COLOR,
    METADATA_KEYS,
    build_buffer_event,
    build_event_description,
    build_event_summary,
    build_task_event,
    build_time_patch,
    buffer_slots,
    event_to_body,
    get_event_metadata,
    is_task_event,
    parse_event,
    parse_events,
)

MONDAY = date(2025, 6, 2)


class TestTaskEvent:
    """Tests for build_task_event."""

    def test_summary_and_description(self, make_task):
        task = make_task(
            content="Write proposal",
            task_type=TaskType.DEEP_WORK,
            project="Atlas",
            time_estimate=90,
            due_date=date(2025, 6, 4),
            due_time=time(17, 0),
        )
        assert build_event_summary(task) == "[deep_work] Write proposal"
        description = build_event_description(task)
        assert "Project: Atlas" in description
        assert "Estimated time: 90 minutes" in description
        assert "Due: 2025-06-04 at 17:00" in description

    def test_summary_without_type(self, make_task):
        assert build_event_summary(make_task(content="Tidy desk")) == "Tidy desk"

    def test_body(self, make_task, slot):
        task = make_task(priority=Priority.HIGH)
        body = build_task_event(task, slot(MONDAY, (9, 0), (10, 0)), "Europe/London")

        assert body["start"] == {"dateTime": "2025-06-02T09:00:00+00:00", "timeZone": "Europe/London"}
        assert body["colorId"] == "11"
        assert body["reminders"]["overrides"] == [
            {"method": "popup", "minutes": 30},
            {"method": "popup", "minutes": 10},
        ]
        private = body["extendedProperties"]["private"]
        assert private[METADATA_KEYS["task_id"]] == "t1"
        assert private[METADATA_KEYS["priority"]] == "high"

    def test_time_patch(self, slot):
        patch = build_time_patch(slot(MONDAY, (9, 0), (10, 0)))
        assert set(patch) == {"start", "end"}
        assert patch["end"]["dateTime"] == "2025-06-02T10:00:00+00:00"


class TestBufferEvents:
    """Tests for buffer slots and bodies."""

    def test_buffer_slots(self, slot, at):
        before, after = buffer_slots(slot(MONDAY, (9, 0), (10, 0)), 15, 10)
        assert (before.start, before.end) == (at(MONDAY, 8, 45), at(MONDAY, 9))
        assert (after.start, after.end) == (at(MONDAY, 10), at(MONDAY, 10, 10))

    def test_zero_buffers(self, slot):
        assert buffer_slots(slot(MONDAY, (9, 0), (10, 0)), 0, 0) == (None, None)

    def test_prep_and_wind_down(self, make_task, slot):
        task = make_task(content="Client call")
        prep = build_buffer_event(task, BufferType.BEFORE, slot(MONDAY, (8, 45), (9, 0)))
        wind_down = build_buffer_event(task, BufferType.AFTER, slot(MONDAY, (10, 0), (10, 15)))

        assert prep["summary"] == "Prep: Client call"
        assert wind_down["summary"] == "Wind-down: Client call"
        assert prep["transparency"] == "transparent"
        assert prep["colorId"] == BUFFER_COLOR
        assert prep["extendedProperties"]["private"][METADATA_KEYS["buffer_type"]] == "before"


class TestParseEvent:
    """Tests for parse_event and metadata."""

    def test_round_trip_task_event(self, make_task, slot, at):
        task = make_task(priority=Priority.LOW)
        body = build_task_event(task, slot(MONDAY, (9, 0), (10, 0)))
        body["id"] = "evt-1"

        assert is_task_event(body)
        event = parse_event(body)
        assert event.event_id == "evt-1"
        assert event.task_id == "t1"
        assert event.priority == Priority.LOW
        assert event.buffer_type is None
        assert event.start == at(MONDAY, 9)
        assert event.displaceable is False

    def test_round_trip_buffer(self, make_task, slot):
        body = build_buffer_event(make_task(), BufferType.AFTER, slot(MONDAY, (10, 0), (10, 15)))
        body["id"] = "evt-2"
        event = parse_event(body, "work")
        assert event.is_buffer
        assert event.buffer_type == BufferType.AFTER
        assert event.calendar_id == "work"

    def test_external_event(self):
        body = {
            "id": "ext",
            "summary": "Dentist",
            "start": {"dateTime": "2025-06-02T14:00:00Z"},
            "end": {"dateTime": "2025-06-02T15:00:00Z"},
        }
        assert get_event_metadata(body) is None
        event = parse_event(body, timezone="Europe/London")
        assert event.task_id is None
        assert event.start.hour == 15
        assert event.status == EventStatus.CONFIRMED

    def test_all_day(self):
        body = {"id": "off", "start": {"date": "2025-06-02"}, "end": {"date": "2025-06-04"}}
        event = parse_event(body)
        assert event.all_day is True
        assert event.title == "Untitled Event"
        assert event.start.date() == MONDAY
        assert event.end.date() == date(2025, 6, 4)

    def test_cancelled(self):
        body = {
            "id": "gone",
            "status": "cancelled",
            "start": {"dateTime": "2025-06-02T09:00:00Z"},
            "end": {"dateTime": "2025-06-02T10:00:00Z"},
        }
        assert parse_event(body).is_cancelled

    def test_displaceable_flag(self):
        body = {
            "id": "flex",
            "start": {"dateTime": "2025-06-02T09:00:00Z"},
            "end": {"dateTime": "2025-06-02T10:00:00Z"},
            "extendedProperties": {"private": {METADATA_KEYS["displaceable"]: "true"}},
        }
        assert parse_event(body).displaceable is True

    def test_malformed_events_are_skipped(self):
        raw = [
            {"id": "no-start"},
            {"id": "bad-time", "start": {"dateTime": "soon"}, "end": {"dateTime": "later"}},
            {
                "id": "backwards",
                "start": {"dateTime": "2025-06-02T10:00:00Z"},
                "end": {"dateTime": "2025-06-02T09:00:00Z"},
            },
            {
                "id": "ok",
                "start": {"dateTime": "2025-06-02T09:00:00Z"},
                "end": {"dateTime": "2025-06-02T10:00:00Z"},
            },
        ]
        assert [e.event_id for e in parse_events(raw)] == ["ok"]

    def test_event_to_body_inverts_parse(self, make_event):
        event = make_event(
            "evt-9", MONDAY, (9, 0), (10, 0),
            title="Tidy notes", task_id="t9", priority=Priority.LOW, displaceable=True,
        )
        assert parse_event(event_to_body(event)) == event

    def test_all_day_to_body(self, all_day_event):
        body = event_to_body(all_day_event("off", MONDAY, days=2))
        assert body["start"] == {"date": "2025-06-02"}
        assert body["end"] == {"date": "2025-06-04"}
