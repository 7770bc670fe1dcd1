"""
Pytest fixtures for taskslot testing.

Provides:
- A fixed Monday (2025-06-02) and helpers to build aware datetimes on it
- Task and calendar event factories
- Default user preferences
- In-memory calendar, task store and preferences store
- A SchedulingService wired to the in-memory collaborators with a fixed clock
"""

import pytest
from datetime import date, datetime, time, timedelta
from typing import Any, Dict

from taskslot.config import EngineConfig
from taskslot.integrations.memory import InMemoryCalendar, InMemoryPreferencesStore, InMemoryTaskStore
from taskslot.models import (
    CalendarEvent,
    Task,
    TimeRange,
    TimeSlot,
    UserSchedulingPreferences,
)
from taskslot.scheduling.service import SchedulingService
from taskslot.timeutil import get_zone

USER_ID = "user-1"

# 2025-06-01 is a Sunday
SUNDAY = date(2025, 6, 1)
MONDAY = date(2025, 6, 2)
TUESDAY = date(2025, 6, 3)
FRIDAY = date(2025, 6, 6)


# =============================================================================
# TIME FIXTURES
# =============================================================================

@pytest.fixture
def monday():
    return MONDAY


@pytest.fixture
def at():
    """Build an aware datetime: at(day, hour, minute=0, tz="UTC")."""
    def _at(day: date, hour: int, minute: int = 0, tz: str = "UTC") -> datetime:
        return datetime.combine(day, time(hour, minute), tzinfo=get_zone(tz))
    return _at


@pytest.fixture
def slot(at):
    """Build a slot on one day: slot(day, (9, 0), (10, 30))."""
    def _slot(day: date, start: tuple, end: tuple, tz: str = "UTC") -> TimeSlot:
        return TimeSlot(at(day, *start, tz=tz), at(day, *end, tz=tz))
    return _slot


@pytest.fixture
def monday_morning(at):
    """Reference 'now' before the working day starts."""
    return at(MONDAY, 8)


# =============================================================================
# MODEL FACTORIES
# =============================================================================

@pytest.fixture
def make_task():
    """Factory for tasks owned by the default user."""
    def _make(task_id: str = "t1", content: str = "Do the thing", **kwargs: Any) -> Task:
        kwargs.setdefault("user_id", USER_ID)
        return Task(task_id=task_id, content=content, **kwargs)
    return _make


@pytest.fixture
def make_event(at):
    """Factory for timed calendar events on a given day."""
    def _make(
        event_id: str,
        day: date,
        start: tuple,
        end: tuple,
        title: str = "Busy",
        **kwargs: Any
    ) -> CalendarEvent:
        kwargs.setdefault("calendar_id", "primary")
        return CalendarEvent(
            event_id=event_id,
            title=title,
            start=at(day, *start),
            end=at(day, *end),
            **kwargs
        )
    return _make


@pytest.fixture
def all_day_event(at):
    def _make(event_id: str, day: date, days: int = 1, title: str = "Offsite") -> CalendarEvent:
        return CalendarEvent(
            event_id=event_id,
            calendar_id="primary",
            title=title,
            start=at(day, 0),
            end=at(day + timedelta(days=days), 0),
            all_day=True,
        )
    return _make


@pytest.fixture
def preferences():
    """Default preferences: UTC, Mon-Fri 09:00-17:00, default protected slots."""
    return UserSchedulingPreferences(user_id=USER_ID)


@pytest.fixture
def open_preferences():
    """Mon-Fri 09:00-17:00 with no protected slots."""
    return UserSchedulingPreferences(user_id=USER_ID, protected_slots=[])


@pytest.fixture
def weekday_hours():
    def _hours(start: int = 9, end: int = 17) -> Dict[int, TimeRange]:
        return {d: TimeRange(time(start), time(end)) for d in (1, 2, 3, 4, 5)}
    return _hours


# =============================================================================
# COLLABORATOR FIXTURES
# =============================================================================

@pytest.fixture
def fast_config():
    """Config with no retry backoff and a short timeout."""
    return EngineConfig(
        retry_backoff_seconds=0,
        retry_backoff_max_seconds=0,
        external_timeout_seconds=0.5,
    )


@pytest.fixture
def calendar():
    return InMemoryCalendar()


@pytest.fixture
def task_store():
    return InMemoryTaskStore()


@pytest.fixture
def preferences_store(preferences):
    return InMemoryPreferencesStore([preferences])


@pytest.fixture
def make_service(calendar, task_store, preferences_store, fast_config, monday_morning):
    """Factory for a SchedulingService over the in-memory collaborators."""
    def _make(now: datetime = None, config: EngineConfig = None, **kwargs: Any) -> SchedulingService:
        clock_time = now or monday_morning
        return SchedulingService(
            calendar,
            task_store,
            preferences_store,
            config=config or fast_config,
            clock=lambda: clock_time,
            **kwargs
        )
    return _make

