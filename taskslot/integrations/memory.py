"""
In-memory collaborators.

Used by the test suite and the CLI. The calendar keeps Google-style event
bodies so the same event builder and parser run as against the real API,
and supports injecting failures and delays per operation.
"""

import asyncio
import copy
import itertools
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..errors import ExternalResourceGone, TaskNotFound
from ..models import CalendarEvent, Task, UserSchedulingPreferences
from ..scheduling.event_builder import event_to_body, get_event_metadata, parse_event

logger = logging.getLogger(__name__)


@dataclass
class _Failure:
    operation: str
    error: Exception
    remaining: Optional[int]
    task_id: Optional[str] = None
    event_id: Optional[str] = None

    def matches(self, operation: str, task_id: Optional[str], event_id: Optional[str]) -> bool:
        if self.operation != operation:
            return False
        if self.remaining is not None and self.remaining <= 0:
            return False
        if self.task_id is not None and self.task_id != task_id:
            return False
        if self.event_id is not None and self.event_id != event_id:
            return False
        return True


class InMemoryCalendar:
    """
    Calendar backend held in memory.

    Example:
        calendar = InMemoryCalendar()
        calendar.add_event(event)
        calendar.fail("create_event", ExternalWriteFailure("boom"), task_id="t1")
    """

    def __init__(self, events: Iterable[CalendarEvent] = (), timezone: str = "UTC"):
        self.timezone = timezone
        self._calendars: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._ids = itertools.count(1)
        self._failures: List[_Failure] = []
        self._delays: Dict[str, float] = {}
        # (operation, calendar_id, event_id) for every successful call
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        for event in events:
            self.add_event(event)

    # -------------------------------------------------------------------------
    # Test helpers
    # -------------------------------------------------------------------------

    def add_event(self, event: CalendarEvent) -> None:
        body = event_to_body(event, self.timezone)
        self._calendars.setdefault(event.calendar_id, {})[event.event_id] = body

    def events(self, calendar_id: str = "primary") -> List[CalendarEvent]:
        """All events in a calendar, sorted by start."""
        parsed = [
            parse_event(body, calendar_id, self.timezone)
            for body in self._calendars.get(calendar_id, {}).values()
        ]
        return sorted((e for e in parsed if e is not None), key=lambda e: (e.start, e.event_id))

    def get_event(self, calendar_id: str, event_id: str) -> Optional[CalendarEvent]:
        body = self._calendars.get(calendar_id, {}).get(event_id)
        return parse_event(body, calendar_id, self.timezone) if body else None

    def fail(
        self,
        operation: str,
        error: Exception,
        times: Optional[int] = 1,
        task_id: Optional[str] = None,
        event_id: Optional[str] = None,
    ) -> None:
        """Make ``operation`` raise ``error``; ``times=None`` fails forever."""
        self._failures.append(_Failure(operation, error, times, task_id, event_id))

    def delay(self, operation: str, seconds: float) -> None:
        self._delays[operation] = seconds

    def write_calls(self) -> List[Tuple[str, str, Optional[str]]]:
        return [c for c in self.calls if c[0] != "list_events"]

    # -------------------------------------------------------------------------
    # CalendarClient
    # -------------------------------------------------------------------------

    async def list_events(self, calendar_id: str, start: datetime, end: datetime) -> List[CalendarEvent]:
        await self._before("list_events")
        self.calls.append(("list_events", calendar_id, None))
        return [e for e in self.events(calendar_id) if e.start < end and start < e.end]

    async def create_event(self, calendar_id: str, body: Dict[str, Any]) -> CalendarEvent:
        await self._before("create_event", body=body)
        event_id = f"evt-{next(self._ids)}"
        stored = copy.deepcopy(body)
        stored["id"] = event_id
        self._calendars.setdefault(calendar_id, {})[event_id] = stored
        self.calls.append(("create_event", calendar_id, event_id))
        return parse_event(stored, calendar_id, self.timezone)

    async def update_event(self, calendar_id: str, event_id: str, body: Dict[str, Any]) -> CalendarEvent:
        stored = self._calendars.get(calendar_id, {}).get(event_id)
        await self._before("update_event", body=stored, event_id=event_id)
        if stored is None:
            raise ExternalResourceGone(f"Event not found: {event_id}", resource_id=event_id)
        for key, value in copy.deepcopy(body).items():
            stored[key] = value
        self.calls.append(("update_event", calendar_id, event_id))
        return parse_event(stored, calendar_id, self.timezone)

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        stored = self._calendars.get(calendar_id, {}).get(event_id)
        await self._before("delete_event", body=stored, event_id=event_id)
        if stored is None:
            raise ExternalResourceGone(f"Event not found: {event_id}", resource_id=event_id)
        del self._calendars[calendar_id][event_id]
        self.calls.append(("delete_event", calendar_id, event_id))

    async def _before(
        self,
        operation: str,
        body: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
    ) -> None:
        delay = self._delays.get(operation)
        if delay:
            await asyncio.sleep(delay)
        metadata = get_event_metadata(body) if body else None
        task_id = metadata["task_id"] if metadata else None
        for failure in self._failures:
            if failure.matches(operation, task_id, event_id):
                if failure.remaining is not None:
                    failure.remaining -= 1
                logger.debug(f"Injected failure on {operation}: {failure.error}")
                raise failure.error


class InMemoryTaskStore:
    """Task store held in memory; returns copies so callers cannot mutate state."""

    def __init__(self, tasks: Iterable[Task] = ()):
        self._tasks: Dict[str, Task] = {t.task_id: t for t in tasks}
        self._failures: List[_Failure] = []
        # (task_id, changes) for every successful update
        self.updates: List[Tuple[str, Dict[str, Any]]] = []

    def add_task(self, task: Task) -> None:
        self._tasks[task.task_id] = task

    def fail(self, error: Exception, times: Optional[int] = 1, task_id: Optional[str] = None) -> None:
        self._failures.append(_Failure("update_task", error, times, task_id))

    def snapshot(self, task_id: str) -> Task:
        return replace(self._tasks[task_id])

    async def get_task(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return replace(task) if task else None

    async def list_tasks(self, user_id: str) -> List[Task]:
        return [replace(t) for t in self._tasks.values() if t.user_id == user_id]

    async def update_task(self, task_id: str, changes: Dict[str, Any]) -> Task:
        if task_id not in self._tasks:
            raise TaskNotFound(task_id)
        for failure in self._failures:
            if failure.matches("update_task", task_id, None):
                if failure.remaining is not None:
                    failure.remaining -= 1
                raise failure.error
        updated = replace(self._tasks[task_id], **changes)
        self._tasks[task_id] = updated
        self.updates.append((task_id, dict(changes)))
        return replace(updated)


class InMemoryPreferencesStore:
    """Preferences held in memory; unknown users get defaults."""

    def __init__(self, preferences: Iterable[UserSchedulingPreferences] = ()):
        self._preferences = {p.user_id: p for p in preferences}
        self._failures: List[_Failure] = []

    def set_preferences(self, preferences: UserSchedulingPreferences) -> None:
        self._preferences[preferences.user_id] = preferences

    def fail(self, error: Exception, times: Optional[int] = 1) -> None:
        self._failures.append(_Failure("get_preferences", error, times))

    async def get_preferences(self, user_id: str) -> UserSchedulingPreferences:
        for failure in self._failures:
            if failure.matches("get_preferences", None, None):
                if failure.remaining is not None:
                    failure.remaining -= 1
                raise failure.error
        return self._preferences.get(user_id) or UserSchedulingPreferences(user_id=user_id)
