"""
Collaborator interfaces for the scheduling engine.

The engine never talks to a calendar or a database directly; it goes through
these protocols. Implementations:
- memory: in-memory calendar, task store and preferences (tests, CLI)
- google_calendar: Google Calendar v3 via google-api-python-client

Error contract for every implementation:
- ExternalResourceGone when the calendar, event or access no longer exists
- ExternalWriteFailure for anything else that went wrong talking to the backend
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from ..models import CalendarEvent, Task, UserSchedulingPreferences


@runtime_checkable
class CalendarClient(Protocol):
    """Protocol for calendar backends."""

    async def list_events(
        self,
        calendar_id: str,
        start: datetime,
        end: datetime
    ) -> List[CalendarEvent]:
        """List events overlapping [start, end), recurring events expanded."""
        ...

    async def create_event(self, calendar_id: str, body: Dict[str, Any]) -> CalendarEvent:
        """Create an event from a Google Calendar style body."""
        ...

    async def update_event(
        self,
        calendar_id: str,
        event_id: str,
        body: Dict[str, Any]
    ) -> CalendarEvent:
        """Patch an existing event."""
        ...

    async def delete_event(self, calendar_id: str, event_id: str) -> None:
        """Delete an event."""
        ...


@runtime_checkable
class TaskStore(Protocol):
    """Protocol for task persistence."""

    async def get_task(self, task_id: str) -> Optional[Task]:
        ...

    async def list_tasks(self, user_id: str) -> List[Task]:
        ...

    async def update_task(self, task_id: str, changes: Dict[str, Any]) -> Task:
        """Apply field changes and return the updated task."""
        ...


@runtime_checkable
class PreferencesStore(Protocol):
    """Protocol for per-user scheduling preferences."""

    async def get_preferences(self, user_id: str) -> UserSchedulingPreferences:
        ...


__all__ = [
    "CalendarClient",
    "TaskStore",
    "PreferencesStore",
]
