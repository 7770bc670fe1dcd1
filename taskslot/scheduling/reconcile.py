"""
Calendar to task reconciliation.

Brings a scheduled task back in line with its calendar event after the event
was changed outside the engine:
- event deleted or cancelled -> the task's scheduling fields are cleared
- event moved by more than a minute -> the task takes the event's times
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Sequence

from ..models import CalendarEvent, SyncStatus, Task

# Start/end differences up to this are not treated as a move
DRIFT_TOLERANCE = timedelta(seconds=60)

# Window listed when syncing a calendar, relative to now
SYNC_LOOKBACK = timedelta(days=30)
SYNC_LOOKAHEAD = timedelta(days=90)

UNSCHEDULED_FIELDS = (
    "calendar_event_id",
    "calendar_id",
    "scheduled_start",
    "scheduled_end",
    "buffer_before_event_id",
    "buffer_after_event_id",
    "sync_status",
    "sync_error",
)


def _drifted(current: Optional[datetime], actual: datetime) -> bool:
    return current is None or abs(actual - current) > DRIFT_TOLERANCE


def reconcile_task(task: Task, event: Optional[CalendarEvent]) -> Dict[str, Any]:
    """
    Task changes needed to match the task's calendar event.

    Args:
        task: A scheduled task
        event: Its main event as currently on the calendar, or None when the
            event no longer exists

    Returns:
        Field changes for ``TaskStore.update_task``; empty when the task is
        already in step. All-day events carry no usable times and are left
        alone unless cancelled.
    """
    if event is None or event.is_cancelled:
        return {name: None for name in UNSCHEDULED_FIELDS}
    if event.all_day:
        return {}
    if _drifted(task.scheduled_start, event.start) or _drifted(task.scheduled_end, event.end):
        return {
            "scheduled_start": event.start,
            "scheduled_end": event.end,
            "sync_status": SyncStatus.SYNCED,
            "sync_error": None,
        }
    return {}


def is_unscheduling(changes: Dict[str, Any]) -> bool:
    """Whether ``changes`` from reconcile_task clear the task's schedule."""
    return "calendar_event_id" in changes


def task_events(events: Sequence[CalendarEvent]) -> Dict[str, CalendarEvent]:
    """Main (non-buffer) task events keyed by event id."""
    return {e.event_id: e for e in events if e.is_task_event and not e.is_buffer}
