"""
Calendar event payloads.

Builds Google Calendar v3 event bodies for tasks and their buffer events and
reads them back into CalendarEvent objects. Task metadata (task id, priority,
buffer type, format version) is kept in the event's private extended
properties so events created here can be recognised later.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from ..errors import ValidationError
from ..models import BufferType, CalendarEvent, EventStatus, Priority, Task, TimeSlot
from ..timeutil import get_zone, normalize_datetime

logger = logging.getLogger(__name__)

EVENT_METADATA_VERSION = "1"

METADATA_KEYS = {
    "task_id": "taskslotTaskId",
    "priority": "taskslotPriority",
    "buffer_type": "taskslotBufferType",
    "version": "taskslotVersion",
    "displaceable": "taskslotDisplaceable",
}

PRIORITY_COLORS = {
    Priority.HIGH: "11",    # Red
    Priority.MEDIUM: "5",   # Yellow
    Priority.LOW: "9",      # Blue
}
BUFFER_COLOR = "8"          # Gray

PRIORITY_REMINDERS = {
    Priority.HIGH: [30, 10],
    Priority.MEDIUM: [15],
    Priority.LOW: [5],
}


# =============================================================================
# BUILDING
# =============================================================================

def build_event_summary(task: Task) -> str:
    prefix = f"[{task.task_type.value}] " if task.task_type else ""
    return f"{prefix}{task.content}"


def build_event_description(task: Task) -> str:
    lines = [task.content, "", "--- Scheduled task ---", f"Priority: {task.priority.value}"]
    if task.project:
        lines.append(f"Project: {task.project}")
    if task.category:
        lines.append(f"Category: {task.category}")
    if task.time_estimate:
        lines.append(f"Estimated time: {task.time_estimate} minutes")
    if task.due_date:
        due = task.due_date.isoformat()
        if task.due_time:
            due += f" at {task.due_time.strftime('%H:%M')}"
        lines.append(f"Due: {due}")
    lines.extend(["", "Do not modify the extended properties of this event."])
    return "\n".join(lines)


def _when(value: datetime, timezone: str) -> Dict[str, str]:
    return {"dateTime": value.isoformat(), "timeZone": timezone}


def build_time_patch(slot: TimeSlot, timezone: str = "UTC") -> Dict[str, Any]:
    """Patch body that moves an event to ``slot``."""
    return {"start": _when(slot.start, timezone), "end": _when(slot.end, timezone)}


def build_task_event(task: Task, slot: TimeSlot, timezone: str = "UTC") -> Dict[str, Any]:
    """
    Build the event body for a scheduled task.

    Args:
        task: The task being scheduled
        slot: When it is scheduled
        timezone: IANA timezone for the event

    Returns:
        Google Calendar event body
    """
    return {
        "summary": build_event_summary(task),
        "description": build_event_description(task),
        "start": _when(slot.start, timezone),
        "end": _when(slot.end, timezone),
        "colorId": PRIORITY_COLORS[task.priority],
        "status": "confirmed",
        "extendedProperties": {
            "private": {
                METADATA_KEYS["task_id"]: task.task_id,
                METADATA_KEYS["priority"]: task.priority.value,
                METADATA_KEYS["version"]: EVENT_METADATA_VERSION,
            },
        },
        "reminders": {
            "useDefault": False,
            "overrides": [{"method": "popup", "minutes": m} for m in PRIORITY_REMINDERS[task.priority]],
        },
    }


def buffer_slots(slot: TimeSlot, before: int, after: int) -> Tuple[Optional[TimeSlot], Optional[TimeSlot]]:
    """Slots for the before/after buffers of ``slot``; None where the buffer is zero."""
    before_slot = TimeSlot(slot.start - timedelta(minutes=before), slot.start) if before > 0 else None
    after_slot = TimeSlot(slot.end, slot.end + timedelta(minutes=after)) if after > 0 else None
    return before_slot, after_slot


def build_buffer_event(
    task: Task,
    buffer_type: BufferType,
    slot: TimeSlot,
    timezone: str = "UTC",
) -> Dict[str, Any]:
    """Build a prep (before) or wind-down (after) buffer event body."""
    if buffer_type == BufferType.BEFORE:
        title = f"Prep: {task.content}"
        description = f"Preparation time for: {task.content}"
    else:
        title = f"Wind-down: {task.content}"
        description = f"Wind-down time after: {task.content}"

    return {
        "summary": title,
        "description": description,
        "start": _when(slot.start, timezone),
        "end": _when(slot.end, timezone),
        "colorId": BUFFER_COLOR,
        "status": "confirmed",
        # Buffers should not show as busy to other people
        "transparency": "transparent",
        "extendedProperties": {
            "private": {
                METADATA_KEYS["task_id"]: task.task_id,
                METADATA_KEYS["buffer_type"]: buffer_type.value,
                METADATA_KEYS["version"]: EVENT_METADATA_VERSION,
            },
        },
        "reminders": {"useDefault": False, "overrides": []},
    }


# =============================================================================
# READING
# =============================================================================

def get_event_metadata(raw_event: Dict[str, Any]) -> Optional[Dict[str, str]]:
    """Task metadata from an event body, or None for events not created here."""
    private = (raw_event.get("extendedProperties") or {}).get("private") or {}
    task_id = private.get(METADATA_KEYS["task_id"])
    if not task_id:
        return None
    return {
        "task_id": task_id,
        "priority": private.get(METADATA_KEYS["priority"]),
        "buffer_type": private.get(METADATA_KEYS["buffer_type"]),
        "version": private.get(METADATA_KEYS["version"]),
    }


def is_task_event(raw_event: Dict[str, Any]) -> bool:
    return get_event_metadata(raw_event) is not None


def parse_event(
    raw_event: Dict[str, Any],
    calendar_id: str = "primary",
    timezone: str = "UTC",
) -> Optional[CalendarEvent]:
    """
    Parse a Google Calendar event body into a CalendarEvent.

    Returns:
        CalendarEvent, or None if the event has no usable start/end
    """
    tz = get_zone(timezone)
    try:
        start_data = raw_event.get("start", {})
        end_data = raw_event.get("end", {})

        if "dateTime" in start_data:
            start = normalize_datetime(start_data["dateTime"], tz)
            end = normalize_datetime(end_data["dateTime"], tz)
            all_day = False
        elif "date" in start_data:
            start = normalize_datetime(start_data["date"], tz)
            end = normalize_datetime(end_data.get("date", start_data["date"]), tz)
            if end <= start:
                end = start + timedelta(days=1)
            all_day = True
        else:
            logger.warning(f"Event missing start time: {raw_event.get('id')}")
            return None

        metadata = get_event_metadata(raw_event) or {}
        private = (raw_event.get("extendedProperties") or {}).get("private") or {}
        priority = metadata.get("priority")
        buffer_type = metadata.get("buffer_type")

        return CalendarEvent(
            event_id=raw_event.get("id", ""),
            calendar_id=calendar_id,
            title=raw_event.get("summary") or "Untitled Event",
            start=start,
            end=end,
            all_day=all_day,
            status=EventStatus(raw_event.get("status", "confirmed")),
            description=raw_event.get("description"),
            task_id=metadata.get("task_id"),
            buffer_type=BufferType(buffer_type) if buffer_type else None,
            priority=Priority(priority) if priority else None,
            recurring_event_id=raw_event.get("recurringEventId"),
            displaceable=private.get(METADATA_KEYS["displaceable"]) == "true",
        )
    except (KeyError, ValueError, ValidationError) as e:
        logger.error(f"Failed to parse event {raw_event.get('id')}: {e}")
        return None


def parse_events(raw_events: List[Dict[str, Any]], calendar_id: str = "primary", timezone: str = "UTC") -> List[CalendarEvent]:
    events = []
    for raw in raw_events:
        event = parse_event(raw, calendar_id, timezone)
        if event is not None:
            events.append(event)
    return events


def event_to_body(event: CalendarEvent, timezone: str = "UTC") -> Dict[str, Any]:
    """Inverse of ``parse_event``: an event body carrying the event's metadata."""
    if event.all_day:
        start = {"date": event.start.date().isoformat()}
        end = {"date": event.end.date().isoformat()}
    else:
        start, end = _when(event.start, timezone), _when(event.end, timezone)

    private: Dict[str, str] = {}
    if event.task_id:
        private[METADATA_KEYS["task_id"]] = event.task_id
        private[METADATA_KEYS["version"]] = EVENT_METADATA_VERSION
    if event.priority:
        private[METADATA_KEYS["priority"]] = event.priority.value
    if event.buffer_type:
        private[METADATA_KEYS["buffer_type"]] = event.buffer_type.value
    if event.displaceable:
        private[METADATA_KEYS["displaceable"]] = "true"

    body: Dict[str, Any] = {
        "id": event.event_id,
        "summary": event.title,
        "start": start,
        "end": end,
        "status": event.status.value,
    }
    if event.description:
        body["description"] = event.description
    if event.recurring_event_id:
        body["recurringEventId"] = event.recurring_event_id
    if private:
        body["extendedProperties"] = {"private": private}
    return body
