"""
Protected time slots.

Recurring weekly windows (lunch, a slot kept free for ad-hoc calls) that the
engine will not schedule into. A slot may allow urgent tasks to override it;
urgent means high priority or due within the next 24 hours.
"""

from dataclasses import dataclass, replace
from datetime import datetime, time, timedelta
from typing import List, Sequence

from ..models import (
    Conflict,
    ConflictSeverity,
    ConflictType,
    DateRange,
    Priority,
    ProtectedSlot,
    Task,
    TimeRange,
    UserSchedulingPreferences,
)
from ..timeutil import combine, day_of_week, get_zone

ADHOC_CALLS_SLOT_ID = "adhoc-calls"
LUNCH_SLOT_ID = "lunch"

URGENT_WINDOW = timedelta(hours=24)


@dataclass(frozen=True)
class ProtectedInstance:
    """A protected slot on a specific date."""
    slot: ProtectedSlot
    start: datetime
    end: datetime


def default_protected_slots() -> List[ProtectedSlot]:
    """3-4pm kept free for ad-hoc calls, and lunch which cannot be overridden."""
    return [
        ProtectedSlot(
            slot_id=ADHOC_CALLS_SLOT_ID,
            name="Ad-hoc calls",
            days_of_week=(1, 2, 3, 4, 5),
            time_range=TimeRange(time(15), time(16)),
            enabled=True,
            allow_override_for_urgent=True,
        ),
        ProtectedSlot(
            slot_id=LUNCH_SLOT_ID,
            name="Lunch",
            days_of_week=(1, 2, 3, 4, 5),
            time_range=TimeRange(time(12), time(13)),
            enabled=True,
            allow_override_for_urgent=False,
        ),
    ]


def effective_protected_slots(preferences: UserSchedulingPreferences) -> List[ProtectedSlot]:
    """
    Protected slots in force for a user.

    Users without their own list get the defaults. Turning off
    ``keep_slot_free_for_calls`` disables the ad-hoc calls slot.
    """
    slots = preferences.protected_slots
    if slots is None:
        slots = default_protected_slots()
    if not preferences.keep_slot_free_for_calls:
        slots = [
            replace(s, enabled=False) if s.slot_id == ADHOC_CALLS_SLOT_ID else s
            for s in slots
        ]
    return list(slots)


def is_urgent_task(task: Task, now: datetime, timezone: str = "UTC") -> bool:
    if task.priority == Priority.HIGH:
        return True
    due = task.due_datetime(timezone)
    return due is not None and due - now <= URGENT_WINDOW


def can_override(task: Task, slot: ProtectedSlot, now: datetime, timezone: str = "UTC") -> bool:
    return slot.allow_override_for_urgent and is_urgent_task(task, now, timezone)


def overridable_slot_ids(
    task: Task,
    protected_slots: Sequence[ProtectedSlot],
    now: datetime,
    timezone: str = "UTC",
) -> set:
    """Ids of enabled protected slots this task may be placed into."""
    if not is_urgent_task(task, now, timezone):
        return set()
    return {s.slot_id for s in protected_slots if s.enabled and s.allow_override_for_urgent}


def expand_protected_slots(
    protected_slots: Sequence[ProtectedSlot],
    date_range: DateRange,
    timezone: str = "UTC",
) -> List[ProtectedInstance]:
    """Concrete protected intervals for each date in range, sorted by start."""
    tz = get_zone(timezone)
    instances = []
    for day in date_range.days():
        dow = day_of_week(day)
        for slot in protected_slots:
            if slot.enabled and dow in slot.days_of_week:
                instances.append(ProtectedInstance(
                    slot=slot,
                    start=combine(day, slot.time_range.start, tz),
                    end=combine(day, slot.time_range.end, tz),
                ))
    instances.sort(key=lambda i: (i.start, i.slot.slot_id))
    return instances


def protected_conflicts(
    task: Task,
    start: datetime,
    end: datetime,
    protected_slots: Sequence[ProtectedSlot],
    now: datetime,
    timezone: str = "UTC",
) -> List[Conflict]:
    """
    Conflicts for placing ``task`` over protected time.

    Warning when the task may override the slot, error otherwise.
    """
    tz = get_zone(timezone)
    local_start = start.astimezone(tz)
    local_end = end.astimezone(tz)
    date_range = DateRange(local_start.date(), local_end.date())

    conflicts = []
    for instance in expand_protected_slots(protected_slots, date_range, timezone):
        if not (instance.start < end and start < instance.end):
            continue
        slot = instance.slot
        if can_override(task, slot, now, timezone):
            conflicts.append(Conflict(
                conflict_type=ConflictType.PROTECTED_SLOT,
                severity=ConflictSeverity.WARNING,
                description=f"Uses protected time '{slot.name}' (urgent override)",
                resolution="Urgent task may use this slot",
            ))
        else:
            conflicts.append(Conflict(
                conflict_type=ConflictType.PROTECTED_SLOT,
                severity=ConflictSeverity.ERROR,
                description=f"Overlaps protected time '{slot.name}'",
                resolution="Choose a time outside protected slots",
            ))
    return conflicts
