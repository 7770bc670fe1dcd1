"""
Conflict detection.

Finds what is wrong with placing a task in a slot: overlapping events,
events eating into the task's buffers, rule violations, protected time and
time outside working hours. Also decides which existing events a task may
displace.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence, Set

from ..models import (
    PRIORITY_WEIGHT,
    CalendarEvent,
    Conflict,
    ConflictSeverity,
    ConflictType,
    EffectiveRule,
    Priority,
    ProtectedSlot,
    Task,
    TimeRange,
    TimeSlot,
)
from ..timeutil import combine, day_of_week, get_zone, iter_days
from .availability import all_day_dates
from .protected import protected_conflicts
from .rules import slot_satisfies_rules

logger = logging.getLogger(__name__)


# =============================================================================
# PRIORITY AND DISPLACEMENT
# =============================================================================

def compare_priorities(a: Priority, b: Priority) -> int:
    """Positive if ``a`` outranks ``b``, negative if lower, 0 if equal."""
    return PRIORITY_WEIGHT[a] - PRIORITY_WEIGHT[b]


def can_displace_by_priority(new_priority: Priority, existing_priority: Priority) -> bool:
    return compare_priorities(new_priority, existing_priority) > 0


def is_displaceable(event: CalendarEvent, priority: Priority) -> bool:
    """
    Whether a task of ``priority`` may push ``event`` to another time.

    Task events may be displaced by strictly higher priority tasks. Buffer
    events move with their task and are never displaced on their own. Events
    with no task link are left alone unless tagged displaceable.
    """
    if event.is_cancelled or event.is_buffer or event.all_day:
        return False
    if event.is_task_event:
        existing = event.priority or Priority.MEDIUM
        return can_displace_by_priority(priority, existing)
    return event.displaceable


# =============================================================================
# CONFLICT DETECTION
# =============================================================================

def slot_dates(start: datetime, end: datetime) -> Set[date]:
    """Dates touched by [start, end), in the timezone of ``start``."""
    last = (end - timedelta(microseconds=1)).astimezone(start.tzinfo)
    return set(iter_days(start.date(), max(start.date(), last.date())))


def find_overlapping_events(
    start: datetime,
    end: datetime,
    events: Sequence[CalendarEvent],
    ignore_task_id: Optional[str] = None,
) -> List[CalendarEvent]:
    """Non-cancelled events that overlap [start, end)."""
    overlapping = []
    for event in events:
        if event.is_cancelled:
            continue
        if ignore_task_id is not None and event.task_id == ignore_task_id:
            continue
        if event.all_day:
            if not all_day_dates(event).isdisjoint(slot_dates(start, end)):
                overlapping.append(event)
            continue
        if event.overlaps(start, end):
            overlapping.append(event)
    return overlapping


def outside_working_hours(
    slot: TimeSlot,
    working_hours: Dict[int, TimeRange],
    timezone: str = "UTC",
) -> bool:
    tz = get_zone(timezone)
    start = slot.start.astimezone(tz)
    end = slot.end.astimezone(tz)
    hours = working_hours.get(day_of_week(start))
    if hours is None:
        return True
    return not (
        combine(start.date(), hours.start, tz) <= start
        and end <= combine(start.date(), hours.end, tz)
    )


def detect_conflicts(
    task: Task,
    slot: TimeSlot,
    events: Sequence[CalendarEvent],
    *,
    rule: Optional[EffectiveRule] = None,
    protected_slots: Sequence[ProtectedSlot] = (),
    working_hours: Optional[Dict[int, TimeRange]] = None,
    buffer_before: int = 0,
    buffer_after: int = 0,
    now: Optional[datetime] = None,
    timezone: str = "UTC",
    ignore_task_id: Optional[str] = None,
) -> List[Conflict]:
    """
    Collect every conflict for placing ``task`` in ``slot``.

    Severities:
        overlap with an event: error
        protected slot: warning if the task may override it, else error
        event inside a buffer: warning
        outside working hours: warning
        rule violation: info

    Args:
        task: Task being placed
        slot: Proposed slot
        events: Calendar events near the slot
        rule: Effective rule for the task type
        protected_slots: Protected slots in force
        working_hours: Working range per day (0 = Sunday)
        buffer_before: Minutes of buffer wanted before the slot
        buffer_after: Minutes of buffer wanted after the slot
        now: Reference time for urgency
        timezone: User's timezone
        ignore_task_id: Events linked to this task are ignored (rescheduling)

    Returns:
        Conflicts in detection order
    """
    conflicts: List[Conflict] = []

    for event in find_overlapping_events(slot.start, slot.end, events, ignore_task_id):
        conflicts.append(Conflict(
            conflict_type=ConflictType.OVERLAP,
            severity=ConflictSeverity.ERROR,
            description=f"Overlaps '{event.title}'",
            resolution="Choose a different time or displace the event",
            conflicting_event_id=event.event_id,
        ))

    if now is not None:
        conflicts.extend(protected_conflicts(
            task, slot.start, slot.end, protected_slots, now, timezone
        ))

    overlapping_ids = {c.conflicting_event_id for c in conflicts}
    buffer_regions = []
    if buffer_before:
        buffer_regions.append(("before", slot.start - timedelta(minutes=buffer_before), slot.start))
    if buffer_after:
        buffer_regions.append(("after", slot.end, slot.end + timedelta(minutes=buffer_after)))
    for label, b_start, b_end in buffer_regions:
        for event in find_overlapping_events(b_start, b_end, events, ignore_task_id):
            if event.event_id in overlapping_ids:
                continue
            conflicts.append(Conflict(
                conflict_type=ConflictType.BUFFER,
                severity=ConflictSeverity.WARNING,
                description=f"'{event.title}' falls inside the {label} buffer",
                resolution="Shorten the buffer or move the task",
                conflicting_event_id=event.event_id,
            ))

    if working_hours is not None and outside_working_hours(slot, working_hours, timezone):
        conflicts.append(Conflict(
            conflict_type=ConflictType.OUTSIDE_HOURS,
            severity=ConflictSeverity.WARNING,
            description="Slot is outside working hours",
        ))

    if rule is not None:
        tz = get_zone(timezone)
        local_slot = TimeSlot(slot.start.astimezone(tz), slot.end.astimezone(tz))
        check = slot_satisfies_rules(local_slot, rule, duration=slot.duration_minutes)
        for violation in check.violations:
            conflicts.append(Conflict(
                conflict_type=ConflictType.RULE_VIOLATION,
                severity=ConflictSeverity.INFO,
                description=violation,
            ))

    return conflicts


def has_blocking_conflicts(conflicts: Sequence[Conflict]) -> bool:
    return any(c.is_blocking for c in conflicts)
