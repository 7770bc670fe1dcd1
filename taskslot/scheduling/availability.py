"""
Availability Model

Turns calendar events, working hours and protected slots into per-day
availability windows. Everything here is pure: the same inputs always yield
the same windows, and nothing reaches out to a calendar.

Windows tile the working-hours portion of each day at a fixed granularity.
A slot is unavailable when it intersects a non-cancelled event, falls on the
date of an all-day event, or intersects an enabled protected slot. When a
protected slot is the only reason, the slot records its id so urgent tasks
can be offered it.
"""

import hashlib
import json
import logging
import time
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Any, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Set, Tuple

from ..errors import ValidationError
from ..models import (
    AvailabilityWindow,
    CalendarEvent,
    DateRange,
    ProtectedSlot,
    TimeRange,
    TimeSlot,
)
from ..timeutil import combine, day_of_week, get_zone, minutes_between

logger = logging.getLogger(__name__)

Interval = Tuple[datetime, datetime]


# =============================================================================
# INTERVAL HELPERS
# =============================================================================

def merge_intervals(intervals: Iterable[Interval]) -> List[Interval]:
    """Merge overlapping or touching intervals into a sorted list."""
    merged: List[Interval] = []
    for start, end in sorted(intervals):
        if merged and start <= merged[-1][1]:
            if end > merged[-1][1]:
                merged[-1] = (merged[-1][0], end)
        else:
            merged.append((start, end))
    return merged


def _overlaps(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    return a_start < b_end and b_start < a_end


def all_day_dates(event: CalendarEvent) -> Set[date]:
    """Dates covered by an all-day event (end date is exclusive)."""
    first = event.start.date()
    last = event.end.date()
    if last > first and event.end.time() == datetime.min.time():
        last -= timedelta(days=1)
    days = set()
    current = first
    while current <= last:
        days.add(current)
        current += timedelta(days=1)
    return days


def busy_intervals(events: Iterable[CalendarEvent], tz=None) -> Tuple[List[Interval], Set[date]]:
    """
    Split events into merged timed busy intervals and all-day blocked dates.

    Cancelled events are ignored.
    """
    timed: List[Interval] = []
    all_day: Set[date] = set()
    for event in events:
        if event.is_cancelled:
            continue
        if event.all_day:
            all_day |= all_day_dates(event)
            continue
        start, end = event.start, event.end
        if tz is not None:
            start, end = start.astimezone(tz), end.astimezone(tz)
        timed.append((start, end))
    return merge_intervals(timed), all_day


def protected_intervals(
    protected_slots: Iterable[ProtectedSlot],
    day: date,
    tz,
) -> List[Tuple[ProtectedSlot, Interval]]:
    """Concrete intervals of enabled protected slots that apply on ``day``."""
    dow = day_of_week(day)
    result = []
    for slot in protected_slots:
        if not slot.enabled or dow not in slot.days_of_week:
            continue
        result.append((slot, (
            combine(day, slot.time_range.start, tz),
            combine(day, slot.time_range.end, tz),
        )))
    return result


# =============================================================================
# AVAILABILITY COMPUTATION
# =============================================================================

def compute_availability(
    calendar_events: Sequence[CalendarEvent],
    protected_slots: Sequence[ProtectedSlot],
    working_hours: Dict[int, TimeRange],
    date_range: DateRange,
    granularity: int = 30,
    timezone: str = "UTC",
) -> List[AvailabilityWindow]:
    """
    Compute free/busy availability for each day in ``date_range``.

    Args:
        calendar_events: Events from the user's calendars
        protected_slots: Recurring protected windows
        working_hours: Working range per day of week (0 = Sunday); days
            without an entry are non-working
        date_range: Inclusive dates to compute
        granularity: Slot size in minutes
        timezone: IANA timezone that working hours are expressed in

    Returns:
        One AvailabilityWindow per date, in date order
    """
    if granularity <= 0:
        raise ValidationError("granularity must be positive", field="granularity")

    tz = get_zone(timezone)
    busy, blocked_dates = busy_intervals(calendar_events, tz)
    protected_slots = list(protected_slots)

    windows = [
        _compute_day(day, busy, blocked_dates, protected_slots, working_hours, granularity, tz)
        for day in date_range.days()
    ]
    logger.debug(
        f"Computed availability for {len(windows)} day(s) "
        f"from {len(calendar_events)} event(s) at {granularity}min granularity"
    )
    return windows


def _compute_day(
    day: date,
    busy: List[Interval],
    blocked_dates: Set[date],
    protected_slots: List[ProtectedSlot],
    working_hours: Dict[int, TimeRange],
    granularity: int,
    tz,
) -> AvailabilityWindow:
    hours = working_hours.get(day_of_week(day))
    if hours is None:
        return AvailabilityWindow(date=day)

    day_start = combine(day, hours.start, tz)
    day_end = combine(day, hours.end, tz)
    protected = protected_intervals(protected_slots, day, tz)
    blocked_all_day = day in blocked_dates
    step = timedelta(minutes=granularity)

    slots: List[TimeSlot] = []
    free = busy_minutes = 0
    cursor = day_start
    while cursor < day_end:
        end = min(cursor + step, day_end)
        event_busy = blocked_all_day or any(
            _overlaps(cursor, end, b_start, b_end) for b_start, b_end in busy
        )
        protecting = [
            slot for slot, (p_start, p_end) in protected
            if _overlaps(cursor, end, p_start, p_end)
        ]
        available = not event_busy and not protecting
        protected_id = protecting[0].slot_id if protecting and not event_busy else None

        slots.append(TimeSlot(cursor, end, available, protected_id))
        minutes = minutes_between(cursor, end)
        if available:
            free += minutes
        else:
            busy_minutes += minutes
        cursor = end

    return AvailabilityWindow(
        date=day,
        slots=slots,
        total_free_minutes=free,
        total_busy_minutes=busy_minutes,
    )


# =============================================================================
# POOL OPERATIONS
# =============================================================================

def free_runs(
    window: AvailabilityWindow,
    overridable_ids: Optional[Set[str]] = None,
) -> List[TimeSlot]:
    """
    Merge adjacent free slots of a window into contiguous runs.

    Slots blocked only by a protected slot whose id is in ``overridable_ids``
    count as free.
    """
    overridable_ids = overridable_ids or set()
    runs: List[TimeSlot] = []
    run_start: Optional[datetime] = None
    run_end: Optional[datetime] = None

    for slot in window.slots:
        usable = slot.available or (
            slot.protected_slot_id is not None and slot.protected_slot_id in overridable_ids
        )
        if usable and run_end is not None and slot.start == run_end:
            run_end = slot.end
            continue
        if run_start is not None:
            runs.append(TimeSlot(run_start, run_end))
            run_start = run_end = None
        if usable:
            run_start, run_end = slot.start, slot.end

    if run_start is not None:
        runs.append(TimeSlot(run_start, run_end))
    return runs


def claim_regions(
    windows: Sequence[AvailabilityWindow],
    regions: Iterable[Interval],
) -> List[AvailabilityWindow]:
    """
    Return new windows with ``regions`` marked unavailable.

    Slots partially covered by a region are split at the region boundaries so
    the uncovered remainder stays free. Input windows are not modified.
    """
    regions = merge_intervals(regions)
    if not regions:
        return list(windows)

    claimed = []
    for window in windows:
        slots: List[TimeSlot] = []
        for slot in window.slots:
            hits = [r for r in regions if _overlaps(slot.start, slot.end, r[0], r[1])]
            if not hits:
                slots.append(slot)
                continue
            cuts = {slot.start, slot.end}
            for r_start, r_end in hits:
                if slot.start < r_start < slot.end:
                    cuts.add(r_start)
                if slot.start < r_end < slot.end:
                    cuts.add(r_end)
            points = sorted(cuts)
            for piece_start, piece_end in zip(points, points[1:]):
                covered = any(_overlaps(piece_start, piece_end, r[0], r[1]) for r in hits)
                if covered:
                    slots.append(TimeSlot(piece_start, piece_end, False))
                else:
                    slots.append(replace(slot, start=piece_start, end=piece_end))

        free = sum(s.duration_minutes for s in slots if s.available)
        busy = sum(s.duration_minutes for s in slots if not s.available)
        claimed.append(AvailabilityWindow(
            date=window.date,
            slots=slots,
            total_free_minutes=free,
            total_busy_minutes=busy,
        ))
    return claimed


def is_region_free(
    windows: Sequence[AvailabilityWindow],
    start: datetime,
    end: datetime,
    overridable_ids: Optional[Set[str]] = None,
) -> bool:
    """Check whether [start, end) lies entirely inside one free run."""
    for window in windows:
        for run in free_runs(window, overridable_ids):
            if run.contains(start, end):
                return True
    return False


# =============================================================================
# MEMOIZATION
# =============================================================================

def availability_fingerprint(*parts: Any) -> str:
    """Build a stable fingerprint from JSON-serializable parts."""
    key_data = json.dumps(parts, sort_keys=True, default=str)
    return hashlib.md5(key_data.encode()).hexdigest()


class AvailabilityMemo:
    """
    Caller-owned memo of computed availability.

    Keys are fingerprints supplied by the caller, who is responsible for
    making them change whenever the underlying events, rules or working hours
    change. Entries can optionally expire after ``default_ttl`` seconds.
    """

    def __init__(self, default_ttl: Optional[int] = None, max_entries: int = 128):
        self._entries: Dict[Hashable, Tuple[Any, Optional[float]]] = {}
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self.hits = 0
        self.misses = 0

    def get(self, fingerprint: Hashable) -> Optional[Any]:
        """Get memoized value if present and not expired."""
        if fingerprint in self._entries:
            value, expiry = self._entries[fingerprint]
            if expiry is None or time.monotonic() < expiry:
                return value
            del self._entries[fingerprint]
        return None

    def set(self, fingerprint: Hashable, value: Any, ttl: Optional[int] = None) -> None:
        ttl = ttl if ttl is not None else self._default_ttl
        expiry = time.monotonic() + ttl if ttl is not None else None
        if fingerprint not in self._entries and len(self._entries) >= self._max_entries:
            # Evict the oldest insertion
            del self._entries[next(iter(self._entries))]
        self._entries[fingerprint] = (value, expiry)

    def get_or_compute(self, fingerprint: Hashable, compute: Callable[[], Any]) -> Any:
        value = self.get(fingerprint)
        if value is not None:
            self.hits += 1
            return value
        self.misses += 1
        value = compute()
        self.set(fingerprint, value)
        return value

    def invalidate(self, fingerprint: Hashable) -> None:
        self._entries.pop(fingerprint, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
