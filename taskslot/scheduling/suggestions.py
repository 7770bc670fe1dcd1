"""
Suggestion Generator

Enumerates candidate slots for a task inside the free runs of its
availability, drops candidates with blocking conflicts, scores the rest and
returns the best non-overlapping few. Sorting is by score descending, then by
earliest start, so the output is fully deterministic.
"""

import logging
from datetime import datetime, timedelta
from typing import Iterator, List, Optional, Sequence

from ..config import EngineConfig
from ..errors import ValidationError
from ..models import (
    AvailabilityWindow,
    CalendarEvent,
    DateRange,
    ProtectedSlot,
    SchedulingRule,
    SchedulingSuggestion,
    Task,
    TimeSlot,
    UserSchedulingPreferences,
)
from .availability import free_runs
from .conflicts import detect_conflicts, has_blocking_conflicts
from .protected import overridable_slot_ids
from .rules import get_effective_rule, task_duration
from .scoring import Factor, ScheduledBlock, ScoringContext, score_slot

logger = logging.getLogger(__name__)


def candidate_starts(run: TimeSlot, duration: int, interval: int) -> Iterator[datetime]:
    """
    Start times inside ``run`` where a ``duration`` minute task fits.

    The run's own start is always a candidate; later starts fall on
    ``interval`` minute boundaries of the clock.
    """
    length = timedelta(minutes=duration)
    step = timedelta(minutes=interval)

    if run.start + length <= run.end:
        yield run.start

    minute_of_day = run.start.hour * 60 + run.start.minute
    offset = (-minute_of_day) % interval
    start = run.start.replace(second=0, microsecond=0) + timedelta(minutes=offset)
    if start <= run.start:
        start += step
    while start + length <= run.end:
        yield start
        start += step


def select_distinct(ranked: Sequence[SchedulingSuggestion], count: int) -> List[SchedulingSuggestion]:
    """Take up to ``count`` suggestions in rank order, skipping overlaps."""
    chosen: List[SchedulingSuggestion] = []
    for suggestion in ranked:
        if len(chosen) >= count:
            break
        if any(c.slot.overlaps(suggestion.slot.start, suggestion.slot.end) for c in chosen):
            continue
        chosen.append(suggestion)
    return chosen


def get_suggestions(
    task: Task,
    rules: Sequence[SchedulingRule],
    protected_slots: Sequence[ProtectedSlot],
    availability: Sequence[AvailabilityWindow],
    count: int = 3,
    date_range: Optional[DateRange] = None,
    *,
    now: datetime,
    events: Sequence[CalendarEvent] = (),
    preferences: Optional[UserSchedulingPreferences] = None,
    scheduled_blocks: Sequence[ScheduledBlock] = (),
    config: Optional[EngineConfig] = None,
    factors: Optional[Sequence[Factor]] = None,
    duration: Optional[int] = None,
    buffer_before: Optional[int] = None,
    buffer_after: Optional[int] = None,
) -> List[SchedulingSuggestion]:
    """
    Suggest up to ``count`` ranked slots for a task.

    Args:
        task: Task to place
        rules: The user's scheduling rules
        protected_slots: Protected slots in force
        availability: Precomputed availability windows
        count: Maximum number of suggestions
        date_range: Restrict to these dates
        now: Reference time; candidates starting before it are skipped
        events: Calendar events, for buffer and overlap conflicts
        preferences: The user's preferences (timezone, contiguity, buffers)
        scheduled_blocks: Blocks already assigned in this batch
        config: Engine configuration
        factors: Scoring factor table
        duration: Minutes to block, overriding estimate and rule default
        buffer_before: Buffer minutes before the slot, defaults to the rule's
        buffer_after: Buffer minutes after the slot, defaults to the rule's

    Returns:
        At most ``count`` non-overlapping suggestions; possibly empty
    """
    if count <= 0:
        raise ValidationError("count must be positive", field="count")

    config = config or EngineConfig()
    timezone = preferences.timezone if preferences else "UTC"
    rule = get_effective_rule(task, rules, preferences)
    duration = duration or task_duration(task, rule, config.default_task_duration)
    overridable = overridable_slot_ids(task, protected_slots, now, timezone)
    before = rule.buffer_before if buffer_before is None else buffer_before
    after = rule.buffer_after if buffer_after is None else buffer_after

    candidates: List[SchedulingSuggestion] = []
    for window in availability:
        if date_range is not None and not date_range.contains(window.date):
            continue
        for run in free_runs(window, overridable):
            for start in candidate_starts(run, duration, config.candidate_interval_minutes):
                if start < now:
                    continue
                slot = TimeSlot(start, start + timedelta(minutes=duration))
                conflicts = detect_conflicts(
                    task,
                    slot,
                    events,
                    rule=rule,
                    protected_slots=protected_slots,
                    buffer_before=before,
                    buffer_after=after,
                    now=now,
                    timezone=timezone,
                )
                if has_blocking_conflicts(conflicts):
                    continue

                context = ScoringContext(
                    now=now,
                    timezone=timezone,
                    preferences=preferences,
                    rule=rule,
                    free_run=run,
                    buffer_before=before,
                    buffer_after=after,
                    scheduled_blocks=scheduled_blocks,
                    conflicts=conflicts,
                    info_penalty=config.info_conflict_penalty,
                    warning_penalty=config.warning_conflict_penalty,
                )
                result = score_slot(task, slot, rules, context, factors)
                candidates.append(SchedulingSuggestion(
                    slot=slot,
                    score=result.score,
                    reasoning=result.reasoning,
                    factors=result.factors,
                    conflicts=conflicts,
                ))

    candidates.sort(key=lambda s: (-s.score, s.slot.start))
    suggestions = select_distinct(candidates, count)
    logger.debug(
        f"Task {task.task_id}: {len(candidates)} candidate(s), returning {len(suggestions)}"
    )
    return suggestions
