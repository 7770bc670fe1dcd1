"""
Scoring Engine

Scores a candidate slot for a task from 0 to 100 as a weighted sum of
factors. The factor table is an ordered list of (name, weight, function);
weights must sum to 100. Every factor function is pure and returns a value
in 0-100 plus a short human-readable description.

Factors and default weights:
    task_type_preference   25   slot inside the rule's preferred hours/days
    due_date_proximity     20   closer to (but not after) the due date
    buffer_availability    15   room for the task's buffers
    contiguous_time        15   size of the free block, or adjacency to a
                                block of the same task type
    priority_alignment     15   high priority in prime hours, low outside
    time_of_day            10   match with the task's morning/afternoon/
                                evening tag
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..config import DEFAULT_SCORING_WEIGHTS
from ..errors import ValidationError
from ..models import (
    Conflict,
    ConflictSeverity,
    EffectiveRule,
    Priority,
    SchedulingRule,
    ScoringFactor,
    Task,
    TaskType,
    TimeOfDay,
    TimeSlot,
    UserSchedulingPreferences,
)
from ..timeutil import day_of_week, get_zone, minutes_between
from .rules import get_effective_rule

logger = logging.getLogger(__name__)

FactorValue = Tuple[float, str]

NO_DUE_DATE_SCORES = {Priority.HIGH: 60, Priority.MEDIUM: 50, Priority.LOW: 40}
DUE_DATE_MULTIPLIERS = {Priority.HIGH: 1.2, Priority.MEDIUM: 1.0, Priority.LOW: 0.8}
TIME_OF_DAY_ORDER = [TimeOfDay.MORNING, TimeOfDay.AFTERNOON, TimeOfDay.EVENING]


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class ScheduledBlock:
    """A block already taken by a task, used for contiguity."""
    start: datetime
    end: datetime
    task_type: TaskType


@dataclass
class ScoringContext:
    """Everything a factor may look at besides the task and slot."""
    now: datetime
    timezone: str = "UTC"
    preferences: Optional[UserSchedulingPreferences] = None
    rule: Optional[EffectiveRule] = None
    # The contiguous free run the slot sits in
    free_run: Optional[TimeSlot] = None
    buffer_before: int = 0
    buffer_after: int = 0
    scheduled_blocks: Sequence[ScheduledBlock] = ()
    conflicts: Sequence[Conflict] = ()
    info_penalty: int = 5
    warning_penalty: int = 15


@dataclass
class ScoringResult:
    score: float
    reasoning: str
    factors: List[ScoringFactor] = field(default_factory=list)


@dataclass(frozen=True)
class Factor:
    name: str
    weight: int
    fn: Callable[[Task, TimeSlot, Optional[EffectiveRule], ScoringContext], FactorValue]


def _local(slot: TimeSlot, context: ScoringContext) -> TimeSlot:
    tz = get_zone(context.timezone)
    return TimeSlot(slot.start.astimezone(tz), slot.end.astimezone(tz))


# =============================================================================
# FACTOR FUNCTIONS
# =============================================================================

def task_type_preference(task: Task, slot: TimeSlot, rule: Optional[EffectiveRule], context: ScoringContext) -> FactorValue:
    if rule is None:
        return 50, "No scheduling rule for this task type"
    local = _local(slot, context)
    label = rule.task_type.value.replace("_", " ")
    in_range = (
        local.start.date() == local.end.date()
        and rule.preferred_time_range.contains(local.start.time(), local.end.time())
    )
    on_day = day_of_week(local.start) in rule.preferred_days
    if in_range and on_day:
        return 100, f"Ideal time for {label}"
    if in_range:
        return 80, f"Preferred hours for {label}"
    if on_day:
        return 60, f"Preferred day for {label}, outside preferred hours"
    return 30, f"Outside preferred time for {label}"


def due_date_proximity(task: Task, slot: TimeSlot, rule: Optional[EffectiveRule], context: ScoringContext) -> FactorValue:
    due = task.due_datetime(context.timezone)
    if due is None:
        return NO_DUE_DATE_SCORES[task.priority], "No due date"
    if slot.end > due:
        return 10, "Finishes after the due date"

    local = _local(slot, context)
    if local.start.date() == due.date():
        return 95, "Scheduled on the due date"

    days_before = (due - slot.end).total_seconds() / 86400
    if days_before <= 1:
        base = 90
    elif days_before <= 3:
        base = 80
    elif days_before <= 7:
        base = 60
    else:
        base = 40
    value = min(100, base * DUE_DATE_MULTIPLIERS[task.priority])
    return value, f"Due within {max(1, int(days_before + 0.999))} day(s)"


def buffer_availability(task: Task, slot: TimeSlot, rule: Optional[EffectiveRule], context: ScoringContext) -> FactorValue:
    needed = []
    run = context.free_run
    if context.buffer_before:
        room = minutes_between(run.start, slot.start) if run else 0
        needed.append(min(1.0, max(0, room) / context.buffer_before))
    if context.buffer_after:
        room = minutes_between(slot.end, run.end) if run else 0
        needed.append(min(1.0, max(0, room) / context.buffer_after))
    if not needed:
        return 100, "No buffer time needed"

    value = round(sum(needed) / len(needed) * 100, 2)
    if value >= 100:
        return 100, "Full buffer time available"
    return value, f"{int(value)}% of buffer time available"


def contiguous_time(task: Task, slot: TimeSlot, rule: Optional[EffectiveRule], context: ScoringContext) -> FactorValue:
    prefers_blocks = context.preferences is None or context.preferences.prefer_contiguous_blocks
    if prefers_blocks and rule is not None:
        for block in context.scheduled_blocks:
            adjacent = block.end == slot.start or block.start == slot.end
            if adjacent and block.task_type == rule.task_type:
                return 100, f"Continues a {rule.task_type.value.replace('_', ' ')} block"

    if context.free_run is None:
        ratio = 1.0
    else:
        ratio = context.free_run.duration_minutes / slot.duration_minutes
    if ratio >= 3:
        return 100, "Plenty of contiguous free time"
    if ratio >= 2:
        return 85, "Good contiguous free time"
    if ratio >= 1.5:
        return 70, "Some room around the task"
    if ratio >= 1:
        return 50, "Fits with little room to spare"
    return 0, "Not enough contiguous time"


def priority_alignment(task: Task, slot: TimeSlot, rule: Optional[EffectiveRule], context: ScoringContext) -> FactorValue:
    hour = _local(slot, context).start.hour
    prime = 9 <= hour < 12
    if task.priority == Priority.HIGH:
        if prime:
            return 100, "High priority in prime focus hours"
        if 8 <= hour < 14:
            return 70, "High priority near prime hours"
        return 40, "High priority outside prime hours"
    if task.priority == Priority.MEDIUM:
        return 70, "Medium priority fits any time"
    if prime:
        return 50, "Low priority using prime hours"
    return 80, "Low priority kept out of prime hours"


def _period(hour: int) -> TimeOfDay:
    if hour < 12:
        return TimeOfDay.MORNING
    if hour < 17:
        return TimeOfDay.AFTERNOON
    return TimeOfDay.EVENING


def time_of_day(task: Task, slot: TimeSlot, rule: Optional[EffectiveRule], context: ScoringContext) -> FactorValue:
    preferred = task.scheduled_time
    if preferred is None:
        return 70, "No time-of-day preference"
    actual = _period(_local(slot, context).start.hour)
    if actual == preferred:
        return 100, f"Matches {preferred.value} preference"
    distance = abs(TIME_OF_DAY_ORDER.index(actual) - TIME_OF_DAY_ORDER.index(preferred))
    if distance == 1:
        return 60, f"Close to {preferred.value} preference"
    return 30, f"Far from {preferred.value} preference"


FACTOR_FUNCTIONS = [
    ("task_type_preference", task_type_preference),
    ("due_date_proximity", due_date_proximity),
    ("buffer_availability", buffer_availability),
    ("contiguous_time", contiguous_time),
    ("priority_alignment", priority_alignment),
    ("time_of_day", time_of_day),
]


def build_factor_table(weights: Optional[Dict[str, int]] = None) -> List[Factor]:
    """
    Build the ordered factor table.

    Raises:
        ValidationError: If weights name unknown factors or do not sum to 100
    """
    weights = dict(DEFAULT_SCORING_WEIGHTS if weights is None else weights)
    known = {name for name, _ in FACTOR_FUNCTIONS}
    unknown = set(weights) - known
    if unknown:
        raise ValidationError(f"Unknown scoring factors: {sorted(unknown)}", field="scoring_weights")
    total = sum(weights.values())
    if total != 100:
        raise ValidationError(f"Scoring weights must sum to 100, got {total}", field="scoring_weights")
    return [Factor(name, weights.get(name, 0), fn) for name, fn in FACTOR_FUNCTIONS]


DEFAULT_FACTORS = build_factor_table()


# =============================================================================
# SCORING
# =============================================================================

def build_reasoning(factors: Sequence[ScoringFactor]) -> str:
    """Top two strong factors, plus the weakest one as a note."""
    ranked = sorted(factors, key=lambda f: (-f.value, -f.weight))
    positives = [f.description for f in ranked if f.value >= 70][:2]
    negatives = [f for f in reversed(ranked) if f.value < 50]

    parts = list(positives)
    if negatives:
        parts.append(f"Note: {negatives[0].description}")
    return "; ".join(parts) if parts else "Standard slot selection"


def conflict_penalty(conflicts: Sequence[Conflict], context: ScoringContext) -> int:
    penalty = 0
    for conflict in conflicts:
        if conflict.severity == ConflictSeverity.INFO:
            penalty += context.info_penalty
        elif conflict.severity == ConflictSeverity.WARNING:
            penalty += context.warning_penalty
    return penalty


def score_slot(
    task: Task,
    slot: TimeSlot,
    rules: Sequence[SchedulingRule],
    context: ScoringContext,
    factors: Optional[Sequence[Factor]] = None,
) -> ScoringResult:
    """
    Score how well ``slot`` suits ``task``.

    Args:
        task: Task being placed
        slot: Candidate slot
        rules: The user's scheduling rules
        context: Reference time, free run, buffers, scheduled blocks and
            known conflicts for the slot
        factors: Factor table, defaults to DEFAULT_FACTORS

    Returns:
        ScoringResult with a score clamped to [0, 100]
    """
    factors = DEFAULT_FACTORS if factors is None else factors
    rule = context.rule or get_effective_rule(task, rules, context.preferences)

    scored: List[ScoringFactor] = []
    weighted = 0.0
    for factor in factors:
        value, description = factor.fn(task, slot, rule, context)
        value = max(0.0, min(100.0, float(value)))
        scored.append(ScoringFactor(
            name=factor.name,
            weight=factor.weight,
            value=value,
            description=description,
        ))
        weighted += factor.weight * value

    score = weighted / 100 - conflict_penalty(context.conflicts, context)
    score = round(max(0.0, min(100.0, score)), 2)

    return ScoringResult(score=score, reasoning=build_reasoning(scored), factors=scored)
