"""
Scheduling rules.

Each task type has a built-in default rule (preferred hours, days, duration
and buffers). A user may replace the default with one enabled rule per task
type, and a task may override duration and buffers. ``get_effective_rule``
merges those three layers.
"""

import logging
from dataclasses import dataclass, field
from datetime import time
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from ..errors import ValidationError
from ..models import (
    EffectiveRule,
    SchedulingRule,
    Task,
    TaskType,
    TimeRange,
    TimeSlot,
    UserSchedulingPreferences,
)
from ..timeutil import day_of_week, format_hhmm

logger = logging.getLogger(__name__)

WEEKDAYS = (1, 2, 3, 4, 5)


@dataclass(frozen=True)
class RuleDefaults:
    preferred_time_range: TimeRange
    default_duration: int
    buffer_before: int
    buffer_after: int
    preferred_days: Tuple[int, ...]


def _defaults(start: time, end: time, duration: int, before: int, after: int, days) -> RuleDefaults:
    return RuleDefaults(TimeRange(start, end), duration, before, after, tuple(days))


DEFAULT_TASK_TYPE_RULES: Dict[TaskType, RuleDefaults] = {
    TaskType.DEEP_WORK: _defaults(time(9), time(12), 120, 0, 10, WEEKDAYS),
    TaskType.CODING: _defaults(time(9), time(12), 120, 0, 10, WEEKDAYS),
    TaskType.CALL: _defaults(time(14), time(17), 30, 15, 15, WEEKDAYS),
    TaskType.MEETING: _defaults(time(10), time(16), 60, 10, 5, WEEKDAYS),
    TaskType.PERSONAL: _defaults(time(8), time(20), 60, 0, 0, range(7)),
    TaskType.ADMIN: _defaults(time(14), time(17), 30, 0, 0, WEEKDAYS),
    TaskType.HEALTH: _defaults(time(7), time(9), 60, 0, 15, range(1, 7)),
    TaskType.OTHER: _defaults(time(9), time(17), 60, 0, 0, WEEKDAYS),
}

# Ordered: the first matching group wins
TASK_TYPE_KEYWORDS: List[Tuple[TaskType, Tuple[str, ...]]] = [
    (TaskType.CALL, ("call", "phone", "zoom", "teams call")),
    (TaskType.MEETING, ("meeting", "sync", "standup", "1:1", "one-on-one")),
    (TaskType.CODING, ("code", "coding", "develop", "implement", "fix bug", "debug")),
    (TaskType.DEEP_WORK, ("write", "design", "research", "plan", "strategy")),
    (TaskType.ADMIN, ("email", "inbox", "expense", "report", "paperwork")),
    (TaskType.HEALTH, ("exercise", "gym", "workout", "doctor", "dentist")),
    (TaskType.PERSONAL, ("personal", "family", "errand", "shopping")),
]


@dataclass
class RuleCheck:
    """Result of checking a slot against a rule."""
    satisfied: bool
    violations: List[str] = field(default_factory=list)
    score: int = 100


# =============================================================================
# RULE RESOLUTION
# =============================================================================

def infer_task_type(content: str) -> TaskType:
    """Guess a task type from keywords in its content."""
    text = content.lower()
    for task_type, keywords in TASK_TYPE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return task_type
    return TaskType.OTHER


def get_task_type(task: Task) -> TaskType:
    return task.task_type or infer_task_type(task.content)


def validate_rule_set(rules: Iterable[SchedulingRule]) -> None:
    """
    Reject rule sets with more than one enabled rule per (user, task type).

    Raises:
        ValidationError: On duplicate enabled rules
    """
    seen: Dict[Tuple[str, TaskType], str] = {}
    for rule in rules:
        if not rule.enabled:
            continue
        key = (rule.user_id, rule.task_type)
        if key in seen:
            raise ValidationError(
                f"Multiple enabled rules for task type '{rule.task_type.value}': "
                f"{seen[key]} and {rule.rule_id}",
                field="rules"
            )
        seen[key] = rule.rule_id


def find_rule(rules: Sequence[SchedulingRule], task_type: TaskType) -> Optional[SchedulingRule]:
    """Find the user's enabled rule for a task type."""
    validate_rule_set(rules)
    for rule in rules:
        if rule.enabled and rule.task_type == task_type:
            return rule
    return None


def get_effective_rule(
    task: Task,
    rules: Sequence[SchedulingRule],
    preferences: Optional[UserSchedulingPreferences] = None,
) -> EffectiveRule:
    """
    Merge the default rule, the user's rule and the task's own overrides.

    Buffers resolve as task override, then user rule, then the default rule
    (or the user's default buffers when the default rule has none).
    """
    task_type = get_task_type(task)
    user_rule = find_rule(rules, task_type)
    defaults = DEFAULT_TASK_TYPE_RULES[task_type]

    if user_rule is not None:
        effective = EffectiveRule(
            task_type=task_type,
            preferred_time_range=user_rule.preferred_time_range,
            preferred_days=user_rule.preferred_days,
            default_duration=user_rule.default_duration,
            buffer_before=user_rule.buffer_before,
            buffer_after=user_rule.buffer_after,
            calendar_id=user_rule.calendar_id,
            source="user",
        )
    else:
        before = defaults.buffer_before
        after = defaults.buffer_after
        if preferences is not None:
            before = before or preferences.default_buffer_before
            after = after or preferences.default_buffer_after
        effective = EffectiveRule(
            task_type=task_type,
            preferred_time_range=defaults.preferred_time_range,
            preferred_days=defaults.preferred_days,
            default_duration=defaults.default_duration,
            buffer_before=before,
            buffer_after=after,
        )

    if task.buffer_before is not None:
        effective.buffer_before = task.buffer_before
    if task.buffer_after is not None:
        effective.buffer_after = task.buffer_after
    return effective


def task_duration(task: Task, rule: Optional[EffectiveRule], default: int = 60) -> int:
    """Minutes to block: the task's estimate, else the rule default, else ``default``."""
    if task.time_estimate:
        return task.time_estimate
    if rule is not None:
        return rule.default_duration
    return default


# =============================================================================
# RULE CHECKS
# =============================================================================

def slot_satisfies_rules(slot: TimeSlot, rule: EffectiveRule, duration: Optional[int] = None) -> RuleCheck:
    """
    Check a slot against a rule's preferred days, hours and duration.

    Each violation costs points: day 30, time range 40, duration 20.
    """
    violations: List[str] = []
    score = 100

    if day_of_week(slot.start) not in rule.preferred_days:
        violations.append(f"{slot.start.strftime('%A')} is not a preferred day for {rule.task_type.value}")
        score -= 30

    time_range = rule.preferred_time_range
    start_time = slot.start.timetz().replace(tzinfo=None)
    end_time = slot.end.timetz().replace(tzinfo=None)
    crosses_midnight = slot.end.date() != slot.start.date()
    if crosses_midnight or not time_range.contains(start_time, end_time):
        violations.append(
            f"Outside preferred hours {format_hhmm(time_range.start)}-{format_hhmm(time_range.end)}"
        )
        score -= 40

    expected = duration if duration is not None else rule.default_duration
    if slot.duration_minutes < expected:
        violations.append(f"Slot is shorter than the {expected} minute duration")
        score -= 20

    return RuleCheck(satisfied=not violations, violations=violations, score=max(0, score))
