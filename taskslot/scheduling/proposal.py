"""
Proposal Builder

Plans a batch of tasks at once. Tasks are processed in a deterministic order
(priority, then due date, then request order); each recommended slot and its
buffers are claimed from the shared availability pool so later tasks in the
same batch never land on top of earlier ones. A task with no free slot may
take the place of a lower-priority task event, which is then moved to the
earliest slot that still fits it.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from ..config import EngineConfig
from ..errors import ValidationError
from ..models import (
    AvailabilityWindow,
    CalendarEvent,
    Conflict,
    ConflictSeverity,
    ConflictType,
    DateRange,
    Displacement,
    EffectiveRule,
    ProposalOptions,
    ProposalSummary,
    ProposedAssignment,
    ScheduleProposal,
    SchedulingSuggestion,
    Task,
    TimeSlot,
    UserSchedulingPreferences,
)
from ..timeutil import get_zone
from .availability import claim_regions, compute_availability, free_runs, is_region_free
from .conflicts import detect_conflicts, has_blocking_conflicts, is_displaceable
from .protected import effective_protected_slots
from .rules import get_effective_rule, task_duration, validate_rule_set
from .scoring import Factor, ScheduledBlock, ScoringContext, score_slot
from .suggestions import candidate_starts, get_suggestions

logger = logging.getLogger(__name__)

Interval = Tuple[datetime, datetime]


def default_date_range(now: datetime, days: int, timezone: str = "UTC") -> DateRange:
    """``days`` dates starting from today in the user's timezone."""
    today = now.astimezone(get_zone(timezone)).date()
    return DateRange(today, today + timedelta(days=days - 1))


def order_tasks(tasks: Sequence[Task], respect_priority: bool = True) -> List[Task]:
    """Priority descending, due date ascending (undated last), then request order."""
    indexed = list(enumerate(tasks))
    if respect_priority:
        indexed.sort(key=lambda pair: (
            -pair[1].priority.weight,
            pair[1].due_date is None,
            pair[1].due_date or date.max,
            pair[0],
        ))
    return [task for _, task in indexed]


@dataclass
class _Placement:
    assignment: ProposedAssignment
    displacement: Optional[Displacement] = None


class ProposalBuilder:
    """
    Builds a ScheduleProposal for one user's batch of tasks.

    The builder is pure: it reads the events and preferences it is given and
    returns an immutable proposal. Nothing is written anywhere.

    Example:
        builder = ProposalBuilder(preferences, events, now=now)
        proposal = builder.propose("user-1", tasks)
        for assignment in proposal.assignments:
            print(assignment.task.content, assignment.recommended)
    """

    def __init__(
        self,
        preferences: UserSchedulingPreferences,
        events: Sequence[CalendarEvent],
        now: datetime,
        config: Optional[EngineConfig] = None,
        factors: Optional[Sequence[Factor]] = None,
    ):
        self.preferences = preferences
        self.events = list(events)
        self.now = now
        self.config = config or EngineConfig()
        self.factors = factors
        self.timezone = preferences.timezone
        self.protected_slots = effective_protected_slots(preferences)

    # -------------------------------------------------------------------------
    # Public
    # -------------------------------------------------------------------------

    def propose(
        self,
        user_id: str,
        tasks: Sequence[Task],
        options: Optional[ProposalOptions] = None,
        availability: Optional[Sequence[AvailabilityWindow]] = None,
    ) -> ScheduleProposal:
        """
        Propose slots for ``tasks``.

        Args:
            user_id: Owner of the tasks
            tasks: Tasks to place, in request order
            options: Range, ordering, buffer and displacement options
            availability: Precomputed availability for the range, if the
                caller already has it

        Returns:
            Proposal expiring ``proposal_ttl_minutes`` after ``now``

        Raises:
            ValidationError: On an empty batch, duplicate tasks, or tasks of
                another user
        """
        options = options or ProposalOptions()
        self._validate(user_id, tasks)
        validate_rule_set(self.preferences.rules)

        date_range = options.date_range or default_date_range(
            self.now, self.config.default_range_days, self.timezone
        )
        base = list(availability) if availability is not None else self._availability(self.events, date_range)
        count = options.suggestions_per_task or self.config.default_suggestion_count
        calendar_id = options.calendar_id or self.preferences.calendar_id

        claimed: List[Interval] = []
        blocks: List[ScheduledBlock] = []
        moved: List[str] = []
        placements: Dict[str, _Placement] = {}

        for task in order_tasks(tasks, options.respect_priority):
            placement = self._place(
                task, base, claimed, blocks, moved, date_range, count, calendar_id, options
            )
            placements[task.task_id] = placement

        assignments = tuple(placements[t.task_id].assignment for t in tasks)
        displacements = tuple(
            placements[t.task_id].displacement
            for t in order_tasks(tasks, options.respect_priority)
            if placements[t.task_id].displacement is not None
        )

        schedulable = [a for a in assignments if a.is_schedulable]
        summary = ProposalSummary(
            total_tasks=len(assignments),
            schedulable_tasks=len(schedulable),
            conflicted_tasks=len(assignments) - len(schedulable),
            total_minutes=sum(a.recommended.slot.duration_minutes for a in schedulable),
        )

        proposal = ScheduleProposal(
            proposal_id=uuid.uuid4().hex,
            user_id=user_id,
            created_at=self.now,
            expires_at=self.now + timedelta(minutes=self.config.proposal_ttl_minutes),
            assignments=assignments,
            displacements=displacements,
            summary=summary,
            options=options,
        )
        logger.info(
            f"Proposal {proposal.proposal_id} for {user_id}: "
            f"{summary.schedulable_tasks}/{summary.total_tasks} schedulable, "
            f"{len(displacements)} displacement(s)"
        )
        return proposal

    # -------------------------------------------------------------------------
    # Placement
    # -------------------------------------------------------------------------

    def _place(
        self,
        task: Task,
        base: List[AvailabilityWindow],
        claimed: List[Interval],
        blocks: List[ScheduledBlock],
        moved: List[str],
        date_range: DateRange,
        count: int,
        calendar_id: str,
        options: ProposalOptions,
    ) -> _Placement:
        if not task.is_open:
            return _Placement(self._conflicted(task, calendar_id, "Task is completed or archived"))
        if task.is_scheduled:
            return _Placement(self._conflicted(task, calendar_id, "Task is already scheduled"))

        rule = get_effective_rule(task, self.preferences.rules, self.preferences)
        target_calendar = rule.calendar_id or calendar_id
        before, after = (rule.buffer_before, rule.buffer_after) if options.include_buffers else (0, 0)

        pool = claim_regions(base, claimed)
        suggestions = get_suggestions(
            task,
            self.preferences.rules,
            self.protected_slots,
            pool,
            count,
            date_range,
            now=self.now,
            events=self.events,
            preferences=self.preferences,
            scheduled_blocks=blocks,
            config=self.config,
            factors=self.factors,
            buffer_before=before,
            buffer_after=after,
        )
        if suggestions:
            slot = suggestions[0].slot
            self._claim(claimed, blocks, slot, before, after, rule)
            return _Placement(ProposedAssignment(
                task=task,
                suggestions=tuple(suggestions),
                recommended_index=0,
                calendar_id=target_calendar,
                buffer_before=before,
                buffer_after=after,
            ))

        if options.allow_displacement:
            found = self._find_displacement(task, rule, claimed, blocks, moved, date_range, before, after)
            if found is not None:
                suggestion, displacement = found
                self._claim(claimed, blocks, suggestion.slot, before, after, rule)
                claimed.append((displacement.proposed_slot.start, displacement.proposed_slot.end))
                moved.append(displacement.event_id)
                return _Placement(
                    ProposedAssignment(
                        task=task,
                        suggestions=(suggestion,),
                        recommended_index=0,
                        calendar_id=target_calendar,
                        buffer_before=before,
                        buffer_after=after,
                        displacement_event_ids=(displacement.event_id,),
                    ),
                    displacement,
                )

        return _Placement(self._conflicted(task, target_calendar, "No available slot in range"))

    def _claim(
        self,
        claimed: List[Interval],
        blocks: List[ScheduledBlock],
        slot: TimeSlot,
        before: int,
        after: int,
        rule: EffectiveRule,
    ) -> None:
        claimed.append((slot.start - timedelta(minutes=before), slot.end + timedelta(minutes=after)))
        blocks.append(ScheduledBlock(slot.start, slot.end, rule.task_type))

    def _conflicted(self, task: Task, calendar_id: str, reason: str) -> ProposedAssignment:
        return ProposedAssignment(task=task, calendar_id=calendar_id, reason=reason)

    # -------------------------------------------------------------------------
    # Displacement
    # -------------------------------------------------------------------------

    def _find_displacement(
        self,
        task: Task,
        rule: EffectiveRule,
        claimed: List[Interval],
        blocks: List[ScheduledBlock],
        moved: List[str],
        date_range: DateRange,
        before: int,
        after: int,
    ) -> Optional[Tuple[SchedulingSuggestion, Displacement]]:
        """First displaceable event whose time the task can take and which can itself be moved."""
        tz = get_zone(self.timezone)
        duration = task_duration(task, rule, self.config.default_task_duration)

        for event in sorted(self.events, key=lambda e: (e.start, e.event_id)):
            if event.event_id in moved or not is_displaceable(event, task.priority):
                continue
            if event.start < self.now or not date_range.contains(event.start.astimezone(tz).date()):
                continue

            slot = TimeSlot(event.start, event.start + timedelta(minutes=duration))
            others = [e for e in self.events if e.event_id != event.event_id]
            pool = claim_regions(self._availability(others, date_range), claimed)
            if not is_region_free(pool, slot.start, slot.end):
                continue

            conflicts = detect_conflicts(
                task,
                slot,
                others,
                rule=rule,
                protected_slots=self.protected_slots,
                buffer_before=before,
                buffer_after=after,
                now=self.now,
                timezone=self.timezone,
            )
            if has_blocking_conflicts(conflicts):
                continue

            remaining = claim_regions(pool, [
                (slot.start - timedelta(minutes=before), slot.end + timedelta(minutes=after)),
                (event.start, event.end),
            ])
            new_slot = self._first_fit(remaining, event.duration_minutes)
            if new_slot is None:
                continue

            reason = (
                f"{task.priority.value.capitalize()} priority task '{task.content}' "
                f"takes this time; '{event.title}' moves to {new_slot.start.strftime('%a %H:%M')}"
            )
            conflicts.insert(0, Conflict(
                conflict_type=ConflictType.OVERLAP,
                severity=ConflictSeverity.WARNING,
                description=f"Displaces '{event.title}'",
                resolution=f"Move '{event.title}' to {new_slot.start.isoformat()}",
                conflicting_event_id=event.event_id,
            ))
            context = ScoringContext(
                now=self.now,
                timezone=self.timezone,
                preferences=self.preferences,
                rule=rule,
                free_run=self._containing_run(pool, slot),
                buffer_before=rule.buffer_before,
                buffer_after=rule.buffer_after,
                scheduled_blocks=blocks,
                conflicts=conflicts,
                info_penalty=self.config.info_conflict_penalty,
                warning_penalty=self.config.warning_conflict_penalty,
            )
            result = score_slot(task, slot, self.preferences.rules, context, self.factors)
            suggestion = SchedulingSuggestion(
                slot=slot,
                score=result.score,
                reasoning=result.reasoning,
                factors=result.factors,
                conflicts=conflicts,
            )
            displacement = Displacement(
                event_id=event.event_id,
                event_title=event.title,
                calendar_id=event.calendar_id,
                original_slot=TimeSlot(event.start, event.end),
                proposed_slot=new_slot,
                reason=reason,
                for_task_id=task.task_id,
                task_id=event.task_id,
            )
            logger.debug(f"Task {task.task_id} can displace event {event.event_id}")
            return suggestion, displacement

        return None

    def _first_fit(self, pool: Sequence[AvailabilityWindow], duration: int) -> Optional[TimeSlot]:
        for window in pool:
            for run in free_runs(window):
                for start in candidate_starts(run, duration, self.config.candidate_interval_minutes):
                    if start >= self.now:
                        return TimeSlot(start, start + timedelta(minutes=duration))
        return None

    def _containing_run(self, pool: Sequence[AvailabilityWindow], slot: TimeSlot) -> Optional[TimeSlot]:
        for window in pool:
            for run in free_runs(window):
                if run.contains(slot.start, slot.end):
                    return run
        return None

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _availability(self, events: Sequence[CalendarEvent], date_range: DateRange) -> List[AvailabilityWindow]:
        return compute_availability(
            events,
            self.protected_slots,
            self.preferences.working_hours,
            date_range,
            self.config.default_granularity_minutes,
            self.timezone,
        )

    def _validate(self, user_id: str, tasks: Sequence[Task]) -> None:
        if not tasks:
            raise ValidationError("At least one task is required", field="tasks")
        seen = set()
        for task in tasks:
            if task.user_id != user_id:
                raise ValidationError(f"Task {task.task_id} does not belong to user {user_id}", field="tasks")
            if task.task_id in seen:
                raise ValidationError(f"Duplicate task in batch: {task.task_id}", field="tasks")
            seen.add(task.task_id)
