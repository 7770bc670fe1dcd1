"""
Scheduling Service

Entry point for the six scheduling operations, plus proposal housekeeping and
calendar sync. Loads tasks, preferences and calendar events through the
collaborator protocols, runs the pure availability/suggestion/proposal
components, and hands writes to the CommitEngine.

Request validation happens before any calendar write. Conflicts on a direct
schedule or reschedule come back as data (``requires_approval``), not as
exceptions.
"""

import asyncio
import logging
from datetime import datetime, time, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from ..config import EngineConfig
from ..errors import ExternalResourceGone, SchedulingError, TaskNotFound, ValidationError
from ..integrations import CalendarClient, PreferencesStore, TaskStore
from ..models import (
    Approval,
    AvailabilityWindow,
    CalendarEvent,
    CalendarSyncResult,
    ConfirmResult,
    DateRange,
    FailedTask,
    ProposalOptions,
    RescheduleTaskResult,
    ScheduleProposal,
    ScheduleTaskResult,
    SuggestionsResult,
    SyncStatus,
    Task,
    TimeSlot,
    UnscheduleTaskResult,
    UserSchedulingPreferences,
)
from ..timeutil import combine, get_zone, utc_now
from .availability import AvailabilityMemo, compute_availability
from .commit import BUFFER_WINDOW, CommitEngine
from .conflicts import detect_conflicts, has_blocking_conflicts
from .proposal import ProposalBuilder, default_date_range
from .proposal_store import ProposalStore
from .protected import effective_protected_slots
from .reconcile import SYNC_LOOKAHEAD, SYNC_LOOKBACK, is_unscheduling, reconcile_task, task_events
from .rules import get_effective_rule, validate_rule_set
from .scoring import build_factor_table
from .suggestions import get_suggestions

logger = logging.getLogger(__name__)

ApprovalInput = Union[Approval, str, Dict[str, Any]]


def _to_approval(value: ApprovalInput) -> Approval:
    if isinstance(value, Approval):
        return value
    if isinstance(value, str):
        return Approval(task_id=value)
    if isinstance(value, dict) and value.get("task_id"):
        return Approval(
            task_id=value["task_id"],
            slot_index=value.get("slot_index"),
            confirmed=value.get("confirmed", True),
        )
    raise ValidationError(f"Invalid approval: {value!r}", field="approved")


class SchedulingService:
    """
    Scheduling operations for one deployment.

    Example:
        service = SchedulingService(calendar, task_store, preferences_store)
        proposal = await service.propose_schedule("user-1", ["t1", "t2"])
        result = await service.confirm_schedule("user-1", proposal.proposal_id)
    """

    def __init__(
        self,
        calendar: CalendarClient,
        tasks: TaskStore,
        preferences: PreferencesStore,
        config: Optional[EngineConfig] = None,
        proposals: Optional[ProposalStore] = None,
        clock: Callable[[], datetime] = utc_now,
        memo: Optional[AvailabilityMemo] = None,
        engine: Optional[CommitEngine] = None,
    ):
        self.calendar = calendar
        self.tasks = tasks
        self.preferences = preferences
        self.config = config or EngineConfig()
        self.proposals = proposals or ProposalStore()
        self.clock = clock
        self.memo = memo
        self.engine = engine or CommitEngine(calendar, tasks, self.config)
        self.factors = build_factor_table(self.config.scoring_weights)

    # =========================================================================
    # Read operations
    # =========================================================================

    async def get_suggestions(
        self,
        user_id: str,
        task_id: str,
        count: Optional[int] = None,
        date_range: Optional[Union[DateRange, Dict[str, Any]]] = None,
        availability_fingerprint: Optional[str] = None,
    ) -> SuggestionsResult:
        """
        Ranked slot suggestions for one task.

        Args:
            user_id: Requesting user
            task_id: Task to place
            count: Number of suggestions, defaults to the configured count
            date_range: Dates to search, defaults to the next few days
            availability_fingerprint: Caller-computed key; when given and a
                memo is configured, availability is reused across calls

        Returns:
            SuggestionsResult; an empty suggestion list means no slot fits
        """
        count = self.config.default_suggestion_count if count is None else count
        if count <= 0:
            raise ValidationError("count must be positive", field="count")
        requested_range = DateRange.from_value(date_range) if date_range is not None else None

        now = self.clock()
        task = await self._load_task(user_id, task_id)
        prefs = await self._load_preferences(user_id)
        rng = requested_range or default_date_range(now, self.config.default_range_days, prefs.timezone)

        events = await self._fetch_events(prefs, rng)
        protected = effective_protected_slots(prefs)
        availability = self._availability(user_id, prefs, events, rng, availability_fingerprint)

        suggestions = get_suggestions(
            task,
            prefs.rules,
            protected,
            availability,
            count,
            rng,
            now=now,
            events=events,
            preferences=prefs,
            config=self.config,
            factors=self.factors,
        )
        if not suggestions:
            logger.info(f"No viable slot for task {task_id} between {rng.start} and {rng.end}")
        return SuggestionsResult(
            task=task,
            suggestions=suggestions,
            applied_rule=get_effective_rule(task, prefs.rules, prefs),
        )

    async def propose_schedule(
        self,
        user_id: str,
        tasks: Sequence[Union[str, Task]],
        options: Optional[Union[ProposalOptions, Dict[str, Any]]] = None,
        availability_fingerprint: Optional[str] = None,
    ) -> ScheduleProposal:
        """
        Build and store a proposal for a batch of tasks.

        Args:
            user_id: Requesting user
            tasks: Task ids (or tasks) to place
            options: ProposalOptions or its dict form

        Returns:
            The stored proposal; confirm it before ``expires_at``
        """
        if not tasks:
            raise ValidationError("At least one task is required", field="tasks")
        if isinstance(options, dict):
            options = ProposalOptions.from_dict(options)
        options = options or ProposalOptions()

        task_ids = [t.task_id if isinstance(t, Task) else t for t in tasks]
        if len(set(task_ids)) != len(task_ids):
            raise ValidationError("Duplicate task in batch", field="tasks")

        now = self.clock()
        prefs = await self._load_preferences(user_id)
        validate_rule_set(prefs.rules)
        loaded = [await self._load_task(user_id, task_id) for task_id in task_ids]

        rng = options.date_range or default_date_range(now, self.config.default_range_days, prefs.timezone)
        events = await self._fetch_events(prefs, rng)
        availability = self._availability(user_id, prefs, events, rng, availability_fingerprint)

        builder = ProposalBuilder(prefs, events, now, self.config, self.factors)
        proposal = builder.propose(user_id, loaded, options, availability=availability)
        self.proposals.purge_expired(now)
        self.proposals.save(proposal)
        return proposal

    def list_proposals(self, user_id: str) -> List[ScheduleProposal]:
        """The user's unexpired proposals, newest first."""
        return self.proposals.list_active(user_id, self.clock())

    def extend_proposal(self, user_id: str, proposal_id: str, minutes: Optional[int] = None) -> ScheduleProposal:
        """
        Keep a live proposal open for longer.

        Args:
            minutes: Extra lifetime, defaults to the configured proposal TTL

        Raises:
            ProposalNotFound: Unknown proposal or another user's
            StaleProposal: The proposal already expired
        """
        minutes = self.config.proposal_ttl_minutes if minutes is None else minutes
        extended = self.proposals.extend(proposal_id, user_id, minutes, self.clock())
        logger.info(f"Extended proposal {proposal_id} to {extended.expires_at.isoformat()}")
        return extended

    # =========================================================================
    # Write operations
    # =========================================================================

    async def confirm_schedule(
        self,
        user_id: str,
        proposal_id: str,
        approved: Optional[Sequence[ApprovalInput]] = None,
        displacements_approved: bool = False,
    ) -> ConfirmResult:
        """
        Commit a proposal.

        Args:
            user_id: Requesting user
            proposal_id: Proposal returned by propose_schedule
            approved: Approvals, task ids or approval dicts; None approves
                every schedulable task at its recommended slot
            displacements_approved: Allow moving existing events

        Returns:
            ConfirmResult with per-task outcomes

        Raises:
            ProposalNotFound: Unknown proposal or another user's
            StaleProposal: Proposal expired; nothing is written
        """
        approvals = [_to_approval(a) for a in approved] if approved is not None else None
        proposal = self.proposals.get(proposal_id, user_id, self.clock())
        prefs = await self._load_preferences(user_id)

        self.proposals.consume(proposal_id)
        logger.info(f"Confirming proposal {proposal_id} for {user_id}")
        return await self.engine.confirm(proposal, approvals, displacements_approved, prefs.timezone)

    async def schedule_task(
        self,
        user_id: str,
        task_id: str,
        slot: Union[TimeSlot, Dict[str, Any]],
        calendar_id: Optional[str] = None,
        include_buffers: bool = False,
        force: bool = False,
    ) -> ScheduleTaskResult:
        """
        Put a task on the calendar at a caller-chosen slot.

        Error-severity conflicts return ``requires_approval=True`` and change
        nothing unless ``force`` is set.

        Raises:
            ValidationError: Task is already scheduled, closed, or not the user's
            ExternalWriteFailure, ExternalResourceGone: The write failed; the
                task is left with ``sync_status=error``
        """
        prefs = await self._load_preferences(user_id)
        slot = self._to_slot(slot, prefs)
        task = await self._load_task(user_id, task_id)
        if task.is_scheduled:
            raise ValidationError(f"Task {task_id} is already scheduled", field="task_id")
        if not task.is_open:
            raise ValidationError(f"Task {task_id} is completed or archived", field="task_id")

        rule = get_effective_rule(task, prefs.rules, prefs)
        target = calendar_id or rule.calendar_id or prefs.calendar_id
        before, after = (rule.buffer_before, rule.buffer_after) if include_buffers else (0, 0)

        conflicts = await self._conflicts_for(task, slot, target, prefs, before, after)
        if has_blocking_conflicts(conflicts) and not force:
            logger.info(f"Scheduling task {task_id} needs approval: {len(conflicts)} conflict(s)")
            return ScheduleTaskResult(success=False, task=task, requires_approval=True, conflicts=conflicts)

        try:
            scheduled = await self.engine.schedule(task, slot, target, before, after, prefs.timezone)
        except SchedulingError as e:
            await self.engine.mark_error(task_id, e)
            raise

        updated = await self._load_task(user_id, task_id)
        return ScheduleTaskResult(
            success=True,
            task=updated,
            event_id=scheduled.event_id,
            buffer_event_ids=scheduled.buffer_event_ids,
            conflicts=conflicts,
        )

    async def reschedule_task(
        self,
        user_id: str,
        task_id: str,
        new_slot: Union[TimeSlot, Dict[str, Any]],
        update_buffers: bool = True,
        force: bool = False,
    ) -> RescheduleTaskResult:
        """
        Move a scheduled task to a new slot.

        The task's own events never count as conflicts. If the calendar event
        has been deleted outside the engine the task is marked orphaned.
        """
        prefs = await self._load_preferences(user_id)
        new_slot = self._to_slot(new_slot, prefs)
        task = await self._load_task(user_id, task_id)
        if not task.is_scheduled:
            raise ValidationError(f"Task {task_id} is not scheduled", field="task_id")

        rule = get_effective_rule(task, prefs.rules, prefs)
        before = rule.buffer_before if task.buffer_before_event_id else 0
        after = rule.buffer_after if task.buffer_after_event_id else 0
        calendar_id = task.calendar_id or prefs.calendar_id

        conflicts = await self._conflicts_for(task, new_slot, calendar_id, prefs, before, after, ignore_own=True)
        if has_blocking_conflicts(conflicts) and not force:
            return RescheduleTaskResult(
                success=False,
                task=task,
                previous_slot=task.scheduled_slot,
                new_slot=new_slot,
                requires_approval=True,
                conflicts=conflicts,
            )

        try:
            updated = await self.engine.reschedule(task, new_slot, before, after, update_buffers, prefs.timezone)
        except ExternalResourceGone as e:
            status = SyncStatus.ORPHANED if e.resource_id == task.calendar_event_id else SyncStatus.ERROR
            await self.engine.mark_error(task_id, e, status)
            raise
        except SchedulingError as e:
            await self.engine.mark_error(task_id, e)
            raise

        return RescheduleTaskResult(
            success=True,
            task=updated,
            previous_slot=task.scheduled_slot,
            new_slot=new_slot,
            buffer_event_ids=[i for i in (updated.buffer_before_event_id, updated.buffer_after_event_id) if i],
            conflicts=conflicts,
        )

    async def unschedule_task(self, user_id: str, task_id: str) -> UnscheduleTaskResult:
        """Remove a task from the calendar. Safe to call repeatedly."""
        task = await self._load_task(user_id, task_id)
        if not task.is_scheduled:
            return UnscheduleTaskResult(success=True, task=task, already_unscheduled=True)

        try:
            updated, deleted = await self.engine.unschedule(task)
        except SchedulingError as e:
            await self.engine.mark_error(task_id, e)
            raise
        return UnscheduleTaskResult(success=True, task=updated, deleted_event_ids=deleted)

    # =========================================================================
    # Calendar sync
    # =========================================================================

    async def sync_calendar(self, user_id: str, calendar_id: Optional[str] = None) -> CalendarSyncResult:
        """
        Pull changes made directly on the calendar back onto the user's tasks.

        Lists the calendar from 30 days back to 90 days ahead. A task whose
        event was deleted or cancelled is unscheduled (its leftover buffers
        are removed); a task whose event was moved takes the new times and
        its buffers follow. Tasks scheduled outside the window are not
        checked. One task failing does not stop the others.

        Args:
            user_id: Owner of the tasks
            calendar_id: Calendar to sync, defaults to the user's calendar
        """
        prefs = await self._load_preferences(user_id)
        calendar_id = calendar_id or prefs.calendar_id
        now = self.clock()
        window_start, window_end = now - SYNC_LOOKBACK, now + SYNC_LOOKAHEAD

        events = await self.engine.call(
            "list_events",
            lambda: self.calendar.list_events(calendar_id, window_start, window_end),
        )
        linked = task_events(events)
        tasks = await self.engine.call("list_tasks", lambda: self.tasks.list_tasks(user_id))

        result = CalendarSyncResult(calendar_id=calendar_id)
        for task in tasks:
            if not task.is_scheduled or (task.calendar_id or prefs.calendar_id) != calendar_id:
                continue
            event = linked.get(task.calendar_event_id)
            if event is None:
                start = task.scheduled_start
                if start is None or not window_start <= start < window_end:
                    continue
            elif event.task_id != task.task_id:
                logger.warning(f"Event {event.event_id} is linked to {event.task_id}, not {task.task_id}")
                continue

            result.checked += 1
            changes = reconcile_task(task, event)
            if not changes:
                continue
            try:
                await self._apply_sync(task, event, changes, calendar_id, events, prefs.timezone)
            except SchedulingError as e:
                logger.error(f"Failed to sync task {task.task_id}: {e}")
                result.failed_tasks.append(FailedTask(task.task_id, str(e), e.error_code))
                continue

            if is_unscheduling(changes):
                result.unscheduled.append(task.task_id)
            else:
                result.moved.append(task.task_id)

        logger.info(
            f"Synced {calendar_id} for {user_id}: {result.checked} checked, "
            f"{len(result.unscheduled)} unscheduled, {len(result.moved)} moved"
        )
        return result

    async def _apply_sync(
        self,
        task: Task,
        event: Optional[CalendarEvent],
        changes: Dict[str, Any],
        calendar_id: str,
        events: Sequence[CalendarEvent],
        timezone: str,
    ) -> None:
        if is_unscheduling(changes):
            logger.info(f"Calendar event for task {task.task_id} is gone, unscheduling")
            for event_id in (task.buffer_before_event_id, task.buffer_after_event_id):
                if not await self.engine.delete_quietly(calendar_id, event_id):
                    logger.warning(f"Buffer {event_id} of task {task.task_id} was left on the calendar")
        else:
            logger.info(f"Calendar event for task {task.task_id} moved to {event.start.isoformat()}")
            if task.scheduled_start is not None:
                try:
                    await self.engine.shift_buffers(
                        task, calendar_id, events, event.start - task.scheduled_start, timezone
                    )
                except SchedulingError as e:
                    logger.warning(f"Could not move buffers of task {task.task_id}: {e}")
        await self.engine.call("update_task", lambda: self.tasks.update_task(task.task_id, changes))

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _load_task(self, user_id: str, task_id: str) -> Task:
        task = await self.engine.call("get_task", lambda: self.tasks.get_task(task_id))
        if task is None:
            raise TaskNotFound(task_id)
        if task.user_id != user_id:
            raise ValidationError(f"Task {task_id} does not belong to user {user_id}", field="task_id")
        return task

    async def _load_preferences(self, user_id: str) -> UserSchedulingPreferences:
        return await self.engine.call("get_preferences", lambda: self.preferences.get_preferences(user_id))

    def _to_slot(self, value: Union[TimeSlot, Dict[str, Any]], prefs: UserSchedulingPreferences) -> TimeSlot:
        if isinstance(value, TimeSlot):
            return value
        if isinstance(value, dict):
            return TimeSlot.from_dict(value, prefs.timezone)
        raise ValidationError(f"Invalid slot: {value!r}", field="slot")

    async def _fetch_events(self, prefs: UserSchedulingPreferences, rng: DateRange) -> List[CalendarEvent]:
        """Events from every calendar the user's rules can target, covering ``rng``."""
        tz = get_zone(prefs.timezone)
        start = combine(rng.start, time.min, tz)
        end = combine(rng.end + timedelta(days=1), time.min, tz)
        return await self._list_calendars(self._calendar_ids(prefs), start, end)

    async def _list_calendars(self, calendar_ids: List[str], start: datetime, end: datetime) -> List[CalendarEvent]:
        batches = await asyncio.gather(*[
            self.engine.call(
                "list_events",
                lambda calendar_id=calendar_id: self.calendar.list_events(calendar_id, start, end),
            )
            for calendar_id in calendar_ids
        ])
        events = [event for batch in batches for event in batch]
        logger.debug(f"Loaded {len(events)} event(s) from {len(calendar_ids)} calendar(s)")
        return events

    def _calendar_ids(self, prefs: UserSchedulingPreferences) -> List[str]:
        ids = [prefs.calendar_id]
        for rule in prefs.rules:
            if rule.enabled and rule.calendar_id and rule.calendar_id not in ids:
                ids.append(rule.calendar_id)
        return ids

    def _availability(
        self,
        user_id: str,
        prefs: UserSchedulingPreferences,
        events: Sequence[CalendarEvent],
        rng: DateRange,
        fingerprint: Optional[str],
    ) -> List[AvailabilityWindow]:
        def compute() -> List[AvailabilityWindow]:
            return compute_availability(
                events,
                effective_protected_slots(prefs),
                prefs.working_hours,
                rng,
                self.config.default_granularity_minutes,
                prefs.timezone,
            )

        if self.memo is None or fingerprint is None:
            return compute()
        return self.memo.get_or_compute((user_id, fingerprint, rng.start, rng.end), compute)

    async def _conflicts_for(
        self,
        task: Task,
        slot: TimeSlot,
        calendar_id: str,
        prefs: UserSchedulingPreferences,
        buffer_before: int,
        buffer_after: int,
        ignore_own: bool = False,
    ):
        ids = self._calendar_ids(prefs)
        if calendar_id not in ids:
            ids.insert(0, calendar_id)
        events = await self._list_calendars(ids, slot.start - BUFFER_WINDOW, slot.end + BUFFER_WINDOW)
        return detect_conflicts(
            task,
            slot,
            events,
            rule=get_effective_rule(task, prefs.rules, prefs),
            protected_slots=effective_protected_slots(prefs),
            working_hours=prefs.working_hours,
            buffer_before=buffer_before,
            buffer_after=buffer_after,
            now=self.clock(),
            timezone=prefs.timezone,
            ignore_task_id=task.task_id if ignore_own else None,
        )
