"""
Commit Engine

Applies approved assignments to the external calendar and writes the
outcome back onto tasks. Every external call is bounded by a timeout and
retried with exponential backoff when the failure is transient; a missing
calendar or event (ExternalResourceGone) is never retried.

Within a confirmation each task is processed independently: one task
failing is recorded in ``failed_tasks`` and does not undo or block the rest.
A successful task ends with ``sync_status=synced``; a failed one ends with
``sync_status=error`` and keeps its previous scheduling fields.

Callers must not run two confirmations for the same user at once.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from ..config import EngineConfig
from ..errors import (
    ConflictDetected,
    ExternalResourceGone,
    ExternalWriteFailure,
    NoViableSlot,
    SchedulingError,
    TaskNotFound,
    ValidationError,
)
from ..integrations import CalendarClient, TaskStore
from ..models import (
    Approval,
    BufferType,
    CalendarEvent,
    ConfirmResult,
    Displacement,
    FailedTask,
    ProposedAssignment,
    ScheduledTask,
    ScheduleProposal,
    SyncStatus,
    Task,
    TimeSlot,
)
from .event_builder import build_buffer_event, build_task_event, build_time_patch, buffer_slots

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Buffers are at most an hour, so they sit within this distance of their task
BUFFER_WINDOW = timedelta(minutes=60)


class CommitEngine:
    """
    Writes scheduling decisions to the calendar and task store.

    Example:
        engine = CommitEngine(calendar, task_store, config)
        result = await engine.confirm(proposal, approvals, displacements_approved=True)
        for failed in result.failed_tasks:
            print(failed.task_id, failed.error)
    """

    def __init__(
        self,
        calendar: CalendarClient,
        tasks: TaskStore,
        config: Optional[EngineConfig] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.calendar = calendar
        self.tasks = tasks
        self.config = config or EngineConfig()
        self._sleep = sleep

    # -------------------------------------------------------------------------
    # External call wrapper
    # -------------------------------------------------------------------------

    async def call(self, operation: str, factory: Callable[[], Awaitable[T]]) -> T:
        """
        Run one external call with timeout and bounded retries.

        Args:
            operation: Name used in logs and errors
            factory: Returns a fresh awaitable for each attempt

        Raises:
            ExternalResourceGone: Immediately, without retry
            ExternalWriteFailure: After retries are exhausted, on timeout, or
                at once when the failure is not retryable
        """
        timeout = self.config.external_timeout_seconds
        attempt = 0
        while True:
            try:
                return await asyncio.wait_for(factory(), timeout=timeout)
            except asyncio.TimeoutError as e:
                error = ExternalWriteFailure(
                    f"{operation} timed out after {timeout}s",
                    operation=operation,
                    original_error=e,
                )
            except ExternalResourceGone:
                raise
            except ExternalWriteFailure as e:
                error = e

            if not error.retryable or attempt >= self.config.max_retries:
                raise error

            delay = min(
                self.config.retry_backoff_seconds * (2 ** attempt),
                self.config.retry_backoff_max_seconds,
            )
            attempt += 1
            logger.warning(
                f"{operation} failed: {error}; retry {attempt}/{self.config.max_retries} in {delay:.2f}s"
            )
            await self._sleep(delay)

    # -------------------------------------------------------------------------
    # Confirmation
    # -------------------------------------------------------------------------

    async def confirm(
        self,
        proposal: ScheduleProposal,
        approvals: Optional[Sequence[Approval]] = None,
        displacements_approved: bool = False,
        timezone: str = "UTC",
    ) -> ConfirmResult:
        """
        Commit the approved assignments of a proposal.

        Args:
            proposal: A live (non-expired) proposal
            approvals: Per-task approvals; None approves every schedulable task
                at its recommended slot
            displacements_approved: Whether moving existing events is allowed
            timezone: Timezone for event bodies

        Returns:
            ConfirmResult. ``success`` stays True when only some tasks fail.
        """
        if approvals is None:
            approvals = [Approval(a.task.task_id) for a in proposal.assignments if a.is_schedulable]

        result = ConfirmResult(success=True)
        jobs = []
        seen = set()
        semaphore = asyncio.Semaphore(self.config.max_concurrent_writes)

        for approval in approvals:
            task_id = approval.task_id
            if task_id in seen:
                continue
            seen.add(task_id)

            if not approval.confirmed:
                result.skipped.append(task_id)
                continue

            assignment = proposal.assignment_for(task_id)
            rejection = self._check_approval(assignment, approval, displacements_approved)
            if rejection is not None:
                result.failed_tasks.append(rejection)
                continue

            jobs.append(self._confirm_one(
                assignment,
                approval,
                proposal.displacements_for(task_id),
                timezone,
                semaphore,
            ))

        outcomes = await asyncio.gather(*jobs)
        for scheduled, failed, displaced in outcomes:
            if scheduled is not None:
                result.scheduled_tasks.append(scheduled)
            if failed is not None:
                result.failed_tasks.append(failed)
            result.displaced.extend(displaced)

        if not result.scheduled_tasks and result.failed_tasks and not result.skipped:
            result.success = False
        logger.info(
            f"Confirmed proposal {proposal.proposal_id}: {len(result.scheduled_tasks)} scheduled, "
            f"{len(result.failed_tasks)} failed, {len(result.skipped)} skipped"
        )
        return result

    def _check_approval(
        self,
        assignment: Optional[ProposedAssignment],
        approval: Approval,
        displacements_approved: bool,
    ) -> Optional[FailedTask]:
        if assignment is None:
            return FailedTask(approval.task_id, "Task is not part of this proposal", ValidationError.error_code)
        if not assignment.is_schedulable:
            return FailedTask(
                approval.task_id,
                assignment.reason or "No available slot in range",
                NoViableSlot.error_code,
            )
        index = approval.slot_index if approval.slot_index is not None else assignment.recommended_index
        if not 0 <= index < len(assignment.suggestions):
            return FailedTask(approval.task_id, f"Invalid slot index {index}", ValidationError.error_code)
        if assignment.requires_displacement and index == assignment.recommended_index and not displacements_approved:
            return FailedTask(
                approval.task_id,
                "Scheduling this task moves another event; displacement was not approved",
                ConflictDetected.error_code,
            )
        return None

    async def _confirm_one(
        self,
        assignment: ProposedAssignment,
        approval: Approval,
        displacements: Sequence[Displacement],
        timezone: str,
        semaphore: asyncio.Semaphore,
    ) -> Tuple[Optional[ScheduledTask], Optional[FailedTask], List[str]]:
        task = assignment.task
        index = approval.slot_index if approval.slot_index is not None else assignment.recommended_index
        slot = assignment.suggestions[index].slot
        displaced: List[str] = []

        async with semaphore:
            try:
                current = await self.call("get_task", lambda: self.tasks.get_task(task.task_id))
                if current is None:
                    raise TaskNotFound(task.task_id)
                if current.is_scheduled:
                    raise ValidationError(f"Task {task.task_id} is already scheduled", field="task_id")

                if index == assignment.recommended_index:
                    for displacement in displacements:
                        if displacement.event_id not in assignment.displacement_event_ids:
                            continue
                        await self.move_displaced(displacement, timezone)
                        displaced.append(displacement.event_id)

                await self.verify_slot_free(assignment.calendar_id, slot)
                scheduled = await self.schedule(
                    current,
                    slot,
                    assignment.calendar_id,
                    assignment.buffer_before,
                    assignment.buffer_after,
                    timezone,
                )
                return scheduled, None, displaced
            except SchedulingError as e:
                logger.error(f"Failed to schedule task {task.task_id}: {e}")
                await self.mark_error(task.task_id, e)
                return None, FailedTask(task.task_id, str(e), e.error_code), displaced
            except Exception as e:
                # A collaborator raised outside the taxonomy; siblings keep going
                logger.exception(f"Unexpected error scheduling task {task.task_id}: {e}")
                await self.mark_error(task.task_id, e)
                return None, FailedTask(task.task_id, str(e), SchedulingError.error_code), displaced

    # -------------------------------------------------------------------------
    # Building blocks
    # -------------------------------------------------------------------------

    async def verify_slot_free(
        self,
        calendar_id: str,
        slot: TimeSlot,
        ignore_task_id: Optional[str] = None,
    ) -> None:
        """
        Re-read the calendar and fail if anything now overlaps ``slot``.

        Raises:
            ConflictDetected: If a non-cancelled event overlaps the slot
        """
        events = await self.call(
            "list_events",
            lambda: self.calendar.list_events(calendar_id, slot.start, slot.end),
        )
        clashes = [
            e for e in events
            if not e.is_cancelled
            and e.overlaps(slot.start, slot.end)
            and (ignore_task_id is None or e.task_id != ignore_task_id)
        ]
        if clashes:
            titles = ", ".join(f"'{e.title}'" for e in clashes)
            raise ConflictDetected(f"Slot is no longer free: overlaps {titles}")

    async def move_displaced(self, displacement: Displacement, timezone: str = "UTC") -> CalendarEvent:
        """
        Move a displaced event to its proposed slot and check it lands cleanly.

        The move is reverted if the new slot turns out to be occupied. The
        linked task, if any, is updated to the new time.
        """
        target = displacement.proposed_slot
        moved = await self.call(
            "update_event",
            lambda: self.calendar.update_event(
                displacement.calendar_id, displacement.event_id, build_time_patch(target, timezone)
            ),
        )
        logger.info(f"Moved displaced event {displacement.event_id} to {target.start.isoformat()}")

        events = await self.call(
            "list_events",
            lambda: self.calendar.list_events(displacement.calendar_id, target.start, target.end),
        )
        clashes = [
            e for e in events
            if e.event_id != displacement.event_id
            and not e.is_cancelled
            and e.overlaps(target.start, target.end)
            and (displacement.task_id is None or e.task_id != displacement.task_id)
        ]
        if clashes:
            await self._revert_move(displacement, timezone)
            raise ConflictDetected(
                f"Displaced event '{displacement.event_title}' would overlap "
                + ", ".join(f"'{e.title}'" for e in clashes)
            )

        if displacement.task_id:
            await self._follow_displaced_task(displacement, timezone)
        return moved

    async def _revert_move(self, displacement: Displacement, timezone: str) -> None:
        try:
            await self.call(
                "update_event",
                lambda: self.calendar.update_event(
                    displacement.calendar_id,
                    displacement.event_id,
                    build_time_patch(displacement.original_slot, timezone),
                ),
            )
        except SchedulingError as e:
            logger.error(f"Could not move event {displacement.event_id} back: {e}")

    async def _follow_displaced_task(self, displacement: Displacement, timezone: str) -> None:
        """Keep the displaced event's task and buffers in step with the move."""
        task = await self.call("get_task", lambda: self.tasks.get_task(displacement.task_id))
        if task is None:
            logger.warning(f"Displaced event {displacement.event_id} links to missing task {displacement.task_id}")
            return

        if task.buffer_before_event_id or task.buffer_after_event_id:
            calendar_id = task.calendar_id or displacement.calendar_id
            original = displacement.original_slot
            try:
                nearby = await self.call(
                    "list_events",
                    lambda: self.calendar.list_events(
                        calendar_id, original.start - BUFFER_WINDOW, original.end + BUFFER_WINDOW
                    ),
                )
                await self.shift_buffers(
                    task, calendar_id, nearby, displacement.proposed_slot.start - original.start, timezone
                )
            except SchedulingError as e:
                logger.warning(f"Could not move buffers of task {task.task_id}: {e}")

        await self.call(
            "update_task",
            lambda: self.tasks.update_task(task.task_id, {
                "scheduled_start": displacement.proposed_slot.start,
                "scheduled_end": displacement.proposed_slot.end,
            }),
        )

    async def shift_buffers(
        self,
        task: Task,
        calendar_id: str,
        events: Sequence[CalendarEvent],
        shift: timedelta,
        timezone: str = "UTC",
    ) -> List[str]:
        """Move the task's buffer events found in ``events`` by ``shift``; returns the moved ids."""
        buffer_ids = {i for i in (task.buffer_before_event_id, task.buffer_after_event_id) if i}
        moved: List[str] = []
        for event in events:
            if event.event_id not in buffer_ids:
                continue
            shifted = TimeSlot(event.start + shift, event.end + shift)
            await self.call(
                "update_event",
                lambda: self.calendar.update_event(calendar_id, event.event_id, build_time_patch(shifted, timezone)),
            )
            moved.append(event.event_id)
        return moved

    async def create_task_events(
        self,
        task: Task,
        slot: TimeSlot,
        calendar_id: str,
        buffer_before: int = 0,
        buffer_after: int = 0,
        timezone: str = "UTC",
    ) -> Tuple[CalendarEvent, Optional[CalendarEvent], Optional[CalendarEvent]]:
        """
        Create the task event and its buffer events.

        If any creation fails, the events already created are deleted and the
        error is re-raised.
        """
        created: List[CalendarEvent] = []
        try:
            main = await self.call(
                "create_event",
                lambda: self.calendar.create_event(calendar_id, build_task_event(task, slot, timezone)),
            )
            created.append(main)
            before_event = after_event = None
            before_slot, after_slot = buffer_slots(slot, buffer_before, buffer_after)
            if before_slot is not None:
                before_event = await self._create_buffer(task, BufferType.BEFORE, before_slot, calendar_id, timezone)
                created.append(before_event)
            if after_slot is not None:
                after_event = await self._create_buffer(task, BufferType.AFTER, after_slot, calendar_id, timezone)
                created.append(after_event)
            return main, before_event, after_event
        except Exception:
            for event in created:
                await self.delete_quietly(calendar_id, event.event_id)
            raise

    async def _create_buffer(
        self,
        task: Task,
        buffer_type: BufferType,
        slot: TimeSlot,
        calendar_id: str,
        timezone: str,
    ) -> CalendarEvent:
        return await self.call(
            "create_event",
            lambda: self.calendar.create_event(calendar_id, build_buffer_event(task, buffer_type, slot, timezone)),
        )

    async def delete_quietly(self, calendar_id: str, event_id: Optional[str]) -> bool:
        """Delete an event, treating 'already gone' as success. Returns False on failure."""
        if not event_id:
            return True
        try:
            await self.call("delete_event", lambda: self.calendar.delete_event(calendar_id, event_id))
            return True
        except ExternalResourceGone:
            logger.debug(f"Event {event_id} already gone")
            return True
        except ExternalWriteFailure as e:
            logger.error(f"Failed to delete event {event_id}: {e}")
            return False

    async def schedule(
        self,
        task: Task,
        slot: TimeSlot,
        calendar_id: str,
        buffer_before: int = 0,
        buffer_after: int = 0,
        timezone: str = "UTC",
    ) -> ScheduledTask:
        """Create the task's events and record them on the task."""
        main, before_event, after_event = await self.create_task_events(
            task, slot, calendar_id, buffer_before, buffer_after, timezone
        )
        changes = {
            "calendar_event_id": main.event_id,
            "calendar_id": calendar_id,
            "scheduled_start": slot.start,
            "scheduled_end": slot.end,
            "buffer_before_event_id": before_event.event_id if before_event else None,
            "buffer_after_event_id": after_event.event_id if after_event else None,
            "sync_status": SyncStatus.SYNCED,
            "sync_error": None,
        }
        try:
            await self.call("update_task", lambda: self.tasks.update_task(task.task_id, changes))
        except Exception:
            for event in (main, before_event, after_event):
                if event is not None:
                    await self.delete_quietly(calendar_id, event.event_id)
            raise

        buffer_ids = [e.event_id for e in (before_event, after_event) if e is not None]
        logger.info(f"Scheduled task {task.task_id} as event {main.event_id} at {slot.start.isoformat()}")
        return ScheduledTask(
            task_id=task.task_id,
            event_id=main.event_id,
            calendar_id=calendar_id,
            slot=slot,
            buffer_event_ids=buffer_ids,
        )

    async def reschedule(
        self,
        task: Task,
        new_slot: TimeSlot,
        buffer_before: int = 0,
        buffer_after: int = 0,
        update_buffers: bool = True,
        timezone: str = "UTC",
    ) -> Task:
        """
        Move a scheduled task's event, and optionally rebuild its buffers.

        New buffers are created before the old ones are deleted, and the old
        ones only go once the task points at the new ids. The main event is
        moved back if a later step fails.
        """
        calendar_id = task.calendar_id or "primary"
        previous = task.scheduled_slot
        await self.call(
            "update_event",
            lambda: self.calendar.update_event(calendar_id, task.calendar_event_id, build_time_patch(new_slot, timezone)),
        )

        changes: Dict[str, Any] = {
            "scheduled_start": new_slot.start,
            "scheduled_end": new_slot.end,
            "sync_status": SyncStatus.SYNCED,
            "sync_error": None,
        }
        created: List[CalendarEvent] = []
        try:
            if update_buffers:
                before_slot, after_slot = buffer_slots(new_slot, buffer_before, buffer_after)
                before_event = after_event = None
                if before_slot is not None:
                    before_event = await self._create_buffer(task, BufferType.BEFORE, before_slot, calendar_id, timezone)
                    created.append(before_event)
                if after_slot is not None:
                    after_event = await self._create_buffer(task, BufferType.AFTER, after_slot, calendar_id, timezone)
                    created.append(after_event)
                changes["buffer_before_event_id"] = before_event.event_id if before_event else None
                changes["buffer_after_event_id"] = after_event.event_id if after_event else None

            updated = await self.call("update_task", lambda: self.tasks.update_task(task.task_id, changes))
        except Exception:
            for event in created:
                await self.delete_quietly(calendar_id, event.event_id)
            if previous is not None:
                try:
                    await self.call(
                        "update_event",
                        lambda: self.calendar.update_event(
                            calendar_id, task.calendar_event_id, build_time_patch(previous, timezone)
                        ),
                    )
                except SchedulingError as e:
                    logger.error(f"Could not restore event {task.calendar_event_id}: {e}")
            raise

        if update_buffers:
            for event_id in (task.buffer_before_event_id, task.buffer_after_event_id):
                if not await self.delete_quietly(calendar_id, event_id):
                    logger.warning(f"Old buffer {event_id} of task {task.task_id} was left on the calendar")

        logger.info(f"Rescheduled task {task.task_id} to {new_slot.start.isoformat()}")
        return updated

    async def unschedule(self, task: Task) -> Tuple[Task, List[str]]:
        """
        Delete a task's events and clear its scheduling fields.

        Events that are already gone count as deleted.

        Raises:
            ExternalWriteFailure: If an event could not be deleted
        """
        calendar_id = task.calendar_id or "primary"
        deleted: List[str] = []
        for event_id in (task.calendar_event_id, task.buffer_before_event_id, task.buffer_after_event_id):
            if not event_id:
                continue
            if not await self.delete_quietly(calendar_id, event_id):
                raise ExternalWriteFailure(f"Could not delete event {event_id}", operation="delete_event")
            deleted.append(event_id)

        changes = {name: None for name in (
            "calendar_event_id",
            "calendar_id",
            "scheduled_start",
            "scheduled_end",
            "buffer_before_event_id",
            "buffer_after_event_id",
            "sync_status",
            "sync_error",
        )}
        updated = await self.call("update_task", lambda: self.tasks.update_task(task.task_id, changes))
        logger.info(f"Unscheduled task {task.task_id}, deleted {len(deleted)} event(s)")
        return updated, deleted

    async def mark_error(
        self,
        task_id: str,
        error: Exception,
        status: SyncStatus = SyncStatus.ERROR,
    ) -> None:
        """Record a failure on the task, leaving its other fields untouched."""
        try:
            await self.call("update_task", lambda: self.tasks.update_task(task_id, {
                "sync_status": status,
                "sync_error": str(error),
            }))
        except SchedulingError as e:
            logger.error(f"Could not record sync error on task {task_id}: {e}")
