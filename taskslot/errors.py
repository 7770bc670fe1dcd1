"""
Scheduling error taxonomy.

Every error raised by the engine derives from SchedulingError and carries a
stable error code plus a recoverable flag, so callers can tell a bad request
from a transient calendar failure without string matching.
"""

from typing import Any, Dict, List, Optional


class SchedulingError(Exception):
    """Base exception for scheduling engine errors."""

    error_code = "SCHEDULING_ERROR"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        recoverable: bool = False,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        self.recoverable = recoverable
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": str(self),
            "code": self.error_code,
            "recoverable": self.recoverable
        }


class ValidationError(SchedulingError):
    """Raised when input violates a model or request invariant."""

    error_code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, recoverable=False)
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["field"] = self.field
        return data


class TaskNotFound(SchedulingError):
    """Raised when a task id does not resolve for the user."""

    error_code = "TASK_NOT_FOUND"

    def __init__(self, task_id: str):
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class ProposalNotFound(SchedulingError):
    """Raised when a proposal id is unknown or belongs to another user."""

    error_code = "PROPOSAL_NOT_FOUND"

    def __init__(self, proposal_id: str):
        super().__init__(f"Proposal not found: {proposal_id}")
        self.proposal_id = proposal_id


class StaleProposal(SchedulingError):
    """Raised when a proposal is confirmed after its expiry."""

    error_code = "STALE_PROPOSAL"

    def __init__(self, proposal_id: str, expired_at: Any = None):
        message = f"Proposal {proposal_id} has expired"
        if expired_at is not None:
            message += f" (at {expired_at})"
        super().__init__(message, recoverable=False)
        self.proposal_id = proposal_id
        self.expired_at = expired_at


class NoViableSlot(SchedulingError):
    """Raised when no slot in range can hold the task."""

    error_code = "NO_VIABLE_SLOT"

    def __init__(self, task_id: str, reason: str = "No available slot in range"):
        super().__init__(f"{reason} for task {task_id}")
        self.task_id = task_id
        self.reason = reason


class ConflictDetected(SchedulingError):
    """Raised when a write would create a blocking conflict."""

    error_code = "CONFLICT_DETECTED"

    def __init__(self, message: str, conflicts: Optional[List[Any]] = None):
        super().__init__(message, recoverable=True)
        self.conflicts = conflicts or []

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["conflicts"] = [c.to_dict() for c in self.conflicts]
        return data


class ExternalWriteFailure(SchedulingError):
    """Raised when a calendar or task store call fails, including timeouts."""

    error_code = "EXTERNAL_WRITE_FAILURE"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: bool = True,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message, recoverable=True, original_error=original_error)
        self.operation = operation
        self.status_code = status_code
        # False for failures a retry cannot fix, such as a rejected request body
        self.retryable = retryable


class ExternalResourceGone(SchedulingError):
    """Raised when the calendar or event no longer exists or access is revoked."""

    error_code = "EXTERNAL_RESOURCE_GONE"

    def __init__(
        self,
        message: str,
        resource_id: Optional[str] = None,
        original_error: Optional[Exception] = None
    ):
        super().__init__(message, recoverable=False, original_error=original_error)
        self.resource_id = resource_id


class PartialBatchFailure(SchedulingError):
    """Raised on request when a confirmation committed some tasks but not all."""

    error_code = "PARTIAL_BATCH_FAILURE"

    def __init__(self, failed_tasks: List[Any], scheduled_tasks: Optional[List[Any]] = None):
        super().__init__(
            f"{len(failed_tasks)} task(s) failed to schedule",
            recoverable=True
        )
        self.failed_tasks = failed_tasks
        self.scheduled_tasks = scheduled_tasks or []

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["failed_tasks"] = [f.to_dict() for f in self.failed_tasks]
        return data
