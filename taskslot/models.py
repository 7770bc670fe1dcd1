"""
Scheduling data model.

Tasks, rules, protected slots, availability, calendar events and the
proposal/result types passed between the scheduling components. Inbound
dictionaries go through ``from_dict`` where dates are normalized to aware
datetimes in the user's timezone; invariants are checked at construction and
raise ValidationError.
"""

from dataclasses import dataclass, field
from datetime import date, datetime, time
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import PartialBatchFailure, ValidationError
from .timeutil import (
    combine,
    format_hhmm,
    get_zone,
    iter_days,
    minutes_between,
    normalize_datetime,
    parse_date,
    parse_hhmm,
)


# =============================================================================
# ENUMS AND CONSTANTS
# =============================================================================

class Priority(Enum):
    """Task priority."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def weight(self) -> int:
        return PRIORITY_WEIGHT[self]


PRIORITY_WEIGHT: Dict[Priority, int] = {
    Priority.HIGH: 3,
    Priority.MEDIUM: 2,
    Priority.LOW: 1,
}


class TaskType(Enum):
    """Kinds of work a task can be, each with its own default rule."""
    DEEP_WORK = "deep_work"
    CODING = "coding"
    CALL = "call"
    MEETING = "meeting"
    PERSONAL = "personal"
    ADMIN = "admin"
    HEALTH = "health"
    OTHER = "other"


class TimeOfDay(Enum):
    """Coarse time-of-day tag a user can put on a task."""
    MORNING = "morning"
    AFTERNOON = "afternoon"
    EVENING = "evening"


class SyncStatus(Enum):
    """Sync state between a task and its calendar event."""
    PENDING = "pending"
    SYNCED = "synced"
    ERROR = "error"
    ORPHANED = "orphaned"


class EventStatus(Enum):
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class BufferType(Enum):
    BEFORE = "before"
    AFTER = "after"


class ConflictType(Enum):
    OVERLAP = "overlap"
    BUFFER = "buffer"
    RULE_VIOLATION = "rule_violation"
    PROTECTED_SLOT = "protected_slot"
    OUTSIDE_HOURS = "outside_hours"


class ConflictSeverity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


# Scheduling fields a task carries once it has a calendar event
SCHEDULING_FIELDS = (
    "calendar_event_id",
    "calendar_id",
    "scheduled_start",
    "scheduled_end",
    "buffer_before_event_id",
    "buffer_after_event_id",
    "sync_status",
    "sync_error",
)


def _iso(value: Optional[Any]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _validate_days(days: Tuple[int, ...], field_name: str) -> Tuple[int, ...]:
    days = tuple(sorted(set(int(d) for d in days)))
    if not days:
        raise ValidationError(f"{field_name} must not be empty", field=field_name)
    if any(d < 0 or d > 6 for d in days):
        raise ValidationError(f"{field_name} must be within 0-6", field=field_name)
    return days


# =============================================================================
# TIME PRIMITIVES
# =============================================================================

@dataclass(frozen=True)
class TimeRange:
    """Wall-clock range within a day, e.g. 09:00-12:00."""
    start: time
    end: time

    def __post_init__(self):
        if self.start >= self.end:
            raise ValidationError(
                f"Time range start {format_hhmm(self.start)} must be before end {format_hhmm(self.end)}"
            )

    @classmethod
    def from_value(cls, value: Any) -> "TimeRange":
        if isinstance(value, TimeRange):
            return value
        if isinstance(value, dict):
            return cls(parse_hhmm(value["start"]), parse_hhmm(value["end"]))
        start, end = value
        return cls(parse_hhmm(start), parse_hhmm(end))

    @property
    def duration_minutes(self) -> int:
        return (self.end.hour * 60 + self.end.minute) - (self.start.hour * 60 + self.start.minute)

    def contains(self, start: time, end: time) -> bool:
        """Check whether [start, end] lies inside this range."""
        return self.start <= start and end <= self.end

    def to_dict(self) -> Dict[str, str]:
        return {"start": format_hhmm(self.start), "end": format_hhmm(self.end)}


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of calendar dates."""
    start: date
    end: date

    def __post_init__(self):
        if self.start > self.end:
            raise ValidationError("Date range start must not be after end", field="date_range")

    @classmethod
    def from_value(cls, value: Any) -> "DateRange":
        if isinstance(value, DateRange):
            return value
        if isinstance(value, dict):
            return cls(parse_date(value["start"]), parse_date(value["end"]))
        start, end = value
        return cls(parse_date(start), parse_date(end))

    def days(self) -> List[date]:
        return list(iter_days(self.start, self.end))

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(frozen=True)
class TimeSlot:
    """A concrete interval of time, optionally marked unavailable."""
    start: datetime
    end: datetime
    available: bool = True
    # Set when an enabled protected slot is the only thing blocking this slot
    protected_slot_id: Optional[str] = None

    def __post_init__(self):
        if self.start >= self.end:
            raise ValidationError(
                f"Time slot start {self.start.isoformat()} must be before end {self.end.isoformat()}",
                field="slot"
            )

    @property
    def duration_minutes(self) -> int:
        return minutes_between(self.start, self.end)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end

    def contains(self, start: datetime, end: datetime) -> bool:
        return self.start <= start and end <= self.end

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "available": self.available,
        }
        if self.protected_slot_id:
            data["protected_slot_id"] = self.protected_slot_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], timezone: str = "UTC") -> "TimeSlot":
        tz = get_zone(timezone)
        start = normalize_datetime(data.get("start"), tz)
        end = normalize_datetime(data.get("end"), tz)
        if start is None or end is None:
            raise ValidationError("Time slot requires start and end", field="slot")
        return cls(
            start=start,
            end=end,
            available=data.get("available", True),
            protected_slot_id=data.get("protected_slot_id"),
        )


# =============================================================================
# TASKS, RULES AND PROTECTED SLOTS
# =============================================================================

@dataclass
class Task:
    """A captured task plus its calendar scheduling state."""
    task_id: str
    user_id: str
    content: str
    priority: Priority = Priority.MEDIUM

    due_date: Optional[date] = None
    due_time: Optional[time] = None
    scheduled_date: Optional[date] = None
    scheduled_time: Optional[TimeOfDay] = None
    time_estimate: Optional[int] = None
    completed: bool = False
    archived: bool = False
    task_type: Optional[TaskType] = None
    project: Optional[str] = None
    category: Optional[str] = None
    created_at: Optional[datetime] = None

    # Scheduling extension
    calendar_event_id: Optional[str] = None
    calendar_id: Optional[str] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    sync_status: Optional[SyncStatus] = None
    sync_error: Optional[str] = None
    buffer_before: Optional[int] = None
    buffer_after: Optional[int] = None
    buffer_before_event_id: Optional[str] = None
    buffer_after_event_id: Optional[str] = None

    def __post_init__(self):
        if not self.content or not self.content.strip():
            raise ValidationError("Task content must not be empty", field="content")
        if self.time_estimate is not None and self.time_estimate <= 0:
            raise ValidationError("Time estimate must be positive", field="time_estimate")
        if self.sync_status == SyncStatus.SYNCED and not self.calendar_event_id:
            raise ValidationError(
                "A synced task must reference a calendar event", field="sync_status"
            )
        for name in ("buffer_before", "buffer_after"):
            value = getattr(self, name)
            if value is not None and not 0 <= value <= 60:
                raise ValidationError(f"{name} must be within 0-60 minutes", field=name)

    @property
    def is_scheduled(self) -> bool:
        return self.calendar_event_id is not None

    @property
    def is_open(self) -> bool:
        return not (self.completed or self.archived)

    @property
    def scheduled_slot(self) -> Optional[TimeSlot]:
        if self.scheduled_start is None or self.scheduled_end is None:
            return None
        return TimeSlot(self.scheduled_start, self.scheduled_end)

    def due_datetime(self, timezone: str = "UTC") -> Optional[datetime]:
        """Due moment; end of day when only a date is given."""
        if self.due_date is None:
            return None
        return combine(self.due_date, self.due_time or time(23, 59), get_zone(timezone))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "user_id": self.user_id,
            "content": self.content,
            "priority": self.priority.value,
            "due_date": _iso(self.due_date),
            "due_time": format_hhmm(self.due_time) if self.due_time else None,
            "scheduled_date": _iso(self.scheduled_date),
            "scheduled_time": self.scheduled_time.value if self.scheduled_time else None,
            "time_estimate": self.time_estimate,
            "completed": self.completed,
            "archived": self.archived,
            "task_type": self.task_type.value if self.task_type else None,
            "project": self.project,
            "category": self.category,
            "created_at": _iso(self.created_at),
            "calendar_event_id": self.calendar_event_id,
            "calendar_id": self.calendar_id,
            "scheduled_start": _iso(self.scheduled_start),
            "scheduled_end": _iso(self.scheduled_end),
            "sync_status": self.sync_status.value if self.sync_status else None,
            "sync_error": self.sync_error,
            "buffer_before": self.buffer_before,
            "buffer_after": self.buffer_after,
            "buffer_before_event_id": self.buffer_before_event_id,
            "buffer_after_event_id": self.buffer_after_event_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], timezone: str = "UTC") -> "Task":
        """Build a task from stored or wire data, normalizing dates into ``timezone``."""
        tz = get_zone(timezone)
        due_time = data.get("due_time")
        scheduled_time = data.get("scheduled_time")
        task_type = data.get("task_type")
        sync_status = data.get("sync_status")
        return cls(
            task_id=str(data["task_id"]),
            user_id=str(data["user_id"]),
            content=data.get("content", ""),
            priority=Priority(data.get("priority") or "medium"),
            due_date=parse_date(data.get("due_date")),
            due_time=parse_hhmm(due_time) if due_time else None,
            scheduled_date=parse_date(data.get("scheduled_date")),
            scheduled_time=TimeOfDay(scheduled_time) if scheduled_time else None,
            time_estimate=data.get("time_estimate"),
            completed=bool(data.get("completed", False)),
            archived=bool(data.get("archived", False)),
            task_type=TaskType(task_type) if task_type else None,
            project=data.get("project"),
            category=data.get("category"),
            created_at=normalize_datetime(data.get("created_at"), tz),
            calendar_event_id=data.get("calendar_event_id"),
            calendar_id=data.get("calendar_id"),
            scheduled_start=normalize_datetime(data.get("scheduled_start"), tz),
            scheduled_end=normalize_datetime(data.get("scheduled_end"), tz),
            sync_status=SyncStatus(sync_status) if sync_status else None,
            sync_error=data.get("sync_error"),
            buffer_before=data.get("buffer_before"),
            buffer_after=data.get("buffer_after"),
            buffer_before_event_id=data.get("buffer_before_event_id"),
            buffer_after_event_id=data.get("buffer_after_event_id"),
        )


@dataclass
class SchedulingRule:
    """A user's scheduling rule for one task type."""
    rule_id: str
    user_id: str
    task_type: TaskType
    preferred_time_range: TimeRange
    preferred_days: Tuple[int, ...]
    default_duration: int = 60
    buffer_before: int = 0
    buffer_after: int = 0
    enabled: bool = True
    calendar_id: Optional[str] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.preferred_days = _validate_days(self.preferred_days, "preferred_days")
        if not 5 <= self.default_duration <= 480:
            raise ValidationError("default_duration must be within 5-480 minutes", field="default_duration")
        for name in ("buffer_before", "buffer_after"):
            if not 0 <= getattr(self, name) <= 60:
                raise ValidationError(f"{name} must be within 0-60 minutes", field=name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule_id,
            "user_id": self.user_id,
            "task_type": self.task_type.value,
            "enabled": self.enabled,
            "preferred_time_range": self.preferred_time_range.to_dict(),
            "preferred_days": list(self.preferred_days),
            "default_duration": self.default_duration,
            "buffer_before": self.buffer_before,
            "buffer_after": self.buffer_after,
            "calendar_id": self.calendar_id,
            "updated_at": _iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], timezone: str = "UTC") -> "SchedulingRule":
        return cls(
            rule_id=str(data["rule_id"]),
            user_id=str(data["user_id"]),
            task_type=TaskType(data["task_type"]),
            preferred_time_range=TimeRange.from_value(data["preferred_time_range"]),
            preferred_days=tuple(data.get("preferred_days", (1, 2, 3, 4, 5))),
            default_duration=data.get("default_duration", 60),
            buffer_before=data.get("buffer_before", 0),
            buffer_after=data.get("buffer_after", 0),
            enabled=data.get("enabled", True),
            calendar_id=data.get("calendar_id"),
            updated_at=normalize_datetime(data.get("updated_at"), get_zone(timezone)),
        )


@dataclass
class EffectiveRule:
    """Rule values after merging defaults, the user's rule and task overrides."""
    task_type: TaskType
    preferred_time_range: TimeRange
    preferred_days: Tuple[int, ...]
    default_duration: int
    buffer_before: int
    buffer_after: int
    calendar_id: Optional[str] = None
    source: str = "default"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_type": self.task_type.value,
            "preferred_time_range": self.preferred_time_range.to_dict(),
            "preferred_days": list(self.preferred_days),
            "default_duration": self.default_duration,
            "buffer_before": self.buffer_before,
            "buffer_after": self.buffer_after,
            "calendar_id": self.calendar_id,
            "source": self.source,
        }


@dataclass
class ProtectedSlot:
    """A recurring weekly window reserved from scheduling."""
    slot_id: str
    name: str
    days_of_week: Tuple[int, ...]
    time_range: TimeRange
    enabled: bool = True
    allow_override_for_urgent: bool = False

    def __post_init__(self):
        self.days_of_week = _validate_days(self.days_of_week, "days_of_week")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "name": self.name,
            "days_of_week": list(self.days_of_week),
            "time_range": self.time_range.to_dict(),
            "enabled": self.enabled,
            "allow_override_for_urgent": self.allow_override_for_urgent,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProtectedSlot":
        return cls(
            slot_id=str(data["slot_id"]),
            name=data.get("name", data["slot_id"]),
            days_of_week=tuple(data.get("days_of_week", ())),
            time_range=TimeRange.from_value(data["time_range"]),
            enabled=data.get("enabled", True),
            allow_override_for_urgent=data.get("allow_override_for_urgent", False),
        )


# =============================================================================
# AVAILABILITY AND CALENDAR EVENTS
# =============================================================================

@dataclass
class AvailabilityWindow:
    """Tiled free/busy slots for one day of working hours."""
    date: date
    slots: List[TimeSlot] = field(default_factory=list)
    total_free_minutes: int = 0
    total_busy_minutes: int = 0

    @property
    def free_slots(self) -> List[TimeSlot]:
        return [s for s in self.slots if s.available]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "slots": [s.to_dict() for s in self.slots],
            "total_free_minutes": self.total_free_minutes,
            "total_busy_minutes": self.total_busy_minutes,
        }


@dataclass
class CalendarEvent:
    """An event read from (or written to) the external calendar."""
    event_id: str
    calendar_id: str
    title: str
    start: datetime
    end: datetime
    all_day: bool = False
    status: EventStatus = EventStatus.CONFIRMED
    description: Optional[str] = None

    # Task linkage, read from the event's private metadata
    task_id: Optional[str] = None
    buffer_type: Optional[BufferType] = None
    priority: Optional[Priority] = None
    recurring_event_id: Optional[str] = None
    # External events are only displaceable when explicitly tagged
    displaceable: bool = False

    def __post_init__(self):
        if self.start >= self.end:
            raise ValidationError(f"Event {self.event_id} ends before it starts", field="end")

    @property
    def duration_minutes(self) -> int:
        return minutes_between(self.start, self.end)

    @property
    def is_task_event(self) -> bool:
        return self.task_id is not None

    @property
    def is_buffer(self) -> bool:
        return self.buffer_type is not None

    @property
    def is_cancelled(self) -> bool:
        return self.status == EventStatus.CANCELLED

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return self.start < end and start < self.end

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "calendar_id": self.calendar_id,
            "title": self.title,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "all_day": self.all_day,
            "status": self.status.value,
            "description": self.description,
            "task_id": self.task_id,
            "buffer_type": self.buffer_type.value if self.buffer_type else None,
            "priority": self.priority.value if self.priority else None,
            "recurring_event_id": self.recurring_event_id,
            "displaceable": self.displaceable,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], timezone: str = "UTC") -> "CalendarEvent":
        tz = get_zone(timezone)
        buffer_type = data.get("buffer_type")
        priority = data.get("priority")
        return cls(
            event_id=str(data["event_id"]),
            calendar_id=data.get("calendar_id", "primary"),
            title=data.get("title", "Untitled Event"),
            start=normalize_datetime(data["start"], tz),
            end=normalize_datetime(data["end"], tz),
            all_day=data.get("all_day", False),
            status=EventStatus(data.get("status", "confirmed")),
            description=data.get("description"),
            task_id=data.get("task_id"),
            buffer_type=BufferType(buffer_type) if buffer_type else None,
            priority=Priority(priority) if priority else None,
            recurring_event_id=data.get("recurring_event_id"),
            displaceable=data.get("displaceable", False),
        )


# =============================================================================
# SCORING, CONFLICTS AND SUGGESTIONS
# =============================================================================

@dataclass
class ScoringFactor:
    name: str
    weight: int
    value: float
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "weight": self.weight,
            "value": self.value,
            "description": self.description,
        }


@dataclass
class Conflict:
    """A problem with placing a task in a slot."""
    conflict_type: ConflictType
    severity: ConflictSeverity
    description: str
    resolution: Optional[str] = None
    conflicting_event_id: Optional[str] = None

    @property
    def is_blocking(self) -> bool:
        return self.severity == ConflictSeverity.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.conflict_type.value,
            "severity": self.severity.value,
            "description": self.description,
            "resolution": self.resolution,
            "conflicting_event_id": self.conflicting_event_id,
        }


@dataclass
class SchedulingSuggestion:
    """A scored candidate slot for a task."""
    slot: TimeSlot
    score: float
    reasoning: str
    factors: List[ScoringFactor] = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "slot": self.slot.to_dict(),
            "score": self.score,
            "reasoning": self.reasoning,
            "factors": [f.to_dict() for f in self.factors],
            "conflicts": [c.to_dict() for c in self.conflicts],
        }


# =============================================================================
# PROPOSALS
# =============================================================================

@dataclass(frozen=True)
class Displacement:
    """An existing event to be moved so a higher-priority task can take its place."""
    event_id: str
    event_title: str
    calendar_id: str
    original_slot: TimeSlot
    proposed_slot: TimeSlot
    reason: str
    for_task_id: str
    task_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_title": self.event_title,
            "calendar_id": self.calendar_id,
            "original_slot": self.original_slot.to_dict(),
            "proposed_slot": self.proposed_slot.to_dict(),
            "reason": self.reason,
            "for_task_id": self.for_task_id,
            "task_id": self.task_id,
        }


@dataclass(frozen=True)
class ProposedAssignment:
    task: Task
    suggestions: Tuple[SchedulingSuggestion, ...] = ()
    recommended_index: Optional[int] = None
    calendar_id: str = "primary"
    reason: Optional[str] = None
    buffer_before: int = 0
    buffer_after: int = 0
    displacement_event_ids: Tuple[str, ...] = ()

    @property
    def recommended(self) -> Optional[SchedulingSuggestion]:
        if self.recommended_index is None:
            return None
        return self.suggestions[self.recommended_index]

    @property
    def is_schedulable(self) -> bool:
        return self.recommended is not None

    @property
    def requires_displacement(self) -> bool:
        return bool(self.displacement_event_ids)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task.task_id,
            "task_content": self.task.content,
            "priority": self.task.priority.value,
            "suggestions": [s.to_dict() for s in self.suggestions],
            "recommended_index": self.recommended_index,
            "calendar_id": self.calendar_id,
            "reason": self.reason,
            "buffer_before": self.buffer_before,
            "buffer_after": self.buffer_after,
            "displacement_event_ids": list(self.displacement_event_ids),
        }


@dataclass(frozen=True)
class ProposalSummary:
    total_tasks: int
    schedulable_tasks: int
    conflicted_tasks: int
    total_minutes: int

    def __post_init__(self):
        if self.schedulable_tasks + self.conflicted_tasks != self.total_tasks:
            raise ValidationError("Proposal summary counts do not add up")

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_tasks": self.total_tasks,
            "schedulable_tasks": self.schedulable_tasks,
            "conflicted_tasks": self.conflicted_tasks,
            "total_minutes": self.total_minutes,
        }


@dataclass(frozen=True)
class ProposalOptions:
    date_range: Optional[DateRange] = None
    respect_priority: bool = True
    include_buffers: bool = True
    allow_displacement: bool = True
    calendar_id: Optional[str] = None
    suggestions_per_task: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date_range": self.date_range.to_dict() if self.date_range else None,
            "respect_priority": self.respect_priority,
            "include_buffers": self.include_buffers,
            "allow_displacement": self.allow_displacement,
            "calendar_id": self.calendar_id,
            "suggestions_per_task": self.suggestions_per_task,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProposalOptions":
        data = data or {}
        date_range = data.get("date_range")
        return cls(
            date_range=DateRange.from_value(date_range) if date_range else None,
            respect_priority=data.get("respect_priority", True),
            include_buffers=data.get("include_buffers", True),
            allow_displacement=data.get("allow_displacement", True),
            calendar_id=data.get("calendar_id"),
            suggestions_per_task=data.get("suggestions_per_task"),
        )


@dataclass(frozen=True)
class ScheduleProposal:
    """An immutable batch of suggested assignments awaiting user approval."""
    proposal_id: str
    user_id: str
    created_at: datetime
    expires_at: datetime
    assignments: Tuple[ProposedAssignment, ...]
    displacements: Tuple[Displacement, ...]
    summary: ProposalSummary
    options: ProposalOptions = field(default_factory=ProposalOptions)

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def assignment_for(self, task_id: str) -> Optional[ProposedAssignment]:
        for assignment in self.assignments:
            if assignment.task.task_id == task_id:
                return assignment
        return None

    def displacements_for(self, task_id: str) -> List[Displacement]:
        return [d for d in self.displacements if d.for_task_id == task_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "proposal_id": self.proposal_id,
            "user_id": self.user_id,
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "assignments": [a.to_dict() for a in self.assignments],
            "displacements": [d.to_dict() for d in self.displacements],
            "summary": self.summary.to_dict(),
            "options": self.options.to_dict(),
        }


# =============================================================================
# USER PREFERENCES
# =============================================================================

def default_working_hours() -> Dict[int, TimeRange]:
    """Monday through Friday, 09:00-17:00."""
    return {day: TimeRange(time(9, 0), time(17, 0)) for day in range(1, 6)}


@dataclass
class UserSchedulingPreferences:
    user_id: str
    timezone: str = "UTC"
    working_hours: Dict[int, TimeRange] = field(default_factory=default_working_hours)
    default_calendar_id: str = "primary"
    preferred_calendar_id: Optional[str] = None
    rules: List[SchedulingRule] = field(default_factory=list)
    # None means "use the default protected slots"
    protected_slots: Optional[List[ProtectedSlot]] = None
    default_buffer_before: int = 0
    default_buffer_after: int = 0
    keep_slot_free_for_calls: bool = True
    auto_schedule_enabled: bool = False
    prefer_contiguous_blocks: bool = True

    def __post_init__(self):
        get_zone(self.timezone)
        for day in self.working_hours:
            if not 0 <= day <= 6:
                raise ValidationError("working_hours keys must be within 0-6", field="working_hours")

    @property
    def calendar_id(self) -> str:
        return self.preferred_calendar_id or self.default_calendar_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "timezone": self.timezone,
            "working_hours": {str(d): r.to_dict() for d, r in sorted(self.working_hours.items())},
            "default_calendar_id": self.default_calendar_id,
            "preferred_calendar_id": self.preferred_calendar_id,
            "rules": [r.to_dict() for r in self.rules],
            "protected_slots": (
                [s.to_dict() for s in self.protected_slots]
                if self.protected_slots is not None else None
            ),
            "default_buffer_before": self.default_buffer_before,
            "default_buffer_after": self.default_buffer_after,
            "keep_slot_free_for_calls": self.keep_slot_free_for_calls,
            "auto_schedule_enabled": self.auto_schedule_enabled,
            "prefer_contiguous_blocks": self.prefer_contiguous_blocks,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserSchedulingPreferences":
        timezone = data.get("timezone", "UTC")
        working_hours = data.get("working_hours")
        protected = data.get("protected_slots")
        return cls(
            user_id=str(data["user_id"]),
            timezone=timezone,
            working_hours=(
                {int(d): TimeRange.from_value(r) for d, r in working_hours.items() if r}
                if working_hours is not None else default_working_hours()
            ),
            default_calendar_id=data.get("default_calendar_id", "primary"),
            preferred_calendar_id=data.get("preferred_calendar_id"),
            rules=[SchedulingRule.from_dict(r, timezone) for r in data.get("rules", [])],
            protected_slots=(
                [ProtectedSlot.from_dict(s) for s in protected] if protected is not None else None
            ),
            default_buffer_before=data.get("default_buffer_before", 0),
            default_buffer_after=data.get("default_buffer_after", 0),
            keep_slot_free_for_calls=data.get("keep_slot_free_for_calls", True),
            auto_schedule_enabled=data.get("auto_schedule_enabled", False),
            prefer_contiguous_blocks=data.get("prefer_contiguous_blocks", True),
        )


# =============================================================================
# OPERATION RESULTS
# =============================================================================

@dataclass
class Approval:
    """User approval for one task of a proposal."""
    task_id: str
    slot_index: Optional[int] = None
    confirmed: bool = True


@dataclass
class ScheduledTask:
    task_id: str
    event_id: str
    calendar_id: str
    slot: TimeSlot
    buffer_event_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "event_id": self.event_id,
            "calendar_id": self.calendar_id,
            "slot": self.slot.to_dict(),
            "buffer_event_ids": list(self.buffer_event_ids),
        }


@dataclass
class FailedTask:
    task_id: str
    error: str
    error_code: str

    def to_dict(self) -> Dict[str, str]:
        return {"task_id": self.task_id, "error": self.error, "code": self.error_code}


@dataclass
class ConfirmResult:
    """Outcome of confirming a proposal; partial failure still reports success."""
    success: bool
    scheduled_tasks: List[ScheduledTask] = field(default_factory=list)
    failed_tasks: List[FailedTask] = field(default_factory=list)
    displaced: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)

    @property
    def partial(self) -> bool:
        return bool(self.scheduled_tasks) and bool(self.failed_tasks)

    def raise_for_failures(self) -> None:
        """Raise PartialBatchFailure if any task failed."""
        if self.failed_tasks:
            raise PartialBatchFailure(self.failed_tasks, self.scheduled_tasks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "scheduled_tasks": [s.to_dict() for s in self.scheduled_tasks],
            "failed_tasks": [f.to_dict() for f in self.failed_tasks],
            "displaced": list(self.displaced),
            "skipped": list(self.skipped),
        }


@dataclass
class SuggestionsResult:
    task: Task
    suggestions: List[SchedulingSuggestion]
    applied_rule: Optional[EffectiveRule] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task.task_id,
            "suggestions": [s.to_dict() for s in self.suggestions],
            "applied_rule": self.applied_rule.to_dict() if self.applied_rule else None,
        }


@dataclass
class ScheduleTaskResult:
    success: bool
    task: Optional[Task] = None
    event_id: Optional[str] = None
    buffer_event_ids: List[str] = field(default_factory=list)
    requires_approval: bool = False
    conflicts: List[Conflict] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "task": self.task.to_dict() if self.task else None,
            "event_id": self.event_id,
            "buffer_event_ids": list(self.buffer_event_ids),
            "requires_approval": self.requires_approval,
            "conflicts": [c.to_dict() for c in self.conflicts],
        }


@dataclass
class RescheduleTaskResult:
    success: bool
    task: Optional[Task] = None
    previous_slot: Optional[TimeSlot] = None
    new_slot: Optional[TimeSlot] = None
    buffer_event_ids: List[str] = field(default_factory=list)
    requires_approval: bool = False
    conflicts: List[Conflict] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "task": self.task.to_dict() if self.task else None,
            "previous_slot": self.previous_slot.to_dict() if self.previous_slot else None,
            "new_slot": self.new_slot.to_dict() if self.new_slot else None,
            "buffer_event_ids": list(self.buffer_event_ids),
            "requires_approval": self.requires_approval,
            "conflicts": [c.to_dict() for c in self.conflicts],
        }


@dataclass
class UnscheduleTaskResult:
    success: bool
    task: Optional[Task] = None
    deleted_event_ids: List[str] = field(default_factory=list)
    already_unscheduled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "task": self.task.to_dict() if self.task else None,
            "deleted_event_ids": list(self.deleted_event_ids),
            "already_unscheduled": self.already_unscheduled,
        }


@dataclass
class CalendarSyncResult:
    """Outcome of reconciling tasks against one calendar."""
    calendar_id: str
    checked: int = 0
    unscheduled: List[str] = field(default_factory=list)
    moved: List[str] = field(default_factory=list)
    failed_tasks: List[FailedTask] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "calendar_id": self.calendar_id,
            "checked": self.checked,
            "unscheduled": list(self.unscheduled),
            "moved": list(self.moved),
            "failed_tasks": [f.to_dict() for f in self.failed_tasks],
        }
