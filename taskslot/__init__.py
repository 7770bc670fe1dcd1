"""
taskslot - task scheduling engine.

Finds free time in a user's calendar, scores candidate slots for tasks,
proposes a batch schedule and commits approved assignments back to the
calendar.
"""

from .config import EngineConfig, load_config
from .errors import (
    ConflictDetected,
    ExternalResourceGone,
    ExternalWriteFailure,
    NoViableSlot,
    PartialBatchFailure,
    ProposalNotFound,
    SchedulingError,
    StaleProposal,
    TaskNotFound,
    ValidationError,
)
from .scheduling import SchedulingService

__version__ = "0.1.0"

__all__ = [
    "EngineConfig",
    "load_config",
    "SchedulingService",
    "SchedulingError",
    "ValidationError",
    "TaskNotFound",
    "ProposalNotFound",
    "StaleProposal",
    "NoViableSlot",
    "ConflictDetected",
    "ExternalWriteFailure",
    "ExternalResourceGone",
    "PartialBatchFailure",
]
