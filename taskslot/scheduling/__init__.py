"""
Scheduling Module

Components of the scheduling engine:
- Availability: free/busy slots per day from events, working hours and protected slots
- Scoring: weighted factor scoring of a candidate slot
- Suggestions: ranked, non-overlapping slot suggestions for one task
- Proposal: batch assignment of tasks to slots, with displacement
- Commit: writes approved assignments to the calendar and task store
- Service: the public operations tying these together
"""

# Availability
from .availability import (
    AvailabilityMemo,
    availability_fingerprint,
    claim_regions,
    compute_availability,
    free_runs,
    is_region_free,
)

# Rules and protected time
from .rules import (
    DEFAULT_TASK_TYPE_RULES,
    get_effective_rule,
    get_task_type,
    infer_task_type,
    slot_satisfies_rules,
    validate_rule_set,
)
from .protected import (
    default_protected_slots,
    effective_protected_slots,
    is_urgent_task,
)
from .conflicts import (
    detect_conflicts,
    has_blocking_conflicts,
    is_displaceable,
)

# Scoring and suggestions
from .scoring import (
    DEFAULT_FACTORS,
    Factor,
    ScoringContext,
    build_factor_table,
    score_slot,
)
from .suggestions import get_suggestions

# Proposals and commits
from .proposal import ProposalBuilder
from .proposal_store import ProposalStore
from .commit import CommitEngine
from .reconcile import reconcile_task
from .service import SchedulingService

__all__ = [
    # Availability
    "AvailabilityMemo",
    "availability_fingerprint",
    "claim_regions",
    "compute_availability",
    "free_runs",
    "is_region_free",
    # Rules and protected time
    "DEFAULT_TASK_TYPE_RULES",
    "get_effective_rule",
    "get_task_type",
    "infer_task_type",
    "slot_satisfies_rules",
    "validate_rule_set",
    "default_protected_slots",
    "effective_protected_slots",
    "is_urgent_task",
    "detect_conflicts",
    "has_blocking_conflicts",
    "is_displaceable",
    # Scoring and suggestions
    "DEFAULT_FACTORS",
    "Factor",
    "ScoringContext",
    "build_factor_table",
    "score_slot",
    "get_suggestions",
    # Proposals and commits
    "ProposalBuilder",
    "ProposalStore",
    "CommitEngine",
    "reconcile_task",
    "SchedulingService",
]
