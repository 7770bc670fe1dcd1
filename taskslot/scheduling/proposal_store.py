"""In-process proposal storage with expiry and consume-once semantics."""

import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Dict, List

from ..errors import ProposalNotFound, StaleProposal, ValidationError
from ..models import ScheduleProposal

logger = logging.getLogger(__name__)


class ProposalStore:
    """
    Holds proposals between ``propose_schedule`` and ``confirm_schedule``.

    A proposal is only returned to the user who created it; other users get
    ProposalNotFound so ids leak nothing. Expired proposals raise
    StaleProposal until purged.
    """

    def __init__(self):
        self._proposals: Dict[str, ScheduleProposal] = {}

    def save(self, proposal: ScheduleProposal) -> None:
        self._proposals[proposal.proposal_id] = proposal
        logger.debug(f"Stored proposal {proposal.proposal_id} (expires {proposal.expires_at.isoformat()})")

    def get(self, proposal_id: str, user_id: str, now: datetime) -> ScheduleProposal:
        """
        Fetch a live proposal.

        Raises:
            ProposalNotFound: Unknown id or another user's proposal
            StaleProposal: Proposal has expired
        """
        proposal = self._proposals.get(proposal_id)
        if proposal is None or proposal.user_id != user_id:
            raise ProposalNotFound(proposal_id)
        if proposal.is_expired(now):
            raise StaleProposal(proposal_id, proposal.expires_at.isoformat())
        return proposal

    def consume(self, proposal_id: str) -> None:
        """Remove a proposal once it has been confirmed."""
        self._proposals.pop(proposal_id, None)

    def list_active(self, user_id: str, now: datetime) -> List[ScheduleProposal]:
        active = [
            p for p in self._proposals.values()
            if p.user_id == user_id and not p.is_expired(now)
        ]
        return sorted(active, key=lambda p: p.created_at, reverse=True)

    def purge_expired(self, now: datetime) -> int:
        """Drop expired proposals; returns how many were removed."""
        expired = [pid for pid, p in self._proposals.items() if p.is_expired(now)]
        for proposal_id in expired:
            del self._proposals[proposal_id]
        if expired:
            logger.info(f"Purged {len(expired)} expired proposal(s)")
        return len(expired)

    def extend(self, proposal_id: str, user_id: str, minutes: int, now: datetime) -> ScheduleProposal:
        """Push a live proposal's expiry out by ``minutes``."""
        if minutes <= 0:
            raise ValidationError("Extension must be positive", field="minutes")
        proposal = self.get(proposal_id, user_id, now)
        extended = replace(proposal, expires_at=proposal.expires_at + timedelta(minutes=minutes))
        self._proposals[proposal_id] = extended
        return extended

    def __len__(self) -> int:
        return len(self._proposals)
