"""In-memory storage backend."""
import asyncio
import logging
from dataclasses import replace
from typing import Dict, List, Optional, Tuple

from services.shared import Ballot, Proposal, rank_proposals

from .storage import (
    StorageBackend,
    UniqueConstraintError,
    MissingReferenceError,
    SUBMITTER_EMAIL,
    PROPOSAL_ID,
    VOTER_EMAIL,
)

logger = logging.getLogger(__name__)


class MemoryBackend(StorageBackend):
    """
    Process-local backend.

    All mutations run under one asyncio.Lock and contain no await between
    their check and their writes, so readers on the same event loop never
    see a ballot without its increment. Returned records are copies.
    """

    name = "memory"

    def __init__(self):
        self._proposals: Dict[str, Proposal] = {}
        self._submitters: Dict[str, str] = {}
        self._ballots: Dict[str, Ballot] = {}
        self._lock = asyncio.Lock()

    async def create_proposal(self, proposal: Proposal) -> None:
        async with self._lock:
            if proposal.submitter_email in self._submitters:
                raise UniqueConstraintError(SUBMITTER_EMAIL)
            if proposal.id in self._proposals:
                raise UniqueConstraintError(PROPOSAL_ID)

            self._proposals[proposal.id] = proposal.copy()
            self._submitters[proposal.submitter_email] = proposal.id

    async def find_proposal_by_submitter(self, submitter_email: str) -> Optional[Proposal]:
        proposal_id = self._submitters.get(submitter_email)
        if proposal_id is None:
            return None
        return self._proposals[proposal_id].copy()

    async def find_proposal_by_id(self, proposal_id: str) -> Optional[Proposal]:
        proposal = self._proposals.get(proposal_id)
        return proposal.copy() if proposal else None

    async def increment_vote_and_record_ballot(self, ballot: Ballot) -> int:
        async with self._lock:
            if ballot.voter_email in self._ballots:
                raise UniqueConstraintError(VOTER_EMAIL)
            proposal = self._proposals.get(ballot.proposal_id)
            if proposal is None:
                raise MissingReferenceError(ballot.proposal_id)

            self._ballots[ballot.voter_email] = replace(ballot)
            proposal.vote_count += 1
            return proposal.vote_count

    async def find_ballot_by_voter(self, voter_email: str) -> Optional[Ballot]:
        ballot = self._ballots.get(voter_email)
        return replace(ballot) if ballot else None

    async def list_proposals_ordered(self) -> List[Proposal]:
        return rank_proposals([p.copy() for p in self._proposals.values()])

    async def count_ballots(self) -> int:
        return len(self._ballots)

    async def snapshot(self) -> Tuple[List[Proposal], int]:
        ranking = rank_proposals([p.copy() for p in self._proposals.values()])
        return ranking, len(self._ballots)
