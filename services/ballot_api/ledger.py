"""
Voting ledger.

Owns proposals and ballots and enforces their invariants:
- one proposal per submitter email and one ballot per voter email
- a proposal's vote count always equals its number of ballots
- no proposal or ballot is created at or after the deadline

The ledger keeps no mutable state of its own between calls; every
check-and-write runs inside a single atomic backend operation.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from services.shared import (
    Ballot,
    Proposal,
    Standings,
    generate_proposal_id,
    normalize_email,
    truncate_timestamp,
)
from services.shared.models import RECORD_FIELDS

from .errors import (
    AlreadyVoted,
    DeadlinePassed,
    DuplicateSubmitter,
    ProposalNotFound,
    StorageUnavailable,
    ValidationError,
)
from .storage import (
    BackendError,
    MissingReferenceError,
    StorageBackend,
    UniqueConstraintError,
    PROPOSAL_ID,
    VOTER_EMAIL,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

# Attempts at inserting a proposal when a generated id is already taken
MAX_ID_ATTEMPTS = 3


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _require_text(value: Any, field: str, missing: List[str]) -> str:
    if not isinstance(value, str) or not value.strip():
        missing.append(field)
        return ""
    return value.strip()


class Ledger:
    """
    The voting ledger.

    Args:
        backend: Storage backend holding proposals and ballots
        deadline: Instant after which submissions and votes are refused
        clock: Returns the current time; defaults to the UTC wall clock
        timeout: Seconds allowed for each backend call
    """

    def __init__(self, backend: StorageBackend, deadline: datetime,
                 clock: Optional[Clock] = None, timeout: float = 5.0):
        if deadline.tzinfo is None:
            deadline = deadline.replace(tzinfo=timezone.utc)
        self.backend = backend
        self.deadline = deadline
        self.clock = clock or utc_now
        self.timeout = timeout

    def is_past_deadline(self, now: Optional[datetime] = None) -> bool:
        """True once the deadline instant has been reached."""
        if now is None:
            now = self.clock()
        return now >= self.deadline

    def _check_open(self, action: str) -> datetime:
        """Read the clock once and refuse ``action`` at or after the deadline."""
        now = self.clock()
        if self.is_past_deadline(now):
            logger.info(f"Rejected {action}: deadline {self.deadline.isoformat()} has passed")
            raise DeadlinePassed("The deadline has passed")
        return now

    async def _call(self, operation: Awaitable, description: str):
        """
        Run a backend call with the storage timeout.

        Uniqueness and reference failures propagate for the caller to map;
        every other backend failure becomes StorageUnavailable.
        """
        try:
            return await asyncio.wait_for(operation, timeout=self.timeout)
        except (UniqueConstraintError, MissingReferenceError):
            raise
        except asyncio.TimeoutError as e:
            logger.error(f"Storage timed out during {description} after {self.timeout}s")
            raise StorageUnavailable("Storage timed out, please retry") from e
        except BackendError as e:
            logger.error(f"Storage failure during {description}: {e}")
            raise StorageUnavailable("Storage unavailable, please retry") from e

    async def submit_proposal(self, submitter_email: str, title: str, body: str,
                              name: str = "",
                              attrs: Optional[Mapping[str, Any]] = None) -> Proposal:
        """
        Create a proposal with zero votes.

        Raises:
            DeadlinePassed: called at or after the deadline
            ValidationError: email, title or body missing or blank
            DuplicateSubmitter: the email already owns a proposal
            StorageUnavailable: backend failure, nothing was written
        """
        now = self._check_open("submission")

        missing: List[str] = []
        email = _require_text(submitter_email, "email", missing)
        title = _require_text(title, "title", missing)
        body = _require_text(body, "description", missing)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")
        if name is not None and not isinstance(name, str):
            raise ValidationError("name must be text")

        extra: Dict[str, Any] = dict(attrs or {})
        reserved = sorted(k for k in extra if not isinstance(k, str) or k in RECORD_FIELDS)
        if reserved:
            raise ValidationError(f"Reserved attribute names: {', '.join(map(str, reserved))}")

        email = normalize_email(email)
        existing = await self._call(
            self.backend.find_proposal_by_submitter(email), "submitter lookup"
        )
        if existing is not None:
            logger.info(f"Rejected duplicate submission from {email}")
            raise DuplicateSubmitter("A proposal was already submitted with this email")

        for attempt in range(1, MAX_ID_ATTEMPTS + 1):
            proposal = Proposal(
                id=generate_proposal_id(),
                submitter_email=email,
                title=title,
                body=body,
                created_at=truncate_timestamp(now),
                name=(name or "").strip(),
                attrs=extra,
            )
            try:
                await self._call(self.backend.create_proposal(proposal), "proposal insert")
                break
            except UniqueConstraintError as e:
                if e.field == PROPOSAL_ID and attempt < MAX_ID_ATTEMPTS:
                    logger.warning(f"Proposal id {proposal.id} already taken, regenerating")
                    continue
                if e.field == PROPOSAL_ID:
                    raise StorageUnavailable("Could not allocate a proposal id") from e
                logger.info(f"Rejected duplicate submission from {email}")
                raise DuplicateSubmitter(
                    "A proposal was already submitted with this email"
                ) from e

        logger.info(f"Proposal submitted: id={proposal.id}, title={proposal.title!r}")
        return proposal

    async def list_proposals(self) -> List[Proposal]:
        """All proposals, most votes first, earlier submission first on ties."""
        return await self._call(self.backend.list_proposals_ordered(), "proposal listing")

    async def cast_vote(self, voter_email: str, proposal_id: str) -> int:
        """
        Record a voter's single ballot.

        Returns:
            int: The proposal's new vote count

        Raises:
            DeadlinePassed: called at or after the deadline
            ValidationError: email or proposal id missing
            AlreadyVoted: the email already has a ballot
            ProposalNotFound: no proposal with that id
            StorageUnavailable: backend failure, nothing was written
        """
        now = self._check_open("vote")

        missing: List[str] = []
        email = _require_text(voter_email, "email", missing)
        proposal_id = _require_text(proposal_id, "ideaId", missing)
        if missing:
            raise ValidationError(f"Missing required fields: {', '.join(missing)}")

        email = normalize_email(email)
        ballot = Ballot(
            voter_email=email,
            proposal_id=proposal_id,
            cast_at=truncate_timestamp(now),
        )

        try:
            votes = await self._call(
                self.backend.increment_vote_and_record_ballot(ballot), "ballot insert"
            )
        except UniqueConstraintError as e:
            if e.field != VOTER_EMAIL:
                raise StorageUnavailable("Unexpected constraint failure") from e
            logger.info(f"Rejected second ballot from {email}")
            raise AlreadyVoted("This email has already voted") from e
        except MissingReferenceError as e:
            logger.info(f"Rejected ballot for unknown proposal {proposal_id}")
            raise ProposalNotFound("Proposal not found") from e

        logger.info(f"Vote recorded: proposal={proposal_id}, votes={votes}")
        return votes

    async def results(self) -> Standings:
        """Current standings, winner and ballot total, read as one snapshot."""
        ranking, total = await self._call(self.backend.snapshot(), "standings read")
        return Standings(
            ranking=ranking,
            winner=ranking[0] if ranking else None,
            total_ballots=total,
            is_past_deadline=self.is_past_deadline(),
        )
