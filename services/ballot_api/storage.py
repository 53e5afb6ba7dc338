"""
Storage backend contract for the voting ledger.

Every backend implements the same async interface and guarantees that each
mutating call is all-or-nothing. Failures are reported with the error kinds
defined here; the ledger maps them to its own taxonomy.
"""
import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from services.shared import Ballot, Proposal

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Generic backend failure (connection loss, I/O error, timeout)."""
    pass


class UniqueConstraintError(BackendError):
    """A uniqueness constraint rejected the write."""

    def __init__(self, field: str):
        super().__init__(f"Unique constraint violated on {field}")
        self.field = field


class MissingReferenceError(BackendError):
    """A ballot referenced a proposal that does not exist."""

    def __init__(self, proposal_id: str):
        super().__init__(f"Proposal {proposal_id} does not exist")
        self.proposal_id = proposal_id


# Values of UniqueConstraintError.field
SUBMITTER_EMAIL = "submitter_email"
PROPOSAL_ID = "proposal_id"
VOTER_EMAIL = "voter_email"


class StorageBackend(ABC):
    """Durable record store used by the ledger."""

    name = "storage"

    async def initialize(self):
        """Open connections and create the schema if needed."""

    async def close(self):
        """Release connections."""

    async def check_health(self) -> bool:
        """
        Check backend health.

        Returns:
            bool: True if healthy, False otherwise
        """
        return True

    @abstractmethod
    async def create_proposal(self, proposal: Proposal) -> None:
        """
        Persist a new proposal.

        Raises:
            UniqueConstraintError: submitter email or id already present
        """

    @abstractmethod
    async def find_proposal_by_submitter(self, submitter_email: str) -> Optional[Proposal]:
        """Return the proposal owned by a normalized email, if any."""

    @abstractmethod
    async def find_proposal_by_id(self, proposal_id: str) -> Optional[Proposal]:
        """Return a proposal by id, if any."""

    @abstractmethod
    async def increment_vote_and_record_ballot(self, ballot: Ballot) -> int:
        """
        Insert a ballot and bump its proposal's vote count as one unit.

        Returns:
            int: The proposal's new vote count

        Raises:
            UniqueConstraintError: the voter already has a ballot
            MissingReferenceError: the proposal does not exist
        """

    @abstractmethod
    async def find_ballot_by_voter(self, voter_email: str) -> Optional[Ballot]:
        """Return the ballot cast by a normalized email, if any."""

    @abstractmethod
    async def list_proposals_ordered(self) -> List[Proposal]:
        """Return every proposal, most votes first, earliest first on ties."""

    @abstractmethod
    async def count_ballots(self) -> int:
        """Return the number of ballots ever cast."""

    @abstractmethod
    async def snapshot(self) -> Tuple[List[Proposal], int]:
        """
        Read the standings and the ballot count as one consistent view.

        Returns:
            tuple: Proposals in standings order and the number of ballots
        """


def build_backend(settings) -> StorageBackend:
    """
    Create the backend selected by ``settings.STORAGE_BACKEND``.

    Args:
        settings: Application settings

    Returns:
        StorageBackend: Uninitialized backend instance
    """
    kind = settings.STORAGE_BACKEND
    logger.info(f"Using {kind} storage backend")

    if kind == "memory":
        from .memory_store import MemoryBackend
        return MemoryBackend()
    if kind == "file":
        from .file_store import FileBackend
        return FileBackend(settings.DATA_FILE, lock_timeout=settings.STORAGE_TIMEOUT)
    if kind == "postgres":
        from .database import PostgresBackend
        return PostgresBackend(
            settings.postgres_dsn,
            min_size=settings.POSTGRES_POOL_MIN_SIZE,
            max_size=settings.POSTGRES_POOL_MAX_SIZE,
            command_timeout=settings.STORAGE_TIMEOUT,
        )
    if kind == "redis":
        from .redis_client import RedisBackend
        return RedisBackend(
            settings.redis_url,
            key_prefix=settings.REDIS_KEY_PREFIX,
            socket_timeout=settings.STORAGE_TIMEOUT,
        )

    raise ValueError(f"Unknown storage backend: {kind}")
