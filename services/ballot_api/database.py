"""PostgreSQL storage backend."""
import asyncpg
import json
import logging
from typing import List, Optional, Tuple

from services.shared import Ballot, Proposal

from .storage import (
    StorageBackend,
    BackendError,
    UniqueConstraintError,
    MissingReferenceError,
    SUBMITTER_EMAIL,
    PROPOSAL_ID,
    VOTER_EMAIL,
)

logger = logging.getLogger(__name__)


SCHEMA = """
    CREATE TABLE IF NOT EXISTS proposals (
        id              TEXT PRIMARY KEY,
        submitter_email TEXT NOT NULL,
        name            TEXT NOT NULL DEFAULT '',
        title           TEXT NOT NULL,
        body            TEXT NOT NULL,
        attrs           JSONB NOT NULL DEFAULT '{}'::jsonb,
        vote_count      INTEGER NOT NULL DEFAULT 0 CHECK (vote_count >= 0),
        created_at      TIMESTAMPTZ NOT NULL,
        CONSTRAINT proposals_submitter_email_key UNIQUE (submitter_email)
    );

    CREATE TABLE IF NOT EXISTS ballots (
        voter_email TEXT PRIMARY KEY,
        proposal_id TEXT NOT NULL REFERENCES proposals (id),
        cast_at     TIMESTAMPTZ
    );

    CREATE INDEX IF NOT EXISTS proposals_ranking_idx
        ON proposals (vote_count DESC, created_at ASC, id ASC);
"""

PROPOSAL_COLUMNS = "id, submitter_email, name, title, body, attrs, vote_count, created_at"

DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)

# Unique constraint name -> field reported to the ledger
CONSTRAINT_FIELDS = {
    "proposals_submitter_email_key": SUBMITTER_EMAIL,
    "proposals_pkey": PROPOSAL_ID,
    "ballots_pkey": VOTER_EMAIL,
}


def _row_to_proposal(row) -> Proposal:
    attrs = row["attrs"]
    if isinstance(attrs, str):
        attrs = json.loads(attrs)
    return Proposal(
        id=row["id"],
        submitter_email=row["submitter_email"],
        name=row["name"],
        title=row["title"],
        body=row["body"],
        attrs=attrs,
        vote_count=row["vote_count"],
        created_at=row["created_at"],
    )


class PostgresBackend(StorageBackend):
    """
    Async PostgreSQL backend.

    Uniqueness is enforced by table constraints and a vote is one
    transaction (ballot insert + counter update), so concurrent requests
    from any number of service processes keep the invariants.
    """

    name = "postgresql"

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10,
                 command_timeout: float = 5.0):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self):
        """Initialize database connection pool and schema."""
        try:
            self.pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.min_size,
                max_size=self.max_size,
                command_timeout=self.command_timeout
            )
            logger.info("PostgreSQL connection pool initialized successfully")

            async with self.pool.acquire() as conn:
                await conn.execute(SCHEMA)
                logger.info("PostgreSQL schema verified")

        except Exception as e:
            logger.error(f"Failed to initialize PostgreSQL connection pool: {e}")
            raise

    async def close(self):
        """Close database connection pool."""
        try:
            if self.pool:
                await self.pool.close()
                logger.info("PostgreSQL connection pool closed successfully")
        except Exception as e:
            logger.error(f"Error closing PostgreSQL connection pool: {e}")

    async def check_health(self) -> bool:
        """Check database connection health."""
        try:
            if not self.pool:
                return False
            async with self.pool.acquire() as conn:
                await conn.fetchval("SELECT 1")
                return True
        except Exception as e:
            logger.error(f"PostgreSQL health check failed: {e}")
            return False

    async def create_proposal(self, proposal: Proposal) -> None:
        query = f"""
            INSERT INTO proposals ({PROPOSAL_COLUMNS})
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7, $8)
        """
        try:
            async with self.pool.acquire() as conn:
                await conn.execute(
                    query,
                    proposal.id, proposal.submitter_email, proposal.name,
                    proposal.title, proposal.body, json.dumps(proposal.attrs),
                    proposal.vote_count, proposal.created_at
                )
        except asyncpg.UniqueViolationError as e:
            raise UniqueConstraintError(
                CONSTRAINT_FIELDS.get(e.constraint_name, SUBMITTER_EMAIL)
            ) from e
        except DB_ERRORS as e:
            logger.error(f"Error creating proposal {proposal.id}: {e}")
            raise BackendError(str(e)) from e

    async def find_proposal_by_submitter(self, submitter_email: str) -> Optional[Proposal]:
        query = f"SELECT {PROPOSAL_COLUMNS} FROM proposals WHERE submitter_email = $1"
        row = await self._fetchrow(query, submitter_email)
        return _row_to_proposal(row) if row else None

    async def find_proposal_by_id(self, proposal_id: str) -> Optional[Proposal]:
        query = f"SELECT {PROPOSAL_COLUMNS} FROM proposals WHERE id = $1"
        row = await self._fetchrow(query, proposal_id)
        return _row_to_proposal(row) if row else None

    async def increment_vote_and_record_ballot(self, ballot: Ballot) -> int:
        """
        Record a ballot and bump the proposal counter in one transaction.

        The ballot primary key rejects a second ballot from the same voter
        and the foreign key rejects unknown proposals; either failure rolls
        back the whole transaction.
        """
        insert_query = """
            INSERT INTO ballots (voter_email, proposal_id, cast_at)
            VALUES ($1, $2, $3)
        """
        update_query = """
            UPDATE proposals
            SET vote_count = vote_count + 1
            WHERE id = $1
            RETURNING vote_count
        """
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        insert_query,
                        ballot.voter_email, ballot.proposal_id, ballot.cast_at
                    )
                    return await conn.fetchval(update_query, ballot.proposal_id)

        except asyncpg.UniqueViolationError as e:
            raise UniqueConstraintError(VOTER_EMAIL) from e
        except asyncpg.ForeignKeyViolationError as e:
            raise MissingReferenceError(ballot.proposal_id) from e
        except DB_ERRORS as e:
            logger.error(f"Error recording ballot for proposal {ballot.proposal_id}: {e}")
            raise BackendError(str(e)) from e

    async def find_ballot_by_voter(self, voter_email: str) -> Optional[Ballot]:
        query = "SELECT voter_email, proposal_id, cast_at FROM ballots WHERE voter_email = $1"
        row = await self._fetchrow(query, voter_email)
        if not row:
            return None
        return Ballot(
            voter_email=row["voter_email"],
            proposal_id=row["proposal_id"],
            cast_at=row["cast_at"],
        )

    async def list_proposals_ordered(self) -> List[Proposal]:
        query = f"""
            SELECT {PROPOSAL_COLUMNS}
            FROM proposals
            ORDER BY vote_count DESC, created_at ASC, id ASC
        """
        try:
            async with self.pool.acquire() as conn:
                rows = await conn.fetch(query)
                return [_row_to_proposal(row) for row in rows]
        except DB_ERRORS as e:
            logger.error(f"Error listing proposals: {e}")
            raise BackendError(str(e)) from e

    async def count_ballots(self) -> int:
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchval("SELECT COUNT(*) FROM ballots")
        except DB_ERRORS as e:
            logger.error(f"Error counting ballots: {e}")
            raise BackendError(str(e)) from e

    async def snapshot(self) -> Tuple[List[Proposal], int]:
        """Standings and ballot count read in one REPEATABLE READ transaction."""
        query = f"""
            SELECT {PROPOSAL_COLUMNS}
            FROM proposals
            ORDER BY vote_count DESC, created_at ASC, id ASC
        """
        try:
            async with self.pool.acquire() as conn:
                async with conn.transaction(isolation="repeatable_read", readonly=True):
                    rows = await conn.fetch(query)
                    total = await conn.fetchval("SELECT COUNT(*) FROM ballots")
            return [_row_to_proposal(row) for row in rows], total
        except DB_ERRORS as e:
            logger.error(f"Error reading standings: {e}")
            raise BackendError(str(e)) from e

    async def _fetchrow(self, query: str, *args):
        try:
            async with self.pool.acquire() as conn:
                return await conn.fetchrow(query, *args)
        except DB_ERRORS as e:
            logger.error(f"Error querying PostgreSQL: {e}")
            raise BackendError(str(e)) from e
