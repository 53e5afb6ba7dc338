"""Redis storage backend."""
import json
import logging
from typing import List, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from services.shared import (
    Ballot,
    Proposal,
    format_timestamp,
    get_redis_key,
    parse_timestamp,
    rank_proposals,
)

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


# KEYS: submitters, proposals, vote_counts
# ARGV: submitter_email, proposal_id, record JSON
CREATE_PROPOSAL_SCRIPT = """
if redis.call('HEXISTS', KEYS[1], ARGV[1]) == 1 then
    return -1
end
if redis.call('HEXISTS', KEYS[2], ARGV[2]) == 1 then
    return -2
end
redis.call('HSET', KEYS[1], ARGV[1], ARGV[2])
redis.call('HSET', KEYS[2], ARGV[2], ARGV[3])
redis.call('HSET', KEYS[3], ARGV[2], 0)
return 1
"""

# KEYS: ballots, proposals, vote_counts
# ARGV: voter_email, proposal_id, ballot JSON
RECORD_BALLOT_SCRIPT = """
if redis.call('HEXISTS', KEYS[1], ARGV[1]) == 1 then
    return -1
end
if redis.call('HEXISTS', KEYS[2], ARGV[2]) == 0 then
    return -2
end
redis.call('HSET', KEYS[1], ARGV[1], ARGV[3])
return redis.call('HINCRBY', KEYS[3], ARGV[2], 1)
"""


class RedisBackend(StorageBackend):
    """
    Redis backend.

    Check-and-write sequences run as Lua scripts, which Redis executes
    atomically, so a ballot and its counter increment are applied together
    and duplicate voters are rejected even across service processes.
    Proposal records are stored as JSON; vote counts live in their own hash.
    """

    name = "redis"

    def __init__(self, url: str, key_prefix: str = "ballot:", socket_timeout: float = 5.0):
        self.url = url
        self.key_prefix = key_prefix
        self.socket_timeout = socket_timeout
        self.client: Optional[redis.Redis] = None

        self.proposals_key = get_redis_key('proposals', key_prefix)
        self.submitters_key = get_redis_key('submitters', key_prefix)
        self.vote_counts_key = get_redis_key('vote_counts', key_prefix)
        self.ballots_key = get_redis_key('ballots', key_prefix)

    async def initialize(self):
        """Connect and register the Lua scripts."""
        try:
            self.client = redis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
                socket_timeout=self.socket_timeout,
                socket_connect_timeout=self.socket_timeout,
            )
            await self.client.ping()
            self._create_proposal = self.client.register_script(CREATE_PROPOSAL_SCRIPT)
            self._record_ballot = self.client.register_script(RECORD_BALLOT_SCRIPT)
            logger.info("Redis connection established")
        except RedisError as e:
            logger.error(f"Failed to connect to Redis: {e}")
            raise

    async def close(self):
        try:
            if self.client:
                await self.client.aclose()
                logger.info("Redis connection closed")
        except Exception as e:
            logger.error(f"Error closing Redis connection: {e}")

    async def check_health(self) -> bool:
        try:
            return bool(self.client and await self.client.ping())
        except RedisError as e:
            logger.error(f"Redis health check failed: {e}")
            return False

    async def create_proposal(self, proposal: Proposal) -> None:
        record = proposal.to_record()
        record.pop("votes")
        try:
            result = await self._create_proposal(
                keys=[self.submitters_key, self.proposals_key, self.vote_counts_key],
                args=[proposal.submitter_email, proposal.id, json.dumps(record)],
            )
        except RedisError as e:
            logger.error(f"Redis error creating proposal {proposal.id}: {e}")
            raise BackendError(str(e)) from e

        if result == -1:
            raise UniqueConstraintError(SUBMITTER_EMAIL)
        if result == -2:
            raise UniqueConstraintError(PROPOSAL_ID)

    async def find_proposal_by_submitter(self, submitter_email: str) -> Optional[Proposal]:
        try:
            proposal_id = await self.client.hget(self.submitters_key, submitter_email)
        except RedisError as e:
            logger.error(f"Redis error looking up submitter: {e}")
            raise BackendError(str(e)) from e

        if proposal_id is None:
            return None
        return await self.find_proposal_by_id(proposal_id)

    async def find_proposal_by_id(self, proposal_id: str) -> Optional[Proposal]:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hget(self.proposals_key, proposal_id)
                pipe.hget(self.vote_counts_key, proposal_id)
                raw, votes = await pipe.execute()
        except RedisError as e:
            logger.error(f"Redis error reading proposal {proposal_id}: {e}")
            raise BackendError(str(e)) from e

        if raw is None:
            return None
        return self._decode(raw, votes)

    async def increment_vote_and_record_ballot(self, ballot: Ballot) -> int:
        entry = json.dumps({
            "ideaId": ballot.proposal_id,
            "castAt": format_timestamp(ballot.cast_at) if ballot.cast_at else None,
        })
        try:
            result = await self._record_ballot(
                keys=[self.ballots_key, self.proposals_key, self.vote_counts_key],
                args=[ballot.voter_email, ballot.proposal_id, entry],
            )
        except RedisError as e:
            logger.error(f"Redis error recording ballot: {e}")
            raise BackendError(str(e)) from e

        if result == -1:
            raise UniqueConstraintError(VOTER_EMAIL)
        if result == -2:
            raise MissingReferenceError(ballot.proposal_id)
        return int(result)

    async def find_ballot_by_voter(self, voter_email: str) -> Optional[Ballot]:
        try:
            raw = await self.client.hget(self.ballots_key, voter_email)
        except RedisError as e:
            logger.error(f"Redis error looking up ballot: {e}")
            raise BackendError(str(e)) from e

        if raw is None:
            return None
        entry = json.loads(raw)
        cast_at = entry.get("castAt")
        return Ballot(
            voter_email=voter_email,
            proposal_id=entry["ideaId"],
            cast_at=parse_timestamp(cast_at) if cast_at else None,
        )

    async def list_proposals_ordered(self) -> List[Proposal]:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hgetall(self.proposals_key)
                pipe.hgetall(self.vote_counts_key)
                records, counts = await pipe.execute()
        except RedisError as e:
            logger.error(f"Redis error listing proposals: {e}")
            raise BackendError(str(e)) from e

        proposals = [
            self._decode(raw, counts.get(proposal_id))
            for proposal_id, raw in records.items()
        ]
        return rank_proposals(proposals)

    async def count_ballots(self) -> int:
        try:
            return await self.client.hlen(self.ballots_key)
        except RedisError as e:
            logger.error(f"Redis error counting ballots: {e}")
            raise BackendError(str(e)) from e

    async def snapshot(self) -> Tuple[List[Proposal], int]:
        try:
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hgetall(self.proposals_key)
                pipe.hgetall(self.vote_counts_key)
                pipe.hlen(self.ballots_key)
                records, counts, total = await pipe.execute()
        except RedisError as e:
            logger.error(f"Redis error reading standings: {e}")
            raise BackendError(str(e)) from e

        proposals = [
            self._decode(raw, counts.get(proposal_id))
            for proposal_id, raw in records.items()
        ]
        return rank_proposals(proposals), int(total)

    @staticmethod
    def _decode(raw: str, votes: Optional[str]) -> Proposal:
        record = json.loads(raw)
        record["votes"] = int(votes or 0)
        return Proposal.from_record(record)
