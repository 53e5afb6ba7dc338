"""
Shared data models and utilities for the idea ballot service.

This module contains:
- Proposal / Ballot: records owned by the voting ledger
- Standings: the result view returned by the ledger
- Identifier generation, email normalization and ranking helpers
- Record (document) serialization shared by the file and Redis backends
"""

import secrets
import time
from dataclasses import dataclass, field, asdict, replace
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List


# Document keys of the ideas.json record layout
RECORD_FIELDS = ("id", "name", "email", "title", "description", "votes", "createdAt")

# Free-text attributes accepted alongside a proposal
PROPOSAL_ATTRIBUTES = ("functionalities", "agentRole", "tools")


@dataclass
class Proposal:
    """
    A submitted idea eligible for voting.

    Attributes:
        id: Opaque identifier generated by the ledger
        submitter_email: Normalized submitter email (unique)
        title: Proposal title
        body: Proposal description
        created_at: UTC creation timestamp, used as ranking tie-break
        name: Submitter display name
        attrs: Optional free-text attributes (functionalities, agentRole, tools)
        vote_count: Number of ballots cast for this proposal
    """
    id: str
    submitter_email: str
    title: str
    body: str
    created_at: datetime
    name: str = ""
    attrs: Dict[str, Any] = field(default_factory=dict)
    vote_count: int = 0

    def copy(self, **changes) -> 'Proposal':
        """Return a detached copy, optionally with changed fields."""
        changes.setdefault("attrs", dict(self.attrs))
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary with snake_case keys."""
        return asdict(self)

    def to_record(self) -> Dict[str, Any]:
        """
        Convert to the stored document layout.

        Returns:
            dict: camelCase record including the submitter email
        """
        record = {
            "id": self.id,
            "name": self.name,
            "email": self.submitter_email,
            "title": self.title,
            "description": self.body,
        }
        record.update(self.attrs)
        record["votes"] = self.vote_count
        record["createdAt"] = format_timestamp(self.created_at)
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Proposal':
        """Create Proposal from a stored document record."""
        attrs = {k: v for k, v in record.items() if k not in RECORD_FIELDS}
        return cls(
            id=record["id"],
            submitter_email=normalize_email(record["email"]),
            title=record["title"],
            body=record["description"],
            created_at=parse_timestamp(record["createdAt"]),
            name=record.get("name") or "",
            attrs=attrs,
            vote_count=int(record.get("votes", 0)),
        )

    def to_public_dict(self) -> Dict[str, Any]:
        """Record without the submitter email, safe to publish."""
        record = self.to_record()
        del record["email"]
        return record


@dataclass
class Ballot:
    """
    A single person's one-time vote.

    Attributes:
        voter_email: Normalized voter email (primary key)
        proposal_id: Proposal the vote was cast for
        cast_at: UTC timestamp of the vote (None for imported legacy ballots)
    """
    voter_email: str
    proposal_id: str
    cast_at: Optional[datetime] = None


@dataclass
class Standings:
    """Ranking snapshot returned by the ledger's results operation."""
    ranking: List[Proposal]
    winner: Optional[Proposal]
    total_ballots: int
    is_past_deadline: bool


def normalize_email(email: str) -> str:
    """
    Normalize an email for identity comparisons.

    Args:
        email: Raw email as submitted

    Returns:
        str: Trimmed, case-folded email
    """
    return email.strip().casefold()


def _base36(number: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while number:
        number, rem = divmod(number, 36)
        out = digits[rem] + out
    return out or "0"


def generate_proposal_id() -> str:
    """
    Generate a proposal identifier.

    Millisecond timestamp in base 36 followed by 48 random bits, so ids
    from different instants differ and ids from the same instant collide
    with negligible probability.

    Returns:
        str: Identifier such as ``'m1x2k9q0a3f91c2d7e40'``
    """
    millis = time.time_ns() // 1_000_000
    return _base36(millis) + secrets.token_hex(6)


def truncate_timestamp(value: datetime) -> datetime:
    """Drop sub-millisecond precision so every backend stores the same instant."""
    return value.replace(microsecond=value.microsecond // 1000 * 1000)


def format_timestamp(value: datetime) -> str:
    """Format a timestamp as ISO-8601 UTC with a Z suffix."""
    value = value.astimezone(timezone.utc)
    return value.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def rank_key(proposal: Proposal) -> tuple:
    """
    Sort key for standings.

    Most votes first, then earliest submission, then id.
    """
    return (-proposal.vote_count, proposal.created_at, proposal.id)


def rank_proposals(proposals: List[Proposal]) -> List[Proposal]:
    """Return proposals in standings order."""
    return sorted(proposals, key=rank_key)


# Redis key names for the ledger data structures
REDIS_KEYS = {
    'proposals': '{}proposals',      # HASH proposal_id -> JSON record
    'submitters': '{}submitters',    # HASH submitter_email -> proposal_id
    'vote_counts': '{}vote_counts',  # HASH proposal_id -> vote count
    'ballots': '{}ballots',          # HASH voter_email -> proposal_id
}


def get_redis_key(key_type: str, prefix: str = "") -> str:
    """
    Get formatted Redis key.

    Args:
        key_type: Type of key from REDIS_KEYS
        prefix: Namespace prefix, e.g. ``'ballot:'``

    Returns:
        str: Formatted Redis key
    """
    return REDIS_KEYS[key_type].format(prefix)
