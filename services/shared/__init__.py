"""
Shared utilities and models for the idea ballot service.

This package contains code used by the API and by every storage backend:
- Data models (Proposal, Ballot, Standings)
- Identifier and timestamp utilities
- Email normalization and ranking
- Redis key names
"""

from .models import (
    Proposal,
    Ballot,
    Standings,
    PROPOSAL_ATTRIBUTES,
    normalize_email,
    generate_proposal_id,
    truncate_timestamp,
    format_timestamp,
    parse_timestamp,
    rank_key,
    rank_proposals,
    get_redis_key,
    REDIS_KEYS,
)

__all__ = [
    'Proposal',
    'Ballot',
    'Standings',
    'PROPOSAL_ATTRIBUTES',
    'normalize_email',
    'generate_proposal_id',
    'truncate_timestamp',
    'format_timestamp',
    'parse_timestamp',
    'rank_key',
    'rank_proposals',
    'get_redis_key',
    'REDIS_KEYS',
]

__version__ = '1.0.0'
