"""
Ballot API service.

The voting ledger, its storage backends and the FastAPI application
exposing them.
"""

from .errors import (
    LedgerError,
    ValidationError,
    DeadlinePassed,
    ProposalNotFound,
    DuplicateSubmitter,
    AlreadyVoted,
    StorageUnavailable,
)
from .ledger import Ledger
from .storage import StorageBackend, build_backend

__all__ = [
    'LedgerError',
    'ValidationError',
    'DeadlinePassed',
    'ProposalNotFound',
    'DuplicateSubmitter',
    'AlreadyVoted',
    'StorageUnavailable',
    'Ledger',
    'StorageBackend',
    'build_backend',
]
