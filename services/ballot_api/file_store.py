"""
Flat-file JSON storage backend.

The document keeps the ideas.json layout:

    {"ideas": [{id, name, email, title, description, ..., votes, createdAt}],
     "votes": {"<voter email>": {"ideaId": ..., "castAt": ...}}}

Legacy documents whose votes map straight to an idea id are still readable,
and their voter keys are normalized on load.

Writers hold an exclusive flock on a side lock file for the whole
read-modify-write cycle and publish the new document with os.replace, so
concurrent readers only ever see a complete old or new document. Waiting
for the lock is bounded, and a caller that gives up before the write is
published leaves the document untouched.
"""
import asyncio
import fcntl
import json
import logging
import os
import tempfile
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from services.shared import (
    Ballot,
    Proposal,
    format_timestamp,
    normalize_email,
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

# Seconds between attempts at taking a busy lock
LOCK_POLL_INTERVAL = 0.01


class LockTimeout(BackendError):
    """The ballot file lock could not be taken in time."""
    pass


class FileLock:
    """
    Exclusive advisory lock held on a side file.

    Args:
        path: Lock file path
        timeout: Seconds to wait for the lock; None waits forever
        cancelled: Event that stops the wait when set
    """

    def __init__(self, path: str, timeout: Optional[float] = None,
                 cancelled: Optional[threading.Event] = None):
        self.path = path
        self.timeout = timeout
        self.cancelled = cancelled
        self.f = None

    def _give_up(self, started: float) -> bool:
        if self.cancelled is not None and self.cancelled.is_set():
            return True
        return self.timeout is not None and time.monotonic() - started >= self.timeout

    def __enter__(self):
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        self.f = open(self.path, "a+")
        started = time.monotonic()
        while True:
            try:
                fcntl.flock(self.f.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                return self.f
            except BlockingIOError:
                if self._give_up(started):
                    self.f.close()
                    raise LockTimeout(f"Timed out waiting for {self.path}")
                time.sleep(LOCK_POLL_INTERVAL)
            except OSError:
                self.f.close()
                raise

    def __exit__(self, exc_type, exc, tb):
        try:
            fcntl.flock(self.f.fileno(), fcntl.LOCK_UN)
        finally:
            self.f.close()


def atomic_write_json(path: str, obj: Dict[str, Any]) -> None:
    """Write JSON to a temp file in the target directory, then rename over the target."""
    directory = os.path.dirname(path) or "."
    os.makedirs(directory, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", delete=False, dir=directory, encoding="utf-8") as tf:
        try:
            json.dump(obj, tf, indent=2, ensure_ascii=False)
            tf.flush()
            os.fsync(tf.fileno())
        except BaseException:
            tf.close()
            os.unlink(tf.name)
            raise
        tmp = tf.name
    os.replace(tmp, path)


def _empty_document() -> Dict[str, Any]:
    return {"ideas": [], "votes": {}}


def _ballot_from_entry(voter_email: str, entry: Any) -> Ballot:
    if isinstance(entry, str):
        return Ballot(voter_email=voter_email, proposal_id=entry)
    cast_at = entry.get("castAt")
    return Ballot(
        voter_email=voter_email,
        proposal_id=entry["ideaId"],
        cast_at=parse_timestamp(cast_at) if cast_at else None,
    )


class FileBackend(StorageBackend):
    """
    JSON document backend safe for concurrent writers on one host.

    Args:
        path: Ballot file path
        lock_timeout: Seconds a write waits for the file lock
    """

    name = "file"

    def __init__(self, path: str, lock_timeout: float = 5.0):
        self.path = os.path.abspath(path)
        self.lock_path = self.path + ".lock"
        self.lock_timeout = lock_timeout
        self._lock = asyncio.Lock()

    async def initialize(self):
        """Create an empty document if none exists yet."""
        await self._mutate(lambda document: None)
        logger.info(f"Ballot file ready at {self.path}")

    async def check_health(self) -> bool:
        try:
            await asyncio.to_thread(self._load)
            return True
        except BackendError as e:
            logger.error(f"File backend health check failed: {e}")
            return False

    def _load(self) -> Dict[str, Any]:
        """Read the current document; a missing file is an empty ledger."""
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except FileNotFoundError:
            return _empty_document()
        except (OSError, ValueError) as e:
            logger.error(f"Error loading ballot file {self.path}: {e}")
            raise BackendError(f"Cannot read {self.path}: {e}") from e

        document.setdefault("ideas", [])
        votes = {}
        for voter_email, entry in document.get("votes", {}).items():
            votes.setdefault(normalize_email(voter_email), entry)
        document["votes"] = votes
        return document

    def _mutate_sync(self, change: Callable[[Dict[str, Any]], Any],
                     cancelled: threading.Event) -> Any:
        try:
            with FileLock(self.lock_path, timeout=self.lock_timeout, cancelled=cancelled):
                document = self._load()
                result = change(document)
                if cancelled.is_set():
                    logger.warning(f"Caller gave up, discarding write to {self.path}")
                    raise BackendError("Write abandoned by its caller")
                atomic_write_json(self.path, document)
                return result
        except OSError as e:
            logger.error(f"Error writing ballot file {self.path}: {e}")
            raise BackendError(f"Cannot write {self.path}: {e}") from e

    async def _mutate(self, change: Callable[[Dict[str, Any]], Any]) -> Any:
        """
        Apply ``change`` to the document under the file lock.

        ``change`` edits the document in place and may raise to abort; in that
        case nothing is written. If the awaiting caller is cancelled before
        the new document is published, the worker thread discards it.
        """
        cancelled = threading.Event()
        async with self._lock:
            try:
                return await asyncio.to_thread(self._mutate_sync, change, cancelled)
            except asyncio.CancelledError:
                cancelled.set()
                raise

    async def _read(self) -> Dict[str, Any]:
        return await asyncio.to_thread(self._load)

    async def create_proposal(self, proposal: Proposal) -> None:
        def change(document):
            for record in document["ideas"]:
                if normalize_email(record["email"]) == proposal.submitter_email:
                    raise UniqueConstraintError(SUBMITTER_EMAIL)
                if record["id"] == proposal.id:
                    raise UniqueConstraintError(PROPOSAL_ID)
            document["ideas"].append(proposal.to_record())

        await self._mutate(change)

    async def find_proposal_by_submitter(self, submitter_email: str) -> Optional[Proposal]:
        document = await self._read()
        for record in document["ideas"]:
            if normalize_email(record["email"]) == submitter_email:
                return Proposal.from_record(record)
        return None

    async def find_proposal_by_id(self, proposal_id: str) -> Optional[Proposal]:
        document = await self._read()
        for record in document["ideas"]:
            if record["id"] == proposal_id:
                return Proposal.from_record(record)
        return None

    async def increment_vote_and_record_ballot(self, ballot: Ballot) -> int:
        def change(document):
            if ballot.voter_email in document["votes"]:
                raise UniqueConstraintError(VOTER_EMAIL)
            for record in document["ideas"]:
                if record["id"] == ballot.proposal_id:
                    break
            else:
                raise MissingReferenceError(ballot.proposal_id)

            record["votes"] = int(record.get("votes", 0)) + 1
            document["votes"][ballot.voter_email] = {
                "ideaId": ballot.proposal_id,
                "castAt": format_timestamp(ballot.cast_at) if ballot.cast_at else None,
            }
            return record["votes"]

        return await self._mutate(change)

    async def find_ballot_by_voter(self, voter_email: str) -> Optional[Ballot]:
        document = await self._read()
        entry = document["votes"].get(voter_email)
        if entry is None:
            return None
        return _ballot_from_entry(voter_email, entry)

    async def list_proposals_ordered(self) -> List[Proposal]:
        document = await self._read()
        return rank_proposals([Proposal.from_record(r) for r in document["ideas"]])

    async def count_ballots(self) -> int:
        document = await self._read()
        return len(document["votes"])

    async def snapshot(self) -> Tuple[List[Proposal], int]:
        document = await self._read()
        ranking = rank_proposals([Proposal.from_record(r) for r in document["ideas"]])
        return ranking, len(document["votes"])
