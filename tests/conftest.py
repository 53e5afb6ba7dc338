"""Pytest fixtures shared by the unit and integration tests.

Ledgers are built on a controllable clock so deadline behaviour can be
tested without waiting for real time to pass.
"""

from datetime import datetime, timedelta, timezone

import pytest

from services.ballot_api.file_store import FileBackend
from services.ballot_api.ledger import Ledger
from services.ballot_api.memory_store import MemoryBackend


DEADLINE = datetime(2030, 1, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    """Clock one day before the deadline."""
    return FakeClock(DEADLINE - timedelta(days=1))


@pytest.fixture
def deadline() -> datetime:
    return DEADLINE


@pytest.fixture
def data_file(tmp_path) -> str:
    """Path of a ballot file inside a temporary directory."""
    return str(tmp_path / "ideas.json")


@pytest.fixture
async def memory_ledger(clock) -> Ledger:
    backend = MemoryBackend()
    await backend.initialize()
    return Ledger(backend, DEADLINE, clock=clock)


@pytest.fixture
async def file_ledger(clock, data_file) -> Ledger:
    backend = FileBackend(data_file)
    await backend.initialize()
    return Ledger(backend, DEADLINE, clock=clock)


@pytest.fixture(params=["memory", "file"])
async def ledger(request, clock, data_file) -> Ledger:
    """Ledger on each process-local backend."""
    if request.param == "memory":
        backend = MemoryBackend()
    else:
        backend = FileBackend(data_file)
    await backend.initialize()
    yield Ledger(backend, DEADLINE, clock=clock)
    await backend.close()


@pytest.fixture
def submit(clock):
    """Helper submitting a proposal and stepping the clock one second."""
    async def _submit(ledger: Ledger, email: str, title: str = "Idea", body: str = None,
                      **kwargs):
        proposal = await ledger.submit_proposal(
            email, title, body or f"{title} description", **kwargs
        )
        clock.advance(seconds=1)
        return proposal

    return _submit


def pytest_configure(config):
    """Register custom pytest markers."""
    config.addinivalue_line(
        "markers",
        "docker: mark test as requiring PostgreSQL or Redis"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow running"
    )
