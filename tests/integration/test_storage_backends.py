"""Integration tests for the PostgreSQL and Redis backends.

Runs the ledger scenarios that depend on the backend's atomicity against
real servers.

Requires: PostgreSQL and/or Redis reachable (tests skip otherwise)
"""

import asyncio

import pytest

from services.ballot_api.errors import (
    AlreadyVoted,
    DuplicateSubmitter,
    ProposalNotFound,
)
from services.ballot_api.ledger import Ledger


@pytest.fixture(params=["postgres", "redis"])
def live_ledger(request, clock, deadline):
    """Ledger on each server-backed store."""
    backend = request.getfixturevalue(f"{request.param}_backend")
    return Ledger(backend, deadline, clock=clock)


@pytest.mark.docker
@pytest.mark.asyncio
class TestServerBackends:
    """Ledger invariants on PostgreSQL and Redis."""

    async def test_end_to_end_scenario(self, live_ledger):
        """Test: submit, vote, duplicate vote, results.

        Flow:
        1. Submit proposal A from a@x.com
        2. Vote for A from b@x.com (count 1)
        3. Vote again from b@x.com (AlreadyVoted, count stays 1)
        4. Results name A as winner with one ballot
        """
        proposal = await live_ledger.submit_proposal(
            "a@x.com", "T1", "First idea", name="Ann", attrs={"tools": "Search"}
        )
        assert proposal.vote_count == 0

        assert await live_ledger.cast_vote("b@x.com", proposal.id) == 1
        with pytest.raises(AlreadyVoted):
            await live_ledger.cast_vote("B@x.com", proposal.id)

        standings = await live_ledger.results()
        assert standings.winner.id == proposal.id
        assert standings.winner.vote_count == 1
        assert standings.winner.attrs == {"tools": "Search"}
        assert standings.total_ballots == 1

    async def test_proposal_found_by_id(self, live_ledger):
        proposal = await live_ledger.submit_proposal(
            "a@x.com", "T1", "B", name="Ann", attrs={"tools": "Mail"}
        )
        await live_ledger.cast_vote("b@x.com", proposal.id)

        found = await live_ledger.backend.find_proposal_by_id(proposal.id)

        assert found.title == "T1"
        assert found.name == "Ann"
        assert found.attrs == {"tools": "Mail"}
        assert found.created_at == proposal.created_at
        assert found.vote_count == 1
        assert await live_ledger.backend.find_proposal_by_id("missing") is None

    async def test_results_consistent_during_votes(self, live_ledger):
        proposal = await live_ledger.submit_proposal("a@x.com", "T1", "B")

        for i in range(10):
            standings, _ = await asyncio.gather(
                live_ledger.results(),
                live_ledger.cast_vote(f"v{i}@x.com", proposal.id),
            )
            assert sum(p.vote_count for p in standings.ranking) == standings.total_ballots

    async def test_duplicate_submitter(self, live_ledger):
        await live_ledger.submit_proposal("a@x.com", "T1", "B")

        with pytest.raises(DuplicateSubmitter):
            await live_ledger.submit_proposal("A@X.COM", "T2", "B")

    async def test_unknown_proposal(self, live_ledger):
        with pytest.raises(ProposalNotFound):
            await live_ledger.cast_vote("b@x.com", "missing")

        assert (await live_ledger.results()).total_ballots == 0

    async def test_ranking_order(self, live_ledger, clock):
        targets = [3, 5, 5, 1]
        proposals = []
        for i in range(len(targets)):
            proposals.append(await live_ledger.submit_proposal(f"s{i}@x.com", f"P{i}", "B"))
            clock.advance(seconds=1)

        voter = 0
        for proposal, votes in zip(proposals, targets):
            for _ in range(votes):
                await live_ledger.cast_vote(f"v{voter}@x.com", proposal.id)
                voter += 1

        ranking = await live_ledger.list_proposals()
        assert [p.title for p in ranking] == ["P1", "P2", "P0", "P3"]

    @pytest.mark.slow
    async def test_concurrent_votes_same_voter(self, live_ledger):
        """Test: N concurrent votes from one email yield one success."""
        proposals = [
            await live_ledger.submit_proposal(f"s{i}@x.com", f"P{i}", "B")
            for i in range(8)
        ]

        outcomes = await asyncio.gather(
            *(live_ledger.cast_vote("racer@x.com", p.id) for p in proposals),
            return_exceptions=True
        )

        assert [o for o in outcomes if not isinstance(o, Exception)] == [1]
        assert sum(isinstance(o, AlreadyVoted) for o in outcomes) == 7
        listed = await live_ledger.list_proposals()
        assert sum(p.vote_count for p in listed) == 1
        assert (await live_ledger.results()).total_ballots == 1
