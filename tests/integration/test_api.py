"""Integration tests for API endpoints.

Tests idea submission, listing, voting, results, health and metrics
through the FastAPI application, plus the status codes of every
rejection.
"""

import pytest

from services.ballot_api.storage import BackendError


class TestIdeasEndpoint:
    """Tests for POST and GET /api/ideas."""

    def test_post_idea_with_valid_data(self, post_idea):
        """Test POST /api/ideas with a complete payload.

        Verifies:
        - 200 OK status code
        - success flag and idea summary (id, name, title)
        """
        response = post_idea()

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["idea"]["id"]
        assert data["idea"]["name"] == "Ada"
        assert data["idea"]["title"] == "T1"

    @pytest.mark.parametrize("field", ["name", "email", "title", "description"])
    def test_post_idea_with_missing_field(self, api_client, sample_idea, field):
        """Test POST /api/ideas without a required field returns 400."""
        del sample_idea[field]

        response = api_client.post("/api/ideas", json=sample_idea)

        assert response.status_code == 400
        data = response.json()
        assert data["type"] == "validation_error"
        assert any(field in detail for detail in data["details"])

    def test_post_idea_with_blank_title(self, post_idea):
        """Test POST /api/ideas with a whitespace-only title returns 400."""
        response = post_idea(title="   ")

        assert response.status_code == 400

    def test_post_idea_twice_with_same_email(self, post_idea):
        """Test a second idea from the same email (any case) returns 409."""
        assert post_idea().status_code == 200

        response = post_idea(email="A@X.com", title="Other")

        assert response.status_code == 409
        assert response.json()["type"] == "duplicate_submitter"

    def test_get_ideas_hides_email(self, api_client, post_idea, deadline):
        """Test GET /api/ideas lists public fields only.

        Verifies:
        - ideas carry description, optional fields, votes and createdAt
        - submitter email is never exposed
        - deadline and isPastDeadline are reported
        """
        post_idea()

        response = api_client.get("/api/ideas")

        assert response.status_code == 200
        data = response.json()
        assert data["isPastDeadline"] is False
        assert data["deadline"] == "2030-01-01T12:00:00.000Z"
        assert len(data["ideas"]) == 1
        idea = data["ideas"][0]
        assert "email" not in idea
        assert idea["description"] == "An agent that summarizes meetings"
        assert idea["agentRole"] == "Assistant"
        assert idea["votes"] == 0
        assert idea["createdAt"].endswith("Z")


class TestVoteEndpoint:
    """Tests for POST /api/vote."""

    def test_vote_for_idea(self, api_client, post_idea):
        """Test a first vote returns the new count."""
        idea_id = post_idea().json()["idea"]["id"]

        response = api_client.post("/api/vote", json={"ideaId": idea_id, "email": "b@x.com"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "votes": 1}

    def test_vote_for_unknown_idea(self, api_client, post_idea):
        """Test voting for an unknown idea returns 404."""
        post_idea()

        response = api_client.post("/api/vote", json={"ideaId": "nope", "email": "b@x.com"})

        assert response.status_code == 404
        assert response.json()["type"] == "proposal_not_found"

    @pytest.mark.parametrize("payload", [
        {},
        {"ideaId": "abc"},
        {"email": "b@x.com"},
        {"ideaId": "", "email": "b@x.com"},
    ])
    def test_vote_with_missing_data(self, api_client, payload):
        """Test incomplete vote payloads return 400."""
        response = api_client.post("/api/vote", json=payload)

        assert response.status_code == 400

    def test_vote_with_malformed_json(self, api_client):
        """Test a body that is not JSON returns 400."""
        response = api_client.post(
            "/api/vote",
            content="not valid json",
            headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 400


class TestResultsEndpoint:
    """Tests for GET /api/results."""

    def test_results_without_ideas(self, api_client):
        """Test results on an empty ledger."""
        response = api_client.get("/api/results")

        assert response.status_code == 200
        assert response.json() == {
            "ideas": [],
            "winner": None,
            "isPastDeadline": False,
            "totalVotes": 0
        }

    def test_results_rank_and_winner(self, api_client, post_idea, clock):
        """Test results order ideas by votes and name the winner."""
        first = post_idea(email="s1@x.com", title="First").json()["idea"]["id"]
        clock.advance(seconds=1)
        second = post_idea(email="s2@x.com", title="Second").json()["idea"]["id"]

        api_client.post("/api/vote", json={"ideaId": second, "email": "v1@x.com"})
        api_client.post("/api/vote", json={"ideaId": second, "email": "v2@x.com"})
        api_client.post("/api/vote", json={"ideaId": first, "email": "v3@x.com"})

        data = api_client.get("/api/results").json()

        assert [i["title"] for i in data["ideas"]] == ["Second", "First"]
        assert [i["votes"] for i in data["ideas"]] == [2, 1]
        assert data["winner"]["id"] == second
        assert "email" not in data["winner"]
        assert data["totalVotes"] == 3


class TestDeadline:
    """Mutations answer 403 after the deadline; reads still work."""

    def test_mutations_rejected_after_deadline(self, api_client, post_idea, clock, deadline):
        idea_id = post_idea().json()["idea"]["id"]
        clock.now = deadline

        assert post_idea(email="late@x.com").status_code == 403
        response = api_client.post("/api/vote", json={"ideaId": idea_id, "email": "b@x.com"})
        assert response.status_code == 403
        assert response.json()["type"] == "deadline_passed"

        ideas = api_client.get("/api/ideas").json()
        assert ideas["isPastDeadline"] is True
        assert len(ideas["ideas"]) == 1

        results = api_client.get("/api/results").json()
        assert results["isPastDeadline"] is True
        assert results["winner"]["id"] == idea_id


class TestStorageFailure:
    """Backend failures answer 503 with Retry-After."""

    def test_vote_when_storage_fails(self, api_client, api_ledger, post_idea, monkeypatch):
        idea_id = post_idea().json()["idea"]["id"]

        async def fail(ballot):
            raise BackendError("connection reset")

        monkeypatch.setattr(api_ledger.backend, "increment_vote_and_record_ballot", fail)

        response = api_client.post("/api/vote", json={"ideaId": idea_id, "email": "b@x.com"})

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "1"
        assert response.json()["type"] == "storage_unavailable"
        assert api_client.get("/api/results").json()["totalVotes"] == 0


class TestServiceEndpoints:
    """Tests for health, metrics and API info."""

    def test_health_check(self, api_client):
        response = api_client.get("/api/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["services"] == {"memory": "connected"}

    def test_unhealthy_backend(self, api_client, api_ledger, monkeypatch):
        async def unhealthy():
            return False

        monkeypatch.setattr(api_ledger.backend, "check_health", unhealthy)

        response = api_client.get("/api/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_metrics_exposed(self, api_client, post_idea):
        post_idea()

        response = api_client.get("/metrics")

        assert response.status_code == 200
        assert "proposals_submitted_total" in response.text
        assert "ledger_rejections_total" in response.text

    def test_request_duration_labelled_with_status(self, api_client):
        api_client.get("/api/health")

        text = api_client.get("/metrics").text

        assert (
            'http_request_duration_seconds_count{method="GET",endpoint="/api/health",status="200"}'
            in text
        )
        assert 'status="processing"' not in text

    def test_api_info(self, api_client):
        response = api_client.get("/api")

        assert response.status_code == 200
        assert response.json()["endpoints"]["vote"] == "/api/vote"
