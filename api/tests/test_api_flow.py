from datetime import datetime, timedelta, timezone

import pytest

pytest.importorskip("fastapi")
from fastapi.testclient import TestClient

import belle_match.main as m
from belle_match.config import ConfigHolder
from belle_match.domain import MatchAttempt, MatchState, QueueStatus
from belle_match.errors import AlreadyLocked, InternalInvariantViolated, NotFound
from belle_match.services.matcher import TickReport
from belle_match.services.rate_limit import RateDecision, limiter

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


def _attempt(state=MatchState.PROPOSED, **kwargs):
    return MatchAttempt(
        id="m1",
        user1_id="a",
        user2_id="b",
        score=0.71,
        components={"interest": 0.9, "religion": 1.0},
        state=state,
        created_at=NOW,
        expires_at=NOW + timedelta(days=1),
        **kwargs,
    )


class FakePipeline:
    def __init__(self):
        self.config = ConfigHolder()
        self.joined = {}
        self.calls = []

    async def join_queue(self, user_id, filter_prefs=None):
        if user_id == "locked":
            raise AlreadyLocked("You already have a pending match. Respond to it first.")
        self.joined[user_id] = filter_prefs
        return QueueStatus(status="WAITING", position=1, total_in_queue=1, estimated_wait_seconds=5.0, joined_at=NOW)

    async def leave_queue(self, user_id):
        self.joined.pop(user_id, None)
        return QueueStatus(status=QueueStatus.NOT_IN_QUEUE)

    def queue_status(self, user_id):
        if user_id in self.joined:
            return QueueStatus(status="WAITING", position=1, total_in_queue=1, estimated_wait_seconds=5.0, joined_at=NOW)
        return QueueStatus(status=QueueStatus.NOT_IN_QUEUE)

    def pending_matches(self, user_id):
        return [_attempt()] if user_id in ("a", "b") else []

    async def accept_match(self, user_id, match_id):
        if match_id != "m1":
            raise NotFound("Match not found")
        self.calls.append(("accept", user_id))
        return _attempt(MatchState.PARTIALLY_ACCEPTED, accepted_by={user_id})

    async def decline_match(self, user_id, match_id):
        self.calls.append(("decline", user_id))
        return _attempt(MatchState.DECLINED, declined_by={user_id})

    async def cancel_match(self, match_id, reason="cancelled_by_admin"):
        self.calls.append(("cancel", reason))
        return _attempt(MatchState.CANCELLED, terminal_reason=reason, terminal_at=NOW)

    def get_attempt(self, match_id):
        if match_id == "broken":
            raise InternalInvariantViolated("attempt index out of sync")
        return _attempt(reasons=[{"code": "eligible", "threshold": 0.45}])

    async def run_tick(self):
        return TickReport(started_at=NOW, considered=2, proposals=1)

    def reload_config(self, overrides=None):
        self.config.reload(overrides)

    def stats(self):
        return {"pool": {"WAITING": 1}, "matches": {}, "last_tick": None, "config_version": self.config.version}


@pytest.fixture
def fake_pipeline(monkeypatch):
    limiter.reset()
    fake = FakePipeline()
    monkeypatch.setattr(m, "pipeline", fake)
    return fake


@pytest.fixture
def client(fake_pipeline):
    return TestClient(m.app)


@pytest.fixture
def admin(monkeypatch):
    monkeypatch.setattr(m, "_validate_admin_token", lambda token: None)


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_queue_join_status_and_leave(client, fake_pipeline):
    r = client.post(
        "/queue/join",
        json={"ageRange": {"min": 25, "max": 33}, "preferredReligions": ["Muslim"], "bogus": 1},
        headers={"X-User-Id": "a"},
    )
    assert r.status_code == 200
    assert r.json()["status"] == "WAITING"
    assert r.json()["estimatedWaitSeconds"] == 5.0
    assert fake_pipeline.joined["a"] == {"ageRange": {"min": 25, "max": 33}, "preferredReligions": ["Muslim"]}

    r = client.get("/queue/status", headers={"X-User-Id": "a"})
    assert r.json()["position"] == 1

    r = client.post("/queue/leave", headers={"X-User-Id": "a"})
    assert r.json()["status"] == "NOT_IN_QUEUE"


def test_join_without_body_uses_stored_preferences(client, fake_pipeline):
    r = client.post("/queue/join", headers={"X-User-Id": "a"})
    assert r.status_code == 200
    assert fake_pipeline.joined["a"] is None


def test_caller_identity_is_required(client):
    assert client.get("/queue/status").status_code == 401
    assert client.get("/queue/status", headers={"X-User-Id": "x" * 200}).status_code == 400


def test_pipeline_errors_render_kind_and_trace_id(client):
    r = client.post("/queue/join", headers={"X-User-Id": "locked"})
    assert r.status_code == 409
    body = r.json()
    assert body["kind"] == "AlreadyLocked"
    assert body["trace_id"]


def test_pending_matches_hide_sensitive_components_in_explanation(client):
    r = client.get("/matches/pending", headers={"X-User-Id": "b"})
    assert r.status_code == 200
    [match] = r.json()["matches"]
    assert match["otherUserId"] == "a"
    assert match["state"] == "PROPOSED"
    assert match["explanation"]["bullets"] == ["You share a good number of interests."]


def test_accept_and_decline(client, fake_pipeline):
    r = client.post("/matches/m1/accept", headers={"X-User-Id": "a"})
    assert r.status_code == 200
    assert r.headers["X-RateLimit-Remaining"] == "99"
    assert r.json()["state"] == "PARTIALLY_ACCEPTED"

    r = client.post("/matches/m1/decline", headers={"X-User-Id": "b"})
    assert r.json()["state"] == "DECLINED"
    assert fake_pipeline.calls == [("accept", "a"), ("decline", "b")]

    r = client.post("/matches/nope/accept", headers={"X-User-Id": "a"})
    assert r.status_code == 404
    assert r.json()["kind"] == "NotFound"


def test_accept_is_rate_limited(client, monkeypatch):
    monkeypatch.setattr(limiter, "check", lambda key, limit, window_seconds: RateDecision(allowed=False, retry_after_seconds=7))
    r = client.post("/matches/m1/accept", headers={"X-User-Id": "a"})
    assert r.status_code == 429
    assert r.headers["Retry-After"] == "7"


def test_admin_routes_require_token(client):
    assert client.post("/admin/matcher/tick").status_code == 401
    assert client.post("/admin/matcher/tick", headers={"X-Admin-Token": "guess"}).status_code == 401


def test_admin_tick_cancel_and_audit(client, admin, fake_pipeline):
    r = client.post("/admin/matcher/tick")
    assert r.status_code == 200
    assert r.json()["proposals"] == 1

    r = client.post("/admin/matches/m1/cancel", json={"reason": "safety_review"})
    assert r.json()["state"] == "CANCELLED"
    assert r.json()["terminalReason"] == "safety_review"
    assert fake_pipeline.calls[-1] == ("cancel", "safety_review")

    r = client.get("/admin/matches/m1")
    assert r.json()["reasons"] == [{"code": "eligible", "threshold": 0.45}]
    assert r.json()["user1Id"] == "a"

    r = client.get("/admin/pipeline/stats")
    assert r.json()["pool"]["WAITING"] == 1


def test_admin_config_reload(client, admin, fake_pipeline):
    r = client.post("/admin/config/reload", json={"overrides": {"matcher": {"snapshot_size": 5}}})
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "version": 2}

    r = client.post("/admin/config/reload", json={"overrides": {"scorer": {"weights": {"age": 2.0}}}})
    assert r.status_code == 400
    assert r.json()["kind"] == "ValidationError"
    assert fake_pipeline.config.current.matcher.snapshot_size == 5


def test_internal_errors_hide_details(client, admin):
    r = client.get("/admin/matches/broken")
    assert r.status_code == 500
    assert r.json()["detail"] == "Internal server error"
    assert r.json()["kind"] == "InternalInvariantViolated"
