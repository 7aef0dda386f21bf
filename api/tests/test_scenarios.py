import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from belle_match.config import ConfigHolder, load_pipeline_config
from belle_match.domain import EntryStatus, Gender, MatchState, Preferences, QueueEntry, QueueStatus, UserProfile
from belle_match.errors import AlreadyLocked, NotFound
from belle_match.services.collaborators import InMemoryConversations, InMemorySafetyProvider, InMemoryUserProvider
from belle_match.services.matcher import Matcher
from belle_match.services.notifications import InMemoryNotifier, NotificationKind, sanitize_payload_for_privacy
from belle_match.services.pipeline import MatchPipeline
from belle_match.services.preferences import parse_preferences


class Clock:
    def __init__(self):
        self.now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


async def _no_sleep(_delay):
    return None


def _pipeline(users, clock=None, repository=None, **overrides):
    overrides.setdefault("match", {})
    overrides["match"].setdefault("materialization_backoff_base_seconds", 0)
    return MatchPipeline(
        config=ConfigHolder(load_pipeline_config(overrides)),
        users=users,
        safety=InMemorySafetyProvider(),
        notifier=InMemoryNotifier(),
        conversations=InMemoryConversations(),
        clock=clock or Clock(),
        repository=repository,
        sleep=_no_sleep,
    )


def _happy_path_users():
    users = InMemoryUserProvider()
    users.add(
        UserProfile(
            "A",
            age=28,
            gender=Gender.MAN,
            latitude=40.7128,
            longitude=-74.0060,
            interests=frozenset({"MUSIC", "HIKING"}),
        ),
        parse_preferences({"preferredGenders": ["WOMAN"], "ageRange": {"min": 25, "max": 33}, "maxDistanceKm": 50}),
    )
    users.add(
        UserProfile(
            "B",
            age=30,
            gender=Gender.WOMAN,
            latitude=40.73,
            longitude=-73.99,
            interests=frozenset({"MUSIC", "COFFEE"}),
        ),
        parse_preferences({"preferredGenders": ["MAN"], "ageRange": {"min": 26, "max": 34}, "maxDistanceKm": 80}),
    )
    return users


def test_happy_path_ends_in_a_chat_room():
    async def main():
        clock = Clock()
        p = _pipeline(_happy_path_users(), clock)
        await p.join_queue("A")
        clock.advance(1)
        await p.join_queue("B")
        report = await p.run_tick()
        [proposal] = p.pending_matches("A")
        await p.accept_match("A", proposal.id)
        final = await p.accept_match("B", proposal.id)
        await p.manager.drain()
        return p, report, final

    p, report, final = asyncio.run(main())
    assert report.proposals == 1
    assert final.state == MatchState.MATERIALIZED
    assert final.chat_room_id == p.conversations.rooms[("A", "B")]
    assert p.queue_status("A").status == QueueStatus.NOT_IN_QUEUE
    assert p.queue_status("B").status == QueueStatus.NOT_IN_QUEUE
    for user_id in ("A", "B"):
        kinds = p.notifier.kinds_for(user_id)
        assert NotificationKind.NEW_MATCH in kinds
        assert NotificationKind.MATCH_ACCEPTED in kinds
    assert p.pending_matches("A") == []


def test_out_of_range_users_keep_waiting():
    async def main():
        users = InMemoryUserProvider()
        users.add(UserProfile("A", age=22))
        users.add(UserProfile("B", age=40), parse_preferences({"ageRange": {"min": 25, "max": 35}}))
        p = _pipeline(users)
        await p.join_queue("A")
        await p.join_queue("B")
        report = await p.run_tick()
        return p, report

    p, report = asyncio.run(main())
    assert report.proposals == 0
    assert p.queue_status("A").status == "WAITING"
    assert p.queue_status("B").status == "WAITING"


def test_race_leaves_each_user_in_one_attempt():
    async def main():
        users = InMemoryUserProvider()
        for user_id in ("A", "B", "C"):
            users.add(UserProfile(user_id))
        p = _pipeline(users)
        for user_id in ("A", "B", "C"):
            await p.join_queue(user_id)
        second_shard = Matcher(p.config, p.pool, p.scorer, p.manager, p.safety)
        await asyncio.gather(p.run_tick(), second_shard.tick())
        return p

    p = asyncio.run(main())
    assert len(p.pending_matches("A")) == 1
    matched = {u for u in ("A", "B", "C") if p.pending_matches(u)}
    assert len(matched) == 2


def test_partial_accept_then_timeout_requeues_accepter():
    async def main():
        users = InMemoryUserProvider()
        users.add(UserProfile("A"))
        users.add(UserProfile("B"))
        clock = Clock()
        p = _pipeline(users, clock, match={"proposal_ttl_seconds": 600}, pool={"rejoin_policy": "REQUEUE_ON_DECLINE"})
        await p.join_queue("A")
        await p.join_queue("B")
        await p.run_tick()
        [proposal] = p.pending_matches("A")
        partial = await p.accept_match("A", proposal.id)
        clock.advance(601)
        await p.timekeeper.sweep()
        await p.manager.drain()
        return p, partial, p.get_attempt(proposal.id)

    p, partial, final = asyncio.run(main())
    assert partial.state == MatchState.PARTIALLY_ACCEPTED
    assert final.state == MatchState.EXPIRED
    assert p.queue_status("A").status == "WAITING"
    assert p.queue_status("B").status == QueueStatus.NOT_IN_QUEUE
    assert NotificationKind.MATCH_EXPIRED in p.notifier.kinds_for("A")


def test_timeout_removes_both_under_default_policy():
    async def main():
        users = InMemoryUserProvider()
        users.add(UserProfile("A"))
        users.add(UserProfile("B"))
        clock = Clock()
        p = _pipeline(users, clock, match={"proposal_ttl_seconds": 600})
        await p.join_queue("A")
        await p.join_queue("B")
        await p.run_tick()
        [proposal] = p.pending_matches("A")
        await p.accept_match("A", proposal.id)
        clock.advance(601)
        return p, await p.accept_match("B", proposal.id)

    p, late = asyncio.run(main())
    assert late.state == MatchState.EXPIRED
    assert p.queue_status("A").status == QueueStatus.NOT_IN_QUEUE
    assert p.queue_status("B").status == QueueStatus.NOT_IN_QUEUE


def test_join_filter_overrides_base_religions():
    async def main():
        users = InMemoryUserProvider()
        users.add(UserProfile("A", religion="AGNOSTIC"), parse_preferences({"preferredReligions": ["Buddhist", "Agnostic"]}))
        users.add(UserProfile("B", religion="BUDDHIST"))
        p = _pipeline(users)
        await p.join_queue("A", {"preferredReligions": ["Muslim"]})
        await p.join_queue("B")
        report = await p.run_tick()
        return p, report

    p, report = asyncio.run(main())
    assert p.pool.get("A").effective_prefs.religions == frozenset({"MUSLIM"})
    assert report.proposals == 0
    result = p.scorer.score(
        p.pool.get("A").profile, p.pool.get("B").profile, p.pool.get("A").effective_prefs, p.pool.get("B").effective_prefs
    )
    assert {"code": "preference_mismatch", "dimension": "religions", "user_id": "A"} in result.reasons


def test_new_message_push_is_sanitized():
    out = sanitize_payload_for_privacy(
        {"type": "NEW_MESSAGE", "title": "New message", "data": {"content": "secret", "senderName": "Alice"}}
    )
    assert out["body"] == "Alice sent a message"
    assert "content" not in out["data"]


def test_join_requires_a_known_profile():
    async def main():
        p = _pipeline(InMemoryUserProvider())
        await p.join_queue("ghost")

    with pytest.raises(NotFound):
        asyncio.run(main())


def test_join_with_pending_match_is_rejected():
    async def main():
        users = InMemoryUserProvider()
        users.add(UserProfile("A"))
        users.add(UserProfile("B"))
        p = _pipeline(users)
        await p.join_queue("A")
        await p.join_queue("B")
        await p.run_tick()
        await p.join_queue("A")

    with pytest.raises(AlreadyLocked):
        asyncio.run(main())


def test_leaving_cancels_the_pending_match():
    async def main():
        users = InMemoryUserProvider()
        users.add(UserProfile("A"))
        users.add(UserProfile("B"))
        p = _pipeline(users, pool={"rejoin_policy": "REQUEUE_ON_DECLINE"})
        await p.join_queue("A")
        await p.join_queue("B")
        await p.run_tick()
        [proposal] = p.pending_matches("A")
        status = await p.leave_queue("A")
        return p, status, p.get_attempt(proposal.id)

    p, status, attempt = asyncio.run(main())
    assert status.status == QueueStatus.NOT_IN_QUEUE
    assert attempt.state == MatchState.CANCELLED
    assert attempt.terminal_reason == "user_left"
    assert p.pool.get("B").status == EntryStatus.WAITING


def test_accept_on_finished_match_returns_state():
    async def main():
        users = InMemoryUserProvider()
        users.add(UserProfile("A"))
        users.add(UserProfile("B"))
        p = _pipeline(users)
        await p.join_queue("A")
        await p.join_queue("B")
        await p.run_tick()
        [proposal] = p.pending_matches("A")
        await p.decline_match("B", proposal.id)
        return await p.accept_match("A", proposal.id)

    assert asyncio.run(main()).state == MatchState.DECLINED


def test_reload_rejects_invalid_config_and_keeps_running_one():
    p = _pipeline(InMemoryUserProvider())
    before = p.config.current
    with pytest.raises(ValidationError):
        p.reload_config({"scorer": {"weights": {"age": 0.9}}})
    assert p.config.current is before
    p.reload_config({"matcher": {"snapshot_size": 5}})
    assert p.config.current.matcher.snapshot_size == 5


def test_stats_reports_pool_and_matches():
    async def main():
        users = InMemoryUserProvider()
        users.add(UserProfile("A"))
        users.add(UserProfile("B"))
        users.add(UserProfile("C"))
        p = _pipeline(users)
        for user_id in ("A", "B", "C"):
            await p.join_queue(user_id)
        await p.run_tick()
        await p.manager.drain()
        return p.stats()

    stats = asyncio.run(main())
    assert stats["pool"]["WAITING"] == 1
    assert stats["pool"]["LOCKED"] == 2
    assert stats["matches"]["PROPOSED"] == 1
    assert stats["last_tick"]["proposals"] == 1


class FakeRepository:
    def __init__(self, entries=(), attempts=()):
        self.entries = list(entries)
        self.attempts = list(attempts)
        self.saved = []

    def load_queue_entries(self):
        return self.entries

    def load_attempts(self, terminal_since):
        return self.attempts

    def save_queue_entry(self, entry):
        self.saved.append(entry)

    def delete_queue_entry(self, user_id):
        pass

    def save_attempt(self, attempt):
        pass

    def record_match_event(self, match_id, event_type, payload=None, user_id=None):
        pass

    def record_queue_event(self, user_id, event_type, payload=None):
        pass


def test_restore_releases_locks_left_by_a_crash():
    clock = Clock()
    users = _happy_path_users()
    repository = FakeRepository(
        entries=[QueueEntry("A", clock.now, Preferences(), UserProfile("A"), status=EntryStatus.LOCKED)]
    )
    pipeline = _pipeline(users, clock=clock, repository=repository)

    async def main():
        await pipeline.restore()
        return await pipeline.join_queue("A")

    status = asyncio.run(main())
    assert status.status == EntryStatus.WAITING.value
    assert [e.status for e in repository.saved][0] == EntryStatus.WAITING


def test_chat_notifications_follow_the_match_state():
    async def main():
        clock = Clock()
        p = _pipeline(_happy_path_users(), clock)
        await p.join_queue("A")
        await p.join_queue("B")
        await p.run_tick()
        [proposal] = p.pending_matches("A")
        before = {"senderId": "B", "senderName": "Bo", "content": "hi"}
        await p.notifier.send("A", NotificationKind.NEW_MESSAGE, before, "msg:1")
        await p.accept_match("A", proposal.id)
        await p.accept_match("B", proposal.id)
        await p.manager.drain()
        await p.notifier.send("A", NotificationKind.NEW_MESSAGE, before, "msg:2")
        await p.notifier.send("A", NotificationKind.NEW_MESSAGE, {**before, "senderId": "C"}, "msg:3")
        return p

    p = asyncio.run(main())
    messages = [n for n in p.notifier.sent if n.kind == NotificationKind.NEW_MESSAGE]
    assert [n.idempotency_key for n in messages] == ["msg:2"]
