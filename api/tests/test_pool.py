import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from belle_match.config import ConfigHolder, load_pipeline_config
from belle_match.domain import EntryStatus, Gender, Preferences, QueueEntry, QueueStatus, UserProfile
from belle_match.errors import AlreadyLocked, InvalidInput, NotAvailable, UserBlockedByPolicy
from belle_match.services.collaborators import InMemorySafetyProvider
from belle_match.services.pool import CandidatePool, PoolFilter


class Clock:
    def __init__(self):
        self.now = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


def _pool(clock=None, safety=None, **overrides):
    return CandidatePool(ConfigHolder(load_pipeline_config(overrides)), safety=safety, clock=clock or Clock())


def _profile(user_id, age=None, gender=None, lat=None, lng=None):
    return UserProfile(user_id=user_id, age=age, gender=gender, latitude=lat, longitude=lng)


def test_join_reports_position_and_wait():
    async def main():
        clock = Clock()
        pool = _pool(clock, matcher={"snapshot_size": 2, "tick_interval_seconds": 5})
        for user_id in ("a", "b", "c"):
            await pool.join(user_id, Preferences(), _profile(user_id))
            clock.advance(1)
        return pool.status("a"), pool.status("c")

    first, third = asyncio.run(main())
    assert first.status == "WAITING"
    assert first.position == 1
    assert first.total_in_queue == 3
    assert first.estimated_wait_seconds == 5
    assert third.position == 3
    assert third.estimated_wait_seconds == 10


def test_rejoin_refreshes_single_entry():
    async def main():
        pool = _pool()
        await pool.join("a", Preferences(min_age=20, max_age=30), _profile("a"))
        await pool.join("a", Preferences(min_age=30, max_age=40), _profile("a"))
        return pool

    pool = asyncio.run(main())
    assert len(pool) == 1
    assert pool.get("a").effective_prefs.min_age == 30


def test_inactive_user_cannot_join():
    async def main():
        pool = _pool(safety=InMemorySafetyProvider(inactive={"a"}))
        await pool.join("a", Preferences(), _profile("a"))

    with pytest.raises(UserBlockedByPolicy):
        asyncio.run(main())


def test_locked_user_cannot_rejoin():
    async def main():
        pool = _pool()
        await pool.join("a", Preferences(), _profile("a"))
        await pool.join("b", Preferences(), _profile("b"))
        await pool.lock("a", "b")
        assert pool.status("a").status == "LOCKED"
        await pool.join("a", Preferences(), _profile("a"))

    with pytest.raises(AlreadyLocked):
        asyncio.run(main())


def test_user_with_active_attempt_cannot_join():
    async def main():
        pool = _pool()
        pool.set_attempt_check(lambda user_id: user_id == "a")
        await pool.join("a", Preferences(), _profile("a"))

    with pytest.raises(AlreadyLocked):
        asyncio.run(main())


def test_lock_is_all_or_nothing():
    async def main():
        pool = _pool()
        for user_id in ("a", "b", "c"):
            await pool.join(user_id, Preferences(), _profile(user_id))
        await pool.lock("a", "b")
        with pytest.raises(NotAvailable):
            await pool.lock("c", "a")
        return pool

    pool = asyncio.run(main())
    assert pool.get("c").status == EntryStatus.WAITING
    assert pool.get("a").status == EntryStatus.LOCKED


def test_concurrent_locks_on_one_user_only_one_wins():
    async def main():
        pool = _pool()
        for user_id in ("a", "b", "c"):
            await pool.join(user_id, Preferences(), _profile(user_id))
        results = await asyncio.gather(pool.lock("a", "b"), pool.lock("c", "a"), return_exceptions=True)
        return pool, results

    pool, results = asyncio.run(main())
    assert sum(1 for r in results if r is None) == 1
    assert sum(1 for r in results if isinstance(r, NotAvailable)) == 1
    locked = [u for u in ("a", "b", "c") if pool.get(u).status == EntryStatus.LOCKED]
    assert "a" in locked
    assert len(locked) == 2


def test_self_lock_is_rejected():
    async def main():
        pool = _pool()
        await pool.join("a", Preferences(), _profile("a"))
        await pool.lock("a", "a")

    with pytest.raises(InvalidInput):
        asyncio.run(main())


def test_unlock_returns_entry_to_waiting():
    async def main():
        pool = _pool()
        await pool.join("a", Preferences(), _profile("a"))
        await pool.join("b", Preferences(), _profile("b"))
        await pool.lock("a", "b")
        assert await pool.unlock("a") is True
        assert await pool.unlock("a") is False
        return pool

    pool = asyncio.run(main())
    assert pool.get("a").status == EntryStatus.WAITING
    assert pool.get("b").status == EntryStatus.LOCKED


def test_snapshot_is_oldest_first_and_skips_locked():
    async def main():
        clock = Clock()
        pool = _pool(clock)
        for user_id in ("c", "a", "b", "d"):
            await pool.join(user_id, Preferences(), _profile(user_id))
            clock.advance(1)
        await pool.lock("a", "d")
        return [e.user_id for e in pool.snapshot()], [e.user_id for e in pool.snapshot(limit=1)]

    ordered, limited = asyncio.run(main())
    assert ordered == ["c", "b"]
    assert limited == ["c"]


def test_filter_checks_both_sides():
    async def main():
        pool = _pool()
        await pool.join(
            "a",
            Preferences(genders=frozenset({Gender.WOMAN}), min_age=25, max_age=33),
            _profile("a", age=28, gender=Gender.MAN),
        )
        await pool.join(
            "b",
            Preferences(genders=frozenset({Gender.MAN}), min_age=26, max_age=34),
            _profile("b", age=30, gender=Gender.WOMAN),
        )
        await pool.join(
            "c",
            Preferences(genders=frozenset({Gender.WOMAN})),
            _profile("c", age=29, gender=Gender.WOMAN),
        )
        await pool.join("d", Preferences(), _profile("d", age=45, gender=Gender.WOMAN))
        await pool.join("e", Preferences(), _profile("e", gender=Gender.WOMAN))
        return [e.user_id for e in pool.snapshot(PoolFilter.for_entry(pool.get("a")))]

    # c wants women only, d is too old, e has no age while a has a range.
    assert asyncio.run(main()) == ["b"]


def test_distance_filter_passes_unknown_coordinates():
    async def main():
        pool = _pool()
        await pool.join("a", Preferences(max_distance_km=50), _profile("a", lat=40.7128, lng=-74.0060))
        await pool.join("near", Preferences(), _profile("near", lat=40.73, lng=-73.99))
        await pool.join("far", Preferences(), _profile("far", lat=34.05, lng=-118.24))
        await pool.join("nowhere", Preferences(), _profile("nowhere"))
        return sorted(e.user_id for e in pool.snapshot(PoolFilter.for_entry(pool.get("a"))))

    assert asyncio.run(main()) == ["near", "nowhere"]


def test_candidate_distance_limit_applies_to_requester():
    async def main():
        pool = _pool()
        await pool.join("a", Preferences(), _profile("a", lat=40.7128, lng=-74.0060))
        await pool.join("b", Preferences(max_distance_km=1), _profile("b", lat=40.80, lng=-73.95))
        return [e.user_id for e in pool.snapshot(PoolFilter.for_entry(pool.get("a")))]

    assert asyncio.run(main()) == []


def test_leave_leaves_tombstone_until_purge():
    async def main():
        clock = Clock()
        pool = _pool(clock, pool={"tombstone_ttl_seconds": 60, "entry_ttl_seconds": 0})
        await pool.join("a", Preferences(), _profile("a"))
        assert await pool.leave("a") is True
        assert await pool.leave("a") is False
        left_stats = pool.stats()
        clock.advance(61)
        purged = await pool.purge()
        return pool, left_stats, purged

    pool, left_stats, purged = asyncio.run(main())
    assert pool.status("a").status == QueueStatus.NOT_IN_QUEUE
    assert left_stats["LEFT"] == 1
    assert purged == {"tombstones": 1, "expired_entries": 0}
    assert pool.stats()["LEFT"] == 0


def test_purge_expires_stale_waiting_entries():
    async def main():
        clock = Clock()
        pool = _pool(clock, pool={"entry_ttl_seconds": 600})
        await pool.join("old", Preferences(), _profile("old"))
        clock.advance(500)
        await pool.join("fresh", Preferences(), _profile("fresh"))
        clock.advance(101)
        return pool, await pool.purge()

    pool, purged = asyncio.run(main())
    assert purged["expired_entries"] == 1
    assert "old" not in pool
    assert "fresh" in pool


def test_reindex_after_cell_size_change():
    async def main():
        holder = ConfigHolder()
        pool = CandidatePool(holder, clock=Clock())
        await pool.join("a", Preferences(max_distance_km=30), _profile("a", lat=40.7128, lng=-74.0060))
        await pool.join("b", Preferences(), _profile("b", lat=40.75, lng=-73.98))
        holder.reload({"pool": {"geo_cell_size_km": 5}})
        pool.reindex()
        return [e.user_id for e in pool.snapshot(PoolFilter.for_entry(pool.get("a")))]

    assert asyncio.run(main()) == ["b"]


def test_get_returns_a_copy():
    async def main():
        pool = _pool()
        await pool.join("a", Preferences(), _profile("a"))
        return pool

    pool = asyncio.run(main())
    copy_ = pool.get("a")
    copy_.status = EntryStatus.LOCKED
    assert pool.get("a").status == EntryStatus.WAITING


def test_restored_lock_without_attempt_is_released():
    clock = Clock()
    pool = _pool(clock=clock)
    pool.set_attempt_check(lambda user_id: user_id == "held")
    pool.restore(
        [
            QueueEntry("orphan", clock.now, Preferences(), _profile("orphan"), status=EntryStatus.LOCKED),
            QueueEntry("held", clock.now, Preferences(), _profile("held"), status=EntryStatus.LOCKED),
        ]
    )

    async def main():
        released = await pool.release_orphans()
        status = await pool.join("orphan", Preferences(), _profile("orphan"))
        return released, status

    released, status = asyncio.run(main())
    assert released == ["orphan"]
    assert status.status == "WAITING"
    assert pool.get("held").status == EntryStatus.LOCKED


def test_join_then_leave_restores_pool():
    async def main():
        pool = _pool()
        await pool.join("a", Preferences(), _profile("a", age=30, gender=Gender.WOMAN, lat=40.7, lng=-74.0))
        before = (len(pool), pool.stats(), pool.status("a"), [e.user_id for e in pool.snapshot()])

        await pool.join("u", Preferences(min_age=25, max_age=35), _profile("u", age=28, gender=Gender.MAN))
        await pool.leave("u")
        after = (len(pool), pool.stats(), pool.status("a"), [e.user_id for e in pool.snapshot()])
        return pool, before, after

    pool, before, after = asyncio.run(main())
    assert pool.status("u").status == QueueStatus.NOT_IN_QUEUE
    assert "u" not in pool
    assert after[0] == before[0]
    assert after[2] == before[2]
    assert after[3] == before[3]
    # Only the LEFT tombstone count differs until the next purge.
    assert {k: v for k, v in after[1].items() if k != "LEFT"} == {k: v for k, v in before[1].items() if k != "LEFT"}
    assert set(pool._index_keys) == {"a"}
