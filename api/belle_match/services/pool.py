from __future__ import annotations

import asyncio
import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator

from ..config import ConfigHolder
from ..domain import EntryStatus, Gender, Preferences, QueueEntry, QueueStatus, UserProfile, utcnow
from ..errors import AlreadyLocked, InvalidInput, NotAvailable, UserBlockedByPolicy
from .geo import cell_of, cells_within, haversine_km
from .keyed_lock import KeyedLock

logger = logging.getLogger(__name__)

_NO_LOCATION = ("none",)
_NO_AGE = -1


def _waiting_since(entry: QueueEntry) -> datetime:
    # TTL restarts when a match attempt hands the entry back.
    return entry.requeued_at or entry.joined_at


@dataclass(frozen=True)
class PoolFilter:
    """Coarse pre-filter for one requesting entry.

    Checks the requester's constraints on candidates and the candidates'
    constraints on the requester (age, gender, distance). Exact eligibility is
    the scorer's job.
    """

    exclude_user_id: str | None = None
    min_age: int | None = None
    max_age: int | None = None
    genders: frozenset[Gender] = frozenset()
    max_distance_km: float | None = None
    latitude: float | None = None
    longitude: float | None = None
    requester_age: int | None = None
    requester_gender: Gender | None = None

    @classmethod
    def for_entry(cls, entry: QueueEntry) -> "PoolFilter":
        prefs = entry.effective_prefs
        return cls(
            exclude_user_id=entry.user_id,
            min_age=prefs.min_age if prefs.has_age_range else None,
            max_age=prefs.max_age if prefs.has_age_range else None,
            genders=prefs.genders,
            max_distance_km=prefs.max_distance_km,
            latitude=entry.profile.latitude,
            longitude=entry.profile.longitude,
            requester_age=entry.profile.age,
            requester_gender=entry.profile.gender,
        )

    @property
    def has_center(self) -> bool:
        return self.latitude is not None and self.longitude is not None

    def accepts(self, entry: QueueEntry) -> bool:
        if entry.user_id == self.exclude_user_id:
            return False
        profile = entry.profile
        if self.min_age is not None and self.max_age is not None:
            if profile.age is None or not (self.min_age <= profile.age <= self.max_age):
                return False
        if self.genders and profile.gender not in self.genders:
            return False

        prefs = entry.effective_prefs
        if self.exclude_user_id is not None:
            if prefs.has_age_range:
                if self.requester_age is None or not (prefs.min_age <= self.requester_age <= prefs.max_age):
                    return False
            if prefs.genders and self.requester_gender not in prefs.genders:
                return False

        if self.has_center and profile.has_location:
            limits = [d for d in (self.max_distance_km, prefs.max_distance_km) if d is not None]
            if limits:
                distance = haversine_km(self.latitude, self.longitude, profile.latitude, profile.longitude)
                if distance > min(limits):
                    return False
        return True


class CandidatePool:
    """Users currently seeking a match, with age, geo-cell and gender indexes."""

    def __init__(
        self,
        config: ConfigHolder,
        safety: Any = None,
        has_active_attempt: Callable[[str], bool] | None = None,
        repository: Any = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._config = config
        self._safety = safety
        self._has_active_attempt = has_active_attempt or (lambda user_id: False)
        self._repository = repository
        self._clock = clock
        self._locks = KeyedLock()
        self._entries: dict[str, QueueEntry] = {}
        self._tombstones: dict[str, QueueEntry] = {}
        self._by_age: dict[int, set[str]] = defaultdict(set)
        self._by_cell: dict[tuple, set[str]] = defaultdict(set)
        self._by_gender: dict[Gender | None, set[str]] = defaultdict(set)
        # Keys each entry was indexed under; a config swap may change sizes.
        self._index_keys: dict[str, tuple[int, tuple, Gender | None]] = {}

    def set_attempt_check(self, check: Callable[[str], bool]) -> None:
        self._has_active_attempt = check

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, user_id: str) -> QueueEntry | None:
        entry = self._entries.get(user_id)
        return entry.copy() if entry else None

    def _age_bucket(self, age: int | None) -> int:
        if age is None:
            return _NO_AGE
        return age // self._config.current.pool.age_bucket_size

    def _cell(self, profile: UserProfile) -> tuple:
        if not profile.has_location:
            return _NO_LOCATION
        return cell_of(profile.latitude, profile.longitude, self._config.current.pool.geo_cell_size_km)

    def _index(self, entry: QueueEntry) -> None:
        keys = (self._age_bucket(entry.profile.age), self._cell(entry.profile), entry.profile.gender)
        self._index_keys[entry.user_id] = keys
        self._by_age[keys[0]].add(entry.user_id)
        self._by_cell[keys[1]].add(entry.user_id)
        self._by_gender[keys[2]].add(entry.user_id)

    def _unindex(self, user_id: str) -> None:
        keys = self._index_keys.pop(user_id, None)
        if keys is None:
            return
        for index, key in zip((self._by_age, self._by_cell, self._by_gender), keys):
            bucket = index.get(key)
            if bucket is not None:
                bucket.discard(user_id)
                if not bucket:
                    index.pop(key, None)

    def reindex(self) -> None:
        """Rebuild all indexes, used after a pool config swap."""
        self._by_age.clear()
        self._by_cell.clear()
        self._by_gender.clear()
        self._index_keys.clear()
        for entry in self._entries.values():
            self._index(entry)

    async def _persist(self, method: str, *args: Any) -> None:
        if self._repository is None:
            return
        try:
            await asyncio.to_thread(getattr(self._repository, method), *args)
        except Exception:
            logger.exception("[POOL] persistence call %s failed", method)

    async def join(self, user_id: str, effective_prefs: Preferences, profile: UserProfile | None = None) -> QueueStatus:
        if not user_id:
            raise InvalidInput("userId is required")
        profile = profile or UserProfile(user_id=user_id)
        async with self._locks.hold(user_id):
            if self._safety is not None and not await self._safety.is_active(user_id):
                raise UserBlockedByPolicy("Your account cannot join the queue right now.", user_id=user_id)
            if self._has_active_attempt(user_id):
                raise AlreadyLocked("You already have a pending match. Respond to it first.", user_id=user_id)
            existing = self._entries.get(user_id)
            if existing is not None and existing.status == EntryStatus.LOCKED:
                raise AlreadyLocked("You already have a pending match. Respond to it first.", user_id=user_id)

            self._unindex(user_id)
            self._tombstones.pop(user_id, None)
            entry = QueueEntry(
                user_id=user_id,
                joined_at=self._clock(),
                effective_prefs=effective_prefs,
                profile=profile,
            )
            self._entries[user_id] = entry
            self._index(entry)
            snapshot = entry.copy()
        logger.info("[POOL] user %s joined (refresh=%s)", user_id, existing is not None)
        await self._persist("save_queue_entry", snapshot)
        return self.status(user_id)

    async def leave(self, user_id: str) -> bool:
        return await self.remove(user_id, "left")

    async def remove(self, user_id: str, reason: str) -> bool:
        async with self._locks.hold(user_id):
            removed = self._remove_locked(user_id, reason)
        if removed:
            logger.info("[POOL] user %s removed (%s)", user_id, reason)
            await self._persist("delete_queue_entry", user_id)
        return removed

    def _remove_locked(self, user_id: str, reason: str) -> bool:
        entry = self._entries.pop(user_id, None)
        if entry is None:
            return False
        self._unindex(user_id)
        entry.status = EntryStatus.LEFT
        entry.left_at = self._clock()
        entry.left_reason = reason
        self._tombstones[user_id] = entry
        return True

    async def lock(self, user_a: str, user_b: str) -> None:
        """Move both entries WAITING -> LOCKED, or neither."""
        if user_a == user_b:
            raise InvalidInput("Cannot lock a user against themselves", user_id=user_a)
        async with self._locks.hold_many((user_a, user_b)):
            for user_id in (user_a, user_b):
                entry = self._entries.get(user_id)
                if entry is None or entry.status != EntryStatus.WAITING:
                    raise NotAvailable(f"User {user_id} is not available", user_id=user_id)
            for user_id in (user_a, user_b):
                self._entries[user_id].status = EntryStatus.LOCKED
            snapshots = [self._entries[u].copy() for u in (user_a, user_b)]
        for snapshot in snapshots:
            await self._persist("save_queue_entry", snapshot)

    async def unlock(self, user_id: str) -> bool:
        async with self._locks.hold(user_id):
            entry = self._entries.get(user_id)
            if entry is None or entry.status != EntryStatus.LOCKED:
                return False
            entry.status = EntryStatus.WAITING
            entry.requeued_at = self._clock()
            snapshot = entry.copy()
        await self._persist("save_queue_entry", snapshot)
        return True

    async def release_orphans(self) -> list[str]:
        """Return LOCKED entries with no open match attempt to WAITING."""
        orphans = [
            e.user_id
            for e in self._entries.values()
            if e.status == EntryStatus.LOCKED and not self._has_active_attempt(e.user_id)
        ]
        released = [user_id for user_id in orphans if await self.unlock(user_id)]
        if released:
            logger.warning("[POOL] released %s locked entries without a match attempt", len(released))
        return released

    def record_miss(self, user_id: str) -> int:
        entry = self._entries.get(user_id)
        if entry is None:
            return 0
        entry.unsuccessful_rounds += 1
        return entry.unsuccessful_rounds

    def reset_misses(self, user_id: str) -> None:
        entry = self._entries.get(user_id)
        if entry is not None:
            entry.unsuccessful_rounds = 0

    def _candidate_ids(self, pool_filter: PoolFilter | None) -> set[str]:
        ids = set(self._entries)
        if pool_filter is None:
            return ids
        if pool_filter.min_age is not None and pool_filter.max_age is not None:
            size = self._config.current.pool.age_bucket_size
            in_range: set[str] = set()
            for bucket in range(pool_filter.min_age // size, pool_filter.max_age // size + 1):
                in_range |= self._by_age.get(bucket, set())
            ids &= in_range
        if pool_filter.genders:
            by_gender: set[str] = set()
            for gender in pool_filter.genders:
                by_gender |= self._by_gender.get(gender, set())
            ids &= by_gender
        if pool_filter.has_center and pool_filter.max_distance_km is not None:
            cells = cells_within(
                pool_filter.latitude,
                pool_filter.longitude,
                pool_filter.max_distance_km,
                self._config.current.pool.geo_cell_size_km,
            )
            if cells is not None:
                nearby = set(self._by_cell.get(_NO_LOCATION, set()))
                for cell in cells:
                    nearby |= self._by_cell.get(cell, set())
                ids &= nearby
        return ids

    def snapshot(self, pool_filter: PoolFilter | None = None, limit: int | None = None) -> Iterator[QueueEntry]:
        """Lazily yield copies of WAITING entries matching the filter, oldest first.

        Each call starts a fresh pass. Entries that stop WAITING while the
        iteration is suspended are skipped.
        """
        ordered = sorted(
            (self._entries[u] for u in self._candidate_ids(pool_filter)),
            key=lambda e: (e.joined_at, e.user_id),
        )
        yielded = 0
        for entry in ordered:
            if limit is not None and yielded >= limit:
                return
            current = self._entries.get(entry.user_id)
            if current is None or current.status != EntryStatus.WAITING:
                continue
            if pool_filter is not None and not pool_filter.accepts(current):
                continue
            yielded += 1
            yield current.copy()

    def _waiting_order(self) -> list[QueueEntry]:
        waiting = [e for e in self._entries.values() if e.status == EntryStatus.WAITING]
        return sorted(waiting, key=lambda e: (e.joined_at, e.user_id))

    def status(self, user_id: str) -> QueueStatus:
        entry = self._entries.get(user_id)
        if entry is None:
            return QueueStatus(status=QueueStatus.NOT_IN_QUEUE)
        if entry.status == EntryStatus.LOCKED:
            return QueueStatus(status=EntryStatus.LOCKED.value, joined_at=entry.joined_at)

        waiting = self._waiting_order()
        position = next(i for i, e in enumerate(waiting, start=1) if e.user_id == user_id)
        matcher = self._config.current.matcher
        ticks = math.ceil(position / matcher.snapshot_size)
        return QueueStatus(
            status=EntryStatus.WAITING.value,
            position=position,
            total_in_queue=len(waiting),
            estimated_wait_seconds=ticks * matcher.tick_interval_seconds,
            joined_at=entry.joined_at,
        )

    async def purge(self, now: datetime | None = None) -> dict[str, int]:
        """Drop old tombstones and expire WAITING entries past the entry TTL."""
        now = now or self._clock()
        settings = self._config.current.pool
        tombstone_cutoff = now - timedelta(seconds=settings.tombstone_ttl_seconds)
        purged = 0
        for user_id, entry in list(self._tombstones.items()):
            if entry.left_at is not None and entry.left_at <= tombstone_cutoff:
                self._tombstones.pop(user_id, None)
                purged += 1

        expired = 0
        if settings.entry_ttl_seconds > 0:
            entry_cutoff = now - timedelta(seconds=settings.entry_ttl_seconds)
            stale = [
                e.user_id
                for e in self._entries.values()
                if e.status == EntryStatus.WAITING and _waiting_since(e) <= entry_cutoff
            ]
            for user_id in stale:
                async with self._locks.hold(user_id):
                    entry = self._entries.get(user_id)
                    if entry is None or entry.status != EntryStatus.WAITING or _waiting_since(entry) > entry_cutoff:
                        continue
                    self._remove_locked(user_id, "expired")
                expired += 1
                await self._persist("delete_queue_entry", user_id)
        if purged or expired:
            logger.info("[POOL] purge tombstones=%s expired_entries=%s", purged, expired)
        return {"tombstones": purged, "expired_entries": expired}

    def restore(self, entries: list[QueueEntry]) -> None:
        for entry in entries:
            if entry.status == EntryStatus.LEFT:
                continue
            self._unindex(entry.user_id)
            self._entries[entry.user_id] = entry
            self._index(entry)

    def stats(self) -> dict[str, int]:
        counts = {status.value: 0 for status in EntryStatus}
        for entry in self._entries.values():
            counts[entry.status.value] += 1
        counts[EntryStatus.LEFT.value] = len(self._tombstones)
        return counts
