from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from ..config import ConfigHolder
from ..domain import EXPIRABLE_STATES, MatchAttempt, MatchState, RejoinPolicy, canonical_pair, utcnow
from ..errors import (
    AlreadyPending,
    AttemptNotActive,
    InternalInvariantViolated,
    InvalidInput,
    NotAvailable,
    NotFound,
    TRANSIENT_DEPENDENCY_ERRORS,
)
from .keyed_lock import KeyedLock
from .notifications import NotificationKind, backoff_delay, call_with_retry, match_idempotency_key
from .state_machine import transition_state

logger = logging.getLogger(__name__)


class PendingMatchManager:
    """Two-sided accept/decline state machine for proposed pairs.

    Attempts are mutated only under their per-match lock. Terminal attempts
    are kept for the audit window and then dropped by ``gc``.
    """

    def __init__(
        self,
        config: ConfigHolder,
        pool: Any,
        notifier: Any,
        conversations: Any,
        repository: Any = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._pool = pool
        self._notifier = notifier
        self._conversations = conversations
        self._repository = repository
        self._clock = clock
        self._sleep = sleep
        self._locks = KeyedLock()
        self._attempts: dict[str, MatchAttempt] = {}
        self._active_by_user: dict[str, str] = {}
        self._last_terminal: dict[tuple[str, str], datetime] = {}
        self._matched_pairs: set[tuple[str, str]] = set()
        self._tasks: set[asyncio.Task] = set()
        self._in_flight = asyncio.Semaphore(config.current.matcher.max_in_flight_proposals)

    # -- queries -------------------------------------------------------------

    def get(self, match_id: str) -> MatchAttempt | None:
        attempt = self._attempts.get(match_id)
        return copy.deepcopy(attempt) if attempt else None

    def has_active_attempt(self, user_id: str) -> bool:
        return user_id in self._active_by_user

    def last_terminal_at(self, user_a: str, user_b: str) -> datetime | None:
        return self._last_terminal.get(canonical_pair(user_a, user_b))

    def are_matched(self, user_a: str, user_b: str) -> bool:
        return canonical_pair(user_a, user_b) in self._matched_pairs

    def list_for_user(self, user_id: str) -> list[MatchAttempt]:
        attempts = [
            a for a in self._attempts.values()
            if not a.is_terminal and user_id in a.participants
        ]
        return [copy.deepcopy(a) for a in sorted(attempts, key=lambda a: (a.created_at, a.id), reverse=True)]

    def due_for_expiry(self, now: datetime | None = None) -> list[str]:
        now = now or self._clock()
        return [a.id for a in self._attempts.values() if a.state in EXPIRABLE_STATES and now > a.expires_at]

    def stats(self) -> dict[str, int]:
        counts = {state.value: 0 for state in MatchState}
        for attempt in self._attempts.values():
            counts[attempt.state.value] += 1
        counts["in_flight_tasks"] = len(self._tasks)
        return counts

    def _participant_attempt(self, match_id: str, user_id: str) -> MatchAttempt:
        attempt = self._attempts.get(match_id)
        if attempt is None or user_id not in attempt.participants:
            raise NotFound("Match not found", match_id=match_id)
        return attempt

    # -- transitions ---------------------------------------------------------

    async def propose(
        self,
        user_a: str,
        user_b: str,
        score: float,
        components: dict[str, float],
        reasons: list[dict[str, Any]] | None = None,
    ) -> MatchAttempt:
        if user_a == user_b:
            raise InvalidInput("Cannot propose a user to themselves", user_id=user_a)
        await self._in_flight.acquire()
        try:
            for user_id in (user_a, user_b):
                if user_id in self._active_by_user:
                    raise AlreadyPending(f"User {user_id} already has a pending match", user_id=user_id)
            now = self._clock()
            attempt = MatchAttempt(
                id=str(uuid.uuid4()),
                user1_id=user_a,
                user2_id=user_b,
                score=score,
                components=dict(components),
                state=MatchState.PROPOSED,
                created_at=now,
                expires_at=now + timedelta(seconds=self._config.current.match.proposal_ttl_seconds),
                reasons=list(reasons or []),
            )
            self._attempts[attempt.id] = attempt
            self._active_by_user[user_a] = attempt.id
            self._active_by_user[user_b] = attempt.id
        except BaseException:
            self._in_flight.release()
            raise

        logger.info("[PENDING] proposed %s for %s/%s score=%.4f", attempt.id, user_a, user_b, score)
        self._spawn(self._announce(attempt.id), release_in_flight=True)
        await self._persist(attempt, "proposed")
        return copy.deepcopy(attempt)

    async def accept(self, match_id: str, user_id: str) -> MatchAttempt:
        attempt = self._participant_attempt(match_id, user_id)
        async with self._locks.hold(match_id):
            now = self._clock()
            await self._ensure_active(attempt, now)
            if user_id in attempt.accepted_by or attempt.state == MatchState.MUTUALLY_ACCEPTED:
                return copy.deepcopy(attempt)
            accepted = attempt.accepted_by | {user_id}
            new_state = transition_state(attempt.state, "accept", now, attempt.expires_at, len(accepted))
            attempt.accepted_by = accepted
            attempt.state = new_state
            logger.info("[PENDING] %s accepted by %s -> %s", match_id, user_id, new_state.value)
            await self._persist(attempt, "accepted", user_id=user_id)
            mutual = new_state == MatchState.MUTUALLY_ACCEPTED

        if mutual:
            # Shielded so a cancelled caller cannot interrupt room creation.
            task = self._spawn(self._materialize(match_id))
            await asyncio.shield(task)
        return copy.deepcopy(attempt)

    async def decline(self, match_id: str, user_id: str) -> MatchAttempt:
        attempt = self._participant_attempt(match_id, user_id)
        async with self._locks.hold(match_id):
            now = self._clock()
            await self._ensure_active(attempt, now)
            if attempt.state == MatchState.MUTUALLY_ACCEPTED:
                raise NotAvailable("Match was already accepted by both users", match_id=match_id)
            attempt.declined_by.add(user_id)
            attempt.state = transition_state(attempt.state, "decline", now, attempt.expires_at)
            logger.info("[PENDING] %s declined by %s", match_id, user_id)
            await self._finish(attempt, "declined", actor_id=user_id)
            self._notify(attempt, NotificationKind.MATCH_DECLINED, [attempt.other(user_id)])
        return copy.deepcopy(attempt)

    async def expire(self, match_id: str) -> bool:
        attempt = self._attempts.get(match_id)
        if attempt is None:
            return False
        async with self._locks.hold(match_id):
            return await self._expire_locked(attempt, self._clock())

    async def cancel(self, match_id: str, reason: str = "cancelled") -> MatchAttempt:
        attempt = self._attempts.get(match_id)
        if attempt is None:
            raise NotFound("Match not found", match_id=match_id)
        async with self._locks.hold(match_id):
            now = self._clock()
            await self._ensure_active(attempt, now)
            attempt.state = transition_state(attempt.state, "cancel", now, attempt.expires_at)
            logger.info("[PENDING] %s cancelled (%s)", match_id, reason)
            await self._finish(attempt, reason)
        return copy.deepcopy(attempt)

    async def _ensure_active(self, attempt: MatchAttempt, now: datetime) -> None:
        """Raise AttemptNotActive for terminal attempts, expiring overdue ones first.

        ``now`` is read once by the caller under the match lock and reused for
        the transition that follows.
        """
        if attempt.is_terminal or await self._expire_locked(attempt, now):
            raise AttemptNotActive("Match is no longer active", attempt=copy.deepcopy(attempt), match_id=attempt.id)

    async def _expire_locked(self, attempt: MatchAttempt, now: datetime) -> bool:
        if attempt.state not in EXPIRABLE_STATES or now <= attempt.expires_at:
            return False
        attempt.state = transition_state(attempt.state, "expire", now, attempt.expires_at)
        logger.info("[PENDING] %s expired", attempt.id)
        await self._finish(attempt, "expired")
        self._notify(attempt, NotificationKind.MATCH_EXPIRED, list(attempt.participants))
        return True

    async def _materialize(self, match_id: str) -> None:
        attempt = self._attempts.get(match_id)
        if attempt is None:
            return
        settings = self._config.current.match
        async with self._locks.hold(match_id):
            if attempt.state != MatchState.MUTUALLY_ACCEPTED:
                return
            attempt.materialization_attempts += 1
            try:
                room_id = await asyncio.wait_for(
                    self._conversations.create_room(attempt.user1_id, attempt.user2_id),
                    timeout=settings.dependency_timeout_seconds,
                )
            except Exception as exc:
                # Any failure to create the room counts against the retry budget.
                if attempt.materialization_attempts >= settings.repeat_materialization_max_attempts:
                    logger.error(
                        "[PENDING] %s materialization failed after %s attempts: %s",
                        match_id,
                        attempt.materialization_attempts,
                        exc,
                    )
                    attempt.state = transition_state(attempt.state, "fail", self._clock(), attempt.expires_at)
                    await self._finish(attempt, "materialization_failed")
                    return
                delay = backoff_delay(
                    attempt.materialization_attempts,
                    settings.materialization_backoff_base_seconds,
                    settings.materialization_backoff_max_seconds,
                )
                logger.warning(
                    "[PENDING] %s materialization attempt %s failed: %s; retrying in %.2fs",
                    match_id,
                    attempt.materialization_attempts,
                    exc,
                    delay,
                )
                await self._persist(attempt, "materialization_retry")
                self._spawn(self._retry_materialize(match_id, delay))
                return

            attempt.chat_room_id = room_id
            attempt.state = transition_state(attempt.state, "materialize", self._clock(), attempt.expires_at)
            self._matched_pairs.add(canonical_pair(attempt.user1_id, attempt.user2_id))
            logger.info("[PENDING] %s materialized room=%s", match_id, room_id)
            await self._finish(attempt, "materialized")
            self._notify(attempt, NotificationKind.MATCH_ACCEPTED, list(attempt.participants), chatRoomId=room_id)

    async def _retry_materialize(self, match_id: str, delay: float) -> None:
        await self._sleep(delay)
        await self._materialize(match_id)

    async def _finish(self, attempt: MatchAttempt, reason: str, actor_id: str | None = None) -> None:
        """Bookkeeping for a transition into a terminal state. Caller holds the match lock."""
        if not attempt.is_terminal:
            raise InternalInvariantViolated(f"attempt {attempt.id} is not terminal", match_id=attempt.id)
        now = self._clock()
        attempt.terminal_at = now
        attempt.terminal_reason = reason
        for user_id in attempt.participants:
            if self._active_by_user.get(user_id) == attempt.id:
                self._active_by_user.pop(user_id, None)
        self._last_terminal[canonical_pair(attempt.user1_id, attempt.user2_id)] = now

        requeue = self._requeue_set(attempt)
        for user_id in attempt.participants:
            if user_id in requeue:
                await self._pool.unlock(user_id)
            else:
                await self._pool.remove(user_id, f"match_{attempt.state.value.lower()}")

        await self._persist(attempt, attempt.state.value.lower(), user_id=actor_id)
        for user_id in attempt.participants:
            self._spawn(self._mark_acted_upon(user_id, attempt.id))

    def _requeue_set(self, attempt: MatchAttempt) -> set[str]:
        policy = self._config.current.pool.rejoin_policy
        if policy == RejoinPolicy.REMOVE_ON_TERMINAL or attempt.state == MatchState.MATERIALIZED:
            return set()
        if attempt.state == MatchState.DECLINED:
            return set(attempt.participants) - attempt.declined_by
        if attempt.state == MatchState.EXPIRED:
            return set(attempt.accepted_by)
        return set(attempt.participants)

    # -- side effects --------------------------------------------------------

    def _spawn(self, coro: Awaitable[Any], release_in_flight: bool = False) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)

        def _done(t: asyncio.Task) -> None:
            self._tasks.discard(t)
            if release_in_flight:
                self._in_flight.release()
            if not t.cancelled() and t.exception() is not None:
                logger.error("[PENDING] background task failed", exc_info=t.exception())

        task.add_done_callback(_done)
        return task

    async def _deliver(
        self,
        user_id: str,
        kind: NotificationKind,
        payload: dict[str, Any],
        key: str,
        stale: Callable[[], bool] | None = None,
    ) -> bool:
        """Send one notification with retries. Returns False when nothing was sent.

        ``stale`` is re-checked before every try so a retry never delivers a
        notification that has stopped making sense.
        """
        settings = self._config.current.match

        async def _send() -> bool:
            if stale is not None and stale():
                return False
            await self._notifier.send(user_id, kind, payload, key)
            return True

        try:
            return await call_with_retry(
                _send,
                max_attempts=settings.notify_max_attempts,
                timeout_seconds=settings.dependency_timeout_seconds,
                backoff_base_seconds=settings.materialization_backoff_base_seconds,
                backoff_max_seconds=settings.materialization_backoff_max_seconds,
                label=f"notify {kind.value} to {user_id}",
                sleep=self._sleep,
            )
        except TRANSIENT_DEPENDENCY_ERRORS as exc:
            logger.warning("[NOTIFY] giving up on %s for %s: %s", kind.value, user_id, exc)
            return False

    async def _announce(self, match_id: str) -> None:
        attempt = self._attempts.get(match_id)
        if attempt is None:
            return
        for user_id in attempt.participants:
            if attempt.is_terminal:
                return
            if user_id in attempt.notified:
                continue
            payload = {"matchId": attempt.id, "otherUserId": attempt.other(user_id)}
            key = match_idempotency_key(attempt.id, NotificationKind.NEW_MATCH, user_id)
            if await self._deliver(user_id, NotificationKind.NEW_MATCH, payload, key, stale=lambda: attempt.is_terminal):
                attempt.notified.add(user_id)

    def _notify(self, attempt: MatchAttempt, kind: NotificationKind, user_ids: list[str], **extra: Any) -> None:
        for user_id in user_ids:
            payload = {"matchId": attempt.id, "otherUserId": attempt.other(user_id), **extra}
            key = match_idempotency_key(attempt.id, kind, user_id)
            self._spawn(self._deliver(user_id, kind, payload, key))

    async def _mark_acted_upon(self, user_id: str, match_id: str) -> None:
        settings = self._config.current.match
        try:
            await call_with_retry(
                lambda: self._notifier.mark_acted_upon(user_id, match_id),
                max_attempts=settings.notify_max_attempts,
                timeout_seconds=settings.dependency_timeout_seconds,
                backoff_base_seconds=settings.materialization_backoff_base_seconds,
                backoff_max_seconds=settings.materialization_backoff_max_seconds,
                label=f"mark acted upon {match_id} for {user_id}",
                sleep=self._sleep,
            )
        except TRANSIENT_DEPENDENCY_ERRORS as exc:
            logger.warning("[NOTIFY] could not mark %s acted upon for %s: %s", match_id, user_id, exc)

    async def _persist(self, attempt: MatchAttempt, event_type: str, user_id: str | None = None) -> None:
        if self._repository is None:
            return
        snapshot = copy.deepcopy(attempt)
        payload = {"state": snapshot.state.value, "accepted_by": sorted(snapshot.accepted_by)}
        try:
            await asyncio.to_thread(self._repository.save_attempt, snapshot)
            await asyncio.to_thread(self._repository.record_match_event, snapshot.id, event_type, payload, user_id)
        except Exception:
            logger.exception("[PENDING] failed to persist %s for %s", event_type, attempt.id)

    # -- maintenance ---------------------------------------------------------

    async def drain(self) -> None:
        """Wait until every background notification and retry task is done."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def gc(self, now: datetime | None = None) -> int:
        now = now or self._clock()
        cutoff = now - timedelta(seconds=self._config.current.match.audit_retention_seconds)
        stale = [
            a.id for a in self._attempts.values()
            if a.is_terminal and a.terminal_at is not None and a.terminal_at <= cutoff
        ]
        for match_id in stale:
            self._attempts.pop(match_id, None)
        for pair, at in list(self._last_terminal.items()):
            if at <= cutoff:
                self._last_terminal.pop(pair, None)
        if stale and self._repository is not None:
            try:
                await asyncio.to_thread(self._repository.delete_attempts, stale)
            except Exception:
                logger.exception("[PENDING] failed to delete %s collected attempts", len(stale))
        return len(stale)

    def restore(self, attempts: list[MatchAttempt]) -> None:
        for attempt in attempts:
            self._attempts[attempt.id] = attempt
            pair = canonical_pair(attempt.user1_id, attempt.user2_id)
            if attempt.is_terminal:
                if attempt.terminal_at is not None:
                    self._last_terminal[pair] = max(attempt.terminal_at, self._last_terminal.get(pair, attempt.terminal_at))
                if attempt.state == MatchState.MATERIALIZED:
                    self._matched_pairs.add(pair)
            else:
                self._active_by_user[attempt.user1_id] = attempt.id
                self._active_by_user[attempt.user2_id] = attempt.id

    def resume(self) -> None:
        """Restart side effects for restored attempts (announcements, room creation)."""
        for attempt in self._attempts.values():
            if attempt.state == MatchState.MUTUALLY_ACCEPTED:
                self._spawn(self._materialize(attempt.id))
            elif attempt.state in EXPIRABLE_STATES and set(attempt.participants) - attempt.notified:
                self._spawn(self._announce(attempt.id))
