from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable

from ..config import ConfigHolder
from ..domain import MatchAttempt, Preferences, QueueStatus, utcnow
from ..errors import AttemptNotActive, DependencyTimeout, InvalidInput, NotFound
from .collaborators import InMemoryConversations, InMemorySafetyProvider, InMemoryUserProvider
from .matcher import Matcher, TickReport
from .notifications import InMemoryNotifier, MatchGatedNotifier
from .pending import PendingMatchManager
from .pool import CandidatePool
from .preferences import merge, parse_preferences
from .scoring import Scorer
from .timekeeper import Timekeeper

logger = logging.getLogger(__name__)


class MatchPipeline:
    """Wires pool, scorer, matcher and pending-match manager behind the inbound operations."""

    def __init__(
        self,
        config: ConfigHolder | None = None,
        users: Any = None,
        safety: Any = None,
        notifier: Any = None,
        conversations: Any = None,
        repository: Any = None,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.config = config or ConfigHolder()
        self.users = users if users is not None else InMemoryUserProvider()
        self.safety = safety if safety is not None else InMemorySafetyProvider()
        self.notifier = notifier if notifier is not None else InMemoryNotifier()
        self.conversations = conversations if conversations is not None else InMemoryConversations()
        self.repository = repository
        self._clock = clock

        self.pool = CandidatePool(self.config, safety=self.safety, repository=repository, clock=clock)
        self.manager = PendingMatchManager(
            self.config, self.pool, self.notifier, self.conversations, repository=repository, clock=clock, sleep=sleep
        )
        self.pool.set_attempt_check(self.manager.has_active_attempt)
        if isinstance(self.notifier, MatchGatedNotifier):
            self.notifier.are_matched = self.manager.are_matched
        self.scorer = Scorer(self.config)
        self.matcher = Matcher(self.config, self.pool, self.scorer, self.manager, self.safety, clock=clock)
        self.timekeeper = Timekeeper(self.config, self.pool, self.manager, clock=clock)
        self._stop: asyncio.Event | None = None
        self._background: list[asyncio.Task] = []

    async def _call(self, awaitable: Awaitable[Any], what: str) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.config.current.match.dependency_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise DependencyTimeout(f"{what} timed out") from exc

    async def _record_queue_event(self, user_id: str, event_type: str, payload: dict[str, Any]) -> None:
        if self.repository is None:
            return
        try:
            await asyncio.to_thread(self.repository.record_queue_event, user_id, event_type, payload)
        except Exception:
            logger.exception("[PIPELINE] failed to record %s for %s", event_type, user_id)

    # -- inbound operations --------------------------------------------------

    async def join_queue(self, user_id: str, filter_prefs: dict[str, Any] | Preferences | None = None) -> QueueStatus:
        if not user_id:
            raise InvalidInput("userId is required")
        profile = await self._call(self.users.get(user_id), "user lookup")
        if profile is None:
            raise NotFound("User profile not found", user_id=user_id)
        base = await self._call(self.users.get_base_preferences(user_id), "preference lookup")
        override = filter_prefs if isinstance(filter_prefs, Preferences) else parse_preferences(filter_prefs)
        effective = merge(base, override)
        status = await self.pool.join(user_id, effective, profile)
        await self._record_queue_event(user_id, "queue_joined", {"effective_prefs": effective.to_dict()})
        if self.config.current.matcher.immediate_on_join:
            self.matcher.trigger()
        return status

    async def leave_queue(self, user_id: str) -> QueueStatus:
        for attempt in self.manager.list_for_user(user_id):
            try:
                await self.manager.cancel(attempt.id, reason="user_left")
            except AttemptNotActive:
                pass
        if await self.pool.leave(user_id):
            await self._record_queue_event(user_id, "queue_left", {})
        return self.pool.status(user_id)

    def queue_status(self, user_id: str) -> QueueStatus:
        return self.pool.status(user_id)

    def pending_matches(self, user_id: str) -> list[MatchAttempt]:
        return self.manager.list_for_user(user_id)

    async def accept_match(self, user_id: str, match_id: str) -> MatchAttempt:
        try:
            return await self.manager.accept(match_id, user_id)
        except AttemptNotActive as exc:
            return exc.attempt

    async def decline_match(self, user_id: str, match_id: str) -> MatchAttempt:
        try:
            return await self.manager.decline(match_id, user_id)
        except AttemptNotActive as exc:
            return exc.attempt

    # -- administrative ------------------------------------------------------

    async def cancel_match(self, match_id: str, reason: str = "cancelled_by_admin") -> MatchAttempt:
        try:
            return await self.manager.cancel(match_id, reason=reason)
        except AttemptNotActive as exc:
            return exc.attempt

    def get_attempt(self, match_id: str) -> MatchAttempt:
        attempt = self.manager.get(match_id)
        if attempt is None:
            raise NotFound("Match not found", match_id=match_id)
        return attempt

    async def run_tick(self) -> TickReport:
        return await self.matcher.tick()

    def reload_config(self, overrides: dict[str, Any] | None = None) -> None:
        self.config.reload(overrides)
        self.pool.reindex()
        logger.info("[PIPELINE] configuration reloaded (version %s)", self.config.version)

    def stats(self) -> dict[str, Any]:
        last = self.matcher.last_report
        return {
            "pool": self.pool.stats(),
            "matches": self.manager.stats(),
            "last_tick": last.to_dict() if last else None,
            "config_version": self.config.version,
        }

    # -- lifecycle -----------------------------------------------------------

    async def restore(self) -> None:
        if self.repository is None:
            return
        since = self._clock() - timedelta(seconds=self.config.current.match.audit_retention_seconds)
        entries = await asyncio.to_thread(self.repository.load_queue_entries)
        attempts = await asyncio.to_thread(self.repository.load_attempts, since)
        self.pool.restore(entries)
        self.manager.restore(attempts)
        # A crash between lock and propose leaves entries locked with nothing to resolve them.
        await self.pool.release_orphans()
        self.manager.resume()
        logger.info("[PIPELINE] restored %s queue entries and %s attempts", len(entries), len(attempts))

    def start(self) -> None:
        if self._background:
            return
        self._stop = asyncio.Event()
        self._background = [
            asyncio.ensure_future(self.matcher.run(self._stop)),
            asyncio.ensure_future(self.timekeeper.run(self._stop)),
        ]

    async def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
            self._background = []
        await self.manager.drain()
        for collaborator in (self.users, self.safety, self.conversations, self.notifier):
            close = getattr(collaborator, "aclose", None)
            if close is not None:
                await close()
