from __future__ import annotations

import asyncio
import hashlib
import logging
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime
from itertools import islice
from typing import Any, Callable, Iterator

from ..config import ConfigHolder, PipelineConfig
from ..domain import EntryStatus, QueueEntry, utcnow
from ..errors import AlreadyPending, NotAvailable, TRANSIENT_DEPENDENCY_ERRORS, DependencyTimeout
from .pool import CandidatePool, PoolFilter
from .scoring import PairContext, ScoreResult, Scorer

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    started_at: datetime = field(default_factory=utcnow)
    skipped: bool = False
    considered: int = 0
    pairs_scored: int = 0
    proposals: int = 0
    lock_losses: int = 0
    already_pending: int = 0
    scorer_errors: int = 0
    dependency_errors: int = 0
    duration_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        out = asdict(self)
        out["started_at"] = self.started_at.isoformat()
        return out


def shard_of(user_id: str, shard_count: int) -> int:
    if shard_count <= 1:
        return 0
    digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()
    return int(digest[:16], 16) % shard_count


def threshold_for(entry: QueueEntry, cfg: PipelineConfig) -> float:
    """Minimum score for ``entry``, relaxed by its unsuccessful rounds."""
    settings = cfg.matcher
    threshold = settings.min_score_threshold
    for step in settings.starvation_relaxation:
        if entry.unsuccessful_rounds >= step.after_rounds:
            threshold = min(threshold, step.min_score)
    return max(threshold, settings.min_score_floor)


class Matcher:
    """Periodic pairing engine for one shard.

    A tick walks WAITING entries oldest first, scores each against its capped
    candidate list and proposes at most one pair per entry, best score first.
    """

    def __init__(
        self,
        config: ConfigHolder,
        pool: CandidatePool,
        scorer: Scorer,
        manager: Any,
        safety: Any,
        clock: Callable[[], datetime] = utcnow,
        shard_index: int | None = None,
        shard_count: int | None = None,
    ) -> None:
        self._config = config
        self._pool = pool
        self._scorer = scorer
        self._manager = manager
        self._safety = safety
        self._clock = clock
        self._shard_index = shard_index
        self._shard_count = shard_count
        self._ticking = False
        self._pending_trigger: asyncio.Task | None = None
        self.last_report: TickReport | None = None

    def _shard(self, cfg: PipelineConfig) -> tuple[int, int]:
        index = cfg.matcher.shard_index if self._shard_index is None else self._shard_index
        count = cfg.matcher.shard_count if self._shard_count is None else self._shard_count
        return index, count

    def owns(self, user_id: str, cfg: PipelineConfig | None = None) -> bool:
        index, count = self._shard(cfg or self._config.current)
        return shard_of(user_id, count) == index

    def _owned_entries(self, cfg: PipelineConfig) -> Iterator[QueueEntry]:
        return islice((e for e in self._pool.snapshot() if self.owns(e.user_id, cfg)), cfg.matcher.snapshot_size)

    async def tick(self) -> TickReport:
        if self._ticking:
            logger.info("[MATCHER] tick already running, skipping")
            return TickReport(skipped=True)
        self._ticking = True
        cfg = self._config.current
        report = TickReport(started_at=self._clock())
        started = time.perf_counter()
        try:
            paired: set[str] = set()
            active_cache: dict[str, bool] = {}
            for entry in list(self._owned_entries(cfg)):
                if entry.user_id in paired:
                    continue
                current = self._pool.get(entry.user_id)
                if current is None or current.status != EntryStatus.WAITING:
                    continue
                report.considered += 1
                if await self._pair_entry(current, cfg, paired, active_cache, report):
                    continue
                self._pool.record_miss(current.user_id)
        finally:
            self._ticking = False
            report.duration_ms = round((time.perf_counter() - started) * 1000, 3)
            self.last_report = report
        logger.info(
            "[MATCHER] tick considered=%s scored=%s proposals=%s lock_losses=%s scorer_errors=%s dependency_errors=%s in %.1fms",
            report.considered,
            report.pairs_scored,
            report.proposals,
            report.lock_losses,
            report.scorer_errors,
            report.dependency_errors,
            report.duration_ms,
        )
        return report

    async def _pair_entry(
        self,
        a: QueueEntry,
        cfg: PipelineConfig,
        paired: set[str],
        active_cache: dict[str, bool],
        report: TickReport,
    ) -> bool:
        threshold = threshold_for(a, cfg)
        candidates = [
            b for b in islice(self._pool.snapshot(PoolFilter.for_entry(a)), cfg.matcher.candidate_cap)
            if b.user_id not in paired
        ]

        scored: list[tuple[ScoreResult, QueueEntry]] = []
        for b in candidates:
            try:
                context = await self._context(a, b, cfg, active_cache)
            except TRANSIENT_DEPENDENCY_ERRORS as exc:
                report.dependency_errors += 1
                logger.warning("[MATCHER] skipping %s/%s: %s", a.user_id, b.user_id, exc)
                continue
            try:
                result = self._scorer.score(a.profile, b.profile, a.effective_prefs, b.effective_prefs, context, cfg)
            except Exception:
                report.scorer_errors += 1
                logger.exception("[MATCHER] scorer failed for %s/%s", a.user_id, b.user_id)
                continue
            report.pairs_scored += 1
            if result.eligible and result.total >= threshold:
                scored.append((result, b))
            await asyncio.sleep(0)

        scored.sort(key=lambda rb: (-rb[0].total, rb[1].joined_at, rb[1].user_id))
        for result, b in scored:
            try:
                await self._pool.lock(a.user_id, b.user_id)
            except NotAvailable:
                report.lock_losses += 1
                continue
            audit = [{"code": "eligible", "threshold": threshold, "unsuccessful_rounds": a.unsuccessful_rounds}]
            proposed = False
            try:
                await self._manager.propose(a.user_id, b.user_id, result.total, result.components, reasons=audit)
                proposed = True
            except AlreadyPending:
                report.already_pending += 1
            finally:
                if not proposed:
                    await self._pool.unlock(a.user_id)
                    await self._pool.unlock(b.user_id)
            if not proposed:
                continue
            paired.update({a.user_id, b.user_id})
            self._pool.reset_misses(a.user_id)
            self._pool.reset_misses(b.user_id)
            report.proposals += 1
            return True
        return False

    async def _is_active(self, user_id: str, cfg: PipelineConfig, cache: dict[str, bool]) -> bool:
        if user_id not in cache:
            cache[user_id] = await self._call(self._safety.is_active(user_id), cfg)
        return cache[user_id]

    async def _call(self, awaitable: Any, cfg: PipelineConfig) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=cfg.match.dependency_timeout_seconds)
        except asyncio.TimeoutError as exc:
            raise DependencyTimeout("safety lookup timed out") from exc

    async def _context(self, a: QueueEntry, b: QueueEntry, cfg: PipelineConfig, cache: dict[str, bool]) -> PairContext:
        blocked = False
        if self._safety is not None:
            blocked = await self._call(self._safety.has_blocked(a.user_id, b.user_id), cfg) or await self._call(
                self._safety.has_blocked(b.user_id, a.user_id), cfg
            )
        return PairContext(
            a_active=await self._is_active(a.user_id, cfg, cache) if self._safety is not None else True,
            b_active=await self._is_active(b.user_id, cfg, cache) if self._safety is not None else True,
            blocked=blocked,
            a_has_active_attempt=self._manager.has_active_attempt(a.user_id),
            b_has_active_attempt=self._manager.has_active_attempt(b.user_id),
            last_terminal_at=self._manager.last_terminal_at(a.user_id, b.user_id),
            now=self._clock(),
        )

    def trigger(self) -> None:
        """Schedule a tick soon, used right after a join when enabled."""
        if self._pending_trigger is not None and not self._pending_trigger.done():
            return
        self._pending_trigger = asyncio.ensure_future(self.tick())

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("[MATCHER] loop started shard=%s/%s", *self._shard(self._config.current))
        while not stop.is_set():
            try:
                await self.tick()
            except Exception:
                logger.exception("[MATCHER] tick failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._config.current.matcher.tick_interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("[MATCHER] loop stopped")
