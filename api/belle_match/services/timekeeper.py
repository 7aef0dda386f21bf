import asyncio
import logging
from datetime import datetime
from typing import Any, Callable

from ..config import ConfigHolder
from ..domain import utcnow

logger = logging.getLogger(__name__)


class Timekeeper:
    """Fires attempt expirations and drops old terminal attempts and pool tombstones."""

    def __init__(self, config: ConfigHolder, pool: Any, manager: Any, clock: Callable[[], datetime] = utcnow) -> None:
        self._config = config
        self._pool = pool
        self._manager = manager
        self._clock = clock

    async def sweep(self, now: datetime | None = None) -> dict[str, int]:
        now = now or self._clock()
        expired = 0
        for match_id in self._manager.due_for_expiry(now):
            if await self._manager.expire(match_id):
                expired += 1
        collected = await self._manager.gc(now)
        purged = await self._pool.purge(now)
        result = {"expired": expired, "collected": collected, **purged}
        if expired or collected:
            logger.info("[TIMEKEEPER] sweep %s", result)
        return result

    async def run(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await self.sweep()
            except Exception:
                logger.exception("[TIMEKEEPER] sweep failed")
            try:
                await asyncio.wait_for(stop.wait(), timeout=self._config.current.match.expiry_sweep_interval_seconds)
            except asyncio.TimeoutError:
                pass
