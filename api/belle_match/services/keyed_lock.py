import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Iterable


class KeyedLock:
    """Registry of asyncio locks keyed by an id (user id, match id).

    Locks are created on first use and dropped once nobody holds or waits on
    them, so the registry does not grow with the number of users ever seen.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._refs: dict[str, int] = defaultdict(int)

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._refs[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._refs[key] -= 1
            if self._refs[key] <= 0:
                self._refs.pop(key, None)
                self._locks.pop(key, None)

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[str]) -> AsyncIterator[None]:
        # Fixed lexicographic order so two callers never wait on each other.
        ordered = sorted(set(keys))
        async with _nested(self, ordered):
            yield


@asynccontextmanager
async def _nested(registry: KeyedLock, keys: list[str]) -> AsyncIterator[None]:
    if not keys:
        yield
        return
    async with registry.hold(keys[0]):
        async with _nested(registry, keys[1:]):
            yield
