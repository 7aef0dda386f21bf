import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, Response


@dataclass
class RateDecision:
    allowed: bool
    retry_after_seconds: int
    remaining: int = 0


class InMemoryRateLimiter:
    """Sliding-window limiter keyed by route and caller.

    Windows live in process memory, so each replica enforces its own budget.
    """

    def __init__(self) -> None:
        self._events: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def check(self, key: str, limit: int, window_seconds: int) -> RateDecision:
        now = time.time()
        with self._lock:
            window = self._events[key]
            while window and window[0] <= now - window_seconds:
                window.popleft()
            if len(window) >= limit:
                wait = max(1, int(window[0] + window_seconds - now))
                return RateDecision(allowed=False, retry_after_seconds=wait)
            window.append(now)
            return RateDecision(allowed=True, retry_after_seconds=0, remaining=limit - len(window))

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


limiter = InMemoryRateLimiter()


def _caller_key(request: Request) -> str:
    # Gateway-forwarded identity first; fall back to the network peer.
    user_id = request.headers.get("x-user-id", "").strip()
    if user_id:
        return f"user:{user_id}"
    forwarded = request.headers.get("x-forwarded-for", "").strip()
    if forwarded:
        return f"ip:{forwarded.split(',')[0].strip()}"
    if request.client and request.client.host:
        return f"ip:{request.client.host}"
    return "unknown"


def rate_limit_dependency(route_key: str, limit: int, window_seconds: int):
    def _dep(request: Request, response: Response) -> None:
        decision = limiter.check(f"{route_key}:{_caller_key(request)}", limit=limit, window_seconds=window_seconds)
        if not decision.allowed:
            raise HTTPException(
                status_code=429,
                detail=f"Too many requests. Retry in {decision.retry_after_seconds}s",
                headers={"Retry-After": str(decision.retry_after_seconds)},
            )
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)

    return Depends(_dep)
