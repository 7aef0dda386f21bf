"""
Outbound collaborators of the match pipeline.

Each collaborator is a small protocol with an in-memory implementation (tests,
local runs) and an HTTP implementation talking to the neighbouring service
through ``httpx.AsyncClient``. HTTP failures are mapped onto pipeline errors:
timeouts become ``DependencyTimeout``, transport errors and 5xx become
``DependencyUnavailable`` and 404 becomes ``NotFound``.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Any, Callable, Protocol

import httpx

from ..domain import Preferences, UserProfile, canonical_pair
from ..errors import DependencyTimeout, DependencyUnavailable, NotFound
from .notifications import MatchGatedNotifier, NotificationKind, sanitize_payload_for_privacy
from .preferences import parse_preferences

logger = logging.getLogger(__name__)

INTERNAL_HEADERS = {"x-internal-request": "true"}


class UserProvider(Protocol):
    async def get(self, user_id: str) -> UserProfile | None: ...

    async def list(self, user_ids: list[str]) -> list[UserProfile]: ...

    async def get_base_preferences(self, user_id: str) -> Preferences: ...


class SafetyProvider(Protocol):
    async def is_active(self, user_id: str) -> bool: ...

    async def has_blocked(self, user_id: str, other_user_id: str) -> bool: ...


class Conversations(Protocol):
    async def create_room(self, user_a: str, user_b: str) -> str: ...


class InMemoryUserProvider:
    def __init__(self, profiles: dict[str, UserProfile] | None = None, preferences: dict[str, Preferences] | None = None):
        self.profiles = dict(profiles or {})
        self.preferences = dict(preferences or {})
        self.calls = 0

    def add(self, profile: UserProfile, preferences: Preferences | None = None) -> None:
        self.profiles[profile.user_id] = profile
        if preferences is not None:
            self.preferences[profile.user_id] = preferences

    async def get(self, user_id: str) -> UserProfile | None:
        self.calls += 1
        return self.profiles.get(user_id)

    async def list(self, user_ids: list[str]) -> list[UserProfile]:
        return [self.profiles[u] for u in user_ids if u in self.profiles]

    async def get_base_preferences(self, user_id: str) -> Preferences:
        self.calls += 1
        return self.preferences.get(user_id, Preferences())


class InMemorySafetyProvider:
    def __init__(self, inactive: set[str] | None = None, blocks: set[tuple[str, str]] | None = None):
        self.inactive = set(inactive or set())
        self.blocks = set(blocks or set())

    def block(self, blocker_id: str, blocked_id: str) -> None:
        self.blocks.add((blocker_id, blocked_id))

    async def is_active(self, user_id: str) -> bool:
        return user_id not in self.inactive

    async def has_blocked(self, user_id: str, other_user_id: str) -> bool:
        return (user_id, other_user_id) in self.blocks


class InMemoryConversations:
    """Chat rooms keyed by canonical pair; ``fail_times`` simulates timeouts."""

    def __init__(self, fail_times: int = 0) -> None:
        self.rooms: dict[tuple[str, str], str] = {}
        self.fail_times = fail_times
        self.calls = 0

    async def create_room(self, user_a: str, user_b: str) -> str:
        self.calls += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise DependencyTimeout("conversations timed out")
        key = canonical_pair(user_a, user_b)
        if key not in self.rooms:
            self.rooms[key] = str(uuid.uuid4())
        return self.rooms[key]


class _HttpCollaborator:
    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None, timeout_seconds: float = 5.0):
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        headers = {**INTERNAL_HEADERS, **kwargs.pop("headers", {})}
        try:
            resp = await self._client.request(method, url, headers=headers, **kwargs)
        except httpx.TimeoutException as exc:
            raise DependencyTimeout(f"{method} {url} timed out") from exc
        except httpx.TransportError as exc:
            raise DependencyUnavailable(f"{method} {url} failed: {exc}") from exc

        if resp.status_code == 404:
            raise NotFound(f"{method} {url} returned 404")
        if resp.status_code >= 400:
            logger.warning("[COLLAB] %s %s returned %s", method, url, resp.status_code)
            raise DependencyUnavailable(f"{method} {url} returned {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise DependencyUnavailable(f"{method} {url} returned invalid JSON") from exc
        if isinstance(body, dict):
            for envelope in ("data", "user"):
                if isinstance(body.get(envelope), dict):
                    return body[envelope]
            return body
        return {}


class HttpUserProvider(_HttpCollaborator):
    async def get(self, user_id: str) -> UserProfile | None:
        try:
            data = await self._request("GET", f"/profile/internal/users/{user_id}")
        except NotFound:
            return None
        return UserProfile.from_dict(user_id, data)

    async def list(self, user_ids: list[str]) -> list[UserProfile]:
        profiles = await asyncio.gather(*(self.get(u) for u in user_ids))
        return [p for p in profiles if p is not None]

    async def get_base_preferences(self, user_id: str) -> Preferences:
        try:
            data = await self._request("GET", f"/profile/internal/users/{user_id}/preferences")
        except NotFound:
            return Preferences()
        return parse_preferences(data.get("preferences") if isinstance(data.get("preferences"), dict) else data)


class HttpSafetyProvider(_HttpCollaborator):
    async def is_active(self, user_id: str) -> bool:
        try:
            data = await self._request("GET", f"/moderation/internal/users/{user_id}/status")
        except NotFound:
            return False
        return bool(data.get("isActive", True)) and not bool(data.get("isBanned", False))

    async def has_blocked(self, user_id: str, other_user_id: str) -> bool:
        data = await self._request(
            "GET",
            "/moderation/internal/blocks",
            params={"userId": user_id, "otherUserId": other_user_id},
        )
        return bool(data.get("blocked", False))


class HttpConversations(_HttpCollaborator):
    async def create_room(self, user_a: str, user_b: str) -> str:
        first, second = canonical_pair(user_a, user_b)
        data = await self._request(
            "POST",
            "/chat/internal/rooms",
            json={"participant1Id": first, "participant2Id": second, "type": "PRIVATE"},
        )
        room_id = data.get("roomId") or data.get("id")
        if not room_id:
            raise DependencyUnavailable("chat room response carried no room id")
        return str(room_id)


_PUSH_COPY: dict[str, tuple[str, str]] = {
    NotificationKind.NEW_MATCH.value: ("New match", "Someone new is waiting for your answer."),
    NotificationKind.MATCH_ACCEPTED.value: ("It's a match!", "You both said yes. Say hello."),
    NotificationKind.MATCH_DECLINED.value: ("Match update", "This match is no longer available."),
    NotificationKind.MATCH_EXPIRED.value: ("Match expired", "Your pending match has expired."),
}


class HttpNotifier(MatchGatedNotifier, _HttpCollaborator):
    """Hands notifications to the notification service for push and in-app delivery."""

    async def send(self, user_id: str, kind: NotificationKind, payload: dict[str, Any], idempotency_key: str) -> None:
        if not self._allowed(user_id, kind, payload):
            return
        kind_value = getattr(kind, "value", kind)
        title, body = _PUSH_COPY.get(kind_value, ("Belle", "You have a new notification."))
        message = sanitize_payload_for_privacy(
            {
                "userId": user_id,
                "type": kind_value,
                "title": payload.get("title", title),
                "body": payload.get("body", body),
                "data": {**payload, "idempotencyKey": idempotency_key},
            }
        )
        await self._request(
            "POST",
            "/internal/send-notification",
            json=message,
            headers={"Idempotency-Key": idempotency_key},
        )

    async def mark_acted_upon(self, user_id: str, match_id: str) -> None:
        try:
            await self._request("PATCH", f"/api/notifications/match/{match_id}/action-taken", json={"userId": user_id})
        except NotFound:
            logger.info("[NOTIFY] no NEW_MATCH notification to mark for %s on %s", user_id, match_id)


class CachedUserProvider:
    """Memoizes profile and preference lookups for ``ttl_seconds``."""

    def __init__(self, inner: Any, ttl_seconds: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self._inner = inner
        self._ttl = ttl_seconds
        self._clock = clock
        self._profiles: dict[str, tuple[float, UserProfile | None]] = {}
        self._preferences: dict[str, tuple[float, Preferences]] = {}

    def invalidate(self, user_id: str) -> None:
        self._profiles.pop(user_id, None)
        self._preferences.pop(user_id, None)

    def _fresh(self, stored_at: float) -> bool:
        return self._clock() - stored_at < self._ttl

    async def get(self, user_id: str) -> UserProfile | None:
        cached = self._profiles.get(user_id)
        if cached and self._fresh(cached[0]):
            return cached[1]
        profile = await self._inner.get(user_id)
        self._profiles[user_id] = (self._clock(), profile)
        return profile

    async def list(self, user_ids: list[str]) -> list[UserProfile]:
        profiles = [await self.get(u) for u in user_ids]
        return [p for p in profiles if p is not None]

    async def get_base_preferences(self, user_id: str) -> Preferences:
        cached = self._preferences.get(user_id)
        if cached and self._fresh(cached[0]):
            return cached[1]
        prefs = await self._inner.get_base_preferences(user_id)
        self._preferences[user_id] = (self._clock(), prefs)
        return prefs

    async def aclose(self) -> None:
        close = getattr(self._inner, "aclose", None)
        if close is not None:
            await close()
