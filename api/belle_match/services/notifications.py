from __future__ import annotations

import asyncio
import copy
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from ..domain import utcnow
from ..errors import DependencyTimeout, TRANSIENT_DEPENDENCY_ERRORS

logger = logging.getLogger(__name__)


class NotificationKind(str, Enum):
    NEW_MATCH = "NEW_MATCH"
    MATCH_ACCEPTED = "MATCH_ACCEPTED"
    MATCH_DECLINED = "MATCH_DECLINED"
    MATCH_EXPIRED = "MATCH_EXPIRED"
    NEW_MESSAGE = "NEW_MESSAGE"
    CALL_STARTING = "CALL_STARTING"
    CALL_REQUEST = "CALL_REQUEST"
    CALL_MISSED = "CALL_MISSED"
    SYSTEM_UPDATE = "SYSTEM_UPDATE"
    MARKETING = "MARKETING"
    REMINDER = "REMINDER"


# Only delivered between users that are matched with each other.
MATCH_GATED_KINDS = frozenset(
    {NotificationKind.NEW_MESSAGE, NotificationKind.CALL_STARTING, NotificationKind.CALL_REQUEST, NotificationKind.CALL_MISSED}
)
ALWAYS_ALLOWED_KINDS = frozenset(
    {
        NotificationKind.NEW_MATCH,
        NotificationKind.MATCH_ACCEPTED,
        NotificationKind.MATCH_DECLINED,
        NotificationKind.MATCH_EXPIRED,
        NotificationKind.SYSTEM_UPDATE,
        NotificationKind.MARKETING,
        NotificationKind.REMINDER,
    }
)

_MESSAGE_CONTENT_KEYS = ("content", "message", "text")


def match_idempotency_key(match_id: str, kind: NotificationKind | str, user_id: str) -> str:
    return f"match:{match_id}:{getattr(kind, 'value', kind)}:{user_id}"


def sanitize_payload_for_privacy(payload: dict[str, Any]) -> dict[str, Any]:
    """Strip message content from NEW_MESSAGE push payloads.

    The body becomes "<sender> sent a message" on every platform and the raw
    content keys are removed from ``data``. Other payloads are returned as a
    copy, unchanged.
    """
    p = copy.deepcopy(payload or {})
    data = p.get("data") if isinstance(p.get("data"), dict) else {}
    kind = NotificationKind.NEW_MESSAGE.value
    if kind not in (p.get("type"), data.get("type"), data.get("notificationType")):
        return p

    sender = data.get("sender") if isinstance(data.get("sender"), dict) else {}
    sender_name = data.get("senderName") or data.get("fromName") or sender.get("name") or "Someone"
    safe_body = f"{sender_name} sent a message"
    p["body"] = safe_body
    p["iosBody"] = safe_body
    p["androidBody"] = safe_body
    if isinstance(p.get("data"), dict):
        for key in _MESSAGE_CONTENT_KEYS:
            p["data"].pop(key, None)
    return p


def should_send_notification(
    kind: NotificationKind | str,
    recipient_id: str,
    sender_id: str | None,
    are_matched: Callable[[str, str], bool],
) -> bool:
    """Gate chat and call notifications on the pair being matched."""
    try:
        kind = NotificationKind(getattr(kind, "value", kind))
    except ValueError:
        return True
    if kind in ALWAYS_ALLOWED_KINDS:
        return True
    if kind in MATCH_GATED_KINDS:
        if not sender_id:
            logger.info("[NOTIFY] dropping %s for %s: no sender", kind.value, recipient_id)
            return False
        allowed = bool(are_matched(recipient_id, sender_id))
        if not allowed:
            logger.info("[NOTIFY] dropping %s for %s: users not matched", kind.value, recipient_id)
        return allowed
    return True


class Notifier(Protocol):
    async def send(self, user_id: str, kind: NotificationKind, payload: dict[str, Any], idempotency_key: str) -> None: ...

    async def mark_acted_upon(self, user_id: str, match_id: str) -> None: ...


@dataclass
class SentNotification:
    user_id: str
    kind: NotificationKind
    payload: dict[str, Any]
    idempotency_key: str
    sent_at: datetime = field(default_factory=utcnow)


def _never_matched(user_id: str, other_user_id: str) -> bool:
    return False


class MatchGatedNotifier:
    """Applies ``should_send_notification`` before a notification leaves the process.

    ``are_matched`` is wired to the match manager by the pipeline; until then
    chat and call notifications are dropped.
    """

    are_matched: Callable[[str, str], bool] = staticmethod(_never_matched)

    def _allowed(self, user_id: str, kind: NotificationKind | str, payload: dict[str, Any]) -> bool:
        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        sender_id = payload.get("senderId") or data.get("senderId")
        return should_send_notification(kind, user_id, sender_id, self.are_matched)


class InMemoryNotifier(MatchGatedNotifier):
    """Records notifications; duplicate idempotency keys are ignored.

    Only the latest ``max_records`` notifications and keys are kept.
    """

    def __init__(self, fail_times: int = 0, max_records: int = 1000) -> None:
        self.sent: deque[SentNotification] = deque(maxlen=max_records)
        self.acted_upon: deque[tuple[str, str]] = deque(maxlen=max_records)
        self._keys: dict[str, None] = {}
        self._max_records = max_records
        self.fail_times = fail_times

    async def send(self, user_id: str, kind: NotificationKind, payload: dict[str, Any], idempotency_key: str) -> None:
        if self.fail_times > 0:
            self.fail_times -= 1
            raise DependencyTimeout("notifier timed out")
        if idempotency_key in self._keys or not self._allowed(user_id, kind, payload):
            return
        self._keys[idempotency_key] = None
        if len(self._keys) > self._max_records:
            self._keys.pop(next(iter(self._keys)))
        self.sent.append(SentNotification(user_id, NotificationKind(kind), sanitize_payload_for_privacy(payload), idempotency_key))

    async def mark_acted_upon(self, user_id: str, match_id: str) -> None:
        self.acted_upon.append((user_id, match_id))

    def kinds_for(self, user_id: str) -> list[NotificationKind]:
        return [n.kind for n in self.sent if n.user_id == user_id]


class OutboxNotifier(MatchGatedNotifier):
    """Writes notifications to the ``notifications_outbox`` table for delivery."""

    def __init__(self, repository: Any) -> None:
        self._repository = repository

    async def send(self, user_id: str, kind: NotificationKind, payload: dict[str, Any], idempotency_key: str) -> None:
        if not self._allowed(user_id, kind, payload):
            return
        await asyncio.to_thread(
            self._repository.enqueue_outbox_notification,
            user_id=user_id,
            notification_type=getattr(kind, "value", kind),
            payload=sanitize_payload_for_privacy(payload),
            scheduled_for=utcnow(),
            idempotency_key=idempotency_key,
        )

    async def mark_acted_upon(self, user_id: str, match_id: str) -> None:
        await asyncio.to_thread(self._repository.mark_match_notifications_acted_upon, user_id=user_id, match_id=match_id)


def backoff_delay(attempt: int, base_seconds: float, max_seconds: float) -> float:
    """Exponential backoff for the 1-based ``attempt`` that just failed."""
    return min(max_seconds, base_seconds * (2 ** max(0, attempt - 1)))


async def call_with_retry(
    fn: Callable[[], Awaitable[Any]],
    *,
    max_attempts: int,
    timeout_seconds: float,
    backoff_base_seconds: float,
    backoff_max_seconds: float,
    label: str,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> Any:
    """Await ``fn`` with a timeout, retrying transient dependency errors."""
    attempt = 0
    while True:
        attempt += 1
        try:
            return await asyncio.wait_for(fn(), timeout=timeout_seconds)
        except asyncio.TimeoutError as exc:
            error: Exception = DependencyTimeout(f"{label} timed out")
            error.__cause__ = exc
        except TRANSIENT_DEPENDENCY_ERRORS as exc:
            error = exc
        if attempt >= max_attempts:
            raise error
        delay = backoff_delay(attempt, backoff_base_seconds, backoff_max_seconds)
        logger.warning("[RETRY] %s failed (attempt %s/%s): %s; retrying in %.2fs", label, attempt, max_attempts, error, delay)
        await sleep(delay)
