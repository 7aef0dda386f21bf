import json
import uuid
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import text

from .database import SessionLocal
from .domain import EntryStatus, MatchAttempt, MatchState, Preferences, QueueEntry, UserProfile
from .services.events import log_match_event, log_queue_event


def _json(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return None
    return value


def queue_entry_from_row(row: dict[str, Any]) -> QueueEntry:
    profile = _json(row.get("profile")) or {}
    return QueueEntry(
        user_id=str(row["user_id"]),
        joined_at=row["joined_at"],
        effective_prefs=Preferences.from_dict(_json(row.get("effective_prefs")) or {}),
        profile=UserProfile.from_dict(str(row["user_id"]), profile),
        status=EntryStatus(row.get("status") or EntryStatus.WAITING.value),
        unsuccessful_rounds=int(row.get("unsuccessful_rounds") or 0),
        requeued_at=row.get("requeued_at"),
    )


def attempt_from_row(row: dict[str, Any]) -> MatchAttempt:
    return MatchAttempt(
        id=str(row["id"]),
        user1_id=str(row["user1_id"]),
        user2_id=str(row["user2_id"]),
        score=float(row.get("score") or 0.0),
        components=_json(row.get("components")) or {},
        state=MatchState(row["state"]),
        created_at=row["created_at"],
        expires_at=row["expires_at"],
        accepted_by=set(_json(row.get("accepted_by")) or []),
        declined_by=set(_json(row.get("declined_by")) or []),
        chat_room_id=row.get("chat_room_id"),
        reasons=_json(row.get("reasons")) or [],
        terminal_at=row.get("terminal_at"),
        terminal_reason=row.get("terminal_reason"),
        materialization_attempts=int(row.get("materialization_attempts") or 0),
        notified=set(_json(row.get("notified")) or []),
    )


class SqlMatchStateRepository:
    """Write-through persistence of pool and match state.

    All methods are synchronous; async callers push them to a worker thread.
    """

    def __init__(self, session_factory: Callable[[], Any] = SessionLocal) -> None:
        self._session_factory = session_factory

    def save_queue_entry(self, entry: QueueEntry) -> None:
        with self._session_factory() as db:
            db.execute(
                text(
                    """
                    INSERT INTO queue_entries (user_id, joined_at, effective_prefs, profile, status, unsuccessful_rounds, requeued_at, updated_at)
                    VALUES (:user_id, :joined_at, CAST(:effective_prefs AS jsonb), CAST(:profile AS jsonb), :status, :unsuccessful_rounds, :requeued_at, NOW())
                    ON CONFLICT (user_id)
                    DO UPDATE SET
                      joined_at = EXCLUDED.joined_at,
                      effective_prefs = EXCLUDED.effective_prefs,
                      profile = EXCLUDED.profile,
                      status = EXCLUDED.status,
                      unsuccessful_rounds = EXCLUDED.unsuccessful_rounds,
                      requeued_at = EXCLUDED.requeued_at,
                      updated_at = NOW()
                    """
                ),
                {
                    "user_id": entry.user_id,
                    "joined_at": entry.joined_at,
                    "effective_prefs": json.dumps(entry.effective_prefs.to_dict()),
                    "profile": json.dumps(entry.profile.to_dict()),
                    "status": entry.status.value,
                    "unsuccessful_rounds": entry.unsuccessful_rounds,
                    "requeued_at": entry.requeued_at,
                },
            )
            db.commit()

    def delete_queue_entry(self, user_id: str) -> None:
        with self._session_factory() as db:
            db.execute(text("DELETE FROM queue_entries WHERE user_id = :user_id"), {"user_id": user_id})
            db.commit()

    def load_queue_entries(self) -> list[QueueEntry]:
        with self._session_factory() as db:
            rows = db.execute(
                text(
                    """
                    SELECT user_id, joined_at, effective_prefs, profile, status, unsuccessful_rounds, requeued_at
                    FROM queue_entries
                    WHERE status IN ('WAITING', 'LOCKED')
                    ORDER BY joined_at ASC
                    """
                )
            ).mappings().all()
        return [queue_entry_from_row(dict(r)) for r in rows]

    def save_attempt(self, attempt: MatchAttempt) -> None:
        record = attempt.to_record()
        with self._session_factory() as db:
            db.execute(
                text(
                    """
                    INSERT INTO match_attempts (
                      id, user1_id, user2_id, score, components, state, created_at, expires_at,
                      accepted_by, declined_by, chat_room_id, reasons, terminal_at, terminal_reason,
                      materialization_attempts, notified, updated_at
                    )
                    VALUES (
                      :id, :user1_id, :user2_id, :score, CAST(:components AS jsonb), :state, :created_at, :expires_at,
                      CAST(:accepted_by AS jsonb), CAST(:declined_by AS jsonb), :chat_room_id, CAST(:reasons AS jsonb),
                      :terminal_at, :terminal_reason, :materialization_attempts, CAST(:notified AS jsonb), NOW()
                    )
                    ON CONFLICT (id)
                    DO UPDATE SET
                      state = EXCLUDED.state,
                      accepted_by = EXCLUDED.accepted_by,
                      declined_by = EXCLUDED.declined_by,
                      chat_room_id = EXCLUDED.chat_room_id,
                      terminal_at = EXCLUDED.terminal_at,
                      terminal_reason = EXCLUDED.terminal_reason,
                      materialization_attempts = EXCLUDED.materialization_attempts,
                      notified = EXCLUDED.notified,
                      updated_at = NOW()
                    """
                ),
                {
                    **record,
                    "components": json.dumps(record["components"]),
                    "accepted_by": json.dumps(record["accepted_by"]),
                    "declined_by": json.dumps(record["declined_by"]),
                    "reasons": json.dumps(record["reasons"], default=str),
                    "notified": json.dumps(sorted(attempt.notified)),
                },
            )
            db.commit()

    def load_attempts(self, terminal_since: datetime) -> list[MatchAttempt]:
        with self._session_factory() as db:
            rows = db.execute(
                text(
                    """
                    SELECT id, user1_id, user2_id, score, components, state, created_at, expires_at,
                           accepted_by, declined_by, chat_room_id, reasons, terminal_at, terminal_reason,
                           materialization_attempts, notified
                    FROM match_attempts
                    WHERE state IN ('PROPOSED', 'PARTIALLY_ACCEPTED', 'MUTUALLY_ACCEPTED')
                       OR terminal_at >= :terminal_since
                    ORDER BY created_at ASC
                    """
                ),
                {"terminal_since": terminal_since},
            ).mappings().all()
        return [attempt_from_row(dict(r)) for r in rows]

    def delete_attempts(self, attempt_ids: list[str]) -> None:
        if not attempt_ids:
            return
        with self._session_factory() as db:
            for attempt_id in attempt_ids:
                db.execute(text("DELETE FROM match_attempts WHERE id = :id"), {"id": attempt_id})
            db.commit()

    def record_match_event(self, match_id: str, event_type: str, payload: dict[str, Any] | None = None, user_id: str | None = None) -> None:
        with self._session_factory() as db:
            log_match_event(db, match_id=match_id, event_type=event_type, payload=payload, user_id=user_id)
            db.commit()

    def record_queue_event(self, user_id: str, event_type: str, payload: dict[str, Any] | None = None) -> None:
        with self._session_factory() as db:
            log_queue_event(db, user_id=user_id, event_type=event_type, payload=payload)
            db.commit()

    def enqueue_outbox_notification(
        self,
        *,
        user_id: str,
        notification_type: str,
        payload: dict[str, Any],
        scheduled_for: datetime,
        idempotency_key: str,
    ) -> dict[str, Any]:
        with self._session_factory() as db:
            row = db.execute(
                text(
                    """
                    INSERT INTO notifications_outbox (
                      id,
                      user_id,
                      notification_type,
                      payload_json,
                      status,
                      scheduled_for,
                      idempotency_key,
                      created_at,
                      updated_at
                    )
                    VALUES (
                      :id,
                      :user_id,
                      :notification_type,
                      CAST(:payload_json AS jsonb),
                      'pending',
                      :scheduled_for,
                      :idempotency_key,
                      NOW(),
                      NOW()
                    )
                    ON CONFLICT (idempotency_key) DO NOTHING
                    RETURNING id, user_id, notification_type, status, scheduled_for, idempotency_key
                    """
                ),
                {
                    "id": str(uuid.uuid4()),
                    "user_id": user_id,
                    "notification_type": notification_type,
                    "payload_json": json.dumps(payload or {}, default=str),
                    "scheduled_for": scheduled_for,
                    "idempotency_key": idempotency_key,
                },
            ).mappings().first()
            db.commit()
        return dict(row) if row else {
            "user_id": user_id,
            "notification_type": notification_type,
            "status": "duplicate",
            "scheduled_for": scheduled_for,
            "idempotency_key": idempotency_key,
        }

    def mark_match_notifications_acted_upon(self, *, user_id: str, match_id: str) -> None:
        with self._session_factory() as db:
            db.execute(
                text(
                    """
                    UPDATE notifications_outbox
                    SET acted_upon = TRUE,
                        updated_at = NOW()
                    WHERE user_id = :user_id
                      AND notification_type = 'NEW_MATCH'
                      AND payload_json->>'matchId' = :match_id
                    """
                ),
                {"user_id": user_id, "match_id": match_id},
            )
            db.commit()
