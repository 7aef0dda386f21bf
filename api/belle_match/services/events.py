import json
import uuid
from typing import Any

from sqlalchemy import text


def log_match_event(
    db,
    match_id: str,
    event_type: str,
    payload: dict[str, Any] | None = None,
    user_id: str | None = None,
) -> None:
    payload = payload or {}
    db.execute(
        text(
            """
            INSERT INTO match_event (id, match_id, user_id, event_type, payload)
            VALUES (:id, :match_id, NULLIF(:user_id, ''), :event_type, CAST(:payload AS jsonb))
            """
        ),
        {
            "id": str(uuid.uuid4()),
            "match_id": match_id,
            "user_id": user_id or "",
            "event_type": event_type,
            "payload": json.dumps(payload, default=str),
        },
    )


def log_queue_event(
    db,
    user_id: str,
    event_type: str,
    payload: dict[str, Any] | None = None,
) -> None:
    payload = payload or {}
    db.execute(
        text(
            """
            INSERT INTO match_event (id, match_id, user_id, event_type, payload)
            VALUES (:id, NULL, :user_id, :event_type, CAST(:payload AS jsonb))
            """
        ),
        {
            "id": str(uuid.uuid4()),
            "user_id": user_id,
            "event_type": event_type,
            "payload": json.dumps(payload, default=str),
        },
    )
