from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from psycopg import Error as DatabaseError
from psycopg.types.json import Jsonb

from api.db import get_connection
from api.helpers.identity import validate_user_id
from api.repositories.audit import _row_to_dict
from ingestion.errors import PersistenceFailure
from ingestion.models import CAPTURE_METHODS
from ingestion.normalize_event import EVENT_TYPES

# write the final structured event; rows are immutable after this insert
def create_voice_event(
    user_id: object,
    event_type: str,
    event_data: dict[str, Any],
    event_time: str | None,
    source_record_id: str | None,
    capture_method: str = "manual",
) -> dict[str, Any]:
    acting_user_id = validate_user_id(user_id, "creating voice event")
    if event_type not in EVENT_TYPES:
        raise ValueError(f"unknown event type: {event_type}")
    if not isinstance(event_data, dict):
        raise ValueError("event_data must be an object")
    if capture_method not in CAPTURE_METHODS:
        raise ValueError(f"unknown capture method: {capture_method}")
    conn = None
    try:
        conn = get_connection(acting_user_id=acting_user_id)
        row = conn.execute(
            """
            INSERT INTO voice_events (
                user_id, event_type, event_data, event_time, source_record_id, capture_method
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                acting_user_id,
                event_type,
                Jsonb(event_data),
                event_time or datetime.now(tz=timezone.utc).isoformat(),
                source_record_id,
                capture_method,
            ),
        ).fetchone()
        conn.commit()
    except DatabaseError as exc:
        raise PersistenceFailure("failed to create voice event") from exc
    finally:
        if conn is not None:
            conn.close()
    if row is None:
        raise PersistenceFailure("voice event insert returned no row")
    return _row_to_dict(row)

# Pulls the user's timeline newest first
def list_voice_events(user_id: object, limit: int = 50) -> list[dict[str, Any]]:
    acting_user_id = validate_user_id(user_id, "listing voice events")
    conn = None
    try:
        conn = get_connection(acting_user_id=acting_user_id)
        rows = conn.execute(
            """
            SELECT id, user_id, event_type, event_data, event_time, source_record_id, capture_method, created_at
            FROM voice_events
            WHERE user_id = %s
            ORDER BY event_time DESC
            LIMIT %s
            """,
            (acting_user_id, int(limit)),
        ).fetchall()
    except DatabaseError as exc:
        raise PersistenceFailure("failed to list voice events") from exc
    finally:
        if conn is not None:
            conn.close()
    # JSON friendly return
    return [_row_to_dict(row) for row in rows]
