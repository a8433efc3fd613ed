# voice_records_audit: one row per submitted input, the durable record of what the user said
# created pending, updated once to a terminal status, never deleted here

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from psycopg import Error as DatabaseError
from psycopg.types.json import Jsonb

from api.db import get_connection
from api.helpers.identity import validate_user_id
from ingestion.errors import PersistenceFailure
from ingestion.models import AUDIT_STATUS_PENDING, TERMINAL_AUDIT_STATUSES


def _row_to_dict(row: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in row.items():
        if isinstance(value, UUID):
            value = str(value)
        elif isinstance(value, datetime):
            value = value.isoformat()
        out[key] = value
    return out


def _optional_text(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def create_audit_record(
    user_id: object,
    raw_text: str,
    record_type: str | None = None,
    value: Any = None,
    units: str | None = None,
    nlp_model: str | None = None,
    nlp_metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    acting_user_id = validate_user_id(user_id, "creating audit record")
    if not isinstance(raw_text, str) or not raw_text.strip():
        raise ValueError("raw_text is required for creating audit record")
    conn = None
    try:
        conn = get_connection(acting_user_id=acting_user_id)
        row = conn.execute(
            """
            INSERT INTO voice_records_audit (
                user_id, raw_text, record_type, value, units,
                nlp_status, nlp_model, nlp_metadata
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (
                acting_user_id,
                raw_text,
                record_type or "unknown",
                _optional_text(value),
                _optional_text(units),
                AUDIT_STATUS_PENDING,
                nlp_model,
                Jsonb(nlp_metadata) if nlp_metadata is not None else None,
            ),
        ).fetchone()
        conn.commit()
    except DatabaseError as exc:
        raise PersistenceFailure("failed to create audit record") from exc
    finally:
        if conn is not None:
            conn.close()
    if row is None:
        raise PersistenceFailure("audit record insert returned no row")
    return _row_to_dict(row)


def update_audit_status(audit_id: str, status: str, user_id: object) -> None:
    acting_user_id = validate_user_id(user_id, "updating audit status")
    if status not in TERMINAL_AUDIT_STATUSES:
        raise ValueError(f"invalid audit status transition target: {status}")
    conn = None
    try:
        conn = get_connection(acting_user_id=acting_user_id)
        # last write wins; one input's pipeline is sequential so no version check
        cursor = conn.execute(
            """
            UPDATE voice_records_audit
            SET nlp_status = %s, updated_at = NOW()
            WHERE id = %s AND user_id = %s
            """,
            (status, audit_id, acting_user_id),
        )
        updated = cursor.rowcount
        conn.commit()
    except DatabaseError as exc:
        raise PersistenceFailure(f"failed to update audit status for {audit_id}") from exc
    finally:
        if conn is not None:
            conn.close()
    if updated == 0:
        raise PersistenceFailure(f"audit record {audit_id} not found for user")


# fill in what the classifier decided; status is left alone
def update_audit_classification(
    audit_id: str,
    user_id: object,
    *,
    record_type: str,
    value: Any = None,
    units: str | None = None,
    nlp_metadata: dict[str, Any] | None = None,
) -> None:
    acting_user_id = validate_user_id(user_id, "updating audit classification")
    conn = None
    try:
        conn = get_connection(acting_user_id=acting_user_id)
        cursor = conn.execute(
            """
            UPDATE voice_records_audit
            SET record_type = %s,
                value = %s,
                units = %s,
                nlp_metadata = %s,
                updated_at = NOW()
            WHERE id = %s AND user_id = %s
            """,
            (
                record_type,
                _optional_text(value),
                _optional_text(units),
                Jsonb(nlp_metadata) if nlp_metadata is not None else None,
                audit_id,
                acting_user_id,
            ),
        )
        updated = cursor.rowcount
        conn.commit()
    except DatabaseError as exc:
        raise PersistenceFailure(f"failed to update audit classification for {audit_id}") from exc
    finally:
        if conn is not None:
            conn.close()
    if updated == 0:
        raise PersistenceFailure(f"audit record {audit_id} not found for user")


def get_audit_record(audit_id: str, user_id: object) -> dict[str, Any] | None:
    acting_user_id = validate_user_id(user_id, "reading audit record")
    conn = None
    try:
        conn = get_connection(acting_user_id=acting_user_id)
        row = conn.execute(
            "SELECT * FROM voice_records_audit WHERE id = %s AND user_id = %s LIMIT 1",
            (audit_id, acting_user_id),
        ).fetchone()
    except DatabaseError as exc:
        raise PersistenceFailure(f"failed to read audit record {audit_id}") from exc
    finally:
        if conn is not None:
            conn.close()
    return _row_to_dict(row) if row else None
