# user_product_registry: per-user memory of confirmed products keyed by normalized name
# keys arrive already normalized; see ingestion.registry_match.normalize_product_key

from __future__ import annotations

from typing import Any

from psycopg import Error as DatabaseError

from api.db import get_connection
from api.helpers.identity import validate_user_id
from ingestion.errors import PersistenceFailure
from ingestion.models import RegistryEntry


def _row_to_entry(row: dict[str, Any]) -> RegistryEntry:
    return RegistryEntry(
        user_id=str(row["user_id"]),
        product_key=row["product_key"],
        event_type=row["event_type"],
        product_name=row["product_name"],
        brand=row.get("brand"),
        times_logged=int(row.get("times_logged") or 0),
    )


# exact (user_id, product_key) lookup; None is the normal miss
def find_registry_entry(user_id: object, product_key: str) -> RegistryEntry | None:
    acting_user_id = validate_user_id(user_id, "querying product registry")
    if not product_key:
        return None
    conn = None
    try:
        conn = get_connection(acting_user_id=acting_user_id)
        row = conn.execute(
            """
            SELECT user_id, product_key, event_type, product_name, brand, times_logged
            FROM user_product_registry
            WHERE user_id = %s AND product_key = %s
            LIMIT 1
            """,
            (acting_user_id, product_key),
        ).fetchone()
    except DatabaseError as exc:
        raise PersistenceFailure("failed to query product registry") from exc
    finally:
        if conn is not None:
            conn.close()
    return _row_to_entry(row) if row else None


def list_registry_entries(
    user_id: object,
    *,
    min_times_logged: int = 1,
    limit: int = 50,
) -> list[RegistryEntry]:
    acting_user_id = validate_user_id(user_id, "listing product registry")
    conn = None
    try:
        conn = get_connection(acting_user_id=acting_user_id)
        rows = conn.execute(
            """
            SELECT user_id, product_key, event_type, product_name, brand, times_logged
            FROM user_product_registry
            WHERE user_id = %s AND times_logged >= %s
            ORDER BY times_logged DESC, product_key ASC
            LIMIT %s
            """,
            (acting_user_id, int(min_times_logged), int(limit)),
        ).fetchall()
    except DatabaseError as exc:
        raise PersistenceFailure("failed to list product registry") from exc
    finally:
        if conn is not None:
            conn.close()
    return [_row_to_entry(row) for row in rows]


def increment_registry_usage(user_id: object, product_key: str) -> None:
    acting_user_id = validate_user_id(user_id, "updating product registry")
    conn = None
    try:
        conn = get_connection(acting_user_id=acting_user_id)
        conn.execute(
            """
            UPDATE user_product_registry
            SET times_logged = times_logged + 1, last_logged_at = NOW()
            WHERE user_id = %s AND product_key = %s
            """,
            (acting_user_id, product_key),
        )
        conn.commit()
    except DatabaseError as exc:
        raise PersistenceFailure("failed to update product registry usage") from exc
    finally:
        if conn is not None:
            conn.close()


# insert on first confirmed log, otherwise bump the counter and take the latest classification
def upsert_registry_entry(
    user_id: object,
    *,
    product_key: str,
    event_type: str,
    product_name: str,
    brand: str | None = None,
    external_product_id: str | None = None,
    external_source: str | None = None,
) -> RegistryEntry:
    acting_user_id = validate_user_id(user_id, "updating product registry")
    if not product_key or not product_name:
        raise ValueError("product_key and product_name are required for registry update")
    conn = None
    try:
        conn = get_connection(acting_user_id=acting_user_id)
        row = conn.execute(
            """
            INSERT INTO user_product_registry (
                user_id, product_key, event_type, product_name, brand,
                times_logged, external_product_id, external_source
            )
            VALUES (%s, %s, %s, %s, %s, 1, %s, %s)
            ON CONFLICT (user_id, product_key) DO UPDATE SET
                times_logged = user_product_registry.times_logged + 1,
                last_logged_at = NOW(),
                event_type = EXCLUDED.event_type,
                brand = COALESCE(EXCLUDED.brand, user_product_registry.brand),
                external_product_id = COALESCE(EXCLUDED.external_product_id, user_product_registry.external_product_id),
                external_source = COALESCE(EXCLUDED.external_source, user_product_registry.external_source)
            RETURNING user_id, product_key, event_type, product_name, brand, times_logged
            """,
            (
                acting_user_id,
                product_key,
                event_type,
                product_name,
                brand,
                external_product_id,
                external_source,
            ),
        ).fetchone()
        conn.commit()
    except DatabaseError as exc:
        raise PersistenceFailure("failed to upsert product registry entry") from exc
    finally:
        if conn is not None:
            conn.close()
    if row is None:
        raise PersistenceFailure("registry upsert returned no row")
    return _row_to_entry(row)
