import os
from pathlib import Path
from typing import Callable
from urllib.parse import urlparse

from psycopg import Connection, connect
from psycopg.rows import dict_row

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "data" / "schema.sql"

# connect to postgres DB
# acting_user_id scopes the session for the row-level security policies in schema.sql
def get_connection(acting_user_id: str | None = None):
    database_url = os.getenv("DATABASE_URL", "").strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL is required")
    conn = connect(database_url, row_factory=dict_row)
    if acting_user_id is not None:
        conn.execute(
            "SELECT set_config('app.current_user_id', %s, false)",
            (acting_user_id,),
        )
    return conn

# refuse to truncate anything that does not look like a throwaway test database
def assert_test_database_safety() -> None:
    if os.getenv("APP_ENV", "").strip().lower() != "test":
        raise RuntimeError("APP_ENV must be 'test' to use test database helpers")
    database_url = os.getenv("DATABASE_URL", "").strip()
    db_name = urlparse(database_url).path.lstrip("/")
    if "test" not in db_name:
        raise RuntimeError(f"refusing to use non-test database: {db_name or '<empty>'}")

# the base schema is applied once, keyed on the audit table
def _schema_installed(conn: Connection) -> bool:
    row = conn.execute("SELECT to_regclass('public.voice_records_audit') AS relation").fetchone()
    return row is not None and row["relation"] is not None


# one voice event per audit row; later schema changes append numbered migrations after this one
def _migration_001_voice_events_source_record(conn: Connection) -> None:
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_voice_events_source_record_unique
        ON voice_events(source_record_id)
        WHERE source_record_id IS NOT NULL
        """
    )


def _apply_migrations(conn: Connection) -> None:
    migrations: list[Callable[[Connection], None]] = [
        _migration_001_voice_events_source_record,
    ]
    for migration in migrations:
        migration(conn)


def _execute_script(conn: Connection, script: str) -> None:
    with conn.cursor() as cursor:
        cursor.execute(script)


def initialize_database():
    conn = get_connection()
    try:
        if not _schema_installed(conn):
            with open(SCHEMA_PATH, "r") as f:
                schema_sql = f.read()
            _execute_script(conn, schema_sql)
        _apply_migrations(conn)
        conn.commit()
    finally:
        conn.close()
