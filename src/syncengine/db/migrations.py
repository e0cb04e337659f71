"""
Schema evolution for the sync engine's own tables.

create_all() creates missing tables but never alters existing ones, so a
column or index added to a model after a database was first created has to
be applied here. Each step uses SQLite ALTER TABLE ADD COLUMN / CREATE INDEX
and is idempotent: columns and indexes are only added if absent. On a fresh
database create_all() already produced everything and every step is a no-op.

Current steps cover the two additions made after the first table layout:
the SyncLog retry link (retry_of_id) and the unique index ExternalIdMapping
upserts rely on. New model columns get a step appended to run_migrations().

Called automatically from get_engine() after create_all().
"""
from typing import Sequence

from sqlalchemy import text


def run_migrations(engine) -> None:
    """Apply all pending schema migrations.

    Safe to call multiple times — checks column and index existence first.
    Supports SQLite only (uses PRAGMA table_info / index_list).

    Args:
        engine: SQLAlchemy engine (SQLModel create_engine result).
    """
    with engine.connect() as conn:
        # SyncLog: link from a retry run back to the run it retried
        _add_column_if_missing(conn, "sync_log", "retry_of_id", "INTEGER")

        # ExternalIdMapping: databases created before the unique constraint
        # existed need it for the upsert to stay single-row per local record
        _add_unique_index_if_missing(
            conn,
            "external_id_mappings",
            "uq_external_id_mappings_local",
            ("connection_id", "local_table", "local_id"),
        )

        conn.commit()


def _add_column_if_missing(conn, table: str, column: str, col_type: str) -> None:
    """Add a column to a table if it doesn't already exist.

    Args:
        conn: SQLAlchemy connection.
        table: Table name, as SQLite stores it.
        column: Column name to add.
        col_type: SQLite type string, e.g. "INTEGER", "REAL", "TEXT".
    """
    result = conn.execute(text(f"PRAGMA table_info({table})"))
    existing_columns = {row[1] for row in result}
    if column not in existing_columns:
        conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {col_type}"))


def _add_unique_index_if_missing(
    conn, table: str, index_name: str, columns: Sequence[str]
) -> None:
    """Create a unique index unless some unique index already covers `columns`.

    A UNIQUE table constraint shows up in PRAGMA index_list as an
    sqlite_autoindex_* entry, so fresh databases are left alone.
    """
    wanted = list(columns)
    for row in conn.execute(text(f"PRAGMA index_list({table})")).fetchall():
        name, is_unique = row[1], row[2]
        if not is_unique:
            continue
        info = conn.execute(text(f"PRAGMA index_info('{name}')")).fetchall()
        if [r[2] for r in info] == wanted:
            return
    cols = ", ".join(wanted)
    conn.execute(text(f"CREATE UNIQUE INDEX {index_name} ON {table} ({cols})"))
