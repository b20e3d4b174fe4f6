"""Ordered, additive schema migrations for the record store.

Each step only adds tables, columns or indexes and may backfill defaults for
rows that predate it. `PRAGMA user_version` records the last applied step.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

Row = Dict[str, Any]

SCHEMA_INDEXES: Tuple[str, ...] = (
    "CREATE INDEX IF NOT EXISTS idx_records_created_at ON records(created_at);",
    "CREATE INDEX IF NOT EXISTS idx_records_ship_date ON records(ship_date);",
    "CREATE INDEX IF NOT EXISTS idx_records_tracking_number ON records(tracking_number);",
    "CREATE INDEX IF NOT EXISTS idx_media_record ON media(record_id, position);",
)


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    statements: Tuple[str, ...] = ()
    # (table, column, declaration) added only when the column is missing
    add_columns: Tuple[Tuple[str, str, str], ...] = ()
    # pure function applied to every `records` row after the DDL ran
    backfill: Optional[Callable[[Row], Row]] = None


def default_sync_status(row: Row) -> Row:
    """Rows written before sync tracking existed are treated as not yet uploaded."""
    if not row.get("sync_status"):
        row = dict(row)
        row["sync_status"] = "pending"
    return row


MIGRATIONS: Tuple[Migration, ...] = (
    Migration(
        version=1,
        description="records and media tables",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS records (
              id               INTEGER PRIMARY KEY AUTOINCREMENT,
              created_at       TEXT NOT NULL,
              ship_date        TEXT NOT NULL,    -- YYYY-MM-DD
              tracking_number  TEXT NOT NULL,
              note             TEXT DEFAULT ''
            );
            """,
            """
            CREATE TABLE IF NOT EXISTS media (
              media_id   INTEGER PRIMARY KEY,
              record_id  INTEGER NOT NULL REFERENCES records(id) ON DELETE CASCADE,
              position   INTEGER NOT NULL DEFAULT 0,
              filename   TEXT NOT NULL,
              mime_type  TEXT,
              payload    BLOB
            );
            """,
        )
        + SCHEMA_INDEXES,
    ),
    Migration(
        version=2,
        description="cloud sync fields",
        add_columns=(
            ("records", "sync_status", "TEXT"),
            ("records", "sync_error", "TEXT"),
            ("media", "remote_url", "TEXT"),
            ("media", "storage_path", "TEXT"),
        ),
        backfill=default_sync_status,
    ),
    Migration(
        version=3,
        description="re-assert indexes and sync status defaults",
        statements=SCHEMA_INDEXES,
        backfill=default_sync_status,
    ),
)

SCHEMA_VERSION = MIGRATIONS[-1].version
