from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from ..domain.models import (
    MAX_ATTACHMENTS,
    MediaAttachment,
    NewShippingRecord,
    SearchFilter,
    ShippingRecord,
    SyncStatus,
)
from ..domain.tracking import normalize_tracking_query
from ..logging import get_logger
from ..paths import find_project_root, var_dir
from .errors import ConstraintViolation, InvalidRecord, RecordNotFound, StoreError
from .migrations import MIGRATIONS, SCHEMA_VERSION, Migration


LOG = get_logger("record-store")


DEFAULT_DB_FOLDER = "shipping_evidence"
DEFAULT_DB_FILENAME = "records.sqlite3"

UPDATABLE_FIELDS = frozenset({"ship_date", "tracking_number", "note", "sync_status", "sync_error", "media"})
IMMUTABLE_FIELDS = frozenset({"id", "created_at"})

# sqlite reports an incompatible or damaged file through these messages
_SCHEMA_BREAKAGE_HINTS = ("malformed", "not a database", "no such column", "no such table")
# ... and these when the file itself is unreadable
_FILE_BREAKAGE_HINTS = ("malformed", "not a database")
_NOT_NULL_PREFIX = "NOT NULL constraint failed:"

# (media_id, remote_url, storage_path)
RemoteRef = Tuple[int, str, str]


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class RecordStore:
    """SQLite-backed local-first store for shipping records.

    - Places the DB under `<repo-root>/var/shipping_evidence/records.sqlite3`
      unless `db_path` is given.
    - Applies pending schema migrations on construction unless
      `migrate=False` (used to reach `reset()` on a broken file).
    - Every write happens in its own transaction; a failed update leaves the
      record exactly as it was.
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        *,
        root_dir: Optional[str] = None,
        migrate: bool = True,
    ) -> None:
        if db_path is None:
            folder = os.path.join(var_dir(find_project_root(root_dir)), DEFAULT_DB_FOLDER)
            db_path = os.path.join(folder, DEFAULT_DB_FILENAME)
        folder = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(folder, exist_ok=True)
        self.db_path = os.path.abspath(db_path)
        LOG.info(f"Record DB path: {self.db_path}")
        if migrate:
            self.migrate()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON;")
        except sqlite3.DatabaseError as exc:
            conn.close()
            raise self._translate("open", exc) from exc
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self, action: str) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN IMMEDIATE/COMMIT, translating sqlite errors."""
        with self.connect() as conn:
            try:
                conn.execute("BEGIN IMMEDIATE;")
                yield conn
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise self._translate(action, exc) from exc
            except Exception:
                conn.rollback()
                raise

    @staticmethod
    def _translate(action: str, exc: sqlite3.Error) -> StoreError:
        if isinstance(exc, sqlite3.IntegrityError) and str(exc).startswith(_NOT_NULL_PREFIX):
            # "NOT NULL constraint failed: records.ship_date" -> ship_date
            column = str(exc)[len(_NOT_NULL_PREFIX):].strip().rpartition(".")[2] or None
            LOG.warning(f"{action}: missing required field {column}")
            return InvalidRecord(f"{column or 'a required field'} must not be empty", field=column)
        if isinstance(exc, sqlite3.IntegrityError):
            LOG.error(f"{action}: constraint violation: {exc}")
            return ConstraintViolation(action, str(exc))
        message = str(exc).lower()
        if any(hint in message for hint in _SCHEMA_BREAKAGE_HINTS):
            LOG.error(f"{action}: local database looks incompatible: {exc}")
            return ConstraintViolation(action, str(exc))
        LOG.error(f"{action} failed: {exc}")
        return StoreError(f"{action} failed: {exc}")

    # --------------- schema ---------------
    def migrate(self) -> None:
        """Apply every pending migration; a store already at head is left alone."""
        with self.connect() as conn:
            try:
                conn.execute("PRAGMA journal_mode=WAL;")
                conn.execute("PRAGMA synchronous=NORMAL;")
            except sqlite3.DatabaseError as exc:
                raise self._translate("open", exc) from exc
            current = int(conn.execute("PRAGMA user_version;").fetchone()[0])
            if current > SCHEMA_VERSION:
                LOG.warning(
                    f"Record DB schema v{current} is newer than this build (v{SCHEMA_VERSION}); "
                    "leaving it untouched"
                )
                return
            if current == SCHEMA_VERSION:
                LOG.debug(f"Record DB schema already at v{current}")
                return
            for migration in MIGRATIONS:
                if migration.version <= current:
                    continue
                self._apply_migration(conn, migration)
            LOG.info(f"Record DB schema at v{SCHEMA_VERSION}")

    def _apply_migration(self, conn: sqlite3.Connection, migration: Migration) -> None:
        LOG.info(f"Applying migration v{migration.version}: {migration.description}")
        try:
            conn.execute("BEGIN IMMEDIATE;")
            for statement in migration.statements:
                conn.execute(statement)
            for table, column, decl in migration.add_columns:
                if column not in self._columns(conn, table):
                    conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl};")
            if migration.backfill is not None:
                self._backfill(conn, migration)
            conn.execute(f"PRAGMA user_version = {int(migration.version)};")
            conn.commit()
        except sqlite3.Error as exc:
            LOG.exception(f"Migration v{migration.version} failed; rolling back")
            conn.rollback()
            raise self._translate(f"migration v{migration.version}", exc) from exc

    @staticmethod
    def _columns(conn: sqlite3.Connection, table: str) -> List[str]:
        return [row[1] for row in conn.execute(f"PRAGMA table_info({table});").fetchall()]

    def _backfill(self, conn: sqlite3.Connection, migration: Migration) -> None:
        columns = set(self._columns(conn, "records"))
        rows = conn.execute("SELECT * FROM records;").fetchall()
        touched = 0
        for row in rows:
            before = dict(row)
            after = migration.backfill(dict(before))
            changed = {k: v for k, v in after.items() if k in columns and k != "id" and before.get(k) != v}
            if not changed:
                continue
            assignments = ", ".join(f"{k} = ?" for k in changed)
            conn.execute(f"UPDATE records SET {assignments} WHERE id = ?;", (*changed.values(), before["id"]))
            touched += 1
        if touched:
            LOG.info(f"Backfilled {touched} record(s) for migration v{migration.version}")

    @property
    def schema_version(self) -> int:
        with self.connect() as conn:
            try:
                return int(conn.execute("PRAGMA user_version;").fetchone()[0])
            except sqlite3.Error as exc:
                raise self._translate("schema version", exc) from exc

    def reset(self) -> None:
        """Drop every table and rebuild the schema. Destroys all local records.

        Works on stores opened with `migrate=False` whose schema is
        incompatible; a file sqlite cannot read at all is deleted together
        with its -wal/-shm companions and created again.
        """
        LOG.warning(f"Resetting local record DB at {self.db_path}")
        try:
            conn = sqlite3.connect(self.db_path)
            try:
                conn.execute("PRAGMA foreign_keys = OFF;")
                conn.execute("DROP TABLE IF EXISTS media;")
                conn.execute("DROP TABLE IF EXISTS records;")
                conn.execute("PRAGMA user_version = 0;")
                conn.commit()
            finally:
                conn.close()
        except sqlite3.DatabaseError as exc:
            if not any(hint in str(exc).lower() for hint in _FILE_BREAKAGE_HINTS):
                raise StoreError(f"reset failed: {exc}") from exc
            LOG.warning(f"{self.db_path} is not a readable database ({exc}); recreating the file")
            self._remove_files()
        self.migrate()

    def _remove_files(self) -> None:
        for suffix in ("", "-wal", "-shm"):
            try:
                os.remove(self.db_path + suffix)
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise StoreError(f"reset failed: cannot remove {self.db_path + suffix}: {exc}") from exc

    # --------------- validation ---------------
    @staticmethod
    def _check_tracking_number(value: Any) -> str:
        if not isinstance(value, str) or not value.strip():
            raise InvalidRecord("tracking_number must not be empty", field="tracking_number")
        return value

    @staticmethod
    def _check_media(media: Sequence[MediaAttachment]) -> List[MediaAttachment]:
        items = list(media or [])
        if not items:
            raise InvalidRecord("a record needs at least one photo", field="media")
        if len(items) > MAX_ATTACHMENTS:
            raise InvalidRecord(f"at most {MAX_ATTACHMENTS} photos per record", field="media")
        for item in items:
            if not item.is_displayable:
                raise InvalidRecord(
                    f"photo {item.filename!r} has neither local data nor a remote URL", field="media"
                )
        return items

    # --------------- writes ---------------
    def create(self, record: NewShippingRecord) -> int:
        """Insert a new record and return its id.

        `created_at` is always stamped here; `sync_status` defaults to pending.
        """
        self._check_tracking_number(record.tracking_number)
        media = self._check_media(record.media)
        status = SyncStatus.coerce(record.sync_status) if record.sync_status else SyncStatus.PENDING
        created_at = utc_now_iso()
        with self._transaction("create") as conn:
            rows = conn.execute(
                """
                INSERT INTO records (created_at, ship_date, tracking_number, note, sync_status, sync_error)
                VALUES (?, ?, ?, ?, ?, ?)
                RETURNING id;
                """,
                (
                    created_at,
                    record.ship_date,
                    record.tracking_number,
                    record.note or "",
                    status.value,
                    record.sync_error if status is SyncStatus.FAILED else None,
                ),
            ).fetchall()
            record_id = int(rows[0][0])
            self._insert_media(conn, record_id, media)
        LOG.info(f"Created record id={record_id} ({len(media)} photo(s), status={status.value})")
        return record_id

    @staticmethod
    def _insert_media(conn: sqlite3.Connection, record_id: int, media: Sequence[MediaAttachment]) -> None:
        for position, item in enumerate(media):
            conn.execute(
                """
                INSERT INTO media (record_id, position, filename, mime_type, payload, remote_url, storage_path)
                VALUES (?, ?, ?, ?, ?, ?, ?);
                """,
                (
                    record_id,
                    position,
                    item.filename,
                    item.mime_type,
                    sqlite3.Binary(item.payload) if item.payload else None,
                    item.remote_url,
                    item.storage_path,
                ),
            )

    @staticmethod
    def _require(conn: sqlite3.Connection, record_id: int) -> None:
        if conn.execute("SELECT 1 FROM records WHERE id = ?;", (int(record_id),)).fetchone() is None:
            raise RecordNotFound(record_id)

    def update(self, record_id: int, **fields: Any) -> None:
        """Merge the given fields into an existing record.

        Accepts ship_date, tracking_number, note, sync_status, sync_error and
        media (replaces all photos). id and created_at can never change.
        """
        immutable = IMMUTABLE_FIELDS.intersection(fields)
        if immutable:
            raise ValueError(f"Fields cannot be changed: {', '.join(sorted(immutable))}")
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown record fields: {', '.join(sorted(unknown))}")
        if not fields:
            return

        columns: Dict[str, Any] = {}
        if "ship_date" in fields:
            columns["ship_date"] = fields["ship_date"]
        if "tracking_number" in fields:
            columns["tracking_number"] = self._check_tracking_number(fields["tracking_number"])
        if "note" in fields:
            columns["note"] = fields["note"] or ""
        if "sync_status" in fields:
            columns["sync_status"] = SyncStatus.coerce(fields["sync_status"]).value
        if "sync_error" in fields:
            columns["sync_error"] = fields["sync_error"]
        media = self._check_media(fields["media"]) if "media" in fields else None

        with self._transaction("update") as conn:
            self._require(conn, record_id)
            if columns:
                assignments = ", ".join(f"{k} = ?" for k in columns)
                conn.execute(f"UPDATE records SET {assignments} WHERE id = ?;", (*columns.values(), int(record_id)))
            if media is not None:
                conn.execute("DELETE FROM media WHERE record_id = ?;", (int(record_id),))
                self._insert_media(conn, int(record_id), media)
        LOG.info(f"Updated record id={record_id} fields={sorted(fields)}")

    def apply_sync_state(
        self,
        record_id: int,
        status: SyncStatus,
        *,
        error: Optional[str] = None,
        remote_refs: Optional[Sequence[RemoteRef]] = None,
    ) -> None:
        """Write sync status, error and remote photo references in one transaction.

        The error message is only kept for the failed state.
        """
        status = SyncStatus.coerce(status)
        error = error if status is SyncStatus.FAILED else None
        with self._transaction("sync state") as conn:
            self._require(conn, record_id)
            conn.execute(
                "UPDATE records SET sync_status = ?, sync_error = ? WHERE id = ?;",
                (status.value, error, int(record_id)),
            )
            for media_id, remote_url, storage_path in remote_refs or ():
                conn.execute(
                    "UPDATE media SET remote_url = ?, storage_path = ? WHERE media_id = ? AND record_id = ?;",
                    (remote_url, storage_path, int(media_id), int(record_id)),
                )
        LOG.debug(f"Record id={record_id} sync_status -> {status.value}")

    def delete(self, record_id: int) -> None:
        """Remove the record and its local photos. Remote copies are not touched."""
        with self._transaction("delete") as conn:
            cur = conn.execute("DELETE FROM records WHERE id = ?;", (int(record_id),))
            removed = cur.rowcount
        if removed:
            LOG.info(f"Deleted record id={record_id}")
        else:
            LOG.warning(f"Delete requested for unknown record id={record_id}")

    # --------------- reads ---------------
    @staticmethod
    def _media_from_row(row: sqlite3.Row) -> MediaAttachment:
        payload = row["payload"]
        return MediaAttachment(
            media_id=int(row["media_id"]),
            position=int(row["position"]),
            filename=row["filename"],
            mime_type=row["mime_type"],
            payload=bytes(payload) if payload is not None else None,
            remote_url=row["remote_url"],
            storage_path=row["storage_path"],
        )

    @staticmethod
    def _record_from_row(row: sqlite3.Row, media: List[MediaAttachment]) -> ShippingRecord:
        return ShippingRecord(
            id=int(row["id"]),
            created_at=row["created_at"],
            ship_date=row["ship_date"],
            tracking_number=row["tracking_number"],
            note=row["note"] or "",
            media=media,
            sync_status=SyncStatus.coerce(row["sync_status"] or SyncStatus.PENDING),
            sync_error=row["sync_error"],
        )

    def _hydrate(self, conn: sqlite3.Connection, rows: Sequence[sqlite3.Row]) -> List[ShippingRecord]:
        if not rows:
            return []
        ids = [int(r["id"]) for r in rows]
        placeholders = ", ".join("?" for _ in ids)
        media_rows = conn.execute(
            f"SELECT * FROM media WHERE record_id IN ({placeholders}) ORDER BY record_id, position, media_id;",
            ids,
        ).fetchall()
        by_record: Dict[int, List[MediaAttachment]] = {rid: [] for rid in ids}
        for m in media_rows:
            by_record[int(m["record_id"])].append(self._media_from_row(m))
        return [self._record_from_row(r, by_record[int(r["id"])]) for r in rows]

    def _query(self, action: str, sql: str, params: Sequence[Any] = ()) -> List[ShippingRecord]:
        with self.connect() as conn:
            try:
                rows = conn.execute(sql, tuple(params)).fetchall()
                return self._hydrate(conn, rows)
            except sqlite3.Error as exc:
                raise self._translate(action, exc) from exc

    def get(self, record_id: int) -> Optional[ShippingRecord]:
        records = self._query("get", "SELECT * FROM records WHERE id = ?;", (int(record_id),))
        return records[0] if records else None

    def list(self) -> List[ShippingRecord]:
        """All records, newest ship date first (ties: latest insert first)."""
        records = self._query("list", "SELECT * FROM records ORDER BY ship_date DESC, id DESC;")
        LOG.debug(f"Listed {len(records)} record(s)")
        return records

    def search(self, criteria: SearchFilter) -> List[ShippingRecord]:
        """Filter by inclusive ship-date range and tracking-number substring.

        Dates compare as strings, which is only valid for the fixed-width
        YYYY-MM-DD format. The tracking number query ignores hyphens and
        whitespace on both sides.
        """
        where: List[str] = []
        params: List[Any] = []
        if criteria.date_from:
            where.append("ship_date >= ?")
            params.append(criteria.date_from)
        if criteria.date_to:
            where.append("ship_date <= ?")
            params.append(criteria.date_to)
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        records = self._query(
            "search",
            f"SELECT * FROM records {where_sql} ORDER BY ship_date DESC, id DESC;",
            params,
        )
        needle = normalize_tracking_query(criteria.tracking_number_query)
        if needle:
            records = [r for r in records if needle in normalize_tracking_query(r.tracking_number)]
        LOG.info(f"Search returned {len(records)} record(s) for {criteria}")
        return records

    def count(self) -> int:
        with self.connect() as conn:
            try:
                return int(conn.execute("SELECT COUNT(*) FROM records;").fetchone()[0])
            except sqlite3.Error as exc:
                raise self._translate("count", exc) from exc
