from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from shipping_evidence.domain.models import MediaAttachment, NewShippingRecord, SearchFilter, SyncStatus
from shipping_evidence.store import (
    ConstraintViolation,
    InvalidRecord,
    RecordNotFound,
    RecordStore,
    SCHEMA_VERSION,
)

from conftest import JPEG_BYTES, write_corrupt_db, write_incompatible_db


def test_create_then_get_round_trips_user_fields(store, make_record) -> None:
    new = make_record(note="fragile, handle with care", photos=2)
    record_id = store.create(new)

    record = store.get(record_id)
    assert record is not None
    assert record.id == record_id
    assert record.ship_date == new.ship_date
    assert record.tracking_number == new.tracking_number
    assert record.note == new.note
    assert [m.payload for m in record.media] == [m.payload for m in new.media]
    assert [m.position for m in record.media] == [0, 1]
    assert record.sync_status is SyncStatus.PENDING
    assert record.sync_error is None
    assert record.created_at.endswith("Z")


def test_ids_are_unique(store, make_record) -> None:
    ids = {store.create(make_record()) for _ in range(3)}
    assert len(ids) == 3
    assert store.count() == 3


def test_create_rejects_structural_problems(store, make_record) -> None:
    with pytest.raises(InvalidRecord):
        store.create(make_record(tracking_number="  "))
    with pytest.raises(InvalidRecord):
        store.create(make_record(photos=0))
    with pytest.raises(InvalidRecord):
        store.create(make_record(photos=4))
    blank = make_record()
    blank.media = [MediaAttachment(filename="empty.jpg")]
    with pytest.raises(InvalidRecord):
        store.create(blank)
    assert store.count() == 0


def test_update_merges_only_given_fields(store, make_record) -> None:
    record_id = store.create(make_record(note="before"))
    before = store.get(record_id)

    store.update(record_id, note="after")

    after = store.get(record_id)
    assert after.note == "after"
    assert after.tracking_number == before.tracking_number
    assert after.ship_date == before.ship_date
    assert after.created_at == before.created_at


def test_update_refuses_identity_fields_and_unknown_keys(store, make_record) -> None:
    record_id = store.create(make_record())
    with pytest.raises(ValueError):
        store.update(record_id, created_at="2000-01-01T00:00:00.000Z")
    with pytest.raises(ValueError):
        store.update(record_id, id=99)
    with pytest.raises(ValueError):
        store.update(record_id, colour="red")


def test_update_missing_record(store) -> None:
    with pytest.raises(RecordNotFound):
        store.update(404, note="x")


def test_failed_update_leaves_record_untouched(store, make_record) -> None:
    record_id = store.create(make_record(note="keep me"))
    with pytest.raises(InvalidRecord):
        store.update(record_id, note="changed", tracking_number="")
    assert store.get(record_id).note == "keep me"


def test_delete_removes_record_and_media(store, make_record) -> None:
    record_id = store.create(make_record(photos=2))
    store.delete(record_id)
    assert store.get(record_id) is None
    with store.connect() as conn:
        assert conn.execute("SELECT COUNT(*) FROM media").fetchone()[0] == 0
    store.delete(record_id)  # unknown id is a no-op


def test_list_orders_by_ship_date_then_insertion(store, make_record) -> None:
    a = store.create(make_record(ship_date="2024-06-01"))
    b = store.create(make_record(ship_date="2024-06-20"))
    c = store.create(make_record(ship_date="2024-06-01"))
    assert [r.id for r in store.list()] == [b, c, a]


def test_search_date_range_is_inclusive(store, make_record) -> None:
    record_id = store.create(make_record(ship_date="2024-06-15"))
    store.create(make_record(ship_date="2024-05-01"))

    hits = store.search(SearchFilter(date_from="2024-06-15", date_to="2024-06-15"))
    assert [r.id for r in hits] == [record_id]
    assert store.search(SearchFilter(date_from="2024-06-16")) == []


def test_search_matches_substring_of_normalized_number(store, make_record) -> None:
    record_id = store.create(make_record(tracking_number="1234-5678-9012"))
    store.create(make_record(tracking_number="9999-0000-1111"))

    assert [r.id for r in store.search(SearchFilter(tracking_number_query="56789012"))] == [record_id]
    assert [r.id for r in store.search(SearchFilter(tracking_number_query="1234-5678"))] == [record_id]
    assert [r.id for r in store.search(SearchFilter(tracking_number_query="1234 5678 9012"))] == [record_id]
    assert store.search(SearchFilter(tracking_number_query="7777")) == []


def test_apply_sync_state_clears_error_unless_failed(store, make_record) -> None:
    record_id = store.create(make_record())
    store.apply_sync_state(record_id, SyncStatus.FAILED, error="offline")
    assert store.get(record_id).sync_error == "offline"

    media_id = store.get(record_id).media[0].media_id
    store.apply_sync_state(
        record_id,
        SyncStatus.SYNCED,
        error="ignored",
        remote_refs=[(media_id, "https://cdn.example.test/a.jpg", "evidence/a.jpg")],
    )
    record = store.get(record_id)
    assert record.sync_status is SyncStatus.SYNCED
    assert record.sync_error is None
    assert record.image_url == "https://cdn.example.test/a.jpg"
    assert record.storage_paths == ["evidence/a.jpg"]
    # local bytes survive the upload
    assert record.media[0].payload


def test_fresh_store_is_at_head_schema(store) -> None:
    assert store.schema_version == SCHEMA_VERSION


def _legacy_v1_database(path: Path) -> None:
    conn = sqlite3.connect(str(path))
    conn.executescript(
        """
        CREATE TABLE records (
          id INTEGER PRIMARY KEY AUTOINCREMENT,
          created_at TEXT NOT NULL,
          ship_date TEXT NOT NULL,
          tracking_number TEXT NOT NULL,
          note TEXT DEFAULT ''
        );
        CREATE TABLE media (
          media_id INTEGER PRIMARY KEY,
          record_id INTEGER NOT NULL REFERENCES records(id) ON DELETE CASCADE,
          position INTEGER NOT NULL DEFAULT 0,
          filename TEXT NOT NULL,
          mime_type TEXT,
          payload BLOB
        );
        INSERT INTO records (created_at, ship_date, tracking_number, note)
        VALUES ('2023-01-02T03:04:05.000Z', '2023-01-02', '1111-2222-3333', 'legacy');
        INSERT INTO media (record_id, position, filename, mime_type, payload)
        VALUES (1, 0, 'old.jpg', 'image/jpeg', x'FFD8FF');
        PRAGMA user_version = 1;
        """
    )
    conn.commit()
    conn.close()


def test_upgrade_from_v1_backfills_pending_and_keeps_data(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.sqlite3"
    _legacy_v1_database(db_path)

    store = RecordStore(str(db_path))

    assert store.schema_version == SCHEMA_VERSION
    record = store.get(1)
    assert record.note == "legacy"
    assert record.tracking_number == "1111-2222-3333"
    assert record.sync_status is SyncStatus.PENDING
    assert record.media[0].payload == b"\xff\xd8\xff"
    assert record.media[0].remote_url is None


def test_reopening_at_head_is_a_no_op(tmp_path: Path, make_record) -> None:
    db_path = str(tmp_path / "records.sqlite3")
    first = RecordStore(db_path)
    record_id = first.create(make_record())
    first.apply_sync_state(record_id, SyncStatus.SYNCED)

    second = RecordStore(db_path)
    assert second.get(record_id).sync_status is SyncStatus.SYNCED


def test_index_conflict_surfaces_as_constraint_violation(store, make_record) -> None:
    store.create(make_record(tracking_number="1234-5678-9012"))
    # simulates a stale schema carrying a uniqueness index the current code does not expect
    with store.connect() as conn:
        conn.execute("CREATE UNIQUE INDEX idx_stale_unique ON records(tracking_number);")
        conn.commit()

    with pytest.raises(ConstraintViolation):
        store.create(make_record(tracking_number="1234-5678-9012"))
    assert store.count() == 1


def test_reset_rebuilds_an_empty_store(store, make_record) -> None:
    store.create(make_record())
    with store.connect() as conn:
        conn.execute("CREATE UNIQUE INDEX idx_stale_unique ON records(tracking_number);")
        conn.commit()

    store.reset()

    assert store.count() == 0
    assert store.schema_version == SCHEMA_VERSION
    store.create(make_record())
    store.create(make_record())
    assert store.count() == 2


def test_incompatible_schema_blocks_open_but_reset_recovers(tmp_path: Path, make_record) -> None:
    db_path = tmp_path / "records.sqlite3"
    write_incompatible_db(db_path)

    with pytest.raises(ConstraintViolation):
        RecordStore(str(db_path))

    store = RecordStore(str(db_path), migrate=False)
    with pytest.raises(ConstraintViolation):
        store.list()

    store.reset()

    assert store.schema_version == SCHEMA_VERSION
    assert store.count() == 0
    store.create(make_record())
    assert RecordStore(str(db_path)).count() == 1


def test_reset_recreates_a_file_that_is_not_a_database(tmp_path: Path, make_record) -> None:
    db_path = tmp_path / "records.sqlite3"
    write_corrupt_db(db_path)
    wal = tmp_path / "records.sqlite3-wal"
    wal.write_bytes(b"stale wal")

    with pytest.raises(ConstraintViolation):
        RecordStore(str(db_path))

    store = RecordStore(str(db_path), migrate=False)
    store.reset()

    assert store.schema_version == SCHEMA_VERSION
    assert store.count() == 0
    store.create(make_record())
    assert store.count() == 1


def test_missing_required_column_is_invalid_record(store) -> None:
    new = NewShippingRecord(
        ship_date=None,
        tracking_number="1234-5678-9012",
        media=[MediaAttachment(filename="slip.jpg", mime_type="image/jpeg", payload=JPEG_BYTES)],
    )

    with pytest.raises(InvalidRecord) as excinfo:
        store.create(new)

    assert not isinstance(excinfo.value, ConstraintViolation)
    assert excinfo.value.field == "ship_date"
    assert store.count() == 0
