from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

from shipping_evidence.domain.models import SyncStatus
from shipping_evidence.export import ExportService, escape_csv_field, export_filename


def test_escape_csv_field() -> None:
    assert escape_csv_field("plain") == "plain"
    assert escape_csv_field('fragile, "glass"') == '"fragile, ""glass"""'
    assert escape_csv_field("two\nlines") == '"two\nlines"'
    assert escape_csv_field(None) == ""
    assert escape_csv_field(42) == "42"


def test_csv_has_bom_header_and_quoted_note(store, make_record) -> None:
    record_id = store.create(make_record(note='box, "heavy"'))
    csv_text = ExportService(store).to_csv()

    assert csv_text.startswith("﻿")
    lines = csv_text[1:].split("\r\n")
    assert lines[0] == "ID,保存日時,発送日,伝票番号,メモ"
    created_at = store.get(record_id).created_at
    assert lines[1] == f'{record_id},{created_at},2024-06-15,1234-5678-9012,"box, ""heavy"""'


def test_json_export_shape(store, make_record) -> None:
    first = store.create(make_record(ship_date="2024-06-01"))
    second = store.create(make_record(ship_date="2024-06-02", note="メモ"))
    media_id = store.get(second).media[0].media_id
    store.apply_sync_state(
        second, SyncStatus.SYNCED, remote_refs=[(media_id, "https://cdn.example.test/x.jpg", "evidence/x.jpg")]
    )

    now = datetime(2024, 6, 3, 9, 30, tzinfo=timezone.utc)
    payload = json.loads(ExportService(store).to_json(now=now))

    assert payload["exportDate"] == "2024-06-03T09:30:00.000Z"
    assert payload["recordCount"] == 2
    by_id = {r["id"]: r for r in payload["records"]}
    assert set(by_id[first]) == {"id", "createdAt", "shipDate", "trackingNumber", "note", "imagePreviewOrUrl", "syncStatus"}
    assert by_id[first]["imagePreviewOrUrl"].startswith("data:image/jpeg;base64,")
    assert by_id[second]["imagePreviewOrUrl"] == "https://cdn.example.test/x.jpg"
    assert by_id[second]["note"] == "メモ"
    assert by_id[second]["syncStatus"] == "synced"


def test_write_uses_timestamped_name(store, make_record, tmp_path: Path) -> None:
    store.create(make_record())
    path = ExportService(store).write(fmt="csv", directory=str(tmp_path / "exports"))

    name = Path(path).name
    assert name.startswith("shipping-records_") and name.endswith(".csv")
    raw = Path(path).read_bytes()
    assert raw.startswith("﻿".encode("utf-8"))
    assert b"\r\n" in raw


def test_export_filename_format() -> None:
    assert export_filename("json", datetime(2024, 1, 2, 3, 4, 5)) == "shipping-records_20240102-030405.json"
