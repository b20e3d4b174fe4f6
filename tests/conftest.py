from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from shipping_evidence.domain.models import MediaAttachment, NewShippingRecord
from shipping_evidence.store import RecordStore
from shipping_evidence.sync.storage import UploadResult


JPEG_BYTES = b"\xff\xd8\xff\xe0fake-jpeg-payload"


class FakeStorage:
    """In-memory stand-in for ObjectStorageClient."""

    def __init__(self, configured: bool = True) -> None:
        self.is_configured = configured
        self.objects: Dict[str, bytes] = {}
        self.deleted: List[str] = []
        self.fail_on: set = set()
        self.raise_on: set = set()
        self.uploads = 0

    def upload(self, data: bytes, *, filename: str, mime_type: Optional[str] = None) -> UploadResult:
        self.uploads += 1
        if filename in self.raise_on:
            raise RuntimeError(f"storage exploded on {filename}")
        if filename in self.fail_on:
            return UploadResult(success=False, error="Upload rejected: HTTP 503")
        path = f"evidence/{self.uploads}_{filename}"
        self.objects[path] = data
        return UploadResult(success=True, remote_url=f"https://cdn.example.test/{path}", remote_path=path)

    def delete(self, path: str) -> bool:
        self.deleted.append(path)
        return self.objects.pop(path, None) is not None


def write_corrupt_db(path: Path) -> None:
    path.write_bytes(b"this is not an sqlite file\n" * 64)


def write_incompatible_db(path: Path) -> None:
    conn = sqlite3.connect(str(path))
    try:
        conn.execute("CREATE TABLE records (id INTEGER PRIMARY KEY, payload BLOB);")
        conn.execute("INSERT INTO records (payload) VALUES (x'00');")
        conn.commit()
    finally:
        conn.close()


@pytest.fixture
def store(tmp_path: Path) -> RecordStore:
    (tmp_path / "README.md").write_text("test marker", encoding="utf-8")
    return RecordStore(str(tmp_path / "records.sqlite3"))


@pytest.fixture
def storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def make_record() -> Callable[..., NewShippingRecord]:
    def _make(
        tracking_number: str = "1234-5678-9012",
        ship_date: str = "2024-06-15",
        note: str = "",
        photos: int = 1,
    ) -> NewShippingRecord:
        media = [
            MediaAttachment(filename=f"slip{i}.jpg", mime_type="image/jpeg", payload=JPEG_BYTES + bytes([i]))
            for i in range(photos)
        ]
        return NewShippingRecord(ship_date=ship_date, tracking_number=tracking_number, note=note, media=media)

    return _make
