from __future__ import annotations

import json
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from .domain.models import ShippingRecord
from .logging import get_logger
from .store import RecordStore


LOG = get_logger("export")

CSV_HEADERS = ("ID", "保存日時", "発送日", "伝票番号", "メモ")
CSV_BOM = "\ufeff"
EXPORT_FORMATS = ("json", "csv")


def escape_csv_field(value: Any) -> str:
    """RFC 4180 quoting: double inner quotes, wrap fields holding , " or line breaks."""
    if value is None:
        return ""
    text = str(value)
    if any(ch in text for ch in (",", '"', "\n", "\r")):
        return '"' + text.replace('"', '""') + '"'
    return text


def export_timestamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime("%Y%m%d-%H%M%S")


def export_filename(fmt: str, now: Optional[datetime] = None) -> str:
    return f"shipping-records_{export_timestamp(now)}.{fmt}"


class ExportService:
    """Backup of all records as JSON (full) or CSV (spreadsheet-friendly)."""

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    @staticmethod
    def _export_record(record: ShippingRecord) -> Dict[str, Any]:
        return {
            "id": record.id,
            "createdAt": record.created_at,
            "shipDate": record.ship_date,
            "trackingNumber": record.tracking_number,
            "note": record.note,
            "imagePreviewOrUrl": record.display_source(),
            "syncStatus": record.sync_status.value,
        }

    def to_json(self, now: Optional[datetime] = None, records: Optional[Sequence[ShippingRecord]] = None) -> str:
        records = self.store.list() if records is None else list(records)
        stamp = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        payload = {
            "exportDate": stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "recordCount": len(records),
            "records": [self._export_record(r) for r in records],
        }
        LOG.info(f"JSON export: {len(records)} record(s)")
        return json.dumps(payload, ensure_ascii=False, indent=2)

    def to_csv(self, records: Optional[Sequence[ShippingRecord]] = None) -> str:
        records = self.store.list() if records is None else list(records)
        lines: List[str] = [",".join(CSV_HEADERS)]
        for r in records:
            row = (r.id, r.created_at, r.ship_date, r.tracking_number, r.note or "")
            lines.append(",".join(escape_csv_field(v) for v in row))
        LOG.info(f"CSV export: {len(records)} record(s)")
        return CSV_BOM + "\r\n".join(lines) + "\r\n"

    def write(self, path: Optional[str] = None, fmt: str = "json", directory: Optional[str] = None) -> str:
        """Write an export file and return its absolute path.

        Without `path` the file is named `shipping-records_YYYYMMDD-HHMMSS.<fmt>`
        inside `directory` (default: current directory).
        """
        fmt = (fmt or "json").lower()
        if fmt not in EXPORT_FORMATS:
            raise ValueError(f"Unsupported export format: {fmt!r}")
        if path is None:
            path = os.path.join(directory or os.getcwd(), export_filename(fmt))
        path = os.path.abspath(path)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        content = self.to_json() if fmt == "json" else self.to_csv()
        # newline="" keeps the CRLF rows of the CSV untouched
        with open(path, "w", encoding="utf-8", newline="") as fh:
            fh.write(content)
        LOG.info(f"Wrote {fmt.upper()} export to {path}")
        return path
