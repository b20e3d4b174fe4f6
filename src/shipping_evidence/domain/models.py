from __future__ import annotations

import base64
from dataclasses import dataclass, field
from datetime import date, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

# Cloud storage accepts at most this many photos per record.
MAX_ATTACHMENTS = 3


class SyncStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    SYNCED = "synced"
    FAILED = "failed"

    @classmethod
    def coerce(cls, value: Any) -> "SyncStatus":
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().lower())


@dataclass
class MediaAttachment:
    """One photo of the shipment slip.

    `payload` is the locally captured image; `remote_url`/`storage_path` are
    only set once the photo has been uploaded.
    """

    filename: str
    mime_type: Optional[str] = None
    payload: Optional[bytes] = None
    remote_url: Optional[str] = None
    storage_path: Optional[str] = None
    media_id: Optional[int] = None
    position: int = 0

    @property
    def has_local_payload(self) -> bool:
        return bool(self.payload)

    @property
    def is_uploaded(self) -> bool:
        return bool(self.remote_url)

    @property
    def is_displayable(self) -> bool:
        return self.has_local_payload or self.is_uploaded

    def preview_data_url(self) -> Optional[str]:
        if not self.payload:
            return None
        mime = self.mime_type or "application/octet-stream"
        return f"data:{mime};base64,{base64.b64encode(self.payload).decode('ascii')}"

    def display_source(self) -> Optional[str]:
        """Prefer the cloud copy, fall back to an inline preview of the local bytes."""
        return self.remote_url or self.preview_data_url()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "media_id": self.media_id,
            "position": self.position,
            "filename": self.filename,
            "mime_type": self.mime_type,
            "byte_size": len(self.payload) if self.payload else 0,
            "remote_url": self.remote_url,
            "storage_path": self.storage_path,
        }


@dataclass
class NewShippingRecord:
    ship_date: str  # YYYY-MM-DD
    tracking_number: str
    media: List[MediaAttachment] = field(default_factory=list)
    note: str = ""
    sync_status: Optional[SyncStatus] = None
    sync_error: Optional[str] = None


@dataclass
class ShippingRecord:
    id: int
    created_at: str  # ISO 8601, UTC
    ship_date: str
    tracking_number: str
    note: str
    media: List[MediaAttachment]
    sync_status: SyncStatus = SyncStatus.PENDING
    sync_error: Optional[str] = None

    @property
    def image_urls(self) -> List[str]:
        return [m.remote_url for m in self.media if m.remote_url]

    @property
    def storage_paths(self) -> List[str]:
        return [m.storage_path for m in self.media if m.storage_path]

    @property
    def image_url(self) -> Optional[str]:
        urls = self.image_urls
        return urls[0] if urls else None

    def display_source(self) -> Optional[str]:
        for media in self.media:
            src = media.display_source()
            if src:
                return src
        return None

    def as_dict(self) -> Dict[str, Any]:
        """JSON-safe view (no raw image bytes)."""
        return {
            "id": self.id,
            "created_at": self.created_at,
            "ship_date": self.ship_date,
            "tracking_number": self.tracking_number,
            "note": self.note,
            "sync_status": self.sync_status.value,
            "sync_error": self.sync_error,
            "media": [m.as_dict() for m in self.media],
        }


@dataclass
class SearchFilter:
    tracking_number_query: Optional[str] = None
    date_from: Optional[str] = None  # inclusive, YYYY-MM-DD
    date_to: Optional[str] = None  # inclusive, YYYY-MM-DD

    def is_empty(self) -> bool:
        return not (self.tracking_number_query or self.date_from or self.date_to)

    @classmethod
    def for_preset(cls, preset: str, *, today: Optional[date] = None) -> "SearchFilter":
        window = date_range_for_preset(preset, today=today)
        if window is None:
            return cls()
        return cls(date_from=window[0], date_to=window[1])


DATE_PRESETS = ("TODAY", "THIS_WEEK", "THIS_MONTH", "CUSTOM")


def date_range_for_preset(preset: str, *, today: Optional[date] = None) -> Optional[Tuple[str, str]]:
    """Inclusive (from, to) ISO dates for the TODAY / THIS_WEEK / THIS_MONTH shortcuts.

    Weeks start on Sunday. Unknown presets (including CUSTOM) return None.
    """
    today = today or date.today()
    key = (preset or "").strip().upper()
    if key == "TODAY":
        start = today
    elif key == "THIS_WEEK":
        start = today - timedelta(days=(today.weekday() + 1) % 7)
    elif key == "THIS_MONTH":
        start = today.replace(day=1)
    else:
        return None
    return start.isoformat(), today.isoformat()
