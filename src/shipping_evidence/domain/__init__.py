"""Domain types and the tracking-number grammar shared by OCR and search."""

from .models import (
    DATE_PRESETS,
    MAX_ATTACHMENTS,
    MediaAttachment,
    NewShippingRecord,
    SearchFilter,
    ShippingRecord,
    SyncStatus,
    date_range_for_preset,
)
from .tracking import extract_tracking_number, is_tracking_number, normalize_tracking_query

__all__ = [
    "DATE_PRESETS",
    "MAX_ATTACHMENTS",
    "MediaAttachment",
    "NewShippingRecord",
    "SearchFilter",
    "ShippingRecord",
    "SyncStatus",
    "date_range_for_preset",
    "extract_tracking_number",
    "is_tracking_number",
    "normalize_tracking_query",
]
