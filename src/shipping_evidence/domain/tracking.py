"""Tracking number grammar.

Shipping slips print the number as ``DDDD-DDDD-DDDD``. OCR output often drops
the hyphens or breaks the number across lines, so extraction falls back to a
run of twelve digits once whitespace is removed. The fallback happily accepts
any unrelated 12-digit run; a human confirms the candidate before saving.
"""

from __future__ import annotations

import re
from typing import Optional

TRACKING_NUMBER_PATTERN = re.compile(r"\d{4}-\d{4}-\d{4}")
_TWELVE_DIGITS = re.compile(r"\d{12}")
_WHITESPACE = re.compile(r"\s+")
_QUERY_NOISE = re.compile(r"[-\s]")


def extract_tracking_number(text: Optional[str]) -> Optional[str]:
    """Return the first tracking number candidate in text, or None."""
    if not text:
        return None
    match = TRACKING_NUMBER_PATTERN.search(text)
    if match:
        return match.group(0)
    compact = _WHITESPACE.sub("", text)
    run = _TWELVE_DIGITS.search(compact)
    if run:
        digits = run.group(0)
        return f"{digits[:4]}-{digits[4:8]}-{digits[8:]}"
    return None


def is_tracking_number(value: Optional[str]) -> bool:
    """True if value is exactly one canonical ``DDDD-DDDD-DDDD`` number."""
    return bool(value) and TRACKING_NUMBER_PATTERN.fullmatch(value.strip()) is not None


def normalize_tracking_query(value: Optional[str]) -> str:
    """Strip hyphens and whitespace so '1234-5678' and '12345678' compare equal."""
    return _QUERY_NOISE.sub("", value or "")
