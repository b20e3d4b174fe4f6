from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional


class ExtractionState(str, Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"


@dataclass
class OcrProgress:
    status: str
    progress: float  # 0..1


ProgressCallback = Callable[[OcrProgress], None]


@dataclass
class OcrResult:
    """Best-effort candidate for one photo; never authoritative.

    `error` is informational only. A failed extraction still reads as
    NOT_FOUND to the caller.
    """

    tracking_number_candidate: Optional[str] = None
    date_candidate: Optional[str] = None
    confidence: float = 0.0
    raw_text: Optional[str] = None
    error: Optional[str] = None

    @property
    def state(self) -> ExtractionState:
        return ExtractionState.FOUND if self.tracking_number_candidate else ExtractionState.NOT_FOUND

    @property
    def found(self) -> bool:
        return self.state is ExtractionState.FOUND

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.found,
            "state": self.state.value,
            "trackingNumberCandidate": self.tracking_number_candidate,
            "dateCandidate": self.date_candidate,
            "confidence": round(float(self.confidence or 0.0), 3),
            "rawText": self.raw_text,
        }
