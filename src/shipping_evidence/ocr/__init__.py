"""Tracking-number extraction from photos (hosted vision model or local Tesseract)."""

from .engine import ExtractionEngine
from .results import ExtractionState, OcrProgress, OcrResult
from .local import LocalRecognizerStrategy
from .remote import (
    RemoteModelStrategy,
    VisionConfig,
    VisionError,
    VisionErrorKind,
    VisionModelClient,
    VisionRequest,
    VisionResponse,
)

__all__ = [
    "ExtractionEngine",
    "ExtractionState",
    "LocalRecognizerStrategy",
    "OcrProgress",
    "OcrResult",
    "RemoteModelStrategy",
    "VisionConfig",
    "VisionError",
    "VisionErrorKind",
    "VisionModelClient",
    "VisionRequest",
    "VisionResponse",
]
