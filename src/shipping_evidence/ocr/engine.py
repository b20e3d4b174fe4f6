from __future__ import annotations

from typing import Optional, Protocol

from ..logging import get_logger
from .results import ExtractionState, OcrProgress, OcrResult, ProgressCallback


LOG = get_logger("ocr-engine")

__all__ = [
    "ExtractionEngine",
    "ExtractionState",
    "OcrProgress",
    "OcrResult",
    "RecognitionStrategy",
]


class RecognitionStrategy(Protocol):
    name: str

    def recognize(
        self,
        image_bytes: bytes,
        *,
        mime_type: Optional[str] = None,
        filename: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> OcrResult:
        ...


class ExtractionEngine:
    """Runs one configured strategy per photo.

    Extraction never fails from the caller's point of view: any error turns
    into a NOT_FOUND result so manual entry always works.
    """

    def __init__(self, strategy: RecognitionStrategy) -> None:
        self.strategy = strategy

    def extract(
        self,
        image_bytes: bytes,
        *,
        mime_type: Optional[str] = None,
        filename: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> OcrResult:
        if not image_bytes:
            return OcrResult(error="empty image")
        label = filename or "image"
        LOG.info("Extracting tracking number from %s via %s strategy", label, self.strategy.name)
        try:
            result = self.strategy.recognize(
                image_bytes, mime_type=mime_type, filename=filename, on_progress=on_progress
            )
        except Exception as e:
            LOG.error("OCR strategy %s raised for %s: %s", self.strategy.name, label, e)
            return OcrResult(error=str(e) or e.__class__.__name__)

        if result.state is ExtractionState.FOUND:
            LOG.info("Candidate for %s: %s", label, result.tracking_number_candidate)
        elif result.error:
            LOG.warning("No candidate for %s: %s", label, result.error)
        else:
            LOG.info("No candidate for %s", label)
        return result

    def close(self) -> None:
        client = getattr(self.strategy, "client", None)
        if client is not None and hasattr(client, "close"):
            client.close()

