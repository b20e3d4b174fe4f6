from __future__ import annotations

from typing import Dict, List, Optional, Tuple

import cv2
import numpy as np
import pytesseract
from pytesseract import Output

from ..domain.tracking import extract_tracking_number
from ..logging import get_logger
from .results import OcrProgress, OcrResult, ProgressCallback


LOG = get_logger("ocr-local")


def preprocess(image_bytes: bytes) -> np.ndarray:
    """Decode + enhance for OCR: grayscale, denoise, contrast, upscale small photos."""
    buf = np.frombuffer(image_bytes, dtype=np.uint8)
    img = cv2.imdecode(buf, cv2.IMREAD_COLOR)
    if img is None:
        raise ValueError("Could not decode image data")

    gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    gray = cv2.bilateralFilter(gray, 7, 60, 60)
    clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
    gray = clahe.apply(gray)

    # Tesseract struggles with small glyphs from phone thumbnails
    h, w = gray.shape[:2]
    if max(h, w) < 1500:
        gray = cv2.resize(gray, (w * 2, h * 2), interpolation=cv2.INTER_CUBIC)
    return gray


def _at(data: Dict[str, List], key: str, i: int) -> int:
    values = data.get(key) or []
    return int(values[i]) if i < len(values) else 0


def text_from_data(data: Dict[str, List]) -> Tuple[str, float]:
    """Rebuild line text from image_to_data output; returns (text, mean confidence 0..1)."""
    lines: Dict[Tuple[int, int, int], List[str]] = {}
    confs: List[float] = []
    for i, raw in enumerate(data.get("text", [])):
        word = (raw or "").strip()
        try:
            conf = float(data["conf"][i])
        except (KeyError, IndexError, TypeError, ValueError):
            conf = -1.0
        if not word:
            continue
        if conf >= 0:
            confs.append(conf)
        key = (_at(data, "block_num", i), _at(data, "par_num", i), _at(data, "line_num", i))
        lines.setdefault(key, []).append(word)
    text = "\n".join(" ".join(words) for _, words in sorted(lines.items()))
    confidence = float(np.mean(confs)) / 100.0 if confs else 0.0
    return text, max(0.0, min(confidence, 1.0))


class LocalRecognizerStrategy:
    """On-device Tesseract recognizer. Needs no API key and works offline."""

    name = "local"

    def __init__(self, lang: str = "jpn+eng", *, config: str = "--psm 6") -> None:
        self.lang = lang
        self.config = config

    def recognize(
        self,
        image_bytes: bytes,
        *,
        mime_type: Optional[str] = None,
        filename: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> OcrResult:
        def emit(status: str, progress: float) -> None:
            LOG.debug("%s: %s %.0f%%", filename or "image", status, progress * 100)
            if on_progress is not None:
                on_progress(OcrProgress(status=status, progress=progress))

        try:
            emit("loading image", 0.0)
            gray = preprocess(image_bytes)
            emit("recognizing text", 0.3)
            data = pytesseract.image_to_data(gray, lang=self.lang, config=self.config, output_type=Output.DICT)
            emit("recognizing text", 0.9)
        except Exception as e:
            LOG.error("Local OCR failed for %s: %s", filename or "image", e)
            emit("failed", 1.0)
            return OcrResult(confidence=0.0, error=str(e))

        text, confidence = text_from_data(data)
        candidate = extract_tracking_number(text)
        emit("done", 1.0)
        if candidate:
            LOG.info("Local OCR found tracking number %s (confidence %.2f)", candidate, confidence)
        else:
            LOG.info("Local OCR found no tracking number (confidence %.2f)", confidence)
        return OcrResult(tracking_number_candidate=candidate, confidence=confidence, raw_text=text)
