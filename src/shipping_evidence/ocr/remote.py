from __future__ import annotations

import base64
import json
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import httpx
from openai import OpenAI, APIConnectionError, APITimeoutError, APIStatusError

from ..domain.tracking import extract_tracking_number, is_tracking_number
from ..logging import get_logger
from .results import OcrResult, ProgressCallback


LOG = get_logger("ocr-remote")

GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai/"

TRACKING_PROMPT = """Extract the following from this photo of a shipping slip:

1. The tracking number labelled "お問い合わせ伝票番号" (hyphenated, e.g. 2874-7496-3580)
2. The ship date (YYYY-MM-DD)

Answer with a single JSON object and nothing else:
{
  "trackingNumber": "tracking number or null",
  "date": "YYYY-MM-DD or null",
  "confidence": 0.0 to 1.0
}"""

_DATE_RE = re.compile(r"\d{4}-\d{2}-\d{2}")
_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

# Used when the model gives a valid number but no usable confidence.
DEFAULT_MODEL_CONFIDENCE = 0.8


@dataclass
class VisionConfig:
    api_key: Optional[str]
    base_url: str = GEMINI_OPENAI_BASE_URL
    primary_model: str = "gemini-1.5-flash"
    fallback_model: Optional[str] = "gemini-1.5-pro"
    timeout_seconds: float = 10.0
    temperature: float = 0.1
    max_tokens: int = 256


class VisionErrorKind(str, Enum):
    CONFIG_MISSING = "config_missing"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    API_ERROR = "api_error"
    PARSE_ERROR = "parse_error"
    UNKNOWN = "unknown"


@dataclass
class VisionError:
    kind: VisionErrorKind
    message: str
    status_code: Optional[int] = None

    def __str__(self) -> str:
        if self.status_code is not None:
            return f"{self.kind.value} ({self.status_code}): {self.message}"
        return f"{self.kind.value}: {self.message}"


@dataclass
class VisionRequest:
    prompt: str
    image_data: Optional[str] = None  # base64, no data: prefix
    mime_type: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass
class VisionResponse:
    text: str
    success: bool
    error: Optional[VisionError] = None

    @classmethod
    def failure(cls, kind: VisionErrorKind, message: str, status_code: Optional[int] = None) -> "VisionResponse":
        return cls(text="", success=False, error=VisionError(kind, message, status_code))


class VisionModelClient:
    """Chat-completions vision call with a hard timeout and one fallback model.

    Talks to any OpenAI-compatible endpoint; by default the Gemini one.
    """

    def __init__(self, config: VisionConfig, *, client: Optional[Any] = None) -> None:
        self.config = config
        self._client = client
        self._http: Optional[httpx.Client] = None

    def _get_client(self) -> Any:
        if self._client is None:
            self._http = httpx.Client(
                timeout=httpx.Timeout(self.config.timeout_seconds, connect=min(5.0, self.config.timeout_seconds)),
                limits=httpx.Limits(max_keepalive_connections=5, max_connections=10),
            )
            self._client = OpenAI(
                api_key=self.config.api_key,
                base_url=self.config.base_url,
                http_client=self._http,
                max_retries=0,
            )
        return self._client

    def close(self) -> None:
        if self._http is not None:
            self._http.close()
            self._http = None
            self._client = None

    def generate(self, request: VisionRequest) -> VisionResponse:
        if not self.config.api_key:
            LOG.warning("GEMINI_API_KEY is not set; remote OCR disabled")
            return VisionResponse.failure(VisionErrorKind.CONFIG_MISSING, "GEMINI_API_KEY is not set")

        primary = self._call_model(self.config.primary_model, request)
        if primary.success:
            return primary
        fallback = self.config.fallback_model
        if not fallback or fallback == self.config.primary_model:
            return primary
        LOG.warning("Primary model %s failed (%s); retrying with %s", self.config.primary_model, primary.error, fallback)
        return self._call_model(fallback, request)

    def _messages(self, request: VisionRequest) -> list:
        content: list = [{"type": "text", "text": request.prompt}]
        if request.image_data and request.mime_type:
            url = f"data:{request.mime_type};base64,{request.image_data}"
            content.append({"type": "image_url", "image_url": {"url": url}})
        return [{"role": "user", "content": content}]

    def _call_model(self, model: str, request: VisionRequest) -> VisionResponse:
        LOG.info("Calling vision model '%s'…", model)
        temperature = request.temperature if request.temperature is not None else self.config.temperature
        max_tokens = request.max_tokens if request.max_tokens is not None else self.config.max_tokens
        try:
            completion = self._get_client().chat.completions.create(
                model=model,
                messages=self._messages(request),
                temperature=temperature,
                max_tokens=max_tokens,
                timeout=self.config.timeout_seconds,
            )
        # APITimeoutError subclasses APIConnectionError, so it goes first
        except APITimeoutError as e:
            LOG.error("Vision model %s timed out after %.1fs: %s", model, self.config.timeout_seconds, e)
            return VisionResponse.failure(
                VisionErrorKind.TIMEOUT, f"Request timeout after {self.config.timeout_seconds:g}s"
            )
        except APIConnectionError as e:
            LOG.error("Network error while calling %s: %s", model, e)
            return VisionResponse.failure(VisionErrorKind.NETWORK_ERROR, str(e))
        except APIStatusError as e:
            body = getattr(getattr(e, "response", None), "text", None)
            LOG.error("Vision API returned %s. Body preview: %r", e.status_code, (body[:300] if body else None))
            return VisionResponse.failure(
                VisionErrorKind.API_ERROR, f"API returned {e.status_code}", status_code=e.status_code
            )
        except Exception as e:
            LOG.error("Vision call to %s failed unexpectedly: %s", model, e)
            return VisionResponse.failure(VisionErrorKind.UNKNOWN, str(e) or e.__class__.__name__)

        choice = completion.choices[0] if getattr(completion, "choices", None) else None
        text = choice.message.content if choice is not None and getattr(choice, "message", None) else None
        if not text:
            LOG.error("Vision model %s returned no text", model)
            return VisionResponse.failure(VisionErrorKind.PARSE_ERROR, "No text found in API response")
        LOG.info("Vision model %s answered (%d chars)", model, len(text))
        return VisionResponse(text=text, success=True)


def _scavenge_json(text: str) -> Optional[Dict[str, Any]]:
    """Best-effort: find a JSON object in model output (fenced or inline)."""
    if not text:
        return None
    fenced = _FENCE_RE.search(text)
    if fenced:
        text = fenced.group(1)
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    for j in range(end, start, -1):
        try:
            data = json.loads(text[start : j + 1])
        except ValueError:
            continue
        return data if isinstance(data, dict) else None
    return None


def _valid_date(value: Any) -> Optional[str]:
    if not isinstance(value, str) or not _DATE_RE.fullmatch(value.strip()):
        return None
    try:
        datetime.strptime(value.strip(), "%Y-%m-%d")
    except ValueError:
        return None
    return value.strip()


def _confidence(value: Any) -> float:
    try:
        conf = float(value)
    except (TypeError, ValueError):
        return DEFAULT_MODEL_CONFIDENCE
    if conf <= 0:
        return DEFAULT_MODEL_CONFIDENCE
    return min(conf, 1.0)


class RemoteModelStrategy:
    name = "remote"

    def __init__(self, client: VisionModelClient, *, prompt: str = TRACKING_PROMPT) -> None:
        self.client = client
        self.prompt = prompt

    def recognize(
        self,
        image_bytes: bytes,
        *,
        mime_type: Optional[str] = None,
        filename: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> OcrResult:
        request = VisionRequest(
            prompt=self.prompt,
            image_data=base64.b64encode(image_bytes).decode("ascii"),
            mime_type=mime_type or "image/jpeg",
        )
        response = self.client.generate(request)
        if not response.success:
            err = response.error
            if err is not None and err.kind is VisionErrorKind.CONFIG_MISSING:
                return OcrResult()
            return OcrResult(error=str(err) if err else "vision call failed")
        return self.interpret(response.text)

    def interpret(self, text: str) -> OcrResult:
        """Turn model output into a candidate.

        JSON values are only trusted when the tracking number has the expected
        shape; anything else falls back to the text grammar.
        """
        data = _scavenge_json(text) or {}
        date_candidate = _valid_date(data.get("date"))
        tracking = data.get("trackingNumber")
        if isinstance(tracking, str) and is_tracking_number(tracking):
            return OcrResult(
                tracking_number_candidate=tracking.strip(),
                date_candidate=date_candidate,
                confidence=_confidence(data.get("confidence")),
                raw_text=text,
            )
        candidate = extract_tracking_number(text)
        if candidate:
            LOG.debug("JSON shortcut unusable; grammar found %s", candidate)
        return OcrResult(
            tracking_number_candidate=candidate,
            date_candidate=date_candidate,
            confidence=DEFAULT_MODEL_CONFIDENCE if candidate else 0.0,
            raw_text=text,
        )
