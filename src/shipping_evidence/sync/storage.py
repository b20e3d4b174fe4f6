import mimetypes
import os
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import requests

from ..logging import get_logger


@dataclass
class StorageConfig:
    base_url: Optional[str] = None
    token: Optional[str] = None
    # Public URL prefix for reading objects back; defaults to base_url.
    public_base_url: Optional[str] = None
    prefix: str = "evidence"
    timeout: int = 30

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url)


@dataclass
class UploadResult:
    success: bool
    remote_url: Optional[str] = None
    remote_path: Optional[str] = None
    error: Optional[str] = None


def _extension(filename: str, mime_type: Optional[str]) -> str:
    ext = os.path.splitext(filename or "")[1].lstrip(".").lower()
    if ext:
        return ext
    guessed = mimetypes.guess_extension(mime_type or "") if mime_type else None
    if guessed:
        return guessed.lstrip(".")
    return "bin"


def build_storage_path(
    prefix: str,
    filename: str,
    mime_type: Optional[str] = None,
    *,
    now_ms: Optional[int] = None,
    token: Optional[str] = None,
) -> str:
    """Return `<prefix>/<epoch_ms>_<random>.<ext>`.

    The random token keeps two photos uploaded in the same millisecond apart.
    """
    ms = int(now_ms if now_ms is not None else time.time() * 1000)
    rnd = token or uuid.uuid4().hex[:12]
    prefix = (prefix or "").strip("/")
    name = f"{ms}_{rnd}.{_extension(filename, mime_type)}"
    return f"{prefix}/{name}" if prefix else name


class ObjectStorageClient:
    """Thin client for an HTTP object store (PUT/DELETE by path, bearer token)."""

    def __init__(self, config: StorageConfig, *, session: Optional[requests.Session] = None) -> None:
        self.config = config
        self.log = get_logger("storage-client")
        self.s = session or requests.Session()
        if config.token:
            self.s.headers.update({"Authorization": f"Bearer {config.token}"})

    @property
    def is_configured(self) -> bool:
        return self.config.is_configured

    # ---------- helpers ----------
    def _url(self, path: str) -> str:
        return f"{(self.config.base_url or '').rstrip('/')}/{path.lstrip('/')}"

    def public_url(self, path: str) -> str:
        base = (self.config.public_base_url or self.config.base_url or "").rstrip("/")
        return f"{base}/{path.lstrip('/')}"

    # ---------- objects ----------
    def upload(self, data: bytes, *, filename: str, mime_type: Optional[str] = None) -> UploadResult:
        if not self.is_configured:
            return UploadResult(success=False, error="Cloud storage is not configured")
        if not data:
            return UploadResult(success=False, error=f"No local data for {filename!r}")
        path = build_storage_path(self.config.prefix, filename, mime_type)
        headers = {"Content-Type": mime_type or "application/octet-stream"}
        self.log.info(f"PUT object: {path} ({len(data)} bytes)")
        try:
            r = self.s.put(self._url(path), data=data, headers=headers, timeout=self.config.timeout)
        except requests.RequestException as e:
            self.log.error(f"Upload failed for {filename!r}: {e}")
            return UploadResult(success=False, error=f"Upload failed: {e}")
        if not 200 <= r.status_code < 300:
            self.log.error(f"Upload rejected for {filename!r}: HTTP {r.status_code}")
            return UploadResult(success=False, error=f"Upload rejected: HTTP {r.status_code}")
        return UploadResult(success=True, remote_url=self.public_url(path), remote_path=path)

    def delete(self, path: str) -> bool:
        """Delete one object; a missing object counts as deleted."""
        if not self.is_configured or not path:
            return False
        try:
            r = self.s.delete(self._url(path), timeout=self.config.timeout)
        except requests.RequestException as e:
            self.log.warning(f"Delete failed for {path}: {e}")
            return False
        if r.status_code == 404 or 200 <= r.status_code < 300:
            self.log.info(f"DELETE object: {path}")
            return True
        self.log.warning(f"Delete rejected for {path}: HTTP {r.status_code}")
        return False
