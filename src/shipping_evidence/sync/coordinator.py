from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Dict, Iterator, List, Optional, Tuple

from ..domain.models import NewShippingRecord, ShippingRecord, SyncStatus
from ..logging import get_logger
from ..store import RecordStore, StoreError
from .storage import ObjectStorageClient, UploadResult


LOG = get_logger("sync-coordinator")


class SyncError(Exception):
    """Raised by the cloud-first create path when uploads cannot complete."""


@dataclass
class SyncOutcome:
    record_id: int
    status: Optional[SyncStatus]
    skipped: bool = False
    error: Optional[str] = None
    uploaded: int = 0

    @property
    def ok(self) -> bool:
        return self.status is SyncStatus.SYNCED


@dataclass
class _LockEntry:
    lock: threading.Lock = field(default_factory=threading.Lock)
    users: int = 0


class SyncCoordinator:
    """Uploads record photos to object storage and writes the result back.

    Expected failures (missing config, network, rejected upload) and unexpected
    exceptions alike end up as persisted `failed` state; `sync_record` never
    raises. Attempts on the same record are serialized.
    """

    def __init__(self, store: RecordStore, storage: ObjectStorageClient, *, max_workers: int = 2) -> None:
        self.store = store
        self.storage = storage
        self._executor = ThreadPoolExecutor(max_workers=max(1, int(max_workers)), thread_name_prefix="sync")
        self._locks: Dict[int, _LockEntry] = {}
        self._locks_guard = threading.Lock()
        self._closed = False

    # ---------- lifecycle ----------
    def close(self, wait: bool = True) -> None:
        if self._closed:
            return
        self._closed = True
        self._executor.shutdown(wait=wait)
        LOG.debug("Sync executor shut down")

    def __enter__(self) -> "SyncCoordinator":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    @contextmanager
    def _record_lock(self, record_id: int) -> Iterator[None]:
        """Hold the record's lock; the entry is dropped once no thread holds or waits on it."""
        key = int(record_id)
        with self._locks_guard:
            entry = self._locks.get(key)
            if entry is None:
                entry = self._locks[key] = _LockEntry()
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[key]

    # ---------- background ----------
    def submit(self, record_id: int) -> Future:
        """Start a background sync; the returned future can be ignored."""
        if self._closed:
            raise RuntimeError("SyncCoordinator is closed")
        LOG.debug(f"Queued background sync for record id={record_id}")
        return self._executor.submit(self.sync_record, record_id)

    # ---------- sync ----------
    def sync_record(self, record_id: int) -> SyncOutcome:
        if not self.storage.is_configured:
            LOG.debug(f"Cloud storage not configured; skipping sync for record id={record_id}")
            return SyncOutcome(record_id=record_id, status=None, skipped=True)

        with self._record_lock(record_id):
            try:
                return self._sync_locked(record_id)
            except Exception as e:
                LOG.exception(f"Unexpected error while syncing record id={record_id}")
                message = f"Unexpected sync error: {e}"
                self._mark_failed(record_id, message)
                return SyncOutcome(record_id=record_id, status=SyncStatus.FAILED, error=message)

    def _sync_locked(self, record_id: int) -> SyncOutcome:
        record = self.store.get(record_id)
        if record is None:
            LOG.warning(f"Sync requested for unknown record id={record_id}")
            return SyncOutcome(record_id=record_id, status=None, skipped=True, error="Record not found")

        todo = [m for m in record.media if not m.is_uploaded]
        if not todo:
            if record.sync_status is not SyncStatus.SYNCED:
                self.store.apply_sync_state(record_id, SyncStatus.SYNCED)
            LOG.info(f"Record id={record_id} already synced")
            return SyncOutcome(record_id=record_id, status=SyncStatus.SYNCED)

        self.store.apply_sync_state(record_id, SyncStatus.UPLOADING)
        LOG.info(f"Uploading {len(todo)} photo(s) for record id={record_id}")

        uploaded: List[Tuple[int, UploadResult]] = []
        for media in todo:
            if not media.has_local_payload:
                result = UploadResult(success=False, error=f"No local data for {media.filename!r}")
            else:
                try:
                    result = self.storage.upload(media.payload, filename=media.filename, mime_type=media.mime_type)
                except Exception:
                    self._discard([r for _, r in uploaded])
                    raise
            if not result.success:
                self._discard([r for _, r in uploaded])
                message = result.error or f"Upload failed for {media.filename!r}"
                self._mark_failed(record_id, message)
                LOG.warning(f"Sync failed for record id={record_id}: {message}")
                return SyncOutcome(record_id=record_id, status=SyncStatus.FAILED, error=message)
            uploaded.append((int(media.media_id), result))

        refs = [(media_id, r.remote_url, r.remote_path) for media_id, r in uploaded]
        try:
            self.store.apply_sync_state(record_id, SyncStatus.SYNCED, remote_refs=refs)
        except StoreError:
            # the record changed or vanished underneath us; do not leave orphans behind
            self._discard([r for _, r in uploaded])
            raise
        LOG.info(f"Record id={record_id} synced ({len(uploaded)} photo(s))")
        return SyncOutcome(record_id=record_id, status=SyncStatus.SYNCED, uploaded=len(uploaded))

    def _mark_failed(self, record_id: int, message: str) -> None:
        try:
            self.store.apply_sync_state(record_id, SyncStatus.FAILED, error=message)
        except StoreError as e:
            LOG.error(f"Could not record sync failure for record id={record_id}: {e}")

    def _discard(self, results: List[UploadResult]) -> None:
        for r in results:
            if r.remote_path:
                self.storage.delete(r.remote_path)

    # ---------- cloud-first ----------
    def create_cloud_first(self, new_record: NewShippingRecord) -> int:
        """Upload every photo first, then create the record already synced.

        Nothing is written locally when any upload fails.
        """
        if not self.storage.is_configured:
            raise SyncError("Cloud storage is not configured")
        results: List[UploadResult] = []
        media = []
        for item in new_record.media:
            if item.is_uploaded:
                media.append(item)
                continue
            try:
                result = self.storage.upload(item.payload or b"", filename=item.filename, mime_type=item.mime_type)
            except Exception:
                self._discard(results)
                raise
            if not result.success:
                self._discard(results)
                raise SyncError(result.error or f"Upload failed for {item.filename!r}")
            results.append(result)
            media.append(replace(item, remote_url=result.remote_url, storage_path=result.remote_path))

        try:
            record_id = self.store.create(
                replace(new_record, media=media, sync_status=SyncStatus.SYNCED, sync_error=None)
            )
        except StoreError:
            self._discard(results)
            raise
        LOG.info(f"Created cloud-first record id={record_id}")
        return record_id

    def release_media(self, record: ShippingRecord) -> int:
        """Best-effort delete of the remote copies a record owns; returns how many went away."""
        if not self.storage.is_configured:
            return 0
        released = 0
        for path in record.storage_paths:
            if self.storage.delete(path):
                released += 1
        if released:
            LOG.info(f"Released {released} remote object(s) for record id={record.id}")
        return released
