from __future__ import annotations

from typing import Any, List, Optional

from .config import (
    load_db_path,
    load_ocr_strategy,
    load_storage,
    load_sync_workers,
    load_tesseract_lang,
    load_vision,
)
from .domain.models import NewShippingRecord, SearchFilter, ShippingRecord
from .export import ExportService
from .logging import get_logger
from .ocr import (
    ExtractionEngine,
    LocalRecognizerStrategy,
    OcrResult,
    RemoteModelStrategy,
    VisionModelClient,
)
from .ocr.results import ProgressCallback
from .store import RecordNotFound, RecordStore
from .sync import ObjectStorageClient, SyncCoordinator, SyncOutcome


LOG = get_logger("record-service")


def build_extraction_engine(dotenv_dir: str = ".") -> ExtractionEngine:
    """Pick the OCR strategy from OCR_STRATEGY (remote by default)."""
    if load_ocr_strategy(dotenv_dir) == "local":
        strategy: Any = LocalRecognizerStrategy(load_tesseract_lang(dotenv_dir))
    else:
        strategy = RemoteModelStrategy(VisionModelClient(load_vision(dotenv_dir)))
    LOG.info(f"OCR strategy: {strategy.name}")
    return ExtractionEngine(strategy)


class RecordService:
    """High-level flows used by the API and CLI.

    Saving is local-first: the record is written before any network call and
    the photo upload runs in the background. OCR only ever proposes values.
    """

    def __init__(
        self,
        store: RecordStore,
        coordinator: SyncCoordinator,
        engine: ExtractionEngine,
    ) -> None:
        self.store = store
        self.coordinator = coordinator
        self.engine = engine
        self.exporter = ExportService(store)

    @classmethod
    def from_environment(
        cls, dotenv_dir: str = ".", *, db_path: Optional[str] = None, migrate: bool = True
    ) -> "RecordService":
        """Build the service from env/.env; `migrate=False` opens a broken DB for `reset_database`."""
        store = RecordStore(db_path or load_db_path(dotenv_dir), root_dir=dotenv_dir, migrate=migrate)
        coordinator = SyncCoordinator(
            store,
            ObjectStorageClient(load_storage(dotenv_dir)),
            max_workers=load_sync_workers(dotenv_dir),
        )
        return cls(store, coordinator, build_extraction_engine(dotenv_dir))

    def close(self) -> None:
        self.coordinator.close()
        self.engine.close()

    def __enter__(self) -> "RecordService":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ---------- records ----------
    def create_record(self, new_record: NewShippingRecord, *, cloud_first: bool = False, wait: bool = False) -> int:
        """Save a record and kick off its upload.

        With `cloud_first` the photos are uploaded before anything is saved and
        a failed upload raises `SyncError`. Otherwise the save never depends on
        the network; `wait` runs the upload inline instead of in the background.
        """
        if cloud_first:
            return self.coordinator.create_cloud_first(new_record)
        record_id = self.store.create(new_record)
        if not self.coordinator.storage.is_configured:
            LOG.debug(f"Record id={record_id} stays local (no cloud storage configured)")
        elif wait:
            self.coordinator.sync_record(record_id)
        else:
            self.coordinator.submit(record_id)
        return record_id

    def get_record(self, record_id: int) -> ShippingRecord:
        record = self.store.get(record_id)
        if record is None:
            raise RecordNotFound(record_id)
        return record

    def list_records(self) -> List[ShippingRecord]:
        return self.store.list()

    def search_records(self, criteria: SearchFilter) -> List[ShippingRecord]:
        if criteria.is_empty():
            return self.store.list()
        return self.store.search(criteria)

    def update_record(self, record_id: int, **fields: Any) -> ShippingRecord:
        self.store.update(record_id, **fields)
        return self.get_record(record_id)

    def delete_record(self, record_id: int) -> None:
        """Remove remote copies first (best effort), then the local record."""
        record = self.get_record(record_id)
        self.coordinator.release_media(record)
        self.store.delete(record_id)

    def retry_sync(self, record_id: int) -> SyncOutcome:
        self.get_record(record_id)
        LOG.info(f"Retrying sync for record id={record_id}")
        return self.coordinator.sync_record(record_id)

    def reset_database(self) -> None:
        self.store.reset()

    # ---------- OCR ----------
    def extract(
        self,
        image_bytes: bytes,
        *,
        mime_type: Optional[str] = None,
        filename: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> OcrResult:
        return self.engine.extract(image_bytes, mime_type=mime_type, filename=filename, on_progress=on_progress)
