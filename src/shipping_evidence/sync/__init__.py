"""Background upload of record photos to object storage."""

from .coordinator import SyncCoordinator, SyncError, SyncOutcome
from .storage import ObjectStorageClient, StorageConfig, UploadResult, build_storage_path

__all__ = [
    "SyncCoordinator",
    "SyncError",
    "SyncOutcome",
    "ObjectStorageClient",
    "StorageConfig",
    "UploadResult",
    "build_storage_path",
]
