from __future__ import annotations

from typing import Optional


class StoreError(Exception):
    """Base class for record store failures."""


class ConstraintViolation(StoreError):
    """The database rejected a write because of an index or schema constraint.

    Usually means the local database file is stale or incompatible; callers
    offer `RecordStore.reset()` as the recovery path.
    """

    def __init__(self, action: str, detail: str) -> None:
        super().__init__(f"{action} violated a storage constraint: {detail}")
        self.action = action
        self.detail = detail


class RecordNotFound(StoreError, LookupError):
    def __init__(self, record_id: int) -> None:
        super().__init__(f"Record {record_id} not found")
        self.record_id = record_id


class InvalidRecord(StoreError, ValueError):
    """Structural problem with a record payload (blank tracking number, no photo, ...)."""

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field
