"""Local-first record store (SQLite) with additive schema migrations."""

from .db import RecordStore
from .errors import ConstraintViolation, InvalidRecord, RecordNotFound, StoreError
from .migrations import MIGRATIONS, SCHEMA_VERSION, Migration

__all__ = [
    "RecordStore",
    "ConstraintViolation",
    "InvalidRecord",
    "RecordNotFound",
    "StoreError",
    "MIGRATIONS",
    "SCHEMA_VERSION",
    "Migration",
]
