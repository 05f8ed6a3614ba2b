"""Record store backends for services, their latest health/info/streams state, categories and users."""

from __future__ import annotations

from servicehub.settings import DashboardSettings

from .base import ConflictError, MissingReferenceError, RecordStore, StoreError
from .memory import InMemoryStore
from .sqlite import SqliteStore


def create_store(settings: DashboardSettings) -> RecordStore:
    backend = settings.store_backend
    if backend == "memory":
        return InMemoryStore()
    if backend == "sqlite":
        return SqliteStore(settings.db_path)
    raise ValueError(f"Unsupported store backend: {backend}")


__all__ = [
    "ConflictError",
    "InMemoryStore",
    "MissingReferenceError",
    "RecordStore",
    "SqliteStore",
    "StoreError",
    "create_store",
]
