"""Persistence backends for the memory engine."""

from ..config import StorageConfig
from .interfaces import PersistenceBackend
from .json_store import JsonFileBackend
from .memory_backend import InMemoryBackend
from .sqlite_store import SQLiteBackend


def create_backend(config: StorageConfig | None = None) -> PersistenceBackend:
    """Build the backend selected by ``config.backend``."""
    config = config or StorageConfig()
    if config.backend == "json":
        return JsonFileBackend(config.json_dir)
    if config.backend == "sqlite":
        return SQLiteBackend(config.sqlite_db_path)
    return InMemoryBackend()


__all__ = [
    "PersistenceBackend",
    "InMemoryBackend",
    "JsonFileBackend",
    "SQLiteBackend",
    "create_backend",
]
