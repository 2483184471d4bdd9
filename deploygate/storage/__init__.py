from __future__ import annotations

from functools import lru_cache

from deploygate.config import STORAGE_BACKENDS, get_storage_backend_name
from deploygate.errors import ConfigurationError
from deploygate.storage.base import StorageBackend


@lru_cache(maxsize=1)
def get_storage_backend() -> StorageBackend:
    """
    Process-wide backend chosen by DEPLOYGATE_STORAGE_BACKEND. Call
    ``get_storage_backend.cache_clear()`` after changing the environment.
    """
    backend = get_storage_backend_name()
    if backend == "sqlite":
        from deploygate.storage.sqlite_impl import SQLiteStorageBackend

        return SQLiteStorageBackend()
    if backend == "postgres":
        from deploygate.storage.postgres_impl import PostgresStorageBackend

        return PostgresStorageBackend()
    raise ConfigurationError(
        f"unknown storage backend: {backend!r}",
        reason_code="CONFIG_INVALID",
        details={"backend": backend, "allowed": list(STORAGE_BACKENDS)},
    )
