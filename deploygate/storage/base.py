from __future__ import annotations

import os
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from deploygate.config import is_tenant_required
from deploygate.errors import ConflictError

DEFAULT_TENANT_ID = "default"


def resolve_tenant_id(tenant_id: Optional[str] = None, *, allow_none: bool = False) -> Optional[str]:
    """
    Explicit tenant first, then DEPLOYGATE_TENANT_ID. With tenant enforcement
    off a missing tenant becomes ``default``; otherwise it is a ValueError.
    """
    raw = str(tenant_id or os.getenv("DEPLOYGATE_TENANT_ID") or "").strip()
    if raw:
        return raw
    if allow_none:
        return None
    if not is_tenant_required():
        return DEFAULT_TENANT_ID
    raise ValueError("tenant_id is required. Provide --tenant or set DEPLOYGATE_TENANT_ID.")


class StorageBackend(ABC):
    """
    Repository storage for lock state, approval requests and the audit log.

    Writes that must be atomic with their audit entry run inside
    ``transaction()``. Row-versioned records are written through
    ``insert_unique()`` and ``update_versioned()``, which turn a lost
    optimistic race into ``ConflictError`` for the caller's retry loop.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        raise NotImplementedError

    @contextmanager
    @abstractmethod
    def connect(self) -> Iterator[Any]:
        raise NotImplementedError

    @abstractmethod
    def execute(self, query: str, params: Sequence[Any] = ()) -> int:
        """Run one statement and return the number of affected rows."""
        raise NotImplementedError

    @abstractmethod
    def fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def fetchall(self, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @contextmanager
    @abstractmethod
    def transaction(self) -> Iterator["StorageBackend"]:
        """
        Statements issued inside share one connection and commit together.
        """
        raise NotImplementedError

    @abstractmethod
    def in_transaction(self) -> bool:
        raise NotImplementedError

    def is_unique_violation(self, exc: BaseException) -> bool:
        lowered = str(exc).lower()
        return "unique" in lowered or "duplicate key" in lowered

    def insert_unique(
        self,
        query: str,
        params: Sequence[Any],
        *,
        conflict_message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Insert a first-version row; a concurrent insert of the same key is a conflict."""
        try:
            self.execute(query, params)
        except Exception as exc:
            if self.is_unique_violation(exc):
                raise ConflictError(conflict_message, details=details) from exc
            raise

    def update_versioned(
        self,
        query: str,
        params: Sequence[Any],
        *,
        conflict_message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """
        Run an ``UPDATE ... WHERE version = ?`` that must touch exactly one row.
        Zero rows means another writer moved the record first.
        """
        if self.execute(query, params) != 1:
            raise ConflictError(conflict_message, details=details)
