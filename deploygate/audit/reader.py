from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional, Tuple

from deploygate.audit.recorder import row_to_entry
from deploygate.audit.types import AuditEntry, AuditFilters
from deploygate.storage import get_storage_backend
from deploygate.storage.base import StorageBackend, resolve_tenant_id
from deploygate.storage.migrations import apply_migrations
from deploygate.utils.timeutil import to_iso


class AuditQuery:
    """
    Lazy, restartable sequence of audit entries, newest first.

    Nothing is read until iteration starts; every ``iter()`` call starts a
    fresh keyset-paginated scan, so the same query object can be replayed.
    """

    def __init__(self, storage: StorageBackend, tenant_id: str, filters: AuditFilters):
        self._storage = storage
        self._tenant_id = tenant_id
        self.filters = filters

    def _base_clause(self) -> Tuple[str, List[Any]]:
        clause = "tenant_id = ?"
        params: List[Any] = [self._tenant_id]
        f = self.filters
        if f.resource_id:
            clause += " AND resource_id = ?"
            params.append(f.resource_id)
        if f.resource_type:
            clause += " AND resource_type = ?"
            params.append(f.resource_type)
        if f.action:
            clause += " AND action = ?"
            params.append(f.action)
        if f.user_id:
            clause += " AND user_id = ?"
            params.append(f.user_id)
        if f.from_ts is not None:
            clause += " AND timestamp >= ?"
            params.append(to_iso(f.from_ts))
        if f.to_ts is not None:
            clause += " AND timestamp <= ?"
            params.append(to_iso(f.to_ts))
        return clause, params

    def _page(self, cursor: Optional[Tuple[str, int]], size: int) -> List[Dict[str, Any]]:
        clause, params = self._base_clause()
        if cursor is not None:
            clause += " AND (timestamp < ? OR (timestamp = ? AND seq < ?))"
            params.extend([cursor[0], cursor[0], cursor[1]])
        query = f"SELECT * FROM audit_entries WHERE {clause} ORDER BY timestamp DESC, seq DESC LIMIT ?"
        params.append(size)
        return self._storage.fetchall(query, params)

    def __iter__(self) -> Iterator[AuditEntry]:
        remaining = self.filters.limit
        cursor: Optional[Tuple[str, int]] = None
        while remaining is None or remaining > 0:
            size = self.filters.page_size if remaining is None else min(self.filters.page_size, remaining)
            rows = self._page(cursor, size)
            for row in rows:
                yield row_to_entry(row)
            if remaining is not None:
                remaining -= len(rows)
            if len(rows) < size:
                return
            last = rows[-1]
            cursor = (str(last["timestamp"]), int(last["seq"]))

    def first(self) -> Optional[AuditEntry]:
        for entry in self:
            return entry
        return None

    def to_list(self) -> List[AuditEntry]:
        return list(self)


class AuditReader:
    """
    Read-only access to tenant-scoped audit entries.
    """

    def __init__(self, tenant_id: Optional[str] = None, storage: Optional[StorageBackend] = None):
        self.tenant_id = resolve_tenant_id(tenant_id)
        self.storage = storage or get_storage_backend()
        apply_migrations(self.storage)

    def query(self, filters: Optional[AuditFilters] = None, **kwargs: Any) -> AuditQuery:
        if filters is None:
            filters = AuditFilters(**kwargs)
        elif kwargs:
            filters = filters.model_copy(update=kwargs)
        return AuditQuery(self.storage, self.tenant_id, filters)

    def for_resource(self, resource_id: str, *, limit: Optional[int] = None) -> List[AuditEntry]:
        return self.query(resource_id=resource_id, limit=limit).to_list()

    def count(self, **kwargs: Any) -> int:
        clause, params = AuditQuery(self.storage, self.tenant_id, AuditFilters(**kwargs))._base_clause()
        row = self.storage.fetchone(f"SELECT COUNT(1) AS n FROM audit_entries WHERE {clause}", params)
        return int(row["n"]) if row else 0
