from __future__ import annotations

from collections import Counter, defaultdict
from threading import Lock
from typing import Any, Dict, Optional
import json
import logging
import uuid

from deploygate.storage import get_storage_backend
from deploygate.storage.base import resolve_tenant_id
from deploygate.storage.schema import init_db
from deploygate.utils.timeutil import to_iso, utc_now


logger = logging.getLogger(__name__)

_lock = Lock()
_counters_by_tenant = defaultdict(Counter)


def incr(
    metric: str,
    value: int = 1,
    tenant_id: Optional[str] = None,
    metadata: Optional[Dict[str, Any]] = None,
) -> None:
    effective_tenant = resolve_tenant_id(tenant_id)
    with _lock:
        _counters_by_tenant[effective_tenant][metric] += int(value)
    try:
        init_db()
        get_storage_backend().execute(
            """
            INSERT INTO metrics_events (tenant_id, event_id, metric_name, metric_value, created_at, metadata_json)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                effective_tenant,
                uuid.uuid4().hex,
                metric,
                int(value),
                to_iso(utc_now()),
                json.dumps(metadata or {}, sort_keys=True),
            ),
        )
    except Exception:
        # Metrics persistence must never break the decision path.
        logger.debug("metrics persistence failed metric=%s tenant=%s", metric, effective_tenant, exc_info=True)


def snapshot(tenant_id: Optional[str] = None, include_tenants: bool = False) -> Dict[str, Any]:
    with _lock:
        if tenant_id:
            effective_tenant = resolve_tenant_id(tenant_id)
            return dict(_counters_by_tenant.get(effective_tenant, Counter()))

        total = Counter()
        for tenant_counter in _counters_by_tenant.values():
            total.update(tenant_counter)
        result: Dict[str, Any] = dict(total)

        if include_tenants:
            result["_by_tenant"] = {
                tenant: dict(counter)
                for tenant, counter in sorted(_counters_by_tenant.items(), key=lambda item: item[0])
            }
        return result


def persisted_totals(tenant_id: Optional[str] = None) -> Dict[str, int]:
    init_db()
    rows = get_storage_backend().fetchall(
        """
        SELECT metric_name, SUM(metric_value) AS total
        FROM metrics_events
        WHERE tenant_id = ?
        GROUP BY metric_name
        ORDER BY metric_name
        """,
        (resolve_tenant_id(tenant_id),),
    )
    return {str(row["metric_name"]): int(row["total"] or 0) for row in rows}


def reset(tenant_id: Optional[str] = None) -> None:
    with _lock:
        if tenant_id:
            effective_tenant = resolve_tenant_id(tenant_id)
            _counters_by_tenant.pop(effective_tenant, None)
            return
        _counters_by_tenant.clear()
