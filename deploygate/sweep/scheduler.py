from __future__ import annotations

import hashlib
import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from deploygate.approvals.types import OPEN_STATUSES
from deploygate.config import get_sweep_interval_seconds, is_sweep_enabled
from deploygate.engine import build_engine
from deploygate.storage import get_storage_backend
from deploygate.storage.schema import init_db
from deploygate.utils.timeutil import ensure_utc, to_iso


logger = logging.getLogger(__name__)

_LOCAL_TICK_LOCK = threading.Lock()
_SCHEDULER_THREAD: Optional[threading.Thread] = None
_STOP_EVENT = threading.Event()


def _advisory_lock_id(lock_scope: str) -> int:
    digest = hashlib.sha256(lock_scope.encode("utf-8")).digest()
    value = int.from_bytes(digest[:8], byteorder="big", signed=False)
    return value & ((1 << 63) - 1)


def _with_scheduler_lock(*, lock_scope: str, fn: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
    if not _LOCAL_TICK_LOCK.acquire(blocking=False):
        return {"ok": True, "skipped": True, "reason": "LOCAL_LOCK_HELD"}
    try:
        storage = get_storage_backend()
        if storage.name != "postgres":
            return fn()

        lock_id = _advisory_lock_id(lock_scope)
        with storage.connect() as conn:
            with conn.cursor() as cur:
                cur.execute("SELECT pg_try_advisory_lock(%s)", (lock_id,))
                row = cur.fetchone()
                if not row or not bool(row[0]):
                    return {"ok": True, "skipped": True, "reason": "POSTGRES_LOCK_HELD"}
            try:
                return fn()
            finally:
                with conn.cursor() as cur:
                    cur.execute("SELECT pg_advisory_unlock(%s)", (lock_id,))
                conn.commit()
    finally:
        _LOCAL_TICK_LOCK.release()


def list_sweep_tenants(tenant_id: Optional[str] = None) -> List[str]:
    """
    Tenants with lock state, lock windows or open approval requests.
    """
    if tenant_id:
        return [tenant_id]
    init_db()
    placeholders = ", ".join("?" for _ in OPEN_STATUSES)
    rows = get_storage_backend().fetchall(
        f"""
        SELECT tenant_id FROM environment_locks
        UNION
        SELECT tenant_id FROM environment_lock_windows
        UNION
        SELECT tenant_id FROM approval_requests WHERE status IN ({placeholders})
        """,
        tuple(status.value for status in OPEN_STATUSES),
    )
    return sorted(str(row["tenant_id"]) for row in rows)


def tick(*, tenant_id: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """
    One sweep pass: due auto-relocks, scheduled window transitions and
    approval expirations for every tenant. Every write is conditional, so
    overlapping passes on other instances only produce no-ops.
    """
    at = ensure_utc(now)
    scope = f"deploygate:sweep_tick:{tenant_id or '*'}"

    def _run_tick() -> Dict[str, Any]:
        tenants = list_sweep_tenants(tenant_id=tenant_id)
        report: Dict[str, Any] = {
            "ok": True,
            "generated_at": to_iso(at),
            "tenant_count": len(tenants),
            "tenants": [],
        }
        for tenant in tenants:
            result = build_engine(tenant).sweep(at)
            report["tenants"].append(result)
            if result["relocked"] or result["schedule_transitions"] or result["expired_requests"]:
                logger.info(
                    "sweep tenant=%s relocked=%s transitions=%s expired=%s",
                    tenant,
                    len(result["relocked"]),
                    len(result["schedule_transitions"]),
                    len(result["expired_requests"]),
                )
        return report

    return _with_scheduler_lock(lock_scope=scope, fn=_run_tick)


def _scheduler_loop() -> None:
    interval_seconds = get_sweep_interval_seconds()
    while not _STOP_EVENT.wait(max(1, interval_seconds)):
        try:
            tick()
        except Exception:
            logger.exception("sweep tick failed")


def start_sweep_scheduler() -> Dict[str, Any]:
    global _SCHEDULER_THREAD
    if not is_sweep_enabled():
        return {"started": False, "reason": "DISABLED"}
    if _SCHEDULER_THREAD is not None and _SCHEDULER_THREAD.is_alive():
        return {"started": True, "reason": "ALREADY_RUNNING"}
    _STOP_EVENT.clear()
    thread = threading.Thread(target=_scheduler_loop, name="deploygate-sweep", daemon=True)
    thread.start()
    _SCHEDULER_THREAD = thread
    return {"started": True, "reason": "STARTED"}


def stop_sweep_scheduler() -> Dict[str, Any]:
    global _SCHEDULER_THREAD
    if _SCHEDULER_THREAD is None:
        return {"stopped": True, "reason": "NOT_RUNNING"}
    _STOP_EVENT.set()
    _SCHEDULER_THREAD.join(timeout=2.0)
    _SCHEDULER_THREAD = None
    return {"stopped": True, "reason": "STOPPED"}


def scheduler_status() -> Dict[str, Any]:
    running = _SCHEDULER_THREAD is not None and _SCHEDULER_THREAD.is_alive()
    return {
        "enabled": is_sweep_enabled(),
        "running": running,
        "interval_seconds": get_sweep_interval_seconds(),
    }
