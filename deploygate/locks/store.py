from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from deploygate.locks.types import ScheduledWindow
from deploygate.storage import get_storage_backend
from deploygate.storage.base import StorageBackend, resolve_tenant_id
from deploygate.storage.migrations import apply_migrations
from deploygate.utils.timeutil import to_iso, utc_now


_STATE_COLUMNS = (
    "lock_type",
    "reason",
    "set_by",
    "set_at",
    "auto_relock_at",
    "relock_type",
    "ticket_id",
    "effective_lock_type",
    "effective_source",
)


class LockStore:
    """
    Versioned lock rows, one per (tenant, environment), plus persisted lock windows.

    ``save`` is a compare-and-swap on ``version``: a missing row is inserted at
    version 1, an existing row is only updated when its version still matches.
    """

    def __init__(self, tenant_id: Optional[str] = None, storage: Optional[StorageBackend] = None):
        self.tenant_id = resolve_tenant_id(tenant_id)
        self.storage = storage or get_storage_backend()
        apply_migrations(self.storage)

    def get(self, environment_id: str) -> Optional[Dict[str, Any]]:
        return self.storage.fetchone(
            "SELECT * FROM environment_locks WHERE tenant_id = ? AND environment_id = ?",
            (self.tenant_id, environment_id),
        )

    def save(self, environment_id: str, state: Dict[str, Any], *, expected_version: int) -> int:
        values = [_db_value(state.get(column)) for column in _STATE_COLUMNS]
        updated_at = to_iso(utc_now())
        if expected_version == 0:
            self.storage.insert_unique(
                f"""
                INSERT INTO environment_locks (
                    tenant_id, environment_id, {", ".join(_STATE_COLUMNS)}, version, updated_at
                ) VALUES (?, ?, {", ".join("?" for _ in _STATE_COLUMNS)}, 1, ?)
                """,
                (self.tenant_id, environment_id, *values, updated_at),
                conflict_message=f"lock for {environment_id!r} was created concurrently",
                details={"environment": environment_id},
            )
            return 1

        assignments = ", ".join(f"{column} = ?" for column in _STATE_COLUMNS)
        self.storage.update_versioned(
            f"""
            UPDATE environment_locks
            SET {assignments}, version = version + 1, updated_at = ?
            WHERE tenant_id = ? AND environment_id = ? AND version = ?
            """,
            (*values, updated_at, self.tenant_id, environment_id, int(expected_version)),
            conflict_message=f"lock for {environment_id!r} changed concurrently",
            details={"environment": environment_id, "expected_version": expected_version},
        )
        return int(expected_version) + 1

    def due_for_relock(self, now: datetime) -> List[str]:
        rows = self.storage.fetchall(
            """
            SELECT environment_id FROM environment_locks
            WHERE tenant_id = ? AND auto_relock_at IS NOT NULL AND auto_relock_at <= ?
            ORDER BY auto_relock_at ASC
            """,
            (self.tenant_id, to_iso(now)),
        )
        return [str(row["environment_id"]) for row in rows]

    def environments(self) -> List[str]:
        rows = self.storage.fetchall(
            """
            SELECT environment_id FROM environment_locks WHERE tenant_id = ?
            UNION
            SELECT environment_id FROM environment_lock_windows WHERE tenant_id = ?
            """,
            (self.tenant_id, self.tenant_id),
        )
        return sorted(str(row["environment_id"]) for row in rows)

    def list_windows(self, environment_id: str) -> List[Tuple[str, ScheduledWindow]]:
        rows = self.storage.fetchall(
            """
            SELECT window_id, schedule_json FROM environment_lock_windows
            WHERE tenant_id = ? AND environment_id = ?
            ORDER BY position ASC
            """,
            (self.tenant_id, environment_id),
        )
        return [(str(row["window_id"]), ScheduledWindow.model_validate_json(row["schedule_json"])) for row in rows]

    def add_window(self, environment_id: str, window: ScheduledWindow, *, created_by: str, now: datetime) -> str:
        row = self.storage.fetchone(
            "SELECT COALESCE(MAX(position), 0) AS pos FROM environment_lock_windows WHERE tenant_id = ? AND environment_id = ?",
            (self.tenant_id, environment_id),
        )
        window_id = uuid.uuid4().hex
        self.storage.execute(
            """
            INSERT INTO environment_lock_windows (
                tenant_id, window_id, environment_id, name, lock_type, schedule_json,
                reason, created_by, created_at, position
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                self.tenant_id,
                window_id,
                environment_id,
                window.name,
                window.lock_type.value,
                window.model_dump_json(),
                window.reason,
                created_by,
                to_iso(now),
                int(row["pos"] if row else 0) + 1,
            ),
        )
        return window_id


def _db_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_iso(value)
    if hasattr(value, "value"):
        return value.value
    if isinstance(value, (dict, list)):
        return json.dumps(value, sort_keys=True)
    return value
