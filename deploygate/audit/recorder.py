from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from deploygate.audit.types import AUDIT_CHAIN_ROOT_HASH, AuditEntry
from deploygate.config import get_conflict_retry_attempts
from deploygate.errors import AuditWriteError, ConflictError
from deploygate.storage import get_storage_backend
from deploygate.storage.base import StorageBackend, resolve_tenant_id
from deploygate.storage.migrations import apply_migrations
from deploygate.utils.canonical import canonical_json, sha256_text
from deploygate.utils.timeutil import parse_iso, to_iso, utc_now


logger = logging.getLogger(__name__)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    raw = value.value if hasattr(value, "value") else value
    text = str(raw).strip()
    return text or None


def _canonical_entry_payload(
    *,
    tenant_id: str,
    entry_id: str,
    seq: int,
    timestamp: str,
    action: str,
    resource_type: str,
    resource_id: str,
    user_id: Optional[str],
    role: Optional[str],
    result: str,
    reason_code: Optional[str],
    details: Dict[str, Any],
    prev_hash: str,
) -> Dict[str, Any]:
    return {
        "tenant_id": tenant_id,
        "entry_id": entry_id,
        "seq": int(seq),
        "timestamp": timestamp,
        "action": action,
        "resource_type": resource_type,
        "resource_id": resource_id,
        "user_id": user_id,
        "role": role,
        "result": result,
        "reason_code": reason_code,
        "details": details or {},
        "prev_hash": prev_hash,
    }


def _compute_entry_hash(prev_hash: str, payload: Dict[str, Any]) -> str:
    return sha256_text(f"{prev_hash or AUDIT_CHAIN_ROOT_HASH}:{canonical_json(payload)}")


def row_to_entry(row: Dict[str, Any]) -> AuditEntry:
    details = row.get("details_json")
    if isinstance(details, str):
        details = json.loads(details) if details.strip() else {}
    return AuditEntry(
        entry_id=row["entry_id"],
        tenant_id=row["tenant_id"],
        seq=int(row["seq"]),
        timestamp=parse_iso(row["timestamp"]),
        action=row["action"],
        resource_type=row["resource_type"],
        resource_id=row["resource_id"],
        user_id=row.get("user_id"),
        role=row.get("role"),
        result=row["result"],
        reason_code=row.get("reason_code"),
        details=details or {},
        prev_hash=row["prev_hash"],
        entry_hash=row["entry_hash"],
    )


class AuditRecorder:
    """
    Appends hash-chained, immutable audit entries for one tenant.

    ``append`` joins the caller's open transaction so the audited write and its
    entry commit or roll back together. ``record`` is the standalone form and
    retries when a concurrent writer advanced the chain tip.
    """

    def __init__(self, tenant_id: Optional[str] = None, storage: Optional[StorageBackend] = None):
        self.tenant_id = resolve_tenant_id(tenant_id)
        self.storage = storage or get_storage_backend()
        apply_migrations(self.storage)

    def _chain_tip(self) -> Optional[Dict[str, Any]]:
        return self.storage.fetchone(
            """
            SELECT seq, entry_hash
            FROM audit_entries
            WHERE tenant_id = ?
            ORDER BY seq DESC
            LIMIT 1
            """,
            (self.tenant_id,),
        )

    def append(
        self,
        *,
        action: str,
        resource_type: str,
        resource_id: str,
        result: Any,
        timestamp: Optional[datetime] = None,
        user_id: Optional[str] = None,
        role: Any = None,
        reason_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> AuditEntry:
        entry_id = uuid.uuid4().hex
        stamp = to_iso(timestamp or utc_now())
        # Round-trip through JSON so the stored details are exactly what was hashed.
        clean_details = json.loads(canonical_json(details or {}))
        try:
            tip = self._chain_tip()
            seq = int(tip["seq"]) + 1 if tip else 1
            prev_hash = str(tip["entry_hash"]) if tip else AUDIT_CHAIN_ROOT_HASH
            payload = _canonical_entry_payload(
                tenant_id=self.tenant_id,
                entry_id=entry_id,
                seq=seq,
                timestamp=stamp,
                action=action,
                resource_type=resource_type,
                resource_id=str(resource_id),
                user_id=_text(user_id),
                role=_text(role),
                result=_text(result) or "",
                reason_code=_text(reason_code),
                details=clean_details,
                prev_hash=prev_hash,
            )
            entry_hash = _compute_entry_hash(prev_hash, payload)
            self.storage.execute(
                """
                INSERT INTO audit_entries (
                    tenant_id, entry_id, seq, timestamp, action, resource_type, resource_id,
                    user_id, role, result, reason_code, details_json, prev_hash, entry_hash, recorded_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    self.tenant_id,
                    entry_id,
                    seq,
                    stamp,
                    payload["action"],
                    payload["resource_type"],
                    payload["resource_id"],
                    payload["user_id"],
                    payload["role"],
                    payload["result"],
                    payload["reason_code"],
                    canonical_json(clean_details),
                    prev_hash,
                    entry_hash,
                    to_iso(utc_now()),
                ),
            )
        except Exception as exc:
            if self.storage.is_unique_violation(exc):
                raise ConflictError(
                    "audit chain tip moved during append",
                    details={"action": action, "resource_id": str(resource_id)},
                ) from exc
            raise AuditWriteError(
                f"audit append failed for {action} on {resource_type}/{resource_id}: {exc}",
                details={"action": action, "resource_id": str(resource_id)},
            ) from exc

        return AuditEntry(
            entry_id=entry_id,
            tenant_id=self.tenant_id,
            seq=seq,
            timestamp=parse_iso(stamp),
            action=payload["action"],
            resource_type=payload["resource_type"],
            resource_id=payload["resource_id"],
            user_id=payload["user_id"],
            role=payload["role"],
            result=payload["result"],
            reason_code=payload["reason_code"],
            details=clean_details,
            prev_hash=prev_hash,
            entry_hash=entry_hash,
        )

    def record(self, **fields: Any) -> AuditEntry:
        attempts = get_conflict_retry_attempts()
        for attempt in range(attempts):
            try:
                with self.storage.transaction():
                    return self.append(**fields)
            except ConflictError:
                logger.warning(
                    "audit chain conflict tenant=%s action=%s attempt=%s",
                    self.tenant_id,
                    fields.get("action"),
                    attempt + 1,
                )
                continue
        raise AuditWriteError(
            "unable to append audit entry after retries due to concurrent writers",
            details={"action": fields.get("action"), "attempts": attempts},
        )


def verify_audit_chain(*, tenant_id: Optional[str] = None, storage: Optional[StorageBackend] = None) -> Dict[str, Any]:
    backend = storage or get_storage_backend()
    apply_migrations(backend)
    effective_tenant = resolve_tenant_id(tenant_id)
    rows = backend.fetchall(
        "SELECT * FROM audit_entries WHERE tenant_id = ? ORDER BY seq ASC",
        (effective_tenant,),
    )
    expected_prev = AUDIT_CHAIN_ROOT_HASH
    expected_seq = 1
    checked = 0
    for row in rows:
        checked += 1
        row_seq = int(row.get("seq") or 0)
        if row_seq != expected_seq:
            return {
                "valid": False,
                "reason": "sequence gap",
                "tenant_id": effective_tenant,
                "checked": checked,
                "expected_seq": expected_seq,
                "actual_seq": row_seq,
                "entry_id": row.get("entry_id"),
            }
        prev_hash = str(row.get("prev_hash") or "")
        if prev_hash != expected_prev:
            return {
                "valid": False,
                "reason": "prev_hash mismatch",
                "tenant_id": effective_tenant,
                "checked": checked,
                "entry_id": row.get("entry_id"),
            }
        details = row.get("details_json")
        payload = _canonical_entry_payload(
            tenant_id=effective_tenant,
            entry_id=str(row.get("entry_id")),
            seq=row_seq,
            timestamp=str(row.get("timestamp")),
            action=str(row.get("action")),
            resource_type=str(row.get("resource_type")),
            resource_id=str(row.get("resource_id")),
            user_id=row.get("user_id"),
            role=row.get("role"),
            result=str(row.get("result") or ""),
            reason_code=row.get("reason_code"),
            details=json.loads(details) if isinstance(details, str) and details else {},
            prev_hash=prev_hash,
        )
        expected_hash = _compute_entry_hash(prev_hash, payload)
        if expected_hash != str(row.get("entry_hash") or ""):
            return {
                "valid": False,
                "reason": "entry_hash mismatch",
                "tenant_id": effective_tenant,
                "checked": checked,
                "entry_id": row.get("entry_id"),
            }
        expected_prev = expected_hash
        expected_seq += 1
    return {
        "valid": True,
        "tenant_id": effective_tenant,
        "checked": checked,
        "head_seq": expected_seq - 1,
        "head_hash": expected_prev,
    }
