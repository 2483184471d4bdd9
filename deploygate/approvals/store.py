from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from deploygate.approvals.types import OPEN_STATUSES, ApprovalRequest, NotificationEvent
from deploygate.storage import get_storage_backend
from deploygate.storage.base import StorageBackend, resolve_tenant_id
from deploygate.storage.migrations import apply_migrations
from deploygate.utils.canonical import canonical_json
from deploygate.utils.timeutil import parse_iso, to_iso, utc_now


def _row_to_request(row: Dict[str, Any]) -> ApprovalRequest:
    return ApprovalRequest(
        request_id=row["request_id"],
        tenant_id=row["tenant_id"],
        execution_ref=row.get("execution_ref"),
        environment=row["environment"],
        commit_sha=row["commit_sha"],
        generation=int(row["generation"]),
        requested_by=row["requested_by"],
        requested_role=row.get("requested_role"),
        required_approvals=int(row["required_approvals"]),
        required_roles=json.loads(row["required_roles_json"] or "[]"),
        votes=json.loads(row["votes_json"] or "[]"),
        status=row["status"],
        created_at=parse_iso(row["created_at"]),
        expires_at=parse_iso(row["expires_at"]),
        block_self_approval=bool(row["block_self_approval"]),
        require_distinct_approvers=bool(row["require_distinct_approvers"]),
        resolution_reason_code=row.get("resolution_reason_code"),
        resolved_at=parse_iso(row.get("resolved_at")),
        version=int(row["version"]),
    )


def _votes_json(request: ApprovalRequest) -> str:
    return canonical_json([vote.model_dump(mode="json") for vote in request.votes])


class ApprovalStore:
    """
    Persistence for approval requests and the notification outbox.
    """

    def __init__(self, tenant_id: Optional[str] = None, storage: Optional[StorageBackend] = None):
        self.tenant_id = resolve_tenant_id(tenant_id)
        self.storage = storage or get_storage_backend()
        apply_migrations(self.storage)

    def get(self, request_id: str) -> Optional[ApprovalRequest]:
        row = self.storage.fetchone(
            "SELECT * FROM approval_requests WHERE tenant_id = ? AND request_id = ?",
            (self.tenant_id, request_id),
        )
        return _row_to_request(row) if row else None

    def latest_for_context(self, environment: str, commit_sha: str) -> Optional[ApprovalRequest]:
        row = self.storage.fetchone(
            """
            SELECT * FROM approval_requests
            WHERE tenant_id = ? AND environment = ? AND commit_sha = ?
            ORDER BY generation DESC
            LIMIT 1
            """,
            (self.tenant_id, environment, commit_sha),
        )
        return _row_to_request(row) if row else None

    def insert(self, request: ApprovalRequest) -> None:
        self.storage.insert_unique(
            """
            INSERT INTO approval_requests (
                tenant_id, request_id, execution_ref, environment, commit_sha, generation,
                requested_by, requested_role, required_approvals, required_roles_json, votes_json,
                status, created_at, expires_at, block_self_approval, require_distinct_approvers,
                resolution_reason_code, resolved_at, version, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                self.tenant_id,
                request.request_id,
                request.execution_ref,
                request.environment,
                request.commit_sha,
                request.generation,
                request.requested_by,
                request.requested_role,
                request.required_approvals,
                canonical_json([role.value for role in request.required_roles]),
                _votes_json(request),
                request.status.value,
                to_iso(request.created_at),
                to_iso(request.expires_at),
                1 if request.block_self_approval else 0,
                1 if request.require_distinct_approvers else 0,
                request.resolution_reason_code,
                to_iso(request.resolved_at),
                request.version,
                to_iso(utc_now()),
            ),
            conflict_message="approval request for this deployment context already exists",
            details={
                "environment": request.environment,
                "commit_sha": request.commit_sha,
                "generation": request.generation,
            },
        )

    def update(self, request: ApprovalRequest, *, expected_version: int) -> ApprovalRequest:
        """
        Write status and votes only if nobody else moved the request since
        ``expected_version`` was read.
        """
        self.storage.update_versioned(
            """
            UPDATE approval_requests
            SET votes_json = ?, status = ?, resolution_reason_code = ?, resolved_at = ?,
                version = version + 1, updated_at = ?
            WHERE tenant_id = ? AND request_id = ? AND version = ?
            """,
            (
                _votes_json(request),
                request.status.value,
                request.resolution_reason_code,
                to_iso(request.resolved_at),
                to_iso(utc_now()),
                self.tenant_id,
                request.request_id,
                int(expected_version),
            ),
            conflict_message=f"approval request {request.request_id} changed concurrently",
            details={"request_id": request.request_id, "expected_version": expected_version},
        )
        return request.model_copy(update={"version": int(expected_version) + 1})

    def due_for_expiry(self, now: datetime) -> List[str]:
        placeholders = ", ".join("?" for _ in OPEN_STATUSES)
        rows = self.storage.fetchall(
            f"""
            SELECT request_id FROM approval_requests
            WHERE tenant_id = ? AND status IN ({placeholders}) AND expires_at < ?
            ORDER BY expires_at ASC
            """,
            (self.tenant_id, *[status.value for status in OPEN_STATUSES], to_iso(now)),
        )
        return [str(row["request_id"]) for row in rows]

    def add_notification(self, event: NotificationEvent) -> None:
        self.storage.execute(
            """
            INSERT INTO approval_notifications (tenant_id, event_id, request_id, environment, payload_json, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                self.tenant_id,
                event.event_id,
                event.request_id,
                event.environment,
                canonical_json(event.payload),
                to_iso(event.created_at),
            ),
        )

    def list_notifications(
        self,
        *,
        request_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[NotificationEvent]:
        query = "SELECT * FROM approval_notifications WHERE tenant_id = ?"
        params: List[Any] = [self.tenant_id]
        if request_id:
            query += " AND request_id = ?"
            params.append(request_id)
        if since is not None:
            query += " AND created_at > ?"
            params.append(to_iso(since))
        query += " ORDER BY created_at ASC, event_id ASC LIMIT ?"
        params.append(int(limit))
        return [
            NotificationEvent(
                event_id=row["event_id"],
                request_id=row["request_id"],
                environment=row["environment"],
                payload=json.loads(row["payload_json"] or "{}"),
                created_at=parse_iso(row["created_at"]),
            )
            for row in self.storage.fetchall(query, params)
        ]
