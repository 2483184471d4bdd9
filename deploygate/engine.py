from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from deploygate.approvals.engine import ApprovalWorkflowEngine
from deploygate.approvals.notifications import NotificationDispatcher
from deploygate.audit.reader import AuditReader
from deploygate.audit.recorder import AuditRecorder
from deploygate.branching.resolver import BranchResolver
from deploygate.decision.orchestrator import GovernanceOrchestrator
from deploygate.decision.types import DeploymentRequest, GovernanceDecision
from deploygate.governance.config import GovernanceConfig, load_governance_config
from deploygate.locks.registry import LockRegistry
from deploygate.observability.internal_metrics import incr
from deploygate.rbac.authorizer import RBACAuthorizer
from deploygate.storage.base import StorageBackend
from deploygate.utils.timeutil import ensure_utc, to_iso


class GovernanceEngine:
    """
    Wires resolver, lock registry, RBAC, approvals and audit for one tenant
    against one configuration snapshot. Cheap to build; holds no mutable
    state beyond what lives in storage.
    """

    def __init__(
        self,
        config: GovernanceConfig,
        *,
        tenant_id: Optional[str] = None,
        storage: Optional[StorageBackend] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.config = config
        self.matrix = config.permission_matrix()
        self.authorizer = RBACAuthorizer(self.matrix)
        self.resolver = BranchResolver(config.branch_rules, tie_break=config.tie_break)
        self.recorder = AuditRecorder(tenant_id=tenant_id, storage=storage)
        self.reader = AuditReader(tenant_id=self.recorder.tenant_id, storage=self.recorder.storage)
        self.locks = LockRegistry(config, self.authorizer, self.recorder)
        self.approvals = ApprovalWorkflowEngine(config, self.authorizer, self.recorder, dispatcher=dispatcher)
        self.orchestrator = GovernanceOrchestrator(
            self.resolver,
            self.locks,
            self.authorizer,
            self.approvals,
            self.recorder,
        )

    @property
    def tenant_id(self) -> str:
        return self.recorder.tenant_id

    def decide(self, request: DeploymentRequest, now: Optional[datetime] = None) -> GovernanceDecision:
        return self.orchestrator.decide(request, now)

    def sweep(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        at = ensure_utc(now)
        relocked = self.locks.relock_due(at)
        transitions = self.locks.sync_scheduled_states(at)
        expired = self.approvals.expire_due(at)
        changed = len(relocked) + len(transitions) + len(expired)
        if changed:
            incr("sweep_transitions_total", changed, tenant_id=self.tenant_id)
        return {
            "tenant_id": self.tenant_id,
            "evaluated_at": to_iso(at),
            "relocked": relocked,
            "schedule_transitions": transitions,
            "expired_requests": expired,
        }


def build_engine(
    tenant_id: Optional[str] = None,
    *,
    config: Optional[GovernanceConfig] = None,
    config_path: Optional[str] = None,
    storage: Optional[StorageBackend] = None,
) -> GovernanceEngine:
    return GovernanceEngine(
        config or load_governance_config(config_path),
        tenant_id=tenant_id,
        storage=storage,
    )
