from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from deploygate.approvals.engine import ApprovalWorkflowEngine
from deploygate.approvals.types import ApprovalRequest, ApprovalStatus
from deploygate.audit.recorder import AuditRecorder
from deploygate.audit.types import AuditAction, ResourceType
from deploygate.branching.resolver import BranchResolver
from deploygate.decision.types import DecisionStatus, DeploymentRequest, GovernanceDecision
from deploygate.errors import ConfigurationError
from deploygate.locks.registry import LockRegistry
from deploygate.observability.internal_metrics import incr
from deploygate.rbac.authorizer import RBACAuthorizer
from deploygate.rbac.types import Capability
from deploygate.utils.timeutil import ensure_utc


logger = logging.getLogger(__name__)


def _pending_reason(approval: ApprovalRequest) -> str:
    if approval.status == ApprovalStatus.REJECTED:
        return "APPROVAL_REJECTED"
    if approval.status == ApprovalStatus.EXPIRED:
        return "APPROVAL_EXPIRED"
    return "APPROVAL_PENDING"


class GovernanceOrchestrator:
    """
    One verdict per deployment request:

    1. resolve branch -> environment (no rule: BLOCKED / NO_BRANCH_MAPPING,
       ambiguous rules under strict tie-break: BLOCKED / CONFIG_INVALID)
    2. effective lock state (hard lock: BLOCKED / ENVIRONMENT_HARD_LOCKED, for every role)
    3. RBAC deploy capability (denied: BLOCKED / RBAC_DENIED)
    4. approval when the rule asks for it or the environment is soft-locked
    5. otherwise ALLOWED

    No lock is held across the steps. The verdict is only returned once its
    audit entry is written.
    """

    def __init__(
        self,
        resolver: BranchResolver,
        locks: LockRegistry,
        authorizer: RBACAuthorizer,
        approvals: ApprovalWorkflowEngine,
        recorder: AuditRecorder,
    ):
        self.resolver = resolver
        self.locks = locks
        self.authorizer = authorizer
        self.approvals = approvals
        self.recorder = recorder

    def decide_for(
        self,
        branch: str,
        commit_sha: str,
        user: str,
        role: str,
        now: Optional[datetime] = None,
        *,
        tag: Optional[str] = None,
        execution_ref: Optional[str] = None,
    ) -> GovernanceDecision:
        request = DeploymentRequest(
            branch=branch,
            commit_sha=commit_sha,
            requesting_user_id=user,
            requesting_role=role,
            tag=tag,
            execution_ref=execution_ref,
        )
        return self.decide(request, now)

    def decide(self, request: DeploymentRequest, now: Optional[datetime] = None) -> GovernanceDecision:
        at = ensure_utc(now)
        decision = self._evaluate(request, at)
        entry = self.recorder.record(
            action=AuditAction.GOVERNANCE_DECISION,
            resource_type=ResourceType.DEPLOYMENT,
            resource_id=request.execution_ref or request.commit_sha,
            result=decision.status.value,
            timestamp=at,
            user_id=request.requesting_user_id,
            role=request.requesting_role,
            reason_code=decision.reason_code,
            details={
                "decision_id": decision.decision_id,
                "branch": request.branch,
                "tag": request.tag,
                "commit_sha": request.commit_sha,
                "environment": decision.environment,
                "matched_rule": decision.matched_rule,
                "lock_type": decision.lock_type,
                "approval_request_id": decision.approval_request_id,
                "approval_status": decision.approval_status,
                **decision.details,
            },
        )
        incr(
            f"decisions_{decision.status.value.lower()}_total",
            tenant_id=self.recorder.tenant_id,
            metadata={"reason_code": decision.reason_code},
        )
        logger.info(
            "decision %s branch=%s commit=%s env=%s reason=%s",
            decision.status.value,
            request.branch,
            request.commit_sha,
            decision.environment,
            decision.reason_code,
        )
        return decision.model_copy(update={"audit_entry_id": entry.entry_id})

    def _verdict(
        self,
        request: DeploymentRequest,
        at: datetime,
        status: DecisionStatus,
        reason_code: str,
        message: str,
        **fields: Any,
    ) -> GovernanceDecision:
        return GovernanceDecision(
            status=status,
            reason_code=reason_code,
            message=message,
            branch=request.branch,
            commit_sha=request.commit_sha,
            requesting_user_id=request.requesting_user_id,
            requesting_role=request.requesting_role,
            evaluated_at=at,
            **fields,
        )

    def _evaluate(self, request: DeploymentRequest, at: datetime) -> GovernanceDecision:
        try:
            resolution = self.resolver.resolve(request.branch, request.tag)
        except ConfigurationError as exc:
            logger.warning("branch %r could not be resolved: %s", request.branch, exc.message)
            return self._verdict(
                request,
                at,
                DecisionStatus.BLOCKED,
                exc.reason_code,
                f"Branch `{request.branch}` matches conflicting rules of equal specificity.",
                details={"conflicting_patterns": exc.details.get("patterns", [])},
            )
        if not resolution.matched:
            return self._verdict(
                request,
                at,
                DecisionStatus.BLOCKED,
                "NO_BRANCH_MAPPING",
                f"No branch rule maps `{request.branch}` to an environment.",
            )

        rule = resolution.rule
        env = resolution.environment
        lock = self.locks.current_state(env, at)
        common: Dict[str, Any] = {
            "environment": env,
            "matched_rule": rule.display_pattern,
            "lock_type": lock.lock_type.value,
        }
        if lock.is_hard_locked:
            return self._verdict(
                request,
                at,
                DecisionStatus.BLOCKED,
                "ENVIRONMENT_HARD_LOCKED",
                f"Environment `{env}` is hard-locked.",
                details={"lock_source": lock.source, "active_window": lock.active_window, "lock_reason": lock.reason},
                **common,
            )

        auth = self.authorizer.authorize(request.requesting_role, env, Capability.DEPLOY)
        if not auth.allowed:
            return self._verdict(
                request,
                at,
                DecisionStatus.BLOCKED,
                "RBAC_DENIED",
                f"Role `{auth.role}` may not deploy to `{env}`.",
                details={"rbac_reason_code": auth.reason_code},
                **common,
            )

        if rule.requires_approval or lock.is_soft_locked:
            approval = self.approvals.open_request(
                env,
                request.commit_sha,
                request.requesting_user_id,
                request.requesting_role,
                rule=rule,
                execution_ref=request.execution_ref,
                now=at,
            )
            if approval.status == ApprovalStatus.PENDING:
                approval = self.approvals.notify(approval.request_id, at)
            approval_fields = {
                "approval_request_id": approval.request_id,
                "approval_status": approval.status.value,
            }
            if approval.status == ApprovalStatus.APPROVED:
                return self._verdict(
                    request,
                    at,
                    DecisionStatus.ALLOWED,
                    "APPROVAL_GRANTED",
                    f"Deployment to `{env}` approved.",
                    **approval_fields,
                    **common,
                )
            return self._verdict(
                request,
                at,
                DecisionStatus.PENDING_APPROVAL,
                _pending_reason(approval),
                f"Deployment to `{env}` is waiting on approval request {approval.request_id} ({approval.status.value}).",
                details={"approval_trigger": "rule" if rule.requires_approval else "soft_lock"},
                **approval_fields,
                **common,
            )

        return self._verdict(
            request,
            at,
            DecisionStatus.ALLOWED,
            "ALLOWED",
            f"Deployment to `{env}` allowed.",
            **common,
        )
