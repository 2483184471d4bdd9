from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from deploygate.approvals.evaluator import counted_approvers, evaluate, is_past_expiry
from deploygate.approvals.notifications import NotificationDispatcher, build_notification_event, default_dispatcher
from deploygate.approvals.store import ApprovalStore
from deploygate.approvals.types import ApprovalRequest, ApprovalStatus, NotificationEvent, Vote, VoteDecision
from deploygate.audit.recorder import AuditRecorder
from deploygate.audit.types import AuditAction, ResourceType
from deploygate.branching.types import BranchRule
from deploygate.config import get_conflict_retry_attempts
from deploygate.errors import (
    ApprovalExpired,
    ConflictError,
    DuplicateVoterBlocked,
    InvalidVote,
    RequestNotVotable,
    ResourceNotFound,
    SelfApprovalBlocked,
)
from deploygate.governance.actors import same_actor
from deploygate.governance.config import GovernanceConfig
from deploygate.observability.internal_metrics import incr
from deploygate.rbac.authorizer import RBACAuthorizer
from deploygate.rbac.matrix import normalize_environment
from deploygate.rbac.types import Capability, Role
from deploygate.utils.timeutil import ensure_utc, to_iso


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"

T = TypeVar("T")


def _not_votable(request: ApprovalRequest) -> RequestNotVotable:
    details = {"request_id": request.request_id, "status": request.status.value}
    if request.status == ApprovalStatus.EXPIRED:
        return ApprovalExpired(f"approval request {request.request_id} has expired", details=details)
    return RequestNotVotable(
        f"approval request {request.request_id} is already {request.status.value}",
        details={**details, "resolution_reason_code": request.resolution_reason_code},
    )


class ApprovalWorkflowEngine:
    """
    Multi-approver state machine: PENDING -> NOTIFIED -> VOTING -> APPROVED | REJECTED | EXPIRED.

    Every transition is a versioned write plus one audit entry in a single
    transaction, retried on a lost race with freshly read state.
    """

    def __init__(
        self,
        governance: GovernanceConfig,
        authorizer: RBACAuthorizer,
        recorder: AuditRecorder,
        store: Optional[ApprovalStore] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.governance = governance
        self.authorizer = authorizer
        self.recorder = recorder
        self.store = store or ApprovalStore(tenant_id=recorder.tenant_id, storage=recorder.storage)
        self.dispatcher = dispatcher or default_dispatcher
        self.alias_map = governance.alias_map()

    @property
    def tenant_id(self) -> str:
        return self.store.tenant_id

    # -- plumbing --------------------------------------------------------------

    def _retry(self, request_ref: str, apply: Callable[[], T]) -> T:
        attempts = get_conflict_retry_attempts()
        for attempt in range(attempts):
            try:
                with self.store.storage.transaction():
                    return apply()
            except ConflictError:
                logger.warning("approval write conflict request=%s attempt=%s", request_ref, attempt + 1)
                incr("write_conflicts_total", tenant_id=self.tenant_id)
                continue
        raise ConflictError(
            f"approval request {request_ref} kept changing; gave up after {attempts} attempts",
            details={"request_id": request_ref, "attempts": attempts},
        )

    def _load(self, request_id: str) -> ApprovalRequest:
        request = self.store.get(request_id)
        if request is None:
            raise ResourceNotFound(f"approval request {request_id} not found", details={"request_id": request_id})
        return request

    def _write_transition(
        self,
        current: ApprovalRequest,
        updated: ApprovalRequest,
        *,
        action: str,
        now: datetime,
        user_id: Optional[str],
        role: Any = None,
        reason_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ApprovalRequest:
        saved = self.store.update(updated, expected_version=current.version)
        self.recorder.append(
            action=action,
            resource_type=ResourceType.APPROVAL_REQUEST,
            resource_id=current.request_id,
            result=updated.status.value,
            timestamp=now,
            user_id=user_id,
            role=role,
            reason_code=reason_code,
            details={
                "from": current.status.value,
                "to": updated.status.value,
                "environment": current.environment,
                "commit_sha": current.commit_sha,
                **(details or {}),
            },
        )
        return saved

    def _expire(self, current: ApprovalRequest, now: datetime) -> ApprovalRequest:
        updated = current.model_copy(
            update={
                "status": ApprovalStatus.EXPIRED,
                "resolution_reason_code": "APPROVAL_EXPIRED",
                "resolved_at": now,
            }
        )
        return self._write_transition(
            current,
            updated,
            action=AuditAction.APPROVAL_EXPIRED,
            now=now,
            user_id=SYSTEM_ACTOR,
            reason_code="APPROVAL_EXPIRED",
            details={
                "expires_at": to_iso(current.expires_at),
                "counted_approvals": len(counted_approvers(current, alias_map=self.alias_map)),
                "required_approvals": current.required_approvals,
            },
        )

    def _expire_if_due(self, request_id: str, now: datetime) -> Optional[ApprovalRequest]:
        def apply() -> Optional[ApprovalRequest]:
            fresh = self._load(request_id)
            if fresh.is_terminal or not is_past_expiry(fresh, now):
                return None
            return self._expire(fresh, now)

        expired = self._retry(request_id, apply)
        if expired is not None:
            logger.info("approval request expired request=%s env=%s", request_id, expired.environment)
            incr("approvals_expired_total", tenant_id=self.tenant_id)
        return expired

    # -- reads -----------------------------------------------------------------

    def get(self, request_id: str, now: Optional[datetime] = None) -> ApprovalRequest:
        """
        Load a request, persisting the EXPIRED transition first if its deadline passed.
        """
        at = ensure_utc(now)
        current = self._load(request_id)
        if current.is_terminal or not is_past_expiry(current, at):
            return current
        return self._expire_if_due(request_id, at) or self._load(request_id)

    def find_for_context(self, environment: str, commit_sha: str, now: Optional[datetime] = None) -> Optional[ApprovalRequest]:
        latest = self.store.latest_for_context(normalize_environment(environment), str(commit_sha).strip())
        if latest is None:
            return None
        return self.get(latest.request_id, now)

    def list_notifications(
        self,
        *,
        request_id: Optional[str] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[NotificationEvent]:
        return self.store.list_notifications(request_id=request_id, since=since, limit=limit)

    # -- lifecycle -------------------------------------------------------------

    def open_request(
        self,
        environment: str,
        commit_sha: str,
        requested_by: str,
        requested_role: Any = None,
        *,
        rule: Optional[BranchRule] = None,
        required_approvals: Optional[int] = None,
        required_roles: Optional[Sequence[Any]] = None,
        execution_ref: Optional[str] = None,
        ttl_hours: Optional[int] = None,
        block_self_approval: Optional[bool] = None,
        require_distinct_approvers: Optional[bool] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalRequest:
        """
        Return the live request for ``(environment, commit_sha)``, creating one
        if none exists. An expired request is superseded by a new generation;
        a rejected or cancelled one is returned as is.
        """
        at = ensure_utc(now)
        env = normalize_environment(environment)
        sha = str(commit_sha or "").strip()
        defaults = self.governance.approvals
        approvals = required_approvals or (rule.required_approvers if rule else 1)
        roles = list(required_roles) if required_roles is not None else (list(rule.required_roles) if rule else [])
        ttl = ttl_hours or (rule.approval_ttl_hours if rule and rule.approval_ttl_hours else defaults.ttl_hours)
        if block_self_approval is None:
            block_self_approval = rule.block_self_approval if rule else defaults.block_self_approval
        if require_distinct_approvers is None:
            require_distinct_approvers = rule.require_distinct_approvers if rule else defaults.require_distinct_approvers

        attempts = get_conflict_retry_attempts()
        for attempt in range(attempts):
            existing = self.find_for_context(env, sha, at)
            generation = 1
            if existing is not None:
                if existing.status != ApprovalStatus.EXPIRED:
                    return existing
                generation = existing.generation + 1

            request = ApprovalRequest(
                request_id=uuid.uuid4().hex,
                tenant_id=self.tenant_id,
                execution_ref=execution_ref,
                environment=env,
                commit_sha=sha,
                generation=generation,
                requested_by=str(requested_by).strip(),
                requested_role=Role.parse(requested_role).value if requested_role else None,
                required_approvals=int(approvals),
                required_roles=roles,
                status=ApprovalStatus.PENDING,
                created_at=at,
                expires_at=at + timedelta(hours=int(ttl)),
                block_self_approval=bool(block_self_approval),
                require_distinct_approvers=bool(require_distinct_approvers),
            )
            try:
                with self.store.storage.transaction():
                    self.store.insert(request)
                    self.recorder.append(
                        action=AuditAction.APPROVAL_CREATED,
                        resource_type=ResourceType.APPROVAL_REQUEST,
                        resource_id=request.request_id,
                        result=request.status.value,
                        timestamp=at,
                        user_id=request.requested_by,
                        role=request.requested_role,
                        details={
                            "environment": env,
                            "commit_sha": sha,
                            "generation": generation,
                            "execution_ref": execution_ref,
                            "required_approvals": request.required_approvals,
                            "required_roles": [r.value for r in request.required_roles],
                            "expires_at": to_iso(request.expires_at),
                        },
                    )
            except ConflictError:
                logger.warning("approval request race env=%s commit=%s attempt=%s", env, sha, attempt + 1)
                continue
            logger.info(
                "approval request opened request=%s env=%s commit=%s generation=%s",
                request.request_id,
                env,
                sha,
                generation,
            )
            return request
        raise ConflictError(
            f"could not open approval request for {env}@{sha} after {attempts} attempts",
            details={"environment": env, "commit_sha": sha, "attempts": attempts},
        )

    def notify(self, request_id: str, now: Optional[datetime] = None) -> ApprovalRequest:
        """
        PENDING -> NOTIFIED, writing the notification event to the outbox in
        the same transaction and publishing it once committed.
        """
        at = ensure_utc(now)
        self.get(request_id, at)

        def apply():
            current = self._load(request_id)
            if current.status != ApprovalStatus.PENDING:
                return current, None
            event = build_notification_event(current, at)
            saved = self._write_transition(
                current,
                current.model_copy(update={"status": ApprovalStatus.NOTIFIED}),
                action=AuditAction.APPROVAL_NOTIFIED,
                now=at,
                user_id=SYSTEM_ACTOR,
                details={"event_id": event.event_id},
            )
            self.store.add_notification(event)
            return saved, event

        saved, event = self._retry(request_id, apply)
        if event is not None:
            delivered = self.dispatcher.publish(event)
            logger.info("approval request notified request=%s subscribers=%s", request_id, delivered)
        return saved

    def cast_vote(
        self,
        request_id: str,
        user_id: str,
        role: Any,
        decision: Any,
        comment: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> ApprovalRequest:
        at = ensure_utc(now)
        try:
            vote_decision = VoteDecision.parse(decision)
        except ValueError as exc:
            raise InvalidVote(f"unknown vote decision: {decision!r}", details={"decision": str(decision)}) from exc
        voter = str(user_id or "").strip()
        if not voter:
            raise InvalidVote("vote requires a user id")
        text = str(comment or "").strip() or None
        if vote_decision != VoteDecision.APPROVE and not text:
            raise InvalidVote(
                f"{vote_decision.value} requires a comment",
                reason_code="COMMENT_REQUIRED",
                details={"decision": vote_decision.value},
            )

        def apply():
            current = self._load(request_id)
            if current.is_terminal:
                raise _not_votable(current)
            if is_past_expiry(current, at):
                return self._expire(current, at), False

            if current.block_self_approval and same_actor(voter, current.requested_by, alias_map=self.alias_map):
                raise SelfApprovalBlocked(
                    f"{voter} cannot vote on their own deployment",
                    details={"request_id": request_id, "user_id": voter},
                )
            self.authorizer.require(role, current.environment, Capability.APPROVE, user_id=voter)
            if current.require_distinct_approvers and any(
                same_actor(voter, vote.user_id, alias_map=self.alias_map) for vote in current.votes
            ):
                raise DuplicateVoterBlocked(
                    f"{voter} has already voted on request {request_id}",
                    details={"request_id": request_id, "user_id": voter},
                )

            vote = Vote(
                user_id=voter,
                role=Role.parse(role).value,
                decision=vote_decision,
                comment=text,
                timestamp=at,
            )
            staged = current.model_copy(update={"votes": [*current.votes, vote]})
            status, reason_code = evaluate(staged, at, alias_map=self.alias_map)
            updated = staged.model_copy(
                update={
                    "status": status,
                    "resolution_reason_code": reason_code if status.is_terminal else None,
                    "resolved_at": at if status.is_terminal else None,
                }
            )
            saved = self._write_transition(
                current,
                updated,
                action=AuditAction.APPROVAL_VOTE_CAST,
                now=at,
                user_id=voter,
                role=vote.role,
                reason_code=reason_code,
                details={
                    "decision": vote_decision.value,
                    "comment": text,
                    "counted_approvals": len(counted_approvers(updated, alias_map=self.alias_map)),
                    "required_approvals": updated.required_approvals,
                },
            )
            return saved, True

        saved, applied = self._retry(request_id, apply)
        if not applied:
            incr("approvals_expired_total", tenant_id=self.tenant_id)
            raise ApprovalExpired(
                f"approval request {request_id} expired at {to_iso(saved.expires_at)}",
                details={"request_id": request_id, "status": saved.status.value},
            )
        incr(f"approval_votes_{vote_decision.value.lower()}_total", tenant_id=self.tenant_id)
        logger.info(
            "vote cast request=%s user=%s decision=%s status=%s",
            request_id,
            voter,
            vote_decision.value,
            saved.status.value,
        )
        return saved

    def approve(self, request_id: str, user_id: str, role: Any, comment: Optional[str] = None, now: Optional[datetime] = None) -> ApprovalRequest:
        return self.cast_vote(request_id, user_id, role, VoteDecision.APPROVE, comment, now)

    def reject(self, request_id: str, user_id: str, role: Any, comment: str, now: Optional[datetime] = None) -> ApprovalRequest:
        return self.cast_vote(request_id, user_id, role, VoteDecision.REJECT, comment, now)

    def request_changes(self, request_id: str, user_id: str, role: Any, comment: str, now: Optional[datetime] = None) -> ApprovalRequest:
        return self.cast_vote(request_id, user_id, role, VoteDecision.REQUEST_CHANGES, comment, now)

    def cancel(
        self,
        request_id: str,
        cancelled_by: str,
        role: Any,
        reason: str,
        now: Optional[datetime] = None,
    ) -> ApprovalRequest:
        """
        Administrative rejection. Allowed for the original requester or any
        role that may approve in the request's environment.
        """
        at = ensure_utc(now)
        actor = str(cancelled_by or "").strip()
        text = str(reason or "").strip()
        if not text:
            raise InvalidVote("cancellation requires a reason", reason_code="COMMENT_REQUIRED")

        def apply():
            current = self._load(request_id)
            if current.is_terminal:
                raise _not_votable(current)
            if is_past_expiry(current, at):
                return self._expire(current, at), False
            if not same_actor(actor, current.requested_by, alias_map=self.alias_map):
                self.authorizer.require(role, current.environment, Capability.APPROVE, user_id=actor)
            updated = current.model_copy(
                update={
                    "status": ApprovalStatus.REJECTED,
                    "resolution_reason_code": "CANCELLED",
                    "resolved_at": at,
                }
            )
            saved = self._write_transition(
                current,
                updated,
                action=AuditAction.APPROVAL_CANCELLED,
                now=at,
                user_id=actor,
                role=role,
                reason_code="CANCELLED",
                details={"reason": text},
            )
            return saved, True

        saved, applied = self._retry(request_id, apply)
        if not applied:
            raise ApprovalExpired(
                f"approval request {request_id} expired before it could be cancelled",
                details={"request_id": request_id},
            )
        logger.info("approval request cancelled request=%s by=%s", request_id, actor)
        return saved

    def expire_due(self, now: Optional[datetime] = None) -> List[str]:
        """
        Sweep entry point. Requests already moved to a terminal status by a
        lazy read or another sweeper are skipped without a second audit entry.
        """
        at = ensure_utc(now)
        expired: List[str] = []
        for request_id in self.store.due_for_expiry(at):
            if self._expire_if_due(request_id, at) is not None:
                expired.append(request_id)
        return expired
