from __future__ import annotations

from datetime import datetime
from typing import List, Mapping, Optional, Tuple

from deploygate.approvals.types import ApprovalRequest, ApprovalStatus, VoteDecision
from deploygate.governance.actors import normalize_actor
from deploygate.rbac.types import Role


def counted_approvers(request: ApprovalRequest, *, alias_map: Optional[Mapping[str, str]] = None) -> List[str]:
    """
    Distinct users whose Approve vote counts: when the request names required
    roles, only votes cast under one of them count.
    """
    required = {role.value for role in request.required_roles}
    counted: List[str] = []
    for vote in request.votes:
        if vote.decision != VoteDecision.APPROVE:
            continue
        if required and Role.parse(vote.role).value not in required:
            continue
        actor = normalize_actor(vote.user_id, alias_map=alias_map)
        if actor and actor not in counted:
            counted.append(actor)
    return counted


def has_reject(request: ApprovalRequest) -> bool:
    return any(vote.decision == VoteDecision.REJECT for vote in request.votes)


def is_past_expiry(request: ApprovalRequest, now: datetime) -> bool:
    return now > request.expires_at


def evaluate(
    request: ApprovalRequest,
    now: datetime,
    *,
    alias_map: Optional[Mapping[str, str]] = None,
) -> Tuple[ApprovalStatus, Optional[str]]:
    """
    Status the request should be in given its votes and ``now``. Terminal
    statuses are returned unchanged.
    """
    if request.is_terminal:
        return request.status, request.resolution_reason_code
    if has_reject(request):
        return ApprovalStatus.REJECTED, "APPROVAL_REJECTED"
    if len(counted_approvers(request, alias_map=alias_map)) >= request.required_approvals:
        return ApprovalStatus.APPROVED, "APPROVED"
    if is_past_expiry(request, now):
        return ApprovalStatus.EXPIRED, "APPROVAL_EXPIRED"
    if request.votes:
        return ApprovalStatus.VOTING, None
    return request.status, None
