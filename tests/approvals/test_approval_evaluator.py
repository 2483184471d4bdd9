from datetime import datetime, timedelta, timezone

from deploygate.approvals.evaluator import counted_approvers, evaluate
from deploygate.approvals.types import ApprovalRequest, ApprovalStatus, Vote, VoteDecision
from deploygate.governance.actors import build_identity_alias_map

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def _request(votes=(), *, required=2, roles=("admin",), status=ApprovalStatus.NOTIFIED, expires_in=timedelta(hours=4)):
    return ApprovalRequest(
        request_id="req-1",
        tenant_id="tenant-test",
        environment="production",
        commit_sha="abc123",
        requested_by="alice",
        required_approvals=required,
        required_roles=list(roles),
        votes=list(votes),
        status=status,
        created_at=NOW,
        expires_at=NOW + expires_in,
    )


def _vote(user, decision=VoteDecision.APPROVE, role="admin"):
    return Vote(user_id=user, role=role, decision=decision, comment="c", timestamp=NOW)


def test_vote_decision_aliases():
    assert VoteDecision.parse("approved") == VoteDecision.APPROVE
    assert VoteDecision.parse("request-changes") == VoteDecision.REQUEST_CHANGES
    assert VoteDecision.parse("CHANGES_REQUESTED") == VoteDecision.REQUEST_CHANGES


def test_not_enough_approvals_stays_voting():
    status, reason = evaluate(_request([_vote("bob")]), NOW)
    assert status == ApprovalStatus.VOTING
    assert reason is None


def test_no_votes_keeps_current_status():
    assert evaluate(_request(), NOW) == (ApprovalStatus.NOTIFIED, None)


def test_distinct_approvals_reach_threshold():
    status, reason = evaluate(_request([_vote("bob"), _vote("carol")]), NOW)
    assert status == ApprovalStatus.APPROVED
    assert reason == "APPROVED"


def test_same_user_counts_once_including_aliases():
    aliases = build_identity_alias_map({"bob": ["bob@corp.example", "BSmith"]})
    request = _request([_vote("bob"), _vote("bsmith"), _vote("Bob@Corp.Example")])
    assert counted_approvers(request, alias_map=aliases) == ["bob"]
    assert evaluate(request, NOW, alias_map=aliases)[0] == ApprovalStatus.VOTING


def test_only_required_roles_count():
    request = _request([_vote("bob"), _vote("carol", role="approver")])
    assert counted_approvers(request) == ["bob"]
    open_request = _request([_vote("bob"), _vote("carol", role="approver")], roles=())
    assert counted_approvers(open_request) == ["bob", "carol"]


def test_single_reject_vetoes_any_number_of_approvals():
    request = _request([_vote("bob"), _vote("carol"), _vote("dave", VoteDecision.REJECT)])
    assert evaluate(request, NOW) == (ApprovalStatus.REJECTED, "APPROVAL_REJECTED")


def test_request_changes_neither_counts_nor_blocks():
    request = _request([_vote("bob", VoteDecision.REQUEST_CHANGES), _vote("carol"), _vote("dave")])
    assert evaluate(request, NOW)[0] == ApprovalStatus.APPROVED


def test_past_expiry_without_quorum_expires():
    request = _request([_vote("bob")], expires_in=timedelta(hours=1))
    assert evaluate(request, NOW + timedelta(hours=2)) == (ApprovalStatus.EXPIRED, "APPROVAL_EXPIRED")
    # Exactly at the deadline the request is still open.
    assert evaluate(request, NOW + timedelta(hours=1))[0] == ApprovalStatus.VOTING


def test_terminal_status_is_unchanged():
    request = _request([_vote("bob"), _vote("carol")], status=ApprovalStatus.EXPIRED)
    assert evaluate(request, NOW)[0] == ApprovalStatus.EXPIRED
    assert request.is_terminal
