import threading
from datetime import datetime, timedelta, timezone

import pytest

from deploygate.approvals.types import ApprovalStatus
from deploygate.audit.types import AuditAction
from deploygate.errors import (
    ApprovalExpired,
    AuthorizationError,
    ConflictError,
    DuplicateVoterBlocked,
    InvalidVote,
    RequestNotVotable,
    ResourceNotFound,
    SelfApprovalBlocked,
)
from deploygate.observability.internal_metrics import snapshot

NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)


def _open_production(engine, *, requested_by="alice", ttl_hours=None, commit="abc123"):
    return engine.approvals.open_request(
        "production",
        commit,
        requested_by,
        "admin",
        required_approvals=2,
        required_roles=["admin"],
        ttl_hours=ttl_hours,
        now=NOW,
    )


def _actions(engine, request_id):
    return [entry.action for entry in reversed(engine.reader.for_resource(request_id))]


def test_open_request_is_idempotent_per_commit(engine):
    first = _open_production(engine)
    again = _open_production(engine)
    assert again.request_id == first.request_id
    assert first.status == ApprovalStatus.PENDING
    assert first.expires_at == NOW + timedelta(hours=24)
    assert _actions(engine, first.request_id) == [AuditAction.APPROVAL_CREATED]

    other = _open_production(engine, commit="def456")
    assert other.request_id != first.request_id


def test_self_approval_is_blocked_and_two_admins_approve(engine):
    request = _open_production(engine)
    with pytest.raises(SelfApprovalBlocked):
        engine.approvals.approve(request.request_id, "alice", "admin", now=NOW)

    after_bob = engine.approvals.approve(request.request_id, "bob", "admin", now=NOW)
    assert after_bob.status == ApprovalStatus.VOTING
    after_carol = engine.approvals.approve(request.request_id, "carol", "admin", now=NOW)
    assert after_carol.status == ApprovalStatus.APPROVED
    assert after_carol.resolution_reason_code == "APPROVED"
    assert after_carol.resolved_at == NOW
    assert [v.user_id for v in after_carol.votes] == ["bob", "carol"]
    assert engine.approvals.get(request.request_id, NOW).status == ApprovalStatus.APPROVED


def test_self_approval_is_reported_before_capability_check(engine):
    request = engine.approvals.open_request("staging", "abc123", "dev-1", "developer", now=NOW)
    with pytest.raises(SelfApprovalBlocked):
        engine.approvals.approve(request.request_id, "dev-1", "developer", now=NOW)
    with pytest.raises(SelfApprovalBlocked):
        engine.approvals.reject(request.request_id, "dev-1", "developer", "not ready", now=NOW)
    assert engine.approvals.get(request.request_id, NOW).votes == []


def test_self_approval_honours_identity_aliases(make_engine):
    engine = make_engine({"identity_aliases": {"alice": ["alice@corp.example"]}})
    request = _open_production(engine)
    with pytest.raises(SelfApprovalBlocked):
        engine.approvals.approve(request.request_id, "Alice@Corp.Example", "admin", now=NOW)


def test_self_approval_can_be_disabled_per_request(engine):
    request = engine.approvals.open_request(
        "staging", "abc123", "alice", "approver", required_roles=["approver"], block_self_approval=False, now=NOW
    )
    approved = engine.approvals.approve(request.request_id, "alice", "approver", now=NOW)
    assert approved.status == ApprovalStatus.APPROVED


def test_duplicate_voter_is_blocked(engine):
    request = _open_production(engine)
    engine.approvals.approve(request.request_id, "bob", "admin", now=NOW)
    with pytest.raises(DuplicateVoterBlocked):
        engine.approvals.approve(request.request_id, "BOB", "admin", now=NOW)
    assert len(engine.approvals.get(request.request_id, NOW).votes) == 1


def test_single_reject_vetoes_and_closes_voting(engine):
    request = _open_production(engine)
    engine.approvals.approve(request.request_id, "bob", "admin", now=NOW)
    rejected = engine.approvals.reject(request.request_id, "dave", "admin", "breaks the migration", now=NOW)
    assert rejected.status == ApprovalStatus.REJECTED
    assert rejected.resolution_reason_code == "APPROVAL_REJECTED"
    with pytest.raises(RequestNotVotable) as excinfo:
        engine.approvals.approve(request.request_id, "carol", "admin", now=NOW)
    assert not isinstance(excinfo.value, ApprovalExpired)
    assert engine.approvals.get(request.request_id, NOW).status == ApprovalStatus.REJECTED


def test_reject_and_request_changes_require_a_comment(engine):
    request = _open_production(engine)
    with pytest.raises(InvalidVote) as excinfo:
        engine.approvals.reject(request.request_id, "bob", "admin", "  ", now=NOW)
    assert excinfo.value.reason_code == "COMMENT_REQUIRED"
    with pytest.raises(InvalidVote):
        engine.approvals.cast_vote(request.request_id, "bob", "admin", "maybe", now=NOW)


def test_request_changes_is_recorded_without_blocking(engine):
    request = _open_production(engine)
    voting = engine.approvals.request_changes(request.request_id, "bob", "admin", "add a rollback note", now=NOW)
    assert voting.status == ApprovalStatus.VOTING
    engine.approvals.approve(request.request_id, "carol", "admin", now=NOW)
    approved = engine.approvals.approve(request.request_id, "dave", "admin", now=NOW)
    assert approved.status == ApprovalStatus.APPROVED


def test_votes_outside_required_roles_do_not_count(engine):
    request = _open_production(engine)
    engine.approvals.approve(request.request_id, "bob", "approver", now=NOW)
    engine.approvals.approve(request.request_id, "carol", "admin", now=NOW)
    assert engine.approvals.get(request.request_id, NOW).status == ApprovalStatus.VOTING


def test_vote_requires_approve_capability(engine):
    request = _open_production(engine)
    with pytest.raises(AuthorizationError):
        engine.approvals.approve(request.request_id, "eve", "developer", now=NOW)
    with pytest.raises(AuthorizationError):
        engine.approvals.approve(request.request_id, "eve", "superuser", now=NOW)


def test_unknown_request_is_not_found(engine):
    with pytest.raises(ResourceNotFound):
        engine.approvals.get("missing", NOW)


def test_lazy_read_and_sweep_expire_once(engine):
    request = _open_production(engine, ttl_hours=1)
    engine.approvals.approve(request.request_id, "bob", "admin", now=NOW)

    later = NOW + timedelta(hours=2)
    read = engine.approvals.get(request.request_id, later)
    assert read.status == ApprovalStatus.EXPIRED
    assert read.resolution_reason_code == "APPROVAL_EXPIRED"

    assert engine.approvals.expire_due(later + timedelta(minutes=5)) == []
    assert _actions(engine, request.request_id).count(AuditAction.APPROVAL_EXPIRED) == 1


def test_sweep_then_lazy_read_expire_once(engine):
    request = _open_production(engine, ttl_hours=1)
    later = NOW + timedelta(hours=2)
    assert engine.approvals.expire_due(later) == [request.request_id]
    assert engine.approvals.get(request.request_id, later + timedelta(hours=1)).status == ApprovalStatus.EXPIRED
    assert engine.approvals.expire_due(later + timedelta(hours=1)) == []
    assert _actions(engine, request.request_id).count(AuditAction.APPROVAL_EXPIRED) == 1


def test_vote_after_deadline_persists_expiry(engine):
    request = _open_production(engine, ttl_hours=1)
    later = NOW + timedelta(hours=2)
    with pytest.raises(ApprovalExpired):
        engine.approvals.approve(request.request_id, "bob", "admin", now=later)
    stored = engine.approvals.store.get(request.request_id)
    assert stored.status == ApprovalStatus.EXPIRED
    assert stored.votes == []
    with pytest.raises(ApprovalExpired):
        engine.approvals.approve(request.request_id, "carol", "admin", now=later)


def test_expired_request_is_superseded_but_rejected_is_not(engine):
    expired = _open_production(engine, ttl_hours=1)
    later = NOW + timedelta(hours=2)
    engine.approvals.expire_due(later)
    renewed = engine.approvals.open_request(
        "production", "abc123", "alice", "admin", required_approvals=2, required_roles=["admin"], now=later
    )
    assert renewed.request_id != expired.request_id
    assert renewed.generation == 2
    assert renewed.status == ApprovalStatus.PENDING

    engine.approvals.reject(renewed.request_id, "bob", "admin", "not this release", now=later)
    again = engine.approvals.open_request("production", "abc123", "alice", "admin", now=later)
    assert again.request_id == renewed.request_id
    assert again.status == ApprovalStatus.REJECTED


def test_cancel_by_requester_and_denied_for_outsiders(engine):
    request = _open_production(engine)
    with pytest.raises(AuthorizationError):
        engine.approvals.cancel(request.request_id, "eve", "developer", "not mine", now=NOW)
    with pytest.raises(InvalidVote):
        engine.approvals.cancel(request.request_id, "alice", "developer", "", now=NOW)

    cancelled = engine.approvals.cancel(request.request_id, "alice", "developer", "superseded by hotfix", now=NOW)
    assert cancelled.status == ApprovalStatus.REJECTED
    assert cancelled.resolution_reason_code == "CANCELLED"
    assert _actions(engine, request.request_id)[-1] == AuditAction.APPROVAL_CANCELLED
    with pytest.raises(RequestNotVotable):
        engine.approvals.cancel(request.request_id, "alice", "developer", "again", now=NOW)


def test_notify_writes_outbox_and_publishes_once(engine, dispatcher):
    received = []
    dispatcher.subscribe(received.append)

    def broken(_event):
        raise RuntimeError("chat webhook down")

    dispatcher.subscribe(broken)
    request = _open_production(engine)

    notified = engine.approvals.notify(request.request_id, NOW)
    assert notified.status == ApprovalStatus.NOTIFIED
    assert engine.approvals.notify(request.request_id, NOW).status == ApprovalStatus.NOTIFIED

    assert len(received) == 1
    assert received[0].request_id == request.request_id
    assert received[0].payload["required_roles"] == ["admin"]

    events = engine.approvals.list_notifications(request_id=request.request_id)
    assert [event.event_id for event in events] == [received[0].event_id]
    assert _actions(engine, request.request_id) == [AuditAction.APPROVAL_CREATED, AuditAction.APPROVAL_NOTIFIED]


def test_concurrent_votes_are_all_applied(engine):
    request = engine.approvals.open_request(
        "production", "abc123", "alice", "admin", required_approvals=4, required_roles=["admin"], now=NOW
    )
    voters = ["bob", "carol", "dave", "erin"]
    errors = []

    def vote(user):
        try:
            engine.approvals.approve(request.request_id, user, "admin", now=NOW)
        except Exception as exc:  # pragma: no cover - surfaced by the assertion below
            errors.append(exc)

    threads = [threading.Thread(target=vote, args=(user,)) for user in voters]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    final = engine.approvals.get(request.request_id, NOW)
    assert final.status == ApprovalStatus.APPROVED
    assert sorted(v.user_id for v in final.votes) == voters
    assert final.version == 1 + len(voters)


def test_lost_race_is_retried_with_fresh_state(engine, monkeypatch):
    request = _open_production(engine)
    store = engine.approvals.store
    real_update = store.update
    calls = {"n": 0}

    def flaky_update(updated, *, expected_version):
        calls["n"] += 1
        if calls["n"] == 1:
            raise ConflictError("simulated lost race")
        return real_update(updated, expected_version=expected_version)

    monkeypatch.setattr(store, "update", flaky_update)
    voted = engine.approvals.approve(request.request_id, "bob", "admin", now=NOW)
    assert voted.status == ApprovalStatus.VOTING
    assert calls["n"] == 2
    assert snapshot(engine.tenant_id)["write_conflicts_total"] == 1
    # Only the attempt that committed is audited.
    assert _actions(engine, request.request_id).count(AuditAction.APPROVAL_VOTE_CAST) == 1


def test_conflict_surfaces_after_bounded_retries(engine, monkeypatch):
    monkeypatch.setenv("DEPLOYGATE_CONFLICT_RETRIES", "2")
    request = _open_production(engine)

    def always_conflict(updated, *, expected_version):
        raise ConflictError("simulated lost race")

    monkeypatch.setattr(engine.approvals.store, "update", always_conflict)
    with pytest.raises(ConflictError) as excinfo:
        engine.approvals.approve(request.request_id, "bob", "admin", now=NOW)
    assert excinfo.value.details["attempts"] == 2
