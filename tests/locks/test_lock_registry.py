from datetime import datetime, timedelta, timezone

import pytest

from deploygate.audit.types import AuditAction
from deploygate.errors import EmergencyUnlockDenied, LockAuthorizationError
from deploygate.locks.types import LockType, ScheduledWindow

# Monday 10:00 UTC
NOW = datetime(2026, 3, 2, 10, 0, tzinfo=timezone.utc)

BUSINESS_HOURS = ScheduledWindow(
    name="business-hours",
    kind="recurring",
    days_of_week=["mon", "tue", "wed", "thu", "fri"],
    start_time="09:00",
    end_time="17:00",
    reason="no daytime deploys",
)


def _entries(engine, env):
    return list(reversed(engine.reader.for_resource(env)))


def test_untouched_environment_uses_most_restrictive_rule_default(engine):
    production = engine.locks.current_state("production", NOW)
    assert production.lock_type == LockType.HARD_LOCKED
    assert production.source == "default"
    assert production.version == 0
    assert engine.locks.current_state("staging", NOW).lock_type == LockType.SOFT_LOCKED
    assert engine.locks.current_state("development", NOW).lock_type == LockType.UNLOCKED
    assert engine.locks.current_state("Unknown-Env", NOW).lock_type == LockType.UNLOCKED


def test_explicit_lock_defaults_override_rules(make_engine):
    engine = make_engine({"locks": {"defaults": {"Staging": "hard"}}})
    assert engine.locks.current_state("staging", NOW).lock_type == LockType.HARD_LOCKED


def test_set_lock_is_versioned_and_audited(engine):
    state = engine.locks.set_lock("staging", "HARD_LOCKED", "db migration", "olivia", "admin", now=NOW)
    assert state.lock_type == LockType.HARD_LOCKED
    assert state.source == "manual"
    assert state.version == 1
    state = engine.locks.set_lock("staging", "UNLOCKED", "done", "olivia", "admin", now=NOW)
    assert state.version == 2

    entries = _entries(engine, "staging")
    assert [e.action for e in entries] == [AuditAction.LOCK_SET, AuditAction.LOCK_SET]
    assert entries[0].details["from"] == "SOFT_LOCKED"
    assert entries[0].details["to"] == "HARD_LOCKED"
    assert entries[1].details["from"] == "HARD_LOCKED"
    assert entries[1].user_id == "olivia"


def test_lock_management_requires_unlock_capability(engine):
    with pytest.raises(LockAuthorizationError) as excinfo:
        engine.locks.set_lock("production", "SOFT_LOCKED", "try", "dev1", "developer", now=NOW)
    assert excinfo.value.reason_code == "LOCK_MANAGEMENT_DENIED"
    assert engine.locks.current_state("production", NOW).lock_type == LockType.HARD_LOCKED
    denied = _entries(engine, "production")
    assert len(denied) == 1
    assert denied[0].result == "DENIED"
    assert denied[0].user_id == "dev1"


def test_unlocking_ticketed_environment_requires_ticket(engine):
    with pytest.raises(LockAuthorizationError) as excinfo:
        engine.locks.set_lock("production", "UNLOCKED", "release", "olivia", "admin", now=NOW)
    assert excinfo.value.reason_code == "TICKET_REQUIRED"

    soft = engine.locks.set_lock("production", "SOFT_LOCKED", "release", "olivia", "admin", now=NOW)
    assert soft.lock_type == LockType.SOFT_LOCKED
    unlocked = engine.locks.set_lock("production", "UNLOCKED", "release", "olivia", "admin", ticket_id="CHG-42", now=NOW)
    assert unlocked.lock_type == LockType.UNLOCKED
    assert unlocked.ticket_id == "CHG-42"


def test_scheduled_window_wins_over_manual_state(engine):
    engine.locks.set_lock("staging", "UNLOCKED", "open", "olivia", "admin", now=NOW)
    state = engine.locks.schedule_lock("staging", BUSINESS_HOURS, created_by="olivia", role="admin", now=NOW)
    assert state.lock_type == LockType.HARD_LOCKED
    assert state.manual_lock_type == LockType.UNLOCKED
    assert state.source == "schedule"
    assert state.active_window == "business-hours"
    assert [w.name for w in engine.locks.list_windows("staging")] == ["business-hours"]

    evening = NOW + timedelta(hours=8)
    assert engine.locks.current_state("staging", evening).lock_type == LockType.UNLOCKED
    assert engine.locks.current_state("staging", NOW) == engine.locks.current_state("staging", NOW)


def test_schedule_lock_overrides_window_lock_type(engine):
    state = engine.locks.schedule_lock(
        "development", BUSINESS_HOURS, "SOFT_LOCKED", created_by="olivia", role="admin", now=NOW
    )
    assert state.lock_type == LockType.SOFT_LOCKED
    entries = _entries(engine, "development")
    assert entries[-1].action == AuditAction.LOCK_SCHEDULE_ADDED
    assert entries[-1].details["window"]["lock_type"] == "SOFT_LOCKED"


def test_config_windows_apply_before_persisted_ones(make_engine):
    engine = make_engine(
        {
            "locks": {
                "windows": {
                    "staging": [
                        {"name": "weekday-freeze", "kind": "recurring", "lock_type": "soft", "days_of_week": ["mon"]}
                    ]
                }
            }
        }
    )
    engine.locks.schedule_lock("staging", BUSINESS_HOURS, created_by="olivia", role="admin", now=NOW)
    assert [w.name for w in engine.locks.list_windows("staging")] == ["weekday-freeze", "business-hours"]
    assert engine.locks.current_state("staging", NOW).active_window == "business-hours"


def test_emergency_unlock_denials_are_audited(engine):
    cases = [
        dict(reason="prod is down hard", ticket_id="INC-1", mfa_verified=False, auto_relock_minutes=30),
        dict(reason="down", ticket_id="INC-1", mfa_verified=True, auto_relock_minutes=30),
        dict(reason="prod is down hard", ticket_id=" ", mfa_verified=True, auto_relock_minutes=30),
        dict(reason="prod is down hard", ticket_id="INC-1", mfa_verified=True, auto_relock_minutes=0),
        dict(reason="prod is down hard", ticket_id="INC-1", mfa_verified=True, auto_relock_minutes=1441),
    ]
    expected = ["MFA_REQUIRED", "REASON_REQUIRED", "TICKET_REQUIRED", "RELOCK_WINDOW_INVALID", "RELOCK_WINDOW_INVALID"]
    for case, denial in zip(cases, expected):
        with pytest.raises(EmergencyUnlockDenied) as excinfo:
            engine.locks.emergency_unlock("production", requested_by="olivia", role="admin", now=NOW, **case)
        assert excinfo.value.details["denial"] == denial

    entries = _entries(engine, "production")
    assert [e.reason_code for e in entries] == expected
    assert all(e.result == "DENIED" for e in entries)
    assert engine.locks.current_state("production", NOW).lock_type == LockType.HARD_LOCKED


def test_emergency_unlock_requires_unlock_capability(engine):
    with pytest.raises(LockAuthorizationError):
        engine.locks.emergency_unlock(
            "production", "prod is down hard", "INC-1", True, 30, "alice", "approver", now=NOW
        )


def test_emergency_unlock_then_auto_relock_once(engine):
    state = engine.locks.emergency_unlock(
        "production", "payment outage, hotfix", "INC-7", True, 30, "olivia", "admin", now=NOW
    )
    assert state.lock_type == LockType.UNLOCKED
    assert state.auto_relock_at == NOW + timedelta(minutes=30)
    assert state.relock_type == LockType.HARD_LOCKED

    assert engine.locks.relock_due(NOW + timedelta(minutes=10)) == []
    relocked = engine.locks.relock_due(NOW + timedelta(minutes=31))
    assert relocked == [{"environment": "production", "from": "UNLOCKED", "to": "HARD_LOCKED"}]
    assert engine.locks.relock_due(NOW + timedelta(minutes=45)) == []

    restored = engine.locks.current_state("production", NOW + timedelta(minutes=45))
    assert restored.lock_type == LockType.HARD_LOCKED
    assert restored.auto_relock_at is None
    actions = [e.action for e in _entries(engine, "production")]
    assert actions == [AuditAction.LOCK_EMERGENCY_UNLOCK, AuditAction.LOCK_AUTO_RELOCK]


def test_emergency_unlock_of_unlocked_environment_relocks_soft(engine):
    state = engine.locks.emergency_unlock(
        "development", "broken build cache", "INC-9", True, None, "olivia", "admin", now=NOW
    )
    assert state.auto_relock_at == NOW + timedelta(minutes=30)
    assert state.relock_type == LockType.SOFT_LOCKED


def test_sync_scheduled_states_audits_transitions_once(engine):
    engine.locks.schedule_lock("staging", BUSINESS_HOURS, created_by="olivia", role="admin", now=NOW)

    first = engine.locks.sync_scheduled_states(NOW)
    assert first == [{"environment": "staging", "from": "SOFT_LOCKED", "to": "HARD_LOCKED", "window": "business-hours"}]
    assert engine.locks.sync_scheduled_states(NOW + timedelta(minutes=5)) == []

    evening = NOW + timedelta(hours=8)
    closing = engine.locks.sync_scheduled_states(evening)
    assert closing == [{"environment": "staging", "from": "HARD_LOCKED", "to": "SOFT_LOCKED", "window": None}]
    assert engine.locks.sync_scheduled_states(evening) == []

    transitions = [e for e in _entries(engine, "staging") if e.action == AuditAction.LOCK_SCHEDULE_TRANSITION]
    assert len(transitions) == 2
