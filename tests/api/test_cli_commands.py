import json

from deploygate import __version__
from deploygate.cli import main


def _json_out(capsys):
    return json.loads(capsys.readouterr().out)


def test_version(capsys):
    assert main(["version"]) == 0
    assert capsys.readouterr().out.strip() == f"deploygate {__version__}"


def test_decide_json_and_text(clean_db, capsys):
    assert main(["decide", "--branch", "feature/login", "--commit", "abc123", "--user", "dana", "--role", "developer"]) == 0
    payload = _json_out(capsys)
    assert payload["status"] == "ALLOWED"
    assert payload["environment"] == "development"

    rc = main(
        [
            "decide",
            "--branch",
            "main",
            "--commit",
            "abc123",
            "--user",
            "alice",
            "--role",
            "approver",
            "--format",
            "text",
        ]
    )
    assert rc == 0
    out = capsys.readouterr().out
    assert out.startswith("PENDING_APPROVAL:")
    assert "environment=staging" in out


def test_decide_enforce_exits_non_zero_when_blocked(clean_db, capsys):
    rc = main(
        ["decide", "--branch", "main", "--tag", "v1.0.0", "--commit", "abc123", "--user", "root", "--role", "admin", "--enforce"]
    )
    assert rc == 1
    err = json.loads(capsys.readouterr().err)
    assert err["error"] == "LockViolation"
    assert err["reason_code"] == "ENVIRONMENT_HARD_LOCKED"


def test_approval_commands(clean_db, capsys):
    main(["decide", "--branch", "main", "--commit", "abc123", "--user", "alice", "--role", "approver"])
    request_id = _json_out(capsys)["approval_request_id"]

    assert main(["approval", "request-changes", "--request-id", request_id, "--user", "bob", "--role", "approver"]) == 1
    assert json.loads(capsys.readouterr().err)["reason_code"] == "COMMENT_REQUIRED"

    assert main(
        ["approval", "request-changes", "--request-id", request_id, "--user", "bob", "--role", "approver", "--comment", "add rollback"]
    ) == 0
    assert _json_out(capsys)["status"] == "VOTING"

    assert main(["approval", "approve", "--request-id", request_id, "--user", "olga", "--role", "operator"]) == 0
    assert _json_out(capsys)["status"] == "APPROVED"

    assert main(["approval", "show", "--request-id", request_id]) == 0
    shown = _json_out(capsys)
    assert [vote["decision"] for vote in shown["votes"]] == ["REQUEST_CHANGES", "APPROVE"]


def test_lock_commands(clean_db, capsys):
    assert main(["lock", "show", "--env", "production"]) == 0
    assert _json_out(capsys)["lock_type"] == "HARD_LOCKED"

    assert main(["lock", "set", "--env", "production", "--type", "UNLOCKED", "--user", "olivia", "--role", "admin"]) == 1
    assert json.loads(capsys.readouterr().err)["reason_code"] == "TICKET_REQUIRED"

    rc = main(
        [
            "lock",
            "emergency-unlock",
            "--env",
            "production",
            "--reason",
            "payment outage, hotfix",
            "--ticket",
            "INC-7",
            "--mfa-verified",
            "--relock-minutes",
            "20",
            "--user",
            "olivia",
            "--role",
            "admin",
        ]
    )
    assert rc == 0
    state = _json_out(capsys)
    assert state["lock_type"] == "UNLOCKED"
    assert state["relock_type"] == "HARD_LOCKED"

    window = '{"name": "freeze", "kind": "recurring", "days_of_week": ["sat", "sun"]}'
    rc = main(["lock", "schedule", "--env", "staging", "--window", window, "--type", "HARD_LOCKED", "--user", "olivia", "--role", "admin"])
    assert rc == 0
    capsys.readouterr()


def test_audit_commands(clean_db, capsys):
    main(["decide", "--branch", "feature/login", "--commit", "abc123", "--user", "dana", "--role", "developer"])
    main(["decide", "--branch", "spike/ai", "--commit", "def456", "--user", "dana", "--role", "developer"])
    capsys.readouterr()

    assert main(["audit", "list", "--limit", "1"]) == 0
    entries = _json_out(capsys)
    assert len(entries) == 1
    assert entries[0]["resource_id"] == "def456"

    assert main(["audit", "list", "--resource-id", "abc123"]) == 0
    assert [e["result"] for e in _json_out(capsys)] == ["ALLOWED"]

    assert main(["audit", "verify"]) == 0
    assert _json_out(capsys)["valid"] is True


def test_config_lint(tmp_path, capsys):
    assert main(["config", "lint"]) == 0
    assert "Governance Lint: PASS" in capsys.readouterr().out

    path = tmp_path / "deploygate.yaml"
    path.write_text(
        "branch_rules:\n"
        "  - pattern: main\n"
        "    environment: staging\n"
        "  - pattern: main\n"
        "    environment: uat\n",
        encoding="utf-8",
    )
    assert main(["--config", str(path), "config", "lint", "--format", "json"]) == 1
    report = _json_out(capsys)
    assert report["ok"] is False
    assert "DUPLICATE_PATTERN" in [issue["code"] for issue in report["issues"]]


def test_sweep_tick(clean_db, capsys):
    assert main(["sweep", "tick"]) == 0
    report = _json_out(capsys)
    assert report["ok"] is True
    assert report["tenant_count"] == 0
