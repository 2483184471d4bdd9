import argparse
import json
import sys
from typing import Any, List, Optional

import yaml

from deploygate import __version__


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="deploygate")
    p.add_argument("--tenant", help="Tenant id (else DEPLOYGATE_TENANT_ID)")
    p.add_argument("--config", help="Governance config yaml (else DEPLOYGATE_GOVERNANCE_CONFIG)")
    sub = p.add_subparsers(dest="cmd", required=True)

    decide_p = sub.add_parser("decide", help="Evaluate a deployment request.")
    decide_p.add_argument("--branch", required=True)
    decide_p.add_argument("--commit", required=True, help="Commit SHA")
    decide_p.add_argument("--user", required=True, help="Requesting user id")
    decide_p.add_argument("--role", required=True, help="Requesting role")
    decide_p.add_argument("--tag", help="Release tag, selects tagged branch rules")
    decide_p.add_argument("--execution-ref", help="Pipeline execution id")
    decide_p.add_argument("--format", default="json", choices=["json", "text"])
    decide_p.add_argument("--enforce", action="store_true", help="Exit non-zero unless ALLOWED")

    # Approval Command
    approval_p = sub.add_parser("approval", help="Inspect and vote on approval requests.")
    approval_sub = approval_p.add_subparsers(dest="approval_cmd", required=True)

    approval_show = approval_sub.add_parser("show", help="Show an approval request")
    approval_show.add_argument("--request-id", required=True)

    for name, help_text in (
        ("approve", "Approve a request"),
        ("reject", "Reject a request"),
        ("request-changes", "Request changes on a request"),
    ):
        vote_p = approval_sub.add_parser(name, help=help_text)
        vote_p.add_argument("--request-id", required=True)
        vote_p.add_argument("--user", required=True)
        vote_p.add_argument("--role", required=True)
        vote_p.add_argument("--comment")

    approval_cancel = approval_sub.add_parser("cancel", help="Withdraw a request")
    approval_cancel.add_argument("--request-id", required=True)
    approval_cancel.add_argument("--user", required=True)
    approval_cancel.add_argument("--role", required=True)
    approval_cancel.add_argument("--reason", required=True)

    # Lock Command
    lock_p = sub.add_parser("lock", help="Manage environment locks.")
    lock_sub = lock_p.add_subparsers(dest="lock_cmd", required=True)

    lock_show = lock_sub.add_parser("show", help="Show the effective lock state")
    lock_show.add_argument("--env", required=True)

    lock_set = lock_sub.add_parser("set", help="Set the manual lock state")
    lock_set.add_argument("--env", required=True)
    lock_set.add_argument("--type", required=True, choices=["UNLOCKED", "SOFT_LOCKED", "HARD_LOCKED"])
    lock_set.add_argument("--reason")
    lock_set.add_argument("--user", required=True)
    lock_set.add_argument("--role", required=True)
    lock_set.add_argument("--ticket")

    lock_emergency = lock_sub.add_parser("emergency-unlock", help="Break-glass unlock with auto-relock")
    lock_emergency.add_argument("--env", required=True)
    lock_emergency.add_argument("--reason", required=True)
    lock_emergency.add_argument("--ticket")
    lock_emergency.add_argument("--mfa-verified", action="store_true")
    lock_emergency.add_argument("--relock-minutes", type=int)
    lock_emergency.add_argument("--user", required=True)
    lock_emergency.add_argument("--role", required=True)

    lock_schedule = lock_sub.add_parser("schedule", help="Add a scheduled lock window")
    lock_schedule.add_argument("--env", required=True)
    lock_schedule.add_argument("--window", required=True, help="Window definition as JSON or YAML")
    lock_schedule.add_argument("--type", choices=["UNLOCKED", "SOFT_LOCKED", "HARD_LOCKED"])
    lock_schedule.add_argument("--user", required=True)
    lock_schedule.add_argument("--role", required=True)

    # Audit Command
    audit_p = sub.add_parser("audit", help="Query the audit trail.")
    audit_sub = audit_p.add_subparsers(dest="audit_cmd", required=True)

    audit_list = audit_sub.add_parser("list", help="List audit entries, newest first")
    audit_list.add_argument("--resource-id")
    audit_list.add_argument("--resource-type")
    audit_list.add_argument("--action")
    audit_list.add_argument("--user")
    audit_list.add_argument("--from", dest="from_ts")
    audit_list.add_argument("--to", dest="to_ts")
    audit_list.add_argument("--limit", type=int, default=20)

    audit_sub.add_parser("verify", help="Verify the audit hash chain")

    sweep_p = sub.add_parser("sweep", help="Time-driven transitions.")
    sweep_sub = sweep_p.add_subparsers(dest="sweep_cmd", required=True)
    sweep_sub.add_parser("tick", help="Run relock, schedule and expiry sweeps once")

    config_p = sub.add_parser("config", help="Governance configuration.")
    config_sub = config_p.add_subparsers(dest="config_cmd", required=True)
    config_lint = config_sub.add_parser("lint", help="Check branch rules and permissions")
    config_lint.add_argument("--format", default="text", choices=["json", "text"])

    sub.add_parser("version", help="Print version.")
    return p


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _dump(model: Any) -> Any:
    return model.model_dump(mode="json")


def _run(args: argparse.Namespace) -> int:
    from deploygate.engine import build_engine

    if args.cmd == "config":
        from deploygate.governance.config import load_governance_config
        from deploygate.governance.lint import format_lint_report, lint_governance_config

        report = lint_governance_config(load_governance_config(args.config, use_cache=False))
        if args.format == "json":
            _emit(report)
        else:
            print(format_lint_report(report))
        return 0 if report["ok"] else 1

    if args.cmd == "sweep":
        from deploygate.sweep.scheduler import tick

        report = tick(tenant_id=args.tenant)
        _emit(report)
        return 0 if report.get("ok") else 1

    engine = build_engine(args.tenant, config_path=args.config)

    if args.cmd == "decide":
        from deploygate.decision.types import DeploymentRequest

        decision = engine.decide(
            DeploymentRequest(
                branch=args.branch,
                commit_sha=args.commit,
                requesting_user_id=args.user,
                requesting_role=args.role,
                tag=args.tag,
                execution_ref=args.execution_ref,
            )
        )
        if args.format == "json":
            _emit(_dump(decision))
        else:
            print("\n".join(decision.summary()))
        if args.enforce:
            decision.raise_for_status()
        return 0

    if args.cmd == "approval":
        if args.approval_cmd == "show":
            _emit(_dump(engine.approvals.get(args.request_id)))
            return 0
        if args.approval_cmd == "cancel":
            _emit(_dump(engine.approvals.cancel(args.request_id, args.user, args.role, args.reason)))
            return 0
        decision = args.approval_cmd.replace("-", "_").upper()
        _emit(_dump(engine.approvals.cast_vote(args.request_id, args.user, args.role, decision, args.comment)))
        return 0

    if args.cmd == "lock":
        if args.lock_cmd == "show":
            state = engine.locks.current_state(args.env)
        elif args.lock_cmd == "set":
            state = engine.locks.set_lock(args.env, args.type, args.reason, args.user, args.role, ticket_id=args.ticket)
        elif args.lock_cmd == "emergency-unlock":
            state = engine.locks.emergency_unlock(
                args.env,
                args.reason,
                args.ticket,
                args.mfa_verified,
                args.relock_minutes,
                args.user,
                args.role,
            )
        else:
            from deploygate.locks.types import ScheduledWindow

            window = ScheduledWindow.model_validate(yaml.safe_load(args.window) or {})
            state = engine.locks.schedule_lock(args.env, window, args.type, created_by=args.user, role=args.role)
        _emit(_dump(state))
        return 0

    if args.cmd == "audit":
        if args.audit_cmd == "verify":
            from deploygate.audit.recorder import verify_audit_chain

            result = verify_audit_chain(tenant_id=engine.tenant_id, storage=engine.recorder.storage)
            _emit(result)
            return 0 if result.get("valid") else 1

        from deploygate.audit.types import AuditFilters

        filters = AuditFilters(
            resource_id=args.resource_id,
            resource_type=args.resource_type,
            action=args.action,
            user_id=args.user,
            from_ts=args.from_ts,
            to_ts=args.to_ts,
            limit=args.limit,
        )
        _emit([_dump(entry) for entry in engine.reader.query(filters)])
        return 0

    return 2


def main(argv: Optional[List[str]] = None) -> int:
    from deploygate.errors import GovernanceError

    p = build_parser()
    args = p.parse_args(argv)

    if args.cmd == "version":
        print(f"deploygate {__version__}")
        return 0

    try:
        return _run(args)
    except GovernanceError as e:
        print(json.dumps(e.to_dict(), default=str), file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
