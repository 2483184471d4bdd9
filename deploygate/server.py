import json
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field

from deploygate import __version__
from deploygate.audit.recorder import verify_audit_chain
from deploygate.audit.types import AuditFilters
from deploygate.decision.types import DeploymentRequest
from deploygate.engine import GovernanceEngine, build_engine
from deploygate.errors import GovernanceError
from deploygate.locks.types import ScheduledWindow
from deploygate.observability.internal_metrics import snapshot as metrics_snapshot
from deploygate.storage.schema import SCHEMA_VERSION, init_db, migration_status
from deploygate.sweep.scheduler import scheduler_status, start_sweep_scheduler, stop_sweep_scheduler, tick

# Load env vars
load_dotenv()


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def configure_logging() -> None:
    log_level = (os.getenv("DEPLOYGATE_LOG_LEVEL", "INFO") or "INFO").upper()
    level_value = getattr(logging, log_level, logging.INFO)
    log_format = (os.getenv("DEPLOYGATE_LOG_FORMAT", "json") or "json").strip().lower()

    root = logging.getLogger()
    root.setLevel(level_value)
    formatter: logging.Formatter
    if log_format == "json":
        formatter = JsonLogFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        root.addHandler(handler)
        return

    for handler in root.handlers:
        handler.setFormatter(formatter)


configure_logging()


app = FastAPI(
    title="DeployGate Governance API",
    version=__version__,
)
logger = logging.getLogger(__name__)


_HTTP_STATUS = {
    "ConfigurationError": 422,
    "AuthorizationError": 403,
    "LockAuthorizationError": 403,
    "LockViolation": 423,
    "ApprovalRequired": 409,
    "RequestNotVotable": 409,
    "ApprovalExpired": 409,
    "SelfApprovalBlocked": 403,
    "DuplicateVoterBlocked": 409,
    "InvalidVote": 400,
    "EmergencyUnlockDenied": 403,
    "ConflictError": 409,
    "ResourceNotFound": 404,
    "AuditWriteError": 500,
}


def _http_error(exc: GovernanceError) -> HTTPException:
    status_code = 500
    for cls in type(exc).__mro__:
        if cls.__name__ in _HTTP_STATUS:
            status_code = _HTTP_STATUS[cls.__name__]
            break
    if status_code >= 500:
        logger.error("governance operation failed: %s", exc.to_dict())
    return HTTPException(status_code=status_code, detail=exc.to_dict())


def _engine(tenant_id: Optional[str]) -> GovernanceEngine:
    try:
        return build_engine(tenant_id)
    except GovernanceError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


class VoteBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    role: str = Field(min_length=1)
    comment: Optional[str] = None


class CancelBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1)
    role: str = Field(min_length=1)
    reason: str = Field(min_length=1)


class SetLockBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    lock_type: str
    reason: Optional[str] = None
    set_by: str = Field(min_length=1)
    role: str = Field(min_length=1)
    ticket_id: Optional[str] = None
    auto_relock_at: Optional[datetime] = None


class EmergencyUnlockBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str
    ticket_id: Optional[str] = None
    mfa_verified: bool = False
    auto_relock_minutes: Optional[int] = None
    requested_by: str = Field(min_length=1)
    role: str = Field(min_length=1)


class ScheduleBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    window: ScheduledWindow
    lock_type: Optional[str] = None
    created_by: str = Field(min_length=1)
    role: str = Field(min_length=1)


def _lock_payload(state) -> Dict[str, Any]:
    return state.model_dump(mode="json")


@app.on_event("startup")
def on_startup():
    init_db()
    status = start_sweep_scheduler()
    logger.info("sweep scheduler: %s", status.get("reason"))


@app.on_event("shutdown")
def on_shutdown():
    stop_sweep_scheduler()


@app.get("/healthz")
def healthz():
    return {
        "status": "ok",
        "service": "DeployGate API",
        "version": __version__,
        "schema_version": SCHEMA_VERSION,
        "migrations": [row["migration_id"] for row in migration_status()["applied"]],
        "sweep": scheduler_status(),
    }


@app.post("/deployments/decide")
def decide(body: DeploymentRequest, x_tenant_id: Optional[str] = Header(None)):
    engine = _engine(x_tenant_id)
    try:
        decision = engine.decide(body)
    except GovernanceError as exc:
        raise _http_error(exc) from exc
    return decision.model_dump(mode="json")


@app.get("/approvals/{request_id}")
def get_approval(request_id: str, x_tenant_id: Optional[str] = Header(None)):
    engine = _engine(x_tenant_id)
    try:
        return engine.approvals.get(request_id).model_dump(mode="json")
    except GovernanceError as exc:
        raise _http_error(exc) from exc


def _vote(request_id: str, body: VoteBody, decision: str, tenant_id: Optional[str]) -> Dict[str, Any]:
    engine = _engine(tenant_id)
    try:
        updated = engine.approvals.cast_vote(request_id, body.user_id, body.role, decision, body.comment)
    except GovernanceError as exc:
        raise _http_error(exc) from exc
    return updated.model_dump(mode="json")


@app.post("/approvals/{request_id}/approve")
def approve(request_id: str, body: VoteBody, x_tenant_id: Optional[str] = Header(None)):
    return _vote(request_id, body, "APPROVE", x_tenant_id)


@app.post("/approvals/{request_id}/reject")
def reject(request_id: str, body: VoteBody, x_tenant_id: Optional[str] = Header(None)):
    return _vote(request_id, body, "REJECT", x_tenant_id)


@app.post("/approvals/{request_id}/request-changes")
def request_changes(request_id: str, body: VoteBody, x_tenant_id: Optional[str] = Header(None)):
    return _vote(request_id, body, "REQUEST_CHANGES", x_tenant_id)


@app.post("/approvals/{request_id}/cancel")
def cancel(request_id: str, body: CancelBody, x_tenant_id: Optional[str] = Header(None)):
    engine = _engine(x_tenant_id)
    try:
        updated = engine.approvals.cancel(request_id, body.user_id, body.role, body.reason)
    except GovernanceError as exc:
        raise _http_error(exc) from exc
    return updated.model_dump(mode="json")


@app.get("/environments/{environment_id}/lock")
def get_lock(environment_id: str, x_tenant_id: Optional[str] = Header(None)):
    engine = _engine(x_tenant_id)
    return _lock_payload(engine.locks.current_state(environment_id))


@app.post("/environments/{environment_id}/lock")
def set_lock(environment_id: str, body: SetLockBody, x_tenant_id: Optional[str] = Header(None)):
    engine = _engine(x_tenant_id)
    try:
        state = engine.locks.set_lock(
            environment_id,
            body.lock_type,
            body.reason,
            body.set_by,
            body.role,
            auto_relock_at=body.auto_relock_at,
            ticket_id=body.ticket_id,
        )
    except GovernanceError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _lock_payload(state)


@app.post("/environments/{environment_id}/emergency-unlock")
def emergency_unlock(environment_id: str, body: EmergencyUnlockBody, x_tenant_id: Optional[str] = Header(None)):
    engine = _engine(x_tenant_id)
    try:
        state = engine.locks.emergency_unlock(
            environment_id,
            body.reason,
            body.ticket_id,
            body.mfa_verified,
            body.auto_relock_minutes,
            body.requested_by,
            body.role,
        )
    except GovernanceError as exc:
        raise _http_error(exc) from exc
    return _lock_payload(state)


@app.post("/environments/{environment_id}/schedules")
def schedule_lock(environment_id: str, body: ScheduleBody, x_tenant_id: Optional[str] = Header(None)):
    engine = _engine(x_tenant_id)
    try:
        state = engine.locks.schedule_lock(
            environment_id,
            body.window,
            body.lock_type,
            created_by=body.created_by,
            role=body.role,
        )
    except GovernanceError as exc:
        raise _http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _lock_payload(state)


@app.get("/audit")
def list_audit(
    resource_id: Optional[str] = None,
    resource_type: Optional[str] = None,
    action: Optional[str] = None,
    user_id: Optional[str] = None,
    from_ts: Optional[datetime] = Query(None, alias="from"),
    to_ts: Optional[datetime] = Query(None, alias="to"),
    limit: int = Query(100, ge=1, le=1000),
    x_tenant_id: Optional[str] = Header(None),
):
    engine = _engine(x_tenant_id)
    filters = AuditFilters(
        resource_id=resource_id,
        resource_type=resource_type,
        action=action,
        user_id=user_id,
        from_ts=from_ts,
        to_ts=to_ts,
        limit=limit,
    )
    entries = [entry.model_dump(mode="json") for entry in engine.reader.query(filters)]
    return {"tenant_id": engine.tenant_id, "count": len(entries), "entries": entries}


@app.get("/audit/verify")
def verify_audit(x_tenant_id: Optional[str] = Header(None)):
    engine = _engine(x_tenant_id)
    result = verify_audit_chain(tenant_id=engine.tenant_id, storage=engine.recorder.storage)
    if not result.get("valid"):
        logger.error("audit chain verification failed: %s", result)
    return result


@app.get("/notifications")
def list_notifications(
    request_id: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
    x_tenant_id: Optional[str] = Header(None),
):
    engine = _engine(x_tenant_id)
    events = engine.approvals.list_notifications(request_id=request_id, since=since, limit=limit)
    return {"tenant_id": engine.tenant_id, "events": [event.model_dump(mode="json") for event in events]}


@app.post("/sweep/tick")
def sweep_tick(x_tenant_id: Optional[str] = Header(None)):
    try:
        return tick(tenant_id=x_tenant_id)
    except GovernanceError as exc:
        raise _http_error(exc) from exc


def _prometheus_label(value: Any) -> str:
    return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


@app.get("/metrics", response_class=PlainTextResponse)
def metrics():
    snap = metrics_snapshot(include_tenants=True)
    by_tenant = snap.pop("_by_tenant", {}) if isinstance(snap, dict) else {}
    lines = [
        "# HELP deploygate_metric_total DeployGate internal counters",
        "# TYPE deploygate_metric_total counter",
    ]
    for metric_name in sorted(snap.keys()):
        lines.append(f'deploygate_metric_total{{metric="{_prometheus_label(metric_name)}"}} {int(snap[metric_name])}')
    for tenant in sorted(by_tenant.keys()):
        for metric_name, value in sorted((by_tenant.get(tenant) or {}).items()):
            lines.append(
                "deploygate_metric_tenant_total"
                + f'{{tenant_id="{_prometheus_label(tenant)}",metric="{_prometheus_label(metric_name)}"}} {int(value)}'
            )
    return PlainTextResponse("\n".join(lines) + "\n", media_type="text/plain; version=0.0.4; charset=utf-8")
