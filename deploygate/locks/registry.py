from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from deploygate import config as settings
from deploygate.audit.recorder import AuditRecorder
from deploygate.audit.types import AuditAction, ResourceType
from deploygate.config import get_conflict_retry_attempts, get_default_emergency_relock_minutes
from deploygate.errors import ConflictError, EmergencyUnlockDenied, LockAuthorizationError
from deploygate.governance.config import GovernanceConfig
from deploygate.locks.schedule import overlay
from deploygate.locks.store import LockStore
from deploygate.locks.types import EnvironmentLock, LockType, ScheduledWindow
from deploygate.rbac.authorizer import RBACAuthorizer
from deploygate.rbac.matrix import normalize_environment
from deploygate.rbac.types import Capability
from deploygate.utils.timeutil import ensure_utc, parse_iso, to_iso


logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


def _relock_target(prior: LockType) -> LockType:
    return prior if prior != LockType.UNLOCKED else LockType.SOFT_LOCKED


class LockRegistry:
    """
    Owns every environment's lock state.

    Manual state lives in versioned rows; the effective state is the manual
    state with any active scheduled window laid over it. Each transition and
    its audit entry commit in one transaction.
    """

    def __init__(
        self,
        governance: GovernanceConfig,
        authorizer: RBACAuthorizer,
        recorder: AuditRecorder,
        store: Optional[LockStore] = None,
    ):
        self.governance = governance
        self.authorizer = authorizer
        self.recorder = recorder
        self.store = store or LockStore(tenant_id=recorder.tenant_id, storage=recorder.storage)

    # -- reads -----------------------------------------------------------------

    def _manual_state(self, env: str, row: Optional[Dict[str, Any]]) -> EnvironmentLock:
        if row is None:
            default = self.governance.default_lock_type(env)
            return EnvironmentLock(
                environment_id=env,
                lock_type=default,
                manual_lock_type=default,
                source="default",
            )
        manual = LockType.parse(row["lock_type"])
        return EnvironmentLock(
            environment_id=env,
            lock_type=manual,
            manual_lock_type=manual,
            reason=row.get("reason"),
            set_by=row.get("set_by"),
            set_at=parse_iso(row.get("set_at")),
            auto_relock_at=parse_iso(row.get("auto_relock_at")),
            relock_type=LockType.parse(row["relock_type"]) if row.get("relock_type") else None,
            ticket_id=row.get("ticket_id"),
            source="manual",
            version=int(row["version"]),
        )

    def list_windows(self, environment_id: str) -> List[ScheduledWindow]:
        env = normalize_environment(environment_id)
        declared = list(self.governance.locks.windows.get(env, []))
        return declared + [window for _, window in self.store.list_windows(env)]

    def current_state(self, environment_id: str, now: Optional[datetime] = None) -> EnvironmentLock:
        env = normalize_environment(environment_id)
        at = ensure_utc(now)
        return overlay(self._manual_state(env, self.store.get(env)), self.list_windows(env), at)

    # -- writes ----------------------------------------------------------------

    def _mutate(self, env: str, apply: Callable[[Optional[Dict[str, Any]]], Any]) -> Any:
        attempts = get_conflict_retry_attempts()
        for attempt in range(attempts):
            try:
                with self.store.storage.transaction():
                    return apply(self.store.get(env))
            except ConflictError:
                logger.warning("lock write conflict env=%s attempt=%s", env, attempt + 1)
                continue
        raise ConflictError(
            f"lock for {env!r} kept changing; gave up after {attempts} attempts",
            details={"environment": env, "attempts": attempts},
        )

    def _state_fields(self, env: str, manual: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        effective = overlay(
            EnvironmentLock(
                environment_id=env,
                lock_type=manual["lock_type"],
                manual_lock_type=manual["lock_type"],
            ),
            self.list_windows(env),
            now,
        )
        return {**manual, "effective_lock_type": effective.lock_type, "effective_source": effective.source}

    def _require_unlock(self, env: str, role: Any, user_id: str, action: str, now: datetime) -> None:
        try:
            self.authorizer.require(role, env, Capability.UNLOCK, user_id=user_id)
        except LockAuthorizationError as exc:
            self._audit_denied(env, user_id, role, action, exc.reason_code, exc.details, now)
            raise

    def _audit_denied(
        self,
        env: str,
        user_id: str,
        role: Any,
        action: str,
        reason_code: str,
        details: Dict[str, Any],
        now: datetime,
    ) -> None:
        self.recorder.record(
            action=action,
            resource_type=ResourceType.ENVIRONMENT_LOCK,
            resource_id=env,
            result="DENIED",
            timestamp=now,
            user_id=user_id,
            role=role,
            reason_code=reason_code,
            details=details,
        )

    def set_lock(
        self,
        environment_id: str,
        lock_type: Any,
        reason: Optional[str],
        set_by: str,
        role: Any,
        *,
        auto_relock_at: Optional[datetime] = None,
        ticket_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EnvironmentLock:
        env = normalize_environment(environment_id)
        at = ensure_utc(now)
        target = LockType.parse(lock_type)
        self._require_unlock(env, role, set_by, AuditAction.LOCK_SET, at)
        ticket = str(ticket_id or "").strip() or None
        if target == LockType.UNLOCKED and self.governance.requires_ticket(env) and not ticket:
            details = {"environment": env, "lock_type": target.value}
            self._audit_denied(env, set_by, role, AuditAction.LOCK_SET, "TICKET_REQUIRED", details, at)
            raise LockAuthorizationError(
                f"unlocking {env!r} requires a change ticket",
                reason_code="TICKET_REQUIRED",
                details=details,
            )
        relock_at = ensure_utc(auto_relock_at) if auto_relock_at else None

        def apply(row: Optional[Dict[str, Any]]) -> None:
            prior = self._manual_state(env, row)
            manual = {
                "lock_type": target,
                "reason": reason,
                "set_by": set_by,
                "set_at": at,
                "auto_relock_at": relock_at,
                "relock_type": _relock_target(prior.manual_lock_type) if relock_at else None,
                "ticket_id": ticket,
            }
            self.store.save(env, self._state_fields(env, manual, at), expected_version=prior.version)
            self.recorder.append(
                action=AuditAction.LOCK_SET,
                resource_type=ResourceType.ENVIRONMENT_LOCK,
                resource_id=env,
                result=target.value,
                timestamp=at,
                user_id=set_by,
                role=role,
                details={
                    "from": prior.manual_lock_type.value,
                    "to": target.value,
                    "reason": reason,
                    "ticket_id": ticket,
                    "auto_relock_at": to_iso(relock_at),
                },
            )

        self._mutate(env, apply)
        logger.info("lock set env=%s type=%s by=%s", env, target.value, set_by)
        return self.current_state(env, at)

    def emergency_unlock(
        self,
        environment_id: str,
        reason: Optional[str],
        ticket_id: Optional[str],
        mfa_verified: bool,
        auto_relock_minutes: Optional[int],
        requested_by: str,
        role: Any,
        *,
        now: Optional[datetime] = None,
    ) -> EnvironmentLock:
        env = normalize_environment(environment_id)
        at = ensure_utc(now)
        self._require_unlock(env, role, requested_by, AuditAction.LOCK_EMERGENCY_UNLOCK, at)

        clean_reason = str(reason or "").strip()
        ticket = str(ticket_id or "").strip()
        minutes = get_default_emergency_relock_minutes() if auto_relock_minutes is None else int(auto_relock_minutes)
        denial: Optional[str] = None
        if not mfa_verified:
            denial = "MFA_REQUIRED"
        elif len(clean_reason) < settings.EMERGENCY_REASON_MIN_LENGTH:
            denial = "REASON_REQUIRED"
        elif not ticket:
            denial = "TICKET_REQUIRED"
        elif not settings.EMERGENCY_RELOCK_MIN_MINUTES <= minutes <= settings.EMERGENCY_RELOCK_MAX_MINUTES:
            denial = "RELOCK_WINDOW_INVALID"
        if denial:
            details = {"environment": env, "denial": denial, "auto_relock_minutes": minutes}
            self._audit_denied(env, requested_by, role, AuditAction.LOCK_EMERGENCY_UNLOCK, denial, details, at)
            raise EmergencyUnlockDenied(f"emergency unlock of {env!r} denied: {denial}", details=details)

        relock_at = at + timedelta(minutes=minutes)

        def apply(row: Optional[Dict[str, Any]]) -> None:
            prior = self._manual_state(env, row)
            relock_type = _relock_target(prior.manual_lock_type)
            manual = {
                "lock_type": LockType.UNLOCKED,
                "reason": clean_reason,
                "set_by": requested_by,
                "set_at": at,
                "auto_relock_at": relock_at,
                "relock_type": relock_type,
                "ticket_id": ticket,
            }
            self.store.save(env, self._state_fields(env, manual, at), expected_version=prior.version)
            self.recorder.append(
                action=AuditAction.LOCK_EMERGENCY_UNLOCK,
                resource_type=ResourceType.ENVIRONMENT_LOCK,
                resource_id=env,
                result=LockType.UNLOCKED.value,
                timestamp=at,
                user_id=requested_by,
                role=role,
                reason_code="EMERGENCY_UNLOCK",
                details={
                    "from": prior.manual_lock_type.value,
                    "to": LockType.UNLOCKED.value,
                    "reason": clean_reason,
                    "ticket_id": ticket,
                    "mfa_verified": True,
                    "auto_relock_at": to_iso(relock_at),
                    "relock_type": relock_type.value,
                },
            )

        self._mutate(env, apply)
        logger.warning(
            "emergency unlock env=%s by=%s ticket=%s relock_at=%s", env, requested_by, ticket, to_iso(relock_at)
        )
        return self.current_state(env, at)

    def schedule_lock(
        self,
        environment_id: str,
        window: ScheduledWindow,
        lock_type: Any = None,
        *,
        created_by: str,
        role: Any,
        now: Optional[datetime] = None,
    ) -> EnvironmentLock:
        env = normalize_environment(environment_id)
        at = ensure_utc(now)
        self._require_unlock(env, role, created_by, AuditAction.LOCK_SCHEDULE_ADDED, at)
        if lock_type is not None:
            window = window.model_copy(update={"lock_type": LockType.parse(lock_type)})

        with self.store.storage.transaction():
            window_id = self.store.add_window(env, window, created_by=created_by, now=at)
            self.recorder.append(
                action=AuditAction.LOCK_SCHEDULE_ADDED,
                resource_type=ResourceType.ENVIRONMENT_LOCK,
                resource_id=env,
                result=window.lock_type.value,
                timestamp=at,
                user_id=created_by,
                role=role,
                details={"window_id": window_id, "window": window.model_dump(mode="json")},
            )
        logger.info("lock window added env=%s name=%s type=%s", env, window.name, window.lock_type.value)
        return self.current_state(env, at)

    # -- sweep -----------------------------------------------------------------

    def relock_due(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Re-lock environments whose auto-relock time has passed. A row that was
        already re-locked, or re-armed for later, is left alone and not audited.
        """
        at = ensure_utc(now)
        relocked: List[Dict[str, Any]] = []
        for env in self.store.due_for_relock(at):

            def apply(row: Optional[Dict[str, Any]], env: str = env) -> Optional[Dict[str, Any]]:
                prior = self._manual_state(env, row)
                if row is None or prior.auto_relock_at is None or prior.auto_relock_at > at:
                    return None
                target = prior.relock_type or LockType.SOFT_LOCKED
                manual = {
                    "lock_type": target,
                    "reason": f"auto-relock after: {prior.reason}" if prior.reason else "auto-relock",
                    "set_by": SYSTEM_ACTOR,
                    "set_at": at,
                    "auto_relock_at": None,
                    "relock_type": None,
                    "ticket_id": prior.ticket_id,
                }
                self.store.save(env, self._state_fields(env, manual, at), expected_version=prior.version)
                self.recorder.append(
                    action=AuditAction.LOCK_AUTO_RELOCK,
                    resource_type=ResourceType.ENVIRONMENT_LOCK,
                    resource_id=env,
                    result=target.value,
                    timestamp=at,
                    user_id=SYSTEM_ACTOR,
                    details={
                        "from": prior.manual_lock_type.value,
                        "to": target.value,
                        "scheduled_for": to_iso(prior.auto_relock_at),
                    },
                )
                return {"environment": env, "from": prior.manual_lock_type.value, "to": target.value}

            outcome = self._mutate(env, apply)
            if outcome:
                logger.info("auto-relocked env=%s to=%s", env, outcome["to"])
                relocked.append(outcome)
        return relocked

    def known_environments(self) -> List[str]:
        envs = set(self.store.environments())
        envs.update(self.governance.locks.windows.keys())
        return sorted(envs)

    def sync_scheduled_states(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """
        Persist the effective state of every environment with a schedule or
        a lock row, auditing only the environments whose effective state changed.
        """
        at = ensure_utc(now)
        transitions: List[Dict[str, Any]] = []
        for env in self.known_environments():
            windows = self.list_windows(env)

            def apply(row: Optional[Dict[str, Any]], env: str = env) -> Optional[Dict[str, Any]]:
                prior = self._manual_state(env, row)
                effective = overlay(prior, windows, at)
                stored_type = row.get("effective_lock_type") if row else None
                stored_source = row.get("effective_source") if row else None
                if row is None and effective.source != "schedule":
                    return None
                if stored_type == effective.lock_type.value and stored_source == effective.source:
                    return None
                manual = {
                    "lock_type": prior.manual_lock_type,
                    "reason": prior.reason,
                    "set_by": prior.set_by,
                    "set_at": prior.set_at,
                    "auto_relock_at": prior.auto_relock_at,
                    "relock_type": prior.relock_type,
                    "ticket_id": prior.ticket_id,
                    "effective_lock_type": effective.lock_type,
                    "effective_source": effective.source,
                }
                self.store.save(env, manual, expected_version=prior.version)
                previous = stored_type or prior.manual_lock_type.value
                self.recorder.append(
                    action=AuditAction.LOCK_SCHEDULE_TRANSITION,
                    resource_type=ResourceType.ENVIRONMENT_LOCK,
                    resource_id=env,
                    result=effective.lock_type.value,
                    timestamp=at,
                    user_id=SYSTEM_ACTOR,
                    details={
                        "from": previous,
                        "to": effective.lock_type.value,
                        "source": effective.source,
                        "window": effective.active_window,
                    },
                )
                return {
                    "environment": env,
                    "from": previous,
                    "to": effective.lock_type.value,
                    "window": effective.active_window,
                }

            outcome = self._mutate(env, apply)
            if outcome:
                logger.info(
                    "scheduled lock transition env=%s %s -> %s window=%s",
                    env,
                    outcome["from"],
                    outcome["to"],
                    outcome["window"],
                )
                transitions.append(outcome)
        return transitions
