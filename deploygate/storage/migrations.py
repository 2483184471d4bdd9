from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Set

from deploygate.storage.base import StorageBackend


@dataclass(frozen=True)
class Migration:
    migration_id: str
    description: str
    apply: Callable[[StorageBackend], None]


def _create_schema_migrations_table(storage: StorageBackend) -> None:
    storage.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            migration_id TEXT PRIMARY KEY,
            description TEXT NOT NULL,
            applied_at TEXT NOT NULL
        )
        """
    )


def _applied_migration_ids(storage: StorageBackend) -> Set[str]:
    rows = storage.fetchall("SELECT migration_id FROM schema_migrations")
    return {str(row["migration_id"]) for row in rows}


def _mark_migration(storage: StorageBackend, migration: Migration) -> None:
    storage.execute(
        """
        INSERT INTO schema_migrations (migration_id, description, applied_at)
        VALUES (?, ?, ?)
        ON CONFLICT(migration_id) DO NOTHING
        """,
        (migration.migration_id, migration.description, datetime.now(timezone.utc).isoformat()),
    )


def _migration_001_governance_tables(storage: StorageBackend) -> None:
    storage.execute(
        """
        CREATE TABLE IF NOT EXISTS environment_locks (
            tenant_id TEXT NOT NULL,
            environment_id TEXT NOT NULL,
            lock_type TEXT NOT NULL,
            reason TEXT,
            set_by TEXT,
            set_at TEXT,
            auto_relock_at TEXT,
            relock_type TEXT,
            ticket_id TEXT,
            effective_lock_type TEXT,
            effective_source TEXT,
            version INTEGER NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (tenant_id, environment_id)
        )
        """
    )
    storage.execute(
        "CREATE INDEX IF NOT EXISTS idx_environment_locks_relock ON environment_locks(tenant_id, auto_relock_at)"
    )
    storage.execute(
        """
        CREATE TABLE IF NOT EXISTS environment_lock_windows (
            tenant_id TEXT NOT NULL,
            window_id TEXT NOT NULL,
            environment_id TEXT NOT NULL,
            name TEXT NOT NULL,
            lock_type TEXT NOT NULL,
            schedule_json TEXT NOT NULL,
            reason TEXT,
            created_by TEXT,
            created_at TEXT NOT NULL,
            position INTEGER NOT NULL,
            PRIMARY KEY (tenant_id, window_id)
        )
        """
    )
    storage.execute(
        "CREATE INDEX IF NOT EXISTS idx_lock_windows_env ON environment_lock_windows(tenant_id, environment_id, position)"
    )
    storage.execute(
        """
        CREATE TABLE IF NOT EXISTS approval_requests (
            tenant_id TEXT NOT NULL,
            request_id TEXT NOT NULL,
            execution_ref TEXT,
            environment TEXT NOT NULL,
            commit_sha TEXT NOT NULL,
            generation INTEGER NOT NULL,
            requested_by TEXT NOT NULL,
            requested_role TEXT,
            required_approvals INTEGER NOT NULL,
            required_roles_json TEXT NOT NULL,
            votes_json TEXT NOT NULL,
            status TEXT NOT NULL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            block_self_approval INTEGER NOT NULL,
            require_distinct_approvers INTEGER NOT NULL,
            resolution_reason_code TEXT,
            resolved_at TEXT,
            version INTEGER NOT NULL,
            updated_at TEXT NOT NULL,
            PRIMARY KEY (tenant_id, request_id)
        )
        """
    )
    storage.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS uq_approval_requests_context
        ON approval_requests(tenant_id, environment, commit_sha, generation)
        """
    )
    storage.execute(
        "CREATE INDEX IF NOT EXISTS idx_approval_requests_status ON approval_requests(tenant_id, status, expires_at)"
    )
    storage.execute(
        """
        CREATE TABLE IF NOT EXISTS approval_notifications (
            tenant_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            request_id TEXT NOT NULL,
            environment TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (tenant_id, event_id)
        )
        """
    )
    storage.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_approval_notifications_request ON approval_notifications(tenant_id, request_id)"
    )


def _migration_002_audit_entries(storage: StorageBackend) -> None:
    storage.execute(
        """
        CREATE TABLE IF NOT EXISTS audit_entries (
            tenant_id TEXT NOT NULL,
            entry_id TEXT NOT NULL,
            seq INTEGER NOT NULL,
            timestamp TEXT NOT NULL,
            action TEXT NOT NULL,
            resource_type TEXT NOT NULL,
            resource_id TEXT NOT NULL,
            user_id TEXT,
            role TEXT,
            result TEXT NOT NULL,
            reason_code TEXT,
            details_json TEXT NOT NULL,
            prev_hash TEXT NOT NULL,
            entry_hash TEXT NOT NULL,
            recorded_at TEXT NOT NULL,
            PRIMARY KEY (tenant_id, entry_id)
        )
        """
    )
    storage.execute("CREATE UNIQUE INDEX IF NOT EXISTS uq_audit_entries_seq ON audit_entries(tenant_id, seq)")
    storage.execute("CREATE UNIQUE INDEX IF NOT EXISTS uq_audit_entries_prev ON audit_entries(tenant_id, prev_hash)")
    storage.execute("CREATE INDEX IF NOT EXISTS idx_audit_entries_ts ON audit_entries(tenant_id, timestamp, seq)")
    storage.execute(
        "CREATE INDEX IF NOT EXISTS idx_audit_entries_resource ON audit_entries(tenant_id, resource_id, timestamp)"
    )
    storage.execute(
        "CREATE INDEX IF NOT EXISTS idx_audit_entries_action ON audit_entries(tenant_id, action, timestamp)"
    )
    storage.execute(
        "CREATE INDEX IF NOT EXISTS idx_audit_entries_user ON audit_entries(tenant_id, user_id, timestamp)"
    )

    if storage.name == "postgres":
        storage.execute(
            """
            CREATE OR REPLACE FUNCTION deploygate_audit_immutable() RETURNS trigger AS $$
            BEGIN
                RAISE EXCEPTION 'Audit entries are immutable: % not allowed', TG_OP;
            END;
            $$ LANGUAGE plpgsql
            """
        )
        storage.execute("DROP TRIGGER IF EXISTS prevent_audit_entry_mutation ON audit_entries")
        storage.execute(
            """
            CREATE TRIGGER prevent_audit_entry_mutation
            BEFORE UPDATE OR DELETE ON audit_entries
            FOR EACH ROW EXECUTE FUNCTION deploygate_audit_immutable()
            """
        )
        return

    storage.execute(
        """
        CREATE TRIGGER IF NOT EXISTS prevent_audit_entry_update
        BEFORE UPDATE ON audit_entries
        BEGIN
            SELECT RAISE(FAIL, 'Audit entries are immutable: UPDATE not allowed');
        END;
        """
    )
    storage.execute(
        """
        CREATE TRIGGER IF NOT EXISTS prevent_audit_entry_delete
        BEFORE DELETE ON audit_entries
        BEGIN
            SELECT RAISE(FAIL, 'Audit entries are immutable: DELETE not allowed');
        END;
        """
    )


def _migration_003_metrics_events(storage: StorageBackend) -> None:
    storage.execute(
        """
        CREATE TABLE IF NOT EXISTS metrics_events (
            tenant_id TEXT NOT NULL,
            event_id TEXT NOT NULL,
            metric_name TEXT NOT NULL,
            metric_value INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            metadata_json TEXT,
            PRIMARY KEY (tenant_id, event_id)
        )
        """
    )
    storage.execute(
        "CREATE INDEX IF NOT EXISTS idx_metrics_events_name ON metrics_events(tenant_id, metric_name, created_at)"
    )


MIGRATIONS: List[Migration] = [
    Migration(
        migration_id="20260301_001_governance_tables",
        description="Create versioned lock state, lock windows, approval requests and notification outbox.",
        apply=_migration_001_governance_tables,
    ),
    Migration(
        migration_id="20260301_002_audit_entries",
        description="Create hash-chained append-only audit_entries with immutability triggers.",
        apply=_migration_002_audit_entries,
    ),
    Migration(
        migration_id="20260301_003_metrics_events",
        description="Create tenant-scoped append-only metrics_events table.",
        apply=_migration_003_metrics_events,
    ),
]


def apply_migrations(storage: StorageBackend, *, auto_apply: bool = True) -> str:
    """
    Apply forward-only migrations in order and return current schema version id.
    """
    _create_schema_migrations_table(storage)
    applied = _applied_migration_ids(storage)
    pending = [m for m in MIGRATIONS if m.migration_id not in applied]
    if pending and not auto_apply:
        raise RuntimeError(
            f"Database schema is behind. Pending migrations: {[m.migration_id for m in pending]}"
        )
    for migration in pending:
        with storage.transaction():
            migration.apply(storage)
            _mark_migration(storage, migration)
    return MIGRATIONS[-1].migration_id if MIGRATIONS else "base"
