from __future__ import annotations

from typing import Dict, List

from deploygate.storage import get_storage_backend
from deploygate.storage.migrations import MIGRATIONS, apply_migrations

# Bump together with a new entry in MIGRATIONS.
SCHEMA_VERSION = MIGRATIONS[-1].migration_id


def init_db() -> str:
    """
    Bring the configured storage backend up to the latest schema.
    """
    return apply_migrations(get_storage_backend())


def migration_status() -> Dict[str, List[dict]]:
    """
    Return applied migration history.
    """
    init_db()
    storage = get_storage_backend()
    rows = storage.fetchall(
        """
        SELECT migration_id, description, applied_at
        FROM schema_migrations
        ORDER BY migration_id ASC
        """
    )
    return {"applied": rows}
