import os
from dotenv import load_dotenv

# Load params from .env file
load_dotenv()

# Data storage
DB_PATH = os.getenv("DEPLOYGATE_DB_PATH", "data/deploygate.db")

# Branch rules, permission matrix and scheduled windows
GOVERNANCE_CONFIG_PATH = os.getenv("DEPLOYGATE_GOVERNANCE_CONFIG", "deploygate.yaml")

# Emergency relock bounds (minutes)
EMERGENCY_RELOCK_MIN_MINUTES = 1
EMERGENCY_RELOCK_MAX_MINUTES = 1440

# Minimum length for a break-glass justification
EMERGENCY_REASON_MIN_LENGTH = 10


def _env_bool(name: str, default: bool) -> bool:
    raw = str(os.getenv(name, "true" if default else "false")).strip().lower()
    return raw in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
        return value if value > 0 else default
    except ValueError:
        return default


def get_conflict_retry_attempts() -> int:
    """
    Bounded number of optimistic write attempts before a ConflictError
    is surfaced to the caller.
    """
    return _env_int("DEPLOYGATE_CONFLICT_RETRIES", 5)


def get_default_approval_ttl_hours() -> int:
    return _env_int("DEPLOYGATE_APPROVAL_TTL_HOURS", 24)


def get_default_emergency_relock_minutes() -> int:
    return _env_int("DEPLOYGATE_EMERGENCY_RELOCK_MINUTES", 30)


def is_sweep_enabled() -> bool:
    return _env_bool("DEPLOYGATE_SWEEP_ENABLED", False)


def get_sweep_interval_seconds() -> int:
    return _env_int("DEPLOYGATE_SWEEP_INTERVAL_SECONDS", 45)


def get_governance_config_path() -> str:
    return str(os.getenv("DEPLOYGATE_GOVERNANCE_CONFIG", GOVERNANCE_CONFIG_PATH)).strip()


STORAGE_BACKENDS = ("sqlite", "postgres")


def get_storage_backend_name() -> str:
    return str(os.getenv("DEPLOYGATE_STORAGE_BACKEND") or "sqlite").strip().lower()


def is_tenant_required() -> bool:
    """
    Strict tenant boundary. DEPLOYGATE_REQUIRE_TENANT_ID=false lets local and
    test runs fall back to the ``default`` tenant.
    """
    return _env_bool("DEPLOYGATE_REQUIRE_TENANT_ID", True)
