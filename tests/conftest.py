import os

import pytest

from deploygate import config as settings
from deploygate.approvals.notifications import NotificationDispatcher
from deploygate.engine import GovernanceEngine
from deploygate.governance.config import clear_config_cache, default_governance_config, parse_governance_config
from deploygate.observability.internal_metrics import reset as reset_metrics
from deploygate.storage.schema import init_db


def pytest_configure(config):
    os.environ.setdefault("DEPLOYGATE_TENANT_ID", "tenant-test")
    os.environ.setdefault("DEPLOYGATE_GOVERNANCE_CONFIG", "tests/missing-deploygate.yaml")
    os.environ.setdefault("DEPLOYGATE_SWEEP_ENABLED", "false")


@pytest.fixture
def clean_db(tmp_path, monkeypatch):
    db_path = str(tmp_path / "deploygate.db")
    monkeypatch.setattr(settings, "DB_PATH", db_path)
    init_db()
    yield db_path
    if os.path.exists(db_path):
        os.remove(db_path)


@pytest.fixture(autouse=True)
def _reset_state():
    reset_metrics()
    clear_config_cache()
    yield
    reset_metrics()
    clear_config_cache()


@pytest.fixture
def dispatcher():
    return NotificationDispatcher()


@pytest.fixture
def engine(clean_db, dispatcher):
    return GovernanceEngine(default_governance_config(), dispatcher=dispatcher)


@pytest.fixture
def make_engine(clean_db, dispatcher):
    def _make(raw=None, *, tenant_id=None):
        governance = parse_governance_config(raw, source="test") if raw is not None else default_governance_config()
        return GovernanceEngine(governance, tenant_id=tenant_id, dispatcher=dispatcher)

    return _make
