import pytest

from deploygate.errors import ConfigurationError, ConflictError
from deploygate.storage import get_storage_backend
from deploygate.storage.base import resolve_tenant_id
from deploygate.storage.sqlite_impl import SQLiteStorageBackend


@pytest.fixture
def backend(tmp_path):
    storage = SQLiteStorageBackend(str(tmp_path / "storage.db"))
    storage.execute("CREATE TABLE items (item_id TEXT PRIMARY KEY, label TEXT, version INTEGER NOT NULL)")
    return storage


@pytest.fixture
def fresh_factory():
    get_storage_backend.cache_clear()
    yield get_storage_backend
    get_storage_backend.cache_clear()


def test_unknown_backend_name_is_a_configuration_error(monkeypatch, fresh_factory):
    monkeypatch.setenv("DEPLOYGATE_STORAGE_BACKEND", "mongodb")
    with pytest.raises(ConfigurationError) as excinfo:
        fresh_factory()
    assert excinfo.value.reason_code == "CONFIG_INVALID"
    assert excinfo.value.details["allowed"] == ["sqlite", "postgres"]


def test_backend_name_is_case_insensitive(monkeypatch, fresh_factory):
    monkeypatch.setenv("DEPLOYGATE_STORAGE_BACKEND", " SQLite ")
    assert fresh_factory().name == "sqlite"


def test_insert_unique_reports_duplicate_key_as_conflict(backend):
    insert = "INSERT INTO items (item_id, label, version) VALUES (?, ?, 1)"
    backend.insert_unique(insert, ("a", "first"), conflict_message="item exists")
    with pytest.raises(ConflictError) as excinfo:
        backend.insert_unique(insert, ("a", "second"), conflict_message="item exists", details={"item_id": "a"})
    assert excinfo.value.details == {"item_id": "a"}
    assert backend.fetchone("SELECT label FROM items WHERE item_id = ?", ("a",))["label"] == "first"


def test_update_versioned_rejects_stale_version(backend):
    backend.execute("INSERT INTO items (item_id, label, version) VALUES ('a', 'first', 1)")
    update = "UPDATE items SET label = ?, version = version + 1 WHERE item_id = ? AND version = ?"

    backend.update_versioned(update, ("second", "a", 1), conflict_message="item moved")
    with pytest.raises(ConflictError):
        backend.update_versioned(update, ("stale", "a", 1), conflict_message="item moved")
    row = backend.fetchone("SELECT label, version FROM items WHERE item_id = ?", ("a",))
    assert (row["label"], row["version"]) == ("second", 2)


def test_resolve_tenant_id(monkeypatch):
    monkeypatch.delenv("DEPLOYGATE_TENANT_ID", raising=False)
    assert resolve_tenant_id(" acme ") == "acme"
    assert resolve_tenant_id(allow_none=True) is None
    with pytest.raises(ValueError):
        resolve_tenant_id()

    monkeypatch.setenv("DEPLOYGATE_REQUIRE_TENANT_ID", "false")
    assert resolve_tenant_id() == "default"
    monkeypatch.setenv("DEPLOYGATE_TENANT_ID", "tenant-env")
    assert resolve_tenant_id() == "tenant-env"
