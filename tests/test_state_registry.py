"""Node registry tests."""
from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from mnodectl.errors import (
    InvalidFieldError,
    InvalidMethodError,
    InvalidNameError,
    NodeExistsError,
    NodeNotFoundError,
    PortConflictError,
    PortConflictReason,
    StorageFault,
)
from mnodectl.state import (
    NodeMethod,
    NodeRecord,
    RegistryStore,
    UpdatableField,
    parse_inbounds,
    validate_name,
)
from mnodectl.state.registry import SCHEMA_VERSION


def _record(name: str, service: int, xray: int, tmp_path: Path, **kwargs: object) -> NodeRecord:
    return NodeRecord(
        name=name,
        service_port=service,
        xray_api_port=xray,
        method=kwargs.pop("method", NodeMethod.CONTAINER),  # type: ignore[arg-type]
        install_dir=tmp_path / "opt" / name,
        data_dir=tmp_path / "data" / name,
        cert_file=tmp_path / "data" / name / "ssl_client_cert.pem",
        **kwargs,  # type: ignore[arg-type]
    )


def test_ensure_initialized_creates_schema(tmp_path: Path) -> None:
    """A fresh database gets both tables and the schema version."""
    store = RegistryStore(tmp_path / "state" / "nodes.db")

    store.ensure_initialized()
    store.ensure_initialized()

    assert (tmp_path / "state" / "nodes.db").exists()
    assert store.get_config("schema_version") == str(SCHEMA_VERSION)
    assert store.count() == 0


def test_ensure_initialized_adds_inbounds_column(tmp_path: Path) -> None:
    """Databases created before inbound filtering gain the column."""
    db_path = tmp_path / "nodes.db"
    conn = sqlite3.connect(db_path)
    conn.execute(
        "CREATE TABLE nodes (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT UNIQUE NOT NULL, "
        "service_port INTEGER NOT NULL, xray_api_port INTEGER NOT NULL, "
        "method TEXT NOT NULL DEFAULT 'docker', install_dir TEXT NOT NULL, "
        "data_dir TEXT NOT NULL, cert_file TEXT, created_at TEXT NOT NULL, "
        "updated_at TEXT NOT NULL, status TEXT DEFAULT 'installed')"
    )
    conn.execute(
        "INSERT INTO nodes (name, service_port, xray_api_port, method, install_dir, data_dir, "
        "created_at, updated_at) VALUES ('legacy', 62050, 62051, 'docker', '/opt/legacy', "
        "'/var/lib/legacy', '2024-01-01 10:00:00', '2024-01-01 10:00:00')"
    )
    conn.commit()
    conn.close()

    store = RegistryStore(db_path)
    store.ensure_initialized()

    record = store.require("legacy")
    assert record.inbounds == ()
    assert record.method is NodeMethod.CONTAINER
    assert record.created_at is not None
    assert record.created_at.tzinfo is not None


def test_legacy_registry_still_rejects_equal_ports(tmp_path: Path) -> None:
    """Tables created without the port CHECK are guarded on update."""
    db_path = tmp_path / "nodes.db"
    conn = sqlite3.connect(db_path)
    conn.execute(
        "CREATE TABLE nodes (id INTEGER PRIMARY KEY AUTOINCREMENT, name TEXT UNIQUE NOT NULL, "
        "service_port INTEGER NOT NULL, xray_api_port INTEGER NOT NULL, "
        "method TEXT NOT NULL DEFAULT 'docker', install_dir TEXT NOT NULL, "
        "data_dir TEXT NOT NULL, cert_file TEXT, created_at TEXT NOT NULL, "
        "updated_at TEXT NOT NULL, status TEXT DEFAULT 'installed')"
    )
    conn.execute(
        "INSERT INTO nodes (name, service_port, xray_api_port, install_dir, data_dir, "
        "created_at, updated_at) VALUES ('legacy', 62050, 62051, '/opt/legacy', "
        "'/var/lib/legacy', '2024-01-01 10:00:00', '2024-01-01 10:00:00')"
    )
    conn.commit()
    conn.close()
    store = RegistryStore(db_path)
    store.ensure_initialized()

    with pytest.raises(PortConflictError):
        store.update("legacy", {UpdatableField.SERVICE_PORT: 62051})

    assert store.require("legacy").ports == (62050, 62051)


def test_ensure_initialized_reports_unwritable_directory(tmp_path: Path) -> None:
    """A registry path below a regular file raises StorageFault."""
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")

    store = RegistryStore(blocker / "nodes.db")

    with pytest.raises(StorageFault):
        store.ensure_initialized()


def test_create_and_get_roundtrip(store: RegistryStore, tmp_path: Path) -> None:
    """Created records come back with ids, timestamps and inbounds."""
    created = store.create(
        _record("node1", 62050, 62051, tmp_path, inbounds=("vless", "vmess"))
    )

    assert created.id is not None
    assert created.created_at is not None
    assert created.created_at == created.updated_at

    loaded = store.require("node1")
    assert loaded == created
    assert loaded.inbounds == ("vless", "vmess")
    assert loaded.inbounds_value == "vless,vmess"
    assert loaded.cert_file == tmp_path / "data" / "node1" / "ssl_client_cert.pem"
    assert loaded.status == "installed"


def test_create_duplicate_name_leaves_registry_unchanged(
    store: RegistryStore,
    tmp_path: Path,
) -> None:
    """Inserting a duplicate name raises and keeps the original record."""
    original = store.create(_record("node1", 62050, 62051, tmp_path))

    with pytest.raises(NodeExistsError) as excinfo:
        store.create(_record("node1", 62060, 62061, tmp_path))

    assert excinfo.value.name == "node1"
    assert store.count() == 1
    assert store.require("node1").ports == original.ports


def test_list_returns_creation_order(store: RegistryStore, tmp_path: Path) -> None:
    """Records are listed oldest first."""
    for index, name in enumerate(["zeta", "alpha", "mid"]):
        store.create(_record(name, 62050 + index * 10, 62051 + index * 10, tmp_path))

    assert store.names() == ["zeta", "alpha", "mid"]
    assert [record.name for record in store.list()] == ["zeta", "alpha", "mid"]


def test_get_missing_returns_none(store: RegistryStore) -> None:
    """Unknown names return ``None`` and ``require`` raises."""
    assert store.get("ghost") is None
    assert store.exists("ghost") is False
    with pytest.raises(NodeNotFoundError):
        store.require("ghost")


def test_update_whitelisted_fields(store: RegistryStore, tmp_path: Path) -> None:
    """Updates change only the requested fields and bump ``updated_at``."""
    created = store.create(_record("node1", 62050, 62051, tmp_path))

    updated = store.update(
        "node1",
        {
            UpdatableField.SERVICE_PORT: 63000,
            "xray_api_port": "63001",
            UpdatableField.INBOUNDS: ["a", "b", "a"],
        },
    )

    assert updated.ports == (63000, 63001)
    assert updated.inbounds == ("a", "b")
    assert updated.method is created.method
    assert updated.created_at == created.created_at
    assert updated.updated_at is not None
    assert created.updated_at is not None
    assert updated.updated_at >= created.updated_at


def test_update_rejects_fields_outside_whitelist(store: RegistryStore, tmp_path: Path) -> None:
    """Fields such as ``method`` cannot be updated."""
    store.create(_record("node1", 62050, 62051, tmp_path))

    with pytest.raises(InvalidFieldError) as excinfo:
        store.update("node1", {"method": "process"})

    assert excinfo.value.field == "method"
    assert store.require("node1").method is NodeMethod.CONTAINER


def test_create_rejects_equal_ports(store: RegistryStore, tmp_path: Path) -> None:
    """A record cannot store the same port twice."""
    with pytest.raises(PortConflictError) as excinfo:
        store.create(_record("node1", 62050, 62050, tmp_path))

    assert excinfo.value.reason is PortConflictReason.EQUAL
    assert store.count() == 0


def test_update_rejects_equal_ports(store: RegistryStore, tmp_path: Path) -> None:
    """Updates leaving both ports equal are rolled back."""
    store.create(_record("node1", 62050, 62051, tmp_path))

    with pytest.raises(PortConflictError):
        store.update("node1", {UpdatableField.XRAY_API_PORT: 62050})

    assert store.require("node1").ports == (62050, 62051)


def test_schema_enforces_distinct_ports(store: RegistryStore) -> None:
    """The nodes table itself refuses equal ports."""
    conn = sqlite3.connect(store.path)
    try:
        with pytest.raises(sqlite3.IntegrityError, match="CHECK"):
            conn.execute(
                "INSERT INTO nodes (name, service_port, xray_api_port, install_dir, data_dir, "
                "created_at, updated_at) VALUES ('raw', 62050, 62050, '/opt/raw', "
                "'/var/lib/raw', '2024-01-01 10:00:00', '2024-01-01 10:00:00')"
            )
    finally:
        conn.close()


def test_update_missing_node_raises(store: RegistryStore) -> None:
    """Updating an unknown node raises NodeNotFoundError."""
    with pytest.raises(NodeNotFoundError):
        store.update("ghost", {UpdatableField.STATUS: "stopped"})


def test_delete_removes_record(store: RegistryStore, tmp_path: Path) -> None:
    """Deleted nodes disappear; deleting twice is harmless."""
    store.create(_record("node1", 62050, 62051, tmp_path))

    store.delete("node1")
    store.delete("node1")

    assert store.count() == 0


def test_port_queries(store: RegistryStore, tmp_path: Path) -> None:
    """Port helpers report owners and respect the excluded name."""
    store.create(_record("node1", 62050, 62051, tmp_path))
    store.create(_record("node2", 62060, 62061, tmp_path))

    assert store.port_owner(62051) == "node1"
    assert store.port_owner(62052) is None
    assert store.port_in_use(62060) is True
    assert store.port_in_use(62060, excluding_name="node2") is False
    assert store.port_in_use(62060, excluding_name="node1") is True
    assert store.used_ports() == {62050, 62051, 62060, 62061}
    assert store.max_service_port() == 62060


def test_config_entries(store: RegistryStore) -> None:
    """Config values can be set, read, listed and removed."""
    store.set_config("panel_address", "https://panel.example")
    store.set_config("panel_address", "https://panel2.example")

    assert store.get_config("panel_address") == "https://panel2.example"
    assert store.get_config("missing", "fallback") == "fallback"
    assert "panel_address" in store.list_config()

    assert store.delete_config("panel_address") is True
    assert store.delete_config("panel_address") is False
    assert store.get_config("panel_address") is None


def test_export_and_vacuum(store: RegistryStore, tmp_path: Path) -> None:
    """Export returns JSON-ready dictionaries; vacuum succeeds."""
    store.create(_record("node1", 62050, 62051, tmp_path, method=NodeMethod.PROCESS))

    exported = store.export()
    store.vacuum()

    assert exported[0]["name"] == "node1"
    assert exported[0]["method"] == "process"
    assert exported[0]["inbounds"] == []
    assert isinstance(exported[0]["created_at"], str)


@pytest.mark.parametrize("name", ["node1", "ab", "Edge_Node-2", "a" * 50])
def test_validate_name_accepts(name: str) -> None:
    """Valid names are returned unchanged."""
    assert validate_name(name) == name


@pytest.mark.parametrize("name", ["", "a", "1node", "node.one", "a" * 51, "node one"])
def test_validate_name_rejects(name: str) -> None:
    """Invalid names raise InvalidNameError."""
    with pytest.raises(InvalidNameError):
        validate_name(name)


def test_node_method_aliases() -> None:
    """Legacy method names map onto the enum."""
    assert NodeMethod.parse("docker") is NodeMethod.CONTAINER
    assert NodeMethod.parse("normal") is NodeMethod.PROCESS
    assert NodeMethod.parse("Process") is NodeMethod.PROCESS
    with pytest.raises(InvalidMethodError):
        NodeMethod.parse("podman")


def test_parse_inbounds_normalises() -> None:
    """Inbound filters are trimmed and de-duplicated in order."""
    assert parse_inbounds(None) == ()
    assert parse_inbounds("") == ()
    assert parse_inbounds(" vless , vmess,vless,, ") == ("vless", "vmess")
    assert parse_inbounds(["trojan", " trojan "]) == ("trojan",)
