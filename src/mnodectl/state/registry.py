"""SQLite-backed registry of managed nodes.

The registry database (``/var/lib/mnodectl/nodes.db`` by default) is the single
source of truth for which nodes exist, which ports they own and which backend
manages them. Each public method opens a short-lived connection and performs
its mutation as one parameterised statement inside a transaction, so a crash
never leaves a half-written record behind.
"""
from __future__ import annotations

import builtins
import logging
import re
import sqlite3
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from ..errors import (
    XRAY_PORT_LABEL,
    InvalidFieldError,
    InvalidMethodError,
    InvalidNameError,
    NodeExistsError,
    NodeNotFoundError,
    PortConflictError,
    PortConflictReason,
    StorageFault,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 2
NAME_PATTERN = re.compile(r"^[A-Za-z][A-Za-z0-9_-]{1,49}$")
DEFAULT_STATUS = "installed"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS nodes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT UNIQUE NOT NULL,
    service_port INTEGER NOT NULL,
    xray_api_port INTEGER NOT NULL,
    method TEXT NOT NULL DEFAULT 'container',
    install_dir TEXT NOT NULL,
    data_dir TEXT NOT NULL,
    cert_file TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    status TEXT DEFAULT 'installed',
    inbounds TEXT NOT NULL DEFAULT '',
    CHECK (service_port <> xray_api_port)
);
CREATE TABLE IF NOT EXISTS config (
    key TEXT PRIMARY KEY,
    value TEXT
);
CREATE INDEX IF NOT EXISTS idx_nodes_name ON nodes(name);
CREATE INDEX IF NOT EXISTS idx_nodes_service_port ON nodes(service_port);
CREATE INDEX IF NOT EXISTS idx_nodes_xray_api_port ON nodes(xray_api_port);
"""

_COLUMNS = (
    "id, name, service_port, xray_api_port, method, install_dir, data_dir, "
    "cert_file, created_at, updated_at, status, inbounds"
)


class NodeMethod(Enum):
    """How a node's runtime is managed."""

    CONTAINER = "container"
    PROCESS = "process"

    @classmethod
    def parse(cls, value: str | NodeMethod) -> NodeMethod:
        """Return the method for *value*, accepting ``docker``/``normal`` aliases."""
        if isinstance(value, NodeMethod):
            return value
        normalized = str(value).strip().lower()
        alias = _METHOD_ALIASES.get(normalized, normalized)
        try:
            return cls(alias)
        except ValueError:
            raise InvalidMethodError(
                f"Invalid method '{value}'. Use 'container' or 'process'."
            ) from None


_METHOD_ALIASES = {"docker": "container", "normal": "process"}


class UpdatableField(Enum):
    """Columns that :meth:`RegistryStore.update` may change."""

    SERVICE_PORT = "service_port"
    XRAY_API_PORT = "xray_api_port"
    INSTALL_DIR = "install_dir"
    DATA_DIR = "data_dir"
    CERT_FILE = "cert_file"
    STATUS = "status"
    INBOUNDS = "inbounds"

    @classmethod
    def parse(cls, value: str | UpdatableField) -> UpdatableField:
        """Return the member for *value* or raise :class:`InvalidFieldError`."""
        if isinstance(value, UpdatableField):
            return value
        try:
            return cls(str(value))
        except ValueError:
            raise InvalidFieldError(str(value)) from None


def validate_name(name: str) -> str:
    """Return *name* unchanged when it is a valid node name."""
    if not isinstance(name, str) or not name:
        raise InvalidNameError("Node name cannot be empty.")
    if not 2 <= len(name) <= 50:
        raise InvalidNameError("Node name must be between 2 and 50 characters.")
    if not NAME_PATTERN.match(name):
        raise InvalidNameError(
            "Node name must start with a letter and contain only letters, "
            "numbers, underscores and hyphens."
        )
    return name


def parse_inbounds(value: str | Iterable[str] | None) -> tuple[str, ...]:
    """Normalise an inbound filter into an ordered tuple of unique labels."""
    if value is None:
        return ()
    items = value.split(",") if isinstance(value, str) else list(value)
    seen: list[str] = []
    for item in items:
        label = str(item).strip()
        if label and label not in seen:
            seen.append(label)
    return tuple(seen)


@dataclass(frozen=True, slots=True)
class NodeRecord:
    """Registry entry describing one managed node."""

    name: str
    service_port: int
    xray_api_port: int
    method: NodeMethod
    install_dir: Path
    data_dir: Path
    cert_file: Path | None = None
    inbounds: tuple[str, ...] = ()
    status: str = DEFAULT_STATUS
    created_at: datetime | None = None
    updated_at: datetime | None = None
    id: int | None = field(default=None, compare=False)

    @property
    def ports(self) -> tuple[int, int]:
        """Return ``(service_port, xray_api_port)``."""
        return (self.service_port, self.xray_api_port)

    @property
    def inbounds_value(self) -> str:
        """Return the inbound filter in its comma-separated form."""
        return ",".join(self.inbounds)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the record."""
        return {
            "id": self.id,
            "name": self.name,
            "service_port": self.service_port,
            "xray_api_port": self.xray_api_port,
            "method": self.method.value,
            "install_dir": str(self.install_dir),
            "data_dir": str(self.data_dir),
            "cert_file": str(self.cert_file) if self.cert_file is not None else None,
            "inbounds": list(self.inbounds),
            "status": self.status,
            "created_at": _format_ts(self.created_at),
            "updated_at": _format_ts(self.updated_at),
        }


class RegistryStore:
    """Durable store for :class:`NodeRecord` entries and config values."""

    def __init__(self, path: Path, *, timeout: float = 5.0) -> None:
        """Bind the store to the database at *path*."""
        self.path = Path(path).expanduser()
        self.timeout = timeout

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------
    def ensure_initialized(self) -> None:
        """Create the schema if needed and migrate older databases."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StorageFault(f"Cannot create registry directory {self.path.parent}: {exc}") from exc

        with self._connect() as conn:
            columns = {row["name"] for row in conn.execute("PRAGMA table_info(nodes)")}
            if columns and "inbounds" not in columns:
                logger.info("Adding inbounds column to registry at %s", self.path)
                conn.execute("ALTER TABLE nodes ADD COLUMN inbounds TEXT NOT NULL DEFAULT ''")
            conn.executescript(_SCHEMA)
            conn.execute(
                "INSERT INTO config (key, value) VALUES ('schema_version', ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (str(SCHEMA_VERSION),),
            )

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------
    def create(self, record: NodeRecord) -> NodeRecord:
        """Insert *record*; raise :class:`NodeExistsError` on a duplicate name.

        Equal service and Xray API ports raise :class:`PortConflictError`.
        """
        _ensure_distinct_ports(record.service_port, record.xray_api_port)
        now = _utcnow()
        with self._connect() as conn:
            try:
                cursor = conn.execute(
                    "INSERT INTO nodes (name, service_port, xray_api_port, method, "
                    "install_dir, data_dir, cert_file, created_at, updated_at, status, inbounds) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.name,
                        int(record.service_port),
                        int(record.xray_api_port),
                        record.method.value,
                        str(record.install_dir),
                        str(record.data_dir),
                        str(record.cert_file) if record.cert_file is not None else None,
                        _format_ts(now),
                        _format_ts(now),
                        record.status,
                        record.inbounds_value,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise NodeExistsError(record.name) from exc
            row_id = cursor.lastrowid
        logger.debug("Registered node %s (id=%s)", record.name, row_id)
        return replace(record, id=row_id, created_at=now, updated_at=now)

    def get(self, name: str) -> NodeRecord | None:
        """Return the record for *name* or ``None``."""
        with self._connect() as conn:
            row = conn.execute(f"SELECT {_COLUMNS} FROM nodes WHERE name = ?", (name,)).fetchone()
        return _row_to_record(row) if row is not None else None

    def require(self, name: str) -> NodeRecord:
        """Return the record for *name* or raise :class:`NodeNotFoundError`."""
        record = self.get(name)
        if record is None:
            raise NodeNotFoundError(name)
        return record

    def exists(self, name: str) -> bool:
        """Return ``True`` when *name* is registered."""
        return self.get(name) is not None

    def list(self) -> builtins.list[NodeRecord]:
        """Return every record in creation order."""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_COLUMNS} FROM nodes ORDER BY created_at, id"
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def names(self) -> builtins.list[str]:
        """Return registered names in creation order."""
        return [record.name for record in self.list()]

    def update(
        self,
        name: str,
        fields: Mapping[UpdatableField | str, object],
    ) -> NodeRecord:
        """Change whitelisted *fields* of node *name* in one statement."""
        parsed = {UpdatableField.parse(key): value for key, value in fields.items()}
        if not parsed:
            return self.require(name)

        columns = {member: _column_value(member, value) for member, value in parsed.items()}
        assignments = [f"{member.value} = ?" for member in columns]
        values: list[object] = list(columns.values())
        assignments.append("updated_at = ?")
        values.append(_format_ts(_utcnow()))
        values.append(name)

        with self._connect() as conn:
            row = conn.execute(
                "SELECT service_port, xray_api_port FROM nodes WHERE name = ?", (name,)
            ).fetchone()
            if row is None:
                raise NodeNotFoundError(name)
            _ensure_distinct_ports(
                columns.get(UpdatableField.SERVICE_PORT, row["service_port"]),
                columns.get(UpdatableField.XRAY_API_PORT, row["xray_api_port"]),
            )
            conn.execute(
                f"UPDATE nodes SET {', '.join(assignments)} WHERE name = ?",
                values,
            )
        return self.require(name)

    def delete(self, name: str) -> None:
        """Remove node *name*; absent names are ignored."""
        with self._connect() as conn:
            conn.execute("DELETE FROM nodes WHERE name = ?", (name,))

    def count(self) -> int:
        """Return the number of registered nodes."""
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) FROM nodes").fetchone()
        return int(row[0])

    # ------------------------------------------------------------------
    # Ports
    # ------------------------------------------------------------------
    def port_owner(self, port: int) -> str | None:
        """Return the name of the node holding *port*, if any."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT name FROM nodes WHERE service_port = ? OR xray_api_port = ? "
                "ORDER BY id LIMIT 1",
                (int(port), int(port)),
            ).fetchone()
        return str(row["name"]) if row is not None else None

    def port_in_use(self, port: int, excluding_name: str | None = None) -> bool:
        """Return ``True`` when *port* is allocated to a node other than *excluding_name*."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM nodes "
                "WHERE (service_port = ? OR xray_api_port = ?) AND name IS NOT ?",
                (int(port), int(port), excluding_name),
            ).fetchone()
        return int(row[0]) > 0

    def used_ports(self) -> set[int]:
        """Return every port allocated in the registry."""
        ports: set[int] = set()
        with self._connect() as conn:
            for row in conn.execute("SELECT service_port, xray_api_port FROM nodes"):
                ports.add(int(row["service_port"]))
                ports.add(int(row["xray_api_port"]))
        return ports

    def max_service_port(self) -> int | None:
        """Return the highest allocated service port."""
        with self._connect() as conn:
            row = conn.execute("SELECT MAX(service_port) FROM nodes").fetchone()
        value = row[0]
        return int(value) if value is not None else None

    # ------------------------------------------------------------------
    # Config entries
    # ------------------------------------------------------------------
    def get_config(self, key: str, default: str | None = None) -> str | None:
        """Return the stored value for *key* or *default*."""
        with self._connect() as conn:
            row = conn.execute("SELECT value FROM config WHERE key = ?", (key,)).fetchone()
        if row is None or row["value"] is None:
            return default
        return str(row["value"])

    def set_config(self, key: str, value: object) -> None:
        """Insert or replace the value for *key*."""
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO config (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, str(value)),
            )

    def delete_config(self, key: str) -> bool:
        """Remove *key*; return ``True`` when a value was deleted."""
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM config WHERE key = ?", (key,))
            return cursor.rowcount > 0

    def list_config(self) -> dict[str, str]:
        """Return every config entry sorted by key."""
        with self._connect() as conn:
            rows = conn.execute("SELECT key, value FROM config ORDER BY key").fetchall()
        return {str(row["key"]): "" if row["value"] is None else str(row["value"]) for row in rows}

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def export(self) -> builtins.list[dict[str, object]]:
        """Return every node as a JSON-ready mapping."""
        return [record.to_dict() for record in self.list()]

    def vacuum(self) -> None:
        """Compact the database file."""
        with self._connect(autocommit=True) as conn:
            conn.execute("VACUUM")

    @contextmanager
    def _connect(self, *, autocommit: bool = False) -> Iterator[sqlite3.Connection]:
        try:
            conn = sqlite3.connect(
                str(self.path),
                timeout=self.timeout,
                isolation_level=None if autocommit else "DEFERRED",
            )
        except sqlite3.Error as exc:
            raise StorageFault(f"Cannot open registry {self.path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise StorageFault(f"Registry operation failed on {self.path}: {exc}") from exc
        finally:
            conn.close()


def _ensure_distinct_ports(service_port: object, xray_api_port: object) -> None:
    # Registries created before the CHECK constraint rely on this alone.
    xray = int(str(xray_api_port))
    if int(str(service_port)) == xray:
        raise PortConflictError(XRAY_PORT_LABEL, PortConflictReason.EQUAL, xray)


def _column_value(member: UpdatableField, value: object) -> object:
    if member in (UpdatableField.SERVICE_PORT, UpdatableField.XRAY_API_PORT):
        return int(str(value))
    if member is UpdatableField.INBOUNDS:
        if value is None or isinstance(value, str):
            return ",".join(parse_inbounds(value))
        if isinstance(value, Iterable):
            return ",".join(parse_inbounds(str(item) for item in value))
        return ",".join(parse_inbounds(str(value)))
    if value is None:
        return None
    return str(value)


def _row_to_record(row: sqlite3.Row) -> NodeRecord:
    cert = row["cert_file"]
    return NodeRecord(
        id=int(row["id"]),
        name=str(row["name"]),
        service_port=int(row["service_port"]),
        xray_api_port=int(row["xray_api_port"]),
        method=NodeMethod.parse(row["method"]),
        install_dir=Path(row["install_dir"]),
        data_dir=Path(row["data_dir"]),
        cert_file=Path(cert) if cert else None,
        inbounds=parse_inbounds(row["inbounds"]),
        status=row["status"] or DEFAULT_STATUS,
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _format_ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_ts(value: object) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


__all__ = [
    "DEFAULT_STATUS",
    "NAME_PATTERN",
    "NodeMethod",
    "NodeRecord",
    "RegistryStore",
    "SCHEMA_VERSION",
    "UpdatableField",
    "parse_inbounds",
    "validate_name",
]
