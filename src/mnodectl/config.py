"""Configuration loader for mnodectl.

Configuration values are resolved from several sources, later sources
overriding earlier ones:

1. Built-in defaults.
2. ``/etc/mnodectl/config.yml`` (or an override path).
3. Environment variables prefixed with ``MNODECTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export MNODECTL_PORTS__BASE=63000
    export MNODECTL_CONTAINER__IMAGE=gozargah/marzban-node:v0.4.0

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` and handed to the orchestrator once at startup.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "MNODECTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class PortsConfig:
    """Port allocation defaults."""

    base: int = 62050
    increment: int = 10
    max_attempts: int = 100
    fallback_start: int = 50000
    fallback_end: int = 60000

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "base": self.base,
            "increment": self.increment,
            "max_attempts": self.max_attempts,
            "fallback_start": self.fallback_start,
            "fallback_end": self.fallback_end,
        }


@dataclass(frozen=True)
class ContainerConfig:
    """Docker / Docker Compose settings for container-backed nodes."""

    image: str = "gozargah/marzban-node:latest"
    docker_bin: str = "docker"
    compose_command: tuple[str, ...] | None = None
    log_tail: int = 100

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "image": self.image,
            "docker_bin": self.docker_bin,
            "compose_command": (
                list(self.compose_command) if self.compose_command is not None else None
            ),
            "log_tail": self.log_tail,
        }


@dataclass(frozen=True)
class ProcessConfig:
    """Settings for natively installed, systemd-managed nodes."""

    repository: str = "https://github.com/Gozargah/Marzban-node.git"
    git_bin: str = "git"
    python_bin: str = "python3"
    xray_executable: Path = Path("/usr/local/bin/xray")
    xray_assets: Path = Path("/usr/local/share/xray")
    xray_install_url: str = (
        "https://github.com/Gozargah/Marzban-scripts/raw/master/install_latest_xray.sh"
    )
    unit_prefix: str = "mnode-"
    service_protocol: str = "rest"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "repository": self.repository,
            "git_bin": self.git_bin,
            "python_bin": self.python_bin,
            "xray_executable": str(self.xray_executable),
            "xray_assets": str(self.xray_assets),
            "xray_install_url": self.xray_install_url,
            "unit_prefix": self.unit_prefix,
            "service_protocol": self.service_protocol,
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for mnodectl."""

    config_file: Path
    state_dir: Path
    database: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    install_root: Path
    data_root: Path
    lock_timeout: float
    ports: PortsConfig
    container: ContainerConfig
    process: ProcessConfig
    systemd: SystemdConfig

    def install_dir_for(self, name: str) -> Path:
        """Return the default install directory for node *name*."""
        return self.install_root / name

    def data_dir_for(self, name: str) -> Path:
        """Return the default data directory for node *name*."""
        return self.data_root / name

    def managed_dirs(self) -> tuple[Path, ...]:
        """Return the directories holding mnodectl's own state, logs and locks."""
        return (self.state_dir, self.database.parent, self.logs_dir, self.runtime_dir)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "state_dir": str(self.state_dir),
            "database": str(self.database),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "install_root": str(self.install_root),
            "data_root": str(self.data_root),
            "lock_timeout": self.lock_timeout,
            "ports": self.ports.to_dict(),
            "container": self.container.to_dict(),
            "process": self.process.to_dict(),
            "systemd": self.systemd.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/mnodectl/config.yml",
    "state_dir": "/var/lib/mnodectl",
    "database": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/mnodectl",
    "runtime_dir": "/run/mnodectl",
    "templates_dir": "/etc/mnodectl/templates",
    "install_root": "/opt",
    "data_root": "/var/lib",
    "lock_timeout": 30.0,
    "ports": {
        "base": 62050,
        "increment": 10,
        "max_attempts": 100,
        "fallback_start": 50000,
        "fallback_end": 60000,
    },
    "container": {
        "image": "gozargah/marzban-node:latest",
        "docker_bin": "docker",
        "compose_command": None,
        "log_tail": 100,
    },
    "process": {
        "repository": "https://github.com/Gozargah/Marzban-node.git",
        "git_bin": "git",
        "python_bin": "python3",
        "xray_executable": "/usr/local/bin/xray",
        "xray_assets": "/usr/local/share/xray",
        "xray_install_url": (
            "https://github.com/Gozargah/Marzban-scripts/raw/master/install_latest_xray.sh"
        ),
        "unit_prefix": "mnode-",
        "service_protocol": "rest",
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
_SECTION_KEYS: dict[str, set[str]] = {
    "ports": set(cast(Mapping[str, object], DEFAULTS["ports"]).keys()),
    "container": set(cast(Mapping[str, object], DEFAULTS["container"]).keys()),
    "process": set(cast(Mapping[str, object], DEFAULTS["process"]).keys()),
    "systemd": set(cast(Mapping[str, object], DEFAULTS["systemd"]).keys()),
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    lock_timeout = raw.get("lock_timeout")
    if lock_timeout is not None:
        _expect_positive_float(lock_timeout, "lock_timeout", default=30.0)

    for section, allowed in _SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    ports_map = _as_dict(raw.get("ports"), "ports")
    base = _expect_int(ports_map.get("base"), "ports.base", default=62050)
    if not 1 <= base <= 65535:
        raise ConfigError("ports.base must be between 1 and 65535.")
    increment = _expect_int(ports_map.get("increment"), "ports.increment", default=10)
    if increment < 1:
        raise ConfigError("ports.increment must be a positive integer.")
    attempts = _expect_int(ports_map.get("max_attempts"), "ports.max_attempts", default=100)
    if attempts < 1:
        raise ConfigError("ports.max_attempts must be a positive integer.")
    fallback_start = _expect_int(
        ports_map.get("fallback_start"), "ports.fallback_start", default=50000
    )
    fallback_end = _expect_int(ports_map.get("fallback_end"), "ports.fallback_end", default=60000)
    if not 1 <= fallback_start < fallback_end <= 65536:
        raise ConfigError(
            "ports.fallback_start must be below ports.fallback_end within 1-65536."
        )

    container_map = _as_dict(raw.get("container"), "container")
    compose = container_map.get("compose_command")
    if compose is not None and not isinstance(compose, (str, list, tuple)):
        raise ConfigError("container.compose_command must be a string or a list of strings.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    state_dir = _to_path(raw.get("state_dir"))
    logs_dir = _to_path(raw.get("logs_dir"))
    runtime_dir = _to_path(raw.get("runtime_dir"))
    templates_dir = _to_path(raw.get("templates_dir"))
    install_root = _to_path(raw.get("install_root"))
    data_root = _to_path(raw.get("data_root"))
    lock_timeout = _expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0)

    database_value = raw.get("database")
    database = _to_path(database_value) if database_value else state_dir / "nodes.db"

    ports_mapping = _as_dict(raw.get("ports"), "ports")
    ports = PortsConfig(
        base=_expect_int(ports_mapping.get("base"), "ports.base", default=62050),
        increment=_expect_int(ports_mapping.get("increment"), "ports.increment", default=10),
        max_attempts=_expect_int(
            ports_mapping.get("max_attempts"), "ports.max_attempts", default=100
        ),
        fallback_start=_expect_int(
            ports_mapping.get("fallback_start"), "ports.fallback_start", default=50000
        ),
        fallback_end=_expect_int(
            ports_mapping.get("fallback_end"), "ports.fallback_end", default=60000
        ),
    )

    container_mapping = _as_dict(raw.get("container"), "container")
    container = ContainerConfig(
        image=str(container_mapping.get("image", "gozargah/marzban-node:latest")),
        docker_bin=str(container_mapping.get("docker_bin", "docker")),
        compose_command=_to_command(container_mapping.get("compose_command")),
        log_tail=_expect_int(container_mapping.get("log_tail"), "container.log_tail", default=100),
    )

    process_mapping = _as_dict(raw.get("process"), "process")
    default_process = ProcessConfig()
    process = ProcessConfig(
        repository=str(process_mapping.get("repository", default_process.repository)),
        git_bin=str(process_mapping.get("git_bin", default_process.git_bin)),
        python_bin=str(process_mapping.get("python_bin", default_process.python_bin)),
        xray_executable=_to_path(
            process_mapping.get("xray_executable", default_process.xray_executable)
        ),
        xray_assets=_to_path(process_mapping.get("xray_assets", default_process.xray_assets)),
        xray_install_url=str(
            process_mapping.get("xray_install_url", default_process.xray_install_url)
        ),
        unit_prefix=str(process_mapping.get("unit_prefix", default_process.unit_prefix) or ""),
        service_protocol=str(
            process_mapping.get("service_protocol", default_process.service_protocol)
        ),
    )

    systemd_mapping = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_mapping.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_mapping.get("systemctl_bin", "systemctl")),
        journalctl_bin=str(systemd_mapping.get("journalctl_bin", "journalctl")),
    )

    return AppConfig(
        config_file=config_file,
        state_dir=state_dir,
        database=database,
        logs_dir=logs_dir,
        runtime_dir=runtime_dir,
        templates_dir=templates_dir,
        install_root=install_root,
        data_root=data_root,
        lock_timeout=lock_timeout,
        ports=ports,
        container=container,
        process=process,
        systemd=systemd,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_command(value: object) -> tuple[str, ...] | None:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        parts = tuple(value.split())
    elif isinstance(value, (list, tuple)):
        parts = tuple(str(item) for item in value)
    else:
        raise ConfigError(f"Cannot convert value {value!r} to a command.")
    return parts or None


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "ContainerConfig",
    "PortsConfig",
    "ProcessConfig",
    "SystemdConfig",
    "load_config",
]
