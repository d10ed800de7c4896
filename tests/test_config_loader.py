"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from mnodectl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.state_dir == Path("/var/lib/mnodectl")
    assert config.database == Path("/var/lib/mnodectl/nodes.db")
    assert config.install_root == Path("/opt")
    assert config.install_dir_for("node1") == Path("/opt/node1")
    assert config.data_dir_for("node1") == Path("/var/lib/node1")
    assert config.ports.base == 62050
    assert config.ports.increment == 10
    assert config.container.compose_command is None
    assert config.process.unit_prefix == "mnode-"
    assert config.systemd.unit_dir == Path("/etc/systemd/system")
    assert config.lock_timeout == 30.0


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "mnodectl.yml"
    cfg.write_text(
        f"state_dir: {tmp_path / 'state'}\n"
        "ports:\n"
        "  base: 63000\n"
        "  increment: 2\n"
        "container:\n"
        "  image: gozargah/marzban-node:v0.4.0\n"
        "  compose_command: docker-compose\n",
        encoding="utf-8",
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.database == tmp_path / "state" / "nodes.db"
    assert config.ports.base == 63000
    assert config.ports.increment == 2
    assert config.ports.max_attempts == 100
    assert config.container.image == "gozargah/marzban-node:v0.4.0"
    assert config.container.compose_command == ("docker-compose",)


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "mnodectl.yml"
    cfg.write_text("ports:\n  base: 63000\n", encoding="utf-8")
    env = {
        "MNODECTL_PORTS__BASE": "64000",
        "MNODECTL_LOCK_TIMEOUT": "45",
        "MNODECTL_DATABASE": str(tmp_path / "custom.db"),
        "MNODECTL_PROCESS__UNIT_PREFIX": "marzban-node-",
    }

    config = load_config(config_file=cfg, env=env)

    assert config.ports.base == 64000
    assert config.lock_timeout == 45.0
    assert config.database == tmp_path / "custom.db"
    assert config.process.unit_prefix == "marzban-node-"


def test_overrides_win_over_environment(tmp_path: Path) -> None:
    """Programmatic overrides are applied last."""
    config = load_config(
        tmp_path / "missing.yml",
        env={"MNODECTL_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 2.5},
    )

    assert config.lock_timeout == 2.5


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """MNODECTL_CONFIG_FILE points the loader at another file."""
    cfg = tmp_path / "alt.yml"
    cfg.write_text("install_root: /srv/nodes\n", encoding="utf-8")

    config = load_config(env={"MNODECTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.install_root == Path("/srv/nodes")


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A config file without a top-level mapping is rejected."""
    cfg = tmp_path / "mnodectl.yml"
    cfg.write_text("- just\n- a list\n", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unknown keys are reported rather than silently ignored."""
    cfg = tmp_path / "mnodectl.yml"
    cfg.write_text("panel_url: https://panel\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="panel_url"):
        load_config(config_file=cfg, env={})


def test_unknown_section_key_raises(tmp_path: Path) -> None:
    """Unknown keys inside a section are reported."""
    cfg = tmp_path / "mnodectl.yml"
    cfg.write_text("ports:\n  strategy: random\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="strategy"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    "content",
    [
        "ports:\n  base: 70000\n",
        "ports:\n  increment: 0\n",
        "ports:\n  fallback_start: 60000\n  fallback_end: 50000\n",
        "ports:\n  base: true\n",
        "lock_timeout: 0\n",
        "container:\n  compose_command: 5\n",
    ],
)
def test_invalid_values_raise(tmp_path: Path, content: str) -> None:
    """Out-of-range and mistyped values raise ConfigError."""
    cfg = tmp_path / "mnodectl.yml"
    cfg.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """The config renders to plain strings, numbers and nested mappings."""
    config = load_config(tmp_path / "missing.yml", env={})

    data = config.to_dict()

    assert data["database"] == "/var/lib/mnodectl/nodes.db"
    assert data["ports"] == {
        "base": 62050,
        "increment": 10,
        "max_attempts": 100,
        "fallback_start": 50000,
        "fallback_end": 60000,
    }
