"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest
from jinja2 import UndefinedError

from mnodectl.templates import TemplateEngine


def _unit_context(name: str) -> dict[str, object]:
    return {
        "node_name": name,
        "working_directory": f"/opt/{name}",
        "environment_file": f"/opt/{name}/.env",
        "exec_start": f"/opt/{name}/venv/bin/python /opt/{name}/main.py",
    }


def _compose_context(inbounds: list[str]) -> dict[str, object]:
    return {
        "node_name": "node1",
        "image": "gozargah/marzban-node:latest",
        "service_port": 62050,
        "xray_api_port": 62051,
        "service_protocol": "rest",
        "inbounds": inbounds,
        "data_dir": "/var/lib/node1",
        "container_data_dir": "/var/lib/marzban-node",
    }


def test_render_unit_template() -> None:
    """The built-in unit names the node and its launch command."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("systemd/service.j2", _unit_context("alpha"))

    assert "Description=Marzban Node Service - alpha" in output
    assert "EnvironmentFile=/opt/alpha/.env" in output
    assert "ExecStart=/opt/alpha/venv/bin/python /opt/alpha/main.py" in output
    assert "Restart=on-failure" in output


def test_render_compose_template_with_inbounds() -> None:
    """Inbound filters are joined into a single environment value."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(
        "compose/docker-compose.yml.j2", _compose_context(["vless", "vmess"])
    )

    assert "container_name: node1" in output
    assert 'SERVICE_PORT: "62050"' in output
    assert 'XRAY_API_PORT: "62051"' in output
    assert 'INBOUNDS: "vless,vmess"' in output
    assert "- /var/lib/node1:/var/lib/marzban-node" in output


def test_render_compose_template_omits_empty_inbounds() -> None:
    """No INBOUNDS entry is written when every inbound is served."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("compose/docker-compose.yml.j2", _compose_context([]))

    assert "INBOUNDS" not in output


def test_render_env_template() -> None:
    """The env file carries ports, certificate path and inbounds."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string(
        "env/node.env.j2",
        {
            "service_port": 62050,
            "xray_api_port": 62051,
            "cert_file": "/var/lib/node1/ssl_client_cert.pem",
            "data_dir": "/var/lib/node1",
            "service_protocol": "rest",
            "xray_executable": "/usr/local/bin/xray",
            "xray_assets": "/usr/local/share/xray",
            "inbounds": ["trojan"],
        },
    )

    assert "SERVICE_PORT=62050\n" in output
    assert "XRAY_API_PORT=62051\n" in output
    assert "SSL_CLIENT_CERT_FILE=/var/lib/node1/ssl_client_cert.pem\n" in output
    assert "INBOUNDS=trojan\n" in output


def test_missing_variables_are_errors() -> None:
    """Strict undefined handling rejects incomplete contexts."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(UndefinedError):
        engine.render_to_string("systemd/service.j2", {"node_name": "alpha"})


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "units" / "mnode-beta.service"

    changed = engine.render_to_path(
        "systemd/service.j2", destination, _unit_context("beta"), mode=0o600
    )

    assert changed is True
    assert oct(destination.stat().st_mode & 0o777) == "0o600"

    destination.chmod(0o644)
    changed_again = engine.render_to_path(
        "systemd/service.j2", destination, _unit_context("beta"), mode=0o600
    )
    assert changed_again is False
    assert oct(destination.stat().st_mode & 0o777) == "0o600"


def test_override_path_takes_precedence(tmp_path: Path) -> None:
    """Override templates shadow the built-in ones."""
    override_dir = tmp_path / "templates"
    override_template = override_dir / "systemd" / "service.j2"
    override_template.parent.mkdir(parents=True)
    override_template.write_text("override {{ node_name }}", encoding="utf-8")

    engine = TemplateEngine.with_overrides(override_dir)

    assert engine.render_to_string("systemd/service.j2", _unit_context("gamma")) == (
        "override gamma"
    )
    compose = engine.render_to_string("compose/docker-compose.yml.j2", _compose_context([]))
    assert "marzban-node" in compose
