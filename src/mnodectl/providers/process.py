"""Native process backend: a git checkout supervised by systemd.

Installation clones the Marzban-node repository into ``install_dir``, builds a
virtualenv there, installs the Xray core when it is missing, writes
``<install_dir>/.env`` and a ``mnode-<name>.service`` unit.
"""
from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass, replace
from pathlib import Path
from typing import ClassVar

from ..errors import BackendFault
from ..state import NodeMethod, NodeRecord
from ..templates import TemplateEngine
from ..tls import CERT_FILENAME, write_certificate
from .base import CommandRunner, ensure_directory, remove_path, run_command
from .systemd import SystemdProvider

logger = logging.getLogger(__name__)

ENV_FILENAME = ".env"
DEFAULT_REPOSITORY = "https://github.com/Gozargah/Marzban-node.git"
DEFAULT_XRAY_INSTALL_URL = (
    "https://github.com/Gozargah/Marzban-scripts/raw/master/install_latest_xray.sh"
)


@dataclass(slots=True)
class ProcessBackend:
    """Install and drive nodes as systemd-managed Python processes."""

    method: ClassVar[NodeMethod] = NodeMethod.PROCESS

    templates: TemplateEngine
    systemd: SystemdProvider
    repository: str = DEFAULT_REPOSITORY
    git_bin: str = "git"
    python_bin: str = "python3"
    xray_executable: Path = Path("/usr/local/bin/xray")
    xray_assets: Path = Path("/usr/local/share/xray")
    xray_install_url: str = DEFAULT_XRAY_INSTALL_URL
    service_protocol: str = "rest"
    log_lines: int = 100
    runner: CommandRunner = run_command

    def env_file(self, record: NodeRecord) -> Path:
        """Return the ``.env`` path for *record*."""
        return record.install_dir / ENV_FILENAME

    def venv_bin(self, record: NodeRecord, executable: str) -> Path:
        """Return *executable* inside the node's virtualenv."""
        return record.install_dir / "venv" / "bin" / executable

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def materialize(self, record: NodeRecord, cert_content: str) -> None:
        """Check out the code, build the environment and render the unit."""
        ensure_directory(record.data_dir)
        self._checkout(record)
        self._setup_venv(record)
        self._install_requirements(record)
        self._ensure_xray()

        cert_file = record.cert_file or record.data_dir / CERT_FILENAME
        try:
            write_certificate(cert_file, cert_content)
        except OSError as exc:
            raise BackendFault(f"Failed to write certificate {cert_file}: {exc}") from exc

        self._render_env(record)
        self.systemd.render_unit(record.name, self._unit_context(record))
        self.systemd.enable(record.name)

    def start(self, record: NodeRecord) -> None:
        """Start the node's systemd unit."""
        self.systemd.start(record.name)

    def stop(self, record: NodeRecord) -> None:
        """Stop the node's systemd unit."""
        self.systemd.stop(record.name)

    def restart(self, record: NodeRecord) -> None:
        """Restart the node's systemd unit."""
        self.systemd.restart(record.name)

    def is_running(self, name: str) -> bool:
        """Return ``True`` when the unit is active."""
        return self.systemd.is_active(name)

    def runtime_identifier(self, name: str) -> str | None:
        """Return ``PID:<main pid>`` for an active unit."""
        pid = self.systemd.main_pid(name)
        return f"PID:{pid}" if pid is not None else None

    def rewrite_config(
        self,
        record: NodeRecord,
        ports: tuple[int, int],
        inbounds: tuple[str, ...],
    ) -> bool:
        """Regenerate ``.env`` with new ports and inbounds."""
        updated = replace(
            record,
            service_port=ports[0],
            xray_api_port=ports[1],
            inbounds=tuple(inbounds),
        )
        return self._render_env(updated)

    def teardown(self, record: NodeRecord, remove_data: bool) -> list[str]:
        """Stop and remove the unit and the node directories."""
        warnings: list[str] = []
        if self.systemd.is_active(record.name):
            try:
                self.systemd.stop(record.name)
            except BackendFault as exc:
                warnings.append(f"systemctl stop failed: {exc}")

        if self.systemd.unit_exists(record.name):
            result = self.systemd.disable(record.name, check=False)
            if result.returncode != 0:
                warnings.append(f"unit {self.systemd.unit_name(record.name)} was not enabled")
            self.systemd.remove(record.name)

        remove_path(record.install_dir)
        if remove_data:
            remove_path(record.data_dir)
        return warnings

    def logs(self, record: NodeRecord, *, follow: bool = False) -> str | None:
        """Return recent journal lines, or stream them when *follow* is set."""
        if follow:
            self.systemd.logs(record.name, follow=True)
            return None
        result = self.systemd.logs(record.name, lines=self.log_lines)
        return result.stdout or ""

    def update(self, record: NodeRecord) -> None:
        """Pull the latest code, refresh dependencies and restart."""
        if not (record.install_dir / ".git").is_dir():
            raise BackendFault(f"{record.install_dir} is not a git checkout.")
        self._git("pull", "--quiet", cwd=record.install_dir)
        self._install_requirements(record)
        self.systemd.restart(record.name)

    # ------------------------------------------------------------------
    def _checkout(self, record: NodeRecord) -> None:
        install_dir = record.install_dir
        if (install_dir / ".git").is_dir():
            logger.info("Updating existing checkout in %s", install_dir)
            self._git("pull", "--quiet", cwd=install_dir)
            return
        if install_dir.exists():
            logger.info("Removing leftovers in %s before cloning", install_dir)
            remove_path(install_dir)
        ensure_directory(install_dir.parent)
        self._git("clone", "--quiet", self.repository, str(install_dir))

    def _git(self, *args: str, cwd: Path | None = None) -> None:
        self.runner(
            [self.git_bin, *args],
            cwd=cwd,
            error_prefix=f"git {args[0]}",
        )

    def _setup_venv(self, record: NodeRecord) -> None:
        venv_dir = record.install_dir / "venv"
        if not self.venv_bin(record, "python").exists():
            self.runner(
                [self.python_bin, "-m", "venv", str(venv_dir)],
                error_prefix="python -m venv",
            )
        self.runner(
            [str(self.venv_bin(record, "pip")), "install", "--upgrade", "pip"],
            check=False,
            error_prefix="pip install --upgrade pip",
        )

    def _install_requirements(self, record: NodeRecord) -> None:
        requirements = record.install_dir / "requirements.txt"
        if not requirements.exists():
            raise BackendFault(f"requirements.txt not found in {record.install_dir}")
        self.runner(
            [str(self.venv_bin(record, "pip")), "install", "-r", str(requirements)],
            error_prefix="pip install -r requirements.txt",
        )

    def _ensure_xray(self) -> None:
        if self.xray_executable.exists() or shutil.which("xray"):
            logger.debug("Xray core already installed")
            return
        logger.info("Installing Xray core from %s", self.xray_install_url)
        with tempfile.TemporaryDirectory(prefix="mnodectl-xray-") as tmp:
            script = Path(tmp) / "install_latest_xray.sh"
            self.runner(
                ["curl", "-fsSL", self.xray_install_url, "-o", str(script)],
                error_prefix="curl xray installer",
            )
            self.runner(["bash", str(script)], error_prefix="xray installer")

    def _render_env(self, record: NodeRecord) -> bool:
        context = {
            "service_port": record.service_port,
            "xray_api_port": record.xray_api_port,
            "data_dir": str(record.data_dir),
            "cert_file": str(record.cert_file or record.data_dir / CERT_FILENAME),
            "service_protocol": self.service_protocol,
            "xray_executable": str(self.xray_executable),
            "xray_assets": str(self.xray_assets),
            "inbounds": list(record.inbounds),
        }
        try:
            return self.templates.render_to_path(
                "env/node.env.j2",
                self.env_file(record),
                context,
                mode=0o600,
            )
        except OSError as exc:
            raise BackendFault(f"Failed to write env file for {record.name}: {exc}") from exc

    def _unit_context(self, record: NodeRecord) -> dict[str, object]:
        install_dir = record.install_dir
        return {
            "node_name": record.name,
            "working_directory": str(install_dir),
            "environment_file": str(self.env_file(record)),
            "exec_start": f"{self.venv_bin(record, 'python')} {install_dir / 'main.py'}",
        }


__all__ = ["ENV_FILENAME", "ProcessBackend"]
