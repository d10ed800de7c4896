"""Docker Compose backend for container-managed nodes.

Each node gets ``<install_dir>/docker-compose.yml`` describing a single
``marzban-node`` service with host networking. The compose project name and
the container name are both the node name, so ``docker inspect <name>``
answers status queries directly.
"""
from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import ClassVar

from ..errors import BackendFault
from ..state import NodeMethod, NodeRecord
from ..templates import TemplateEngine
from ..tls import CERT_FILENAME, write_certificate
from .base import CommandRunner, ensure_directory, remove_path, run_command

logger = logging.getLogger(__name__)

COMPOSE_FILENAME = "docker-compose.yml"
CONTAINER_DATA_DIR = "/var/lib/marzban-node"
DEFAULT_IMAGE = "gozargah/marzban-node:latest"


@dataclass(slots=True)
class ContainerBackend:
    """Install and drive nodes through Docker Compose."""

    method: ClassVar[NodeMethod] = NodeMethod.CONTAINER

    templates: TemplateEngine
    image: str = DEFAULT_IMAGE
    docker_bin: str = "docker"
    compose_command: tuple[str, ...] | None = None
    log_tail: int = 100
    service_protocol: str = "rest"
    runner: CommandRunner = run_command
    _compose: tuple[str, ...] | None = field(default=None, init=False, repr=False)

    def compose_file(self, record: NodeRecord) -> Path:
        """Return the compose file path for *record*."""
        return record.install_dir / COMPOSE_FILENAME

    # ------------------------------------------------------------------
    # Engine discovery
    # ------------------------------------------------------------------
    def ensure_engine(self) -> None:
        """Raise :class:`BackendFault` unless the Docker daemon answers."""
        result = self.runner(
            [self.docker_bin, "info"],
            check=False,
            error_prefix=f"{self.docker_bin} info",
        )
        if result.returncode != 0:
            raise BackendFault("Docker is not running. Start the Docker daemon and retry.")

    def compose(self) -> tuple[str, ...]:
        """Return the compose invocation, preferring the Compose V2 plugin."""
        if self._compose is not None:
            return self._compose
        if self.compose_command:
            self._compose = tuple(self.compose_command)
            return self._compose
        try:
            probe = self.runner(
                [self.docker_bin, "compose", "version"],
                check=False,
                error_prefix=f"{self.docker_bin} compose version",
            )
        except BackendFault:
            probe = None
        if probe is not None and probe.returncode == 0:
            self._compose = (self.docker_bin, "compose")
        elif shutil.which("docker-compose"):
            logger.warning("Docker Compose V2 plugin missing; falling back to docker-compose")
            self._compose = ("docker-compose",)
        else:
            raise BackendFault(
                "Docker Compose not found. Install the docker-compose-plugin package."
            )
        return self._compose

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def materialize(self, record: NodeRecord, cert_content: str) -> None:
        """Write the certificate and compose file for *record*."""
        self.ensure_engine()
        self.compose()
        ensure_directory(record.install_dir)
        ensure_directory(record.data_dir)
        cert_file = record.cert_file or record.data_dir / CERT_FILENAME
        try:
            write_certificate(cert_file, cert_content)
        except OSError as exc:
            raise BackendFault(f"Failed to write certificate {cert_file}: {exc}") from exc
        self._render(record)

    def start(self, record: NodeRecord) -> None:
        """Bring the compose project up in the background."""
        self._compose_run(record, "up", "-d", "--remove-orphans")

    def stop(self, record: NodeRecord) -> None:
        """Take the compose project down."""
        self._compose_run(record, "down")

    def restart(self, record: NodeRecord) -> None:
        """Recreate the container so configuration changes take effect."""
        self._compose_run(record, "down", check=False)
        self._compose_run(record, "up", "-d", "--remove-orphans")

    def is_running(self, name: str) -> bool:
        """Return ``True`` when ``docker inspect`` reports the container running."""
        result = self._inspect(name, "{{.State.Running}}")
        return result == "true"

    def runtime_identifier(self, name: str) -> str | None:
        """Return the short container id for *name*."""
        container_id = self._inspect(name, "{{.Id}}")
        return container_id[:12] if container_id else None

    def rewrite_config(
        self,
        record: NodeRecord,
        ports: tuple[int, int],
        inbounds: tuple[str, ...],
    ) -> bool:
        """Regenerate the compose file with new ports and inbounds."""
        updated = replace(
            record,
            service_port=ports[0],
            xray_api_port=ports[1],
            inbounds=tuple(inbounds),
        )
        return self._render(updated)

    def teardown(self, record: NodeRecord, remove_data: bool) -> list[str]:
        """Stop and remove the container and the node directories."""
        warnings: list[str] = []
        if self.is_running(record.name):
            try:
                self.stop(record)
            except BackendFault as exc:
                warnings.append(f"compose down failed: {exc}")

        try:
            removed = self.runner(
                [self.docker_bin, "rm", "-f", record.name],
                check=False,
                error_prefix=f"{self.docker_bin} rm",
            )
        except BackendFault as exc:
            warnings.append(f"container removal skipped: {exc}")
        else:
            if removed.returncode != 0:
                warnings.append(f"container {record.name} was not present")

        remove_path(record.install_dir)
        if remove_data:
            remove_path(record.data_dir)
        return warnings

    def logs(self, record: NodeRecord, *, follow: bool = False) -> str | None:
        """Return the last log lines, or stream them when *follow* is set."""
        if follow:
            self._compose_run(record, "logs", "-f", capture_output=False)
            return None
        result = self._compose_run(record, "logs", f"--tail={self.log_tail}")
        return (result.stdout or "") + (result.stderr or "")

    def update(self, record: NodeRecord) -> None:
        """Pull the latest image and recreate the container."""
        self._compose_run(record, "pull")
        self.restart(record)

    # ------------------------------------------------------------------
    def _render(self, record: NodeRecord) -> bool:
        context = {
            "node_name": record.name,
            "image": self.image,
            "service_port": record.service_port,
            "xray_api_port": record.xray_api_port,
            "service_protocol": self.service_protocol,
            "inbounds": list(record.inbounds),
            "data_dir": str(record.data_dir),
            "container_data_dir": CONTAINER_DATA_DIR,
        }
        try:
            return self.templates.render_to_path(
                "compose/docker-compose.yml.j2",
                self.compose_file(record),
                context,
                mode=0o644,
            )
        except OSError as exc:
            raise BackendFault(f"Failed to write compose file for {record.name}: {exc}") from exc

    def _compose_run(
        self,
        record: NodeRecord,
        *args: str,
        check: bool = True,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        compose_file = self.compose_file(record)
        if not compose_file.exists():
            raise BackendFault(f"Compose file not found: {compose_file}")
        command = [*self.compose(), "-f", str(compose_file), "-p", record.name, *args]
        return self.runner(
            command,
            check=check,
            capture_output=capture_output,
            error_prefix=f"compose {args[0]} ({record.name})",
        )

    def _inspect(self, name: str, template: str) -> str | None:
        try:
            result = self.runner(
                [self.docker_bin, "inspect", "-f", template, name],
                check=False,
                error_prefix=f"{self.docker_bin} inspect",
            )
        except BackendFault:
            return None
        if result.returncode != 0:
            return None
        value = (result.stdout or "").strip()
        return value or None


__all__ = ["COMPOSE_FILENAME", "CONTAINER_DATA_DIR", "ContainerBackend"]
