"""Systemd provider for managing node service units."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..errors import BackendFault
from ..templates import TemplateEngine
from .base import CommandRunner, run_command


class SystemdError(BackendFault):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Render and manage systemd service units for process-backed nodes."""

    templates: TemplateEngine
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"
    unit_prefix: str = "mnode-"
    runner: CommandRunner = run_command

    def unit_name(self, node: str) -> str:
        """Return the systemd unit name for *node*."""
        safe = node.replace("/", "-")
        return f"{self.unit_prefix}{safe}.service"

    def unit_path(self, node: str) -> Path:
        """Return the full path for the node unit file."""
        return self.systemd_dir / self.unit_name(node)

    def unit_exists(self, node: str) -> bool:
        """Return ``True`` when the unit file for *node* is present."""
        return self.unit_path(node).exists()

    def render_unit(self, node: str, context: Mapping[str, object]) -> bool:
        """Render the unit file for *node* using *context*."""
        template_name = "systemd/service.j2"
        path = self.unit_path(node)
        changed = self.templates.render_to_path(template_name, path, context, mode=0o644)
        if changed:
            self._reload_daemon()
        return changed

    def enable(self, node: str) -> subprocess.CompletedProcess[str]:
        """Enable the node unit."""
        return self._systemctl("enable", self.unit_name(node))

    def disable(self, node: str, *, check: bool = True) -> subprocess.CompletedProcess[str]:
        """Disable the node unit."""
        return self._systemctl("disable", self.unit_name(node), check=check)

    def start(self, node: str) -> subprocess.CompletedProcess[str]:
        """Start the node unit."""
        return self._systemctl("start", self.unit_name(node))

    def stop(self, node: str) -> subprocess.CompletedProcess[str]:
        """Stop the node unit."""
        return self._systemctl("stop", self.unit_name(node))

    def restart(self, node: str) -> subprocess.CompletedProcess[str]:
        """Restart the node unit."""
        return self._systemctl("restart", self.unit_name(node))

    def is_active(self, node: str) -> bool:
        """Return ``True`` when ``systemctl is-active`` reports the unit as active."""
        try:
            result = self._run_command(
                [self.systemctl_bin, "is-active", "--quiet", self.unit_name(node)],
                check=False,
                error_prefix=f"{self.systemctl_bin} is-active",
                capture_output=True,
            )
        except SystemdError:
            return False
        return result.returncode == 0

    def main_pid(self, node: str) -> int | None:
        """Return the unit's main PID, or ``None`` when it has none."""
        try:
            result = self._run_command(
                [self.systemctl_bin, "show", "-p", "MainPID", "--value", self.unit_name(node)],
                check=False,
                error_prefix=f"{self.systemctl_bin} show",
                capture_output=True,
            )
        except SystemdError:
            return None
        value = (result.stdout or "").strip()
        if result.returncode != 0 or not value.isdigit() or int(value) == 0:
            return None
        return int(value)

    def logs(
        self,
        node: str,
        *,
        lines: int | None = None,
        follow: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Return journalctl output for the unit."""
        args: list[str] = ["--unit", self.unit_name(node), "--no-pager"]
        if lines is not None:
            args.extend(["--lines", str(lines)])
        if follow:
            args.append("--follow")
        return self._journalctl(args, capture_output=not follow)

    def remove(self, node: str) -> None:
        """Remove the unit file for *node*."""
        path = self.unit_path(node)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise SystemdError(f"Failed to remove unit file {path}: {exc}") from exc
        self._reload_daemon()

    # ------------------------------------------------------------------
    def _reload_daemon(self) -> None:
        try:
            self._systemctl("daemon-reload")
        except SystemdError as exc:
            if "not found" in str(exc).lower():
                return
            raise

    def _systemctl(
        self,
        command: str,
        unit_or_path: str | Path | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit_or_path is not None:
            args.append(str(unit_or_path))
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
            capture_output=True,
        )

    def _journalctl(
        self,
        args: Sequence[str],
        *,
        check: bool = True,
        capture_output: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.journalctl_bin, *args]
        joined = " ".join(args)
        return self._run_command(
            command,
            check=check,
            error_prefix=f"{self.journalctl_bin} {joined}".rstrip(),
            capture_output=capture_output,
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
        capture_output: bool,
    ) -> subprocess.CompletedProcess[str]:
        try:
            return self.runner(
                list(args),
                check=check,
                capture_output=capture_output,
                error_prefix=error_prefix,
            )
        except SystemdError:
            raise
        except BackendFault as exc:
            raise SystemdError(str(exc)) from exc


__all__ = ["SystemdError", "SystemdProvider"]
