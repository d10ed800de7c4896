"""Shared plumbing for node lifecycle backends."""
from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Protocol

from ..errors import BackendFault
from ..state import NodeMethod, NodeRecord

logger = logging.getLogger(__name__)

CommandRunner = Callable[..., "subprocess.CompletedProcess[str]"]


class NodeBackend(Protocol):
    """Operations every lifecycle backend provides."""

    method: NodeMethod

    def materialize(self, record: NodeRecord, cert_content: str) -> None:
        """Create directories, write the certificate and launch configuration."""

    def start(self, record: NodeRecord) -> None:
        """Start the node runtime."""

    def stop(self, record: NodeRecord) -> None:
        """Stop the node runtime."""

    def restart(self, record: NodeRecord) -> None:
        """Restart the node runtime."""

    def is_running(self, name: str) -> bool:
        """Return ``True`` when the runtime for *name* is up."""

    def runtime_identifier(self, name: str) -> str | None:
        """Return a short runtime identifier (container id or ``PID:n``)."""

    def rewrite_config(
        self,
        record: NodeRecord,
        ports: tuple[int, int],
        inbounds: tuple[str, ...],
    ) -> bool:
        """Regenerate launch configuration with new ports and inbounds."""

    def teardown(self, record: NodeRecord, remove_data: bool) -> list[str]:
        """Stop and remove the runtime; return warnings for skipped cleanup."""

    def logs(self, record: NodeRecord, *, follow: bool = False) -> str | None:
        """Return recent log output, or stream it when *follow* is set."""

    def update(self, record: NodeRecord) -> None:
        """Refresh the node image or code and restart it."""


def run_command(
    args: Sequence[str],
    *,
    check: bool = True,
    capture_output: bool = True,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    error_prefix: str | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *args* and raise :class:`BackendFault` on failure when *check* is set."""
    prefix = error_prefix or " ".join(args[:2])
    logger.debug("Running %s", " ".join(args))
    try:
        if capture_output:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env) if env is not None else None,
            )
        else:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                text=True,
                check=False,
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env) if env is not None else None,
            )
    except FileNotFoundError as exc:
        raise BackendFault(f"{args[0]} not found: {exc}") from exc
    if check and result.returncode != 0:
        stdout = getattr(result, "stdout", "") or ""
        stderr = getattr(result, "stderr", "") or ""
        message = stderr.strip() or stdout.strip() or "no output"
        raise BackendFault(f"{prefix} failed (exit {result.returncode}): {message}")
    return result


def remove_path(path: Path) -> bool:
    """Delete *path* recursively; return ``False`` when it did not exist."""
    path = Path(path)
    try:
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.is_dir():
            shutil.rmtree(path)
        else:
            return False
    except OSError as exc:
        raise BackendFault(f"Failed to remove {path}: {exc}") from exc
    logger.info("Removed %s", path)
    return True


def ensure_directory(path: Path, *, mode: int = 0o755) -> None:
    """Create *path* (and parents) or raise :class:`BackendFault`."""
    try:
        Path(path).mkdir(parents=True, exist_ok=True, mode=mode)
    except OSError as exc:
        raise BackendFault(f"Failed to create directory {path}: {exc}") from exc


__all__ = [
    "CommandRunner",
    "NodeBackend",
    "ensure_directory",
    "remove_path",
    "run_command",
]
