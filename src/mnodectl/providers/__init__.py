"""Lifecycle backends for mnodectl nodes."""
from __future__ import annotations

from .base import NodeBackend, run_command
from .container import ContainerBackend
from .process import ProcessBackend
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "ContainerBackend",
    "NodeBackend",
    "ProcessBackend",
    "SystemdError",
    "SystemdProvider",
    "run_command",
]
