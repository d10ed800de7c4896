"""Port allocation helpers for mnodectl.

Two sources decide whether a port may be handed to a node: the host (is any
socket bound to it right now?) and the registry (is it already allocated to
another node?). :class:`PortProber` answers the first question with psutil,
:class:`PortAllocator` combines both and implements the allocation strategy.
"""
from __future__ import annotations

import logging
import random
import socket
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum

import psutil

from .config import PortsConfig
from .errors import (
    SERVICE_PORT_LABEL,
    XRAY_PORT_LABEL,
    PortConflictError,
    PortConflictReason,
    PortsExhaustedError,
)
from .state import RegistryStore

logger = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535


class PortProber:
    """Inspect which ports are bound on the local host."""

    def bound_ports(self) -> set[int] | None:
        """Return listening TCP ports and bound UDP ports.

        Returns ``None`` when the platform refuses to enumerate sockets, in
        which case callers fall back to :meth:`can_bind`.
        """
        try:
            connections = psutil.net_connections(kind="inet")
        except (psutil.AccessDenied, PermissionError):
            logger.debug("psutil denied socket enumeration; using bind probes")
            return None
        ports: set[int] = set()
        for conn in connections:
            if not conn.laddr:
                continue
            if conn.type == socket.SOCK_STREAM and conn.status != psutil.CONN_LISTEN:
                continue
            ports.add(int(conn.laddr.port))
        return ports

    def can_bind(self, port: int) -> bool:
        """Return ``True`` when a TCP socket can bind *port* on all interfaces."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind(("0.0.0.0", port))
            except OSError:
                return False
        return True


class PortStatus(Enum):
    """Outcome of a single port check."""

    AVAILABLE = "available"
    OUT_OF_RANGE = "invalid"
    SYSTEM_IN_USE = "system"
    ALLOCATED = "database"

    def conflict_reason(self) -> PortConflictReason | None:
        """Return the matching :class:`PortConflictReason` for unavailable ports."""
        return _CONFLICT_REASONS.get(self)


_CONFLICT_REASONS = {
    PortStatus.OUT_OF_RANGE: PortConflictReason.OUT_OF_RANGE,
    PortStatus.SYSTEM_IN_USE: PortConflictReason.SYSTEM_IN_USE,
    PortStatus.ALLOCATED: PortConflictReason.ALLOCATED,
}


@dataclass(frozen=True, slots=True)
class PortCheck:
    """Result of :meth:`PortAllocator.check_port`."""

    port: int
    status: PortStatus
    owner: str | None = None

    @property
    def available(self) -> bool:
        """Return ``True`` when the port may be allocated."""
        return self.status is PortStatus.AVAILABLE

    def describe(self) -> str:
        """Return an operator-facing sentence for this result."""
        if self.status is PortStatus.OUT_OF_RANGE:
            return f"Port {self.port} is invalid (must be 1-65535)."
        if self.status is PortStatus.SYSTEM_IN_USE:
            return f"Port {self.port} is already in use on the system."
        if self.status is PortStatus.ALLOCATED:
            return f"Port {self.port} is allocated to node '{self.owner}'."
        return f"Port {self.port} is available."

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation."""
        return {"port": self.port, "status": self.status.value, "owner": self.owner}


class _HostView:
    """Snapshot of host port usage taken once per allocator call."""

    __slots__ = ("_bound", "_prober")

    def __init__(self, prober: PortProber) -> None:
        self._prober = prober
        self._bound = prober.bound_ports()

    def busy(self, port: int) -> bool:
        if self._bound is None:
            return not self._prober.can_bind(port)
        return port in self._bound


class PortAllocator:
    """Allocate and validate node port pairs."""

    def __init__(
        self,
        store: RegistryStore,
        prober: PortProber,
        settings: PortsConfig | None = None,
        *,
        rng: random.Random | None = None,
    ) -> None:
        """Combine the registry *store* and host *prober* under *settings*."""
        self.store = store
        self.prober = prober
        self.settings = settings or PortsConfig()
        self.rng = rng or random.Random()

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------
    def check_port(self, port: int, excluding_name: str | None = None) -> PortCheck:
        """Classify *port* as available, out of range, in use or allocated.

        Registered ports are reported with their owner before the host is
        probed. Ports already owned by *excluding_name* skip the host probe:
        that node's own runtime is expected to be bound to them.
        """
        return self._check(port, excluding_name, _HostView(self.prober))

    def is_available(self, port: int, excluding_name: str | None = None) -> bool:
        """Return ``True`` when *port* is free on the host and in the registry."""
        return self.check_port(port, excluding_name).available

    def _check(self, port: int, excluding_name: str | None, view: _HostView) -> PortCheck:
        if not MIN_PORT <= port <= MAX_PORT:
            return PortCheck(port, PortStatus.OUT_OF_RANGE)
        owner = self.store.port_owner(port)
        if owner is not None:
            if owner == excluding_name:
                return PortCheck(port, PortStatus.AVAILABLE)
            return PortCheck(port, PortStatus.ALLOCATED, owner=owner)
        if view.busy(port):
            return PortCheck(port, PortStatus.SYSTEM_IN_USE)
        return PortCheck(port, PortStatus.AVAILABLE)

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------
    def find_available(
        self,
        start_port: int,
        excluding_name: str | None = None,
        *,
        skip: Iterable[int] = (),
    ) -> int:
        """Return the first free port from *start_port*, then a random fallback."""
        return self._find(start_port, excluding_name, set(skip), _HostView(self.prober))

    def _find(
        self,
        start_port: int,
        excluding_name: str | None,
        skip: set[int],
        view: _HostView,
    ) -> int:
        settings = self.settings
        port = start_port
        for _ in range(settings.max_attempts):
            if port not in skip and self._check(port, excluding_name, view).available:
                return port
            port += 1

        logger.info(
            "No free port in %d..%d; probing %d-%d at random",
            start_port,
            start_port + settings.max_attempts - 1,
            settings.fallback_start,
            settings.fallback_end,
        )
        for _ in range(settings.max_attempts):
            port = self.rng.randrange(settings.fallback_start, settings.fallback_end)
            if port not in skip and self._check(port, excluding_name, view).available:
                return port

        raise PortsExhaustedError(
            f"No available port found starting from {start_port}."
        )

    def suggest_service_port(self) -> int:
        """Return the highest allocated service port plus the increment."""
        highest = self.store.max_service_port()
        if highest is None:
            return self.settings.base
        return highest + self.settings.increment

    def allocate_pair(self, excluding_name: str | None = None) -> tuple[int, int]:
        """Return a fresh ``(service_port, xray_api_port)`` pair."""
        view = _HostView(self.prober)
        service = self._find(self.suggest_service_port(), excluding_name, set(), view)
        xray = self._find(service + 1, excluding_name, {service}, view)
        logger.debug("Allocated port pair %d/%d", service, xray)
        return service, xray

    def complete_pair(
        self,
        service_port: int | None,
        xray_api_port: int | None,
        excluding_name: str | None = None,
    ) -> tuple[int, int]:
        """Fill in whichever half of the pair the operator left out."""
        if service_port is not None and xray_api_port is not None:
            return service_port, xray_api_port
        view = _HostView(self.prober)
        if xray_api_port is not None:
            service = self._find(
                self.suggest_service_port(), excluding_name, {xray_api_port}, view
            )
            return service, xray_api_port
        if service_port is not None:
            xray = self._find(service_port + 1, excluding_name, {service_port}, view)
            return service_port, xray
        return self.allocate_pair(excluding_name)

    def validate_pair(
        self,
        service_port: int,
        xray_api_port: int,
        excluding_name: str | None = None,
    ) -> None:
        """Raise :class:`PortConflictError` unless the pair can be used."""
        for label, port in ((SERVICE_PORT_LABEL, service_port), (XRAY_PORT_LABEL, xray_api_port)):
            if not MIN_PORT <= port <= MAX_PORT:
                raise PortConflictError(label, PortConflictReason.OUT_OF_RANGE, port)
        if service_port == xray_api_port:
            raise PortConflictError(XRAY_PORT_LABEL, PortConflictReason.EQUAL, xray_api_port)

        view = _HostView(self.prober)
        for label, port in ((SERVICE_PORT_LABEL, service_port), (XRAY_PORT_LABEL, xray_api_port)):
            check = self._check(port, excluding_name, view)
            reason = check.status.conflict_reason()
            if reason is not None:
                raise PortConflictError(label, reason, port, owner=check.owner)


__all__ = [
    "PortAllocator",
    "PortCheck",
    "PortProber",
    "PortStatus",
]
