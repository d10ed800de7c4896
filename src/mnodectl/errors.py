"""Exception taxonomy shared by the registry, allocator, backends and CLI.

Every error raised for an operator-facing reason derives from
:class:`NodeManagerError`. The CLI converts these into a red message, an
``error`` entry in the operations log and exit code ``1``.
"""
from __future__ import annotations

from enum import Enum


class NodeManagerError(RuntimeError):
    """Base class for all node management failures."""


# Validation -----------------------------------------------------------------
class ValidationError(NodeManagerError):
    """Operator input was rejected before any mutation took place."""


class InvalidNameError(ValidationError):
    """Node name does not satisfy the naming rules."""


class InvalidMethodError(ValidationError):
    """Unknown installation method."""


class InvalidCertificateError(ValidationError):
    """Certificate content is missing its PEM delimiters."""


class InvalidFieldError(ValidationError):
    """A registry update referenced a field outside the update whitelist."""

    def __init__(self, field: str) -> None:
        """Record the offending *field* name."""
        super().__init__(f"Field '{field}' cannot be updated.")
        self.field = field


# Conflicts ------------------------------------------------------------------
class ConflictError(NodeManagerError):
    """The requested change collides with existing state."""


class NodeExistsError(ConflictError):
    """A node with the same name is already registered."""

    def __init__(self, name: str) -> None:
        """Record the duplicated node *name*."""
        super().__init__(f"Node '{name}' already exists.")
        self.name = name


DuplicateName = NodeExistsError

SERVICE_PORT_LABEL = "SERVICE_PORT"
XRAY_PORT_LABEL = "XRAY_API_PORT"


class PortConflictReason(Enum):
    """Why a port cannot be used."""

    OUT_OF_RANGE = "out-of-range"
    SYSTEM_IN_USE = "system-in-use"
    ALLOCATED = "allocated"
    EQUAL = "equal"


class PortConflictError(ConflictError):
    """A requested port is invalid or already claimed."""

    def __init__(
        self,
        which: str,
        reason: PortConflictReason,
        port: int,
        *,
        owner: str | None = None,
    ) -> None:
        """Describe the conflict for the port labelled *which*."""
        self.which = which
        self.reason = reason
        self.port = port
        self.owner = owner
        super().__init__(self._describe())

    def _describe(self) -> str:
        if self.reason is PortConflictReason.OUT_OF_RANGE:
            return f"{self.which} {self.port} is invalid (must be 1-65535)."
        if self.reason is PortConflictReason.SYSTEM_IN_USE:
            return f"{self.which} {self.port} is already in use on the system."
        if self.reason is PortConflictReason.ALLOCATED:
            return f"{self.which} {self.port} is already allocated to node '{self.owner}'."
        return "SERVICE_PORT and XRAY_API_PORT cannot be the same."


# Lookup ---------------------------------------------------------------------
class NodeNotFoundError(NodeManagerError):
    """The referenced node is not registered."""

    def __init__(self, name: str) -> None:
        """Record the missing node *name*."""
        super().__init__(f"Node '{name}' not found.")
        self.name = name


class PortsExhaustedError(NodeManagerError):
    """No free port could be found by linear or random probing."""


# Infrastructure -------------------------------------------------------------
class StorageFault(NodeManagerError):
    """The registry database is unavailable, unwritable or corrupt."""


class BackendFault(NodeManagerError):
    """The container engine or service manager failed."""


__all__ = [
    "BackendFault",
    "ConflictError",
    "DuplicateName",
    "InvalidCertificateError",
    "InvalidFieldError",
    "InvalidMethodError",
    "InvalidNameError",
    "NodeExistsError",
    "NodeManagerError",
    "NodeNotFoundError",
    "PortConflictError",
    "PortConflictReason",
    "PortsExhaustedError",
    "SERVICE_PORT_LABEL",
    "StorageFault",
    "ValidationError",
    "XRAY_PORT_LABEL",
]
