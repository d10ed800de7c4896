"""Persistent state for mnodectl."""
from __future__ import annotations

from .registry import (
    DEFAULT_STATUS,
    NodeMethod,
    NodeRecord,
    RegistryStore,
    UpdatableField,
    parse_inbounds,
    validate_name,
)

__all__ = [
    "DEFAULT_STATUS",
    "NodeMethod",
    "NodeRecord",
    "RegistryStore",
    "UpdatableField",
    "parse_inbounds",
    "validate_name",
]
