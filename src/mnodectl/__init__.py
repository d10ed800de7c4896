"""mnodectl package bootstrap.

This module exposes lightweight metadata that other modules (and packaging
machinery) rely upon.
"""
from __future__ import annotations

__all__ = ["__version__"]

# NOTE: Hatch reads the version from this file when building.
__version__ = "0.3.0"
