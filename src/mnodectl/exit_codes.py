"""Enumerations for CLI exit codes."""
from __future__ import annotations

from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI.

    Operators script against a binary contract: ``0`` when the command did
    what was asked (or was cancelled at a prompt), ``1`` for any failure.
    """

    OK = 0
    FAILURE = 1
