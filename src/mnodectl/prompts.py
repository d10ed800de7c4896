"""Operator input for interactive and unattended runs."""
from __future__ import annotations

import sys
from typing import Protocol, TextIO

import typer
from rich.console import Console

from .errors import ValidationError


class InputProvider(Protocol):
    """Source of confirmations, values and pasted certificates."""

    @property
    def interactive(self) -> bool:
        """Return ``True`` when a human can answer prompts."""

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """Ask a yes/no question."""

    def ask_text(self, message: str, default: str = "") -> str:
        """Ask for free text, returning *default* on empty input."""

    def ask_port(self, message: str, default: int) -> int:
        """Ask for a port number, returning *default* on empty input."""

    def read_certificate(self) -> str:
        """Collect a pasted certificate."""

    def notify(self, message: str) -> None:
        """Show an informational message."""


class ConsolePrompter:
    """Prompt on the terminal using Typer and Rich."""

    def __init__(self, console: Console, *, stream: TextIO | None = None) -> None:
        """Bind prompts to *console*; pasted input is read from *stream*."""
        self.console = console
        self.stream = stream

    @property
    def interactive(self) -> bool:
        """Console prompts always accept input."""
        return True

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """Ask a yes/no question."""
        return bool(typer.confirm(message, default=default))

    def ask_text(self, message: str, default: str = "") -> str:
        """Ask for free text."""
        value = typer.prompt(message, default=default, show_default=bool(default))
        return str(value).strip()

    def ask_port(self, message: str, default: int) -> int:
        """Ask for a port number."""
        return int(typer.prompt(message, default=default, type=int))

    def read_certificate(self) -> str:
        """Read certificate lines until the first empty line after content."""
        stream = self.stream or sys.stdin
        self.console.print("Paste the client certificate content below.")
        self.console.print("Press Enter on an empty line when done.")
        lines: list[str] = []
        for raw in iter(stream.readline, ""):
            line = raw.rstrip("\r\n")
            if not line:
                if lines:
                    break
                continue
            lines.append(line)
        return "\n".join(lines) + ("\n" if lines else "")

    def notify(self, message: str) -> None:
        """Print *message* in yellow."""
        self.console.print(f"[yellow]{message}[/yellow]")


class NonInteractivePrompter:
    """Answer every prompt with its default; never block on input."""

    def __init__(self, console: Console | None = None) -> None:
        """Optionally echo notifications to *console*."""
        self.console = console

    @property
    def interactive(self) -> bool:
        """Unattended runs cannot answer prompts."""
        return False

    def confirm(self, message: str, *, default: bool = False) -> bool:
        """Return *default*."""
        return default

    def ask_text(self, message: str, default: str = "") -> str:
        """Return *default*."""
        return default

    def ask_port(self, message: str, default: int) -> int:
        """Return *default*."""
        return default

    def read_certificate(self) -> str:
        """Fail: a certificate must be supplied on the command line."""
        raise ValidationError("Certificate is required. Use --cert or --cert-content.")

    def notify(self, message: str) -> None:
        """Print *message* when a console is attached."""
        if self.console is not None:
            self.console.print(f"[yellow]{message}[/yellow]")


__all__ = ["ConsolePrompter", "InputProvider", "NonInteractivePrompter"]
