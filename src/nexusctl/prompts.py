"""Operator input providers.

Validation logic never reads the terminal directly; it asks an
:class:`InputProvider`. The CLI uses :class:`ConsoleInput`, tests pass a
scripted provider.
"""
from __future__ import annotations

from typing import Protocol

import typer


class InputProvider(Protocol):
    """Capability used to ask the operator for values."""

    def ask(self, prompt: str) -> str:
        """Return the raw text typed by the operator."""
        ...

    def confirm(self, prompt: str, *, default: bool = False) -> bool:
        """Return the operator's yes/no answer."""
        ...

    def notify(self, message: str) -> None:
        """Tell the operator why an answer was rejected."""
        ...


class ConsoleInput:
    """Interactive terminal input backed by Typer prompts."""

    def ask(self, prompt: str) -> str:
        """Prompt on the terminal and return the answer without surrounding whitespace."""
        return str(typer.prompt(prompt, default="", show_default=False)).strip()

    def confirm(self, prompt: str, *, default: bool = False) -> bool:
        """Ask a yes/no question on the terminal."""
        return bool(typer.confirm(prompt, default=default))

    def notify(self, message: str) -> None:
        """Print a rejection message in red."""
        typer.secho(message, fg=typer.colors.RED)


__all__ = ["ConsoleInput", "InputProvider"]
