"""Node-id validation and bounded numeric prompting."""
from __future__ import annotations

import logging
import re

from .prompts import InputProvider

LOGGER = logging.getLogger(__name__)

NODE_ID_PATTERN = re.compile(r"[0-9]+")
DEFAULT_ATTEMPTS = 3


class InvalidFormat(ValueError):
    """Raised when operator input is not a plain non-negative integer."""


def validate_node_id(raw: str) -> int:
    """Return *raw* as an integer when it consists solely of ASCII digits."""
    if not isinstance(raw, str) or not NODE_ID_PATTERN.fullmatch(raw):
        raise InvalidFormat(f"Node id must be a non-negative integer, got {raw!r}.")
    return int(raw)


def ask_numeric(
    input_provider: InputProvider,
    prompt: str,
    *,
    attempts: int = DEFAULT_ATTEMPTS,
    on_invalid: str = "Please enter digits only.",
) -> int:
    """Prompt until a numeric answer arrives, giving up after *attempts* tries."""
    if attempts < 1:
        raise ValueError("attempts must be at least 1.")
    last_error: InvalidFormat | None = None
    for _ in range(attempts):
        raw = input_provider.ask(prompt)
        try:
            return validate_node_id(raw)
        except InvalidFormat as exc:
            LOGGER.debug("Rejected input %r for prompt %r", raw, prompt)
            last_error = exc
            input_provider.notify(on_invalid)
    raise InvalidFormat(f"No valid number after {attempts} attempts: {last_error}")


def prompt_node_id(
    input_provider: InputProvider,
    label: str = "node-id",
    *,
    attempts: int = DEFAULT_ATTEMPTS,
) -> int:
    """Ask for a node id, re-prompting on malformed input."""
    return ask_numeric(
        input_provider,
        f"Enter {label}",
        attempts=attempts,
        on_invalid="Node id must be numeric.",
    )


__all__ = ["InvalidFormat", "ask_numeric", "prompt_node_id", "validate_node_id"]
