"""Container runtime protocol and the typed records it returns.

The instance manager only talks to a :class:`ContainerRuntime`. The Docker
implementation lives in :mod:`nexusctl.providers.docker`; tests supply an
in-memory one.
"""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol


class ContainerRuntimeError(RuntimeError):
    """Raised when the runtime rejects an operation."""


class RuntimeUnavailable(ContainerRuntimeError):
    """Raised when the runtime binary is missing or its daemon is unreachable."""


class ContainerNotFound(ContainerRuntimeError):
    """Raised when a named container does not exist."""


class CommandTimeout(ContainerRuntimeError):
    """Raised when a runtime call exceeds its time bound."""


@dataclass(frozen=True)
class ContainerSpec:
    """Everything needed to create one worker container."""

    image: str
    env: Mapping[str, str] = field(default_factory=dict)
    volumes: Mapping[str, str] = field(default_factory=dict)
    command: Sequence[str] = ()


@dataclass(frozen=True)
class ContainerSummary:
    """One row of a container listing."""

    name: str
    container_id: str
    state: str
    status: str = ""


@dataclass(frozen=True)
class ContainerDetails:
    """Metadata returned by inspecting a container."""

    name: str
    container_id: str
    state: str
    running: bool
    exit_code: int
    env: Mapping[str, str]
    created_at: datetime | None = None
    started_at: datetime | None = None
    restart_count: int = 0
    error: str = ""


class ContainerRuntime(Protocol):
    """Operations the instance manager delegates to the container runtime."""

    def ensure_available(self) -> None:
        """Raise :class:`RuntimeUnavailable` when the runtime cannot be used."""
        ...

    def create(self, name: str, spec: ContainerSpec) -> str:
        """Create and start container *name*; return its id."""
        ...

    def list(self, prefix: str) -> list[ContainerSummary]:
        """Return every container (any state) whose name starts with *prefix*."""
        ...

    def inspect(self, name: str) -> ContainerDetails:
        """Return details for *name* or raise :class:`ContainerNotFound`."""
        ...

    def restart(self, name: str, timeout: float) -> None:
        """Restart *name*, raising :class:`CommandTimeout` past *timeout* seconds."""
        ...

    def stop(self, name: str, grace: int) -> None:
        """Stop *name*, killing it after *grace* seconds."""
        ...

    def start(self, name: str) -> None:
        """Start a stopped container."""
        ...

    def remove(self, name: str) -> None:
        """Forcefully remove *name*."""
        ...

    def logs(
        self,
        name: str,
        *,
        tail: int | None = None,
        follow: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Return (or stream, when *follow*) container output."""
        ...


__all__ = [
    "CommandTimeout",
    "ContainerDetails",
    "ContainerNotFound",
    "ContainerRuntime",
    "ContainerRuntimeError",
    "ContainerSpec",
    "ContainerSummary",
    "RuntimeUnavailable",
]
