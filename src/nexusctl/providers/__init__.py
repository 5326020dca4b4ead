"""Container runtime providers for nexusctl."""
from __future__ import annotations

from .base import (
    CommandTimeout,
    ContainerDetails,
    ContainerNotFound,
    ContainerRuntime,
    ContainerRuntimeError,
    ContainerSpec,
    ContainerSummary,
    RuntimeUnavailable,
)
from .docker import DockerProvider

__all__ = [
    "CommandTimeout",
    "ContainerDetails",
    "ContainerNotFound",
    "ContainerRuntime",
    "ContainerRuntimeError",
    "ContainerSpec",
    "ContainerSummary",
    "DockerProvider",
    "RuntimeUnavailable",
]
