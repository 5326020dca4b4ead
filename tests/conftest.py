"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import subprocess
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

import pytest

from nexusctl.config import AppConfig, load_config
from nexusctl.providers.base import (
    CommandTimeout,
    ContainerDetails,
    ContainerNotFound,
    ContainerRuntimeError,
    ContainerSpec,
    ContainerSummary,
    RuntimeUnavailable,
)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@dataclass
class FakeContainer:
    """In-memory container record."""

    name: str
    spec: ContainerSpec
    state: str = "running"
    exit_code: int = 0
    started_at: datetime | None = None
    restart_count: int = 0
    error: str = ""


@dataclass
class FakeRuntime:
    """Container runtime double that keeps containers in a dict.

    Failure injection sets hold container names whose next call of the given
    kind should fail.
    """

    containers: dict[str, FakeContainer] = field(default_factory=dict)
    available: bool = True
    fail_create: set[str] = field(default_factory=set)
    fail_restart: set[str] = field(default_factory=set)
    fail_start: set[str] = field(default_factory=set)
    fail_inspect: set[str] = field(default_factory=set)
    interrupt_restart: set[str] = field(default_factory=set)
    interrupt_logs: set[str] = field(default_factory=set)
    calls: list[tuple[str, str]] = field(default_factory=list)

    def _check(self) -> None:
        if not self.available:
            raise RuntimeUnavailable("Cannot connect to the Docker daemon.")

    def ensure_available(self) -> None:
        self._check()

    def create(self, name: str, spec: ContainerSpec) -> str:
        self._check()
        self.calls.append(("create", name))
        if name in self.containers:
            raise ContainerRuntimeError(f'Conflict. The container name "/{name}" is already in use.')
        if name in self.fail_create:
            self.fail_create.discard(name)
            self.containers[name] = FakeContainer(
                name=name, spec=spec, state="created", error="image not found"
            )
            raise ContainerRuntimeError(f"docker run {name} failed (exit 125): image not found")
        self.containers[name] = FakeContainer(
            name=name, spec=spec, started_at=datetime.now(UTC)
        )
        return f"id-{name}"

    def list(self, prefix: str) -> list[ContainerSummary]:
        self._check()
        return [
            ContainerSummary(name=name, container_id=f"id-{name}", state=container.state)
            for name, container in self.containers.items()
            if name.startswith(prefix)
        ]

    def inspect(self, name: str) -> ContainerDetails:
        self._check()
        if name in self.fail_inspect:
            self.fail_inspect.discard(name)
            raise ContainerRuntimeError(f"docker inspect {name} failed (exit 1): garbled")
        container = self._get(name)
        return ContainerDetails(
            name=name,
            container_id=f"id-{name}",
            state=container.state,
            running=container.state == "running",
            exit_code=container.exit_code,
            env=dict(container.spec.env),
            started_at=container.started_at,
            restart_count=container.restart_count,
            error=container.error,
        )

    def restart(self, name: str, timeout: float) -> None:
        self._check()
        self.calls.append(("restart", name))
        container = self._get(name)
        if name in self.interrupt_restart:
            self.interrupt_restart.discard(name)
            raise KeyboardInterrupt
        if name in self.fail_restart:
            self.fail_restart.discard(name)
            raise CommandTimeout(f"docker restart {name} timed out after {timeout:g}s")
        container.state = "running"
        container.restart_count += 1
        container.started_at = datetime.now(UTC)

    def stop(self, name: str, grace: int) -> None:
        self._check()
        self.calls.append(("stop", name))
        container = self._get(name)
        container.state = "exited"
        container.exit_code = 143

    def start(self, name: str) -> None:
        self._check()
        self.calls.append(("start", name))
        container = self._get(name)
        if name in self.fail_start:
            self.fail_start.discard(name)
            raise ContainerRuntimeError(f"docker start {name} failed (exit 1): cannot start")
        container.state = "running"
        container.started_at = datetime.now(UTC)

    def remove(self, name: str) -> None:
        self._check()
        self.calls.append(("remove", name))
        self._get(name)
        del self.containers[name]

    def logs(
        self,
        name: str,
        *,
        tail: int | None = None,
        follow: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        self._check()
        self.calls.append(("logs", name))
        self._get(name)
        if name in self.interrupt_logs:
            self.interrupt_logs.discard(name)
            raise KeyboardInterrupt
        return subprocess.CompletedProcess(
            args=["docker", "logs", name], returncode=0, stdout=f"output of {name}\n", stderr=""
        )

    def _get(self, name: str) -> FakeContainer:
        try:
            return self.containers[name]
        except KeyError:
            raise ContainerNotFound(f"No such container: {name}") from None


@dataclass
class ScriptedInput:
    """Input provider that replays canned answers."""

    answers: list[str] = field(default_factory=list)
    confirms: list[bool] = field(default_factory=list)
    prompts: list[str] = field(default_factory=list)
    notices: list[str] = field(default_factory=list)

    def ask(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if not self.answers:
            raise EOFError(prompt)
        return self.answers.pop(0)

    def confirm(self, prompt: str, *, default: bool = False) -> bool:
        self.prompts.append(prompt)
        return self.confirms.pop(0) if self.confirms else default

    def notify(self, message: str) -> None:
        self.notices.append(message)


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    """Return an empty in-memory container runtime."""
    return FakeRuntime()


@pytest.fixture
def scripted_input() -> ScriptedInput:
    """Return an input provider with no canned answers yet."""
    return ScriptedInput()


@pytest.fixture
def app_config(tmp_path: Path) -> AppConfig:
    """Return a configuration rooted in the temporary directory."""
    return load_config(
        config_file=tmp_path / "missing.yml",
        env={"NEXUSCTL_BASE_DIR": str(tmp_path / "nexus")},
    )
