"""Tests for the Docker CLI provider."""
from __future__ import annotations

import json
import subprocess
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

import pytest

from nexusctl.providers import docker as docker_module
from nexusctl.providers.base import (
    CommandTimeout,
    ContainerNotFound,
    ContainerRuntimeError,
    ContainerSpec,
    RuntimeUnavailable,
)
from nexusctl.providers.docker import DockerProvider, parse_docker_timestamp


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


@pytest.fixture
def provider() -> DockerProvider:
    """Return a provider whose binary is never actually executed."""
    return DockerProvider(docker_bin="docker", command_timeout=5.0)


def _capture(
    monkeypatch: pytest.MonkeyPatch,
    result: DummyResult,
) -> list[dict[str, object]]:
    calls: list[dict[str, object]] = []

    def fake_run(command: Sequence[str], **kwargs: object) -> DummyResult:
        calls.append({"command": list(command), **kwargs})
        return result

    monkeypatch.setattr(docker_module.subprocess, "run", fake_run)
    return calls


def _inspect_payload(**state: object) -> str:
    return json.dumps(
        [
            {
                "Id": "abc123",
                "Name": "/nexus-node-1",
                "Created": "2025-01-02T03:04:05.123456789Z",
                "RestartCount": 2,
                "State": {
                    "Status": "running",
                    "Running": True,
                    "ExitCode": 0,
                    "Error": "",
                    "StartedAt": "2025-01-02T03:04:06.5Z",
                    **state,
                },
                "Config": {"Env": ["NODE_ID=101", "MAX_THREADS=8", "PATH=/usr/bin"]},
            }
        ]
    )


def test_create_builds_run_command(
    monkeypatch: pytest.MonkeyPatch,
    provider: DockerProvider,
) -> None:
    """Environment, volumes and the worker command are passed to ``docker run``."""
    calls = _capture(monkeypatch, DummyResult(stdout="abc123\n"))
    spec = ContainerSpec(
        image="nexus-node:latest",
        env={"NODE_ID": "101"},
        volumes={"/home/op/nexus-node/logs": "/nexus-data"},
        command=("start", "--node-id", "101"),
    )

    container_id = provider.create("nexus-node-1", spec)

    assert container_id == "abc123"
    assert calls[0]["command"] == [
        "docker",
        "run",
        "-dit",
        "--name",
        "nexus-node-1",
        "-e",
        "NODE_ID=101",
        "-v",
        "/home/op/nexus-node/logs:/nexus-data",
        "nexus-node:latest",
        "start",
        "--node-id",
        "101",
    ]
    assert calls[0]["check"] is False
    assert calls[0]["timeout"] == 5.0


def test_list_keeps_only_prefix_matches(
    monkeypatch: pytest.MonkeyPatch,
    provider: DockerProvider,
) -> None:
    """The name filter is a substring match, so other names are dropped."""
    lines = [
        {"ID": "a1", "Names": "nexus-node-1", "State": "running", "Status": "Up 2 hours"},
        {"ID": "b2", "Names": "old-nexus-node-9", "State": "exited", "Status": "Exited (0)"},
        {"ID": "c3", "Names": "nexus-node-3", "State": "Exited", "Status": "Exited (137)"},
    ]
    stdout = "\n".join(json.dumps(line) for line in lines) + "\nnot-json\n"
    calls = _capture(monkeypatch, DummyResult(stdout=stdout))

    summaries = provider.list("nexus-node-")

    assert [summary.name for summary in summaries] == ["nexus-node-1", "nexus-node-3"]
    assert summaries[1].state == "exited"
    assert "name=nexus-node-" in calls[0]["command"]  # type: ignore[operator]


def test_inspect_parses_details(
    monkeypatch: pytest.MonkeyPatch,
    provider: DockerProvider,
) -> None:
    """Inspect output is mapped onto :class:`ContainerDetails`."""
    _capture(monkeypatch, DummyResult(stdout=_inspect_payload()))

    details = provider.inspect("nexus-node-1")

    assert details.name == "nexus-node-1"
    assert details.state == "running"
    assert details.running is True
    assert details.env["NODE_ID"] == "101"
    assert details.restart_count == 2
    assert details.started_at == datetime(2025, 1, 2, 3, 4, 6, 500000, tzinfo=UTC)


def test_inspect_missing_container_raises_not_found(
    monkeypatch: pytest.MonkeyPatch,
    provider: DockerProvider,
) -> None:
    """Docker's "No such container" maps onto :class:`ContainerNotFound`."""
    _capture(
        monkeypatch,
        DummyResult(returncode=1, stderr="Error: No such container: nexus-node-7\n"),
    )

    with pytest.raises(ContainerNotFound):
        provider.inspect("nexus-node-7")


def test_unreachable_daemon_raises_runtime_unavailable(
    monkeypatch: pytest.MonkeyPatch,
    provider: DockerProvider,
) -> None:
    """Daemon connection errors are reported as an unavailable runtime."""
    _capture(
        monkeypatch,
        DummyResult(
            returncode=1,
            stderr="Cannot connect to the Docker daemon at unix:///var/run/docker.sock.",
        ),
    )

    with pytest.raises(RuntimeUnavailable):
        provider.list("nexus-node-")


def test_other_failures_raise_runtime_error(
    monkeypatch: pytest.MonkeyPatch,
    provider: DockerProvider,
) -> None:
    """Unclassified failures keep the exit code and stderr in the message."""
    _capture(monkeypatch, DummyResult(returncode=125, stderr="invalid reference format"))

    with pytest.raises(ContainerRuntimeError, match=r"exit 125\): invalid reference format"):
        provider.start("nexus-node-1")


def test_missing_binary_raises_runtime_unavailable(
    monkeypatch: pytest.MonkeyPatch,
    provider: DockerProvider,
) -> None:
    """A missing docker executable is an environment problem."""

    def fake_run(command: Sequence[str], **kwargs: object) -> DummyResult:
        raise FileNotFoundError(command[0])

    monkeypatch.setattr(docker_module.subprocess, "run", fake_run)

    with pytest.raises(RuntimeUnavailable):
        provider.remove("nexus-node-1")


def test_restart_timeout_raises_command_timeout(
    monkeypatch: pytest.MonkeyPatch,
    provider: DockerProvider,
) -> None:
    """Restart is bounded by the caller's timeout."""
    seen: list[object] = []

    def fake_run(command: Sequence[str], **kwargs: object) -> DummyResult:
        seen.append(kwargs["timeout"])
        raise subprocess.TimeoutExpired(list(command), 3.0)

    monkeypatch.setattr(docker_module.subprocess, "run", fake_run)

    with pytest.raises(CommandTimeout, match="timed out after 3s"):
        provider.restart("nexus-node-1", 3.0)
    assert seen == [3.0]


def test_stop_passes_grace_period(
    monkeypatch: pytest.MonkeyPatch,
    provider: DockerProvider,
) -> None:
    """``docker stop -t`` carries the grace period."""
    calls = _capture(monkeypatch, DummyResult())

    provider.stop("nexus-node-2", 2)

    assert calls[0]["command"] == ["docker", "stop", "-t", "2", "nexus-node-2"]
    assert calls[0]["timeout"] == 7.0


def test_logs_follow_streams_without_capture(
    monkeypatch: pytest.MonkeyPatch,
    provider: DockerProvider,
) -> None:
    """Following logs streams straight to the terminal without a timeout."""
    calls = _capture(monkeypatch, DummyResult())

    provider.logs("nexus-node-1", tail=20, follow=True)

    assert calls[0]["command"] == ["docker", "logs", "--tail", "20", "--follow", "nexus-node-1"]
    assert calls[0]["capture_output"] is False
    assert calls[0]["timeout"] is None


def test_image_exists_uses_return_code(
    monkeypatch: pytest.MonkeyPatch,
    provider: DockerProvider,
) -> None:
    """A failing ``image inspect`` means the image is absent, not an error."""
    _capture(monkeypatch, DummyResult(returncode=1, stderr="No such image"))

    assert provider.image_exists("nexus-node:latest") is False


def test_build_image_without_cache(
    monkeypatch: pytest.MonkeyPatch,
    provider: DockerProvider,
    tmp_path: Path,
) -> None:
    """Builds stream output and are not time bounded."""
    calls = _capture(monkeypatch, DummyResult())

    provider.build_image("nexus-node:latest", tmp_path, no_cache=True)

    assert calls[0]["command"] == [
        "docker",
        "build",
        "--no-cache",
        "-t",
        "nexus-node:latest",
        str(tmp_path),
    ]
    assert calls[0]["timeout"] is None
    assert calls[0]["capture_output"] is False


def test_ensure_available_requires_binary(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """A docker binary that is neither on PATH nor a file is unavailable."""
    monkeypatch.setattr(docker_module.shutil, "which", lambda name: None)
    provider = DockerProvider(docker_bin="/nonexistent/docker")

    with pytest.raises(RuntimeUnavailable, match="not found"):
        provider.ensure_available()


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("2025-01-02T03:04:05.123456789Z", datetime(2025, 1, 2, 3, 4, 5, 123456, tzinfo=UTC)),
        ("2025-01-02T03:04:05Z", datetime(2025, 1, 2, 3, 4, 5, tzinfo=UTC)),
        ("0001-01-01T00:00:00Z", None),
        ("", None),
        ("yesterday", None),
        (None, None),
    ],
)
def test_parse_docker_timestamp(raw: object, expected: datetime | None) -> None:
    """Nanosecond timestamps and Docker's zero time are handled."""
    assert parse_docker_timestamp(raw) == expected
