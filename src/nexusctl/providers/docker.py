"""Docker CLI provider implementing :class:`~nexusctl.providers.base.ContainerRuntime`."""
from __future__ import annotations

import json
import logging
import re
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from .base import (
    CommandTimeout,
    ContainerDetails,
    ContainerNotFound,
    ContainerRuntimeError,
    ContainerSpec,
    ContainerSummary,
    RuntimeUnavailable,
)

LOGGER = logging.getLogger(__name__)

_DAEMON_UNREACHABLE_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
    "permission denied while trying to connect",
)
_NOT_FOUND_MARKERS = ("no such container", "no such object")
_FRACTION_RE = re.compile(r"\.(\d+)")
# Sentinel: fall back to ``command_timeout``.
_DEFAULT_TIMEOUT = -1.0


@dataclass(slots=True)
class DockerProvider:
    """Drive the ``docker`` binary with structured (JSON) output."""

    docker_bin: str = "docker"
    command_timeout: float = 60.0

    # ------------------------------------------------------------------
    # Availability
    # ------------------------------------------------------------------
    def ensure_available(self) -> None:
        """Raise :class:`RuntimeUnavailable` unless the daemon answers."""
        if shutil.which(self.docker_bin) is None and not Path(self.docker_bin).exists():
            raise RuntimeUnavailable(f"{self.docker_bin} not found on PATH.")
        self._docker(["version", "--format", "{{.Server.Version}}"], error_prefix="docker version")

    # ------------------------------------------------------------------
    # Containers
    # ------------------------------------------------------------------
    def create(self, name: str, spec: ContainerSpec) -> str:
        """Run a detached container named *name* and return its id."""
        args: list[str] = ["run", "-dit", "--name", name]
        for key, value in spec.env.items():
            args.extend(["-e", f"{key}={value}"])
        for host_path, container_path in spec.volumes.items():
            args.extend(["-v", f"{host_path}:{container_path}"])
        args.append(spec.image)
        args.extend(spec.command)
        result = self._docker(args, error_prefix=f"docker run {name}")
        return (result.stdout or "").strip()

    def list(self, prefix: str) -> list[ContainerSummary]:
        """Return all containers (running or not) whose name starts with *prefix*."""
        result = self._docker(
            ["ps", "-a", "--filter", f"name={prefix}", "--format", "{{json .}}"],
            error_prefix="docker ps",
        )
        summaries: list[ContainerSummary] = []
        for line in (result.stdout or "").splitlines():
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                LOGGER.warning("Ignoring unparseable docker ps line: %s", line)
                continue
            # The name filter is a substring match; keep true prefix matches only.
            for name in str(payload.get("Names", "")).split(","):
                name = name.strip()
                if name.startswith(prefix):
                    summaries.append(
                        ContainerSummary(
                            name=name,
                            container_id=str(payload.get("ID", "")),
                            state=str(payload.get("State", "")).lower(),
                            status=str(payload.get("Status", "")),
                        )
                    )
        return summaries

    def inspect(self, name: str) -> ContainerDetails:
        """Return parsed ``docker inspect`` metadata for *name*."""
        result = self._docker(
            ["container", "inspect", name],
            error_prefix=f"docker inspect {name}",
        )
        try:
            payload = json.loads(result.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise ContainerRuntimeError(
                f"docker inspect {name} returned invalid JSON: {exc}"
            ) from exc
        if not isinstance(payload, list) or not payload:
            raise ContainerNotFound(f"No such container: {name}")
        return _details_from_inspect(payload[0])

    def restart(self, name: str, timeout: float) -> None:
        """Restart *name*; raise :class:`CommandTimeout` when it takes too long."""
        self._docker(["restart", name], error_prefix=f"docker restart {name}", timeout=timeout)

    def stop(self, name: str, grace: int) -> None:
        """Stop *name*, letting docker kill it after *grace* seconds."""
        self._docker(
            ["stop", "-t", str(grace), name],
            error_prefix=f"docker stop {name}",
            timeout=self.command_timeout + grace,
        )

    def start(self, name: str) -> None:
        """Start the stopped container *name*."""
        self._docker(["start", name], error_prefix=f"docker start {name}")

    def remove(self, name: str) -> None:
        """Force-remove *name*."""
        self._docker(["rm", "-f", name], error_prefix=f"docker rm {name}")

    def logs(
        self,
        name: str,
        *,
        tail: int | None = None,
        follow: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        """Return container output; stream to the terminal when *follow* is set."""
        args: list[str] = ["logs"]
        if tail is not None:
            args.extend(["--tail", str(tail)])
        if follow:
            args.append("--follow")
        args.append(name)
        return self._docker(
            args,
            error_prefix=f"docker logs {name}",
            capture_output=not follow,
            timeout=None if follow else self.command_timeout,
        )

    # ------------------------------------------------------------------
    # Images
    # ------------------------------------------------------------------
    def image_exists(self, image: str) -> bool:
        """Return ``True`` when *image* is present locally."""
        result = self._docker(
            ["image", "inspect", image],
            error_prefix=f"docker image inspect {image}",
            check=False,
        )
        return result.returncode == 0

    def build_image(
        self,
        image: str,
        context_dir: Path,
        *,
        no_cache: bool = False,
        stream: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        """Build *image* from *context_dir*; output streams to the terminal by default."""
        args: list[str] = ["build"]
        if no_cache:
            args.append("--no-cache")
        args.extend(["-t", image, str(context_dir)])
        return self._docker(
            args,
            error_prefix=f"docker build {image}",
            capture_output=not stream,
            timeout=None,
        )

    def run_entrypoint(
        self,
        image: str,
        entrypoint: str,
        args: Sequence[str],
    ) -> subprocess.CompletedProcess[str]:
        """Run a throwaway container overriding the entrypoint."""
        command = ["run", "--rm", "--entrypoint", entrypoint, image, *args]
        return self._docker(command, error_prefix=f"docker run --entrypoint {entrypoint}")

    # ------------------------------------------------------------------
    def _docker(
        self,
        args: Sequence[str],
        *,
        error_prefix: str,
        check: bool = True,
        capture_output: bool = True,
        timeout: float | None = _DEFAULT_TIMEOUT,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.docker_bin, *args]
        effective_timeout = self.command_timeout if timeout == _DEFAULT_TIMEOUT else timeout
        LOGGER.debug("Running %s", " ".join(command))
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=capture_output,
                text=True,
                check=False,
                timeout=effective_timeout,
            )
        except FileNotFoundError as exc:
            raise RuntimeUnavailable(f"{self.docker_bin} not found: {exc}") from exc
        except subprocess.TimeoutExpired as exc:
            raise CommandTimeout(
                f"{error_prefix} timed out after {effective_timeout:g}s"
            ) from exc
        if check and result.returncode != 0:
            stdout = getattr(result, "stdout", "") or ""
            stderr = getattr(result, "stderr", "") or ""
            message = stderr.strip() or stdout.strip() or "no output"
            lowered = message.lower()
            detail = f"{error_prefix} failed (exit {result.returncode}): {message}"
            if any(marker in lowered for marker in _DAEMON_UNREACHABLE_MARKERS):
                raise RuntimeUnavailable(detail)
            if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
                raise ContainerNotFound(detail)
            raise ContainerRuntimeError(detail)
        return result


def _details_from_inspect(payload: Mapping[str, object]) -> ContainerDetails:
    state_raw = payload.get("State")
    state = state_raw if isinstance(state_raw, Mapping) else {}
    config_raw = payload.get("Config")
    config = config_raw if isinstance(config_raw, Mapping) else {}
    env_raw = config.get("Env")
    env: dict[str, str] = {}
    if isinstance(env_raw, list):
        for item in env_raw:
            key, sep, value = str(item).partition("=")
            if sep:
                env[key] = value
    restart_raw = payload.get("RestartCount", 0)
    exit_raw = state.get("ExitCode", 0)
    return ContainerDetails(
        name=str(payload.get("Name", "")).lstrip("/"),
        container_id=str(payload.get("Id", "")),
        state=str(state.get("Status", "")).lower(),
        running=bool(state.get("Running", False)),
        exit_code=exit_raw if isinstance(exit_raw, int) else 0,
        env=env,
        created_at=parse_docker_timestamp(payload.get("Created")),
        started_at=parse_docker_timestamp(state.get("StartedAt")),
        restart_count=restart_raw if isinstance(restart_raw, int) else 0,
        error=str(state.get("Error", "") or ""),
    )


def parse_docker_timestamp(value: object) -> datetime | None:
    """Parse Docker's RFC 3339 timestamps (nanosecond precision, ``Z`` suffix)."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.startswith("0001-01-01"):
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    text = _FRACTION_RE.sub(lambda match: "." + match.group(1)[:6].ljust(6, "0"), text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        LOGGER.debug("Unparseable docker timestamp %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


__all__ = ["DockerProvider", "parse_docker_timestamp"]
