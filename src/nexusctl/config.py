"""Configuration loader for nexusctl.

Values are read from multiple sources, later sources winning:

1. Built-in defaults.
2. ``~/.config/nexusctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``NEXUSCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export NEXUSCTL_WORKER__MAX_THREADS=4
    export NEXUSCTL_RESTART__TIMEOUT=20

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses`` and handed to the instance manager at construction time.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load nexusctl configuration. Install with "
        "`pip install nexusctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "NEXUSCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class WorkerConfig:
    """Describes the worker image and how each node container is launched."""

    image: str = "nexus-node:latest"
    binary: str = "nexus-network"
    max_threads: int = 8
    container_prefix: str = "nexus-node-"
    data_mount: str = "/nexus-data"
    task_marker: str = "Proof submitted"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "image": self.image,
            "binary": self.binary,
            "max_threads": self.max_threads,
            "container_prefix": self.container_prefix,
            "data_mount": self.data_mount,
            "task_marker": self.task_marker,
        }


@dataclass(frozen=True)
class RestartConfig:
    """Restart bounds: graceful restart timeout and the stop grace period."""

    timeout: float = 10.0
    stop_grace: int = 2

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"timeout": self.timeout, "stop_grace": self.stop_grace}


@dataclass(frozen=True)
class DockerConfig:
    """Docker CLI integration values."""

    docker_bin: str = "docker"
    command_timeout: float = 60.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"docker_bin": self.docker_bin, "command_timeout": self.command_timeout}


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for nexusctl."""

    config_file: Path
    base_dir: Path
    build_dir: Path
    logs_dir: Path
    ops_logs_dir: Path
    templates_dir: Path | None
    log_tail: int
    worker: WorkerConfig
    restart: RestartConfig
    docker: DockerConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "base_dir": str(self.base_dir),
            "build_dir": str(self.build_dir),
            "logs_dir": str(self.logs_dir),
            "ops_logs_dir": str(self.ops_logs_dir),
            "templates_dir": str(self.templates_dir) if self.templates_dir else None,
            "log_tail": self.log_tail,
            "worker": self.worker.to_dict(),
            "restart": self.restart.to_dict(),
            "docker": self.docker.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "~/.config/nexusctl/config.yml",
    "base_dir": "~/nexus-node",
    "build_dir": None,  # derived from base_dir when absent
    "logs_dir": None,  # derived from base_dir when absent
    "ops_logs_dir": None,  # derived from base_dir when absent
    "templates_dir": None,
    "log_tail": 20,
    "worker": {
        "image": "nexus-node:latest",
        "binary": "nexus-network",
        "max_threads": 8,
        "container_prefix": "nexus-node-",
        "data_mount": "/nexus-data",
        "task_marker": "Proof submitted",
    },
    "restart": {
        "timeout": 10.0,
        "stop_grace": 2,
    },
    "docker": {
        "docker_bin": "docker",
        "command_timeout": 60.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "worker": {
        "image",
        "binary",
        "max_threads",
        "container_prefix",
        "data_mount",
        "task_marker",
    },
    "restart": {"timeout", "stop_grace"},
    "docker": {"docker_bin", "command_timeout"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override).expanduser()
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR]).expanduser()
    return Path(default_path).expanduser()


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        value = raw.get(section)
        if value is None:
            continue
        mapping = _as_dict(value, section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    worker = _as_dict(raw.get("worker"), "worker")
    prefix = worker.get("container_prefix")
    if prefix is not None and not str(prefix).strip():
        raise ConfigError("worker.container_prefix must be a non-empty string.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    base_dir = _to_path(raw.get("base_dir"))
    build_dir = _optional_path(raw.get("build_dir")) or base_dir / "build"
    logs_dir = _optional_path(raw.get("logs_dir")) or base_dir / "logs"
    ops_logs_dir = _optional_path(raw.get("ops_logs_dir")) or base_dir / "operations"
    templates_dir = _optional_path(raw.get("templates_dir"))
    log_tail = _expect_int(raw.get("log_tail"), "log_tail", default=20)
    if log_tail < 1:
        raise ConfigError("log_tail must be at least 1.")

    worker_mapping = _as_dict(raw.get("worker"), "worker")
    max_threads = _expect_int(worker_mapping.get("max_threads"), "worker.max_threads", default=8)
    if max_threads < 1:
        raise ConfigError("worker.max_threads must be at least 1.")
    worker = WorkerConfig(
        image=str(worker_mapping.get("image", "nexus-node:latest")),
        binary=str(worker_mapping.get("binary", "nexus-network")),
        max_threads=max_threads,
        container_prefix=str(worker_mapping.get("container_prefix", "nexus-node-")).strip(),
        data_mount=str(worker_mapping.get("data_mount", "/nexus-data")),
        task_marker=str(worker_mapping.get("task_marker", "Proof submitted")),
    )

    restart_mapping = _as_dict(raw.get("restart"), "restart")
    stop_grace = _expect_int(restart_mapping.get("stop_grace"), "restart.stop_grace", default=2)
    if stop_grace < 0:
        raise ConfigError("restart.stop_grace must be non-negative.")
    restart = RestartConfig(
        timeout=_expect_positive_float(
            restart_mapping.get("timeout"), "restart.timeout", default=10.0
        ),
        stop_grace=stop_grace,
    )

    docker_mapping = _as_dict(raw.get("docker"), "docker")
    docker = DockerConfig(
        docker_bin=str(docker_mapping.get("docker_bin", "docker")),
        command_timeout=_expect_positive_float(
            docker_mapping.get("command_timeout"), "docker.command_timeout", default=60.0
        ),
    )

    return AppConfig(
        config_file=config_file,
        base_dir=base_dir,
        build_dir=build_dir,
        logs_dir=logs_dir,
        ops_logs_dir=ops_logs_dir,
        templates_dir=templates_dir,
        log_tail=log_tail,
        worker=worker,
        restart=restart,
        docker=docker,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _optional_path(value: object) -> Path | None:
    if value in (None, ""):
        return None
    return _to_path(value)


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "DockerConfig",
    "RestartConfig",
    "WorkerConfig",
    "load_config",
]
