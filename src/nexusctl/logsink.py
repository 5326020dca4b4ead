"""Per-node log files shared between the host and the worker containers."""
from __future__ import annotations

import os
from collections import deque
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path


class LogSinkError(RuntimeError):
    """Raised when a node log file cannot be prepared or written."""


@dataclass(frozen=True)
class LogSink:
    """Resolve, create and append to ``nexus-<node-id>.log`` files."""

    root: Path
    filename_template: str = "nexus-{node_id}.log"

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def path_for(self, node_id: int) -> Path:
        """Return the log path for *node_id*."""
        return self.root / self.filename_template.format(node_id=node_id)

    def ensure(self, path: Path) -> Path:
        """Create *path* (and its directory) if missing; never truncates."""
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.touch(exist_ok=True)
        except OSError as exc:
            raise LogSinkError(f"Cannot prepare log file {path}: {exc}") from exc
        if not os.access(path, os.W_OK):
            raise LogSinkError(f"Log file {path} is not writable.")
        return path

    def append(self, path: Path, line: str) -> None:
        """Append a timestamped *line* to *path*."""
        stamp = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        try:
            with path.open("a", encoding="utf-8") as handle:
                handle.write(f"[nexusctl {stamp}] {line.rstrip()}\n")
        except OSError as exc:
            raise LogSinkError(f"Cannot append to {path}: {exc}") from exc

    def tail(self, path: Path, lines: int) -> list[str]:
        """Return the last *lines* lines of *path* (empty when missing)."""
        if not path.exists():
            return []
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            return [line.rstrip("\n") for line in deque(handle, maxlen=lines)]

    def count_matches(self, path: Path, needle: str) -> int:
        """Count lines in *path* containing *needle*; 0 when the file is missing."""
        if not path.exists():
            return 0
        count = 0
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            for line in handle:
                if needle in line:
                    count += 1
        return count


__all__ = ["LogSink", "LogSinkError"]
