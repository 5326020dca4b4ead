"""Tests for the template rendering engine."""
from __future__ import annotations

from pathlib import Path

import pytest

from nexusctl.templates import TemplateEngine, TemplateError


def _context() -> dict[str, object]:
    return {
        "base_image": "ubuntu:24.04",
        "rust_toolchain": "nightly",
        "source_repo": "https://example.invalid/nexus-cli.git",
        "binary": "nexus-network",
        "max_threads": 8,
        "data_mount": "/nexus-data",
    }


def test_render_to_string_uses_builtin_templates() -> None:
    """Built-in templates render with strict variables."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("docker/Dockerfile.j2", _context())

    assert output.startswith("FROM ubuntu:24.04")
    assert "git clone --depth=1 https://example.invalid/nexus-cli.git" in output
    assert 'ENTRYPOINT ["/entrypoint.sh"]' in output


def test_entrypoint_defaults_to_headless_start() -> None:
    """The entrypoint passes node id and thread count to the worker binary."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("docker/entrypoint.sh.j2", _context())

    assert output.startswith("#!/bin/bash")
    assert ': "${MAX_THREADS:=8}"' in output
    assert 'LOG_FILE="${LOG_DIR}/nexus-${NODE_ID}.log"' in output
    assert "--headless" in output
    assert 'nexus-network "$@" 2>&1 | tee -a "$LOG_FILE"' in output


def test_entrypoint_propagates_worker_exit_status() -> None:
    """The worker exit status survives the pipe through tee."""
    engine = TemplateEngine.with_overrides(None)

    output = engine.render_to_string("docker/entrypoint.sh.j2", _context())

    assert output.splitlines()[1] == "set -eo pipefail"


def test_missing_variable_raises() -> None:
    """StrictUndefined turns a missing variable into an error."""
    engine = TemplateEngine.with_overrides(None)

    with pytest.raises(TemplateError):
        engine.render_to_string("docker/Dockerfile.j2", {"base_image": "ubuntu:24.04"})


def test_render_to_path_writes_with_mode(tmp_path: Path) -> None:
    """Rendering to a file writes content and respects the requested mode."""
    engine = TemplateEngine.with_overrides(None)
    destination = tmp_path / "build" / "entrypoint.sh"

    changed = engine.render_to_path(
        "docker/entrypoint.sh.j2", destination, _context(), mode=0o755
    )

    assert changed is True
    assert destination.exists()
    assert oct(destination.stat().st_mode & 0o777) == "0o755"

    changed_again = engine.render_to_path(
        "docker/entrypoint.sh.j2", destination, _context(), mode=0o755
    )
    assert changed_again is False


def test_override_directory_shadows_builtin(tmp_path: Path) -> None:
    """Templates in the override directory take precedence."""
    override = tmp_path / "templates" / "docker"
    override.mkdir(parents=True)
    (override / "Dockerfile.j2").write_text("FROM {{ base_image }}-custom\n", encoding="utf-8")
    engine = TemplateEngine.with_overrides(tmp_path / "templates")

    output = engine.render_to_string("docker/Dockerfile.j2", _context())
    entrypoint = engine.render_to_string("docker/entrypoint.sh.j2", _context())

    assert output == "FROM ubuntu:24.04-custom\n"
    assert entrypoint.startswith("#!/bin/bash")
