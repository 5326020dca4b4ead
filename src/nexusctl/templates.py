"""Jinja2 template rendering for the worker image build context."""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from jinja2 import ChoiceLoader, Environment, FileSystemLoader, StrictUndefined, TemplateError

BUILTIN_TEMPLATES = Path(__file__).resolve().parent / "templates"


@dataclass(frozen=True)
class TemplateEngine:
    """Render templates from an optional override directory, then the built-ins."""

    environment: Environment

    @classmethod
    def with_overrides(cls, override_dir: Path | None) -> TemplateEngine:
        """Return an engine where *override_dir* shadows the packaged templates."""
        loaders: list[FileSystemLoader] = []
        if override_dir is not None and Path(override_dir).is_dir():
            loaders.append(FileSystemLoader(str(override_dir)))
        loaders.append(FileSystemLoader(str(BUILTIN_TEMPLATES)))
        environment = Environment(
            loader=ChoiceLoader(loaders),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,  # noqa: S701 - renders shell scripts and Dockerfiles
        )
        return cls(environment=environment)

    def render_to_string(self, name: str, context: Mapping[str, object]) -> str:
        """Render template *name* with *context*."""
        template = self.environment.get_template(name)
        return template.render(**context)

    def render_to_path(
        self,
        name: str,
        destination: Path,
        context: Mapping[str, object],
        *,
        mode: int = 0o644,
    ) -> bool:
        """Render *name* into *destination*; return ``True`` when contents changed."""
        rendered = self.render_to_string(name, context)
        destination.parent.mkdir(parents=True, exist_ok=True)
        if destination.exists() and destination.read_text(encoding="utf-8") == rendered:
            if (destination.stat().st_mode & 0o777) != mode:
                os.chmod(destination, mode)
            return False
        destination.write_text(rendered, encoding="utf-8")
        os.chmod(destination, mode)
        return True


__all__ = ["TemplateEngine", "TemplateError"]
