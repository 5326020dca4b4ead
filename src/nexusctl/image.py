"""Build and refresh the worker image."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from .config import WorkerConfig
from .providers.base import ContainerRuntimeError, RuntimeUnavailable
from .providers.docker import DockerProvider
from .templates import TemplateEngine

LOGGER = logging.getLogger(__name__)

DOCKERFILE_TEMPLATE = "docker/Dockerfile.j2"
ENTRYPOINT_TEMPLATE = "docker/entrypoint.sh.j2"

DEFAULT_BUILD_CONTEXT: dict[str, object] = {
    "base_image": "ubuntu:24.04",
    "rust_toolchain": "nightly",
    "source_repo": "https://github.com/nexus-xyz/nexus-cli.git",
}


class ImageBuildError(RuntimeError):
    """Raised when the worker image cannot be built."""


@dataclass(frozen=True, slots=True)
class BuildResult:
    """Outcome of an image build."""

    image: str
    no_cache: bool
    version: str | None
    version_error: str = ""


@dataclass(slots=True)
class ImageBuilder:
    """Render the build context and drive ``docker build``."""

    docker: DockerProvider
    templates: TemplateEngine
    build_dir: Path
    worker: WorkerConfig

    @property
    def dockerfile_path(self) -> Path:
        """Return the rendered Dockerfile location."""
        return self.build_dir / "Dockerfile"

    @property
    def entrypoint_path(self) -> Path:
        """Return the rendered entrypoint location."""
        return self.build_dir / "entrypoint.sh"

    def image_exists(self) -> bool:
        """Return ``True`` when the configured image is already present."""
        return self.docker.image_exists(self.worker.image)

    def prepare(self) -> bool:
        """Render the Dockerfile and entrypoint; return ``True`` if either changed."""
        context = {
            **DEFAULT_BUILD_CONTEXT,
            "binary": self.worker.binary,
            "max_threads": self.worker.max_threads,
            "data_mount": self.worker.data_mount,
        }
        dockerfile_changed = self.templates.render_to_path(
            DOCKERFILE_TEMPLATE, self.dockerfile_path, context, mode=0o644
        )
        entrypoint_changed = self.templates.render_to_path(
            ENTRYPOINT_TEMPLATE, self.entrypoint_path, context, mode=0o755
        )
        return dockerfile_changed or entrypoint_changed

    def build(self, *, no_cache: bool = True) -> BuildResult:
        """Build the image from a freshly rendered context, then report the worker version."""
        self.prepare()
        LOGGER.info("Building %s (no_cache=%s)", self.worker.image, no_cache)
        try:
            self.docker.build_image(self.worker.image, self.build_dir, no_cache=no_cache)
        except RuntimeUnavailable:
            raise
        except ContainerRuntimeError as exc:
            raise ImageBuildError(f"Image build failed: {exc}") from exc

        version: str | None = None
        version_error = ""
        try:
            version = self.worker_version()
        except RuntimeUnavailable:
            raise
        except ContainerRuntimeError as exc:
            version_error = str(exc)
            LOGGER.warning("Version check failed for %s: %s", self.worker.image, exc)
        return BuildResult(
            image=self.worker.image,
            no_cache=no_cache,
            version=version,
            version_error=version_error,
        )

    def update(self) -> BuildResult:
        """Rebuild using the layer cache to pick up the latest upstream sources."""
        return self.build(no_cache=False)

    def worker_version(self) -> str:
        """Return the worker binary's ``--version`` output from the image."""
        result = self.docker.run_entrypoint(self.worker.image, self.worker.binary, ["--version"])
        return (result.stdout or "").strip() or (result.stderr or "").strip()


__all__ = ["BuildResult", "ImageBuildError", "ImageBuilder"]
