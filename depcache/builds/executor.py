"""Build executor.

This module composes dependency bundles with freshly compiled project
code:
- Cache hit: compile only the project, linking against the bundle
- Cache miss: compile dependencies once, compile the project, then store
  the new bundle in the dependency cache

Toolchain failures propagate unchanged and nothing is stored for a build
that failed. Cancellation is checked between stages.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from depcache.cache.bundle import CompiledDependencyBundle
from depcache.cache.store import DependencyCache
from depcache.errors import DepcacheError
from depcache.recipes.fingerprint import Recipe
from depcache.toolchain.base import Toolchain
from depcache.types import Binary

logger = logging.getLogger(__name__)


class BuildCancelledError(DepcacheError):
    """Raised when a build is cancelled between stages."""

    def __init__(self, stage: str, code: str = "build_cancelled") -> None:
        super().__init__(f"Build cancelled before {stage}", code)
        self.stage = stage


@dataclass
class ExecutionResult:
    """Result of a build execution.

    Attributes:
        binary: Compiled project binary.
        bundle: Dependency bundle the project was compiled against.
        cache_hit: Whether a cached bundle was reused.
        stored: Whether a freshly compiled bundle is now cached
            (None on a cache hit).
        cache_warning: Warning about impaired future cache reuse.
    """

    binary: Binary
    bundle: CompiledDependencyBundle
    cache_hit: bool
    stored: bool | None = None
    cache_warning: str | None = None


class BuildExecutor:
    """Compile a project, reusing or producing its dependency bundle.

    Args:
        toolchain: Toolchain collaborator.
        cache: Dependency cache receiving freshly compiled bundles.
        work_dir: Directory for intermediate build state.
        cancel_event: Optional event signalling cancellation.
    """

    def __init__(
        self,
        toolchain: Toolchain,
        cache: DependencyCache | None,
        work_dir: Path,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.toolchain = toolchain
        self.cache = cache
        self.work_dir = work_dir
        self.cancel_event = cancel_event

    def _check_cancelled(self, stage: str) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            logger.warning("Build cancelled before %s", stage)
            raise BuildCancelledError(stage)

    def build(
        self,
        recipe: Recipe,
        bundle: CompiledDependencyBundle | None,
        project_source: Path,
    ) -> ExecutionResult:
        """Build the project binary.

        Args:
            recipe: Recipe of the project's dependencies.
            bundle: Cached bundle for the recipe, or None on a cache miss.
            project_source: Project source directory.

        Returns:
            ExecutionResult with the binary and bundle used.

        Raises:
            ToolchainFailure: If dependency or project compilation fails.
            BuildCancelledError: If cancellation was requested.
            ValueError: If the bundle belongs to another recipe.
        """
        self.work_dir.mkdir(parents=True, exist_ok=True)
        cache_hit = bundle is not None

        if bundle is not None:
            if bundle.recipe_digest != recipe.digest:
                raise ValueError(
                    f"Bundle for {bundle.recipe_digest} does not match "
                    f"recipe {recipe.digest}"
                )
            logger.info(
                "Reusing cached dependencies for recipe %s", recipe.short_digest
            )
        else:
            self._check_cancelled("dependency compilation")
            logger.info(
                "Compiling %d dependencies for recipe %s",
                len(recipe.declarations),
                recipe.short_digest,
            )
            bundle = self.toolchain.compile_dependencies(recipe, self.work_dir)

        self._check_cancelled("project compilation")
        binary = self.toolchain.compile_project(project_source, bundle, self.work_dir)
        logger.info(
            "Compiled %s (%d bytes, sha256=%s)",
            binary.name,
            binary.size_bytes,
            binary.sha256[:16],
        )

        result = ExecutionResult(binary=binary, bundle=bundle, cache_hit=cache_hit)
        if cache_hit:
            return result

        self._check_cancelled("cache store")
        if self.cache is None:
            result.stored = False
            result.cache_warning = "No dependency cache configured"
        else:
            result.stored = self.cache.store(recipe, bundle)
            if not result.stored:
                result.cache_warning = (
                    f"Bundle for recipe {recipe.short_digest} was not cached; "
                    "future builds will recompile dependencies"
                )
                logger.warning(result.cache_warning)
        return result


__all__ = ["BuildCancelledError", "BuildExecutor", "ExecutionResult"]
