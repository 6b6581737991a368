"""Toolchain collaborator interface."""

from __future__ import annotations

from pathlib import Path
from typing import Protocol

from depcache.cache.bundle import CompiledDependencyBundle
from depcache.recipes.fingerprint import Recipe
from depcache.types import Binary


class Toolchain(Protocol):
    """Interface for the external compiler toolchain.

    Both operations are synchronous and raise ToolchainFailure on error.
    """

    @property
    def version(self) -> str:
        """Return the toolchain version identifier."""
        ...

    def compile_dependencies(
        self, recipe: Recipe, work_dir: Path
    ) -> CompiledDependencyBundle:
        """Compile exactly the dependencies named in a recipe.

        Must not read project source; work_dir contains no project files.
        """
        ...

    def compile_project(
        self, source: Path, bundle: CompiledDependencyBundle, work_dir: Path
    ) -> Binary:
        """Compile the project source against a dependency bundle."""
        ...


__all__ = ["Toolchain"]
