"""Command-driven toolchain.

This module handles:
- Substituting placeholders into configured command templates
- Compiling dependencies in a directory that holds only the recipe
- Collecting the configured output paths as the dependency bundle
- Compiling the project with the bundle overlaid onto its source
- Querying the toolchain version
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from depcache.builds.artifacts import compute_file_hash
from depcache.cache.bundle import CompiledDependencyBundle, compute_tree_hash
from depcache.recipes.fingerprint import Recipe, write_recipe
from depcache.recipes.schema import ToolchainSchema
from depcache.toolchain.runner import ToolchainFailure, run_command
from depcache.types import Binary

logger = logging.getLogger(__name__)

RECIPE_FILENAME = "recipe.json"

# Directories never copied from project source into the build directory
SOURCE_IGNORE_PATTERNS = (".git", "__pycache__", "*.pyc")


def detect_version(cmd: list[str], timeout: int = 60) -> str:
    """Query the toolchain version.

    Args:
        cmd: Command printing the version on its first output line.
        timeout: Command timeout in seconds.

    Returns:
        Version string.

    Raises:
        ToolchainFailure: If the command fails or prints nothing.
    """
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
        )
    except subprocess.TimeoutExpired as e:
        raise ToolchainFailure(
            f"Version command timed out after {timeout}s",
            stage="version",
            exit_code=-1,
            code="toolchain_timeout",
        ) from e
    except subprocess.CalledProcessError as e:
        raise ToolchainFailure(
            f"Version command failed with exit code {e.returncode}",
            stage="version",
            exit_code=e.returncode,
            diagnostics=(e.stderr or "").strip(),
        ) from e
    except OSError as e:
        raise ToolchainFailure(
            f"Failed to run version command: {e}",
            stage="version",
            code="toolchain_execution_error",
        ) from e

    lines = [line.strip() for line in result.stdout.splitlines() if line.strip()]
    if not lines:
        raise ToolchainFailure(
            "Version command printed nothing",
            stage="version",
            code="toolchain_version_empty",
        )
    return lines[0]


class CommandToolchain:
    """Toolchain running configured external commands.

    Args:
        config: Command templates and output layout.
        binary_name: Name of the binary to build.
        target_platform: Target platform identifier.
        build_profile: Build profile.
        version: Known toolchain version; queried lazily when not given.
        timeout: Timeout for each command in seconds.
        env_override: Environment overrides for every command.
    """

    def __init__(
        self,
        config: ToolchainSchema,
        binary_name: str,
        target_platform: str,
        build_profile: str = "release",
        version: str | None = None,
        timeout: int | None = None,
        env_override: dict[str, str] | None = None,
    ) -> None:
        self.config = config
        self.binary_name = binary_name
        self.target_platform = target_platform
        self.build_profile = build_profile
        self.timeout = timeout
        self.env_override = env_override
        self._version = version

    @property
    def version(self) -> str:
        """Return the toolchain version, querying it on first use."""
        if self._version is None:
            self._version = detect_version(self.config.version_command)
            logger.info("Detected toolchain version: %s", self._version)
        return self._version

    def format_command(self, template: list[str], **values: str) -> list[str]:
        """Substitute placeholders into a command template.

        Raises:
            ToolchainFailure: If a template names an unknown placeholder.
        """
        mapping = {
            "target": self.target_platform,
            "profile": self.build_profile,
            "binary": self.binary_name,
            **values,
        }
        try:
            return [arg.format(**mapping) for arg in template]
        except (KeyError, IndexError) as e:
            raise ToolchainFailure(
                f"Unknown placeholder in command template {template}: {e}",
                code="invalid_command_template",
            ) from e

    def compile_dependencies(
        self, recipe: Recipe, work_dir: Path
    ) -> CompiledDependencyBundle:
        """Compile the dependencies named in a recipe.

        The command runs in ``work_dir/deps``, which holds nothing but
        ``recipe.json``. The configured bundle paths are then collected
        into ``work_dir/bundle``.

        Raises:
            ToolchainFailure: If compilation fails or produces no bundle.
        """
        deps_dir = work_dir / "deps"
        if deps_dir.exists():
            shutil.rmtree(deps_dir)
        deps_dir.mkdir(parents=True)
        recipe_path = write_recipe(recipe, deps_dir / RECIPE_FILENAME)

        cmd = self.format_command(
            self.config.dependencies_command,
            target=recipe.target_platform,
            profile=recipe.build_profile,
            recipe_path=str(recipe_path),
        )
        run_command(
            cmd,
            cwd=deps_dir,
            log_path=work_dir / "logs" / "dependencies.log",
            stage="dependencies",
            timeout=self.timeout,
            env_override=self.env_override,
        )

        bundle_root = work_dir / "bundle"
        if bundle_root.exists():
            shutil.rmtree(bundle_root)
        bundle_root.mkdir(parents=True)
        for rel_path in self.config.bundle_paths:
            source = deps_dir / rel_path
            dest = bundle_root / rel_path
            if source.is_dir():
                shutil.copytree(source, dest, symlinks=True)
            elif source.is_file():
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(source, dest)
            else:
                raise ToolchainFailure(
                    f"Dependency build produced no output at {rel_path}",
                    stage="dependencies",
                    log_path=work_dir / "logs" / "dependencies.log",
                    code="missing_bundle_output",
                )

        return CompiledDependencyBundle(
            root=bundle_root,
            recipe_digest=recipe.digest,
            tree_hash=compute_tree_hash(bundle_root),
        )

    def compile_project(
        self, source: Path, bundle: CompiledDependencyBundle, work_dir: Path
    ) -> Binary:
        """Compile the project against a dependency bundle.

        Source is copied into ``work_dir/project`` and the bundle content
        is overlaid on top, so the toolchain finds its dependency outputs
        where a dependency build left them.

        Raises:
            ToolchainFailure: If compilation fails or the binary is missing.
        """
        if not source.is_dir():
            raise ToolchainFailure(
                f"Project source is not a directory: {source}",
                stage="project",
                code="missing_source",
            )

        project_dir = work_dir / "project"
        if project_dir.exists():
            shutil.rmtree(project_dir)
        shutil.copytree(
            source,
            project_dir,
            symlinks=True,
            ignore=shutil.ignore_patterns(*SOURCE_IGNORE_PATTERNS),
        )
        shutil.copytree(bundle.root, project_dir, symlinks=True, dirs_exist_ok=True)

        cmd = self.format_command(
            self.config.project_command,
            bundle_dir=str(bundle.root),
        )
        log_path = work_dir / "logs" / "project.log"
        run_command(
            cmd,
            cwd=project_dir,
            log_path=log_path,
            stage="project",
            timeout=self.timeout,
            env_override=self.env_override,
        )

        binary_path = project_dir / self.format_command([self.config.binary_path])[0]
        if not binary_path.is_file():
            raise ToolchainFailure(
                f"Project build produced no binary at {binary_path}",
                stage="project",
                log_path=log_path,
                code="missing_binary",
            )

        return Binary(
            path=binary_path,
            name=self.binary_name,
            size_bytes=binary_path.stat().st_size,
            sha256=compute_file_hash(binary_path),
        )


__all__ = [
    "RECIPE_FILENAME",
    "SOURCE_IGNORE_PATTERNS",
    "CommandToolchain",
    "detect_version",
]
