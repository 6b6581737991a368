"""Build service module.

This module provides the high-level build API:
- build_or_reuse(): Main entry point - run the cache-aware build pipeline
- The per-invocation pipeline state machine
- Per-recipe leases around cache lookup and compilation
- Build record persistence and queries

Pipeline states:
    fingerprinting -> cache_lookup -> {cache_hit, cache_miss}
        -> compiling -> packaging -> done
with ``failed`` reachable from ``compiling`` only. Resolution and input
errors are raised before the pipeline starts.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import threading
import uuid
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import select
from sqlalchemy.orm import Session

from depcache.builds.executor import BuildExecutor, ExecutionResult
from depcache.builds.models import BuildRecord
from depcache.builds.packager import (
    BuildOutput,
    PackagingError,
    RuntimeRequirement,
    package,
)
from depcache.cache.lock import recipe_lock
from depcache.config import get_settings
from depcache.errors import DepcacheError
from depcache.recipes.fingerprint import (
    Recipe,
    UnresolvedDependencyError,
    compute_recipe,
    find_unresolved,
)
from depcache.recipes.resolver import LockfileResolver
from depcache.types import BuildStatus, PipelineState

if TYPE_CHECKING:
    from depcache.cache.store import DependencyCache
    from depcache.config import Settings
    from depcache.recipes.resolver import Resolver
    from depcache.recipes.schema import ProjectSchema
    from depcache.toolchain.base import Toolchain

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[PipelineState | None, frozenset[PipelineState]] = {
    None: frozenset({PipelineState.FINGERPRINTING}),
    PipelineState.FINGERPRINTING: frozenset({PipelineState.CACHE_LOOKUP}),
    PipelineState.CACHE_LOOKUP: frozenset(
        {PipelineState.CACHE_HIT, PipelineState.CACHE_MISS}
    ),
    PipelineState.CACHE_HIT: frozenset({PipelineState.COMPILING}),
    PipelineState.CACHE_MISS: frozenset({PipelineState.COMPILING}),
    PipelineState.COMPILING: frozenset(
        {PipelineState.PACKAGING, PipelineState.FAILED}
    ),
    PipelineState.PACKAGING: frozenset({PipelineState.DONE}),
    PipelineState.DONE: frozenset(),
    PipelineState.FAILED: frozenset(),
}


class BuildNotFoundError(DepcacheError):
    """Raised when a build record is not found."""

    def __init__(self, build_id: int, code: str = "build_not_found") -> None:
        super().__init__(f"Build not found: {build_id}", code)
        self.build_id = build_id


class InvalidTransitionError(DepcacheError):
    """Raised on an illegal pipeline state transition."""

    def __init__(
        self,
        current: PipelineState | None,
        target: PipelineState,
        code: str = "invalid_transition",
    ) -> None:
        current_name = current.value if current else "start"
        super().__init__(
            f"Illegal pipeline transition: {current_name} -> {target.value}", code
        )
        self.current = current
        self.target = target


class PipelineRun:
    """State machine of a single build invocation.

    Args:
        on_transition: Optional callback invoked with each new state.
    """

    def __init__(
        self, on_transition: Callable[[PipelineState], None] | None = None
    ) -> None:
        self.state: PipelineState | None = None
        self.history: list[PipelineState] = []
        self._on_transition = on_transition

    def advance(self, target: PipelineState) -> None:
        """Move to a new state.

        Raises:
            InvalidTransitionError: If the transition is not allowed.
        """
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, target)
        logger.debug(
            "Pipeline %s -> %s",
            self.state.value if self.state else "start",
            target.value,
        )
        self.state = target
        self.history.append(target)
        if self._on_transition is not None:
            self._on_transition(target)

    @property
    def finished(self) -> bool:
        """Whether the run reached a terminal state."""
        return self.state in (PipelineState.DONE, PipelineState.FAILED)


@dataclass
class PipelineResult:
    """Result of a build pipeline invocation.

    Attributes:
        recipe: Recipe of the project's dependencies.
        output: Packaged build output.
        execution: Build execution details.
        states: Pipeline states visited, in order.
        build_id: ID of the persisted BuildRecord, if any.
    """

    recipe: Recipe
    output: BuildOutput
    execution: ExecutionResult
    states: list[PipelineState] = field(default_factory=list)
    build_id: int | None = None

    @property
    def cache_hit(self) -> bool:
        """Whether the dependency cache was reused."""
        return self.execution.cache_hit

    @property
    def cache_warning(self) -> str | None:
        """Warning about impaired future cache reuse."""
        return self.execution.cache_warning


def runtime_requirements(project: ProjectSchema) -> list[RuntimeRequirement]:
    """Return validated runtime requirements of a project.

    Raises:
        PackagingError: If a declared requirement is not a file.
    """
    requirements = [
        RuntimeRequirement(source=Path(r.source), destination=r.destination)
        for r in project.runtime
    ]
    for requirement in requirements:
        if not requirement.source.is_file():
            raise PackagingError(
                f"Runtime requirement is not a file: {requirement.source}",
                code="invalid_requirement",
            )
    return requirements


def _create_build_record(
    session: Session,
    project: ProjectSchema,
    recipe: Recipe,
) -> BuildRecord:
    """Create a new BuildRecord in pending state."""
    build = BuildRecord(
        project_name=project.name,
        recipe_digest=recipe.digest,
        toolchain_version=recipe.toolchain_version,
        target_platform=recipe.target_platform,
        status=BuildStatus.PENDING.value,
    )
    session.add(build)
    session.flush()
    return build


def _output_dir_for(
    settings: Settings,
    project: ProjectSchema,
    build: BuildRecord | None,
) -> Path:
    if build is not None:
        build_id_str = f"{build.id:08d}_{uuid.uuid4().hex[:8]}"
    else:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        build_id_str = f"{stamp}_{uuid.uuid4().hex[:8]}"
    return settings.output_dir / project.name / build_id_str


def build_or_reuse(
    project: ProjectSchema,
    source_dir: Path,
    cache: DependencyCache,
    toolchain: Toolchain,
    settings: Settings | None = None,
    session: Session | None = None,
    resolver: Resolver | None = None,
    output_dir: Path | None = None,
    force_rebuild: bool = False,
    cancel_event: threading.Event | None = None,
    on_transition: Callable[[PipelineState], None] | None = None,
) -> PipelineResult:
    """Build a project, reusing cached dependencies when possible.

    This is the main entry point for the build pipeline. It:
    1. Resolves dependencies and validates inputs
    2. Computes the recipe (fingerprinting)
    3. Checks toolchain identity and looks up the dependency cache
    4. Compiles dependencies on a miss (and stores them), then the project
    5. Packages the binary and runtime requirements
    6. Persists a BuildRecord when a session is given

    Args:
        project: Validated project metadata.
        source_dir: Project source directory.
        cache: Open dependency cache handle for the toolchain's version.
        toolchain: Toolchain collaborator.
        settings: Application settings.
        session: Optional database session for build records.
        resolver: Dependency resolver (lock data by default).
        output_dir: Output directory (derived from settings if not given).
        force_rebuild: Skip cache lookup and recompile dependencies.
        cancel_event: Optional event signalling cancellation.
        on_transition: Optional callback for pipeline state changes.

    Returns:
        PipelineResult with recipe, output and execution details.

    Raises:
        ResolutionError: If dependencies cannot be resolved.
        UnresolvedDependencyError: If resolved versions are not exact.
        PackagingError: If runtime requirements are invalid.
        ToolchainFailure: If compilation fails.
        BuildCancelledError: If cancellation was requested.
    """
    if settings is None:
        settings = get_settings()
    if resolver is None:
        resolver = LockfileResolver()

    target_platform = project.target_platform or settings.target_platform
    build_profile = project.build_profile or settings.build_profile

    # Input validation happens before the pipeline starts
    requirements = runtime_requirements(project)
    declarations = resolver.resolve(project)
    unresolved = find_unresolved(declarations)
    if unresolved:
        raise UnresolvedDependencyError(unresolved)

    toolchain_version = toolchain.version
    if cache.toolchain_version != toolchain_version:
        raise ValueError(
            f"Cache handle is for toolchain {cache.toolchain_version}, "
            f"build uses {toolchain_version}"
        )

    run = PipelineRun(on_transition)
    run.advance(PipelineState.FINGERPRINTING)
    recipe = compute_recipe(
        declarations,
        target_platform=target_platform,
        toolchain_version=toolchain_version,
        build_profile=build_profile,
        extra_inputs=project.extra_inputs,
    )
    logger.info("Computed recipe %s for %s", recipe.short_digest, project.name)

    build: BuildRecord | None = None
    if session is not None:
        build = _create_build_record(session, project, recipe)
        logger.info("Created build record %d", build.id)

    if output_dir is None:
        output_dir = _output_dir_for(settings, project, build)

    if settings.work_dir is not None:
        settings.work_dir.mkdir(parents=True, exist_ok=True)
    work_root = Path(
        tempfile.mkdtemp(
            prefix="depcache_build_",
            dir=str(settings.work_dir) if settings.work_dir else None,
        )
    )

    try:
        run.advance(PipelineState.CACHE_LOOKUP)
        with ExitStack() as stack:
            if settings.use_recipe_lock:
                try:
                    stack.enter_context(
                        recipe_lock(
                            settings.cache_dir / ".locks",
                            recipe.digest,
                            timeout=settings.lock_timeout,
                        )
                    )
                except (TimeoutError, OSError) as e:
                    logger.warning(
                        "Proceeding without recipe lease for %s: %s",
                        recipe.short_digest,
                        e,
                    )

            cache.ensure_toolchain()
            bundle = None
            if force_rebuild:
                logger.info("Forced rebuild, skipping cache lookup")
            else:
                bundle = cache.lookup(recipe, dest_dir=work_root / "cached-bundle")

            run.advance(
                PipelineState.CACHE_HIT if bundle is not None else PipelineState.CACHE_MISS
            )

            run.advance(PipelineState.COMPILING)
            if build is not None:
                build.is_cache_hit = bundle is not None
                build.mark_running()
                build.pipeline_state = PipelineState.COMPILING.value
                session.flush()  # type: ignore[union-attr]

            executor = BuildExecutor(
                toolchain=toolchain,
                cache=cache,
                work_dir=work_root,
                cancel_event=cancel_event,
            )
            try:
                execution = executor.build(recipe, bundle, source_dir)
            except Exception:
                run.advance(PipelineState.FAILED)
                raise

        run.advance(PipelineState.PACKAGING)
        output = package(
            execution.binary,
            requirements,
            output_dir,
            install_dir=project.install_dir,
            forbidden_roots=[work_root],
            manifest_metadata={
                "project": project.name,
                "recipe_digest": recipe.digest,
                "toolchain_version": recipe.toolchain_version,
                "target_platform": recipe.target_platform,
                "cache_hit": execution.cache_hit,
            },
        )
        run.advance(PipelineState.DONE)

    except Exception as e:
        if build is not None:
            build.pipeline_state = run.state.value if run.state else None
            build.mark_failed(
                error_type=getattr(e, "code", type(e).__name__),
                message=str(e),
            )
            session.flush()  # type: ignore[union-attr]
            logger.error("Build %d failed: %s", build.id, e)
        raise

    finally:
        shutil.rmtree(work_root, ignore_errors=True)

    if build is not None:
        build.pipeline_state = PipelineState.DONE.value
        build.output_dir = str(output_dir)
        build.binary_sha256 = execution.binary.sha256
        build.cache_warning = execution.cache_warning
        build.mark_succeeded()
        session.flush()  # type: ignore[union-attr]
        logger.info(
            "Build %d succeeded (%s)",
            build.id,
            "cache hit" if execution.cache_hit else "cache miss",
        )

    return PipelineResult(
        recipe=recipe,
        output=output,
        execution=execution,
        states=list(run.history),
        build_id=build.id if build is not None else None,
    )


def get_build(session: Session, build_id: int) -> BuildRecord:
    """Get a build record by ID.

    Args:
        session: Database session.
        build_id: Build ID.

    Returns:
        BuildRecord instance.

    Raises:
        BuildNotFoundError: If build not found.
    """
    build = session.get(BuildRecord, build_id)
    if build is None:
        raise BuildNotFoundError(build_id)
    return build


def get_build_or_none(session: Session, build_id: int) -> BuildRecord | None:
    """Get a build record by ID, or None if not found."""
    return session.get(BuildRecord, build_id)


def list_builds(
    session: Session,
    project_name: str | None = None,
    status: BuildStatus | None = None,
    limit: int = 100,
) -> list[BuildRecord]:
    """List build records with optional filters.

    Args:
        session: Database session.
        project_name: Filter by project name.
        status: Filter by status.
        limit: Maximum results to return.

    Returns:
        List of BuildRecord instances, newest first.
    """
    stmt = select(BuildRecord)

    if project_name is not None:
        stmt = stmt.where(BuildRecord.project_name == project_name)
    if status is not None:
        stmt = stmt.where(BuildRecord.status == status.value)

    stmt = stmt.order_by(BuildRecord.id.desc()).limit(limit)

    return list(session.execute(stmt).scalars().all())


__all__ = [
    "ALLOWED_TRANSITIONS",
    "BuildNotFoundError",
    "InvalidTransitionError",
    "PipelineResult",
    "PipelineRun",
    "build_or_reuse",
    "get_build",
    "get_build_or_none",
    "list_builds",
    "runtime_requirements",
]
