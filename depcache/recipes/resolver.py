"""Dependency resolver collaborator.

The resolver turns project metadata into a resolved declaration set.
depcache is not a dependency resolver: the bundled LockfileResolver only
reads lock data already produced by the ecosystem's own resolver and
checks it against the declared dependencies.
"""

from __future__ import annotations

import logging
from typing import Protocol

from depcache.errors import DepcacheError
from depcache.recipes.fingerprint import (
    Declaration,
    DeclarationSet,
    is_exact_version,
    normalize_version,
)
from depcache.recipes.schema import ProjectSchema

logger = logging.getLogger(__name__)


class ResolutionError(DepcacheError):
    """Raised when a project's dependencies cannot be resolved."""

    def __init__(self, message: str, code: str = "resolution_error") -> None:
        super().__init__(message, code)


class Resolver(Protocol):
    """Interface for dependency resolvers."""

    def resolve(self, project: ProjectSchema) -> DeclarationSet:
        """Return the resolved declaration set for a project."""
        ...


class LockfileResolver:
    """Resolve dependencies from lock entries in project metadata.

    Lock entries are the full resolved set, including transitive
    dependencies. Every declared dependency must appear in the lock, and
    an exact declared pin must match the locked version. Projects without
    lock data pass their declared constraints through unchanged.
    """

    def resolve(self, project: ProjectSchema) -> DeclarationSet:
        """Resolve a project's declarations.

        Args:
            project: Validated project metadata.

        Returns:
            Declaration set.

        Raises:
            ResolutionError: If declared dependencies are missing from the
                lock or conflict with it.
        """
        if project.lock is None:
            logger.debug("No lock data for %s, using declared constraints", project.name)
            return frozenset(
                Declaration(name=name, version=constraint)
                for name, constraint in project.dependencies.items()
            )

        locked: dict[str, set[str]] = {}
        for entry in project.lock:
            locked.setdefault(entry.name, set()).add(normalize_version(entry.version))

        missing = sorted(name for name in project.dependencies if name not in locked)
        if missing:
            raise ResolutionError(
                f"Declared dependencies missing from lock: {', '.join(missing)}",
                code="missing_lock_entry",
            )

        for name, constraint in sorted(project.dependencies.items()):
            if is_exact_version(constraint):
                pinned = normalize_version(constraint)
                if pinned not in locked[name]:
                    raise ResolutionError(
                        f"Lock conflict for {name}: declared {constraint}, "
                        f"locked {', '.join(sorted(locked[name]))}",
                        code="lock_conflict",
                    )

        declarations = frozenset(
            Declaration(
                name=entry.name,
                version=entry.version,
                source=entry.source or "",
                checksum=entry.checksum or "",
            )
            for entry in project.lock
        )
        logger.info(
            "Resolved %d dependencies for %s (%d declared)",
            len(declarations),
            project.name,
            len(project.dependencies),
        )
        return declarations


__all__ = ["LockfileResolver", "ResolutionError", "Resolver"]
