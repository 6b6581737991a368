"""Recipe computation for dependency fingerprints.

This module handles:
- Validation that every declaration carries an exact, resolved version
- Canonical, order-independent serialization of a declaration set
- Deterministic hash computation producing the recipe digest
- Reading and writing the recipe document handed to the toolchain

A recipe never includes the project's own source, so it stays valid
across unrelated source changes. The digest is the cache key.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from depcache.errors import DepcacheError

logger = logging.getLogger(__name__)

# Schema version for recipe format; bump when the canonical form changes
RECIPE_SCHEMA_VERSION = "1"

# Exact versions: numeric release segments with optional pre-release/build
# identifiers (1.2, 1.2.3, 1.0.0-rc.1, 2.0.0+musl). A single leading '='
# is accepted as an explicit pin.
EXACT_VERSION_PATTERN = re.compile(
    r"^=?\d+(\.\d+)*(-[0-9A-Za-z.\-]+)?(\+[0-9A-Za-z.\-]+)?$"
)


class UnresolvedDependencyError(DepcacheError):
    """Raised when declarations are not fully resolved to exact versions."""

    def __init__(
        self,
        unresolved: list[tuple[str, str]],
        code: str = "unresolved_dependency",
    ) -> None:
        listing = ", ".join(f"{name}@{version!r}" for name, version in unresolved)
        super().__init__(
            f"Dependencies are not resolved to exact versions: {listing}", code
        )
        self.unresolved = unresolved


@dataclass(frozen=True, order=True)
class Declaration:
    """A single resolved dependency declaration.

    Field order defines the canonical sort order: name, then version,
    then source and checksum.

    Attributes:
        name: Dependency name.
        version: Exact resolved version.
        source: Optional registry or repository identifier.
        checksum: Optional content checksum from lock data.
    """

    name: str
    version: str
    source: str = ""
    checksum: str = ""

    def to_list(self) -> list[str]:
        """Convert to a list for canonical JSON serialization."""
        return [self.name, self.version, self.source, self.checksum]

    def __str__(self) -> str:
        return f"{self.name}@{self.version}"


DeclarationSet = frozenset[Declaration]


def is_exact_version(version: str) -> bool:
    """Check whether a version string names exactly one version.

    Args:
        version: Version string to check.

    Returns:
        True if the version is exact.
    """
    return bool(EXACT_VERSION_PATTERN.match(version.strip()))


def normalize_version(version: str) -> str:
    """Normalize an exact version, dropping an explicit '=' pin."""
    return version.strip().removeprefix("=")


@dataclass(frozen=True)
class Recipe:
    """Canonical dependency fingerprint.

    Attributes:
        digest: SHA-256 digest of the canonical JSON (``sha256:<hex>``).
        target_platform: Target platform identifier.
        toolchain_version: Toolchain version the recipe was computed for.
        build_profile: Build profile (e.g. release).
        declarations: Declarations in canonical order.
        extra_inputs: Additional inputs affecting dependency compilation.
    """

    digest: str
    target_platform: str
    toolchain_version: str
    build_profile: str
    declarations: tuple[Declaration, ...]
    extra_inputs: tuple[tuple[str, str], ...] = field(default_factory=tuple)

    @property
    def short_digest(self) -> str:
        """Return an abbreviated digest for log messages."""
        return self.digest.removeprefix("sha256:")[:16]

    def canonical_payload(self) -> dict[str, Any]:
        """Return the payload whose canonical JSON is hashed."""
        return {
            "schema_version": RECIPE_SCHEMA_VERSION,
            "target_platform": self.target_platform,
            "toolchain_version": self.toolchain_version,
            "build_profile": self.build_profile,
            "dependencies": [d.to_list() for d in self.declarations],
            "extra_inputs": [list(item) for item in self.extra_inputs],
        }

    def canonical_json(self) -> str:
        """Serialize the recipe to canonical JSON."""
        return canonical_json(self.canonical_payload())

    def to_document(self) -> dict[str, Any]:
        """Return the recipe document written to ``recipe.json``."""
        document = self.canonical_payload()
        document["digest"] = self.digest
        return document


def canonical_json(payload: Mapping[str, Any]) -> str:
    """Serialize a payload to canonical JSON (sorted keys, compact)."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


def find_unresolved(declarations: Iterable[Declaration]) -> list[tuple[str, str]]:
    """Find declarations whose version is not exact.

    Args:
        declarations: Declarations to check.

    Returns:
        Sorted list of (name, version) pairs that are not resolved.
    """
    return sorted(
        (d.name, d.version)
        for d in declarations
        if not d.name.strip() or not is_exact_version(d.version)
    )


def canonicalize_declarations(
    declarations: Iterable[Declaration],
) -> tuple[Declaration, ...]:
    """Normalize declarations into canonical order.

    Exact duplicates collapse into one entry.

    Args:
        declarations: Resolved declarations in any order.

    Returns:
        Sorted tuple of normalized declarations.
    """
    normalized = {
        Declaration(
            name=d.name.strip(),
            version=normalize_version(d.version),
            source=d.source.strip(),
            checksum=d.checksum.strip().lower(),
        )
        for d in declarations
    }
    return tuple(sorted(normalized))


def compute_recipe(
    declarations: Iterable[Declaration],
    target_platform: str,
    toolchain_version: str,
    build_profile: str = "release",
    extra_inputs: Mapping[str, str] | None = None,
) -> Recipe:
    """Compute the recipe for a resolved declaration set.

    This is a pure function of its inputs; it never reads project source.

    Args:
        declarations: Fully resolved declarations, in any order.
        target_platform: Target platform identifier.
        toolchain_version: Toolchain version identifier.
        build_profile: Build profile affecting dependency compilation.
        extra_inputs: Additional inputs that affect dependency compilation.

    Returns:
        Recipe with canonical declarations and digest.

    Raises:
        UnresolvedDependencyError: If any declaration is not exact.
        ValueError: If target platform or toolchain version is empty.
    """
    declarations = list(declarations)
    unresolved = find_unresolved(declarations)
    if unresolved:
        raise UnresolvedDependencyError(unresolved)
    if not target_platform.strip():
        raise ValueError("target_platform must not be empty")
    if not toolchain_version.strip():
        raise ValueError("toolchain_version must not be empty")

    recipe = Recipe(
        digest="",
        target_platform=target_platform.strip(),
        toolchain_version=toolchain_version.strip(),
        build_profile=build_profile.strip(),
        declarations=canonicalize_declarations(declarations),
        extra_inputs=tuple(sorted((extra_inputs or {}).items())),
    )
    digest = hashlib.sha256(recipe.canonical_json().encode("utf-8")).hexdigest()

    result = replace(recipe, digest=f"sha256:{digest}")
    logger.debug(
        "Computed recipe %s for %d dependencies (%s, %s)",
        result.short_digest,
        len(result.declarations),
        result.target_platform,
        result.toolchain_version,
    )
    return result


def write_recipe(recipe: Recipe, path: Path) -> Path:
    """Write the recipe document to a JSON file.

    Args:
        recipe: Recipe to write.
        path: Output file path.

    Returns:
        Path to the written file.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as f:
        json.dump(recipe.to_document(), f, indent=2, sort_keys=True)
        f.write("\n")
    return path


def load_recipe(path: Path) -> Recipe:
    """Load a recipe document and recompute its digest.

    Args:
        path: Path to a ``recipe.json`` file.

    Returns:
        Recipe rebuilt from the document.

    Raises:
        ValueError: If the stored digest does not match the content.
    """
    with path.open(encoding="utf-8") as f:
        document = json.load(f)

    recipe = compute_recipe(
        declarations=[Declaration(*entry) for entry in document["dependencies"]],
        target_platform=document["target_platform"],
        toolchain_version=document["toolchain_version"],
        build_profile=document["build_profile"],
        extra_inputs=dict(document.get("extra_inputs", [])),
    )
    stored = document.get("digest")
    if stored and stored != recipe.digest:
        raise ValueError(f"Recipe digest mismatch in {path}: {stored} != {recipe.digest}")
    return recipe


__all__ = [
    "EXACT_VERSION_PATTERN",
    "RECIPE_SCHEMA_VERSION",
    "Declaration",
    "DeclarationSet",
    "Recipe",
    "UnresolvedDependencyError",
    "canonical_json",
    "canonicalize_declarations",
    "compute_recipe",
    "find_unresolved",
    "is_exact_version",
    "load_recipe",
    "normalize_version",
    "write_recipe",
]
