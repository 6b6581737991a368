"""Packaging of build outputs.

This module assembles the final binary and its declared runtime
requirements (for example trust roots) into a minimal output closure:
- Only the binary and declared requirements are copied
- The output closure is verified to contain nothing else
- Requirements located inside build-only directories are rejected
- A manifest describing the closure is written next to it

No compilation happens here.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any

from depcache.builds.artifacts import (
    describe_file,
    generate_manifest,
    write_manifest,
)
from depcache.errors import DepcacheError
from depcache.recipes.schema import DEFAULT_INSTALL_DIR
from depcache.types import Binary, FileInfo

logger = logging.getLogger(__name__)

ROOTFS_DIRNAME = "rootfs"
MANIFEST_FILENAME = "manifest.json"


class PackagingError(DepcacheError):
    """Raised when a build output cannot be packaged."""

    def __init__(self, message: str, code: str = "packaging_error") -> None:
        super().__init__(message, code)


@dataclass(frozen=True)
class RuntimeRequirement:
    """A file the binary requires at run time.

    Attributes:
        source: Path on the build host.
        destination: Absolute path inside the output closure.
    """

    source: Path
    destination: str


@dataclass
class BuildOutput:
    """Final binary plus its minimal runtime closure.

    Attributes:
        root: Root directory of the closure.
        binary_path: Path of the installed binary on disk.
        entrypoint: Closure path of the binary.
        files: Files of the closure.
        manifest_path: Path to the written manifest.
    """

    root: Path
    binary_path: Path
    entrypoint: str
    files: list[FileInfo] = field(default_factory=list)
    manifest_path: Path | None = None

    def closure(self) -> list[str]:
        """Return the sorted closure paths."""
        return sorted(f.destination for f in self.files)

    @property
    def runtime_files(self) -> list[str]:
        """Return closure paths of runtime requirements."""
        return sorted(f.destination for f in self.files if f.kind == "runtime")


def _closure_path(root: Path, destination: str) -> Path:
    parts = PurePosixPath(destination).parts
    if not destination.startswith("/") or ".." in parts:
        raise PackagingError(
            f"Closure path must be absolute without '..': {destination}",
            code="invalid_destination",
        )
    return root.joinpath(*parts[1:])


def _is_within(path: Path, roots: Iterable[Path]) -> bool:
    resolved = path.resolve()
    return any(resolved.is_relative_to(root.resolve()) for root in roots)


def scan_closure(root: Path) -> list[str]:
    """List every file under a closure root as closure paths."""
    return sorted(
        "/" + path.relative_to(root).as_posix()
        for path in root.rglob("*")
        if path.is_file() or path.is_symlink()
    )


def package(
    binary: Binary,
    runtime_requirements: Iterable[RuntimeRequirement],
    output_dir: Path,
    install_dir: str = DEFAULT_INSTALL_DIR,
    forbidden_roots: Iterable[Path] = (),
    manifest_metadata: dict[str, Any] | None = None,
) -> BuildOutput:
    """Package a binary and its runtime requirements.

    The output directory is recreated empty. The closure lives in
    ``output_dir/rootfs`` and the manifest in ``output_dir/manifest.json``.

    Args:
        binary: Compiled binary.
        runtime_requirements: Files required at run time.
        output_dir: Output directory.
        install_dir: Closure directory the binary is installed into.
        forbidden_roots: Build-only directories no packaged file may come from.
        manifest_metadata: Extra manifest fields (recipe digest, toolchain
            version, target platform, project, cache hit).

    Returns:
        BuildOutput describing the closure.

    Raises:
        PackagingError: If inputs are invalid or the closure is not minimal.
    """
    if not isinstance(binary, Binary):
        raise PackagingError(
            f"Packager accepts compiled binaries only, got {type(binary).__name__}",
            code="not_a_binary",
        )
    if not binary.path.is_file():
        raise PackagingError(f"Binary not found: {binary.path}", code="missing_binary")
    if _is_within(binary.path, [output_dir]):
        raise PackagingError(
            f"Binary must not live inside the output directory: {binary.path}",
            code="invalid_output_dir",
        )

    requirements = list(runtime_requirements)
    forbidden = list(forbidden_roots)
    for requirement in requirements:
        if not requirement.source.is_file():
            raise PackagingError(
                f"Runtime requirement is not a file: {requirement.source}",
                code="invalid_requirement",
            )
        if forbidden and _is_within(requirement.source, forbidden):
            raise PackagingError(
                f"Runtime requirement comes from build-only state: {requirement.source}",
                code="build_state_in_closure",
            )

    root = output_dir / ROOTFS_DIRNAME
    if output_dir.exists():
        shutil.rmtree(output_dir)
    root.mkdir(parents=True)

    entrypoint = f"{install_dir.rstrip('/')}/{binary.name}"
    installed = _closure_path(root, entrypoint)
    installed.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(binary.path, installed)
    files = [describe_file(installed, entrypoint, kind="binary")]

    for requirement in requirements:
        dest = _closure_path(root, requirement.destination)
        if dest.exists():
            raise PackagingError(
                f"Duplicate closure path: {requirement.destination}",
                code="duplicate_destination",
            )
        dest.parent.mkdir(parents=True, exist_ok=True)
        # Follow symlinks so the closure holds the trust roots themselves
        shutil.copy2(requirement.source.resolve(), dest)
        files.append(describe_file(dest, requirement.destination))

    expected = sorted(f.destination for f in files)
    actual = scan_closure(root)
    if actual != expected:
        extra = sorted(set(actual) - set(expected))
        raise PackagingError(
            f"Output closure is not minimal; unexpected files: {extra}",
            code="closure_not_minimal",
        )

    manifest = generate_manifest(
        files=files,
        entrypoint=entrypoint,
        **(manifest_metadata or {}),
    )
    manifest_path = write_manifest(manifest, output_dir / MANIFEST_FILENAME)

    logger.info(
        "Packaged %s with %d runtime file(s) into %s",
        binary.name,
        len(requirements),
        output_dir,
    )
    return BuildOutput(
        root=root,
        binary_path=installed,
        entrypoint=entrypoint,
        files=files,
        manifest_path=manifest_path,
    )


__all__ = [
    "MANIFEST_FILENAME",
    "ROOTFS_DIRNAME",
    "BuildOutput",
    "PackagingError",
    "RuntimeRequirement",
    "package",
    "scan_closure",
]
