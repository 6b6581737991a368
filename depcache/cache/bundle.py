"""Compiled dependency bundles and their archive format.

This module handles:
- The CompiledDependencyBundle value handed between cache and executor
- Normalized archiving that strips non-deterministic build metadata
- Safe extraction of archived bundles
- Deterministic tree hashing of bundle directories

Archives are gzip-compressed tarballs with sorted members, zeroed
timestamps and ownership, so equal bundle content archives to equal bytes.
"""

from __future__ import annotations

import fnmatch
import gzip
import hashlib
import io
import logging
import stat
import tarfile
from dataclasses import dataclass
from pathlib import Path

from depcache.errors import DepcacheError

logger = logging.getLogger(__name__)

# Build noise that never belongs in a cached bundle
DEFAULT_STRIP_PATTERNS: tuple[str, ...] = ("*.log", "*.tmp", "*.lock", ".DS_Store")

HASH_CHUNK_SIZE = 64 * 1024  # 64KB


class BundleArchiveError(DepcacheError):
    """Raised when a bundle archive cannot be created or extracted."""

    def __init__(self, message: str, code: str = "bundle_archive_error") -> None:
        super().__init__(message, code)


@dataclass(frozen=True)
class CompiledDependencyBundle:
    """Compiled dependencies for exactly one recipe.

    Attributes:
        root: Directory containing the compiled dependency files.
        recipe_digest: Digest of the recipe the bundle was compiled from.
        tree_hash: Deterministic hash of the bundle content.
    """

    root: Path
    recipe_digest: str
    tree_hash: str = ""


def _is_stripped(rel_path: str, patterns: tuple[str, ...]) -> bool:
    name = rel_path.rsplit("/", 1)[-1]
    return any(
        fnmatch.fnmatch(name, p) or fnmatch.fnmatch(rel_path, p) for p in patterns
    )


def iter_bundle_paths(
    root: Path,
    strip_patterns: tuple[str, ...] = DEFAULT_STRIP_PATTERNS,
) -> list[tuple[str, Path]]:
    """List bundle members in canonical order.

    Args:
        root: Bundle root directory.
        strip_patterns: Glob patterns for files to leave out.

    Returns:
        Sorted list of (relative posix path, absolute path) pairs.
    """
    members: list[tuple[str, Path]] = []
    for path in root.rglob("*"):
        rel_path = path.relative_to(root).as_posix()
        if path.is_file() and not path.is_symlink():
            if _is_stripped(rel_path, strip_patterns):
                continue
        members.append((rel_path, path))
    return sorted(members)


def compute_tree_hash(
    directory: Path,
    strip_patterns: tuple[str, ...] = DEFAULT_STRIP_PATTERNS,
) -> str:
    """Compute a deterministic hash of a bundle directory.

    The hash covers sorted relative paths, file modes (permission bits)
    and file contents. Stripped files do not contribute.

    Args:
        directory: Directory to hash.
        strip_patterns: Glob patterns for files to leave out.

    Returns:
        SHA-256 hex digest of the tree.
    """
    hasher = hashlib.sha256()
    if not directory.exists():
        return hasher.hexdigest()

    for rel_path, path in iter_bundle_paths(directory, strip_patterns):
        if not path.is_file() or path.is_symlink():
            continue
        mode = stat.S_IMODE(path.stat().st_mode)
        # Hash: path\0mode\0content\0
        hasher.update(rel_path.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(f"{mode:o}".encode())
        hasher.update(b"\0")
        with path.open("rb") as f:
            while chunk := f.read(HASH_CHUNK_SIZE):
                hasher.update(chunk)
        hasher.update(b"\0")

    return hasher.hexdigest()


def _normalize_tarinfo(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.mtime = 0
    info.uid = 0
    info.gid = 0
    info.uname = ""
    info.gname = ""
    if info.isdir():
        info.mode = 0o755
    elif info.isfile():
        info.mode = 0o755 if info.mode & 0o111 else 0o644
    return info


def archive_bundle(
    bundle: CompiledDependencyBundle,
    strip_patterns: tuple[str, ...] = DEFAULT_STRIP_PATTERNS,
) -> bytes:
    """Archive a bundle into normalized, reproducible bytes.

    Args:
        bundle: Bundle to archive.
        strip_patterns: Glob patterns for build noise to drop.

    Returns:
        Gzip-compressed tar archive bytes.

    Raises:
        BundleArchiveError: If the bundle root is missing or unreadable.
    """
    if not bundle.root.is_dir():
        raise BundleArchiveError(
            f"Bundle root is not a directory: {bundle.root}",
            code="missing_bundle_root",
        )

    buffer = io.BytesIO()
    try:
        with (
            gzip.GzipFile(fileobj=buffer, mode="wb", mtime=0) as gz,
            tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar,
        ):
            for rel_path, path in iter_bundle_paths(bundle.root, strip_patterns):
                info = _normalize_tarinfo(tar.gettarinfo(str(path), arcname=rel_path))
                if info.isfile():
                    with path.open("rb") as f:
                        tar.addfile(info, f)
                else:
                    tar.addfile(info)
    except OSError as e:
        raise BundleArchiveError(
            f"Failed to archive bundle {bundle.root}: {e}",
            code="archive_error",
        ) from e

    data = buffer.getvalue()
    logger.debug("Archived bundle %s (%d bytes)", bundle.root, len(data))
    return data


def extract_bundle(
    data: bytes,
    dest_dir: Path,
    recipe_digest: str,
) -> CompiledDependencyBundle:
    """Extract an archived bundle.

    Args:
        data: Archive bytes produced by archive_bundle().
        dest_dir: Destination directory (created if needed).
        recipe_digest: Digest of the recipe the archive belongs to.

    Returns:
        CompiledDependencyBundle rooted at dest_dir.

    Raises:
        BundleArchiveError: If the archive is corrupt or unsafe.
    """
    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as tar:
            for member in tar.getmembers():
                member_path = Path(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise BundleArchiveError(
                        f"Refusing to extract {member.name}: path traversal detected",
                        code="path_traversal",
                    )
            tar.extractall(dest_dir, filter="data")
        tree_hash = compute_tree_hash(dest_dir)
    except (tarfile.TarError, EOFError, OSError) as e:
        raise BundleArchiveError(
            f"Failed to extract bundle into {dest_dir}: {e}",
            code="extract_error",
        ) from e

    return CompiledDependencyBundle(
        root=dest_dir,
        recipe_digest=recipe_digest,
        tree_hash=tree_hash,
    )


__all__ = [
    "DEFAULT_STRIP_PATTERNS",
    "BundleArchiveError",
    "CompiledDependencyBundle",
    "archive_bundle",
    "compute_tree_hash",
    "extract_bundle",
    "iter_bundle_paths",
]
