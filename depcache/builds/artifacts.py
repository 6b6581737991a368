"""Output file hashing and manifest generation.

This module handles:
- Computing checksums of output files
- Describing the files of a build output closure
- Generating and writing build output manifests
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from depcache.types import FileInfo

logger = logging.getLogger(__name__)

# Default chunk size for hashing
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

MANIFEST_VERSION = "1.0"


def compute_file_hash(
    file_path: Path,
    chunk_size: int = HASH_CHUNK_SIZE,
) -> str:
    """Compute SHA-256 hash of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def describe_file(path: Path, destination: str, kind: str = "runtime") -> FileInfo:
    """Describe a file placed in an output closure.

    Args:
        path: Path of the file on disk.
        destination: Absolute path of the file inside the closure.
        kind: File kind (binary or runtime).

    Returns:
        FileInfo with size and checksum.
    """
    info = FileInfo(
        destination=destination,
        size_bytes=path.stat().st_size,
        sha256=compute_file_hash(path),
        kind=kind,
    )
    if kind == "binary":
        info.labels.append("entrypoint")
    return info


def generate_manifest(
    files: list[FileInfo],
    entrypoint: str,
    recipe_digest: str | None = None,
    toolchain_version: str | None = None,
    target_platform: str | None = None,
    project: str | None = None,
    cache_hit: bool | None = None,
) -> dict[str, Any]:
    """Generate a build output manifest.

    Args:
        files: Files of the output closure.
        entrypoint: Closure path of the binary to run.
        recipe_digest: Optional recipe digest the build used.
        toolchain_version: Optional toolchain version.
        target_platform: Optional target platform.
        project: Optional project name.
        cache_hit: Optional flag recording dependency cache reuse.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    manifest: dict[str, Any] = {
        "version": MANIFEST_VERSION,
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "entrypoint": entrypoint,
        "files": [asdict(f) for f in sorted(files, key=lambda f: f.destination)],
    }

    if project:
        manifest["project"] = project
    if recipe_digest:
        manifest["recipe_digest"] = recipe_digest
    if toolchain_version:
        manifest["toolchain_version"] = toolchain_version
    if target_platform:
        manifest["target_platform"] = target_platform
    if cache_hit is not None:
        manifest["cache_hit"] = cache_hit

    manifest["summary"] = {
        "total_files": len(files),
        "total_size_bytes": sum(f.size_bytes for f in files),
    }
    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = [
    "HASH_CHUNK_SIZE",
    "MANIFEST_VERSION",
    "compute_file_hash",
    "describe_file",
    "generate_manifest",
    "write_manifest",
]
