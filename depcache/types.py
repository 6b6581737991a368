"""Shared type definitions for depcache.

This module contains dataclasses, enums and type aliases shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path


class BuildStatus(str, Enum):
    """Status of a recorded build."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PipelineState(str, Enum):
    """State of a single build pipeline invocation."""

    FINGERPRINTING = "fingerprinting"
    CACHE_LOOKUP = "cache_lookup"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    COMPILING = "compiling"
    PACKAGING = "packaging"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class Binary:
    """A compiled project binary."""

    path: Path
    name: str
    size_bytes: int
    sha256: str


@dataclass
class FileInfo:
    """Information about a file in a build output closure."""

    destination: str
    size_bytes: int
    sha256: str
    kind: str = "runtime"
    labels: list[str] = field(default_factory=list)


__all__ = [
    "Binary",
    "BuildStatus",
    "FileInfo",
    "PipelineState",
]
