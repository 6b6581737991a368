"""Dependency cache.

This module provides the DependencyCache handle:
- lookup(): find a live, toolchain-matching bundle for a recipe
- store(): persist a bundle idempotently
- invalidate_all(): cache-wide eviction
- ensure_toolchain(): invalidate when the toolchain identity changes

Cache faults are never fatal. Lookup faults degrade to a miss and store
faults are logged as warnings, so a build always completes correctly
(if more slowly) with an unavailable cache. The handle is injected into
the pipeline with an explicit open/close lifetime.
"""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import tempfile
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from depcache.cache.backends import CacheBackend, CacheUnavailableError, FilesystemBackend
from depcache.cache.bundle import (
    DEFAULT_STRIP_PATTERNS,
    BundleArchiveError,
    CompiledDependencyBundle,
    archive_bundle,
    extract_bundle,
)
from depcache.recipes.fingerprint import Recipe

logger = logging.getLogger(__name__)

# Schema version for stored entry metadata
ENTRY_SCHEMA_VERSION = "1"

ENTRY_PREFIX = "entries/"
BUNDLE_PREFIX = "bundles/"
TOOLCHAIN_MARKER_KEY = "toolchain.json"


@dataclass(frozen=True)
class CacheEntry:
    """Metadata of a stored bundle.

    Attributes:
        recipe_digest: Digest of the recipe the bundle was compiled from.
        toolchain_version: Toolchain version that compiled the bundle.
        created_at: ISO timestamp of entry creation.
        size_bytes: Size of the archived bundle.
        sha256: SHA-256 of the archived bundle.
        target_platform: Target platform of the recipe.
    """

    recipe_digest: str
    toolchain_version: str
    created_at: str
    size_bytes: int
    sha256: str
    target_platform: str = ""

    def to_json(self) -> bytes:
        """Serialize entry metadata."""
        data: dict[str, Any] = asdict(self)
        data["schema_version"] = ENTRY_SCHEMA_VERSION
        return json.dumps(data, sort_keys=True, indent=2).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes) -> CacheEntry:
        """Parse entry metadata.

        Raises:
            ValueError: If the metadata is malformed.
        """
        try:
            data = json.loads(raw.decode("utf-8"))
            return cls(
                recipe_digest=str(data["recipe_digest"]),
                toolchain_version=str(data["toolchain_version"]),
                created_at=str(data["created_at"]),
                size_bytes=int(data["size_bytes"]),
                sha256=str(data["sha256"]),
                target_platform=str(data.get("target_platform", "")),
            )
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError) as e:
            raise ValueError(f"Malformed cache entry: {e}") from e


def digest_hex(recipe_digest: str) -> str:
    """Return the hex part of a ``sha256:<hex>`` digest."""
    return recipe_digest.split(":", 1)[-1]


def entry_key(recipe_digest: str) -> str:
    """Return the backend key of an entry's metadata."""
    return f"{ENTRY_PREFIX}{digest_hex(recipe_digest)}.json"


def bundle_key(recipe_digest: str) -> str:
    """Return the backend key of an entry's archived bundle."""
    return f"{BUNDLE_PREFIX}{digest_hex(recipe_digest)}.tar.gz"


class DependencyCache:
    """Keyed store mapping recipes to compiled dependency bundles.

    Args:
        backend: Backing store.
        toolchain_version: Toolchain version of the current build; entries
            stamped with any other version are treated as absent.
        strip_patterns: Build noise left out of stored archives.
    """

    def __init__(
        self,
        backend: CacheBackend,
        toolchain_version: str,
        strip_patterns: tuple[str, ...] = DEFAULT_STRIP_PATTERNS,
    ) -> None:
        self.backend = backend
        self.toolchain_version = toolchain_version
        self.strip_patterns = strip_patterns
        self._closed = False

    def __enter__(self) -> DependencyCache:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the handle and release backend resources."""
        if not self._closed:
            self.backend.close()
            self._closed = True

    @property
    def closed(self) -> bool:
        """Whether the handle has been closed."""
        return self._closed

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("DependencyCache is closed")

    def _read_entry(self, recipe_digest: str) -> CacheEntry | None:
        """Read entry metadata; raises CacheUnavailableError on faults."""
        raw = self.backend.get(entry_key(recipe_digest))
        if raw is None:
            return None
        try:
            entry = CacheEntry.from_json(raw)
        except ValueError as e:
            logger.warning("Ignoring corrupt cache entry %s: %s", recipe_digest[:23], e)
            return None
        if entry.recipe_digest != recipe_digest:
            logger.warning(
                "Ignoring cache entry with mismatched digest under %s",
                recipe_digest[:23],
            )
            return None
        return entry

    def lookup(
        self,
        recipe: Recipe,
        dest_dir: Path | None = None,
    ) -> CompiledDependencyBundle | None:
        """Look up the bundle for a recipe.

        Args:
            recipe: Recipe to look up.
            dest_dir: Directory to extract the bundle into (a new temporary
                directory if not given).

        Returns:
            The bundle if a live entry with a matching toolchain version
            exists, None otherwise. Cache faults return None.
        """
        self._ensure_open()
        digest = recipe.digest

        try:
            entry = self._read_entry(digest)
            if entry is None:
                logger.info("Cache miss for recipe %s", recipe.short_digest)
                return None

            if entry.toolchain_version != self.toolchain_version:
                logger.info(
                    "Cache entry for %s was built by toolchain %s (current %s); "
                    "treating as absent",
                    recipe.short_digest,
                    entry.toolchain_version,
                    self.toolchain_version,
                )
                return None

            payload = self.backend.get(bundle_key(digest))
        except CacheUnavailableError as e:
            logger.warning(
                "Cache unavailable during lookup of %s, forcing miss: %s",
                recipe.short_digest,
                e,
            )
            return None

        if payload is None:
            logger.info("Cache entry for %s was evicted", recipe.short_digest)
            return None

        if hashlib.sha256(payload).hexdigest() != entry.sha256:
            logger.warning(
                "Checksum mismatch for cached bundle %s, forcing miss",
                recipe.short_digest,
            )
            return None

        created_dir: Path | None = None
        try:
            if dest_dir is None:
                dest_dir = Path(tempfile.mkdtemp(prefix="depcache_bundle_"))
                created_dir = dest_dir
            bundle = extract_bundle(payload, dest_dir, digest)
        except (BundleArchiveError, OSError) as e:
            if created_dir is not None:
                shutil.rmtree(created_dir, ignore_errors=True)
            logger.warning(
                "Cannot extract cached bundle %s, forcing miss: %s",
                recipe.short_digest,
                e,
            )
            return None

        logger.info(
            "Cache hit for recipe %s (%d bytes, created %s)",
            recipe.short_digest,
            entry.size_bytes,
            entry.created_at,
        )
        return bundle

    def contains(self, recipe: Recipe) -> bool:
        """Check for a live, toolchain-matching entry with an intact payload.

        A payload whose checksum does not match the entry metadata counts as
        absent, so a later store() replaces it.

        Raises:
            CacheUnavailableError: If the backend cannot be reached.
        """
        self._ensure_open()
        entry = self._read_entry(recipe.digest)
        if entry is None or entry.toolchain_version != self.toolchain_version:
            return False
        payload = self.backend.get(bundle_key(recipe.digest))
        if payload is None:
            return False
        return hashlib.sha256(payload).hexdigest() == entry.sha256

    def store(self, recipe: Recipe, bundle: CompiledDependencyBundle) -> bool:
        """Persist a bundle for a recipe.

        Storing over an existing live entry is a no-op. The payload is
        written before the entry metadata, so readers never find metadata
        without its payload.

        Args:
            recipe: Recipe the bundle was compiled from.
            bundle: Compiled dependency bundle.

        Returns:
            True if the entry is present after the call, False if the
            store failed (logged as a warning).

        Raises:
            ValueError: If the bundle belongs to another recipe.
        """
        self._ensure_open()
        if bundle.recipe_digest != recipe.digest:
            raise ValueError(
                f"Bundle for {bundle.recipe_digest} cannot be stored "
                f"under {recipe.digest}"
            )

        try:
            if self.contains(recipe):
                logger.info(
                    "Cache entry for %s already present, skipping store",
                    recipe.short_digest,
                )
                return True

            payload = archive_bundle(bundle, self.strip_patterns)
            entry = CacheEntry(
                recipe_digest=recipe.digest,
                toolchain_version=self.toolchain_version,
                created_at=datetime.now(timezone.utc).isoformat(),
                size_bytes=len(payload),
                sha256=hashlib.sha256(payload).hexdigest(),
                target_platform=recipe.target_platform,
            )
            self.backend.put(bundle_key(recipe.digest), payload)
            self.backend.put(entry_key(recipe.digest), entry.to_json())
        except (CacheUnavailableError, BundleArchiveError) as e:
            logger.warning(
                "Failed to store bundle for %s; future builds will recompile: %s",
                recipe.short_digest,
                e,
            )
            return False

        logger.info(
            "Stored bundle for recipe %s (%d bytes)",
            recipe.short_digest,
            entry.size_bytes,
        )
        return True

    def invalidate_all(self) -> bool:
        """Evict every cache entry.

        Returns:
            True if the store was cleared, False if the backend failed.
        """
        self._ensure_open()
        try:
            self.backend.clear()
        except CacheUnavailableError as e:
            logger.warning("Failed to invalidate cache: %s", e)
            return False
        logger.info("Invalidated all dependency cache entries")
        return True

    def recorded_toolchain(self) -> str | None:
        """Return the toolchain version recorded in the store.

        Raises:
            CacheUnavailableError: If the backend cannot be reached.
        """
        self._ensure_open()
        raw = self.backend.get(TOOLCHAIN_MARKER_KEY)
        if raw is None:
            return None
        try:
            return str(json.loads(raw.decode("utf-8"))["toolchain_version"])
        except (UnicodeDecodeError, json.JSONDecodeError, KeyError, TypeError):
            logger.warning("Ignoring corrupt toolchain marker")
            return None

    def ensure_toolchain(self) -> bool:
        """Invalidate the cache if the toolchain identity changed.

        Must be called before any lookup in a build whose toolchain may
        differ from the one that populated the store.

        Returns:
            True if the cache was invalidated.
        """
        self._ensure_open()
        try:
            recorded = self.recorded_toolchain()
            if recorded == self.toolchain_version:
                return False

            invalidated = False
            if recorded is not None:
                logger.info(
                    "Toolchain changed from %s to %s, invalidating cache",
                    recorded,
                    self.toolchain_version,
                )
                invalidated = self.invalidate_all()

            marker = json.dumps({"toolchain_version": self.toolchain_version})
            self.backend.put(TOOLCHAIN_MARKER_KEY, marker.encode("utf-8"))
            return invalidated
        except CacheUnavailableError as e:
            logger.warning("Cannot check toolchain identity of cache: %s", e)
            return False

    def entries(self) -> list[CacheEntry]:
        """List stored entries.

        Raises:
            CacheUnavailableError: If the backend cannot be reached.
        """
        self._ensure_open()
        result: list[CacheEntry] = []
        for key in self.backend.keys(ENTRY_PREFIX):
            raw = self.backend.get(key)
            if raw is None:
                continue
            try:
                result.append(CacheEntry.from_json(raw))
            except ValueError:
                logger.warning("Skipping corrupt cache entry %s", key)
        return sorted(result, key=lambda e: e.created_at)

    def info(self) -> dict[str, object]:
        """Return summary information about the cache.

        Raises:
            CacheUnavailableError: If the backend cannot be reached.
        """
        entries = self.entries()
        info: dict[str, object] = {
            "backend": type(self.backend).__name__,
            "toolchain_version": self.toolchain_version,
            "recorded_toolchain": self.recorded_toolchain(),
            "entries": len(entries),
            "live_entries": sum(
                1 for e in entries if e.toolchain_version == self.toolchain_version
            ),
            "bundle_bytes": sum(e.size_bytes for e in entries),
        }
        if isinstance(self.backend, FilesystemBackend):
            info["cache_dir"] = str(self.backend.root)
        return info


__all__ = [
    "BUNDLE_PREFIX",
    "ENTRY_PREFIX",
    "ENTRY_SCHEMA_VERSION",
    "TOOLCHAIN_MARKER_KEY",
    "CacheEntry",
    "DependencyCache",
    "bundle_key",
    "digest_hex",
    "entry_key",
]
