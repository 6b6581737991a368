"""Dependency cache module.

This module handles:
- Backing stores (filesystem, HTTP, in-memory)
- Normalized bundle archives
- Recipe-keyed lookup, store and invalidation
- Per-recipe leases for concurrent builds
"""

from depcache.cache.backends import CacheUnavailableError
from depcache.cache.bundle import CompiledDependencyBundle
from depcache.cache.store import CacheEntry, DependencyCache

__all__ = [
    "CacheEntry",
    "CacheUnavailableError",
    "CompiledDependencyBundle",
    "DependencyCache",
]
