"""Dependency fingerprinting module.

This module handles:
- Project metadata schema and loading
- Resolving declared dependencies against lock data
- Computing the canonical recipe used as the dependency cache key
"""

from depcache.recipes.fingerprint import (
    Declaration,
    Recipe,
    UnresolvedDependencyError,
    compute_recipe,
)

__all__ = ["Declaration", "Recipe", "UnresolvedDependencyError", "compute_recipe"]
