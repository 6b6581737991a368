"""Build orchestration module.

This module handles:
- Build execution against cached or fresh dependency bundles
- Packaging of minimal runtime closures and manifests
- The build pipeline state machine and build records
"""

from depcache.builds.models import BuildRecord

__all__ = ["BuildRecord"]

# Submodules are imported lazily to avoid circular imports
# Access via depcache.builds.service, depcache.builds.packager, etc.
