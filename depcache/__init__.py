"""depcache - dependency-cache-aware build orchestrator.

This package fingerprints a project's resolved dependencies, reuses
compiled dependency bundles across builds, compiles the project against
them and packages the binary into a minimal runtime closure.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
