"""Toolchain collaborator module.

This module handles:
- The Toolchain interface consumed by the build executor
- Running toolchain commands with logged output
- A command-template driven toolchain implementation
"""

from depcache.toolchain.base import Toolchain
from depcache.toolchain.runner import ToolchainFailure

__all__ = ["Toolchain", "ToolchainFailure"]
