"""Base error type for depcache.

Every error raised by depcache carries a machine-readable ``code`` so
callers (CLI, build records) can report failures in a structured way.
"""


class DepcacheError(Exception):
    """Base error for depcache operations."""

    def __init__(self, message: str, code: str = "depcache_error") -> None:
        super().__init__(message)
        self.code = code


__all__ = ["DepcacheError"]
