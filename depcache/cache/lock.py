"""Per-recipe leases.

A lease serializes dependency compilation for one recipe across build
processes on the same host, so concurrent misses on the same recipe
compile once. Leases are an optimization: the idempotent cache store
keeps concurrent compilations correct without them.
"""

from __future__ import annotations

import fcntl
import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

# Interval between non-blocking lock attempts (seconds)
POLL_INTERVAL = 0.1


def lock_file_path(lock_dir: Path, recipe_digest: str) -> Path:
    """Return the lock file path for a recipe digest."""
    safe_key = recipe_digest.replace(":", "_").replace("/", "_")[:80]
    return lock_dir / f"recipe_{safe_key}.lock"


@contextmanager
def recipe_lock(
    lock_dir: Path,
    recipe_digest: str,
    timeout: float | None = None,
) -> Iterator[None]:
    """Acquire the lease for a recipe digest.

    Args:
        lock_dir: Directory for lock files.
        recipe_digest: Recipe digest to lock on.
        timeout: Lock acquisition timeout in seconds (None = blocking).

    Yields:
        None when the lease is held.

    Raises:
        TimeoutError: If the lease cannot be acquired within timeout.
    """
    lock_dir.mkdir(parents=True, exist_ok=True)
    lock_file = lock_file_path(lock_dir, recipe_digest)

    logger.debug("Acquiring recipe lease for %s", recipe_digest[:23])

    fd = os.open(str(lock_file), os.O_RDWR | os.O_CREAT, 0o600)
    lock_acquired = False
    try:
        if timeout is not None:
            start = time.monotonic()
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    lock_acquired = True
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= timeout:
                        raise TimeoutError(
                            f"Timeout waiting for recipe lease on {recipe_digest[:23]}"
                        ) from None
                    time.sleep(POLL_INTERVAL)
        else:
            fcntl.flock(fd, fcntl.LOCK_EX)
            lock_acquired = True

        logger.debug("Recipe lease acquired for %s", recipe_digest[:23])
        yield
    finally:
        if lock_acquired:
            fcntl.flock(fd, fcntl.LOCK_UN)
            logger.debug("Recipe lease released for %s", recipe_digest[:23])
        os.close(fd)


__all__ = ["POLL_INTERVAL", "lock_file_path", "recipe_lock"]
