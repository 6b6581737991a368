"""Cache backing stores.

This module handles:
- The key/value backend interface used by the dependency cache
- A filesystem backend with atomic writes
- An HTTP backend talking to a remote cache server over httpx
- An in-memory backend with the same contract, for tests and dry runs

Backends report unreachability with CacheUnavailableError, distinct
from "not found" (None). Keys are short strings such as
``entries/<hex>.json``.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Protocol

import httpx

from depcache.errors import DepcacheError

logger = logging.getLogger(__name__)

# Default timeout for remote cache requests (seconds)
DEFAULT_TIMEOUT = 10.0


class CacheUnavailableError(DepcacheError):
    """Raised when the cache backing store cannot be reached."""

    def __init__(self, message: str, code: str = "cache_unavailable") -> None:
        super().__init__(message, code)


class CacheBackend(Protocol):
    """Interface for cache backing stores."""

    def get(self, key: str) -> bytes | None:
        """Return the stored value, or None if absent."""
        ...

    def put(self, key: str, data: bytes) -> None:
        """Store a value, replacing any existing one."""
        ...

    def delete(self, key: str) -> None:
        """Remove a value; absent keys are ignored."""
        ...

    def clear(self) -> None:
        """Remove every value."""
        ...

    def keys(self, prefix: str = "") -> list[str]:
        """List stored keys starting with prefix."""
        ...

    def close(self) -> None:
        """Release backend resources."""
        ...


def _validate_key(key: str) -> str:
    parts = key.split("/")
    if not key or key.startswith("/") or ".." in parts or "" in parts:
        raise ValueError(f"Invalid cache key: {key!r}")
    return key


class MemoryBackend:
    """In-process backend, used as a fake in tests.

    Setting ``available`` to False makes every operation raise
    CacheUnavailableError, simulating an unreachable store.
    """

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}
        self._lock = threading.Lock()
        self.available = True

    def _check(self) -> None:
        if not self.available:
            raise CacheUnavailableError("Memory cache marked unavailable")

    def get(self, key: str) -> bytes | None:
        self._check()
        with self._lock:
            return self._data.get(_validate_key(key))

    def put(self, key: str, data: bytes) -> None:
        self._check()
        with self._lock:
            self._data[_validate_key(key)] = bytes(data)

    def delete(self, key: str) -> None:
        self._check()
        with self._lock:
            self._data.pop(_validate_key(key), None)

    def clear(self) -> None:
        self._check()
        with self._lock:
            self._data.clear()

    def keys(self, prefix: str = "") -> list[str]:
        self._check()
        with self._lock:
            return sorted(k for k in self._data if k.startswith(prefix))

    def close(self) -> None:
        pass


class FilesystemBackend:
    """Backend storing each key as a file below a root directory.

    Writes go to a temporary file in the destination directory and are
    renamed into place, so readers never observe partial values.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    def _path(self, key: str) -> Path:
        return self.root / _validate_key(key)

    def get(self, key: str) -> bytes | None:
        path = self._path(key)
        try:
            return path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise CacheUnavailableError(
                f"Cannot read cache file {path}: {e}", code="cache_read_error"
            ) from e

    def put(self, key: str, data: bytes) -> None:
        path = self._path(key)
        tmp_path: Path | None = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                dir=path.parent, prefix=".", suffix=".tmp", delete=False
            ) as tmp_file:
                tmp_path = Path(tmp_file.name)
                tmp_file.write(data)
            os.replace(tmp_path, path)
        except OSError as e:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)
            raise CacheUnavailableError(
                f"Cannot write cache file {path}: {e}", code="cache_write_error"
            ) from e

    def delete(self, key: str) -> None:
        path = self._path(key)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise CacheUnavailableError(
                f"Cannot delete cache file {path}: {e}", code="cache_write_error"
            ) from e

    def clear(self) -> None:
        if not self.root.exists():
            return
        try:
            for child in self.root.iterdir():
                # Lease files live beside the store and are left alone
                if child.name == ".locks":
                    continue
                if child.is_dir():
                    shutil.rmtree(child)
                else:
                    child.unlink()
        except OSError as e:
            raise CacheUnavailableError(
                f"Cannot clear cache at {self.root}: {e}", code="cache_write_error"
            ) from e

    def keys(self, prefix: str = "") -> list[str]:
        if not self.root.exists():
            return []
        result: list[str] = []
        try:
            for path in self.root.rglob("*"):
                if not path.is_file() or path.name.startswith("."):
                    continue
                key = path.relative_to(self.root).as_posix()
                if key.startswith(".locks/"):
                    continue
                if key.startswith(prefix):
                    result.append(key)
        except OSError as e:
            raise CacheUnavailableError(
                f"Cannot list cache at {self.root}: {e}", code="cache_read_error"
            ) from e
        return sorted(result)

    def size_bytes(self) -> int:
        """Return the total size of stored values."""
        total = 0
        if self.root.exists():
            for path in self.root.rglob("*"):
                if path.is_file():
                    total += path.stat().st_size
        return total

    def close(self) -> None:
        pass


class HttpBackend:
    """Backend talking to a remote cache server.

    The server contract is plain HTTP on ``<base_url>/<key>``: GET returns
    the value or 404, PUT stores it, DELETE removes it. DELETE on the base
    URL clears the store and GET on ``<base_url>/?prefix=`` returns a
    newline-separated key listing. Every request is bounded by ``timeout``.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def _url(self, key: str) -> str:
        return f"{self.base_url}/{_validate_key(key)}"

    def _request(
        self,
        method: str,
        url: str,
        content: bytes | None = None,
        params: dict[str, str] | None = None,
    ) -> httpx.Response:
        try:
            return self._client.request(
                method, url, content=content, params=params, timeout=self.timeout
            )
        except httpx.TimeoutException as e:
            raise CacheUnavailableError(
                f"Timeout talking to cache at {url}", code="cache_timeout"
            ) from e
        except httpx.RequestError as e:
            raise CacheUnavailableError(
                f"Network error talking to cache at {url}: {e}",
                code="cache_network_error",
            ) from e

    @staticmethod
    def _check_status(response: httpx.Response, allow_404: bool = False) -> None:
        if allow_404 and response.status_code == 404:
            return
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise CacheUnavailableError(
                f"Cache server error: {e.response.status_code} "
                f"{e.response.reason_phrase}",
                code="cache_http_error",
            ) from e

    def get(self, key: str) -> bytes | None:
        response = self._request("GET", self._url(key))
        if response.status_code == 404:
            return None
        self._check_status(response)
        return response.content

    def put(self, key: str, data: bytes) -> None:
        response = self._request("PUT", self._url(key), content=data)
        self._check_status(response)

    def delete(self, key: str) -> None:
        response = self._request("DELETE", self._url(key))
        self._check_status(response, allow_404=True)

    def clear(self) -> None:
        response = self._request("DELETE", f"{self.base_url}/")
        self._check_status(response, allow_404=True)

    def keys(self, prefix: str = "") -> list[str]:
        response = self._request("GET", f"{self.base_url}/", params={"prefix": prefix})
        if response.status_code == 404:
            return []
        self._check_status(response)
        return sorted(line for line in response.text.splitlines() if line.strip())

    def close(self) -> None:
        if self._owns_client:
            self._client.close()


def create_backend(
    cache_dir: Path,
    cache_url: str | None = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> CacheBackend:
    """Create the configured backend.

    Args:
        cache_dir: Root directory of the filesystem cache.
        cache_url: Base URL of a remote cache; takes precedence when set.
        timeout: Request timeout for the remote cache.

    Returns:
        Backend instance.
    """
    if cache_url:
        logger.debug("Using HTTP cache backend at %s", cache_url)
        return HttpBackend(cache_url, timeout=timeout)
    logger.debug("Using filesystem cache backend at %s", cache_dir)
    return FilesystemBackend(cache_dir)


__all__ = [
    "DEFAULT_TIMEOUT",
    "CacheBackend",
    "CacheUnavailableError",
    "FilesystemBackend",
    "HttpBackend",
    "MemoryBackend",
    "create_backend",
]
