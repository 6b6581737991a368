"""Tests for cache/store.py module.

Tests lookup, store, invalidation and toolchain identity handling of the
dependency cache, using the in-memory and filesystem backends.
"""

import hashlib
import json

import pytest

from depcache.cache.backends import FilesystemBackend, MemoryBackend
from depcache.cache.bundle import CompiledDependencyBundle
from depcache.cache.store import (
    TOOLCHAIN_MARKER_KEY,
    CacheEntry,
    DependencyCache,
    bundle_key,
    entry_key,
)
from depcache.recipes.fingerprint import Declaration, compute_recipe

DECLARATIONS = [Declaration("libA", "1.2"), Declaration("libB", "3.0")]


@pytest.fixture
def recipe_v7():
    """Recipe for libA@1.2, libB@3.0 on linux-x64 with toolchain v7."""
    return compute_recipe(DECLARATIONS, "linux-x64", "v7")


@pytest.fixture
def recipe_v8():
    """The same declarations with toolchain v8."""
    return compute_recipe(DECLARATIONS, "linux-x64", "v8")


@pytest.fixture
def backend():
    """Create an in-memory backend."""
    return MemoryBackend()


@pytest.fixture
def cache(backend):
    """Create a cache handle for toolchain v7."""
    with DependencyCache(backend, "v7") as handle:
        yield handle


def make_bundle(root, recipe):
    """Create a compiled bundle directory for a recipe."""
    (root / "deps").mkdir(parents=True)
    (root / "deps" / "liba.rlib").write_bytes(b"liba")
    (root / "deps" / "libb.rlib").write_bytes(b"libb")
    return CompiledDependencyBundle(root=root, recipe_digest=recipe.digest)


class TestKeys:
    """Tests for key helpers."""

    def test_keys_use_hex_digest(self, recipe_v7):
        """Keys should drop the algorithm prefix."""
        hex_part = recipe_v7.digest.removeprefix("sha256:")
        assert entry_key(recipe_v7.digest) == f"entries/{hex_part}.json"
        assert bundle_key(recipe_v7.digest) == f"bundles/{hex_part}.tar.gz"


class TestLookupAndStore:
    """Tests for lookup() and store()."""

    def test_lookup_empty_cache(self, cache, recipe_v7):
        """An empty cache should miss."""
        assert cache.lookup(recipe_v7) is None

    def test_store_then_lookup(self, cache, recipe_v7, tmp_path):
        """A stored bundle should be found with the same content."""
        bundle = make_bundle(tmp_path / "bundle", recipe_v7)
        assert cache.store(recipe_v7, bundle) is True

        found = cache.lookup(recipe_v7, dest_dir=tmp_path / "restored")

        assert found is not None
        assert found.recipe_digest == recipe_v7.digest
        assert (found.root / "deps" / "liba.rlib").read_bytes() == b"liba"
        assert cache.contains(recipe_v7)

    def test_entry_stamped_with_toolchain(self, cache, backend, recipe_v7, tmp_path):
        """Stored metadata should record the toolchain version."""
        cache.store(recipe_v7, make_bundle(tmp_path / "b", recipe_v7))
        entry = CacheEntry.from_json(backend.get(entry_key(recipe_v7.digest)))
        assert entry.toolchain_version == "v7"
        assert entry.target_platform == "linux-x64"

    def test_store_is_idempotent(self, cache, backend, recipe_v7, tmp_path):
        """Storing twice should keep the first entry."""
        cache.store(recipe_v7, make_bundle(tmp_path / "a", recipe_v7))
        first = backend.get(entry_key(recipe_v7.digest))

        assert cache.store(recipe_v7, make_bundle(tmp_path / "b", recipe_v7)) is True
        assert backend.get(entry_key(recipe_v7.digest)) == first

    def test_store_rejects_foreign_bundle(self, cache, recipe_v7, recipe_v8, tmp_path):
        """A bundle must be stored under its own recipe."""
        bundle = make_bundle(tmp_path / "b", recipe_v8)
        with pytest.raises(ValueError, match="cannot be stored"):
            cache.store(recipe_v7, bundle)

    def test_store_missing_root_fails_softly(self, cache, recipe_v7, tmp_path):
        """An unarchivable bundle should not raise."""
        bundle = CompiledDependencyBundle(tmp_path / "missing", recipe_v7.digest)
        assert cache.store(recipe_v7, bundle) is False
        assert cache.lookup(recipe_v7) is None

    def test_other_toolchain_entry_is_absent(self, backend, recipe_v7, tmp_path):
        """Entries stamped by another toolchain should be treated as absent."""
        with DependencyCache(backend, "v7") as v7_cache:
            v7_cache.store(recipe_v7, make_bundle(tmp_path / "b", recipe_v7))

        with DependencyCache(backend, "v8") as v8_cache:
            assert v8_cache.lookup(recipe_v7) is None
            assert not v8_cache.contains(recipe_v7)

    def test_evicted_payload_is_absent(self, cache, backend, recipe_v7, tmp_path):
        """Metadata without its payload should read as a miss."""
        cache.store(recipe_v7, make_bundle(tmp_path / "b", recipe_v7))
        backend.delete(bundle_key(recipe_v7.digest))
        assert cache.lookup(recipe_v7) is None

    def test_corrupt_payload_is_absent(self, cache, backend, recipe_v7, tmp_path):
        """A payload failing its checksum should read as a miss."""
        cache.store(recipe_v7, make_bundle(tmp_path / "b", recipe_v7))
        backend.put(bundle_key(recipe_v7.digest), b"tampered")
        assert cache.lookup(recipe_v7) is None

    def test_store_replaces_corrupt_payload(self, cache, backend, recipe_v7, tmp_path):
        """A payload failing its checksum should be rewritten by the next store."""
        cache.store(recipe_v7, make_bundle(tmp_path / "a", recipe_v7))
        backend.put(bundle_key(recipe_v7.digest), b"tampered")
        assert cache.lookup(recipe_v7) is None
        assert not cache.contains(recipe_v7)

        assert cache.store(recipe_v7, make_bundle(tmp_path / "b", recipe_v7)) is True

        assert cache.contains(recipe_v7)
        found = cache.lookup(recipe_v7, dest_dir=tmp_path / "restored")
        assert found is not None
        assert (found.root / "deps" / "liba.rlib").read_bytes() == b"liba"

    def test_unextractable_payload_removes_temp_dir(
        self, cache, backend, recipe_v7, tmp_path, monkeypatch
    ):
        """A failed extraction should not leave its temporary directory behind."""
        payload = b"not a tarball"
        entry = CacheEntry(
            recipe_digest=recipe_v7.digest,
            toolchain_version="v7",
            created_at="2024-01-01T00:00:00+00:00",
            size_bytes=len(payload),
            sha256=hashlib.sha256(payload).hexdigest(),
        )
        backend.put(bundle_key(recipe_v7.digest), payload)
        backend.put(entry_key(recipe_v7.digest), entry.to_json())

        scratch = tmp_path / "scratch"

        def fake_mkdtemp(prefix=None):
            scratch.mkdir()
            return str(scratch)

        monkeypatch.setattr("depcache.cache.store.tempfile.mkdtemp", fake_mkdtemp)

        assert cache.lookup(recipe_v7) is None
        assert not scratch.exists()

    def test_unwritable_destination_is_a_miss(self, cache, recipe_v7, tmp_path):
        """A destination that cannot be created should force a miss."""
        cache.store(recipe_v7, make_bundle(tmp_path / "b", recipe_v7))
        blocker = tmp_path / "blocker"
        blocker.write_bytes(b"")

        assert cache.lookup(recipe_v7, dest_dir=blocker / "restored") is None

    def test_corrupt_metadata_is_absent(self, cache, backend, recipe_v7):
        """Malformed metadata should read as a miss."""
        backend.put(entry_key(recipe_v7.digest), b"{not json")
        assert cache.lookup(recipe_v7) is None

    def test_unavailable_backend_is_a_miss(self, cache, backend, recipe_v7, tmp_path):
        """An unreachable store should force a miss, not an error."""
        cache.store(recipe_v7, make_bundle(tmp_path / "b", recipe_v7))
        backend.available = False
        assert cache.lookup(recipe_v7) is None

    def test_unavailable_backend_store_fails_softly(self, cache, backend, recipe_v7, tmp_path):
        """A store against an unreachable backend should return False."""
        backend.available = False
        assert cache.store(recipe_v7, make_bundle(tmp_path / "b", recipe_v7)) is False


class TestInvalidation:
    """Tests for invalidate_all() and ensure_toolchain()."""

    def test_invalidate_all(self, cache, recipe_v7, tmp_path):
        """Invalidation should evict every entry."""
        cache.store(recipe_v7, make_bundle(tmp_path / "b", recipe_v7))
        assert cache.invalidate_all() is True
        assert cache.lookup(recipe_v7) is None
        assert cache.entries() == []

    def test_invalidate_unavailable(self, cache, backend):
        """Invalidation against an unreachable store should report failure."""
        backend.available = False
        assert cache.invalidate_all() is False

    def test_ensure_toolchain_first_use(self, cache, backend):
        """The first call should record the marker without invalidating."""
        assert cache.ensure_toolchain() is False
        marker = json.loads(backend.get(TOOLCHAIN_MARKER_KEY))
        assert marker == {"toolchain_version": "v7"}
        assert cache.recorded_toolchain() == "v7"

    def test_ensure_toolchain_same_version(self, cache, recipe_v7, tmp_path):
        """An unchanged toolchain should keep entries."""
        cache.ensure_toolchain()
        cache.store(recipe_v7, make_bundle(tmp_path / "b", recipe_v7))
        assert cache.ensure_toolchain() is False
        assert cache.contains(recipe_v7)

    def test_ensure_toolchain_change_invalidates(self, backend, recipe_v7, tmp_path):
        """A changed toolchain should evict every entry and record itself."""
        with DependencyCache(backend, "v7") as v7_cache:
            v7_cache.ensure_toolchain()
            v7_cache.store(recipe_v7, make_bundle(tmp_path / "b", recipe_v7))

        with DependencyCache(backend, "v8") as v8_cache:
            assert v8_cache.ensure_toolchain() is True
            assert v8_cache.entries() == []
            assert v8_cache.recorded_toolchain() == "v8"

    def test_ensure_toolchain_unavailable(self, cache, backend):
        """An unreachable store should not fail the identity check."""
        backend.available = False
        assert cache.ensure_toolchain() is False


class TestLifecycle:
    """Tests for the handle lifetime and summary info."""

    def test_closed_handle_rejects_use(self, backend, recipe_v7):
        """Using a closed handle should raise."""
        cache = DependencyCache(backend, "v7")
        cache.close()
        assert cache.closed
        with pytest.raises(RuntimeError, match="closed"):
            cache.lookup(recipe_v7)

    def test_info(self, tmp_path, recipe_v7):
        """info() should summarize entries of a filesystem cache."""
        with DependencyCache(FilesystemBackend(tmp_path / "store"), "v7") as cache:
            cache.ensure_toolchain()
            cache.store(recipe_v7, make_bundle(tmp_path / "b", recipe_v7))
            info = cache.info()

        assert info["backend"] == "FilesystemBackend"
        assert info["entries"] == 1
        assert info["live_entries"] == 1
        assert info["recorded_toolchain"] == "v7"
        assert info["cache_dir"] == str(tmp_path / "store")
        assert info["bundle_bytes"] > 0
