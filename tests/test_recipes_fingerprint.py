"""Tests for recipes/fingerprint.py module.

Tests recipe computation, canonical ordering, and deterministic hashing.
"""

import itertools
import json

import pytest

from depcache.recipes.fingerprint import (
    RECIPE_SCHEMA_VERSION,
    Declaration,
    Recipe,
    UnresolvedDependencyError,
    canonical_json,
    canonicalize_declarations,
    compute_recipe,
    find_unresolved,
    is_exact_version,
    load_recipe,
    normalize_version,
    write_recipe,
)


@pytest.fixture
def declarations() -> list[Declaration]:
    """Five resolved declarations."""
    return [
        Declaration("libA", "1.2"),
        Declaration("libB", "3.0"),
        Declaration("serde", "1.0.197", source="registry+crates-io"),
        Declaration("tokio", "1.36.0", checksum="ABCDEF"),
        Declaration("zstd", "0.13.0-rc.1"),
    ]


class TestIsExactVersion:
    """Tests for is_exact_version function."""

    @pytest.mark.parametrize(
        "version", ["1", "1.2", "1.2.3", "=1.2.3", "1.0.0-rc.1", "2.0.0+musl"]
    )
    def test_exact_versions(self, version):
        """Pinned versions should be accepted."""
        assert is_exact_version(version)

    @pytest.mark.parametrize(
        "version", ["", "*", "^1.2", "~1.2", ">=1.0", "1.x", "1.2.*", "latest"]
    )
    def test_ranges_rejected(self, version):
        """Ranges, wildcards and tags should be rejected."""
        assert not is_exact_version(version)

    def test_normalize_drops_pin_marker(self):
        """A leading '=' should be dropped."""
        assert normalize_version("=1.2.3") == "1.2.3"
        assert normalize_version(" 1.2 ") == "1.2"


class TestFindUnresolved:
    """Tests for find_unresolved function."""

    def test_all_resolved(self, declarations):
        """Resolved declarations should produce no findings."""
        assert find_unresolved(declarations) == []

    def test_reports_sorted_offenders(self):
        """Unresolved entries should be reported by name."""
        found = find_unresolved(
            [
                Declaration("zlib", "^1.2"),
                Declaration("libA", "1.2"),
                Declaration("libB", "*"),
            ]
        )
        assert found == [("libB", "*"), ("zlib", "^1.2")]

    def test_empty_name_is_unresolved(self):
        """A declaration without a name cannot be resolved."""
        assert find_unresolved([Declaration(" ", "1.0")]) == [(" ", "1.0")]


class TestCanonicalizeDeclarations:
    """Tests for canonicalize_declarations function."""

    def test_sorted_by_name(self, declarations):
        """Declarations should come out sorted by name."""
        result = canonicalize_declarations(reversed(declarations))
        assert [d.name for d in result] == ["libA", "libB", "serde", "tokio", "zstd"]

    def test_duplicates_collapse(self):
        """Identical declarations should appear once."""
        result = canonicalize_declarations(
            [Declaration("libA", "1.2"), Declaration("libA", "=1.2")]
        )
        assert result == (Declaration("libA", "1.2"),)

    def test_checksum_lowercased(self, declarations):
        """Checksums should be normalized to lowercase."""
        result = canonicalize_declarations(declarations)
        tokio = next(d for d in result if d.name == "tokio")
        assert tokio.checksum == "abcdef"


class TestComputeRecipe:
    """Tests for compute_recipe function."""

    def test_digest_format(self, declarations):
        """Digest should be a sha256-prefixed hex string."""
        recipe = compute_recipe(declarations, "linux-x64", "v7")
        assert recipe.digest.startswith("sha256:")
        assert len(recipe.digest) == len("sha256:") + 64
        assert recipe.short_digest == recipe.digest[7:23]

    def test_order_independent_for_every_permutation(self, declarations):
        """Every ordering of the same set should give the same recipe."""
        expected = compute_recipe(declarations, "linux-x64", "v7")
        for perm in itertools.permutations(declarations):
            assert compute_recipe(perm, "linux-x64", "v7") == expected

    def test_deterministic_across_calls(self, declarations):
        """Repeated computation should give identical digests."""
        first = compute_recipe(declarations, "linux-x64", "v7")
        second = compute_recipe(list(declarations), "linux-x64", "v7")
        assert first.digest == second.digest

    def test_version_change_changes_digest(self, declarations):
        """Changing one version should change the digest."""
        base = compute_recipe(declarations, "linux-x64", "v7")
        changed = list(declarations)
        changed[0] = Declaration("libA", "1.3")
        assert compute_recipe(changed, "linux-x64", "v7").digest != base.digest

    def test_added_declaration_changes_digest(self, declarations):
        """Adding a declaration should change the digest."""
        base = compute_recipe(declarations, "linux-x64", "v7")
        extended = [*declarations, Declaration("libC", "0.1.0")]
        assert compute_recipe(extended, "linux-x64", "v7").digest != base.digest

    def test_toolchain_version_changes_digest(self, declarations):
        """Recipes for different toolchains should differ."""
        v7 = compute_recipe(declarations, "linux-x64", "v7")
        v8 = compute_recipe(declarations, "linux-x64", "v8")
        assert v7.digest != v8.digest

    def test_target_platform_changes_digest(self, declarations):
        """Recipes for different targets should differ."""
        x64 = compute_recipe(declarations, "linux-x64", "v7")
        arm = compute_recipe(declarations, "linux-arm64", "v7")
        assert x64.digest != arm.digest

    def test_build_profile_changes_digest(self, declarations):
        """Release and debug dependency builds should not share a recipe."""
        release = compute_recipe(declarations, "linux-x64", "v7", "release")
        debug = compute_recipe(declarations, "linux-x64", "v7", "debug")
        assert release.digest != debug.digest

    def test_extra_inputs_order_independent(self, declarations):
        """Extra inputs should be canonicalized by key."""
        a = compute_recipe(
            declarations, "linux-x64", "v7", extra_inputs={"a": "1", "b": "2"}
        )
        b = compute_recipe(
            declarations, "linux-x64", "v7", extra_inputs={"b": "2", "a": "1"}
        )
        c = compute_recipe(declarations, "linux-x64", "v7")
        assert a.digest == b.digest
        assert a.digest != c.digest

    def test_empty_declaration_set(self):
        """A project without dependencies still has a recipe."""
        recipe = compute_recipe([], "linux-x64", "v7")
        assert recipe.declarations == ()
        assert recipe.digest.startswith("sha256:")

    def test_unresolved_raises(self, declarations):
        """A range anywhere in the set should be rejected."""
        with pytest.raises(UnresolvedDependencyError) as exc_info:
            compute_recipe([*declarations, Declaration("libC", "^2")], "linux-x64", "v7")
        assert exc_info.value.unresolved == [("libC", "^2")]
        assert exc_info.value.code == "unresolved_dependency"
        assert "libC" in str(exc_info.value)

    def test_empty_target_rejected(self, declarations):
        """An empty target platform should be rejected."""
        with pytest.raises(ValueError, match="target_platform"):
            compute_recipe(declarations, " ", "v7")

    def test_empty_toolchain_rejected(self, declarations):
        """An empty toolchain version should be rejected."""
        with pytest.raises(ValueError, match="toolchain_version"):
            compute_recipe(declarations, "linux-x64", "")

    def test_canonical_json_is_compact_and_sorted(self, declarations):
        """Canonical JSON should have sorted keys and no whitespace."""
        recipe = compute_recipe(declarations, "linux-x64", "v7")
        text = recipe.canonical_json()
        assert " " not in text
        assert text == canonical_json(json.loads(text))
        payload = json.loads(text)
        assert payload["schema_version"] == RECIPE_SCHEMA_VERSION
        assert payload["dependencies"][0] == ["libA", "1.2", "", ""]

    def test_recipe_is_hashable(self, declarations):
        """Recipes should be usable as dict keys."""
        recipe = compute_recipe(declarations, "linux-x64", "v7")
        assert {recipe: 1}[compute_recipe(declarations, "linux-x64", "v7")] == 1


class TestRecipeDocument:
    """Tests for write_recipe and load_recipe."""

    def test_write_then_load(self, declarations, tmp_path):
        """A written recipe should load back to the same recipe."""
        recipe = compute_recipe(
            declarations, "linux-x64", "v7", extra_inputs={"RUSTFLAGS": "-C lto"}
        )
        path = write_recipe(recipe, tmp_path / "nested" / "recipe.json")

        assert path.exists()
        loaded = load_recipe(path)
        assert isinstance(loaded, Recipe)
        assert loaded == recipe

    def test_document_contains_digest(self, declarations, tmp_path):
        """The document should carry its digest."""
        recipe = compute_recipe(declarations, "linux-x64", "v7")
        path = write_recipe(recipe, tmp_path / "recipe.json")
        document = json.loads(path.read_text())
        assert document["digest"] == recipe.digest
        assert document["toolchain_version"] == "v7"

    def test_tampered_document_rejected(self, declarations, tmp_path):
        """A document whose content does not match its digest is rejected."""
        recipe = compute_recipe(declarations, "linux-x64", "v7")
        path = write_recipe(recipe, tmp_path / "recipe.json")
        document = json.loads(path.read_text())
        document["dependencies"][0][1] = "9.9"
        path.write_text(json.dumps(document))

        with pytest.raises(ValueError, match="digest mismatch"):
            load_recipe(path)
