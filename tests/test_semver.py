import pytest

from arbor import semver


@pytest.mark.parametrize("version,rng,expected", [
    ("1.2.0", "^1.0.0", True),
    ("2.0.0", "^1.0.0", False),
    ("1.0.0-beta", "^1.0.0", False),
    ("0.2.5", "^0.2.1", True),
    ("0.3.0", "^0.2.1", False),
    ("1.2.9", "~1.2.3", True),
    ("1.3.0", "~1.2.3", False),
    ("2.0.0", "1.0.0 - 2.0.0", True),
    ("2.0.1", "1.0.0 - 2.0.0", False),
    ("1.9.9", "1.x", True),
    ("2.0.0", "1.x", False),
    ("3.1.0", ">=1.2.3 <2 || >=3", True),
    ("1.0.0", "*", True),
])
def test_satisfies(version, rng, expected):
    assert semver.satisfies(version, rng) is expected


def test_prerelease_only_matches_same_tuple():
    assert semver.satisfies("1.2.3-beta.2", ">=1.2.3-beta.1 <2")
    assert not semver.satisfies("1.3.0-beta.1", ">=1.2.3-beta.1 <2")
    assert semver.satisfies("1.3.0-beta.1", "^1.0.0", include_prerelease=True)


def test_ordering():
    assert semver.lt("1.0.0-alpha", "1.0.0-alpha.1")
    assert semver.lt("1.0.0-alpha.1", "1.0.0-beta")
    assert semver.lt("1.0.0-beta.2", "1.0.0-beta.11")
    assert semver.lt("1.0.0-rc.1", "1.0.0")
    assert semver.lte("1.0.0", "1.0.0+build") and not semver.lte("1.0.1", "1.0.0")
    assert semver.sort_versions(["1.10.0", "1.2.0", "1.2.0-beta", "bogus"]) == ["1.2.0-beta", "1.2.0", "1.10.0"]


def test_max_satisfying():
    assert semver.max_satisfying(["1.0.0", "1.2.0", "2.0.0"], "^1.0.0") == "1.2.0"
    assert semver.max_satisfying(["1.0.0"], "^2") is None


def test_valid_range():
    assert semver.valid_range(">=1.2.3 <2")
    assert semver.valid_range("^1 || ~2.3")
    assert not semver.valid_range("latest")
    assert not semver.valid_range(None)


def test_intersects():
    assert semver.intersects("^1.0.0", "1.5.x")
    assert not semver.intersects("^1.0.0", "^2.0.0")
    assert semver.intersects("<=1.0.0", ">=1.0.0")


def test_simplify_range():
    all_versions = ["1.0.0", "1.1.0", "1.2.0", "2.0.0"]
    assert semver.simplify_range(["1.0.0", "1.1.0"], all_versions) == "<=1.1.0"
    assert semver.simplify_range(all_versions, all_versions) == "*"
    assert semver.simplify_range(["2.0.0"], all_versions) == "2.0.0"
    assert semver.simplify_range(["1.1.0", "1.2.0"], all_versions) == "1.1.0 - 1.2.0"


def test_loose_input():
    assert semver.valid("v1.2.3") == "1.2.3"
    assert semver.valid("=1.2.3+build.5") == "1.2.3"
    assert semver.valid("1.2") is None
    assert semver.satisfies("1.2.5", ">= 1.2.3  < 2")
    assert semver.satisfies("1.2.5", "~>1.2")
    assert semver.satisfies("1.2.5", "")
    assert semver.satisfies("1.2.5", ">=v1.0.0")


def test_satisfies_outside():
    assert not semver.satisfies_outside("^1.0.0", ["*"])
    assert semver.satisfies_outside("^1.0.0", ["<1.0.1"])
    assert not semver.satisfies_outside("^1.0.0", ["<2.0.0"])
    assert semver.satisfies_outside("^1.0.0", [">=1.0.0 <1.2.0", ">=1.3.0"])
    assert not semver.satisfies_outside("1.0.0", ["1.0.0"])
    assert semver.satisfies_outside("*", [])
