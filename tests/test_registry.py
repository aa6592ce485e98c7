import json

import pytest
import yaml

from arbor.errors import NotFoundError, UnsatisfiableError
from arbor.registry import DirectoryRegistry, PackumentCache, pick_manifest, tarball_url
from arbor.spec import parse_spec

from conftest import publish

PACKUMENT = {
    "name": "a",
    "dist-tags": {"latest": "1.2.0", "next": "2.0.0-beta.1"},
    "versions": {
        "1.0.0": {"name": "a", "version": "1.0.0"},
        "1.1.0": {"name": "a", "version": "1.1.0"},
        "1.2.0": {"name": "a", "version": "1.2.0", "deprecated": "use 1.1.0"},
        "1.3.0-rc.1": {"name": "a", "version": "1.3.0-rc.1"},
        "2.0.0-beta.1": {"name": "a", "version": "2.0.0-beta.1"},
    },
}


@pytest.mark.parametrize("raw,expected", [
    ("^1.0.0", "1.1.0"),
    ("1.2.0", "1.2.0"),
    ("next", "2.0.0-beta.1"),
    ("latest", "1.2.0"),
    ("~1.0.0", "1.0.0"),
])
def test_pick_manifest(raw, expected):
    assert pick_manifest(PACKUMENT, parse_spec("a", raw))["version"] == expected


def test_pick_manifest_avoid_and_failures():
    assert pick_manifest(PACKUMENT, parse_spec("a", "^1.0.0"), avoid="1.1.0")["version"] == "1.0.0"
    assert pick_manifest(PACKUMENT, parse_spec("a", "^1.0.0"), avoid="<2.0.0")["version"] == "1.1.0"
    with pytest.raises(UnsatisfiableError):
        pick_manifest(PACKUMENT, parse_spec("a", "^3.0.0"))
    with pytest.raises(UnsatisfiableError):
        pick_manifest(PACKUMENT, parse_spec("a", "nope"))


def test_publish_tracks_latest(registry):
    publish(registry, "a", "1.0.0")
    publish(registry, "a", "2.0.0-rc.1")
    man = publish(registry, "a", "1.1.0")
    pack = registry.get_packument("a")
    assert pack["dist-tags"]["latest"] == "1.1.0"
    assert man["dist"]["tarball"] == tarball_url("a", "1.1.0")
    assert registry.get_tarball("a", "1.1.0")
    with pytest.raises(NotFoundError):
        registry.get_packument("zzz")


def test_directory_registry(tmp_path):
    (tmp_path / "a.json").write_text(json.dumps(PACKUMENT), encoding="utf-8")
    (tmp_path / "@scope").mkdir()
    (tmp_path / "@scope" / "b.yaml").write_text(yaml.safe_dump({
        "versions": {"1.0.0": {"name": "@scope/b", "version": "1.0.0"}},
    }), encoding="utf-8")
    (tmp_path / "tarballs").mkdir()
    (tmp_path / "tarballs" / "a-1.0.0.tgz").write_bytes(b"tgz")

    reg = DirectoryRegistry(str(tmp_path))
    assert reg.get_packument("a")["dist-tags"]["latest"] == "1.2.0"
    assert reg.get_packument("@scope/b")["name"] == "@scope/b"
    assert reg.get_tarball("a", "1.0.0") == b"tgz"
    with pytest.raises(NotFoundError):
        reg.get_packument("missing")


def test_packument_cache(registry):
    publish(registry, "a", "1.0.0")
    publish(registry, "b", "1.0.0")
    cache = PackumentCache(registry, workers=2)
    assert cache.prefetch(["a", "b", "nope", "a"]) == {"a": True, "b": True, "nope": False}
    assert cache.get("a") is cache.get("a")
    with pytest.raises(NotFoundError):
        cache.get("nope")
    assert cache.manifest("b", "^1.0.0")["version"] == "1.0.0"
    assert cache.manifest("alias", "npm:a@^1.0.0")["name"] == "a"
    with pytest.raises(UnsatisfiableError):
        cache.manifest("nope", "^1.0.0")


def test_non_registry_specs_use_manifest_for(registry):
    registry.add_manifest("github:user/repo", {"name": "repo", "version": "0.1.0"})
    cache = PackumentCache(registry)
    assert cache.manifest("repo", "github:user/repo")["version"] == "0.1.0"
    with pytest.raises(UnsatisfiableError):
        cache.manifest("other", "https://example.com/other.tgz")
