import json

import pytest

from arbor.arborist import Arborist

from conftest import publish, write_json


@pytest.fixture
def arborist(registry, tmp_path):
    made = []

    def _make(path):
        arb = Arborist(str(path), registry=registry, cache_dir=str(tmp_path / "cache"))
        made.append(arb)
        return arb

    yield _make
    for arb in made:
        arb.close()


def _version(path):
    with open(path / "package.json", encoding="utf-8") as fh:
        return json.load(fh)["version"]


def test_reify_rejects_unknown_options(registry, project, arborist):
    path = project({"name": "proj"})
    with pytest.raises(TypeError):
        arborist(path).reify(bogus=True)


def test_reify_then_load_virtual(registry, project, arborist):
    publish(registry, "a", "1.0.0")
    path = project({"name": "proj", "dependencies": {"a": "^1.0.0"}})
    arb = arborist(path)
    report = arb.reify()
    assert report["added"] == ["node_modules/a"]
    assert arb.unresolved == 0

    virtual = arborist(path).load_virtual()
    assert virtual.children["a"].version == "1.0.0"
    assert virtual.children["a"].integrity
    assert virtual.edges_out["a"].valid


def test_dedupe_collapses_nested_copy(registry, project, arborist):
    publish(registry, "a", "1.0.0")
    publish(registry, "a", "1.1.0")
    publish(registry, "b", "1.0.0", {"a": "^1.1.0"})
    path = project({"name": "proj", "dependencies": {"a": "^1.0.0", "b": "^1.0.0"}})
    modules = path / "node_modules"
    write_json(modules / "a" / "package.json", {"name": "a", "version": "1.0.0"})
    write_json(modules / "b" / "package.json", {"name": "b", "version": "1.0.0", "dependencies": {"a": "^1.1.0"}})
    write_json(modules / "b" / "node_modules" / "a" / "package.json", {"name": "a", "version": "1.1.0"})

    report = arborist(path).dedupe()
    assert "node_modules/b/node_modules/a" in report["removed"]
    assert not (modules / "b" / "node_modules" / "a").exists()
    assert _version(modules / "a") == "1.1.0"


def test_reify_selected_workspace(registry, project, arborist):
    publish(registry, "a", "1.0.0")
    publish(registry, "b", "1.0.0")
    path = project({"name": "proj", "workspaces": ["packages/*"], "dependencies": {"b": "^1.0.0"}})
    write_json(path / "packages" / "w" / "package.json",
               {"name": "w", "version": "0.1.0", "dependencies": {"a": "^1.0.0"}})

    arb = arborist(path)
    ideal = arb.build_ideal_tree()
    deps = arb.workspace_dependency_set(ideal, ["w"])
    assert {n.location for n in deps} == {"packages/w", "node_modules/a", "node_modules/w"}
    assert {n.location for n in arb.exclude_workspaces_dependency_set(ideal)} == {"", "node_modules/b"}

    report = arb.reify(ideal, workspaces=["w"])
    assert report["added"] == ["node_modules/a", "node_modules/w", "packages/w"]
    assert (path / "node_modules" / "a").is_dir()
    assert not (path / "node_modules" / "b").exists()
