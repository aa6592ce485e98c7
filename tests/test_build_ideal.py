import pytest

from arbor.build_ideal import IdealTreeBuilder, build_ideal_tree
from arbor.dep_flags import tree_check
from arbor.errors import EngineError, OverrideConflictError, PeerViolationError

from conftest import publish, write_json


def _build(path, registry, **options):
    builder = IdealTreeBuilder(str(path), registry, **options)
    root = builder.build()
    tree_check(root)
    return root, builder


def test_picks_highest_satisfying_and_nests_conflicts(registry, project):
    for v in ("1.0.0", "1.2.0", "2.0.0"):
        publish(registry, "dep", v)
    publish(registry, "b", "1.0.0", {"dep": "^2.0.0"})
    path = project({"name": "proj", "version": "1.0.0", "dependencies": {"dep": "^1.0.0", "b": "^1.0.0"}})

    root, builder = _build(path, registry)
    assert root.children["dep"].version == "1.2.0"
    assert root.children["b"].children["dep"].version == "2.0.0"
    assert builder.unresolved == 0
    assert builder.problems == []
    assert root.children["dep"].resolved.endswith("/dep/-/dep-1.2.0.tgz")
    assert root.children["dep"].integrity.startswith("sha512-")


def test_shared_dependency_is_hoisted_once(registry, project):
    publish(registry, "shared", "1.0.0")
    publish(registry, "shared", "1.1.0")
    publish(registry, "a", "1.0.0", {"shared": "^1.0.0"})
    publish(registry, "b", "1.0.0", {"shared": "^1.1.0"})
    path = project({"name": "proj", "dependencies": {"a": "^1.0.0", "b": "^1.0.0"}})

    root, _ = _build(path, registry)
    shared = root.inventory.query("name", "shared")
    assert len(shared) == 1
    assert root.children["shared"].version == "1.1.0"


def test_missing_package_is_reported(registry, project):
    path = project({"name": "proj", "dependencies": {"nope": "^1.0.0"}})
    root, builder = _build(path, registry)
    assert builder.unresolved == 1
    assert [p.type for p in builder.problems] == ["unsatisfiable"]
    assert root.edges_out["nope"].missing


def test_peer_dependencies_go_next_to_the_dependent(registry, project):
    publish(registry, "host", "1.0.0")
    publish(registry, "host", "2.0.0")
    publish(registry, "plugin", "1.0.0", peerDependencies={"host": "^2.0.0"})
    path = project({"name": "proj", "dependencies": {"plugin": "^1.0.0"}})

    root, builder = _build(path, registry)
    host = root.children["host"]
    assert host.version == "2.0.0"
    assert host.peer
    assert builder.unresolved == 0


def test_peer_conflict(registry, project):
    publish(registry, "host", "1.0.0")
    publish(registry, "host", "2.0.0")
    publish(registry, "plugin", "1.0.0", peerDependencies={"host": "^2.0.0"})
    path = project({"name": "proj", "dependencies": {"host": "^1.0.0", "plugin": "^1.0.0"}})

    root, builder = _build(path, registry)
    assert root.children["host"].version == "1.0.0"
    assert "peer_conflict" in [p.type for p in builder.problems]
    assert builder.unresolved == 1

    with pytest.raises(PeerViolationError):
        IdealTreeBuilder(str(path), registry, strict_peer_deps=True).build()


def test_overrides_replace_transitive_specs(registry, project):
    publish(registry, "c", "1.0.0")
    publish(registry, "c", "2.0.0")
    publish(registry, "a", "1.0.0", {"c": "^1.0.0"})
    path = project({"name": "proj", "dependencies": {"a": "^1.0.0"}, "overrides": {"c": "2.0.0"}})

    root, builder = _build(path, registry)
    a = root.children["a"]
    assert a.edges_out["c"].spec == "2.0.0"
    assert a.edges_out["c"].valid
    assert root.children["c"].version == "2.0.0"
    assert builder.unresolved == 0


def test_override_of_direct_dependency_is_rejected(registry, project):
    publish(registry, "c", "2.0.0")
    path = project({"name": "proj", "dependencies": {"c": "^1.0.0"}, "overrides": {"c": "2.0.0"}})
    with pytest.raises(OverrideConflictError):
        IdealTreeBuilder(str(path), registry).build()


def test_add_saves_caret_range(registry, project):
    publish(registry, "left-pad", "1.3.0")
    path = project({"name": "proj"})

    root, builder = _build(path, registry, add=["left-pad"])
    assert root.package["dependencies"] == {"left-pad": "^1.3.0"}
    assert root.children["left-pad"].version == "1.3.0"
    assert builder.package_changed


def test_add_with_save_type_moves_the_entry(registry, project):
    publish(registry, "left-pad", "1.3.0")
    path = project({"name": "proj", "dependencies": {"left-pad": "^1.0.0"}})

    root, _ = _build(path, registry, add=["left-pad@^1.2.0"], save_type="dev")
    assert "dependencies" not in root.package
    assert root.package["devDependencies"] == {"left-pad": "^1.2.0"}
    assert root.children["left-pad"].dev


def test_rm_drops_the_dependency(registry, project):
    publish(registry, "a", "1.0.0")
    path = project({"name": "proj", "dependencies": {"a": "^1.0.0"}})
    root, _ = _build(path, registry, rm=["a"])
    assert "a" not in root.children
    assert "dependencies" not in root.package


def _lock(path, registry, name, version, extra=None):
    man = registry.get_packument(name)["versions"][version]
    packages = {
        "": {"name": "proj", "dependencies": {name: "^1.0.0"}},
        f"node_modules/{name}": {"version": version, "resolved": man["dist"]["tarball"],
                                 "integrity": man["dist"]["integrity"]},
    }
    packages.update(extra or {})
    write_json(path / "package-lock.json", {"name": "proj", "lockfileVersion": 3, "requires": True, "packages": packages})


def test_lockfile_versions_are_kept_until_updated(registry, project):
    publish(registry, "a", "1.0.0")
    publish(registry, "a", "1.1.0")
    path = project({"name": "proj", "dependencies": {"a": "^1.0.0"}})
    _lock(path, registry, "a", "1.0.0", {"node_modules/stray": {"version": "1.0.0"}})

    root, _ = _build(path, registry)
    assert root.children["a"].version == "1.0.0"
    assert "stray" not in root.children

    root, _ = _build(path, registry, update=["a"])
    assert root.children["a"].version == "1.1.0"


def test_avoid_moves_off_vulnerable_versions(registry, project):
    publish(registry, "a", "1.0.0")
    publish(registry, "a", "1.1.0")
    path = project({"name": "proj", "dependencies": {"a": "^1.0.0"}})
    _lock(path, registry, "a", "1.1.0")

    root, _ = _build(path, registry, update=["a"], avoid={"a": "1.1.0"})
    assert root.children["a"].version == "1.0.0"


def test_failed_optional_dependency_is_pruned(registry, project):
    publish(registry, "opt", "1.0.0", {"missing-dep": "^1.0.0"})
    path = project({"name": "proj", "optionalDependencies": {"opt": "^1.0.0"}})

    root, builder = _build(path, registry)
    assert "opt" not in root.children
    assert builder.problems == []
    assert builder.unresolved == 0


def test_engine_checks(registry, project):
    publish(registry, "e", "1.0.0", engines={"node": ">=99"})
    path = project({"name": "proj", "dependencies": {"e": "^1.0.0"}})

    root, builder = _build(path, registry)
    assert root.children["e"].version == "1.0.0"
    assert [p.type for p in builder.problems] == ["engine"]

    with pytest.raises(EngineError):
        IdealTreeBuilder(str(path), registry, engine_strict=True).build()


def test_workspaces_are_linked(registry, project):
    publish(registry, "a", "1.0.0")
    path = project({"name": "proj", "workspaces": ["packages/*"]})
    write_json(path / "packages" / "w" / "package.json",
               {"name": "w", "version": "0.1.0", "dependencies": {"a": "^1.0.0"}})

    root, builder = _build(path, registry)
    link = root.children["w"]
    assert link.is_link
    assert link.target.location == "packages/w"
    assert root.edges_out["w"].workspace and root.edges_out["w"].valid
    assert root.children["a"].version == "1.0.0"
    assert link.target.is_workspace
    assert builder.unresolved == 0


def test_prefer_dedupe_collapses_duplicates(registry, project):
    publish(registry, "shared", "1.0.0")
    publish(registry, "a", "1.0.0", {"shared": "^1.0.0"})
    path = project({"name": "proj", "dependencies": {"a": "^1.0.0", "shared": "1.0.0"}})
    write_json(path / "package-lock.json", {"name": "proj", "lockfileVersion": 3, "packages": {
        "": {"name": "proj", "dependencies": {"a": "^1.0.0", "shared": "1.0.0"}},
        "node_modules/a": {"version": "1.0.0", "dependencies": {"shared": "^1.0.0"}},
        "node_modules/a/node_modules/shared": {"version": "1.0.0"},
        "node_modules/shared": {"version": "1.0.0"},
    }})

    root, _ = _build(path, registry)
    assert "shared" in root.children["a"].children

    root, _ = _build(path, registry, prefer_dedupe=True)
    assert root.children["shared"].version == "1.0.0"
    assert "shared" not in root.children["a"].children
    assert root.children["a"].edges_out["shared"].to is root.children["shared"]


def test_module_helper_returns_problems(registry, project):
    path = project({"name": "proj", "dependencies": {"nope": "^1.0.0"}})
    root, problems = build_ideal_tree(str(path), registry)
    assert root.is_root
    assert problems[0].to_dict()["type"] == "unsatisfiable"
