import pytest

from arbor.dep_flags import calc_dep_flags
from arbor.errors import LifecycleScriptError
from arbor.node import Node
from arbor.scripts import ScriptScheduler, scripts_for


def _root(**pkgs):
    root = Node(path="/p", package={"name": "proj", "dependencies": {n: "*" for n in pkgs}})
    for name, pkg in pkgs.items():
        Node(package=dict({"name": name, "version": "1.0.0"}, **pkg), parent=root)
    calc_dep_flags(root)
    return root


def _recorder(fail=()):
    calls = []

    def runner(node, event, cmd):
        calls.append((node.name, event))
        return 1 if (node.name, event) in fail else 0
    return runner, calls


def test_scripts_for():
    root = _root(a={"scripts": {"install": "make", "test": "pytest", "postinstall": ""}},
                 b={"gypfile": True},
                 c={"gypfile": True, "scripts": {"preinstall": "echo"}})
    assert scripts_for(root.children["a"]) == {"install": "make"}
    assert scripts_for(root.children["b"]) == {"install": "node-gyp rebuild"}
    assert scripts_for(root.children["c"]) == {"preinstall": "echo"}


def test_dependencies_run_first_and_events_in_waves():
    root = _root(a={"dependencies": {"b": "*"}, "scripts": {"preinstall": "x", "postinstall": "x"}},
                 b={"scripts": {"preinstall": "x", "install": "x"}})
    runner, calls = _recorder()
    runs = ScriptScheduler(root.children.values(), runner).run()
    assert calls == [("b", "preinstall"), ("a", "preinstall"), ("b", "install"), ("a", "postinstall")]
    assert all(r["code"] == 0 for r in runs)


def test_cycles_are_broken_by_location():
    root = _root(a={"dependencies": {"b": "*"}}, b={"dependencies": {"a": "*"}})
    assert [n.name for n in ScriptScheduler(root.children.values()).order()] == ["b", "a"]


def test_optional_failure_skips_remaining_events():
    root = Node(path="/p", package={"name": "proj", "optionalDependencies": {"opt": "*"},
                                    "dependencies": {"req": "*"}})
    Node(package={"name": "opt", "version": "1.0.0", "scripts": {"preinstall": "x", "install": "x"}}, parent=root)
    Node(package={"name": "req", "version": "1.0.0", "scripts": {"install": "x"}}, parent=root)
    calc_dep_flags(root)
    runner, calls = _recorder(fail={("opt", "preinstall")})
    runs = ScriptScheduler(root.children.values(), runner).run()
    assert calls == [("opt", "preinstall"), ("req", "install")]
    assert [r["code"] for r in runs] == [1, 0]


def test_required_failure_raises():
    root = _root(a={"scripts": {"install": "x"}})
    runner, _ = _recorder(fail={("a", "install")})
    with pytest.raises(LifecycleScriptError) as exc:
        ScriptScheduler(root.children.values(), runner).run()
    assert exc.value.details["event"] == "install"
    assert exc.value.details["runs"][0]["code"] == 1
