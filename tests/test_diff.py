from arbor.dep_flags import calc_dep_flags
from arbor.diff import ADD, CHANGE, REMOVE, Diff, get_action
from arbor.node import Link, Node


def _tree(spec, deps=None, dev_deps=None):
    """spec: {location-ish name path: version}, e.g. {"a": "1.0.0", "a/b": "2.0.0"}"""
    root = Node(path="/p", package={"name": "proj", "dependencies": deps or {}, "devDependencies": dev_deps or {}})
    nodes = {"": root}
    for key in sorted(spec, key=lambda k: k.count("/")):
        parent_key, _, name = key.rpartition("/")
        version = spec[key]
        nodes[key] = Node(package={"name": name, "version": version}, parent=nodes[parent_key])
    calc_dep_flags(root)
    return root


def test_identical_trees_have_no_actions():
    spec = {"a": "1.0.0", "a/b": "1.0.0", "c": "2.0.0"}
    diff = Diff.calculate(_tree(spec), _tree(spec))
    assert all(d.action is None for d in diff.walk())
    assert diff.leaves() == []
    assert len(diff.unchanged) == 3


def test_leaves_order():
    actual = _tree({"old": "1.0.0", "old/deep": "1.0.0", "keep": "1.0.0", "bump": "1.0.0"})
    ideal = _tree({"keep": "1.0.0", "bump": "2.0.0", "new": "1.0.0", "new/inner": "1.0.0"})
    leaves = [(d.action, d.location) for d in Diff.calculate(actual, ideal).leaves()]
    assert leaves == [
        (REMOVE, "node_modules/old/node_modules/deep"),
        (REMOVE, "node_modules/old"),
        (CHANGE, "node_modules/bump"),
        (ADD, "node_modules/new"),
        (ADD, "node_modules/new/node_modules/inner"),
    ]


def test_integrity_and_resolved_rules():
    root_a = Node(path="/p", package={"name": "proj"})
    root_i = Node(path="/p", package={"name": "proj"})
    pkg = {"name": "x", "version": "1.0.0"}

    a = Node(package=pkg, parent=root_a, resolved="https://r/x-1.0.0.tgz")
    i = Node(package=pkg, parent=root_i, resolved="https://r/x-1.0.0.tgz")
    assert get_action(a, i) is None

    a.integrity = "sha512-AAAA sha1-BBBB"
    i.integrity = "sha1-BBBB"
    assert get_action(a, i) is None

    i.integrity = "sha512-CCCC"
    assert get_action(a, i) == CHANGE


def test_moved_tarball_is_a_change_even_with_the_same_digest():
    root_a = Node(path="/p", package={"name": "proj"})
    root_i = Node(path="/p", package={"name": "proj"})
    pkg = {"name": "x", "version": "1.0.0"}
    a = Node(package=pkg, parent=root_a, resolved="https://r/x-1.0.0.tgz", integrity="sha512-AAAA")
    i = Node(package=pkg, parent=root_i, resolved="https://mirror/x-1.0.0.tgz", integrity="sha512-AAAA")
    assert get_action(a, i) == CHANGE

    i.resolved = a.resolved
    assert get_action(a, i) is None

    i.resolved = None
    assert get_action(a, i) == CHANGE


def test_link_changes():
    actual = Node(path="/p", package={"name": "proj"})
    ideal = Node(path="/p", package={"name": "proj"})
    target = Node(path="/p/packages/w", package={"name": "w", "version": "1.0.0"}, fs_parent=ideal)
    link = Link(name="w", parent=ideal, target=target)
    plain = Node(package={"name": "w", "version": "1.0.0"}, parent=actual)
    assert get_action(plain, link) == CHANGE
    assert get_action(None, link) == ADD
    assert get_action(plain, None) == REMOVE
    assert get_action(actual, ideal) is None


def test_filter_nodes_limit_the_diff():
    actual = _tree({}, deps={"a": "*", "b": "*"})
    ideal = _tree({"a": "1.0.0", "b": "1.0.0"}, deps={"a": "*", "b": "*"})
    diff = Diff.calculate(actual, ideal, filter_nodes=[ideal.children["a"]])
    assert [(d.action, d.location) for d in diff.leaves()] == [(ADD, "node_modules/a")]


def test_omit_treats_flagged_nodes_as_absent():
    ideal = _tree({"prod": "1.0.0", "devdep": "1.0.0"}, deps={"prod": "*"}, dev_deps={"devdep": "*"})
    actual = _tree({"devdep": "1.0.0"})
    diff = Diff.calculate(actual, ideal, omit=["dev"])
    assert [(d.action, d.location) for d in diff.leaves()] == [
        (REMOVE, "node_modules/devdep"),
        (ADD, "node_modules/prod"),
    ]
