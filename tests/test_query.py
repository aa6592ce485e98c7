import pytest

from arbor.dep_flags import calc_dep_flags
from arbor.errors import QuerySyntaxError
from arbor.node import Node


@pytest.fixture
def tree():
    root = Node(path="/p", package={
        "name": "proj",
        "version": "1.0.0",
        "dependencies": {"a": "^1.0.0"},
        "devDependencies": {"d": "*"},
        "optionalDependencies": {"o": "*"},
    })
    Node(package={"name": "a", "version": "1.0.0", "dependencies": {"b": "^1.0.0"},
                  "peerDependencies": {"p": "*"}}, parent=root)
    Node(package={"name": "b", "version": "1.2.0", "license": "MIT"}, parent=root)
    Node(package={"name": "d", "version": "1.0.0", "dependencies": {"b": "*"}}, parent=root)
    Node(package={"name": "o", "version": "1.0.0"}, parent=root)
    Node(package={"name": "p", "version": "1.0.0"}, parent=root)
    calc_dep_flags(root)
    return root


def names(nodes):
    return [n.name if not n.is_root else ":root" for n in nodes]


def test_root_and_names(tree):
    assert names(tree.query_selector_all(":root")) == [":root"]
    assert names(tree.query_selector_all("#a")) == ["a"]
    assert names(tree.query_selector_all("#b@^1.0.0")) == ["b"]
    assert tree.query_selector_all("#b@2") == []
    assert len(tree.query_selector_all("*")) == 6


def test_dependency_type_classes(tree):
    assert names(tree.query_selector_all(".prod")) == ["a", "b"]
    assert names(tree.query_selector_all(".dev")) == ["d"]
    assert names(tree.query_selector_all(".optional")) == ["o"]
    assert names(tree.query_selector_all(".peer")) == ["p"]
    assert names(tree.query_selector_all(".dev, .optional")) == ["d", "o"]


def test_combinators_follow_edges(tree):
    assert names(tree.query_selector_all(":root > *")) == ["a", "d", "o"]
    assert names(tree.query_selector_all(":root > .prod")) == ["a"]
    assert names(tree.query_selector_all("#a > #b")) == ["b"]
    assert names(tree.query_selector_all(":root #b")) == ["b"]
    assert tree.query_selector_all("#b > *") == []
    assert names(tree.query_selector_all("#a ~ *")) == ["d", "o"]


def test_scope_is_the_queried_node(tree):
    a = tree.children["a"]
    assert names(a.query_selector_all(":scope > *")) == ["b", "p"]
    assert names(a.query_selector_all(":scope")) == ["a"]


def test_pseudo_classes_and_attributes(tree):
    assert names(tree.query_selector_all(":not(:root)")) == ["a", "b", "d", "o", "p"]
    assert names(tree.query_selector_all(":has(> #b)")) == ["a", "d"]
    assert names(tree.query_selector_all(":is(#a, #d) > *")) == ["b", "p"]
    assert names(tree.query_selector_all(":semver(^1.1.0)")) == ["b"]
    assert names(tree.query_selector_all(":deduped")) == ["b"]
    assert names(tree.query_selector_all(":empty")) == ["b", "o", "p"]
    assert names(tree.query_selector_all("[version=1.2.0]")) == ["b"]
    assert names(tree.query_selector_all("[peerDependencies]")) == ["a"]
    assert names(tree.query_selector_all("[license^=M]")) == ["b"]


@pytest.mark.parametrize("query", ["", "#a >", "> #a", ":bogus", ".nope", ":semver(not a range)", "#a)"])
def test_bad_queries_raise(tree, query):
    with pytest.raises(QuerySyntaxError):
        tree.query_selector_all(query)
