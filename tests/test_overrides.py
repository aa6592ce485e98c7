import pytest

from arbor.errors import ConfigInvalidError, OverrideConflictError
from arbor.node import Node
from arbor.overrides import OverrideSet


def test_top_level_rule():
    overrides = OverrideSet({"a": "1.0.0"})
    rule = overrides.get_edge_rule("a", "^1.0.0")
    assert rule.value == "1.0.0"
    assert overrides.get_edge_rule("b", "^1.0.0") is overrides


def test_nested_rules_only_apply_in_scope():
    overrides = OverrideSet({"b": {"c": "2.0.0"}})
    assert overrides.get_edge_rule("c", "^1.0.0") is overrides
    b_rule = overrides.children["b"]
    assert b_rule.get_edge_rule("c", "^1.0.0").value == "2.0.0"


def test_keyed_rule_needs_intersecting_spec():
    overrides = OverrideSet({"a@^1": "1.5.0"})
    assert overrides.get_edge_rule("a", "^2.0.0") is overrides
    assert overrides.get_edge_rule("a", "^1.2.0").value == "1.5.0"


def test_exact_key_beats_wildcard():
    overrides = OverrideSet({"a": "3.0.0", "a@^1": "1.5.0"})
    assert overrides.get_edge_rule("a", "^1.0.0").value == "1.5.0"


def test_invalid_override_shape():
    with pytest.raises(ConfigInvalidError):
        OverrideSet({"a": 5})


def test_to_dict():
    data = {"a": "1.0.0", "b": {".": "2.0.0", "c": "3.0.0"}}
    assert OverrideSet(data).to_dict() == data


def test_edge_spec_follows_overrides():
    overrides = OverrideSet({"b": {"c": "2.0.0"}})
    root = Node(path="/p", package={"name": "proj", "dependencies": {"b": "^1.0.0"}}, overrides=overrides)
    b = Node(package={"name": "b", "version": "1.0.0", "dependencies": {"c": "^1.0.0"}}, parent=root,
             overrides=overrides.get_edge_rule("b", "^1.0.0"))
    assert b.edges_out["c"].spec == "2.0.0"
    assert b.edges_out["c"].raw_spec == "^1.0.0"
    root.assert_root_overrides()


def test_root_override_of_direct_dependency_conflicts():
    overrides = OverrideSet({"a": "2.0.0"})
    root = Node(path="/p", package={"name": "proj", "dependencies": {"a": "^1.0.0"}}, overrides=overrides)
    assert root.edges_out["a"].spec == "2.0.0"
    with pytest.raises(OverrideConflictError):
        root.assert_root_overrides()


def test_reference_to_root_dependency():
    overrides = OverrideSet({"a": "$a"})
    root = Node(path="/p", package={"name": "proj", "dependencies": {"a": "^1.0.0"}}, overrides=overrides)
    assert root.edges_out["a"].spec == "^1.0.0"
    root.assert_root_overrides()
