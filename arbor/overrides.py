# arbor/overrides.py
"""
OverrideSet: scoped replacement rules for dependency specifiers.

A root set is built from the project manifest's ``overrides`` field. Each
rule is keyed by ``name`` or ``name@range`` and may carry its own children
that only apply inside the subtree of a matching package. Rule lookup walks
from the nearest scope up to the root; within one scope an exact key match
beats a wildcard key.
"""

from __future__ import annotations
from typing import Any, Dict, Iterator, List, Optional

from arbor import semver
from arbor.errors import ConfigInvalidError
from arbor.spec import parse_arg, parse_spec


class OverrideSet:
    def __init__(self, overrides: Any, key: Optional[str] = None, parent: Optional["OverrideSet"] = None):
        self.parent = parent
        self.children: Dict[str, OverrideSet] = {}
        self.name: Optional[str] = None
        self.key: Optional[str] = key
        self.key_spec: str = "*"
        self.value: Optional[str] = None

        if isinstance(overrides, str):
            overrides = {".": overrides}
        if not isinstance(overrides, dict):
            raise ConfigInvalidError(f"override for {key or '<root>'} must be a string or an object", key=key)
        overrides = dict(overrides)
        if overrides.get(".") == "":
            overrides["."] = "*"

        if parent is not None:
            spec = parse_arg(key)
            if not spec.name:
                raise ConfigInvalidError(f"Override without name: {key}", key=key)
            self.name = spec.name
            self.key_spec = "*" if spec.raw_spec in ("", "*") else spec.raw_spec
            self.value = overrides.get(".") or self.key_spec

        for child_key, child_overrides in overrides.items():
            if child_key == ".":
                continue
            child = OverrideSet(child_overrides, key=child_key, parent=self)
            self.children[child.key] = child

    @property
    def is_root(self) -> bool:
        return self.parent is None

    def ancestry(self) -> Iterator["OverrideSet"]:
        node: Optional[OverrideSet] = self
        while node is not None:
            yield node
            node = node.parent

    @property
    def ruleset(self) -> Dict[str, "OverrideSet"]:
        """Rules visible from this scope, nearest scope first, exact keys before wildcards."""
        ruleset: Dict[str, OverrideSet] = {}
        for scope in self.ancestry():
            level: List[OverrideSet] = list(scope.children.values())
            if not scope.is_root:
                level.append(scope)
            level.sort(key=lambda r: r.key_spec == "*")
            for rule in level:
                if rule.key not in ruleset:
                    ruleset[rule.key] = rule
        return ruleset

    def get_edge_rule(self, name: str, spec: str) -> "OverrideSet":
        for rule in self.ruleset.values():
            if rule.name != name:
                continue
            if rule.key_spec == "*":
                return rule
            try:
                parsed = parse_spec(name, spec)
            except ValueError:
                return rule
            if parsed.type == "alias":
                parsed = parsed.sub_spec
            if parsed.type == "git":
                if parsed.git_range and semver.intersects(parsed.git_range, rule.key_spec):
                    return rule
                continue
            if parsed.type in ("range", "version"):
                if semver.intersects(parsed.fetch_spec, rule.key_spec):
                    return rule
                continue
            # tags, files and directories cannot be compared by version
            return rule
        return self

    def get_node_rule(self, node: Any) -> "OverrideSet":
        return self.get_matching_rule(node) or self

    def get_matching_rule(self, node: Any) -> Optional["OverrideSet"]:
        for rule in self.ruleset.values():
            if rule.name != node.name:
                continue
            if semver.satisfies(node.version, rule.key_spec) or semver.satisfies(node.version, rule.value):
                return rule
        return None

    def to_dict(self) -> Any:
        if not self.children:
            return self.value
        out: Dict[str, Any] = {}
        if self.value is not None and self.value != self.key_spec:
            out["."] = self.value
        for key, child in self.children.items():
            out[key] = child.to_dict()
        return out

    def __repr__(self):
        if self.is_root:
            return f"<OverrideSet root rules={list(self.children)}>"
        return f"<OverrideSet {self.key} -> {self.value}>"
