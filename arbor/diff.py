# arbor/diff.py
"""
Diff: position-by-position comparison of an actual and an ideal tree.

Every location present in either tree gets a Diff node holding the pair
(actual, ideal) and an action: ADD, REMOVE, CHANGE or None. ``leaves()``
orders the actions so that removals run deepest first and additions or
changes run shallowest first.
"""

from __future__ import annotations
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

from arbor.fetcher import integrity_match

ADD = "ADD"
REMOVE = "REMOVE"
CHANGE = "CHANGE"


def get_action(actual: Any, ideal: Any) -> Optional[str]:
    if ideal is None:
        return REMOVE
    if actual is None:
        return ADD
    if actual.is_root and ideal.is_root:
        return None
    if actual.is_link != ideal.is_link:
        return CHANGE
    if ideal.is_link:
        return None if actual.realpath == ideal.realpath else CHANGE
    if actual.version != ideal.version or actual.package_name != ideal.package_name:
        return CHANGE
    if (actual.resolved or None) != (ideal.resolved or None):
        return CHANGE
    if not ideal.integrity and not actual.integrity:
        return None
    return None if integrity_match(ideal.integrity, actual.integrity) else CHANGE


def _positions(node: Any) -> Dict[str, Any]:
    if node is None:
        return {}
    out = {child.location: child for child in node.children.values()}
    for fs_child in node.fs_children:
        out[fs_child.location] = fs_child
    return out


def _depth(location: str) -> int:
    return location.count("/") + 1 if location else 0


def _omitted(node: Any, omit: Set[str]) -> bool:
    if node is None or node.is_root or not omit:
        return False
    if node.peer and "peer" in omit:
        return True
    if node.dev and "dev" in omit:
        return True
    if node.optional and "optional" in omit:
        return True
    return bool(node.dev_optional and not node.dev and not node.optional and {"dev", "optional"} <= omit)


class Diff:
    def __init__(self, actual: Any, ideal: Any, parent: Optional["Diff"] = None):
        self.actual = actual
        self.ideal = ideal
        self.parent = parent
        self.action = get_action(actual, ideal)
        self.location: str = (ideal if ideal is not None else actual).location
        self.children: List[Diff] = []
        self.unchanged: List[Any] = []
        self.removed: List[Any] = []

    @classmethod
    def calculate(cls, actual: Any, ideal: Any, filter_nodes: Optional[Iterable[Any]] = None,
                  omit: Optional[Iterable[str]] = None) -> "Diff":
        """
        Diff two trees rooted at the same project.

        filter_nodes limits the comparison to those nodes and everything they
        depend on; other positions are reported unchanged. omit names the dep
        flags (dev, optional, peer) whose ideal nodes count as absent.
        """
        allowed = cls._allowed_locations(filter_nodes) if filter_nodes is not None else None
        omit_set = set(omit or ())
        root = cls(actual, ideal)
        stack = [root]
        while stack:
            diff = stack.pop()
            a_kids = _positions(diff.actual)
            i_kids = {loc: n for loc, n in _positions(diff.ideal).items() if not _omitted(n, omit_set)}
            for loc in sorted(set(a_kids) | set(i_kids)):
                child = cls(a_kids.get(loc), i_kids.get(loc), parent=diff)
                if allowed is not None and loc not in allowed:
                    child.action = None
                diff.children.append(child)
                stack.append(child)
        for d in root.walk():
            if d is root:
                continue
            if d.action is None and d.ideal is not None:
                root.unchanged.append(d.ideal)
            elif d.action == REMOVE:
                root.removed.append(d.actual)
        return root

    @staticmethod
    def _allowed_locations(filter_nodes: Iterable[Any]) -> Set[str]:
        allowed: Set[str] = set()
        queue = list(filter_nodes)
        seen: Set[Any] = set()
        while queue:
            node = queue.pop()
            if node in seen:
                continue
            seen.add(node)
            allowed.add(node.location)
            if node.is_link and node.target is not None:
                queue.append(node.target)
            for edge in node.edges_out.values():
                if edge.to is not None:
                    queue.append(edge.to)
        return allowed

    def walk(self) -> Iterator["Diff"]:
        stack = [self]
        while stack:
            d = stack.pop()
            yield d
            stack.extend(reversed(d.children))

    def leaves(self) -> List["Diff"]:
        """Removals deepest first, then additions and changes shallowest first."""
        removes = [d for d in self.walk() if d.action == REMOVE]
        others = [d for d in self.walk() if d.action in (ADD, CHANGE)]
        removes.sort(key=lambda d: (-_depth(d.location), d.location))
        others.sort(key=lambda d: (_depth(d.location), d.location))
        return removes + others

    def to_dict(self) -> Dict[str, Any]:
        return {
            "location": self.location,
            "action": self.action,
            "actual": self.actual.pkgid if self.actual is not None else None,
            "ideal": self.ideal.pkgid if self.ideal is not None else None,
            "children": [c.to_dict() for c in self.children if c.action is not None or c.children],
        }

    def __repr__(self):
        return f"<Diff {self.action} {self.location or '<root>'!r}>"
