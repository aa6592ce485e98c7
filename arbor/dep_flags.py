# arbor/dep_flags.py
"""
Whole-tree passes over the graph.

- calc_dep_flags: recompute dev/optional/dev_optional/peer/extraneous by
  walking edges out from the root
- gather_dep_set: nodes depended on only from within a starting set
- tree_check: assert the structural invariants of a tree
"""

from __future__ import annotations
from collections import deque
from typing import Any, Callable, Dict, Iterable, List

_FLAGS = ("dev", "optional", "dev_optional", "peer")


def calc_dep_flags(root: Any, reset: bool = True) -> Any:
    if reset:
        for node in root.inventory:
            if node is root:
                continue
            node.extraneous = True
            for flag in _FLAGS:
                setattr(node, flag, True)
    root.extraneous = False
    for flag in _FLAGS:
        setattr(root, flag, False)

    queue = deque([root])
    while queue:
        node = queue.popleft()
        if node.is_link and node.target is not None:
            if _unset(node.target, node, None):
                queue.append(node.target)
        for edge in node.edges_out.values():
            to = edge.to
            if to is not None and _unset(to, node, edge):
                queue.append(to)

    for node in root.inventory:
        if node.extraneous:
            for flag in _FLAGS:
                setattr(node, flag, False)
    return root


def _unset(to: Any, src: Any, edge: Any) -> bool:
    """Clear flags on ``to`` that are false on its dependent. True when anything changed."""
    e_dev = bool(edge and edge.dev)
    e_opt = bool(edge and edge.optional)
    e_peer = bool(edge and edge.peer)
    changed = False
    if to.extraneous:
        to.extraneous = False
        changed = True
    if to.dev and not src.dev and not e_dev:
        to.dev = False
        changed = True
    if to.optional and not src.optional and not e_opt:
        to.optional = False
        changed = True
    if to.dev_optional and not src.dev_optional and not e_dev and not e_opt:
        to.dev_optional = False
        changed = True
    if to.peer and not src.peer and not e_peer:
        to.peer = False
        changed = True
    return changed


def gather_dep_set(nodes: Iterable[Any], edge_filter: Callable[[Any], bool]) -> Dict[Any, None]:
    deps: Dict[Any, None] = dict.fromkeys(nodes)
    queue = list(deps)
    while queue:
        node = queue.pop()
        for edge in node.edges_out.values():
            if edge.to is not None and edge.to not in deps and edge_filter(edge):
                deps[edge.to] = None
                queue.append(edge.to)

    # drop anything with a dependent outside the set, until stable
    changed = True
    while changed and deps:
        changed = False
        for dep in list(deps):
            for edge in dep.edges_in:
                if edge.from_node not in deps and edge_filter(edge):
                    del deps[dep]
                    changed = True
                    break
    return deps


def tree_check(root: Any) -> Any:
    """Raise AssertionError when the tree breaks a structural invariant."""
    from arbor.node import walk_subtree

    problems: List[str] = []
    inv = root.inventory
    seen = 0
    tops = [root] + [n for n in inv if n.resolve_parent is None and n is not root]
    for node in (n for top in tops for n in walk_subtree(top)):
        seen += 1
        if node.root is not root:
            problems.append(f"{node!r} has root {node.root!r}")
        if inv.get(node.location) is not node:
            problems.append(f"inventory entry for {node.location!r} is not {node!r}")
        for name, child in node.children.items():
            if child.name != name or child.parent is not node:
                problems.append(f"{child!r} listed as child {name!r} of {node!r}")
        for edge in node.edges_out.values():
            if edge.from_node is not node:
                problems.append(f"{edge!r} listed on {node!r}")
            expected = node.lookup(edge.name)
            if edge.to is not expected:
                problems.append(f"{edge!r} should resolve to {expected!r}")
            if edge.to is not None and (edge.to.name != edge.name or edge not in edge.to.edges_in):
                problems.append(f"{edge!r} target does not record it")
        for edge in node.edges_in:
            if edge.to is not node:
                problems.append(f"{edge!r} in edges_in of {node!r}")
    if seen != len(inv):
        problems.append(f"inventory holds {len(inv)} nodes, tree has {seen}")
    if problems:
        raise AssertionError("tree check failed:\n  " + "\n  ".join(problems))
    return root
