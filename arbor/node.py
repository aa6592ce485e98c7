# arbor/node.py
"""
Node and Link: the vertices of the dependency graph.

Features:
- parent/children placement (node_modules nesting) and fs_parent/fs_children
  (workspace and local directory packages)
- location, depth, top and root derived from the ancestor chain on demand
- edges_out loaded from the manifest, edges_in maintained by Edge.reload()
- relocate(): the single structural mutation, re-indexing the Inventory and
  reloading every edge whose resolution may change
- dedupe and replacement predicates (can_replace_with, can_dedupe, matches)
- bundleDependencies: get_bundler(), in_bundle, in_dep_bundle
- query_selector_all() over the tree inventory (see arbor.query)
"""

from __future__ import annotations
import os
import posixpath
from typing import Any, Dict, Iterator, List, Optional, Set

from arbor import semver
from arbor.dep_flags import gather_dep_set
from arbor.edge import Edge
from arbor.errors import NotFoundError, OverrideConflictError
from arbor.inventory import Inventory
from arbor.query import query_selector_all
from arbor.spec import dep_valid, parse_arg, parse_spec

_INSTALL_EVENTS = ("preinstall", "install", "postinstall")


def _norm(path: Optional[str]) -> Optional[str]:
    if path is None:
        return None
    return posixpath.normpath(str(path).replace(os.sep, "/"))


class Node:
    is_link = False

    def __init__(self, name: Optional[str] = None, path: Optional[str] = None, realpath: Optional[str] = None,
                 package: Optional[Dict[str, Any]] = None, parent: Optional["Node"] = None,
                 fs_parent: Optional["Node"] = None, root: Optional["Node"] = None,
                 resolved: Optional[str] = None, integrity: Optional[str] = None,
                 error: Any = None, extraneous: bool = True, dev: bool = True, optional: bool = True,
                 dev_optional: bool = True, peer: bool = True, overrides: Any = None,
                 legacy_peer_deps: bool = False, workspaces: Optional[Dict[str, str]] = None,
                 meta: Any = None, load_edges: bool = True):
        self._package: Dict[str, Any] = dict(package or {})
        self._path = _norm(path)
        self._realpath = _norm(realpath)
        self._name = name or self._package.get("name") or (posixpath.basename(self._path) if self._path else None)
        if not self._name:
            raise TypeError("a node needs a name, a package name or a path")
        self._resolved = resolved
        self.integrity = integrity
        self.errors: List[Any] = [error] if error else []

        self._parent: Optional[Node] = None
        self._fs_parent: Optional[Node] = None
        self._root: Optional[Node] = None
        self.children: Dict[str, Node] = {}
        self.fs_children: Dict[Node, None] = {}
        self.edges_out: Dict[str, Edge] = {}
        self.edges_in: Dict[Edge, None] = {}
        self.links_in: Dict["Link", None] = {}
        self._inventory = Inventory()
        self._inventory.add(self)

        self.extraneous = extraneous
        self.dev = dev
        self.optional = optional
        self.dev_optional = dev_optional
        self.peer = peer

        self.overrides = overrides
        self.legacy_peer_deps = legacy_peer_deps
        self.workspaces: Dict[str, str] = dict(workspaces or {})
        self.meta = meta

        if parent is not None or fs_parent is not None or root is not None:
            relocate(self, parent=parent, fs_parent=fs_parent, root=root)
        if self.is_root:
            self.extraneous = self.dev = self.optional = self.dev_optional = self.peer = False
        if load_edges:
            self.load_edges()

    # -----------------------
    # manifest derived
    # -----------------------
    @property
    def name(self) -> str:
        return self._name

    @property
    def package(self) -> Dict[str, Any]:
        return self._package

    @package.setter
    def package(self, pkg: Dict[str, Any]) -> None:
        self._package = dict(pkg or {})
        self.root.inventory.reindex(self)
        self.load_edges()

    @property
    def package_name(self) -> str:
        return self.package.get("name") or self._name

    @property
    def version(self) -> str:
        return self.package.get("version") or ""

    @property
    def pkgid(self) -> str:
        base = f"{self.package_name}@{self.version}" if self.version else self.package_name
        if self.package_name != self._name:
            return f"{self._name}@npm:{base}"
        return base

    @property
    def resolved(self) -> Optional[str]:
        return self._resolved

    @resolved.setter
    def resolved(self, value: Optional[str]) -> None:
        self._resolved = value
        self.root.inventory.reindex(self)

    @property
    def is_registry_dependency(self) -> bool:
        r = self.resolved
        if self.is_link:
            return False
        return r is None or (r.startswith(("http://", "https://")) and "#" not in r)

    @property
    def has_install_script(self) -> bool:
        pkg = self.package
        if pkg.get("hasInstallScript") or pkg.get("gypfile"):
            return True
        scripts = pkg.get("scripts") or {}
        return any(scripts.get(ev) for ev in _INSTALL_EVENTS)

    # -----------------------
    # position
    # -----------------------
    @property
    def parent(self) -> Optional["Node"]:
        return self._parent

    @property
    def fs_parent(self) -> Optional["Node"]:
        return self._fs_parent

    @property
    def resolve_parent(self) -> Optional["Node"]:
        return self._parent or self._fs_parent

    @property
    def path(self) -> Optional[str]:
        if self._parent is not None and self._parent.realpath is not None:
            return posixpath.join(self._parent.realpath, "node_modules", self._name)
        return self._path

    @property
    def realpath(self) -> Optional[str]:
        if self._parent is not None:
            return self.path
        return self._realpath or self._path

    @property
    def is_top(self) -> bool:
        return self._parent is None

    @property
    def top(self) -> "Node":
        node = self
        while node._parent is not None:
            node = node._parent
        return node

    @property
    def fs_top(self) -> "Node":
        node = self
        while node.resolve_parent is not None:
            node = node.resolve_parent
        return node

    @property
    def root(self) -> "Node":
        top = self.fs_top
        return top._root if top._root is not None else top

    @property
    def is_root(self) -> bool:
        return self.root is self

    @property
    def is_project_root(self) -> bool:
        return self.is_root and not self.is_link

    @property
    def inventory(self) -> Inventory:
        return self.root._inventory

    @property
    def depth(self) -> int:
        d = 0
        node = self
        while node._parent is not None:
            d += 1
            node = node._parent
        return d

    @property
    def location(self) -> str:
        root = self.root
        if root is self:
            return ""
        if self.path is not None and root.realpath is not None:
            return posixpath.relpath(self.path, root.realpath)
        # virtual tree without filesystem paths
        parent = self._parent
        if parent is None:
            return self._name
        prefix = parent.location
        return f"{prefix}/node_modules/{self._name}" if prefix else f"node_modules/{self._name}"

    def in_node_modules(self) -> bool:
        loc = self.location
        return loc.startswith("node_modules/") or "/node_modules/" in loc

    @property
    def is_workspace(self) -> bool:
        if self.is_project_root:
            return False
        edge = self.root.edges_out.get(self.package_name)
        if edge is None or edge.type != "workspace" or edge.to is None:
            return False
        to = edge.to
        return to is self or (to.is_link and to.target is self)

    # -----------------------
    # bundles
    # -----------------------
    @property
    def bundle_dependencies(self) -> List[str]:
        """Names listed in bundleDependencies; ``true`` bundles every regular dependency."""
        pkg = self.package
        bd = pkg.get("bundleDependencies", pkg.get("bundledDependencies"))
        if bd is True:
            return sorted(pkg.get("dependencies") or {})
        if isinstance(bd, list):
            return [n for n in bd if isinstance(n, str)]
        return []

    def get_bundler(self, path: Optional[List["Node"]] = None) -> Optional["Node"]:
        """
        The node whose tarball ships this one, or None.

        A node is bundled when its parent lists it in bundleDependencies, when
        its parent is itself bundled, or when a bundled dependent of the same
        bundler pulled it up to the bundler's node_modules.
        """
        path = [] if path is None else path
        if any(n is self for n in path):
            return None
        path.append(self)
        parent = self._parent
        if parent is None:
            return None
        parent_bundler = parent.get_bundler(path)
        if self._name in parent.bundle_dependencies:
            return parent
        if parent_bundler is not None:
            return parent_bundler
        for edge in self.edges_in:
            if edge.from_node is not None and edge.from_node.get_bundler(path) is parent:
                return parent
        return None

    @property
    def in_bundle(self) -> bool:
        return self.get_bundler() is not None

    @property
    def in_dep_bundle(self) -> bool:
        """Bundled by a dependency rather than by the project itself."""
        bundler = self.get_bundler()
        return bundler is not None and bundler is not self.root

    def query_selector_all(self, query: str) -> List["Node"]:
        return query_selector_all(self, query)

    def ancestry(self) -> Iterator["Node"]:
        node: Optional[Node] = self
        while node is not None:
            yield node
            node = node.resolve_parent

    def is_descendant_of(self, other: "Node") -> bool:
        return any(n is other for n in self.ancestry())

    # -----------------------
    # name resolution
    # -----------------------
    def lookup(self, name: str) -> Optional["Node"]:
        node: Optional[Node] = self
        while node is not None:
            child = node.children.get(name)
            if child is not None:
                return child
            node = node.resolve_parent
        return None

    def resolve(self, name: str) -> "Node":
        found = self.lookup(name)
        if found is None:
            raise NotFoundError(f"{name} is not resolvable from {self.location or '<root>'}", name=name)
        return found

    # -----------------------
    # edges
    # -----------------------
    def load_edges(self) -> None:
        """(Re)create edges_out from the manifest and the workspaces map."""
        for edge in list(self.edges_out.values()):
            edge.detach()
        if self.is_link:
            return
        pkg = self.package
        self._load_dep_type(pkg.get("dependencies"), "prod")
        self._load_dep_type(pkg.get("optionalDependencies"), "optional")
        if not self.legacy_peer_deps:
            meta = pkg.get("peerDependenciesMeta") or {}
            for name, spec in (pkg.get("peerDependencies") or {}).items():
                optional = bool((meta.get(name) or {}).get("optional"))
                self._load_dep(name, spec, "peerOptional" if optional else "peer")
        if self.is_top:
            for name, spec in (pkg.get("devDependencies") or {}).items():
                if name not in self.edges_out:
                    self._load_dep(name, spec, "dev")
        for name, path in self.workspaces.items():
            rel = posixpath.relpath(_norm(path), self.realpath) if self.realpath else path
            self._load_dep(name, f"file:{rel}", "workspace")

    def _load_dep_type(self, deps: Optional[Dict[str, str]], type: str) -> None:
        for name, spec in (deps or {}).items():
            self._load_dep(name, spec, type)

    def _load_dep(self, name: str, spec: Any, type: str) -> None:
        current = self.edges_out.get(name)
        if current is not None and current.workspace:
            return
        Edge(self, type, name, spec if isinstance(spec, str) else "*")

    def add_edge_out(self, edge: Edge) -> None:
        current = self.edges_out.get(edge.name)
        if current is not None and current is not edge:
            current.detach()
        self.edges_out[edge.name] = edge

    def _add_edge_in(self, edge: Edge) -> None:
        self.edges_in[edge] = None

    def _remove_edge_in(self, edge: Edge) -> None:
        self.edges_in.pop(edge, None)

    def assert_root_overrides(self) -> None:
        """Overrides may not change the spec of a direct dependency of the project."""
        if not self.is_project_root or self.overrides is None:
            return
        for edge in self.edges_out.values():
            if edge.spec != edge.raw_spec and not edge.spec.startswith("$"):
                raise OverrideConflictError(
                    f"Override for {edge.name}@{edge.raw_spec} conflicts with direct dependency",
                    name=edge.name, spec=edge.raw_spec, override=edge.spec,
                )

    # -----------------------
    # comparison
    # -----------------------
    def satisfies(self, requested: Any) -> bool:
        if isinstance(requested, Edge):
            return self._name == requested.name and requested.satisfied_by(self)
        text = str(requested)
        if text != self._name and semver.valid_range(text):
            spec = parse_spec(self._name, text, self.root.realpath)
        else:
            spec = parse_arg(text, self.root.realpath)
        name = spec.name or self._name
        return self._name == name and dep_valid(self, spec, None, None)

    def matches(self, node: "Node") -> bool:
        if node is self:
            return True
        if self._name != node.name or self.is_link != node.is_link:
            return False
        if self.is_link:
            return self.realpath == node.realpath
        if self.integrity and node.integrity:
            return self.integrity == node.integrity
        if self.resolved and node.resolved:
            return self.resolved == node.resolved
        return bool(self.package_name and self.version) and self.package_name == node.package_name and self.version == node.version

    def can_replace_with(self, node: "Node", ignore_peers: Optional[Set[str]] = None) -> bool:
        if node.name != self._name or node.package_name != self.package_name:
            return False
        if node.overrides is not self.overrides:
            return False
        ignore = set(ignore_peers or ())
        dep_set = gather_dep_set([self], lambda e: e.to is not self and e.valid)
        for edge in list(self.edges_in):
            if not self.is_top and edge.peer and edge.from_node.name in ignore:
                continue
            if edge.from_node not in dep_set and not edge.satisfied_by(node):
                return False
        return True

    def can_replace(self, node: "Node", ignore_peers: Optional[Set[str]] = None) -> bool:
        return node.can_replace_with(self, ignore_peers)

    def can_dedupe(self, prefer_dedupe: bool = False) -> bool:
        rp = self.resolve_parent
        if rp is None or rp.resolve_parent is None:
            return False
        if not self.edges_in:
            return True
        other = rp.resolve_parent.lookup(self._name)
        if other is None:
            return False
        if other.matches(self):
            return True
        if not other.can_replace(self):
            return False
        if prefer_dedupe:
            return True
        if other.version and self.version and semver.valid(other.version) and semver.valid(self.version):
            return semver.gte(other.version, self.version)
        return False

    def replace(self, node: "Node") -> None:
        """Put self where node currently sits, adopting node's children."""
        if node.name != self._name:
            raise ValueError(f"cannot replace {node.name} with {self._name}")
        kids = list(node.children.values())
        parent, fs_parent, root = node.parent, node.fs_parent, node.root
        if parent is not None:
            relocate(self, parent=parent)
        else:
            relocate(node)
            relocate(self, fs_parent=fs_parent, root=None if fs_parent is not None else root)
        if not self.is_link:
            for kid in kids:
                if kid.name not in self.children:
                    relocate(kid, parent=self)

    def replace_with(self, node: "Node") -> None:
        node.replace(self)

    # -----------------------
    # reporting
    # -----------------------
    def explain(self, seen: Optional[Set[int]] = None) -> Dict[str, Any]:
        seen = set() if seen is None else seen
        out: Dict[str, Any] = {"name": self.package_name, "version": self.version, "location": self.location}
        if self.is_workspace:
            out["isWorkspace"] = True
        for flag in ("dev", "optional", "peer", "extraneous"):
            if getattr(self, flag):
                out[flag] = True
        if id(self) in seen:
            return out
        seen.add(id(self))
        dependents = [e.explain(seen) for e in sorted(self.edges_in, key=lambda e: (e.from_node.location if e.from_node else "", e.name))]
        if dependents:
            out["dependents"] = dependents
        for link in self.links_in:
            out.setdefault("linksIn", []).append(link.explain(seen))
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self._name,
            "packageName": self.package_name,
            "version": self.version,
            "location": self.location,
            "resolved": self.resolved,
            "integrity": self.integrity,
            "dev": self.dev,
            "optional": self.optional,
            "devOptional": self.dev_optional,
            "peer": self.peer,
            "extraneous": self.extraneous,
            "isLink": self.is_link,
            "children": sorted(self.children.keys()),
            "edgesOut": {k: e.to_dict() for k, e in sorted(self.edges_out.items())},
            "errors": [str(e) for e in self.errors],
        }

    def __repr__(self):
        return f"<{type(self).__name__} {self.pkgid} at {self.location or '<root>'!r}>"


class Link(Node):
    is_link = True

    def __init__(self, name: Optional[str] = None, path: Optional[str] = None, target: Optional[Node] = None,
                 realpath: Optional[str] = None, parent: Optional[Node] = None, fs_parent: Optional[Node] = None,
                 root: Optional[Node] = None, **kwargs: Any):
        self._target: Optional[Node] = None
        super().__init__(name=name or (target.name if target is not None else None),
                         path=path, realpath=realpath, parent=parent, fs_parent=fs_parent, root=root,
                         load_edges=False, **kwargs)
        if target is not None:
            self.target = target

    @property
    def target(self) -> Optional[Node]:
        return self._target

    @target.setter
    def target(self, node: Optional[Node]) -> None:
        if self._target is not None:
            self._target.links_in.pop(self, None)
        self._target = node
        if node is not None:
            node.links_in[self] = None
        self.root.inventory.reindex(self)

    @property
    def package(self) -> Dict[str, Any]:
        return self._target.package if self._target is not None else {}

    @package.setter
    def package(self, pkg: Dict[str, Any]) -> None:
        raise AttributeError("a link's package comes from its target")

    @property
    def realpath(self) -> Optional[str]:
        if self._target is not None and self._target.path is not None:
            return self._target.path
        return self._realpath

    @property
    def resolved(self) -> Optional[str]:
        real, root = self.realpath, self.root.realpath
        if real is None or root is None:
            return None
        return "file:" + posixpath.relpath(real, root)

    @resolved.setter
    def resolved(self, value: Optional[str]) -> None:
        # derived from the target location
        pass

    def load_edges(self) -> None:
        for edge in list(self.edges_out.values()):
            edge.detach()

# -----------------------
# structural mutation
# -----------------------
def walk_subtree(node: Node) -> Iterator[Node]:
    """node and everything whose resolve_parent chain passes through it."""
    stack = [node]
    while stack:
        cur = stack.pop()
        yield cur
        stack.extend(reversed(list(cur.fs_children)))
        stack.extend(reversed(list(cur.children.values())))


def _named_edges(scope: Node, name: str) -> Iterator[Edge]:
    for n in walk_subtree(scope):
        edge = n.edges_out.get(name)
        if edge is not None:
            yield edge


def _take_root(node: Node, subtree: List[Node]) -> None:
    node._inventory = Inventory()
    for n in subtree:
        node._inventory.add(n)


def relocate(node: Node, parent: Optional[Node] = None, fs_parent: Optional[Node] = None, root: Optional[Node] = None) -> Optional[Node]:
    """
    Move node (with its subtree) under parent, fs_parent, or detach it.

    A same-named child already under parent is displaced: it is detached
    together with its own subtree and returned. Every edge whose resolution
    could change is reloaded.
    """
    if parent is not None and fs_parent is not None:
        raise ValueError("a node has either a parent or an fs_parent, not both")
    new_rp = parent or fs_parent
    if new_rp is not None and new_rp.is_descendant_of(node):
        raise ValueError(f"cannot move {node!r} beneath itself")
    if parent is not None and parent.is_link:
        raise ValueError("links cannot have children")

    old_root = node.root
    subtree = list(walk_subtree(node))
    edges: Dict[Edge, None] = {}
    for n in subtree:
        old_root._inventory.delete(n)
        for e in n.edges_out.values():
            edges[e] = None
        for e in n.edges_in:
            edges[e] = None

    if node._parent is not None and node._parent.children.get(node.name) is node:
        del node._parent.children[node.name]
    if node._fs_parent is not None:
        node._fs_parent.fs_children.pop(node, None)

    node._parent = parent
    node._fs_parent = fs_parent
    node._root = root if new_rp is None and root is not node else None

    displaced: Optional[Node] = None
    if parent is not None:
        current = parent.children.get(node.name)
        if current is not None and current is not node:
            displaced = current
        parent.children[node.name] = node
    if fs_parent is not None:
        fs_parent.fs_children[node] = None

    new_root = node.root
    if displaced is not None:
        d_subtree = list(walk_subtree(displaced))
        for n in d_subtree:
            new_root._inventory.delete(n)
            for e in n.edges_in:
                edges[e] = None
            for e in n.edges_out.values():
                edges[e] = None
        displaced._parent = None
        displaced._root = None
        _take_root(displaced, d_subtree)

    if new_root is node:
        _take_root(node, subtree)
    else:
        for n in subtree:
            new_root._inventory.add(n)

    if new_rp is not None:
        for e in _named_edges(new_rp, node.name):
            edges[e] = None
    for e in list(edges):
        e.reload()
    return displaced
