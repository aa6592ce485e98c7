# arbor/load_actual.py
"""
Actual tree loader: rebuild the graph from what is installed on disk.

Features:
- walks node_modules folders recursively (``@scope/name`` folders, dot entries skipped)
- symlinks become Links; their targets are loaded as fs_children of the root
  when they live under the project, otherwise as external tops
- unreadable manifests are recorded on the node (ENOENT / EJSONPARSE)
- resolved/integrity filled from the hidden lockfile where versions agree;
  bundled packages have neither, they arrive inside their bundler
- load_bundle(): read a freshly extracted bundler's node_modules into a tree
- dep flags recomputed, so unreachable packages end up extraneous
"""

from __future__ import annotations
import os
import posixpath
from typing import Any, Iterable, List, Optional, Tuple

from arbor.config import get_config
from arbor.dep_flags import calc_dep_flags
from arbor.errors import ManifestNotFoundError, ManifestParseError
from arbor.logging import get_logger
from arbor.manifest import map_workspaces, read_package_json
from arbor.node import Link, Node, walk_subtree
from arbor.overrides import OverrideSet
from arbor.shrinkwrap import Shrinkwrap

logger = get_logger("load_actual")


def _norm(path: str) -> str:
    return posixpath.normpath(path.replace(os.sep, "/"))


class ActualTreeLoader:
    def __init__(self, path: str, legacy_peer_deps: Optional[bool] = None, hidden_lockfile: Optional[bool] = None):
        cfg = get_config()
        self.path = os.path.realpath(path)
        self.legacy_peer_deps = bool(cfg.get("resolver.legacy_peer_deps", False) if legacy_peer_deps is None else legacy_peer_deps)
        self.hidden_lockfile = bool(cfg.get("lockfile.hidden", True) if hidden_lockfile is None else hidden_lockfile)
        self._links: List[Tuple[Link, str]] = []
        self.root: Optional[Node] = None

    def load(self) -> Node:
        error = None
        try:
            pkg = read_package_json(self.path)
        except ManifestNotFoundError:
            pkg = {}
        except ManifestParseError as e:
            pkg, error = {}, e
        overrides = OverrideSet(pkg["overrides"]) if pkg.get("overrides") else None
        root = Node(path=self.path, package=pkg, error=error, overrides=overrides,
                    workspaces=map_workspaces(self.path, pkg), legacy_peer_deps=self.legacy_peer_deps)
        self.root = root
        self._load_children(root)
        self._resolve_links(root)

        if self.hidden_lockfile:
            hidden = Shrinkwrap.load_hidden(self.path)
            if hidden.loaded_from_disk:
                filled = sum(1 for node in root.inventory
                             if not node.is_root and not node.in_dep_bundle and hidden.check_node(node))
                logger.debug("hidden lockfile matched %d of %d nodes", filled, len(root.inventory) - 1)
        root.meta = Shrinkwrap.load(self.path)
        root.meta.tree = root
        calc_dep_flags(root)
        logger.info("loaded actual tree at %s: %d nodes", self.path, len(root.inventory))
        return root

    # -------------------------
    # node_modules walk
    # -------------------------
    def _load_children(self, node: Node, skip: Iterable[str] = ()) -> List[str]:
        nm = os.path.join(node.realpath, "node_modules")
        if not os.path.isdir(nm):
            return []
        skip = set(skip)
        entries: List[Tuple[str, str]] = []
        for entry in sorted(os.listdir(nm)):
            if entry.startswith("."):
                continue
            full = os.path.join(nm, entry)
            if entry.startswith("@") and os.path.isdir(full) and not os.path.islink(full):
                for sub in sorted(os.listdir(full)):
                    if not sub.startswith("."):
                        entries.append((f"{entry}/{sub}", os.path.join(full, sub)))
            else:
                entries.append((entry, full))
        loaded = []
        for name, full in entries:
            if name not in skip and self._load_entry(node, name, full):
                loaded.append(name)
        return loaded

    def load_bundle(self, bundler: Node) -> List[Node]:
        """
        Read what a freshly extracted bundler brought in its own node_modules
        into the tree, leaving children the tree already places there alone.
        """
        self.root = bundler.root
        names = self._load_children(bundler, skip=list(bundler.children))
        self._resolve_links(bundler.root)
        nodes = [n for name in names for n in walk_subtree(bundler.children[name])]
        if nodes:
            logger.debug("bundle of %s: %d nodes", bundler.pkgid, len(nodes))
        return nodes

    def _load_entry(self, parent: Node, name: str, full: str) -> bool:
        if os.path.islink(full):
            real = _norm(os.path.realpath(full))
            link = Link(name=name, parent=parent, realpath=real)
            self._links.append((link, real))
            return True
        if not os.path.isdir(full):
            return False
        node = self._node_at(full, name=name, parent=parent)
        self._load_children(node)
        return True

    def _node_at(self, folder: str, **where: Any) -> Node:
        error = None
        try:
            pkg = read_package_json(folder)
        except (ManifestNotFoundError, ManifestParseError) as e:
            logger.warning("%s: %s", e.code, e.message)
            pkg, error = {}, e
        if "name" not in where:
            where["path"] = folder
        return Node(package=pkg, error=error, legacy_peer_deps=self.legacy_peer_deps, **where)

    def _resolve_links(self, root: Node) -> None:
        while self._links:
            link, real = self._links.pop(0)
            target = next((n for n in root.inventory if not n.is_link and n.realpath == real), None)
            if target is None:
                inside = real.startswith(_norm(self.path).rstrip("/") + "/")
                if inside:
                    target = self._node_at(real, fs_parent=root)
                else:
                    target = self._node_at(real, root=root)
                if os.path.isdir(real):
                    self._load_children(target)
                else:
                    logger.warning("broken link %s -> %s", link.location, real)
            link.target = target


def load_actual(path: str, **options: Any) -> Node:
    return ActualTreeLoader(path, **options).load()
