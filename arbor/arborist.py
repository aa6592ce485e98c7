# arbor/arborist.py
"""
Arborist: one object per project tying the pieces together.

    arb = Arborist("/path/to/project", registry=LocalRegistry(...))
    ideal = arb.build_ideal_tree(add=["left-pad@^1"])
    report = arb.reify()

The builder, loader, reifier and audit report keep their own option
defaults from the config file; keyword arguments override them per call.
"""

from __future__ import annotations
import os
from typing import Any, Dict, Iterable, List, Optional

from arbor.audit import AdvisoryFeed, AuditReport, LocalAdvisoryFeed
from arbor.build_ideal import IdealTreeBuilder, Problem
from arbor.config import get_config
from arbor.dep_flags import gather_dep_set
from arbor.errors import ManifestNotFoundError
from arbor.fetcher import Fetcher
from arbor.load_actual import load_actual
from arbor.logging import get_logger
from arbor.manifest import map_workspaces, read_package_json
from arbor.node import Node
from arbor.overrides import OverrideSet
from arbor.reify import Reifier
from arbor.registry import DirectoryRegistry, LocalRegistry, MetadataProvider, PackumentCache
from arbor.scripts import Runner
from arbor.shrinkwrap import Shrinkwrap, load_virtual

logger = get_logger("arborist")

_BUILD_OPTIONS = ("add", "rm", "update", "save_type", "prefer_dedupe", "dedupe", "legacy_peer_deps",
                  "strict_peer_deps", "engine_strict", "node_version", "force", "prune", "avoid",
                  "workspaces_enabled", "trace")
_REIFY_OPTIONS = ("dry_run", "save", "ignore_scripts", "omit", "parallel", "abort_event", "trust_cache")


def _split(options: Dict[str, Any], names: Iterable[str]) -> Dict[str, Any]:
    return {k: options.pop(k) for k in list(options) if k in names}


class Arborist:
    def __init__(self, path: str, registry: Optional[MetadataProvider] = None, advisories: Optional[AdvisoryFeed] = None,
                 script_runner: Optional[Runner] = None, cache_dir: Optional[str] = None):
        self.path = os.path.realpath(path)
        if registry is None:
            reg_path = get_config().get("registry.path")
            registry = DirectoryRegistry(reg_path) if reg_path else LocalRegistry()
        self.registry = registry
        self.cache = PackumentCache(registry)
        self.fetcher = Fetcher(registry, cache_dir=cache_dir)
        self.advisories = advisories or LocalAdvisoryFeed()
        self.script_runner = script_runner

        self.ideal_tree: Optional[Node] = None
        self.actual_tree: Optional[Node] = None
        self.virtual_tree: Optional[Node] = None
        self.problems: List[Problem] = []
        self.unresolved = 0
        self.package_changed = False
        self.audit_report: Optional[AuditReport] = None
        self.reify_report: Optional[Dict[str, Any]] = None

    # -------------------------
    # trees
    # -------------------------
    def build_ideal_tree(self, **options: Any) -> Node:
        builder = IdealTreeBuilder(self.path, self.registry, cache=self.cache, **options)
        self.ideal_tree = builder.build()
        self.problems = builder.problems
        self.unresolved = builder.unresolved
        self.package_changed = builder.package_changed
        return self.ideal_tree

    def load_actual(self, **options: Any) -> Node:
        self.actual_tree = load_actual(self.path, **options)
        return self.actual_tree

    def load_virtual(self) -> Node:
        """The tree described by the lockfile (or the hidden lockfile) without reading node_modules."""
        try:
            pkg = read_package_json(self.path)
        except ManifestNotFoundError:
            pkg = {}
        sw = Shrinkwrap.load(self.path)
        if not sw.loaded_from_disk:
            sw = Shrinkwrap.load_hidden(self.path)
        overrides = OverrideSet(pkg["overrides"]) if pkg.get("overrides") else None
        root = Node(path=self.path, package=pkg, overrides=overrides, workspaces=map_workspaces(self.path, pkg))
        self.virtual_tree = load_virtual(root, sw)
        return self.virtual_tree

    # -------------------------
    # workspaces
    # -------------------------
    def workspace_nodes(self, tree: Node, names: Iterable[str]) -> List[Node]:
        wanted = list(names)
        out: List[Node] = []
        for name in wanted:
            edge = tree.edges_out.get(name)
            if edge is not None and edge.workspace and edge.to is not None:
                node = edge.to.target if edge.to.is_link else edge.to
                if node is not None:
                    out.append(node)
                    continue
            path = os.path.realpath(os.path.join(self.path, name))
            match = next((n for n in tree.fs_children if n.realpath == path.replace(os.sep, "/")), None)
            if match is None:
                logger.warning("workspace %s not found in %s", name, self.path)
                continue
            out.append(match)
        return out

    def workspace_dependency_set(self, tree: Node, workspaces: Iterable[str], include_root: bool = False) -> Dict[Node, None]:
        """Every node the named workspaces (and optionally the root) need, links followed to their targets."""
        start: List[Node] = self.workspace_nodes(tree, workspaces)
        if include_root:
            start.append(tree)
        deps: Dict[Node, None] = {}
        queue = list(start)
        while queue:
            node = queue.pop()
            if node in deps:
                continue
            deps[node] = None
            if node.is_link and node.target is not None:
                queue.append(node.target)
            for edge in node.edges_out.values():
                if node is tree and edge.workspace:
                    continue
                if edge.to is not None:
                    queue.append(edge.to)
            for link in node.links_in:
                deps.setdefault(link, None)
        return deps

    def exclude_workspaces_dependency_set(self, tree: Node) -> Dict[Node, None]:
        """Nodes reachable from the root without passing through a workspace edge."""
        return gather_dep_set([tree], lambda e: not e.workspace)

    # -------------------------
    # operations
    # -------------------------
    def reify(self, ideal: Optional[Node] = None, workspaces: Optional[Iterable[str]] = None, **options: Any) -> Dict[str, Any]:
        reify_opts = _split(options, _REIFY_OPTIONS)
        if ideal is None:
            ideal = self.build_ideal_tree(**_split(options, _BUILD_OPTIONS))
        if options:
            raise TypeError(f"unexpected options: {sorted(options)}")
        filter_nodes = None
        if workspaces:
            filter_nodes = list(self.workspace_dependency_set(ideal, workspaces))
        reifier = Reifier(self.path, self.fetcher, script_runner=self.script_runner,
                          package_changed=self.package_changed, **reify_opts)
        self.reify_report = reifier.reify(ideal, actual=self.actual_tree, filter_nodes=filter_nodes)
        self.actual_tree = None
        return self.reify_report

    def dedupe(self, **options: Any) -> Dict[str, Any]:
        actual = self.load_actual()
        counts: Dict[str, int] = {}
        for node in actual.inventory:
            if not node.is_root and not node.is_link:
                counts[node.name] = counts.get(node.name, 0) + 1
        dupes = sorted(n for n, c in counts.items() if c > 1)
        logger.info("dedupe: %d duplicated names", len(dupes))
        ideal = self.build_ideal_tree(update=dupes, prefer_dedupe=True, dedupe=True,
                                      **_split(options, _BUILD_OPTIONS))
        return self.reify(ideal, **options)

    def audit(self, fix: bool = False, force: bool = False, **options: Any) -> AuditReport:
        tree = self._audit_tree()
        omit = options.pop("audit_omit", None)
        report = AuditReport(tree, self.advisories, cache=self.cache, omit=omit).run()
        if fix:
            fixable = report.fixable(force=force)
            if fixable:
                logger.info("audit fix: updating %s", ", ".join(sorted(fixable)))
                ideal = self.build_ideal_tree(update=sorted(fixable), avoid=fixable, force=force,
                                              **_split(options, _BUILD_OPTIONS))
                self.reify(ideal, **options)
                report = AuditReport(self.load_actual(), self.advisories, cache=self.cache, omit=omit).run()
        self.audit_report = report
        return report

    def _audit_tree(self) -> Node:
        if os.path.isdir(os.path.join(self.path, "node_modules")):
            return self.load_actual()
        virtual = self.load_virtual()
        if len(virtual.inventory) > 1:
            return virtual
        return self.build_ideal_tree()

    def close(self) -> None:
        self.fetcher.close()
