# arbor/build_ideal.py
"""
build_ideal.py - IdealTreeBuilder for Arbor

Features:
- Starts from package.json plus the lockfile (or a caller supplied tree)
- add / rm / update requests, saved into the root manifest
- Depth-ordered queue of nodes with problem edges; packument fetches for a
  node's edges fan out on a thread pool and join before any placement
- Placement walks from the dependent up its resolve_parent chain and takes
  the highest level that is OK, KEEP or REPLACE, stopping at a CONFLICT
- Peer dependencies are placed from the dependent's parent
- Overrides applied per node, root overrides asserted before resolution
- Post passes: optional dedupe, dep flags, failed optional pruning,
  extraneous pruning, engine and peer checks
- Dependencies a package bundles are left to its tarball: never resolved
  from the registry, never deduped, not reported missing before reify
- Problems collected as Problem records; only strict modes raise
"""

from __future__ import annotations
import os
import time
import uuid
import posixpath
from collections import deque
from copy import deepcopy
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from arbor import semver
from arbor.config import get_config
from arbor.dep_flags import calc_dep_flags
from arbor.edge import MISSING, Edge
from arbor.errors import (
    ArborError, ConfigInvalidError, EngineError, ManifestNotFoundError,
    NotFoundError, PeerViolationError, UnsatisfiableError,
)
from arbor.logging import get_logger
from arbor.manifest import map_workspaces, read_package_json
from arbor.node import Link, Node, relocate, walk_subtree
from arbor.overrides import OverrideSet
from arbor.registry import MetadataProvider, PackumentCache
from arbor.shrinkwrap import Shrinkwrap, load_virtual
from arbor.spec import Spec, parse_arg, parse_spec

logger = get_logger("build_ideal")

# placement outcomes
OK = "OK"
KEEP = "KEEP"
REPLACE = "REPLACE"
CONFLICT = "CONFLICT"

SAVE_FIELDS = {
    "prod": "dependencies",
    "dev": "devDependencies",
    "optional": "optionalDependencies",
    "peer": "peerDependencies",
    "peerOptional": "peerDependencies",
}
_DEP_FIELDS = ("dependencies", "devDependencies", "optionalDependencies", "peerDependencies")


def _now_ts() -> int:
    return int(time.time())


def _opt(value: Any, default: Any) -> Any:
    return default if value is None else value

# -----------------------
# Problem representation
# -----------------------
class Problem:
    def __init__(self, ptype: str, message: str, implicated: Optional[List[str]] = None, details: Optional[Dict[str, Any]] = None):
        self.id = str(uuid.uuid4())
        self.type = ptype
        self.message = message
        self.implicated = implicated or []
        self.details = details or {}
        self.ts = _now_ts()

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "message": self.message,
            "implicated": self.implicated,
            "details": self.details,
            "ts": self.ts
        }

    def __repr__(self):
        return f"<Problem {self.type}: {self.message}>"

# -----------------------
# Builder
# -----------------------
class IdealTreeBuilder:
    def __init__(self, path: str, registry: MetadataProvider, add: Optional[Iterable[str]] = None,
                 rm: Optional[Iterable[str]] = None, update: Any = None, save_type: Optional[str] = None,
                 prefer_dedupe: Optional[bool] = None, dedupe: bool = False,
                 legacy_peer_deps: Optional[bool] = None, strict_peer_deps: Optional[bool] = None,
                 engine_strict: Optional[bool] = None, node_version: Optional[str] = None,
                 force: bool = False, prune: Optional[bool] = None, avoid: Optional[Dict[str, str]] = None,
                 workspaces_enabled: bool = True, start: Optional[Node] = None,
                 cache: Optional[PackumentCache] = None, trace: bool = False):
        cfg = get_config()
        res = cfg.section("resolver")
        self.path = os.path.realpath(path)
        self.registry = registry
        self.cache = cache or PackumentCache(registry)
        self.add = list(add or [])
        self.rm = list(rm or [])
        if save_type is not None and save_type not in SAVE_FIELDS:
            raise ConfigInvalidError(f"invalid save type {save_type!r}, expected one of {sorted(SAVE_FIELDS)}", save_type=save_type)
        self.save_type = save_type
        self.prefer_dedupe = bool(_opt(prefer_dedupe, res.get("prefer_dedupe", False)))
        self.dedupe = dedupe
        self.legacy_peer_deps = bool(_opt(legacy_peer_deps, res.get("legacy_peer_deps", False)))
        self.strict_peer_deps = bool(_opt(strict_peer_deps, res.get("strict_peer_deps", False)))
        self.engine_strict = bool(_opt(engine_strict, res.get("engine_strict", False)))
        self.node_version = str(_opt(node_version, res.get("node_version", "20.0.0")))
        self.force = force
        self.prune = bool(_opt(prune, res.get("prune", True)))
        self.max_iterations = int(res.get("max_iterations", 100000))
        self.avoid: Dict[str, str] = dict(avoid or {})
        self.workspaces_enabled = workspaces_enabled
        self.start = start
        self.trace = trace
        self.update_all, self.update_names = self._parse_update(update)

        self.root: Optional[Node] = None
        self.problems: List[Problem] = []
        self.unresolved = 0
        self.package_changed = False
        self._explicit: Set[str] = set()
        self._queue: Dict[Node, None] = {}
        self._refreshed: Set[Edge] = set()
        self._failed: Set[Edge] = set()
        self._reported: Set[Edge] = set()
        self._failed_optional: Dict[Node, None] = {}
        self._iterations = 0

    @staticmethod
    def _parse_update(update: Any) -> Tuple[bool, Set[str]]:
        if update is True:
            return True, set()
        if isinstance(update, dict):
            if update.get("all"):
                return True, set()
            return False, set(update.get("names") or [])
        if isinstance(update, (list, tuple, set)):
            return False, set(update)
        return False, set()

    def _trace(self, msg: str, *args: Any) -> None:
        if self.trace:
            logger.info("[trace] " + msg, *args)
        else:
            logger.debug(msg, *args)

    def _problem(self, ptype: str, message: str, implicated: Optional[List[str]] = None, edge: Optional[Edge] = None, **details: Any) -> Problem:
        p = Problem(ptype, message, implicated=implicated, details=details)
        self.problems.append(p)
        if edge is not None:
            self._reported.add(edge)
        logger.warning("%s: %s", ptype, message)
        return p

    # -------------------------
    # entry point
    # -------------------------
    def build(self) -> Node:
        t0 = time.time()
        root = self._init_tree()
        self.root = root
        self._apply_user_requests(root)
        root.assert_root_overrides()
        self._apply_overrides(root)
        for node in sorted(root.inventory, key=lambda n: (n.depth, n.location)):
            if not node.is_link:
                self._enqueue(node)
        self._build_deps(root)
        if self.dedupe or self.prefer_dedupe:
            self._dedupe_pass(root)
        self._fix_dep_flags(root)
        self._check_problems(root)
        logger.info("ideal tree built in %.2fs: %d nodes, %d unresolved dependencies",
                    time.time() - t0, len(root.inventory), self.unresolved)
        return root

    # -------------------------
    # initial tree
    # -------------------------
    def _init_tree(self) -> Node:
        try:
            pkg = read_package_json(self.path)
        except ManifestNotFoundError:
            pkg = {}
        overrides = OverrideSet(pkg["overrides"]) if pkg.get("overrides") else None
        ws_map = map_workspaces(self.path, pkg) if self.workspaces_enabled else {}
        lockfile_version = int(get_config().get("lockfile.version", 3))

        if self.start is not None:
            root = self.start
            root.overrides = overrides
            root.workspaces = ws_map
            root.package = pkg
        else:
            root = Node(path=self.path, package=pkg, overrides=overrides, workspaces=ws_map,
                        legacy_peer_deps=self.legacy_peer_deps)
            sw = None
            if not self.update_all:
                sw = Shrinkwrap.load(self.path)
                if not sw.loaded_from_disk:
                    sw = Shrinkwrap.load_hidden(self.path)
            if sw is not None and sw.loaded_from_disk:
                self._trace("starting from %s", sw.filename)
                load_virtual(root, sw, legacy_peer_deps=self.legacy_peer_deps)
            else:
                root.meta = Shrinkwrap(path=self.path)
                root.meta.tree = root
        if not isinstance(root.meta, Shrinkwrap):
            root.meta = Shrinkwrap(path=self.path)
        root.meta.tree = root
        root.meta.lockfile_version = lockfile_version
        self._link_workspaces(root, ws_map, overrides)
        return root

    def _link_workspaces(self, root: Node, ws_map: Dict[str, str], overrides: Optional[OverrideSet]) -> None:
        for name, folder in sorted(ws_map.items()):
            folder = posixpath.normpath(folder.replace(os.sep, "/"))
            wpkg = read_package_json(folder)
            existing = root.children.get(name)
            if existing is not None and existing.is_link and existing.realpath == folder and existing.target is not None:
                existing.target.package = wpkg
                continue
            target = next((n for n in root.fs_children if n.path == folder), None)
            if target is None:
                target = Node(path=folder, package=wpkg, fs_parent=root, overrides=overrides,
                              legacy_peer_deps=self.legacy_peer_deps)
            else:
                target.package = wpkg
            Link(name=name, parent=root, target=target)
            self._trace("linked workspace %s -> %s", name, target.location)

    # -------------------------
    # add / rm requests
    # -------------------------
    def _apply_user_requests(self, root: Node) -> None:
        if not self.add and not self.rm:
            return
        pkg = deepcopy(root.package)
        for name in self.rm:
            for field in _DEP_FIELDS + ("peerDependenciesMeta",):
                if isinstance(pkg.get(field), dict):
                    pkg[field].pop(name, None)
        for arg in self.add:
            spec = parse_arg(arg, self.path)
            if spec.name is None:
                spec = self._name_spec(spec)
            name = spec.name
            save_spec = self._save_spec(spec, bare="@" not in arg.lstrip("@"))
            current = next((f for f in _DEP_FIELDS if name in (pkg.get(f) or {})), None)
            field = SAVE_FIELDS[self.save_type] if self.save_type else (current or "dependencies")
            for f in _DEP_FIELDS:
                if f != field and isinstance(pkg.get(f), dict):
                    pkg[f].pop(name, None)
            pkg.setdefault(field, {})[name] = save_spec
            if self.save_type == "peerOptional":
                pkg.setdefault("peerDependenciesMeta", {}).setdefault(name, {})["optional"] = True
            self._explicit.add(name)
            self._trace("requested %s@%s (%s)", name, save_spec, field)
        for field in _DEP_FIELDS:
            if field in pkg and not pkg[field]:
                del pkg[field]
        root.package = pkg
        self.package_changed = True

    def _name_spec(self, spec: Spec) -> Spec:
        """Name a bare path, git or url specifier from the package it points at."""
        if spec.type == "directory":
            manifest = read_package_json(spec.fetch_spec)
        else:
            manifest = self.registry.manifest_for(spec)
        name = manifest.get("name")
        if not name:
            raise UnsatisfiableError(f"cannot determine the package name of {spec.raw_spec}", spec=spec.raw_spec)
        return parse_spec(name, spec.raw_spec, self.path)

    def _save_spec(self, spec: Spec, bare: bool) -> str:
        if spec.type in ("directory", "file"):
            return "file:" + posixpath.relpath(spec.fetch_spec, self.path)
        if spec.registry and (bare or spec.type == "tag"):
            manifest = self.cache.manifest(spec.name, spec.raw_spec, self.path)
            version = manifest["version"]
            saved = version if semver.parse(version).prerelease else f"^{version}"
            if spec.type == "alias":
                return f"npm:{spec.sub_spec.name}@{saved}"
            return saved
        return spec.raw_spec

    # -------------------------
    # overrides
    # -------------------------
    def _apply_overrides(self, root: Node) -> None:
        """Give every node the override rule of the first edge that reaches it."""
        if root.overrides is None:
            return
        seen: Set[Node] = {root}
        queue = deque([root])
        while queue:
            node = queue.popleft()
            reached: List[Tuple[Node, Any]] = []
            for edge in node.edges_out.values():
                if edge.to is not None:
                    rule = edge.overrides.get_node_rule(edge.to) if edge.overrides is not None else None
                    reached.append((edge.to, rule))
            if node.is_link and node.target is not None:
                reached.append((node.target, node.overrides))
            for fs_child in node.fs_children:
                reached.append((fs_child, root.overrides))
            for to, rule in reached:
                if to in seen:
                    continue
                seen.add(to)
                self._set_overrides(to, rule)
                queue.append(to)

    @staticmethod
    def _set_overrides(node: Node, rule: Any) -> None:
        if node.overrides is rule:
            return
        node.overrides = rule
        for edge in list(node.edges_out.values()):
            edge.reload(hard=True)

    # -------------------------
    # queue
    # -------------------------
    def _enqueue(self, node: Node) -> None:
        self._queue[node] = None

    def _build_deps(self, root: Node) -> None:
        while self._queue:
            node = min(self._queue, key=lambda n: (n.depth, n.location))
            del self._queue[node]
            if node.root is not root:
                continue
            self._iterations += 1
            if self._iterations > self.max_iterations:
                self._problem("max_iterations", f"gave up after {self.max_iterations} placement rounds", [node.location])
                break
            edges = [e for _, e in sorted(node.edges_out.items()) if self._is_problem(e)]
            if not edges:
                continue
            self._prefetch(edges)
            for edge in edges:
                if edge.from_node is not node or not self._is_problem(edge):
                    continue
                self._process_edge(edge)

    def _prefetch(self, edges: Iterable[Edge]) -> None:
        names: List[str] = []
        for edge in edges:
            try:
                spec = edge.parsed_spec()
            except ValueError:
                continue
            if spec.type == "alias":
                names.append(spec.sub_spec.name)
            elif spec.registry:
                names.append(edge.name)
        if names:
            self.cache.prefetch(names)

    def _requested(self, edge: Edge) -> bool:
        return edge.from_node.is_project_root and edge.name in self._explicit

    def _avoided(self, node: Optional[Node]) -> bool:
        if node is None or not node.version:
            return False
        rng = self.avoid.get(node.package_name) or self.avoid.get(node.name)
        return bool(rng) and semver.satisfies(node.version, rng, include_prerelease=True)

    @staticmethod
    def _from_bundle(edge: Edge) -> bool:
        """The dependency arrives inside a tarball rather than from the registry."""
        src = edge.from_node
        if src is None or src.is_project_root or src.is_link or not src.in_node_modules():
            return False
        return edge.bundled or src.in_dep_bundle

    def _is_problem(self, edge: Edge) -> bool:
        if edge.from_node is None or edge in self._failed or edge.workspace:
            return False
        if self._from_bundle(edge):
            return False
        if edge.to is None:
            if edge.type == "peerOptional":
                return self._requested(edge) and edge not in self._refreshed
            return True
        if not edge.valid:
            return True
        if edge in self._refreshed:
            return False
        if self.update_all or edge.name in self.update_names:
            return True
        if self._requested(edge):
            return True
        return self._avoided(edge.to)

    # -------------------------
    # one edge
    # -------------------------
    def _process_edge(self, edge: Edge) -> Optional[Node]:
        self._refreshed.add(edge)
        try:
            dep = self._node_from_edge(edge)
        except (UnsatisfiableError, NotFoundError, ValueError) as e:
            self._failed.add(edge)
            self._record_failure(edge, e)
            return None
        except EngineError as e:
            if not edge.optional:
                raise
            self._failed.add(edge)
            logger.info("optional dependency %s skipped: %s", edge.name, e.message)
            return None
        return self._place_dep(dep, edge)

    def _record_failure(self, edge: Edge, err: Exception) -> None:
        from_node = edge.from_node
        message = err.message if isinstance(err, ArborError) else str(err)
        if edge.optional:
            logger.info("optional dependency %s of %s skipped: %s", edge.name, from_node.location or "<root>", message)
            return
        if not from_node.is_root:
            self._failed_optional[from_node] = None
        self._problem("unsatisfiable", message, [from_node.location or from_node.package_name, edge.name], edge=edge,
                      spec=edge.spec, code=getattr(err, "code", None))

    def _node_from_edge(self, edge: Edge) -> Node:
        from_node = edge.from_node
        spec = edge.parsed_spec()
        if spec.type == "directory":
            return self._link_from_spec(edge.name, spec)
        if spec.registry:
            manifest = self.cache.manifest(edge.name, edge.spec, from_node.realpath, avoid=self.avoid.get(edge.name))
            dist = manifest.get("dist") or {}
            resolved, integrity = dist.get("tarball"), dist.get("integrity")
        else:
            manifest = self.registry.manifest_for(spec)
            dist = manifest.get("dist") or {}
            integrity = manifest.get("_integrity") or dist.get("integrity")
            if spec.type == "file":
                resolved = "file:" + posixpath.relpath(spec.fetch_spec, self.root.realpath)
            else:
                resolved = manifest.get("_resolved") or spec.fetch_spec
        self._check_engine(manifest, edge)
        dep = Node(name=edge.name, package=manifest, resolved=resolved, integrity=integrity,
                   legacy_peer_deps=self.legacy_peer_deps, load_edges=False)
        dep.overrides = edge.overrides.get_node_rule(dep) if edge.overrides is not None else None
        dep.load_edges()
        return dep

    def _link_from_spec(self, name: str, spec: Spec) -> Link:
        root = self.root
        folder = spec.fetch_spec
        target = None
        for node in root.inventory:
            if not node.is_link and node.path == folder and not node.in_node_modules():
                target = node
                break
        if target is None:
            try:
                pkg = read_package_json(folder)
            except ManifestNotFoundError as e:
                raise UnsatisfiableError(f"{name}@{spec.raw_spec}: {e.message}", name=name, spec=spec.raw_spec) from e
            inside = root.realpath is not None and folder.startswith(root.realpath.rstrip("/") + "/")
            target = Node(path=folder, package=pkg, fs_parent=root if inside else None,
                          root=None if inside else root, overrides=root.overrides,
                          legacy_peer_deps=self.legacy_peer_deps)
            self._enqueue(target)
        return Link(name=name, target=target)

    def _check_engine(self, manifest: Dict[str, Any], edge: Edge) -> None:
        wanted = (manifest.get("engines") or {}).get("node")
        if not wanted or self.force or semver.satisfies(self.node_version, wanted, include_prerelease=True):
            return
        pkgid = f"{manifest.get('name')}@{manifest.get('version')}"
        msg = f"Unsupported engine for {pkgid}: wanted node {wanted} (current: {self.node_version})"
        if self.engine_strict:
            raise EngineError(msg, package=pkgid, wanted=wanted, current=self.node_version)
        self._problem("engine", msg, [pkgid], wanted=wanted, current=self.node_version)

    # -------------------------
    # placement
    # -------------------------
    def _place_dep(self, dep: Node, edge: Edge) -> Optional[Node]:
        from_node = edge.from_node
        start = from_node if (not edge.peer or from_node.is_top) else from_node.resolve_parent
        levels: List[Tuple[Node, str]] = []
        target = start
        while target is not None:
            outcome = self._can_place(dep, target, edge, target is start)
            self._trace("can place %s at %s: %s", dep.pkgid, target.location or "<root>", outcome)
            if outcome == CONFLICT:
                break
            levels.append((target, outcome))
            if outcome != OK:
                break
            target = target.resolve_parent

        if not levels:
            return self._handle_conflict(dep, edge, start)

        target, outcome = levels[-1]
        if outcome == KEEP:
            if not edge.valid:
                self._failed.add(edge)
            return None
        if outcome == REPLACE:
            existing = target.children[dep.name]
            self._trace("replacing %s with %s", existing.pkgid, dep.pkgid)
            dep.replace(existing)
        else:
            relocate(dep, parent=target)
        self._placed(dep)
        if not edge.valid:
            self._failed.add(edge)
        return dep

    def _placed(self, dep: Node) -> None:
        self._enqueue(dep)
        if dep.is_link and dep.target is not None:
            self._enqueue(dep.target)
        for edge in list(dep.edges_in):
            if not edge.valid:
                self._enqueue(edge.from_node)

    def _can_place(self, dep: Node, target: Node, edge: Edge, is_start: bool) -> str:
        if target.is_link:
            return CONFLICT
        existing = target.children.get(dep.name)
        if existing is None:
            if not is_start and self._shadows(dep, target, edge):
                return CONFLICT
            return OK
        if existing is dep or existing.matches(dep):
            return KEEP
        want_newer = self.update_all or dep.name in self.update_names or self._requested(edge)
        if edge.satisfied_by(existing) and not self._avoided(existing):
            if not want_newer:
                return KEEP
            if semver.valid(existing.version) and semver.valid(dep.version) and semver.gte(existing.version, dep.version):
                return KEEP
            return REPLACE if existing.can_replace_with(dep) else KEEP
        if existing.can_replace_with(dep):
            return REPLACE
        return CONFLICT

    @staticmethod
    def _shadows(dep: Node, target: Node, edge: Edge) -> bool:
        """True when placing dep in target would hide a valid resolution from below."""
        for node in walk_subtree(target):
            other = node.edges_out.get(dep.name)
            if other is None or other is edge or other.to is None:
                continue
            if other.to.is_descendant_of(target):
                continue
            if other.valid and not other.satisfied_by(dep):
                return True
        return False

    def _handle_conflict(self, dep: Node, edge: Edge, start: Node) -> Optional[Node]:
        existing = start.children.get(dep.name)
        where = start.location or "<root>"
        blocker = existing.pkgid if existing is not None else dep.name
        msg = f"could not resolve {edge.name}@{edge.spec} for {edge.from_node.pkgid}: conflicts with {blocker} at {where}"
        self._failed.add(edge)
        if edge.peer:
            self._problem("peer_conflict", msg, [edge.from_node.location, edge.name], edge=edge, spec=edge.spec)
            if self.strict_peer_deps:
                raise PeerViolationError(msg, name=edge.name, spec=edge.spec, dependent=edge.from_node.pkgid)
            return None
        if self.force and existing is not None:
            logger.warning("force: %s", msg)
            dep.replace(existing)
            self._placed(dep)
            return dep
        self._problem("conflict", msg, [edge.from_node.location, edge.name], edge=edge, spec=edge.spec)
        return None

    # -------------------------
    # post passes
    # -------------------------
    def _dedupe_pass(self, root: Node) -> None:
        changed = True
        while changed:
            changed = False
            for node in sorted(root.inventory, key=lambda n: (-n.depth, n.location)):
                if node.root is not root or node.is_root or not node.in_node_modules() or node.in_dep_bundle:
                    continue
                if node.can_dedupe(self.prefer_dedupe):
                    self._trace("deduped %s at %s", node.pkgid, node.location)
                    relocate(node)
                    changed = True

    def _optional_set(self, node: Node) -> Set[Node]:
        """node and the dependents that only pull it in through non-optional edges up to an optional edge."""
        out: Set[Node] = {node}
        queue = [node]
        while queue:
            cur = queue.pop()
            for edge in cur.edges_in:
                src = edge.from_node
                if edge.optional or src is None or src.is_root or src in out or not src.optional:
                    continue
                out.add(src)
                queue.append(src)
        return out

    def _fix_dep_flags(self, root: Node) -> None:
        calc_dep_flags(root)
        doomed: Set[Node] = set()
        for node in self._failed_optional:
            if node.root is root and node.optional and not node.is_root:
                doomed |= self._optional_set(node)
        if doomed:
            gone = {n.location for n in doomed}
            for node in sorted(doomed, key=lambda n: n.depth):
                if node.root is root:
                    logger.info("removing optional dependency %s after a failed install", node.pkgid)
                    relocate(node)
            self.problems = [p for p in self.problems
                             if not (p.type == "unsatisfiable" and gone.intersection(p.implicated))]
            calc_dep_flags(root)
        if self.prune:
            for node in sorted(root.inventory, key=lambda n: (n.depth, n.location)):
                if node.root is root and node.extraneous and not node.is_root:
                    self._trace("pruning extraneous %s", node.pkgid)
                    relocate(node)

    def _check_problems(self, root: Node) -> None:
        self.unresolved = 0
        for node in sorted(root.inventory, key=lambda n: n.location):
            for _, edge in sorted(node.edges_out.items()):
                err = edge.error
                if err is None or (err == MISSING and self._from_bundle(edge)):
                    continue
                self.unresolved += 1
                msg = f"{edge.type} dependency {edge.name}@{edge.spec} of {node.pkgid}: {err}"
                if edge.peer and self.strict_peer_deps:
                    raise PeerViolationError(msg, name=edge.name, spec=edge.spec, error=err)
                if edge not in self._reported:
                    self._problem(err, msg, [node.location, edge.name], edge=edge, spec=edge.spec)


def build_ideal_tree(path: str, registry: MetadataProvider, **options: Any) -> Tuple[Node, List[Problem]]:
    builder = IdealTreeBuilder(path, registry, **options)
    root = builder.build()
    return root, builder.problems
