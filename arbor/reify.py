# arbor/reify.py
"""
reify.py - make node_modules match the ideal tree

Flow:
 - diff the actual tree (loaded from disk unless given) against the ideal tree
 - removals first, deepest first, never outside a node_modules folder
 - additions and changes in waves of equal depth, shallowest first; each wave
   runs on a thread pool, fetch happens outside the per-folder lock
 - a changed package folder is retired to a dot sibling while the new one is
   extracted, nested node_modules are carried over, and the retired folder is
   restored when anything goes wrong
 - links become relative symlinks; workspace and local folders are only recorded
 - bundled packages are never fetched: they are checked in place after their
   bundler is extracted, and a bundle the ideal tree does not list yet is read
   from disk into it
 - node_modules/.package-lock.json always describes what was committed, so an
   interrupted run resumes from the truth; package-lock.json is written only
   after a run without required failures
 - install scripts run afterwards, dependencies first

Only integrity mismatches and explicit aborts stop the run. Any other failing
leaf is reported and its descendants skipped.
"""

from __future__ import annotations
import os
import shutil
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Set

from arbor.config import get_config
from arbor.diff import ADD, CHANGE, REMOVE, Diff
from arbor.dep_flags import calc_dep_flags
from arbor.errors import (
    ArborError, FetchError, FilesystemConflictError, IntegrityMismatchError, ManifestNotFoundError,
    ManifestParseError, ReifyAbortedError,
)
from arbor.fetcher import Fetcher, extract_tarball
from arbor.load_actual import ActualTreeLoader, load_actual
from arbor.logging import get_logger
from arbor.manifest import read_package_json, write_package_json
from arbor.node import Node
from arbor.scripts import Runner, ScriptScheduler
from arbor.shrinkwrap import HIDDEN_LOCKFILE, Shrinkwrap, meta_for_node

logger = get_logger("reify")


def _depth(location: str) -> int:
    return location.count("/node_modules/") + 1 if location else 0


def _retired_path(dest: str) -> str:
    return os.path.join(os.path.dirname(dest), f".{os.path.basename(dest)}-{uuid.uuid4().hex[:8]}")


def _remove_path(path: str) -> None:
    if os.path.islink(path) or os.path.isfile(path):
        os.unlink(path)
    elif os.path.isdir(path):
        shutil.rmtree(path)


class Reifier:
    def __init__(self, path: str, fetcher: Fetcher, script_runner: Optional[Runner] = None,
                 dry_run: Optional[bool] = None, save: Optional[bool] = None,
                 ignore_scripts: Optional[bool] = None, omit: Optional[List[str]] = None,
                 parallel: Optional[int] = None, abort_event: Optional[threading.Event] = None,
                 package_changed: bool = False, trust_cache: Optional[bool] = None):
        cfg = get_config().section("reify")
        self.path = os.path.realpath(path)
        self.fetcher = fetcher
        if trust_cache is not None:
            fetcher.trust_cache = trust_cache
        self.script_runner = script_runner
        self.dry_run = bool(cfg.get("dry_run", False) if dry_run is None else dry_run)
        self.save = bool(cfg.get("save", True) if save is None else save)
        self.ignore_scripts = bool(cfg.get("ignore_scripts", False) if ignore_scripts is None else ignore_scripts)
        self.omit = list(cfg.get("omit") or [] if omit is None else omit)
        self.parallel = max(1, int(parallel or cfg.get("parallel", 4)))
        self.abort_event = abort_event or threading.Event()
        self.package_changed = package_changed

        self.diff: Optional[Diff] = None
        self._committed: Dict[str, Node] = {}
        self._removed: Set[str] = set()
        self._failed: Dict[str, Dict[str, Any]] = {}
        self._skipped: List[str] = []
        self._dir_locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._state_lock = threading.Lock()

    # -------------------------
    # entry point
    # -------------------------
    def reify(self, ideal: Node, actual: Optional[Node] = None, filter_nodes: Optional[List[Node]] = None) -> Dict[str, Any]:
        t0 = time.time()
        if actual is None:
            actual = load_actual(self.path, legacy_peer_deps=ideal.legacy_peer_deps)
        self.diff = Diff.calculate(actual, ideal, filter_nodes=filter_nodes, omit=self.omit)
        leaves = self.diff.leaves()
        logger.info("reify plan: %d actions (%d unchanged)", len(leaves), len(self.diff.unchanged))

        if self.dry_run:
            return self._report(leaves, dry_run=True)

        self._actual = actual
        self._ideal = ideal
        removes = [d for d in leaves if d.action == REMOVE]
        others = [d for d in leaves if d.action != REMOVE]

        for d in removes:
            self._check_abort()
            self._remove_leaf(d)

        waves: Dict[int, List[Diff]] = {}
        for d in others:
            waves.setdefault(_depth(d.location), []).append(d)
        for depth in sorted(waves):
            self._check_abort()
            self._run_wave(waves[depth])

        self._save_hidden()
        required_failures = [f for f in self._failed.values() if not f.get("optional")]
        if self.save and not required_failures:
            self._save_lockfile(ideal)
        elif required_failures:
            logger.warning("not saving package-lock.json: %d required packages failed", len(required_failures))

        report = self._report(leaves)
        if not self.ignore_scripts and not required_failures:
            nodes = [n for loc, n in sorted(self._committed.items()) if not n.is_link]
            report["scripts"] = ScriptScheduler(nodes, self.script_runner).run()
        logger.info("reify finished in %.2fs: %d added, %d changed, %d removed, %d failed",
                    time.time() - t0, len(report["added"]), len(report["changed"]),
                    len(report["removed"]), len(report["failed"]))
        return report

    def _report(self, leaves: List[Diff], dry_run: bool = False) -> Dict[str, Any]:
        if dry_run:
            return {
                "dry_run": True,
                "added": [d.location for d in leaves if d.action == ADD],
                "changed": [d.location for d in leaves if d.action == CHANGE],
                "removed": [d.location for d in leaves if d.action == REMOVE],
                "failed": [],
                "skipped": [],
                "scripts": [],
            }
        return {
            "dry_run": False,
            "added": sorted(d.location for d in leaves if d.action == ADD and d.location in self._committed),
            "changed": sorted(d.location for d in leaves if d.action == CHANGE and d.location in self._committed),
            "removed": sorted(self._removed),
            "failed": [self._failed[k] for k in sorted(self._failed)],
            "skipped": sorted(self._skipped),
            "scripts": [],
        }

    def _check_abort(self) -> None:
        if self.abort_event.is_set():
            self._save_hidden()
            raise ReifyAbortedError("reify aborted", committed=sorted(self._committed))

    # -------------------------
    # removals
    # -------------------------
    def _inside_node_modules(self, node: Node) -> bool:
        path = node.path or ""
        return node.in_node_modules() and path.startswith(self.path.rstrip("/") + "/")

    def _remove_leaf(self, d: Diff) -> None:
        node = d.actual
        if not self._inside_node_modules(node):
            logger.debug("not removing %s: outside node_modules", node.location)
            return
        try:
            _remove_path(node.path)
        except OSError as e:
            self._fail(d, e)
            return
        self._removed.add(d.location)
        logger.debug("removed %s", node.location)

    # -------------------------
    # additions and changes
    # -------------------------
    def _dir_lock(self, path: str) -> threading.Lock:
        with self._locks_guard:
            return self._dir_locks.setdefault(path, threading.Lock())

    def _blocked(self, d: Diff) -> bool:
        node = d.ideal
        with self._state_lock:
            failed = set(self._failed)
        for anc in node.ancestry():
            if anc is not node and anc.location in failed:
                return True
        return node.is_link and node.target is not None and node.target.location in failed

    def _run_wave(self, wave: List[Diff]) -> None:
        todo: List[Diff] = []
        for d in wave:
            if self._blocked(d):
                logger.warning("skipping %s: a containing package failed", d.location)
                self._skipped.append(d.location)
            else:
                todo.append(d)
        integrity_errors: List[IntegrityMismatchError] = []
        with ThreadPoolExecutor(max_workers=self.parallel, thread_name_prefix="arbor-reify") as pool:
            futures = [(d, pool.submit(self._reify_leaf, d)) for d in todo]
            for d, fut in futures:
                try:
                    fut.result()
                except IntegrityMismatchError as e:
                    integrity_errors.append(e)
                    self._fail(d, e)
                except (ArborError, OSError) as e:
                    self._fail(d, e)
        if integrity_errors:
            self._save_hidden()
            raise integrity_errors[0]
        self._load_bundles(todo)

    def _fail(self, d: Diff, err: Exception) -> None:
        node = d.ideal if d.ideal is not None else d.actual
        record = {
            "location": d.location,
            "code": getattr(err, "code", None) or type(err).__name__,
            "message": getattr(err, "message", None) or str(err),
        }
        if d.ideal is not None and d.ideal.optional:
            record["optional"] = True
        with self._state_lock:
            self._failed[d.location] = record
        logger.error("failed to reify %s: %s", node.pkgid, record["message"])

    def _commit(self, node: Node) -> None:
        with self._state_lock:
            self._committed[node.location] = node

    def _reify_leaf(self, d: Diff) -> None:
        node = d.ideal
        if not node.in_node_modules() and not node.is_link:
            # workspace folders and local packages are used where they are
            self._commit(node)
            return
        if not node.is_link and node.in_dep_bundle:
            self._check_bundled(node)
            self._commit(node)
            return
        data = None if node.is_link else self.fetcher.fetch(node)
        dest = node.path
        parent_dir = os.path.dirname(dest)
        os.makedirs(parent_dir, exist_ok=True)
        with self._dir_lock(parent_dir):
            if d.action == ADD and os.path.lexists(dest):
                raise FilesystemConflictError(f"{dest} already exists and is not part of the installed tree", path=dest)
            retired = None
            if os.path.lexists(dest):
                retired = _retired_path(dest)
                os.rename(dest, retired)
            try:
                if node.is_link:
                    os.symlink(os.path.relpath(node.realpath, parent_dir), dest)
                else:
                    extract_tarball(data, dest)
                    self._carry_node_modules(retired, dest)
            except BaseException:
                if os.path.lexists(dest):
                    _remove_path(dest)
                if retired is not None:
                    os.rename(retired, dest)
                raise
            if retired is not None:
                _remove_path(retired)
        self._commit(node)
        logger.debug("%s %s", "added" if d.action == ADD else "changed", node.pkgid)

    @staticmethod
    def _carry_node_modules(retired: Optional[str], dest: str) -> None:
        if retired is None or os.path.islink(retired):
            return
        old_nm = os.path.join(retired, "node_modules")
        new_nm = os.path.join(dest, "node_modules")
        if not os.path.isdir(old_nm):
            return
        if not os.path.lexists(new_nm):
            os.rename(old_nm, new_nm)
            return
        # the new tarball ships a bundle; nested packages it does not replace stay
        for entry in sorted(os.listdir(old_nm)):
            src, dst = os.path.join(old_nm, entry), os.path.join(new_nm, entry)
            if entry.startswith("."):
                continue
            if entry.startswith("@") and os.path.isdir(dst) and not os.path.islink(src):
                for sub in sorted(os.listdir(src)):
                    if not os.path.lexists(os.path.join(dst, sub)):
                        os.rename(os.path.join(src, sub), os.path.join(dst, sub))
            elif not os.path.lexists(dst):
                os.rename(src, dst)

    # -------------------------
    # bundled dependencies
    # -------------------------
    @staticmethod
    def _check_bundled(node: Node) -> None:
        """A bundled package is never fetched; its bundler's tarball must have put it in place."""
        bundler = node.get_bundler()
        try:
            version = read_package_json(node.path).get("version") or ""
        except (ManifestNotFoundError, ManifestParseError) as e:
            raise FetchError(f"{node.pkgid} is missing from the bundle of {bundler.pkgid}",
                             name=node.package_name, bundler=bundler.location) from e
        if node.version and version != node.version:
            raise FetchError(f"bundle of {bundler.pkgid} ships {node.package_name}@{version}, wanted {node.version}",
                             name=node.package_name, bundler=bundler.location)

    def _load_bundles(self, wave: List[Diff]) -> None:
        loader = None
        loaded: List[Node] = []
        for d in wave:
            node = d.ideal
            if node.is_link or not node.bundle_dependencies or d.location not in self._committed:
                continue
            if not node.in_node_modules():
                continue
            loader = loader or ActualTreeLoader(self.path, legacy_peer_deps=self._ideal.legacy_peer_deps,
                                                hidden_lockfile=False)
            loaded.extend(loader.load_bundle(node))
        if not loaded:
            return
        calc_dep_flags(self._ideal)
        for node in loaded:
            self._commit(node)
        logger.info("loaded %d bundled packages", len(loaded))

    # -------------------------
    # lockfiles
    # -------------------------
    def _save_hidden(self) -> str:
        """Record what node_modules holds now: kept actual entries, then unchanged and committed ideal ones."""
        sw = Shrinkwrap(path=self.path, lockfile_version=3, hidden=True)
        sw.name = self._ideal.package_name
        sw.version = self._ideal.version or None
        packages: Dict[str, Dict[str, Any]] = {}
        with self._state_lock:
            removed = set(self._removed)
            committed = dict(self._committed)
        for node in self._actual.inventory:
            loc = node.location
            if node.is_root or loc in removed:
                continue
            if any(loc.startswith(r + "/") for r in removed):
                continue
            packages[loc] = meta_for_node(node)
        for node in self.diff.unchanged:
            if not node.is_root:
                packages[node.location] = meta_for_node(node)
        for loc, node in committed.items():
            packages[loc] = meta_for_node(node)
        sw.packages = packages
        return sw.save(os.path.join(self.path, HIDDEN_LOCKFILE))

    def _save_lockfile(self, ideal: Node) -> str:
        sw = ideal.meta if isinstance(ideal.meta, Shrinkwrap) else Shrinkwrap(path=self.path)
        sw.tree = ideal
        ideal.meta = sw
        filename = sw.filename
        if sw.hidden or not filename:
            filename = os.path.join(self.path, "package-lock.json")
        sw.hidden = False
        saved = sw.save(filename)
        if self.package_changed:
            write_package_json(self.path, ideal.package)
        logger.info("saved %s", saved)
        return saved


def reify(path: str, ideal: Node, fetcher: Fetcher, **options: Any) -> Dict[str, Any]:
    actual = options.pop("actual", None)
    return Reifier(path, fetcher, **options).reify(ideal, actual=actual)
