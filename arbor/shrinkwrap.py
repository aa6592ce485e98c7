# arbor/shrinkwrap.py
# -*- coding: utf-8 -*-
"""
Shrinkwrap: per-location lock metadata and the lockfile formats.

Features:
- lockfile versions 1 (nested ``dependencies``), 2 (both) and 3 (``packages``)
- internally always keyed by location (the v3 shape); v1 input is converted
- commit() rebuilds the metadata from an attached tree, or normalizes the
  loaded data when no tree is attached
- load_virtual(): build a tree from lock metadata without touching node_modules
- atomic save (temp file + os.replace)
"""

from __future__ import annotations
import os
import json
import posixpath
import tempfile
from copy import deepcopy
from typing import Any, Dict, List, Optional, Tuple

from arbor.config import get_config
from arbor.logging import get_logger
from arbor.node import Link, Node

logger = get_logger("shrinkwrap")

LOCKFILE_NAMES = ("npm-shrinkwrap.json", "package-lock.json")
HIDDEN_LOCKFILE = posixpath.join("node_modules", ".package-lock.json")

# manifest fields carried into lock entries, in output order
_PKG_FIELDS = (
    "dependencies", "devDependencies", "optionalDependencies", "peerDependencies",
    "peerDependenciesMeta", "bundleDependencies", "bin", "engines", "os", "cpu", "license", "funding", "deprecated",
)
_ROOT_FIELDS = ("dependencies", "devDependencies", "optionalDependencies", "peerDependencies",
                "peerDependenciesMeta", "workspaces", "bin", "engines", "license")


def _nm_parts(location: str) -> Optional[List[str]]:
    """'node_modules/a/node_modules/@s/b' -> ['a', '@s/b']; None outside node_modules."""
    if not location.startswith("node_modules/"):
        return None
    return location[len("node_modules/"):].split("/node_modules/")


def _name_from_location(location: str) -> str:
    idx = location.rfind("node_modules/")
    if idx != -1:
        return location[idx + len("node_modules/"):]
    return posixpath.basename(location)


def _parent_location(location: str) -> Optional[str]:
    idx = location.rfind("node_modules/")
    if idx == -1:
        return None
    return location[:idx].rstrip("/")


def _location_sort_key(location: str) -> Tuple[int, str]:
    return (location.count("node_modules/"), location)

# -----------------------
# node <-> metadata
# -----------------------
def meta_for_node(node: Node) -> Dict[str, Any]:
    if node.is_root:
        pkg = node.package
        meta: Dict[str, Any] = {"name": node.package_name}
        if node.version:
            meta["version"] = node.version
        for field in _ROOT_FIELDS:
            if pkg.get(field):
                meta[field] = deepcopy(pkg[field])
        if node.has_install_script:
            meta["hasInstallScript"] = True
        return meta

    if node.is_link:
        meta = {"resolved": (node.resolved or "file:")[5:], "link": True}
    else:
        meta = {}
        if node.package_name != node.name or not node.in_node_modules():
            meta["name"] = node.package_name
        if node.version:
            meta["version"] = node.version
        if node.in_dep_bundle:
            # shipped inside the bundler's tarball, never fetched on its own
            meta["inBundle"] = True
        else:
            if node.resolved:
                meta["resolved"] = node.resolved
            if node.integrity:
                meta["integrity"] = node.integrity
    if node.extraneous:
        meta["extraneous"] = True
    else:
        if node.dev:
            meta["dev"] = True
        if node.optional:
            meta["optional"] = True
        if node.dev_optional and not node.dev and not node.optional:
            meta["devOptional"] = True
        if node.peer:
            meta["peer"] = True
    if node.is_link:
        return meta
    pkg = node.package
    for field in _PKG_FIELDS:
        if field == "devDependencies" and node.in_node_modules():
            continue
        if pkg.get(field):
            meta[field] = deepcopy(pkg[field])
    if node.has_install_script:
        meta["hasInstallScript"] = True
    return meta


def _package_from_meta(meta: Dict[str, Any], name: str) -> Dict[str, Any]:
    pkg: Dict[str, Any] = {"name": meta.get("name") or name}
    if meta.get("version"):
        pkg["version"] = meta["version"]
    for field in _PKG_FIELDS + ("workspaces",):
        if field in meta:
            pkg[field] = deepcopy(meta[field])
    if meta.get("hasInstallScript"):
        pkg["hasInstallScript"] = True
    return pkg

# -----------------------
# v1 <-> packages map
# -----------------------
def _v1_to_packages(deps: Dict[str, Any], root_meta: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    packages: Dict[str, Dict[str, Any]] = {"": dict(root_meta)}

    def walk(entries: Dict[str, Any], prefix: str) -> None:
        for name, entry in entries.items():
            loc = f"{prefix}node_modules/{name}"
            version = entry.get("version") or ""
            meta: Dict[str, Any] = {}
            if version.startswith("file:"):
                meta["resolved"] = version[5:]
                meta["link"] = True
            elif version.startswith("npm:"):
                real = version[4:]
                at = real.rfind("@")
                meta["name"], meta["version"] = real[:at], real[at + 1:]
            else:
                meta["version"] = version
            for key in ("resolved", "integrity"):
                if entry.get(key):
                    meta[key] = entry[key]
            for flag in ("dev", "optional"):
                if entry.get(flag):
                    meta[flag] = True
            if entry.get("bundled"):
                meta["inBundle"] = True
            if entry.get("requires"):
                meta["dependencies"] = dict(entry["requires"])
            packages[loc] = meta
            walk(entry.get("dependencies") or {}, loc + "/")

    walk(deps, "")
    return packages


def _packages_to_v1(packages: Dict[str, Dict[str, Any]]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    index: Dict[str, Dict[str, Any]] = {}
    for loc in sorted(packages, key=_location_sort_key):
        parts = _nm_parts(loc)
        if not parts:
            continue
        meta = packages[loc]
        name = parts[-1]
        entry: Dict[str, Any] = {}
        if meta.get("link"):
            entry["version"] = "file:" + (meta.get("resolved") or "")
        else:
            version = meta.get("version") or ""
            if meta.get("name") and meta["name"] != name:
                version = f"npm:{meta['name']}@{version}"
            entry["version"] = version
            for key in ("resolved", "integrity"):
                if meta.get(key):
                    entry[key] = meta[key]
        for flag in ("dev", "optional"):
            if meta.get(flag):
                entry[flag] = True
        if meta.get("inBundle"):
            entry["bundled"] = True
        requires = dict(meta.get("dependencies") or {})
        requires.update(meta.get("optionalDependencies") or {})
        if requires:
            entry["requires"] = requires
        if len(parts) == 1:
            out[name] = entry
        else:
            parent = index.get(_parent_location(loc))
            if parent is None:
                logger.debug("shrinkwrap: orphaned lock entry %s left out of v1 data", loc)
                continue
            parent.setdefault("dependencies", {})[name] = entry
        index[loc] = entry
    return out

# -----------------------
# Shrinkwrap
# -----------------------
class Shrinkwrap:
    def __init__(self, path: Optional[str] = None, lockfile_version: Optional[int] = None, hidden: bool = False):
        self.path = path
        self.hidden = hidden
        self.filename: Optional[str] = None
        self.lockfile_version = int(lockfile_version or get_config().get("lockfile.version", 3))
        self.loaded_lockfile_version: Optional[int] = None
        self.load_error: Optional[str] = None
        self.tree: Optional[Node] = None
        self.name: Optional[str] = None
        self.version: Optional[str] = None
        self.packages: Dict[str, Dict[str, Any]] = {}

    # -----------------------
    # construction
    # -----------------------
    @classmethod
    def from_data(cls, data: Dict[str, Any], path: Optional[str] = None, lockfile_version: Optional[int] = None) -> "Shrinkwrap":
        loaded = int(data.get("lockfileVersion") or 1)
        sw = cls(path=path, lockfile_version=lockfile_version or loaded)
        sw.loaded_lockfile_version = loaded
        sw.name = data.get("name")
        sw.version = data.get("version")
        if isinstance(data.get("packages"), dict):
            sw.packages = deepcopy(data["packages"])
        else:
            root_meta = {"name": sw.name} if sw.name else {}
            if sw.version:
                root_meta["version"] = sw.version
            sw.packages = _v1_to_packages(data.get("dependencies") or {}, root_meta)
        return sw

    @classmethod
    def load(cls, path: str, lockfile_version: Optional[int] = None) -> "Shrinkwrap":
        """Read npm-shrinkwrap.json or package-lock.json from a project folder."""
        for fname in LOCKFILE_NAMES:
            fpath = os.path.join(path, fname)
            if os.path.exists(fpath):
                return cls._load_file(fpath, path, lockfile_version, hidden=False)
        return cls(path=path, lockfile_version=lockfile_version)

    @classmethod
    def load_hidden(cls, path: str) -> "Shrinkwrap":
        fpath = os.path.join(path, HIDDEN_LOCKFILE)
        if os.path.exists(fpath):
            return cls._load_file(fpath, path, 3, hidden=True)
        return cls(path=path, lockfile_version=3, hidden=True)

    @classmethod
    def _load_file(cls, fpath: str, path: str, lockfile_version: Optional[int], hidden: bool) -> "Shrinkwrap":
        try:
            with open(fpath, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning("shrinkwrap: ignoring unreadable lockfile %s: %s", fpath, e)
            sw = cls(path=path, lockfile_version=lockfile_version, hidden=hidden)
            sw.load_error = str(e)
            return sw
        sw = cls.from_data(data, path=path, lockfile_version=lockfile_version)
        sw.hidden = hidden
        sw.filename = fpath
        logger.debug("shrinkwrap: loaded %s (lockfileVersion=%s, %d entries)", fpath, sw.loaded_lockfile_version, len(sw.packages))
        return sw

    @property
    def loaded_from_disk(self) -> bool:
        return self.filename is not None

    # -----------------------
    # per-location access
    # -----------------------
    def get(self, location: str) -> Dict[str, Any]:
        return deepcopy(self.packages.get(location, {}))

    def add(self, node: Node) -> Dict[str, Any]:
        meta = meta_for_node(node)
        self.packages[node.location] = meta
        return meta

    def delete(self, location: str) -> None:
        self.packages.pop(location, None)

    def check_node(self, node: Node) -> bool:
        """Fill resolved/integrity of an on-disk node whose version matches the record."""
        meta = self.packages.get(node.location)
        if not meta or node.is_link or meta.get("link"):
            return False
        if meta.get("version") and meta["version"] != node.version:
            return False
        if node.resolved is None and meta.get("resolved"):
            node.resolved = meta["resolved"]
        if node.integrity is None and meta.get("integrity"):
            node.integrity = meta["integrity"]
        return True

    # -----------------------
    # output
    # -----------------------
    def commit(self) -> Dict[str, Any]:
        if self.tree is not None:
            root = self.tree
            self.name = root.package_name
            self.version = root.version or None
            self.packages = {}
            for node in sorted(root.inventory, key=lambda n: n.location):
                self.packages[node.location] = meta_for_node(node)
        data: Dict[str, Any] = {}
        if self.name:
            data["name"] = self.name
        if self.version:
            data["version"] = self.version
        data["lockfileVersion"] = self.lockfile_version
        data["requires"] = True
        if self.lockfile_version >= 2:
            data["packages"] = {loc: deepcopy(self.packages[loc]) for loc in sorted(self.packages)}
        if self.lockfile_version <= 2:
            data["dependencies"] = _packages_to_v1(self.packages)
        return data

    def to_json(self) -> Dict[str, Any]:
        return self.commit()

    def to_string(self) -> str:
        return json.dumps(self.commit(), indent=2, ensure_ascii=False) + "\n"

    def save(self, filename: Optional[str] = None) -> str:
        if filename is None:
            if self.path is None:
                raise ValueError("shrinkwrap has no project path to save into")
            filename = self.filename or os.path.join(self.path, HIDDEN_LOCKFILE if self.hidden else "package-lock.json")
        os.makedirs(os.path.dirname(filename) or ".", exist_ok=True)
        text = self.to_string()
        fd, tmp = tempfile.mkstemp(prefix=".lock-", dir=os.path.dirname(filename) or ".")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(text)
            os.replace(tmp, filename)
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        self.filename = filename
        logger.debug("shrinkwrap: wrote %s (%d entries)", filename, len(self.packages))
        return filename

# -----------------------
# virtual tree
# -----------------------
def _flags(meta: Dict[str, Any]) -> Dict[str, bool]:
    dev, optional = bool(meta.get("dev")), bool(meta.get("optional"))
    return {
        "extraneous": bool(meta.get("extraneous")),
        "dev": dev,
        "optional": optional,
        "dev_optional": bool(meta.get("devOptional")) or dev or optional,
        "peer": bool(meta.get("peer")),
    }


def _assign_bundles(nodes: Dict[str, Node], packages: Dict[str, Dict[str, Any]]) -> None:
    """
    Put inBundle entries back into their bundler's bundleDependencies, which
    v1 lockfiles do not record. Entries under a bundled parent, or that the
    parent does not depend on, are bundled through the parent.
    """
    for loc, node in nodes.items():
        parent = node.parent
        if not loc or parent is None or not packages[loc].get("inBundle"):
            continue
        if packages.get(parent.location, {}).get("inBundle") or node.name not in parent.edges_out:
            continue
        bundled = parent.package.get("bundleDependencies", parent.package.get("bundledDependencies"))
        if bundled is True or (isinstance(bundled, list) and node.name in bundled):
            continue
        parent.package["bundleDependencies"] = (bundled if isinstance(bundled, list) else []) + [node.name]


def load_virtual(root: Optional[Node], shrinkwrap: Shrinkwrap, path: Optional[str] = None, **node_options: Any) -> Node:
    """Build the tree described by lock metadata. ``root`` defaults to one made from the "" entry."""
    packages = shrinkwrap.packages
    root_meta = packages.get("", {})
    if root is None:
        root = Node(path=path or shrinkwrap.path, package=_package_from_meta(root_meta, root_meta.get("name") or "root"), **node_options)
    root.meta = shrinkwrap
    shrinkwrap.tree = root
    base = root.realpath

    nodes: Dict[str, Node] = {"": root}
    links: List[Tuple[str, Dict[str, Any]]] = []
    for loc in sorted(packages, key=_location_sort_key):
        if loc == "":
            continue
        meta = packages[loc]
        if meta.get("link"):
            links.append((loc, meta))
            continue
        name = _name_from_location(loc)
        pkg = _package_from_meta(meta, name)
        parent_loc = _parent_location(loc)
        if parent_loc is not None:
            parent = nodes.get(parent_loc)
            if parent is None:
                logger.warning("shrinkwrap: lock entry %s has no parent entry, skipped", loc)
                continue
            node = Node(name=name, package=pkg, parent=parent, resolved=meta.get("resolved"),
                        integrity=meta.get("integrity"), overrides=root.overrides,
                        **_flags(meta), **node_options)
        else:
            fs_path = posixpath.normpath(posixpath.join(base, loc)) if base else loc
            node = Node(path=fs_path, package=pkg, fs_parent=root, overrides=root.overrides,
                        resolved=meta.get("resolved"), integrity=meta.get("integrity"),
                        **_flags(meta), **node_options)
        nodes[loc] = node
    _assign_bundles(nodes, packages)

    for loc, meta in links:
        parent = nodes.get(_parent_location(loc) or "")
        if parent is None:
            logger.warning("shrinkwrap: link entry %s has no parent entry, skipped", loc)
            continue
        target_loc = meta.get("resolved") or ""
        target = nodes.get(target_loc)
        if target is None:
            fs_path = posixpath.normpath(posixpath.join(base, target_loc)) if base else target_loc
            target = Node(path=fs_path, fs_parent=root, package={"name": _name_from_location(loc)}, **node_options)
            nodes[target_loc] = target
        flags = _flags(meta)
        link = Link(name=_name_from_location(loc), parent=parent, target=target)
        for flag, value in flags.items():
            setattr(link, flag, value)
    return root
