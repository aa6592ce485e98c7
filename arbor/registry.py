# arbor/registry.py
"""
Package metadata providers and manifest selection.

Features:
- MetadataProvider interface: get_packument(name), get_tarball(name, version),
  manifest_for(spec) for non-registry specifiers
- LocalRegistry (in-memory index) and DirectoryRegistry (JSON/YAML
  packuments on disk, tarballs under tarballs/)
- pick_manifest(): dist-tag, exact version or best satisfying version
- PackumentCache: thread-safe cache with parallel prefetch
"""

from __future__ import annotations
import os
import json
import hashlib
import threading
from copy import deepcopy
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, Iterable, List, Optional, Tuple

import yaml

from arbor import semver
from arbor.config import get_config
from arbor.errors import NotFoundError, UnsatisfiableError
from arbor.fetcher import compute_integrity
from arbor.logging import get_logger
from arbor.spec import Spec, parse_spec

logger = get_logger("registry")

REGISTRY_URL = "https://registry.local"


def _digest_obj(obj: Any) -> str:
    j = json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(j.encode("utf-8")).hexdigest()


def tarball_url(name: str, version: str, base: str = REGISTRY_URL) -> str:
    short = name.split("/")[-1]
    return f"{base}/{name}/-/{short}-{version}.tgz"

# -----------------------
# Providers
# -----------------------
class MetadataProvider:
    """
    Source of packuments and tarballs. Subclasses override the three lookups.

    get_tarball() runs on a fetcher worker thread and receives the fetcher's
    per-attempt timeout. Providers doing network IO must give up on their own
    once it elapses (raise FetchTimeoutError): the fetcher stops waiting but
    cannot interrupt a running worker.
    """

    def get_packument(self, name: str) -> Dict[str, Any]:
        raise NotImplementedError

    def get_tarball(self, name: str, version: str, timeout: Optional[float] = None) -> bytes:
        raise NotImplementedError

    def manifest_for(self, spec: Spec) -> Dict[str, Any]:
        raise UnsatisfiableError(f"{spec.raw}: {spec.type} specifiers are not served by this registry", name=spec.name, spec=spec.raw_spec)

    def fingerprint(self) -> str:
        return ""


class LocalRegistry(MetadataProvider):
    def __init__(self, packuments: Optional[Dict[str, Dict[str, Any]]] = None,
                 tarballs: Optional[Dict[Tuple[str, str], bytes]] = None,
                 manifests: Optional[Dict[str, Dict[str, Any]]] = None):
        self._packuments: Dict[str, Dict[str, Any]] = deepcopy(packuments or {})
        self._tarballs: Dict[Tuple[str, str], bytes] = dict(tarballs or {})
        # raw spec (git url, remote url, file path) -> manifest
        self._manifests: Dict[str, Dict[str, Any]] = deepcopy(manifests or {})
        self._lock = threading.RLock()

    def publish(self, manifest: Dict[str, Any], tarball: Optional[bytes] = None, tag: Optional[str] = None,
                deprecated: Optional[str] = None) -> Dict[str, Any]:
        """Add one version to the index, computing its dist block from the tarball."""
        name, version = manifest["name"], manifest["version"]
        man = deepcopy(manifest)
        dist = dict(man.get("dist") or {})
        dist.setdefault("tarball", tarball_url(name, version))
        if tarball is not None:
            dist.setdefault("integrity", compute_integrity(tarball))
        man["dist"] = dist
        if deprecated:
            man["deprecated"] = deprecated
        with self._lock:
            pack = self._packuments.setdefault(name, {"name": name, "dist-tags": {}, "versions": {}})
            pack["versions"][version] = man
            tags = pack["dist-tags"]
            if tag:
                tags[tag] = version
            elif not semver.parse(version).prerelease:
                latest = tags.get("latest")
                if latest is None or semver.gt(version, latest):
                    tags["latest"] = version
            if tarball is not None:
                self._tarballs[(name, version)] = tarball
        return man

    def add_manifest(self, raw_spec: str, manifest: Dict[str, Any], tarball: Optional[bytes] = None) -> None:
        with self._lock:
            self._manifests[raw_spec] = deepcopy(manifest)
            if tarball is not None:
                self._tarballs[(manifest["name"], manifest["version"])] = tarball

    def get_packument(self, name: str) -> Dict[str, Any]:
        with self._lock:
            pack = self._packuments.get(name)
            if pack is None:
                raise NotFoundError(f"404 Not Found: {name}", name=name)
            return deepcopy(pack)

    def get_tarball(self, name: str, version: str, timeout: Optional[float] = None) -> bytes:
        with self._lock:
            data = self._tarballs.get((name, version))
        if data is None:
            raise NotFoundError(f"no tarball for {name}@{version}", name=name, version=version)
        return data

    def manifest_for(self, spec: Spec) -> Dict[str, Any]:
        with self._lock:
            man = self._manifests.get(spec.raw_spec) or self._manifests.get(spec.fetch_spec or "")
        if man is None:
            return super().manifest_for(spec)
        return deepcopy(man)

    def fingerprint(self) -> str:
        with self._lock:
            summary = {k: sorted(v.get("versions", {}).keys()) for k, v in self._packuments.items()}
        return _digest_obj(summary)


class DirectoryRegistry(LocalRegistry):
    """
    Packuments stored as ``<root>/<name>.json`` or ``<root>/<name>.yaml``
    (scoped names live in ``<root>/@scope/``), tarballs as
    ``<root>/tarballs/<name>-<version>.tgz``.
    """

    def __init__(self, root: str):
        super().__init__()
        self.root = os.path.abspath(os.path.expanduser(root))

    def _load(self, name: str) -> Optional[Dict[str, Any]]:
        for ext in (".json", ".yaml", ".yml"):
            path = os.path.join(self.root, name + ext)
            if not os.path.exists(path):
                continue
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh) if ext == ".json" else yaml.safe_load(fh)
            if not isinstance(data, dict) or not isinstance(data.get("versions"), dict):
                logger.warning("registry: %s is not a packument, ignored", path)
                return None
            data.setdefault("name", name)
            data.setdefault("dist-tags", {})
            return data
        return None

    def get_packument(self, name: str) -> Dict[str, Any]:
        with self._lock:
            if name not in self._packuments:
                data = self._load(name)
                if data is None:
                    raise NotFoundError(f"404 Not Found: {name}", name=name)
                self._packuments[name] = data
        return super().get_packument(name)

    def get_tarball(self, name: str, version: str, timeout: Optional[float] = None) -> bytes:
        path = os.path.join(self.root, "tarballs", f"{name}-{version}.tgz")
        if not os.path.exists(path):
            return super().get_tarball(name, version)
        with open(path, "rb") as fh:
            return fh.read()

# -----------------------
# Manifest selection
# -----------------------
def pick_manifest(packument: Dict[str, Any], spec: Spec, avoid: Optional[str] = None) -> Dict[str, Any]:
    name = packument.get("name") or spec.name
    versions: Dict[str, Dict[str, Any]] = packument.get("versions") or {}
    tags: Dict[str, str] = packument.get("dist-tags") or {}
    if spec.type == "alias":
        spec = spec.sub_spec

    def fail(msg: str):
        raise UnsatisfiableError(msg, name=name, spec=spec.raw_spec, versions=semver.sort_versions(versions))

    if spec.type == "tag":
        v = tags.get(spec.fetch_spec)
        if v is None or v not in versions:
            fail(f"No matching version found for {name}@{spec.raw_spec}: no such dist-tag")
        return deepcopy(versions[v])

    if spec.type == "version":
        for v, man in versions.items():
            if semver.parse(v) == semver.parse(spec.fetch_spec):
                return deepcopy(man)
        fail(f"No matching version found for {name}@{spec.raw_spec}")

    if spec.type != "range":
        fail(f"{name}@{spec.raw_spec} is not a registry specifier")

    candidates = [v for v in versions if semver.satisfies(v, spec.fetch_spec)]
    if not candidates:
        fail(f"No matching version found for {name}@{spec.raw_spec}")
    pool = candidates
    if avoid:
        safe = [v for v in candidates if not semver.satisfies(v, avoid, include_prerelease=True)]
        pool = safe or candidates
    latest = tags.get("latest")
    if latest in pool and not versions[latest].get("deprecated"):
        return deepcopy(versions[latest])
    fresh = [v for v in pool if not versions[v].get("deprecated")] or pool
    best = semver.sort_versions(fresh)[-1]
    return deepcopy(versions[best])


class PackumentCache:
    """Thread-safe packument cache; prefetch() fans requests out, then joins."""

    def __init__(self, provider: MetadataProvider, workers: Optional[int] = None):
        self.provider = provider
        self.workers = int(workers or get_config().get("registry.workers", 8))
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._errors: Dict[str, Exception] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> Dict[str, Any]:
        with self._lock:
            if name in self._cache:
                return self._cache[name]
            if name in self._errors:
                raise self._errors[name]
        try:
            pack = self.provider.get_packument(name)
        except NotFoundError as e:
            with self._lock:
                self._errors[name] = e
            raise
        with self._lock:
            self._cache[name] = pack
        return pack

    def prefetch(self, names: Iterable[str]) -> Dict[str, bool]:
        todo: List[str] = []
        with self._lock:
            for n in dict.fromkeys(names):
                if n not in self._cache and n not in self._errors:
                    todo.append(n)
        results: Dict[str, bool] = {}
        if not todo:
            return results
        with ThreadPoolExecutor(max_workers=max(1, min(self.workers, len(todo)))) as ex:
            futures = {ex.submit(self.get, n): n for n in todo}
            for fut in as_completed(futures):
                n = futures[fut]
                try:
                    fut.result()
                    results[n] = True
                except NotFoundError:
                    results[n] = False
        logger.debug("registry: prefetched %d packuments (%d missing)", len(results), sum(1 for v in results.values() if not v))
        return results

    def manifest(self, name: str, raw_spec: str, where: Optional[str] = None, avoid: Optional[str] = None) -> Dict[str, Any]:
        spec = parse_spec(name, raw_spec, where)
        if not spec.registry:
            return self.provider.manifest_for(spec)
        real = spec.sub_spec.name if spec.type == "alias" else name
        try:
            pack = self.get(real)
        except NotFoundError as e:
            raise UnsatisfiableError(f"{real}: package not found in registry", name=real, spec=raw_spec) from e
        return pick_manifest(pack, spec, avoid=avoid)
