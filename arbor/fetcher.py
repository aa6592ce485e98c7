# arbor/fetcher.py
"""
fetcher.py - tarball fetching, integrity checking and extraction

Features:
- Subresource-integrity strings: parse, compute, check (strongest common algorithm)
- Fetcher: content-addressed cache, bounded retries with backoff, per-attempt timeout
  handed to the provider, which must honour it
- Cache hits are re-verified against the expected integrity unless trust_cache is set
- extract_tarball(): strip the leading ``package/`` folder, refuse path traversal,
  extract into a temporary sibling and rename into place
- Transparency log: one JSON line per completed fetch when logging.jsonl is enabled
"""

from __future__ import annotations

import io
import os
import json
import time
import base64
import shutil
import hashlib
import tarfile
import tempfile
import threading
import posixpath
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from typing import Any, Dict, List, Optional

from arbor.config import get_config
from arbor.errors import FetchError, FetchTimeoutError, IntegrityMismatchError, NotFoundError
from arbor.logging import get_logger

logger = get_logger("fetcher")

# weakest first
ALGORITHMS = ("sha1", "sha256", "sha384", "sha512")
DEFAULT_ALGORITHM = "sha512"

# -----------------------------------------------------------------------
# Utility helpers
# -----------------------------------------------------------------------
def _now_ts() -> int:
    return int(time.time())


def _ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)

# -----------------------------------------------------------------------
# Subresource integrity
# -----------------------------------------------------------------------
def parse_integrity(integrity: Optional[str]) -> Dict[str, List[str]]:
    """'sha512-abc== sha1-def=' -> {'sha512': ['abc=='], 'sha1': ['def=']}; unknown algorithms dropped."""
    out: Dict[str, List[str]] = {}
    for token in (integrity or "").split():
        algo, sep, digest = token.partition("-")
        algo = algo.lower()
        if not sep or algo not in ALGORITHMS or not digest:
            continue
        # options after '?' are not part of the digest
        out.setdefault(algo, []).append(digest.split("?", 1)[0])
    return out


def compute_integrity(data: bytes, algorithms: Any = (DEFAULT_ALGORITHM,)) -> str:
    parts = []
    for algo in algorithms:
        digest = hashlib.new(algo, data).digest()
        parts.append(f"{algo}-{base64.b64encode(digest).decode('ascii')}")
    return " ".join(parts)


def pick_algorithm(integrity: Dict[str, List[str]]) -> Optional[str]:
    for algo in reversed(ALGORITHMS):
        if algo in integrity:
            return algo
    return None


def check_integrity(data: bytes, expected: Optional[str]) -> bool:
    """True when data matches the strongest algorithm named in expected (any listed digest)."""
    parsed = parse_integrity(expected)
    algo = pick_algorithm(parsed)
    if algo is None:
        return False
    actual = compute_integrity(data, (algo,)).split("-", 1)[1]
    return actual in parsed[algo]


def integrity_match(a: Optional[str], b: Optional[str]) -> bool:
    """Two integrity strings agree when they share a digest for their strongest common algorithm."""
    pa, pb = parse_integrity(a), parse_integrity(b)
    common = {k: v for k, v in pa.items() if k in pb}
    algo = pick_algorithm(common)
    if algo is None:
        return False
    return bool(set(pa[algo]) & set(pb[algo]))


def verify_integrity(data: bytes, expected: Optional[str], what: str = "") -> str:
    """Return the integrity of data; raise IntegrityMismatchError when expected is given and differs."""
    parsed = parse_integrity(expected)
    algo = pick_algorithm(parsed) or DEFAULT_ALGORITHM
    actual = compute_integrity(data, (algo,))
    if parsed and not check_integrity(data, expected):
        raise IntegrityMismatchError(
            f"{what or 'content'} integrity checksum failed when using {algo}: wanted {expected} but got {actual}",
            expected=expected, actual=actual, package=what,
        )
    return expected if parsed else actual

# -----------------------------------------------------------------------
# extraction
# -----------------------------------------------------------------------
def _member_path(name: str) -> Optional[str]:
    norm = posixpath.normpath(name.replace("\\", "/").lstrip("/"))
    parts = norm.split("/", 1)
    if len(parts) < 2 or not parts[1] or parts[1] == ".":
        return None
    rel = parts[1]
    if rel.startswith("../") or rel == ".." or posixpath.isabs(rel):
        raise FetchError(f"refusing to extract {name!r} outside the package folder", member=name)
    return rel


def extract_tarball(data: bytes, dest: str) -> str:
    """
    Unpack a package tarball into dest, which must not exist yet.

    The leading folder of every entry (``package/`` for registry tarballs)
    is stripped. Entries are written to a temporary sibling which is then
    renamed onto dest, so dest either holds the complete package or nothing.
    Symlinks and device entries are skipped.
    """
    parent = os.path.dirname(os.path.abspath(dest))
    _ensure_dir(parent)
    tmp = tempfile.mkdtemp(prefix="." + os.path.basename(dest) + "-", dir=parent)
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
            for member in tar.getmembers():
                rel = _member_path(member.name)
                if rel is None:
                    continue
                target = os.path.join(tmp, *rel.split("/"))
                if member.isdir():
                    _ensure_dir(target)
                    continue
                if not member.isfile():
                    logger.debug("extract: skipping non-file entry %s", member.name)
                    continue
                _ensure_dir(os.path.dirname(target))
                src = tar.extractfile(member)
                if src is None:
                    continue
                with src, open(target, "wb") as out:
                    shutil.copyfileobj(src, out)
                os.chmod(target, (member.mode | 0o644) & 0o777)
        os.rename(tmp, dest)
    except tarfile.TarError as e:
        shutil.rmtree(tmp, ignore_errors=True)
        raise FetchError(f"invalid tarball for {dest}: {e}", dest=dest) from e
    except BaseException:
        shutil.rmtree(tmp, ignore_errors=True)
        raise
    return dest

# -----------------------------------------------------------------------
# Fetcher
# -----------------------------------------------------------------------
class Fetcher:
    def __init__(self, provider: Any, cache_dir: Optional[str] = None, timeout: Optional[float] = None,
                 retries: Optional[int] = None, backoff: Optional[float] = None, trust_cache: Optional[bool] = None):
        cfg = get_config()
        self.provider = provider
        self.cache_dir = os.path.abspath(os.path.expanduser(cache_dir or cfg.get("fetcher.cache_dir", "~/.arbor/_cacache")))
        self.timeout = float(timeout if timeout is not None else cfg.get("fetcher.timeout", 60))
        self.retries = int(retries if retries is not None else cfg.get("fetcher.retries", 3))
        self.backoff = float(backoff if backoff is not None else cfg.get("fetcher.backoff", 0.2))
        self.trust_cache = bool(trust_cache if trust_cache is not None else cfg.get("fetcher.trust_cache", False))
        jsonl = cfg.get("logging.jsonl", {}) or {}
        self.transparency_log_path = os.path.expanduser(jsonl["path"]) if jsonl.get("enabled") and jsonl.get("path") else None
        self._pool = ThreadPoolExecutor(max_workers=int(cfg.get("reify.parallel", 4)) or 1, thread_name_prefix="arbor-fetch")
        self._lock = threading.Lock()
        self._metrics = {"fetch.total": 0, "fetch.failed": 0, "fetch.success": 0, "cache.hits": 0}

    # -------------------------
    # transparency log
    # -------------------------
    def append_transparency_log(self, event: Dict[str, Any]) -> None:
        if not self.transparency_log_path:
            return
        record = {"ts": _now_ts(), **event}
        _ensure_dir(os.path.dirname(self.transparency_log_path))
        with self._lock, open(self.transparency_log_path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False) + "\n")

    # -------------------------
    # cache filesystem helpers
    # -------------------------
    def _cache_path_for(self, integrity: str) -> Optional[str]:
        parsed = parse_integrity(integrity)
        algo = pick_algorithm(parsed)
        if algo is None:
            return None
        hexdigest = base64.b64decode(parsed[algo][0]).hex()
        return os.path.join(self.cache_dir, "content-v2", algo, hexdigest[:2], hexdigest[2:4], hexdigest[4:])

    def _cache_read(self, integrity: Optional[str]) -> Optional[bytes]:
        path = self._cache_path_for(integrity) if integrity else None
        if path is None or not os.path.exists(path):
            return None
        with open(path, "rb") as fh:
            data = fh.read()
        if not self.trust_cache and not check_integrity(data, integrity):
            logger.warning("Cache entry %s failed verification; discarding", path)
            os.unlink(path)
            return None
        with self._lock:
            self._metrics["cache.hits"] += 1
        return data

    def _cache_write(self, integrity: str, data: bytes) -> None:
        path = self._cache_path_for(integrity)
        if path is None:
            return
        _ensure_dir(os.path.dirname(path))
        fd, tmp = tempfile.mkstemp(prefix=".tmp-", dir=os.path.dirname(path))
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)

    def clear_cache(self) -> None:
        shutil.rmtree(self.cache_dir, ignore_errors=True)
        logger.info("Cleared fetch cache %s", self.cache_dir)

    # -------------------------
    # core fetch flow
    # -------------------------
    def _download(self, name: str, version: str) -> bytes:
        last: Optional[Exception] = None
        for attempt in range(1, self.retries + 2):
            fut = self._pool.submit(self.provider.get_tarball, name, version, timeout=self.timeout)
            try:
                return fut.result(timeout=self.timeout)
            except FutureTimeout:
                # a running provider call is not interruptible; it holds its worker until it honours the timeout
                if not fut.cancel():
                    logger.warning("provider still busy with %s@%s after %ss", name, version, self.timeout)
                last = FetchTimeoutError(f"timed out fetching {name}@{version} after {self.timeout}s", name=name, version=version, attempt=attempt)
            except NotFoundError as e:
                raise FetchError(f"{name}@{version}: {e.message}", name=name, version=version) from e
            except FetchError as e:
                if not e.retryable:
                    raise
                last = e
            except OSError as e:
                last = FetchTimeoutError(f"{name}@{version}: {e}", name=name, version=version, attempt=attempt)
            logger.debug("fetch attempt %d for %s@%s failed: %s", attempt, name, version, last)
            if attempt <= self.retries:
                time.sleep(self.backoff * attempt)
        raise FetchError(f"fetch failed for {name}@{version} after {self.retries + 1} attempts: {last}",
                         name=name, version=version, cause=getattr(last, "code", None))

    def fetch(self, node: Any) -> bytes:
        """
        Return the verified tarball for node.
        flow:
         - cached content addressed by the node's integrity (re-verified unless trust_cache)
         - download with retries
         - verify against node.integrity; mismatch raises IntegrityMismatchError
         - store in cache, fill node.integrity when it was unknown
        """
        name, version = node.package_name, node.version
        with self._lock:
            self._metrics["fetch.total"] += 1
        cached = self._cache_read(node.integrity)
        if cached is not None:
            logger.debug("Cache hit for %s@%s", name, version)
            with self._lock:
                self._metrics["fetch.success"] += 1
            return cached
        try:
            data = self._download(name, version)
        except FetchError:
            with self._lock:
                self._metrics["fetch.failed"] += 1
            raise
        integrity = verify_integrity(data, node.integrity, f"{name}@{version}")
        if not node.integrity:
            node.integrity = integrity
        self._cache_write(integrity, data)
        self.append_transparency_log({"package": name, "version": version, "resolved": node.resolved, "integrity": integrity})
        with self._lock:
            self._metrics["fetch.success"] += 1
        return data

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._metrics)

    def close(self) -> None:
        self._pool.shutdown(wait=False)
