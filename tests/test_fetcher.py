import io
import os
import tarfile
import threading

import pytest

from arbor.errors import FetchError, FetchTimeoutError, IntegrityMismatchError
from arbor.fetcher import (
    Fetcher, check_integrity, compute_integrity, extract_tarball, integrity_match, parse_integrity,
)
from arbor.node import Node

from conftest import make_tarball, publish


def test_integrity_helpers():
    data = b"hello"
    sri = compute_integrity(data, ("sha1", "sha512"))
    assert set(parse_integrity(sri)) == {"sha1", "sha512"}
    assert check_integrity(data, sri)
    assert not check_integrity(b"other", sri)
    assert parse_integrity("md5-abc bogus") == {}
    assert integrity_match(sri, compute_integrity(data, ("sha512",)))
    assert not integrity_match(compute_integrity(data, ("sha1",)), compute_integrity(data, ("sha512",)))


def test_extract_strips_leading_folder(tmp_path):
    data = make_tarball({"name": "x", "version": "1.0.0"}, {"lib/index.js": "x"})
    dest = extract_tarball(data, str(tmp_path / "x"))
    assert os.path.exists(os.path.join(dest, "package.json"))
    assert (tmp_path / "x" / "lib" / "index.js").read_text() == "x"


def test_extract_refuses_path_traversal(tmp_path):
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        info = tarfile.TarInfo("package/../../../evil")
        info.size = 1
        tar.addfile(info, io.BytesIO(b"!"))
    with pytest.raises(FetchError):
        extract_tarball(buf.getvalue(), str(tmp_path / "x"))
    assert not (tmp_path / "x").exists()
    assert [p for p in os.listdir(tmp_path) if p.startswith(".x-")] == []


def test_fetch_verifies_and_caches(registry, fetcher):
    man = publish(registry, "a", "1.0.0")
    node = Node(package={"name": "a", "version": "1.0.0"}, integrity=man["dist"]["integrity"])
    first = fetcher.fetch(node)
    second = fetcher.fetch(node)
    assert first == second
    metrics = fetcher.get_metrics()
    assert metrics["cache.hits"] == 1
    assert metrics["fetch.success"] == 2


def test_fetch_fills_missing_integrity(registry, fetcher):
    publish(registry, "a", "1.0.0")
    node = Node(package={"name": "a", "version": "1.0.0"})
    data = fetcher.fetch(node)
    assert node.integrity == compute_integrity(data)


def test_fetch_integrity_mismatch(registry, fetcher):
    publish(registry, "a", "1.0.0")
    node = Node(package={"name": "a", "version": "1.0.0"}, integrity=compute_integrity(b"something else"))
    with pytest.raises(IntegrityMismatchError):
        fetcher.fetch(node)


def test_missing_tarball(registry, fetcher):
    registry.publish({"name": "a", "version": "1.0.0"})
    with pytest.raises(FetchError):
        fetcher.fetch(Node(package={"name": "a", "version": "1.0.0"}))
    assert fetcher.get_metrics()["fetch.failed"] == 1


def test_corrupt_cache_entry_is_discarded(registry, fetcher):
    man = publish(registry, "a", "1.0.0")
    integrity = man["dist"]["integrity"]
    node = Node(package={"name": "a", "version": "1.0.0"}, integrity=integrity)
    fetcher.fetch(node)
    path = fetcher._cache_path_for(integrity)
    with open(path, "wb") as fh:
        fh.write(b"garbage")
    assert fetcher.fetch(node) == registry.get_tarball("a", "1.0.0")
    assert fetcher.get_metrics()["cache.hits"] == 0


def test_clear_cache(registry, fetcher):
    man = publish(registry, "a", "1.0.0")
    fetcher.fetch(Node(package={"name": "a", "version": "1.0.0"}, integrity=man["dist"]["integrity"]))
    assert os.path.exists(fetcher._cache_path_for(man["dist"]["integrity"]))
    fetcher.clear_cache()
    assert not os.path.exists(fetcher.cache_dir)


class _StalledRegistry:
    """Never answers; waits out whatever timeout it is handed."""

    def __init__(self):
        self.timeouts = []

    def get_tarball(self, name, version, timeout=None):
        self.timeouts.append(timeout)
        threading.Event().wait(timeout)
        raise FetchTimeoutError(f"{name}@{version} stalled", name=name, version=version)


def test_stalled_provider_gets_the_timeout_and_times_out(tmp_path):
    provider = _StalledRegistry()
    f = Fetcher(provider, cache_dir=str(tmp_path / "cache"), retries=1, backoff=0, timeout=0.2)
    try:
        with pytest.raises(FetchError) as info:
            f.fetch(Node(package={"name": "a", "version": "1.0.0"}))
    finally:
        f.close()
    assert info.value.details["cause"] == "ETIMEDOUT"
    assert provider.timeouts == [0.2, 0.2]
    assert f.get_metrics()["fetch.failed"] == 1
