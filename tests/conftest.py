import io
import json
import tarfile

import pytest

from arbor import config as arbor_config
from arbor.fetcher import Fetcher
from arbor.registry import LocalRegistry


def make_tarball(manifest, files=None):
    """gzip tarball with everything under package/, the way registries ship them."""
    entries = {"package.json": json.dumps(manifest).encode("utf-8")}
    entries.update(files or {})
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tar:
        for name, data in entries.items():
            if isinstance(data, str):
                data = data.encode("utf-8")
            info = tarfile.TarInfo("package/" + name)
            info.size = len(data)
            info.mode = 0o644
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def publish(registry, name, version, deps=None, **extra):
    manifest = {"name": name, "version": version}
    if deps:
        manifest["dependencies"] = deps
    manifest.update(extra)
    return registry.publish(manifest, make_tarball(manifest))


def write_json(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.delenv("ARBOR_CONFIG", raising=False)
    monkeypatch.chdir(tmp_path)
    arbor_config.reset()
    yield
    arbor_config.reset()


@pytest.fixture
def registry():
    return LocalRegistry()


@pytest.fixture
def project(tmp_path):
    """Factory writing package.json into tmp_path/project and returning the folder."""
    root = tmp_path / "project"

    def _make(pkg):
        write_json(root / "package.json", pkg)
        return root

    return _make


@pytest.fixture
def fetcher(registry, tmp_path):
    f = Fetcher(registry, cache_dir=str(tmp_path / "cache"), retries=0, timeout=5)
    yield f
    f.close()
