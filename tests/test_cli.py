import json

import pytest

from arbor.cli import main

from conftest import make_tarball, write_json


@pytest.fixture
def workspace(tmp_path, project):
    reg = tmp_path / "registry"
    manifest = {"name": "a", "version": "1.0.0"}
    write_json(reg / "a.json", {"name": "a", "dist-tags": {"latest": "1.0.0"}, "versions": {"1.0.0": manifest}})
    (reg / "tarballs").mkdir()
    (reg / "tarballs" / "a-1.0.0.tgz").write_bytes(make_tarball(manifest))
    path = project({"name": "proj", "version": "1.0.0", "dependencies": {"a": "^1.0.0"}})

    def run(*argv):
        return main(["--path", str(path), "--registry", str(reg), "--cache", str(tmp_path / "cache")] + list(argv))

    run.path = path
    return run


def test_install_ls_explain(workspace, capsys):
    assert workspace("install") == 0
    assert (workspace.path / "node_modules" / "a" / "package.json").exists()
    assert "best-effort tree built, 0 unresolved dependencies" in capsys.readouterr().out

    assert workspace("ls") == 0
    assert "a@1.0.0" in capsys.readouterr().out

    assert workspace("explain", "a") == 0
    assert "a@1.0.0" in capsys.readouterr().out
    assert workspace("explain", "nope") == 1


def test_diff_json_before_install(workspace, capsys):
    assert workspace("--json", "diff") == 0
    out = capsys.readouterr().out
    data = json.loads(out[:out.rindex("]") + 1])
    assert data == [{"action": "ADD", "location": "node_modules/a", "actual": None, "ideal": "a@1.0.0"}]


def test_dry_run_writes_nothing(workspace):
    assert workspace("install", "--dry-run") == 0
    assert not (workspace.path / "node_modules").exists()
    assert not (workspace.path / "package-lock.json").exists()


def test_arbor_error_aborts(workspace, tmp_path, capsys):
    bad = tmp_path / "bad.yaml"
    bad.write_text("lockfile:\n  version: 9\n", encoding="utf-8")
    assert workspace("--config", str(bad), "ls") == 1
    assert "operation aborted: ECONFIG" in capsys.readouterr().out


def test_no_command_prints_help():
    assert main([]) == 2


def test_query_lists_matching_packages(workspace, capsys):
    assert workspace("install") == 0
    capsys.readouterr()
    assert workspace("--json", "query", ":root > .prod") == 0
    out = capsys.readouterr().out
    assert json.loads(out) == [{"name": "a", "version": "1.0.0", "location": "node_modules/a"}]

    assert workspace("query", "#nope") == 1
    assert workspace("query", ":bogus") == 1
    assert "operation aborted: EQUERY" in capsys.readouterr().out
