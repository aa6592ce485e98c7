import json

import pytest
import yaml

from arbor.arborist import Arborist
from arbor.audit import Advisory, AuditReport, FileAdvisoryFeed, LocalAdvisoryFeed, Vuln, audit_tree
from arbor.dep_flags import calc_dep_flags
from arbor.errors import ConfigInvalidError
from arbor.node import Node
from arbor.registry import PackumentCache

from conftest import publish

ADVISORY = {"id": 1001, "title": "Prototype pollution", "url": "https://example.com/1001",
            "severity": "high", "vulnerable_versions": "<1.0.1", "cwe": ["CWE-1321"]}


def _tree(deps, installed):
    """installed: name -> (version, dependencies), all placed at the top level"""
    root = Node(path="/p", package={"name": "proj", "dependencies": deps})
    for name, (version, child_deps) in installed.items():
        Node(package={"name": name, "version": version, "dependencies": child_deps}, parent=root)
    calc_dep_flags(root)
    return root


def _pinned():
    return _tree({"mid": "^1.0.0"}, {"mid": ("1.0.0", {"lib": "1.0.0"}), "lib": ("1.0.0", {})})


def test_direct_vulnerability_in_range_fix(registry):
    publish(registry, "lib", "1.0.0")
    publish(registry, "lib", "1.0.1")
    tree = _tree({"lib": "^1.0.0"}, {"lib": ("1.0.0", {})})
    report = AuditReport(tree, LocalAdvisoryFeed({"lib": [ADVISORY]}), cache=PackumentCache(registry)).run()

    vuln = report.vulns["lib"]
    assert vuln.severity == "high"
    assert vuln.is_direct
    assert vuln.fix_available is True
    assert report.is_vulnerable(tree.children["lib"])
    assert report.fixable() == {"lib": "<1.0.1"}


def test_metavuln_through_pinned_dependent(registry):
    publish(registry, "lib", "1.0.0")
    publish(registry, "lib", "1.0.1")
    publish(registry, "mid", "1.0.0", {"lib": "1.0.0"})
    publish(registry, "mid", "2.0.0", {"lib": "^1.0.1"})
    tree = _pinned()
    report = AuditReport(tree, LocalAdvisoryFeed({"lib": [ADVISORY]}), cache=PackumentCache(registry)).run()

    lib, mid = report.vulns["lib"], report.vulns["mid"]
    assert lib in mid.via and mid in lib.effects
    assert mid.severity == "high"
    assert mid.range == "1.0.0"
    assert mid.is_direct and not lib.is_direct
    assert mid.fix_available == {"name": "mid", "version": "2.0.0", "isSemVerMajor": True}
    assert lib.fix_available == mid.fix_available
    assert report.fixable() == {}
    assert report.fixable(force=True) == {"lib": "<1.0.1"}
    assert set(report.top_vulns) == {"mid"}


def test_no_metavulns_without_registry_metadata():
    tree = _pinned()
    report = audit_tree(tree, LocalAdvisoryFeed({"lib": [ADVISORY]}))
    assert set(report.vulns) == {"lib"}
    # mid pins lib@1.0.0 and nothing outside <1.0.1 satisfies that
    assert report.vulns["lib"].fix_available is False


def test_fix_without_registry_metadata_needs_a_safe_version_in_range():
    tree = _tree({"x": "^1.0.0"}, {"x": ("1.0.0", {})})
    everything = dict(ADVISORY, vulnerable_versions="*")
    report = audit_tree(tree, LocalAdvisoryFeed({"x": [everything]}))
    assert report.vulns["x"].fix_available is False
    assert report.fixable() == {}

    report = audit_tree(tree, LocalAdvisoryFeed({"x": [dict(ADVISORY, vulnerable_versions="<1.0.1")]}))
    assert report.vulns["x"].fix_available is True

    report = audit_tree(tree, LocalAdvisoryFeed({"x": [dict(ADVISORY, vulnerable_versions="<2.0.0")]}))
    assert report.vulns["x"].fix_available is False


def test_omit_and_levels():
    root = Node(path="/p", package={"name": "proj", "devDependencies": {"lib": "^1.0.0"}})
    Node(package={"name": "lib", "version": "1.0.0"}, parent=root)
    calc_dep_flags(root)
    feed = LocalAdvisoryFeed()
    feed.add("lib", dict(ADVISORY, severity="low"))

    assert audit_tree(root, feed, omit=["dev"]).vulns == {}
    report = audit_tree(root, feed, omit=[])
    assert set(report.at_level("low")) == {"lib"}
    assert report.at_level("high") == {}


def test_to_json_shape(tmp_path):
    tree = _tree({"lib": "^1.0.0", "other": "^2.0.0"}, {"lib": ("1.0.0", {}), "other": ("2.0.0", {})})
    report = audit_tree(tree, LocalAdvisoryFeed({"lib": [ADVISORY]}))
    data = report.to_json()
    assert data["auditReportVersion"] == 2
    assert data["metadata"]["vulnerabilities"]["high"] == 1
    assert data["metadata"]["vulnerabilities"]["total"] == 1
    assert data["metadata"]["dependencies"] == {"prod": 2, "dev": 0, "optional": 0, "peer": 0,
                                                "peerOptional": 0, "total": 2}
    entry = data["vulnerabilities"]["lib"]
    assert entry["via"][0]["source"] == 1001
    assert entry["nodes"] == ["node_modules/lib"]

    out = report.export(str(tmp_path / "reports" / "audit.json"))
    with open(out, encoding="utf-8") as fh:
        assert json.load(fh) == data


def test_severity_is_max_over_via_cycles():
    a, b = Vuln("a"), Vuln("b")
    a.add_via(Advisory("a", ADVISORY))
    a.add_via(Advisory("a", dict(ADVISORY, id=1002, severity="low")))
    b.add_via(a)
    a.add_via(b)
    assert b.severity == "high"
    assert a in b.via and b in a.effects
    assert len(a.advisories) == 2


def test_file_feed(tmp_path):
    path = tmp_path / "advisories.yaml"
    path.write_text(yaml.safe_dump({"lib": [ADVISORY]}), encoding="utf-8")
    feed = FileAdvisoryFeed(str(path))
    assert feed.bulk({"lib": ["1.0.0", "2.0.0"]})["lib"][0]["id"] == 1001
    assert feed.bulk({"lib": ["1.0.1"]}) == {}

    bad = tmp_path / "bad.json"
    bad.write_text("[1, 2]", encoding="utf-8")
    with pytest.raises(ConfigInvalidError):
        FileAdvisoryFeed(str(bad))


def test_unknown_severity_is_rejected():
    feed = LocalAdvisoryFeed({"lib": [dict(ADVISORY, severity="apocalyptic")]})
    with pytest.raises(ConfigInvalidError):
        audit_tree(_tree({"lib": "^1.0.0"}, {"lib": ("1.0.0", {})}), feed)


def test_audit_fix_updates_the_tree(registry, project, tmp_path):
    publish(registry, "lib", "1.0.0")
    path = project({"name": "proj", "dependencies": {"lib": "^1.0.0"}})
    feed = LocalAdvisoryFeed({"lib": [ADVISORY]})
    first = Arborist(str(path), registry=registry, advisories=feed, cache_dir=str(tmp_path / "cache"))
    first.reify()
    first.close()

    publish(registry, "lib", "1.0.1")
    arb = Arborist(str(path), registry=registry, advisories=feed, cache_dir=str(tmp_path / "cache"))
    try:
        report = arb.audit(fix=True)
    finally:
        arb.close()
    assert report.vulns == {}
    with open(path / "node_modules" / "lib" / "package.json", encoding="utf-8") as fh:
        assert json.load(fh)["version"] == "1.0.1"
