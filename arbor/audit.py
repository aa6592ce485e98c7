# arbor/audit.py
# -*- coding: utf-8 -*-
"""
audit.py - map installed packages onto security advisories

Features:
 - AdvisoryFeed interface: bulk({name: [versions]}) -> {name: [advisory]}
 - LocalAdvisoryFeed (in memory) and FileAdvisoryFeed (JSON or YAML document)
 - AuditReport builds one Vuln per affected package name:
     via      advisories, or other Vulns that make this package vulnerable
     effects  Vulns of dependents made vulnerable through this one
     nodes    every installed node affected
 - metavulns: a dependent whose declared range admits no safe version of a
   vulnerable dependency becomes vulnerable itself
 - severity is the maximum over via, fix_available is True (in-range update),
   a {name, version, isSemVerMajor} dict (breaking top-level bump) or False
 - to_json() emits auditReportVersion 2 with per-severity and per-dependency
   type counts; export() writes it to a file
"""

from __future__ import annotations

import os
import json
from typing import Any, Dict, Iterable, List, Optional, Set, Union

import yaml

from arbor import semver
from arbor.config import get_config
from arbor.errors import ConfigInvalidError, NotFoundError
from arbor.logging import get_logger
from arbor.registry import PackumentCache
from arbor.spec import parse_spec

LOG = get_logger("audit")

SEVERITIES = ("info", "low", "moderate", "high", "critical")
_SEVERITY_RANK = {s: i for i, s in enumerate(SEVERITIES)}


def severity_rank(severity: Optional[str]) -> int:
    return _SEVERITY_RANK.get((severity or "info").lower(), 0)

# -----------------------------------------------------------------------
# Advisories and feeds
# -----------------------------------------------------------------------
class Advisory:
    def __init__(self, name: str, data: Dict[str, Any]):
        self.name = name
        self.source = data.get("id", data.get("source"))
        self.title = data.get("title", "")
        self.url = data.get("url", "")
        self.severity = str(data.get("severity", "info")).lower()
        if self.severity not in _SEVERITY_RANK:
            raise ConfigInvalidError(f"advisory {self.source} for {name} has unknown severity {self.severity!r}",
                                     name=name, severity=self.severity)
        self.range = data.get("vulnerable_versions") or data.get("range") or "*"
        self.cwe = list(data.get("cwe") or [])

    def test_version(self, version: str) -> bool:
        return bool(version) and semver.satisfies(version, self.range, include_prerelease=True)

    def to_json(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "name": self.name,
            "dependency": self.name,
            "title": self.title,
            "url": self.url,
            "severity": self.severity,
            "cwe": self.cwe,
            "range": self.range,
        }

    def __repr__(self):
        return f"<Advisory {self.source} {self.name}@{self.range} {self.severity}>"


class AdvisoryFeed:
    """Vulnerability database. Implementations answer one bulk request per audit."""

    def bulk(self, request: Dict[str, List[str]]) -> Dict[str, List[Dict[str, Any]]]:
        raise NotImplementedError


class LocalAdvisoryFeed(AdvisoryFeed):
    def __init__(self, advisories: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.advisories: Dict[str, List[Dict[str, Any]]] = {k: list(v) for k, v in (advisories or {}).items()}

    def add(self, name: str, advisory: Dict[str, Any]) -> None:
        self.advisories.setdefault(name, []).append(dict(advisory))

    def bulk(self, request: Dict[str, List[str]]) -> Dict[str, List[Dict[str, Any]]]:
        out: Dict[str, List[Dict[str, Any]]] = {}
        for name, versions in request.items():
            hits = []
            for adv in self.advisories.get(name, []):
                rng = adv.get("vulnerable_versions") or adv.get("range") or "*"
                if any(semver.satisfies(v, rng, include_prerelease=True) for v in versions):
                    hits.append(dict(adv))
            if hits:
                out[name] = hits
        return out


class FileAdvisoryFeed(LocalAdvisoryFeed):
    """Advisories read from a JSON or YAML mapping of package name to advisory list."""

    def __init__(self, path: str):
        self.path = path
        super().__init__(self._load(path))

    @staticmethod
    def _load(path: str) -> Dict[str, List[Dict[str, Any]]]:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                if path.endswith(".json"):
                    data = json.load(fh)
                else:
                    data = yaml.safe_load(fh)
        except (ValueError, yaml.YAMLError) as e:
            raise ConfigInvalidError(f"cannot parse advisory file {path}: {e}", path=path) from e
        if data is None:
            return {}
        if not isinstance(data, dict) or not all(isinstance(v, list) for v in data.values()):
            raise ConfigInvalidError(f"advisory file {path} must map package names to lists", path=path)
        return data

# -----------------------------------------------------------------------
# Vulns
# -----------------------------------------------------------------------
class Vuln:
    def __init__(self, name: str):
        self.name = name
        self.advisories: List[Advisory] = []
        self.via: Dict[Any, None] = {}          # Advisory or Vuln
        self.effects: Dict["Vuln", None] = {}
        self.nodes: Dict[Any, None] = {}
        self.range = ""
        self.fix_available: Union[bool, Dict[str, Any]] = False
        self.is_direct = False

    @property
    def severity(self) -> str:
        return SEVERITIES[self._rank(set())]

    def _rank(self, seen: Set["Vuln"]) -> int:
        seen.add(self)
        best = 0
        for via in self.via:
            if isinstance(via, Advisory):
                best = max(best, severity_rank(via.severity))
            elif via not in seen:
                best = max(best, via._rank(seen))
        return best

    def add_via(self, via: Any) -> None:
        self.via[via] = None
        if isinstance(via, Advisory):
            self.advisories.append(via)
        else:
            via.effects[self] = None

    def to_json(self) -> Dict[str, Any]:
        via = []
        for v in self.via:
            via.append(v.to_json() if isinstance(v, Advisory) else v.name)
        return {
            "name": self.name,
            "severity": self.severity,
            "isDirect": self.is_direct,
            "via": via,
            "effects": sorted(e.name for e in self.effects),
            "range": self.range,
            "nodes": sorted(n.location for n in self.nodes),
            "fixAvailable": self.fix_available,
        }

    def __repr__(self):
        return f"<Vuln {self.name} {self.severity} nodes={len(self.nodes)}>"

# -----------------------------------------------------------------------
# Report
# -----------------------------------------------------------------------
class AuditReport:
    def __init__(self, tree: Any, feed: AdvisoryFeed, cache: Optional[PackumentCache] = None,
                 omit: Optional[Iterable[str]] = None):
        cfg = get_config()
        self.tree = tree
        self.feed = feed
        self.cache = cache
        self.omit: Set[str] = set(cfg.get("audit.omit", []) if omit is None else omit)
        self.vulns: Dict[str, Vuln] = {}
        self.error: Optional[Exception] = None

    # -------------------------
    # helpers
    # -------------------------
    def _omitted(self, node: Any) -> bool:
        return (node.dev and "dev" in self.omit) or (node.optional and "optional" in self.omit) \
            or (node.peer and "peer" in self.omit)

    def _nodes(self) -> List[Any]:
        return [n for n in self.tree.inventory
                if not n.is_root and not n.is_link and n.version and not self._omitted(n)]

    def _versions(self, name: str, installed: Iterable[str]) -> List[str]:
        if self.cache is not None:
            try:
                return list((self.cache.get(name).get("versions") or {}).keys())
            except NotFoundError:
                LOG.debug("audit: no packument for %s, using installed versions", name)
        return sorted(set(installed))

    def _vuln(self, name: str) -> Vuln:
        vuln = self.vulns.get(name)
        if vuln is None:
            vuln = self.vulns[name] = Vuln(name)
        return vuln

    def _vulnerable_versions(self, vuln: Vuln, versions: Iterable[str]) -> Set[str]:
        bad: Set[str] = set()
        for v in versions:
            if any(adv.test_version(v) for adv in vuln.advisories):
                bad.add(v)
        return bad

    # -------------------------
    # build
    # -------------------------
    def run(self) -> "AuditReport":
        nodes = self._nodes()
        request: Dict[str, List[str]] = {}
        for node in nodes:
            request.setdefault(node.package_name, [])
            if node.version not in request[node.package_name]:
                request[node.package_name].append(node.version)
        LOG.info("audit: checking %d packages (%d versions)", len(request), sum(len(v) for v in request.values()))
        results = self.feed.bulk(request)

        by_name: Dict[str, List[Any]] = {}
        for node in nodes:
            by_name.setdefault(node.package_name, []).append(node)

        queue: List[Vuln] = []
        self._bad: Dict[str, Set[str]] = {}
        for name in sorted(results):
            advisories = [Advisory(name, a) for a in results[name]]
            affected = [n for n in by_name.get(name, []) if any(a.test_version(n.version) for a in advisories)]
            if not affected:
                continue
            vuln = self._vuln(name)
            for adv in advisories:
                vuln.add_via(adv)
            for node in affected:
                vuln.nodes[node] = None
            known = self._versions(name, (n.version for n in by_name.get(name, [])))
            self._bad[name] = self._vulnerable_versions(vuln, known)
            vuln.range = " || ".join(dict.fromkeys(a.range for a in advisories))
            queue.append(vuln)

        # metavulns
        while queue:
            vuln = queue.pop(0)
            bad = self._bad.get(vuln.name, set())
            for node in list(vuln.nodes):
                for edge in node.edges_in:
                    dependent = edge.from_node
                    if dependent is None or dependent.is_root or dependent.is_workspace or self._omitted(dependent):
                        continue
                    if self._admits_safe(vuln.name, edge.spec, dependent, bad):
                        continue
                    meta = self._vuln(dependent.package_name)
                    fresh = dependent not in meta.nodes
                    meta.nodes[dependent] = None
                    if vuln not in meta.via:
                        meta.add_via(vuln)
                        fresh = True
                    if fresh:
                        if dependent.package_name not in self._bad:
                            known = self._versions(dependent.package_name, [dependent.version])
                            meta_bad = self._meta_bad_versions(dependent.package_name, known, vuln.name, bad)
                            meta_bad.add(dependent.version)
                            self._bad[dependent.package_name] = meta_bad
                            meta.range = semver.simplify_range(meta_bad, set(known) | meta_bad)
                        queue.append(meta)

        root_edges = {e.name: e for e in self.tree.edges_out.values()}
        for vuln in self.vulns.values():
            vuln.is_direct = any(e.from_node is not None and (e.from_node.is_project_root or e.from_node.is_workspace)
                                 for n in vuln.nodes for e in n.edges_in)
        for name in sorted(self.vulns):
            self.vulns[name].fix_available = self._fix(self.vulns[name], root_edges, set())
        LOG.info("audit: %d vulnerable packages", len(self.vulns))
        return self

    @staticmethod
    def _registry_range(name: str, spec: str, dependent: Any) -> Optional[str]:
        try:
            parsed = parse_spec(name, spec, dependent.realpath)
        except ValueError:
            return None
        if parsed.type == "alias":
            parsed = parsed.sub_spec
        if parsed.type not in ("range", "version"):
            return None
        return parsed.fetch_spec

    def _admits_safe(self, name: str, spec: str, dependent: Any, bad: Set[str]) -> bool:
        fetch_spec = self._registry_range(name, spec, dependent)
        if fetch_spec is None:
            return True
        # without registry metadata there is nothing to pick from, so no metavulns
        known = self._versions(name, [])
        if not known:
            return True
        return any(semver.satisfies(v, fetch_spec) and v not in bad for v in known)

    def _meta_bad_versions(self, name: str, versions: List[str], dep_name: str, dep_bad: Set[str]) -> Set[str]:
        """Versions of name whose declared range for dep_name only admits vulnerable versions."""
        out: Set[str] = set()
        try:
            pack = self.cache.get(name)
        except NotFoundError:
            return out
        for v in versions:
            man = (pack.get("versions") or {}).get(v) or {}
            spec = (man.get("dependencies") or {}).get(dep_name) or (man.get("optionalDependencies") or {}).get(dep_name)
            if spec is not None and not self._admits_safe(dep_name, spec, self.tree, dep_bad):
                out.add(v)
        return out

    def _fixable_in_range(self, vuln: Vuln, spec: str, dependent: Any, bad: Set[str]) -> bool:
        if self._versions(vuln.name, []):
            return self._admits_safe(vuln.name, spec, dependent, bad)
        fetch_spec = self._registry_range(vuln.name, spec, dependent)
        if fetch_spec is None:
            return True
        # no packument: the range must reach past every advisory on its own
        if not vuln.advisories:
            return False
        return semver.satisfies_outside(fetch_spec, (adv.range for adv in vuln.advisories))

    def _fix(self, vuln: Vuln, root_edges: Dict[str, Any], seen: Set[Vuln]) -> Union[bool, Dict[str, Any]]:
        seen.add(vuln)
        bad = self._bad.get(vuln.name, set())
        in_range = True
        for node in vuln.nodes:
            for edge in node.edges_in:
                dependent = edge.from_node
                if dependent is None:
                    continue
                if not self._fixable_in_range(vuln, edge.spec, dependent, bad):
                    in_range = False
        if in_range:
            return True
        edge = root_edges.get(vuln.name)
        if edge is not None:
            safe = [v for v in self._versions(vuln.name, []) if v not in bad and not semver.parse(v).prerelease]
            if not safe:
                return False
            best = semver.sort_versions(safe)[-1]
            current = next((n.version for n in vuln.nodes if n.parent is self.tree), None) or best
            return {"name": vuln.name, "version": best, "isSemVerMajor": semver.major(best) != semver.major(current)}
        fixes = [self._fix(e, root_edges, seen) for e in vuln.effects if e not in seen]
        if fixes and all(f is True for f in fixes):
            return True
        return next((f for f in fixes if isinstance(f, dict)), False)

    # -------------------------
    # queries
    # -------------------------
    def is_vulnerable(self, node: Any) -> bool:
        vuln = self.vulns.get(node.package_name)
        return vuln is not None and node in vuln.nodes

    @property
    def top_vulns(self) -> Dict[str, Vuln]:
        return {k: v for k, v in self.vulns.items() if v.is_direct}

    def at_level(self, level: Optional[str] = None) -> Dict[str, Vuln]:
        floor = severity_rank(level or get_config().get("audit.level", "low"))
        return {k: v for k, v in self.vulns.items() if severity_rank(v.severity) >= floor}

    def fixable(self, force: bool = False) -> Dict[str, str]:
        """name -> vulnerable range for every vuln a rebuild can fix."""
        out: Dict[str, str] = {}
        for name, vuln in self.vulns.items():
            if vuln.fix_available is True or (force and isinstance(vuln.fix_available, dict)):
                if vuln.advisories:
                    out[name] = vuln.range
        return out

    def to_json(self) -> Dict[str, Any]:
        counts = {s: 0 for s in SEVERITIES}
        for vuln in self.vulns.values():
            counts[vuln.severity] += 1
        counts["total"] = len(self.vulns)
        deps = {"prod": 0, "dev": 0, "optional": 0, "peer": 0, "peerOptional": 0}
        for node in self.tree.inventory:
            if node.is_root or node.is_link:
                continue
            if node.dev:
                deps["dev"] += 1
            elif node.optional and node.peer:
                deps["peerOptional"] += 1
            elif node.optional:
                deps["optional"] += 1
            elif node.peer:
                deps["peer"] += 1
            else:
                deps["prod"] += 1
        deps["total"] = len(self.tree.inventory) - 1
        return {
            "auditReportVersion": 2,
            "vulnerabilities": {k: self.vulns[k].to_json() for k in sorted(self.vulns)},
            "metadata": {"vulnerabilities": counts, "dependencies": deps},
        }

    def export(self, out_path: str) -> str:
        os.makedirs(os.path.dirname(os.path.abspath(out_path)), exist_ok=True)
        with open(out_path, "w", encoding="utf-8") as fh:
            json.dump(self.to_json(), fh, indent=2, ensure_ascii=False)
        LOG.info("audit: report exported to %s", out_path)
        return out_path


def audit_tree(tree: Any, feed: AdvisoryFeed, **options: Any) -> AuditReport:
    return AuditReport(tree, feed, **options).run()
