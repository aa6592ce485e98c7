#!/usr/bin/env python3
# arbor/cli.py
# -*- coding: utf-8 -*-
"""
arbor command line

Subcommands:
  ideal     build the ideal tree and print it (nothing is written)
  ls        print the installed tree
  diff      show what install would do
  install   build the ideal tree and reify it (add packages with names)
  dedupe    collapse duplicated packages
  audit     report vulnerable packages (--fix rebuilds with safe versions)
  explain   why a package is installed
  query     list installed packages matching a dependency selector

Every command ends with one summary line: "best-effort tree built, N
unresolved dependencies" or "operation aborted: <reason>".
"""

from __future__ import annotations

import sys
import json
import argparse
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from arbor import config as arbor_config
from arbor.arborist import Arborist
from arbor.audit import FileAdvisoryFeed, SEVERITIES
from arbor.diff import Diff
from arbor.errors import ArborError
from arbor.logging import get_logger
from arbor.registry import DirectoryRegistry

logger = get_logger("cli")
console = Console()

_SEVERITY_STYLE = {"info": "dim", "low": "cyan", "moderate": "yellow", "high": "red", "critical": "bold red"}

# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {msg}")

def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {msg}")

def print_err(msg: str):
    console.print(f"[bold red]✖[/] {msg}")

def print_info(msg: str):
    console.print(f"[cyan]{msg}[/cyan]")

def print_json(data: Any):
    console.print_json(json.dumps(data, ensure_ascii=False))

def summary(unresolved: int):
    msg = f"best-effort tree built, {unresolved} unresolved dependencies"
    if unresolved:
        print_warn(msg)
    else:
        print_ok(msg)

# -----------------------
# Rendering
# -----------------------
def _label(node: Any) -> str:
    label = node.pkgid
    if node.is_link:
        label += f" -> {node.resolved}"
    flags = [f for f in ("dev", "optional", "peer", "extraneous") if getattr(node, f)]
    if flags:
        label += f" [dim]({', '.join(flags)})[/dim]"
    bad = [e for e in node.edges_out.values() if e.error]
    if bad:
        label += " [red]" + ", ".join(f"{e.name} {e.error}" for e in bad) + "[/red]"
    return label


def render_tree(root: Any, depth: Optional[int] = None) -> Tree:
    tree = Tree(f"[bold]{root.pkgid}[/bold] {root.path or ''}")

    def add(branch: Tree, node: Any, level: int) -> None:
        if depth is not None and level > depth:
            return
        kids = sorted(list(node.children.values()) + list(node.fs_children), key=lambda n: n.location)
        for kid in kids:
            add(branch.add(_label(kid)), kid, level + 1)

    add(tree, root, 1)
    return tree


def render_diff(diff: Diff) -> Table:
    table = Table(title="planned changes")
    table.add_column("action")
    table.add_column("location")
    table.add_column("from")
    table.add_column("to")
    style = {"ADD": "green", "CHANGE": "yellow", "REMOVE": "red"}
    for leaf in diff.leaves():
        table.add_row(
            f"[{style[leaf.action]}]{leaf.action}[/]",
            leaf.location,
            leaf.actual.pkgid if leaf.actual is not None else "",
            leaf.ideal.pkgid if leaf.ideal is not None else "",
        )
    return table


def render_audit(vulns: Dict[str, Any]) -> Table:
    table = Table(title="vulnerabilities")
    table.add_column("package")
    table.add_column("severity")
    table.add_column("range")
    table.add_column("via")
    table.add_column("fix")
    for name in sorted(vulns):
        vuln = vulns[name]
        data = vuln.to_json()
        via = ", ".join(v["title"] or str(v["source"]) if isinstance(v, dict) else v for v in data["via"])
        fix = data["fixAvailable"]
        if isinstance(fix, dict):
            fix = f"{fix['name']}@{fix['version']}" + (" (major)" if fix["isSemVerMajor"] else "")
        sev = data["severity"]
        table.add_row(name, f"[{_SEVERITY_STYLE[sev]}]{sev}[/]", data["range"], via, str(fix))
    return table

# -----------------------
# Commands
# -----------------------
def _print_problems(arb: Arborist) -> None:
    for p in arb.problems:
        print_warn(f"{p.type}: {p.message}")


def cmd_ideal(arb: Arborist, args) -> int:
    ideal = arb.build_ideal_tree(update=args.update or None, prefer_dedupe=args.prefer_dedupe or None)
    if args.json:
        print_json({"tree": [n.to_dict() for n in sorted(ideal.inventory, key=lambda n: n.location)],
                    "problems": [p.to_dict() for p in arb.problems]})
    else:
        console.print(render_tree(ideal, args.depth))
        _print_problems(arb)
    summary(arb.unresolved)
    return 0


def cmd_ls(arb: Arborist, args) -> int:
    actual = arb.load_actual()
    if args.json:
        print_json([n.to_dict() for n in sorted(actual.inventory, key=lambda n: n.location)])
    else:
        console.print(render_tree(actual, args.depth))
    invalid = sum(1 for n in actual.inventory for e in n.edges_out.values() if e.error)
    summary(invalid)
    return 0


def cmd_diff(arb: Arborist, args) -> int:
    ideal = arb.build_ideal_tree()
    actual = arb.load_actual()
    diff = Diff.calculate(actual, ideal, omit=args.omit or None)
    if args.json:
        print_json([{"action": d.action, "location": d.location,
                     "actual": d.actual.pkgid if d.actual is not None else None,
                     "ideal": d.ideal.pkgid if d.ideal is not None else None} for d in diff.leaves()])
    else:
        console.print(render_diff(diff))
    summary(arb.unresolved)
    return 0


def _print_reify(report: Dict[str, Any]) -> None:
    what = "would be" if report.get("dry_run") else ""
    for key in ("added", "changed", "removed"):
        if report[key]:
            print_info(f"{len(report[key])} packages {what + ' ' if what else ''}{key}")
    for f in report["failed"]:
        print_err(f"{f['location']}: {f['code']} {f['message']}")
    for loc in report["skipped"]:
        print_warn(f"{loc}: skipped")


def cmd_install(arb: Arborist, args) -> int:
    opts: Dict[str, Any] = {"add": args.packages or None, "dry_run": args.dry_run or None,
                            "ignore_scripts": args.ignore_scripts or None, "force": args.force}
    if args.save_dev:
        opts["save_type"] = "dev"
    elif args.save_optional:
        opts["save_type"] = "optional"
    if args.omit:
        opts["omit"] = args.omit
    if args.no_save:
        opts["save"] = False
    report = arb.reify(workspaces=args.workspace or None, **opts)
    if args.json:
        print_json(report)
    else:
        _print_problems(arb)
        _print_reify(report)
    summary(arb.unresolved)
    return 1 if report["failed"] else 0


def cmd_dedupe(arb: Arborist, args) -> int:
    report = arb.dedupe(dry_run=args.dry_run or None)
    _print_reify(report)
    summary(arb.unresolved)
    return 0


def cmd_audit(arb: Arborist, args) -> int:
    report = arb.audit(fix=args.fix, force=args.force)
    vulns = report.at_level(args.audit_level)
    if args.json:
        print_json(report.to_json())
    elif vulns:
        console.print(render_audit(vulns))
    else:
        print_ok("found 0 vulnerabilities")
    summary(arb.unresolved)
    return 1 if vulns else 0


def cmd_explain(arb: Arborist, args) -> int:
    tree = arb.load_actual()
    matches = [n for n in tree.inventory if not n.is_root and (n.name == args.package or n.location == args.package)]
    if not matches:
        print_warn(f"no installed package matches {args.package}")
        return 1
    data = [n.explain() for n in sorted(matches, key=lambda n: n.location)]
    if args.json:
        print_json(data)
    else:
        for item in data:
            console.print(_explain_tree(item))
    return 0


def cmd_query(arb: Arborist, args) -> int:
    tree = arb.load_actual()
    found = tree.query_selector_all(args.selector)
    rows = [{"name": n.package_name, "version": n.version, "location": n.location} for n in found]
    if args.json:
        print_json(rows)
        return 0
    if not rows:
        print_warn(f"nothing matches {args.selector}")
        return 1
    table = Table(title=escape(args.selector))
    for col in ("name", "version", "location"):
        table.add_column(col)
    for row in rows:
        table.add_row(row["name"], row["version"], row["location"] or "<root>")
    console.print(table)
    return 0


def _explain_tree(item: Dict[str, Any], branch: Optional[Tree] = None) -> Tree:
    label = f"{item.get('name')}@{item.get('version')} [dim]{item.get('location') or '<root>'}[/dim]"
    node = Tree(label) if branch is None else branch.add(label)
    for dep in item.get("dependents", []):
        sub = node.add(f"{dep['type']} {dep['name']}@{dep['spec']} from")
        if dep.get("from"):
            _explain_tree(dep["from"], sub)
    return node

# -----------------------
# Argparse wiring
# -----------------------
def make_parser():
    ap = argparse.ArgumentParser(prog="arbor", description="npm-style dependency tree manager")
    ap.add_argument("--path", default=".", help="project folder")
    ap.add_argument("--registry", help="registry folder with <name>.json|yaml packuments")
    ap.add_argument("--advisories", help="advisory file (JSON or YAML)")
    ap.add_argument("--config", help="explicit config file")
    ap.add_argument("--cache", help="fetch cache folder")
    ap.add_argument("--json", action="store_true", help="machine readable output")
    sub = ap.add_subparsers(dest="cmd")

    p_ideal = sub.add_parser("ideal")
    p_ideal.add_argument("--update", nargs="*")
    p_ideal.add_argument("--prefer-dedupe", action="store_true")
    p_ideal.add_argument("--depth", type=int)

    p_ls = sub.add_parser("ls")
    p_ls.add_argument("--depth", type=int)

    p_diff = sub.add_parser("diff")
    p_diff.add_argument("--omit", action="append", choices=["dev", "optional", "peer"])

    p_install = sub.add_parser("install")
    p_install.add_argument("packages", nargs="*")
    p_install.add_argument("--save-dev", "-D", action="store_true")
    p_install.add_argument("--save-optional", "-O", action="store_true")
    p_install.add_argument("--no-save", action="store_true")
    p_install.add_argument("--dry-run", action="store_true")
    p_install.add_argument("--ignore-scripts", action="store_true")
    p_install.add_argument("--force", action="store_true")
    p_install.add_argument("--omit", action="append", choices=["dev", "optional", "peer"])
    p_install.add_argument("--workspace", "-w", action="append")

    p_dedupe = sub.add_parser("dedupe")
    p_dedupe.add_argument("--dry-run", action="store_true")

    p_audit = sub.add_parser("audit")
    p_audit.add_argument("--fix", action="store_true")
    p_audit.add_argument("--force", action="store_true")
    p_audit.add_argument("--audit-level", choices=SEVERITIES)

    p_explain = sub.add_parser("explain")
    p_explain.add_argument("package")

    p_query = sub.add_parser("query")
    p_query.add_argument("selector")
    return ap


COMMANDS = {
    "ideal": cmd_ideal,
    "ls": cmd_ls,
    "diff": cmd_diff,
    "install": cmd_install,
    "dedupe": cmd_dedupe,
    "audit": cmd_audit,
    "explain": cmd_explain,
    "query": cmd_query,
}


def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args = parser.parse_args(argv)
    if not args.cmd:
        parser.print_help()
        return 2
    try:
        if args.config:
            arbor_config.load(args.config, fatal=True)
        registry = DirectoryRegistry(args.registry) if args.registry else None
        advisories = FileAdvisoryFeed(args.advisories) if args.advisories else None
        arb = Arborist(args.path, registry=registry, advisories=advisories, cache_dir=args.cache)
        try:
            return COMMANDS[args.cmd](arb, args)
        finally:
            arb.close()
    except ArborError as e:
        logger.debug("aborted: %s", e.to_dict())
        print_err(f"operation aborted: {e.code} {e.message}")
        return 1
    except KeyboardInterrupt:
        print_err("operation aborted: interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
