# arbor/scripts.py
"""
Lifecycle scheduling for installed packages.

The scheduler only decides which nodes need which install events and in
what order; running a command is delegated to a runner callable
``runner(node, event, cmd) -> int``. ``shell_runner`` is the default one.
"""

from __future__ import annotations
import os
import subprocess
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from arbor.errors import LifecycleScriptError
from arbor.logging import get_logger

logger = get_logger("scripts")

EVENTS = ("preinstall", "install", "postinstall")
Runner = Callable[[Any, str, str], int]


def shell_runner(node: Any, event: str, cmd: str) -> int:
    env = dict(os.environ)
    bins = [os.path.join(n.path, "node_modules", ".bin") for n in node.ancestry() if n.path]
    env["PATH"] = os.pathsep.join(bins + [env.get("PATH", "")])
    env["npm_lifecycle_event"] = event
    env["npm_package_name"] = node.package_name
    env["npm_package_version"] = node.version
    logger.info("[scripts] %s %s: %s", node.pkgid, event, cmd)
    proc = subprocess.run(["/bin/sh", "-c", cmd], cwd=node.path, env=env)
    return proc.returncode


def scripts_for(node: Any) -> Dict[str, str]:
    pkg = node.package
    scripts = pkg.get("scripts") or {}
    out = {ev: scripts[ev] for ev in EVENTS if isinstance(scripts.get(ev), str) and scripts[ev]}
    if pkg.get("gypfile") and "install" not in out and "preinstall" not in out:
        out["install"] = "node-gyp rebuild"
    return out


class ScriptScheduler:
    def __init__(self, nodes: Iterable[Any], runner: Optional[Runner] = None):
        self.nodes = [n for n in nodes if not n.is_link]
        self.runner = runner or shell_runner
        self.runs: List[Dict[str, Any]] = []

    def order(self) -> List[Any]:
        """
        Dependencies before dependents, following edges between the scheduled
        nodes (links count as their targets). Cycles are broken by location.
        """
        wanted = {n: None for n in sorted(self.nodes, key=lambda n: n.location)}
        visited: Dict[Any, int] = {}
        result: List[Any] = []

        def real(n: Any) -> Any:
            return n.target if n.is_link and n.target is not None else n

        def dfs(n: Any) -> None:
            state = visited.get(n, 0)
            if state:
                # 1 means a cycle through n; the first visit wins
                return
            visited[n] = 1
            deps = sorted((real(e.to) for e in n.edges_out.values() if e.to is not None), key=lambda d: d.location)
            for dep in deps:
                if dep in wanted:
                    dfs(dep)
            visited[n] = 2
            result.append(n)

        for n in wanted:
            dfs(n)
        return result

    def plan(self) -> List[Tuple[Any, str, str]]:
        ordered = self.order()
        steps: List[Tuple[Any, str, str]] = []
        for event in EVENTS:
            for node in ordered:
                cmd = scripts_for(node).get(event)
                if cmd:
                    steps.append((node, event, cmd))
        return steps

    def run(self) -> List[Dict[str, Any]]:
        failed_nodes = set()
        for node, event, cmd in self.plan():
            if node in failed_nodes:
                continue
            code = self.runner(node, event, cmd)
            record = {"pkgid": node.pkgid, "location": node.location, "event": event, "cmd": cmd, "code": code}
            self.runs.append(record)
            if code == 0:
                continue
            if node.optional:
                logger.warning("[scripts] optional %s failed %s with code %s", node.pkgid, event, code)
                failed_nodes.add(node)
                continue
            raise LifecycleScriptError(f"{node.pkgid} {event}: `{cmd}` exited with code {code}",
                                       pkgid=node.pkgid, event=event, code=code, runs=list(self.runs))
        return self.runs
