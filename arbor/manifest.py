# arbor/manifest.py
"""
package.json reading and workspace discovery.
"""

from __future__ import annotations
import os
import glob
import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from arbor.errors import ManifestNotFoundError, ManifestParseError
from arbor.logging import get_logger

logger = get_logger("manifest")

_DEP_FIELDS = ("dependencies", "devDependencies", "optionalDependencies", "peerDependencies")


def read_package_json(folder: str) -> Dict[str, Any]:
    """
    Parse ``<folder>/package.json``.

    Raises ManifestNotFoundError when the file is missing and
    ManifestParseError when it is not a JSON object.
    """
    path = Path(folder) / "package.json"
    try:
        text = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise ManifestNotFoundError(f"no package.json in {folder}", path=str(path)) from e
    except OSError as e:
        raise ManifestNotFoundError(f"cannot read {path}: {e}", path=str(path)) from e
    try:
        parsed = json.loads(text)
    except ValueError as e:
        raise ManifestParseError(f"invalid JSON in {path}: {e}", path=str(path)) from e
    if not isinstance(parsed, dict):
        raise ManifestParseError(f"{path} does not hold a JSON object", path=str(path))
    return normalize_package(parsed, folder)


def normalize_package(pkg: Dict[str, Any], folder: Optional[str] = None) -> Dict[str, Any]:
    out = dict(pkg)
    for field in _DEP_FIELDS:
        deps = out.get(field)
        if deps is not None and not isinstance(deps, dict):
            logger.warning("manifest: ignoring non-object %s in %s", field, folder or out.get("name"))
            out.pop(field)
    # optional deps also show up in dependencies; the optional entry wins
    if out.get("optionalDependencies") and out.get("dependencies"):
        out["dependencies"] = {k: v for k, v in out["dependencies"].items() if k not in out["optionalDependencies"]}
    scripts = out.get("scripts") or {}
    if folder and not scripts.get("install") and not scripts.get("preinstall") and os.path.exists(os.path.join(folder, "binding.gyp")):
        out["gypfile"] = True
    return out


def write_package_json(folder: str, pkg: Dict[str, Any]) -> str:
    path = os.path.join(folder, "package.json")
    with open(path, "w", encoding="utf-8") as fh:
        fh.write(json.dumps(pkg, indent=2, ensure_ascii=False) + "\n")
    return path


def workspace_patterns(pkg: Dict[str, Any]) -> List[str]:
    ws = pkg.get("workspaces")
    if isinstance(ws, dict):
        ws = ws.get("packages")
    if not isinstance(ws, list):
        return []
    return [p for p in ws if isinstance(p, str)]


def map_workspaces(root_path: str, pkg: Dict[str, Any]) -> Dict[str, str]:
    """Workspace package name -> absolute folder, following the root's ``workspaces`` globs."""
    found: Dict[str, str] = {}
    for pattern in workspace_patterns(pkg):
        negate = pattern.startswith("!")
        pat = pattern[1:] if negate else pattern
        for folder in sorted(glob.glob(os.path.join(root_path, pat))):
            if not os.path.isdir(folder) or "node_modules" in Path(folder).parts:
                continue
            folder = os.path.normpath(folder)
            if negate:
                found = {k: v for k, v in found.items() if v != folder}
                continue
            try:
                wpkg = read_package_json(folder)
            except ManifestNotFoundError:
                continue
            name = wpkg.get("name") or os.path.basename(folder)
            if name in found and found[name] != folder:
                logger.warning("manifest: duplicate workspace %s at %s and %s", name, found[name], folder)
                continue
            found[name] = folder
    return found
