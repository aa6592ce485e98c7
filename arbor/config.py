# arbor/config.py
# -*- coding: utf-8 -*-
"""
Arbor central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit, env override, cwd, user)
- Merge with authoritative DEFAULTS, normalize/coerce types (human sizes to bytes)
- Validate structure and types, warn or raise ConfigInvalidError (fatal)
- Typed access via Config dataclass (get_config(), Config.get(), Config.section())
- Watch file changes with a watchdog observer, notify registered callbacks
- Thread-safe load/reload
- Save writes only the overrides (diff against DEFAULTS)
"""

from __future__ import annotations
import os
import json
import logging
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, List, Tuple, Callable, Union

import yaml
from watchdog.observers import Observer
from watchdog.events import FileSystemEventHandler

from arbor.errors import ConfigInvalidError

# config cannot use arbor.logging (which reads config), so it logs on the plain hierarchy
logger = logging.getLogger("arbor.config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "WARNING",
        "file": None,
        "color": True,
        "max_size": "10M",
        "backups": 5,
        "module_levels": {},
        "jsonl": {"enabled": False, "path": "~/.arbor/logs/transparency.jsonl"},
    },
    "registry": {
        "path": None,
        "workers": 8,
    },
    "fetcher": {
        "cache_dir": "~/.arbor/_cacache",
        "timeout": 60,
        "retries": 3,
        "backoff": 0.2,
        "trust_cache": False,
    },
    "resolver": {
        "prefer_dedupe": False,
        "strict_peer_deps": False,
        "legacy_peer_deps": False,
        "engine_strict": False,
        "node_version": "20.0.0",
        "prune": True,
        "max_iterations": 100000,
    },
    "lockfile": {
        "version": 3,
        "hidden": True,
    },
    "reify": {
        "parallel": 4,
        "dry_run": False,
        "save": True,
        "ignore_scripts": False,
        "omit": [],
    },
    "audit": {
        "omit": [],
        "level": "low",
    },
    "watch": {
        "enabled": False,
    },
}

_PATH_KEYS: List[Tuple[str, ...]] = [
    ("logging", "file"),
    ("logging", "jsonl", "path"),
    ("registry", "path"),
    ("fetcher", "cache_dir"),
]

_INT_KEYS: List[Tuple[str, str]] = [
    ("registry", "workers"),
    ("fetcher", "timeout"),
    ("fetcher", "retries"),
    ("resolver", "max_iterations"),
    ("lockfile", "version"),
    ("reify", "parallel"),
    ("logging", "backups"),
]

# ----------------------------
# Dataclass to hold config
# ----------------------------
@dataclass
class Config:
    raw: Dict[str, Any] = field(default_factory=dict)     # values loaded from file (if any)
    merged: Dict[str, Any] = field(default_factory=dict)  # merged with DEFAULTS
    path: Optional[Path] = None

    def get(self, path: str, default: Any = None) -> Any:
        """Dot-separated getter for merged config."""
        parts = path.split(".") if path else []
        cur: Any = self.merged
        for p in parts:
            if isinstance(cur, dict) and p in cur:
                cur = cur[p]
            else:
                return default
        return cur

    def section(self, name: str) -> Dict[str, Any]:
        val = self.merged.get(name)
        return deepcopy(val) if isinstance(val, dict) else {}

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()
_WATCH_CALLBACKS: List[Callable[[Config], None]] = []
_OBSERVER: Optional[Observer] = None

# ----------------------------
# Utilities
# ----------------------------
def _human_size_to_bytes(val: Union[str, int, None]) -> Optional[int]:
    if val is None:
        return None
    if isinstance(val, int):
        return val
    s = str(val).strip().upper()
    units = {"KB": 1024, "MB": 1024**2, "GB": 1024**3, "K": 1024, "M": 1024**2, "G": 1024**3}
    try:
        for suffix, mul in units.items():
            if s.endswith(suffix):
                return int(float(s[: -len(suffix)].strip()) * mul)
        return int(float(s))
    except ValueError:
        logger.warning("config: cannot parse human size '%s'", val)
        return None

def _expand_path(val: Optional[str]) -> Optional[str]:
    if val is None:
        return None
    return os.path.abspath(os.path.expanduser(os.path.expandvars(val)))

def _deep_merge(a: Dict[str, Any], b: Dict[str, Any]) -> Dict[str, Any]:
    res = deepcopy(a)
    for k, v in b.items():
        if k in res and isinstance(res[k], dict) and isinstance(v, dict):
            res[k] = _deep_merge(res[k], v)
        else:
            res[k] = deepcopy(v)
    return res

def _find_candidates(explicit: Optional[str] = None) -> List[Path]:
    candidates: List[Path] = []
    env = os.environ.get("ARBOR_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "arbor.yaml",
        Path.cwd() / "arbor.yml",
        Path.cwd() / "arbor.json",
        Path.home() / ".config" / "arbor" / "config.yaml",
    ])
    return candidates

def _load_file(path: Path) -> Dict[str, Any]:
    txt = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            data = json.loads(txt)
        else:
            data = yaml.safe_load(txt)
    except (ValueError, yaml.YAMLError) as e:
        raise ConfigInvalidError(f"cannot parse config file {path}: {e}", path=str(path)) from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigInvalidError(f"config file {path} must contain a mapping", path=str(path))
    return data

def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Normalize path fields, convert human sizes and coerce basic types."""
    out = deepcopy(cfg)
    for keys in _PATH_KEYS:
        ref: Any = out
        for k in keys[:-1]:
            ref = ref.get(k, {}) if isinstance(ref, dict) else {}
        last = keys[-1]
        if isinstance(ref, dict) and isinstance(ref.get(last), str) and ref[last]:
            ref[last] = _expand_path(ref[last])

    log_cfg = out.get("logging")
    if isinstance(log_cfg, dict) and "max_size" in log_cfg:
        ms = _human_size_to_bytes(log_cfg["max_size"])
        if ms is not None:
            log_cfg["max_size_bytes"] = ms

    for section, key in _INT_KEYS:
        sec = out.get(section)
        if isinstance(sec, dict) and key in sec:
            try:
                sec[key] = int(sec[key])
            except (TypeError, ValueError):
                logger.debug("config: cannot coerce %s.%s=%r to int", section, key, sec[key])
    return out

def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list). Non-fatal warnings unless called with fatal=True in load."""
    issues: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            issues.append(f"Unknown top-level config key: {k}")
    for section, key in _INT_KEYS:
        val = cfg.get(section, {}).get(key)
        if val is not None and (not isinstance(val, int) or val < 0):
            issues.append(f"{section}.{key} must be a non-negative integer")
    if cfg.get("reify", {}).get("parallel", 1) < 1:
        issues.append("reify.parallel must be integer >= 1")
    if cfg.get("lockfile", {}).get("version") not in (1, 2, 3):
        issues.append("lockfile.version must be one of 1, 2, 3")
    for section in ("reify", "audit"):
        omit = cfg.get(section, {}).get("omit")
        if omit is not None and not isinstance(omit, list):
            issues.append(f"{section}.omit should be a list")
    levels = cfg.get("logging", {}).get("module_levels")
    if levels is not None and not isinstance(levels, dict):
        issues.append("logging.module_levels should be a mapping")
    return (len(issues) == 0, issues)

# ----------------------------
# Loading / reloading
# ----------------------------
def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    for p in _find_candidates(explicit):
        if p and p.exists():
            return p
    return None

def load(explicit_path: Optional[str] = None, fatal: bool = False, overrides: Optional[Dict[str, Any]] = None) -> Config:
    """
    Load and merge config. If fatal=True then structural validation failures raise
    ConfigInvalidError. ``overrides`` are merged last (used by the CLI and tests).
    """
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = {}
        if cfg_path:
            raw = _load_file(cfg_path)
        merged = _deep_merge(DEFAULTS, raw)
        if overrides:
            merged = _deep_merge(merged, overrides)
        normalized = _normalize_and_coerce(merged)
        ok, issues = _validate_structure(normalized)
        if not ok:
            msg = f"config: validation issues: {issues}"
            if fatal:
                logger.error(msg)
                raise ConfigInvalidError(msg, issues=issues)
            logger.warning(msg)
        cfg_obj = Config(raw=raw, merged=normalized, path=cfg_path)
        _CONFIG = cfg_obj
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return cfg_obj

def get_config() -> Config:
    with _CONFIG_LOCK:
        if _CONFIG is None:
            return load()
        return _CONFIG

def reload(explicit_path: Optional[str] = None) -> Config:
    cfg = load(explicit_path)
    _notify_watchers(cfg)
    return cfg

def reset() -> None:
    """Drop the cached config so the next get_config() reloads from disk."""
    global _CONFIG
    with _CONFIG_LOCK:
        _CONFIG = None

# ----------------------------
# Save: write only override (diff) to avoid clobbering defaults
# ----------------------------
def _compute_override(merged: Dict[str, Any], defaults: Dict[str, Any]) -> Dict[str, Any]:
    def diff(a: Any, b: Any) -> Any:
        if type(a) != type(b):
            return deepcopy(a)
        if isinstance(a, dict):
            out = {}
            for k, v in a.items():
                if k not in b:
                    out[k] = deepcopy(v)
                else:
                    d = diff(v, b[k])
                    if d is not None:
                        out[k] = d
            return out or None
        if a != b:
            return deepcopy(a)
        return None
    return diff(merged, defaults) or {}

def save(path: Optional[str] = None, override_only: bool = True) -> Path:
    with _CONFIG_LOCK:
        cfg = get_config()
        out_path = Path(path) if path else (cfg.path or (Path.home() / ".config" / "arbor" / "config.yaml"))
        out_path.parent.mkdir(parents=True, exist_ok=True)
        to_write = cfg.as_dict()
        if override_only:
            to_write = _compute_override(_deep_merge(DEFAULTS, cfg.raw), DEFAULTS)
        with open(out_path, "w", encoding="utf-8") as fh:
            if out_path.suffix.lower() == ".json":
                json.dump(to_write, fh, indent=2, ensure_ascii=False)
            else:
                yaml.safe_dump(to_write, fh, default_flow_style=False, sort_keys=False)
        logger.info("config: saved config to %s (override_only=%s)", out_path, override_only)
        return out_path

# ----------------------------
# Watcher API
# ----------------------------
def register_watch_callback(cb: Callable[[Config], None]) -> None:
    with _CONFIG_LOCK:
        if cb not in _WATCH_CALLBACKS:
            _WATCH_CALLBACKS.append(cb)

def unregister_watch_callback(cb: Callable[[Config], None]) -> None:
    with _CONFIG_LOCK:
        if cb in _WATCH_CALLBACKS:
            _WATCH_CALLBACKS.remove(cb)

def _notify_watchers(cfg: Config) -> None:
    with _CONFIG_LOCK:
        cbs = list(_WATCH_CALLBACKS)
    for cb in cbs:
        try:
            cb(cfg)
        except Exception:
            # one broken subscriber must not stop the others
            logger.exception("config: watcher callback error")

class _FSHandler(FileSystemEventHandler):
    def __init__(self, watched: Path):
        super().__init__()
        self._watched = watched

    def on_modified(self, event):
        src = getattr(event, "src_path", None)
        if src and Path(src) == self._watched:
            logger.info("config: detected modification, reloading %s", self._watched)
            try:
                reload(str(self._watched))
            except ConfigInvalidError:
                logger.exception("config: keeping previous config, reload failed")

def start_watcher() -> bool:
    """Start a watchdog observer on the loaded config file. Returns True when watching."""
    global _OBSERVER
    cfg = get_config()
    if not cfg.get("watch.enabled", False):
        logger.debug("config: watch disabled by config")
        return False
    if cfg.path is None:
        logger.debug("config: no config path to watch")
        return False
    with _CONFIG_LOCK:
        if _OBSERVER is None:
            handler = _FSHandler(cfg.path)
            _OBSERVER = Observer()
            _OBSERVER.schedule(handler, str(cfg.path.parent), recursive=False)
            _OBSERVER.daemon = True
            _OBSERVER.start()
            logger.info("config: started watchdog observer on %s", cfg.path)
    return True

def stop_watcher() -> None:
    global _OBSERVER
    with _CONFIG_LOCK:
        if _OBSERVER is not None:
            _OBSERVER.stop()
            _OBSERVER.join(timeout=2)
            _OBSERVER = None

def validate_config() -> Tuple[bool, List[str]]:
    ok, issues = _validate_structure(get_config().merged)
    cache_dir = get_config().get("fetcher.cache_dir")
    if cache_dir:
        parent = Path(cache_dir).parent
        if parent.exists() and not os.access(parent, os.W_OK):
            issues.append(f"fetcher.cache_dir parent {parent} not writable")
    return (len(issues) == 0, issues)

# ----------------------------
# CLI for inspection and quick ops
# ----------------------------
if __name__ == "__main__":
    import argparse
    ap = argparse.ArgumentParser(prog="arbor-config", description="Inspect/validate arbor config")
    ap.add_argument("--print", action="store_true", help="print merged config")
    ap.add_argument("--raw", action="store_true", help="print raw file config only (if file exists)")
    ap.add_argument("--validate", action="store_true", help="validate config and list issues")
    ap.add_argument("--save", help="save current override to path")
    ap.add_argument("--path", help="explicit config path to load")
    args = ap.parse_args()
    cfg = load(args.path) if args.path else get_config()
    if args.raw:
        print(json.dumps(cfg.raw, indent=2, ensure_ascii=False))
    if args.print:
        print(json.dumps(cfg.merged, indent=2, ensure_ascii=False))
    if args.validate:
        ok, issues = validate_config()
        print("OK:", ok)
        for it in issues:
            print(" -", it)
    if args.save:
        print("Saved to", save(args.save))
