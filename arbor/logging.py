# arbor/logging.py
# -*- coding: utf-8 -*-
"""
Arbor logging

Features:
 - Integration with arbor.config (hot reload through watch callbacks)
 - Console color formatter
 - Rotating file handler
 - JSONL transparency log
 - Module-level configurable log levels (module_levels)
 - Thread-safe reconfiguration and per-level metrics
"""

from __future__ import annotations
import sys
import json
import time
import logging
import logging.handlers
import threading
from pathlib import Path
from typing import Dict, Any, Optional, List

from arbor.config import get_config, register_watch_callback

_logger = logging.getLogger("arbor.logging")

_DEFAULT_FMT = "[%(asctime)s] [%(levelname)s] [%(arbor_module)s] %(message)s"

# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m",
    }
    RESET = "\033[0m"

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        msg = super().format(record)
        if self.color:
            return f"{self.COLORS.get(record.levelno, '')}{msg}{self.RESET}"
        return msg

# ----------------------
# JSONL formatter for transparency log
# ----------------------
class JSONLineFormatter(logging.Formatter):
    def format(self, record):
        obj = {
            "timestamp": time.time(),
            "level": record.levelname,
            "module": getattr(record, "arbor_module", record.name),
            "message": record.getMessage(),
        }
        if record.exc_info:
            obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)

# ----------------------
# Filters
# ----------------------
class ModuleLevelFilter(logging.Filter):
    def __init__(self, module_levels: Dict[str, str]):
        super().__init__()
        self.module_levels = {m: getattr(logging, str(lvl).upper(), logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        mod = getattr(record, "arbor_module", None)
        if mod and mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True

class _ModuleDefaultFilter(logging.Filter):
    """Records from plain loggers (e.g. arbor.config) carry no arbor_module."""
    def filter(self, record):
        if not hasattr(record, "arbor_module"):
            record.arbor_module = record.name.split(".", 1)[-1]
        return True

# ----------------------
# ArborLogger (singleton)
# ----------------------
class ArborLogger:
    _instance = None
    _singleton_lock = threading.Lock()

    def __new__(cls):
        with cls._singleton_lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._inited = False
        return cls._instance

    def __init__(self):
        if self._inited:
            return
        self._lock = threading.RLock()
        self._root = logging.getLogger("arbor")
        self._handlers: List[logging.Handler] = []
        self._module_filter: Optional[ModuleLevelFilter] = None
        self._metrics: Dict[str, int] = {lvl: 0 for lvl in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")}
        self._jsonl_path: Optional[Path] = None

        self._apply_config(get_config().merged.get("logging", {}))
        register_watch_callback(lambda new_cfg: self.reload_config())
        self._root.addFilter(self._count_levels_filter)
        self._inited = True

    def _count_levels_filter(self, record):
        name = record.levelname
        if name in self._metrics:
            self._metrics[name] += 1
        return True

    # ----------------------
    # Configuration (apply/hot-reload)
    # ----------------------
    def _apply_config(self, cfg: Dict[str, Any]):
        with self._lock:
            for h in list(self._handlers):
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()
            if self._module_filter is not None:
                self._root.removeFilter(self._module_filter)

            self._module_filter = ModuleLevelFilter(cfg.get("module_levels", {}) or {})
            self._root.addFilter(self._module_filter)
            fmt = cfg.get("format") or _DEFAULT_FMT
            datefmt = cfg.get("datefmt", "%H:%M:%S")

            console_cfg = cfg.get("console", {"enabled": True})
            if console_cfg.get("enabled", True):
                ch = logging.StreamHandler(sys.stderr)
                ch.setLevel(getattr(logging, str(cfg.get("level", "WARNING")).upper(), logging.WARNING))
                ch.addFilter(_ModuleDefaultFilter())
                ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=bool(cfg.get("color", True))))
                self._root.addHandler(ch)
                self._handlers.append(ch)

            if cfg.get("file"):
                file_path = Path(cfg["file"]).expanduser()
                file_path.parent.mkdir(parents=True, exist_ok=True)
                max_bytes = _parse_size(cfg.get("max_size", "10M")) or 10 * 1024 * 1024
                fh = logging.handlers.RotatingFileHandler(str(file_path), maxBytes=max_bytes, backupCount=int(cfg.get("backups", 5)), encoding="utf-8")
                fh.setLevel(getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG))
                fh.addFilter(_ModuleDefaultFilter())
                fh.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
                self._root.addHandler(fh)
                self._handlers.append(fh)

            jsonl_cfg = cfg.get("jsonl", {}) or {}
            if jsonl_cfg.get("enabled"):
                path = Path(jsonl_cfg.get("path") or "~/.arbor/logs/transparency.jsonl").expanduser()
                path.parent.mkdir(parents=True, exist_ok=True)
                self._jsonl_path = path
                jh = logging.FileHandler(str(path), encoding="utf-8")
                jh.setLevel(getattr(logging, str(jsonl_cfg.get("level", "INFO")).upper(), logging.INFO))
                jh.setFormatter(JSONLineFormatter())
                self._root.addHandler(jh)
                self._handlers.append(jh)
            else:
                self._jsonl_path = None

            # the logger itself lets everything through, handlers filter
            self._root.setLevel(logging.DEBUG)

    def reload_config(self):
        """Re-apply the logging section of the central config."""
        self._apply_config(get_config().merged.get("logging", {}))
        _logger.debug("logging: reloaded configuration from central config")

    # ----------------------
    # Public API
    # ----------------------
    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'arbor_module' into records."""
        return logging.LoggerAdapter(logging.getLogger("arbor"), {"arbor_module": module_name})

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._metrics)

# ----------------------
# Helper parse size (public)
# ----------------------
def _parse_size(s: Any) -> Optional[int]:
    if s is None:
        return None
    if isinstance(s, int):
        return s
    ss = str(s).strip().upper()
    try:
        for suffix, mul in (("KB", 1024), ("K", 1024), ("MB", 1024**2), ("M", 1024**2), ("GB", 1024**3), ("G", 1024**3)):
            if ss.endswith(suffix):
                return int(float(ss[: -len(suffix)]) * mul)
        return int(float(ss))
    except ValueError:
        _logger.debug("logging: parse size failed for %s", s)
        return None

# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER: Optional[ArborLogger] = None
_GLOBAL_LOCK = threading.Lock()

def _instance() -> ArborLogger:
    global _GLOBAL_LOGGER
    with _GLOBAL_LOCK:
        if _GLOBAL_LOGGER is None:
            _GLOBAL_LOGGER = ArborLogger()
        return _GLOBAL_LOGGER

def get_logger(module: str) -> logging.LoggerAdapter:
    _instance()
    return logging.LoggerAdapter(logging.getLogger("arbor"), {"arbor_module": module})

def reload_config():
    return _instance().reload_config()

def get_metrics() -> Dict[str, int]:
    return _instance().get_metrics()
