# kiln/logging.py
# -*- coding: utf-8 -*-
"""
kiln logging

Features:
 - Integration with kiln.config (logging section)
 - Console color formatter (disabled automatically when not on a TTY)
 - Rotating file handler
 - JSONL build log (one JSON object per record)
 - Module-level configurable log levels (module_levels)
 - Per-level counters, used by the CLI summary
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

from kiln.config import get_config

_logger = logging.getLogger("kiln.logging")

DEFAULT_FORMAT = "[%(asctime)s] [%(levelname)s] [%(kiln_module)s] %(message)s"
DEFAULT_DATEFMT = "%H:%M:%S"

# ----------------------
# Color formatter
# ----------------------
class ColorFormatter(logging.Formatter):
    COLORS = {
        logging.DEBUG: "\033[37m",    # light gray
        logging.INFO: "\033[36m",     # cyan
        logging.WARNING: "\033[33m",  # yellow
        logging.ERROR: "\033[31m",    # red
        logging.CRITICAL: "\033[41;37m", # white on red
    }
    RESET = "\033[0m"

    def __init__(self, fmt: Optional[str] = None, datefmt: Optional[str] = None, color: bool = True):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.color = color

    def format(self, record):
        if not hasattr(record, "kiln_module"):
            record.kiln_module = record.name
        msg = super().format(record)
        if self.color:
            color = self.COLORS.get(record.levelno, "")
            return f"{color}{msg}{self.RESET}"
        return msg

# ----------------------
# JSONL formatter for the build log
# ----------------------
class JSONLineFormatter(logging.Formatter):
    def format(self, record):
        obj = {
            "timestamp": time.time(),
            "level": record.levelname,
            "module": getattr(record, "kiln_module", record.name),
            "message": record.getMessage(),
        }
        if record.exc_info:
            obj["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(obj, ensure_ascii=False)

# ----------------------
# Module-level filter for per-module levels
# ----------------------
class ModuleLevelFilter(logging.Filter):
    def __init__(self, module_levels: Dict[str, str]):
        super().__init__()
        self.module_levels = {m: getattr(logging, str(lvl).upper(), logging.INFO) for m, lvl in (module_levels or {}).items()}

    def filter(self, record):
        mod = getattr(record, "kiln_module", None)
        if mod and mod in self.module_levels:
            return record.levelno >= self.module_levels[mod]
        return True

# ----------------------
# KilnLogger (singleton)
# ----------------------
class KilnLogger:
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
        self._root = logging.getLogger("kiln")
        self._handlers: List[logging.Handler] = []
        self._module_filter: Optional[ModuleLevelFilter] = None
        self._console: Optional[logging.Handler] = None
        self._metrics: Dict[str, int] = {lvl: 0 for lvl in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")}
        self._root.addFilter(self._count_levels_filter)
        self._configured = False
        self._inited = True

    def _count_levels_filter(self, record):
        name = record.levelname
        if name in self._metrics:
            self._metrics[name] += 1
        return True

    # ----------------------
    # Configuration
    # ----------------------
    def configure(self, cfg: Optional[Dict[str, Any]] = None, stream=None):
        """Apply the `logging` config section, replacing previously installed handlers."""
        if cfg is None:
            cfg = get_config().merged.get("logging", {})
        stream = stream or sys.stderr
        with self._lock:
            for h in self._handlers:
                self._root.removeHandler(h)
                h.close()
            self._handlers.clear()
            if self._module_filter is not None:
                self._root.removeFilter(self._module_filter)

            self._module_filter = ModuleLevelFilter(cfg.get("module_levels", {}) or {})
            self._root.addFilter(self._module_filter)

            level = getattr(logging, str(cfg.get("level", "INFO")).upper(), logging.INFO)
            fmt = cfg.get("format") or DEFAULT_FORMAT
            datefmt = cfg.get("datefmt", DEFAULT_DATEFMT)
            color = bool(cfg.get("color", True)) and hasattr(stream, "isatty") and stream.isatty()

            ch = logging.StreamHandler(stream)
            ch.setLevel(level)
            ch.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=color))
            self._root.addHandler(ch)
            self._handlers.append(ch)
            self._console = ch

            if cfg.get("file"):
                try:
                    file_path = Path(cfg["file"]).expanduser()
                    file_path.parent.mkdir(parents=True, exist_ok=True)
                    max_bytes = cfg.get("max_size_bytes") or 10 * 1024 * 1024
                    fh = logging.handlers.RotatingFileHandler(str(file_path), maxBytes=max_bytes, backupCount=int(cfg.get("backups", 5)), encoding="utf-8")
                    fh.setLevel(getattr(logging, str(cfg.get("file_level", "DEBUG")).upper(), logging.DEBUG))
                    fh.setFormatter(ColorFormatter(fmt, datefmt=datefmt, color=False))
                    self._root.addHandler(fh)
                    self._handlers.append(fh)
                except OSError:
                    _logger.exception("logging: failed to configure file handler %s", cfg.get("file"))

            jsonl_cfg = cfg.get("jsonl") or {}
            if jsonl_cfg.get("enabled"):
                try:
                    path = Path(jsonl_cfg["path"]).expanduser()
                    path.parent.mkdir(parents=True, exist_ok=True)
                    jh = logging.FileHandler(str(path), encoding="utf-8")
                    jh.setLevel(getattr(logging, str(jsonl_cfg.get("level", "INFO")).upper(), logging.INFO))
                    jh.setFormatter(JSONLineFormatter())
                    self._root.addHandler(jh)
                    self._handlers.append(jh)
                except (OSError, KeyError):
                    _logger.exception("logging: failed to configure jsonl handler")

            # handlers filter by their own level; the logger passes everything through
            self._root.setLevel(logging.DEBUG)
            self._configured = True

    def set_level(self, level: int):
        with self._lock:
            if not self._configured:
                self.configure()
            if self._console is not None:
                self._console.setLevel(level)

    # ----------------------
    # Public API
    # ----------------------
    def get_logger(self, module_name: str) -> logging.LoggerAdapter:
        """Return a LoggerAdapter that injects 'kiln_module' into records."""
        if not self._configured:
            self.configure()
        return logging.LoggerAdapter(self._root, {"kiln_module": module_name})

    def get_metrics(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._metrics)

    def reset_metrics(self):
        with self._lock:
            for k in self._metrics:
                self._metrics[k] = 0

# ----------------------
# Public factory
# ----------------------
_GLOBAL_LOGGER = KilnLogger()

def get_logger(module: str) -> logging.LoggerAdapter:
    return _GLOBAL_LOGGER.get_logger(module)

def configure(cfg: Optional[Dict[str, Any]] = None, stream=None):
    return _GLOBAL_LOGGER.configure(cfg, stream=stream)

def set_level(level: int):
    return _GLOBAL_LOGGER.set_level(level)

def get_metrics() -> Dict[str, int]:
    return _GLOBAL_LOGGER.get_metrics()

def reset_metrics():
    return _GLOBAL_LOGGER.reset_metrics()
