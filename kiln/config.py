# kiln/config.py
# -*- coding: utf-8 -*-
"""
kiln central configuration loader

Features:
- Read YAML/JSON config from multiple locations (explicit, env override, cwd, user, system)
- Merge with authoritative DEFAULTS, normalize/coerce types (human sizes to bytes, booleans)
- Validate structure and types, warn or raise ConfigError (fatal optional)
- Dotted access via the Config dataclass (get_config(), get_section())
- BuildOptions: the explicit build switches (nostrip, fakeroot, clean, ...) handed
  to the executor, post-processor and packager instead of process-wide globals
"""

from __future__ import annotations
import os
import json
import logging
import threading
from pathlib import Path
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, List, Tuple, Union

import yaml

from kiln.errors import ConfigError

logger = logging.getLogger("kiln.config")

# ----------------------------
# DEFAULT configuration (authoritative base)
# ----------------------------
DEFAULTS: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
        "color": True,
        "file": None,
        "file_level": "DEBUG",
        "max_size": "10M",
        "backups": 5,
        "jsonl": {"enabled": False, "path": "~/.cache/kiln/build.jsonl", "level": "INFO"},
        "module_levels": {},
    },
    "build": {
        "nostrip": False,
        "fakeroot": "auto",  # auto | true | false
        "clean": False,
        "shell": "/bin/bash",
        "fakeroot_cmd": "fakeroot",
        "recipe_name": "KILNBUILD",
        "resume_file": ".kiln_resume",
    },
    "fetcher": {
        "http_timeout": None,
        "chunk_size": 65536,
        "user_agent": "kiln/0.3",
        "progress": True,
        "git_cmd": "git",
    },
    "pkgtool": {
        "extension": "kpkg",
        "compression_level": 22,
        "long_distance": True,
        "threads": -1,
    },
    "hooks": {
        "universal_dir": "etc/kiln.d/universal-hooks",
    },
}

_BOOL_KEYS = [
    ("logging", "color"),
    ("build", "nostrip"),
    ("build", "clean"),
    ("fetcher", "progress"),
    ("pkgtool", "long_distance"),
]

_INT_KEYS = [
    ("logging", "backups"),
    ("fetcher", "chunk_size"),
    ("pkgtool", "compression_level"),
    ("pkgtool", "threads"),
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

    def as_dict(self) -> Dict[str, Any]:
        return deepcopy(self.merged)

# ----------------------------
# Module state
# ----------------------------
_CONFIG: Optional[Config] = None
_CONFIG_LOCK = threading.RLock()

# ----------------------------
# Utilities
# ----------------------------
def _human_size_to_bytes(val: Union[str, int, None]) -> Optional[int]:
    if val is None:
        return None
    if isinstance(val, int):
        return val
    s = str(val).strip().upper()
    units = {"KB": 1024, "K": 1024, "MB": 1024**2, "M": 1024**2, "GB": 1024**3, "G": 1024**3}
    try:
        for suffix, mul in units.items():
            if s.endswith(suffix):
                return int(float(s[: -len(suffix)].strip()) * mul)
        return int(float(s))
    except ValueError:
        logger.warning("config: cannot parse human size '%s'", val)
        return None

def _coerce_bool(val: Any) -> Any:
    if isinstance(val, str):
        low = val.strip().lower()
        if low in ("1", "yes", "true", "on"):
            return True
        if low in ("0", "no", "false", "off"):
            return False
    return val

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
    env = os.environ.get("KILN_CONFIG")
    if explicit:
        candidates.append(Path(explicit))
    if env:
        candidates.append(Path(env))
    candidates.extend([
        Path.cwd() / "kiln.yaml",
        Path.cwd() / "kiln.yml",
        Path.cwd() / "kiln.json",
        Path.home() / ".config" / "kiln" / "config.yaml",
        Path("/etc") / "kiln" / "config.yaml",
    ])
    return candidates

def _load_file(path: Path) -> Optional[Dict[str, Any]]:
    try:
        txt = path.read_text(encoding="utf-8")
    except OSError as e:
        logger.error("config: failed reading %s: %s", path, e)
        return None

    if path.suffix.lower() == ".json":
        try:
            data = json.loads(txt)
        except ValueError as e:
            logger.error("config: invalid JSON in %s: %s", path, e)
            return None
    else:
        try:
            data = yaml.safe_load(txt)
        except yaml.YAMLError as e:
            logger.error("config: invalid YAML in %s: %s", path, e)
            return None
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.error("config: top level of %s must be a mapping", path)
        return None
    return data

def _normalize_and_coerce(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """Expand path fields, convert human sizes and coerce booleans/ints."""
    out = deepcopy(cfg)
    log_cfg = out.get("logging")
    if isinstance(log_cfg, dict):
        if log_cfg.get("file"):
            log_cfg["file"] = _expand_path(str(log_cfg["file"]))
        jsonl = log_cfg.get("jsonl")
        if isinstance(jsonl, dict) and jsonl.get("path"):
            jsonl["path"] = _expand_path(str(jsonl["path"]))
            jsonl["enabled"] = _coerce_bool(jsonl.get("enabled", False))
        ms = _human_size_to_bytes(log_cfg.get("max_size"))
        if ms is not None:
            log_cfg["max_size_bytes"] = ms

    for section, key in _BOOL_KEYS:
        ref = out.get(section)
        if isinstance(ref, dict) and key in ref:
            ref[key] = _coerce_bool(ref[key])

    for section, key in _INT_KEYS:
        ref = out.get(section)
        if isinstance(ref, dict) and key in ref:
            try:
                ref[key] = int(ref[key])
            except (TypeError, ValueError):
                logger.debug("config: cannot coerce %s.%s=%r to int", section, key, ref[key])

    build = out.get("build")
    if isinstance(build, dict):
        fr = _coerce_bool(build.get("fakeroot", "auto"))
        if isinstance(fr, str):
            fr = fr.strip().lower()
        build["fakeroot"] = fr
    return out

def _validate_structure(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """Return (ok, issues_list)."""
    issues: List[str] = []
    for k in cfg.keys():
        if k not in DEFAULTS:
            issues.append(f"Unknown top-level config key: {k}")
    for section in DEFAULTS:
        if section in cfg and not isinstance(cfg[section], dict):
            issues.append(f"{section} must be a mapping")
    build = cfg.get("build", {})
    if isinstance(build, dict):
        if build.get("fakeroot") not in (True, False, "auto"):
            issues.append("build.fakeroot must be true, false or auto")
        for key in ("nostrip", "clean"):
            if not isinstance(build.get(key), bool):
                issues.append(f"build.{key} must be a boolean")
    pkg = cfg.get("pkgtool", {})
    if isinstance(pkg, dict):
        lvl = pkg.get("compression_level")
        if not isinstance(lvl, int) or not 1 <= lvl <= 22:
            issues.append("pkgtool.compression_level must be an integer between 1 and 22")
        ext = pkg.get("extension")
        if not isinstance(ext, str) or not ext or "/" in ext:
            issues.append("pkgtool.extension must be a plain file suffix")
    fetch = cfg.get("fetcher", {})
    if isinstance(fetch, dict):
        t = fetch.get("http_timeout")
        if t is not None and not isinstance(t, (int, float)):
            issues.append("fetcher.http_timeout must be a number or null")
    return (len(issues) == 0, issues)

# ----------------------------
# Loading / reloading
# ----------------------------
def _find_path(explicit: Optional[str] = None) -> Optional[Path]:
    if explicit and not Path(explicit).exists():
        raise ConfigError(f"config file not found: {explicit}")
    for p in _find_candidates(explicit):
        if p.exists():
            return p
    return None

def load(explicit_path: Optional[str] = None, fatal: bool = False) -> Config:
    """
    Load and merge config. With fatal=True an unreadable file or a structural
    validation failure raises ConfigError; otherwise they are logged.
    """
    global _CONFIG
    with _CONFIG_LOCK:
        cfg_path = _find_path(explicit_path)
        raw: Dict[str, Any] = {}
        if cfg_path:
            data = _load_file(cfg_path)
            if data is None:
                msg = f"config: file found but could not be parsed: {cfg_path}"
                if fatal:
                    raise ConfigError(msg)
                logger.warning(msg)
            else:
                raw = data
        merged = _deep_merge(DEFAULTS, raw)
        normalized = _normalize_and_coerce(merged)
        ok, issues = _validate_structure(normalized)
        if not ok:
            msg = f"config: validation issues: {issues}"
            if fatal:
                raise ConfigError(msg)
            logger.warning(msg)
        _CONFIG = Config(raw=raw, merged=normalized, path=cfg_path)
        logger.debug("config: loaded merged config (from=%s)", str(cfg_path) if cfg_path else "<defaults>")
        return _CONFIG

def get_config() -> Config:
    global _CONFIG
    with _CONFIG_LOCK:
        if _CONFIG is None:
            _CONFIG = load()
        return _CONFIG

def reload(explicit_path: Optional[str] = None) -> Config:
    return load(explicit_path)

def get_section(name: str) -> Dict[str, Any]:
    val = get_config().merged.get(name)
    return deepcopy(val) if isinstance(val, dict) else {}

# ----------------------------
# Build options threaded through the pipeline
# ----------------------------
@dataclass
class BuildOptions:
    nostrip: bool = False
    use_fakeroot: bool = False
    clean: bool = False
    shell: str = "/bin/bash"
    fakeroot_cmd: str = "fakeroot"
    resume_file: str = ".kiln_resume"
    archive_extension: str = "kpkg"
    compression_level: int = 22
    long_distance: bool = True
    threads: int = -1
    universal_hooks_dir: str = "etc/kiln.d/universal-hooks"
    http_timeout: Optional[float] = None
    chunk_size: int = 65536
    user_agent: str = "kiln/0.3"
    show_progress: bool = True
    git_cmd: str = "git"

    @classmethod
    def from_config(cls, cfg: Optional[Config] = None, **overrides: Any) -> "BuildOptions":
        """
        Build options from config, then apply explicit overrides (CLI flags).
        Overrides set to None are ignored so unset flags fall through to config.
        """
        cfg = cfg or get_config()
        fakeroot = cfg.get("build.fakeroot", "auto")
        if fakeroot == "auto":
            fakeroot = os.geteuid() != 0
        opts = cls(
            nostrip=bool(cfg.get("build.nostrip", False)),
            use_fakeroot=bool(fakeroot),
            clean=bool(cfg.get("build.clean", False)),
            shell=str(cfg.get("build.shell", "/bin/bash")),
            fakeroot_cmd=str(cfg.get("build.fakeroot_cmd", "fakeroot")),
            resume_file=str(cfg.get("build.resume_file", ".kiln_resume")),
            archive_extension=str(cfg.get("pkgtool.extension", "kpkg")).lstrip("."),
            compression_level=int(cfg.get("pkgtool.compression_level", 22)),
            long_distance=bool(cfg.get("pkgtool.long_distance", True)),
            threads=int(cfg.get("pkgtool.threads", -1)),
            universal_hooks_dir=str(cfg.get("hooks.universal_dir", "etc/kiln.d/universal-hooks")),
            http_timeout=cfg.get("fetcher.http_timeout"),
            chunk_size=int(cfg.get("fetcher.chunk_size", 65536)),
            user_agent=str(cfg.get("fetcher.user_agent", "kiln/0.3")),
            show_progress=bool(cfg.get("fetcher.progress", True)),
            git_cmd=str(cfg.get("fetcher.git_cmd", "git")),
        )
        for k, v in overrides.items():
            if v is None:
                continue
            if not hasattr(opts, k):
                raise ConfigError(f"unknown build option: {k}")
            setattr(opts, k, v)
        return opts
