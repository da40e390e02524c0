# kiln/pkgtool.py
# -*- coding: utf-8 -*-
"""
pkgtool.py - package archive production for kiln

Features:
- metadata.yaml generation (name, version, description, dependencies, plus
  clashes/gives/optional_dependencies when present) via PyYAML
- symlink materialization inside the staged tree
- archive layout remapping: metadata.yaml and hooks/ stay at the root, everything
  else lives under files/
- tar stream (root:root ownership) compressed with zstandard at level 22 with
  long-distance matching, written atomically to <recipe_dir>/<pkg>-<version>.<ext>
"""

from __future__ import annotations

import os
import tarfile
from typing import Any, Dict, List, Tuple

import yaml
import zstandard as zstd

from kiln.config import BuildOptions
from kiln.errors import PackagingError
from kiln.hooks import HOOKS_DIR
from kiln.logging import get_logger
from kiln.recipe import BuildPlan

logger = get_logger("pkgtool")

METADATA_NAME = "metadata.yaml"
FILES_ROOT = "files"
_OPTIONAL_LISTS = ("clashes", "gives", "optional_dependencies")

# -----------------------------
# Metadata
# -----------------------------
def build_metadata(plan: BuildPlan, index: int) -> Dict[str, Any]:
    name = plan.package_names[index]
    meta: Dict[str, Any] = {
        "name": name,
        "version": plan.version,
        "description": plan.description_for(index),
        "dependencies": plan.dependencies_for(name),
    }
    for key in _OPTIONAL_LISTS:
        values = getattr(plan, key)
        if values:
            meta[key] = list(values)
    return meta

def write_metadata(staging_dir: str, metadata: Dict[str, Any]) -> str:
    path = os.path.join(staging_dir, METADATA_NAME)
    with open(path, "w", encoding="utf-8") as fh:
        yaml.safe_dump(metadata, fh, sort_keys=False, default_flow_style=False, allow_unicode=True)
    return path

# -----------------------------
# Symlinks
# -----------------------------
def create_symlinks(staging_dir: str, pairs: List[Tuple[str, str]]) -> List[str]:
    """
    Create each (link, target) inside staging_dir. The target is stored verbatim.
    An existing link path is skipped with a warning; other errors raise PackagingError.
    """
    created: List[str] = []
    for link, target in pairs:
        link_path = os.path.join(staging_dir, link.lstrip("/"))
        if os.path.lexists(link_path):
            logger.warning("Symlink path already exists, skipping: %s", link_path)
            continue
        try:
            os.makedirs(os.path.dirname(link_path), exist_ok=True)
            os.symlink(target, link_path)
        except OSError as e:
            raise PackagingError(f"cannot create symlink {link_path} -> {target}: {e}") from e
        logger.info("Created symlink %s -> %s", link, target)
        created.append(link_path)
    return created

# -----------------------------
# Archive
# -----------------------------
def archive_name(relpath: str) -> str:
    """Map a path relative to the staged tree to its name inside the archive."""
    rel = relpath.replace(os.sep, "/")
    while rel.startswith("./"):
        rel = rel[2:]
    if rel == METADATA_NAME or rel == HOOKS_DIR or rel.startswith(HOOKS_DIR + "/"):
        return rel
    return f"{FILES_ROOT}/{rel}"

def _root_owned(ti: tarfile.TarInfo) -> tarfile.TarInfo:
    ti.uid = ti.gid = 0
    ti.uname = ti.gname = "root"
    return ti

def _walk_tree(staging_dir: str):
    """Yield (abs_path, relpath) for every entry below staging_dir, parents first, sorted."""
    for root, dirs, files in os.walk(staging_dir, followlinks=False):
        dirs.sort()
        entries = sorted(dirs + files)
        for name in entries:
            full = os.path.join(root, name)
            yield full, os.path.relpath(full, staging_dir)

def compress_tree(staging_dir: str, out_path: str, options: BuildOptions) -> str:
    """Archive staging_dir into out_path (tar + zstd). Raises PackagingError."""
    params = zstd.ZstdCompressionParameters.from_level(
        options.compression_level,
        enable_ldm=options.long_distance,
        threads=options.threads,
    )
    cctx = zstd.ZstdCompressor(compression_params=params)
    tmp = out_path + ".tmp"
    try:
        with open(tmp, "wb") as raw, cctx.stream_writer(raw, closefd=False) as writer:
            with tarfile.open(fileobj=writer, mode="w|", format=tarfile.GNU_FORMAT) as tar:
                root = tarfile.TarInfo(FILES_ROOT)
                root.type = tarfile.DIRTYPE
                root.mode = 0o755
                tar.addfile(_root_owned(root))
                for full, rel in _walk_tree(staging_dir):
                    tar.add(full, arcname=archive_name(rel), recursive=False, filter=_root_owned)
        os.replace(tmp, out_path)
    except (OSError, tarfile.TarError, zstd.ZstdError) as e:
        if os.path.exists(tmp):
            os.remove(tmp)
        raise PackagingError(f"archiving {staging_dir} into {out_path} failed: {e}") from e
    return out_path

# -----------------------------
# PkgTool
# -----------------------------
class PkgTool:
    def __init__(self, options: BuildOptions):
        self.options = options

    def archive_path(self, recipe_dir: str, name: str, version: str) -> str:
        return os.path.join(recipe_dir, f"{name}-{version}.{self.options.archive_extension}")

    def package(self, plan: BuildPlan, index: int, staging_dir: str, recipe_dir: str) -> Dict[str, Any]:
        """Write metadata, create symlinks and produce the archive for one package."""
        name = plan.package_names[index]
        out_path = self.archive_path(recipe_dir, name, plan.version)
        try:
            metadata = build_metadata(plan, index)
            meta_path = write_metadata(staging_dir, metadata)
            links = create_symlinks(staging_dir, plan.symlinks)
            compress_tree(staging_dir, out_path, self.options)
        except PackagingError as e:
            logger.error("Packaging failed for %s: %s", name, e)
            return {"ok": False, "stage": "package", "detail": {"package": name, "error": str(e)}}
        except (OSError, yaml.YAMLError) as e:
            logger.exception("Packaging failed for %s (staging %s)", name, staging_dir)
            return {"ok": False, "stage": "package", "detail": {"package": name, "error": str(e)}}
        size = os.path.getsize(out_path)
        logger.info("Created %s (%d bytes)", out_path, size)
        return {"ok": True, "stage": "package",
                "detail": {"package": name, "archive": out_path, "metadata": meta_path,
                           "symlinks": links, "size": size}}

