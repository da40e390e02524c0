# kiln/postprocess.py
"""
postprocess.py - cleanup of a staged package tree before archiving

Features:
- strip --strip-unneeded --strip-debug on every regular file except *.o (via find)
- removal of libtool archives (*.la), then static archives (*.a)
- never fails the build: every problem is a warning
- disabled entirely with BuildOptions.nostrip
"""

from __future__ import annotations

import os
import shutil
import subprocess
from typing import Any, Dict, List

from kiln.config import BuildOptions
from kiln.logging import get_logger

logger = get_logger("postprocess")

REMOVE_SUFFIXES = (".la", ".a")


def strip_command(tree: str) -> List[str]:
    return ["find", tree, "-type", "f", "!", "-name", "*.o",
            "-exec", "strip", "--strip-unneeded", "--strip-debug", "{}", "+"]


def _regular_files_with_suffix(tree: str, suffix: str) -> List[str]:
    found = []
    for root, dirs, files in os.walk(tree, followlinks=False):
        for fname in files:
            if not fname.endswith(suffix):
                continue
            path = os.path.join(root, fname)
            if os.path.isfile(path) and not os.path.islink(path):
                found.append(path)
    return sorted(found)


class PostProcessor:
    def __init__(self, options: BuildOptions):
        self.options = options

    def strip(self, tree: str) -> bool:
        if not shutil.which("strip"):
            logger.warning("strip not found in PATH; binaries in %s are left unstripped", tree)
            return False
        cmd = strip_command(tree)
        logger.debug("RUN: %s", " ".join(cmd))
        try:
            proc = subprocess.run(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True)
        except OSError as e:
            logger.warning("Could not run strip over %s: %s", tree, e)
            return False
        if proc.returncode != 0:
            # non-ELF files make strip complain; that is expected
            logger.warning("strip exited with %d for %s", proc.returncode, tree)
            logger.debug("strip stderr: %s", proc.stderr.strip())
            return False
        return True

    def remove_archives(self, tree: str) -> List[str]:
        removed: List[str] = []
        for suffix in REMOVE_SUFFIXES:
            for path in _regular_files_with_suffix(tree, suffix):
                try:
                    os.remove(path)
                    removed.append(path)
                    logger.debug("Removed %s", path)
                except OSError as e:
                    logger.warning("Failed to remove %s: %s", path, e)
        return removed

    def run(self, tree: str) -> Dict[str, Any]:
        if self.options.nostrip:
            logger.info("No-strip set; skipping post-processing of %s", tree)
            return {"ok": True, "stage": "postprocess", "detail": {"skipped": True}}
        stripped = self.strip(tree)
        removed = self.remove_archives(tree)
        if removed:
            logger.info("Removed %d static/libtool archive(s) from %s", len(removed), tree)
        return {"ok": True, "stage": "postprocess",
                "detail": {"skipped": False, "stripped": stripped, "removed": removed}}
