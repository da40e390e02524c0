# kiln/hooks.py

import os
import re
import shutil
from typing import List, Optional, Tuple

from kiln.logging import get_logger

logger = get_logger("hooks")

HOOKS_DIR = "hooks"


def hook_pattern(pkg_name: str, single_package: bool) -> "re.Pattern":
    """
    single package:  (<pkg>-)?<phase>.hook   -> group 2 is the phase file name
    multi package:   <pkg>-<phase>.hook      -> group 1 is the phase file name
    """
    name = re.escape(pkg_name)
    if single_package:
        return re.compile(r"^(" + name + r"-)?(.+\.hook)$", re.IGNORECASE)
    return re.compile(r"^" + name + r"-(.+\.hook)$", re.IGNORECASE)


class HookInstaller:
    def __init__(self, recipe_dir: str, universal_dir: str = "etc/kiln.d/universal-hooks"):
        self.recipe_dir = recipe_dir
        self.universal_dir = universal_dir

    # -----------------------------
    # Directory layout
    # -----------------------------
    def prepare_dirs(self, staging_dir: str) -> Tuple[str, str]:
        universal = os.path.join(staging_dir, self.universal_dir)
        pkg_hooks = os.path.join(staging_dir, HOOKS_DIR)
        os.makedirs(universal, exist_ok=True)
        os.makedirs(pkg_hooks, exist_ok=True)
        return universal, pkg_hooks

    # -----------------------------
    # Classification
    # -----------------------------
    def destination(self, filename: str, pkg_name: str, single_package: bool,
                    staging_dir: str) -> Optional[str]:
        m = hook_pattern(pkg_name, single_package).match(filename)
        if not m:
            return None
        if filename[:1].isdigit():
            return os.path.join(staging_dir, self.universal_dir, filename)
        phase = m.group(2) if single_package else m.group(1)
        return os.path.join(staging_dir, HOOKS_DIR, phase)

    def candidates(self) -> List[str]:
        """Immediate regular files of the recipe directory, sorted by name."""
        out = []
        with os.scandir(self.recipe_dir) as it:
            for entry in it:
                if entry.is_file(follow_symlinks=False):
                    out.append(entry.name)
        return sorted(out)

    # -----------------------------
    # Installation
    # -----------------------------
    def install(self, pkg_name: str, staging_dir: str, single_package: bool) -> List[Tuple[str, str]]:
        """Copy matching hook files into the staged tree. Copy failures are only logged."""
        self.prepare_dirs(staging_dir)
        installed: List[Tuple[str, str]] = []
        for fname in self.candidates():
            dest = self.destination(fname, pkg_name, single_package, staging_dir)
            if dest is None:
                continue
            src = os.path.join(self.recipe_dir, fname)
            try:
                shutil.copyfile(src, dest)
                shutil.copymode(src, dest)
            except OSError as e:
                logger.warning("Failed to copy hook %s for %s: %s", src, pkg_name, e)
                continue
            logger.info("Installed hook %s -> %s", fname, os.path.relpath(dest, staging_dir))
            installed.append((src, dest))
        return installed
