# kiln/buildsystem.py
# -*- coding: utf-8 -*-
"""
buildsystem.py - kiln build pipeline

Main API:
  bs = BuildSystem(options)
  result = bs.create_package("/path/to/KILNBUILD")

Result:
  dict {
    "ok": True/False,
    "stage": "recipe|fetch|prepare|compile|verify|assemble|package|complete",
    "detail": {...},  # packages, intermediates, errors
  }

Behaviour:
  - recipe -> sources -> prepare/compile/verify (resumable) -> for each package:
    hooks, assemble, post-process, archive -> optional cleanup
  - phase scripts run through `bash -c '...'` with pkgdir/packagedir/srcdir/
    package_name/package_version exported, optionally under fakeroot
  - a failed archive only fails that package; remaining packages still build
  - cleanup only runs when requested and every package succeeded
"""

from __future__ import annotations

import os
import shutil
import subprocess
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from kiln.config import BuildOptions
from kiln.errors import RecipeError
from kiln.fakeroot import Fakeroot
from kiln.fetcher import ARCHIVE_SUFFIXES, IntermediatePaths, archive_base_name, resolve_sources
from kiln.hooks import HookInstaller
from kiln.logging import get_logger
from kiln.pkgtool import PkgTool
from kiln.postprocess import PostProcessor
from kiln.recipe import BuildPlan, load_recipe
from kiln.resume import ResumeState, ResumeStore

logger = get_logger("buildsystem")

STAGING_ROOT = "packages"
STAGING_LEAF = "files"

# --- helpers ---
def escape_single_quotes(text: str) -> str:
    """Make text safe inside a single-quoted shell word: ' -> '\\''"""
    return text.replace("'", "'\\''")

def escape_double_quoted(text: str) -> str:
    """Make text literal inside a double-quoted shell word (\\ " $ ` are escaped)."""
    for ch in ("\\", '"', "$", "`"):
        text = text.replace(ch, "\\" + ch)
    return text

def _run_shell(cmd: str, cwd: Optional[str] = None) -> int:
    """Run a shell command line with inherited stdio. Returns the exit code."""
    logger.debug("RUN: %s (cwd=%s)", cmd, cwd)
    try:
        proc = subprocess.run(cmd, shell=True, cwd=cwd)
    except OSError as e:
        logger.error("Could not start shell for %s: %s", cwd, e)
        return 127
    return proc.returncode

def staging_dir_for(recipe_dir: str, pkg_name: str) -> str:
    return os.path.join(recipe_dir, STAGING_ROOT, pkg_name, STAGING_LEAF)


@dataclass
class PackageOutput:
    name: str
    staging_dir: str
    dependencies: List[str] = field(default_factory=list)
    description: str = ""
    archive_path: Optional[str] = None
    ok: bool = False
    error: Optional[str] = None


# --- phase execution ---
class PhaseExecutor:
    """
    Runs recipe phase bodies. Helper functions from the recipe are prepended to
    every script so phases can call them.
    """

    def __init__(self, options: BuildOptions, fakeroot: Optional[Fakeroot] = None,
                 helpers: Optional[List[str]] = None):
        self.options = options
        self.fakeroot = fakeroot or Fakeroot(enabled=options.use_fakeroot, command=options.fakeroot_cmd)
        self.helpers = list(helpers or [])

    def compose_script(self, body: str) -> str:
        parts = []
        for block in self.helpers:
            parts.append(block if block.endswith("\n") else block + "\n")
        parts.append(body)
        return "".join(parts)

    def build_command(self, script: str, env: Dict[str, str]) -> str:
        values = {k: escape_double_quoted(env.get(k, ""))
                  for k in ("pkgdir", "srcdir", "package_name", "package_version")}
        payload = (
            f'export pkgdir="{values["pkgdir"]}" && '
            f'export packagedir="{values["pkgdir"]}" && '
            f'export srcdir="{values["srcdir"]}" && '
            f'export package_name="{values["package_name"]}" && '
            f'export package_version="{values["package_version"]}" && '
            f"{script}"
        )
        cmd = f"{self.options.shell} -c '{escape_single_quotes(payload)}'"
        return self.fakeroot.wrap(cmd)

    def run_phase(self, name: str, body: str, pkgdir: str, srcdir: str,
                  package_name: str, version: str) -> Dict[str, Any]:
        if not body and not self.helpers:
            logger.debug("Phase %s is empty; nothing to run", name)
            return {"ok": True, "stage": name, "detail": {"skipped": True}}
        env = {"pkgdir": pkgdir, "srcdir": srcdir, "package_name": package_name, "package_version": version}
        cmd = self.build_command(self.compose_script(body), env)
        logger.info("Running %s() for %s", name, package_name)
        rc = _run_shell(cmd, cwd=srcdir)
        if rc != 0:
            logger.error("%s() failed for %s with exit code %d (pkgdir=%s)", name, package_name, rc, pkgdir)
            return {"ok": False, "stage": name, "detail": {"rc": rc, "package": package_name, "pkgdir": pkgdir}}
        return {"ok": True, "stage": name, "detail": {"rc": 0}}


# --- BuildSystem class ---
class BuildSystem:
    def __init__(self, options: Optional[BuildOptions] = None):
        self.options = options or BuildOptions.from_config()
        self.fakeroot = Fakeroot(enabled=self.options.use_fakeroot, command=self.options.fakeroot_cmd)
        self.postprocessor = PostProcessor(self.options)
        self.pkgtool = PkgTool(self.options)

    def executor_for(self, plan: BuildPlan) -> PhaseExecutor:
        return PhaseExecutor(self.options, fakeroot=self.fakeroot, helpers=plan.custom_functions)

    # --- stages ---
    def fetch(self, plan: BuildPlan, recipe_dir: str) -> Dict[str, Any]:
        return resolve_sources(plan.sources, recipe_dir, self.options)

    def run_global_phases(self, plan: BuildPlan, recipe_dir: str, executor: PhaseExecutor) -> Dict[str, Any]:
        """prepare -> compile -> verify, skipping phases already passed in an interrupted run."""
        store = ResumeStore(recipe_dir, self.options.resume_file)
        state = store.load()
        phases = store.phases_to_run(state)
        if state is not None:
            logger.info("Resuming build at %s() (state file %s)", state.phase, store.path)
        for phase in phases:
            store.save(ResumeState(phase=phase, package_index=0))
            res = executor.run_phase(phase, plan.phase_body(phase), recipe_dir, recipe_dir,
                                     plan.main_package, plan.version)
            if not res["ok"]:
                logger.error("%s() failed; rerun to resume from this phase", phase)
                return res
        store.clear()
        return {"ok": True, "stage": "verify", "detail": {"ran": phases}}

    def build_one(self, plan: BuildPlan, index: int, recipe_dir: str,
                  executor: PhaseExecutor, hooks: HookInstaller) -> Dict[str, Any]:
        """Hooks, assemble, post-process and archive for one package."""
        name = plan.package_names[index]
        staging = staging_dir_for(recipe_dir, name)
        os.makedirs(staging, exist_ok=True)
        out = PackageOutput(name=name, staging_dir=staging,
                            dependencies=plan.dependencies_for(name),
                            description=plan.description_for(index))

        hooks.install(name, staging, plan.is_single_package)

        logger.info("Assembling package: %s", name)
        res = executor.run_phase("assemble", plan.assemble_body_for(name), staging, recipe_dir,
                                 name, plan.version)
        if not res["ok"]:
            out.error = f"assemble failed with exit code {res['detail'].get('rc')}"
            return {"ok": False, "stage": "assemble", "output": out, "detail": res["detail"]}

        self.postprocessor.run(staging)

        pack = self.pkgtool.package(plan, index, staging, recipe_dir)
        if pack["ok"]:
            out.ok = True
            out.archive_path = pack["detail"]["archive"]
        else:
            out.error = pack["detail"].get("error")
        return {"ok": pack["ok"], "stage": "package", "output": out, "detail": pack["detail"]}

    def cleanup(self, recipe_dir: str, intermediates: IntermediatePaths) -> Dict[str, Any]:
        """Remove the staging area, every intermediate path and the directories extracted from archives."""
        removed: List[str] = []
        failed: List[Dict[str, str]] = []

        def _remove(path: str):
            try:
                if os.path.isdir(path) and not os.path.islink(path):
                    shutil.rmtree(path)
                else:
                    os.remove(path)
                removed.append(path)
                logger.info("Removed: %s", path)
            except OSError as e:
                logger.warning("Cleanup failed for %s: %s", path, e)
                failed.append({"path": path, "error": str(e)})

        staging_root = os.path.join(recipe_dir, STAGING_ROOT)
        if os.path.lexists(staging_root):
            _remove(staging_root)
        for path in intermediates:
            if os.path.lexists(path):
                _remove(path)
            if path.endswith(ARCHIVE_SUFFIXES):
                extracted = os.path.join(os.path.dirname(path), archive_base_name(path))
                if os.path.isdir(extracted):
                    _remove(extracted)
        return {"ok": not failed, "stage": "cleanup", "detail": {"removed": removed, "failed": failed}}

    # --- main orchestration ---
    def create_package(self, recipe_path: str) -> Dict[str, Any]:
        """
        Build every package declared by the recipe at recipe_path.
        Returns dict with ok, stage and detail; detail["packages"] lists PackageOutput.
        """
        recipe_path = os.path.abspath(recipe_path)
        recipe_dir = os.path.dirname(recipe_path)
        summary: Dict[str, Any] = {"recipe": recipe_path, "packages": [], "cleanup": None}

        try:
            plan = load_recipe(recipe_path)
        except RecipeError as e:
            logger.error("Cannot use recipe %s: %s", recipe_path, e)
            summary["error"] = str(e)
            return {"ok": False, "stage": "recipe", "detail": summary}
        summary["plan"] = plan
        logger.info("BuildSystem: building %s version %s (%d package(s))",
                    ", ".join(plan.package_names), plan.version, len(plan.package_names))

        fetched = self.fetch(plan, recipe_dir)
        intermediates = fetched["intermediates"]
        if not fetched["ok"]:
            summary["error"] = fetched["error"]
            return {"ok": False, "stage": "fetch", "detail": summary}

        executor = self.executor_for(plan)
        global_res = self.run_global_phases(plan, recipe_dir, executor)
        if not global_res["ok"]:
            summary.update(global_res["detail"])
            return {"ok": False, "stage": global_res["stage"], "detail": summary}

        hooks = HookInstaller(recipe_dir, self.options.universal_hooks_dir)
        all_ok = True
        for index in range(len(plan.package_names)):
            res = self.build_one(plan, index, recipe_dir, executor, hooks)
            summary["packages"].append(res["output"])
            if res["stage"] == "assemble" and not res["ok"]:
                summary["error"] = res["output"].error
                return {"ok": False, "stage": "assemble", "detail": summary}
            if not res["ok"]:
                logger.error("Packaging failed for package %s; continuing with the remaining packages",
                             res["output"].name)
                all_ok = False

        if not all_ok:
            failed = [p.name for p in summary["packages"] if not p.ok]
            summary["error"] = "packaging failed for: " + ", ".join(failed)
            return {"ok": False, "stage": "package", "detail": summary}

        logger.info("All steps complete; %d archive(s) created", len(summary["packages"]))
        if self.options.clean:
            logger.info("Cleaning up intermediate files...")
            summary["cleanup"] = self.cleanup(recipe_dir, intermediates)
        return {"ok": True, "stage": "complete", "detail": summary}


# --- convenience wrapper ---
def build_package(recipe_path: str, options: Optional[BuildOptions] = None) -> Dict[str, Any]:
    return BuildSystem(options).create_package(recipe_path)
