#!/usr/bin/env python3
# kiln/cli.py
"""
kiln CLI - build package archives from a KILNBUILD recipe

How it works:
- loads config (kiln.config) and applies the logging section (kiln.logging)
- warns and asks for confirmation when run as root; fakeroot is off for root
- hands the recipe to BuildSystem and prints a summary table with rich
- exit codes: 0 success, 1 build failure, 2 usage/config error, 130 aborted
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional

from rich.console import Console
from rich.prompt import Confirm
from rich.table import Table

from kiln import __version__
from kiln import config as config_mod
from kiln import logging as kiln_logging
from kiln.buildsystem import BuildSystem
from kiln.config import BuildOptions
from kiln.errors import ConfigError
from kiln.logging import get_logger

logger = get_logger("cli")
console = Console()

EXIT_OK = 0
EXIT_BUILD_FAILED = 1
EXIT_USAGE = 2
EXIT_ABORTED = 130

# -----------------------
# Small pretty helpers
# -----------------------
def print_ok(msg: str):
    console.print(f"[bold green]✔[/] {msg}")

def print_warn(msg: str):
    console.print(f"[bold yellow]![/] {msg}")

def print_err(msg: str):
    console.print(f"[bold red]✖[/] {msg}")

def print_info(msg: str):
    console.print(f"[cyan]{msg}[/cyan]")

# -----------------------
# Root check
# -----------------------
def is_root() -> bool:
    return os.geteuid() == 0

def confirm_root() -> bool:
    print_warn("It is generally NOT recommended to run kiln as root. You are doing this at your own risk!")
    try:
        return Confirm.ask("Do you want to proceed anyway?", default=False, console=console)
    except (EOFError, KeyboardInterrupt):
        return False

# -----------------------
# Summary
# -----------------------
def render_summary(result) -> Table:
    detail = result.get("detail", {})
    table = Table(title="kiln build summary")
    table.add_column("Package", style="bold")
    table.add_column("Status")
    table.add_column("Archive / error")
    for out in detail.get("packages", []):
        if out.ok:
            table.add_row(out.name, "[green]ok[/green]", out.archive_path or "")
        else:
            table.add_row(out.name, "[red]failed[/red]", out.error or "")
    return table

# -----------------------
# Argument parsing
# -----------------------
def make_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="kiln", description="Build package archives from a KILNBUILD recipe")
    ap.add_argument("recipe", nargs="?", default=None, help="path to the recipe (default: ./KILNBUILD)")
    ap.add_argument("--clean", action="store_true", default=None,
                    help="remove staging and fetched sources after a successful build")
    ap.add_argument("--nostrip", action="store_true", default=None,
                    help="do not strip binaries or remove .la/.a files")
    ap.add_argument("--no-fakeroot", dest="no_fakeroot", action="store_true",
                    help="run phase scripts without fakeroot")
    ap.add_argument("--config", help="configuration file (YAML or JSON)")
    ap.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    ap.add_argument("-q", "--quiet", action="store_true", help="only warnings and errors")
    ap.add_argument("--no-color", dest="no_color", action="store_true", help="disable colored log output")
    ap.add_argument("--version", action="version", version=f"kiln {__version__}")
    return ap

def _configure_logging(cfg: config_mod.Config, args: argparse.Namespace):
    log_cfg = dict(cfg.get("logging", {}) or {})
    if args.no_color:
        log_cfg["color"] = False
    kiln_logging.configure(log_cfg)
    if args.verbose:
        kiln_logging.set_level(logging.DEBUG)
    elif args.quiet:
        kiln_logging.set_level(logging.WARNING)

def main(argv: Optional[List[str]] = None) -> int:
    argv = argv if argv is not None else sys.argv[1:]
    parser = make_parser()
    args, unknown = parser.parse_known_args(argv)

    try:
        cfg = config_mod.load(args.config, fatal=True)
    except ConfigError as e:
        print_err(f"Configuration error: {e}")
        return EXIT_USAGE
    _configure_logging(cfg, args)

    for arg in unknown:
        logger.warning("Ignoring unknown argument: %s", arg)

    root = is_root()
    if root:
        if not confirm_root():
            print_err("Aborting at user request.")
            return EXIT_ABORTED
        print_warn("Proceeding as root; fakeroot is disabled.")

    recipe = args.recipe or os.path.join(os.getcwd(), cfg.get("build.recipe_name", "KILNBUILD"))
    if not os.path.isfile(recipe):
        print_err(f"Recipe not found: {recipe}")
        return EXIT_USAGE

    try:
        options = BuildOptions.from_config(
            cfg,
            nostrip=args.nostrip,
            clean=args.clean,
            use_fakeroot=False if (args.no_fakeroot or root) else None,
        )
    except ConfigError as e:
        print_err(f"Configuration error: {e}")
        return EXIT_USAGE
    if options.nostrip:
        print_info("No-strip enabled: binaries will not be stripped.")
    if not options.use_fakeroot:
        print_info("Fakeroot disabled: phase scripts run without privilege emulation.")

    try:
        result = BuildSystem(options).create_package(recipe)
    except KeyboardInterrupt:
        print_err("Interrupted; rerun to resume from the last phase.")
        return EXIT_ABORTED

    if result["detail"].get("packages"):
        console.print(render_summary(result))
    if not result["ok"]:
        print_err(f"Build failed at stage '{result['stage']}': {result['detail'].get('error', 'see log')}")
        return EXIT_BUILD_FAILED
    print_ok("All packages built.")
    return EXIT_OK

if __name__ == "__main__":
    sys.exit(main())
