# kiln/recipe.py
# -*- coding: utf-8 -*-
"""
recipe.py - KILNBUILD recipe parser

Features:
- BuildPlan dataclass: package identities, dependency lists, sources, phase bodies,
  per-package assemble overrides, symlinks and helper-function blocks
- Line-oriented parser: an ordered list of line classifiers evaluated top-to-bottom,
  each consuming the line or declining it, plus one accumulator state
  (Idle | InHelper | InPhase(name) | InArray(name))
- Multi-line parenthesized lists for descriptions, dependencies, sources and the
  clashes/gives/optional_dependencies lists
- load_recipe(path) raises RecipeError when the file is unreadable or declares no package
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Dict, List, Optional, Tuple

from kiln.errors import RecipeError
from kiln.logging import get_logger

logger = get_logger("recipe")

RESERVED_PHASES = ("prepare", "compile", "verify", "assemble")
ASSEMBLE_PREFIX = "assemble_"
SUBPACKAGE_DEPS_PREFIX = "dependencies_"

_QUOTED = re.compile(r'"([^"]*)"')
_RE_ANY_FUNC = re.compile(r"^([_A-Za-z]\w*)\s*\(\)\s*\{$")
_RE_PKG_NAME_LIST = re.compile(r"package_name\s*=\s*\((.*)\)")
_RE_PKG_NAME_OPEN = re.compile(r"package_name\s*=\s*\((.*)")
_RE_PKG_NAME_SINGLE = re.compile(r'package_name\s*=\s*"(.*)"')
_RE_VERSION = re.compile(r'package_version\s*=\s*"(.*)"')
_RE_DESCRIPTION = re.compile(r'description\s*=\s*"(.*)"')
_RE_SOURCES = re.compile(r"^sources\s*=\s*\(")

# recipe key -> BuildPlan attribute
_GLOBAL_LISTS: List[Tuple[re.Pattern, str]] = [
    (re.compile(r"^dependencies\s*=\s*\("), "dependencies"),
    (re.compile(r"^build_dependencies\s*=\s*\("), "build_dependencies"),
    (re.compile(r"^clashes\s*=\s*\("), "clashes"),
    (re.compile(r"^gives\s*=\s*\("), "gives"),
    (re.compile(r"^optional_dependencies\s*=\s*\("), "optional_dependencies"),
]


def extract_quoted(text: str) -> List[str]:
    """Return every "double quoted" value in text. Escaped quotes are not supported."""
    return _QUOTED.findall(text)


# -----------------------
# Data model
# -----------------------
@dataclass
class BuildPlan:
    package_names: List[str] = field(default_factory=list)
    package_descriptions: List[str] = field(default_factory=list)
    version: str = ""
    description: str = ""
    dependencies: List[str] = field(default_factory=list)
    build_dependencies: List[str] = field(default_factory=list)
    clashes: List[str] = field(default_factory=list)
    gives: List[str] = field(default_factory=list)
    optional_dependencies: List[str] = field(default_factory=list)
    subpackage_dependencies: Dict[str, List[str]] = field(default_factory=dict)
    sources: List[str] = field(default_factory=list)
    prepare: str = ""
    compile: str = ""
    verify: str = ""
    assemble: str = ""
    assemble_functions: Dict[str, str] = field(default_factory=dict)
    symlinks: List[Tuple[str, str]] = field(default_factory=list)
    custom_functions: List[str] = field(default_factory=list)
    source_path: Optional[str] = None

    @property
    def is_single_package(self) -> bool:
        return len(self.package_names) == 1

    @property
    def main_package(self) -> str:
        return self.package_names[0]

    def phase_body(self, phase: str) -> str:
        if phase not in ("prepare", "compile", "verify"):
            raise KeyError(phase)
        return getattr(self, phase)

    def assemble_body_for(self, name: str) -> str:
        """Package-specific assemble body if declared, else the generic one (may be empty)."""
        if name in self.assemble_functions:
            return self.assemble_functions[name]
        return self.assemble

    def description_for(self, index: int) -> str:
        if index < len(self.package_descriptions):
            return self.package_descriptions[index]
        return self.description

    def dependencies_for(self, name: str) -> List[str]:
        return list(self.dependencies) + list(self.subpackage_dependencies.get(name, []))

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# -----------------------
# Accumulator state
# -----------------------
IDLE = "idle"
IN_HELPER = "helper"
IN_PHASE = "phase"
IN_ARRAY = "array"


@dataclass
class _State:
    kind: str = IDLE
    name: Optional[str] = None          # phase name, or array sink name
    buffer: List[str] = field(default_factory=list)
    sink: Optional[Callable[[List[str]], None]] = None


class RecipeParser:
    """
    Stateful line classifier. One instance parses one recipe; use parse_recipe().
    """

    def __init__(self, source: Optional[str] = None):
        self.plan = BuildPlan(source_path=source)
        self.state = _State()
        # phase block interrupted by a helper or a list; restored when that closes
        self._suspended: Optional[_State] = None
        self.lineno = 0
        # phase name ("prepare", "assemble", "assemble_<pkg>") -> list of lines
        self._phase_lines: Dict[str, List[str]] = {}
        self._classifiers: List[Callable[[str, str], bool]] = [
            self._helper_start,
            self._package_names,
            self._package_descriptions,
            self._subpackage_dependencies,
            self._scalars,
            self._global_lists,
            self._sources,
            self._symlink,
            self._phase_start,
            self._block_end,
            self._phase_line,
        ]

    # -----------------------
    # driver
    # -----------------------
    def feed(self, raw: str):
        self.lineno += 1
        trimmed = raw.strip()

        if self.state.kind == IN_HELPER:
            self.state.buffer.append(raw if raw.endswith("\n") else raw + "\n")
            if trimmed == "}":
                self.plan.custom_functions.append("".join(self.state.buffer))
                self._restore_state()
            return

        if self.state.kind == IN_ARRAY:
            if trimmed and not trimmed.startswith("#"):
                self._continue_array(trimmed)
            return

        if not trimmed or trimmed.startswith("#"):
            if self.state.kind == IN_PHASE:
                self._append_phase_line(raw)
            return

        for classifier in self._classifiers:
            if classifier(raw, trimmed):
                return
        logger.debug("recipe: line %d ignored outside any block: %s", self.lineno, trimmed)

    def finish(self) -> BuildPlan:
        if self.state.kind == IN_ARRAY:
            # unterminated list: keep what was collected
            logger.warning("recipe: list %s not closed before end of file", self.state.name)
            self._flush_array(" ".join(self.state.buffer))
        elif self.state.kind == IN_HELPER:
            logger.warning("recipe: helper function not closed before end of file")
            self.plan.custom_functions.append("".join(self.state.buffer))
            self._restore_state()
        if self.state.kind == IN_PHASE:
            logger.warning("recipe: block %s() not closed before end of file", self.state.name)
            self._close_phase()
        if not self.plan.package_names:
            where = self.plan.source_path or "<recipe>"
            raise RecipeError(f"{where}: no package_name declared")
        return self.plan

    # -----------------------
    # array accumulation
    # -----------------------
    def _suspend_phase(self):
        if self.state.kind == IN_PHASE:
            self._suspended = self.state

    def _restore_state(self):
        self.state = self._suspended or _State()
        self._suspended = None

    def _open_array(self, name: str, after_paren: str, sink: Callable[[List[str]], None]):
        self._suspend_phase()
        self.state = _State(kind=IN_ARRAY, name=name, buffer=[after_paren], sink=sink)
        if ")" in after_paren:
            self._flush_array(after_paren)

    def _continue_array(self, trimmed: str):
        self.state.buffer.append(trimmed)
        joined = " ".join(self.state.buffer)
        if ")" in joined:
            self._flush_array(joined)

    def _flush_array(self, joined: str):
        end = joined.find(")")
        if end != -1:
            joined = joined[:end]
        sink = self.state.sink
        self._restore_state()
        if sink is not None:
            sink(extract_quoted(joined))

    # -----------------------
    # classifiers (ordered)
    # -----------------------
    def _helper_start(self, raw: str, trimmed: str) -> bool:
        m = _RE_ANY_FUNC.match(trimmed)
        if not m:
            return False
        name = m.group(1)
        if name in RESERVED_PHASES or name.startswith(ASSEMBLE_PREFIX):
            return False
        if self.state.kind == IN_PHASE:
            logger.debug("recipe: helper %s() declared inside %s()", name, self.state.name)
        self._suspend_phase()
        self.state = _State(kind=IN_HELPER, name=name, buffer=[raw if raw.endswith("\n") else raw + "\n"])
        return True

    def _package_names(self, raw: str, trimmed: str) -> bool:
        m = _RE_PKG_NAME_LIST.fullmatch(trimmed)
        if m:
            self.plan.package_names.extend(extract_quoted(m.group(1)))
            return True
        m = _RE_PKG_NAME_SINGLE.fullmatch(trimmed)
        if m:
            self.plan.package_names.append(m.group(1))
            return True
        m = _RE_PKG_NAME_OPEN.fullmatch(trimmed)
        if m:
            self._open_array("package_name", m.group(1), self.plan.package_names.extend)
            return True
        return False

    def _package_descriptions(self, raw: str, trimmed: str) -> bool:
        if not trimmed.startswith("package_descriptions") or "(" not in trimmed:
            return False
        self._open_array("package_descriptions", trimmed[trimmed.find("(") + 1:],
                         self.plan.package_descriptions.extend)
        return True

    def _subpackage_dependencies(self, raw: str, trimmed: str) -> bool:
        if not trimmed.startswith(SUBPACKAGE_DEPS_PREFIX):
            return False
        eq = trimmed.find("=")
        if eq == -1:
            return True
        name = trimmed[:eq].strip()[len(SUBPACKAGE_DEPS_PREFIX):]
        paren = trimmed.find("(")
        if paren != -1:
            target = self.plan.subpackage_dependencies.setdefault(name, [])
            self._open_array(f"dependencies_{name}", trimmed[paren + 1:], target.extend)
        return True

    def _scalars(self, raw: str, trimmed: str) -> bool:
        m = _RE_VERSION.fullmatch(trimmed)
        if m:
            self.plan.version = m.group(1)
            return True
        m = _RE_DESCRIPTION.fullmatch(trimmed)
        if m:
            self.plan.description = m.group(1)
            return True
        return False

    def _global_lists(self, raw: str, trimmed: str) -> bool:
        for pattern, attr in _GLOBAL_LISTS:
            m = pattern.match(trimmed)
            if m:
                self._open_array(attr, trimmed[m.end():], getattr(self.plan, attr).extend)
                return True
        return False

    def _sources(self, raw: str, trimmed: str) -> bool:
        m = _RE_SOURCES.match(trimmed)
        if not m:
            return False
        self._open_array("sources", trimmed[m.end():], self.plan.sources.extend)
        return True

    def _symlink(self, raw: str, trimmed: str) -> bool:
        if not trimmed.startswith("symlink:"):
            return False
        pair = trimmed[len("symlink:"):].strip()
        if len(pair) >= 2 and pair[0] == '"' and pair[-1] == '"':
            pair = pair[1:-1]
        link, sep, target = pair.partition(":")
        link, target = link.strip(), target.strip()
        if sep and link and target:
            self.plan.symlinks.append((link, target))
        else:
            logger.warning("recipe: line %d: malformed symlink declaration: %s", self.lineno, trimmed)
        return True

    def _phase_start(self, raw: str, trimmed: str) -> bool:
        if "{" not in trimmed:
            return False
        for phase in RESERVED_PHASES:
            if trimmed.startswith(phase + "()"):
                self._enter_phase(phase)
                return True
        if trimmed.startswith(ASSEMBLE_PREFIX):
            end = trimmed.find("()", len(ASSEMBLE_PREFIX))
            if end != -1:
                self._enter_phase(trimmed[:end])
                return True
        return False

    def _block_end(self, raw: str, trimmed: str) -> bool:
        if trimmed != "}":
            return False
        if self.state.kind == IN_PHASE:
            self._close_phase()
        else:
            logger.debug("recipe: line %d: stray closing brace", self.lineno)
        return True

    def _phase_line(self, raw: str, trimmed: str) -> bool:
        if self.state.kind != IN_PHASE:
            return False
        self._append_phase_line(raw)
        return True

    # -----------------------
    # phase helpers
    # -----------------------
    def _enter_phase(self, name: str):
        if self.state.kind == IN_PHASE:
            logger.warning("recipe: line %d: %s() opened before %s() was closed", self.lineno, name, self.state.name)
            self._close_phase()
        self.state = _State(kind=IN_PHASE, name=name)
        # a repeated assemble_<pkg>() replaces the earlier body
        self._phase_lines[name] = []

    def _append_phase_line(self, raw: str):
        self._phase_lines[self.state.name].append(raw if raw.endswith("\n") else raw + "\n")

    def _close_phase(self):
        name = self.state.name
        body = "".join(self._phase_lines.get(name, []))
        if name.startswith(ASSEMBLE_PREFIX):
            self.plan.assemble_functions[name[len(ASSEMBLE_PREFIX):]] = body
        else:
            setattr(self.plan, name, body)
        self.state = _State()


def parse_recipe(text: str, source: Optional[str] = None) -> BuildPlan:
    parser = RecipeParser(source=source)
    for line in text.splitlines(keepends=True):
        parser.feed(line)
    plan = parser.finish()
    logger.debug("recipe: parsed %s: packages=%s version=%s sources=%d",
                  source or "<text>", plan.package_names, plan.version, len(plan.sources))
    return plan


def load_recipe(path: str) -> BuildPlan:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            text = fh.read()
    except (OSError, UnicodeDecodeError) as e:
        raise RecipeError(f"cannot read recipe {path}: {e}") from e
    return parse_recipe(text, source=path)
