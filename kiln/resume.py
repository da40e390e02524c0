# kiln/resume.py
"""
Resume marker for interrupted builds.

The marker is a two-line text file beside the recipe: the last global phase that
was entered, then the package index. It is written before each global phase
starts and removed once prepare, compile and verify have all succeeded.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Optional

from kiln.logging import get_logger

logger = get_logger("resume")

GLOBAL_PHASES: List[str] = ["prepare", "compile", "verify"]


@dataclass
class ResumeState:
    phase: str
    package_index: int = 0


class ResumeStore:
    def __init__(self, recipe_dir: str, filename: str = ".kiln_resume"):
        self.path = os.path.join(recipe_dir, filename)

    def load(self) -> Optional[ResumeState]:
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                lines = fh.read().splitlines()
        except OSError as e:
            logger.warning("Cannot read resume state %s: %s; starting fresh", self.path, e)
            return None
        phase = lines[0].strip() if lines else ""
        if phase not in GLOBAL_PHASES:
            logger.warning("Ignoring resume state %s with unknown phase %r", self.path, phase)
            return None
        try:
            index = int(lines[1].strip()) if len(lines) > 1 else 0
        except ValueError:
            index = 0
        return ResumeState(phase=phase, package_index=index)

    def save(self, state: ResumeState):
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            fh.write(f"{state.phase}\n{state.package_index}\n")
        os.replace(tmp, self.path)

    def clear(self):
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass

    def phases_to_run(self, state: Optional[ResumeState]) -> List[str]:
        """Global phases still to run; everything before the persisted phase is skipped."""
        if state is None:
            return list(GLOBAL_PHASES)
        return GLOBAL_PHASES[GLOBAL_PHASES.index(state.phase):]
