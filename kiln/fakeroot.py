# kiln/fakeroot.py
"""
fakeroot.py - privilege emulation wrapper for phase scripts

Phase scripts of unprivileged builds run under `fakeroot` so that chown/chmod
calls during assemble() succeed and the staged tree records root ownership.
"""

from __future__ import annotations

import shutil
from typing import Optional

from kiln.logging import get_logger

logger = get_logger("fakeroot")


class Fakeroot:
    def __init__(self, enabled: bool = True, command: str = "fakeroot"):
        self.enabled = enabled
        self.command = command
        self._resolved: Optional[str] = None
        self._warned = False

    def available(self) -> bool:
        if self._resolved is None:
            self._resolved = shutil.which(self.command) or ""
        return bool(self._resolved)

    def active(self) -> bool:
        """True when commands should be wrapped."""
        if not self.enabled:
            return False
        if self.available():
            return True
        if not self._warned:
            logger.warning("%s not found in PATH; running phase scripts without privilege emulation", self.command)
            self._warned = True
        return False

    def wrap(self, command: str) -> str:
        """Prefix a shell command line with the fakeroot command when active."""
        if self.active():
            return f"{self.command} {command}"
        return command

