# kiln/errors.py
"""Exception hierarchy shared by the kiln modules."""

from __future__ import annotations


class KilnError(Exception):
    pass


class ConfigError(KilnError):
    pass


class RecipeError(KilnError):
    """Recipe unreadable or structurally invalid (no package name)."""


class SourceError(KilnError):
    """Malformed source declaration or failed fetch/clone/copy."""


class PackagingError(KilnError):
    """Metadata, symlink or archive production failed for one package."""
