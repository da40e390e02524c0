# kiln/__init__.py
"""kiln - builds .kpkg package archives from KILNBUILD recipes."""

__version__ = "0.3.0"
