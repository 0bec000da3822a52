"""shipctl package bootstrap.

This module exposes lightweight metadata that other modules (and packaging
machinery) rely upon. The agent installer uses the version to pick the
matching remote executor on a target machine.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: Hatch reads the version from here when building (see ``pyproject.toml``).
__version__ = "0.3.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
