"""Filesystem layout of deployed applications on a machine.

::

    <apps-root>/<app>/<version>/                # extracted release payload
    <apps-root>/<app>/<version>/.ship/volumes   # -> <apps-root>/<app>/volumes
    <apps-root>/<app>/<version>/.ship/secrets   # -> <apps-root>/<app>/secrets
    <apps-root>/<app>/current                   # -> <apps-root>/<app>/<version>
    <apps-root>/<app>/volumes/<name>/
    <apps-root>/<app>/secrets/<name>
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

ARCHIVE_NAME = "archive.zip"
SHIP_DIR = ".ship"
CURRENT_LINK = "current"


@dataclass(frozen=True)
class AppLayout:
    """Version-independent paths of one application."""

    apps_root: Path
    app: str

    @property
    def app_dir(self) -> Path:
        return self.apps_root / self.app

    @property
    def volumes_root(self) -> Path:
        return self.app_dir / "volumes"

    @property
    def secrets_root(self) -> Path:
        return self.app_dir / "secrets"

    @property
    def current(self) -> Path:
        return self.app_dir / CURRENT_LINK

    def volume(self, name: str) -> Path:
        return self.volumes_root / name

    def secret(self, name: str) -> Path:
        return self.secrets_root / name


@dataclass(frozen=True)
class ReleaseLayout(AppLayout):
    """Paths of one (application, version) release."""

    version: str

    @property
    def version_dir(self) -> Path:
        return self.app_dir / self.version

    @property
    def archive(self) -> Path:
        return self.version_dir / ARCHIVE_NAME

    @property
    def ship_dir(self) -> Path:
        return self.version_dir / SHIP_DIR

    @property
    def volumes_link(self) -> Path:
        return self.ship_dir / "volumes"

    @property
    def secrets_link(self) -> Path:
        return self.ship_dir / "secrets"


def ensure_dir(path: Path, mode: int) -> None:
    """Create *path* if absent and correct its permission bits."""
    path.mkdir(parents=True, exist_ok=True)
    if (path.stat().st_mode & 0o777) != mode:
        os.chmod(path, mode)


__all__ = ["ARCHIVE_NAME", "AppLayout", "ReleaseLayout", "ensure_dir"]
