"""Plain-file application secrets shared by every release of an app."""
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

from ..config import PermissionPolicy
from .identifiers import validate_identifier
from .layout import AppLayout, ensure_dir

LOGGER = logging.getLogger(__name__)


class SecretStore:
    """Write and remove ``<apps-root>/<app>/secrets/<name>`` files."""

    def __init__(self, apps_root: Path, permissions: PermissionPolicy | None = None) -> None:
        """Bind the store to the machine's apps root and permission policy."""
        self.apps_root = apps_root
        self.permissions = permissions or PermissionPolicy()

    def path(self, app: str, name: str) -> Path:
        """Return the file holding secret *name* of *app*."""
        validate_identifier("App name", app)
        validate_identifier("Secret name", name)
        return AppLayout(self.apps_root, app).secret(name)

    def set(self, app: str, name: str, value: str) -> Path:
        """Atomically write *value* as secret *name* of *app*."""
        destination = self.path(app, name)
        layout = AppLayout(self.apps_root, app)
        ensure_dir(layout.app_dir, self.permissions.app_dir)
        ensure_dir(layout.secrets_root, self.permissions.secrets_dir)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{name}.", dir=layout.secrets_root)
        try:
            os.fchmod(fd, self.permissions.secret_file)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(value)
            os.replace(tmp_name, destination)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        LOGGER.info("Wrote secret %s for %s", name, app)
        return destination

    def delete(self, app: str, name: str) -> bool:
        """Remove secret *name* of *app*; return ``False`` when it was absent."""
        destination = self.path(app, name)
        try:
            destination.unlink()
        except FileNotFoundError:
            return False
        LOGGER.info("Removed secret %s for %s", name, app)
        return True


__all__ = ["SecretStore"]
