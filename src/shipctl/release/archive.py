"""Build the release archive from a local project directory."""
from __future__ import annotations

import logging
import os
import zipfile
from pathlib import Path

from ..runner import CancellationToken

LOGGER = logging.getLogger(__name__)

EXCLUDED_DIRS = frozenset({".git"})


def build_archive(
    project_root: Path,
    archive_path: Path,
    *,
    cancel: CancellationToken | None = None,
) -> int:
    """Zip *project_root* into *archive_path* and return the entry count.

    Entry names are relative to the project root and directories end with
    ``/``. Version-control metadata and the archive itself are skipped.
    Cancellation is checked between files.
    """
    root = project_root.resolve()
    if not root.is_dir():
        raise FileNotFoundError(f"Project directory not found: {project_root}")
    archive_resolved = archive_path.resolve()
    entries = 0
    with zipfile.ZipFile(archive_path, "w", compression=zipfile.ZIP_DEFLATED) as bundle:
        for current, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(name for name in dirnames if name not in EXCLUDED_DIRS)
            current_path = Path(current)
            for name in dirnames:
                if cancel is not None:
                    cancel.check()
                path = current_path / name
                bundle.write(path, f"{path.relative_to(root).as_posix()}/")
                entries += 1
            for name in sorted(filenames):
                if cancel is not None:
                    cancel.check()
                path = current_path / name
                if path.resolve() == archive_resolved:
                    continue
                bundle.write(path, path.relative_to(root).as_posix())
                entries += 1
    LOGGER.debug("Archived %d entries from %s into %s", entries, root, archive_path)
    return entries


__all__ = ["build_archive"]
