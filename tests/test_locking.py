"""Tests for the locking primitives."""
from __future__ import annotations

import json
import os
from pathlib import Path

import pytest

from shipctl.errors import ShipError
from shipctl.locking import LockManager, LockTimeoutError


def test_named_lock_creates_metadata(tmp_path: Path) -> None:
    """Acquiring a lock writes metadata and releases cleanly."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    lock_path = tmp_path / "run" / "alpha.lock"
    with manager.named_lock("alpha") as handle:
        assert handle.wait_ms >= 0
        assert handle.path == lock_path
        data = json.loads(lock_path.read_text(encoding="utf-8"))
        assert data["pid"] == os.getpid()
        assert data["path"] == str(lock_path)

    # Lockfile persists for diagnostics but no longer holds the lock.
    with manager.named_lock("alpha", timeout=0.2):
        pass


def test_named_lock_timeout(tmp_path: Path) -> None:
    """Second acquisition times out while the first lock is held."""
    manager = LockManager(tmp_path / "run", default_timeout=1.0)

    with manager.named_lock("alpha"):
        with pytest.raises(LockTimeoutError):
            with manager.named_lock("alpha", timeout=0.1):
                pass


def test_lock_timeout_is_a_ship_error(tmp_path: Path) -> None:
    """Timeouts carry the provider exit code used by the CLI."""
    manager = LockManager(tmp_path / "run", default_timeout=0.1)

    with manager.named_lock("alpha"):
        with pytest.raises(ShipError) as excinfo:
            with manager.named_lock("alpha"):
                pass
    assert int(excinfo.value.exit_code) == 4


def test_release_lock_is_scoped_per_app(tmp_path: Path) -> None:
    """Releases of different apps do not contend for the same lock."""
    manager = LockManager(tmp_path / "run", default_timeout=0.1)

    with manager.release_lock("blog") as first:
        assert first.path == tmp_path / "run" / "apps" / "blog.lock"
        with manager.release_lock("shop") as second:
            assert second.path == tmp_path / "run" / "apps" / "shop.lock"
        with pytest.raises(LockTimeoutError):
            with manager.release_lock("blog"):
                pass
