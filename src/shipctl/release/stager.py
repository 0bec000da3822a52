"""Machine-side staging of an uploaded release.

The stager runs inside ``shipctl-agent deploy`` on the target machine. It
owns the version directory from the moment the archive lands until the
``current`` link points at it:

1. the archive must exist and be the only entry of the version directory;
2. the archive is unpacked in place and then removed;
3. the shared volume and secret roots (and named volumes) are created;
4. ``.ship/volumes`` and ``.ship/secrets`` are linked into the release;
5. ``current`` is repointed atomically;
6. compose services and the proxy site are refreshed when present.

A failure before step 5 leaves the previously current version live. A
failure in step 6 is reported as-is; there is no automatic rollback.
"""
from __future__ import annotations

import logging
import os
import shutil
import tempfile
import zipfile
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import TypeVar

from ..config import PermissionPolicy, ProxyConfig
from ..errors import PreconditionError
from ..locking import LockManager
from ..logging import OperationScope
from ..runner import CancellationToken, CommandRunner
from .identifiers import ReleaseRequest
from .layout import ARCHIVE_NAME, ReleaseLayout, ensure_dir

LOGGER = logging.getLogger(__name__)

COMPOSE_FILENAMES = (
    "compose.yml",
    "compose.yaml",
    "docker-compose.yml",
    "docker-compose.yaml",
)
PROXY_SITE_FILENAME = "Caddyfile"

_T = TypeVar("_T")


@dataclass
class StageResult:
    """What :meth:`ReleaseStager.stage` did."""

    layout: ReleaseLayout
    extracted: int = 0
    compose_file: Path | None = None
    site_file: Path | None = None
    warnings: list[str] = field(default_factory=list)


class ReleaseStager:
    """Unpack, link and cut over one release on the local machine."""

    def __init__(
        self,
        *,
        apps_root: Path,
        runner: CommandRunner,
        permissions: PermissionPolicy | None = None,
        proxy: ProxyConfig | None = None,
        locks: LockManager | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Bind the stager to the machine's apps root and collaborators."""
        self.apps_root = apps_root
        self.runner = runner
        self.permissions = permissions or PermissionPolicy()
        self.proxy = proxy or ProxyConfig()
        self.locks = locks
        self.cancel = cancel

    def stage(
        self,
        request: ReleaseRequest,
        *,
        op: OperationScope | None = None,
    ) -> StageResult:
        """Stage *request* and make it the current release."""
        request.validate()
        layout = ReleaseLayout(apps_root=self.apps_root, app=request.app, version=request.version)
        result = StageResult(layout=layout)
        with self._release_lock(request.app, op):
            self._step(op, "precheck", lambda: self._check_version_dir(layout))
            result.extracted = self._step(op, "extract", lambda: self._extract(layout))
            self._remove_archive(layout, result)
            self._step(op, "shared", lambda: self._ensure_shared(layout, request.volumes))
            self._step(op, "link", lambda: self._link_shared(layout))
            self._step(op, "cutover", lambda: self._cutover(layout))
            result.compose_file = self._step(
                op, "services", lambda: self._restart_services(layout)
            )
            result.site_file = self._step(op, "proxy", lambda: self._publish_site(layout))
        return result

    @contextmanager
    def _release_lock(self, app: str, op: OperationScope | None) -> Iterator[None]:
        if self.locks is None:
            yield
            return
        with self.locks.release_lock(app) as handle:
            if op is not None:
                op.set_lock_wait_ms(handle.wait_ms)
            yield

    def _step(
        self,
        op: OperationScope | None,
        name: str,
        action: Callable[[], _T],
    ) -> _T:
        if self.cancel is not None:
            self.cancel.check()
        try:
            value = action()
        except Exception as exc:
            if op is not None:
                op.add_step(f"release.{name}", status="failed", detail=str(exc))
            raise
        if op is not None:
            detail = None if value is None or isinstance(value, bool) else str(value)
            op.add_step(f"release.{name}", status="success", detail=detail)
        return value

    # Pre-checks -----------------------------------------------------------
    def _check_version_dir(self, layout: ReleaseLayout) -> None:
        if not layout.archive.is_file():
            raise PreconditionError(f"Archive {layout.archive} not found.")
        others = sorted(
            entry.name for entry in layout.version_dir.iterdir() if entry.name != ARCHIVE_NAME
        )
        if others:
            listed = ", ".join(others[:5])
            more = f" (+{len(others) - 5} more)" if len(others) > 5 else ""
            raise PreconditionError(
                f"Version '{layout.version}' of '{layout.app}' already has content in "
                f"{layout.version_dir}: {listed}{more}. Deploy a new version instead."
            )

    # Unpacking ------------------------------------------------------------
    def _extract(self, layout: ReleaseLayout) -> int:
        target = layout.version_dir.resolve()
        count = 0
        try:
            bundle = zipfile.ZipFile(layout.archive)
        except zipfile.BadZipFile as exc:
            raise PreconditionError(f"Archive {layout.archive} is not a valid zip: {exc}") from exc
        with bundle:
            members = bundle.infolist()
            for member in members:
                destination = (target / member.filename).resolve()
                if destination != target and target not in destination.parents:
                    raise PreconditionError(
                        f"Archive entry {member.filename!r} escapes {layout.version_dir}."
                    )
            for member in members:
                if self.cancel is not None:
                    self.cancel.check()
                extracted = Path(bundle.extract(member, target))
                mode = (member.external_attr >> 16) & 0o777
                if mode and not member.is_dir():
                    os.chmod(extracted, mode)
                count += 1
        return count

    def _remove_archive(self, layout: ReleaseLayout, result: StageResult) -> None:
        try:
            layout.archive.unlink()
        except FileNotFoundError:
            return
        except OSError as exc:
            message = f"Failed to remove archive {layout.archive}: {exc}"
            LOGGER.warning(message)
            result.warnings.append(message)

    # Shared state ---------------------------------------------------------
    def _ensure_shared(self, layout: ReleaseLayout, volumes: tuple[str, ...]) -> None:
        policy = self.permissions
        ensure_dir(layout.app_dir, policy.app_dir)
        ensure_dir(layout.volumes_root, policy.volumes_dir)
        ensure_dir(layout.secrets_root, policy.secrets_dir)
        for name in volumes:
            ensure_dir(layout.volume(name), policy.volumes_dir)

    def _link_shared(self, layout: ReleaseLayout) -> None:
        if layout.ship_dir.exists() and not layout.ship_dir.is_dir():
            raise PreconditionError(f"{layout.ship_dir} exists and is not a directory.")
        layout.ship_dir.mkdir(exist_ok=True)
        replace_symlink(layout.volumes_root, layout.volumes_link)
        replace_symlink(layout.secrets_root, layout.secrets_link)

    def _cutover(self, layout: ReleaseLayout) -> Path:
        replace_symlink(layout.version_dir, layout.current)
        LOGGER.info("%s now points at %s", layout.current, layout.version_dir)
        return layout.version_dir

    # Dependent services ---------------------------------------------------
    def _restart_services(self, layout: ReleaseLayout) -> Path | None:
        compose_file = find_compose_file(layout.version_dir)
        if compose_file is None:
            LOGGER.info("No compose file for %s; skipping services.", layout.app)
            return None
        version = layout.version
        env = {"VERSION": version}
        cwd = layout.version_dir
        base = ["docker", "compose", "-f", compose_file.name]
        self.runner.run([*base, "pull"], capture=False, env=env, cwd=cwd)
        self.runner.run(
            [*base, "build", "--build-arg", f"VERSION={version}"],
            capture=False,
            env=env,
            cwd=cwd,
        )
        self.runner.run(
            [*base, "up", "-d", "--remove-orphans"],
            capture=False,
            env=env,
            cwd=cwd,
        )
        return compose_file

    def _publish_site(self, layout: ReleaseLayout) -> Path | None:
        source = layout.version_dir / PROXY_SITE_FILENAME
        if not source.is_file():
            LOGGER.info("No %s for %s; skipping proxy.", PROXY_SITE_FILENAME, layout.app)
            return None
        destination = self.proxy.sites_dir / layout.app
        copy_atomic(source, destination, self.permissions.site_file)
        self.runner.run(
            [
                "docker",
                "compose",
                "exec",
                "-T",
                self.proxy.service,
                "caddy",
                "reload",
                "--config",
                self.proxy.config_path,
            ],
            capture=False,
            cwd=self.proxy.root,
        )
        return destination


def find_compose_file(directory: Path) -> Path | None:
    """Return the first compose file present in *directory*."""
    for name in COMPOSE_FILENAMES:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def replace_symlink(target: Path, link: Path) -> None:
    """Point *link* at *target*, swapping any existing link atomically.

    Raises :class:`PreconditionError` if *link* exists but is not a symlink.
    """
    if link.exists() or link.is_symlink():
        if not link.is_symlink():
            raise PreconditionError(f"{link} exists and is not a symlink.")
        if os.readlink(link) == str(target):
            return
    temporary = link.with_name(f".{link.name}.tmp-{os.getpid()}")
    if temporary.is_symlink() or temporary.exists():
        temporary.unlink()
    os.symlink(target, temporary)
    try:
        os.replace(temporary, link)
    except OSError:
        temporary.unlink(missing_ok=True)
        raise


def copy_atomic(source: Path, destination: Path, mode: int) -> None:
    """Copy *source* over *destination* via a temporary file and rename."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", dir=destination.parent)
    try:
        with os.fdopen(fd, "wb") as handle, source.open("rb") as reader:
            shutil.copyfileobj(reader, handle)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, destination)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


__all__ = [
    "COMPOSE_FILENAMES",
    "ReleaseStager",
    "StageResult",
    "copy_atomic",
    "find_compose_file",
    "replace_symlink",
]
