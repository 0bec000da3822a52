"""Installer for the machine-side ``shipctl-agent`` executor.

Every remote operation starts by making sure the agent for the requested
version exists at a fixed path on the target:

* unprivileged: ``<deploy_dir>/<version>/shipctl-agent``
* privileged:   ``<root_dir>/<version>/shipctl-agent``

Installs run under ``flock -w <timeout> -E 75`` on a lock file keyed by the
privilege level, and test for the binary before doing any work. Concurrent
callers therefore converge: one installs while the others either wait and
find the agent present or give up with :class:`LockTimeoutError`. The lock
bounds only the wait for the lock, never the install itself, so a slow
download is not killed half-way.

Two channels exist. ``release`` downloads the published tarball. ``dev``
builds a zipapp of the local sources and uploads it, replacing the
installed copy only when its checksum differs.
"""
from __future__ import annotations

import hashlib
import importlib.util
import logging
import shlex
import shutil
import tempfile
import uuid
import zipapp
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from .. import __version__
from ..config import AgentConfig
from ..errors import LockTimeoutError, RemoteCommandError
from ..logging import OperationScope
from ..runner import CancellationToken, CommandRunner

LOGGER = logging.getLogger(__name__)

AGENT_BINARY = "shipctl-agent"
AGENT_ENTRY_POINT = "shipctl.agent:main"
DEV_VERSION = "dev"
LOCK_CONFLICT_EXIT = 75

# Packages bundled into a development zipapp; the agent never imports the SSH
# stack, so fabric and paramiko stay out.
BUNDLED_PACKAGES = (
    "shipctl",
    "typer",
    "click",
    "rich",
    "markdown_it",
    "mdurl",
    "pygments",
    "shellingham",
    "yaml",
    "jinja2",
    "markupsafe",
)
BUNDLED_MODULES = ("typing_extensions",)
_IGNORED = shutil.ignore_patterns("__pycache__", "*.pyc", "*.so", "*.pyd")


class AgentInstallError(RuntimeError):
    """Raised when the local part of an agent install fails."""


@dataclass(frozen=True, slots=True)
class AgentInstallResult:
    """Where the agent lives and whether this call installed it."""

    version: str
    path: PurePosixPath
    channel: str
    privileged: bool
    installed: bool


class AgentInstaller:
    """Ensure ``shipctl-agent`` is present on a target machine."""

    def __init__(
        self,
        runner: CommandRunner,
        agent: AgentConfig | None = None,
        *,
        version: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Bind the installer to a runner and the agent settings."""
        self.runner = runner
        self.agent = agent or AgentConfig()
        self.version = (version or self.agent.version or __version__).strip()
        self.cancel = cancel

    @property
    def channel(self) -> str:
        """Return the effective channel (``dev`` or ``release``)."""
        if self.agent.channel != "auto":
            return self.agent.channel
        return DEV_VERSION if self.version == DEV_VERSION else "release"

    def agent_path(self, *, privileged: bool) -> PurePosixPath:
        """Return the install path of the agent for the privilege level."""
        base = self.agent.root_dir if privileged else self.agent.deploy_dir
        return PurePosixPath(base.as_posix()) / self.version / AGENT_BINARY

    def lock_path(self, *, privileged: bool) -> PurePosixPath:
        """Return the lock file guarding installs at the privilege level."""
        scope = "root" if privileged else "deploy"
        lock_dir = PurePosixPath(self.agent.lock_dir.as_posix())
        return lock_dir / f"shipctl-agent-install-{scope}.lock"

    def ensure(
        self,
        *,
        privileged: bool = False,
        op: OperationScope | None = None,
    ) -> AgentInstallResult:
        """Install the agent unless it is already present."""
        channel = self.channel
        if channel == DEV_VERSION:
            installed = self._install_dev(privileged=privileged)
        else:
            installed = self._install_release(privileged=privileged)
        path = self.agent_path(privileged=privileged)
        if op is not None:
            op.add_step(
                "agent.install" if installed else "agent.present",
                status="success",
                detail=str(path),
            )
        state = "installed" if installed else "present"
        LOGGER.info("Agent %s %s at %s", self.version, state, path)
        return AgentInstallResult(
            version=self.version,
            path=path,
            channel=channel,
            privileged=privileged,
            installed=installed,
        )

    def command(self, *args: str, privileged: bool = False) -> list[str]:
        """Return the argv invoking the installed agent with *args*."""
        argv = [str(self.agent_path(privileged=privileged)), *args]
        return ["sudo", *argv] if privileged else argv

    # Release channel ------------------------------------------------------
    def release_url(self) -> str:
        """Return the download URL of the published agent tarball."""
        return self.agent.release_url.format(version=self.version)

    def release_script(self, *, privileged: bool) -> str:
        """Return the shell run under the install lock for the release channel."""
        target = shlex.quote(str(self.agent_path(privileged=privileged)))
        url = shlex.quote(self.release_url())
        lines = [
            "set -eu",
            f"target={target}",
            'if [ -x "$target" ]; then echo present; exit 0; fi',
            'dir="$(dirname "$target")"',
            'mkdir -p "$dir"',
            'staging="$(mktemp -d "$dir/.staging.XXXXXX")"',
            "trap 'rm -rf \"$staging\"' EXIT",
            f'curl -fsSL -o "$staging/agent.tar.gz" {url}',
            'tar -xzf "$staging/agent.tar.gz" -C "$staging"',
            f'chmod 0755 "$staging/{AGENT_BINARY}"',
        ]
        if privileged:
            lines.append(f'chown root:root "$staging/{AGENT_BINARY}"')
        lines += [
            f'mv -f "$staging/{AGENT_BINARY}" "$target"',
            "echo installed",
        ]
        return "\n".join(lines)

    def _install_release(self, *, privileged: bool) -> bool:
        return self._run_guarded(self.release_script(privileged=privileged), privileged=privileged)

    # Development channel --------------------------------------------------
    def dev_script(self, upload: PurePosixPath, checksum: str, *, privileged: bool) -> str:
        """Return the shell that promotes an uploaded development build."""
        target = shlex.quote(str(self.agent_path(privileged=privileged)))
        lines = [
            "set -eu",
            f"target={target}",
            f"upload={shlex.quote(str(upload))}",
            'if [ -f "$target" ] && '
            f'[ "$(sha256sum "$target" | cut -d" " -f1)" = {shlex.quote(checksum)} ]; then',
            '  rm -f "$upload"; echo present; exit 0',
            "fi",
            'mkdir -p "$(dirname "$target")"',
            'chmod 0755 "$upload"',
        ]
        if privileged:
            lines.append('chown root:root "$upload"')
        lines += [
            'mv -f "$upload" "$target"',
            "echo installed",
        ]
        return "\n".join(lines)

    def _install_dev(self, *, privileged: bool) -> bool:
        staging_dir = PurePosixPath(self.agent.deploy_dir.as_posix()) / ".staging"
        upload = staging_dir / f"{AGENT_BINARY}.{uuid.uuid4().hex}"
        with ExitStack() as stack:
            tmp = stack.enter_context(tempfile.TemporaryDirectory(prefix="shipctl-agent-"))
            workdir = Path(tmp)
            bundle = build_agent_zipapp(
                workdir / AGENT_BINARY,
                source_dir=self.agent.source_dir,
                interpreter=self.agent.interpreter,
            )
            checksum = compute_checksum(bundle)
            self.runner.run(["mkdir", "-p", str(staging_dir)])
            stack.callback(self.runner.run, ["rm", "-f", str(upload)], check=False)
            self.runner.put(bundle, upload, mode=0o755)
            script = self.dev_script(upload, checksum, privileged=privileged)
            return self._run_guarded(script, privileged=privileged)

    # Shared ---------------------------------------------------------------
    def guarded_command(self, script: str, *, privileged: bool) -> list[str]:
        """Wrap *script* in the install lock for the privilege level."""
        argv = [
            "flock",
            "-w",
            f"{self.agent.install_lock_timeout:g}",
            "-E",
            str(LOCK_CONFLICT_EXIT),
            str(self.lock_path(privileged=privileged)),
            "sh",
            "-c",
            script,
        ]
        return ["sudo", *argv] if privileged else argv

    def _run_guarded(self, script: str, *, privileged: bool) -> bool:
        if self.cancel is not None:
            self.cancel.check()
        argv = self.guarded_command(script, privileged=privileged)
        result = self.runner.run(argv, check=False, capture=True)
        if result.returncode == LOCK_CONFLICT_EXIT:
            raise LockTimeoutError(
                f"Timed out after {self.agent.install_lock_timeout:g}s waiting for "
                f"{self.lock_path(privileged=privileged)}; another install may be stuck."
            )
        if not result.ok:
            raise RemoteCommandError(
                f"install shipctl-agent {self.version}",
                result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
                host=self.runner.host,
            )
        lines = result.stdout.strip().splitlines()
        return bool(lines) and lines[-1].strip() == "installed"


def build_agent_zipapp(
    target: Path,
    *,
    source_dir: Path | None = None,
    interpreter: str = "/usr/bin/env python3",
) -> Path:
    """Build an executable zipapp of the agent and its pure-Python dependencies.

    *source_dir* points at a ``shipctl`` package directory to bundle instead
    of the imported one, which lets a checkout ship uncommitted changes.
    """
    with tempfile.TemporaryDirectory(prefix="shipctl-zipapp-") as tmp:
        root = Path(tmp) / "app"
        root.mkdir()
        for name in BUNDLED_PACKAGES:
            if name == "shipctl" and source_dir is not None:
                origin = source_dir
            else:
                origin = _package_dir(name)
                if origin is None:
                    if name == "shipctl":
                        raise AgentInstallError("Cannot locate the shipctl package sources.")
                    LOGGER.debug("Skipping optional package %s (not installed)", name)
                    continue
            if not (origin / "__init__.py").is_file():
                raise AgentInstallError(f"{origin} is not a Python package directory.")
            shutil.copytree(
                origin,
                root / name,
                ignore=_IGNORED,
            )
        for name in BUNDLED_MODULES:
            spec = importlib.util.find_spec(name)
            if spec is not None and spec.origin and spec.origin.endswith(".py"):
                shutil.copy2(spec.origin, root / f"{name}.py")
        zipapp.create_archive(
            root,
            target=target,
            interpreter=interpreter,
            main=AGENT_ENTRY_POINT,
            compressed=True,
        )
    return target


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _package_dir(name: str) -> Path | None:
    spec = importlib.util.find_spec(name)
    if spec is None or not spec.submodule_search_locations:
        return None
    return Path(next(iter(spec.submodule_search_locations)))


__all__ = [
    "AGENT_BINARY",
    "AgentInstallError",
    "AgentInstallResult",
    "AgentInstaller",
    "build_agent_zipapp",
    "compute_checksum",
]
