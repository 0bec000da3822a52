"""Workstation side of a release: package, transfer and hand over.

:class:`ReleaseManager` never touches the machine's filesystem directly.
It validates the request, makes sure the agent is installed, uploads the
archive into the version directory and then asks ``shipctl-agent deploy``
to stage and cut over (see :mod:`shipctl.release.stager`).
"""
from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Callable
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from ..errors import PreconditionError
from ..logging import OperationScope
from ..providers.agent_installer import AgentInstaller, AgentInstallResult
from ..runner import CancellationToken, CommandRunner
from .archive import build_archive
from .identifiers import ReleaseRequest, validate_identifier
from .layout import ARCHIVE_NAME, ReleaseLayout

LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")


@dataclass(frozen=True)
class DeployOutcome:
    """Summary of a completed deploy."""

    request: ReleaseRequest
    layout: ReleaseLayout
    agent: AgentInstallResult
    archive_entries: int


class ReleaseManager:
    """Ship releases and secrets to one machine through its agent."""

    def __init__(
        self,
        host: CommandRunner,
        installer: AgentInstaller,
        *,
        apps_root: Path,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Bind the manager to a connected host and the agent installer."""
        self.host = host
        self.installer = installer
        self.apps_root = apps_root
        self.cancel = cancel

    def deploy(
        self,
        request: ReleaseRequest,
        *,
        project_dir: Path,
        op: OperationScope | None = None,
    ) -> DeployOutcome:
        """Deploy *project_dir* as ``request.version`` of ``request.app``."""
        request.validate()
        layout = ReleaseLayout(apps_root=self.apps_root, app=request.app, version=request.version)
        with ExitStack() as cleanup:
            agent = self._step(
                op, "deploy.agent", lambda: self.installer.ensure(privileged=False)
            )

            fd, name = tempfile.mkstemp(prefix="shipctl-", suffix=".zip")
            os.close(fd)
            archive = Path(name)
            cleanup.callback(archive.unlink, missing_ok=True)
            entries = self._step(
                op,
                "deploy.archive",
                lambda: build_archive(project_dir, archive, cancel=self.cancel),
            )

            self._step(op, "deploy.prepare", lambda: self._prepare_remote(layout))
            self._step(
                op, "deploy.upload", lambda: self.host.put(archive, layout.archive, mode=0o640)
            )

            argv = self._agent_command(
                "deploy",
                "--app-name",
                request.app,
                "--app-version",
                request.version,
                *[arg for volume in request.volumes for arg in ("--volume-name", volume)],
            )
            self._step(op, "deploy.stage", lambda: self.host.run(argv, capture=False))
        return DeployOutcome(
            request=request,
            layout=layout,
            agent=agent,
            archive_entries=entries,
        )

    def set_secret(
        self,
        app: str,
        name: str,
        value: str,
        *,
        op: OperationScope | None = None,
    ) -> None:
        """Store secret *name* for *app*; the value travels over stdin."""
        validate_identifier("App name", app)
        validate_identifier("Secret name", name)
        self._step(op, "secret.agent", lambda: self.installer.ensure(privileged=False))
        argv = self._agent_command(
            "secret", "set", "--app-name", app, "--secret-name", name, "--stdin"
        )
        self._step(op, "secret.set", lambda: self.host.run(argv, stdin=value))

    def delete_secret(
        self,
        app: str,
        name: str,
        *,
        op: OperationScope | None = None,
    ) -> None:
        """Remove secret *name* of *app*; a missing secret is not an error."""
        validate_identifier("App name", app)
        validate_identifier("Secret name", name)
        self._step(op, "secret.agent", lambda: self.installer.ensure(privileged=False))
        argv = self._agent_command(
            "secret", "delete", "--app-name", app, "--secret-name", name
        )
        self._step(op, "secret.delete", lambda: self.host.run(argv))

    def _agent_command(self, *args: str) -> list[str]:
        # Remote paths come from this side's apps_root; the agent must agree.
        return self.installer.command("--apps-root", str(self.apps_root), *args)

    def _prepare_remote(self, layout: ReleaseLayout) -> None:
        remote_dir = str(layout.version_dir)
        self.host.run(["mkdir", "-p", remote_dir])
        listing = self.host.run(["ls", "-A", remote_dir], capture=True)
        others = [
            entry
            for entry in (line.strip() for line in listing.stdout.splitlines())
            if entry and entry != ARCHIVE_NAME
        ]
        if others:
            raise PreconditionError(
                f"Version '{layout.version}' of '{layout.app}' is already deployed: "
                f"{remote_dir} is not empty. Choose a new version."
            )

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
                op.add_step(name, status="failed", detail=str(exc))
            raise
        if op is not None:
            op.add_step(name, status="success")
        return value


__all__ = ["DeployOutcome", "ReleaseManager"]
