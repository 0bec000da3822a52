"""Command execution on the local machine or on a target host over SSH.

Everything above this module talks to a :class:`CommandRunner`: an object
that can run an argument vector and copy a file into place. Two concrete
runners exist:

* :class:`LocalRunner` executes with :mod:`subprocess`; the machine-side
  agent uses it to converge the host it runs on.
* :class:`shipctl.remote.RemoteHost` wraps a single SSH connection opened
  once per invocation. Commands run in sequence, one session at a time.

Both honour a :class:`CancellationToken`: once cancelled, no further command
is dispatched. A command that already started is left to finish.
"""
from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from .errors import CancelledError, RemoteCommandError, ToolMissingError

LOGGER = logging.getLogger(__name__)


class CancellationToken:
    """Invocation-scoped cancellation signal."""

    def __init__(self) -> None:
        """Create an unset token."""
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "cancelled") -> None:
        """Request cancellation; later checks raise :class:`CancelledError`."""
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` was called."""
        return self._event.is_set()

    def check(self) -> None:
        """Raise :class:`CancelledError` when cancellation was requested."""
        if self._event.is_set():
            raise CancelledError(f"Operation cancelled ({self.reason}).")


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single command."""

    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited with status zero."""
        return self.returncode == 0


class CommandRunner(Protocol):
    """Capability to run commands and place files on one machine."""

    host: str | None

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        capture: bool = True,
        env: Mapping[str, str] | None = None,
        cwd: str | os.PathLike[str] | None = None,
        stdin: str | None = None,
    ) -> CommandResult:
        """Run *argv* and return its result (raise on failure when *check*)."""
        ...

    def put(
        self,
        local_path: str | os.PathLike[str],
        remote_path: str | os.PathLike[str],
        *,
        mode: int | None = None,
    ) -> None:
        """Copy *local_path* to *remote_path*, optionally applying *mode*."""
        ...


class LocalRunner:
    """Run commands on this machine using :mod:`subprocess`."""

    host: str | None = None

    def __init__(self, *, cancel: CancellationToken | None = None) -> None:
        """Create a runner bound to an optional cancellation token."""
        self.cancel = cancel

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        capture: bool = True,
        env: Mapping[str, str] | None = None,
        cwd: str | os.PathLike[str] | None = None,
        stdin: str | None = None,
    ) -> CommandResult:
        """Execute *argv* locally."""
        if self.cancel is not None:
            self.cancel.check()
        command = shlex.join(argv)
        LOGGER.debug("local: %s", command)
        merged_env = None
        if env:
            merged_env = dict(os.environ)
            merged_env.update(env)
        try:
            completed = subprocess.run(
                list(argv),
                check=False,
                capture_output=capture,
                text=True,
                env=merged_env,
                cwd=cwd,
                input=stdin,
            )
        except FileNotFoundError as exc:
            if cwd is not None and not Path(cwd).is_dir():
                raise
            raise ToolMissingError(f"Required tool '{argv[0]}' is not installed.") from exc
        result = CommandResult(
            command=command,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
        if check and not result.ok:
            raise RemoteCommandError(
                command,
                result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result

    def put(
        self,
        local_path: str | os.PathLike[str],
        remote_path: str | os.PathLike[str],
        *,
        mode: int | None = None,
    ) -> None:
        """Copy a file within the local filesystem."""
        if self.cancel is not None:
            self.cancel.check()
        destination = Path(remote_path)
        shutil.copyfile(local_path, destination)
        if mode is not None:
            os.chmod(destination, mode)


def build_shell_command(
    argv: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    cwd: str | os.PathLike[str] | None = None,
) -> str:
    """Render *argv* as one shell line, applying *env* and *cwd* prefixes."""
    if not argv:
        raise ValueError("Cannot run an empty command.")
    parts: list[str] = []
    if cwd is not None:
        parts.append(f"cd {shlex.quote(os.fspath(cwd))} &&")
    if env:
        assignments = [f"{key}={value}" for key, value in sorted(env.items())]
        parts.append(shlex.join(["env", *assignments]))
    parts.append(shlex.join(argv))
    return " ".join(parts)


def require_tool(runner: CommandRunner, name: str) -> None:
    """Raise :class:`ToolMissingError` unless *name* resolves on the target."""
    result = runner.run(["sh", "-c", f"command -v {shlex.quote(name)}"], check=False)
    if not result.ok:
        where = f" on {runner.host}" if runner.host else ""
        raise ToolMissingError(f"Required tool '{name}' is not installed{where}.")


__all__ = [
    "CancellationToken",
    "CommandResult",
    "CommandRunner",
    "LocalRunner",
    "build_shell_command",
    "require_tool",
]
