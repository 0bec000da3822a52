"""SSH transport to a target machine built on :mod:`fabric`."""
from __future__ import annotations

import io
import logging
import os
import shlex
from collections.abc import Mapping, Sequence
from pathlib import Path, PurePosixPath

from fabric import Connection
from paramiko.ssh_exception import SSHException

from .errors import RemoteCommandError, TransportError
from .runner import CancellationToken, CommandResult, build_shell_command

LOGGER = logging.getLogger(__name__)


class RemoteHost:
    """Run commands on a target machine through one SSH connection."""

    def __init__(
        self,
        host: str,
        *,
        user: str = "deploy",
        port: int = 22,
        key_file: Path | None = None,
        connect_timeout: float = 10.0,
        cancel: CancellationToken | None = None,
    ) -> None:
        """Describe the connection; it is opened lazily on first use."""
        self.host = host
        self.user = user
        self.port = port
        self.key_file = key_file
        self.connect_timeout = connect_timeout
        self.cancel = cancel
        self._connection: Connection | None = None

    def __enter__(self) -> RemoteHost:
        """Open the connection."""
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        """Close the connection."""
        self.close()

    def connect(self) -> Connection:
        """Return the open connection, establishing it if needed."""
        if self._connection is not None:
            return self._connection
        connect_kwargs: dict[str, object] = {}
        if self.key_file is not None:
            connect_kwargs["key_filename"] = str(self.key_file)
        else:
            connect_kwargs["look_for_keys"] = True
        connection = Connection(
            self.host,
            user=self.user,
            port=self.port,
            connect_timeout=self.connect_timeout,
            connect_kwargs=connect_kwargs,
        )
        try:
            connection.open()
        except (OSError, SSHException) as exc:
            raise TransportError(
                f"Cannot connect to {self.user}@{self.host}:{self.port}: {exc}"
            ) from exc
        self._connection = connection
        return connection

    def close(self) -> None:
        """Close the connection if it was opened."""
        if self._connection is not None:
            self._connection.close()
            self._connection = None

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
        """Execute *argv* on the target host in a fresh session."""
        if self.cancel is not None:
            self.cancel.check()
        command = build_shell_command(argv, env=env, cwd=cwd)
        connection = self.connect()
        LOGGER.debug("%s: %s", self.host, command)
        in_stream: object = io.StringIO(stdin) if stdin is not None else False
        try:
            outcome = connection.run(command, hide=capture, warn=True, in_stream=in_stream)
        except (OSError, SSHException) as exc:
            raise TransportError(f"Session to {self.host} failed: {exc}") from exc
        result = CommandResult(
            command=shlex.join(argv),
            returncode=outcome.exited,
            stdout=outcome.stdout or "",
            stderr=outcome.stderr or "",
        )
        if check and not result.ok:
            raise RemoteCommandError(
                result.command,
                result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
                host=self.host,
            )
        return result

    def put(
        self,
        local_path: str | os.PathLike[str],
        remote_path: str | os.PathLike[str],
        *,
        mode: int | None = None,
    ) -> None:
        """Upload *local_path* to *remote_path* over SFTP."""
        if self.cancel is not None:
            self.cancel.check()
        connection = self.connect()
        remote = str(PurePosixPath(remote_path))
        LOGGER.debug("%s: upload %s -> %s", self.host, local_path, remote)
        try:
            connection.put(os.fspath(local_path), remote=remote)
            if mode is not None:
                connection.sftp().chmod(remote, mode)
        except (OSError, SSHException) as exc:
            raise TransportError(
                f"Failed to copy {local_path} to {self.host}:{remote}: {exc}"
            ) from exc


__all__ = ["RemoteHost"]
