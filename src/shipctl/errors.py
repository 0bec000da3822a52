"""Error taxonomy shared by reconcilers, the release pipeline and the CLI."""
from __future__ import annotations

from collections.abc import Sequence

from .exit_codes import ExitCode


class ShipError(RuntimeError):
    """Base class for failures surfaced to the operator."""

    exit_code: ExitCode = ExitCode.PROVIDER


class ValidationError(ShipError):
    """Raised when an identifier or option is malformed (before any I/O)."""

    exit_code = ExitCode.VALIDATION


class PreconditionError(ShipError):
    """Raised when the target is not in a state the operation can start from."""

    exit_code = ExitCode.VALIDATION


class TransportError(ShipError):
    """Raised when the connection to a target machine cannot be established."""

    exit_code = ExitCode.ENVIRONMENT


class ToolMissingError(ShipError):
    """Raised when a required system utility is absent."""

    exit_code = ExitCode.ENVIRONMENT


class ParseError(ShipError):
    """Raised when command output does not match the expected grammar."""

    exit_code = ExitCode.ENVIRONMENT


class LockTimeoutError(ShipError):
    """Raised when a named lock is not acquired before its timeout."""

    exit_code = ExitCode.PROVIDER


class CancelledError(ShipError):
    """Raised when the invocation was cancelled before the next action."""

    exit_code = ExitCode.PROVIDER


class RemoteCommandError(ShipError):
    """Raised when a dispatched command exits non-zero."""

    exit_code = ExitCode.PROVIDER

    def __init__(
        self,
        command: Sequence[str] | str,
        returncode: int,
        *,
        stdout: str = "",
        stderr: str = "",
        host: str | None = None,
    ) -> None:
        """Capture the failing command so the operator can reproduce it."""
        self.command = command if isinstance(command, str) else " ".join(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.host = host
        output = (stderr or stdout or "").strip()
        where = f" on {host}" if host else ""
        message = f"{self.command!r} failed{where} (exit {returncode})"
        if output:
            message += f": {output}"
        super().__init__(message)


__all__ = [
    "CancelledError",
    "LockTimeoutError",
    "ParseError",
    "PreconditionError",
    "RemoteCommandError",
    "ShipError",
    "ToolMissingError",
    "TransportError",
    "ValidationError",
]
