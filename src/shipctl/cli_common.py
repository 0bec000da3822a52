"""Helpers shared by the ``shipctl`` and ``shipctl-agent`` command lines."""
from __future__ import annotations

import logging
import signal
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from types import FrameType
from typing import NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler

from .errors import ShipError
from .logging import OperationScope
from .reconcile import PipelineRun
from .runner import CancellationToken

console = Console()
err_console = Console(stderr=True)

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to shipctl's YAML config file.",
)
LOCK_TIMEOUT_OPTION = typer.Option(
    None,
    "--lock-timeout",
    help="Override lock acquisition timeout in seconds.",
)
VERBOSE_OPTION = typer.Option(
    False,
    "--verbose",
    "-v",
    help="Log every command that is dispatched.",
)


def configure_logging(verbose: bool) -> None:
    """Send diagnostic logging to stderr through rich."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@contextmanager
def cancellation_scope() -> Iterator[CancellationToken]:
    """Yield a token that SIGINT/SIGTERM cancel for the block's duration."""
    token = CancellationToken()

    def _handler(signum: int, _frame: FrameType | None) -> None:
        token.cancel(signal.Signals(signum).name)
        err_console.print(
            "[yellow]Cancellation requested; finishing the command in flight.[/yellow]"
        )

    previous = {
        signum: signal.signal(signum, _handler) for signum in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield token
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)


def command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def ship_error(op: OperationScope, exc: ShipError) -> NoReturn:
    """Terminate the command with the exit code carried by *exc*."""
    command_error(op, str(exc), rc=int(exc.exit_code), errors=[str(exc)])


def report_pipeline(op: OperationScope, run: PipelineRun, *, label: str) -> None:
    """Print the outcome of a pipeline and exit non-zero if it failed."""
    if run.error is not None:
        failed = run.failed_step or "unknown"
        message = f"{label} failed at step '{failed}': {run.error}"
        if isinstance(run.error, ShipError):
            command_error(op, message, rc=int(run.error.exit_code), errors=[str(run.error)])
        command_error(op, message, rc=4, errors=[str(run.error)])
    console.print(f"[green]{label} converged ({len(run.completed)} steps).[/green]")
    op.success(f"{label} converged.", changed=len(run.completed))


def path_or_none(value: Path | None) -> Path | None:
    """Return *value* expanded, or ``None``."""
    return value.expanduser() if value is not None else None


__all__ = [
    "CONFIG_FILE_OPTION",
    "LOCK_TIMEOUT_OPTION",
    "VERBOSE_OPTION",
    "cancellation_scope",
    "command_error",
    "configure_logging",
    "console",
    "err_console",
    "path_or_none",
    "report_pipeline",
    "ship_error",
]
