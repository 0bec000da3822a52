"""Reconciler abstraction and the per-run step context."""
from __future__ import annotations

import os
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping, Sequence
from contextlib import ExitStack

from ..logging import OperationScope
from ..runner import CancellationToken, CommandResult, CommandRunner


class StepContext:
    """Everything a reconciler may touch while converging.

    ``defer`` registers cleanup that runs when the owning pipeline finishes,
    in reverse registration order, whether or not later steps fail.
    """

    def __init__(
        self,
        runner: CommandRunner,
        stack: ExitStack,
        *,
        cancel: CancellationToken | None = None,
        op: OperationScope | None = None,
    ) -> None:
        """Bind the context to *runner* and the pipeline's cleanup *stack*."""
        self.runner = runner
        self.cancel = cancel
        self.op = op
        self._stack = stack

    def defer(self, callback: Callable[..., object], *args: object, **kwargs: object) -> None:
        """Run ``callback(*args, **kwargs)`` when the pipeline concludes."""
        self._stack.callback(callback, *args, **kwargs)

    def check_cancelled(self) -> None:
        """Raise if the invocation was cancelled."""
        if self.cancel is not None:
            self.cancel.check()

    def run(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        capture: bool = False,
        env: Mapping[str, str] | None = None,
        cwd: str | os.PathLike[str] | None = None,
        stdin: str | None = None,
    ) -> CommandResult:
        """Dispatch *argv*; output streams to the terminal unless *capture*."""
        self.check_cancelled()
        return self.runner.run(
            argv,
            check=check,
            capture=capture,
            env=env,
            cwd=cwd,
            stdin=stdin,
        )


class Reconciler(ABC):
    """One idempotent aspect of machine state."""

    name = "reconciler"

    @abstractmethod
    def converge(self, ctx: StepContext) -> None:
        """Bring the machine to the desired state for this aspect."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


__all__ = ["Reconciler", "StepContext"]
