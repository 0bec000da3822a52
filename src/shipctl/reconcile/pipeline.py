"""Ordered, fail-fast execution of reconcilers."""
from __future__ import annotations

import logging
from collections.abc import Sequence
from contextlib import ExitStack
from dataclasses import dataclass, field
from enum import Enum

from ..logging import OperationScope
from ..runner import CancellationToken, CommandRunner
from .base import Reconciler, StepContext

LOGGER = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """Lifecycle of one pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    CONVERGED = "converged"
    FAILED = "failed"


@dataclass
class PipelineRun:
    """Outcome of :meth:`Pipeline.run`."""

    steps: list[str] = field(default_factory=list)
    state: PipelineState = PipelineState.PENDING
    index: int | None = None
    error: Exception | None = None
    completed: list[str] = field(default_factory=list)

    @property
    def failed_step(self) -> str | None:
        """Return the name of the failed step, if any."""
        if self.state is not PipelineState.FAILED or self.index is None:
            return None
        return self.steps[self.index]

    def raise_for_error(self) -> None:
        """Re-raise the error that stopped the pipeline."""
        if self.error is not None:
            raise self.error


class Pipeline:
    """Run reconcilers strictly in order, stopping at the first failure.

    There is no rollback and no persisted progress: every step is
    idempotent, so re-running the whole pipeline after a partial failure is
    the recovery path.
    """

    def __init__(self, steps: Sequence[Reconciler]) -> None:
        """Store the ordered *steps*."""
        self.steps = list(steps)

    @property
    def names(self) -> list[str]:
        """Return step names in execution order."""
        return [step.name for step in self.steps]

    def run(
        self,
        runner: CommandRunner,
        *,
        cancel: CancellationToken | None = None,
        op: OperationScope | None = None,
    ) -> PipelineRun:
        """Converge every step against *runner* and return the run record."""
        result = PipelineRun(steps=self.names)
        with ExitStack() as stack:
            ctx = StepContext(runner, stack, cancel=cancel, op=op)
            result.state = PipelineState.RUNNING
            for index, step in enumerate(self.steps):
                result.index = index
                LOGGER.info("Converging %s (%d/%d)", step.name, index + 1, len(self.steps))
                try:
                    ctx.check_cancelled()
                    step.converge(ctx)
                except Exception as exc:
                    result.state = PipelineState.FAILED
                    result.error = exc
                    if op is not None:
                        op.add_step(f"reconcile.{step.name}", status="failed", detail=str(exc))
                    break
                result.completed.append(step.name)
                if op is not None:
                    op.add_step(f"reconcile.{step.name}", status="success")
            else:
                result.state = PipelineState.CONVERGED
        return result


__all__ = ["Pipeline", "PipelineRun", "PipelineState"]
