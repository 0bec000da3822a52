"""Tests for the reconciliation pipeline executor."""
from __future__ import annotations

import pytest
from conftest import FakeRunner

from shipctl.errors import CancelledError, RemoteCommandError
from shipctl.logging import OperationScope
from shipctl.reconcile import Pipeline, PipelineState, Reconciler, StepContext
from shipctl.runner import CancellationToken


class Recorder(Reconciler):
    """Step that notes its own execution and optionally fails."""

    def __init__(self, name: str, journal: list[str], *, fail: bool = False) -> None:
        self.name = name
        self.journal = journal
        self.fail = fail

    def converge(self, ctx: StepContext) -> None:
        self.journal.append(f"run:{self.name}")
        ctx.defer(self.journal.append, f"cleanup:{self.name}")
        ctx.run(["echo", self.name])
        if self.fail:
            raise RuntimeError(f"{self.name} broke")


def test_steps_run_in_declared_order() -> None:
    """Every step converges exactly once, in order."""
    journal: list[str] = []
    runner = FakeRunner()
    pipeline = Pipeline([Recorder(name, journal) for name in ("a", "b", "c")])

    run = pipeline.run(runner)

    assert run.state is PipelineState.CONVERGED
    assert run.completed == ["a", "b", "c"]
    assert run.error is None
    assert run.failed_step is None
    assert runner.commands == [["echo", "a"], ["echo", "b"], ["echo", "c"]]
    assert journal[:3] == ["run:a", "run:b", "run:c"]


def test_failure_stops_later_steps() -> None:
    """The first failing step aborts the rest and is reported."""
    journal: list[str] = []
    pipeline = Pipeline(
        [Recorder("a", journal), Recorder("b", journal, fail=True), Recorder("c", journal)]
    )

    run = pipeline.run(FakeRunner())

    assert run.state is PipelineState.FAILED
    assert run.failed_step == "b"
    assert run.index == 1
    assert run.completed == ["a"]
    assert "run:c" not in journal
    assert isinstance(run.error, RuntimeError)


def test_deferred_cleanup_runs_in_reverse_even_on_failure() -> None:
    """Cleanup registered by steps runs last-in first-out after a failure."""
    journal: list[str] = []
    pipeline = Pipeline([Recorder("a", journal), Recorder("b", journal, fail=True)])

    pipeline.run(FakeRunner())

    assert journal == ["run:a", "run:b", "cleanup:b", "cleanup:a"]


def test_command_failure_is_captured_with_command_text() -> None:
    """A non-zero command surfaces as RemoteCommandError naming the command."""
    journal: list[str] = []
    runner = FakeRunner()
    runner.on(["echo", "b"], returncode=2)
    pipeline = Pipeline([Recorder("a", journal), Recorder("b", journal)])

    run = pipeline.run(runner)

    assert run.failed_step == "b"
    assert isinstance(run.error, RemoteCommandError)
    assert "echo b" in str(run.error)


def test_cancellation_prevents_next_step() -> None:
    """Once cancelled, no further step is dispatched."""
    journal: list[str] = []
    token = CancellationToken()

    class Cancelling(Reconciler):
        name = "cancel"

        def converge(self, ctx: StepContext) -> None:
            token.cancel("SIGINT")

    pipeline = Pipeline([Recorder("a", journal), Cancelling(), Recorder("c", journal)])

    run = pipeline.run(FakeRunner(), cancel=token)

    assert run.state is PipelineState.FAILED
    assert run.failed_step == "c"
    assert isinstance(run.error, CancelledError)
    assert "run:c" not in journal


def test_steps_are_recorded_in_operation_scope() -> None:
    """Each step's status is added to the active operation."""
    journal: list[str] = []
    op = OperationScope("machine up")
    pipeline = Pipeline([Recorder("a", journal), Recorder("b", journal, fail=True)])

    pipeline.run(FakeRunner(), op=op)

    assert op.steps == [
        {"name": "reconcile.a", "status": "success"},
        {"name": "reconcile.b", "status": "failed", "detail": "b broke"},
    ]


def test_raise_for_error_reraises_after_cleanup() -> None:
    """A failed run comes back with cleanup done; raising it is up to the caller."""
    journal: list[str] = []
    run = Pipeline([Recorder("a", journal, fail=True)]).run(FakeRunner())

    assert journal == ["run:a", "cleanup:a"]
    with pytest.raises(RuntimeError, match="a broke"):
        run.raise_for_error()
