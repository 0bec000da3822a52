"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
import shlex
import shutil
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path

import pytest
import yaml

from shipctl.errors import RemoteCommandError
from shipctl.runner import CommandResult

Responder = Callable[[list[str]], CommandResult | None]


class FakeRunner:
    """Record commands and answer them from scripted responders.

    Each responder receives the argv and returns a :class:`CommandResult`, or
    ``None`` to defer to the next responder. Unanswered commands succeed with
    empty output.
    """

    def __init__(self, host: str | None = "target.example") -> None:
        self.host = host
        self.calls: list[dict[str, object]] = []
        self.uploads: list[tuple[Path, str, int | None]] = []
        self.responders: list[Responder] = []

    @property
    def commands(self) -> list[list[str]]:
        return [list(call["argv"]) for call in self.calls]  # type: ignore[call-overload]

    def respond(self, responder: Responder) -> None:
        self.responders.append(responder)

    def on(self, prefix: Sequence[str], *, stdout: str = "", returncode: int = 0) -> None:
        """Answer commands starting with *prefix* with fixed output."""
        wanted = list(prefix)

        def _answer(argv: list[str]) -> CommandResult | None:
            if argv[: len(wanted)] == wanted:
                return CommandResult(shlex.join(argv), returncode, stdout, "")
            return None

        self.responders.append(_answer)

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
        command = list(argv)
        self.calls.append(
            {
                "argv": command,
                "check": check,
                "capture": capture,
                "env": dict(env) if env else None,
                "cwd": os.fspath(cwd) if cwd is not None else None,
                "stdin": stdin,
            }
        )
        result = CommandResult(shlex.join(command), 0)
        for responder in self.responders:
            answer = responder(command)
            if answer is not None:
                result = answer
                break
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
        self.uploads.append((Path(local_path), os.fspath(remote_path), mode))


@pytest.fixture
def fake_runner() -> FakeRunner:
    """Return a recording runner for a pretend target host."""
    return FakeRunner()


def write_config(tmp_path: Path, overrides: Mapping[str, object] | None = None) -> Path:
    """Write a config file that keeps every path inside *tmp_path*."""
    config: dict[str, object] = {
        "apps_root": str(tmp_path / "apps"),
        "logs_dir": str(tmp_path / "logs"),
        "runtime_dir": str(tmp_path / "run"),
        "templates_dir": str(tmp_path / "templates"),
        "lock_timeout": 1,
        "proxy": {"root": str(tmp_path / "caddy")},
    }
    if overrides:
        config.update(overrides)
    config_file = tmp_path / "config.yml"
    config_file.write_text(yaml.safe_dump(config), encoding="utf-8")
    return config_file


@pytest.fixture
def cli_env(tmp_path: Path) -> dict[str, str]:
    """Return environment variables pointing the CLIs at a temporary config."""
    return {"SHIPCTL_CONFIG_FILE": str(write_config(tmp_path))}


def has_tools(*names: str) -> bool:
    """Return ``True`` when every executable in *names* is on ``PATH``."""
    return all(shutil.which(name) for name in names)
