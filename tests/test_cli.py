"""Tests for the workstation ``shipctl`` command line."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
from conftest import FakeRunner
from typer.testing import CliRunner, Result

from shipctl import __version__, cli
from shipctl.errors import TransportError

runner = CliRunner()

ROOT_AGENT = f"/root/.shipctl/{__version__}/shipctl-agent"
DEPLOY_AGENT = f"/home/deploy/.shipctl/{__version__}/shipctl-agent"


def _text(result: Result) -> str:
    return " ".join(result.stdout.split())


def _operations(tmp_path: Path) -> list[dict[str, object]]:
    path = tmp_path / "logs" / "operations.jsonl"
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


class FakeHost(FakeRunner):
    """Recording stand-in for :class:`shipctl.remote.RemoteHost`."""

    instances: list[FakeHost] = []
    refuse = False
    failing: list[str] | None = None

    def __init__(self, host: str, **kwargs: object) -> None:
        super().__init__(host)
        self.kwargs = kwargs
        self.closed = False
        if FakeHost.failing is not None:
            self.on(FakeHost.failing, stdout="firewall failed", returncode=4)
        FakeHost.instances.append(self)

    def __enter__(self) -> FakeHost:
        if FakeHost.refuse:
            raise TransportError(f"Cannot connect to {self.host}")
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.closed = True


@pytest.fixture
def fake_host(monkeypatch: pytest.MonkeyPatch) -> type[FakeHost]:
    FakeHost.instances = []
    FakeHost.refuse = False
    FakeHost.failing = None
    monkeypatch.setattr(cli, "RemoteHost", FakeHost)
    return FakeHost


def test_version_flag(cli_env: dict[str, str]) -> None:
    """``--version`` prints the package version and exits cleanly."""
    result = runner.invoke(cli.app, ["--version"], env=cli_env)

    assert result.exit_code == 0
    assert f"shipctl {__version__}" in _text(result)


def test_no_command_prints_help(cli_env: dict[str, str]) -> None:
    """Running without a command shows the available command groups."""
    result = runner.invoke(cli.app, [], env=cli_env)

    assert result.exit_code == 0
    for name in ("machine", "deploy", "secret", "config"):
        assert name in result.stdout


def test_config_show_json(tmp_path: Path, cli_env: dict[str, str]) -> None:
    """The effective configuration is emitted as parseable JSON."""
    result = runner.invoke(
        cli.app,
        ["config", "show", "--json"],
        env={**cli_env, "SHIPCTL_SSH__PORT": "2222"},
    )

    assert result.exit_code == 0, result.stdout
    payload = json.loads(result.stdout)
    assert payload["ssh"]["port"] == 2222
    assert payload["apps_root"] == str(tmp_path / "apps")


def test_config_show_yaml(cli_env: dict[str, str]) -> None:
    """Without --json the configuration is printed as YAML."""
    result = runner.invoke(cli.app, ["config", "show"], env=cli_env)

    assert result.exit_code == 0
    assert "ssh:" in result.stdout
    assert "permissions:" in result.stdout


def test_machine_up_runs_privileged_agent(
    tmp_path: Path,
    cli_env: dict[str, str],
    fake_host: type[FakeHost],
) -> None:
    """``machine up`` installs the root agent and runs ``up`` through sudo."""
    result = runner.invoke(
        cli.app,
        ["machine", "up", "--host", "web1", "--ssh-port", "2222", "--ssh-user", "ops"],
        env=cli_env,
    )

    assert result.exit_code == 0, result.stdout
    assert "Machine up completed on web1" in _text(result)
    (host,) = fake_host.instances
    assert host.host == "web1"
    assert host.kwargs["user"] == "ops"
    assert host.kwargs["port"] == 2222
    assert host.closed is True
    assert host.commands[0][:2] == ["sudo", "flock"]
    assert host.commands[1] == ["sudo", ROOT_AGENT, "--ssh-port", "2222", "up"]
    assert host.calls[1]["capture"] is False
    (record,) = _operations(tmp_path)
    assert record["command"] == "machine up"
    assert [step["name"] for step in record["steps"]] == [  # type: ignore[union-attr]
        "agent.present",
        "agent.up",
    ]


def test_machine_maintain_forwards_reboot_flag(
    cli_env: dict[str, str],
    fake_host: type[FakeHost],
) -> None:
    """The reboot opt-in reaches the agent."""
    result = runner.invoke(
        cli.app,
        ["machine", "maintain", "--host", "web1", "--allow-reboot"],
        env=cli_env,
    )

    assert result.exit_code == 0, result.stdout
    (host,) = fake_host.instances
    assert host.commands[-1] == [
        "sudo",
        ROOT_AGENT,
        "--ssh-port",
        "22",
        "maintain",
        "--allow-reboot",
    ]


def test_machine_up_connection_failure(
    tmp_path: Path,
    cli_env: dict[str, str],
    fake_host: type[FakeHost],
) -> None:
    """An unreachable machine exits with the environment code."""
    fake_host.refuse = True

    result = runner.invoke(cli.app, ["machine", "up", "--host", "web1"], env=cli_env)

    assert result.exit_code == 3
    assert "Cannot connect to web1" in _text(result)
    (record,) = _operations(tmp_path)
    assert record["result"]["status"] == "error"  # type: ignore[index]


def test_machine_up_agent_failure(cli_env: dict[str, str], fake_host: type[FakeHost]) -> None:
    """A failing agent run maps to the provider exit code."""
    fake_host.failing = ["sudo", ROOT_AGENT]

    result = runner.invoke(cli.app, ["machine", "up", "--host", "web1"], env=cli_env)

    assert result.exit_code == 4
    assert "firewall failed" in _text(result)


def test_deploy_uploads_and_stages(
    tmp_path: Path,
    cli_env: dict[str, str],
    fake_host: type[FakeHost],
) -> None:
    """A deploy packages the project, uploads it and asks the agent to stage it."""
    project = tmp_path / "project"
    project.mkdir()
    (project / "docker-compose.yml").write_text("services: {}\n", encoding="utf-8")

    result = runner.invoke(
        cli.app,
        [
            "deploy",
            "--host",
            "web1",
            "--app-name",
            "blog",
            "--app-version",
            "v7",
            "--volume",
            "data",
            "--project-dir",
            str(project),
        ],
        env=cli_env,
    )

    assert result.exit_code == 0, result.stdout
    assert "Deployed blog v7 to web1 (1 entries)" in _text(result)
    (host,) = fake_host.instances
    ((_, remote, mode),) = host.uploads
    assert remote == str(tmp_path / "apps" / "blog" / "v7" / "archive.zip")
    assert mode == 0o640
    assert host.commands[-1] == [
        DEPLOY_AGENT,
        "--apps-root",
        str(tmp_path / "apps"),
        "deploy",
        "--app-name",
        "blog",
        "--app-version",
        "v7",
        "--volume-name",
        "data",
    ]


def test_deploy_rejects_invalid_version_before_connecting(
    cli_env: dict[str, str],
    fake_host: type[FakeHost],
) -> None:
    """Validation happens before any SSH connection is opened."""
    result = runner.invoke(
        cli.app,
        ["deploy", "--host", "web1", "--app-name", "blog", "--app-version", "1.0"],
        env=cli_env,
    )

    assert result.exit_code == 2
    assert fake_host.instances == []


def test_secret_set_reads_value_from_stdin(
    tmp_path: Path,
    cli_env: dict[str, str],
    fake_host: type[FakeHost],
) -> None:
    """Piped secret values are forwarded on the agent's stdin."""
    result = runner.invoke(
        cli.app,
        ["secret", "set", "--host", "web1", "--app-name", "blog", "--secret-name", "API_KEY"],
        input="abc123",
        env=cli_env,
    )

    assert result.exit_code == 0, result.stdout
    (host,) = fake_host.instances
    call = host.calls[-1]
    assert call["argv"] == [
        DEPLOY_AGENT,
        "--apps-root",
        str(tmp_path / "apps"),
        "secret",
        "set",
        "--app-name",
        "blog",
        "--secret-name",
        "API_KEY",
        "--stdin",
    ]
    assert call["stdin"] == "abc123"


def test_secret_delete(cli_env: dict[str, str], fake_host: type[FakeHost]) -> None:
    """Secret removal runs the agent's delete command."""
    result = runner.invoke(
        cli.app,
        ["secret", "delete", "--host", "web1", "--app-name", "blog", "--secret-name", "API_KEY"],
        env=cli_env,
    )

    assert result.exit_code == 0, result.stdout
    assert "removed from blog on web1" in _text(result)
    (host,) = fake_host.instances
    assert host.commands[-1][3:5] == ["secret", "delete"]
