"""Tests for command runners and the SSH transport."""
from __future__ import annotations

import io
from pathlib import Path

import pytest
from paramiko.ssh_exception import SSHException

from shipctl import remote
from shipctl.errors import (
    CancelledError,
    RemoteCommandError,
    ToolMissingError,
    TransportError,
)
from shipctl.remote import RemoteHost
from shipctl.runner import CancellationToken, LocalRunner, build_shell_command, require_tool


def test_build_shell_command_applies_cwd_and_env() -> None:
    """Working directory and environment become shell prefixes."""
    line = build_shell_command(
        ["docker", "compose", "up", "-d"],
        env={"VERSION": "v 2", "A": "1"},
        cwd="/home/deploy/apps/my app/v2",
    )

    assert line == (
        "cd '/home/deploy/apps/my app/v2' && env A=1 'VERSION=v 2' docker compose up -d"
    )


def test_build_shell_command_rejects_empty_argv() -> None:
    """An empty command is a programming error."""
    with pytest.raises(ValueError):
        build_shell_command([])


def test_local_runner_captures_output(tmp_path: Path) -> None:
    """Output, environment, working directory and stdin reach the process."""
    runner = LocalRunner()

    result = runner.run(
        ["sh", "-c", 'printf "%s:%s:" "$GREETING" "$(basename "$PWD")"; cat'],
        env={"GREETING": "hello"},
        cwd=tmp_path,
        stdin="piped",
    )

    assert result.ok
    assert result.stdout == f"hello:{tmp_path.name}:piped"


def test_local_runner_raises_on_failure() -> None:
    """A non-zero exit raises unless the caller opts out."""
    runner = LocalRunner()

    with pytest.raises(RemoteCommandError) as excinfo:
        runner.run(["sh", "-c", "echo nope >&2; exit 3"])
    assert excinfo.value.returncode == 3
    assert "nope" in str(excinfo.value)

    result = runner.run(["sh", "-c", "exit 3"], check=False)
    assert result.returncode == 3


def test_local_runner_missing_tool() -> None:
    """A missing executable is reported as a missing tool."""
    with pytest.raises(ToolMissingError, match="shipctl-no-such-tool"):
        LocalRunner().run(["shipctl-no-such-tool"])


def test_local_runner_refuses_after_cancel() -> None:
    """No command is dispatched once the token is cancelled."""
    token = CancellationToken()
    token.cancel("SIGINT")

    with pytest.raises(CancelledError, match="SIGINT"):
        LocalRunner(cancel=token).run(["true"])


def test_local_runner_put_applies_mode(tmp_path: Path) -> None:
    """Local copies honour the requested mode."""
    source = tmp_path / "source"
    source.write_text("payload", encoding="utf-8")
    destination = tmp_path / "destination"

    LocalRunner().put(source, destination, mode=0o600)

    assert destination.read_text(encoding="utf-8") == "payload"
    assert destination.stat().st_mode & 0o777 == 0o600


def test_require_tool() -> None:
    """Tools are looked up with ``command -v`` on the target."""
    runner = LocalRunner()
    require_tool(runner, "sh")

    with pytest.raises(ToolMissingError):
        require_tool(runner, "shipctl-no-such-tool")


class FakeOutcome:
    def __init__(self, exited: int, stdout: str = "", stderr: str = "") -> None:
        self.exited = exited
        self.stdout = stdout
        self.stderr = stderr


class FakeSFTP:
    def __init__(self) -> None:
        self.chmods: list[tuple[str, int]] = []

    def chmod(self, path: str, mode: int) -> None:
        self.chmods.append((path, mode))


class FakeConnection:
    """Stand-in for :class:`fabric.Connection` recording what it was asked."""

    instances: list[FakeConnection] = []
    fail_open = False

    def __init__(self, host: str, **kwargs: object) -> None:
        self.host = host
        self.kwargs = kwargs
        self.commands: list[tuple[str, dict[str, object]]] = []
        self.puts: list[tuple[str, str]] = []
        self.outcome = FakeOutcome(0, "ok\n")
        self.closed = False
        self._sftp = FakeSFTP()
        FakeConnection.instances.append(self)

    def open(self) -> None:
        if FakeConnection.fail_open:
            raise SSHException("no route")

    def run(self, command: str, **kwargs: object) -> FakeOutcome:
        self.commands.append((command, kwargs))
        return self.outcome

    def put(self, local: str, remote: str) -> None:
        self.puts.append((local, remote))

    def sftp(self) -> FakeSFTP:
        return self._sftp

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_connection(monkeypatch: pytest.MonkeyPatch) -> type[FakeConnection]:
    FakeConnection.instances = []
    FakeConnection.fail_open = False
    monkeypatch.setattr(remote, "Connection", FakeConnection)
    return FakeConnection


def test_remote_host_opens_one_connection(fake_connection: type[FakeConnection]) -> None:
    """All commands of an invocation share a single connection."""
    with RemoteHost("web1", user="ops", port=2222, key_file=Path("/keys/id")) as host:
        host.run(["true"])
        host.run(["ls", "-A", "/tmp"])

    (connection,) = fake_connection.instances
    assert connection.kwargs["user"] == "ops"
    assert connection.kwargs["port"] == 2222
    assert connection.kwargs["connect_kwargs"] == {"key_filename": "/keys/id"}
    assert [command for command, _ in connection.commands] == ["true", "ls -A /tmp"]
    assert connection.closed is True


def test_remote_host_streams_stdin_and_prefixes(fake_connection: type[FakeConnection]) -> None:
    """Environment and directory become prefixes; stdin is streamed, not inlined."""
    host = RemoteHost("web1")

    result = host.run(
        ["shipctl-agent", "secret", "set", "--stdin"],
        env={"X": "1"},
        cwd="/srv",
        stdin="s3cret",
    )

    (connection,) = fake_connection.instances
    command, kwargs = connection.commands[0]
    assert command == "cd /srv && env X=1 shipctl-agent secret set --stdin"
    assert "s3cret" not in command
    stream = kwargs["in_stream"]
    assert isinstance(stream, io.StringIO)
    assert stream.read() == "s3cret"
    assert kwargs["warn"] is True
    assert result.stdout == "ok\n"


def test_remote_host_nonzero_exit(fake_connection: type[FakeConnection]) -> None:
    """Remote failures carry the command text and host."""
    host = RemoteHost("web1")
    host.connect()
    fake_connection.instances[0].outcome = FakeOutcome(1, "", "permission denied")

    with pytest.raises(RemoteCommandError, match="permission denied") as excinfo:
        host.run(["mkdir", "-p", "/root/x"])
    assert excinfo.value.host == "web1"
    assert excinfo.value.command == "mkdir -p /root/x"


def test_remote_host_connection_failure(fake_connection: type[FakeConnection]) -> None:
    """Connection errors surface as TransportError."""
    fake_connection.fail_open = True

    with pytest.raises(TransportError, match="deploy@web1:22"):
        RemoteHost("web1").connect()


def test_remote_host_put_sets_mode(fake_connection: type[FakeConnection], tmp_path: Path) -> None:
    """Uploads are followed by a chmod over SFTP."""
    local = tmp_path / "archive.zip"
    local.write_bytes(b"zip")
    host = RemoteHost("web1")

    host.put(local, "/home/deploy/apps/blog/v1/archive.zip", mode=0o640)

    (connection,) = fake_connection.instances
    assert connection.puts == [(str(local), "/home/deploy/apps/blog/v1/archive.zip")]
    assert connection.sftp().chmods == [("/home/deploy/apps/blog/v1/archive.zip", 0o640)]
