"""Typer-powered workstation command line for ``shipctl``.

Every command that touches a machine follows the same shape: open one SSH
connection, make sure the matching ``shipctl-agent`` is installed, then let
the agent do the work on the machine while its output streams back here.
"""
from __future__ import annotations

import json
import sys
import textwrap
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import typer
import yaml

from . import __version__
from .cli_common import (
    CONFIG_FILE_OPTION,
    LOCK_TIMEOUT_OPTION,
    VERBOSE_OPTION,
    cancellation_scope,
    command_error,
    configure_logging,
    console,
    path_or_none,
    ship_error,
)
from .config import AppConfig, ConfigError, load_config
from .errors import ShipError
from .logging import OperationScope, StructuredLogger
from .providers import AgentInstaller
from .release import ReleaseManager, ReleaseRequest
from .remote import RemoteHost
from .runner import CancellationToken

HOST_OPTION = typer.Option(..., "--host", help="Address of the target machine.")
SSH_KEY_OPTION = typer.Option(
    None,
    "--ssh-key",
    "--ssh-private-key",
    dir_okay=False,
    help="Private key used for SSH (defaults to ssh.key_file or the SSH agent).",
)
SSH_USER_OPTION = typer.Option(None, "--ssh-user", help="SSH user (defaults to ssh.user).")
SSH_PORT_OPTION = typer.Option(None, "--ssh-port", help="SSH port (defaults to ssh.port).")
APP_NAME_OPTION = typer.Option(..., "--app-name", help="Application name.")
SECRET_NAME_OPTION = typer.Option(..., "--secret-name", help="Secret name.")

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Provision small fleets of virtual machines and ship containerised
        applications to them.

        Machine commands converge a host to a known-good state. Deploys
        upload a versioned release and cut traffic over atomically.
        """
    ).strip(),
)
machine_app = typer.Typer(help="Converge and maintain target machines.")
secret_app = typer.Typer(help="Manage application secrets on a machine.")
config_app = typer.Typer(help="Inspect global configuration.")
app.add_typer(machine_app, name="machine")
app.add_typer(secret_app, name="secret")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    logger: StructuredLogger


@dataclass(frozen=True)
class Connection:
    """Resolved SSH connection settings for one invocation."""

    host: str
    user: str
    port: int
    key_file: Path | None

    def target(self) -> dict[str, object]:
        return {"kind": "machine", "host": self.host, "user": self.user, "port": self.port}


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override
    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(exc.exit_code)) from exc
    runtime = RuntimeContext(config=config, logger=StructuredLogger(config.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _resolve_connection(
    config: AppConfig,
    host: str,
    ssh_key: Path | None,
    ssh_user: str | None,
    ssh_port: int | None,
) -> Connection:
    return Connection(
        host=host,
        user=ssh_user or config.ssh.user,
        port=ssh_port or config.ssh.port,
        key_file=path_or_none(ssh_key) or config.ssh.key_file,
    )


@contextmanager
def _remote(
    runtime: RuntimeContext,
    connection: Connection,
    cancel: CancellationToken,
) -> Iterator[tuple[RemoteHost, AgentInstaller]]:
    """Open the invocation's single SSH connection and bind an installer."""
    host = RemoteHost(
        connection.host,
        user=connection.user,
        port=connection.port,
        key_file=connection.key_file,
        connect_timeout=runtime.config.ssh.connect_timeout,
        cancel=cancel,
    )
    with host:
        yield host, AgentInstaller(host, runtime.config.agent, cancel=cancel)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the shipctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = LOCK_TIMEOUT_OPTION,
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    configure_logging(verbose)
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"shipctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _run_agent_on_machine(
    runtime: RuntimeContext,
    op: OperationScope,
    connection: Connection,
    args: list[str],
    *,
    label: str,
) -> None:
    with cancellation_scope() as cancel:
        try:
            with _remote(runtime, connection, cancel) as (host, installer):
                installer.ensure(privileged=True, op=op)
                argv = installer.command(
                    "--ssh-port", str(connection.port), *args, privileged=True
                )
                host.run(argv, capture=False)
        except ShipError as exc:
            ship_error(op, exc)
    op.add_step(f"agent.{args[0]}", status="success")
    console.print(f"[green]{label} completed on {connection.host}.[/green]")
    op.success(f"{label} completed.", changed=1)


@machine_app.command("up")
def machine_up(
    ctx: typer.Context,
    host: str = HOST_OPTION,
    ssh_key: Path | None = SSH_KEY_OPTION,
    ssh_user: str | None = SSH_USER_OPTION,
    ssh_port: int | None = SSH_PORT_OPTION,
) -> None:
    """Converge a machine to an up-to-date, hardened state."""
    runtime = _get_runtime(ctx)
    connection = _resolve_connection(runtime.config, host, ssh_key, ssh_user, ssh_port)
    with runtime.logger.operation(
        "machine up", args={"host": host}, target=connection.target()
    ) as op:
        _run_agent_on_machine(runtime, op, connection, ["up"], label="Machine up")


@machine_app.command("maintain")
def machine_maintain(
    ctx: typer.Context,
    host: str = HOST_OPTION,
    ssh_key: Path | None = SSH_KEY_OPTION,
    ssh_user: str | None = SSH_USER_OPTION,
    ssh_port: int | None = SSH_PORT_OPTION,
    allow_reboot: bool = typer.Option(
        False,
        "--allow-reboot",
        help="Reboot the machine if the system reports it is necessary.",
    ),
) -> None:
    """Run routine maintenance on a machine."""
    runtime = _get_runtime(ctx)
    connection = _resolve_connection(runtime.config, host, ssh_key, ssh_user, ssh_port)
    args = ["maintain", "--allow-reboot"] if allow_reboot else ["maintain"]
    with runtime.logger.operation(
        "machine maintain",
        args={"host": host, "allow_reboot": allow_reboot},
        target=connection.target(),
    ) as op:
        _run_agent_on_machine(runtime, op, connection, args, label="Maintenance")


@app.command()
def deploy(
    ctx: typer.Context,
    host: str = HOST_OPTION,
    app_name: str = APP_NAME_OPTION,
    app_version: str = typer.Option(..., "--app-version", help="Application version."),
    volume_names: list[str] = typer.Option(
        [],
        "--volume-name",
        "--volume",
        help="Named volume shared across versions (repeatable).",
    ),
    project_dir: Path = typer.Option(
        Path("."),
        "--project-dir",
        file_okay=False,
        help="Directory to package (defaults to the current directory).",
    ),
    ssh_key: Path | None = SSH_KEY_OPTION,
    ssh_user: str | None = SSH_USER_OPTION,
    ssh_port: int | None = SSH_PORT_OPTION,
) -> None:
    """Package the project, ship it as a new version and make it current."""
    runtime = _get_runtime(ctx)
    connection = _resolve_connection(runtime.config, host, ssh_key, ssh_user, ssh_port)
    with runtime.logger.operation(
        "deploy",
        args={
            "host": host,
            "app": app_name,
            "version": app_version,
            "volumes": volume_names,
            "project_dir": str(project_dir),
        },
        target={"kind": "release", "host": host, "app": app_name, "version": app_version},
    ) as op:
        try:
            request = ReleaseRequest.create(app_name, app_version, volume_names)
        except ShipError as exc:
            ship_error(op, exc)
        with cancellation_scope() as cancel:
            try:
                with _remote(runtime, connection, cancel) as (host_runner, installer):
                    manager = ReleaseManager(
                        host_runner,
                        installer,
                        apps_root=runtime.config.apps_root,
                        cancel=cancel,
                    )
                    outcome = manager.deploy(request, project_dir=project_dir, op=op)
            except ShipError as exc:
                ship_error(op, exc)
            except OSError as exc:
                command_error(op, f"Failed to package {project_dir}: {exc}", rc=3)
        console.print(
            f"[green]Deployed {app_name} {app_version} to {host} "
            f"({outcome.archive_entries} entries).[/green]"
        )
        op.success(
            "Release deployed.",
            changed=1,
            context={"current": str(outcome.layout.version_dir)},
        )


@secret_app.command("set")
def secret_set(
    ctx: typer.Context,
    host: str = HOST_OPTION,
    app_name: str = APP_NAME_OPTION,
    secret_name: str = SECRET_NAME_OPTION,
    secret_value: str | None = typer.Option(
        None,
        "--secret-value",
        help="Secret value; read from stdin (or prompted) when omitted.",
    ),
    ssh_key: Path | None = SSH_KEY_OPTION,
    ssh_user: str | None = SSH_USER_OPTION,
    ssh_port: int | None = SSH_PORT_OPTION,
) -> None:
    """Store a secret for an application on a machine."""
    runtime = _get_runtime(ctx)
    connection = _resolve_connection(runtime.config, host, ssh_key, ssh_user, ssh_port)
    with runtime.logger.operation(
        "secret set",
        args={"host": host, "app": app_name, "secret": secret_name},
        target={"kind": "secret", "host": host, "app": app_name, "secret": secret_name},
    ) as op:
        value = secret_value if secret_value is not None else _read_secret_value()
        with cancellation_scope() as cancel:
            try:
                with _remote(runtime, connection, cancel) as (host_runner, installer):
                    manager = ReleaseManager(
                        host_runner,
                        installer,
                        apps_root=runtime.config.apps_root,
                        cancel=cancel,
                    )
                    manager.set_secret(app_name, secret_name, value, op=op)
            except ShipError as exc:
                ship_error(op, exc)
        console.print(f"[green]Secret '{secret_name}' stored for {app_name} on {host}.[/green]")
        op.success("Secret stored.", changed=1)


@secret_app.command("delete")
def secret_delete(
    ctx: typer.Context,
    host: str = HOST_OPTION,
    app_name: str = APP_NAME_OPTION,
    secret_name: str = SECRET_NAME_OPTION,
    ssh_key: Path | None = SSH_KEY_OPTION,
    ssh_user: str | None = SSH_USER_OPTION,
    ssh_port: int | None = SSH_PORT_OPTION,
) -> None:
    """Remove a secret of an application from a machine."""
    runtime = _get_runtime(ctx)
    connection = _resolve_connection(runtime.config, host, ssh_key, ssh_user, ssh_port)
    with runtime.logger.operation(
        "secret delete",
        args={"host": host, "app": app_name, "secret": secret_name},
        target={"kind": "secret", "host": host, "app": app_name, "secret": secret_name},
    ) as op:
        with cancellation_scope() as cancel:
            try:
                with _remote(runtime, connection, cancel) as (host_runner, installer):
                    manager = ReleaseManager(
                        host_runner,
                        installer,
                        apps_root=runtime.config.apps_root,
                        cancel=cancel,
                    )
                    manager.delete_secret(app_name, secret_name, op=op)
            except ShipError as exc:
                ship_error(op, exc)
        console.print(f"[green]Secret '{secret_name}' removed from {app_name} on {host}.[/green]")
        op.success("Secret removed.", changed=1)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Emit JSON instead of YAML."),
) -> None:
    """Print the effective configuration."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config", "scope": "global"},
    ) as op:
        payload = runtime.config.to_dict()
        if json_output:
            console.print_json(json.dumps(payload))
        else:
            console.print(yaml.safe_dump(payload, sort_keys=False).rstrip(), markup=False)
        op.success("Reported configuration.", changed=0)


def _read_secret_value() -> str:
    if sys.stdin.isatty():
        return typer.prompt("Secret value", hide_input=True)
    return sys.stdin.read()


def main() -> None:
    """Console-script entry point."""
    app()


__all__ = ["app", "main"]
