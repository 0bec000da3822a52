"""``shipctl-agent``: the executor that runs on a target machine.

The workstation CLI installs this program on the machine and invokes it
over SSH. Commands converge the local host with :class:`LocalRunner`;
nothing here opens network connections of its own.
"""
from __future__ import annotations

import sys
import textwrap
from dataclasses import dataclass
from pathlib import Path

import typer

from . import __version__
from .cli_common import (
    CONFIG_FILE_OPTION,
    LOCK_TIMEOUT_OPTION,
    VERBOSE_OPTION,
    cancellation_scope,
    command_error,
    configure_logging,
    console,
    report_pipeline,
    ship_error,
)
from .config import AppConfig, ConfigError, load_config
from .errors import ShipError
from .locking import LockManager
from .logging import StructuredLogger
from .reconcile import build_maintain_pipeline, build_up_pipeline
from .release import ReleaseRequest, ReleaseStager, SecretStore
from .runner import LocalRunner
from .templates import TemplateEngine

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        shipctl machine-side agent.

        Converges the machine it runs on and stages application releases
        uploaded by the shipctl workstation CLI.
        """
    ).strip(),
)
secret_app = typer.Typer(help="Manage application secrets on this machine.")
app.add_typer(secret_app, name="secret")

APP_NAME_OPTION = typer.Option(..., "--app-name", help="Application name.")


@dataclass
class AgentRuntime:
    """Objects shared by agent commands."""

    config: AppConfig
    logger: StructuredLogger
    locks: LockManager
    templates: TemplateEngine


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
    ssh_port: int | None = None,
    apps_root: Path | None = None,
) -> AgentRuntime:
    runtime = ctx.obj
    if isinstance(runtime, AgentRuntime):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override
    if ssh_port is not None:
        overrides["ssh"] = {"port": ssh_port}
    if apps_root is not None:
        overrides["apps_root"] = str(apps_root)
    try:
        config = load_config(config_file=config_file, overrides=overrides)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(exc.exit_code)) from exc
    runtime = AgentRuntime(
        config=config,
        logger=StructuredLogger(config.logs_dir),
        locks=LockManager(config.runtime_dir, config.lock_timeout),
        templates=TemplateEngine.with_overrides(config.templates_dir),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> AgentRuntime:
    runtime = ctx.obj
    if isinstance(runtime, AgentRuntime):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = LOCK_TIMEOUT_OPTION,
    ssh_port: int | None = typer.Option(
        None,
        "--ssh-port",
        help="SSH port the workstation connects on; kept open by the firewall.",
    ),
    apps_root: Path | None = typer.Option(
        None,
        "--apps-root",
        help="Directory holding application releases; the workstation passes its own.",
    ),
    verbose: bool = VERBOSE_OPTION,
) -> None:
    """Entry point callback invoked for every agent execution."""
    configure_logging(verbose)
    _ensure_runtime(ctx, config_file, lock_timeout, ssh_port, apps_root)
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


@app.command()
def version(ctx: typer.Context) -> None:
    """Print the agent version."""
    _get_runtime(ctx)
    console.print(f"shipctl-agent {__version__}")


@app.command()
def up(ctx: typer.Context) -> None:
    """Converge this machine: packages, firewall, SSH, Docker, proxy, runtime."""
    runtime = _get_runtime(ctx)
    pipeline = build_up_pipeline(runtime.config, runtime.templates)
    with runtime.logger.operation(
        "agent up",
        args={"steps": pipeline.names},
        target={"kind": "machine"},
    ) as op, cancellation_scope() as cancel:
        run = pipeline.run(LocalRunner(cancel=cancel), cancel=cancel, op=op)
        report_pipeline(op, run, label="Machine up")


@app.command()
def maintain(
    ctx: typer.Context,
    allow_reboot: bool = typer.Option(
        False,
        "--allow-reboot",
        help="Schedule a reboot when the system reports one is required.",
    ),
) -> None:
    """Upgrade packages, prune Docker and optionally reboot."""
    runtime = _get_runtime(ctx)
    pipeline = build_maintain_pipeline(allow_reboot=allow_reboot)
    with runtime.logger.operation(
        "agent maintain",
        args={"allow_reboot": allow_reboot},
        target={"kind": "machine"},
    ) as op, cancellation_scope() as cancel:
        if not allow_reboot:
            console.print("Reboot not allowed, skipping reboot check.")
        run = pipeline.run(LocalRunner(cancel=cancel), cancel=cancel, op=op)
        report_pipeline(op, run, label="Maintenance")


@app.command()
def deploy(
    ctx: typer.Context,
    app_name: str = APP_NAME_OPTION,
    app_version: str = typer.Option(..., "--app-version", help="Application version."),
    volume_names: list[str] = typer.Option(
        [],
        "--volume-name",
        help="Named volume to provision (repeatable).",
    ),
) -> None:
    """Stage an uploaded release and make it current."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    with runtime.logger.operation(
        "agent deploy",
        args={"app": app_name, "version": app_version, "volumes": volume_names},
        target={"kind": "release", "app": app_name, "version": app_version},
    ) as op, cancellation_scope() as cancel:
        try:
            request = ReleaseRequest.create(app_name, app_version, volume_names)
            stager = ReleaseStager(
                apps_root=config.apps_root,
                runner=LocalRunner(cancel=cancel),
                permissions=config.permissions,
                proxy=config.proxy,
                locks=runtime.locks,
                cancel=cancel,
            )
            result = stager.stage(request, op=op)
        except ShipError as exc:
            ship_error(op, exc)
        except OSError as exc:
            command_error(op, f"Deploy of {app_name} {app_version} failed: {exc}", rc=4)

        for warning in result.warnings:
            console.print(f"[yellow]Warning:[/yellow] {warning}")
        console.print(
            f"[green]{app_name} {app_version} is live at {result.layout.current}.[/green]"
        )
        context = {
            "current": str(result.layout.version_dir),
            "compose_file": str(result.compose_file) if result.compose_file else None,
            "site_file": str(result.site_file) if result.site_file else None,
        }
        if result.warnings:
            op.warning("Release staged with warnings.", warnings=result.warnings, context=context)
        else:
            op.success("Release staged.", changed=1, context=context)


@secret_app.command("set")
def secret_set(
    ctx: typer.Context,
    app_name: str = APP_NAME_OPTION,
    secret_name: str = typer.Option(..., "--secret-name", help="Secret name."),
    secret_value: str | None = typer.Option(
        None,
        "--secret-value",
        help="Secret value (prefer --stdin so it stays out of process listings).",
    ),
    from_stdin: bool = typer.Option(False, "--stdin", help="Read the value from stdin."),
) -> None:
    """Write a secret file for an application."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "agent secret set",
        args={"app": app_name, "secret": secret_name},
        target={"kind": "secret", "app": app_name, "secret": secret_name},
    ) as op:
        if from_stdin:
            secret_value = sys.stdin.read()
        if secret_value is None:
            command_error(op, "Provide --secret-value or --stdin.", rc=2)
        store = SecretStore(runtime.config.apps_root, runtime.config.permissions)
        try:
            path = store.set(app_name, secret_name, secret_value)
        except ShipError as exc:
            ship_error(op, exc)
        except OSError as exc:
            command_error(op, f"Failed to write secret '{secret_name}': {exc}", rc=4)
        console.print(f"[green]Secret '{secret_name}' stored for {app_name}.[/green]")
        op.success("Secret stored.", changed=1, context={"path": str(path)})


@secret_app.command("delete")
def secret_delete(
    ctx: typer.Context,
    app_name: str = APP_NAME_OPTION,
    secret_name: str = typer.Option(..., "--secret-name", help="Secret name."),
) -> None:
    """Remove a secret file for an application."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "agent secret delete",
        args={"app": app_name, "secret": secret_name},
        target={"kind": "secret", "app": app_name, "secret": secret_name},
    ) as op:
        store = SecretStore(runtime.config.apps_root, runtime.config.permissions)
        try:
            removed = store.delete(app_name, secret_name)
        except ShipError as exc:
            ship_error(op, exc)
        except OSError as exc:
            command_error(op, f"Failed to remove secret '{secret_name}': {exc}", rc=4)
        if removed:
            console.print(f"[green]Secret '{secret_name}' removed from {app_name}.[/green]")
        else:
            console.print(f"Secret '{secret_name}' of {app_name} was not set.")
        op.success("Secret removed.", changed=1 if removed else 0)


def main() -> None:
    """Console-script and zipapp entry point."""
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
