"""Typer-powered command line interface for ``clawctl``.

Every subcommand resolves the shared :class:`RuntimeContext` (configuration,
instance manager, structured logger), verifies it runs as the service user,
makes sure the port registry exists and then delegates to
:class:`~clawctl.manager.InstanceManager` inside a logged operation scope.
Failures are rendered as ``ERROR: <message>`` on stderr.
"""
from __future__ import annotations

import os
import sys
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, NoReturn

import click
import typer
from rich.console import Console
from rich.table import Table
from typer.core import TyperGroup

from . import __version__
from .config import AppConfig, load_config
from .errors import ClawctlError
from .exit_codes import ExitCode
from .identity import check_identity, runtime_env
from .logging import OperationScope, StructuredLogger
from .manager import Confirmer, DestroyQuestion, InstanceManager
from .naming import InstancePaths
from .providers.instance_status_provider import STATE_FAILED, STATE_RUNNING

console = Console(soft_wrap=True)
err_console = Console(stderr=True, soft_wrap=True)

USAGE_TEXT = textwrap.dedent(
    """
    Usage: clawctl <command> [args...]

    Commands:
      create  <name>        Create a new OpenClaw instance
      list                  List all instances with status and ports
      start   <name>        Start an instance
      stop    <name>        Stop an instance
      restart <name>        Restart an instance
      destroy <name>        Remove an instance (with confirmation)
      config  <name>        Show or edit instance config
      status  <name>        Detailed status of an instance
      logs    <name> [N]    Show recent logs (default 50 lines)

    The 'default' instance refers to the original OpenClaw deployment.
    Instance names must be lowercase alphanumeric with optional hyphens.

    Examples:
      clawctl create dev
      clawctl start dev
      clawctl logs dev 100
      clawctl destroy dev
    """
).strip()

UNCHECKED_COMMANDS = {"help"}

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to clawctl's YAML config file.",
)

NAME_ARGUMENT_HELP = "Instance name (lowercase alphanumeric and hyphens)."


class ClawctlGroup(TyperGroup):
    """Root command group reporting unknown input with exit status 1."""

    def make_context(
        self,
        info_name: str | None,
        args: list[str],
        parent: click.Context | None = None,
        **extra: Any,
    ) -> click.Context:
        """Parse the global options, reporting usage errors with status 1."""
        try:
            return super().make_context(info_name, args, parent=parent, **extra)
        except click.UsageError as exc:
            exc.exit_code = ExitCode.ERROR
            raise

    def invoke(self, ctx: click.Context) -> Any:
        """Run the subcommand, reporting its usage errors with status 1."""
        try:
            return super().invoke(ctx)
        except click.UsageError as exc:
            exc.exit_code = ExitCode.ERROR
            raise

    def resolve_command(
        self,
        ctx: typer.Context,
        args: list[str],
    ) -> tuple[str | None, Any, list[str]]:
        """Resolve the subcommand, rejecting unknown names."""
        if args and not args[0].startswith("-") and self.get_command(ctx, args[0]) is None:
            err_console.print(f"ERROR: Unknown command '{args[0]}'", markup=False)
            err_console.print()
            err_console.print(USAGE_TEXT, markup=False, highlight=False)
            ctx.exit(ExitCode.ERROR)
        return super().resolve_command(ctx, args)


app = typer.Typer(
    cls=ClawctlGroup,
    add_completion=False,
    context_settings={"help_option_names": ["-h", "--help"]},
    help=textwrap.dedent(
        """
        OpenClaw multi-instance manager.

        Creates, runs and removes named OpenClaw gateway instances, each
        running as a rootless Podman quadlet under the service user's
        systemd manager.
        """
    ).strip(),
)


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    manager: InstanceManager
    logger: StructuredLogger


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

    config = load_config(config_file=config_file, overrides=overrides)
    manager = InstanceManager.from_config(config, env=runtime_env(config))
    logger = StructuredLogger(config.logs_dir)
    runtime = RuntimeContext(config=config, manager=manager, logger=logger)
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


def _fail(message: str, rc: int = ExitCode.ERROR) -> NoReturn:
    """Print an error outside any operation scope and exit."""
    err_console.print(f"ERROR: {message}", markup=False, highlight=False)
    raise typer.Exit(code=rc)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.ERROR,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    err_console.print(f"ERROR: {message}", markup=False, highlight=False)
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _print_usage() -> None:
    console.print(USAGE_TEXT, markup=False, highlight=False)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the clawctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"clawctl {__version__}", highlight=False)
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand is None:
        _print_usage()
        raise typer.Exit(code=0)

    if ctx.invoked_subcommand in UNCHECKED_COMMANDS or ctx.resilient_parsing:
        return
    if any(arg in ctx.help_option_names for arg in ctx.args):
        return

    try:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        check_identity(runtime.config)
        runtime.manager.ensure_registry()
    except ClawctlError as exc:
        _fail(str(exc), exc.exit_code)


@app.command("help")
def help_command() -> None:
    """Show usage information."""
    _print_usage()


@app.command()
def create(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help=NAME_ARGUMENT_HELP),
) -> None:
    """Create a new OpenClaw instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "create",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            result = runtime.manager.create(name, op=op)
        except ClawctlError as exc:
            _command_error(op, str(exc), rc=exc.exit_code)

        paths = result.paths
        console.print(f"[green]Instance '{result.name}' created successfully![/green]")
        console.print(f"  Gateway port: {result.ports.gateway}")
        console.print(f"  Bridge port:  {result.ports.bridge}")
        console.print(f"  State dir:    {paths.state_dir}", highlight=False)
        console.print(f"  Workspace:    {paths.workspace_dir}", highlight=False)
        console.print(f"  Config:       {paths.config_file}", highlight=False)
        console.print(f"  Quadlet:      {paths.unit_file}", highlight=False)
        for warning in result.warnings:
            console.print(f"[yellow]WARNING:[/yellow] {warning}")
        console.print()
        console.print("Next steps:")
        console.print(f"  1. Start the instance:   clawctl start {result.name}")
        console.print(f"  2. Add channels/auth:    clawctl config {result.name}")
        console.print(f"  3. Check status:         clawctl status {result.name}")

        context = {
            "gateway_port": result.ports.gateway,
            "bridge_port": result.ports.bridge,
            "state_dir": paths.state_dir,
            "unit_file": paths.unit_file,
        }
        if result.warnings:
            op.warning(
                "Instance created with warnings.",
                warnings=result.warnings,
                changed=1,
                context=context,
            )
        else:
            op.success("Instance created.", changed=1, context=context)


@app.command("list")
def list_instances(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit instances as JSON instead of a table.",
    ),
) -> None:
    """List all instances with status and ports."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "instances"},
    ) as op:
        try:
            summaries = runtime.manager.list()
        except ClawctlError as exc:
            _command_error(op, str(exc), rc=exc.exit_code)

        if json_output:
            console.print_json(data={"instances": [item.to_dict() for item in summaries]})
            op.success("Reported instances as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Instance", style="bold", no_wrap=True)
        table.add_column("Status", no_wrap=True)
        table.add_column("Gateway", no_wrap=True)
        table.add_column("Bridge", no_wrap=True)
        table.add_column("Container", no_wrap=True)
        table.add_column("State Dir")

        for item in summaries:
            table.add_row(
                item.name,
                _styled_state(item.state),
                str(item.gateway_port),
                str(item.bridge_port),
                item.container_name,
                str(item.state_dir),
            )

        console.print(table)
        op.success("Reported instances.", changed=0, context={"count": len(summaries)})


def _styled_state(state: str) -> str:
    if state == STATE_RUNNING:
        return f"[green]{state}[/green]"
    if state == STATE_FAILED:
        return f"[red]{state}[/red]"
    return f"[yellow]{state}[/yellow]"


def _unit_command(ctx: typer.Context, verb: str, name: str | None, done: str) -> None:
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        verb,
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            paths = getattr(runtime.manager, verb)(name, op=op)
        except ClawctlError as exc:
            _command_error(op, str(exc), rc=exc.exit_code)
        console.print(f"{done} {paths.unit}. Check with: clawctl status {name}", highlight=False)
        op.success(f"Instance {done.lower()}.", changed=1)


@app.command()
def start(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help=NAME_ARGUMENT_HELP),
) -> None:
    """Start an instance."""
    _unit_command(ctx, "start", name, "Started")


@app.command()
def stop(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help=NAME_ARGUMENT_HELP),
) -> None:
    """Stop an instance."""
    _unit_command(ctx, "stop", name, "Stopped")


@app.command()
def restart(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help=NAME_ARGUMENT_HELP),
) -> None:
    """Restart an instance."""
    _unit_command(ctx, "restart", name, "Restarted")


def _prompt_confirmer(
    name: str,
    *,
    yes: bool,
    purge_state: bool,
    purge_workspace: bool,
) -> Confirmer:
    """Return a confirmer that prompts unless flags already answer."""

    def _ask(question: DestroyQuestion, paths: InstancePaths) -> bool:
        if question is DestroyQuestion.CONFIRM:
            console.print(
                f"[yellow]WARNING:[/yellow] This will destroy instance '{name}'."
            )
            console.print(f"  Quadlet:   {paths.unit_file}", highlight=False)
            console.print(f"  State dir: {paths.state_dir}", highlight=False)
            console.print(f"  Workspace: {paths.workspace_dir}", highlight=False)
            return yes or typer.confirm("Are you sure?", default=False)
        if question is DestroyQuestion.REMOVE_STATE:
            if purge_state or yes:
                return purge_state
            return typer.confirm(f"Also remove state dir ({paths.state_dir})?", default=False)
        if purge_workspace or yes:
            return purge_workspace
        return typer.confirm(f"Also remove workspace ({paths.workspace_dir})?", default=False)

    return _ask


@app.command()
def destroy(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help=NAME_ARGUMENT_HELP),
    yes: bool = typer.Option(
        False,
        "--yes",
        "-y",
        help="Skip the confirmation prompts (directories are kept unless purged).",
    ),
    purge_state: bool = typer.Option(
        False,
        "--purge-state",
        help="Also remove the instance state directory.",
    ),
    purge_workspace: bool = typer.Option(
        False,
        "--purge-workspace",
        help="Also remove the instance workspace directory.",
    ),
) -> None:
    """Remove an instance (with confirmation)."""
    runtime = _get_runtime(ctx)
    confirmer = _prompt_confirmer(
        name or "",
        yes=yes,
        purge_state=purge_state,
        purge_workspace=purge_workspace,
    )
    with runtime.logger.operation(
        "destroy",
        args={
            "name": name,
            "yes": yes,
            "purge_state": purge_state,
            "purge_workspace": purge_workspace,
        },
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            result = runtime.manager.destroy(name, confirmer, op=op)
        except ClawctlError as exc:
            _command_error(op, str(exc), rc=exc.exit_code)

        if result.aborted:
            console.print("Aborted.")
            op.success("Destroy aborted by operator.", changed=0)
            return

        if result.stopped:
            console.print(f"Stopped {result.paths.unit}.", highlight=False)
        if result.unit_removed:
            console.print(f"Removed quadlet: {result.paths.unit_file}", highlight=False)
        if result.state_removed:
            console.print("Removed state dir.")
        if result.workspace_removed:
            console.print("Removed workspace dir.")
        console.print("Removed from port registry.")
        console.print(f"[yellow]Instance '{result.name}' destroyed.[/yellow]")
        op.success(
            "Instance destroyed.",
            changed=1,
            context={
                "state_removed": result.state_removed,
                "workspace_removed": result.workspace_removed,
            },
        )


@app.command()
def config(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help=NAME_ARGUMENT_HELP),
) -> None:
    """Show or edit an instance config."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "config",
        args={"name": name},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            config_file = runtime.manager.config_path(name)
        except ClawctlError as exc:
            _command_error(op, str(exc), rc=exc.exit_code)

        console.print(f"Config file: {config_file}", highlight=False)
        console.print()

        editor = os.environ.get("EDITOR")
        if editor and sys.stdin.isatty() and sys.stdout.isatty():
            if typer.confirm(f"Open in {editor}?", default=False):
                typer.edit(filename=str(config_file), editor=editor)
                op.add_step("config.edit", detail=editor)
                op.success("Opened instance config in editor.", changed=0)
                return

        try:
            content = config_file.read_text(encoding="utf-8")
        except OSError as exc:
            _command_error(op, f"Failed to read {config_file}: {exc}")
        typer.echo(content, nl=not content.endswith("\n"))
        op.success("Displayed instance config.", changed=0)


@app.command()
def status(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help=NAME_ARGUMENT_HELP),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit structured JSON instead of human-readable output.",
    ),
) -> None:
    """Show detailed status of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"name": name, "json": json_output},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            report = runtime.manager.status(name, op=op)
        except ClawctlError as exc:
            _command_error(op, str(exc), rc=exc.exit_code)

        if json_output:
            console.print_json(data=report.to_dict())
            op.success("Reported instance status as JSON.", changed=0)
            return

        paths = report.paths
        console.print(f"[bold]=== OpenClaw Instance: {report.name} ===[/bold]")
        console.print()
        console.print(
            f"Ports:     gateway={report.entry.gateway_port}, bridge={report.entry.bridge_port}",
            highlight=False,
        )
        console.print(f"Status:    {_styled_state(report.status.state)}")
        console.print(f"State:     {paths.state_dir}", highlight=False)
        console.print(f"Workspace: {paths.workspace_dir}", highlight=False)
        console.print(f"Quadlet:   {paths.unit_file}", highlight=False)
        console.print()
        console.print("--- systemctl status ---")
        if report.systemd_output:
            typer.echo(report.systemd_output)
        if report.container is not None:
            console.print()
            console.print("--- container inspect (summary) ---")
            for line in report.container.describe():
                typer.echo(line)
        op.success("Reported instance status.", changed=0, context={"state": report.status.state})


@app.command()
def logs(
    ctx: typer.Context,
    name: str | None = typer.Argument(None, help=NAME_ARGUMENT_HELP),
    lines: int = typer.Argument(50, min=1, help="Number of journal lines to show."),
) -> None:
    """Show recent logs of an instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "logs",
        args={"name": name, "lines": lines},
        target={"kind": "instance", "name": name},
    ) as op:
        try:
            output = runtime.manager.logs(name, lines, op=op)
        except ClawctlError as exc:
            _command_error(op, str(exc), rc=exc.exit_code)
        if output:
            typer.echo(output, nl=not output.endswith("\n"))
        op.success("Fetched instance logs.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
