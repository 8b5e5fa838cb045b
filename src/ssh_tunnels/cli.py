"""Command line interface.

Argument parsing and output formatting live here; everything else is
delegated to :class:`SessionOrchestrator`.
"""

import functools
import sys
from collections.abc import Callable, Sequence
from typing import Any

import click
from pydantic import BaseModel, Field
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from . import __version__
from .common.exceptions import ConfigurationError, TunnelError
from .common.logging import setup_logging
from .config import ENV_LOG_FILE, ENV_START_PORT, TunnelSettings
from .session import OperationReport, SessionOrchestrator

console = Console()
err_console = Console(stderr=True)

PORT = click.IntRange(1, 65535)


class AddArguments(BaseModel):
    """Parsed ``add`` arguments."""

    host: str = Field(min_length=1)
    start_port: int | None = Field(default=None, ge=1, le=65535)
    remote_sockets: list[str] = Field(min_length=1)


def parse_add_arguments(
    host: str, args: Sequence[str], start_port: int | None = None
) -> AddArguments:
    """Split ``add`` positionals into an optional start port and remote sockets.

    A leading all-digit argument is the start port, so both
    ``add bastion 5000 db:5432`` and ``add bastion --start-port 5000 db:5432``
    work.
    """
    remaining = list(args)
    if remaining and remaining[0].isdigit():
        if start_port is not None:
            raise click.UsageError("Start port given twice")
        start_port = int(remaining.pop(0))
        if not 1 <= start_port <= 65535:
            raise click.UsageError(f"Invalid start port: {start_port}")
    if not remaining:
        raise click.UsageError("add requires at least one remote socket")
    return AddArguments(host=host, start_port=start_port, remote_sockets=remaining)


def _get_orchestrator(ctx: click.Context) -> SessionOrchestrator:
    root = ctx.find_root()
    if root.obj is None:
        try:
            settings = TunnelSettings.from_env()
        except ConfigurationError as e:
            raise click.ClickException(str(e)) from e
        root.obj = SessionOrchestrator.from_settings(settings)
    orchestrator: SessionOrchestrator = root.obj
    return orchestrator


def handle_errors(func: Callable[..., Any]) -> Callable[..., Any]:
    """Turn fatal tunnel errors into click errors (exit code 1)."""

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return func(*args, **kwargs)
        except TunnelError as e:
            raise click.ClickException(str(e)) from e

    return wrapper


def _render_table(report: OperationReport) -> None:
    if not report.records:
        console.print("No active tunnels")
        return

    table = Table(title="Active tunnels")
    table.add_column("Local Port", justify="right")
    table.add_column("Remote Socket")
    table.add_column("Host")
    table.add_column("Label")
    for record in report.records:
        table.add_row(
            str(record.local_port),
            escape(str(record.remote_socket)),
            escape(record.owner_host_id),
            escape(record.label),
        )
    console.print(table)


def _render(report: OperationReport) -> None:
    for action in report.cleanups:
        err_console.print(f"[dim]{escape(action.message)}[/dim]", highlight=False)
    for message in report.messages:
        console.print(escape(message), highlight=False)
    for warning in report.warnings:
        err_console.print(
            f"[yellow]Warning:[/yellow] {escape(warning)}", highlight=False
        )


@click.group(invoke_without_command=True)
@click.version_option(version=__version__, prog_name="ssh-tunnels")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level.",
)
@click.option("--log-json", is_flag=True, help="Emit logs as JSON.")
@click.option(
    "--log-file",
    type=click.Path(dir_okay=False),
    envvar=ENV_LOG_FILE,
    default=None,
    help=f"Also append logs to this file (or set {ENV_LOG_FILE}).",
)
@click.pass_context
def cli(
    ctx: click.Context, log_level: str, log_json: bool, log_file: str | None
) -> None:
    """Manage ssh port forwards multiplexed over persistent connections."""
    setup_logging(level=log_level, json_format=log_json, log_file=log_file)
    if ctx.invoked_subcommand is None:
        ctx.invoke(list_command)


@cli.command("add")
@click.argument("host")
@click.argument("args", nargs=-1, required=True, metavar="[START_PORT] REMOTE...")
@click.option(
    "--start-port",
    "-p",
    type=PORT,
    default=None,
    help=f"First local port to try (default from {ENV_START_PORT} or 4000).",
)
@click.pass_context
@handle_errors
def add_command(
    ctx: click.Context, host: str, args: tuple[str, ...], start_port: int | None
) -> None:
    """Forward local ports to REMOTE sockets (host:port[:label]) via HOST."""
    parsed = parse_add_arguments(host, args, start_port)
    report = _get_orchestrator(ctx).add(
        parsed.host, parsed.remote_sockets, parsed.start_port
    )
    _render(report)


@cli.command("list")
@click.pass_context
@handle_errors
def list_command(ctx: click.Context) -> None:
    """List active tunnels."""
    report = _get_orchestrator(ctx).list_tunnels()
    _render(report)
    _render_table(report)


@cli.command("kill")
@click.argument("hosts", nargs=-1, required=True)
@click.pass_context
@handle_errors
def kill_command(ctx: click.Context, hosts: tuple[str, ...]) -> None:
    """Close every tunnel and the connection for each HOST."""
    _render(_get_orchestrator(ctx).kill(list(hosts)))


@cli.command("remove")
@click.argument("ports", nargs=-1, required=True, type=PORT)
@click.pass_context
@handle_errors
def remove_command(ctx: click.Context, ports: tuple[int, ...]) -> None:
    """Remove the tunnels on local PORTS."""
    _render(_get_orchestrator(ctx).remove(list(ports)))


@cli.command("save")
@click.argument("name")
@click.argument("ports", nargs=-1, required=True, type=PORT)
@click.option("--yes", "-y", is_flag=True, help="Overwrite an existing profile.")
@click.pass_context
@handle_errors
def save_command(
    ctx: click.Context, name: str, ports: tuple[int, ...], yes: bool
) -> None:
    """Save the tunnels on local PORTS as profile NAME."""

    def confirm(profile_name: str) -> bool:
        if yes:
            return True
        return click.confirm(
            f"Profile '{profile_name}' already exists. Overwrite?", default=False
        )

    _render(_get_orchestrator(ctx).save(name, list(ports), confirm))


@cli.command("load")
@click.argument("names", nargs=-1, required=True)
@click.pass_context
@handle_errors
def load_command(ctx: click.Context, names: tuple[str, ...]) -> None:
    """Re-establish the tunnels saved in each profile NAME."""
    orchestrator = _get_orchestrator(ctx)
    _render(orchestrator.load(list(names)))


@cli.command("help")
@click.pass_context
def help_command(ctx: click.Context) -> None:
    """Show this message and the saved profiles."""
    click.echo(ctx.find_root().get_help())
    names = _get_orchestrator(ctx).profiles.names()
    if names:
        click.echo(f"\nSaved profiles: {', '.join(names)}")


def main(argv: Sequence[str] | None = None, obj: Any = None) -> int:
    """Console entry point. Usage errors and fatal failures exit with 1."""
    try:
        result = cli.main(
            args=list(argv) if argv is not None else None,
            prog_name="ssh-tunnels",
            standalone_mode=False,
            obj=obj,
        )
    except click.ClickException as e:
        e.show()
        return 1
    except click.Abort:
        click.echo("Aborted!", err=True)
        return 1
    return result if isinstance(result, int) else 0


if __name__ == "__main__":
    sys.exit(main())
