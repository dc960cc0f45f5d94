"""Command-line interface for flow.

Usage:
    flow open [PATH]     Start/open a project dashboard (default: cwd)
    flow list            List running dashboards
    flow stop [PATH]     Stop a project dashboard (default: cwd)
    flow stop-all        Stop all dashboards
    flow shutdown        Stop the daemon and all dashboards

Output is line-oriented ``KEY: VALUE`` text, for example:

    STATUS: STARTED
    URL: http://localhost:3420
    PID: 1234
    PORT: 3420
    PROJECT: /abs/path

Exit code is 0 on success and 1 on failure.
"""

import logging
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any

import click
import typer
from typer.core import TyperGroup

from flow_daemon.cli_utils import EXIT_ERROR, EXIT_SUCCESS, cli_errors, console, emit, emit_failure
from flow_daemon.core.config import load_config
from flow_daemon.core.log_setup import configure_cli_logging
from flow_daemon.ipc.client import DaemonClient
from flow_daemon.ipc.protocol import is_error

logger = logging.getLogger(__name__)

NOT_RUNNING_ERROR = "Not running"


class FlowGroup(TyperGroup):
    """Command group that reports unknown subcommands with exit code 1."""

    def resolve_command(self, ctx: click.Context, args: list[str]) -> Any:
        try:
            return super().resolve_command(ctx, args)
        except click.UsageError as e:
            e.exit_code = EXIT_ERROR
            raise


app = typer.Typer(
    name="flow",
    cls=FlowGroup,
    help="Run project dashboards side by side, supervised by a local daemon.",
    add_completion=False,
    pretty_exceptions_enable=False,
)


def get_version() -> str:
    try:
        return version("flow-daemon")
    except PackageNotFoundError:
        return "unknown"


def _version_callback(value: bool) -> None:
    if value:
        console.print(get_version(), markup=False)
        raise typer.Exit(code=EXIT_SUCCESS)


def _project_root(path: Path | None) -> Path:
    return (path or Path.cwd()).expanduser().resolve()


@app.callback(invoke_without_command=True)
def main_callback(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", help="Show debug logging on stderr"),
    version_flag: bool = typer.Option(
        False,
        "--version",
        "-v",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Run project dashboards side by side, supervised by a local daemon."""
    configure_cli_logging(verbose)
    with cli_errors():
        load_config()

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help(), markup=False)
        raise typer.Exit(code=EXIT_SUCCESS)


@app.command(name="open")
def open_command(
    path: Path = typer.Argument(None, help="Project directory (default: current directory)"),
) -> None:
    """Start a project's dashboard, or show the one already running."""
    project_root = _project_root(path)

    with cli_errors():
        client = DaemonClient()
        client.ensure_daemon()
        response = client.send_command("open", {"projectRoot": str(project_root)})

    if is_error(response):
        emit_failure(response["error"])
        raise typer.Exit(code=EXIT_ERROR)

    emit("STATUS", "STARTED" if response.get("started") else "ALREADY_RUNNING")
    emit("URL", response.get("url"))
    emit("PID", response.get("pid"))
    emit("PORT", response.get("port"))
    emit("PROJECT", project_root)


@app.command(name="list")
def list_command() -> None:
    """List running dashboards."""
    with cli_errors():
        client = DaemonClient()
        client.ensure_daemon()
        response = client.send_command("list")

    if is_error(response):
        emit_failure(response["error"])
        raise typer.Exit(code=EXIT_ERROR)

    if not response:
        emit("STATUS", "NO_PROJECTS")
        return

    for entry in response:
        emit("PROJECT", entry.get("projectRoot"))
        emit("URL", entry.get("url"), indent=2)
        emit("PID", entry.get("pid"), indent=2)
        emit("PORT", entry.get("port"), indent=2)


@app.command(name="stop")
def stop_command(
    path: Path = typer.Argument(None, help="Project directory (default: current directory)"),
) -> None:
    """Stop a project's dashboard."""
    project_root = _project_root(path)

    with cli_errors():
        client = DaemonClient()
        if not client.is_daemon_running():
            emit("STATUS", "NOT_RUNNING")
            return
        response = client.send_command("stop", {"projectRoot": str(project_root)})

    if is_error(response):
        if response["error"] == NOT_RUNNING_ERROR:
            emit("STATUS", "NOT_RUNNING")
            return
        emit_failure(response["error"])
        raise typer.Exit(code=EXIT_ERROR)

    emit("STATUS", "STOPPED")
    emit("PROJECT", project_root)


@app.command(name="stop-all")
def stop_all_command() -> None:
    """Stop all dashboards, keeping the daemon running."""
    with cli_errors():
        client = DaemonClient()
        if not client.is_daemon_running():
            emit("STATUS", "NOT_RUNNING")
            return
        response = client.send_command("stop-all")

    if is_error(response):
        emit_failure(response["error"])
        raise typer.Exit(code=EXIT_ERROR)
    emit("STATUS", "ALL_STOPPED")


@app.command(name="shutdown")
def shutdown_command() -> None:
    """Stop all dashboards and the daemon."""
    with cli_errors():
        client = DaemonClient()
        if not client.is_daemon_running():
            emit("STATUS", "NOT_RUNNING")
            return
        client.shutdown()
    emit("STATUS", "SHUTDOWN")


@app.command(name="daemon", hidden=True)
def daemon_command() -> None:
    """Run the daemon in the foreground (started by the client)."""
    from flow_daemon.ipc.server import run_daemon

    raise typer.Exit(code=run_daemon())


def main() -> None:
    app()


if __name__ == "__main__":
    main()
