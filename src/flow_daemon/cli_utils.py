"""Shared CLI helpers: exit codes, console and line-oriented output."""

import contextlib
import logging
from collections.abc import Iterator
from typing import Any

import click
import typer
from rich.console import Console

from flow_daemon.core.exceptions import FlowError

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_ERROR = 1

# Output is parsed by scripts: no markup, no highlighting, no wrapping.
console = Console(highlight=False, soft_wrap=True)
err_console = Console(stderr=True, highlight=False, soft_wrap=True)


def emit(key: str, value: Any, indent: int = 0) -> None:
    """Print one ``KEY: VALUE`` line."""
    console.print(f"{' ' * indent}{key}: {value}", markup=False)


def emit_failure(message: str) -> None:
    emit("STATUS", "FAILED")
    emit("ERROR", message)


@contextlib.contextmanager
def cli_errors() -> Iterator[None]:
    """Turn exceptions into ``Error: <message>`` and exit code 1.

    Expected conditions (FlowError) are reported without a traceback;
    anything else is logged with one at debug level.
    """
    try:
        yield
    except (click.exceptions.Exit, click.exceptions.Abort):
        raise
    except FlowError as e:
        err_console.print(f"Error: {e}", markup=False)
        raise typer.Exit(code=EXIT_ERROR) from None
    except Exception as e:
        logger.debug("Unexpected error", exc_info=True)
        err_console.print(f"Error: {e}", markup=False)
        raise typer.Exit(code=EXIT_ERROR) from None
