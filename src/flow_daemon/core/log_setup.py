"""Logging setup for the daemon process and the CLI."""

import logging
from pathlib import Path
from typing import IO

from rich.console import Console
from rich.logging import RichHandler

DAEMON_LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"
DAEMON_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def open_log_sink(log_path: Path) -> IO[bytes]:
    """Open the shared append-only log file.

    The same file object is handed to child servers as stdout/stderr, so
    every writer appends through O_APPEND and interleaved lines stay intact.
    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    return log_path.open("ab", buffering=0)


def configure_daemon_logging(log_path: Path, level: int = logging.INFO) -> logging.Handler:
    """Route all daemon logging to the log file.

    Args:
        log_path: Path to daemon.log.
        level: Root log level.

    Returns:
        The installed handler, so callers can remove it again.

    """
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter(DAEMON_LOG_FORMAT, DAEMON_DATE_FORMAT))

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level)
    return handler


def configure_cli_logging(verbose: bool = False) -> None:
    """Log CLI diagnostics to stderr through rich, quiet unless verbose."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
