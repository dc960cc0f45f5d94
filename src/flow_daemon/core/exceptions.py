"""Exception hierarchy for flow-daemon.

All errors raised by the daemon, its command handlers and the client derive
from FlowError. The supervisor's dispatch boundary converts any FlowError into
an ``{"error": message}`` response, so ``str(exc)`` is what the user sees.
"""

__all__ = [
    "ChildExitedError",
    "ConfigError",
    "ConflictError",
    "DaemonConnectionError",
    "DaemonStartupFailedError",
    "FlowError",
    "NotARepositoryError",
    "NotRunningError",
    "PortExhaustionError",
    "ProtocolError",
    "ShuttingDownError",
    "StartupError",
    "StartupTimeoutError",
    "ValidationError",
]


class FlowError(Exception):
    """Base exception for all flow-daemon errors."""


class ConfigError(FlowError):
    """Configuration file is unreadable or invalid."""


class ValidationError(FlowError):
    """Command arguments are missing or invalid."""


class NotARepositoryError(ValidationError):
    """Project root has no version-control metadata.

    Attributes:
        project_root: The rejected path.

    """

    def __init__(self, project_root: str) -> None:
        super().__init__(f"Not a git repository: {project_root}")
        self.project_root = project_root


class NotRunningError(FlowError):
    """No server is registered for the requested project."""

    def __init__(self, message: str = "Not running") -> None:
        super().__init__(message)


class PortExhaustionError(FlowError):
    """Every candidate port in the scan window is taken."""

    def __init__(self, message: str = "No free port found") -> None:
        super().__init__(message)


class ShuttingDownError(FlowError):
    """The daemon is stopping and no longer accepts new servers."""

    def __init__(self, message: str = "Daemon is shutting down") -> None:
        super().__init__(message)


class StartupError(FlowError):
    """A child server failed to reach readiness."""


class StartupTimeoutError(StartupError):
    """Child did not signal readiness within the startup bound.

    Attributes:
        timeout: Seconds waited before giving up.

    """

    def __init__(self, timeout: float) -> None:
        super().__init__("Server startup timed out")
        self.timeout = timeout


class ChildExitedError(StartupError):
    """Child exited before signaling readiness.

    Attributes:
        exit_code: Process exit code (negative for a signal).

    """

    def __init__(self, exit_code: int | None) -> None:
        super().__init__(f"Server exited with code {exit_code} before becoming ready")
        self.exit_code = exit_code


class ProtocolError(FlowError):
    """Malformed message on the IPC socket."""


class ConflictError(FlowError):
    """Another daemon instance already owns the socket."""


class DaemonStartupFailedError(FlowError):
    """Client could not bootstrap a daemon.

    Attributes:
        exit_code: Daemon exit code, or None if it timed out while alive.

    """

    def __init__(self, exit_code: int | None, message: str | None = None) -> None:
        if message is None:
            message = f"Daemon exited with code {exit_code}"
        super().__init__(message)
        self.exit_code = exit_code


class DaemonConnectionError(FlowError):
    """Client could not talk to the daemon socket."""
