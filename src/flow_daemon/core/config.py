"""Daemon configuration.

Defaults cover the usual single-user setup; any field can be overridden in
``<state_dir>/config.yaml``:

    base_port: 3420
    shutdown_grace: 5
    server_command: ["flow-dashboard"]

The loaded config is cached as a module-level singleton so the CLI and the
daemon entry point resolve the same values. Tests reset it via _reset_config().
"""

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from flow_daemon.core.exceptions import ConfigError
from flow_daemon.core.paths import FlowPaths, default_state_dir

logger = logging.getLogger(__name__)

DEFAULT_BASE_PORT = 3420
DEFAULT_MAX_PORT_RETRIES = 5
DEFAULT_PORT_SCAN_LIMIT = 100
DEFAULT_HOST = "127.0.0.1"
DEFAULT_STARTUP_TIMEOUT = 10.0
DEFAULT_SHUTDOWN_GRACE = 5.0
DEFAULT_DAEMON_STARTUP_TIMEOUT = 10.0
DEFAULT_SERVER_COMMAND = ("flow-dashboard",)


class FlowConfig(BaseModel):
    """Settings shared by the daemon and the client.

    Attributes:
        state_dir: Directory holding socket, PID file, log and snapshot.
        base_port: First port offered to a child server.
        max_port_retries: Sequential candidates probed before the wide scan.
        port_scan_limit: Size of the port window above base_port.
        host: Bind host handed to child servers.
        startup_timeout: Seconds a child has to signal readiness.
        shutdown_grace: Seconds between SIGTERM and SIGKILL on stop.
        daemon_startup_timeout: Seconds the client waits for a new daemon.
        server_command: argv used to launch a dashboard server.

    """

    model_config = ConfigDict(frozen=True)

    state_dir: Path = Field(default_factory=default_state_dir)
    base_port: int = Field(default=DEFAULT_BASE_PORT, ge=1, le=65535)
    max_port_retries: int = Field(default=DEFAULT_MAX_PORT_RETRIES, ge=1)
    port_scan_limit: int = Field(default=DEFAULT_PORT_SCAN_LIMIT, ge=1)
    host: str = DEFAULT_HOST
    startup_timeout: float = Field(default=DEFAULT_STARTUP_TIMEOUT, gt=0)
    shutdown_grace: float = Field(default=DEFAULT_SHUTDOWN_GRACE, gt=0)
    daemon_startup_timeout: float = Field(default=DEFAULT_DAEMON_STARTUP_TIMEOUT, gt=0)
    server_command: list[str] = Field(default_factory=lambda: list(DEFAULT_SERVER_COMMAND))

    @field_validator("server_command")
    @classmethod
    def _command_not_empty(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("server_command must name an executable")
        return value

    @field_validator("state_dir")
    @classmethod
    def _absolute_state_dir(cls, value: Path) -> Path:
        return value.expanduser().resolve()

    @property
    def paths(self) -> FlowPaths:
        return FlowPaths(self.state_dir)


_config: FlowConfig | None = None


def _read_config_file(config_path: Path) -> dict[str, Any]:
    try:
        with config_path.open() as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read {config_path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"{config_path} must contain a mapping")
    return data


def load_config(
    overrides: dict[str, Any] | None = None,
    state_dir: Path | None = None,
) -> FlowConfig:
    """Build the config from defaults, config.yaml and explicit overrides.

    Args:
        overrides: Values taking precedence over the file.
        state_dir: State directory to use; defaults to FLOW_HOME or ~/.flow.

    Returns:
        The loaded config, also stored as the process-wide singleton.

    Raises:
        ConfigError: If config.yaml is unreadable or fails validation.

    """
    global _config

    resolved_dir = (state_dir or default_state_dir()).expanduser().resolve()
    data: dict[str, Any] = {}

    config_path = FlowPaths(resolved_dir).config_path
    if config_path.exists():
        data.update(_read_config_file(config_path))
        logger.debug("Loaded config overrides from %s", config_path)

    data.update(overrides or {})
    data["state_dir"] = resolved_dir

    try:
        _config = FlowConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e
    return _config


def get_config() -> FlowConfig:
    """Return the loaded config, loading defaults on first use."""
    if _config is None:
        return load_config()
    return _config


def _reset_config() -> None:
    """Drop the cached config (tests only)."""
    global _config
    _config = None
