"""State directory layout for flow-daemon.

Everything the daemon owns on disk lives under one per-user directory
(``~/.flow`` unless ``FLOW_HOME`` points elsewhere):

    daemon.sock  - Unix domain socket for IPC
    daemon.pid   - PID file of the running daemon
    daemon.log   - daemon log, shared with child server output
    state.json   - advisory snapshot of running servers
    config.yaml  - optional configuration overrides
"""

import os
from dataclasses import dataclass
from pathlib import Path

FLOW_HOME_ENV = "FLOW_HOME"
DEFAULT_STATE_DIR = Path.home() / ".flow"

SOCKET_FILE = "daemon.sock"
PID_FILE = "daemon.pid"
LOG_FILE = "daemon.log"
STATE_FILE = "state.json"
CONFIG_FILE = "config.yaml"


def default_state_dir() -> Path:
    """Return the state directory, honoring the FLOW_HOME override."""
    override = os.environ.get(FLOW_HOME_ENV)
    if override:
        return Path(override).expanduser().resolve()
    return DEFAULT_STATE_DIR


@dataclass(frozen=True)
class FlowPaths:
    """Resolved file locations inside one state directory."""

    state_dir: Path

    @property
    def socket_path(self) -> Path:
        return self.state_dir / SOCKET_FILE

    @property
    def pid_path(self) -> Path:
        return self.state_dir / PID_FILE

    @property
    def log_path(self) -> Path:
        return self.state_dir / LOG_FILE

    @property
    def state_path(self) -> Path:
        return self.state_dir / STATE_FILE

    @property
    def config_path(self) -> Path:
        return self.state_dir / CONFIG_FILE

    def ensure(self) -> None:
        """Create the state directory (owner-only) if missing."""
        self.state_dir.mkdir(parents=True, exist_ok=True, mode=0o700)
