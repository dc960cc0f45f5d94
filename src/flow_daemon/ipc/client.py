"""Client side of the daemon control socket.

Provides:
- is_daemon_running(): probe the socket
- send_command(): one request, one response
- ensure_daemon(): bootstrap a detached daemon if none answers
- shutdown(): shutdown that tolerates the daemon dropping the connection
"""

import logging
import os
import socket
import subprocess
import sys
from pathlib import Path
from typing import Any

from flow_daemon.core.config import FlowConfig, get_config
from flow_daemon.core.exceptions import (
    DaemonConnectionError,
    DaemonStartupFailedError,
    ProtocolError,
)
from flow_daemon.core.paths import FLOW_HOME_ENV
from flow_daemon.ipc.protocol import Request, decode_response, encode_message
from flow_daemon.ipc.server import probe_socket
from flow_daemon.manager.readiness import ReadyPipe

logger = logging.getLogger(__name__)

RECV_CHUNK = 65536
REAP_TIMEOUT = 1.0


def daemon_command() -> list[str]:
    """argv that starts a daemon with the current interpreter."""
    return [sys.executable, "-m", "flow_daemon", "daemon"]


class DaemonClient:
    """Talks to the daemon over its Unix socket.

    Attributes:
        config: Configuration naming the state directory.

    """

    def __init__(self, config: FlowConfig | None = None) -> None:
        self.config = config or get_config()

    @property
    def socket_path(self) -> Path:
        return self.config.paths.socket_path

    def is_daemon_running(self) -> bool:
        """True if a daemon accepts connections on the socket."""
        return self.socket_path.exists() and probe_socket(self.socket_path)

    def send_command(self, command: str, args: dict[str, Any] | None = None) -> Any:
        """Send one command and return the decoded response.

        The read is unbounded: the daemon always closes the connection after
        writing its single response line.

        Raises:
            DaemonConnectionError: If the socket cannot be reached.
            ProtocolError: If the response is not valid JSON.

        """
        request = Request(command=command, args=args or {})
        chunks: list[bytes] = []
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.connect(str(self.socket_path))
                sock.sendall(encode_message(request))
                while True:
                    chunk = sock.recv(RECV_CHUNK)
                    if not chunk:
                        break
                    chunks.append(chunk)
        except OSError as e:
            raise DaemonConnectionError(f"Cannot reach daemon at {self.socket_path}: {e}") from e

        logger.debug("Response to %s: %r", command, chunks)
        return decode_response(b"".join(chunks))

    def ensure_daemon(self) -> bool:
        """Make sure a daemon is reachable, starting one if needed.

        The new daemon runs in its own session so it outlives this process.
        Its readiness is awaited on a dedicated pipe, bounded by
        daemon_startup_timeout.

        Returns:
            True if a daemon was started, False if one was already running.

        Raises:
            DaemonStartupFailedError: If the daemon exits or times out before
                announcing readiness.

        """
        if self.is_daemon_running():
            return False

        paths = self.config.paths
        paths.ensure()

        pipe = ReadyPipe()
        env = {**os.environ, FLOW_HOME_ENV: str(paths.state_dir), **pipe.child_env()}
        command = daemon_command()
        logger.debug("Starting daemon: %s", " ".join(command))
        try:
            process = subprocess.Popen(
                command,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                pass_fds=pipe.pass_fds,
                start_new_session=True,
            )
        except OSError as e:
            pipe.close()
            raise DaemonStartupFailedError(None, f"Failed to start daemon: {e}") from e
        pipe.close_write_end()

        timeout = self.config.daemon_startup_timeout
        try:
            ready = pipe.wait_sync(timeout, has_exited=lambda: process.poll() is not None)
        except TimeoutError:
            raise DaemonStartupFailedError(None, "Daemon startup timed out") from None
        finally:
            pipe.close()

        if ready:
            logger.debug("Daemon ready (PID %d)", process.pid)
            return True

        try:
            exit_code = process.wait(timeout=REAP_TIMEOUT)
        except subprocess.TimeoutExpired:
            exit_code = None

        # Lost a startup race: another client's daemon owns the socket.
        if self.is_daemon_running():
            logger.debug("Daemon started concurrently by another client")
            return False
        raise DaemonStartupFailedError(exit_code)

    def shutdown(self) -> Any:
        """Ask the daemon to stop everything and exit.

        The daemon exits right after answering, so a reset connection or a
        missing response counts as success.
        """
        try:
            return self.send_command("shutdown")
        except (DaemonConnectionError, ProtocolError):
            logger.debug("Connection dropped during shutdown (expected)")
            return {}
