"""Daemon process: Unix socket server in front of the process supervisor.

Startup:
1. Ensure the state directory exists and open the log sink.
2. Stale-socket recovery: a socket file that accepts connections belongs to a
   live daemon (ConflictError); one that doesn't is an orphan and is removed.
3. Bind the socket, write the PID file, install SIGTERM/SIGINT handlers.
4. Announce readiness on the side channel, if the client gave us one.

Each connection carries one request line and gets one response line, then
the connection is closed. Commands run as their own tasks, so a client that
disconnects early does not cancel its command.
"""

import asyncio
import contextlib
import logging
import os
import signal
import socket
import sys
from pathlib import Path
from typing import IO, Any

from flow_daemon.core.config import FlowConfig, get_config
from flow_daemon.core.exceptions import ConflictError, FlowError, ProtocolError
from flow_daemon.core.log_setup import configure_daemon_logging, open_log_sink
from flow_daemon.ipc.protocol import (
    INVALID_JSON,
    MAX_LINE_BYTES,
    decode_request,
    encode_message,
    error_response,
)
from flow_daemon.manager.process_supervisor import ProcessSupervisor
from flow_daemon.manager.readiness import notify_ready

logger = logging.getLogger(__name__)

SOCKET_MODE = 0o600
PROBE_TIMEOUT = 1.0
REQUEST_READ_TIMEOUT = 30.0


def probe_socket(socket_path: Path, timeout: float = PROBE_TIMEOUT) -> bool:
    """Return True if something accepts connections on the socket path."""
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            sock.connect(str(socket_path))
            return True
    except OSError:
        return False


def _file_identity(path: Path) -> tuple[int, int]:
    st = os.lstat(path)
    return st.st_ino, st.st_ctime_ns


def recover_stale_socket(socket_path: Path) -> None:
    """Remove an orphaned socket file left by an unclean shutdown.

    Raises:
        ConflictError: If a live daemon answers on the socket.

    """
    if not os.path.lexists(socket_path):
        return
    if probe_socket(socket_path):
        raise ConflictError(f"Daemon is already running on {socket_path}")

    logger.info("Removing stale socket %s", socket_path)
    with contextlib.suppress(FileNotFoundError):
        socket_path.unlink()


class DaemonServer:
    """Accepts control connections and hands commands to the supervisor.

    Attributes:
        supervisor: Executes the commands.
        socket_path: Path of the listening Unix socket.
        pid_path: Path of the PID file.

    """

    def __init__(self, supervisor: ProcessSupervisor, socket_path: Path, pid_path: Path) -> None:
        self.supervisor = supervisor
        self.socket_path = socket_path
        self.pid_path = pid_path
        self._server: asyncio.Server | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._awaiting_request: set[asyncio.Task[Any]] = set()
        self._socket_identity: tuple[int, int] | None = None
        self._signal_task: asyncio.Task[None] | None = None

    @classmethod
    def from_config(cls, config: FlowConfig, log_sink: IO[bytes] | None = None) -> "DaemonServer":
        paths = config.paths
        supervisor = ProcessSupervisor(config, log_sink=log_sink)
        return cls(supervisor, paths.socket_path, paths.pid_path)

    async def start(self) -> None:
        """Bind the socket and write the PID file.

        Raises:
            ConflictError: If another daemon owns the socket.

        """
        self.socket_path.parent.mkdir(parents=True, exist_ok=True)
        recover_stale_socket(self.socket_path)

        self._server = await asyncio.start_unix_server(
            self._handle_connection,
            path=str(self.socket_path),
            limit=MAX_LINE_BYTES,
        )
        os.chmod(self.socket_path, SOCKET_MODE)
        self._socket_identity = _file_identity(self.socket_path)
        self.pid_path.write_text(f"{os.getpid()}\n")

        orphans = self.supervisor.registry.reconcile()
        if orphans:
            logger.warning("%d server(s) from a previous daemon are still running", len(orphans))

        logger.info("Daemon listening on %s (PID %d)", self.socket_path, os.getpid())

    def install_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self._on_signal, sig)

    async def serve_until_shutdown(self) -> None:
        """Serve until the shutdown command or a signal, then clean up."""
        try:
            await self.supervisor.shutdown_requested.wait()
        finally:
            await self.close()

    async def close(self) -> None:
        """Close the listener, let in-flight commands finish, remove our files.

        Connections that have not sent a request yet are dropped. The socket
        and PID file are only removed while they still belong to this
        process, so a successor daemon keeps its own.
        """
        if self._server is not None:
            self._server.close()
        self._remove_socket()

        current = asyncio.current_task()
        for task in list(self._awaiting_request):
            if task is not current:
                task.cancel()
        pending = [task for task in self._tasks if task is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        # A command finishing during close may have registered a server.
        await self.supervisor.stop_all()

        if self._server is not None:
            await self._server.wait_closed()
            self._server = None
        self._remove_pid_file()
        logger.info("Daemon stopped")

    def _remove_socket(self) -> None:
        try:
            identity = _file_identity(self.socket_path)
        except FileNotFoundError:
            return
        if identity != self._socket_identity:
            logger.info("Socket %s was replaced, leaving it in place", self.socket_path)
            return
        with contextlib.suppress(FileNotFoundError):
            self.socket_path.unlink()

    def _remove_pid_file(self) -> None:
        try:
            owner = self.pid_path.read_text().strip()
        except FileNotFoundError:
            return
        if owner != str(os.getpid()):
            logger.info("PID file %s belongs to PID %s, leaving it", self.pid_path, owner)
            return
        with contextlib.suppress(FileNotFoundError):
            self.pid_path.unlink()

    def _on_signal(self, sig: signal.Signals) -> None:
        if self._signal_task is not None:
            return
        logger.info("Received %s", sig.name)
        self._signal_task = asyncio.create_task(self.supervisor.shutdown())

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ) -> None:
        task = asyncio.create_task(self._serve_one(reader, writer))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        # Client disconnects cancel this coroutine, never the command.
        await asyncio.shield(task)

    async def _serve_one(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        try:
            response = await self._read_and_dispatch(reader)
            writer.write(encode_message(response))
            await writer.drain()
        except TimeoutError:
            logger.debug("No request within %.0fs, closing connection", REQUEST_READ_TIMEOUT)
        except (ConnectionError, BrokenPipeError):
            logger.debug("Client went away before the response was written")
        finally:
            writer.close()
            with contextlib.suppress(ConnectionError, BrokenPipeError):
                await writer.wait_closed()

    async def _read_and_dispatch(self, reader: asyncio.StreamReader) -> Any:
        task = asyncio.current_task()
        self._awaiting_request.add(task)
        try:
            line = await asyncio.wait_for(reader.readline(), timeout=REQUEST_READ_TIMEOUT)
        except ValueError:
            # Line longer than MAX_LINE_BYTES.
            return error_response(INVALID_JSON)
        finally:
            self._awaiting_request.discard(task)
        if not line.strip():
            return error_response(INVALID_JSON)

        try:
            request = decode_request(line)
        except ProtocolError as e:
            return error_response(str(e))

        logger.debug("Command %s %s", request.command, request.args)
        return await self.supervisor.dispatch(request.command, request.args)


async def _run(config: FlowConfig, log_sink: IO[bytes]) -> int:
    server = DaemonServer.from_config(config, log_sink=log_sink)
    try:
        await server.start()
    except ConflictError as e:
        logger.error("%s", e)
        print(f"Error: {e}", file=sys.stderr)
        return 1

    server.install_signal_handlers()
    notify_ready(pid=os.getpid())
    await server.serve_until_shutdown()
    return 0


def run_daemon(config: FlowConfig | None = None) -> int:
    """Daemon process entry point.

    Returns:
        Process exit code: 0 after a clean shutdown, 1 on startup failure.

    """
    config = config or get_config()
    paths = config.paths
    paths.ensure()

    handler = configure_daemon_logging(paths.log_path)
    log_sink = open_log_sink(paths.log_path)
    try:
        return asyncio.run(_run(config, log_sink))
    except FlowError as e:
        logger.error("Daemon failed to start: %s", e)
        print(f"Daemon failed to start: {e}", file=sys.stderr)
        return 1
    except OSError as e:
        logger.exception("Daemon failed to start")
        print(f"Daemon failed to start: {e}", file=sys.stderr)
        return 1
    finally:
        log_sink.close()
        logging.getLogger().removeHandler(handler)
        handler.close()


if __name__ == "__main__":
    sys.exit(run_daemon())
