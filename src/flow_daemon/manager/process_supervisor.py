"""Process supervisor: executes control commands against running servers.

Per-project lifecycle:
    absent → (open) → starting → (ready) → running → (stop | exit) → absent

Provides:
- open: validate, allocate a port, spawn, await readiness, register
- list: liveness-checked view of running servers
- stop / stop-all: SIGTERM with SIGKILL escalation
- shutdown: stop everything and ask the IPC server to exit
- crash eviction when a server dies on its own

All registry mutations run on the daemon's event loop. ``open`` additionally
holds the supervisor lock across allocate → spawn → register, so two opens
never receive the same port and two opens of one root never both start a
server.
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import IO, Any

from flow_daemon.core.config import FlowConfig
from flow_daemon.core.exceptions import (
    ChildExitedError,
    FlowError,
    NotARepositoryError,
    NotRunningError,
    ShuttingDownError,
    ValidationError,
)
from flow_daemon.manager.child_process import ChildProcess
from flow_daemon.manager.ports import PortAllocator, is_port_available
from flow_daemon.manager.registry import ProcessRegistry, ProjectEntry

logger = logging.getLogger(__name__)

REPOSITORY_MARKER = ".git"

Handler = Callable[[dict[str, Any]], Awaitable[Any]]


def normalize_root(raw: Any) -> Path:
    """Turn a projectRoot argument into an absolute, normalized path.

    Raises:
        ValidationError: If the argument is missing or not a string.

    """
    if not isinstance(raw, (str, os.PathLike)) or not str(raw):
        raise ValidationError("Missing projectRoot")
    return Path(os.path.abspath(os.path.expanduser(raw)))


class ProcessSupervisor:
    """Owns the registry and the port allocator and runs commands.

    One instance per daemon process; it is passed explicitly to the IPC
    server rather than kept in module state, so tests can run several.

    Attributes:
        config: Daemon configuration.
        registry: Running servers keyed by project root.
        allocator: Port allocator.
        shutdown_requested: Set once the shutdown command completes.

    """

    def __init__(
        self,
        config: FlowConfig,
        registry: ProcessRegistry | None = None,
        allocator: PortAllocator | None = None,
        log_sink: IO[bytes] | None = None,
    ) -> None:
        self.config = config
        self.registry = registry or ProcessRegistry(config.paths.state_path)
        self.allocator = allocator or PortAllocator(
            base_port=config.base_port,
            max_retries=config.max_port_retries,
            scan_limit=config.port_scan_limit,
            host=config.host,
        )
        self.log_sink = log_sink
        self.shutdown_requested = asyncio.Event()
        self._lock = asyncio.Lock()
        self._closing = False
        self._stopping: set[Path] = set()
        self._handlers: dict[str, Handler] = {
            "open": self._handle_open,
            "list": self._handle_list,
            "stop": self._handle_stop,
            "stop-all": self._handle_stop_all,
            "shutdown": self._handle_shutdown,
            "ping": self._handle_ping,
        }

    @property
    def commands(self) -> list[str]:
        return sorted(self._handlers)

    async def dispatch(self, command: str, args: dict[str, Any] | None = None) -> Any:
        """Run one command and build its response.

        Errors never escape: they are converted to ``{"error": message}``.

        Args:
            command: Command name.
            args: Command payload.

        Returns:
            JSON-serializable response.

        """
        handler = self._handlers.get(command)
        if handler is None:
            return {"error": f"Unknown command: {command}"}

        try:
            return await handler(args or {})
        except FlowError as e:
            logger.warning("Command %s failed: %s", command, e)
            return {"error": str(e)}
        except Exception as e:
            logger.exception("Command %s raised unexpectedly", command)
            return {"error": str(e) or type(e).__name__}

    async def open(self, project_root: str | Path) -> dict[str, Any]:
        """Start the server for a project, or return the running one.

        Args:
            project_root: Project directory.

        Returns:
            ``{port, pid, url, started}``; started is False when an already
            running server was returned.

        Raises:
            ValidationError: If the root is missing or not a repository.
            ShuttingDownError: If shutdown has begun.
            PortExhaustionError: If no port is free.
            StartupError: If the server fails to become ready.

        """
        root = normalize_root(project_root)
        if not (root / REPOSITORY_MARKER).exists():
            raise NotARepositoryError(str(root))
        if self._closing:
            raise ShuttingDownError()

        async with self._lock:
            if self._closing:
                raise ShuttingDownError()
            entry = self.registry.get_alive(root)
            if entry is not None:
                logger.debug("Server for %s already running on port %d", root, entry.port)
                return self._open_response(entry, started=False)

            child = await self._spawn(root)
            entry = ProjectEntry.from_child(child)
            try:
                self.registry.add(entry)
            except ValueError:
                await child.kill()
                raise
            child.add_exit_callback(self._on_child_exit)
            return self._open_response(entry, started=True)

    def list_servers(self) -> list[dict[str, Any]]:
        """Return running servers, evicting any that died."""
        self.registry.prune_dead()
        return [entry.to_summary() for entry in self.registry]

    async def stop(self, project_root: str | Path) -> dict[str, Any]:
        """Stop one project's server.

        Resolves once the process has exited; SIGKILL after the grace period
        guarantees completion.

        Raises:
            NotRunningError: If no server is registered for the root.

        """
        root = normalize_root(project_root)
        entry = self.registry.get(root)
        if entry is None:
            raise NotRunningError()

        self._stopping.add(root)
        try:
            code = await entry.handle.terminate(self.config.shutdown_grace)
        finally:
            self._stopping.discard(root)

        self.registry.remove(root, entry.handle)
        logger.info("Stopped server for %s (exit code %s)", root, code)
        return {}

    async def stop_all(self) -> dict[str, Any]:
        """Stop every server concurrently and wait for all of them."""
        roots = [entry.project_root for entry in self.registry]
        if not roots:
            return {}

        logger.info("Stopping %d server(s)", len(roots))
        results = await asyncio.gather(*(self.stop(root) for root in roots), return_exceptions=True)
        for root, result in zip(roots, results, strict=True):
            if isinstance(result, NotRunningError):
                continue
            if isinstance(result, BaseException):
                logger.error("Failed to stop server for %s: %s", root, result)
        return {}

    async def shutdown(self) -> dict[str, Any]:
        """Stop everything and signal the daemon to exit.

        New opens are refused from here on; an open already holding the lock
        registers first and is then stopped with the rest.
        """
        logger.info("Shutdown requested")
        self._closing = True
        async with self._lock:
            await self.stop_all()
        self.shutdown_requested.set()
        return {}

    async def _spawn(self, root: Path) -> ChildProcess:
        claimed = self.registry.claimed_ports()
        port = self.allocator.allocate(claimed)
        try:
            return await self._spawn_on(root, port)
        except ChildExitedError:
            if is_port_available(port, self.allocator.host):
                raise
            # Someone bound the port between the probe and the server's bind.
            logger.warning("Port %d was taken before the server for %s bound it", port, root)

        port = self.allocator.allocate(claimed | {port})
        return await self._spawn_on(root, port)

    async def _spawn_on(self, root: Path, port: int) -> ChildProcess:
        return await ChildProcess.spawn(
            root,
            port,
            command=self.config.server_command,
            host=self.config.host,
            log_sink=self.log_sink,
            startup_timeout=self.config.startup_timeout,
        )

    def _on_child_exit(self, child: ChildProcess, code: int) -> None:
        removed = self.registry.remove(child.project_root, child)
        if removed is not None and child.project_root not in self._stopping:
            logger.warning("Server for %s exited (code %d)", child.project_root, code)

    @staticmethod
    def _open_response(entry: ProjectEntry, *, started: bool) -> dict[str, Any]:
        return {"port": entry.port, "pid": entry.pid, "url": entry.url, "started": started}

    async def _handle_open(self, args: dict[str, Any]) -> dict[str, Any]:
        return await self.open(args.get("projectRoot"))

    async def _handle_list(self, args: dict[str, Any]) -> list[dict[str, Any]]:
        return self.list_servers()

    async def _handle_stop(self, args: dict[str, Any]) -> dict[str, Any]:
        return await self.stop(args.get("projectRoot"))

    async def _handle_stop_all(self, args: dict[str, Any]) -> dict[str, Any]:
        return await self.stop_all()

    async def _handle_shutdown(self, args: dict[str, Any]) -> dict[str, Any]:
        return await self.shutdown()

    async def _handle_ping(self, args: dict[str, Any]) -> dict[str, Any]:
        return {"pong": True, "pid": os.getpid()}
