"""Handle for one spawned dashboard server process.

The daemon treats a dashboard server as an opaque child with a narrow
contract:
- it receives PROJECT_ROOT, PORT and HOST in its environment;
- it writes one ready message on the readiness channel once listening;
- it exits on SIGTERM within the shutdown grace period.

Anything the child prints goes to the daemon log sink.
"""

import asyncio
import logging
import os
import signal
from collections.abc import Callable, Sequence
from pathlib import Path
from typing import IO, Any

from flow_daemon.core.config import DEFAULT_HOST, DEFAULT_SHUTDOWN_GRACE, DEFAULT_STARTUP_TIMEOUT
from flow_daemon.core.exceptions import ChildExitedError, StartupError, StartupTimeoutError
from flow_daemon.manager.readiness import ReadyPipe

logger = logging.getLogger(__name__)

ExitCallback = Callable[["ChildProcess", int], Any]


def is_pid_alive(pid: int) -> bool:
    """Check if a PID is still running.

    Sends signal 0, which tests for existence without affecting the process.

    Args:
        pid: Process ID to check.

    Returns:
        True if process is running.

    """
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    except OSError:
        return False
    return True


def server_url(port: int) -> str:
    return f"http://localhost:{port}"


class ChildProcess:
    """One running dashboard server.

    Created via ChildProcess.spawn(), which only returns once the server has
    signaled readiness. The exit of the process is observed by a background
    task; registered exit callbacks run once with the exit code.

    Attributes:
        project_root: Project the server serves.
        port: Port the server was told to bind.

    """

    def __init__(
        self,
        project_root: Path,
        port: int,
        process: asyncio.subprocess.Process,
    ) -> None:
        self.project_root = project_root
        self.port = port
        self._process = process
        self._exit_callbacks: list[ExitCallback] = []
        self._exit_task: asyncio.Task[int] = asyncio.create_task(self._watch_exit())

    @classmethod
    async def spawn(
        cls,
        project_root: Path,
        port: int,
        *,
        command: Sequence[str],
        host: str = DEFAULT_HOST,
        log_sink: IO[bytes] | None = None,
        startup_timeout: float = DEFAULT_STARTUP_TIMEOUT,
    ) -> "ChildProcess":
        """Launch a server and wait until it is ready.

        Args:
            project_root: Project directory, also the child's cwd.
            port: Port assigned to the server.
            command: argv of the server executable.
            host: Bind host passed to the server.
            log_sink: File receiving the child's stdout and stderr.
            startup_timeout: Seconds to wait for the ready message.

        Returns:
            Handle of the ready server.

        Raises:
            StartupError: If the executable cannot be launched.
            ChildExitedError: If the server exits before becoming ready.
            StartupTimeoutError: If no ready message arrives in time; the
                server is killed.

        """
        pipe = ReadyPipe()
        env = {
            **os.environ,
            "PROJECT_ROOT": str(project_root),
            "PORT": str(port),
            "HOST": host,
            **pipe.child_env(),
        }
        output = log_sink if log_sink is not None else asyncio.subprocess.DEVNULL

        logger.info("Spawning server for %s on port %d: %s", project_root, port, " ".join(command))
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=project_root,
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=output,
                stderr=output,
                pass_fds=pipe.pass_fds,
            )
        except OSError as e:
            pipe.close()
            raise StartupError(f"Failed to spawn server: {e}") from e
        pipe.close_write_end()

        child = cls(project_root, port, process)
        try:
            await child._await_ready(pipe, startup_timeout)
        except BaseException:
            await child.kill()
            raise
        finally:
            pipe.close()
        return child

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def url(self) -> str:
        return server_url(self.port)

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def is_alive(self) -> bool:
        """Liveness probe: not reaped and the PID still exists."""
        return self._process.returncode is None and is_pid_alive(self.pid)

    def add_exit_callback(self, callback: ExitCallback) -> None:
        """Run callback(child, exit_code) once the process exits."""
        if self._exit_task.done():
            self._run_callback(callback, self._exit_task.result())
        else:
            self._exit_callbacks.append(callback)

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        return await asyncio.shield(self._exit_task)

    async def terminate(self, grace: float = DEFAULT_SHUTDOWN_GRACE) -> int:
        """Stop the server: SIGTERM, then SIGKILL after the grace period.

        Always completes, even for children that ignore SIGTERM.

        Args:
            grace: Seconds between SIGTERM and SIGKILL.

        Returns:
            The exit code.

        """
        if self._exit_task.done():
            return self._exit_task.result()

        logger.info("Sending SIGTERM to server for %s (PID %d)", self.project_root, self.pid)
        self._send_signal(signal.SIGTERM)
        try:
            return await asyncio.wait_for(asyncio.shield(self._exit_task), timeout=grace)
        except TimeoutError:
            logger.warning(
                "Server for %s (PID %d) ignored SIGTERM for %.1fs, sending SIGKILL",
                self.project_root,
                self.pid,
                grace,
            )
        return await self.kill()

    async def kill(self) -> int:
        """SIGKILL the server and wait for it to be reaped."""
        if not self._exit_task.done():
            self._send_signal(signal.SIGKILL)
        return await asyncio.shield(self._exit_task)

    def _send_signal(self, sig: signal.Signals) -> None:
        try:
            self._process.send_signal(sig)
        except ProcessLookupError:
            logger.debug("PID %d already gone before %s", self.pid, sig.name)

    async def _await_ready(self, pipe: ReadyPipe, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        ready_task = asyncio.create_task(pipe.wait())
        try:
            done, _ = await asyncio.wait(
                {ready_task, self._exit_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if ready_task in done and ready_task.result():
                logger.debug("Server for %s signaled ready", self.project_root)
                return

            if ready_task in done:
                # Channel closed without a ready message; give the exit a chance to land.
                remaining = max(deadline - loop.time(), 0.0)
                await asyncio.wait({self._exit_task}, timeout=remaining)

            if self._exit_task.done():
                raise ChildExitedError(self._exit_task.result())
        finally:
            if not ready_task.done():
                ready_task.cancel()
                await asyncio.gather(ready_task, return_exceptions=True)

        logger.warning("Server for %s not ready after %.1fs", self.project_root, timeout)
        raise StartupTimeoutError(timeout)

    async def _watch_exit(self) -> int:
        code = await self._process.wait()
        callbacks, self._exit_callbacks = self._exit_callbacks, []
        for callback in callbacks:
            self._run_callback(callback, code)
        return code

    def _run_callback(self, callback: ExitCallback, code: int) -> None:
        try:
            callback(self, code)
        except Exception:
            logger.exception("Exit callback failed for %s", self.project_root)

    def __repr__(self) -> str:
        return f"ChildProcess(project_root={self.project_root!s}, port={self.port}, pid={self.pid})"
