"""Out-of-band readiness signaling between a spawned process and its parent.

The parent opens a pipe and hands the write end to the child, naming the
descriptor in the FLOW_READY_FD environment variable. Once the child can
serve (its listener is bound), it writes a single JSON line
``{"type": "ready"}`` to that descriptor and closes it. The parent reads the
other end: a ready line means success, EOF means the child went away first.

The same channel is used twice:
- the daemon waits on it for each dashboard server it spawns;
- the client waits on it for a freshly bootstrapped daemon.
"""

import asyncio
import json
import logging
import os
import select
import time
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

READY_FD_ENV = "FLOW_READY_FD"
READY_TYPE = "ready"

_SELECT_INTERVAL = 0.1


def notify_ready(**extra: Any) -> bool:
    """Announce readiness to the parent process.

    Called by the child once it is able to serve. Safe to call when the
    process was not started with a readiness channel.

    Args:
        **extra: Additional fields to include in the message.

    Returns:
        True if the message was written, False if no channel is configured.

    """
    raw_fd = os.environ.pop(READY_FD_ENV, None)
    if not raw_fd:
        return False

    fd = int(raw_fd)
    payload = json.dumps({"type": READY_TYPE, **extra}) + "\n"
    try:
        os.write(fd, payload.encode("utf-8"))
    except OSError:
        logger.warning("Readiness channel fd %d is not writable", fd)
        return False
    finally:
        try:
            os.close(fd)
        except OSError:
            pass
    return True


def is_ready_message(line: bytes) -> bool:
    """Return True if a side-channel line is a ready notification."""
    try:
        message = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return False
    return isinstance(message, dict) and message.get("type") == READY_TYPE


class ReadyPipe:
    """Parent side of the readiness channel.

    Usage:
        pipe = ReadyPipe()
        spawn(..., env={**env, **pipe.child_env()}, pass_fds=pipe.pass_fds)
        pipe.close_write_end()
        ready = await pipe.wait()

    """

    def __init__(self) -> None:
        self.read_fd, self.write_fd = os.pipe()
        self._read_closed = False
        self._write_closed = False

    @property
    def pass_fds(self) -> tuple[int, ...]:
        return (self.write_fd,)

    def child_env(self) -> dict[str, str]:
        return {READY_FD_ENV: str(self.write_fd)}

    def close_write_end(self) -> None:
        """Drop the parent's copy of the write end so child exit yields EOF."""
        if not self._write_closed:
            self._write_closed = True
            os.close(self.write_fd)

    def close(self) -> None:
        self.close_write_end()
        if not self._read_closed:
            self._read_closed = True
            os.close(self.read_fd)

    async def wait(self) -> bool:
        """Wait for the ready line without blocking the event loop.

        Returns:
            True on a ready message, False on EOF.

        """
        loop = asyncio.get_running_loop()
        reader = asyncio.StreamReader()
        pipe_file = os.fdopen(self.read_fd, "rb", buffering=0)
        # The transport owns the descriptor from here on.
        self._read_closed = True
        transport, _ = await loop.connect_read_pipe(
            lambda: asyncio.StreamReaderProtocol(reader), pipe_file
        )
        try:
            while True:
                line = await reader.readline()
                if not line:
                    return False
                if is_ready_message(line):
                    return True
                logger.debug("Ignoring side-channel message: %r", line)
        finally:
            transport.close()

    def wait_sync(
        self,
        timeout: float,
        has_exited: Callable[[], bool] | None = None,
    ) -> bool:
        """Blocking variant of wait() for synchronous callers.

        Args:
            timeout: Seconds to wait before giving up.
            has_exited: Optional probe; returning True ends the wait early.

        Returns:
            True on a ready message, False on EOF or child exit.

        Raises:
            TimeoutError: If nothing arrives within timeout.

        """
        deadline = time.monotonic() + timeout
        buffer = b""
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"No readiness signal within {timeout:.1f}s")

            readable, _, _ = select.select(
                [self.read_fd], [], [], min(remaining, _SELECT_INTERVAL)
            )
            if not readable:
                if has_exited is not None and has_exited():
                    return False
                continue

            chunk = os.read(self.read_fd, 4096)
            if not chunk:
                return False
            buffer += chunk
            while b"\n" in buffer:
                line, buffer = buffer.split(b"\n", 1)
                if is_ready_message(line):
                    return True
