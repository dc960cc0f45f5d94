"""Tests for the daemon socket server, run in-process."""

import asyncio
import contextlib
import json
import os
import signal
import socket
import stat
import time
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import yaml

from flow_daemon.core.config import FlowConfig
from flow_daemon.core.exceptions import ConflictError
from flow_daemon.ipc.client import DaemonClient
from flow_daemon.ipc.server import DaemonServer, probe_socket, recover_stale_socket
from flow_daemon.manager.child_process import is_pid_alive


@contextlib.asynccontextmanager
async def running_server(config: FlowConfig) -> AsyncIterator[DaemonServer]:
    server = DaemonServer.from_config(config)
    await server.start()
    serve_task = asyncio.create_task(server.serve_until_shutdown())
    try:
        yield server
    finally:
        if not serve_task.done():
            await server.supervisor.shutdown()
        await asyncio.wait_for(serve_task, timeout=10.0)


async def _exchange(socket_path: Path, payload: bytes) -> bytes:
    """Send raw bytes and read until the daemon closes the connection."""
    reader, writer = await asyncio.open_unix_connection(str(socket_path))
    writer.write(payload)
    await writer.drain()
    data = await asyncio.wait_for(reader.read(), timeout=10.0)
    writer.close()
    await writer.wait_closed()
    return data


async def _request(socket_path: Path, command: str, args: dict | None = None):
    line = json.dumps({"command": command, "args": args or {}}).encode() + b"\n"
    return json.loads(await _exchange(socket_path, line))


class TestStaleSocket:
    """Recovery of socket files left behind by a dead daemon."""

    def test_missing_socket_is_fine(self, state_dir: Path) -> None:
        recover_stale_socket(state_dir / "daemon.sock")

    def test_orphaned_socket_is_removed(self, state_dir: Path) -> None:
        path = state_dir / "daemon.sock"
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.bind(str(path))
        assert path.exists()
        assert probe_socket(path) is False

        recover_stale_socket(path)

        assert not os.path.lexists(path)

    @pytest.mark.asyncio
    async def test_live_daemon_conflicts(self, config: FlowConfig) -> None:
        async with running_server(config):
            with pytest.raises(ConflictError, match="already running"):
                recover_stale_socket(config.paths.socket_path)

            second = DaemonServer.from_config(config)
            with pytest.raises(ConflictError):
                await second.start()


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_writes_pid_file_and_private_socket(self, config: FlowConfig) -> None:
        paths = config.paths
        async with running_server(config):
            assert paths.pid_path.read_text().strip() == str(os.getpid())
            assert stat.S_IMODE(paths.socket_path.stat().st_mode) == 0o600
            assert probe_socket(paths.socket_path)

    @pytest.mark.asyncio
    async def test_shutdown_command_removes_files(self, config: FlowConfig) -> None:
        paths = config.paths
        async with running_server(config) as server:
            response = await _request(paths.socket_path, "shutdown")
            await asyncio.wait_for(server.supervisor.shutdown_requested.wait(), timeout=5.0)

        assert response == {}
        assert not os.path.lexists(paths.socket_path)
        assert not paths.pid_path.exists()

    @pytest.mark.asyncio
    async def test_starts_over_stale_socket(self, config: FlowConfig) -> None:
        paths = config.paths
        paths.ensure()
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.bind(str(paths.socket_path))

        async with running_server(config):
            assert await _request(paths.socket_path, "ping") == {"pong": True, "pid": os.getpid()}


class TestRequests:
    """One request line, one response line, then EOF."""

    @pytest.mark.asyncio
    async def test_malformed_json(self, config: FlowConfig) -> None:
        async with running_server(config):
            data = await _exchange(config.paths.socket_path, b"this is not json\n")

        assert data == b'{"error":"Invalid JSON"}\n'

    @pytest.mark.asyncio
    async def test_empty_line(self, config: FlowConfig) -> None:
        async with running_server(config):
            data = await _exchange(config.paths.socket_path, b"\n")

        assert data == b'{"error":"Invalid JSON"}\n'

    @pytest.mark.asyncio
    async def test_missing_command(self, config: FlowConfig) -> None:
        async with running_server(config):
            data = await _exchange(config.paths.socket_path, b'{"args": {}}\n')

        assert json.loads(data) == {"error": "Invalid JSON"}

    @pytest.mark.asyncio
    async def test_unknown_command(self, config: FlowConfig) -> None:
        async with running_server(config):
            response = await _request(config.paths.socket_path, "frobnicate")

        assert response == {"error": "Unknown command: frobnicate"}

    @pytest.mark.asyncio
    async def test_unknown_command_with_non_object_args(self, config: FlowConfig) -> None:
        async with running_server(config):
            data = await _exchange(config.paths.socket_path, b'{"command":"foo","args":[1]}\n')

        assert json.loads(data) == {"error": "Unknown command: foo"}

    @pytest.mark.asyncio
    async def test_list_empty(self, config: FlowConfig) -> None:
        async with running_server(config):
            assert await _request(config.paths.socket_path, "list") == []

    @pytest.mark.asyncio
    async def test_open_list_stop(self, config: FlowConfig, make_repo) -> None:
        repo = str(make_repo("a"))
        socket_path = config.paths.socket_path
        async with running_server(config):
            opened = await _request(socket_path, "open", {"projectRoot": repo})
            listed = await _request(socket_path, "list")
            stopped = await _request(socket_path, "stop", {"projectRoot": repo})
            after = await _request(socket_path, "list")

        assert opened["started"] is True
        assert [e["projectRoot"] for e in listed] == [repo]
        assert stopped == {}
        assert after == []

    @pytest.mark.asyncio
    async def test_client_disconnect_does_not_cancel_open(
        self, config: FlowConfig, make_repo
    ) -> None:
        repo = str(make_repo("a"))
        socket_path = config.paths.socket_path
        async with running_server(config) as server:
            _, writer = await asyncio.open_unix_connection(str(socket_path))
            writer.write(json.dumps({"command": "open", "args": {"projectRoot": repo}}).encode())
            writer.write(b"\n")
            await writer.drain()
            writer.close()
            await writer.wait_closed()

            for _ in range(100):
                if len(server.supervisor.registry) == 1:
                    break
                await asyncio.sleep(0.1)

            listed = await _request(socket_path, "list")

        assert [e["projectRoot"] for e in listed] == [repo]


class TestClose:
    """Closing never blocks on idle clients or touches a successor's files."""

    @pytest.mark.asyncio
    async def test_idle_connection_does_not_delay_shutdown(self, config: FlowConfig) -> None:
        """GIVEN a client connected without sending a request
        WHEN shutdown arrives
        THEN the daemon finishes closing promptly and drops the idle client.
        """
        paths = config.paths
        async with running_server(config):
            idle_reader, idle_writer = await asyncio.open_unix_connection(str(paths.socket_path))
            await asyncio.sleep(0.1)

            assert await _request(paths.socket_path, "shutdown") == {}
            deadline = time.monotonic() + 5.0
            while paths.pid_path.exists() and time.monotonic() < deadline:
                await asyncio.sleep(0.05)

            assert not paths.pid_path.exists()
            assert not os.path.lexists(paths.socket_path)
            assert await asyncio.wait_for(idle_reader.read(), timeout=1.0) == b""
            idle_writer.close()

    @pytest.mark.asyncio
    async def test_replaced_socket_and_pid_file_are_kept(self, config: FlowConfig) -> None:
        paths = config.paths
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as successor:
            async with running_server(config) as server:
                paths.socket_path.unlink()
                successor.bind(str(paths.socket_path))
                successor.listen(1)
                paths.pid_path.write_text("999999\n")

                await server.supervisor.shutdown()

            assert probe_socket(paths.socket_path)
            assert paths.pid_path.read_text() == "999999\n"


def _write_config_file(config: FlowConfig) -> None:
    settings = {
        "base_port": config.base_port,
        "server_command": list(config.server_command),
        "shutdown_grace": 1.0,
    }
    config.paths.config_path.write_text(yaml.safe_dump(settings))


class TestSignals:
    """SIGTERM on a real daemon process."""

    def test_sigterm_stops_servers_and_removes_files(self, config: FlowConfig, make_repo) -> None:
        paths = config.paths
        paths.ensure()
        _write_config_file(config)
        client = DaemonClient(config)
        client.ensure_daemon()
        try:
            opened = client.send_command("open", {"projectRoot": str(make_repo("a"))})
            assert opened["started"] is True
            daemon_pid = int(paths.pid_path.read_text())

            os.kill(daemon_pid, signal.SIGTERM)
            deadline = time.monotonic() + 10.0
            while paths.pid_path.exists() and time.monotonic() < deadline:
                time.sleep(0.05)
        finally:
            if client.is_daemon_running():
                client.shutdown()

        assert not paths.pid_path.exists()
        assert not os.path.lexists(paths.socket_path)
        assert not is_pid_alive(opened["pid"])
