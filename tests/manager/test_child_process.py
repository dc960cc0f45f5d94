"""Tests for ChildProcess: spawn, readiness, liveness and termination.

These run the fake server from tests/fixtures as a real child process.
"""

import json
import os
import signal
import time
from pathlib import Path

import pytest

from flow_daemon.core.exceptions import ChildExitedError, StartupError, StartupTimeoutError
from flow_daemon.manager.child_process import ChildProcess, is_pid_alive, server_url


async def _spawn(repo: Path, port: int, command: list[str], **kwargs) -> ChildProcess:
    kwargs.setdefault("startup_timeout", 5.0)
    return await ChildProcess.spawn(repo, port, command=command, **kwargs)


def _raising(exc: Exception):
    def kill(pid: int, sig: int) -> None:
        raise exc

    return kill


class TestIsPidAlive:
    def test_own_pid_is_alive(self) -> None:
        assert is_pid_alive(os.getpid()) is True

    def test_missing_pid(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(os, "kill", _raising(ProcessLookupError()))
        assert is_pid_alive(999999) is False

    def test_permission_error_means_alive(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(os, "kill", _raising(PermissionError()))
        assert is_pid_alive(1) is True


class TestSpawn:
    """Readiness handshake."""

    @pytest.mark.asyncio
    async def test_spawn_waits_for_ready(
        self, make_repo, base_port: int, fake_server_command: list[str]
    ) -> None:
        repo = make_repo("a")

        child = await _spawn(repo, base_port, fake_server_command)
        try:
            assert child.is_alive()
            assert child.port == base_port
            assert child.url == f"http://localhost:{base_port}"
            assert child.returncode is None
        finally:
            await child.terminate(grace=1.0)

    @pytest.mark.asyncio
    async def test_passes_contract_environment(
        self,
        make_repo,
        base_port: int,
        fake_server_command: list[str],
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        repo = make_repo("env")
        env_file = tmp_path / "env.json"
        monkeypatch.setenv("FAKE_SERVER_MODE", "record-env")
        monkeypatch.setenv("FAKE_SERVER_ENV_FILE", str(env_file))

        child = await _spawn(repo, base_port, fake_server_command, host="127.0.0.1")
        try:
            recorded = json.loads(env_file.read_text())
        finally:
            await child.terminate(grace=1.0)

        assert recorded["PROJECT_ROOT"] == str(repo)
        assert recorded["PORT"] == str(base_port)
        assert recorded["HOST"] == "127.0.0.1"
        assert Path(recorded["cwd"]).resolve() == repo

    @pytest.mark.asyncio
    async def test_exit_before_ready_raises_child_exited(
        self,
        make_repo,
        base_port: int,
        fake_server_command: list[str],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("FAKE_SERVER_MODE", "exit-early")

        with pytest.raises(ChildExitedError) as exc_info:
            await _spawn(make_repo("early"), base_port, fake_server_command)

        assert exc_info.value.exit_code == 3

    @pytest.mark.asyncio
    async def test_no_ready_signal_times_out_and_kills(
        self,
        make_repo,
        base_port: int,
        fake_server_command: list[str],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        monkeypatch.setenv("FAKE_SERVER_MODE", "never-ready")
        spawned: list[ChildProcess] = []
        original_init = ChildProcess.__init__

        def capture(self, *args, **kwargs):
            original_init(self, *args, **kwargs)
            spawned.append(self)

        monkeypatch.setattr(ChildProcess, "__init__", capture)

        with pytest.raises(StartupTimeoutError):
            await _spawn(make_repo("slow"), base_port, fake_server_command, startup_timeout=0.5)

        assert len(spawned) == 1
        assert spawned[0].returncode is not None
        assert not spawned[0].is_alive()

    @pytest.mark.asyncio
    async def test_missing_executable_raises_startup_error(self, make_repo, base_port: int) -> None:
        with pytest.raises(StartupError, match="Failed to spawn"):
            await _spawn(make_repo("missing"), base_port, ["/nonexistent/flow-dashboard"])


class TestTerminate:
    """Graceful stop with SIGKILL escalation."""

    @pytest.mark.asyncio
    async def test_graceful_terminate(
        self, make_repo, base_port: int, fake_server_command: list[str]
    ) -> None:
        child = await _spawn(make_repo("a"), base_port, fake_server_command)

        code = await child.terminate(grace=5.0)

        assert code == 0
        assert not child.is_alive()

    @pytest.mark.asyncio
    async def test_escalates_to_sigkill_when_sigterm_ignored(
        self,
        make_repo,
        base_port: int,
        fake_server_command: list[str],
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """GIVEN a child that ignores SIGTERM
        WHEN terminate() is called with a 0.5s grace period
        THEN the child is killed within grace + epsilon.
        """
        monkeypatch.setenv("FAKE_SERVER_MODE", "ignore-term")
        child = await _spawn(make_repo("stubborn"), base_port, fake_server_command)

        start = time.monotonic()
        code = await child.terminate(grace=0.5)
        elapsed = time.monotonic() - start

        assert code == -signal.SIGKILL
        assert elapsed < 0.5 + 2.0
        assert not child.is_alive()

    @pytest.mark.asyncio
    async def test_terminate_after_exit_returns_code(
        self, make_repo, base_port: int, fake_server_command: list[str]
    ) -> None:
        child = await _spawn(make_repo("a"), base_port, fake_server_command)
        await child.kill()

        assert await child.terminate() == -signal.SIGKILL


class TestExitCallbacks:
    """Crash notification."""

    @pytest.mark.asyncio
    async def test_callback_runs_on_exit(
        self, make_repo, base_port: int, fake_server_command: list[str]
    ) -> None:
        child = await _spawn(make_repo("a"), base_port, fake_server_command)
        seen: list[tuple[ChildProcess, int]] = []
        child.add_exit_callback(lambda c, code: seen.append((c, code)))

        os.kill(child.pid, signal.SIGKILL)
        await child.wait()

        assert seen == [(child, -signal.SIGKILL)]

    @pytest.mark.asyncio
    async def test_callback_added_after_exit_runs_immediately(
        self, make_repo, base_port: int, fake_server_command: list[str]
    ) -> None:
        child = await _spawn(make_repo("a"), base_port, fake_server_command)
        await child.terminate(grace=1.0)
        seen: list[int] = []

        child.add_exit_callback(lambda c, code: seen.append(code))

        assert seen == [0]

    @pytest.mark.asyncio
    async def test_failing_callback_is_contained(
        self, make_repo, base_port: int, fake_server_command: list[str]
    ) -> None:
        child = await _spawn(make_repo("a"), base_port, fake_server_command)

        def boom(c: ChildProcess, code: int) -> None:
            raise RuntimeError("boom")

        child.add_exit_callback(boom)

        assert await child.terminate(grace=1.0) == 0


def test_server_url() -> None:
    assert server_url(3420) == "http://localhost:3420"
