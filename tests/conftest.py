"""Pytest configuration and fixtures for flow-daemon tests."""

import shutil
import socket
import sys
import tempfile
from collections.abc import Generator
from pathlib import Path

import pytest

from flow_daemon.core.config import FlowConfig, _reset_config, load_config
from flow_daemon.core.paths import FLOW_HOME_ENV

FIXTURES_DIR = Path(__file__).parent / "fixtures"
FAKE_SERVER = FIXTURES_DIR / "fake_server.py"


@pytest.fixture
def state_dir(monkeypatch: pytest.MonkeyPatch) -> Generator[Path, None, None]:
    """Short-lived state directory, pointed to by FLOW_HOME.

    Lives directly under /tmp: Unix socket paths are limited to ~100 bytes,
    which pytest's tmp_path can exceed.
    """
    path = Path(tempfile.mkdtemp(prefix="flow-", dir="/tmp"))
    monkeypatch.setenv(FLOW_HOME_ENV, str(path))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture(autouse=True)
def reset_config_singleton():
    """Reset the config singleton before and after each test."""
    _reset_config()
    yield
    _reset_config()


@pytest.fixture
def base_port() -> int:
    """A port that was free a moment ago, used as allocator base."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


@pytest.fixture
def fake_server_command() -> list[str]:
    return [sys.executable, str(FAKE_SERVER)]


@pytest.fixture
def config(state_dir: Path, base_port: int, fake_server_command: list[str]) -> FlowConfig:
    """Config with fast timeouts that launches the fake server."""
    return load_config(
        {
            "base_port": base_port,
            "server_command": fake_server_command,
            "startup_timeout": 5.0,
            "shutdown_grace": 1.0,
            "daemon_startup_timeout": 10.0,
        },
        state_dir=state_dir,
    )


@pytest.fixture
def make_repo(tmp_path: Path):
    """Factory creating a directory that looks like a git repository."""

    def _make(name: str) -> Path:
        repo = tmp_path / name
        (repo / ".git").mkdir(parents=True)
        return repo.resolve()

    return _make
