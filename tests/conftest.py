"""Test configuration and fixtures."""

import asyncio
from pathlib import Path

import pytest

from cloudlibs import ipc
from cloudlibs.ipc.store import SignalStore
from cloudlibs.local.config import effective_settings


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path: Path, monkeypatch):
    """Point every path setting at a temporary directory and speed up polling."""
    monkeypatch.setattr(effective_settings, "SIGNAL_BASE_PATH", tmp_path / "signals")
    monkeypatch.setattr(effective_settings, "SIGNAL_POLL_INTERVAL", 0.01)
    monkeypatch.setattr(effective_settings, "SIGNAL_WATCH_ENABLED", False)
    monkeypatch.setattr(effective_settings, "PID_FILE_PATH", tmp_path / "state" / "run_scripts.pid")
    monkeypatch.setattr(effective_settings, "LOGS_DIR", tmp_path / "logs")
    monkeypatch.setattr(effective_settings, "LOG_FILE_PATH", tmp_path / "logs" / "run_scripts.log")
    monkeypatch.setattr(effective_settings, "LOKI_ENABLED", False)
    monkeypatch.setattr(effective_settings, "OVERRIDES_JSON_PATH", tmp_path / "state" / "overrides.json")
    yield
    ipc.set_store(None)


@pytest.fixture
def signal_dir(tmp_path: Path) -> Path:
    """Provide the (not yet created) signal directory."""
    return tmp_path / "signals"


@pytest.fixture
def store(signal_dir: Path) -> SignalStore:
    """A polling signal store with a short interval."""
    store = SignalStore(signal_dir, poll_interval=0.01, watch=False)
    yield store
    store.close()


async def _wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> bool:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return True
        await asyncio.sleep(interval)
    return predicate()


@pytest.fixture
def wait_until():
    """Provide a coroutine that polls a predicate until it is true or a timeout elapses."""
    return _wait_until
