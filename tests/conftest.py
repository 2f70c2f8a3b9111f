"""
Test configuration and fixtures.

Fixes import paths and provides in-memory stand-ins for the process and
viewer boundaries so the registry and relay can be tested without PTYs.
"""

import asyncio
import sys
from pathlib import Path

import pytest

# Add repository root to path for imports
repo_root = Path(__file__).parent.parent
sys.path.insert(0, str(repo_root))


def pytest_configure(config):
    config.addinivalue_line("markers", "integration: end-to-end tests with real components")


class FakeProcess:
    """In-memory process handle recording every call."""

    def __init__(self, pid: int, echo: bool = False):
        self.pid = pid
        self.echo = echo
        self.writes = []
        self.resizes = []
        self.kills = []
        self.kill_error = None
        self.data_callbacks = []
        self.exit_callbacks = []
        self._alive = True

    @property
    def is_alive(self) -> bool:
        return self._alive

    def write(self, data):
        if not self._alive:
            return 0
        self.writes.append(data)
        if self.echo:
            self.emit(data)
        return len(data)

    def resize(self, cols, rows):
        self.resizes.append((cols, rows))

    def kill(self, force=False):
        if self.kill_error is not None:
            raise self.kill_error
        self.kills.append(force)

    def on_data(self, callback):
        self.data_callbacks.append(callback)

        def unsubscribe():
            if callback in self.data_callbacks:
                self.data_callbacks.remove(callback)

        return unsubscribe

    def on_exit(self, callback):
        self.exit_callbacks.append(callback)

        def unsubscribe():
            if callback in self.exit_callbacks:
                self.exit_callbacks.remove(callback)

        return unsubscribe

    def emit(self, text: str):
        for callback in list(self.data_callbacks):
            callback(text)

    def exit(self, code: int = 0):
        self._alive = False
        callbacks, self.exit_callbacks = self.exit_callbacks, []
        for callback in callbacks:
            callback(code)


class FakeSpawner:
    """Spawner returning FakeProcess handles."""

    def __init__(self, echo: bool = False):
        self.echo = echo
        self.calls = []
        self.processes = []
        self.error = None

    def __call__(self, identity, credential_dir, cols, rows):
        self.calls.append((identity, credential_dir, cols, rows))
        if self.error is not None:
            raise self.error
        process = FakeProcess(pid=1000 + len(self.processes), echo=self.echo)
        self.processes.append(process)
        return process


class FakeViewer:
    """Viewer recording sent messages."""

    def __init__(self, name: str = "viewer"):
        self.name = name
        self.messages = []
        self.close_codes = []
        self.open = True

    @property
    def is_open(self) -> bool:
        return self.open

    async def send_json(self, message: dict) -> bool:
        if not self.open:
            return False
        self.messages.append(message)
        return True

    async def close(self, code: int = 1000) -> None:
        if self.open:
            self.open = False
            self.close_codes.append(code)

    def of_type(self, msg_type: str):
        return [m for m in self.messages if m["type"] == msg_type]


class SlowViewer(FakeViewer):
    """Viewer whose sends suspend, like a real network write."""

    def __init__(self, name: str = "slow", delay: float = 0.01):
        super().__init__(name)
        self.delay = delay

    async def send_json(self, message: dict) -> bool:
        await asyncio.sleep(self.delay)
        return await super().send_json(message)


@pytest.fixture
def fake_spawner():
    return FakeSpawner()


@pytest.fixture
def echo_spawner():
    return FakeSpawner(echo=True)


@pytest.fixture
def make_viewer():
    return FakeViewer


@pytest.fixture
def make_slow_viewer():
    return SlowViewer


async def settle(rounds: int = 10):
    """Let scheduled tasks (exit teardown, output pumps) run."""
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settled():
    return settle
