"""
Unit Tests for PTY Manager.

Runs real processes inside pseudo-terminals.

Test Coverage:
- Output delivery and exit code reporting
- Input echo, resize and kill
- Spawner command line, environment and failure mapping
"""

import asyncio
import os

import pytest

from terminal_broker.config import BrokerConfig
from terminal_broker.core.identity import InvalidIdentityError
from terminal_broker.core.pty_manager import PTYProcess, PTYSpawner, SessionSpawnError


async def wait_for(predicate, timeout: float = 5.0):
    """Poll until predicate() is true or fail after timeout."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("Timed out waiting for condition")
        await asyncio.sleep(0.02)


def collect(process):
    output, exits = [], []
    process.on_data(output.append)
    process.on_exit(exits.append)
    return output, exits


@pytest.mark.asyncio
class TestPTYProcess:
    """Test suite for a single PTY-backed child."""

    async def test_output_and_exit_code(self):
        process = PTYProcess.spawn(["sh", "-c", "printf hello; exit 3"], poll_interval=0.02)
        output, exits = collect(process)

        code = await asyncio.wait_for(process.wait(), timeout=5)

        assert code == 3
        assert exits == [3]
        assert "hello" in "".join(output)
        assert not process.is_alive

    async def test_write_is_echoed(self):
        process = PTYProcess.spawn(["cat"], poll_interval=0.02)
        output, _ = collect(process)

        process.write("ping\n")
        await wait_for(lambda: "ping" in "".join(output))

        process.kill(force=True)
        await asyncio.wait_for(process.wait(), timeout=5)

    async def test_resize_is_visible_to_child(self):
        process = PTYProcess.spawn(
            ["sh", "-c", "read line; stty size"], cols=80, rows=24, poll_interval=0.02
        )
        output, _ = collect(process)

        process.resize(100, 40)
        process.write("\n")
        await asyncio.wait_for(process.wait(), timeout=5)

        assert "40 100" in "".join(output)

    async def test_kill_hangs_up_child(self):
        process = PTYProcess.spawn(["sleep", "30"], kill_grace=0.5, poll_interval=0.02)
        _, exits = collect(process)

        process.kill()
        code = await asyncio.wait_for(process.wait(), timeout=5)

        assert code < 0
        assert exits == [code]

    async def test_kill_after_exit_is_noop(self):
        process = PTYProcess.spawn(["true"], poll_interval=0.02)
        await asyncio.wait_for(process.wait(), timeout=5)

        process.kill()
        process.kill(force=True)

    async def test_write_after_exit_is_dropped(self):
        process = PTYProcess.spawn(["true"], poll_interval=0.02)
        await asyncio.wait_for(process.wait(), timeout=5)

        assert process.write("late") == 0

    async def test_unsubscribed_callback_not_called(self):
        process = PTYProcess.spawn(["sh", "-c", "sleep 0.2; printf later"], poll_interval=0.02)
        output = []
        unsubscribe = process.on_data(output.append)

        unsubscribe()
        await asyncio.wait_for(process.wait(), timeout=5)

        assert output == []

    @pytest.mark.skipif(not hasattr(os, "pidfd_open"), reason="pidfd_open not available")
    async def test_exit_reported_without_polling(self):
        process = PTYProcess.spawn(["sh", "-c", "printf bye; exit 6"], poll_interval=60)
        output, exits = collect(process)

        code = await asyncio.wait_for(process.wait(), timeout=5)

        assert code == 6
        assert exits == [6]
        assert "bye" in "".join(output)

    async def test_on_exit_after_exit_fires(self):
        process = PTYProcess.spawn(["sh", "-c", "exit 4"], poll_interval=0.02)
        await asyncio.wait_for(process.wait(), timeout=5)
        exits = []

        process.on_exit(exits.append)
        await asyncio.sleep(0)

        assert exits == [4]


class TestPTYSpawnerCommand:
    """Test suite for command line and environment construction."""

    def test_command_includes_chat_host(self):
        spawner = PTYSpawner(BrokerConfig(chat_host="chat.example.com"))

        assert spawner.build_command() == ["skychat-cli", "-h", "chat.example.com"]

    def test_command_splits_cli_command(self):
        spawner = PTYSpawner(BrokerConfig(cli_command="node ./cli.js", chat_host="localhost"))

        assert spawner.build_command() == ["node", "./cli.js", "-h", "localhost"]

    def test_env_points_at_credential_dir(self, tmp_path):
        spawner = PTYSpawner(BrokerConfig())

        env = spawner.build_env(tmp_path / "alice")

        assert env["SKYCHAT_TOKEN_DIR"] == str(tmp_path / "alice")
        assert env["TERM"] == "xterm-256color"
        assert env["COLORTERM"] == "truecolor"
        assert env.get("PATH") == os.environ.get("PATH")


@pytest.mark.asyncio
class TestPTYSpawner:
    """Test suite for spawning through the registry boundary."""

    async def test_spawns_configured_command(self, tmp_path):
        config = BrokerConfig(cli_command='sh -c "printf \\"$SKYCHAT_TOKEN_DIR\\""')
        spawner = PTYSpawner(config)

        process = spawner("alice", tmp_path / "alice", 80, 24)
        output, _ = collect(process)
        await asyncio.wait_for(process.wait(), timeout=5)

        assert str(tmp_path / "alice") in "".join(output)

    async def test_missing_executable_raises_spawn_error(self, tmp_path):
        spawner = PTYSpawner(BrokerConfig(cli_command="/nonexistent/skychat-cli"))

        with pytest.raises(SessionSpawnError):
            spawner("alice", tmp_path / "alice", 80, 24)

    async def test_invalid_identity_rejected_before_spawn(self, tmp_path):
        spawner = PTYSpawner(BrokerConfig(cli_command="/nonexistent/skychat-cli"))

        with pytest.raises(InvalidIdentityError):
            spawner("../root", tmp_path, 80, 24)
