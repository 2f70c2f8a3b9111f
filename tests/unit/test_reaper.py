"""
Unit Tests for the Idle Reaper.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from terminal_broker.core.reaper import IdleReaper


@pytest.fixture
def mock_registry():
    registry = MagicMock()
    registry.sweep_idle = AsyncMock(return_value=0)
    return registry


@pytest.mark.asyncio
class TestIdleReaper:
    """Test suite for periodic idle sweeps."""

    async def test_run_once_uses_timeout(self, mock_registry):
        mock_registry.sweep_idle.return_value = 2
        reaper = IdleReaper(mock_registry, timeout=7200, interval=300)

        destroyed = await reaper.run_once()

        assert destroyed == 2
        mock_registry.sweep_idle.assert_awaited_once_with(7200)

    async def test_start_and_stop(self, mock_registry):
        reaper = IdleReaper(mock_registry, timeout=60, interval=0.01)

        reaper.start()
        assert reaper.running
        await asyncio.sleep(0.05)
        await reaper.stop()

        assert not reaper.running
        assert mock_registry.sweep_idle.await_count >= 1

    async def test_start_twice_keeps_one_task(self, mock_registry):
        reaper = IdleReaper(mock_registry, timeout=60, interval=60)

        reaper.start()
        task = reaper._task
        reaper.start()

        assert reaper._task is task
        await reaper.stop()

    async def test_stop_without_start(self, mock_registry):
        reaper = IdleReaper(mock_registry, timeout=60)

        await reaper.stop()

        assert not reaper.running

    async def test_sweep_error_does_not_stop_loop(self, mock_registry):
        calls = []

        async def flaky_sweep(timeout):
            calls.append(timeout)
            if len(calls) == 1:
                raise RuntimeError("boom")
            return 0

        mock_registry.sweep_idle.side_effect = flaky_sweep
        reaper = IdleReaper(mock_registry, timeout=60, interval=0.01)

        reaper.start()
        await asyncio.sleep(0.08)

        assert reaper.running
        assert mock_registry.sweep_idle.await_count >= 2
        await reaper.stop()

    async def test_waits_one_interval_before_first_sweep(self, mock_registry):
        reaper = IdleReaper(mock_registry, timeout=60, interval=60)

        reaper.start()
        await asyncio.sleep(0.01)

        mock_registry.sweep_idle.assert_not_awaited()
        await reaper.stop()
