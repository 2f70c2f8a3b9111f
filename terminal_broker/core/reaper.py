"""
Idle Reaper - Periodic Teardown of Abandoned Sessions.

Every `interval` seconds the reaper asks the registry to destroy sessions
that have no viewers and have been idle for longer than `timeout`.
Runs for the lifetime of the application, independent of any connection.

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .session_registry import SessionRegistry

logger = logging.getLogger(__name__)

__all__ = ["IdleReaper"]


class IdleReaper:
    """Background task driving SessionRegistry.sweep_idle()."""

    __slots__ = ("registry", "timeout", "interval", "_task")

    def __init__(self, registry: SessionRegistry, timeout: float, interval: float = 300.0):
        """
        Args:
            registry: Registry to sweep
            timeout: Idle threshold in seconds
            interval: Seconds between sweeps (default: 5 minutes)
        """
        self.registry = registry
        self.timeout = timeout
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="idle_reaper")
        logger.info(f"Idle reaper started (interval={self.interval}s, timeout={self.timeout}s)")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        await asyncio.gather(self._task, return_exceptions=True)
        self._task = None
        logger.info("Idle reaper stopped")

    async def run_once(self) -> int:
        """Run a single sweep and return the number of sessions destroyed."""
        return await self.registry.sweep_idle(self.timeout)

    async def _run(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.interval)
                await self.run_once()
            except Exception as e:
                logger.error(f"Idle sweep error: {e}", exc_info=True)
