"""
Session Registry - One Interactive Process per Identity.

The registry is the broker's only shared mutable state. It maps a normalized
identity to at most one ProcessSession and owns every lifecycle transition:

    (absent) --get_or_create--> live --destroy/exit/idle/replace--> (absent)

Concurrency Model:
- Single asyncio event loop
- One asyncio.Lock serializes create, destroy, attach, detach and sweep, so
  concurrent connects for the same identity spawn exactly one process
- Viewers are notified of teardown only after the lock is released

Teardown is idempotent: a session is torn down at most once no matter how
many triggers race (explicit destroy, forced replacement, idle sweep,
process exit), so each attached viewer receives exactly one exit message.

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Dict, List, Optional, Set

from .identity import normalize_identity
from .pty_manager import ProcessHandle, SessionSpawnError
from ..observability import (
    record_pty_kill_failure,
    record_session_created,
    record_session_destroyed,
    record_sessions_reaped,
)

if TYPE_CHECKING:
    from .relay import Viewer

logger = logging.getLogger(__name__)

__all__ = ["SessionRegistry", "ProcessSession", "Spawner"]

Spawner = Callable[[str, Path, int, int], ProcessHandle]


def _isoformat(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


@dataclass(eq=False)
class ProcessSession:
    """
    One spawned interactive process bound to one identity.

    Attributes:
        identity: Normalized owning identity
        process: Process handle (write/resize/kill/on_data/on_exit)
        created: Creation timestamp
        last_activity: Last attach/input timestamp
        viewers: Attached viewer channels, in attach order, no duplicates
        closed: Set once teardown has started; never cleared
        exit_code: Exit code reported to viewers on teardown
    """
    identity: str
    process: ProcessHandle
    created: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    viewers: List["Viewer"] = field(default_factory=list)
    closed: bool = False
    exit_code: int = 0

    @property
    def viewer_count(self) -> int:
        return len(self.viewers)

    def touch(self, now: Optional[float] = None) -> None:
        """Refresh the last activity timestamp."""
        self.last_activity = now if now is not None else time.time()

    def add_viewer(self, viewer: "Viewer") -> bool:
        if viewer in self.viewers:
            return False
        self.viewers.append(viewer)
        return True

    def remove_viewer(self, viewer: "Viewer") -> bool:
        try:
            self.viewers.remove(viewer)
        except ValueError:
            return False
        return True

    def is_idle(self, timeout: float, now: float) -> bool:
        return not self.viewers and now - self.last_activity > timeout

    def snapshot(self) -> dict:
        return {
            "identity": self.identity,
            "created": _isoformat(self.created),
            "lastActivity": _isoformat(self.last_activity),
            "viewerCount": self.viewer_count,
        }

    async def notify_exit(self) -> None:
        """Send the exit message to every open viewer and close it."""
        viewers, self.viewers = self.viewers, []
        for viewer in viewers:
            if not viewer.is_open:
                continue
            await viewer.send_json({"type": "exit", "code": self.exit_code})
            await viewer.close()


class SessionRegistry:
    """
    Process-wide table of live process sessions keyed by identity.

    Data Structures:
    - _sessions: Dict[str, ProcessSession] - O(1) lookup by identity
    - _exit_tasks: pending teardowns triggered by process exit
    """

    def __init__(
        self,
        spawner: Spawner,
        credential_dir_for: Callable[[str], Path],
        default_cols: int = 80,
        default_rows: int = 24,
    ):
        """
        Initialize session registry.

        Args:
            spawner: Starts a process for (identity, credential_dir, cols, rows)
            credential_dir_for: Returns the credential directory of an identity
            default_cols: Initial terminal columns
            default_rows: Initial terminal rows
        """
        self._spawner = spawner
        self._credential_dir_for = credential_dir_for
        self.default_cols = default_cols
        self.default_rows = default_rows

        self._sessions: Dict[str, ProcessSession] = {}
        self._lock = asyncio.Lock()
        self._exit_tasks: Set[asyncio.Task] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    # Lookups

    def has(self, identity: str) -> bool:
        return normalize_identity(identity) in self._sessions

    def get(self, identity: str) -> Optional[ProcessSession]:
        return self._sessions.get(normalize_identity(identity))

    def stats(self) -> dict:
        """Read-only snapshot for the health endpoint."""
        return {
            "totalSessions": len(self._sessions),
            "sessions": [session.snapshot() for session in self._sessions.values()],
        }

    # Lifecycle

    async def get_or_create(self, identity: str, force_new: bool = False) -> ProcessSession:
        """
        Return the identity's session, spawning one if needed.

        Args:
            identity: Raw identity (normalized here)
            force_new: Tear down an existing session and spawn a fresh one

        Returns:
            The live session for the identity

        Raises:
            InvalidIdentityError: If the identity cannot be normalized
            SessionSpawnError: If the process cannot be started
        """
        normalized = normalize_identity(identity)
        replaced: Optional[ProcessSession] = None

        try:
            async with self._lock:
                existing = self._sessions.get(normalized)

                if existing is not None and force_new:
                    replaced = self._teardown_locked(existing, reason="replaced")
                    existing = None

                if existing is not None:
                    existing.touch()
                    return existing

                return self._spawn_locked(normalized)
        finally:
            if replaced is not None:
                await replaced.notify_exit()

    def _spawn_locked(self, identity: str) -> ProcessSession:
        try:
            credential_dir = self._credential_dir_for(identity)
            process = self._spawner(identity, credential_dir, self.default_cols, self.default_rows)
        except SessionSpawnError:
            raise
        except Exception as e:
            logger.error(f"Failed to spawn session for {identity}: {e}", exc_info=True)
            raise SessionSpawnError(f"Failed to start terminal for {identity}: {e}") from e

        session = ProcessSession(identity=identity, process=process)
        process.on_exit(lambda code: self._schedule_exit(session, code))

        self._sessions[identity] = session
        record_session_created()

        logger.info(f"Created session for {identity} (pid={getattr(process, 'pid', '?')})")
        return session

    def _teardown_locked(
        self,
        session: ProcessSession,
        reason: str,
        kill: bool = True,
        force: bool = False,
    ) -> Optional[ProcessSession]:
        """
        Mark closed, kill and unregister a session. Caller holds the lock.

        Returns:
            The session if this call tore it down, None if already closed
        """
        if session.closed:
            return None

        session.closed = True
        if self._sessions.get(session.identity) is session:
            del self._sessions[session.identity]

        if kill:
            try:
                session.process.kill(force=force)
            except Exception as e:
                record_pty_kill_failure()
                logger.error(f"Failed to kill process for {session.identity}: {e}", exc_info=True)

        record_session_destroyed(reason, time.time() - session.created)

        logger.info(
            f"Destroyed session for {session.identity} "
            f"(reason={reason}, viewers={session.viewer_count})"
        )
        return session

    def _schedule_exit(self, session: ProcessSession, code: int) -> None:
        task = asyncio.get_running_loop().create_task(
            self._handle_exit(session, code),
            name=f"session_exit_{session.identity}"
        )
        self._exit_tasks.add(task)
        task.add_done_callback(self._exit_tasks.discard)

    async def _handle_exit(self, session: ProcessSession, code: int) -> None:
        logger.info(f"Process for {session.identity} exited with code {code}")

        async with self._lock:
            if not session.closed:
                session.exit_code = code
            torn_down = self._teardown_locked(session, reason="exited", kill=False)

        if torn_down is not None:
            await torn_down.notify_exit()

    async def attach(self, identity: str, viewer: "Viewer") -> Optional[ProcessSession]:
        """
        Attach a viewer to the identity's session.

        Returns:
            The session the viewer is attached to, None if there is none
        """
        normalized = normalize_identity(identity)

        async with self._lock:
            session = self._sessions.get(normalized)
            if session is None:
                return None

            if session.add_viewer(viewer):
                logger.info(f"Viewer attached to {normalized} (viewers={session.viewer_count})")
            session.touch()
            return session

    async def detach(self, identity: str, viewer: "Viewer") -> None:
        """Remove a viewer from the identity's session, if present."""
        normalized = normalize_identity(identity)

        async with self._lock:
            session = self._sessions.get(normalized)
            if session is not None and session.remove_viewer(viewer):
                logger.info(f"Viewer detached from {normalized} (viewers={session.viewer_count})")

    async def destroy(self, identity: str, reason: str = "revoked") -> bool:
        """
        Tear down the identity's session.

        Returns:
            True if a session was destroyed, False if there was none
        """
        normalized = normalize_identity(identity)

        async with self._lock:
            session = self._sessions.get(normalized)
            torn_down = self._teardown_locked(session, reason=reason) if session else None

        if torn_down is None:
            return False

        await torn_down.notify_exit()
        return True

    async def sweep_idle(self, timeout: float, now: Optional[float] = None) -> int:
        """
        Destroy every session with no viewers idle for longer than timeout.

        Args:
            timeout: Idle threshold in seconds
            now: Reference time (defaults to time.time())

        Returns:
            Number of sessions destroyed
        """
        now = now if now is not None else time.time()
        destroyed: List[ProcessSession] = []

        async with self._lock:
            for session in list(self._sessions.values()):
                if session.is_idle(timeout, now):
                    torn_down = self._teardown_locked(session, reason="idle")
                    if torn_down is not None:
                        destroyed.append(torn_down)

        for session in destroyed:
            await session.notify_exit()

        if destroyed:
            record_sessions_reaped(len(destroyed))
            logger.info(f"Cleaned up {len(destroyed)} inactive sessions")

        return len(destroyed)

    async def shutdown_all(self) -> int:
        """Destroy every session regardless of viewers. Returns the count."""
        async with self._lock:
            logger.info(f"Shutting down {len(self._sessions)} sessions...")
            destroyed = [
                torn_down
                for torn_down in (
                    self._teardown_locked(session, reason="shutdown", force=True)
                    for session in list(self._sessions.values())
                )
                if torn_down is not None
            ]

        for session in destroyed:
            await session.notify_exit()

        return len(destroyed)
