"""
PTY Manager - Interactive Process Spawning Behind a Narrow Handle.

Each identity's chat CLI runs inside its own pseudo-terminal. The registry
never touches file descriptors or signals directly; it depends only on the
ProcessHandle capabilities (write, resize, kill, on_data, on_exit).

Platform Support:
- Linux/Unix: Native PTY via pty.openpty() and subprocess.Popen

I/O Model:
- Master FD is non-blocking and registered with the event loop reader
- Output is decoded incrementally (UTF-8, replacement on bad bytes) and
  fanned out to data callbacks in registration order
- Input is buffered and flushed through the event loop writer
- Child exit is delivered by the event loop through a pidfd (Linux), with a
  Popen.poll() loop where pidfd_open is unavailable; exit callbacks fire
  exactly once

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import codecs
import errno
import fcntl
import logging
import os
import pty
import shlex
import signal
import struct
import subprocess
import termios
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Union

from .identity import normalize_identity, validate_path_component
from ..observability import record_pty_spawn

logger = logging.getLogger(__name__)

__all__ = [
    "ProcessHandle",
    "PTYProcess",
    "PTYSpawner",
    "SessionSpawnError",
    "DataCallback",
    "ExitCallback",
]

DataCallback = Callable[[str], None]
ExitCallback = Callable[[int], None]

READ_CHUNK_SIZE = 16384  # 16KB


class SessionSpawnError(RuntimeError):
    """Raised when the interactive process cannot be started."""
    pass


class ProcessHandle(Protocol):
    """Capabilities the broker needs from an interactive process."""

    pid: int

    @property
    def is_alive(self) -> bool: ...

    def write(self, data: Union[str, bytes]) -> int: ...

    def resize(self, cols: int, rows: int) -> None: ...

    def kill(self, force: bool = False) -> None: ...

    def on_data(self, callback: DataCallback) -> Callable[[], None]: ...

    def on_exit(self, callback: ExitCallback) -> Callable[[], None]: ...


def _set_terminal_size(fd: int, rows: int, cols: int) -> None:
    """Set terminal window size via TIOCSWINSZ ioctl."""
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _acquire_controlling_terminal() -> None:
    # Runs in the child after setsid() and after stdio is dup'ed to the slave
    fcntl.ioctl(0, termios.TIOCSCTTY, 0)


class PTYProcess:
    """
    One child process attached to a pseudo-terminal.

    Lifecycle:
    1. start(): open PTY pair, spawn child, register output reader + exit watch
    2. running: output -> data callbacks, write() -> buffered input
    3. exit: child reaped -> drain output, close master, exit callbacks
    """

    def __init__(
        self,
        argv: Sequence[str],
        env: Optional[Dict[str, str]] = None,
        cols: int = 80,
        rows: int = 24,
        cwd: Optional[str] = None,
        kill_grace: float = 2.0,
        poll_interval: float = 0.25,
    ):
        self.argv = list(argv)
        self.env = env
        self.cols = cols
        self.rows = rows
        self.cwd = cwd
        self.kill_grace = kill_grace
        self.poll_interval = poll_interval

        self.pid: int = -1
        self.exit_code: Optional[int] = None

        self._proc: Optional[subprocess.Popen] = None
        self._master_fd: int = -1
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending_input = bytearray()
        self._writer_registered = False
        self._reading = False
        self._exited = False
        self._pidfd: int = -1
        self._exit_watch: Optional[asyncio.Task] = None
        self._done: Optional[asyncio.Future] = None
        self._kill_handle: Optional[asyncio.TimerHandle] = None

        self._data_callbacks: List[DataCallback] = []
        self._exit_callbacks: List[ExitCallback] = []

    @classmethod
    def spawn(cls, argv: Sequence[str], **kwargs) -> PTYProcess:
        """Create and start a PTY process. Must be called from the event loop."""
        process = cls(argv, **kwargs)
        process.start()
        return process

    @property
    def is_alive(self) -> bool:
        return self._proc is not None and not self._exited

    def start(self) -> None:
        """
        Spawn the child inside a new PTY.

        Raises:
            OSError: If the PTY cannot be opened or the executable is missing
        """
        self._loop = asyncio.get_running_loop()

        master_fd, slave_fd = pty.openpty()
        try:
            _set_terminal_size(master_fd, self.rows, self.cols)
            self._proc = subprocess.Popen(
                self.argv,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                env=self.env,
                cwd=self.cwd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_terminal,
                close_fds=True,
            )
        except Exception:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        flags = fcntl.fcntl(master_fd, fcntl.F_GETFL)
        fcntl.fcntl(master_fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)

        self._master_fd = master_fd
        self.pid = self._proc.pid

        self._loop.add_reader(master_fd, self._on_readable)
        self._reading = True
        self._done = self._loop.create_future()
        self._watch_exit()

        logger.debug(f"Started PTY process pid={self.pid} fd={master_fd} size={self.cols}x{self.rows}")

    # Subscriptions

    def on_data(self, callback: DataCallback) -> Callable[[], None]:
        """Register an output callback. Returns a function that unregisters it."""
        self._data_callbacks.append(callback)

        def unsubscribe() -> None:
            try:
                self._data_callbacks.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    def on_exit(self, callback: ExitCallback) -> Callable[[], None]:
        """Register an exit callback. Fires immediately if the child already exited."""
        if self._exited:
            self._loop.call_soon(callback, self.exit_code)
            return lambda: None

        self._exit_callbacks.append(callback)

        def unsubscribe() -> None:
            try:
                self._exit_callbacks.remove(callback)
            except ValueError:
                pass

        return unsubscribe

    # Output

    def _on_readable(self) -> None:
        try:
            data = os.read(self._master_fd, READ_CHUNK_SIZE)
        except BlockingIOError:
            return
        except OSError as e:
            # EIO: every slave handle is closed
            if e.errno != errno.EIO:
                logger.error(f"PTY read failed for pid={self.pid}: {e}")
            data = b""

        if not data:
            self._stop_reading()
            return

        self._emit(self._decoder.decode(data))

    def _emit(self, text: str) -> None:
        if not text:
            return
        for callback in list(self._data_callbacks):
            try:
                callback(text)
            except Exception as e:
                logger.error(f"Output callback failed for pid={self.pid}: {e}", exc_info=True)

    def _stop_reading(self) -> None:
        if self._reading:
            self._loop.remove_reader(self._master_fd)
            self._reading = False

    def _drain(self) -> None:
        """Read whatever output is left after the child exited."""
        while self._reading:
            try:
                data = os.read(self._master_fd, READ_CHUNK_SIZE)
            except OSError:
                break
            if not data:
                break
            self._emit(self._decoder.decode(data))
        self._emit(self._decoder.decode(b"", final=True))

    # Input

    def write(self, data: Union[str, bytes]) -> int:
        """
        Queue input for the child.

        Returns:
            Number of bytes queued (0 if the child already exited)
        """
        if self._exited:
            logger.debug(f"Dropping input for exited pid={self.pid}")
            return 0

        payload = data.encode("utf-8") if isinstance(data, str) else bytes(data)
        self._pending_input.extend(payload)
        self._flush_input()
        return len(payload)

    def _flush_input(self) -> None:
        while self._pending_input and not self._exited:
            try:
                written = os.write(self._master_fd, self._pending_input)
            except BlockingIOError:
                break
            except OSError as e:
                logger.warning(f"PTY write failed for pid={self.pid}: {e}")
                self._pending_input.clear()
                break
            del self._pending_input[:written]

        if self._pending_input and not self._exited:
            if not self._writer_registered:
                self._loop.add_writer(self._master_fd, self._flush_input)
                self._writer_registered = True
        elif self._writer_registered:
            self._loop.remove_writer(self._master_fd)
            self._writer_registered = False

    # Control

    def resize(self, cols: int, rows: int) -> None:
        """Resize the PTY window; the kernel delivers SIGWINCH to the child."""
        if self._exited:
            return
        _set_terminal_size(self._master_fd, rows, cols)
        self.cols = cols
        self.rows = rows

    def kill(self, force: bool = False) -> None:
        """
        Terminate the child's process group.

        SIGHUP first (terminal hangup), escalating to SIGKILL after
        kill_grace seconds. force=True sends SIGKILL immediately.

        Raises:
            OSError: If the signal cannot be delivered for a reason other
                than the process being gone
        """
        if self._proc is None or self._exited:
            return

        sig = signal.SIGKILL if force else signal.SIGHUP
        try:
            os.killpg(self._proc.pid, sig)
        except ProcessLookupError:
            return

        logger.info(f"Sent {sig.name} to pid={self.pid}")

        if not force and self.kill_grace > 0 and self._kill_handle is None:
            self._kill_handle = self._loop.call_later(self.kill_grace, self._escalate_kill)

    def _escalate_kill(self) -> None:
        self._kill_handle = None
        if self._exited:
            return
        try:
            os.killpg(self._proc.pid, signal.SIGKILL)
            logger.warning(f"Sent SIGKILL to pid={self.pid} after {self.kill_grace}s grace")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.error(f"SIGKILL failed for pid={self.pid}: {e}")

    # Exit

    def _watch_exit(self) -> None:
        """Arrange for _finish() to run once the child exits."""
        try:
            self._pidfd = os.pidfd_open(self.pid)
        except (AttributeError, OSError) as e:
            # No pidfd support (non-Linux or old kernel)
            logger.debug(f"pidfd unavailable for pid={self.pid}, polling instead: {e}")
            self._exit_watch = self._loop.create_task(
                self._poll_exit(),
                name=f"pty_exit_poll_{self.pid}"
            )
            return

        self._loop.add_reader(self._pidfd, self._on_child_exit)

    def _on_child_exit(self) -> None:
        # pidfd becomes readable once the child has terminated
        self._loop.remove_reader(self._pidfd)
        os.close(self._pidfd)
        self._pidfd = -1
        self._finish(self._proc.wait())

    async def _poll_exit(self) -> None:
        while True:
            code = self._proc.poll()
            if code is not None:
                break
            await asyncio.sleep(self.poll_interval)

        self._finish(code)

    def _finish(self, code: int) -> None:
        if self._exited:
            return

        self._drain()
        self._exited = True
        self.exit_code = code

        self._stop_reading()
        if self._writer_registered:
            self._loop.remove_writer(self._master_fd)
            self._writer_registered = False
        self._pending_input.clear()

        if self._kill_handle is not None:
            self._kill_handle.cancel()
            self._kill_handle = None

        try:
            os.close(self._master_fd)
        except OSError:
            pass

        logger.info(f"PTY process pid={self.pid} exited with code {code}")

        callbacks, self._exit_callbacks = self._exit_callbacks, []
        self._data_callbacks.clear()
        for callback in callbacks:
            try:
                callback(code)
            except Exception as e:
                logger.error(f"Exit callback failed for pid={self.pid}: {e}", exc_info=True)

        if not self._done.done():
            self._done.set_result(code)

    async def wait(self) -> int:
        """Wait for the child to exit and return its exit code."""
        if self._done is not None:
            await asyncio.shield(self._done)
        return self.exit_code


class PTYSpawner:
    """
    Spawn boundary used by the session registry.

    Builds the chat CLI command line and environment for one identity and
    starts it in a PTY.
    """

    __slots__ = ("config",)

    def __init__(self, config):
        self.config = config

    def build_command(self) -> List[str]:
        return shlex.split(self.config.cli_command) + ["-h", self.config.chat_host]

    def build_env(self, credential_dir: Path) -> Dict[str, str]:
        env = os.environ.copy()
        env[self.config.token_dir_env] = str(credential_dir)
        env["TERM"] = "xterm-256color"
        env["COLORTERM"] = "truecolor"
        return env

    def __call__(
        self,
        identity: str,
        credential_dir: Path,
        cols: int,
        rows: int
    ) -> PTYProcess:
        """
        Start the chat CLI for an identity.

        Raises:
            SessionSpawnError: If the process cannot be started
        """
        normalized = normalize_identity(identity)
        validate_path_component(normalized)

        try:
            process = PTYProcess.spawn(
                self.build_command(),
                env=self.build_env(credential_dir),
                cols=cols,
                rows=rows,
                cwd=os.getcwd(),
                kill_grace=self.config.kill_grace_seconds,
            )
        except (OSError, subprocess.SubprocessError) as e:
            record_pty_spawn(success=False)
            logger.error(f"Failed to spawn PTY for {normalized}: {e}", exc_info=True)
            raise SessionSpawnError(f"Failed to start terminal for {normalized}: {e}") from e

        record_pty_spawn(success=True)
        logger.info(
            f"Spawned PTY for {normalized}: pid={process.pid}, "
            f"size={cols}x{rows}, credentials={credential_dir}"
        )
        return process
