"""
I/O Relay - Bidirectional Pump Between a Viewer and a Process Session.

Per attached viewer the relay runs two independent pumps:

    Process -> Viewer: output chunks are queued by the process callback and
                       sent as {"type": "data", "data": ...} by a sender task
    Viewer -> Process: inbound frames are parsed into typed intents,
                       validated, then written to / resized on the process

Message Protocol:
    Client -> Server:
    - {"type": "input", "data": "..."}
    - {"type": "resize", "cols": 120, "rows": 30}

    Server -> Client:
    - {"type": "connected"}
    - {"type": "data", "data": "..."}
    - {"type": "exit", "code": 0}
    - {"type": "error", "message": "..."}

Everything sent to a viewer after attach, including the final exit message
from a teardown, passes through that viewer's output queue, so output the
process emitted before exiting always arrives before {"type": "exit"}.

Detaching a viewer removes only its own output subscription; the process
and the other viewers are never affected.

Author: Backend Lead Developer
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, List, Optional, Protocol, Union

from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from .identity import (
    InvalidDimensionsError,
    InvalidInputError,
    MAX_INPUT_LENGTH,
    validate_terminal_dimensions,
    validate_terminal_input,
)
from .pty_manager import SessionSpawnError
from .session_registry import ProcessSession, SessionRegistry
from ..observability import (
    record_message_rejected,
    record_output_dropped,
    record_viewer_connected,
    record_viewer_disconnected,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_QUEUED_CHUNKS = 1024
CLOSE_DRAIN_TIMEOUT = 1.0  # seconds

_CLOSE = object()

__all__ = [
    "Viewer",
    "WebSocketViewer",
    "ViewerRelay",
    "MessageType",
    "InputIntent",
    "ResizeIntent",
    "parse_client_message",
]


class MessageType:
    """WebSocket message types."""
    # Client → Server
    INPUT = "input"
    RESIZE = "resize"

    # Server → Client
    CONNECTED = "connected"
    DATA = "data"
    EXIT = "exit"
    ERROR = "error"


class Viewer(Protocol):
    """Capabilities the broker needs from a viewer channel."""

    @property
    def is_open(self) -> bool: ...

    async def send_json(self, message: dict) -> bool: ...

    async def close(self, code: int = 1000) -> None: ...


class WebSocketViewer:
    """
    Viewer backed by an accepted FastAPI WebSocket.

    Send failures are swallowed and mark the viewer closed; the transport's
    own close event ends the relay.
    """

    __slots__ = ("websocket", "_closed")

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket
        self._closed = False

    @property
    def is_open(self) -> bool:
        return (
            not self._closed
            and self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, message: dict) -> bool:
        if not self.is_open:
            return False
        try:
            await self.websocket.send_json(message)
            return True
        except Exception as e:
            logger.debug(f"Viewer send failed, treating as closed: {e}")
            self._closed = True
            return False

    async def close(self, code: int = 1000) -> None:
        if not self.is_open:
            self._closed = True
            return
        self._closed = True
        try:
            await self.websocket.close(code=code)
        except Exception as e:
            logger.debug(f"Viewer close failed: {e}")


@dataclass(frozen=True)
class InputIntent:
    data: str


@dataclass(frozen=True)
class ResizeIntent:
    cols: int
    rows: int


Intent = Union[InputIntent, ResizeIntent]


def parse_client_message(
    message: Any,
    max_input_length: int = MAX_INPUT_LENGTH
) -> Optional[Intent]:
    """
    Turn a decoded client message into a validated intent.

    Returns:
        The intent, or None for unrecognized or empty messages

    Raises:
        InvalidInputError: Input is not a string or is too large
        InvalidDimensionsError: Resize dimensions are not integers in [1, 1000]
    """
    if not isinstance(message, dict):
        return None

    msg_type = message.get("type")

    if msg_type == MessageType.INPUT:
        data = message.get("data")
        if data is None or data == "":
            return None
        return InputIntent(validate_terminal_input(data, max_input_length))

    if msg_type == MessageType.RESIZE:
        cols = message.get("cols")
        rows = message.get("rows")
        if cols is None or rows is None:
            return None
        validate_terminal_dimensions(cols, rows)
        return ResizeIntent(cols=cols, rows=rows)

    return None


class _OutputPump:
    """
    Process -> Viewer pump for one attachment.

    The pump is what the registry holds as the attached viewer. Teardown
    messages sent to it (exit, close) join the same FIFO as process output,
    so output emitted before the process exited is delivered first.

    At most max_queued output chunks wait in the queue; further chunks are
    dropped until the viewer catches up. Control messages are never dropped.
    """

    __slots__ = (
        "viewer", "queue", "task", "max_queued",
        "_queued_chunks", "_closing", "_close_code", "_unsubscribe",
    )

    def __init__(self, viewer: Viewer, max_queued: int = DEFAULT_MAX_QUEUED_CHUNKS):
        self.viewer = viewer
        self.queue: asyncio.Queue = asyncio.Queue()
        self.task: Optional[asyncio.Task] = None
        self.max_queued = max_queued
        self._queued_chunks = 0
        self._closing = False
        self._close_code = 1000
        self._unsubscribe: Callable[[], None] = lambda: None

    # Viewer capabilities seen by the registry

    @property
    def is_open(self) -> bool:
        return not self._closing and self.viewer.is_open

    async def send_json(self, message: dict) -> bool:
        if not self.is_open:
            return False
        self.queue.put_nowait(message)
        return True

    async def close(self, code: int = 1000) -> None:
        if self._closing:
            return
        self._closing = True
        self._close_code = code
        self.queue.put_nowait(_CLOSE)

    # Output

    def subscribe(self, session: ProcessSession) -> None:
        self._unsubscribe = session.process.on_data(self._on_data)

    def _on_data(self, chunk: str) -> None:
        if not self.is_open:
            return
        if self._queued_chunks >= self.max_queued:
            record_output_dropped()
            return
        self._queued_chunks += 1
        self.queue.put_nowait(chunk)

    def start(self, name: str) -> None:
        self.task = asyncio.create_task(self._run(), name=name)

    async def _run(self) -> None:
        while True:
            batch = [await self.queue.get()]
            while not self.queue.empty():
                batch.append(self.queue.get_nowait())

            chunks: List[str] = []
            for item in batch:
                if isinstance(item, str):
                    self._queued_chunks -= 1
                    chunks.append(item)
                    continue

                # Flush output queued ahead of the control message
                await self._send_output(chunks)
                chunks = []

                if item is _CLOSE:
                    await self.viewer.close(code=self._close_code)
                    return
                await self.viewer.send_json(item)

            await self._send_output(chunks)

    async def _send_output(self, chunks: List[str]) -> None:
        if chunks and self.viewer.is_open:
            await self.viewer.send_json({"type": MessageType.DATA, "data": "".join(chunks)})

    async def stop(self) -> None:
        self._unsubscribe()
        if self.task is None:
            return
        if self._closing and not self.task.done():
            # Teardown is queued; give the viewer a chance to receive it
            await asyncio.wait({self.task}, timeout=CLOSE_DRAIN_TIMEOUT)
        self.task.cancel()
        await asyncio.gather(self.task, return_exceptions=True)


class ViewerRelay:
    """
    Connects viewers to their identity's process session.

    One relay instance serves every connection; all per-connection state
    lives in serve().
    """

    __slots__ = ("registry", "max_input_length", "max_queued_chunks")

    def __init__(
        self,
        registry: SessionRegistry,
        max_input_length: int = MAX_INPUT_LENGTH,
        max_queued_chunks: int = DEFAULT_MAX_QUEUED_CHUNKS,
    ):
        self.registry = registry
        self.max_input_length = max_input_length
        self.max_queued_chunks = max_queued_chunks

    async def run(self, websocket: WebSocket, identity: str, force_new: bool = False) -> None:
        """Relay an accepted WebSocket until it disconnects."""
        await self.serve(
            WebSocketViewer(websocket),
            identity,
            _iter_frames(websocket),
            force_new=force_new
        )

    async def serve(
        self,
        viewer: Viewer,
        identity: str,
        frames: AsyncIterator[str],
        force_new: bool = False,
    ) -> None:
        """
        Attach a viewer and pump I/O until its frame stream ends.

        Process:
        1. Find or create the identity's session
        2. Attach the viewer's pump and subscribe it to process output
        3. Send {"type": "connected"} and start the output pump
        4. Dispatch inbound frames to the process
        5. Unsubscribe and detach on disconnect

        After step 2 every message to the viewer goes through the pump, so
        replies, output and the final exit message keep their order.
        """
        try:
            await self.registry.get_or_create(identity, force_new=force_new)
        except SessionSpawnError as e:
            logger.error(f"Could not start session for {identity}: {e}")
            await viewer.send_json({"type": MessageType.ERROR, "message": "Failed to start terminal session"})
            await viewer.close(code=1011)
            return

        pump = _OutputPump(viewer, max_queued=self.max_queued_chunks)
        session = await self.registry.attach(identity, pump)
        if session is None:
            await viewer.send_json({"type": MessageType.ERROR, "message": "Session ended"})
            await viewer.close()
            return

        pump.subscribe(session)
        record_viewer_connected()

        try:
            await viewer.send_json({"type": MessageType.CONNECTED})
            pump.start(name=f"relay_output_{identity}")

            async for raw in frames:
                await self._handle_frame(session, pump, raw)
                if not viewer.is_open:
                    break

        except WebSocketDisconnect:
            logger.debug(f"Viewer for {identity} disconnected")
        finally:
            await pump.stop()
            await self.registry.detach(identity, pump)
            record_viewer_disconnected()
            logger.info(f"Viewer closed for {identity}")

    async def _handle_frame(self, session: ProcessSession, viewer: Viewer, raw: str) -> None:
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring malformed message from {session.identity}")
            return

        try:
            intent = parse_client_message(message, self.max_input_length)
        except InvalidInputError as e:
            logger.warning(f"Invalid terminal input from {session.identity}: {e}")
            record_message_rejected("input")
            await viewer.send_json({"type": MessageType.ERROR, "message": "Invalid input"})
            return
        except InvalidDimensionsError as e:
            logger.warning(f"Invalid terminal dimensions from {session.identity}: {e}")
            record_message_rejected("resize")
            return

        if intent is None:
            logger.debug(f"Ignoring unrecognized message from {session.identity}")
            return

        if session.closed:
            return

        try:
            if isinstance(intent, InputIntent):
                session.process.write(intent.data)
            else:
                session.process.resize(intent.cols, intent.rows)
                logger.info(f"Terminal resized to {intent.cols}x{intent.rows} for {session.identity}")
        except OSError as e:
            logger.warning(f"Process I/O failed for {session.identity}: {e}")
            return

        session.touch()


async def _iter_frames(websocket: WebSocket) -> AsyncIterator[str]:
    """Yield text frames until the client disconnects."""
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return

        text = message.get("text")
        if text is None and message.get("bytes") is not None:
            text = message["bytes"].decode("utf-8", errors="replace")
        if text is not None:
            yield text
