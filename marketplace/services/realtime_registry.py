"""
Per-user Server-Sent Events registry.

One live stream per user: a new connection supersedes the previous one. Each
connection owns a bounded frame queue and its own heartbeat loop, so a slow or
dead client never stalls deliveries to anybody else.

``send`` is safe to call from worker threads (sync endpoints, the sweeper); frames
are handed to the connection's event loop with ``call_soon_threadsafe``.
"""
import asyncio
import json
import logging
import threading
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from marketplace.core import config
from marketplace.core.errors import TransportUnavailable
from marketplace.schemas.notification import ConnectedFrame, RealtimePayload

logger = logging.getLogger(__name__)

HEARTBEAT_FRAME = ": heartbeat\n\n"


def sse_frame(data: str) -> str:
    return f"data: {data}\n\n"


class StreamHandle:
    """One open output stream for one user."""

    def __init__(self, user_id: int, loop: asyncio.AbstractEventLoop, max_queue: int):
        self.user_id = user_id
        self.loop = loop
        self.queue: "asyncio.Queue[Optional[str]]" = asyncio.Queue(maxsize=max_queue)
        self.closed = False

    def push(self, frame: str) -> None:
        if self.closed:
            raise TransportUnavailable(f"Stream for user {self.user_id} is closed")
        try:
            self.loop.call_soon_threadsafe(self._enqueue, frame)
        except RuntimeError as e:
            # Event loop already shut down
            self.closed = True
            raise TransportUnavailable(f"Stream for user {self.user_id} is gone: {e}") from e

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self.loop.call_soon_threadsafe(self._enqueue, None)
        except RuntimeError:
            pass  # loop gone, nothing left to wake

    def _enqueue(self, frame: Optional[str]) -> None:
        # Bounded queue: drop the oldest frame on overflow
        try:
            self.queue.put_nowait(frame)
        except asyncio.QueueFull:
            try:
                self.queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self.queue.put_nowait(frame)


class RealtimeRegistry:
    """
    Owned, injectable map of ``user_id -> StreamHandle``.

    Mount with:
        app.state.realtime_registry = RealtimeRegistry()
    and hand it to the NotificationDispatcher.
    """

    def __init__(self, heartbeat_seconds: Optional[float] = None, max_queue: Optional[int] = None):
        self.heartbeat_seconds = heartbeat_seconds or config.SSE_HEARTBEAT_SECONDS
        self.max_queue = max_queue or config.SSE_CLIENT_QUEUE
        self._handles: Dict[int, StreamHandle] = {}
        self._lock = threading.Lock()

    def connect(self, user_id: int) -> StreamHandle:
        """Register a new stream for ``user_id``, closing any stream it supersedes."""
        handle = StreamHandle(user_id, asyncio.get_running_loop(), self.max_queue)
        with self._lock:
            previous = self._handles.get(user_id)
            self._handles[user_id] = handle

        if previous is not None:
            logger.info(f"SSE: superseding previous stream for user {user_id}")
            previous.close()

        logger.info(f"SSE: client connected user_id={user_id}, total clients: {len(self._handles)}")
        return handle

    def disconnect(self, user_id: int, handle: Optional[StreamHandle] = None) -> bool:
        """
        Remove the user's stream. Idempotent.

        When ``handle`` is given, only that exact stream is removed so a superseded
        connection cleaning up late cannot evict its replacement.
        """
        with self._lock:
            current = self._handles.get(user_id)
            if current is None or (handle is not None and current is not handle):
                removed = None
            else:
                removed = self._handles.pop(user_id)

        if removed is None:
            if handle is not None:
                handle.close()
            return False

        removed.close()
        logger.info(f"SSE: connection closed for user {user_id}")
        return True

    def send(self, user_id: int, payload: RealtimePayload) -> bool:
        """
        Push a payload to the user's open stream.

        No-op when the user is not connected. A failed write drops the stale handle.
        Returns True when the frame was handed to the stream.
        """
        with self._lock:
            handle = self._handles.get(user_id)

        if handle is None:
            logger.debug(f"SSE: no active connection for user {user_id}")
            return False

        try:
            handle.push(sse_frame(payload.model_dump_json()))
        except TransportUnavailable as e:
            logger.warning(f"SSE: error sending notification to user {user_id}: {e}")
            self.disconnect(user_id, handle)
            return False

        logger.debug(f"SSE: notification queued for user {user_id}")
        return True

    def connected_users(self) -> List[int]:
        with self._lock:
            return list(self._handles.keys())

    def is_connected(self, user_id: int) -> bool:
        with self._lock:
            return user_id in self._handles

    def close_all(self) -> None:
        with self._lock:
            handles = list(self._handles.values())
            self._handles.clear()
        for handle in handles:
            handle.close()
        logger.info(f"SSE: closed {len(handles)} stream(s) on shutdown")

    async def stream(
        self,
        handle: StreamHandle,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[str]:
        """
        Frames for one connection: the ``connected`` hello, queued notifications, and a
        heartbeat comment whenever the stream has been idle for ``heartbeat_seconds``.

        The generator ends when the handle is closed or the client goes away; a failed
        write surfaces here as cancellation/GeneratorExit and triggers the same cleanup.
        """
        try:
            yield sse_frame(json.dumps(ConnectedFrame().model_dump()))

            while True:
                if is_disconnected is not None:
                    try:
                        if await is_disconnected():
                            logger.info(f"SSE: client disconnected user_id={handle.user_id}")
                            break
                    except RuntimeError:
                        # request already finalized
                        break

                try:
                    frame = await asyncio.wait_for(handle.queue.get(), timeout=self.heartbeat_seconds)
                except asyncio.TimeoutError:
                    if handle.closed:
                        break
                    yield HEARTBEAT_FRAME
                    continue

                if frame is None:
                    break
                yield frame
        finally:
            self.disconnect(handle.user_id, handle)
