"""
Outbound Frame Queue

One bounded buffer plus one writer task per connection.

How frames leave the Plaza:
- The coordinator serializes an envelope once and enqueues the text
  for each recipient; enqueueing never awaits
- The writer task is the only coroutine touching the socket, so frames
  reach an agent in exactly the order they were enqueued
- A full buffer is reported to the caller (QueueFullError), which skips
  that recipient for this frame
- After a failed write the queue refuses new frames and throws away the
  backlog; the socket's own close handling reaps the connection
"""

import asyncio
import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class QueueFullError(Exception):
    """The connection's outbound buffer is at capacity."""
    def __init__(self, conn_id: str, capacity: int):
        self.conn_id = conn_id
        self.capacity = capacity
        super().__init__(f"Outbound buffer full for {conn_id} ({capacity} frames)")


class QueueClosedError(Exception):
    """The queue was stopped, or its last write failed."""
    def __init__(self, conn_id: str):
        self.conn_id = conn_id
        super().__init__(f"Outbound queue closed for {conn_id}")


class ConnectionQueue:
    """
    Ordered, bounded outbound buffer for a single connection.

    put_nowait() is synchronous so it can be called while the coordinator
    holds its dispatch lock; join() lets callers wait for the buffer to
    drain (tests, graceful flush).
    """

    def __init__(
        self,
        conn_id: str,
        write: Callable[[str], Awaitable[None]],
        max_size: int = 200
    ):
        """
        Args:
            conn_id: Connection identifier
            write: Coroutine function writing one text frame to the socket
            max_size: Frames buffered before QueueFullError
        """
        self.conn_id = conn_id
        self._write = write
        self._capacity = max_size
        self._buffer: asyncio.Queue[str] = asyncio.Queue(maxsize=max_size)
        self._writer: asyncio.Task | None = None
        self._closed = False
        self.discarded = 0

    async def start(self) -> None:
        if self._writer is None:
            self._writer = asyncio.create_task(
                self._drain(),
                name=f"outbound_{self.conn_id}"
            )

    async def stop(self) -> None:
        """Refuse new frames and cancel the writer. Buffered frames are lost."""
        self._closed = True
        writer, self._writer = self._writer, None
        if writer is None:
            return
        writer.cancel()
        try:
            await writer
        except asyncio.CancelledError:
            pass

    def put_nowait(self, frame: str) -> None:
        """
        Buffer a frame for sending.

        Raises:
            QueueClosedError: If the queue no longer accepts frames
            QueueFullError: If the buffer is at capacity
        """
        if self._closed:
            raise QueueClosedError(self.conn_id)
        try:
            self._buffer.put_nowait(frame)
        except asyncio.QueueFull:
            raise QueueFullError(self.conn_id, self._capacity) from None

    async def join(self) -> None:
        """Wait until every buffered frame has been written or discarded."""
        if self._writer is not None:
            await self._buffer.join()

    @property
    def qsize(self) -> int:
        return self._buffer.qsize()

    @property
    def closed(self) -> bool:
        return self._closed

    async def _drain(self) -> None:
        while True:
            frame = await self._buffer.get()
            try:
                if self._closed:
                    self.discarded += 1
                else:
                    await self._write(frame)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Write to {self.conn_id} failed, closing its queue: {e}")
                self._closed = True
                self.discarded += 1
            finally:
                self._buffer.task_done()
