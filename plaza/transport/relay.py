"""
Message Relay

Fan-out broadcaster and point-to-point router over live connections.

The relay knows nothing about agents: the coordinator resolves agent ids
to connection ids through the registry and hands the relay a list of
recipients. Each connection has its own outbound ConnectionQueue, so a
broadcast only enqueues frames and never waits on a slow socket.

A recipient whose queue is full or closed is logged and skipped; delivery
to everyone else continues.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable

from plaza.protocol.envelope import PlazaMessage
from plaza.transport.queue import ConnectionQueue, QueueClosedError, QueueFullError

logger = logging.getLogger(__name__)


@dataclass
class Connection:
    """
    Transport-neutral handle for one duplex connection.

    Attributes:
        conn_id: Connection identifier, unique for the life of the process
        send: Async function that writes one text frame
        close: Async function closing the connection with (code, reason)
    """
    conn_id: str
    send: Callable[[str], Awaitable[None]]
    close: Callable[[int, str], Awaitable[None]]


class MessageRelay:
    """
    Owns the outbound side of every connection.

    Creates a queue when a connection attaches and stops it on detach.
    """

    def __init__(self, max_queue_size: int = 200):
        """
        Initialize the relay.

        Args:
            max_queue_size: Outbound frames buffered per connection
        """
        self._max_queue_size = max_queue_size
        self._connections: dict[str, Connection] = {}
        self._queues: dict[str, ConnectionQueue] = {}

        # Closes started by close_soon(), still waiting on their peer
        self._closing: set[asyncio.Task] = set()

    async def attach(self, connection: Connection) -> None:
        """Start relaying to a new connection."""
        queue = ConnectionQueue(connection.conn_id, connection.send, self._max_queue_size)
        await queue.start()
        self._connections[connection.conn_id] = connection
        self._queues[connection.conn_id] = queue
        logger.debug(f"Connection attached: {connection.conn_id}")

    async def detach(self, conn_id: str) -> None:
        """Stop relaying to a connection. Unsent frames are dropped."""
        self._connections.pop(conn_id, None)
        queue = self._queues.pop(conn_id, None)
        if queue:
            await queue.stop()
            if queue.discarded:
                logger.warning(f"{queue.discarded} frame(s) for {conn_id} were never delivered")
            logger.debug(f"Connection detached: {conn_id}")

    def send(self, conn_id: str, envelope: PlazaMessage) -> bool:
        """
        Queue an envelope for one connection.

        Returns:
            True if queued, False if the connection is gone or backed up
        """
        return self._enqueue(conn_id, envelope.to_json(), envelope)

    def broadcast(self, envelope: PlazaMessage, conn_ids: Iterable[str]) -> int:
        """
        Queue an envelope for every listed connection.

        The envelope is serialized once. Failures are per recipient.

        Returns:
            Number of connections the envelope was queued for
        """
        data = envelope.to_json()
        delivered = 0
        for conn_id in conn_ids:
            if self._enqueue(conn_id, data, envelope):
                delivered += 1
        logger.debug(f"Broadcast {envelope.type.value} to {delivered} connection(s)")
        return delivered

    async def close(self, conn_id: str, code: int = 1000, reason: str = "") -> None:
        """Close a connection. Errors are logged; the connection may already be gone."""
        connection = self._connections.get(conn_id)
        if connection is None:
            return
        try:
            await connection.close(code, reason)
        except Exception as e:
            logger.warning(f"Error closing {conn_id}: {e}")

    def close_soon(self, conn_id: str, code: int = 1000, reason: str = "") -> None:
        """
        Start closing a connection without waiting for it.

        A dead peer never answers the close handshake, so callers holding
        the coordinator's dispatch lock use this instead of close().
        """
        if conn_id not in self._connections:
            return
        task = asyncio.create_task(
            self.close(conn_id, code=code, reason=reason),
            name=f"close_{conn_id}"
        )
        self._closing.add(task)
        task.add_done_callback(self._closing.discard)

    async def flush(self) -> None:
        """Wait for every queued frame to be written and every started close to finish."""
        await asyncio.gather(
            *(queue.join() for queue in list(self._queues.values())),
            *list(self._closing),
        )

    async def shutdown(self) -> None:
        """Abandon pending closes and stop all queues."""
        pending = list(self._closing)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for conn_id in list(self._queues):
            await self.detach(conn_id)

    def _enqueue(self, conn_id: str, data: str, envelope: PlazaMessage) -> bool:
        queue = self._queues.get(conn_id)
        if queue is None:
            logger.debug(f"No connection {conn_id} for {envelope.type.value}")
            return False
        try:
            queue.put_nowait(data)
            return True
        except (QueueFullError, QueueClosedError) as e:
            logger.warning(f"Skipping {envelope.type.value} for {conn_id}: {e}")
            return False

    def __contains__(self, conn_id: str) -> bool:
        return conn_id in self._connections

    @property
    def connection_count(self) -> int:
        """Number of attached connections."""
        return len(self._connections)
