# Transport Layer
# Outbound queues and relay over live connections, plus the WebSocket binding
# (plaza.transport.handler, plaza.transport.app), kept out of this namespace
# so the coordinator can import the relay without pulling in the app

from plaza.transport.queue import ConnectionQueue, QueueClosedError, QueueFullError
from plaza.transport.relay import Connection, MessageRelay

__all__ = [
    "Connection",
    "ConnectionQueue",
    "MessageRelay",
    "QueueClosedError",
    "QueueFullError",
]
