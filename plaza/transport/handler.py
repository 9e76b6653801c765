"""
WebSocket Handler

Binds FastAPI WebSocket connections to the PlazaCoordinator.

The handler only moves frames: it accepts the socket, wraps it in a
transport-neutral Connection, feeds every inbound frame to the
coordinator and reports the close. All protocol logic lives in the
coordinator.

Why WebSocket?
- Bidirectional communication
- Real-time broadcast of plaza events
- Connection state doubles as agent presence
"""

import logging
from uuid import uuid4

from fastapi import WebSocket, WebSocketDisconnect

from plaza.coordinator import PlazaCoordinator
from plaza.transport.relay import Connection

logger = logging.getLogger(__name__)


class WebSocketHandler:
    """Runs the receive loop for each connected socket."""

    def __init__(self, coordinator: PlazaCoordinator):
        self._coordinator = coordinator

    async def handle_connection(self, websocket: WebSocket) -> None:
        """
        Handle a WebSocket connection lifecycle.

        Any message type may be sent from the first frame on; only
        agents that register become broadcast recipients.

        Args:
            websocket: The WebSocket connection
        """
        await websocket.accept()

        conn_id = f"conn-{uuid4().hex[:12]}"

        async def close(code: int, reason: str) -> None:
            await websocket.close(code=code, reason=reason)

        await self._coordinator.connect(
            Connection(conn_id=conn_id, send=websocket.send_text, close=close)
        )

        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break

                data = message.get("text")
                if data is None:
                    data = message.get("bytes") or b""
                await self._coordinator.handle_frame(conn_id, data)

        except WebSocketDisconnect:
            pass

        except Exception as e:
            logger.error(f"WebSocket error on {conn_id}: {e}")

        finally:
            logger.info(f"WebSocket disconnected: {conn_id}")
            await self._coordinator.disconnect(conn_id)
