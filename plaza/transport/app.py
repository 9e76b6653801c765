"""
Plaza Application

FastAPI application exposing The Plaza:
- /ws: WebSocket endpoint for agents (all protocol traffic)
- /agents, /tasks, /tasks/{task_id}, /messages: read-only snapshots for
  dashboards and the settlement layer
- /.well-known/agent.json: the Plaza's own agent card
- /health: counters

Configuration comes from PLAZA_* environment variables (see plaza.config),
which can be loaded from a .env file in the working directory.

Run with:
    plaza-server
or:
    uvicorn plaza.transport.app:app --port 8080
"""

import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, HTTPException, Query, Request, WebSocket

# Load environment variables from .env file
load_dotenv()

from plaza import __version__
from plaza.config import PlazaSettings, settings_from_env
from plaza.coordinator import PlazaCoordinator
from plaza.monitor import LivenessMonitor
from plaza.protocol import MessageType
from plaza.trace import MessageLog
from plaza.transport.handler import WebSocketHandler
from plaza.transport.relay import MessageRelay

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def create_app(settings: PlazaSettings | None = None) -> FastAPI:
    """
    Build a Plaza application with its own coordinator.

    Args:
        settings: Plaza settings (default: read from the environment)
    """
    settings = settings or settings_from_env()

    coordinator = PlazaCoordinator(
        relay=MessageRelay(max_queue_size=settings.max_queue_size),
        message_log=MessageLog(capacity=settings.message_log_capacity),
    )
    monitor = LivenessMonitor(
        coordinator,
        timeout_seconds=settings.heartbeat_timeout_seconds,
        interval_seconds=settings.sweep_interval_seconds,
    )
    handler = WebSocketHandler(coordinator)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Starts the liveness monitor and drains connections on shutdown.
        """
        logger.info(f"The Plaza is open on {settings.public_url}")
        await monitor.start()

        yield

        logger.info("Shutting down The Plaza...")
        await monitor.stop()
        await coordinator.relay.shutdown()
        logger.info("The Plaza is closed")

    app = FastAPI(
        title="The Plaza",
        description="Real-time coordination server for autonomous agents",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.coordinator = coordinator
    app.state.monitor = monitor

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """
        WebSocket endpoint for agent communication.

        All agent messages flow through this endpoint.
        """
        await handler.handle_connection(websocket)

    @app.get("/agents")
    async def list_agents():
        cards = await coordinator.list_agents()
        return [card.to_public_dict() for card in cards]

    @app.get("/tasks")
    async def list_tasks():
        tasks = await coordinator.list_tasks()
        return [task.to_public_dict() for task in tasks]

    @app.get("/tasks/{task_id}")
    async def get_task(task_id: str):
        task = await coordinator.get_task(task_id)
        if task is None:
            raise HTTPException(status_code=404, detail="Task not found")
        return task.to_public_dict()

    @app.get("/messages")
    async def recent_messages(
        limit: int = Query(default=100, ge=1, le=1000),
        message_type: MessageType | None = Query(default=None, alias="type"),
    ):
        """Most recent inbound envelopes, newest first. ?type= narrows to one message type."""
        messages = await coordinator.recent_messages(limit, message_type)
        return [message.to_wire() for message in messages]

    @app.get("/.well-known/agent.json")
    async def plaza_agent_card(request: Request):
        """Agent card for The Plaza itself."""
        return {
            "name": "The Plaza",
            "description": "Task marketplace coordination server",
            "url": str(request.base_url).rstrip("/"),
            "capabilities": ["task_discovery", "agent_coordination", "reputation_tracking"],
            "protocol": "websocket",
            "version": __version__,
        }

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "monitor": "running" if monitor.running else "stopped",
            **(await coordinator.stats()),
        }

    return app


_settings = settings_from_env()
configure_logging(_settings.log_level)

app = create_app(_settings)


def main() -> None:
    """Run The Plaza with uvicorn."""
    import uvicorn

    uvicorn.run(
        app,
        host=_settings.host,
        port=_settings.port,
        log_level=_settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
