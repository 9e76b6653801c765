"""
Plaza Agent Client

Base class for agents connecting to The Plaza.

The client is transport plus dispatch only:
1. Connects, sends register with a locally generated id, starts heartbeats
2. Becomes REGISTERED when the Plaza confirms (not when the socket opens)
3. Decodes every inbound frame and calls one of six hooks
4. Offers thin senders (claim_task, say_in_plaza, message_agent, ...)

Subclass it and implement the hooks to give an agent a decision policy,
rule-based (see plaza.client.policies) or model-backed. Hooks run on the
read loop: hand anything slow to a background task (see spawn()).
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable
from uuid import uuid4

import websockets
from websockets.exceptions import ConnectionClosed
from pydantic import ValidationError

from plaza.protocol import payloads as p
from plaza.protocol.envelope import (
    PLAZA_TOPIC,
    EnvelopeError,
    MessageType,
    PlazaMessage,
    create_agent_message,
    create_coordination_request,
    create_heartbeat,
    create_register,
    create_subscribe,
    create_task_claim,
    create_work_update,
    decode_frame,
)
from plaza.registry.agent import AgentStatus, Reputation
from plaza.registry.task import Task, TaskStatus

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    """Client connection state. Availability is tracked separately (status)."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    REGISTERED = "registered"


@dataclass
class AgentConfig:
    """
    Static metadata an agent registers with.

    Attributes:
        name: Display name
        description: What the agent does
        capabilities: Capability tags
        specializations: Narrower tags
        wallet: Payment address
        plaza_url: WebSocket URL of the Plaza
        heartbeat_interval_seconds: Time between heartbeats
        reputation: Self-reported track record sent at registration
    """
    name: str
    wallet: str
    description: str = ""
    capabilities: list[str] = field(default_factory=list)
    specializations: list[str] = field(default_factory=list)
    plaza_url: str = "ws://localhost:8080/ws"
    heartbeat_interval_seconds: float = 15.0
    reputation: Reputation = field(default_factory=lambda: Reputation(success_rate=100.0))


class PlazaAgent(ABC):
    """
    Connection, registration, heartbeat and dispatch for one agent.

    Subclasses implement on_new_task, on_task_claimed, on_plaza_message,
    on_direct_message, on_coordination_opportunity and on_work_progress.
    """

    def __init__(self, config: AgentConfig, agent_id: str | None = None):
        self.config = config
        self.agent_id = agent_id or str(uuid4())
        self.state = ConnectionState.DISCONNECTED

        # Task this agent holds, set when the Plaza confirms our claim
        self.current_task: Task | None = None

        # Tasks seen via new_task / open_tasks, by id
        self.known_tasks: dict[str, Task] = {}

        self._ws: Any = None
        self._reader_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._registered = asyncio.Event()

        self._dispatchers: dict[MessageType, Callable[[Any], Awaitable[None]]] = {
            MessageType.REGISTERED: self._on_registered,
            MessageType.ERROR: self._on_error_payload,
            MessageType.NEW_TASK: self._on_new_task_payload,
            MessageType.OPEN_TASKS: self._on_open_tasks_payload,
            MessageType.TASK_CLAIMED: self._on_task_claimed_payload,
            MessageType.PLAZA_MESSAGE: self.on_plaza_message,
            MessageType.DIRECT_MESSAGE: self.on_direct_message,
            MessageType.COORDINATION_OPPORTUNITY: self.on_coordination_opportunity,
            MessageType.WORK_PROGRESS: self.on_work_progress,
        }

    @property
    def status(self) -> AgentStatus:
        """Availability reported in heartbeats."""
        return AgentStatus.BUSY if self.current_task else AgentStatus.AVAILABLE

    @property
    def is_registered(self) -> bool:
        return self.state == ConnectionState.REGISTERED

    # === Connection ===

    async def connect(self) -> None:
        """
        Open the connection, register and start heartbeats.

        Returns once register has been sent; use wait_until_registered()
        to wait for the Plaza's confirmation.
        """
        if self.state != ConnectionState.DISCONNECTED:
            raise RuntimeError(f"{self.config.name} is already {self.state.value}")

        self.state = ConnectionState.CONNECTING
        self._registered.clear()
        try:
            self._ws = await websockets.connect(self.config.plaza_url)
        except Exception:
            self.state = ConnectionState.DISCONNECTED
            raise

        logger.info(f"{self.config.name} connected to The Plaza")

        await self._send(create_register(
            agent_id=self.agent_id,
            name=self.config.name,
            wallet=self.config.wallet,
            description=self.config.description,
            capabilities=self.config.capabilities,
            specializations=self.config.specializations,
            reputation=self.config.reputation.model_dump(),
        ))
        self._heartbeat_task = asyncio.create_task(
            self._heartbeat_loop(),
            name=f"heartbeat_{self.agent_id}"
        )
        self._reader_task = asyncio.create_task(
            self._read_loop(),
            name=f"reader_{self.agent_id}"
        )

    async def wait_until_registered(self, timeout: float = 10.0) -> None:
        """
        Wait for the registered confirmation.

        Raises:
            asyncio.TimeoutError: If it does not arrive in time
        """
        await asyncio.wait_for(self._registered.wait(), timeout)

    async def run_forever(self) -> None:
        """Block until the connection closes."""
        if self._reader_task:
            await self._reader_task

    async def disconnect(self) -> None:
        """Stop heartbeats and close the connection."""
        self._stop_heartbeat()
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if self._reader_task:
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
            self._reader_task = None
        for task in list(self._background):
            task.cancel()
        self.state = ConnectionState.DISCONNECTED

    def spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        """Run a coroutine in the background, off the read loop."""
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    # === Core protocol ===

    async def _heartbeat_loop(self) -> None:
        """Send periodic heartbeats carrying the current status."""
        while True:
            await asyncio.sleep(self.config.heartbeat_interval_seconds)
            if not await self._send(create_heartbeat(self.agent_id, self.status)):
                break

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _send(self, envelope: PlazaMessage) -> bool:
        """Send an envelope. Returns False if the connection is not open."""
        if self._ws is None:
            logger.warning(f"{self.config.name} not connected, dropping {envelope.type.value}")
            return False
        try:
            await self._ws.send(envelope.to_json())
            return True
        except ConnectionClosed:
            logger.warning(f"{self.config.name} connection closed, dropping {envelope.type.value}")
            return False

    async def _read_loop(self) -> None:
        ws = self._ws
        try:
            async for raw in ws:
                try:
                    envelope = decode_frame(raw)
                except EnvelopeError as e:
                    logger.warning(f"{self.config.name} received malformed frame: {e}")
                    continue
                await self._dispatch(envelope)

        except ConnectionClosed as e:
            logger.info(f"{self.config.name} connection closed: {e}")

        finally:
            logger.info(f"{self.config.name} disconnected from The Plaza")
            self._stop_heartbeat()
            self.state = ConnectionState.DISCONNECTED
            self._ws = None

    async def _dispatch(self, envelope: PlazaMessage) -> None:
        """Decode the payload and call the matching hook."""
        dispatcher = self._dispatchers.get(envelope.type)
        if dispatcher is None:
            logger.debug(f"{self.config.name} ignoring {envelope.type.value}")
            return

        try:
            payload = envelope.decode_payload()
        except ValidationError as e:
            logger.warning(f"{self.config.name} received invalid {envelope.type.value}: {e}")
            return

        try:
            await dispatcher(payload)
        except Exception:
            logger.exception(f"{self.config.name} failed handling {envelope.type.value}")

    async def _on_registered(self, payload: p.RegisteredPayload) -> None:
        self.state = ConnectionState.REGISTERED
        self._registered.set()
        logger.info(f"{self.config.name} registered with ID: {payload.agent_id}")

    async def _on_error_payload(self, payload: p.ErrorPayload) -> None:
        await self.on_error(payload.error)

    async def _on_new_task_payload(self, payload: p.NewTaskPayload) -> None:
        self.known_tasks[payload.task.id] = payload.task
        await self.on_new_task(payload.task)

    async def _on_open_tasks_payload(self, payload: p.OpenTasksPayload) -> None:
        for task in payload.tasks:
            self.known_tasks[task.id] = task
            await self.on_new_task(task)

    async def _on_task_claimed_payload(self, payload: p.TaskClaimedPayload) -> None:
        task = self.known_tasks.get(payload.task_id)
        if task:
            task.status = TaskStatus.CLAIMED
            task.assigned_agent = payload.agent_id
        if payload.agent_id == self.agent_id:
            self.current_task = task or Task(
                id=payload.task_id,
                title=payload.task_id,
                status=TaskStatus.CLAIMED,
                assigned_agent=self.agent_id,
            )
        await self.on_task_claimed(payload)

    # === Actions ===

    async def claim_task(self, task_id: str) -> bool:
        return await self._send(create_task_claim(task_id, self.agent_id))

    async def say_in_plaza(self, content: str, confidence_level: float | None = None) -> bool:
        """Post a public message everyone in the Plaza sees."""
        return await self._send(create_agent_message(
            self.agent_id, content, to=PLAZA_TOPIC, confidence_level=confidence_level
        ))

    async def message_agent(
        self,
        to_agent_id: str,
        content: str,
        confidence_level: float | None = None
    ) -> bool:
        """Send a private message. Dropped silently if the agent is gone."""
        return await self._send(create_agent_message(
            self.agent_id, content, to=to_agent_id, confidence_level=confidence_level
        ))

    async def update_progress(
        self,
        task_id: str,
        status: TaskStatus,
        progress: float | str | None = None,
        work_hash: str | None = None
    ) -> bool:
        """
        Report work on a task.

        Reporting submitted or completed on the held task releases it.
        """
        sent = await self._send(create_work_update(
            self.agent_id, task_id, status, progress=progress, work_hash=work_hash
        ))
        if (
            sent
            and status in (TaskStatus.SUBMITTED, TaskStatus.COMPLETED)
            and self.current_task
            and self.current_task.id == task_id
        ):
            self.release_task()
        return sent

    async def request_coordination(
        self,
        task_id: str | None,
        subtask: str,
        required_capabilities: list[str]
    ) -> bool:
        """Ask the Plaza to advertise a subtask to capable agents."""
        return await self._send(create_coordination_request(
            self.agent_id, task_id, subtask, required_capabilities
        ))

    async def subscribe(self, topics: list[str]) -> bool:
        return await self._send(create_subscribe(self.agent_id, topics))

    def release_task(self) -> None:
        """Drop the held task; the next heartbeat reports available."""
        self.current_task = None

    # === Hooks ===

    @abstractmethod
    async def on_new_task(self, task: Task) -> None:
        """Called for each announced task, and for each open task after registering."""

    @abstractmethod
    async def on_task_claimed(self, claim: p.TaskClaimedPayload) -> None:
        """Called when any agent (including this one) claims a task."""

    @abstractmethod
    async def on_plaza_message(self, message: p.PlazaMessagePayload) -> None:
        """Called for every public message, including this agent's own."""

    @abstractmethod
    async def on_direct_message(self, message: p.DirectMessagePayload) -> None:
        """Called for private messages addressed to this agent."""

    @abstractmethod
    async def on_coordination_opportunity(
        self,
        opportunity: p.CoordinationOpportunityPayload
    ) -> None:
        """Called when an agent asks for help on a subtask."""

    @abstractmethod
    async def on_work_progress(self, progress: p.WorkProgressPayload) -> None:
        """Called when any agent reports work on a task."""

    async def on_error(self, error: str) -> None:
        """Called when the Plaza rejects one of this agent's requests."""
        logger.warning(f"{self.config.name} request rejected: {error}")
