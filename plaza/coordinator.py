"""
Plaza Coordinator

The control plane for The Plaza. Owns every piece of process-wide state
(agent registry, task registry, message log) and the relay that writes to
connections.

Supported message types:
- register -> registered, agent_online (others), open_tasks (sender)
- heartbeat -> (no reply)
- task_announce -> new_task (everyone)
- task_claim -> task_claimed (everyone) or error (sender)
- agent_message -> plaza_message (everyone) or direct_message (one agent)
- work_update -> work_progress (everyone)
- coordination_request -> coordination_opportunity (everyone)
- subscribe / unsubscribe -> subscribed / unsubscribed

Serialization:
Every inbound frame is logged and dispatched while holding one lock, and
that includes the broadcasts it produces. Liveness sweeps and disconnect
cleanup take the same lock. Two claims for the same open task are
therefore processed one after the other, and the first one processed wins.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable
from uuid import uuid4

from pydantic import ValidationError

from plaza.protocol import payloads as p
from plaza.protocol.envelope import (
    PLAZA_TOPIC,
    EnvelopeError,
    MessageType,
    PlazaMessage,
    create_agent_offline,
    create_agent_online,
    create_coordination_opportunity,
    create_direct_message,
    create_error,
    create_new_task,
    create_open_tasks,
    create_plaza_message,
    create_registered,
    create_subscribed,
    create_task_claimed,
    create_unsubscribed,
    create_work_progress,
    decode_frame,
    now_ms,
)
from plaza.registry import (
    AgentCard,
    AgentRegistry,
    AgentStatus,
    ConnectedAgent,
    Task,
    TaskRegistry,
    TaskStatus,
)
from plaza.trace import MessageLog
from plaza.transport.relay import Connection, MessageRelay

logger = logging.getLogger(__name__)

# Work states after which the reporting agent is free again
_RELEASING_STATUSES = {TaskStatus.SUBMITTED, TaskStatus.COMPLETED}


class PlazaError(Exception):
    """A rejected request. The message is sent back to the requester."""


Handler = Callable[[str, PlazaMessage, p.Payload], Awaitable[None]]


class PlazaCoordinator:
    """
    Dispatches inbound envelopes and enforces the claim invariants.

    Transport-neutral: connections are attached as plaza.transport.Connection
    handles and frames arrive as text through handle_frame().
    """

    def __init__(
        self,
        relay: MessageRelay | None = None,
        agents: AgentRegistry | None = None,
        tasks: TaskRegistry | None = None,
        message_log: MessageLog | None = None,
        clock: Callable[[], int] = now_ms,
    ):
        """
        Initialize the coordinator.

        Args:
            relay: Outbound side of all connections
            agents: Agent card registry
            tasks: Task registry
            message_log: Bounded log of inbound envelopes
            clock: Returns the current time in epoch milliseconds
        """
        self.relay = relay or MessageRelay()
        self.agents = agents or AgentRegistry()
        self.tasks = tasks or TaskRegistry()
        self.message_log = message_log or MessageLog()
        self._clock = clock

        # Held for each dispatch, sweep and disconnect
        self._lock = asyncio.Lock()

        self._handlers: dict[MessageType, Handler] = {
            MessageType.REGISTER: self._handle_register,
            MessageType.HEARTBEAT: self._handle_heartbeat,
            MessageType.TASK_ANNOUNCE: self._handle_task_announce,
            MessageType.TASK_CLAIM: self._handle_task_claim,
            MessageType.AGENT_MESSAGE: self._handle_agent_message,
            MessageType.WORK_UPDATE: self._handle_work_update,
            MessageType.COORDINATION_REQUEST: self._handle_coordination_request,
            MessageType.SUBSCRIBE: self._handle_subscribe,
            MessageType.UNSUBSCRIBE: self._handle_unsubscribe,
        }

    @asynccontextmanager
    async def serialized(self) -> AsyncIterator[None]:
        """Hold the dispatch lock. Used by the liveness monitor."""
        async with self._lock:
            yield

    def now(self) -> int:
        return self._clock()

    # === Connection lifecycle ===

    async def connect(self, connection: Connection) -> None:
        """Attach a new connection. It may send any message type right away."""
        await self.relay.attach(connection)
        logger.info(f"New connection to The Plaza: {connection.conn_id}")

    async def disconnect(self, conn_id: str) -> None:
        """
        Clean up after a closed connection.

        Removes the agent registered on it (if it still owns a record) and
        tells everyone else it went offline. Tasks it claimed stay claimed.
        """
        async with self._lock:
            agent = self.agents.unregister_connection(conn_id)
            if agent:
                logger.info(f"Agent {agent.card.name} left The Plaza")
                self._broadcast(create_agent_offline(agent.agent_id))
        await self.relay.detach(conn_id)

    def evict(self, agent: ConnectedAgent, reason: str) -> None:
        """
        Forcibly remove an agent and start closing its connection.

        Must be called with the dispatch lock held (see serialized()).
        The close finishes in the background, after the lock is released.
        """
        if self.agents.unregister(agent.agent_id):
            self._broadcast(create_agent_offline(agent.agent_id))
        self.relay.close_soon(agent.conn_id, code=1000, reason=reason)

    # === Inbound frames ===

    async def handle_frame(self, conn_id: str, data: str | bytes) -> None:
        """
        Decode, log and dispatch one inbound frame.

        Malformed frames get an error reply and change nothing.
        """
        try:
            envelope = decode_frame(data)
        except EnvelopeError as e:
            logger.warning(f"Malformed frame on {conn_id}: {e}")
            self.relay.send(conn_id, create_error(str(e)))
            return

        async with self._lock:
            self.message_log.append(envelope)
            await self._dispatch(conn_id, envelope)

    async def _dispatch(self, conn_id: str, envelope: PlazaMessage) -> None:
        """Route an envelope to its handler. Rejections go back to the sender only."""
        if envelope.type == MessageType.HEARTBEAT and envelope.sender not in self.agents:
            # Unknown senders are dropped before their payload is looked at
            logger.debug(f"Ignoring heartbeat from unregistered sender {envelope.sender}")
            return

        handler = self._handlers.get(envelope.type)
        try:
            if handler is None:
                raise PlazaError(f"Unknown message type: {envelope.type.value}")
            try:
                payload = envelope.decode_payload()
            except ValidationError as e:
                raise PlazaError(
                    f"Invalid {envelope.type.value} payload: {_describe(e)}"
                ) from e
            await handler(conn_id, envelope, payload)

        except PlazaError as e:
            logger.warning(f"Rejected {envelope.type.value} from {envelope.sender or conn_id}: {e}")
            self.relay.send(conn_id, create_error(str(e)))

        except Exception:
            logger.exception(f"Error handling {envelope.type.value} from {conn_id}")
            self.relay.send(conn_id, create_error("Internal error"))

    # === Handlers ===

    async def _handle_register(
        self,
        conn_id: str,
        envelope: PlazaMessage,
        payload: p.RegisterPayload
    ) -> None:
        """
        Handle register.

        Adds (or overwrites) the agent's card with status available, confirms,
        announces the agent to everyone else, and sends the registering agent
        the tasks that are open right now.
        """
        missing = payload.missing_fields()
        if missing:
            raise PlazaError(f"Missing required agent card fields: {', '.join(missing)}")

        now = self.now()
        card = AgentCard(
            id=payload.id,
            name=payload.name,
            description=payload.description,
            capabilities=payload.capabilities,
            specializations=payload.specializations,
            reputation=payload.reputation,
            wallet=payload.wallet,
            status=AgentStatus.AVAILABLE,
            registered_at=now,
        )
        registration = self.agents.register(card, conn_id, now)
        if registration.superseded_conn_id:
            self.relay.close_soon(
                registration.superseded_conn_id, code=1000, reason="Agent re-registered"
            )
        if registration.displaced_agent_id:
            logger.info(
                f"Agent {registration.displaced_agent_id} replaced by {card.id} on {conn_id}"
            )
            self._broadcast(
                create_agent_offline(registration.displaced_agent_id),
                exclude_agent_id=card.id,
            )

        logger.info(f"Agent registered: {card.name} ({card.id})")

        self.relay.send(conn_id, create_registered(card.id))
        self._broadcast(create_agent_online(card), exclude_agent_id=card.id)
        self.relay.send(conn_id, create_open_tasks(self.tasks.open_tasks()))

    async def _handle_heartbeat(
        self,
        conn_id: str,
        envelope: PlazaMessage,
        payload: p.HeartbeatPayload
    ) -> None:
        """
        Handle heartbeat from a registered sender.

        _dispatch() has already dropped unknown senders, so an evicted agent
        cannot come back by heartbeating.
        """
        status = payload.status or AgentStatus.AVAILABLE
        self.agents.heartbeat(envelope.sender, status, self.now())
        logger.debug(f"Heartbeat from {envelope.sender} ({status.value})")

    async def _handle_task_announce(
        self,
        conn_id: str,
        envelope: PlazaMessage,
        payload: p.TaskAnnouncePayload
    ) -> None:
        """Handle task_announce: store as open and tell every registered agent."""
        task = Task(
            id=payload.id or str(uuid4()),
            title=payload.title,
            description=payload.description,
            requirements=payload.requirements,
            bounty_amount=payload.bounty_amount,
            poster=payload.poster,
            task_hash=payload.task_hash,
            status=TaskStatus.OPEN,
            created_at=self.now(),
            deadline=payload.deadline,
        )
        try:
            self.tasks.add(task)
        except KeyError:
            raise PlazaError("Task already exists") from None

        logger.info(
            f"New task announced: {task.title} ({task.bounty_amount / 1e6:g} USDC)"
        )
        self._broadcast(create_new_task(task))

    async def _handle_task_claim(
        self,
        conn_id: str,
        envelope: PlazaMessage,
        payload: p.TaskClaimPayload
    ) -> None:
        """
        Handle task_claim.

        Preconditions are checked in order: task exists, task is open,
        agent is registered. The first claim processed for an open task
        wins; every later one fails with "Task is no longer available",
        including a repeat claim by the winner.
        """
        task = self.tasks.get(payload.task_id)
        if task is None:
            raise PlazaError("Task not found")

        if task.status != TaskStatus.OPEN:
            raise PlazaError("Task is no longer available")

        agent = self.agents.get(payload.agent_id)
        if agent is None:
            raise PlazaError("Agent not registered")

        self.tasks.assign(task.id, agent.agent_id)
        self.agents.set_status(agent.agent_id, AgentStatus.BUSY)

        logger.info(f"Task claimed: {task.title} by {agent.card.name}")
        self._broadcast(create_task_claimed(task.id, agent.agent_id, agent.card.name))

    async def _handle_agent_message(
        self,
        conn_id: str,
        envelope: PlazaMessage,
        payload: p.AgentMessagePayload
    ) -> None:
        """
        Handle agent_message.

        No recipient (or "plaza") means a public message to everyone.
        Otherwise the message goes to that agent only, and is dropped
        without an error if the agent is not connected.
        """
        to = payload.to or envelope.to
        if not to or to == PLAZA_TOPIC:
            logger.info(f"[{envelope.sender}]: {payload.content}")
            self._broadcast(create_plaza_message(
                envelope.sender,
                payload.content,
                payload.confidence_level,
            ))
            return

        target = self.agents.get(to)
        if target is None:
            logger.debug(f"Dropping direct message from {envelope.sender} to unknown agent {to}")
            return

        logger.debug(f"Direct message {envelope.sender} -> {to}")
        self.relay.send(target.conn_id, create_direct_message(
            envelope.sender,
            payload.content,
            payload.confidence_level,
        ))

    async def _handle_work_update(
        self,
        conn_id: str,
        envelope: PlazaMessage,
        payload: p.WorkUpdatePayload
    ) -> None:
        """
        Handle work_update.

        Overwrites the task status with whatever the agent reports (no
        transition check) and broadcasts the progress. Reporting submitted
        or completed makes the reporting agent available again.
        """
        task = self.tasks.set_status(payload.task_id, payload.status)
        if task is None:
            logger.warning(f"Ignoring work_update for unknown task {payload.task_id}")
            return

        if payload.status in _RELEASING_STATUSES and envelope.sender:
            self.agents.set_status(envelope.sender, AgentStatus.AVAILABLE)

        self._broadcast(create_work_progress(
            task.id,
            envelope.sender,
            payload.status,
            payload.progress,
            payload.work_hash,
        ))

    async def _handle_coordination_request(
        self,
        conn_id: str,
        envelope: PlazaMessage,
        payload: p.CoordinationRequestPayload
    ) -> None:
        """
        Handle coordination_request.

        Advisory only: lists available agents whose tags intersect the
        request, best success rate first, and assigns nothing.
        """
        candidates = self.agents.find_candidates(payload.required_capabilities)
        self._broadcast(create_coordination_opportunity(
            payload.task_id,
            envelope.sender,
            payload.subtask,
            payload.required_capabilities,
            [c.card for c in candidates],
        ))

    async def _handle_subscribe(
        self,
        conn_id: str,
        envelope: PlazaMessage,
        payload: p.SubscribePayload
    ) -> None:
        """Handle subscribe. Topics are recorded only; broadcasts ignore them."""
        if self.agents.subscribe(payload.agent_id, payload.topics):
            self.relay.send(conn_id, create_subscribed(payload.topics))
        else:
            logger.debug(f"Ignoring subscribe for unregistered agent {payload.agent_id}")

    async def _handle_unsubscribe(
        self,
        conn_id: str,
        envelope: PlazaMessage,
        payload: p.SubscribePayload
    ) -> None:
        remaining = self.agents.unsubscribe(payload.agent_id, payload.topics)
        if remaining is None:
            logger.debug(f"Ignoring unsubscribe for unregistered agent {payload.agent_id}")
            return
        self.relay.send(conn_id, create_unsubscribed(sorted(remaining)))

    def _broadcast(self, envelope: PlazaMessage, exclude_agent_id: str | None = None) -> int:
        """Send to every registered agent's connection."""
        return self.relay.broadcast(
            envelope,
            self.agents.conn_ids(exclude_agent_id=exclude_agent_id),
        )

    # === Read-only queries ===

    async def list_agents(self) -> list[AgentCard]:
        """Snapshot of all registered agent cards."""
        async with self._lock:
            return self.agents.cards()

    async def list_tasks(self) -> list[Task]:
        """Snapshot of all tasks, in announcement order."""
        async with self._lock:
            return self.tasks.all()

    async def get_task(self, task_id: str) -> Task | None:
        """Snapshot of one task, for the settlement layer."""
        async with self._lock:
            task = self.tasks.get(task_id)
            return task.model_copy(deep=True) if task else None

    async def recent_messages(
        self,
        limit: int = 100,
        message_type: MessageType | None = None
    ) -> list[PlazaMessage]:
        """Most recent inbound envelopes, newest first, optionally of one type."""
        async with self._lock:
            return self.message_log.recent(limit, message_type)

    async def stats(self) -> dict[str, int]:
        async with self._lock:
            return {
                "agents": self.agents.agent_count,
                "available": self.agents.available_count,
                "tasks": self.tasks.task_count,
                "open_tasks": self.tasks.open_count,
                "messages": self.message_log.total_appended,
                "connections": self.relay.connection_count,
            }


def _describe(error: ValidationError) -> str:
    """Short, single-line summary of a payload validation error."""
    fields = []
    for detail in error.errors():
        location = ".".join(str(part) for part in detail["loc"]) or "payload"
        fields.append(f"{location} ({detail['msg']})")
    return ", ".join(fields)
