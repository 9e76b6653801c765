"""
Plaza Message Envelope

Every frame exchanged with The Plaza uses the same envelope:

    {type, payload, from?, to?, timestamp, messageId}

The envelope provides:
- A closed set of message types, checked once when a frame is decoded
- Provenance (from) and addressing (to, or the "plaza" topic)
- A unique messageId and a millisecond timestamp for the message log
- A free-form payload, decoded into its typed model by the handler

Frames that fail to decode raise EnvelopeError; the coordinator turns
that into an error envelope on the same connection.
"""

import json
import time
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from plaza.protocol import payloads as p
from plaza.registry.agent import AgentCard, AgentStatus
from plaza.registry.task import Task, TaskStatus

# Recipient name for public messages
PLAZA_TOPIC = "plaza"


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return int(time.time() * 1000)


class MessageType(str, Enum):
    """
    Plaza message types.

    Client -> server requests, and server -> client events they produce:
    - register -> registered (+ agent_online to others, open_tasks to sender)
    - heartbeat -> (nothing)
    - task_announce -> new_task
    - task_claim -> task_claimed
    - agent_message -> plaza_message | direct_message
    - work_update -> work_progress
    - coordination_request -> coordination_opportunity
    - subscribe / unsubscribe -> subscribed / unsubscribed
    - any rejected request -> error
    """
    # Agent lifecycle
    REGISTER = "register"
    REGISTERED = "registered"
    HEARTBEAT = "heartbeat"
    AGENT_ONLINE = "agent_online"
    AGENT_OFFLINE = "agent_offline"

    # Tasks
    TASK_ANNOUNCE = "task_announce"
    NEW_TASK = "new_task"
    OPEN_TASKS = "open_tasks"
    TASK_CLAIM = "task_claim"
    TASK_CLAIMED = "task_claimed"

    # Messaging
    AGENT_MESSAGE = "agent_message"
    PLAZA_MESSAGE = "plaza_message"
    DIRECT_MESSAGE = "direct_message"

    # Work and coordination
    WORK_UPDATE = "work_update"
    WORK_PROGRESS = "work_progress"
    COORDINATION_REQUEST = "coordination_request"
    COORDINATION_OPPORTUNITY = "coordination_opportunity"

    # Subscriptions
    SUBSCRIBE = "subscribe"
    SUBSCRIBED = "subscribed"
    UNSUBSCRIBE = "unsubscribe"
    UNSUBSCRIBED = "unsubscribed"

    # System
    ERROR = "error"


_TYPE_VALUES = frozenset(t.value for t in MessageType)

PAYLOAD_MODELS: dict[MessageType, type[p.Payload]] = {
    MessageType.REGISTER: p.RegisterPayload,
    MessageType.REGISTERED: p.RegisteredPayload,
    MessageType.HEARTBEAT: p.HeartbeatPayload,
    MessageType.AGENT_ONLINE: p.AgentOnlinePayload,
    MessageType.AGENT_OFFLINE: p.AgentOfflinePayload,
    MessageType.TASK_ANNOUNCE: p.TaskAnnouncePayload,
    MessageType.NEW_TASK: p.NewTaskPayload,
    MessageType.OPEN_TASKS: p.OpenTasksPayload,
    MessageType.TASK_CLAIM: p.TaskClaimPayload,
    MessageType.TASK_CLAIMED: p.TaskClaimedPayload,
    MessageType.AGENT_MESSAGE: p.AgentMessagePayload,
    MessageType.PLAZA_MESSAGE: p.PlazaMessagePayload,
    MessageType.DIRECT_MESSAGE: p.DirectMessagePayload,
    MessageType.WORK_UPDATE: p.WorkUpdatePayload,
    MessageType.WORK_PROGRESS: p.WorkProgressPayload,
    MessageType.COORDINATION_REQUEST: p.CoordinationRequestPayload,
    MessageType.COORDINATION_OPPORTUNITY: p.CoordinationOpportunityPayload,
    MessageType.SUBSCRIBE: p.SubscribePayload,
    MessageType.SUBSCRIBED: p.SubscribedPayload,
    MessageType.UNSUBSCRIBE: p.SubscribePayload,
    MessageType.UNSUBSCRIBED: p.SubscribedPayload,
    MessageType.ERROR: p.ErrorPayload,
}


class EnvelopeError(Exception):
    """Raised when a frame cannot be decoded into a PlazaMessage."""


class PlazaMessage(BaseModel):
    """
    The fixed envelope for all Plaza communication.

    Also the unit recorded in the coordinator's message log.
    """
    model_config = ConfigDict(populate_by_name=True)

    type: MessageType = Field(
        ...,
        description="Message type, determines which handler runs"
    )
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description="Type-dependent content, see plaza.protocol.payloads"
    )
    sender: str | None = Field(
        default=None,
        alias="from",
        description="Sending agent id"
    )
    to: str | None = Field(
        default=None,
        description="Recipient agent id, or 'plaza' for everyone"
    )
    timestamp: int = Field(
        default_factory=now_ms,
        description="Creation time in epoch milliseconds"
    )
    message_id: str = Field(
        default_factory=lambda: str(uuid4()),
        alias="messageId",
        description="Unique per envelope"
    )

    def decode_payload(self) -> p.Payload:
        """
        Decode the payload into the model for this message type.

        Raises:
            pydantic.ValidationError: If the payload does not match
        """
        return PAYLOAD_MODELS[self.type].model_validate(self.payload)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True)


def decode_frame(data: str | bytes) -> PlazaMessage:
    """
    Parse a raw frame into an envelope.

    Raises:
        EnvelopeError: If the frame is not JSON, not an object, has an
            unknown type, or fails envelope validation
    """
    try:
        raw = json.loads(data)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise EnvelopeError("Invalid message format") from None

    if not isinstance(raw, dict):
        raise EnvelopeError("Invalid message format")

    message_type = raw.get("type")
    if not isinstance(message_type, str) or message_type not in _TYPE_VALUES:
        raise EnvelopeError(f"Unknown message type: {message_type}")

    try:
        return PlazaMessage.model_validate(raw)
    except ValidationError as e:
        raise EnvelopeError(f"Invalid message format: {e.error_count()} invalid field(s)") from e


def create_envelope(
    message_type: MessageType,
    payload: p.Payload | None = None,
    sender: str | None = None,
    to: str | None = None
) -> PlazaMessage:
    """Wrap a payload model in a new envelope."""
    return PlazaMessage(
        type=message_type,
        payload=payload.to_wire() if payload is not None else {},
        sender=sender,
        to=to,
    )


# === Server -> agent constructors ===

def create_registered(agent_id: str) -> PlazaMessage:
    return create_envelope(MessageType.REGISTERED, p.RegisteredPayload(agent_id=agent_id))


def create_agent_online(card: AgentCard) -> PlazaMessage:
    return create_envelope(MessageType.AGENT_ONLINE, p.AgentOnlinePayload(agent=card))


def create_agent_offline(agent_id: str) -> PlazaMessage:
    return create_envelope(MessageType.AGENT_OFFLINE, p.AgentOfflinePayload(agent_id=agent_id))


def create_new_task(task: Task) -> PlazaMessage:
    return create_envelope(MessageType.NEW_TASK, p.NewTaskPayload(task=task))


def create_open_tasks(tasks: list[Task]) -> PlazaMessage:
    return create_envelope(MessageType.OPEN_TASKS, p.OpenTasksPayload(tasks=tasks))


def create_task_claimed(task_id: str, agent_id: str, agent_name: str) -> PlazaMessage:
    return create_envelope(
        MessageType.TASK_CLAIMED,
        p.TaskClaimedPayload(task_id=task_id, agent_id=agent_id, agent_name=agent_name)
    )


def create_plaza_message(
    sender: str | None,
    content: str,
    confidence_level: float | None = None
) -> PlazaMessage:
    """
    Create a public plaza_message.

    The payload carries the sender too, since viewers read the payload
    and not the envelope.
    """
    return create_envelope(
        MessageType.PLAZA_MESSAGE,
        p.PlazaMessagePayload(
            sender=sender,
            content=content,
            confidence_level=confidence_level,
            timestamp=now_ms(),
        )
    )


def create_direct_message(
    sender: str | None,
    content: str,
    confidence_level: float | None = None
) -> PlazaMessage:
    return create_envelope(
        MessageType.DIRECT_MESSAGE,
        p.DirectMessagePayload(sender=sender, content=content, confidence_level=confidence_level)
    )


def create_work_progress(
    task_id: str,
    agent_id: str | None,
    status: TaskStatus,
    progress: float | str | None = None,
    work_hash: str | None = None
) -> PlazaMessage:
    return create_envelope(
        MessageType.WORK_PROGRESS,
        p.WorkProgressPayload(
            task_id=task_id,
            agent_id=agent_id,
            status=status,
            progress=progress,
            work_hash=work_hash,
        )
    )


def create_coordination_opportunity(
    task_id: str | None,
    requesting_agent: str | None,
    subtask: str,
    required_capabilities: list[str],
    candidates: list[AgentCard]
) -> PlazaMessage:
    """
    Create a coordination_opportunity broadcast.

    Candidates keep the order given (the registry ranks them).
    """
    return create_envelope(
        MessageType.COORDINATION_OPPORTUNITY,
        p.CoordinationOpportunityPayload(
            task_id=task_id,
            requesting_agent=requesting_agent,
            subtask=subtask,
            required_capabilities=required_capabilities,
            candidates=[p.Candidate.from_card(card) for card in candidates],
        )
    )


def create_subscribed(topics: list[str]) -> PlazaMessage:
    return create_envelope(MessageType.SUBSCRIBED, p.SubscribedPayload(topics=topics))


def create_unsubscribed(topics: list[str]) -> PlazaMessage:
    return create_envelope(MessageType.UNSUBSCRIBED, p.SubscribedPayload(topics=topics))


def create_error(error: str) -> PlazaMessage:
    return create_envelope(MessageType.ERROR, p.ErrorPayload(error=error))


# === Agent -> server constructors ===

def create_register(
    agent_id: str,
    name: str,
    wallet: str,
    description: str = "",
    capabilities: list[str] | None = None,
    specializations: list[str] | None = None,
    reputation: dict[str, Any] | None = None
) -> PlazaMessage:
    return create_envelope(
        MessageType.REGISTER,
        p.RegisterPayload(
            id=agent_id,
            name=name,
            description=description,
            capabilities=capabilities or [],
            specializations=specializations or [],
            wallet=wallet,
            reputation=reputation or {},
        ),
        sender=agent_id,
    )


def create_heartbeat(agent_id: str, status: AgentStatus | None = None) -> PlazaMessage:
    return create_envelope(
        MessageType.HEARTBEAT,
        p.HeartbeatPayload(status=status),
        sender=agent_id,
    )


def create_task_announce(
    title: str,
    description: str = "",
    requirements: list[str] | None = None,
    bounty_amount: int = 0,
    poster: str = "",
    task_hash: str = "",
    task_id: str | None = None,
    deadline: int | None = None,
    sender: str | None = None
) -> PlazaMessage:
    return create_envelope(
        MessageType.TASK_ANNOUNCE,
        p.TaskAnnouncePayload(
            id=task_id,
            title=title,
            description=description,
            requirements=requirements or [],
            bounty_amount=bounty_amount,
            poster=poster,
            task_hash=task_hash,
            deadline=deadline,
        ),
        sender=sender,
    )


def create_task_claim(task_id: str, agent_id: str) -> PlazaMessage:
    return create_envelope(
        MessageType.TASK_CLAIM,
        p.TaskClaimPayload(task_id=task_id, agent_id=agent_id),
        sender=agent_id,
    )


def create_agent_message(
    sender: str,
    content: str,
    to: str = PLAZA_TOPIC,
    confidence_level: float | None = None
) -> PlazaMessage:
    return create_envelope(
        MessageType.AGENT_MESSAGE,
        p.AgentMessagePayload(to=to, content=content, confidence_level=confidence_level),
        sender=sender,
    )


def create_work_update(
    sender: str,
    task_id: str,
    status: TaskStatus,
    progress: float | str | None = None,
    work_hash: str | None = None
) -> PlazaMessage:
    return create_envelope(
        MessageType.WORK_UPDATE,
        p.WorkUpdatePayload(task_id=task_id, status=status, progress=progress, work_hash=work_hash),
        sender=sender,
    )


def create_coordination_request(
    sender: str,
    task_id: str | None,
    subtask: str,
    required_capabilities: list[str]
) -> PlazaMessage:
    return create_envelope(
        MessageType.COORDINATION_REQUEST,
        p.CoordinationRequestPayload(
            task_id=task_id,
            subtask=subtask,
            required_capabilities=required_capabilities,
        ),
        sender=sender,
    )


def create_subscribe(agent_id: str, topics: list[str]) -> PlazaMessage:
    return create_envelope(
        MessageType.SUBSCRIBE,
        p.SubscribePayload(agent_id=agent_id, topics=topics),
        sender=agent_id,
    )


def create_unsubscribe(agent_id: str, topics: list[str]) -> PlazaMessage:
    return create_envelope(
        MessageType.UNSUBSCRIBE,
        p.SubscribePayload(agent_id=agent_id, topics=topics),
        sender=agent_id,
    )
