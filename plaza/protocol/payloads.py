"""
Plaza Payload Models

One model per message type. The envelope carries the payload as a raw
dict (that is what gets logged); handlers decode it into the matching
model exactly once, via PlazaMessage.decode_payload().

Field names are snake_case in Python and camelCase on the wire.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from plaza.registry.agent import AgentCard, AgentStatus, Reputation
from plaza.registry.task import Task, TaskStatus


class Payload(BaseModel):
    """Base for all payloads: camelCase aliases, unknown keys ignored."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


# === Agent lifecycle ===

class RegisterPayload(Payload):
    """
    An agent card without status/registeredAt.

    id, name and wallet are required but checked by the coordinator,
    so that a missing field gets a specific error instead of a
    generic validation failure.
    """
    id: str | None = None
    name: str | None = None
    description: str = ""
    capabilities: list[str] = Field(default_factory=list)
    specializations: list[str] = Field(default_factory=list)
    wallet: str | None = None
    reputation: Reputation = Field(default_factory=Reputation)

    def missing_fields(self) -> list[str]:
        return [name for name in ("id", "name", "wallet") if not getattr(self, name)]


class RegisteredPayload(Payload):
    agent_id: str


class HeartbeatPayload(Payload):
    status: AgentStatus | None = None


class AgentOnlinePayload(Payload):
    agent: AgentCard


class AgentOfflinePayload(Payload):
    agent_id: str


# === Tasks ===

class TaskAnnouncePayload(Payload):
    id: str | None = None
    title: str
    description: str = ""
    requirements: list[str] = Field(default_factory=list)
    bounty_amount: int = Field(default=0, ge=0)
    poster: str = ""
    task_hash: str = ""
    deadline: int | None = None


class NewTaskPayload(Payload):
    task: Task


class OpenTasksPayload(Payload):
    tasks: list[Task] = Field(default_factory=list)


class TaskClaimPayload(Payload):
    task_id: str
    agent_id: str


class TaskClaimedPayload(Payload):
    task_id: str
    agent_id: str
    agent_name: str


# === Messaging ===

class AgentMessagePayload(Payload):
    to: str | None = None
    content: str
    confidence_level: float | None = None


class PlazaMessagePayload(Payload):
    sender: str | None = Field(default=None, alias="from")
    content: str
    confidence_level: float | None = None
    timestamp: int


class DirectMessagePayload(Payload):
    sender: str | None = Field(default=None, alias="from")
    content: str
    confidence_level: float | None = None


# === Work ===

class WorkUpdatePayload(Payload):
    task_id: str
    status: TaskStatus
    progress: float | str | None = None
    work_hash: str | None = None


class WorkProgressPayload(Payload):
    task_id: str
    agent_id: str | None = None
    status: TaskStatus
    progress: float | str | None = None
    work_hash: str | None = None


class CoordinationRequestPayload(Payload):
    task_id: str | None = None
    subtask: str = ""
    required_capabilities: list[str] = Field(default_factory=list)


class Candidate(Payload):
    """Public summary of an agent offered as a coordination candidate."""
    id: str
    name: str
    capabilities: list[str] = Field(default_factory=list)
    specializations: list[str] = Field(default_factory=list)
    reputation: Reputation = Field(default_factory=Reputation)

    @classmethod
    def from_card(cls, card: AgentCard) -> "Candidate":
        return cls(
            id=card.id,
            name=card.name,
            capabilities=list(card.capabilities),
            specializations=list(card.specializations),
            reputation=card.reputation.model_copy(),
        )


class CoordinationOpportunityPayload(Payload):
    task_id: str | None = None
    requesting_agent: str | None = None
    subtask: str = ""
    required_capabilities: list[str] = Field(default_factory=list)
    candidates: list[Candidate] = Field(default_factory=list)


# === Subscriptions ===

class SubscribePayload(Payload):
    agent_id: str
    topics: list[str] = Field(default_factory=list)


class SubscribedPayload(Payload):
    topics: list[str] = Field(default_factory=list)


# === Errors ===

class ErrorPayload(Payload):
    error: str
