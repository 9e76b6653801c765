"""
Agent Card Model

Represents an agent connected to The Plaza.
Contains the agent's advertised card (identity, capabilities, reputation,
wallet) plus the coordinator-side connection and presence state.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class AgentStatus(str, Enum):
    """Agent availability as seen by the Plaza."""
    AVAILABLE = "available"
    BUSY = "busy"  # Holding a claimed task
    OFFLINE = "offline"


class Reputation(BaseModel):
    """
    Self-reported track record.

    Sent by the agent at registration time; the coordinator does not
    verify it, it only uses success_rate to rank coordination candidates.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    tasks_completed: int = Field(default=0, ge=0)
    success_rate: float = 0.0
    avg_rating: float = 0.0


class AgentCard(BaseModel):
    """
    Capability advertisement an agent presents to the Plaza.

    This is the public view of an agent - what every other agent and
    every dashboard gets to see about it.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    # === Identity ===
    id: str = Field(
        ...,
        description="Agent-supplied identifier (trusted on first use)"
    )
    name: str = Field(
        ...,
        description="Display name"
    )
    description: str = Field(
        default="",
        description="What the agent does, in prose"
    )

    # === Capabilities ===
    capabilities: list[str] = Field(
        default_factory=list,
        description="Free-text capability tags (e.g. 'research', 'code_review')"
    )
    specializations: list[str] = Field(
        default_factory=list,
        description="Narrower tags matched alongside capabilities"
    )

    # === Reputation & payment ===
    reputation: Reputation = Field(default_factory=Reputation)
    wallet: str = Field(
        ...,
        description="Payment address, opaque to the coordinator"
    )

    # === Presence ===
    status: AgentStatus = Field(
        default=AgentStatus.AVAILABLE,
        description="Current availability"
    )
    registered_at: int = Field(
        default=0,
        description="Registration time in epoch milliseconds"
    )

    def matches(self, tags: list[str]) -> bool:
        """True if any tag is one of this agent's capabilities or specializations."""
        return any(
            tag in self.capabilities or tag in self.specializations
            for tag in tags
        )

    def to_public_dict(self) -> dict:
        """Return the wire representation of the card."""
        return self.model_dump(mode="json", by_alias=True)


class ConnectedAgent(BaseModel):
    """
    Coordinator-side record for a registered agent.

    Binds the card to the connection it registered on. Exactly one
    connection per agent id; a later registration replaces the record.
    """

    card: AgentCard
    conn_id: str = Field(
        ...,
        description="Connection the agent registered on"
    )
    subscriptions: set[str] = Field(
        default_factory=set,
        description="Topics the agent asked for (tracked, never used for filtering)"
    )
    last_heartbeat: int = Field(
        ...,
        description="Last heartbeat time in epoch milliseconds"
    )

    @property
    def agent_id(self) -> str:
        return self.card.id

    def is_alive(self, now: int, timeout_ms: int) -> bool:
        """Check if agent is still alive based on heartbeat timeout."""
        return now - self.last_heartbeat <= timeout_ms

    def touch(self, now: int) -> None:
        """Update last_heartbeat to the given time."""
        self.last_heartbeat = now
