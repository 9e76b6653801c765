"""
Agent Card Registry

In-memory table of connected agents, their cards and presence.
Provides lookups used by the relay (routing) and by coordination
requests (candidate matching).

Why no lock here?
- The registry is owned by the PlazaCoordinator, which serializes every
  mutation (frame dispatch and liveness sweeps) behind a single lock
- All methods are synchronous, so nothing can interleave inside one call
"""

import logging
from typing import NamedTuple

from plaza.registry.agent import AgentCard, AgentStatus, ConnectedAgent

logger = logging.getLogger(__name__)


class Registration(NamedTuple):
    """
    Outcome of AgentRegistry.register().

    Attributes:
        agent: The new record
        superseded_conn_id: Connection of an earlier registration of the same
            id, when it arrived on a different connection
        displaced_agent_id: Another agent that was registered on this
            connection and has been removed
    """
    agent: ConnectedAgent
    superseded_conn_id: str | None = None
    displaced_agent_id: str | None = None


class AgentRegistry:
    """
    Manages agent registration, presence, and capability lookup.

    Indexed by agent id, with a secondary index from connection id so that
    a closing connection can find the agent it carried.
    """

    def __init__(self):
        # Primary index: agent_id -> ConnectedAgent
        self._agents: dict[str, ConnectedAgent] = {}

        # Secondary index: conn_id -> agent_id
        self._agent_by_conn: dict[str, str] = {}

    def register(
        self,
        card: AgentCard,
        conn_id: str,
        now: int
    ) -> Registration:
        """
        Insert or overwrite an agent record.

        Args:
            card: The agent's card, with status and registered_at already set
            conn_id: Connection the registration arrived on
            now: Current time in epoch milliseconds

        Returns:
            The new record, plus whatever it replaced (see Registration)
        """
        superseded_conn_id = None
        existing = self._agents.get(card.id)
        if existing:
            self._agent_by_conn.pop(existing.conn_id, None)
            if existing.conn_id != conn_id:
                superseded_conn_id = existing.conn_id
            logger.info(f"Agent {card.id} re-registered, previous card replaced")

        # A connection carries at most one agent
        displaced_agent_id = None
        previous_id = self._agent_by_conn.get(conn_id)
        if previous_id and previous_id != card.id:
            if self._agents.pop(previous_id, None):
                displaced_agent_id = previous_id

        agent = ConnectedAgent(card=card, conn_id=conn_id, last_heartbeat=now)
        self._agents[card.id] = agent
        self._agent_by_conn[conn_id] = card.id
        return Registration(agent, superseded_conn_id, displaced_agent_id)

    def unregister(self, agent_id: str) -> ConnectedAgent | None:
        """Remove an agent by id. Returns the removed record, if any."""
        agent = self._agents.pop(agent_id, None)
        if agent:
            self._agent_by_conn.pop(agent.conn_id, None)
        return agent

    def unregister_connection(self, conn_id: str) -> ConnectedAgent | None:
        """
        Remove the agent currently bound to a connection.

        A connection whose agent re-registered elsewhere (or was evicted)
        no longer owns any record, so this returns None for it.
        """
        agent_id = self._agent_by_conn.pop(conn_id, None)
        if agent_id is None:
            return None
        return self._agents.pop(agent_id, None)

    def heartbeat(self, agent_id: str, status: AgentStatus, now: int) -> bool:
        """
        Record a heartbeat.

        Returns:
            True if the agent is registered, False otherwise. Unknown ids
            are never added here.
        """
        agent = self._agents.get(agent_id)
        if agent is None:
            return False
        agent.touch(now)
        agent.card.status = status
        return True

    def set_status(self, agent_id: str, status: AgentStatus) -> None:
        agent = self._agents.get(agent_id)
        if agent:
            agent.card.status = status

    def subscribe(self, agent_id: str, topics: list[str]) -> bool:
        agent = self._agents.get(agent_id)
        if agent is None:
            return False
        agent.subscriptions.update(topics)
        return True

    def unsubscribe(self, agent_id: str, topics: list[str]) -> set[str] | None:
        """Drop topics; returns the remaining subscriptions, or None if unknown."""
        agent = self._agents.get(agent_id)
        if agent is None:
            return None
        agent.subscriptions.difference_update(topics)
        return set(agent.subscriptions)

    def find_candidates(self, required_capabilities: list[str]) -> list[ConnectedAgent]:
        """
        Find available agents able to help with a subtask.

        Matching rules:
        1. Only available agents
        2. At least one required tag is among capabilities or specializations
        3. Sorted by reputation.success_rate, best first
        """
        candidates = [
            agent for agent in self._agents.values()
            if agent.card.status == AgentStatus.AVAILABLE
            and agent.card.matches(required_capabilities)
        ]
        candidates.sort(key=lambda a: a.card.reputation.success_rate, reverse=True)
        return candidates

    def expired(self, now: int, timeout_ms: int) -> list[ConnectedAgent]:
        """Agents whose last heartbeat is older than the timeout."""
        return [
            agent for agent in self._agents.values()
            if not agent.is_alive(now, timeout_ms)
        ]

    def get(self, agent_id: str | None) -> ConnectedAgent | None:
        if agent_id is None:
            return None
        return self._agents.get(agent_id)

    def conn_ids(self, exclude_agent_id: str | None = None) -> list[str]:
        """Connections of all registered agents, optionally minus one agent."""
        return [
            agent.conn_id for agent_id, agent in self._agents.items()
            if agent_id != exclude_agent_id
        ]

    def cards(self) -> list[AgentCard]:
        """Copies of all registered cards."""
        return [agent.card.model_copy(deep=True) for agent in self._agents.values()]

    def __contains__(self, agent_id: str) -> bool:
        return agent_id in self._agents

    @property
    def agent_count(self) -> int:
        """Number of registered agents."""
        return len(self._agents)

    @property
    def available_count(self) -> int:
        """Number of available agents."""
        return sum(
            1 for a in self._agents.values()
            if a.card.status == AgentStatus.AVAILABLE
        )
