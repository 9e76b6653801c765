# Registries
# Agent cards (presence, capabilities) and announced tasks (claim state)

from plaza.registry.agent import AgentCard, AgentStatus, ConnectedAgent, Reputation
from plaza.registry.registry import AgentRegistry, Registration
from plaza.registry.task import Task, TaskStatus
from plaza.registry.tasks import TaskRegistry

__all__ = [
    "AgentCard",
    "AgentStatus",
    "ConnectedAgent",
    "Reputation",
    "AgentRegistry",
    "Registration",
    "Task",
    "TaskStatus",
    "TaskRegistry",
]
