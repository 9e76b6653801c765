# Agent Protocol Client
# Connection, registration, heartbeat and hook dispatch for agents

from plaza.client.agent import AgentConfig, ConnectionState, PlazaAgent
from plaza.client.policies import CapabilityAgent

__all__ = ["AgentConfig", "ConnectionState", "PlazaAgent", "CapabilityAgent"]
