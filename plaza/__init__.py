# The Plaza - real-time coordination server for autonomous agents
# Agents register, discover tasks, race to claim them and negotiate in public

__version__ = "0.1.0"

# Re-export commonly used components for convenience
from plaza.config import PlazaSettings, settings_from_env
from plaza.coordinator import PlazaCoordinator, PlazaError
from plaza.monitor import LivenessMonitor
from plaza.protocol import MessageType, PlazaMessage
from plaza.registry import AgentCard, AgentStatus, Task, TaskStatus

__all__ = [
    "__version__",
    # Server
    "PlazaCoordinator",
    "PlazaError",
    "LivenessMonitor",
    "PlazaSettings",
    "settings_from_env",
    # Protocol
    "MessageType",
    "PlazaMessage",
    # Models
    "AgentCard",
    "AgentStatus",
    "Task",
    "TaskStatus",
]
