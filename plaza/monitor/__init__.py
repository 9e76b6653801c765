# Liveness Monitor
# Evicts agents whose heartbeats stopped

from plaza.monitor.liveness import LivenessMonitor

__all__ = ["LivenessMonitor"]
