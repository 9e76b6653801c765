"""
Liveness Monitor

Periodically evicts agents whose heartbeat has expired.

This is the only thing that reclaims agents that vanish without a clean
close (crash, network partition). With the reference timings (heartbeat
every 15s, timeout 60s, sweep every 30s) an agent that goes silent is
gone at most 90s after its last heartbeat.
"""

import asyncio
import logging

from plaza.coordinator import PlazaCoordinator

logger = logging.getLogger(__name__)


class LivenessMonitor:
    """
    Background sweep over the agent registry.

    Each sweep holds the coordinator's dispatch lock, so an eviction
    never interleaves with a frame being handled.
    """

    def __init__(
        self,
        coordinator: PlazaCoordinator,
        timeout_seconds: float = 60.0,
        interval_seconds: float = 30.0
    ):
        """
        Initialize the monitor.

        Args:
            coordinator: Owner of the registry and connections
            timeout_seconds: Silence after which an agent is evicted
            interval_seconds: Time between sweeps
        """
        self._coordinator = coordinator
        self._timeout_ms = int(timeout_seconds * 1000)
        self._interval = interval_seconds
        self._sweep_task: asyncio.Task | None = None

    async def start(self) -> None:
        """Start background sweep task."""
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info(
                f"Liveness monitor started (timeout {self._timeout_ms / 1000:g}s, "
                f"sweep every {self._interval:g}s)"
            )

    async def stop(self) -> None:
        """Stop background sweep task."""
        if self._sweep_task:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
            logger.info("Liveness monitor stopped")

    @property
    def running(self) -> bool:
        return self._sweep_task is not None

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._interval)
                await self.sweep()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error in liveness sweep: {e}")

    async def sweep(self, now: int | None = None) -> list[str]:
        """
        Evict every agent whose last heartbeat is older than the timeout.

        Args:
            now: Current time in epoch milliseconds (default: coordinator clock)

        Returns:
            Ids of the evicted agents
        """
        evicted = []
        async with self._coordinator.serialized():
            now = self._coordinator.now() if now is None else now
            for agent in self._coordinator.agents.expired(now, self._timeout_ms):
                logger.info(
                    f"Agent {agent.card.name} timed out "
                    f"(last heartbeat {(now - agent.last_heartbeat) / 1000:.1f}s ago)"
                )
                self._coordinator.evict(agent, reason="Heartbeat timeout")
                evicted.append(agent.agent_id)
        return evicted
