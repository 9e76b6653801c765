"""
Rule-based agent policy.

CapabilityAgent claims tasks whose requirements mention one of its tags
and offers help on coordination requests it can serve. It is the
reference policy the demo agents run; a model-backed agent would replace
these hooks.
"""

import asyncio
import logging

from plaza.client.agent import AgentConfig, PlazaAgent
from plaza.protocol import payloads as p
from plaza.registry.task import Task, TaskStatus

logger = logging.getLogger(__name__)


class CapabilityAgent(PlazaAgent):
    """
    Claims the first matching open task it sees.

    A requirement matches when one of the agent's capabilities or
    specializations appears in it (case-insensitive substring).
    """

    def __init__(
        self,
        config: AgentConfig,
        agent_id: str | None = None,
        claim_delay_seconds: float = 0.0,
        confidence_level: float = 0.8
    ):
        """
        Args:
            config: Agent metadata
            agent_id: Fixed id (default: random)
            claim_delay_seconds: Pause between announcing interest and claiming,
                giving others a chance to speak up first
            confidence_level: Confidence attached to plaza messages
        """
        super().__init__(config, agent_id)
        self.claim_delay_seconds = claim_delay_seconds
        self.confidence_level = confidence_level
        self._pending_claim: str | None = None

    @property
    def tags(self) -> list[str]:
        return [t.lower() for t in self.config.capabilities + self.config.specializations]

    def matches(self, text: str) -> bool:
        text = text.lower()
        return any(tag.replace("_", " ") in text or tag in text for tag in self.tags)

    def wants(self, task: Task) -> bool:
        return (
            task.status == TaskStatus.OPEN
            and self.current_task is None
            and self._pending_claim is None
            and any(self.matches(req) for req in task.requirements)
        )

    async def on_new_task(self, task: Task) -> None:
        logger.info(f"[{self.config.name}] New task: {task.title}")
        if not self.wants(task):
            return

        self._pending_claim = task.id
        await self.say_in_plaza(
            f'I see task "{task.title}" - it matches my capabilities. Anyone else interested?',
            self.confidence_level,
        )
        self.spawn(self._claim_later(task.id))

    async def _claim_later(self, task_id: str) -> None:
        if self.claim_delay_seconds:
            await asyncio.sleep(self.claim_delay_seconds)
        task = self.known_tasks.get(task_id)
        if task is None or task.status != TaskStatus.OPEN or self.current_task:
            self._pending_claim = None
            return
        await self.claim_task(task_id)

    async def on_task_claimed(self, claim: p.TaskClaimedPayload) -> None:
        if claim.task_id == self._pending_claim:
            self._pending_claim = None

        if claim.agent_id == self.agent_id:
            logger.info(f"[{self.config.name}] Claimed task {claim.task_id}")
            await self.say_in_plaza("I've claimed this task. Starting work...", 0.9)
        else:
            logger.info(f"[{self.config.name}] Task {claim.task_id} claimed by {claim.agent_name}")

    async def on_plaza_message(self, message: p.PlazaMessagePayload) -> None:
        if message.sender != self.agent_id:
            logger.info(f"[Plaza] {message.sender}: {message.content}")

    async def on_direct_message(self, message: p.DirectMessagePayload) -> None:
        logger.info(f"[{self.config.name}] DM from {message.sender}: {message.content}")

    async def on_coordination_opportunity(
        self,
        opportunity: p.CoordinationOpportunityPayload
    ) -> None:
        if opportunity.requesting_agent in (None, self.agent_id) or self.current_task:
            return
        tags = set(self.tags)
        if not any(cap.lower() in tags for cap in opportunity.required_capabilities):
            return

        logger.info(f"[{self.config.name}] Can help with: {opportunity.subtask}")
        await self.message_agent(
            opportunity.requesting_agent,
            f'I can handle "{opportunity.subtask}". Want to coordinate?',
            self.confidence_level,
        )

    async def on_work_progress(self, progress: p.WorkProgressPayload) -> None:
        logger.debug(
            f"[{self.config.name}] {progress.agent_id} reports {progress.status.value} "
            f"on {progress.task_id}"
        )

    async def on_error(self, error: str) -> None:
        await super().on_error(error)
        self._pending_claim = None
