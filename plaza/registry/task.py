"""
Task Model

A unit of work announced in The Plaza, with its bounty and claim state.
"""

from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class TaskStatus(str, Enum):
    """
    Task lifecycle.

    open -> claimed -> in_progress -> submitted -> completed

    Only open -> claimed is enforced by the coordinator (claim arbitration).
    Later states are reported by the working agent via work_update.
    """
    OPEN = "open"
    CLAIMED = "claimed"
    IN_PROGRESS = "in_progress"
    SUBMITTED = "submitted"
    COMPLETED = "completed"


class Task(BaseModel):
    """An announced task."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    title: str
    description: str = ""
    requirements: list[str] = Field(default_factory=list)
    bounty_amount: int = Field(
        default=0,
        ge=0,
        description="Bounty in the smallest currency unit (USDC has 6 decimals)"
    )
    poster: str = Field(
        default="",
        description="Payment address of the poster"
    )
    task_hash: str = Field(
        default="",
        description="Content address of the full task description"
    )
    status: TaskStatus = TaskStatus.OPEN
    assigned_agent: str | None = Field(
        default=None,
        description="Set once, when the task is claimed"
    )
    created_at: int = Field(
        default=0,
        description="Announcement time in epoch milliseconds"
    )
    deadline: int | None = None

    def to_public_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)
