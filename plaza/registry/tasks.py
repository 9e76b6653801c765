"""
Task Registry

In-memory table of announced tasks and their claim state.
Tasks are never removed; they live as long as the process.
"""

import logging

from plaza.registry.task import Task, TaskStatus

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Stores tasks in announcement order."""

    def __init__(self):
        self._tasks: dict[str, Task] = {}

    def add(self, task: Task) -> None:
        """
        Add a new task.

        Raises:
            KeyError: If a task with the same id already exists
        """
        if task.id in self._tasks:
            raise KeyError(task.id)
        self._tasks[task.id] = task

    def get(self, task_id: str | None) -> Task | None:
        if task_id is None:
            return None
        return self._tasks.get(task_id)

    def assign(self, task_id: str, agent_id: str) -> Task:
        """
        Move an open task to claimed.

        The caller checks preconditions; this only refuses to reassign.

        Raises:
            ValueError: If the task is not open
        """
        task = self._tasks[task_id]
        if task.status != TaskStatus.OPEN:
            raise ValueError(f"Task {task_id} is {task.status.value}")
        task.status = TaskStatus.CLAIMED
        task.assigned_agent = agent_id
        return task

    def set_status(self, task_id: str, status: TaskStatus) -> Task | None:
        """Overwrite a task's status. No transition checks."""
        task = self._tasks.get(task_id)
        if task:
            task.status = status
        return task

    def open_tasks(self) -> list[Task]:
        """Copies of all tasks still open."""
        return [
            task.model_copy(deep=True) for task in self._tasks.values()
            if task.status == TaskStatus.OPEN
        ]

    def all(self) -> list[Task]:
        """Copies of every task."""
        return [task.model_copy(deep=True) for task in self._tasks.values()]

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._tasks

    @property
    def task_count(self) -> int:
        return len(self._tasks)

    @property
    def open_count(self) -> int:
        return sum(1 for t in self._tasks.values() if t.status == TaskStatus.OPEN)
