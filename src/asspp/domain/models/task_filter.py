from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from src.asspp.domain.models.task import Task
from src.asspp.domain.models.task_state import TaskState


@dataclass(frozen=True)
class TaskFilter:
    owner: str | None = None
    states: frozenset[TaskState] | None = None
    created_after: datetime | None = None
    created_before: datetime | None = None
    limit: int | None = None

    def matches(self, task: Task) -> bool:
        if self.owner is not None and task.owner != self.owner:
            return False
        if self.states is not None and task.state not in self.states:
            return False
        created_at = task.metadata.created_at
        if self.created_after is not None and (created_at is None or created_at < self.created_after):
            return False
        if self.created_before is not None and (
            created_at is None or created_at >= self.created_before
        ):
            return False
        return True
