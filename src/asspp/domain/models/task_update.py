from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from src.asspp.domain.exceptions import TaskConflictError
from src.asspp.domain.models.task import Task
from src.asspp.domain.models.task_state import TaskState


class TaskUpdate(BaseModel):
    """Mutation applied by a state-conditioned task store update.

    Fields left as ``None`` keep their stored value.
    """

    state: TaskState = Field(description="State the task moves to.")
    artifact_key: str | None = None
    artifact_size: int | None = None
    artifact_sha256: str | None = None
    error: str | None = None
    attempts: int | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def apply(self, task: Task, now: datetime) -> Task:
        if not task.state.can_transition(self.state):
            raise TaskConflictError(
                task.id, expected=f"predecessor of {self.state.value}", actual=task.state.value
            )
        updated = task.model_copy(deep=True)
        updated.state = self.state
        for field in ("artifact_key", "artifact_size", "artifact_sha256", "error", "attempts"):
            value = getattr(self, field)
            if value is not None:
                setattr(updated, field, value)
        updated.metadata.updated_at = now
        if self.started_at is not None:
            updated.metadata.started_at = self.started_at
        if self.finished_at is not None:
            updated.metadata.finished_at = self.finished_at
        elif self.state.is_terminal:
            updated.metadata.finished_at = now
        return updated
