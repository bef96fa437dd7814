from pydantic import BaseModel, Field

from src.asspp.domain.models.task import Task
from src.asspp.domain.models.task_metadata import TaskMetadata
from src.asspp.domain.models.task_state import TaskState


class TaskView(BaseModel):
    """Compact representation used for task listings and status responses."""

    id: str = Field(description="Unique task identifier.")
    owner: str = Field(description="Account that submitted the task.")
    state: TaskState = Field(description="Current lifecycle state.")
    filename: str = Field(description="File name of the submitted package.")
    artifact_key: str | None = Field(default=None, description="Key to fetch the artifact.")
    artifact_size: int | None = Field(default=None, description="Artifact size in bytes.")
    artifact_sha256: str | None = Field(default=None, description="Artifact SHA-256.")
    error: str | None = Field(default=None, description="Failure detail.")
    metadata: TaskMetadata = Field(description="Lifecycle metadata for the task.")

    @classmethod
    def from_task(cls, task: Task) -> "TaskView":
        return cls(
            id=task.id,
            owner=task.owner,
            state=task.state,
            filename=task.filename,
            artifact_key=task.artifact_key,
            artifact_size=task.artifact_size,
            artifact_sha256=task.artifact_sha256,
            error=task.error,
            metadata=task.metadata,
        )
