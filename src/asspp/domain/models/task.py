from pydantic import BaseModel, Field

from src.asspp.domain.models.task_metadata import TaskMetadata
from src.asspp.domain.models.task_state import TaskState


class Task(BaseModel):
    id: str = Field(description="Unique task identifier.")
    owner: str = Field(default="anonymous", description="Account that submitted the task.")
    idempotency_key: str = Field(description="Key deduplicating logically identical submissions.")
    state: TaskState = Field(default=TaskState.PENDING, description="Current lifecycle state.")
    filename: str = Field(description="Sanitized file name of the submitted package.")
    content_type: str = Field(
        default="application/octet-stream", description="Media type of the submitted bytes."
    )
    input_key: str | None = Field(default=None, description="Object key of the staged upload.")
    artifact_key: str | None = Field(
        default=None, description="Object key of the produced artifact, once succeeded."
    )
    artifact_size: int | None = Field(default=None, description="Size of the artifact in bytes.")
    artifact_sha256: str | None = Field(default=None, description="SHA-256 of the artifact bytes.")
    error: str | None = Field(default=None, description="Failure detail, only when failed.")
    attempts: int = Field(default=0, description="Number of processing attempts started.")
    metadata: TaskMetadata = Field(
        default_factory=TaskMetadata, description="Lifecycle metadata for the task."
    )
