from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class TaskMetadata(BaseModel):
    created_at: datetime | None = Field(default=None, description="When the task was submitted.")
    updated_at: datetime | None = Field(default=None, description="Last committed transition.")
    started_at: datetime | None = Field(default=None, description="When processing began.")
    finished_at: datetime | None = Field(
        default=None, description="When the task reached a terminal state."
    )
    custom: dict[str, Any] | None = Field(
        default=None, description="Free-form metadata supplied at submission."
    )
