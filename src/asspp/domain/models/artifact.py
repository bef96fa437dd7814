from datetime import datetime

from pydantic import BaseModel, Field


class ArtifactInfo(BaseModel):
    key: str = Field(description="Object store key.")
    size: int = Field(description="Size in bytes.")
    content_type: str = Field(default="application/octet-stream", description="Media type.")
    created_at: datetime | None = Field(default=None, description="When the object was written.")
    sha256: str | None = Field(default=None, description="SHA-256 of the bytes, when known.")


class ProcessedArtifact(BaseModel):
    """Output of the processing step: the bytes to persist as the task's artifact."""

    data: bytes = Field(description="Artifact bytes.")
    content_type: str = Field(default="application/octet-stream", description="Media type.")
    filename: str = Field(description="File name the artifact is stored under.")
