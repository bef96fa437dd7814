import re

from pydantic import BaseModel, Field, field_validator

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._ -]+")


def sanitize_filename(name: str, default: str = "package.ipa") -> str:
    """Reduce ``name`` to a single safe path segment."""
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", name.replace("\\", "/").rsplit("/", 1)[-1])
    cleaned = cleaned.strip().lstrip(".")[:200]
    return cleaned or default


class SubmitRequest(BaseModel):
    owner: str = Field(
        default="anonymous",
        min_length=1,
        max_length=128,
        pattern=r"^[A-Za-z0-9_\-][A-Za-z0-9_.\-]*$",
        description="Account that owns the task.",
    )
    filename: str = Field(default="package.ipa", description="Name of the submitted package.")
    content_type: str = Field(
        default="application/octet-stream", max_length=255, description="Media type of the body."
    )
    idempotency_key: str | None = Field(
        default=None,
        min_length=1,
        max_length=255,
        description="Caller-supplied deduplication key; derived from the body when absent.",
    )
    custom: dict[str, str] | None = Field(default=None, description="Free-form metadata.")

    @field_validator("filename")
    @classmethod
    def _sanitize(cls, value: str) -> str:
        return sanitize_filename(value)
