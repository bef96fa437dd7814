from __future__ import annotations

from pydantic import ValidationError

from src.asspp.domain.exceptions import StorageError
from src.asspp.domain.models.task import Task


def encode_task(task: Task) -> str:
    return task.model_dump_json()


def decode_task(raw: str | bytes) -> Task:
    try:
        return Task.model_validate_json(raw)
    except ValidationError as exc:
        raise StorageError("Invalid task record", retryable=False) from exc
