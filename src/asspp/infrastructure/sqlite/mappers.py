from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from src.asspp.domain.models.task import Task
from src.asspp.domain.models.task_metadata import TaskMetadata
from src.asspp.infrastructure.sqlite.orm import TaskRow


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops the offset; every stored timestamp is UTC.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


class OrmMapper:
    @staticmethod
    def to_task_row(task: Task) -> TaskRow:
        return TaskRow(id=task.id, **OrmMapper.to_row_values(task))

    @staticmethod
    def to_row_values(task: Task) -> dict[str, Any]:
        metadata = task.metadata
        return {
            "owner": task.owner,
            "idempotency_key": task.idempotency_key,
            "state": task.state,
            "filename": task.filename,
            "content_type": task.content_type,
            "input_key": task.input_key,
            "artifact_key": task.artifact_key,
            "artifact_size": task.artifact_size,
            "artifact_sha256": task.artifact_sha256,
            "error": task.error,
            "attempts": task.attempts,
            "created_at": metadata.created_at,
            "updated_at": metadata.updated_at,
            "started_at": metadata.started_at,
            "finished_at": metadata.finished_at,
            "custom": metadata.custom,
        }

    @staticmethod
    def to_domain_task(row: TaskRow) -> Task:
        return Task(
            id=row.id,
            owner=row.owner,
            idempotency_key=row.idempotency_key,
            state=row.state,
            filename=row.filename,
            content_type=row.content_type,
            input_key=row.input_key,
            artifact_key=row.artifact_key,
            artifact_size=row.artifact_size,
            artifact_sha256=row.artifact_sha256,
            error=row.error,
            attempts=row.attempts,
            metadata=TaskMetadata(
                created_at=_as_utc(row.created_at),
                updated_at=_as_utc(row.updated_at),
                started_at=_as_utc(row.started_at),
                finished_at=_as_utc(row.finished_at),
                custom=row.custom,
            ),
        )
