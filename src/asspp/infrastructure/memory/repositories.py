from __future__ import annotations

import asyncio
import hashlib
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from src.asspp.domain.exceptions import (
    ArtifactNotFoundError,
    ArtifactTooLargeError,
    TaskAlreadyExistsError,
    TaskConflictError,
    TaskNotFoundError,
)
from src.asspp.domain.keys import validate_key
from src.asspp.domain.models.artifact import ArtifactInfo
from src.asspp.domain.models.task import Task
from src.asspp.domain.models.task_filter import TaskFilter
from src.asspp.domain.models.task_state import TaskState
from src.asspp.domain.models.task_update import TaskUpdate
from src.asspp.domain.repositories import ObjectStoreRepository, TaskStoreRepository


class MemoryObjectStore(ObjectStoreRepository):
    """Process-local object store. Contents are lost on restart."""

    def __init__(self, *, max_object_bytes: int | None = None) -> None:
        self._objects: dict[str, tuple[bytes, ArtifactInfo]] = {}
        self._max_object_bytes = max_object_bytes

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> ArtifactInfo:
        validate_key(key)
        if self._max_object_bytes is not None and len(data) > self._max_object_bytes:
            raise ArtifactTooLargeError(len(data), self._max_object_bytes)
        info = ArtifactInfo(
            key=key,
            size=len(data),
            content_type=content_type or "application/octet-stream",
            created_at=datetime.now(UTC),
            sha256=hashlib.sha256(data).hexdigest(),
        )
        self._objects[key] = (bytes(data), info)
        return info

    async def get(self, key: str) -> bytes:
        validate_key(key)
        try:
            return self._objects[key][0]
        except KeyError:
            raise ArtifactNotFoundError(key) from None

    async def delete(self, key: str) -> None:
        validate_key(key)
        if self._objects.pop(key, None) is None:
            raise ArtifactNotFoundError(key)

    async def exists(self, key: str) -> bool:
        validate_key(key)
        return key in self._objects

    async def stat(self, key: str) -> ArtifactInfo:
        validate_key(key)
        try:
            return self._objects[key][1]
        except KeyError:
            raise ArtifactNotFoundError(key) from None

    async def stream(self, key: str, chunk_size: int = 1024 * 1024) -> AsyncIterator[bytes]:
        data = await self.get(key)
        for offset in range(0, len(data), chunk_size):
            yield data[offset : offset + chunk_size]

    async def list_keys(self, prefix: str = "") -> AsyncIterator[str]:
        for key in sorted(self._objects):
            if key.startswith(prefix):
                yield key


class MemoryTaskStore(TaskStoreRepository):
    """Process-local task store; compare-and-set runs under a single lock."""

    def __init__(self) -> None:
        self._tasks: dict[str, Task] = {}
        self._lock = asyncio.Lock()

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def create(self, task: Task) -> None:
        async with self._lock:
            if task.id in self._tasks:
                raise TaskAlreadyExistsError(task.id)
            self._tasks[task.id] = task.model_copy(deep=True)

    async def get(self, task_id: str) -> Task:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task.model_copy(deep=True)

    async def update(self, task_id: str, expected_state: TaskState, update: TaskUpdate) -> Task:
        async with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise TaskNotFoundError(task_id)
            if current.state != expected_state:
                raise TaskConflictError(task_id, expected_state.value, current.state.value)
            updated = update.apply(current, datetime.now(UTC))
            self._tasks[task_id] = updated
            return updated.model_copy(deep=True)

    async def list_tasks(self, task_filter: TaskFilter | None = None) -> AsyncIterator[Task]:
        task_filter = task_filter or TaskFilter()
        snapshot = sorted(
            self._tasks.values(),
            key=lambda t: (t.metadata.created_at or datetime.min.replace(tzinfo=UTC), t.id),
        )
        emitted = 0
        for task in snapshot:
            if task_filter.limit is not None and emitted >= task_filter.limit:
                return
            if task_filter.matches(task):
                emitted += 1
                yield task.model_copy(deep=True)

    async def delete(self, task_id: str, expected_state: TaskState | None = None) -> None:
        async with self._lock:
            current = self._tasks.get(task_id)
            if current is None:
                raise TaskNotFoundError(task_id)
            if expected_state is not None and current.state != expected_state:
                raise TaskConflictError(task_id, expected_state.value, current.state.value)
            del self._tasks[task_id]
