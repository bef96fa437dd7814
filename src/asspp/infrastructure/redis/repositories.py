from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from datetime import UTC, datetime

from redis.asyncio import Redis
from redis.exceptions import RedisError, WatchError

from src.asspp.domain.exceptions import (
    StorageError,
    TaskAlreadyExistsError,
    TaskConflictError,
    TaskNotFoundError,
)
from src.asspp.domain.models.task import Task
from src.asspp.domain.models.task_filter import TaskFilter
from src.asspp.domain.models.task_state import TaskState
from src.asspp.domain.models.task_update import TaskUpdate
from src.asspp.domain.repositories import TaskStoreRepository
from src.asspp.infrastructure.redis.serializers import decode_task, encode_task

logger = logging.getLogger(__name__)


class RedisTaskStore(TaskStoreRepository):
    """Task records as JSON values in a Redis-protocol key-value namespace.

    Each record lives at ``<key_prefix><task id>``. When ``ttl_seconds`` is set
    the backend expires records on its own; updates keep the remaining TTL.
    Conditioned updates use WATCH/MULTI/EXEC.
    """

    def __init__(
        self,
        redis: Redis,
        *,
        key_prefix: str = "task:",
        ttl_seconds: int | None = None,
        scan_count: int = 100,
    ) -> None:
        self._redis = redis
        self._prefix = key_prefix
        self._ttl = ttl_seconds
        self._scan_count = scan_count

    def _key(self, task_id: str) -> str:
        return f"{self._prefix}{task_id}"

    async def open(self) -> None:
        try:
            await self._redis.ping()
        except RedisError as exc:
            raise StorageError(f"Task namespace unreachable: {exc}") from exc

    async def close(self) -> None:
        await self._redis.aclose()

    async def create(self, task: Task) -> None:
        try:
            created = await self._redis.set(
                self._key(task.id), encode_task(task), nx=True, ex=self._ttl
            )
        except RedisError as exc:
            raise StorageError(f"Failed to create task '{task.id}': {exc}") from exc
        if not created:
            raise TaskAlreadyExistsError(task.id)

    async def get(self, task_id: str) -> Task:
        try:
            raw = await self._redis.get(self._key(task_id))
        except RedisError as exc:
            raise StorageError(f"Failed to read task '{task_id}': {exc}") from exc
        if raw is None:
            raise TaskNotFoundError(task_id)
        return decode_task(raw)

    async def update(self, task_id: str, expected_state: TaskState, update: TaskUpdate) -> Task:
        key = self._key(task_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        if raw is None:
                            raise TaskNotFoundError(task_id)
                        current = decode_task(raw)
                        if current.state != expected_state:
                            raise TaskConflictError(
                                task_id, expected_state.value, current.state.value
                            )
                        updated = update.apply(current, datetime.now(UTC))
                        pipe.multi()
                        pipe.set(key, encode_task(updated), keepttl=True)
                        await pipe.execute()
                        return updated
                    except WatchError:
                        # Record changed between WATCH and EXEC; re-read and re-check.
                        logger.debug("Task record changed during update", extra={"task_id": task_id})
                        continue
        except RedisError as exc:
            raise StorageError(f"Failed to update task '{task_id}': {exc}") from exc

    async def list_tasks(self, task_filter: TaskFilter | None = None) -> AsyncIterator[Task]:
        """Yield matching tasks. Each call rescans the namespace."""
        task_filter = task_filter or TaskFilter()
        try:
            keys = [
                key
                async for key in self._redis.scan_iter(
                    match=f"{self._prefix}*", count=self._scan_count
                )
            ]
        except RedisError as exc:
            raise StorageError(f"Failed to list tasks: {exc}") from exc

        tasks: list[Task] = []
        for offset in range(0, len(keys), self._scan_count):
            batch = keys[offset : offset + self._scan_count]
            try:
                values = await self._redis.mget(batch)
            except RedisError as exc:
                raise StorageError(f"Failed to list tasks: {exc}") from exc
            for raw in values:
                # Expired between SCAN and MGET.
                if raw is None:
                    continue
                task = decode_task(raw)
                if task_filter.matches(task):
                    tasks.append(task)

        tasks.sort(key=lambda t: (t.metadata.created_at or datetime.min.replace(tzinfo=UTC), t.id))
        if task_filter.limit is not None:
            tasks = tasks[: task_filter.limit]
        for task in tasks:
            yield task

    async def delete(self, task_id: str, expected_state: TaskState | None = None) -> None:
        key = self._key(task_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        raw = await pipe.get(key)
                        if raw is None:
                            raise TaskNotFoundError(task_id)
                        if expected_state is not None:
                            current = decode_task(raw)
                            if current.state != expected_state:
                                raise TaskConflictError(
                                    task_id, expected_state.value, current.state.value
                                )
                        pipe.multi()
                        pipe.delete(key)
                        await pipe.execute()
                        return
                    except WatchError:
                        continue
        except RedisError as exc:
            raise StorageError(f"Failed to delete task '{task_id}': {exc}") from exc
