from __future__ import annotations

import asyncio
import hashlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from datetime import UTC, datetime, timedelta
from typing import TypeVar, cast

import inject

from src.asspp.application.processors import PassthroughProcessor
from src.asspp.domain.exceptions import (
    ArtifactNotFoundError,
    ArtifactTooLargeError,
    InvalidRequestError,
    StorageError,
    TaskAccessDeniedError,
    TaskAlreadyExistsError,
    TaskConflictError,
    TaskNotFoundError,
)
from src.asspp.domain.keys import (
    PACKAGES_PREFIX,
    UPLOADS_PREFIX,
    artifact_key,
    staged_input_key,
    task_id_for,
)
from src.asspp.domain.models import (
    ArtifactInfo,
    SubmitRequest,
    Task,
    TaskFilter,
    TaskMetadata,
    TaskState,
    TaskUpdate,
    TaskView,
)
from src.asspp.domain.repositories import (
    ObjectStoreRepository,
    TaskProcessor,
    TaskStoreRepository,
)
from src.setup.worker_config import WorkerSettings, get_worker_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class TaskOrchestrator:
    """Turns submissions into tasks and drives each task to a terminal state.

    Every transition is a single conditioned task store update; losing a race
    ends the attempt without touching the record.
    """

    def __init__(
        self,
        object_store: ObjectStoreRepository | None = None,
        task_store: TaskStoreRepository | None = None,
        processor: TaskProcessor | None = None,
        settings: WorkerSettings | None = None,
    ) -> None:
        self._objects = object_store or cast(
            ObjectStoreRepository, inject.instance(ObjectStoreRepository)
        )
        self._tasks = task_store or cast(TaskStoreRepository, inject.instance(TaskStoreRepository))
        self._processor = processor or PassthroughProcessor()
        self._settings = settings or get_worker_settings()

    @property
    def retention(self) -> timedelta:
        return timedelta(seconds=self._settings.TASK_RETENTION_SECONDS)

    @property
    def max_artifact_bytes(self) -> int:
        return self._settings.MAX_ARTIFACT_BYTES

    async def submit(self, request: SubmitRequest, data: bytes) -> Task:
        """Create a pending task for ``data`` or return the task already created for it."""
        if not data:
            raise InvalidRequestError("Request body is empty")
        if len(data) > self._settings.MAX_ARTIFACT_BYTES:
            raise ArtifactTooLargeError(len(data), self._settings.MAX_ARTIFACT_BYTES)

        content_hash = hashlib.sha256(data).hexdigest()
        idempotency_key = request.idempotency_key or content_hash
        task_id = task_id_for(request.owner, idempotency_key)

        existing = await self._find(task_id)
        if existing is not None:
            logger.info(
                "Duplicate submission resolved to existing task",
                extra={"task_id": task_id, "state": existing.state.value},
            )
            return existing

        input_key = staged_input_key(task_id, content_hash)
        await self._with_retry("put", self._objects.put, input_key, data, request.content_type)

        now = datetime.now(UTC)
        custom: dict[str, object] = dict(request.custom or {})
        custom["input_sha256"] = content_hash
        custom["input_size"] = len(data)
        task = Task(
            id=task_id,
            owner=request.owner,
            idempotency_key=idempotency_key,
            state=TaskState.PENDING,
            filename=request.filename,
            content_type=request.content_type,
            input_key=input_key,
            metadata=TaskMetadata(created_at=now, updated_at=now, custom=custom),
        )
        try:
            await self._tasks.create(task)
        except TaskAlreadyExistsError:
            winner = await self._tasks.get(task_id)
            # A concurrent submission won; drop our upload unless it staged the same bytes.
            if winner.input_key != input_key:
                await self._discard(input_key)
            return winner
        logger.info(
            "Task submitted",
            extra={"task_id": task_id, "owner": request.owner, "size": len(data)},
        )
        return task

    async def status(self, task_id: str, owner: str | None = None) -> Task:
        """Return the latest committed state of a task."""
        task = await self._tasks.get(task_id)
        if owner is not None and task.owner != owner:
            raise TaskAccessDeniedError(task_id, owner)
        return task

    async def list_tasks(
        self,
        owner: str | None = None,
        *,
        states: set[TaskState] | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List tasks still inside the retention window."""
        task_filter = TaskFilter(
            owner=owner,
            states=frozenset(states) if states else None,
            created_after=datetime.now(UTC) - self.retention,
            limit=limit,
        )
        return [TaskView.from_task(task) async for task in self._tasks.list_tasks(task_filter)]

    async def process(self, task_id: str) -> Task | None:
        """Run one processing attempt. Returns None when another worker owns the task."""
        try:
            task = await self._tasks.get(task_id)
            task = await self._tasks.update(
                task_id,
                TaskState.PENDING,
                TaskUpdate(
                    state=TaskState.RUNNING,
                    attempts=task.attempts + 1,
                    started_at=datetime.now(UTC),
                ),
            )
        except (TaskConflictError, TaskNotFoundError) as exc:
            logger.info("Skipping task", extra={"task_id": task_id, "reason": str(exc)})
            return None

        try:
            finished = await self._produce_artifact(task)
        except TaskConflictError as exc:
            logger.info("Task advanced elsewhere", extra={"task_id": task_id, "reason": str(exc)})
            return None
        except TaskNotFoundError:
            logger.info("Task deleted while running", extra={"task_id": task_id})
            return None
        except Exception as exc:
            logger.exception("Task processing failed", extra={"task_id": task_id})
            return await self._fail(task_id, str(exc) or exc.__class__.__name__)

        if finished.input_key:
            await self._discard(finished.input_key)
        logger.info(
            "Task succeeded",
            extra={"task_id": task_id, "artifact_key": finished.artifact_key},
        )
        return finished

    async def delete_task(self, task_id: str, owner: str | None = None) -> None:
        """Delete the task record first, then its objects."""
        task = await self.status(task_id, owner)
        if task.state == TaskState.RUNNING:
            raise TaskConflictError(task_id, "not running", task.state.value)
        await self._tasks.delete(task_id, expected_state=task.state)
        for key in (task.artifact_key, task.input_key):
            if key:
                await self._discard(key)
        logger.info("Task deleted", extra={"task_id": task_id})

    async def package(self, task_id: str) -> Task:
        """Return a task whose artifact is ready to install."""
        task = await self._tasks.get(task_id)
        if task.state != TaskState.SUCCEEDED or task.artifact_key is None:
            raise ArtifactNotFoundError(f"packages/{task_id}")
        return task

    async def artifact_info(self, key: str) -> ArtifactInfo:
        return await self._with_timeout(self._objects.stat(key))

    def open_artifact(self, key: str, chunk_size: int = 1024 * 1024) -> AsyncIterator[bytes]:
        return self._objects.stream(key, chunk_size)

    async def recover(self) -> list[str]:
        """Fail stale ``running`` tasks and return ids of pending tasks to dispatch.

        Runs over every record regardless of age, so a task interrupted long
        ago still reaches a terminal state and becomes prunable.
        """
        candidates = [
            task
            async for task in self._tasks.list_tasks(
                TaskFilter(states=frozenset({TaskState.PENDING, TaskState.RUNNING}))
            )
        ]
        pending: list[str] = []
        for task in candidates:
            if task.state == TaskState.PENDING:
                pending.append(task.id)
            elif self._is_stale(task):
                await self._fail_stale(task)
        return pending

    async def prune_expired(self, now: datetime | None = None) -> int:
        """Delete tasks older than the retention window, with their objects.

        Running tasks are kept unless they are stale, in which case they are
        failed first and pruned with the rest.
        """
        cutoff = (now or datetime.now(UTC)) - self.retention
        expired = [
            task async for task in self._tasks.list_tasks(TaskFilter(created_before=cutoff))
        ]
        pruned = 0
        for task in expired:
            if task.state == TaskState.RUNNING:
                if not self._is_stale(task):
                    continue
                failed = await self._fail_stale(task)
                if failed is None:
                    continue
                task = failed
            try:
                await self._tasks.delete(task.id, expected_state=task.state)
            except (TaskConflictError, TaskNotFoundError):
                continue
            for key in (task.artifact_key, task.input_key):
                if key:
                    await self._discard(key)
            pruned += 1
        if pruned:
            logger.info("Pruned expired tasks", extra={"count": pruned})
        return pruned

    async def remove_orphaned_artifacts(self) -> int:
        """Delete staged inputs and artifacts no task refers to."""
        remove_temporary_files = getattr(self._objects, "remove_temporary_files", None)
        if remove_temporary_files is not None:
            await remove_temporary_files()
        known: set[str] = set()
        async for task in self._tasks.list_tasks(TaskFilter()):
            known.update(key for key in (task.input_key, task.artifact_key) if key)
        removed = 0
        for prefix in (UPLOADS_PREFIX, PACKAGES_PREFIX):
            orphans = [key async for key in self._objects.list_keys(prefix) if key not in known]
            for key in orphans:
                await self._discard(key)
                removed += 1
        if removed:
            logger.info("Removed orphaned objects", extra={"count": removed})
        return removed

    async def _produce_artifact(self, task: Task) -> Task:
        if task.input_key is None:
            raise InvalidRequestError("Task has no staged input")
        data = await self._with_retry("get", self._objects.get, task.input_key)
        output = await self._processor.process(task, data)
        key = artifact_key(task.owner, task.id, output.filename)
        info = await self._with_retry("put", self._objects.put, key, output.data, output.content_type)
        return await self._tasks.update(
            task.id,
            TaskState.RUNNING,
            TaskUpdate(
                state=TaskState.SUCCEEDED,
                artifact_key=key,
                artifact_size=info.size,
                artifact_sha256=info.sha256 or hashlib.sha256(output.data).hexdigest(),
            ),
        )

    def _is_stale(self, task: Task) -> bool:
        stale_before = datetime.now(UTC) - timedelta(seconds=self._settings.STALE_RUNNING_SECONDS)
        updated_at = task.metadata.updated_at or task.metadata.created_at
        return updated_at is not None and updated_at < stale_before

    async def _fail_stale(self, task: Task) -> Task | None:
        try:
            failed = await self._tasks.update(
                task.id,
                TaskState.RUNNING,
                TaskUpdate(state=TaskState.FAILED, error="Processing was interrupted"),
            )
        except (TaskConflictError, TaskNotFoundError):
            return None
        logger.warning("Failed stale running task", extra={"task_id": task.id})
        return failed

    async def _fail(self, task_id: str, error: str) -> Task | None:
        try:
            return await self._tasks.update(
                task_id, TaskState.RUNNING, TaskUpdate(state=TaskState.FAILED, error=error)
            )
        except (TaskConflictError, TaskNotFoundError) as exc:
            logger.info("Could not record failure", extra={"task_id": task_id, "reason": str(exc)})
            return None

    async def _find(self, task_id: str) -> Task | None:
        try:
            return await self._tasks.get(task_id)
        except TaskNotFoundError:
            return None

    async def _discard(self, key: str) -> None:
        try:
            await self._with_retry("delete", self._objects.delete, key)
        except ArtifactNotFoundError:
            return

    async def _with_timeout(self, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._settings.ADAPTER_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as exc:
            raise StorageError(
                f"Object store call exceeded {self._settings.ADAPTER_TIMEOUT_SECONDS}s"
            ) from exc

    async def _with_retry(self, operation: str, call: Callable[..., Awaitable[T]], *args) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                return await self._with_timeout(call(*args))
            except StorageError as exc:
                if not exc.retryable or attempt > self._settings.MAX_RETRIES:
                    raise
                delay = min(
                    self._settings.RETRY_BACKOFF_SEC * (2 ** (attempt - 1)),
                    self._settings.RETRY_BACKOFF_MAX_SEC,
                )
                logger.warning(
                    "Object store call failed, retrying",
                    extra={"operation": operation, "attempt": attempt, "delay": delay, "error": str(exc)},
                )
                await asyncio.sleep(delay)
