from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol

from src.asspp.domain.models.artifact import ArtifactInfo, ProcessedArtifact
from src.asspp.domain.models.task import Task
from src.asspp.domain.models.task_filter import TaskFilter
from src.asspp.domain.models.task_state import TaskState
from src.asspp.domain.models.task_update import TaskUpdate


class ObjectStoreRepository(Protocol):
    """Repository contract for key-addressed artifact bytes.

    Every implementation applies a last-writer-wins policy: ``put`` on an
    existing key replaces its bytes, and the new bytes are visible to the
    next ``get`` from any caller.
    """

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> ArtifactInfo:
        """Store ``data`` under ``key``."""

    async def get(self, key: str) -> bytes:
        """Return the bytes stored under ``key``."""

    async def delete(self, key: str) -> None:
        """Remove ``key``; raises ``ArtifactNotFoundError`` when absent."""

    async def exists(self, key: str) -> bool:
        """Return whether ``key`` is stored."""

    async def stat(self, key: str) -> ArtifactInfo:
        """Return size and media type of ``key`` without reading its bytes."""

    def stream(self, key: str, chunk_size: int = 1024 * 1024) -> AsyncIterator[bytes]:
        """Yield the bytes of ``key`` in chunks."""

    def list_keys(self, prefix: str = "") -> AsyncIterator[str]:
        """Yield every stored key starting with ``prefix``."""


class TaskStoreRepository(Protocol):
    """Repository contract for task records with state-conditioned updates."""

    async def open(self) -> None:
        """Prepare connections or schema before first use."""

    async def close(self) -> None:
        """Release connections."""

    async def create(self, task: Task) -> None:
        """Persist a new task; raises ``TaskAlreadyExistsError`` on a duplicate id."""

    async def get(self, task_id: str) -> Task:
        """Fetch a task by id."""

    async def update(self, task_id: str, expected_state: TaskState, update: TaskUpdate) -> Task:
        """Apply ``update`` only if the stored state still equals ``expected_state``."""

    def list_tasks(self, task_filter: TaskFilter | None = None) -> AsyncIterator[Task]:
        """Yield stored tasks matching ``task_filter``, oldest first."""

    async def delete(self, task_id: str, expected_state: TaskState | None = None) -> None:
        """Remove a task, optionally only while it is still in ``expected_state``."""


class TaskProcessor(Protocol):
    async def process(self, task: Task, data: bytes) -> ProcessedArtifact:
        """Turn the staged upload of ``task`` into the artifact to persist."""
