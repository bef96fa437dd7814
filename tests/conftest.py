from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from src.asspp.application.runner import TaskRunner
from src.asspp.application.services import TaskOrchestrator
from src.asspp.domain.exceptions import StorageError
from src.asspp.domain.models.artifact import ArtifactInfo
from src.asspp.infrastructure.memory.repositories import MemoryObjectStore, MemoryTaskStore
from src.asspp.presentation.app import create_app
from src.setup.api_config import ApiSettings
from src.setup.worker_config import WorkerSettings


class FlakyObjectStore(MemoryObjectStore):
    """Memory object store whose first ``failures`` puts raise a retryable error."""

    def __init__(self, failures: int = 0, **kwargs) -> None:
        super().__init__(**kwargs)
        self.failures = failures
        self.put_calls: list[str] = []

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> ArtifactInfo:
        self.put_calls.append(key)
        if self.failures > 0:
            self.failures -= 1
            raise StorageError("bucket unavailable")
        return await super().put(key, data, content_type)


@pytest.fixture
def worker_settings() -> WorkerSettings:
    return WorkerSettings(
        MAX_ARTIFACT_BYTES=64 * 1024 * 1024,
        ADAPTER_TIMEOUT_SECONDS=5.0,
        MAX_RETRIES=2,
        RETRY_BACKOFF_SEC=0.0,
        RETRY_BACKOFF_MAX_SEC=0.0,
        MAX_CONCURRENT_TASKS=2,
        TASK_RETENTION_SECONDS=3600,
        STALE_RUNNING_SECONDS=60,
        SWEEP_INTERVAL_SEC=3600.0,
        SHUTDOWN_GRACE_SEC=1.0,
    )


@pytest.fixture
def object_store() -> FlakyObjectStore:
    return FlakyObjectStore()


@pytest.fixture
def task_store() -> MemoryTaskStore:
    return MemoryTaskStore()


@pytest.fixture
def orchestrator(
    object_store: FlakyObjectStore,
    task_store: MemoryTaskStore,
    worker_settings: WorkerSettings,
) -> TaskOrchestrator:
    return TaskOrchestrator(object_store, task_store, settings=worker_settings)


@pytest.fixture
def api_client(
    orchestrator: TaskOrchestrator,
    object_store: FlakyObjectStore,
    task_store: MemoryTaskStore,
    worker_settings: WorkerSettings,
):
    """FastAPI test client over memory adapters, with the lifespan running."""
    runner = TaskRunner(orchestrator, settings=worker_settings)
    app = create_app(
        orchestrator,
        runner,
        task_store,
        settings=ApiSettings(APP_NAME="Test API", APP_VERSION="0.1.0"),
        mode="memory",
    )
    with TestClient(app) as client:
        yield client, object_store, task_store
