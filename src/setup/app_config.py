from __future__ import annotations

import logging
from dataclasses import dataclass

import inject

from src.asspp.application.runner import TaskRunner
from src.asspp.application.services import TaskOrchestrator
from src.asspp.domain.repositories import ObjectStoreRepository, TaskStoreRepository
from src.asspp.infrastructure.filesystem.object_store import FilesystemObjectStore
from src.asspp.infrastructure.memory.repositories import MemoryObjectStore, MemoryTaskStore
from src.asspp.infrastructure.redis.client import build_redis_client
from src.asspp.infrastructure.redis.repositories import RedisTaskStore
from src.asspp.infrastructure.s3.client import build_s3_client
from src.asspp.infrastructure.s3.repositories import S3ObjectStore
from src.asspp.infrastructure.sqlite.orm import SqliteOrm
from src.asspp.infrastructure.sqlite.repositories import SqliteTaskStore
from src.setup.storage_config import DeploymentMode, StorageSettings, get_storage_settings
from src.setup.worker_config import WorkerSettings, get_worker_settings

logger = logging.getLogger(__name__)

_binding: BackendBinding | None = None

# Edge records outlive the retention window so the sweeper can delete their
# artifacts before the namespace expires them.
_EDGE_TTL_FACTOR = 2


@dataclass(frozen=True)
class BackendBinding:
    """The adapter pair selected for this process."""

    mode: DeploymentMode
    object_store: ObjectStoreRepository
    task_store: TaskStoreRepository
    clean_orphans_on_startup: bool = False


def build_backend_binding(
    storage: StorageSettings | None = None,
    worker: WorkerSettings | None = None,
) -> BackendBinding:
    """Select and construct the adapters for the configured deployment mode."""
    storage = storage or get_storage_settings()
    worker = worker or get_worker_settings()
    mode = DeploymentMode(storage.DEPLOYMENT_MODE)

    if mode is DeploymentMode.STANDALONE:
        binding = BackendBinding(
            mode=mode,
            object_store=FilesystemObjectStore(
                storage.packages_dir, max_object_bytes=worker.MAX_ARTIFACT_BYTES
            ),
            task_store=SqliteTaskStore(SqliteOrm(storage.tasks_db_path)),
            clean_orphans_on_startup=True,
        )
    elif mode is DeploymentMode.EDGE:
        binding = BackendBinding(
            mode=mode,
            object_store=S3ObjectStore(
                build_s3_client(storage, timeout_seconds=worker.ADAPTER_TIMEOUT_SECONDS),
                storage.S3_BUCKET,
                max_object_bytes=worker.MAX_ARTIFACT_BYTES,
            ),
            task_store=RedisTaskStore(
                build_redis_client(storage, timeout_seconds=worker.ADAPTER_TIMEOUT_SECONDS),
                key_prefix=storage.TASK_KEY_PREFIX,
                ttl_seconds=worker.TASK_RETENTION_SECONDS * _EDGE_TTL_FACTOR,
            ),
        )
    else:
        binding = BackendBinding(
            mode=mode,
            object_store=MemoryObjectStore(max_object_bytes=worker.MAX_ARTIFACT_BYTES),
            task_store=MemoryTaskStore(),
        )
    logger.info("Selected storage backend", extra={"mode": mode.value})
    return binding


def configure_di(binding: BackendBinding | None = None) -> BackendBinding:
    """Build the backend binding once and bind it into the DI container."""
    global _binding
    if _binding is None:
        _binding = binding or build_backend_binding()

    if inject.is_configured():
        return _binding

    selected = _binding

    def _config(binder: inject.Binder) -> None:
        binder.bind(BackendBinding, selected)
        binder.bind(ObjectStoreRepository, selected.object_store)
        binder.bind(TaskStoreRepository, selected.task_store)
        binder.bind_to_constructor(TaskOrchestrator, TaskOrchestrator)
        binder.bind_to_constructor(TaskRunner, TaskRunner)

    inject.configure(_config)
    return _binding
