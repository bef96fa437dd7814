from __future__ import annotations

import asyncio
import hashlib
from datetime import UTC, datetime, timedelta

import pytest

from src.asspp.application.install import build_manifest, install_link
from src.asspp.application.processors import PassthroughProcessor
from src.asspp.application.services import TaskOrchestrator
from src.asspp.domain.exceptions import (
    ArtifactNotFoundError,
    ArtifactTooLargeError,
    InvalidRequestError,
    ProcessingError,
    StorageError,
    TaskAccessDeniedError,
    TaskConflictError,
    TaskNotFoundError,
)
from src.asspp.domain.models import SubmitRequest, Task, TaskMetadata, TaskState, TaskUpdate
from src.asspp.domain.models.artifact import ProcessedArtifact
from src.asspp.infrastructure.sqlite.orm import SqliteOrm
from src.asspp.infrastructure.sqlite.repositories import SqliteTaskStore
from tests.conftest import FlakyObjectStore


class ExplodingProcessor:
    async def process(self, task, data):
        raise RuntimeError("cannot repackage")


class UppercaseProcessor:
    async def process(self, task, data):
        return ProcessedArtifact(data=data.upper(), content_type="text/plain", filename="out.txt")


@pytest.mark.asyncio
async def test_submit_creates_pending_task_with_staged_input(orchestrator, object_store) -> None:
    task = await orchestrator.submit(SubmitRequest(owner="alice", filename="App.ipa"), b"ipa-bytes")

    assert task.state == TaskState.PENDING
    digest = hashlib.sha256(b"ipa-bytes").hexdigest()
    assert task.input_key == f"uploads/{task.id}/{digest}"
    assert await object_store.get(task.input_key) == b"ipa-bytes"
    assert task.metadata.custom["input_sha256"] == digest

    status = await orchestrator.status(task.id)
    assert status.state in {TaskState.PENDING, TaskState.RUNNING, TaskState.SUCCEEDED}


@pytest.mark.asyncio
async def test_resubmission_returns_same_task_without_second_write(
    orchestrator, object_store
) -> None:
    request = SubmitRequest(owner="alice", filename="App.ipa")

    first = await orchestrator.submit(request, b"same-bytes")
    second = await orchestrator.submit(request, b"same-bytes")

    assert first.id == second.id
    assert object_store.put_calls == [first.input_key]


@pytest.mark.asyncio
async def test_idempotency_key_overrides_body_hash(orchestrator) -> None:
    first = await orchestrator.submit(
        SubmitRequest(owner="alice", idempotency_key="order-1"), b"one"
    )
    second = await orchestrator.submit(
        SubmitRequest(owner="alice", idempotency_key="order-1"), b"two"
    )
    other_owner = await orchestrator.submit(
        SubmitRequest(owner="bob", idempotency_key="order-1"), b"one"
    )

    assert first.id == second.id
    assert other_owner.id != first.id


@pytest.mark.asyncio
async def test_submit_rejects_empty_and_oversized_bodies(orchestrator, worker_settings) -> None:
    with pytest.raises(InvalidRequestError):
        await orchestrator.submit(SubmitRequest(), b"")

    worker_settings.MAX_ARTIFACT_BYTES = 4
    with pytest.raises(ArtifactTooLargeError):
        await orchestrator.submit(SubmitRequest(), b"12345")


@pytest.mark.asyncio
async def test_process_publishes_artifact(orchestrator, object_store) -> None:
    task = await orchestrator.submit(SubmitRequest(owner="alice", filename="App.ipa"), b"payload")

    finished = await orchestrator.process(task.id)

    assert finished is not None
    assert finished.state == TaskState.SUCCEEDED
    assert finished.attempts == 1
    assert finished.artifact_key == f"packages/alice/{task.id}/App.ipa"
    assert finished.artifact_size == 7
    assert finished.artifact_sha256 == hashlib.sha256(b"payload").hexdigest()
    assert finished.metadata.started_at is not None
    assert finished.metadata.finished_at is not None
    assert await object_store.get(finished.artifact_key) == b"payload"
    # The staged upload is discarded once the artifact exists.
    assert not await object_store.exists(task.input_key)


@pytest.mark.asyncio
async def test_process_uses_configured_processor(object_store, task_store, worker_settings) -> None:
    orchestrator = TaskOrchestrator(
        object_store, task_store, processor=UppercaseProcessor(), settings=worker_settings
    )
    task = await orchestrator.submit(SubmitRequest(owner="alice"), b"abc")

    finished = await orchestrator.process(task.id)

    assert finished.artifact_key.endswith("/out.txt")
    assert await object_store.get(finished.artifact_key) == b"ABC"


@pytest.mark.asyncio
async def test_processor_failure_marks_task_failed(object_store, task_store, worker_settings) -> None:
    orchestrator = TaskOrchestrator(
        object_store, task_store, processor=ExplodingProcessor(), settings=worker_settings
    )
    task = await orchestrator.submit(SubmitRequest(owner="alice"), b"abc")

    failed = await orchestrator.process(task.id)

    assert failed.state == TaskState.FAILED
    assert failed.error == "cannot repackage"
    assert failed.artifact_key is None


@pytest.mark.asyncio
async def test_process_skips_task_that_is_not_pending(orchestrator, task_store) -> None:
    task = await orchestrator.submit(SubmitRequest(owner="alice"), b"abc")
    await task_store.update(task.id, TaskState.PENDING, TaskUpdate(state=TaskState.RUNNING))

    assert await orchestrator.process(task.id) is None
    assert await orchestrator.process("unknown") is None


@pytest.mark.asyncio
async def test_only_one_concurrent_attempt_wins(orchestrator, object_store) -> None:
    task = await orchestrator.submit(SubmitRequest(owner="alice"), b"abc")

    results = await asyncio.gather(orchestrator.process(task.id), orchestrator.process(task.id))

    finished = [r for r in results if r is not None]
    assert len(finished) == 1
    assert finished[0].state == TaskState.SUCCEEDED
    assert finished[0].attempts == 1


@pytest.mark.asyncio
async def test_transient_storage_errors_are_retried(task_store, worker_settings) -> None:
    store = FlakyObjectStore(failures=2)
    orchestrator = TaskOrchestrator(store, task_store, settings=worker_settings)

    task = await orchestrator.submit(SubmitRequest(owner="alice"), b"abc")

    assert len(store.put_calls) == 3
    assert await store.get(task.input_key) == b"abc"


@pytest.mark.asyncio
async def test_retries_give_up_after_limit(task_store, worker_settings) -> None:
    store = FlakyObjectStore(failures=10)
    orchestrator = TaskOrchestrator(store, task_store, settings=worker_settings)

    with pytest.raises(StorageError):
        await orchestrator.submit(SubmitRequest(owner="alice"), b"abc")

    assert len(store.put_calls) == worker_settings.MAX_RETRIES + 1
    assert [task async for task in task_store.list_tasks()] == []


@pytest.mark.asyncio
async def test_failed_artifact_write_fails_task(task_store, worker_settings) -> None:
    store = FlakyObjectStore()
    orchestrator = TaskOrchestrator(store, task_store, settings=worker_settings)
    task = await orchestrator.submit(SubmitRequest(owner="alice"), b"abc")
    store.failures = 10

    failed = await orchestrator.process(task.id)

    assert failed.state == TaskState.FAILED
    assert "bucket unavailable" in failed.error


@pytest.mark.asyncio
async def test_status_enforces_owner(orchestrator) -> None:
    task = await orchestrator.submit(SubmitRequest(owner="alice"), b"abc")

    assert (await orchestrator.status(task.id, "alice")).id == task.id
    with pytest.raises(TaskAccessDeniedError):
        await orchestrator.status(task.id, "bob")
    with pytest.raises(TaskNotFoundError):
        await orchestrator.status("unknown")


@pytest.mark.asyncio
async def test_list_excludes_tasks_outside_retention(orchestrator, task_store) -> None:
    old = await orchestrator.submit(SubmitRequest(owner="alice"), b"old")
    fresh = await orchestrator.submit(SubmitRequest(owner="alice"), b"fresh")
    other = await orchestrator.submit(SubmitRequest(owner="bob"), b"other")
    task_store._tasks[old.id].metadata.created_at = datetime.now(UTC) - timedelta(days=2)

    listed = await orchestrator.list_tasks("alice")

    assert [view.id for view in listed] == [fresh.id]
    assert other.id not in {view.id for view in await orchestrator.list_tasks()}
    # Expired but not yet pruned: direct reads still succeed.
    assert (await orchestrator.status(old.id)).id == old.id


@pytest.mark.asyncio
async def test_list_filters_by_state(orchestrator) -> None:
    done = await orchestrator.submit(SubmitRequest(owner="alice"), b"done")
    waiting = await orchestrator.submit(SubmitRequest(owner="alice"), b"waiting")
    await orchestrator.process(done.id)

    succeeded = await orchestrator.list_tasks("alice", states={TaskState.SUCCEEDED})
    pending = await orchestrator.list_tasks("alice", states={TaskState.PENDING})

    assert [view.id for view in succeeded] == [done.id]
    assert [view.id for view in pending] == [waiting.id]


@pytest.mark.asyncio
async def test_prune_expired_removes_records_and_objects(orchestrator, object_store, task_store) -> None:
    task = await orchestrator.submit(SubmitRequest(owner="alice"), b"abc")
    finished = await orchestrator.process(task.id)
    keep = await orchestrator.submit(SubmitRequest(owner="alice"), b"keep")

    pruned = await orchestrator.prune_expired(now=datetime.now(UTC) + timedelta(hours=2))

    assert pruned == 2
    with pytest.raises(TaskNotFoundError):
        await orchestrator.status(task.id)
    assert not await object_store.exists(finished.artifact_key)
    assert not await object_store.exists(keep.input_key)


@pytest.mark.asyncio
async def test_prune_keeps_running_tasks(orchestrator, task_store) -> None:
    task = await orchestrator.submit(SubmitRequest(owner="alice"), b"abc")
    await task_store.update(task.id, TaskState.PENDING, TaskUpdate(state=TaskState.RUNNING))

    pruned = await orchestrator.prune_expired(now=datetime.now(UTC) + timedelta(hours=2))

    assert pruned == 0
    assert (await orchestrator.status(task.id)).state == TaskState.RUNNING


@pytest.mark.asyncio
async def test_delete_task_removes_record_then_objects(orchestrator, object_store) -> None:
    task = await orchestrator.submit(SubmitRequest(owner="alice"), b"abc")
    finished = await orchestrator.process(task.id)

    with pytest.raises(TaskAccessDeniedError):
        await orchestrator.delete_task(task.id, "bob")
    await orchestrator.delete_task(task.id, "alice")

    with pytest.raises(TaskNotFoundError):
        await orchestrator.status(task.id)
    assert not await object_store.exists(finished.artifact_key)


@pytest.mark.asyncio
async def test_delete_refuses_running_task(orchestrator, task_store) -> None:
    task = await orchestrator.submit(SubmitRequest(owner="alice"), b"abc")
    await task_store.update(task.id, TaskState.PENDING, TaskUpdate(state=TaskState.RUNNING))

    with pytest.raises(TaskConflictError):
        await orchestrator.delete_task(task.id)


@pytest.mark.asyncio
async def test_recover_fails_stale_running_and_returns_pending(orchestrator, task_store) -> None:
    stale = await orchestrator.submit(SubmitRequest(owner="alice"), b"stale")
    pending = await orchestrator.submit(SubmitRequest(owner="alice"), b"pending")
    await task_store.update(stale.id, TaskState.PENDING, TaskUpdate(state=TaskState.RUNNING))
    task_store._tasks[stale.id].metadata.updated_at = datetime.now(UTC) - timedelta(hours=1)

    to_dispatch = await orchestrator.recover()

    assert to_dispatch == [pending.id]
    recovered = await orchestrator.status(stale.id)
    assert recovered.state == TaskState.FAILED
    assert recovered.error == "Processing was interrupted"


@pytest.mark.asyncio
async def test_remove_orphaned_artifacts(orchestrator, object_store) -> None:
    task = await orchestrator.submit(SubmitRequest(owner="alice"), b"abc")
    await object_store.put("uploads/orphan", b"x")
    await object_store.put("packages/alice/gone/App.ipa", b"y")

    removed = await orchestrator.remove_orphaned_artifacts()

    assert removed == 2
    assert await object_store.exists(task.input_key)
    assert not await object_store.exists("uploads/orphan")
    assert not await object_store.exists("packages/alice/gone/App.ipa")


class SlowFirstGetStore(FlakyObjectStore):
    """Memory object store whose first ``get`` hangs past the adapter timeout."""

    def __init__(self) -> None:
        super().__init__()
        self.get_calls = 0

    async def get(self, key: str) -> bytes:
        self.get_calls += 1
        if self.get_calls == 1:
            await asyncio.sleep(1)
        return await super().get(key)


@pytest.mark.asyncio
async def test_timed_out_adapter_call_is_retried(task_store, worker_settings) -> None:
    worker_settings.ADAPTER_TIMEOUT_SECONDS = 0.05
    store = SlowFirstGetStore()
    orchestrator = TaskOrchestrator(store, task_store, settings=worker_settings)
    task = await orchestrator.submit(SubmitRequest(owner="alice"), b"abc")

    finished = await orchestrator.process(task.id)

    assert finished.state == TaskState.SUCCEEDED
    assert store.get_calls == 2


@pytest.mark.asyncio
async def test_concurrent_submissions_with_one_key_keep_winning_upload(
    orchestrator, object_store
) -> None:
    first, second = await asyncio.gather(
        orchestrator.submit(SubmitRequest(owner="alice", idempotency_key="k"), b"first"),
        orchestrator.submit(SubmitRequest(owner="alice", idempotency_key="k"), b"second"),
    )

    assert first.id == second.id
    winner = await orchestrator.status(first.id)
    assert [key async for key in object_store.list_keys("uploads/")] == [winner.input_key]
    finished = await orchestrator.process(winner.id)
    assert finished.state == TaskState.SUCCEEDED


@pytest.mark.asyncio
async def test_recover_visits_every_page_while_failing_tasks(tmp_path, object_store, worker_settings) -> None:
    store = SqliteTaskStore(SqliteOrm(tmp_path / "tasks.sqlite"), page_size=2)
    await store.open()
    try:
        started = datetime.now(UTC) - timedelta(hours=2)
        states = {"r1": TaskState.RUNNING, "r2": TaskState.RUNNING, "r3": TaskState.RUNNING, "p1": TaskState.PENDING}
        for index, (task_id, state) in enumerate(states.items()):
            created = started + timedelta(seconds=index)
            await store.create(
                Task(
                    id=task_id,
                    idempotency_key=task_id,
                    filename="App.ipa",
                    state=state,
                    metadata=TaskMetadata(created_at=created, updated_at=created),
                )
            )
        orchestrator = TaskOrchestrator(object_store, store, settings=worker_settings)

        to_dispatch = await orchestrator.recover()

        assert to_dispatch == ["p1"]
        for task_id in ("r1", "r2", "r3"):
            assert (await store.get(task_id)).state == TaskState.FAILED
    finally:
        await store.close()


async def _age_running_task(orchestrator, task_store, data: bytes, age: timedelta) -> str:
    task = await orchestrator.submit(SubmitRequest(owner="alice"), data)
    await task_store.update(task.id, TaskState.PENDING, TaskUpdate(state=TaskState.RUNNING))
    record = task_store._tasks[task.id]
    record.metadata.created_at = datetime.now(UTC) - age
    record.metadata.updated_at = datetime.now(UTC) - age
    return task.id


@pytest.mark.asyncio
async def test_recover_fails_running_task_older_than_retention(orchestrator, task_store, object_store) -> None:
    task_id = await _age_running_task(orchestrator, task_store, b"ancient", timedelta(days=3))

    assert await orchestrator.recover() == []
    assert (await orchestrator.status(task_id)).state == TaskState.FAILED

    assert await orchestrator.prune_expired() == 1
    with pytest.raises(TaskNotFoundError):
        await orchestrator.status(task_id)
    assert [key async for key in object_store.list_keys("uploads/")] == []


@pytest.mark.asyncio
async def test_prune_fails_and_removes_stale_running_task(orchestrator, task_store) -> None:
    task_id = await _age_running_task(orchestrator, task_store, b"stuck", timedelta(days=3))

    pruned = await orchestrator.prune_expired()

    assert pruned == 1
    with pytest.raises(TaskNotFoundError):
        await orchestrator.status(task_id)


@pytest.mark.asyncio
async def test_package_requires_succeeded_task(orchestrator) -> None:
    task = await orchestrator.submit(SubmitRequest(owner="alice"), b"abc")

    with pytest.raises(ArtifactNotFoundError):
        await orchestrator.package(task.id)
    await orchestrator.process(task.id)

    assert (await orchestrator.package(task.id)).artifact_key is not None


@pytest.mark.asyncio
async def test_tampered_upload_fails_task(orchestrator, object_store) -> None:
    task = await orchestrator.submit(SubmitRequest(owner="alice"), b"original")
    await object_store.put(task.input_key, b"swapped")

    finished = await orchestrator.process(task.id)

    assert finished.state == TaskState.FAILED
    assert finished.error == "Staged upload does not match the submitted bytes"


@pytest.mark.asyncio
async def test_passthrough_processor_raises_processing_error() -> None:
    task = Task(
        id="t1",
        idempotency_key="k",
        filename="App.ipa",
        metadata=TaskMetadata(custom={"input_sha256": hashlib.sha256(b"a").hexdigest()}),
    )

    with pytest.raises(ProcessingError):
        await PassthroughProcessor().process(task, b"b")


def test_manifest_requires_bundle_identifier() -> None:
    task = Task(id="t1", idempotency_key="k", filename="App.ipa", state=TaskState.SUCCEEDED)

    with pytest.raises(InvalidRequestError):
        build_manifest(task, "https://dl.example.com/install/t1/payload.ipa")
    assert install_link("https://a/b?c").endswith("url=https%3A%2F%2Fa%2Fb%3Fc")
