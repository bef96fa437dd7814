from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import cast

import inject

from src.asspp.application.services import TaskOrchestrator
from src.setup.worker_config import WorkerSettings, get_worker_settings

logger = logging.getLogger(__name__)


class TaskRunner:
    """Runs task processing in the background of the serving process.

    Processing is detached from the request that submitted the task, so a
    client disconnect never cancels it. At most one attempt per task id is
    in flight in this process; across processes the conditioned updates in
    the orchestrator decide which attempt wins.
    """

    def __init__(
        self,
        orchestrator: TaskOrchestrator | None = None,
        settings: WorkerSettings | None = None,
    ) -> None:
        self._orchestrator = orchestrator or cast(TaskOrchestrator, inject.instance(TaskOrchestrator))
        self._settings = settings or get_worker_settings()
        self._inflight: dict[str, asyncio.Task[None]] = {}
        self._slots = asyncio.Semaphore(self._settings.MAX_CONCURRENT_TASKS)
        self._sweeper: asyncio.Task[None] | None = None

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    def dispatch(self, task_id: str) -> bool:
        """Schedule processing of ``task_id``; False if it is already in flight here."""
        if task_id in self._inflight:
            return False
        job = asyncio.create_task(self._run(task_id), name=f"process-{task_id}")
        self._inflight[task_id] = job
        job.add_done_callback(lambda _: self._inflight.pop(task_id, None))
        return True

    async def start(self, *, clean_orphans: bool = False) -> None:
        if clean_orphans:
            await self._orchestrator.remove_orphaned_artifacts()
        pending = await self._orchestrator.recover()
        for task_id in pending:
            self.dispatch(task_id)
        if pending:
            logger.info("Re-dispatched pending tasks", extra={"count": len(pending)})
        self._sweeper = asyncio.create_task(self._sweep_loop(), name="retention-sweeper")

    async def stop(self) -> None:
        if self._sweeper is not None:
            self._sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sweeper
            self._sweeper = None
        jobs = list(self._inflight.values())
        if not jobs:
            return
        _done, still_running = await asyncio.wait(jobs, timeout=self._settings.SHUTDOWN_GRACE_SEC)
        for job in still_running:
            job.cancel()
        if still_running:
            # Cancelled tasks stay running until recover() marks them stale.
            logger.warning("Cancelled unfinished tasks", extra={"count": len(still_running)})
            await asyncio.gather(*still_running, return_exceptions=True)

    async def wait_idle(self) -> None:
        while self._inflight:
            await asyncio.gather(*list(self._inflight.values()), return_exceptions=True)

    async def _run(self, task_id: str) -> None:
        async with self._slots:
            try:
                await self._orchestrator.process(task_id)
            except Exception:
                logger.exception("Background processing crashed", extra={"task_id": task_id})

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.SWEEP_INTERVAL_SEC)
            try:
                await self._orchestrator.prune_expired()
            except Exception:
                logger.exception("Retention sweep failed")
