from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import cast

import inject
from fastapi import FastAPI

from src.asspp.application.runner import TaskRunner
from src.asspp.application.services import TaskOrchestrator
from src.asspp.domain.repositories import TaskStoreRepository
from src.asspp.presentation.errors import register_exception_handlers
from src.asspp.presentation.install_routes import router as install_router
from src.asspp.presentation.routes import router as api_router
from src.setup.api_config import ApiSettings, get_api_settings

logger = logging.getLogger(__name__)


def create_app(
    orchestrator: TaskOrchestrator | None = None,
    runner: TaskRunner | None = None,
    task_store: TaskStoreRepository | None = None,
    *,
    settings: ApiSettings | None = None,
    mode: str = "custom",
    clean_orphans: bool = False,
) -> FastAPI:
    """Build the HTTP boundary around an orchestrator and its runner."""
    settings = settings or get_api_settings()
    orchestrator = orchestrator or cast(TaskOrchestrator, inject.instance(TaskOrchestrator))
    runner = runner or TaskRunner(orchestrator)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if task_store is not None:
            await task_store.open()
        await runner.start(clean_orphans=clean_orphans)
        logger.info("Task service ready", extra={"mode": mode})
        yield
        await runner.stop()
        if task_store is not None:
            await task_store.close()
        logger.info("Task service stopped")

    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        description="Package task API with status polling",
        lifespan=lifespan,
    )
    app.state.orchestrator = orchestrator
    app.state.runner = runner
    app.state.mode = mode
    app.state.public_base_url = settings.PUBLIC_BASE_URL

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "mode": app.state.mode}

    register_exception_handlers(app)
    app.include_router(api_router, prefix="")
    app.include_router(install_router)
    return app
