from __future__ import annotations

import inject
import uvicorn

from src.asspp.application.runner import TaskRunner
from src.asspp.presentation.app import create_app
from src.setup.api_config import get_api_settings
from src.setup.app_config import configure_di
from src.setup.logging_config import configure_logging

# Configure logging and DI once at process start
settings = get_api_settings()
configure_logging(settings.LOG_LEVEL)
binding = configure_di()

app = create_app(
    runner=inject.instance(TaskRunner),
    task_store=binding.task_store,
    settings=settings,
    mode=binding.mode.value,
    clean_orphans=binding.clean_orphans_on_startup,
)


def main() -> None:
    uvicorn.run(app, host=settings.HOST, port=settings.PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
