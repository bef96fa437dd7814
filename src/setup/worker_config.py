from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class WorkerSettings(BaseSettings):
    """Configuration for task processing, retries and retention."""

    MAX_ARTIFACT_BYTES: int = 8 * 1024 * 1024 * 1024
    ADAPTER_TIMEOUT_SECONDS: float = 300.0
    MAX_RETRIES: int = 3
    RETRY_BACKOFF_SEC: float = 0.5
    RETRY_BACKOFF_MAX_SEC: float = 10.0
    MAX_CONCURRENT_TASKS: int = 4
    TASK_RETENTION_SECONDS: int = 7 * 24 * 3600
    STALE_RUNNING_SECONDS: int = 3600
    SWEEP_INTERVAL_SEC: float = 600.0
    SHUTDOWN_GRACE_SEC: float = 10.0

    model_config = ConfigDict(env_file=".env", extra="ignore")


def get_worker_settings() -> WorkerSettings:
    """Return a fresh worker settings instance."""
    return WorkerSettings()
