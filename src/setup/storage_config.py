from enum import Enum
from pathlib import Path

from pydantic import ConfigDict
from pydantic_settings import BaseSettings


class DeploymentMode(str, Enum):
    EDGE = "edge"
    STANDALONE = "standalone"
    MEMORY = "memory"


class StorageSettings(BaseSettings):
    """Backend selection and connection settings, read once at startup."""

    DEPLOYMENT_MODE: DeploymentMode = DeploymentMode.STANDALONE

    # standalone
    DATA_DIR: str = "./data"

    # edge: S3-compatible bucket (R2) and Redis-protocol key-value namespace
    S3_ENDPOINT: str | None = None
    S3_BUCKET: str = "asspp-packages"
    S3_ACCESS_KEY: str | None = None
    S3_SECRET_KEY: str | None = None
    S3_REGION: str = "auto"
    REDIS_URL: str = "redis://redis:6379/0"
    TASK_KEY_PREFIX: str = "task:"

    model_config = ConfigDict(env_file=".env", extra="ignore")

    @property
    def packages_dir(self) -> Path:
        return Path(self.DATA_DIR) / "packages"

    @property
    def tasks_db_path(self) -> Path:
        return Path(self.DATA_DIR) / "tasks.sqlite"


def get_storage_settings() -> StorageSettings:
    return StorageSettings()
