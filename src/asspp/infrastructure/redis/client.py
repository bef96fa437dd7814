from __future__ import annotations

from redis.asyncio import Redis

from src.setup.storage_config import StorageSettings


def build_redis_client(
    settings: StorageSettings,
    *,
    timeout_seconds: float = 5.0,
    max_connections: int = 10,
) -> Redis:
    """Create a client for the edge task namespace.

    The client owns its connection pool, so ``aclose()`` on the task store
    releases every connection.
    """
    return Redis.from_url(
        settings.REDIS_URL,
        max_connections=max_connections,
        socket_timeout=timeout_seconds,
        socket_connect_timeout=timeout_seconds,
        retry_on_timeout=True,
        decode_responses=True,
    )
