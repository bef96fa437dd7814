from __future__ import annotations

import uuid

from src.asspp.domain.exceptions import InvalidKeyError

MAX_KEY_BYTES = 1024
UPLOADS_PREFIX = "uploads/"
PACKAGES_PREFIX = "packages/"

_TASK_NAMESPACE = uuid.UUID("6f1c2e0a-4d7b-5a43-9a1e-2b8c6d0f3e51")


def validate_key(key: str) -> str:
    """Reject keys no backend can store safely and return ``key`` unchanged."""
    if not key:
        raise InvalidKeyError(key, "empty")
    if len(key.encode("utf-8")) > MAX_KEY_BYTES:
        raise InvalidKeyError(key, f"longer than {MAX_KEY_BYTES} bytes")
    if "\x00" in key:
        raise InvalidKeyError(key, "contains NUL")
    if key.startswith("/"):
        raise InvalidKeyError(key, "absolute")
    for segment in key.split("/"):
        if segment in ("", ".", ".."):
            raise InvalidKeyError(key, f"invalid segment {segment!r}")
    return key


def task_id_for(owner: str, idempotency_key: str) -> str:
    # Same owner and idempotency key always yield the same task id.
    return uuid.uuid5(_TASK_NAMESPACE, f"{owner}\n{idempotency_key}").hex


def staged_input_key(task_id: str, content_hash: str) -> str:
    # One key per body, so racing submissions never overwrite each other.
    return f"{UPLOADS_PREFIX}{task_id}/{content_hash}"


def artifact_key(owner: str, task_id: str, filename: str) -> str:
    return f"{PACKAGES_PREFIX}{owner}/{task_id}/{filename}"
