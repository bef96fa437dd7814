from __future__ import annotations


class TaskNotFoundError(Exception):
    """Raised when a task identifier does not exist in the task store."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task with id '{task_id}' was not found.")
        self.task_id = task_id


class TaskAccessDeniedError(Exception):
    """Raised when an owner attempts to access a task they did not submit."""

    def __init__(self, task_id: str, owner: str) -> None:
        super().__init__(f"Owner '{owner}' has no access to task '{task_id}'.")
        self.task_id = task_id
        self.owner = owner


class TaskAlreadyExistsError(Exception):
    """Raised by ``create`` when a record with the same task id is stored."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task with id '{task_id}' already exists.")
        self.task_id = task_id


class TaskConflictError(Exception):
    """Raised when a conditioned mutation finds the task in another state."""

    def __init__(self, task_id: str, expected: str, actual: str) -> None:
        super().__init__(
            f"Task '{task_id}' is '{actual}', expected '{expected}'."
        )
        self.task_id = task_id
        self.expected = expected
        self.actual = actual


class InvalidRequestError(Exception):
    """Raised when a submission fails validation."""


class ArtifactNotFoundError(Exception):
    """Raised when an artifact key is absent from the object store."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Artifact '{key}' was not found.")
        self.key = key


class StorageError(Exception):
    """Backend I/O failure. ``retryable`` is False for failures a retry cannot fix."""

    retryable: bool = True

    def __init__(self, message: str, *, retryable: bool | None = None) -> None:
        super().__init__(message)
        if retryable is not None:
            self.retryable = retryable


class InvalidKeyError(StorageError):
    retryable = False

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"Malformed artifact key {key!r}: {reason}")
        self.key = key


class ArtifactTooLargeError(StorageError):
    retryable = False

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(f"Artifact of {size} bytes exceeds the {limit} byte limit.")
        self.size = size
        self.limit = limit


class ProcessingError(Exception):
    """Raised by a processor when the staged input cannot be turned into an artifact."""
