from __future__ import annotations

import hashlib

from src.asspp.domain.exceptions import ProcessingError
from src.asspp.domain.models.artifact import ProcessedArtifact
from src.asspp.domain.models.task import Task
from src.asspp.domain.repositories import TaskProcessor


class PassthroughProcessor(TaskProcessor):
    """Publishes the staged upload unchanged after verifying its integrity.

    The upload hash recorded at submission must match the bytes read back
    from the object store.
    """

    async def process(self, task: Task, data: bytes) -> ProcessedArtifact:
        expected = (task.metadata.custom or {}).get("input_sha256")
        if expected is not None and hashlib.sha256(data).hexdigest() != expected:
            raise ProcessingError("Staged upload does not match the submitted bytes")
        return ProcessedArtifact(data=data, content_type=task.content_type, filename=task.filename)
