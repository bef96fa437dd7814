from src.asspp.domain.models.artifact import ArtifactInfo, ProcessedArtifact
from src.asspp.domain.models.payloads import SubmitRequest, sanitize_filename
from src.asspp.domain.models.task import Task
from src.asspp.domain.models.task_filter import TaskFilter
from src.asspp.domain.models.task_metadata import TaskMetadata
from src.asspp.domain.models.task_state import TaskState
from src.asspp.domain.models.task_update import TaskUpdate
from src.asspp.domain.models.task_view import TaskView

__all__ = [
    "ArtifactInfo",
    "ProcessedArtifact",
    "SubmitRequest",
    "Task",
    "TaskFilter",
    "TaskMetadata",
    "TaskState",
    "TaskUpdate",
    "TaskView",
    "sanitize_filename",
]
