from __future__ import annotations

from urllib.parse import quote

from fastapi import APIRouter, Depends, Header, Query, Request, Response
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, ValidationError

from src.asspp.application.runner import TaskRunner
from src.asspp.application.services import TaskOrchestrator
from src.asspp.domain.exceptions import ArtifactTooLargeError, InvalidRequestError
from src.asspp.domain.models import SubmitRequest, TaskState, TaskView

router = APIRouter(tags=["tasks"])

_META_HEADER_PREFIX = "x-meta-"


class SubmitResponse(BaseModel):
    task_id: str = Field(..., description="Identifier to poll with GET /tasks/{task_id}.")
    state: TaskState = Field(..., description="State of the task at submission time.")
    status_url: str = Field(..., description="URL to poll for the task state.")


class DeleteResponse(BaseModel):
    success: bool = True


def get_orchestrator(request: Request) -> TaskOrchestrator:
    return request.app.state.orchestrator


def get_runner(request: Request) -> TaskRunner:
    return request.app.state.runner


async def read_limited_body(request: Request, limit: int) -> bytes:
    """Read the request body, refusing to buffer more than ``limit`` bytes."""
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        raise ArtifactTooLargeError(int(declared), limit)
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise ArtifactTooLargeError(len(body), limit)
    return bytes(body)


def metadata_headers(request: Request) -> dict[str, str] | None:
    """Collect ``X-Meta-<name>`` headers as ``{name: value}``."""
    custom = {
        name[len(_META_HEADER_PREFIX) :]: value
        for name, value in request.headers.items()
        if name.startswith(_META_HEADER_PREFIX) and len(name) > len(_META_HEADER_PREFIX)
    }
    return custom or None


async def artifact_response(
    orchestrator: TaskOrchestrator,
    key: str,
    *,
    head: bool = False,
    media_type: str | None = None,
) -> Response:
    info = await orchestrator.artifact_info(key)
    filename = key.rsplit("/", 1)[-1]
    headers = {
        "Content-Length": str(info.size),
        "Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}",
    }
    media_type = media_type or info.content_type
    if head:
        return Response(status_code=200, headers=headers, media_type=media_type)
    return StreamingResponse(orchestrator.open_artifact(key), media_type=media_type, headers=headers)


@router.post(
    "/tasks",
    status_code=202,
    response_model=SubmitResponse,
    summary="Submit a package",
    description=(
        "The request body is the raw package bytes. Resubmitting the same bytes "
        "(or the same Idempotency-Key) for the same owner returns the existing task. "
        "X-Meta-<name> headers are stored as task metadata."
    ),
)
async def submit_task(
    request: Request,
    owner: str = Query("anonymous", description="Account that owns the task."),
    filename: str = Query("package.ipa", description="Name of the package file."),
    content_type: str | None = Header(None),
    idempotency_key: str | None = Header(None),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
    runner: TaskRunner = Depends(get_runner),
) -> SubmitResponse:
    try:
        submission = SubmitRequest(
            owner=owner,
            filename=filename,
            content_type=content_type or "application/octet-stream",
            idempotency_key=idempotency_key,
            custom=metadata_headers(request),
        )
    except ValidationError as exc:
        raise InvalidRequestError(_describe(exc)) from None
    data = await read_limited_body(request, orchestrator.max_artifact_bytes)
    task = await orchestrator.submit(submission, data)
    if task.state == TaskState.PENDING:
        runner.dispatch(task.id)
    base_url = request.app.state.public_base_url or str(request.base_url)
    return SubmitResponse(
        task_id=task.id,
        state=task.state,
        status_url=f"{base_url.rstrip('/')}/tasks/{task.id}",
    )


@router.get("/tasks", response_model=list[TaskView], summary="List tasks")
async def list_tasks(
    owner: str | None = Query(None, description="Only tasks of this owner."),
    state: list[TaskState] | None = Query(None, description="Only tasks in these states."),
    limit: int = Query(50, ge=1, le=500),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> list[TaskView]:
    return await orchestrator.list_tasks(owner, states=set(state) if state else None, limit=limit)


@router.get("/tasks/{task_id}", response_model=TaskView, summary="Get task status")
async def get_task(
    task_id: str,
    owner: str | None = Query(None, description="Reject the request unless the task has this owner."),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> TaskView:
    task = await orchestrator.status(task_id, owner)
    return TaskView.from_task(task)


@router.delete("/tasks/{task_id}", response_model=DeleteResponse, summary="Delete a task")
async def delete_task(
    task_id: str,
    owner: str | None = Query(None, description="Reject the request unless the task has this owner."),
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> DeleteResponse:
    await orchestrator.delete_task(task_id, owner)
    return DeleteResponse()


@router.api_route("/artifacts/{key:path}", methods=["GET", "HEAD"], summary="Download an artifact")
async def get_artifact(
    key: str,
    request: Request,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> Response:
    return await artifact_response(orchestrator, key, head=request.method == "HEAD")


def _describe(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors()
    )
