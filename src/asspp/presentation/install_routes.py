from __future__ import annotations

import re

from fastapi import APIRouter, Depends, Request, Response
from pydantic import BaseModel, Field

from src.asspp.application.install import build_manifest, install_link
from src.asspp.application.services import TaskOrchestrator
from src.asspp.presentation.routes import artifact_response, get_orchestrator

router = APIRouter(prefix="/install", tags=["install"])

_UNSAFE_HOST_CHARS = re.compile(r"[^A-Za-z0-9.:\-]")


class InstallUrlResponse(BaseModel):
    install_url: str = Field(..., description="itms-services link that starts the install.")
    manifest_url: str = Field(..., description="URL of the install manifest.")


def public_base_url(request: Request) -> str:
    """Configured public URL, else one rebuilt from proxy headers."""
    configured = (request.app.state.public_base_url or "").strip().rstrip("/")
    if configured:
        return configured
    proto = "https" if request.headers.get("x-forwarded-proto") == "https" else "http"
    host = _UNSAFE_HOST_CHARS.sub("", request.headers.get("host", "")) or "localhost"
    return f"{proto}://{host}"


@router.get("/{task_id}/manifest.plist", summary="Install manifest")
async def manifest(
    task_id: str,
    request: Request,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> Response:
    task = await orchestrator.package(task_id)
    payload_url = f"{public_base_url(request)}/install/{task_id}/payload.ipa"
    return Response(content=build_manifest(task, payload_url), media_type="application/xml")


@router.get("/{task_id}/url", response_model=InstallUrlResponse, summary="Install link")
async def install_url(
    task_id: str,
    request: Request,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> InstallUrlResponse:
    await orchestrator.package(task_id)
    manifest_url = f"{public_base_url(request)}/install/{task_id}/manifest.plist"
    return InstallUrlResponse(install_url=install_link(manifest_url), manifest_url=manifest_url)


@router.get("/{task_id}/payload.ipa", summary="Install payload")
async def payload(
    task_id: str,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> Response:
    task = await orchestrator.package(task_id)
    return await artifact_response(
        orchestrator, task.artifact_key, media_type="application/octet-stream"
    )
