from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from src.asspp.domain.exceptions import (
    ArtifactNotFoundError,
    ArtifactTooLargeError,
    InvalidKeyError,
    InvalidRequestError,
    StorageError,
    TaskAccessDeniedError,
    TaskConflictError,
    TaskNotFoundError,
)

logger = logging.getLogger(__name__)

# Checked in order; subclasses before their bases.
_ERROR_STATUS: list[tuple[type[Exception], int, str]] = [
    (InvalidRequestError, 400, "invalid_request"),
    (InvalidKeyError, 400, "invalid_request"),
    (RequestValidationError, 400, "invalid_request"),
    (TaskAccessDeniedError, 403, "access_denied"),
    (TaskNotFoundError, 404, "not_found"),
    (ArtifactNotFoundError, 404, "not_found"),
    (TaskConflictError, 409, "conflict"),
    (ArtifactTooLargeError, 413, "too_large"),
    (StorageError, 502, "storage_error"),
]


def error_body(message: str, status: str) -> dict[str, str]:
    return {"error": message, "status": status}


def _to_response(exc: Exception) -> JSONResponse:
    for exc_type, status_code, status in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            if status_code >= 500:
                logger.error("Storage failure", extra={"error": str(exc)})
            return JSONResponse(status_code=status_code, content=error_body(str(exc), status))
    logger.exception("Unhandled error", exc_info=exc)
    return JSONResponse(
        status_code=500, content=error_body("Internal server error", "internal_error")
    )


async def _handle(_request: Request, exc: Exception) -> JSONResponse:
    return _to_response(exc)


def register_exception_handlers(app: FastAPI) -> None:
    for exc_type, _status_code, _status in _ERROR_STATUS:
        app.add_exception_handler(exc_type, _handle)
    app.add_exception_handler(Exception, _handle)
