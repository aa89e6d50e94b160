"""
Exception handlers translating core errors into JSON responses.
"""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

import core.config as config
from core.errors import AuditWriteFailed, RepositoryError, UnsupportedEntityType, ValidationIssue


async def validation_issue_handler(request: Request, exc: ValidationIssue) -> JSONResponse:
    return JSONResponse(
        {
            "ok": False,
            "code": "VALIDATION_ERROR",
            "field": exc.field,
            "error_type": exc.error_type,
            "message": str(exc),
        },
        status_code=400,
    )


async def unsupported_entity_type_handler(request: Request, exc: UnsupportedEntityType) -> JSONResponse:
    return JSONResponse(
        {
            "ok": False,
            "code": "UNSUPPORTED_ENTITY_TYPE",
            "message": f"Unsupported entity type: {exc.entity_type}",
        },
        status_code=400,
    )


async def storage_error_handler(request: Request, exc: Exception) -> JSONResponse:
    config.logger.error(
        "request_failed",
        extra={"path": request.url.path, "error_class": type(exc).__name__, "error": str(exc)},
    )
    return JSONResponse(
        {"ok": False, "code": "INTERNAL_ERROR", "message": "The operation could not be completed"},
        status_code=500,
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ValidationIssue, validation_issue_handler)
    app.add_exception_handler(UnsupportedEntityType, unsupported_entity_type_handler)
    app.add_exception_handler(RepositoryError, storage_error_handler)
    app.add_exception_handler(AuditWriteFailed, storage_error_handler)
