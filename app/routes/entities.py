"""
Entity deletion endpoint.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

import core.config as config
from core.context import Actor, RequestMeta
from core.errors import ValidationIssue
from core.results import RateLimited
from core.services.deletion_service import DeletionOrchestrator
from core.services.entity_repository import get_descriptor
from app.deps import get_actor, get_deletion_orchestrator, get_request_meta


router = APIRouter(prefix="/api")


def validate_entity_ref(entity_type: str, entity_id: str) -> None:
    get_descriptor(entity_type)
    if not entity_id or len(entity_id) > config.MAX_ENTITY_ID_LENGTH:
        raise ValidationIssue(
            f"id must be 1-{config.MAX_ENTITY_ID_LENGTH} characters",
            field="id",
            error_type="invalid",
        )


def result_response(result) -> JSONResponse:
    headers = {}
    if isinstance(result, RateLimited):
        headers["Retry-After"] = str(result.retry_after_seconds)
    return JSONResponse(result.to_dict(), status_code=result.status_code, headers=headers)


@router.delete("/{entity_type}/{entity_id}")
def delete_entity(
    entity_type: str,
    entity_id: str,
    actor: Actor = Depends(get_actor),
    meta: RequestMeta = Depends(get_request_meta),
    orchestrator: DeletionOrchestrator = Depends(get_deletion_orchestrator),
):
    """Soft or hard delete an entity according to the deletion policy."""
    validate_entity_ref(entity_type, entity_id)
    result = orchestrator.delete_entity(entity_type, entity_id, actor, meta)
    return result_response(result)
