"""
Archive endpoints: expiring soft deletes, restore and permanent purge.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel

import core.config as config
from core.context import Actor, RequestMeta
from core.results import Forbidden, RateLimited
from core.services.archive_manager import ArchiveManager
from app.deps import (
    actor_lab_ids,
    get_actor,
    get_archive_manager,
    get_db_session,
    get_operation_limiter,
    get_request_meta,
)
from app.routes.entities import result_response, validate_entity_ref


router = APIRouter(prefix="/api/archive")


class RestoreRequest(BaseModel):
    type: str
    id: str


@router.get("")
def list_expiring(
    lab_id: Optional[str] = Query(None, alias="labId"),
    within_days: Optional[int] = Query(None, alias="withinDays"),
    entity_type: Optional[str] = Query(None, alias="type"),
    actor: Actor = Depends(get_actor),
    db=Depends(get_db_session),
    archive: ArchiveManager = Depends(get_archive_manager),
):
    """Soft-deleted entities whose purge deadline is approaching, in the caller's labs."""
    member_labs = actor_lab_ids(db, actor)
    if lab_id and lab_id not in member_labs:
        return result_response(Forbidden("Not a member of this lab"))
    view = archive.list_expiring(
        lab_id=lab_id,
        within_days=within_days,
        entity_type=entity_type,
        lab_ids=member_labs,
    )
    items = [item.to_dict() for item in view]
    return {
        "ok": True,
        "withinDays": view.within_days,
        "retentionDays": archive.retention_days,
        "count": len(items),
        "items": items,
    }


@router.post("/restore")
def restore_entity(
    body: RestoreRequest,
    actor: Actor = Depends(get_actor),
    meta: RequestMeta = Depends(get_request_meta),
    archive: ArchiveManager = Depends(get_archive_manager),
):
    validate_entity_ref(body.type, body.id)
    return result_response(archive.restore(body.type, body.id, actor=actor, meta=meta))


@router.delete("/{entity_type}/{entity_id}")
def purge_entity(
    entity_type: str,
    entity_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
    meta: RequestMeta = Depends(get_request_meta),
    archive: ArchiveManager = Depends(get_archive_manager),
):
    """Permanently delete a soft-deleted entity."""
    validate_entity_ref(entity_type, entity_id)
    decision = get_operation_limiter(request).check_and_increment(actor.id, config.OPERATION_DESTRUCTIVE)
    if not decision.allowed:
        return result_response(
            RateLimited(retry_after_seconds=decision.retry_after_seconds, limit=decision.limit)
        )
    return result_response(archive.purge(entity_type, entity_id, actor=actor, meta=meta))
