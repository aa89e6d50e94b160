"""
Audit log query endpoint.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

import core.config as config
from core.audit import list_audit_events
from core.context import Actor
from core.results import Forbidden
from app.deps import actor_lab_ids, get_actor, get_db_session
from app.routes.entities import result_response


router = APIRouter(prefix="/api")


@router.get("/audit-logs")
def audit_logs(
    entity_type: Optional[str] = Query(None, alias="entityType"),
    entity_id: Optional[str] = Query(None, alias="entityId"),
    actor_id: Optional[str] = Query(None, alias="actorId"),
    lab_id: Optional[str] = Query(None, alias="labId"),
    action: Optional[str] = Query(None),
    date_from: Optional[str] = Query(None, alias="from"),
    date_to: Optional[str] = Query(None, alias="to"),
    limit: int = Query(config.AUDIT_LOG_LIMIT_DEFAULT),
    cursor: Optional[str] = Query(None),
    actor: Actor = Depends(get_actor),
    db=Depends(get_db_session),
):
    """List audit events newest first, limited to labs the caller administers."""
    admin_labs = actor_lab_ids(db, actor, admin_only=True)
    if not admin_labs or (lab_id and lab_id not in admin_labs):
        return result_response(Forbidden("Lab admin access required"))
    return list_audit_events(
        db,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=actor_id,
        lab_id=lab_id,
        lab_ids=admin_labs,
        action=action,
        date_from=date_from,
        date_to=date_to,
        limit=limit,
        cursor=cursor,
    )
