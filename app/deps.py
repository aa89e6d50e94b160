"""
Dependency helpers for the LabOps FastAPI app.
"""

from __future__ import annotations

from typing import Generator, Optional

from fastapi import Depends, Header, HTTPException, Request

import core.config as config
from core.audit import AuditRecorder
from core.context import Actor, RequestMeta
from core.db import DB, get_session_factory
from core.models import LabMember
from core.services.archive_manager import ArchiveManager
from core.services.deletion_service import DeletionOrchestrator
from rate_limiter import resolve_client_ip


def get_db_session() -> Generator:
    if DB.SessionLocal is None:
        raise RuntimeError("Database not initialized - SessionLocal is None")
    db = DB.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_actor(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> Actor:
    """Identity is asserted by the upstream auth layer through X-User-Id."""
    actor_id = (x_user_id or "").strip()
    if not actor_id:
        raise HTTPException(status_code=401, detail={"ok": False, "code": "UNAUTHENTICATED"})
    if len(actor_id) > config.MAX_ENTITY_ID_LENGTH:
        raise HTTPException(status_code=400, detail={"ok": False, "code": "INVALID_ACTOR"})
    return Actor(id=actor_id)


def get_request_meta(request: Request) -> RequestMeta:
    rate_config = request.app.state.operation_limiter.config
    return RequestMeta(
        address=resolve_client_ip(request, rate_config.trusted_proxy_count, rate_config.trusted_proxy_ips),
        client_id=request.headers.get("user-agent"),
        request_id=request.headers.get("x-request-id"),
    )


def actor_lab_ids(db, actor: Actor, admin_only: bool = False) -> list[str]:
    """Labs where the actor holds an active membership (admin ones only if asked)."""
    query = db.query(LabMember.lab_id).filter(
        LabMember.user_id == actor.id,
        LabMember.is_active.is_(True),
    )
    if admin_only:
        query = query.filter(LabMember.is_admin.is_(True))
    return [lab_id for (lab_id,) in query.all()]


def get_audit_recorder() -> AuditRecorder:
    return AuditRecorder(get_session_factory())


def get_operation_limiter(request: Request):
    return request.app.state.operation_limiter


def get_deletion_orchestrator(
    request: Request,
    audit: AuditRecorder = Depends(get_audit_recorder),
) -> DeletionOrchestrator:
    return DeletionOrchestrator(
        get_session_factory(),
        get_operation_limiter(request),
        audit,
        authorize=getattr(request.app.state, "authorize", None),
    )


def get_archive_manager(audit: AuditRecorder = Depends(get_audit_recorder)) -> ArchiveManager:
    return ArchiveManager(get_session_factory(), audit)
