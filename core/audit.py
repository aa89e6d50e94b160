"""
Audit logging helpers (append-only ledger of mutating actions).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.audit_constants import ALLOWED_ENTITY_TYPES, METADATA_SOFT_DELETE
from core.context import RequestMeta
from core.errors import AuditWriteFailed, ValidationIssue
from core.models import AuditAction, AuditEvent

FORBIDDEN_METADATA_KEYS = {
    "password",
    "password_hash",
    "secret",
    "token",
    "api_key",
    "authorization",
    "cookie",
    "session",
}
MAX_METADATA_STRING_LENGTH = 500
MAX_ENTITY_NAME_LENGTH = 500


def _normalize_key(key: str) -> str:
    return key.strip().lower().replace("-", "_")


def _metadata_key_forbidden(key: str) -> bool:
    normalized = _normalize_key(key)
    if normalized in FORBIDDEN_METADATA_KEYS:
        return True
    for token in FORBIDDEN_METADATA_KEYS:
        if token in normalized:
            return True
    return False


def _validate_metadata_value(value: Any, path: str = "") -> None:
    if isinstance(value, dict):
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError("metadata keys must be strings")
            if _metadata_key_forbidden(key):
                raise ValueError(f"metadata key '{key}' is not allowed")
            next_path = f"{path}.{key}" if path else key
            _validate_metadata_value(item, next_path)
        return
    if isinstance(value, list):
        for item in value:
            _validate_metadata_value(item, path)
        return
    if isinstance(value, str) and len(value) > MAX_METADATA_STRING_LENGTH:
        raise ValueError(f"metadata value too long at '{path or 'value'}'")


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {key: _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return value


def _coerce_action(action: Any) -> str:
    if isinstance(action, AuditAction):
        return action.value
    try:
        return AuditAction(str(action).upper()).value
    except ValueError:
        raise ValidationIssue(
            "action must be one of: CREATE|UPDATE|DELETE",
            field="action",
            error_type="invalid",
        ) from None


def diff_changes(before: Mapping[str, Any], after: Mapping[str, Any]) -> dict:
    """Build a {field: {"before": ..., "after": ...}} payload for changed fields."""
    changes = {}
    for key in sorted(set(before) | set(after)):
        old = before.get(key)
        new = after.get(key)
        if old != new:
            changes[key] = {"before": _json_safe(old), "after": _json_safe(new)}
    return changes


def request_metadata(
    meta: Optional[RequestMeta],
    *,
    is_soft_delete: Optional[bool] = None,
    extra: Optional[dict] = None,
) -> dict:
    metadata = meta.as_audit_metadata() if meta else {}
    if is_soft_delete is not None:
        metadata[METADATA_SOFT_DELETE] = is_soft_delete
    if extra:
        metadata.update(extra)
    return metadata


def log_event(
    db,
    *,
    actor_id: str,
    action: Any,
    entity_type: str,
    entity_id: str,
    entity_name: Optional[str] = None,
    lab_id: Optional[str] = None,
    metadata: Optional[dict] = None,
    changes: Optional[dict] = None,
) -> AuditEvent:
    """
    Append an audit event to the session (caller commits).
    """
    if not actor_id or not isinstance(actor_id, str):
        raise ValueError("actor_id must be a non-empty string")
    action_value = _coerce_action(action)
    if entity_type not in ALLOWED_ENTITY_TYPES:
        raise ValueError("entity_type must be one of: " + "|".join(sorted(ALLOWED_ENTITY_TYPES)))
    if not entity_id:
        raise ValueError("entity_id must be a non-empty string")

    if metadata is not None:
        if not isinstance(metadata, dict):
            raise ValueError("metadata must be a dict")
        _validate_metadata_value(metadata)
    if changes is not None:
        if not isinstance(changes, dict):
            raise ValueError("changes must be a dict")
        _validate_metadata_value(changes)

    event = AuditEvent(
        created_at=datetime.utcnow(),
        actor_id=actor_id,
        action=action_value,
        entity_type=entity_type,
        entity_id=str(entity_id),
        entity_name=entity_name[:MAX_ENTITY_NAME_LENGTH] if entity_name else None,
        lab_id=lab_id,
        metadata_=_json_safe(metadata) if metadata is not None else None,
        changes=_json_safe(changes) if changes is not None else None,
    )
    db.add(event)
    return event


class AuditRecorder:
    """Writes audit events through a dedicated session, one commit per record.

    The recorder exposes no update or delete operation; rows are additionally
    protected by ORM listeners on AuditEvent.
    """

    def __init__(self, session_factory):
        self._session_factory = session_factory

    def record(
        self,
        *,
        actor_id: str,
        action: Any,
        entity_type: str,
        entity_id: str,
        entity_name: Optional[str] = None,
        lab_id: Optional[str] = None,
        metadata: Optional[dict] = None,
        changes: Optional[dict] = None,
    ) -> AuditEvent:
        db = self._session_factory()
        try:
            event = log_event(
                db,
                actor_id=actor_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                entity_name=entity_name,
                lab_id=lab_id,
                metadata=metadata,
                changes=changes,
            )
            db.commit()
            db.refresh(event)
            db.expunge(event)
            return event
        except SQLAlchemyError as exc:
            db.rollback()
            raise AuditWriteFailed(f"audit store unavailable: {exc}") from exc
        finally:
            db.close()

    def record_detached(self, **kwargs) -> Optional[AuditEvent]:
        """Best-effort variant used after a committed mutation; never raises."""
        try:
            return self.record(**kwargs)
        except AuditWriteFailed as exc:
            config.logger.error(
                "audit_write_failed",
                extra={
                    "entity_type": kwargs.get("entity_type"),
                    "entity_id": kwargs.get("entity_id"),
                    "action": str(kwargs.get("action")),
                    "error": str(exc),
                },
            )
        except ValueError as exc:
            config.logger.error(
                "audit_record_rejected",
                extra={
                    "entity_type": kwargs.get("entity_type"),
                    "entity_id": kwargs.get("entity_id"),
                    "error": str(exc),
                },
            )
        return None


def _parse_dt(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationIssue(f"invalid datetime '{value}'", field="date", error_type="invalid") from exc
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def serialize_event(row: AuditEvent) -> dict:
    return {
        "id": str(row.event_id),
        "createdAt": row.created_at.isoformat() if row.created_at else None,
        "actorId": row.actor_id,
        "action": row.action,
        "entityType": row.entity_type,
        "entityId": row.entity_id,
        "entityName": row.entity_name,
        "changes": row.changes,
        "metadata": row.metadata_,
        "labId": row.lab_id,
    }


def list_audit_events(
    db,
    *,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    actor_id: Optional[str] = None,
    lab_id: Optional[str] = None,
    lab_ids: Optional[list[str]] = None,
    action: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    limit: int = 50,
    cursor: Optional[str] = None,
) -> dict:
    """
    Query audit events newest-first with optional filtering and cursor pagination.
    """
    if limit <= 0 or limit > config.AUDIT_LOG_LIMIT_MAX:
        raise ValidationIssue(
            f"limit must be between 1 and {config.AUDIT_LOG_LIMIT_MAX}",
            field="limit",
            error_type="out_of_range",
        )

    query = db.query(AuditEvent)
    if entity_type:
        query = query.filter(AuditEvent.entity_type == entity_type)
    if entity_id:
        query = query.filter(AuditEvent.entity_id == entity_id)
    if actor_id:
        query = query.filter(AuditEvent.actor_id == actor_id)
    if lab_id:
        query = query.filter(AuditEvent.lab_id == lab_id)
    elif lab_ids is not None:
        query = query.filter(AuditEvent.lab_id.in_(lab_ids))
    if action:
        query = query.filter(AuditEvent.action == _coerce_action(action))

    dt_from = _parse_dt(date_from)
    dt_to = _parse_dt(date_to)
    if dt_from:
        query = query.filter(AuditEvent.created_at >= dt_from)
    if dt_to:
        query = query.filter(AuditEvent.created_at <= dt_to)

    if cursor:
        cursor_event = db.query(AuditEvent).filter(AuditEvent.event_id == cursor).first()
        if cursor_event:
            query = query.filter(
                or_(
                    AuditEvent.created_at < cursor_event.created_at,
                    and_(
                        AuditEvent.created_at == cursor_event.created_at,
                        AuditEvent.event_id < cursor_event.event_id,
                    ),
                )
            )

    rows = (
        query.order_by(AuditEvent.created_at.desc(), AuditEvent.event_id.desc())
        .limit(limit)
        .all()
    )
    next_cursor = str(rows[-1].event_id) if len(rows) == limit else None
    return {
        "status": "ok",
        "count": len(rows),
        "logs": [serialize_event(row) for row in rows],
        "next_cursor": next_cursor,
    }


__all__ = [
    "AuditEvent",
    "AuditRecorder",
    "diff_changes",
    "request_metadata",
    "log_event",
    "list_audit_events",
    "serialize_event",
    "FORBIDDEN_METADATA_KEYS",
]
