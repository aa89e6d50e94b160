"""
Archive of soft-deleted entities: listing, restore, purge and retention.
"""

from __future__ import annotations

import heapq
from datetime import datetime, timedelta
from itertools import islice
from typing import Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.audit import AuditRecorder, request_metadata
from core.audit_constants import (
    METADATA_OPERATION,
    OPERATION_PURGE,
    OPERATION_RESTORE,
    OPERATION_RETENTION_PURGE,
)
from core.context import Actor, RequestMeta
from core.db import DB
from core.errors import RepositoryError, ValidationIssue
from core.models import AuditAction
from core.results import (
    ExpiringEntity,
    NotFound,
    NotSoftDeleted,
    Purged,
    PurgeResult,
    Restored,
    RestoreResult,
)
from core.services.entity_repository import ENTITY_REGISTRY, EntityRepository, get_descriptor

SYSTEM_ACTOR_ID = "system"


def _validate_within_days(within_days: Optional[int]) -> int:
    if within_days is None:
        return config.EXPIRING_WITHIN_DAYS_DEFAULT
    if not isinstance(within_days, int) or isinstance(within_days, bool):
        raise ValidationIssue("withinDays must be an integer", field="withinDays", error_type="invalid")
    if within_days < 0 or within_days > config.EXPIRING_WITHIN_DAYS_MAX:
        raise ValidationIssue(
            f"withinDays must be between 0 and {config.EXPIRING_WITHIN_DAYS_MAX}",
            field="withinDays",
            error_type="out_of_range",
        )
    return within_days


class ExpiringEntities:
    """Lazy view over soft-deleted entities nearing their purge deadline.

    Every iteration opens a fresh session and re-queries the store, so the
    same view can be iterated again after restores or purges. ``lab_ids``
    narrows the view to a set of labs (the caller's memberships) and
    ``entity_type`` to a single stream.
    """

    def __init__(
        self,
        manager: "ArchiveManager",
        lab_id: Optional[str],
        within_days: int,
        now: Optional[datetime],
        entity_type: Optional[str] = None,
        lab_ids: Optional[list[str]] = None,
    ):
        self._manager = manager
        self.lab_id = lab_id
        self.within_days = within_days
        self._now = now
        self.entity_type = entity_type
        self.lab_ids = frozenset(lab_ids) if lab_ids is not None else None

    def _entity_types(self) -> list[str]:
        if self.entity_type is not None:
            return [self.entity_type] if get_descriptor(self.entity_type).supports_soft_delete else []
        return [
            entity_type
            for entity_type, descriptor in ENTITY_REGISTRY.items()
            if descriptor.supports_soft_delete
        ]

    def _stream(self, repo: EntityRepository, entity_type: str) -> Iterator[ExpiringEntity]:
        descriptor = get_descriptor(entity_type)
        for row in repo.iter_soft_deleted(entity_type, lab_id=self.lab_id):
            deleted_at = descriptor.deleted_at_of(row)
            if deleted_at is None:
                continue
            lab_id = descriptor.lab_of(row)
            if self.lab_ids is not None and lab_id not in self.lab_ids:
                continue
            yield ExpiringEntity(
                entity_type=entity_type,
                entity_id=str(row.id),
                name=descriptor.name_of(row),
                lab_id=lab_id,
                deleted_at=deleted_at,
                purge_deadline=self._manager.purge_deadline(deleted_at),
            )

    def __iter__(self) -> Iterator[ExpiringEntity]:
        now = self._now or datetime.utcnow()
        horizon = now + timedelta(days=self.within_days)
        db = self._manager.session_factory()
        try:
            repo = EntityRepository(db)
            streams = [self._stream(repo, entity_type) for entity_type in self._entity_types()]
            for item in heapq.merge(*streams, key=lambda entry: entry.purge_deadline):
                if item.purge_deadline > horizon:
                    break
                yield item
        finally:
            db.close()


class ArchiveManager:
    def __init__(self, session_factory, audit: AuditRecorder, retention_days: Optional[int] = None):
        self.session_factory = session_factory
        self.audit = audit
        self.retention_days = retention_days or config.SOFT_DELETE_RETENTION_DAYS

    def purge_deadline(self, deleted_at: datetime) -> datetime:
        return deleted_at + timedelta(days=self.retention_days)

    def list_expiring(
        self,
        lab_id: Optional[str] = None,
        within_days: Optional[int] = None,
        now: Optional[datetime] = None,
        entity_type: Optional[str] = None,
        lab_ids: Optional[list[str]] = None,
    ) -> ExpiringEntities:
        """Soft-deleted entities whose purge deadline falls within the window, soonest first."""
        if entity_type is not None:
            get_descriptor(entity_type)
        return ExpiringEntities(
            self,
            lab_id,
            _validate_within_days(within_days),
            now,
            entity_type=entity_type,
            lab_ids=lab_ids,
        )

    def restore(
        self,
        entity_type: str,
        entity_id: str,
        actor: Optional[Actor] = None,
        meta: Optional[RequestMeta] = None,
    ) -> RestoreResult:
        get_descriptor(entity_type)
        db = self.session_factory()
        try:
            repo = EntityRepository(db)
            row = repo.get(entity_type, entity_id, include_deleted=True)
            if row is None:
                return NotFound(entity_type, entity_id)
            if not repo.is_soft_deleted(entity_type, row):
                return NotSoftDeleted(entity_type, entity_id)
            changes = repo.restore(entity_type, row)
            snapshot = repo.snapshot(entity_type, row)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            config.logger.error(
                "entity_restore_failed",
                extra={"entity_type": entity_type, "entity_id": entity_id, "error": str(exc)},
            )
            raise RepositoryError(f"restore failed for {entity_type} {entity_id}") from exc
        finally:
            db.close()

        self.audit.record_detached(
            actor_id=actor.id if actor else SYSTEM_ACTOR_ID,
            action=AuditAction.UPDATE,
            entity_type=entity_type,
            entity_id=snapshot.id,
            entity_name=snapshot.name,
            lab_id=snapshot.lab_id,
            changes=changes,
            metadata=request_metadata(meta, extra={METADATA_OPERATION: OPERATION_RESTORE}),
        )
        config.logger.info(
            "entity_restored",
            extra={"entity_type": entity_type, "entity_id": snapshot.id},
        )
        return Restored(snapshot)

    def purge(
        self,
        entity_type: str,
        entity_id: str,
        actor: Optional[Actor] = None,
        meta: Optional[RequestMeta] = None,
        operation: str = OPERATION_PURGE,
    ) -> PurgeResult:
        """Permanently remove an entity that is already soft-deleted."""
        get_descriptor(entity_type)
        db = self.session_factory()
        try:
            repo = EntityRepository(db)
            row = repo.get(entity_type, entity_id, include_deleted=True)
            if row is None:
                return NotFound(entity_type, entity_id)
            if not repo.is_soft_deleted(entity_type, row):
                return NotSoftDeleted(entity_type, entity_id)
            snapshot = repo.snapshot(entity_type, row)
            repo.hard_delete(entity_type, row)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            config.logger.error(
                "entity_purge_failed",
                extra={"entity_type": entity_type, "entity_id": entity_id, "error": str(exc)},
            )
            raise RepositoryError(f"purge failed for {entity_type} {entity_id}") from exc
        finally:
            db.close()

        self.audit.record_detached(
            actor_id=actor.id if actor else SYSTEM_ACTOR_ID,
            action=AuditAction.DELETE,
            entity_type=entity_type,
            entity_id=snapshot.id,
            entity_name=snapshot.name,
            lab_id=snapshot.lab_id,
            metadata=request_metadata(
                meta,
                is_soft_delete=False,
                extra={METADATA_OPERATION: operation},
            ),
        )
        config.logger.info(
            "entity_purged",
            extra={"entity_type": entity_type, "entity_id": snapshot.id, "operation": operation},
        )
        return Purged(snapshot)

    def purge_expired(self, now: Optional[datetime] = None, limit: Optional[int] = None) -> dict:
        """Purge soft-deleted entities whose deadline has passed, oldest first."""
        limit = limit if limit is not None else config.RETENTION_PURGE_LIMIT
        expired = list(islice(self.list_expiring(within_days=0, now=now), max(limit, 0)))
        purged = 0
        skipped = 0
        failed = 0
        for item in expired:
            try:
                result = self.purge(
                    item.entity_type,
                    item.entity_id,
                    operation=OPERATION_RETENTION_PURGE,
                )
            except RepositoryError:
                failed += 1
                continue
            if result.ok:
                purged += 1
            else:
                skipped += 1
        return {"candidates": len(expired), "purged": purged, "skipped": skipped, "failed": failed}


def run_retention_tick() -> None:
    if DB.SessionLocal is None:
        return
    manager = ArchiveManager(DB.SessionLocal, AuditRecorder(DB.SessionLocal))
    stats = manager.purge_expired()
    config.logger.info("Retention tick complete", extra=stats)


__all__ = [
    "ArchiveManager",
    "ExpiringEntities",
    "SYSTEM_ACTOR_ID",
    "run_retention_tick",
]
