"""
Deletion orchestration: rate check, dependency check, mutation, audit.
"""

from __future__ import annotations

from enum import Enum
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

import core.config as config
from core.audit import AuditRecorder, request_metadata
from core.audit_constants import METADATA_OPERATION, OPERATION_DELETE
from core.context import Actor, RequestMeta
from core.errors import RepositoryError
from core.models import AuditAction
from core.results import (
    Deleted,
    DeletionResult,
    EntitySnapshot,
    Forbidden,
    HasDependencies,
    NotFound,
    RateLimited,
)
from core.services.dependency_checker import DependencyChecker
from core.services.entity_repository import (
    EntityRepository,
    deletion_mode,
    get_descriptor,
    validate_deletion_policy,
)
from rate_limiter import OperationRateLimiter

Authorizer = Callable[[Actor, EntitySnapshot], bool]


class DeletionState(str, Enum):
    REQUESTED = "REQUESTED"
    RATE_CHECKED = "RATE_CHECKED"
    DEPENDENCY_CHECKED = "DEPENDENCY_CHECKED"
    MUTATED = "MUTATED"
    AUDITED = "AUDITED"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"


class DeletionOrchestrator:
    """Runs one deletion request through its checks and side effects.

    The dependency check and the mutation share a session and transaction;
    with DELETE_LOCK_PARENT the parent row is held with SELECT ... FOR UPDATE
    in between (ignored on SQLite, which serializes writers).
    The audit record is written after commit and never rolls the mutation back.
    """

    def __init__(
        self,
        session_factory,
        rate_limiter: OperationRateLimiter,
        audit: AuditRecorder,
        authorize: Optional[Authorizer] = None,
        lock_parent: Optional[bool] = None,
    ):
        validate_deletion_policy()
        self.session_factory = session_factory
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.authorize = authorize
        self.lock_parent = config.DELETE_LOCK_PARENT if lock_parent is None else lock_parent

    def _reject(self, state: DeletionState, entity_type: str, entity_id: str, actor: Actor, result):
        config.logger.info(
            "entity_delete_rejected",
            extra={
                "entity_type": entity_type,
                "entity_id": entity_id,
                "actor_id": actor.id,
                "state": DeletionState.REJECTED.value,
                "reached": state.value,
                "code": result.code,
            },
        )
        return result

    def delete_entity(
        self,
        entity_type: str,
        entity_id: str,
        actor: Actor,
        request_meta: Optional[RequestMeta] = None,
    ) -> DeletionResult:
        get_descriptor(entity_type)
        state = DeletionState.REQUESTED

        decision = self.rate_limiter.check_and_increment(actor.id, config.OPERATION_DESTRUCTIVE)
        if not decision.allowed:
            return self._reject(
                state,
                entity_type,
                entity_id,
                actor,
                RateLimited(retry_after_seconds=decision.retry_after_seconds, limit=decision.limit),
            )
        state = DeletionState.RATE_CHECKED

        soft = deletion_mode(entity_type) == config.DELETE_MODE_SOFT
        db = self.session_factory()
        try:
            repo = EntityRepository(db)
            row = (
                repo.get_for_update(entity_type, entity_id)
                if self.lock_parent
                else repo.get(entity_type, entity_id)
            )
            if row is None:
                db.rollback()
                return self._reject(state, entity_type, entity_id, actor, NotFound(entity_type, entity_id))

            snapshot = repo.snapshot(entity_type, row)
            if self.authorize is not None and not self.authorize(actor, snapshot):
                db.rollback()
                return self._reject(state, entity_type, entity_id, actor, Forbidden())

            report = DependencyChecker(repo).report_for(entity_type, row)
            if report.blocked:
                db.rollback()
                return self._reject(
                    state,
                    entity_type,
                    entity_id,
                    actor,
                    HasDependencies(dependencies=report.blocking_counts(), message=report.describe()),
                )
            state = DeletionState.DEPENDENCY_CHECKED

            if soft:
                repo.soft_delete(entity_type, row, actor_id=actor.id)
            else:
                repo.hard_delete(entity_type, row)
            db.commit()
            state = DeletionState.MUTATED
        except SQLAlchemyError as exc:
            db.rollback()
            config.logger.error(
                "entity_delete_failed",
                extra={
                    "entity_type": entity_type,
                    "entity_id": entity_id,
                    "state": state.value,
                    "error": str(exc),
                },
            )
            raise RepositoryError(f"delete failed for {entity_type} {entity_id}") from exc
        finally:
            db.close()

        event = self.audit.record_detached(
            actor_id=actor.id,
            action=AuditAction.DELETE,
            entity_type=entity_type,
            entity_id=snapshot.id,
            entity_name=snapshot.name,
            lab_id=snapshot.lab_id,
            metadata=request_metadata(
                request_meta,
                is_soft_delete=soft,
                extra={METADATA_OPERATION: OPERATION_DELETE},
            ),
        )
        if event is not None:
            state = DeletionState.AUDITED
        audited = state == DeletionState.AUDITED
        state = DeletionState.COMPLETED

        config.logger.info(
            "entity_deleted",
            extra={
                "entity_type": entity_type,
                "entity_id": snapshot.id,
                "actor_id": actor.id,
                "soft_deleted": soft,
                "audited": audited,
                "state": state.value,
            },
        )
        return Deleted(
            deleted_entity=snapshot,
            soft_deleted=soft,
            audit_event_id=str(event.event_id) if event is not None else None,
        )


__all__ = [
    "DeletionOrchestrator",
    "DeletionState",
]
