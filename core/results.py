"""
Result values returned across the core/caller boundary.

Client-facing outcomes (not found, blocked, throttled, wrong state) are
values, never exceptions; route handlers serialize them with `to_dict()` and
`status_code`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import ClassVar, Optional, Union

CODE_RATE_LIMITED = "RATE_LIMITED"
CODE_HAS_DEPENDENCIES = "HAS_DEPENDENCIES"
CODE_NOT_FOUND = "NOT_FOUND"
CODE_FORBIDDEN = "FORBIDDEN"
CODE_NOT_SOFT_DELETED = "NOT_SOFT_DELETED"


@dataclass(frozen=True)
class EntitySnapshot:
    id: str
    name: Optional[str]
    entity_type: str
    lab_id: Optional[str] = None

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name}


@dataclass(frozen=True)
class Deleted:
    deleted_entity: EntitySnapshot
    soft_deleted: bool
    audit_event_id: Optional[str] = None

    ok: ClassVar[bool] = True
    code: ClassVar[Optional[str]] = None
    status_code: ClassVar[int] = 200

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "deletedEntity": self.deleted_entity.to_dict(),
            "softDeleted": self.soft_deleted,
        }


@dataclass(frozen=True)
class Restored:
    entity: EntitySnapshot

    ok: ClassVar[bool] = True
    code: ClassVar[Optional[str]] = None
    status_code: ClassVar[int] = 200

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "message": f"{self.entity.name or self.entity.id} has been restored successfully",
        }


@dataclass(frozen=True)
class Purged:
    entity: EntitySnapshot

    ok: ClassVar[bool] = True
    code: ClassVar[Optional[str]] = None
    status_code: ClassVar[int] = 200

    def to_dict(self) -> dict:
        return {
            "ok": True,
            "message": f"{self.entity.name or self.entity.id} has been permanently deleted",
        }


@dataclass(frozen=True)
class RateLimited:
    retry_after_seconds: int
    limit: int = 0

    ok: ClassVar[bool] = False
    code: ClassVar[str] = CODE_RATE_LIMITED
    status_code: ClassVar[int] = 429

    @property
    def message(self) -> str:
        return f"Too many delete requests. Try again in {self.retry_after_seconds} second(s)."

    def to_dict(self) -> dict:
        return {
            "ok": False,
            "code": self.code,
            "retryAfterSeconds": self.retry_after_seconds,
            "message": self.message,
        }


@dataclass(frozen=True)
class HasDependencies:
    dependencies: dict[str, int] = field(default_factory=dict)
    message: str = ""

    ok: ClassVar[bool] = False
    code: ClassVar[str] = CODE_HAS_DEPENDENCIES
    status_code: ClassVar[int] = 400

    def to_dict(self) -> dict:
        return {
            "ok": False,
            "code": self.code,
            "dependencies": dict(self.dependencies),
            "message": self.message,
        }


@dataclass(frozen=True)
class NotFound:
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None

    ok: ClassVar[bool] = False
    code: ClassVar[str] = CODE_NOT_FOUND
    status_code: ClassVar[int] = 404

    def to_dict(self) -> dict:
        return {"ok": False, "code": self.code}


@dataclass(frozen=True)
class Forbidden:
    reason: Optional[str] = None

    ok: ClassVar[bool] = False
    code: ClassVar[str] = CODE_FORBIDDEN
    status_code: ClassVar[int] = 403

    def to_dict(self) -> dict:
        payload = {"ok": False, "code": self.code}
        if self.reason:
            payload["message"] = self.reason
        return payload


@dataclass(frozen=True)
class NotSoftDeleted:
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None

    ok: ClassVar[bool] = False
    code: ClassVar[str] = CODE_NOT_SOFT_DELETED
    status_code: ClassVar[int] = 400

    def to_dict(self) -> dict:
        return {"ok": False, "code": self.code}


@dataclass(frozen=True)
class ExpiringEntity:
    entity_type: str
    entity_id: str
    name: Optional[str]
    lab_id: Optional[str]
    deleted_at: datetime
    purge_deadline: datetime

    def to_dict(self) -> dict:
        return {
            "entityType": self.entity_type,
            "entityId": self.entity_id,
            "name": self.name,
            "labId": self.lab_id,
            "deletedAt": self.deleted_at.isoformat(),
            "purgeDeadline": self.purge_deadline.isoformat(),
        }


DeletionResult = Union[Deleted, RateLimited, HasDependencies, NotFound, Forbidden]
RestoreResult = Union[Restored, NotSoftDeleted, NotFound]
PurgeResult = Union[Purged, NotSoftDeleted, NotFound]

__all__ = [
    "EntitySnapshot",
    "Deleted",
    "Restored",
    "Purged",
    "RateLimited",
    "HasDependencies",
    "NotFound",
    "Forbidden",
    "NotSoftDeleted",
    "ExpiringEntity",
    "DeletionResult",
    "RestoreResult",
    "PurgeResult",
]
