"""
Entity registry and repository for deletable lab entities.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Iterator, Optional

from sqlalchemy import func, or_, select

import core.config as config
from core.audit import diff_changes
from core.audit_constants import (
    ENTITY_BUCKET,
    ENTITY_COMMENT,
    ENTITY_DEADLINE,
    ENTITY_IDEA,
    ENTITY_LAB,
    ENTITY_STUDY,
    ENTITY_TASK,
    ENTITY_TEAM_MEMBER,
)
from core.errors import UnsupportedEntityType
from core.models import (
    Bucket,
    Comment,
    Deadline,
    Idea,
    IdeaVote,
    Lab,
    LabMember,
    Study,
    StudyMember,
    Task,
    TaskAssignee,
    TaskStatus,
)
from core.results import EntitySnapshot

# Soft-delete marker styles
MARKER_FLAG = "flag"
MARKER_TIMESTAMP = "timestamp"

DELETED_COMMENT_PLACEHOLDER = "[deleted]"
RESTORED_COMMENT_PLACEHOLDER = "[Restored comment]"

RelationCounter = Callable[[Any, Any, bool], int]


def _live_criteria(model, marker: Optional[str]) -> list:
    if marker == MARKER_FLAG:
        return [model.is_active.is_(True)]
    if marker == MARKER_TIMESTAMP:
        return [model.deleted_at.is_(None)]
    return []


def _deleted_criteria(model, marker: Optional[str]) -> list:
    if marker == MARKER_FLAG:
        return [model.is_active.is_(False)]
    if marker == MARKER_TIMESTAMP:
        return [model.deleted_at.is_not(None)]
    return []


def _child_count(model, fk_name: str, marker: Optional[str] = None) -> RelationCounter:
    """Count rows of `model` whose `fk_name` points at the parent row.

    With live_only, rows already soft-deleted are left out of the count.
    """

    def counter(db, row, live_only: bool) -> int:
        query = db.query(func.count(model.id)).filter(getattr(model, fk_name) == row.id)
        if live_only:
            query = query.filter(*_live_criteria(model, marker))
        return query.scalar() or 0

    return counter


def _count_open_assignments(db, member: LabMember, live_only: bool) -> int:
    query = (
        db.query(func.count(TaskAssignee.id))
        .join(Task, TaskAssignee.task_id == Task.id)
        .join(Study, Task.study_id == Study.id)
        .filter(TaskAssignee.user_id == member.user_id)
        .filter(Study.lab_id == member.lab_id)
        .filter(Task.status != TaskStatus.COMPLETED.value)
        .filter(Task.is_active.is_(True))
    )
    return query.scalar() or 0


def _comment_name(row: Comment) -> str:
    if row.study is not None:
        return f"Comment on {row.study.name}"
    if row.task is not None:
        return f"Comment on {row.task.title}"
    return "Comment on Unknown Project"


def _comment_lab(row: Comment) -> Optional[str]:
    if row.study is not None:
        return row.study.lab_id
    if row.task is not None and row.task.study is not None:
        return row.task.study.lab_id
    return None


def _member_name(row: LabMember) -> Optional[str]:
    if row.user is None:
        return None
    return row.user.name or row.user.email


def _lab_study_ids(lab_id: str):
    return select(Study.id).where(Study.lab_id == lab_id)


def _filter_tasks_by_lab(query, lab_id: str):
    return query.filter(Task.study_id.in_(_lab_study_ids(lab_id)))


def _filter_comments_by_lab(query, lab_id: str):
    study_ids = _lab_study_ids(lab_id)
    task_ids = select(Task.id).where(Task.study_id.in_(study_ids))
    return query.filter(or_(Comment.study_id.in_(study_ids), Comment.task_id.in_(task_ids)))


def _filter_deadlines_by_lab(query, lab_id: str):
    return query.filter(or_(Deadline.lab_id == lab_id, Deadline.study_id.in_(_lab_study_ids(lab_id))))


def _park_comment_body(row: Comment) -> None:
    row.deleted_content = row.content
    row.content = DELETED_COMMENT_PLACEHOLDER


def _restore_comment_body(row: Comment) -> None:
    row.content = row.deleted_content or row.content or RESTORED_COMMENT_PLACEHOLDER
    row.deleted_content = None


@dataclass(frozen=True)
class EntityDescriptor:
    entity_type: str
    model: Any
    name_of: Callable[[Any], Optional[str]]
    lab_of: Callable[[Any], Optional[str]]
    filter_by_lab: Callable[[Any, str], Any]
    marker: Optional[str] = None
    relations: dict[str, RelationCounter] = field(default_factory=dict)
    on_soft_delete: Optional[Callable[[Any], None]] = None
    on_restore: Optional[Callable[[Any], None]] = None

    @property
    def supports_soft_delete(self) -> bool:
        return self.marker is not None

    def is_soft_deleted(self, row) -> bool:
        if self.marker == MARKER_FLAG:
            return not row.is_active
        if self.marker == MARKER_TIMESTAMP:
            return row.deleted_at is not None
        return False

    def deleted_at_of(self, row) -> Optional[datetime]:
        return row.deleted_at or getattr(row, "updated_at", None)


ENTITY_REGISTRY: dict[str, EntityDescriptor] = {
    ENTITY_STUDY: EntityDescriptor(
        entity_type=ENTITY_STUDY,
        model=Study,
        name_of=lambda row: row.name,
        lab_of=lambda row: row.lab_id,
        filter_by_lab=lambda query, lab_id: query.filter(Study.lab_id == lab_id),
        relations={
            "tasks": _child_count(Task, "study_id", MARKER_FLAG),
            "comments": _child_count(Comment, "study_id", MARKER_TIMESTAMP),
            "members": _child_count(StudyMember, "study_id"),
            "deadlines": _child_count(Deadline, "study_id", MARKER_FLAG),
        },
    ),
    ENTITY_BUCKET: EntityDescriptor(
        entity_type=ENTITY_BUCKET,
        model=Bucket,
        name_of=lambda row: row.name,
        lab_of=lambda row: row.lab_id,
        filter_by_lab=lambda query, lab_id: query.filter(Bucket.lab_id == lab_id),
        relations={
            "studies": _child_count(Study, "bucket_id"),
        },
    ),
    ENTITY_LAB: EntityDescriptor(
        entity_type=ENTITY_LAB,
        model=Lab,
        name_of=lambda row: row.name,
        lab_of=lambda row: row.id,
        filter_by_lab=lambda query, lab_id: query.filter(Lab.id == lab_id),
        relations={
            "studies": _child_count(Study, "lab_id"),
            "members": _child_count(LabMember, "lab_id", MARKER_FLAG),
            "buckets": _child_count(Bucket, "lab_id"),
            "ideas": _child_count(Idea, "lab_id", MARKER_FLAG),
            "deadlines": _child_count(Deadline, "lab_id", MARKER_FLAG),
        },
    ),
    ENTITY_TASK: EntityDescriptor(
        entity_type=ENTITY_TASK,
        model=Task,
        name_of=lambda row: row.title,
        lab_of=lambda row: row.study.lab_id if row.study is not None else None,
        filter_by_lab=_filter_tasks_by_lab,
        marker=MARKER_FLAG,
        relations={
            "comments": _child_count(Comment, "task_id", MARKER_TIMESTAMP),
            "assignees": _child_count(TaskAssignee, "task_id"),
        },
    ),
    ENTITY_COMMENT: EntityDescriptor(
        entity_type=ENTITY_COMMENT,
        model=Comment,
        name_of=_comment_name,
        lab_of=_comment_lab,
        filter_by_lab=_filter_comments_by_lab,
        marker=MARKER_TIMESTAMP,
        relations={
            "replies": _child_count(Comment, "reply_to_id", MARKER_TIMESTAMP),
        },
        on_soft_delete=_park_comment_body,
        on_restore=_restore_comment_body,
    ),
    ENTITY_IDEA: EntityDescriptor(
        entity_type=ENTITY_IDEA,
        model=Idea,
        name_of=lambda row: row.title,
        lab_of=lambda row: row.lab_id,
        filter_by_lab=lambda query, lab_id: query.filter(Idea.lab_id == lab_id),
        marker=MARKER_FLAG,
        relations={
            "votes": _child_count(IdeaVote, "idea_id"),
        },
    ),
    ENTITY_DEADLINE: EntityDescriptor(
        entity_type=ENTITY_DEADLINE,
        model=Deadline,
        name_of=lambda row: row.title,
        lab_of=lambda row: row.lab_id or (row.study.lab_id if row.study is not None else None),
        filter_by_lab=_filter_deadlines_by_lab,
        marker=MARKER_FLAG,
    ),
    ENTITY_TEAM_MEMBER: EntityDescriptor(
        entity_type=ENTITY_TEAM_MEMBER,
        model=LabMember,
        name_of=_member_name,
        lab_of=lambda row: row.lab_id,
        filter_by_lab=lambda query, lab_id: query.filter(LabMember.lab_id == lab_id),
        marker=MARKER_FLAG,
        relations={
            "assigned_tasks": _count_open_assignments,
        },
    ),
}


def get_descriptor(entity_type: str) -> EntityDescriptor:
    try:
        return ENTITY_REGISTRY[entity_type]
    except KeyError:
        raise UnsupportedEntityType(entity_type) from None


def deletion_mode(entity_type: str) -> str:
    descriptor = get_descriptor(entity_type)
    mode = config.DELETION_POLICY.get(entity_type)
    if mode is None:
        mode = config.DELETE_MODE_SOFT if descriptor.supports_soft_delete else config.DELETE_MODE_HARD
    return mode


def validate_deletion_policy() -> None:
    """Reject policies that ask for soft deletion of types without a marker."""
    errors = []
    for entity_type, descriptor in ENTITY_REGISTRY.items():
        mode = deletion_mode(entity_type)
        if mode == config.DELETE_MODE_SOFT and not descriptor.supports_soft_delete:
            errors.append(f"{entity_type} has no soft-delete marker")
    unknown = set(config.DELETION_POLICY) - set(ENTITY_REGISTRY)
    for entity_type in sorted(unknown):
        errors.append(f"unknown entity type in deletion policy: {entity_type}")
    if errors:
        raise RuntimeError("Deletion policy invalid: " + "; ".join(errors))


def _column_values(row) -> dict:
    return {column.key: getattr(row, column.key) for column in row.__table__.columns}


class EntityRepository:
    """Generic persistence access for every registered entity type.

    All methods work on the caller's session; mutations flush but leave the
    commit to the caller so a dependency check and the mutation it guards
    can share one transaction.
    """

    def __init__(self, db):
        self.db = db

    def _query(self, descriptor: EntityDescriptor, entity_id: str):
        return self.db.query(descriptor.model).filter(descriptor.model.id == entity_id)

    def get(self, entity_type: str, entity_id: str, include_deleted: bool = False):
        descriptor = get_descriptor(entity_type)
        query = self._query(descriptor, entity_id)
        if not include_deleted:
            query = query.filter(*_live_criteria(descriptor.model, descriptor.marker))
        return query.first()

    def get_for_update(self, entity_type: str, entity_id: str, include_deleted: bool = False):
        """Fetch and lock the row until the surrounding transaction ends."""
        descriptor = get_descriptor(entity_type)
        query = self._query(descriptor, entity_id).with_for_update()
        if not include_deleted:
            query = query.filter(*_live_criteria(descriptor.model, descriptor.marker))
        return query.first()

    def is_soft_deleted(self, entity_type: str, row) -> bool:
        return get_descriptor(entity_type).is_soft_deleted(row)

    def snapshot(self, entity_type: str, row) -> EntitySnapshot:
        descriptor = get_descriptor(entity_type)
        return EntitySnapshot(
            id=str(row.id),
            name=descriptor.name_of(row),
            entity_type=entity_type,
            lab_id=descriptor.lab_of(row),
        )

    def count_relations(self, entity_type: str, row, relations: Optional[list[str]] = None) -> dict[str, int]:
        """Count child rows per declared relation (count queries only).

        Hard-deleted parents count every child row, since removing the parent
        would orphan archived children too. Soft-deleted parents keep their
        row, so only live children are counted.
        """
        descriptor = get_descriptor(entity_type)
        live_only = deletion_mode(entity_type) == config.DELETE_MODE_SOFT
        names = relations if relations is not None else list(descriptor.relations)
        counts = {}
        for name in names:
            counter = descriptor.relations.get(name)
            if counter is None:
                raise ValueError(f"{entity_type} has no relation named '{name}'")
            counts[name] = int(counter(self.db, row, live_only))
        return counts

    def get_with_counts(self, entity_type: str, entity_id: str, lock: bool = False):
        row = (
            self.get_for_update(entity_type, entity_id)
            if lock
            else self.get(entity_type, entity_id)
        )
        if row is None:
            return None, {}
        return row, self.count_relations(entity_type, row)

    def create(self, entity_type: str, **values):
        descriptor = get_descriptor(entity_type)
        row = descriptor.model(**values)
        self.db.add(row)
        self.db.flush()
        return row

    def update(self, entity_type: str, entity_id: str, **values):
        """Apply column updates to a live row; returns (row, changes) or (None, {})."""
        row = self.get(entity_type, entity_id)
        if row is None:
            return None, {}
        before = _column_values(row)
        for key, value in values.items():
            if key not in before:
                raise ValueError(f"{entity_type} has no column '{key}'")
            setattr(row, key, value)
        self.db.flush()
        after = _column_values(row)
        after.pop("updated_at", None)
        before.pop("updated_at", None)
        return row, diff_changes(before, after)

    def soft_delete(self, entity_type: str, row, actor_id: Optional[str] = None) -> None:
        descriptor = get_descriptor(entity_type)
        if not descriptor.supports_soft_delete:
            raise ValueError(f"{entity_type} does not support soft delete")
        if descriptor.marker == MARKER_FLAG:
            row.is_active = False
        row.deleted_at = datetime.utcnow()
        row.deleted_by_id = actor_id
        if descriptor.on_soft_delete:
            descriptor.on_soft_delete(row)
        self.db.flush()

    def restore(self, entity_type: str, row) -> dict:
        """Clear the soft-delete marker; returns the marker diff for auditing."""
        descriptor = get_descriptor(entity_type)
        if not descriptor.supports_soft_delete:
            raise ValueError(f"{entity_type} does not support soft delete")
        before = {"deleted_at": row.deleted_at}
        after = {"deleted_at": None}
        if descriptor.marker == MARKER_FLAG:
            before["is_active"] = row.is_active
            after["is_active"] = True
            row.is_active = True
        row.deleted_at = None
        row.deleted_by_id = None
        if descriptor.on_restore:
            descriptor.on_restore(row)
        self.db.flush()
        return diff_changes(before, after)

    def hard_delete(self, entity_type: str, row) -> None:
        get_descriptor(entity_type)
        self.db.delete(row)
        self.db.flush()

    def iter_soft_deleted(
        self,
        entity_type: str,
        lab_id: Optional[str] = None,
        batch_size: Optional[int] = None,
    ) -> Iterator:
        """Stream soft-deleted rows ordered by deletion time, oldest first."""
        descriptor = get_descriptor(entity_type)
        if not descriptor.supports_soft_delete:
            return iter(())
        model = descriptor.model
        deleted_at = func.coalesce(model.deleted_at, model.updated_at)
        query = self.db.query(model).filter(*_deleted_criteria(model, descriptor.marker))
        if lab_id:
            query = descriptor.filter_by_lab(query, lab_id)
        query = query.order_by(deleted_at.asc(), model.id.asc())
        return query.yield_per(batch_size or config.ARCHIVE_BATCH_SIZE)


__all__ = [
    "MARKER_FLAG",
    "MARKER_TIMESTAMP",
    "EntityDescriptor",
    "ENTITY_REGISTRY",
    "EntityRepository",
    "get_descriptor",
    "deletion_mode",
    "validate_deletion_policy",
]
