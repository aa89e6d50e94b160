"""
Dependency checks that gate destructive operations.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import core.config as config
from core.errors import EntityNotFound
from core.services.entity_repository import EntityRepository, get_descriptor

RELATION_LABELS = {
    "tasks": "task",
    "comments": "comment",
    "members": "team member",
    "studies": "study",
    "buckets": "bucket",
    "replies": "reply",
    "assigned_tasks": "open task assignment",
    "deadlines": "deadline",
    "ideas": "idea",
    "votes": "vote",
    "assignees": "assignee",
}


def blocking_relations(entity_type: str) -> tuple[str, ...]:
    descriptor = get_descriptor(entity_type)
    names = config.BLOCKING_RELATIONS.get(entity_type, [])
    unknown = [name for name in names if name not in descriptor.relations]
    if unknown:
        raise ValueError(f"{entity_type} cannot block on undeclared relations: {', '.join(unknown)}")
    return tuple(names)


@dataclass(frozen=True)
class DependencyReport:
    entity_type: str
    entity_id: str
    counts: dict[str, int] = field(default_factory=dict)
    blocking: tuple[str, ...] = ()

    @property
    def blocked(self) -> bool:
        return any(self.counts.get(name, 0) > 0 for name in self.blocking)

    def blocking_counts(self) -> dict[str, int]:
        return {name: self.counts.get(name, 0) for name in self.blocking if self.counts.get(name, 0) > 0}

    def describe(self) -> str:
        parts = [
            f"{count} {RELATION_LABELS.get(name, name)}(s)"
            for name, count in self.blocking_counts().items()
        ]
        if not parts:
            return ""
        return "Cannot delete: " + ", ".join(parts)


class DependencyChecker:
    """Counts child rows and applies the blocking policy; never mutates."""

    def __init__(self, repository: EntityRepository):
        self.repository = repository

    def report_for(self, entity_type: str, row) -> DependencyReport:
        blocking = blocking_relations(entity_type)
        counts = self.repository.count_relations(entity_type, row)
        return DependencyReport(
            entity_type=entity_type,
            entity_id=str(row.id),
            counts=counts,
            blocking=blocking,
        )

    def check(self, entity_type: str, entity_id: str, lock: bool = False) -> DependencyReport:
        row = (
            self.repository.get_for_update(entity_type, entity_id)
            if lock
            else self.repository.get(entity_type, entity_id)
        )
        if row is None:
            raise EntityNotFound(entity_type, entity_id)
        return self.report_for(entity_type, row)


def check_dependencies(db, entity_type: str, entity_id: str, lock: Optional[bool] = False) -> DependencyReport:
    return DependencyChecker(EntityRepository(db)).check(entity_type, entity_id, lock=bool(lock))


__all__ = [
    "DependencyReport",
    "DependencyChecker",
    "blocking_relations",
    "check_dependencies",
]
