"""
LabOps Database Models
PostgreSQL (production) / SQLite (tests) schema
"""

from datetime import datetime
from enum import Enum as PyEnum
import uuid
from sqlalchemy import (
    Column, String, Text, Boolean, Integer,
    DateTime, ForeignKey, Index, UniqueConstraint, JSON, event
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship, declarative_base

from core.errors import ImmutableRecordError

JSON_TYPE = JSON().with_variant(JSONB(), "postgresql")


def _id_default() -> str:
    return str(uuid.uuid4())


Base = declarative_base()

# =============================================================================
# Enums
# =============================================================================

class AuditAction(str, PyEnum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class TaskStatus(str, PyEnum):
    TODO = "TODO"
    IN_PROGRESS = "IN_PROGRESS"
    REVIEW = "REVIEW"
    COMPLETED = "COMPLETED"
    BLOCKED = "BLOCKED"


# =============================================================================
# Labs & Users
# =============================================================================

class Lab(Base):
    __tablename__ = "labs"

    id = Column(String(36), primary_key=True, default=_id_default)
    name = Column(String(200), nullable=False)
    short_name = Column(String(50))
    description = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    members = relationship("LabMember", back_populates="lab")
    buckets = relationship("Bucket", back_populates="lab")
    studies = relationship("Study", back_populates="lab")
    ideas = relationship("Idea", back_populates="lab", cascade="save-update, merge, delete")
    deadlines = relationship("Deadline", back_populates="lab", cascade="save-update, merge, delete")


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_id_default)
    email = Column(String(255), nullable=False, unique=True)
    name = Column(String(200))
    role = Column(String(50), default="RESEARCH_MEMBER", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    memberships = relationship("LabMember", back_populates="user", foreign_keys="LabMember.user_id")


class LabMember(Base):
    """Team membership of a user in a lab (soft-deleted through is_active)."""

    __tablename__ = "lab_members"

    id = Column(String(36), primary_key=True, default=_id_default)
    lab_id = Column(String(36), ForeignKey("labs.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role = Column(String(50))
    is_admin = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    deleted_at = Column(DateTime)
    deleted_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    lab = relationship("Lab", back_populates="members")
    user = relationship("User", back_populates="memberships", foreign_keys=[user_id])

    __table_args__ = (
        UniqueConstraint("lab_id", "user_id", name="uq_lab_members_lab_user"),
        Index("ix_lab_members_inactive", "is_active", "deleted_at"),
    )


# =============================================================================
# Buckets & Studies
# =============================================================================

class Bucket(Base):
    __tablename__ = "buckets"

    id = Column(String(36), primary_key=True, default=_id_default)
    lab_id = Column(String(36), ForeignKey("labs.id", ondelete="CASCADE"), nullable=False)
    name = Column(String(200), nullable=False)
    color = Column(String(20))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    lab = relationship("Lab", back_populates="buckets")
    studies = relationship("Study", back_populates="bucket")


class Study(Base):
    __tablename__ = "studies"

    id = Column(String(36), primary_key=True, default=_id_default)
    lab_id = Column(String(36), ForeignKey("labs.id", ondelete="CASCADE"), nullable=False)
    bucket_id = Column(String(36), ForeignKey("buckets.id", ondelete="RESTRICT"))
    name = Column(String(500), nullable=False)
    status = Column(String(50), default="PLANNING", nullable=False)
    created_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    lab = relationship("Lab", back_populates="studies")
    bucket = relationship("Bucket", back_populates="studies")
    members = relationship("StudyMember", back_populates="study", cascade="save-update, merge, delete")
    tasks = relationship("Task", back_populates="study")
    comments = relationship("Comment", back_populates="study")
    deadlines = relationship("Deadline", back_populates="study")

    __table_args__ = (
        Index("ix_studies_lab_id", "lab_id"),
    )


class StudyMember(Base):
    __tablename__ = "study_members"

    id = Column(String(36), primary_key=True, default=_id_default)
    study_id = Column(String(36), ForeignKey("studies.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    role = Column(String(50))

    study = relationship("Study", back_populates="members")

    __table_args__ = (
        UniqueConstraint("study_id", "user_id", name="uq_study_members_study_user"),
    )


# =============================================================================
# Tasks
# =============================================================================

class Task(Base):
    __tablename__ = "tasks"

    id = Column(String(36), primary_key=True, default=_id_default)
    study_id = Column(String(36), ForeignKey("studies.id", ondelete="CASCADE"), nullable=False)
    title = Column(String(500), nullable=False)
    description = Column(Text)
    status = Column(String(50), default=TaskStatus.TODO.value, nullable=False)
    priority = Column(String(50), default="MEDIUM", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    deleted_at = Column(DateTime)
    deleted_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    study = relationship("Study", back_populates="tasks")
    assignees = relationship("TaskAssignee", back_populates="task", cascade="save-update, merge, delete")
    comments = relationship("Comment", back_populates="task", cascade="save-update, merge, delete")

    __table_args__ = (
        Index("ix_tasks_study_active", "study_id", "is_active"),
    )


class TaskAssignee(Base):
    __tablename__ = "task_assignees"

    id = Column(String(36), primary_key=True, default=_id_default)
    task_id = Column(String(36), ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    task = relationship("Task", back_populates="assignees")

    __table_args__ = (
        UniqueConstraint("task_id", "user_id", name="uq_task_assignees_task_user"),
    )


# =============================================================================
# Comments
# =============================================================================

class Comment(Base):
    """Threaded comment; soft deletion parks the body in deleted_content."""

    __tablename__ = "comments"

    id = Column(String(36), primary_key=True, default=_id_default)
    study_id = Column(String(36), ForeignKey("studies.id", ondelete="CASCADE"))
    task_id = Column(String(36), ForeignKey("tasks.id", ondelete="CASCADE"))
    reply_to_id = Column(String(36), ForeignKey("comments.id", ondelete="CASCADE"))
    author_id = Column(String(36), ForeignKey("users.id"))
    content = Column(Text, nullable=False)
    deleted_content = Column(Text)
    deleted_at = Column(DateTime)
    deleted_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    study = relationship("Study", back_populates="comments")
    task = relationship("Task", back_populates="comments")
    replies = relationship("Comment", cascade="save-update, merge, delete", foreign_keys=[reply_to_id])

    __table_args__ = (
        Index("ix_comments_deleted_at", "deleted_at"),
    )


# =============================================================================
# Ideas
# =============================================================================

class Idea(Base):
    __tablename__ = "ideas"

    id = Column(String(36), primary_key=True, default=_id_default)
    lab_id = Column(String(36), ForeignKey("labs.id", ondelete="CASCADE"))
    created_by_id = Column(String(36), ForeignKey("users.id"))
    title = Column(String(500), nullable=False)
    description = Column(Text)
    category = Column(String(100))
    stage = Column(String(50), default="NEW", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    deleted_at = Column(DateTime)
    deleted_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    lab = relationship("Lab", back_populates="ideas")
    votes = relationship("IdeaVote", back_populates="idea", cascade="save-update, merge, delete")

    __table_args__ = (
        Index("ix_ideas_inactive", "is_active", "deleted_at"),
    )


class IdeaVote(Base):
    __tablename__ = "idea_votes"

    id = Column(String(36), primary_key=True, default=_id_default)
    idea_id = Column(String(36), ForeignKey("ideas.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    value = Column(Integer, default=1, nullable=False)

    idea = relationship("Idea", back_populates="votes")

    __table_args__ = (
        UniqueConstraint("idea_id", "user_id", name="uq_idea_votes_idea_user"),
    )


# =============================================================================
# Deadlines
# =============================================================================

class Deadline(Base):
    __tablename__ = "deadlines"

    id = Column(String(36), primary_key=True, default=_id_default)
    lab_id = Column(String(36), ForeignKey("labs.id", ondelete="CASCADE"))
    study_id = Column(String(36), ForeignKey("studies.id", ondelete="SET NULL"))
    title = Column(String(500), nullable=False)
    description = Column(Text)
    deadline_type = Column(String(50), default="OTHER", nullable=False)
    due_date = Column(DateTime)
    is_active = Column(Boolean, default=True, nullable=False)
    deleted_at = Column(DateTime)
    deleted_by_id = Column(String(36), ForeignKey("users.id"))
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    lab = relationship("Lab", back_populates="deadlines")
    study = relationship("Study", back_populates="deadlines")

    __table_args__ = (
        Index("ix_deadlines_inactive", "is_active", "deleted_at"),
    )


# =============================================================================
# Audit Ledger
# =============================================================================

class AuditEvent(Base):
    __tablename__ = "audit_events"

    event_id = Column(String(36), primary_key=True, default=_id_default)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    actor_id = Column(String(255), nullable=False)
    action = Column(String(20), nullable=False)
    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(255), nullable=False)
    entity_name = Column(String(500))
    changes = Column(JSON_TYPE)
    metadata_ = Column("metadata", JSON_TYPE)
    lab_id = Column(String(36))

    __table_args__ = (
        Index("ix_audit_events_created_at", "created_at"),
        Index("ix_audit_events_entity", "entity_type", "entity_id"),
        Index("ix_audit_events_actor_id", "actor_id"),
        Index("ix_audit_events_lab_id", "lab_id"),
    )


@event.listens_for(AuditEvent, "before_update")
def _reject_audit_update(mapper, connection, target) -> None:
    raise ImmutableRecordError("audit events are write-once")


@event.listens_for(AuditEvent, "before_delete")
def _reject_audit_delete(mapper, connection, target) -> None:
    raise ImmutableRecordError("audit events are write-once")


__all__ = [
    "Base",
    "AuditAction",
    "TaskStatus",
    "Lab",
    "User",
    "LabMember",
    "Bucket",
    "Study",
    "StudyMember",
    "Task",
    "TaskAssignee",
    "Comment",
    "Idea",
    "IdeaVote",
    "Deadline",
    "AuditEvent",
]
