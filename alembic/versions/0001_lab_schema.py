"""Create lab, study, task, comment, idea and deadline tables.

Revision ID: 0001_lab_schema
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_lab_schema"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps(with_updated: bool = True) -> list:
    columns = [sa.Column("created_at", sa.DateTime(), nullable=False)]
    if with_updated:
        columns.append(sa.Column("updated_at", sa.DateTime()))
    return columns


def _flag_marker() -> list:
    return [
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("deleted_by_id", sa.String(length=36), sa.ForeignKey("users.id")),
    ]


def upgrade() -> None:
    op.create_table(
        "labs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("short_name", sa.String(length=50)),
        sa.Column("description", sa.Text()),
        *_timestamps(),
    )

    op.create_table(
        "users",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False, unique=True),
        sa.Column("name", sa.String(length=200)),
        sa.Column("role", sa.String(length=50), nullable=False, server_default="RESEARCH_MEMBER"),
        *_timestamps(with_updated=False),
    )

    op.create_table(
        "lab_members",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("lab_id", sa.String(length=36), sa.ForeignKey("labs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(length=50)),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_flag_marker(),
        *_timestamps(),
        sa.UniqueConstraint("lab_id", "user_id", name="uq_lab_members_lab_user"),
    )
    op.create_index("ix_lab_members_inactive", "lab_members", ["is_active", "deleted_at"])

    op.create_table(
        "buckets",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("lab_id", sa.String(length=36), sa.ForeignKey("labs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("color", sa.String(length=20)),
        *_timestamps(with_updated=False),
    )

    op.create_table(
        "studies",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("lab_id", sa.String(length=36), sa.ForeignKey("labs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("bucket_id", sa.String(length=36), sa.ForeignKey("buckets.id", ondelete="RESTRICT")),
        sa.Column("name", sa.String(length=500), nullable=False),
        sa.Column("status", sa.String(length=50), nullable=False, server_default="PLANNING"),
        sa.Column("created_by_id", sa.String(length=36), sa.ForeignKey("users.id")),
        *_timestamps(),
    )
    op.create_index("ix_studies_lab_id", "studies", ["lab_id"])

    op.create_table(
        "study_members",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("study_id", sa.String(length=36), sa.ForeignKey("studies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(length=50)),
        sa.UniqueConstraint("study_id", "user_id", name="uq_study_members_study_user"),
    )

    op.create_table(
        "tasks",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("study_id", sa.String(length=36), sa.ForeignKey("studies.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("status", sa.String(length=50), nullable=False, server_default="TODO"),
        sa.Column("priority", sa.String(length=50), nullable=False, server_default="MEDIUM"),
        *_flag_marker(),
        *_timestamps(),
    )
    op.create_index("ix_tasks_study_active", "tasks", ["study_id", "is_active"])

    op.create_table(
        "task_assignees",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("task_id", sa.String(length=36), sa.ForeignKey("tasks.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.UniqueConstraint("task_id", "user_id", name="uq_task_assignees_task_user"),
    )

    op.create_table(
        "comments",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("study_id", sa.String(length=36), sa.ForeignKey("studies.id", ondelete="CASCADE")),
        sa.Column("task_id", sa.String(length=36), sa.ForeignKey("tasks.id", ondelete="CASCADE")),
        sa.Column("reply_to_id", sa.String(length=36), sa.ForeignKey("comments.id", ondelete="CASCADE")),
        sa.Column("author_id", sa.String(length=36), sa.ForeignKey("users.id")),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("deleted_content", sa.Text()),
        sa.Column("deleted_at", sa.DateTime()),
        sa.Column("deleted_by_id", sa.String(length=36), sa.ForeignKey("users.id")),
        *_timestamps(),
    )
    op.create_index("ix_comments_deleted_at", "comments", ["deleted_at"])

    op.create_table(
        "ideas",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("lab_id", sa.String(length=36), sa.ForeignKey("labs.id", ondelete="CASCADE")),
        sa.Column("created_by_id", sa.String(length=36), sa.ForeignKey("users.id")),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("category", sa.String(length=100)),
        sa.Column("stage", sa.String(length=50), nullable=False, server_default="NEW"),
        *_flag_marker(),
        *_timestamps(),
    )
    op.create_index("ix_ideas_inactive", "ideas", ["is_active", "deleted_at"])

    op.create_table(
        "idea_votes",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("idea_id", sa.String(length=36), sa.ForeignKey("ideas.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.String(length=36), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("value", sa.Integer(), nullable=False, server_default="1"),
        sa.UniqueConstraint("idea_id", "user_id", name="uq_idea_votes_idea_user"),
    )

    op.create_table(
        "deadlines",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("lab_id", sa.String(length=36), sa.ForeignKey("labs.id", ondelete="CASCADE")),
        sa.Column("study_id", sa.String(length=36), sa.ForeignKey("studies.id", ondelete="SET NULL")),
        sa.Column("title", sa.String(length=500), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("deadline_type", sa.String(length=50), nullable=False, server_default="OTHER"),
        sa.Column("due_date", sa.DateTime()),
        *_flag_marker(),
        *_timestamps(),
    )
    op.create_index("ix_deadlines_inactive", "deadlines", ["is_active", "deleted_at"])


def downgrade() -> None:
    op.drop_index("ix_deadlines_inactive", table_name="deadlines")
    op.drop_table("deadlines")
    op.drop_table("idea_votes")
    op.drop_index("ix_ideas_inactive", table_name="ideas")
    op.drop_table("ideas")
    op.drop_index("ix_comments_deleted_at", table_name="comments")
    op.drop_table("comments")
    op.drop_table("task_assignees")
    op.drop_index("ix_tasks_study_active", table_name="tasks")
    op.drop_table("tasks")
    op.drop_table("study_members")
    op.drop_index("ix_studies_lab_id", table_name="studies")
    op.drop_table("studies")
    op.drop_table("buckets")
    op.drop_index("ix_lab_members_inactive", table_name="lab_members")
    op.drop_table("lab_members")
    op.drop_table("users")
    op.drop_table("labs")
