"""
Canonical entity type tags and audit metadata keys.
"""

ENTITY_STUDY = "study"
ENTITY_TASK = "task"
ENTITY_IDEA = "idea"
ENTITY_COMMENT = "comment"
ENTITY_DEADLINE = "deadline"
ENTITY_BUCKET = "bucket"
ENTITY_TEAM_MEMBER = "team_member"
ENTITY_LAB = "lab"

ALLOWED_ENTITY_TYPES = {
    ENTITY_STUDY,
    ENTITY_TASK,
    ENTITY_IDEA,
    ENTITY_COMMENT,
    ENTITY_DEADLINE,
    ENTITY_BUCKET,
    ENTITY_TEAM_MEMBER,
    ENTITY_LAB,
}

METADATA_SOFT_DELETE = "isSoftDelete"
METADATA_OPERATION = "operation"

OPERATION_DELETE = "delete"
OPERATION_RESTORE = "restore"
OPERATION_PURGE = "purge"
OPERATION_RETENTION_PURGE = "retention_purge"

__all__ = [
    "ENTITY_STUDY",
    "ENTITY_TASK",
    "ENTITY_IDEA",
    "ENTITY_COMMENT",
    "ENTITY_DEADLINE",
    "ENTITY_BUCKET",
    "ENTITY_TEAM_MEMBER",
    "ENTITY_LAB",
    "ALLOWED_ENTITY_TYPES",
    "METADATA_SOFT_DELETE",
    "METADATA_OPERATION",
    "OPERATION_DELETE",
    "OPERATION_RESTORE",
    "OPERATION_PURGE",
    "OPERATION_RETENTION_PURGE",
]
