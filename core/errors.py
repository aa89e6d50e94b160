"""
Shared error types for core services.
"""


class ValidationIssue(ValueError):
    def __init__(
        self,
        message: str,
        field: str = "unknown",
        error_type: str = "invalid",
        error_code: str | None = None,
        data: dict | None = None,
    ):
        super().__init__(message)
        self.field = field
        self.error_type = error_type
        self.error_code = error_code
        self.data = data


class UnsupportedEntityType(LookupError):
    """Raised when an entity type tag has no registered descriptor."""

    def __init__(self, entity_type: str):
        super().__init__(f"unsupported entity type: {entity_type!r}")
        self.entity_type = entity_type


class EntityNotFound(LookupError):
    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type} {entity_id!r} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class AuditWriteFailed(RuntimeError):
    """Raised when the audit store rejects or cannot persist a record."""


class RepositoryError(RuntimeError):
    """Raised when the entity store fails during a mutation."""


class ImmutableRecordError(RuntimeError):
    """Raised on any attempt to modify or remove an audit record."""
