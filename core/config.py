"""
Shared configuration for LabOps core.
"""

from __future__ import annotations

import json
import logging
import os

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("labops")


def _get_bool(env_name: str, default: bool) -> bool:
    value = os.environ.get(env_name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int(env_name: str, default: int) -> int:
    value = os.environ.get(env_name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_json(env_name: str, default: dict) -> dict:
    value = os.environ.get(env_name)
    if not value or not value.strip():
        return dict(default)
    try:
        parsed = json.loads(value)
    except ValueError:
        logger.warning(f"{env_name} is not valid JSON; using defaults")
        return dict(default)
    if not isinstance(parsed, dict):
        logger.warning(f"{env_name} must be a JSON object; using defaults")
        return dict(default)
    return parsed


# Database settings
DB_BACKEND = os.environ.get("DB_BACKEND", "postgres").strip().lower()
SQLITE_PATH = os.environ.get("SQLITE_PATH", "/data/labops.db")
DATABASE_URL = os.environ.get("DATABASE_URL")

# Database initialization controls
AUTO_MIGRATE_ON_STARTUP = _get_bool("AUTO_MIGRATE_ON_STARTUP", True)
HEALTH_CHECK_SCHEMA = _get_bool("HEALTH_CHECK_SCHEMA", True)

# Rate limiting (fixed window per actor and operation class)
OPERATION_DESTRUCTIVE = "destructive"
OPERATION_GENERAL = "general"
OPERATION_CLASSES = (OPERATION_DESTRUCTIVE, OPERATION_GENERAL)

RATE_LIMIT_ENABLED = _get_bool("RATE_LIMIT_ENABLED", True)
RATE_LIMIT_DESTRUCTIVE_CEILING = _get_int("RATE_LIMIT_DESTRUCTIVE_CEILING", 5)
RATE_LIMIT_DESTRUCTIVE_WINDOW_SECONDS = _get_int("RATE_LIMIT_DESTRUCTIVE_WINDOW_SECONDS", 60)
RATE_LIMIT_GENERAL_CEILING = _get_int("RATE_LIMIT_GENERAL_CEILING", 60)
RATE_LIMIT_GENERAL_WINDOW_SECONDS = _get_int("RATE_LIMIT_GENERAL_WINDOW_SECONDS", 60)
RATE_LIMIT_BACKEND = os.environ.get("RATE_LIMIT_BACKEND", "memory").strip().lower()
RATE_LIMIT_MAX_CACHE_ENTRIES = _get_int("RATE_LIMIT_MAX_CACHE_ENTRIES", 10000)
RATE_LIMIT_REDIS_FAIL_OPEN = _get_bool("RATE_LIMIT_REDIS_FAIL_OPEN", True)
RATE_LIMIT_TRUSTED_PROXY_COUNT = _get_int("RATE_LIMIT_TRUSTED_PROXY_COUNT", 0)
RATE_LIMIT_TRUSTED_PROXY_IPS = tuple(
    ip.strip() for ip in os.environ.get("RATE_LIMIT_TRUSTED_PROXY_IPS", "").split(",") if ip.strip()
)
RATE_LIMIT_EXEMPT_PATHS = ("/health",)
REDIS_URL = os.environ.get("REDIS_URL")

# Deletion policy
DELETE_MODE_SOFT = "soft"
DELETE_MODE_HARD = "hard"

DEFAULT_DELETION_POLICY = {
    "study": DELETE_MODE_HARD,
    "bucket": DELETE_MODE_HARD,
    "lab": DELETE_MODE_HARD,
    "task": DELETE_MODE_SOFT,
    "idea": DELETE_MODE_SOFT,
    "comment": DELETE_MODE_SOFT,
    "deadline": DELETE_MODE_SOFT,
    "team_member": DELETE_MODE_SOFT,
}

DEFAULT_BLOCKING_RELATIONS = {
    "study": ["tasks", "comments", "members"],
    "bucket": ["studies"],
    "lab": ["studies", "members", "buckets"],
    "task": ["comments"],
    "comment": [],
    "team_member": ["assigned_tasks"],
    "idea": [],
    "deadline": [],
}

DELETION_POLICY = {**DEFAULT_DELETION_POLICY, **_get_json("DELETION_POLICY", {})}
BLOCKING_RELATIONS = {**DEFAULT_BLOCKING_RELATIONS, **_get_json("BLOCKING_RELATIONS", {})}

# Lock the parent row between the dependency check and the mutation
DELETE_LOCK_PARENT = _get_bool("DELETE_LOCK_PARENT", True)

# Archive & retention
SOFT_DELETE_RETENTION_DAYS = _get_int("SOFT_DELETE_RETENTION_DAYS", 30)
EXPIRING_WITHIN_DAYS_DEFAULT = _get_int("EXPIRING_WITHIN_DAYS_DEFAULT", 7)
EXPIRING_WITHIN_DAYS_MAX = _get_int("EXPIRING_WITHIN_DAYS_MAX", 365)
RETENTION_TICK_SECONDS = _get_int("RETENTION_TICK_SECONDS", 3600)
RETENTION_PURGE_LIMIT = _get_int("RETENTION_PURGE_LIMIT", 100)
ARCHIVE_BATCH_SIZE = _get_int("ARCHIVE_BATCH_SIZE", 200)

# Audit queries
AUDIT_LOG_LIMIT_DEFAULT = _get_int("AUDIT_LOG_LIMIT_DEFAULT", 50)
AUDIT_LOG_LIMIT_MAX = _get_int("AUDIT_LOG_LIMIT_MAX", 500)

# Security middleware
SECURITY_HEADERS_ENABLED = _get_bool("SECURITY_HEADERS_ENABLED", True)
SECURITY_HSTS_ENABLED = _get_bool("SECURITY_HSTS_ENABLED", False)
SECURITY_HSTS_MAX_AGE = _get_int("SECURITY_HSTS_MAX_AGE", 31536000)
SECURITY_HSTS_INCLUDE_SUBDOMAINS = _get_bool("SECURITY_HSTS_INCLUDE_SUBDOMAINS", True)
SECURITY_HSTS_PRELOAD = _get_bool("SECURITY_HSTS_PRELOAD", False)
SECURITY_REFERRER_POLICY = os.environ.get("SECURITY_REFERRER_POLICY", "strict-origin-when-cross-origin")
SECURITY_FRAME_OPTIONS = os.environ.get("SECURITY_FRAME_OPTIONS", "DENY")
SECURITY_PERMISSIONS_POLICY = os.environ.get(
    "SECURITY_PERMISSIONS_POLICY", "camera=(), microphone=(), geolocation=()"
)
SECURITY_CONTENT_SECURITY_POLICY = os.environ.get("SECURITY_CONTENT_SECURITY_POLICY", "")
REQUEST_SIZE_LIMIT_ENABLED = _get_bool("REQUEST_SIZE_LIMIT_ENABLED", True)
MAX_REQUEST_BODY_BYTES = _get_int("MAX_REQUEST_BODY_BYTES", 1048576)

# Request/input limits
MAX_ENTITY_ID_LENGTH = _get_int("LABOPS_MAX_ENTITY_ID_LENGTH", 100)
MAX_CLIENT_ID_LENGTH = _get_int("LABOPS_MAX_CLIENT_ID_LENGTH", 500)
MAX_REQUEST_ID_LENGTH = _get_int("LABOPS_MAX_REQUEST_ID_LENGTH", 128)
MAX_ADDRESS_LENGTH = 64


def validate_and_prepare_config() -> None:
    """Validate configuration and apply derived settings at startup."""
    global DATABASE_URL

    errors = []
    if DB_BACKEND not in {"postgres", "sqlite"}:
        errors.append("DB_BACKEND must be 'postgres' or 'sqlite'")

    if not DATABASE_URL:
        if DB_BACKEND == "sqlite":
            if not SQLITE_PATH:
                errors.append("SQLITE_PATH environment variable is required for sqlite")
            else:
                DATABASE_URL = f"sqlite:///{SQLITE_PATH}"
        else:
            errors.append("DATABASE_URL environment variable is required")
    else:
        url_lower = DATABASE_URL.lower()
        is_sqlite_url = url_lower.startswith("sqlite")
        if DB_BACKEND == "sqlite" and not is_sqlite_url:
            errors.append("DATABASE_URL must be a sqlite URL when DB_BACKEND=sqlite")
        if DB_BACKEND == "postgres" and is_sqlite_url:
            errors.append("DATABASE_URL must be a postgres URL when DB_BACKEND=postgres")

    if RATE_LIMIT_BACKEND not in {"memory", "redis"}:
        errors.append("RATE_LIMIT_BACKEND must be 'memory' or 'redis'")
    if RATE_LIMIT_BACKEND == "redis" and not REDIS_URL:
        errors.append("REDIS_URL is required when RATE_LIMIT_BACKEND=redis")

    for name, value in (
        ("RATE_LIMIT_DESTRUCTIVE_CEILING", RATE_LIMIT_DESTRUCTIVE_CEILING),
        ("RATE_LIMIT_DESTRUCTIVE_WINDOW_SECONDS", RATE_LIMIT_DESTRUCTIVE_WINDOW_SECONDS),
        ("RATE_LIMIT_GENERAL_CEILING", RATE_LIMIT_GENERAL_CEILING),
        ("RATE_LIMIT_GENERAL_WINDOW_SECONDS", RATE_LIMIT_GENERAL_WINDOW_SECONDS),
    ):
        if value <= 0:
            errors.append(f"{name} must be positive")

    for entity_type, mode in DELETION_POLICY.items():
        if mode not in {DELETE_MODE_SOFT, DELETE_MODE_HARD}:
            errors.append(f"DELETION_POLICY[{entity_type}] must be 'soft' or 'hard'")

    for entity_type, relations in BLOCKING_RELATIONS.items():
        if not isinstance(relations, list) or not all(isinstance(r, str) for r in relations):
            errors.append(f"BLOCKING_RELATIONS[{entity_type}] must be a list of relation names")

    if SOFT_DELETE_RETENTION_DAYS <= 0:
        errors.append("SOFT_DELETE_RETENTION_DAYS must be positive")

    for name, value in (
        ("LABOPS_MAX_CLIENT_ID_LENGTH", MAX_CLIENT_ID_LENGTH),
        ("LABOPS_MAX_REQUEST_ID_LENGTH", MAX_REQUEST_ID_LENGTH),
    ):
        if not 0 < value <= 500:
            errors.append(f"{name} must be between 1 and 500")

    if errors:
        raise RuntimeError("Configuration invalid: " + "; ".join(errors))
