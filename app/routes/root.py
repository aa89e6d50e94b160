"""
Root endpoint with service metadata.
"""

from __future__ import annotations

from fastapi import APIRouter

import core.config as config


router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint with service info."""
    return {
        "service": "LabOps",
        "version": "0.1.0",
        "description": "Deletion, archive and audit core for research lab operations",
        "retention_days": config.SOFT_DELETE_RETENTION_DAYS,
        "endpoints": {
            "health": "/health",
            "delete": "/api/{entity_type}/{entity_id}",
            "archive": {
                "list": "/api/archive",
                "restore": "/api/archive/restore",
                "purge": "/api/archive/{entity_type}/{entity_id}",
            },
            "audit_logs": "/api/audit-logs",
        },
    }
