"""
Request-scoped context objects for core services.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import core.config as config


@dataclass(frozen=True)
class Actor:
    """The authenticated caller; authentication itself happens upstream."""

    id: str
    role: Optional[str] = None


@dataclass(frozen=True)
class RequestMeta:
    address: Optional[str] = None
    client_id: Optional[str] = None
    request_id: Optional[str] = None

    def as_audit_metadata(self) -> dict:
        metadata = {
            "ipAddress": (self.address or "unknown")[: config.MAX_ADDRESS_LENGTH],
            "userAgent": (self.client_id or "unknown")[: config.MAX_CLIENT_ID_LENGTH],
        }
        if self.request_id:
            metadata["requestId"] = self.request_id[: config.MAX_REQUEST_ID_LENGTH]
        return metadata


__all__ = [
    "Actor",
    "RequestMeta",
]
