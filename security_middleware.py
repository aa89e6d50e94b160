"""
Security headers and request body limits for the LabOps API.
"""

from __future__ import annotations

from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

import core.config as config


@dataclass(frozen=True)
class SecurityHeadersConfig:
    enabled: bool
    enable_hsts: bool
    hsts_max_age: int
    hsts_include_subdomains: bool
    hsts_preload: bool
    referrer_policy: str
    frame_options: str
    permissions_policy: str
    content_security_policy: str

    def headers(self) -> dict[str, str]:
        values = {"X-Content-Type-Options": "nosniff"}
        if self.frame_options:
            values["X-Frame-Options"] = self.frame_options
        if self.referrer_policy:
            values["Referrer-Policy"] = self.referrer_policy
        if self.permissions_policy:
            values["Permissions-Policy"] = self.permissions_policy
        if self.content_security_policy:
            values["Content-Security-Policy"] = self.content_security_policy
        if self.enable_hsts:
            hsts = f"max-age={self.hsts_max_age}"
            if self.hsts_include_subdomains:
                hsts += "; includeSubDomains"
            if self.hsts_preload:
                hsts += "; preload"
            values["Strict-Transport-Security"] = hsts
        return values


@dataclass(frozen=True)
class RequestSizeLimitConfig:
    enabled: bool
    max_body_bytes: int


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, config: SecurityHeadersConfig):
        super().__init__(app)
        self.config = config
        self._headers = config.headers()

    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        if self.config.enabled:
            for name, value in self._headers.items():
                response.headers.setdefault(name, value)
        return response


class _BodyTooLarge(Exception):
    pass


def _too_large(limit: int) -> JSONResponse:
    return JSONResponse(
        {"error": "request_too_large", "max_body_bytes": limit},
        status_code=413,
    )


class RequestSizeLimitMiddleware:
    """Rejects bodies over the limit, by Content-Length or while streaming."""

    def __init__(self, app, config: RequestSizeLimitConfig):
        self.app = app
        self.config = config

    async def __call__(self, scope, receive, send):
        if scope["type"] != "http" or not self.config.enabled:
            await self.app(scope, receive, send)
            return

        limit = self.config.max_body_bytes
        for name, value in scope.get("headers", []):
            if name == b"content-length":
                try:
                    declared = int(value)
                except ValueError:
                    declared = 0
                if declared > limit:
                    await _too_large(limit)(scope, receive, send)
                    return

        received = 0
        response_started = False

        async def limited_receive():
            nonlocal received
            message = await receive()
            if message["type"] == "http.request":
                received += len(message.get("body", b""))
                if received > limit:
                    raise _BodyTooLarge()
            return message

        async def tracking_send(message):
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, limited_receive, tracking_send)
        except _BodyTooLarge:
            if response_started:
                raise
            await _too_large(limit)(scope, receive, send)


def load_security_headers_config_from_env() -> SecurityHeadersConfig:
    return SecurityHeadersConfig(
        enabled=config.SECURITY_HEADERS_ENABLED,
        enable_hsts=config.SECURITY_HSTS_ENABLED,
        hsts_max_age=config.SECURITY_HSTS_MAX_AGE,
        hsts_include_subdomains=config.SECURITY_HSTS_INCLUDE_SUBDOMAINS,
        hsts_preload=config.SECURITY_HSTS_PRELOAD,
        referrer_policy=config.SECURITY_REFERRER_POLICY,
        frame_options=config.SECURITY_FRAME_OPTIONS,
        permissions_policy=config.SECURITY_PERMISSIONS_POLICY,
        content_security_policy=config.SECURITY_CONTENT_SECURITY_POLICY,
    )


def load_request_size_limit_config_from_env() -> RequestSizeLimitConfig:
    return RequestSizeLimitConfig(
        enabled=config.REQUEST_SIZE_LIMIT_ENABLED,
        max_body_bytes=config.MAX_REQUEST_BODY_BYTES,
    )


__all__ = [
    "SecurityHeadersConfig",
    "SecurityHeadersMiddleware",
    "RequestSizeLimitConfig",
    "RequestSizeLimitMiddleware",
    "load_security_headers_config_from_env",
    "load_request_size_limit_config_from_env",
]
