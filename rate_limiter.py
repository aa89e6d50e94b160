"""
Fixed-window rate limiting for LabOps.

Counters are keyed by operation class and caller identity. The in-memory
backend serves single-process deployments; the Redis backend shares counters
across workers.
"""

from __future__ import annotations

import math
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

import core.config as config

ACTOR_HEADER = "x-user-id"


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


@dataclass(frozen=True)
class RateLimitConfig:
    enabled: bool
    destructive: RateLimitRule
    general: RateLimitRule
    max_cache_entries: int
    trusted_proxy_count: int
    trusted_proxy_ips: tuple[str, ...]
    redis_fail_open: bool
    exempt_paths: tuple[str, ...] = ()

    def rule_for(self, operation_class: str) -> RateLimitRule:
        if operation_class == config.OPERATION_DESTRUCTIVE:
            return self.destructive
        if operation_class == config.OPERATION_GENERAL:
            return self.general
        raise ValueError(f"unknown operation class: {operation_class!r}")


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int = 0


def _denied(rule: RateLimitRule, retry_after: float) -> RateLimitDecision:
    return RateLimitDecision(
        allowed=False,
        limit=rule.limit,
        remaining=0,
        retry_after_seconds=max(1, int(math.ceil(retry_after))),
    )


def _allowed(rule: RateLimitRule, count: int) -> RateLimitDecision:
    return RateLimitDecision(
        allowed=True,
        limit=rule.limit,
        remaining=max(rule.limit - count, 0),
    )


class _Window:
    __slots__ = ("started_at", "count")

    def __init__(self, started_at: float):
        self.started_at = started_at
        self.count = 0


class InMemoryRateLimiter:
    """Process-local fixed-window counters with LRU eviction."""

    def __init__(self, max_entries: int = 10000, clock: Callable[[], float] = time.monotonic):
        self.max_entries = max(1, max_entries)
        self._clock = clock
        self._windows: OrderedDict[str, _Window] = OrderedDict()
        self._lock = threading.Lock()

    def hit(self, key: str, rule: RateLimitRule) -> RateLimitDecision:
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now - window.started_at >= rule.window_seconds:
                window = _Window(now)
                self._windows[key] = window
            self._windows.move_to_end(key)
            # Denied calls do not consume the window
            allowed = window.count < rule.limit
            if allowed:
                window.count += 1
            count = window.count
            started_at = window.started_at
            while len(self._windows) > self.max_entries:
                self._windows.popitem(last=False)

        if not allowed:
            return _denied(rule, started_at + rule.window_seconds - now)
        return _allowed(rule, count)

    def reset(self) -> None:
        with self._lock:
            self._windows.clear()

    async def close(self) -> None:
        self.reset()


class RedisRateLimiter:
    """Shared fixed-window counters stored in Redis.

    The window key is created with its TTL and incremented inside one MULTI
    block, so concurrent workers never observe a counter without expiry.
    Denied calls still increment the shared counter; the key expires with
    its window either way.
    """

    def __init__(self, client, fail_open: bool = True, prefix: str = "labops:rl:"):
        self._client = client
        self.fail_open = fail_open
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, fail_open: bool = True) -> "RedisRateLimiter":
        import redis

        client = redis.Redis.from_url(
            url,
            socket_timeout=2,
            socket_connect_timeout=2,
            decode_responses=True,
        )
        return cls(client, fail_open=fail_open)

    def hit(self, key: str, rule: RateLimitRule) -> RateLimitDecision:
        from redis.exceptions import RedisError

        redis_key = f"{self.prefix}{key}"
        try:
            pipe = self._client.pipeline(transaction=True)
            pipe.set(redis_key, 0, ex=rule.window_seconds, nx=True)
            pipe.incr(redis_key)
            pipe.ttl(redis_key)
            _, count, ttl = pipe.execute()
        except RedisError as exc:
            config.logger.warning(
                "rate_limit_backend_unavailable",
                extra={"key": key, "fail_open": self.fail_open, "error": str(exc)},
            )
            if self.fail_open:
                return _allowed(rule, 0)
            return _denied(rule, rule.window_seconds)

        count = int(count)
        if count > rule.limit:
            ttl = int(ttl)
            return _denied(rule, ttl if ttl > 0 else rule.window_seconds)
        return _allowed(rule, count)

    async def close(self) -> None:
        self._client.close()


class OperationRateLimiter:
    """Per-actor limits for named operation classes."""

    def __init__(self, limiter, rate_config: RateLimitConfig):
        self.limiter = limiter
        self.config = rate_config

    def check_and_increment(self, actor_id: str, operation_class: str) -> RateLimitDecision:
        rule = self.config.rule_for(operation_class)
        if not self.config.enabled:
            return _allowed(rule, 0)
        decision = self.limiter.hit(f"{operation_class}:user:{actor_id}", rule)
        if not decision.allowed:
            config.logger.info(
                "rate_limit_exceeded",
                extra={
                    "actor_id": actor_id,
                    "operation_class": operation_class,
                    "retry_after_seconds": decision.retry_after_seconds,
                },
            )
        return decision

    async def close(self) -> None:
        await self.limiter.close()


def resolve_client_ip(
    request: Request,
    trusted_proxy_count: int = 0,
    trusted_proxy_ips: tuple[str, ...] = (),
) -> str:
    """Pick the caller address, honoring X-Forwarded-For only behind trusted proxies."""
    peer = request.client.host if request.client else "unknown"
    forwarded = request.headers.get("x-forwarded-for", "")
    hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    if not hops:
        return peer
    if trusted_proxy_ips and peer in trusted_proxy_ips:
        for hop in reversed(hops):
            if hop not in trusted_proxy_ips:
                return hop
        return hops[0]
    if trusted_proxy_count > 0:
        return hops[max(len(hops) - trusted_proxy_count - 1, 0)]
    return peer


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies the general operation class to every request per caller."""

    def __init__(self, app, limiter, config: RateLimitConfig):
        super().__init__(app)
        self.limiter = limiter
        self.config = config

    def _identity(self, request: Request) -> str:
        actor_id = request.headers.get(ACTOR_HEADER)
        if actor_id and actor_id.strip():
            return f"user:{actor_id.strip()}"
        ip = resolve_client_ip(request, self.config.trusted_proxy_count, self.config.trusted_proxy_ips)
        return f"ip:{ip}"

    async def dispatch(self, request: Request, call_next):
        if not self.config.enabled or request.url.path in self.config.exempt_paths:
            return await call_next(request)

        rule = self.config.general
        key = f"{config.OPERATION_GENERAL}:{self._identity(request)}"
        decision = await run_in_threadpool(self.limiter.hit, key, rule)
        if not decision.allowed:
            return JSONResponse(
                {
                    "error": "rate_limit_exceeded",
                    "retry_after_seconds": decision.retry_after_seconds,
                },
                status_code=429,
                headers={
                    "Retry-After": str(decision.retry_after_seconds),
                    "X-RateLimit-Limit": str(decision.limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(decision.limit)
        response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
        return response


def load_rate_limit_config_from_env() -> RateLimitConfig:
    return RateLimitConfig(
        enabled=config.RATE_LIMIT_ENABLED,
        destructive=RateLimitRule(
            limit=config.RATE_LIMIT_DESTRUCTIVE_CEILING,
            window_seconds=config.RATE_LIMIT_DESTRUCTIVE_WINDOW_SECONDS,
        ),
        general=RateLimitRule(
            limit=config.RATE_LIMIT_GENERAL_CEILING,
            window_seconds=config.RATE_LIMIT_GENERAL_WINDOW_SECONDS,
        ),
        max_cache_entries=config.RATE_LIMIT_MAX_CACHE_ENTRIES,
        trusted_proxy_count=config.RATE_LIMIT_TRUSTED_PROXY_COUNT,
        trusted_proxy_ips=config.RATE_LIMIT_TRUSTED_PROXY_IPS,
        redis_fail_open=config.RATE_LIMIT_REDIS_FAIL_OPEN,
        exempt_paths=config.RATE_LIMIT_EXEMPT_PATHS,
    )


def build_rate_limiter_from_env(rate_config: Optional[RateLimitConfig] = None):
    rate_config = rate_config or load_rate_limit_config_from_env()
    if config.RATE_LIMIT_BACKEND == "redis":
        if not config.REDIS_URL:
            raise RuntimeError("REDIS_URL is required when RATE_LIMIT_BACKEND=redis")
        config.logger.info("Rate limiter using Redis backend")
        return RedisRateLimiter.from_url(config.REDIS_URL, fail_open=rate_config.redis_fail_open)
    return InMemoryRateLimiter(max_entries=rate_config.max_cache_entries)


__all__ = [
    "RateLimitRule",
    "RateLimitConfig",
    "RateLimitDecision",
    "InMemoryRateLimiter",
    "RedisRateLimiter",
    "OperationRateLimiter",
    "RateLimitMiddleware",
    "resolve_client_ip",
    "load_rate_limit_config_from_env",
    "build_rate_limiter_from_env",
]
