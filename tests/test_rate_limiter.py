import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from starlette.applications import Starlette
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from rate_limiter import (
    InMemoryRateLimiter,
    OperationRateLimiter,
    RateLimitConfig,
    RateLimitMiddleware,
    RateLimitRule,
    RedisRateLimiter,
)


def make_config(general=100, destructive=5, trusted_proxy_count=0, trusted_proxy_ips=(), exempt_paths=()):
    return RateLimitConfig(
        enabled=True,
        destructive=RateLimitRule(limit=destructive, window_seconds=60),
        general=RateLimitRule(limit=general, window_seconds=60),
        max_cache_entries=100,
        trusted_proxy_count=trusted_proxy_count,
        trusted_proxy_ips=trusted_proxy_ips,
        redis_fail_open=True,
        exempt_paths=exempt_paths,
    )


def build_app(config: RateLimitConfig) -> Starlette:
    limiter = InMemoryRateLimiter(max_entries=config.max_cache_entries)

    def ping(request):
        return JSONResponse({"ok": True})

    def health(request):
        return JSONResponse({"status": "healthy"})

    app = Starlette(routes=[
        Route("/ping", ping, methods=["GET"]),
        Route("/health", health, methods=["GET"]),
    ])
    app.add_middleware(RateLimitMiddleware, limiter=limiter, config=config)

    return app


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_general_ip_limit_blocks_after_limit():
    app = build_app(make_config(general=2))
    client = TestClient(app)

    assert client.get("/ping").status_code == 200
    ok = client.get("/ping")
    assert ok.status_code == 200
    assert ok.headers["X-RateLimit-Limit"] == "2"
    assert ok.headers["X-RateLimit-Remaining"] == "0"

    resp = client.get("/ping")
    assert resp.status_code == 429
    assert resp.json()["error"] == "rate_limit_exceeded"
    assert int(resp.headers["Retry-After"]) >= 1


def test_actor_limit_isolated_by_user_header():
    app = build_app(make_config(general=1))
    client = TestClient(app)

    assert client.get("/ping", headers={"X-User-Id": "user-a"}).status_code == 200
    assert client.get("/ping", headers={"X-User-Id": "user-a"}).status_code == 429
    assert client.get("/ping", headers={"X-User-Id": "user-b"}).status_code == 200


def test_exempt_paths_skip_limits():
    app = build_app(make_config(general=1, exempt_paths=("/health",)))
    client = TestClient(app)

    assert client.get("/ping").status_code == 200
    assert client.get("/ping").status_code == 429
    assert client.get("/health").status_code == 200
    assert client.get("/health").status_code == 200


def test_untrusted_proxy_ignores_forwarded_for():
    app = build_app(make_config(general=1))
    client = TestClient(app)

    headers_a = {"X-Forwarded-For": "203.0.113.10"}
    headers_b = {"X-Forwarded-For": "203.0.113.11"}

    assert client.get("/ping", headers=headers_a).status_code == 200
    assert client.get("/ping", headers=headers_b).status_code == 429


def test_trusted_proxy_uses_forwarded_for():
    app = build_app(make_config(general=1, trusted_proxy_count=1))
    client = TestClient(app)

    headers_a = {"X-Forwarded-For": "203.0.113.10, 10.0.0.1"}
    headers_b = {"X-Forwarded-For": "203.0.113.11, 10.0.0.1"}

    assert client.get("/ping", headers=headers_a).status_code == 200
    assert client.get("/ping", headers=headers_b).status_code == 200
    assert client.get("/ping", headers=headers_a).status_code == 429


def test_fixed_window_resets_after_window_elapses():
    clock = FakeClock()
    limiter = InMemoryRateLimiter(clock=clock)
    rule = RateLimitRule(limit=2, window_seconds=60)

    assert limiter.hit("k", rule).remaining == 1
    assert limiter.hit("k", rule).allowed
    clock.now += 45
    denied = limiter.hit("k", rule)
    assert not denied.allowed
    assert denied.retry_after_seconds == 15

    clock.now += 15
    fresh = limiter.hit("k", rule)
    assert fresh.allowed
    assert fresh.remaining == 1


def test_denied_hits_do_not_grow_the_counter():
    limiter = InMemoryRateLimiter(clock=FakeClock())
    rule = RateLimitRule(limit=3, window_seconds=60)

    decisions = [limiter.hit("k", rule) for _ in range(7)]

    assert [decision.allowed for decision in decisions] == [True] * 3 + [False] * 4
    assert limiter._windows["k"].count == 3


def test_lru_eviction_forgets_oldest_key():
    limiter = InMemoryRateLimiter(max_entries=2, clock=FakeClock())
    rule = RateLimitRule(limit=1, window_seconds=60)

    limiter.hit("a", rule)
    limiter.hit("b", rule)
    limiter.hit("c", rule)

    # "a" was evicted, so it starts a new window
    assert limiter.hit("a", rule).allowed
    assert not limiter.hit("c", rule).allowed


def test_operation_limiter_tracks_classes_separately():
    limiter = OperationRateLimiter(InMemoryRateLimiter(clock=FakeClock()), make_config(general=1, destructive=2))

    assert limiter.check_and_increment("user-1", "destructive").allowed
    assert limiter.check_and_increment("user-1", "destructive").allowed
    assert not limiter.check_and_increment("user-1", "destructive").allowed
    assert limiter.check_and_increment("user-1", "general").allowed
    assert limiter.check_and_increment("user-2", "destructive").allowed

    with pytest.raises(ValueError):
        limiter.check_and_increment("user-1", "bulk")


def test_disabled_config_always_allows():
    disabled = RateLimitConfig(
        enabled=False,
        destructive=RateLimitRule(limit=1, window_seconds=60),
        general=RateLimitRule(limit=1, window_seconds=60),
        max_cache_entries=10,
        trusted_proxy_count=0,
        trusted_proxy_ips=(),
        redis_fail_open=True,
    )
    limiter = OperationRateLimiter(InMemoryRateLimiter(), disabled)

    for _ in range(3):
        assert limiter.check_and_increment("user-1", "destructive").allowed


def test_redis_limiter_counts_within_window():
    client = fakeredis.FakeRedis(decode_responses=True)
    limiter = RedisRateLimiter(client)
    rule = RateLimitRule(limit=2, window_seconds=60)

    assert limiter.hit("destructive:user:u1", rule).remaining == 1
    assert limiter.hit("destructive:user:u1", rule).allowed
    denied = limiter.hit("destructive:user:u1", rule)

    assert not denied.allowed
    assert 1 <= denied.retry_after_seconds <= 60
    assert 0 < client.ttl("labops:rl:destructive:user:u1") <= 60
    assert limiter.hit("destructive:user:u2", rule).allowed


class _DownPipeline:
    def set(self, *args, **kwargs):
        return self

    def incr(self, *args, **kwargs):
        return self

    def ttl(self, *args, **kwargs):
        return self

    def execute(self):
        raise RedisConnectionError("connection refused")


class _DownRedis:
    def pipeline(self, transaction=True):
        return _DownPipeline()


def test_redis_limiter_fail_open_and_closed():
    rule = RateLimitRule(limit=1, window_seconds=30)

    assert RedisRateLimiter(_DownRedis(), fail_open=True).hit("k", rule).allowed

    denied = RedisRateLimiter(_DownRedis(), fail_open=False).hit("k", rule)
    assert not denied.allowed
    assert denied.retry_after_seconds == 30
