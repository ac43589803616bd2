from dataclasses import dataclass
import logging
import threading
import time

import redis

from tictactoe.core.config import get_settings
from tictactoe.services.redis_client import get_redis_client

logger = logging.getLogger(__name__)

KEY_PREFIX = "tictactoe:ratelimit"

# first matching path fragment wins; anything else falls into "global"
PATH_SCOPES = (
    ("/auth/", "auth"),
    ("/admin/", "sensitive"),
    ("/game/", "game"),
    ("/chat/", "chat"),
)
EXEMPT_PATH_SUFFIXES = ("/health",)


@dataclass(frozen=True)
class RateLimitRule:
    limit: int
    window_seconds: int


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    retry_after_seconds: int
    reset_after_seconds: int

    def headers(self) -> dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset-Seconds": str(self.reset_after_seconds),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after_seconds)
        return headers


def scope_for_path(path: str) -> str | None:
    """Scope of an HTTP request path, or None for paths that are never limited."""
    lowered = path.lower()
    if lowered.endswith(EXEMPT_PATH_SUFFIXES):
        return None
    for fragment, scope in PATH_SCOPES:
        if fragment in lowered:
            return scope
    return "global"


def rule_for_scope(scope: str) -> RateLimitRule:
    settings = get_settings()
    rules = {
        "global": (settings.rate_limit_global_limit, settings.rate_limit_global_window_seconds),
        "auth": (settings.rate_limit_auth_limit, settings.rate_limit_auth_window_seconds),
        "game": (settings.rate_limit_game_limit, settings.rate_limit_game_window_seconds),
        "chat": (settings.rate_limit_chat_limit, settings.rate_limit_chat_window_seconds),
        "sensitive": (settings.rate_limit_sensitive_limit, settings.rate_limit_sensitive_window_seconds),
        "ws_connect": (settings.websocket_connect_limit, settings.websocket_connect_window_seconds),
        "ws_event": (settings.websocket_event_limit, settings.websocket_event_window_seconds),
    }
    if scope not in rules:
        raise ValueError(f"Unknown rate limit scope: {scope}")
    limit, window_seconds = rules[scope]
    return RateLimitRule(limit=max(1, int(limit)), window_seconds=max(1, int(window_seconds)))


class _MemoryWindowCounter:
    def __init__(self) -> None:
        # bucket key -> (hits, epoch at which the window closes)
        self._windows: dict[str, tuple[int, float]] = {}
        self._lock = threading.Lock()

    def hit(self, key: str, window_seconds: int, now: float) -> tuple[int, int]:
        bucket = int(now // window_seconds)
        bucket_key = f"{key}:{bucket}"
        with self._lock:
            for stale_key in [k for k, (_, closes_at) in self._windows.items() if now > closes_at + 1]:
                del self._windows[stale_key]
            hits, closes_at = self._windows.get(bucket_key, (0, float((bucket + 1) * window_seconds)))
            hits += 1
            self._windows[bucket_key] = (hits, closes_at)
        return hits, int(closes_at - now)

    def clear(self) -> None:
        with self._lock:
            self._windows.clear()


class _RedisWindowCounter:
    def __init__(self, client: redis.Redis) -> None:
        self._client = client

    def hit(self, key: str, window_seconds: int, now: float) -> tuple[int, int] | None:
        redis_key = f"{KEY_PREFIX}:{key}:{int(now // window_seconds)}"
        try:
            pipe = self._client.pipeline()
            pipe.incr(redis_key, 1)
            pipe.ttl(redis_key)
            hits, ttl = pipe.execute()
            if not isinstance(ttl, int) or ttl < 0:
                self._client.expire(redis_key, window_seconds + 1)
                ttl = window_seconds
        except redis.RedisError as exc:
            logger.warning("Rate limit lookup failed for %s: %s", key, exc)
            return None
        return int(hits), ttl


def _decide(rule: RateLimitRule, hits: int, seconds_left: int) -> RateLimitDecision:
    allowed = hits <= rule.limit
    reset_after = max(1, seconds_left)
    return RateLimitDecision(
        allowed=allowed,
        limit=rule.limit,
        remaining=max(0, rule.limit - hits),
        retry_after_seconds=0 if allowed else reset_after,
        reset_after_seconds=reset_after,
    )


class RateLimitService:
    """Fixed-window counters per scope, kept in Redis when it is reachable."""

    def __init__(self, redis_client: redis.Redis | None = None, clock=time.time) -> None:
        client = redis_client if redis_client is not None else get_redis_client()
        self._redis = _RedisWindowCounter(client) if client is not None else None
        self._memory = _MemoryWindowCounter()
        self._clock = clock

    def check_rule(self, key: str, rule: RateLimitRule) -> RateLimitDecision:
        now = self._clock()
        counted = self._redis.hit(key, rule.window_seconds, now) if self._redis else None
        if counted is None:
            counted = self._memory.hit(key, rule.window_seconds, now)
        return _decide(rule, *counted)

    def check(self, key: str, *, limit: int, window_seconds: int) -> RateLimitDecision:
        rule = RateLimitRule(limit=max(1, int(limit)), window_seconds=max(1, int(window_seconds)))
        return self.check_rule(key, rule)

    def check_scope(self, scope: str, identifier: str) -> RateLimitDecision:
        return self.check_rule(f"{scope}:{identifier or 'unknown'}", rule_for_scope(scope))

    def reset(self) -> None:
        self._memory.clear()


rate_limit_service = RateLimitService()
