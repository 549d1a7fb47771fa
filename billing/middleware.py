from __future__ import annotations

import math
import threading
import time
from dataclasses import dataclass
from typing import Final

import redis

from config import APP_ENV, REDIS_DISABLED, REDIS_URL
from observability import get_logger, log_event

RATE_LIMIT_REDIS_KEY_PREFIX: Final[str] = "marketplace:payments:rate_limit:"
RATE_LIMIT_LUA_SCRIPT: Final[str] = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local capacity = tonumber(ARGV[2])
local refill_per_sec = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])

local values = redis.call("HMGET", key, "tokens", "ts")
local tokens = tonumber(values[1]) or capacity
local ts = tonumber(values[2]) or now

if now > ts then
  tokens = math.min(capacity, tokens + ((now - ts) * refill_per_sec))
end

local allowed = 0
local retry_after = 0
if tokens >= cost then
  tokens = tokens - cost
  allowed = 1
else
  retry_after = math.ceil((cost - tokens) / refill_per_sec)
end

redis.call("HSET", key, "tokens", tokens, "ts", now)
redis.call("EXPIRE", key, math.max(120, math.ceil((capacity / refill_per_sec) * 2)))

return {allowed, tostring(tokens), retry_after}
"""

_LOGGER = get_logger("marketplace.billing.rate_limit")


def _is_production_env() -> bool:
    return str(APP_ENV or "").strip().lower() in {"prod", "production"}


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit_rpm: int
    remaining: int
    retry_after_seconds: int


def payment_rate_limit_subject(user_id: str, path: str) -> str:
    """Bucket per user and endpoint family so order spam cannot starve verification."""

    family = "verify" if path.rstrip("/").endswith("/verify") else "orders"
    return f"{str(user_id or 'anonymous').strip()}:{family}"


class BillingRateLimiter:
    """
    Token bucket per subject, refilled at ``limit_rpm`` tokens per minute.

    Redis holds the buckets so every API replica shares them. Outside
    production an in-process bucket is used when Redis is unavailable.
    """

    def __init__(self) -> None:
        self._memory_lock = threading.Lock()
        self._memory_buckets: dict[str, tuple[float, float]] = {}
        self._client = self._build_redis_client()
        if self._client is None:
            if _is_production_env():
                raise RuntimeError("Redis is required for payment rate limiting in production")
            log_event(_LOGGER, 30, "rate_limit.init_no_redis_using_memory")

    @staticmethod
    def _build_redis_client() -> redis.Redis | None:
        if REDIS_DISABLED or str(REDIS_URL).startswith("memory://"):
            return None
        try:
            client = redis.Redis.from_url(REDIS_URL, decode_responses=True)
            client.ping()
            return client
        except redis.RedisError as exc:
            log_event(
                _LOGGER,
                40 if _is_production_env() else 30,
                "rate_limit.redis_unavailable",
                error=str(exc),
            )
            return None

    def allow(self, *, subject: str, limit_rpm: int, cost: int = 1) -> RateLimitResult:
        capacity = max(1, int(limit_rpm))
        spend = max(1, int(cost))
        key = f"{RATE_LIMIT_REDIS_KEY_PREFIX}{subject}"

        if self._client is None:
            return self._allow_memory(key=key, capacity=capacity, cost=spend)
        try:
            return self._allow_redis(key=key, capacity=capacity, cost=spend)
        except redis.RedisError as exc:
            log_event(_LOGGER, 40, "rate_limit.redis_call_failed", key=key, error=str(exc))
            if _is_production_env():
                # The HTTP layer answers 503 instead of silently dropping the limit.
                raise RuntimeError("Redis rate limiter unavailable") from exc
            self._client = None
            return self._allow_memory(key=key, capacity=capacity, cost=spend)

    def _allow_redis(self, *, key: str, capacity: int, cost: int) -> RateLimitResult:
        if self._client is None:
            return self._allow_memory(key=key, capacity=capacity, cost=cost)

        refill_per_second = capacity / 60.0
        raw = self._client.eval(
            RATE_LIMIT_LUA_SCRIPT,
            1,
            key,
            str(time.time()),
            str(capacity),
            str(refill_per_second),
            str(cost),
        )
        if not isinstance(raw, list) or len(raw) < 3:
            raise RuntimeError("invalid redis rate limit response")
        return RateLimitResult(
            allowed=int(raw[0]) == 1,
            limit_rpm=capacity,
            remaining=max(0, int(math.floor(float(raw[1])))),
            retry_after_seconds=max(0, int(raw[2])),
        )

    def _allow_memory(self, *, key: str, capacity: int, cost: int) -> RateLimitResult:
        refill_per_second = capacity / 60.0
        now = time.time()

        with self._memory_lock:
            tokens, last_seen = self._memory_buckets.get(key, (float(capacity), now))
            tokens = min(float(capacity), tokens + max(0.0, now - last_seen) * refill_per_second)

            allowed = tokens >= cost
            retry_after = 0
            if allowed:
                tokens -= cost
            else:
                retry_after = max(1, int(math.ceil((float(cost) - tokens) / refill_per_second)))
            self._memory_buckets[key] = (tokens, now)

        return RateLimitResult(
            allowed=allowed,
            limit_rpm=capacity,
            remaining=max(0, int(math.floor(tokens))),
            retry_after_seconds=retry_after,
        )
