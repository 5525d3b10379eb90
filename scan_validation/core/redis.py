from __future__ import annotations
import time
from typing import Sequence
import redis.asyncio as redis
from .config import get_settings

_settings = get_settings()
_r: redis.Redis | None = None

def get_redis() -> redis.Redis:
    global _r
    if _r is None:
        _r = redis.from_url(_settings.redis_url, decode_responses=True)
    return _r

async def ping_redis() -> bool:
    try:
        r = get_redis()
        pong = await r.ping()
        return bool(pong)
    except Exception:
        return False

# ---- Shared token bucket ----
# KEYS: bucket keys. ARGV: capacity, refill/sec, now (sec), idle ttl (sec).
# All-or-nothing: either every bucket gives up a token or none does.
_TOKEN_BUCKET_LUA = """
local capacity = tonumber(ARGV[1])
local rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local ttl = tonumber(ARGV[4])
local levels = {}
for i, key in ipairs(KEYS) do
  local b = redis.call('HMGET', key, 'tokens', 'ts')
  local tokens = tonumber(b[1])
  local ts = tonumber(b[2])
  if tokens == nil or ts == nil then
    tokens = capacity
  else
    tokens = math.min(capacity, tokens + math.max(0, now - ts) * rate)
  end
  if tokens < 1 then
    return 0
  end
  levels[i] = tokens
end
for i, key in ipairs(KEYS) do
  redis.call('HSET', key, 'tokens', levels[i] - 1, 'ts', now)
  redis.call('EXPIRE', key, ttl)
end
return 1
"""

class RedisTokenBucketLimiter:
    """Token buckets kept in Redis so several instances share one budget."""

    def __init__(self, *, capacity: int, refill_per_sec: float, idle_ttl_sec: int, client: redis.Redis | None = None):
        self.capacity = capacity
        self.refill_per_sec = refill_per_sec
        self.idle_ttl_sec = idle_ttl_sec
        self._client = client

    @property
    def client(self) -> redis.Redis:
        return self._client or get_redis()

    async def allow(self, keys: Sequence[str]) -> bool:
        keys = list(dict.fromkeys(keys))
        if not keys:
            return True
        ok = await self.client.eval(
            _TOKEN_BUCKET_LUA,
            len(keys),
            *[f"rl:scan:{k}" for k in keys],
            self.capacity,
            self.refill_per_sec,
            time.time(),
            self.idle_ttl_sec,
        )
        return int(ok) == 1

    def sweep(self) -> int:
        # Redis expires idle buckets on its own
        return 0

    def stats(self) -> dict:
        return {"backend": "redis", "capacity": self.capacity, "refill_per_sec": self.refill_per_sec}
