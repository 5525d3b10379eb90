from __future__ import annotations
import logging
import threading
import zlib
from dataclasses import dataclass
from typing import Iterable, Protocol, Sequence

from .clock import SystemClock

logger = logging.getLogger(__name__)

_SHARDS = 16

def scan_keys(*, ticket_id: str, device_id: str, operator_id: str | None) -> list[str]:
    keys = [f"td:{ticket_id}:{device_id}"]
    if operator_id:
        keys.append(f"op:{operator_id}")
    return keys

class RateLimiter(Protocol):
    async def allow(self, keys: Sequence[str]) -> bool: ...
    def sweep(self) -> int: ...
    def stats(self) -> dict: ...

@dataclass
class _Bucket:
    tokens: float
    updated: float

class TokenBucketLimiter:
    """
    In-process token buckets, one per key, sharded behind plain locks.
    A scan consumes one token from every key it names or from none of them.
    """

    def __init__(self, *, capacity: int, refill_per_sec: float, idle_ttl_sec: float, clock=None):
        self.capacity = float(capacity)
        self.refill_per_sec = float(refill_per_sec)
        self.idle_ttl_sec = float(idle_ttl_sec)
        self._clock = clock or SystemClock()
        self._shards: list[dict[str, _Bucket]] = [{} for _ in range(_SHARDS)]
        self._locks = [threading.Lock() for _ in range(_SHARDS)]

    @staticmethod
    def _shard_of(key: str) -> int:
        return zlib.crc32(key.encode("utf-8")) % _SHARDS

    def _refill(self, b: _Bucket, now: float) -> None:
        elapsed = max(0.0, now - b.updated)
        b.tokens = min(self.capacity, b.tokens + elapsed * self.refill_per_sec)
        b.updated = now

    def try_acquire(self, keys: Iterable[str]) -> bool:
        keys = list(dict.fromkeys(keys))
        if not keys:
            return True
        shard_ids = sorted({self._shard_of(k) for k in keys})
        now = self._clock.monotonic()
        # fixed lock order keeps multi-key acquisition deadlock free
        for i in shard_ids:
            self._locks[i].acquire()
        try:
            buckets = []
            for k in keys:
                shard = self._shards[self._shard_of(k)]
                b = shard.get(k)
                if b is None or now - b.updated > self.idle_ttl_sec:
                    b = _Bucket(tokens=self.capacity, updated=now)
                    shard[k] = b
                else:
                    self._refill(b, now)
                buckets.append(b)
            if any(b.tokens < 1.0 for b in buckets):
                return False
            for b in buckets:
                b.tokens -= 1.0
            return True
        finally:
            for i in reversed(shard_ids):
                self._locks[i].release()

    async def allow(self, keys: Sequence[str]) -> bool:
        return self.try_acquire(keys)

    def sweep(self) -> int:
        """Drop keys idle for longer than the TTL. Returns how many were dropped."""
        now = self._clock.monotonic()
        dropped = 0
        for shard, lock in zip(self._shards, self._locks):
            with lock:
                stale = [k for k, b in shard.items() if now - b.updated > self.idle_ttl_sec]
                for k in stale:
                    del shard[k]
                dropped += len(stale)
        if dropped:
            logger.debug("rate limiter evicted %d idle keys", dropped)
        return dropped

    def __len__(self) -> int:
        return sum(len(s) for s in self._shards)

    def stats(self) -> dict:
        return {
            "backend": "memory",
            "keys": len(self),
            "capacity": self.capacity,
            "refill_per_sec": self.refill_per_sec,
        }
