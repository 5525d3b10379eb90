from __future__ import annotations
import threading

import pytest

from scan_validation.core.clock import ManualClock
from scan_validation.core.ratelimit import TokenBucketLimiter, scan_keys

def make(clock=None, **kw) -> TokenBucketLimiter:
    opts = dict(capacity=5, refill_per_sec=1.0, idle_ttl_sec=300)
    opts.update(kw)
    return TokenBucketLimiter(clock=clock or ManualClock(), **opts)

def test_scan_keys() -> None:
    assert scan_keys(ticket_id="t1", device_id="d1", operator_id=None) == ["td:t1:d1"]
    assert scan_keys(ticket_id="t1", device_id="d1", operator_id="op") == ["td:t1:d1", "op:op"]

def test_capacity_then_refill() -> None:
    clock = ManualClock()
    rl = make(clock)
    keys = ["td:t1:d1"]
    assert all(rl.try_acquire(keys) for _ in range(5))
    assert rl.try_acquire(keys) is False
    clock.advance(1.0)
    assert rl.try_acquire(keys) is True
    assert rl.try_acquire(keys) is False

def test_refill_is_capped_at_capacity() -> None:
    clock = ManualClock()
    rl = make(clock)
    rl.try_acquire(["k"])
    clock.advance(120)
    assert sum(rl.try_acquire(["k"]) for _ in range(10)) == 5

def test_all_or_nothing_across_keys() -> None:
    rl = make()
    # drain the operator bucket through other tickets
    for i in range(5):
        assert rl.try_acquire(scan_keys(ticket_id=f"t{i}", device_id="d", operator_id="op"))
    assert rl.try_acquire(scan_keys(ticket_id="fresh", device_id="d", operator_id="op")) is False
    # the refused scan did not spend the fresh ticket's token
    assert all(rl.try_acquire(["td:fresh:d"]) for _ in range(5))

def test_sweep_drops_idle_keys() -> None:
    clock = ManualClock()
    rl = make(clock, idle_ttl_sec=300)
    rl.try_acquire(["a"])
    clock.advance(200)
    rl.try_acquire(["b"])
    clock.advance(101)
    assert rl.sweep() == 1
    assert len(rl) == 1
    assert rl.stats()["keys"] == 1

def test_idle_key_starts_full_again() -> None:
    clock = ManualClock()
    rl = make(clock, refill_per_sec=0.0)
    for _ in range(5):
        rl.try_acquire(["k"])
    assert rl.try_acquire(["k"]) is False
    clock.advance(301)
    assert rl.try_acquire(["k"]) is True

def test_threads_never_overspend() -> None:
    rl = make(capacity=50, refill_per_sec=0.0)
    granted = []
    lock = threading.Lock()

    def worker():
        for _ in range(20):
            if rl.try_acquire(["td:t:d", "op:o"]):
                with lock:
                    granted.append(1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(granted) == 50

@pytest.mark.anyio
async def test_async_allow() -> None:
    rl = make(capacity=1)
    assert await rl.allow(["k"]) is True
    assert await rl.allow(["k"]) is False
