"""Tests for the token bucket."""

import threading

import pytest

from p2pshare.errors import ConfigurationError
from p2pshare.transfer.ratelimit import TokenBucket


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_starts_full_and_rejects_when_empty():
    clock = FakeClock()
    bucket = TokenBucket(rate=1000, clock=clock)

    admitted = sum(bucket.try_acquire() for _ in range(1500))

    assert admitted == 1000
    assert bucket.allowed == 1000
    assert bucket.denied == 500


def test_refills_over_time():
    clock = FakeClock()
    bucket = TokenBucket(rate=10, clock=clock)
    for _ in range(10):
        assert bucket.try_acquire()
    assert not bucket.try_acquire()

    clock.now = 0.5
    admitted = sum(bucket.try_acquire() for _ in range(10))
    assert admitted == 5


def test_refill_capped_at_capacity():
    clock = FakeClock()
    bucket = TokenBucket(rate=10, capacity=20, clock=clock)
    clock.now = 100.0
    assert bucket.available == 20


def test_admissions_never_exceed_budget_across_threads():
    clock = FakeClock()
    bucket = TokenBucket(rate=100, clock=clock)
    results = []
    lock = threading.Lock()

    def worker():
        ok = sum(bucket.try_acquire() for _ in range(50))
        with lock:
            results.append(ok)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(results) == 100


@pytest.mark.parametrize('rate, capacity', [(0, None), (-1, None), (10, 0)])
def test_invalid_settings(rate, capacity):
    with pytest.raises(ConfigurationError):
        TokenBucket(rate=rate, capacity=capacity)
