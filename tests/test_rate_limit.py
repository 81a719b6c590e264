"""Tests for the sliding-window rate limiter."""

import asyncio

import pytest

from taskpilot.utils.errors import RateLimitError
from taskpilot.utils.rate_limit import RateLimitStore


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return RateLimitStore(max_requests=3, window_seconds=10.0, clock=clock)


class TestAdmission:
    def test_exactly_max_requests_succeed(self, store):
        decisions = [store.check("k") for _ in range(3)]
        assert [d.limited for d in decisions] == [False, False, False]
        assert [d.remaining for d in decisions] == [2, 1, 0]

    def test_next_request_is_rejected_with_positive_reset(self, store, clock):
        for _ in range(3):
            store.check("k")
        clock.now += 4.0

        decision = store.check("k")
        assert decision.limited is True
        assert decision.remaining == 0
        assert decision.reset_ms > 0
        assert decision.reset_ms <= 6000

    def test_window_slides(self, store, clock):
        for _ in range(3):
            store.check("k")
        clock.now += 10.5
        assert store.check("k").limited is False

    def test_keys_are_independent(self, store):
        for _ in range(3):
            store.check("a")
        assert store.check("a").limited is True
        assert store.check("b").limited is False

    def test_per_call_overrides(self, store):
        assert store.check("k", max_requests=1).limited is False
        assert store.check("k", max_requests=1).limited is True

    def test_rejects_invalid_limits(self):
        with pytest.raises(ValueError):
            RateLimitStore(max_requests=0)
        with pytest.raises(ValueError):
            RateLimitStore(window_seconds=0)


class TestAcquire:
    async def test_raises_rate_limit_error_with_retry_after(self, store):
        for _ in range(3):
            await store.acquire("model:gpt-4o")

        with pytest.raises(RateLimitError) as exc_info:
            await store.acquire("model:gpt-4o")

        assert exc_info.value.status_code == 429
        assert exc_info.value.retry_after > 0

    async def test_concurrent_acquires_admit_exactly_the_limit(self, clock):
        store = RateLimitStore(max_requests=5, window_seconds=60.0, clock=clock)

        async def attempt():
            try:
                await store.acquire("shared")
                return True
            except RateLimitError:
                return False

        results = await asyncio.gather(*(attempt() for _ in range(20)))
        assert results.count(True) == 5


class TestSweep:
    def test_removes_expired_keys(self, store, clock):
        store.check("old")
        clock.now += 5.0
        store.check("fresh")
        clock.now += 6.0

        removed = store.sweep()

        assert removed == 1
        assert "old" not in store
        assert "fresh" in store
        assert len(store) == 1

    async def test_start_and_close_lifecycle(self, store):
        store.start()
        assert store.running is True
        store.check("k")

        store.close()

        assert store.running is False
        assert len(store) == 0
