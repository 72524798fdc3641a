"""
Tests for outbound request throttling.
"""

import pytest

from attendance_sync.gateway.throttler import RequestThrottler, ThrottleConfig, ThrottleMetrics

from sync_helpers import make_settings


class FakeClock:
    """Monotonic clock advanced only by sleeping."""

    def __init__(self, start=100.0):
        self.now = start
        self.sleeps = []

    def __call__(self):
        return self.now

    async def sleep(self, delay):
        self.sleeps.append(delay)
        self.now += delay


def make_throttler(clock, rate=60, jitter=0.0, rng=None):
    config = ThrottleConfig(provider="aeries", max_requests_per_minute=rate, jitter_seconds=jitter)
    if rng is None:
        return RequestThrottler(config, clock=clock, sleep=clock.sleep)
    return RequestThrottler(config, clock=clock, sleep=clock.sleep, rng=rng)


class TestRequestThrottler:
    """Test request spacing."""

    @pytest.mark.asyncio
    async def test_requests_are_spaced(self):
        """Test 60 requests/minute issue at most one request per second."""
        clock = FakeClock()
        throttler = make_throttler(clock, rate=60)
        issued = []

        for _ in range(4):
            await throttler.acquire()
            issued.append(clock.now)

        assert issued == [100.0, 101.0, 102.0, 103.0]
        assert clock.sleeps == [1.0, 1.0, 1.0]

    @pytest.mark.asyncio
    async def test_rate_sets_interval(self):
        clock = FakeClock()
        throttler = make_throttler(clock, rate=120)

        await throttler.acquire()
        delay = await throttler.acquire()

        assert delay == 0.5

    @pytest.mark.asyncio
    async def test_idle_caller_is_not_delayed(self):
        """Test no delay once the interval has already passed."""
        clock = FakeClock()
        throttler = make_throttler(clock)

        await throttler.acquire()
        clock.now += 10
        delay = await throttler.acquire()

        assert delay == 0.0
        assert clock.sleeps == []

    @pytest.mark.asyncio
    async def test_jitter_is_added(self):
        clock = FakeClock()
        throttler = make_throttler(clock, jitter=0.25, rng=lambda low, high: high)

        first = await throttler.acquire()
        second = await throttler.acquire()

        assert first == 0.25
        assert second == pytest.approx(0.75 + 0.25)

    @pytest.mark.asyncio
    async def test_defer_pushes_next_slot(self):
        """Test a remote rate limit postpones the next request."""
        clock = FakeClock()
        throttler = make_throttler(clock)

        await throttler.acquire()
        await throttler.defer(5.0)
        delay = await throttler.acquire()

        assert delay == 5.0
        assert throttler.metrics.deferrals == 1

    @pytest.mark.asyncio
    async def test_defer_never_pulls_slot_forward(self):
        clock = FakeClock()
        throttler = make_throttler(clock, rate=6)

        await throttler.acquire()
        await throttler.defer(1.0)
        await throttler.defer(0)
        delay = await throttler.acquire()

        assert delay == 10.0

    def test_non_positive_rate(self):
        with pytest.raises(ValueError):
            RequestThrottler(ThrottleConfig(provider="aeries", max_requests_per_minute=0))

    @pytest.mark.asyncio
    async def test_stats(self):
        clock = FakeClock()
        throttler = make_throttler(clock)

        await throttler.acquire()
        await throttler.acquire()
        stats = throttler.get_stats()

        assert stats['provider'] == "aeries"
        assert stats['total_requests'] == 2
        assert stats['delayed_requests'] == 1
        assert stats['max_delay_recorded'] == 1.0

    def test_from_settings(self):
        throttler = RequestThrottler.from_settings(make_settings(AERIES_RATE_LIMIT_PER_MINUTE=30))

        assert throttler.config.min_interval == 2.0
        assert throttler.config.jitter_seconds == 0.0


class TestThrottleMetrics:
    """Test metric bookkeeping."""

    def test_average_delay(self):
        metrics = ThrottleMetrics()

        metrics.record_request(0.0)
        metrics.record_request(1.0)
        metrics.record_request(3.0)

        assert metrics.total_requests == 3
        assert metrics.delayed_requests == 2
        assert metrics.average_delay == 2.0
        assert metrics.get_stats()['delay_rate'] == pytest.approx(2 / 3)
