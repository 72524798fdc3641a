"""
Request Throttling for the SIS API.

Spaces outbound calls so a configured calls-per-minute ceiling is never
exceeded, adding random jitter so parallel workers do not synchronize.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional


logger = logging.getLogger(__name__)


@dataclass
class ThrottleConfig:
    """Configuration for request throttling."""
    provider: str
    max_requests_per_minute: int = 60
    jitter_seconds: float = 0.25  # Upper bound of the random delay added per request

    @property
    def min_interval(self) -> float:
        return 60.0 / self.max_requests_per_minute


@dataclass
class ThrottleMetrics:
    """Metrics for throttling behavior."""
    total_requests: int = 0
    delayed_requests: int = 0
    deferrals: int = 0
    average_delay: float = 0.0
    max_delay_recorded: float = 0.0

    def record_request(self, delay: float = 0.0):
        """Record request metrics."""
        self.total_requests += 1

        if delay > 0:
            self.delayed_requests += 1
            # Update rolling average delay
            self.average_delay = (
                (self.average_delay * (self.delayed_requests - 1) + delay) /
                self.delayed_requests
            )
            self.max_delay_recorded = max(self.max_delay_recorded, delay)

    def get_stats(self) -> Dict[str, Any]:
        """Get current statistics."""
        return {
            'total_requests': self.total_requests,
            'delayed_requests': self.delayed_requests,
            'delay_rate': self.delayed_requests / max(self.total_requests, 1),
            'deferrals': self.deferrals,
            'average_delay': self.average_delay,
            'max_delay_recorded': self.max_delay_recorded,
        }


class RequestThrottler:
    """
    Rate limiter handing out evenly spaced request slots.

    Each acquire() reserves the next free slot under a lock and then
    sleeps outside of it, so concurrent callers queue up in order instead
    of all waking at once. Acquiring never fails; exceeding the rate only
    delays the caller.
    """

    def __init__(
        self,
        config: ThrottleConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[float, float], float] = random.uniform
    ):
        if config.max_requests_per_minute <= 0:
            raise ValueError("max_requests_per_minute must be positive")
        self.config = config
        self.metrics = ThrottleMetrics()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng
        self._next_slot: Optional[float] = None

        # Locks for task safety
        self._throttle_lock = asyncio.Lock()

        logger.info(
            f"Request throttler initialized for {config.provider}: "
            f"{config.max_requests_per_minute} req/min"
        )

    @classmethod
    def from_settings(cls, settings, provider: str = "aeries") -> "RequestThrottler":
        return cls(ThrottleConfig(
            provider=provider,
            max_requests_per_minute=settings.AERIES_RATE_LIMIT_PER_MINUTE,
            jitter_seconds=settings.AERIES_RATE_LIMIT_JITTER_SECONDS,
        ))

    async def acquire(self) -> float:
        """
        Wait until the caller may issue its next remote call.

        Returns:
            Seconds the caller was delayed
        """
        async with self._throttle_lock:
            now = self._clock()
            slot = now if self._next_slot is None else max(now, self._next_slot)
            self._next_slot = slot + self.config.min_interval

            delay = slot - now
            if self.config.jitter_seconds > 0:
                delay += self._rng(0, self.config.jitter_seconds)
            self.metrics.record_request(delay)

        if delay > 0:
            logger.debug(f"Throttling request for {self.config.provider}: delay={delay:.2f}s")
            await self._sleep(delay)
        return delay

    async def defer(self, seconds: float) -> None:
        """Push the next free slot back, e.g. after a 429 with Retry-After."""
        if seconds <= 0:
            return
        async with self._throttle_lock:
            earliest = self._clock() + seconds
            if self._next_slot is None or self._next_slot < earliest:
                self._next_slot = earliest
            self.metrics.deferrals += 1
        logger.warning(f"Remote rate limit hit for {self.config.provider}; deferring {seconds:.1f}s")

    def get_stats(self) -> Dict[str, Any]:
        stats = self.metrics.get_stats()
        stats['provider'] = self.config.provider
        stats['max_requests_per_minute'] = self.config.max_requests_per_minute
        return stats
