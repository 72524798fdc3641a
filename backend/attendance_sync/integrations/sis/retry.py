"""
Exponential backoff retry policy for remote fetches and local writes.

Every failure is classified once: FATAL errors are raised immediately as
FatalSyncError, RECOVERABLE ones are retried up to the configured number
of attempts and then raised as RetryExhaustedError.
"""
import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from attendance_sync.integrations.sis.error_handler import (
    ClassifiedSyncError, ErrorClassifier, FatalSyncError, RetryExhaustedError,
    SyncErrorKind
)


logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay: float = 1.0  # Seconds before the second attempt
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: float = 0.5  # Upper bound of the random seconds added to each delay

    @classmethod
    def from_settings(cls, settings) -> "RetryConfig":
        return cls(
            max_attempts=settings.SYNC_RETRY_MAX_ATTEMPTS,
            base_delay=settings.SYNC_RETRY_BASE_DELAY_SECONDS,
            max_delay=settings.SYNC_RETRY_MAX_DELAY_SECONDS,
            jitter=settings.SYNC_RETRY_JITTER_SECONDS,
        )


class RetryPolicy:
    """Run an async operation with classification-aware retries."""

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        classifier: Optional[ErrorClassifier] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[float, float], float] = random.uniform
    ):
        self.config = config or RetryConfig()
        if self.config.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.classifier = classifier or ErrorClassifier()
        self._sleep = sleep
        self._rng = rng

    def compute_delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        """Delay before retrying after the given 1-based failed attempt."""
        delay = self.config.base_delay * (self.config.multiplier ** (attempt - 1))
        delay = min(delay, self.config.max_delay)
        if self.config.jitter > 0:
            delay += self._rng(0, self.config.jitter)

        retry_after = getattr(error, 'retry_after', None)
        if retry_after:
            delay = max(delay, min(float(retry_after), self.config.max_delay))
        return delay

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        stage: str = "operation",
        description: Optional[str] = None
    ) -> T:
        """
        Execute an operation, retrying recoverable failures.

        Args:
            operation: Zero-argument callable returning an awaitable
            stage: Pipeline stage name attached to raised errors
            description: Human-readable unit name for log messages

        Returns:
            Result of the operation

        Raises:
            FatalSyncError: On the first FATAL failure
            RetryExhaustedError: When every attempt failed recoverably
        """
        label = description or stage
        last_error: Optional[BaseException] = None

        for attempt in range(1, self.config.max_attempts + 1):
            try:
                return await operation()
            except ClassifiedSyncError:
                raise
            except Exception as e:
                kind = self.classifier.classify(e)
                if kind is SyncErrorKind.FATAL:
                    logger.error(f"{label}: fatal error on attempt {attempt}: {e}")
                    raise FatalSyncError(e, attempts=attempt, stage=stage) from e

                last_error = e
                if attempt >= self.config.max_attempts:
                    break

                delay = self.compute_delay(attempt, e)
                logger.warning(
                    f"{label}: attempt {attempt}/{self.config.max_attempts} failed "
                    f"({type(e).__name__}: {e}); retrying in {delay:.2f}s"
                )
                await self._sleep(delay)

        logger.error(f"{label}: giving up after {self.config.max_attempts} attempts: {last_error}")
        raise RetryExhaustedError(
            last_error, attempts=self.config.max_attempts, stage=stage
        ) from last_error
