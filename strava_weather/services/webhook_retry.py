"""
Bounded retry around the enrichment pipeline for webhook deliveries.

Strava fires the webhook before the new activity is always readable, so a
not-found result is retried a couple of times. Everything else is final.
The whole loop has a wall-clock budget so the HTTP response goes out before
Strava gives up on us.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional, Sequence

from ..config import Settings
from .activity_processor import ActivityProcessor, ErrorKind, ProcessingResult

logger = logging.getLogger(__name__)


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    max_processing_s: float = 8.0
    retry_delays_s: Sequence[float] = (1.5, 3.0)

    @classmethod
    def from_settings(cls, config: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=config.WEBHOOK_MAX_ATTEMPTS,
            max_processing_s=config.WEBHOOK_MAX_PROCESSING_S,
            retry_delays_s=tuple(config.WEBHOOK_RETRY_DELAYS_S),
        )

    def delay_before(self, attempt: int) -> float:
        """Delay before the given 1-based attempt; the first attempt never waits."""
        if attempt <= 1 or not self.retry_delays_s:
            return 0.0
        index = min(attempt - 2, len(self.retry_delays_s) - 1)
        return self.retry_delays_s[index]


@dataclass
class RetryOutcome:
    result: Optional[ProcessingResult]
    attempts: int
    elapsed_ms: int
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.result and self.result.success)

    @property
    def skipped(self) -> bool:
        return bool(self.result and self.result.skipped)


async def process_with_retry(
    processor: ActivityProcessor,
    activity_id: str,
    user_id: str,
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
    started: Optional[float] = None,
) -> RetryOutcome:
    started = clock() if started is None else started
    attempts = 0
    result: Optional[ProcessingResult] = None
    errors: List[str] = []

    def elapsed() -> float:
        return clock() - started

    while attempts < policy.max_attempts and elapsed() < policy.max_processing_s:
        delay = policy.delay_before(attempts + 1)
        if delay:
            logger.info(f"Retrying activity {activity_id} in {delay}s (attempt {attempts + 1})")
            await sleep(delay)
            if elapsed() >= policy.max_processing_s:
                logger.warning(f"Processing budget exhausted for activity {activity_id} after {attempts} attempts")
                break

        attempts += 1
        try:
            result = await processor.process_activity(activity_id, user_id)
        except Exception as e:
            # process_activity is not expected to raise
            logger.exception(f"Activity {activity_id} attempt {attempts} raised: {e}")
            result = ProcessingResult(
                success=False, activity_id=activity_id, error=str(e), error_kind=ErrorKind.INTERNAL
            )

        if result.success or result.skipped:
            break

        errors.append(f"attempt {attempts}: {result.error}")
        if not result.retryable:
            break

    return RetryOutcome(
        result=result,
        attempts=attempts,
        elapsed_ms=int(elapsed() * 1000),
        errors=errors,
    )
