"""Exponential backoff around an async operation."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

SleepFunc = Callable[[float], Awaitable[object]]
RetryCallback = Callable[[int, Exception, float], object]


@dataclass(frozen=True, slots=True)
class RetryConfig:
    """Backoff shape: delays are ``initial_delay * backoff_multiplier ** i`` seconds."""

    max_retries: int = 3
    initial_delay: float = 1.0
    backoff_multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must not be negative")
        if self.initial_delay < 0:
            raise ValueError("initial_delay must not be negative")
        if self.backoff_multiplier <= 0:
            raise ValueError("backoff_multiplier must be positive")

    @property
    def total_attempts(self) -> int:
        return self.max_retries + 1

    def delay_for(self, attempt_index: int) -> float:
        """Return the wait before attempt ``attempt_index + 1``."""

        return self.initial_delay * self.backoff_multiplier**attempt_index

    def delays(self) -> list[float]:
        return [self.delay_for(index) for index in range(self.max_retries)]


RETRY_PRESETS: dict[str, RetryConfig] = {
    "hero": RetryConfig(max_retries=3, initial_delay=1.0, backoff_multiplier=2.0),
    "category": RetryConfig(max_retries=3, initial_delay=1.0, backoff_multiplier=2.0),
    "search": RetryConfig(max_retries=3, initial_delay=1.0, backoff_multiplier=2.0),
}

DEFAULT_RETRY_CONFIG = RETRY_PRESETS["category"]


async def run_with_backoff(
    operation: Callable[[], Awaitable[T]],
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    *,
    sleep: SleepFunc = asyncio.sleep,
    on_retry: RetryCallback | None = None,
    label: str = "operation",
) -> T:
    """Run ``operation`` until it succeeds or ``config.max_retries`` retries fail.

    The first attempt runs immediately. On exhaustion the last failure is
    re-raised unchanged. Cancellation is not handled here.
    """

    attempt = 0
    while True:
        try:
            return await operation()
        except Exception as exc:
            if attempt >= config.max_retries:
                logger.warning(
                    "All %s attempts of %s failed: %s",
                    config.total_attempts,
                    label,
                    exc,
                )
                raise
            delay = config.delay_for(attempt)
            logger.info(
                "Attempt %s of %s failed (%s). Retrying in %.1fs",
                attempt + 1,
                label,
                exc.__class__.__name__,
                delay,
            )
            if on_retry is not None:
                on_retry(attempt + 1, exc, delay)
            await sleep(delay)
            attempt += 1
