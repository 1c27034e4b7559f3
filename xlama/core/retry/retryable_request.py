from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from xlama.configuration.config import settings
from xlama.core.errors.error_taxonomy import is_transient_error
from xlama.logging.logger import get_logger

log = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff policy.

    Attributes:
        max_retries: Retries after the first attempt; total attempts are `max_retries + 1`.
        delay_ms: Delay before the first retry.
        backoff_multiplier: Factor applied to the delay after each retry.
    """
    max_retries: int = 3
    delay_ms: float = 1000.0
    backoff_multiplier: float = 2.0

    def delay_seconds(self, attempt: int) -> float:
        return self.delay_ms * (self.backoff_multiplier ** attempt) / 1000.0

    @staticmethod
    def from_settings() -> "RetryPolicy":
        return RetryPolicy(
            max_retries=max(0, settings.RETRY_MAX_RETRIES),
            delay_ms=max(0.0, settings.RETRY_DELAY_MS),
            backoff_multiplier=max(1.0, settings.RETRY_BACKOFF_MULTIPLIER),
        )


async def with_retry(
        operation: Callable[[], Awaitable[T]],
        policy: Optional[RetryPolicy] = None,
        *,
        is_transient: Callable[[BaseException], bool] = is_transient_error,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        label: str = "request",
) -> T:
    """
    Run `operation` and retry it on transient failures.

    Non-transient errors are re-raised immediately; after the last attempt the last error
    is re-raised unchanged. Cancellation is never retried.
    """
    effective = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not is_transient(exc):
                raise
            if attempt >= effective.max_retries:
                log.warning("[RETRY][%s][EXHAUSTED] attempts=%d error=%s", label, attempt + 1, exc)
                raise
            delay = effective.delay_seconds(attempt)
            log.debug(
                "[RETRY][%s][BACKOFF] attempt=%d/%d delay=%.3fs error=%s",
                label,
                attempt + 1,
                effective.max_retries + 1,
                delay,
                exc,
            )
            await sleep(delay)
            attempt += 1
