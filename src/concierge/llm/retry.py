"""Retry utilities for LLM API calls."""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_PATTERN = re.compile(
    r"overloaded|rate.?limit|too many requests|"
    r"429|500|502|503|504|"
    r"service.?unavailable|server error|internal error|"
    r"connection.?error",
    re.IGNORECASE,
)


@dataclass
class RetryConfig:
    """Configuration for retry behavior.

    Kept small: the completion client wraps the whole retry loop in a single
    deadline, so long backoff would only eat into it.
    """

    enabled: bool = True
    max_retries: int = 2
    base_delay_ms: int = 500
    max_delay_ms: int = 4000


def is_retryable_error(error: Exception) -> bool:
    """Check if a provider error is worth retrying.

    Rate limits, overloads, 5xx responses and connection errors are retryable.
    Timeouts are not: the caller's deadline has already been spent.
    """
    if isinstance(error, (asyncio.TimeoutError, asyncio.CancelledError)):
        return False

    if RETRYABLE_PATTERN.search(str(error)):
        return True

    error_type = type(error).__name__.lower()
    if any(t in error_type for t in ("connection", "overloaded", "ratelimit")):
        return True

    status_code = getattr(error, "status_code", None)
    return status_code in (429, 500, 502, 503, 504)


async def with_retry(
    func: Callable[[], Awaitable[T]],
    config: RetryConfig | None = None,
    operation_name: str = "API call",
) -> T:
    """Execute an async function with exponential backoff retry.

    Raises:
        The last exception if all retries fail or the error is not retryable.
    """
    config = config or RetryConfig()
    if not config.enabled:
        return await func()

    attempt = 0
    while True:
        try:
            return await func()
        except Exception as e:
            if not is_retryable_error(e):
                raise
            if attempt >= config.max_retries:
                logger.warning(
                    "retry_exhausted",
                    extra={
                        "operation": operation_name,
                        "attempts": attempt + 1,
                        "error.message": str(e),
                        "error.type": type(e).__name__,
                    },
                )
                raise

            delay_s = min(config.base_delay_ms * (2**attempt), config.max_delay_ms) / 1000
            attempt += 1
            logger.info(
                "retry_attempt",
                extra={
                    "operation": operation_name,
                    "attempt": attempt,
                    "max_attempts": config.max_retries + 1,
                    "retry_delay_s": round(delay_s, 1),
                    "error.type": type(e).__name__,
                },
            )
            await asyncio.sleep(delay_s)
