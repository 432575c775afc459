"""Retry orchestration with capped exponential backoff.

Wraps a fallible async step in bounded retries. Permanent failures
(configuration gaps, validation errors, anything flagged non-transient) are
re-raised immediately; exhausted retries surface as RetryExhaustedError.
"""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from call_bridge.utils.errors import RetryExhaustedError

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_NON_RETRYABLE_PATTERNS: tuple[str, ...] = (
    r"is not configured",
    r"is required",
)


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Return the wait before retry number ``attempt`` (1-based).

    Follows min(base_delay * 2^(attempt-1), max_delay).
    """
    return min(base_delay * (2 ** (attempt - 1)), max_delay)


def _is_retryable(
    exc: Exception,
    retryable_exceptions: tuple[type[Exception], ...] | None,
    non_retryable_patterns: Sequence[str],
) -> bool:
    message = str(exc)
    for pattern in non_retryable_patterns:
        if re.search(pattern, message, re.IGNORECASE):
            return False
    if retryable_exceptions is not None and not isinstance(
        exc, retryable_exceptions
    ):
        return False
    return bool(getattr(exc, "transient", True))


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int,
    label: str,
    base_delay: float = 1.0,
    max_delay: float = 10.0,
    retryable_exceptions: tuple[type[Exception], ...] | None = None,
    non_retryable_patterns: Sequence[str] = DEFAULT_NON_RETRYABLE_PATTERNS,
    call_id: str | None = None,
) -> T:
    """Invoke ``operation`` with bounded retries and exponential backoff.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        max_attempts: Total attempts including the first (minimum 1).
        label: Human-readable operation name used in logs and errors.
        base_delay: Delay in seconds before the first retry (default 1.0).
        max_delay: Upper bound for any single delay (default 10.0).
        retryable_exceptions: Exception types eligible for retry. If None,
            every exception not otherwise excluded is retried.
        non_retryable_patterns: Regexes matched against the error message;
            a match re-raises immediately.
        call_id: Call identifier attached to log records and errors.

    Returns:
        The operation's result from the first successful attempt.

    Raises:
        Exception: The original exception when it is non-retryable.
        RetryExhaustedError: When every attempt failed.
    """
    attempts = max(1, max_attempts)
    last_error: Exception | None = None

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except Exception as exc:
            last_error = exc
            if not _is_retryable(exc, retryable_exceptions, non_retryable_patterns):
                exc._retry_count = attempt - 1  # type: ignore[attr-defined]
                raise
            if attempt < attempts:
                delay = backoff_delay(attempt, base_delay, max_delay)
                logger.warning(
                    "Retry %d/%d for %s after %.1fs: %s",
                    attempt,
                    attempts - 1,
                    label,
                    delay,
                    exc,
                    extra={"call_id": call_id, "attempt": attempt, "error": str(exc)},
                )
                await asyncio.sleep(delay)

    error = RetryExhaustedError(
        f"{label} failed after {attempts} attempts: {last_error}",
        call_id=call_id,
        operation=label,
        attempts=attempts,
    )
    error._retry_count = attempts - 1  # type: ignore[attr-defined]
    raise error from last_error
