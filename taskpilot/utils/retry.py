"""
Retry with Exponential Backoff
==============================

Wraps a fallible async operation with bounded retry on transient failures.

Delay for attempt n (0-based):

    delay = min(max_delay, base_delay * 2^n + jitter)

where jitter is a random fraction (jitter_factor) of the exponential part.
A RateLimitError carrying a retry_after hint uses that hint instead,
still capped at max_delay.

Only these failures are retried:
- RateLimitError (always)
- APIError whose status is in the retryable set (429, 500, 502, 503, 504)
- Connection-level errors (httpx transport errors, timeouts, resets)

Everything else propagates on the first attempt.

The loop itself is tenacity's AsyncRetrying; this module supplies the
policy (which errors, how long to wait) on top of it.

Usage:
    result = await with_retry(lambda: backend.complete(...))

    @retry(RetryOptions(max_retries=5))
    async def fetch_tasks():
        ...
"""

import asyncio
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, TypeVar

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry as tenacity_retry,
    retry_if_exception,
    stop_after_attempt,
)

from taskpilot.utils.errors import APIError, RateLimitError
from taskpilot.utils.logger import Logger

logger = Logger("Retry")

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 504})

_TRANSIENT_MARKERS = (
    "network",
    "timeout",
    "timed out",
    "econnreset",
    "econnrefused",
    "connection reset",
    "connection refused",
    "socket hang up",
)


@dataclass
class RetryOptions:
    """
    Retry policy.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        base_delay: Seconds for the first backoff step
        max_delay: Upper bound on any single delay
        jitter_factor: Fraction of the exponential delay added at random
        retryable_status_codes: APIError statuses worth retrying
        on_retry: Called with (attempt, delay, error) before sleeping
    """
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter_factor: float = 0.1
    retryable_status_codes: frozenset[int] = field(default_factory=lambda: DEFAULT_RETRYABLE_STATUS_CODES)
    on_retry: Callable[[int, float, BaseException], None] | None = None

    @classmethod
    def from_config(cls, config) -> "RetryOptions":
        """Build options from a RetryConfig section."""
        return cls(
            max_retries=config.max_retries,
            base_delay=config.base_delay,
            max_delay=config.max_delay,
            jitter_factor=config.jitter_factor,
            retryable_status_codes=frozenset(config.retryable_status_codes),
        )


def is_retryable(error: BaseException, options: RetryOptions | None = None) -> bool:
    """
    Decide whether an error is transient.

    Args:
        error: The raised exception
        options: Policy holding the retryable status set

    Returns:
        True if the operation should be attempted again
    """
    options = options or RetryOptions()

    if isinstance(error, RateLimitError):
        return True

    if isinstance(error, APIError):
        return error.status_code in options.retryable_status_codes

    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError, ConnectionError)):
        return True

    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


def calculate_delay(
    attempt: int,
    options: RetryOptions | None = None,
    retry_after: float | None = None
) -> float:
    """
    Compute the sleep before the next attempt.

    Args:
        attempt: 0-based index of the attempt that just failed
        options: Backoff policy
        retry_after: Server hint in seconds, if any

    Returns:
        Delay in seconds, never above options.max_delay
    """
    options = options or RetryOptions()

    if retry_after is not None and retry_after > 0:
        return min(retry_after, options.max_delay)

    exponential = options.base_delay * (2 ** attempt)
    jitter = exponential * options.jitter_factor * random.random()
    return min(exponential + jitter, options.max_delay)


class _BackoffWait:
    """tenacity wait strategy: exponential backoff, or the server's retry_after hint."""

    def __init__(self, options: RetryOptions):
        self.options = options

    def __call__(self, retry_state: RetryCallState) -> float:
        error = retry_state.outcome.exception() if retry_state.outcome else None
        retry_after = error.retry_after if isinstance(error, RateLimitError) else None
        return calculate_delay(retry_state.attempt_number - 1, self.options, retry_after)


def _policy(options: RetryOptions) -> dict[str, Any]:
    """tenacity keyword arguments for a RetryOptions policy."""

    def before_sleep(retry_state: RetryCallState) -> None:
        error = retry_state.outcome.exception()
        delay = retry_state.next_action.sleep
        attempt = retry_state.attempt_number

        logger.warning(
            f"Transient failure, retrying in {delay:.2f}s "
            f"({attempt}/{options.max_retries}): {error}"
        )
        if options.on_retry:
            options.on_retry(attempt, delay, error)

    return dict(
        stop=stop_after_attempt(options.max_retries + 1),
        wait=_BackoffWait(options),
        retry=retry_if_exception(lambda e: isinstance(e, Exception) and is_retryable(e, options)),
        before_sleep=before_sleep,
        reraise=True,
    )


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    options: RetryOptions | None = None
) -> T:
    """
    Run an async operation, retrying transient failures with backoff.

    Args:
        fn: Zero-argument callable returning an awaitable
        options: Retry policy

    Returns:
        Whatever fn returns on its first successful attempt

    Raises:
        The last error once retries are exhausted, or the first
        non-retryable error immediately.
    """
    retrying = AsyncRetrying(**_policy(options or RetryOptions()))
    return await retrying(fn)


def retry(options: RetryOptions | None = None):
    """
    Decorator form of with_retry for async functions and methods.

    Example:
        @retry(RetryOptions(max_retries=2, base_delay=0.5))
        async def get_task(self, task_id): ...
    """
    return tenacity_retry(**_policy(options or RetryOptions()))


def parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def raise_for_status(response: httpx.Response, source: str = "upstream") -> None:
    """
    Map an error HTTP response onto the error taxonomy.

    429 becomes RateLimitError (with the Retry-After hint); any other
    4xx/5xx becomes APIError carrying the status code and the server's
    message when the body is JSON.

    Args:
        response: The httpx response
        source: Name used in the error message
    """
    if response.is_success:
        return

    status = response.status_code
    if status == 429:
        raise RateLimitError(source, parse_retry_after(response.headers.get("retry-after")))

    message = response.reason_phrase or "Request failed"
    code = None
    try:
        body = response.json()
        if isinstance(body, dict):
            message = body.get("message") or body.get("error") or message
            code = body.get("code")
    except ValueError:
        pass

    raise APIError(f"{source}: {message}", status_code=status, code=code)
