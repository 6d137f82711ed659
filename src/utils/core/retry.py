"""
Backoff retries for the KRX bulk endpoints.

A directory refresh makes only a handful of POSTs to the KRX data service,
so one dropped connection there would otherwise abort the whole refresh.
Per-instrument page fetches inside a sweep are never wrapped: a failed
instrument is recorded and the sweep moves on.
"""

import asyncio
import functools
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Type, TypeVar

from src.utils.core.logger import get_logger

logger = get_logger(__name__, utility="general")

T = TypeVar("T")


class RetryError(Exception):
    """Raised once every attempt allowed by a RetryConfig has failed."""

    def __init__(self, message: str, last_exception: Exception, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_factor: float = 2.0
    jitter: bool = True
    retryable_exceptions: tuple[Type[Exception], ...] = (ConnectionError, TimeoutError)
    non_retryable_exceptions: tuple[Type[Exception], ...] = ()


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Seconds to wait after the zero-based ``attempt`` failed."""
    delay = config.base_delay * config.backoff_factor**attempt
    delay = min(delay, config.max_delay)
    if config.jitter:
        spread = delay / 4
        delay = delay + random.uniform(-spread, spread)
    return max(delay, 0.0)


def is_retryable_exception(exception: Exception, config: RetryConfig) -> bool:
    if isinstance(exception, config.non_retryable_exceptions):
        return False
    if isinstance(exception, config.retryable_exceptions):
        return True
    # FetchError carries its own classification
    return getattr(exception, "error_category", None) == "retryable"


def async_retry(config: Optional[RetryConfig] = None) -> Callable:
    """
    Wrap a coroutine function so retryable failures are attempted again.

    Non-retryable errors propagate unchanged on the first occurrence. When
    the attempts run out a ``RetryError`` carrying the last failure is raised.
    """
    policy = config or RetryConfig()

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        operation = getattr(func, "__qualname__", repr(func))

        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            failure: Optional[Exception] = None
            for attempt in range(policy.max_attempts):
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    if not is_retryable_exception(e, policy):
                        raise
                    failure = e
                remaining = policy.max_attempts - attempt - 1
                if not remaining:
                    break
                delay = calculate_delay(attempt, policy)
                logger.warning(
                    f"{operation} failed ({type(failure).__name__}: {failure}); "
                    f"{remaining} attempt(s) left, next in {delay:.2f}s"
                )
                await asyncio.sleep(delay)

            logger.error(f"{operation} gave up after {policy.max_attempts} attempts: {failure}")
            raise RetryError(
                f"{operation} failed after {policy.max_attempts} attempts",
                failure,
                policy.max_attempts,
            )

        return wrapper

    return decorator


DIRECTORY_RETRY_CONFIG = RetryConfig(max_attempts=3, base_delay=2.0, max_delay=20.0)
