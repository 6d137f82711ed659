# Shared utilities for the collector

from .core.logger import get_logger, shutdown_logging
from .core.retry import RetryConfig, RetryError, async_retry, calculate_delay, is_retryable_exception

__all__ = [
    "get_logger",
    "shutdown_logging",
    "RetryConfig",
    "RetryError",
    "async_retry",
    "calculate_delay",
    "is_retryable_exception",
]
