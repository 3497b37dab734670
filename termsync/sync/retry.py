"""Retry utilities with exponential backoff for remote blob operations."""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = False


class RetryExhausted(Exception):
    """All retry attempts exhausted."""

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Operation failed after {attempts} attempts{detail}")


def calculate_delay(attempt: int, config: RetryConfig) -> float:
    """Delay before retrying after the given (0-indexed) failed attempt.

    Args:
        attempt: Index of the attempt that just failed
        config: Retry configuration

    Returns:
        Delay in seconds
    """
    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    if config.jitter:
        # +/- 25%
        jitter_range = delay * 0.25
        delay = delay + random.uniform(-jitter_range, jitter_range)

    return max(0.0, delay)


def retry_with_backoff(
    func: Callable[[], T],
    config: Optional[RetryConfig] = None,
    retryable_exceptions: tuple = (Exception,),
    description: str = "Operation",
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Execute ``func``, retrying with exponential backoff.

    Args:
        func: Function to execute
        config: Retry configuration
        retryable_exceptions: Exceptions that trigger another attempt
        description: Label used in log messages
        sleep: Sleep function (injectable for tests)

    Returns:
        Result of the first successful call

    Raises:
        RetryExhausted: If every attempt failed with a retryable error
        Exception: Non-retryable errors propagate immediately
    """
    if config is None:
        config = RetryConfig()

    attempts = max(1, config.max_attempts)
    last_error: Optional[Exception] = None

    for attempt in range(attempts):
        try:
            return func()
        except retryable_exceptions as e:
            last_error = e
            logger.warning(f"{description} failed (attempt {attempt + 1}/{attempts}): {e}")

            if attempt + 1 >= attempts:
                break
            sleep(calculate_delay(attempt, config))

    raise RetryExhausted(attempts, last_error)
