"""Bounded exponential backoff for transient provider failures.

Wraps any provider call and retries it while the failure is classified
as transient (throttling, service unavailability, contention or
recoverable network errors). Terminal failures propagate immediately.
"""

import functools
import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TypeVar

from src.core.config import ConfigurationError
from src.core.provider import classify_error


logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_STARTING_DELAY_SECONDS = 0.15
DEFAULT_NUM_OF_ATTEMPTS = 20
DEFAULT_MAX_DELAY_SECONDS = 30.0
DEFAULT_TIME_MULTIPLE = 2.0


class Jitter(Enum):
    """Jitter strategy applied to each computed delay."""

    NONE = "none"
    FULL = "full"


@dataclass(frozen=True)
class BackoffOptions:
    """Retry schedule for throttling_backoff.

    Attributes:
        starting_delay: Base delay in seconds
        num_of_attempts: Maximum number of invocations, first call included
        max_delay: Upper bound for any single delay in seconds
        time_multiple: Growth factor applied per retry
        jitter: Jitter strategy
    """

    starting_delay: float = DEFAULT_STARTING_DELAY_SECONDS
    num_of_attempts: int = DEFAULT_NUM_OF_ATTEMPTS
    max_delay: float = DEFAULT_MAX_DELAY_SECONDS
    time_multiple: float = DEFAULT_TIME_MULTIPLE
    jitter: Jitter = Jitter.FULL

    def __post_init__(self) -> None:
        if self.num_of_attempts < 1:
            raise ConfigurationError("num_of_attempts must be at least 1")
        if self.starting_delay < 0 or self.max_delay < 0:
            raise ConfigurationError("Backoff delays must not be negative")
        if self.time_multiple < 1:
            raise ConfigurationError("time_multiple must be at least 1")


def is_throttling_error(error: BaseException) -> bool:
    """Check whether a failure is worth retrying.

    Args:
        error: Exception raised by a provider call

    Returns:
        True for transient failures, False for terminal ones
    """
    return classify_error(error).transient


def compute_delay(
    retry_number: int,
    options: BackoffOptions,
    rng: Callable[[], float] = random.random,
) -> float:
    """Delay before the given retry (1-based) in seconds."""
    delay = options.starting_delay * (options.time_multiple ** retry_number)
    delay = min(options.max_delay, delay)
    if options.jitter is Jitter.FULL:
        delay = rng() * delay
    return delay


def throttling_backoff(
    request: Callable[[], T],
    options: Optional[BackoffOptions] = None,
    retry_if: Callable[[BaseException], bool] = is_throttling_error,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Invoke request, retrying transient failures with backoff.

    Args:
        request: Zero-argument callable issuing the provider call
        options: Retry schedule, defaults to BackoffOptions()
        retry_if: Predicate deciding whether a failure is retried
        sleep: Sleep function, replaceable in tests

    Returns:
        The first successful result of request

    Raises:
        Exception: The terminal failure, or the last transient failure
            once the attempt ceiling is reached, unchanged
    """
    options = options or BackoffOptions()
    attempt = 1
    while True:
        try:
            return request()
        except Exception as e:
            if not retry_if(e) or attempt >= options.num_of_attempts:
                raise
            delay = compute_delay(attempt, options)
            logger.debug(
                f"Transient failure on attempt {attempt}/{options.num_of_attempts}, "
                f"retrying in {delay:.2f}s: {e}"
            )
            sleep(delay)
            attempt += 1


def with_throttling_backoff(options: Optional[BackoffOptions] = None):
    """Decorator form of throttling_backoff."""

    def decorator(func):
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            return throttling_backoff(lambda: func(*args, **kwargs), options)
        return wrapper

    return decorator
