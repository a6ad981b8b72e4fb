"""Retry support for transient storage failures."""

import time
import random
import logging
from typing import Callable, Any, Optional, List, Type

from .exceptions import FlowEngineError, TransientError
from .logging import get_logger, log_with_context

logger = get_logger(__name__)


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_attempts: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 5.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        retryable_exceptions: Optional[List[Type[Exception]]] = None
    ):
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.retryable_exceptions = retryable_exceptions or [TransientError]

    def should_retry(self, exception: Exception, attempt: int) -> bool:
        """Determine if an exception should be retried."""
        if attempt >= self.max_attempts:
            return False
        if not any(isinstance(exception, exc_type) for exc_type in self.retryable_exceptions):
            return False
        if isinstance(exception, FlowEngineError):
            return exception.recoverable
        return True

    def get_delay(self, attempt: int) -> float:
        """Calculate delay before the next attempt."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            delay *= (0.5 + random.random() * 0.5)

        return delay


def execute_with_retry(func: Callable, config: RetryConfig, *args, **kwargs) -> Any:
    """Call ``func`` until it succeeds or the retry budget is spent."""
    attempt = 0
    while True:
        attempt += 1
        try:
            result = func(*args, **kwargs)
            if attempt > 1:
                log_with_context(
                    logger, logging.INFO,
                    f"Recovered {func.__name__} after {attempt} attempts",
                    operation=func.__name__,
                    attempts_used=attempt
                )
            return result
        except Exception as e:
            if not config.should_retry(e, attempt):
                if attempt > 1:
                    log_with_context(
                        logger, logging.ERROR,
                        f"Giving up on {func.__name__} after {attempt} attempts",
                        operation=func.__name__,
                        error_type=type(e).__name__,
                        error_message=str(e),
                        attempts_used=attempt
                    )
                raise

            delay = config.get_delay(attempt)
            log_with_context(
                logger, logging.WARNING,
                f"Retry {attempt}/{config.max_attempts} for {func.__name__} in {delay:.2f}s",
                operation=func.__name__,
                error_type=type(e).__name__,
                error_message=str(e),
                attempt=attempt
            )
            time.sleep(delay)
