"""Retry handler with exponential backoff and per-attempt timeouts for backend calls"""

import logging
import random
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Optional, TypeVar

from extractopt.core.models import ErrorCategory, RetryConfig
from extractopt.services.error_classifier import ErrorClassifier

logger = logging.getLogger(__name__)

T = TypeVar("T")

JITTER_FRACTION = 0.25
MIN_DELAY = 0.1


class RetryExhausted(Exception):
    """Raised when all retry attempts are exhausted"""

    def __init__(self, message: str, attempts: int, last_category: Optional[ErrorCategory] = None):
        super().__init__(message)
        self.attempts = attempts
        self.last_category = last_category


class CallTimeoutError(TimeoutError):
    """An attempt did not finish within its time limit; any late result is discarded"""


class RetryHandler:
    """
    Handles retry logic with exponential backoff and jitter

    Features:
    - Exponential backoff: delay = base_delay * (exponential_base ^ (attempt - 1))
    - Jitter: Random variation (±25%) to prevent thundering herd
    - Delays never shrink between attempts and never exceed max_delay
    - Optional hard timeout per attempt
    - Only categories in the config's retryable set are retried
    """

    # Predefined retry configurations for common use cases
    AI_RETRY_CONFIG = RetryConfig(
        max_attempts=3,
        base_delay=1.0,
        max_delay=30.0,
        exponential_base=2.0,
        jitter=True,
        attempt_timeout=30.0,
    )

    DIAGNOSTICS_RETRY_CONFIG = RetryConfig(
        max_attempts=2,
        base_delay=1.0,
        max_delay=10.0,
        exponential_base=2.0,
        jitter=True,
        attempt_timeout=60.0,
    )

    def __init__(
        self,
        error_classifier: Optional[ErrorClassifier] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize retry handler

        Args:
            error_classifier: Optional error classifier for categorizing exceptions
            sleep: Function used to wait between attempts
        """
        self.error_classifier = error_classifier or ErrorClassifier()
        self._sleep = sleep

    def execute_with_retry(
        self,
        fn: Callable[..., T],
        *args: Any,
        retry_config: RetryConfig = AI_RETRY_CONFIG,
        component: str = "unknown",
        operation: str = "unknown",
        **kwargs: Any,
    ) -> T:
        """
        Execute function with retry logic

        Args:
            fn: Function to execute
            *args: Positional arguments for fn
            retry_config: Retry configuration
            component: Component name for logging
            operation: Operation name for logging
            **kwargs: Keyword arguments for fn

        Returns:
            Result from fn

        Raises:
            RetryExhausted: If all retry attempts fail
            Exception: If the error is not retryable (fail fast)
        """
        previous_delay = 0.0

        for attempt in range(1, retry_config.max_attempts + 1):
            try:
                result = self._run_attempt(fn, args, kwargs, retry_config.attempt_timeout)

                if attempt > 1:
                    logger.info(
                        f"[{component}.{operation}] Succeeded on attempt {attempt}/{retry_config.max_attempts}"
                    )
                else:
                    logger.debug(f"[{component}.{operation}] Succeeded on first attempt")

                return result

            except Exception as e:
                error_context = self.error_classifier.classify(
                    exception=e,
                    component=component,
                    operation=operation,
                    metadata={"attempt": attempt, "max_attempts": retry_config.max_attempts},
                    retryable_categories=retry_config.retryable_categories,
                )

                if not error_context.retryable:
                    logger.error(
                        f"[{component}.{operation}] Non-retryable error ({error_context.category.value}): {e}"
                    )
                    raise

                if attempt >= retry_config.max_attempts:
                    logger.error(
                        f"[{component}.{operation}] All {retry_config.max_attempts} retry attempts exhausted: {e}"
                    )
                    raise RetryExhausted(
                        f"Failed after {retry_config.max_attempts} attempts: {e}",
                        attempts=attempt,
                        last_category=error_context.category,
                    ) from e

                delay = self._calculate_delay(attempt, retry_config, previous_delay)
                previous_delay = delay
                logger.warning(
                    f"[{component}.{operation}] Attempt {attempt}/{retry_config.max_attempts} failed "
                    f"({error_context.category.value}): {e}. Retrying in {delay:.2f}s..."
                )

                self._sleep(delay)

        # max_attempts >= 1 is enforced by RetryConfig
        raise RetryExhausted(
            f"Failed after {retry_config.max_attempts} attempts", attempts=retry_config.max_attempts
        )

    def _run_attempt(
        self,
        fn: Callable[..., T],
        args: tuple[Any, ...],
        kwargs: dict[str, Any],
        timeout: Optional[float],
    ) -> T:
        """Run one attempt, abandoning it after ``timeout`` seconds"""
        if timeout is None:
            return fn(*args, **kwargs)

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="extractopt-call")
        try:
            future = executor.submit(fn, *args, **kwargs)
            try:
                return future.result(timeout=timeout)
            except FutureTimeoutError:
                future.cancel()
                raise CallTimeoutError(f"Call exceeded {timeout:.1f}s timeout") from None
        finally:
            # Never block on an abandoned attempt
            executor.shutdown(wait=False)

    def _calculate_delay(self, attempt: int, config: RetryConfig, previous_delay: float = 0.0) -> float:
        """
        Calculate delay for exponential backoff with optional jitter

        Formula: delay = base_delay * (exponential_base ^ (attempt - 1))
        Jitter adds ±25% random variation, then the result is clamped to
        [previous_delay, max_delay] so the sequence is non-decreasing and bounded.

        Args:
            attempt: Current attempt number (1-indexed)
            config: Retry configuration
            previous_delay: Delay used before the previous retry

        Returns:
            Delay in seconds
        """
        delay = config.base_delay * (config.exponential_base ** (attempt - 1))
        delay = min(delay, config.max_delay)

        if config.jitter:
            jitter_amount = delay * JITTER_FRACTION
            delay += random.uniform(-jitter_amount, jitter_amount)
            delay = max(MIN_DELAY, delay)

        return min(max(delay, previous_delay), config.max_delay)

    def should_retry(
        self,
        exception: Exception,
        component: str,
        operation: str,
        retry_config: RetryConfig = AI_RETRY_CONFIG,
    ) -> bool:
        """
        Check if an exception should be retried

        Args:
            exception: Exception to check
            component: Component name
            operation: Operation name
            retry_config: Config whose retryable categories apply

        Returns:
            True if should retry, False otherwise
        """
        error_context = self.error_classifier.classify(
            exception=exception,
            component=component,
            operation=operation,
            retryable_categories=retry_config.retryable_categories,
        )

        return error_context.retryable
