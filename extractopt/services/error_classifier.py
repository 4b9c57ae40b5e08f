"""Error classification service for the backend call failure taxonomy"""

import logging
import traceback
from typing import Any, ClassVar, Optional

import requests

from extractopt.core.exceptions import BackendHTTPError, ClassifiedError
from extractopt.core.models import DEFAULT_RETRYABLE_CATEGORIES, ErrorCategory, ErrorContext


logger = logging.getLogger(__name__)

HTTP_STATUS_CATEGORIES: dict[int, ErrorCategory] = {
    401: ErrorCategory.AUTHENTICATION,
    403: ErrorCategory.PERMISSION,
    404: ErrorCategory.NOT_FOUND,
    408: ErrorCategory.TIMEOUT,
    413: ErrorCategory.CONTENT_TOO_LARGE,
    429: ErrorCategory.RATE_LIMIT,
}


def classify_status(status_code: int) -> ErrorCategory:
    """Map an HTTP status code onto the failure taxonomy"""
    if status_code in HTTP_STATUS_CATEGORIES:
        return HTTP_STATUS_CATEGORIES[status_code]
    if status_code >= 500:
        return ErrorCategory.TRANSIENT_SERVER
    if status_code >= 400:
        return ErrorCategory.MALFORMED_REQUEST
    logger.warning(f"Unexpected status {status_code} classified as malformed request")
    return ErrorCategory.MALFORMED_REQUEST


class ErrorClassifier:
    """
    Classifies exceptions into the failure taxonomy used for retry decisions

    Resolution order:
    - ClassifiedError subclasses carry their own category
    - HTTP errors map by status code
    - Known exception types (timeouts, connection failures, programming errors)
    - Keyword inspection of the message for anything else
    """

    RATE_LIMIT_KEYWORDS: ClassVar[set[str]] = {
        "rate limit",
        "429",
        "quota exceeded",
        "too many requests",
        "ratelimit",
    }
    TIMEOUT_KEYWORDS: ClassVar[set[str]] = {
        "timeout",
        "timed out",
        "deadline exceeded",
    }
    AUTH_KEYWORDS: ClassVar[set[str]] = {
        "401",
        "unauthorized",
        "authentication",
        "invalid token",
        "expired token",
    }
    PERMISSION_KEYWORDS: ClassVar[set[str]] = {
        "403",
        "forbidden",
        "permission denied",
        "access denied",
    }
    NOT_FOUND_KEYWORDS: ClassVar[set[str]] = {
        "404",
        "not found",
    }
    TOO_LARGE_KEYWORDS: ClassVar[set[str]] = {
        "413",
        "too large",
        "payload too large",
        "context length",
    }
    NETWORK_KEYWORDS: ClassVar[set[str]] = {
        "connection refused",
        "connection reset",
        "connection aborted",
        "network",
        "name resolution",
        "econnreset",
    }

    def __init__(self, retryable_categories: frozenset[ErrorCategory] = DEFAULT_RETRYABLE_CATEGORIES):
        self.retryable_categories = retryable_categories

    def classify(
        self,
        exception: Exception,
        component: str,
        operation: str,
        metadata: Optional[dict[str, Any]] = None,
        retryable_categories: Optional[frozenset[ErrorCategory]] = None,
    ) -> ErrorContext:
        """
        Classify an exception into an ErrorContext

        Args:
            exception: The exception to classify
            component: Name of the component that raised the error
            operation: Name of the operation that failed
            metadata: Optional additional context
            retryable_categories: Overrides the classifier's retryable set

        Returns:
            ErrorContext with classification and details
        """
        category = self.categorize(exception)
        retryable_set = retryable_categories if retryable_categories is not None else self.retryable_categories
        status_code = exception.status_code if isinstance(exception, BackendHTTPError) else None

        stack_trace = "".join(traceback.format_exception(type(exception), exception, exception.__traceback__))

        return ErrorContext(
            category=category,
            component=component,
            operation=operation,
            errorMessage=str(exception),
            statusCode=status_code,
            stackTrace=stack_trace,
            metadata=metadata or {},
            retryable=category in retryable_set,
        )

    def categorize(self, exception: BaseException) -> ErrorCategory:
        """Return the failure class of an exception"""
        if isinstance(exception, BackendHTTPError):
            return classify_status(exception.status_code)

        if isinstance(exception, ClassifiedError):
            return exception.category

        if isinstance(exception, requests.HTTPError) and exception.response is not None:
            return classify_status(exception.response.status_code)

        # requests.Timeout must be checked before ConnectionError: ConnectTimeout is both
        if isinstance(exception, (TimeoutError, requests.Timeout)):
            return ErrorCategory.TIMEOUT

        if isinstance(exception, (ConnectionError, requests.ConnectionError)):
            return ErrorCategory.TRANSIENT_NETWORK

        if isinstance(exception, (ValueError, TypeError, KeyError)):
            return ErrorCategory.MALFORMED_REQUEST

        return self._categorize_message(str(exception).lower(), type(exception).__name__)

    def _categorize_message(self, error_message: str, exception_type: str) -> ErrorCategory:
        if any(keyword in error_message for keyword in self.RATE_LIMIT_KEYWORDS):
            return ErrorCategory.RATE_LIMIT

        if any(keyword in error_message for keyword in self.TIMEOUT_KEYWORDS):
            return ErrorCategory.TIMEOUT

        if any(keyword in error_message for keyword in self.AUTH_KEYWORDS):
            return ErrorCategory.AUTHENTICATION

        if any(keyword in error_message for keyword in self.PERMISSION_KEYWORDS):
            return ErrorCategory.PERMISSION

        if any(keyword in error_message for keyword in self.TOO_LARGE_KEYWORDS):
            return ErrorCategory.CONTENT_TOO_LARGE

        if any(keyword in error_message for keyword in self.NOT_FOUND_KEYWORDS):
            return ErrorCategory.NOT_FOUND

        if any(keyword in error_message for keyword in self.NETWORK_KEYWORDS):
            return ErrorCategory.TRANSIENT_NETWORK

        logger.warning(
            f"Unknown error type {exception_type}, defaulting to {ErrorCategory.TRANSIENT_SERVER.value}: "
            f"{error_message[:100]}"
        )
        return ErrorCategory.TRANSIENT_SERVER

    def classify_from_message(
        self,
        error_message: str,
        component: str,
        operation: str,
        status_code: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> ErrorContext:
        """
        Classify error from a message and optional status code (when no exception is available)

        Args:
            error_message: Error message string
            component: Name of the component
            operation: Name of the operation
            status_code: HTTP status code, takes precedence over the message
            metadata: Optional additional context

        Returns:
            ErrorContext with classification
        """
        if status_code is not None:
            category = classify_status(status_code)
        else:
            category = self._categorize_message(error_message.lower(), "Exception")

        return ErrorContext(
            category=category,
            component=component,
            operation=operation,
            errorMessage=error_message,
            statusCode=status_code,
            stackTrace=None,
            metadata=metadata or {},
            retryable=category in self.retryable_categories,
        )
