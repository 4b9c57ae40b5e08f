"""Exception types raised across extractopt

Each exception that maps to a fixed failure class carries it as ``category``
so the error classifier can read it without inspecting messages.
"""

from typing import ClassVar, Optional

from extractopt.core.models import ErrorCategory


class ClassifiedError(Exception):
    """Base class for errors whose failure class is known at raise time"""

    category: ClassVar[ErrorCategory] = ErrorCategory.TRANSIENT_SERVER


class AIServiceError(ClassifiedError):
    """Base class for failures talking to the generative backend"""


class BackendHTTPError(AIServiceError):
    """Non-2xx response from the generative backend"""

    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        self.message = message
        super().__init__(f"HTTP {status_code}: {message}" if message else f"HTTP {status_code}")


class AuthenticationError(AIServiceError):
    """No usable credential for the request"""

    category = ErrorCategory.AUTHENTICATION


class PromptParseError(ClassifiedError):
    """A generation response held no usable instruction and no fallback applied"""

    category = ErrorCategory.PARSE_FAILURE

    def __init__(self, message: str, raw_response: Optional[str] = None):
        super().__init__(message)
        self.raw_response = raw_response


class IterationBudgetExceeded(ClassifiedError):
    """A field task was asked for more iterations than it was given"""

    category = ErrorCategory.EXHAUSTED


class OptimizerPrecheckError(Exception):
    """Run preconditions not met (no comparison results or no template)"""


class OptimizerCancelled(Exception):
    """Operator cancelled the run"""


class InvalidTransitionError(Exception):
    """Illegal optimizer state change"""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition optimizer run from {current} to {target}")
