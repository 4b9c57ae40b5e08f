"""Core models, configuration and exceptions for extractopt"""

from extractopt.core.config import (
    GenerationConfig,
    OptimizerConfig,
    SamplingConfig,
    ValidatorConfig,
)
from extractopt.core.models import (
    ComparisonResults,
    ErrorCategory,
    ErrorContext,
    FieldComparison,
    FieldOutcome,
    FieldSummary,
    FieldTask,
    OptimizerRunStatus,
    OptimizerRunSummary,
    PromptValidation,
    RetryConfig,
)


__all__ = [
    "ComparisonResults",
    "ErrorCategory",
    "ErrorContext",
    "FieldComparison",
    "FieldOutcome",
    "FieldSummary",
    "FieldTask",
    "GenerationConfig",
    "OptimizerConfig",
    "OptimizerRunStatus",
    "OptimizerRunSummary",
    "PromptValidation",
    "RetryConfig",
    "SamplingConfig",
    "ValidatorConfig",
]
