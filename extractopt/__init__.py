"""
extractopt - Adaptive prompt optimization for document-extraction fields

Takes the comparison results of an extraction run, diagnoses why fields
failed, and rewrites each failing field's instruction through a bounded
generate, validate and repair loop. Every rewritten instruction either
passes the quality rules or is replaced by a known-good template.

Quick Start:
    >>> from extractopt import OptimizerRunStateMachine, ResilientAIClient
    >>> from extractopt.services.generation_backend import BoxAIBackend, EnvTokenProvider
    >>>
    >>> client = ResilientAIClient(BoxAIBackend(), EnvTokenProvider(), default_item_id="123456")
    >>> machine = OptimizerRunStateMachine(client)
    >>> summary = machine.run(comparison)

Check a single instruction:
    >>> from extractopt import validate_prompt
    >>> validate_prompt("Extract the vendor name.").isValid
    False
"""

from extractopt.core.config import OptimizerConfig
from extractopt.core.models import (
    ComparisonResults,
    FieldComparison,
    FieldOutcome,
    FieldSummary,
    OptimizerRunStatus,
    OptimizerRunSummary,
    PromptValidation,
)
from extractopt.services.ai_client import ResilientAIClient
from extractopt.services.prompt_optimization.orchestrator import OptimizerRunStateMachine
from extractopt.services.prompt_optimization.templates import template_for
from extractopt.services.prompt_optimization.validator import validate_prompt

__version__ = "0.1.0"

__all__ = [
    # Version info
    "__version__",
    # Inputs and results
    "ComparisonResults",
    "FieldComparison",
    "FieldOutcome",
    "FieldSummary",
    "OptimizerConfig",
    "OptimizerRunStatus",
    "OptimizerRunSummary",
    "PromptValidation",
    # Services
    "OptimizerRunStateMachine",
    "ResilientAIClient",
    "template_for",
    "validate_prompt",
]
