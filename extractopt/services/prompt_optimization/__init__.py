"""Field instruction optimization: validation, templates, requests, resolution and the run state machine."""

from extractopt.services.prompt_optimization.diagnostics import DiagnosticsService
from extractopt.services.prompt_optimization.orchestrator import OptimizerRunStateMachine
from extractopt.services.prompt_optimization.repair_loop import RepairLoop
from extractopt.services.prompt_optimization.request_builder import RequestBuilder
from extractopt.services.prompt_optimization.resolver import ResponseResolver
from extractopt.services.prompt_optimization.sampling import select_docs_for_optimizer
from extractopt.services.prompt_optimization.templates import FallbackTemplateLibrary, template_for
from extractopt.services.prompt_optimization.validator import PromptValidator, validate_prompt

__all__ = [
    "DiagnosticsService",
    "FallbackTemplateLibrary",
    "OptimizerRunStateMachine",
    "PromptValidator",
    "RepairLoop",
    "RequestBuilder",
    "ResponseResolver",
    "select_docs_for_optimizer",
    "template_for",
    "validate_prompt",
]
