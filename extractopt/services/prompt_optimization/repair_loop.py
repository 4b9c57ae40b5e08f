"""
Repair Loop

Drives one field from its first generation request to an accepted
instruction. Rejected instructions are sent back with their defects until
the validator accepts one, the resolver falls back to a template, or the
field's iteration budget runs out.
"""

import logging
from typing import Optional

from extractopt.core.models import (
    ErrorCategory,
    FieldOutcome,
    FieldTask,
    GenerationRequestContext,
    PromptValidation,
    RepairOutcome,
)
from extractopt.services.ai_client import ResilientAIClient
from extractopt.services.error_classifier import ErrorClassifier
from extractopt.services.prompt_optimization.request_builder import RequestBuilder
from extractopt.services.prompt_optimization.resolver import ResponseResolver
from extractopt.services.prompt_optimization.templates import FallbackTemplateLibrary
from extractopt.services.prompt_optimization.validator import PromptValidator
from extractopt.services.retry_handler import RetryExhausted


logger = logging.getLogger(__name__)


class RepairLoop:
    """Bounded generate, validate, repair cycle for a single field"""

    def __init__(
        self,
        client: ResilientAIClient,
        builder: Optional[RequestBuilder] = None,
        resolver: Optional[ResponseResolver] = None,
        validator: Optional[PromptValidator] = None,
        template_library: Optional[FallbackTemplateLibrary] = None,
        error_classifier: Optional[ErrorClassifier] = None,
    ):
        self.client = client
        self.templates = template_library or FallbackTemplateLibrary()
        self.validator = validator or PromptValidator()
        self.builder = builder or RequestBuilder(self.templates, self.validator.config)
        self.resolver = resolver or ResponseResolver(self.validator, self.templates)
        self.error_classifier = error_classifier or ErrorClassifier()

    def run(self, task: FieldTask, base_context: GenerationRequestContext) -> RepairOutcome:
        """
        Optimize one field.

        Args:
            task: Field work item; its iteration count and history are updated in place
            base_context: Request context shared by every iteration of this field

        Returns:
            RepairOutcome describing how the field finished
        """
        last_instruction: Optional[str] = None
        last_validation: Optional[PromptValidation] = None

        while task.iterationsRemaining > 0:
            iteration = task.begin_iteration()
            ctx = base_context.model_copy(
                update={
                    "iteration": iteration,
                    "maxIterations": task.maxIterations,
                    "previousInstructions": list(task.previousInstructions),
                    "exclusionEntity": task.exclusionEntity,
                    "currentInstruction": task.currentInstruction,
                }
            )

            if last_instruction is None or last_validation is None:
                operation = "generate"
                request = self.builder.build_generation_request(ctx)
            else:
                operation = "repair"
                request = self.builder.build_repair_request(last_instruction, last_validation, ctx)

            try:
                raw = self.client.invoke(request, component="repair_loop", operation=f"{task.fieldKey}.{operation}")
            except RetryExhausted as e:
                logger.error(f"[repair_loop] {task.fieldKey}: backend retries exhausted on iteration {iteration}")
                return self._exhausted(
                    task,
                    last_validation,
                    error=f"Backend unavailable after retries: {e}",
                )
            except Exception as e:
                error_context = self.error_classifier.classify(e, "repair_loop", f"{task.fieldKey}.{operation}")
                logger.error(
                    f"[repair_loop] {task.fieldKey}: {error_context.category.value} error on iteration "
                    f"{iteration}: {e}"
                )
                return RepairOutcome(
                    outcome=FieldOutcome.FAILED,
                    iterations=task.iterationCount,
                    defects=list(last_validation.defects) if last_validation else [],
                    error=str(e),
                    errorCategory=error_context.category,
                )

            resolved = self.resolver.resolve(raw, task.to_field_context())
            if resolved.usedFallback:
                task.currentInstruction = resolved.instruction
                return RepairOutcome(
                    outcome=FieldOutcome.FALLBACK,
                    instruction=resolved.instruction,
                    rationale=resolved.rationale,
                    iterations=task.iterationCount,
                    usedFallback=True,
                )

            validation = self.validator.validate(resolved.instruction)
            if validation.isValid:
                logger.info(f"[repair_loop] {task.fieldKey}: instruction accepted on iteration {iteration}")
                task.currentInstruction = resolved.instruction
                return RepairOutcome(
                    outcome=FieldOutcome.SUCCESS,
                    instruction=resolved.instruction,
                    rationale=resolved.rationale,
                    iterations=task.iterationCount,
                    defects=list(validation.defects),
                )

            logger.warning(
                f"[repair_loop] {task.fieldKey}: iteration {iteration}/{task.maxIterations} rejected "
                f"({len(validation.defects)} defects): {'; '.join(validation.defects)}"
            )
            task.remember(resolved.instruction)
            last_instruction, last_validation = resolved.instruction, validation

        return self._exhausted(
            task,
            last_validation,
            error=f"Exhausted {task.maxIterations} iterations without a valid instruction",
        )

    def _exhausted(
        self,
        task: FieldTask,
        last_validation: Optional[PromptValidation],
        error: str,
    ) -> RepairOutcome:
        fallback = self.templates.render(task.to_field_context())
        task.currentInstruction = fallback
        defects = list(last_validation.defects) if last_validation else []
        rationale = "Could not improve the instruction; used fallback template."
        if defects:
            rationale += f" Last defects: {'; '.join(defects)}"
        return RepairOutcome(
            outcome=FieldOutcome.EXHAUSTED,
            instruction=fallback,
            rationale=rationale,
            iterations=task.iterationCount,
            usedFallback=True,
            defects=defects,
            error=error,
            errorCategory=ErrorCategory.EXHAUSTED,
        )
