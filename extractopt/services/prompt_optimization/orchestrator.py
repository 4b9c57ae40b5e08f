"""
Optimizer Run State Machine

Coordinates one optimizer run end to end:
1. Precheck comparison results and template selection
2. Sample failing documents
3. Generate per-document failure theories
4. Optimize every failing field through the repair loop, in parallel
5. Aggregate field summaries for review
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timezone
from typing import Optional

from extractopt.core.config import OptimizerConfig
from extractopt.core.exceptions import InvalidTransitionError, OptimizerCancelled, OptimizerPrecheckError
from extractopt.core.models import (
    ComparisonResults,
    FieldComparison,
    FieldOutcome,
    FieldSummary,
    FieldTask,
    GenerationRequestContext,
    OptimizerRun,
    OptimizerRunStatus,
    OptimizerRunSummary,
    SamplingResult,
)
from extractopt.services.ai_client import ResilientAIClient
from extractopt.services.error_classifier import ErrorClassifier
from extractopt.services.prompt_optimization.diagnostics import DiagnosticsService
from extractopt.services.prompt_optimization.repair_loop import RepairLoop
from extractopt.services.prompt_optimization.request_builder import (
    RequestBuilder,
    detect_exclusion_entity,
    infer_document_type,
)
from extractopt.services.prompt_optimization.resolver import ResponseResolver
from extractopt.services.prompt_optimization.sampling import failing_fields, select_docs_for_optimizer
from extractopt.services.prompt_optimization.templates import FallbackTemplateLibrary, is_counter_party_field
from extractopt.services.prompt_optimization.validator import PromptValidator


logger = logging.getLogger(__name__)

Status = OptimizerRunStatus

ALLOWED_TRANSITIONS: dict[OptimizerRunStatus, frozenset[OptimizerRunStatus]] = {
    Status.IDLE: frozenset({Status.PRECHECK}),
    Status.PRECHECK: frozenset({Status.SAMPLING, Status.ERROR}),
    Status.SAMPLING: frozenset({Status.DIAGNOSTICS, Status.REVIEW, Status.ERROR}),
    Status.DIAGNOSTICS: frozenset({Status.PROMPTING, Status.ERROR}),
    Status.PROMPTING: frozenset({Status.REVIEW, Status.ERROR}),
    Status.REVIEW: frozenset({Status.IDLE}),
    Status.ERROR: frozenset({Status.IDLE}),
}

STEP_LABELS = ("Comparison", "Sampling", "Diagnostics", "Prompting", "Review")

STEP_INDEX: dict[OptimizerRunStatus, int] = {
    Status.IDLE: 0,
    Status.PRECHECK: 0,
    Status.SAMPLING: 1,
    Status.DIAGNOSTICS: 2,
    Status.PROMPTING: 3,
    Status.REVIEW: 4,
}

ProgressCallback = Callable[[OptimizerRun], None]


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class OptimizerRunStateMachine:
    """
    Drives an optimizer run through its states.

    States: idle -> precheck -> sampling -> diagnostics -> prompting -> review,
    with error reachable from every non-terminal state. Review and error return
    to idle through acknowledge(). Per-field failures are recorded on the field
    summaries and never abort the run.
    """

    def __init__(
        self,
        client: ResilientAIClient,
        config: Optional[OptimizerConfig] = None,
        repair_loop: Optional[RepairLoop] = None,
        diagnostics: Optional[DiagnosticsService] = None,
        on_progress: Optional[ProgressCallback] = None,
    ):
        """
        Initialize the state machine.

        Args:
            client: Resilient client shared by diagnostics and prompting
            config: Run configuration
            repair_loop: Optional pre-built repair loop
            diagnostics: Optional pre-built diagnostics service
            on_progress: Called with the run after every state change and finished field
        """
        self.config = config or OptimizerConfig()
        self.client = client

        validator = PromptValidator(self.config.validator)
        templates = FallbackTemplateLibrary()
        self.repair_loop = repair_loop or RepairLoop(
            client,
            builder=RequestBuilder(templates, self.config.validator),
            resolver=ResponseResolver(validator, templates),
            validator=validator,
            template_library=templates,
        )
        self.diagnostics = diagnostics or DiagnosticsService(
            client,
            model=self.config.generation.diagnostics_model or self.config.generation.model,
            concurrency=self.config.field_concurrency,
            retry_config=self.config.retry,
        )
        self.error_classifier = ErrorClassifier()
        self.on_progress = on_progress

        self._run = OptimizerRun()
        self._lock = threading.Lock()
        self._cancel_event = threading.Event()
        self._field_order: list[str] = []

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def run_state(self) -> OptimizerRun:
        return self._run

    @property
    def status(self) -> OptimizerRunStatus:
        return self._run.status

    def cancel(self) -> None:
        """Request cancellation; honoured at the next field boundary."""
        logger.info(f"Cancellation requested for optimizer run {self._run.runId}")
        self._cancel_event.set()

    def acknowledge(self) -> None:
        """Return a finished run (review or error) to idle."""
        self._transition(Status.IDLE)
        self._run = OptimizerRun()
        self._field_order = []
        self._cancel_event.clear()

    def _transition(self, target: OptimizerRunStatus) -> None:
        with self._lock:
            current = self._run.status
            if target not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(current.value, target.value)
            self._run.status = target
            if target in STEP_INDEX:
                self._run.stepIndex = STEP_INDEX[target]
        logger.info(f"Optimizer run {self._run.runId}: {current.value} -> {target.value}")
        self._notify()

    def _notify(self) -> None:
        if self.on_progress is not None:
            self.on_progress(self._run)

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise OptimizerCancelled("Optimizer run cancelled by operator")

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    def run(self, comparison: Optional[ComparisonResults]) -> OptimizerRunSummary:
        """
        Execute a full run.

        Args:
            comparison: Results of the latest comparison, or None when none exist

        Returns:
            Summary of the run; on error it carries whatever finished before the failure

        Raises:
            InvalidTransitionError: A previous run has not been acknowledged
        """
        if self._run.status != Status.IDLE:
            raise InvalidTransitionError(self._run.status.value, Status.PRECHECK.value)

        self._run.startedAt = _utc_now_iso()

        try:
            self._transition(Status.PRECHECK)
            comparison = self._precheck(comparison)
            self._check_cancelled()

            self._transition(Status.SAMPLING)
            sampling = select_docs_for_optimizer(comparison, self.config.sampling)
            if sampling.isEmpty:
                self._run.skippedReason = "No failing fields to optimize"
                logger.info(f"Optimizer run {self._run.runId} skipped: no failing fields")
                self._finish()
                return self._run.to_summary()
            self._check_cancelled()

            self._transition(Status.DIAGNOSTICS)
            self._run.sampledDocs = self.diagnostics.diagnose(sampling)
            self._check_cancelled()

            self._transition(Status.PROMPTING)
            self._run_prompting(comparison, sampling)
            self._check_cancelled()

            self._finish()
        except OptimizerCancelled as e:
            self._run.cancelled = True
            self._fail(str(e))
        except OptimizerPrecheckError as e:
            self._fail(str(e))
        except Exception as e:
            logger.exception(f"Optimizer run {self._run.runId} failed")
            self._fail(str(e) or type(e).__name__)

        return self._run.to_summary()

    def _precheck(self, comparison: Optional[ComparisonResults]) -> ComparisonResults:
        if comparison is None or not comparison.fields:
            raise OptimizerPrecheckError("Run a comparison before starting the optimizer")
        if not comparison.templateKey:
            raise OptimizerPrecheckError("Select an extraction template before starting the optimizer")
        return comparison

    def _finish(self) -> None:
        self._run.completedAt = _utc_now_iso()
        self._transition(Status.REVIEW)

    def _fail(self, message: str) -> None:
        logger.error(f"Optimizer run {self._run.runId} moved to error: {message}")
        self._run.errorMessage = message
        self._run.completedAt = _utc_now_iso()
        self._sort_summaries()
        self._transition(Status.ERROR)

    # ------------------------------------------------------------------
    # Prompting
    # ------------------------------------------------------------------

    def _run_prompting(self, comparison: ComparisonResults, sampling: SamplingResult) -> None:
        document_type = (
            self.config.generation.document_type
            or comparison.documentType
            or infer_document_type(comparison.templateKey)
        )
        fields = failing_fields(comparison, self.config.sampling)
        self._field_order = [field.fieldKey for field in fields]
        tasks = [self._build_task(field, sampling) for field in fields]

        with ThreadPoolExecutor(
            max_workers=self.config.field_concurrency, thread_name_prefix="extractopt-field"
        ) as executor:
            future_to_task = {
                executor.submit(self._optimize_field, task, document_type): task
                for task in tasks
            }

            for future in as_completed(future_to_task):
                task = future_to_task[future]
                try:
                    summary = future.result()
                except Exception as e:
                    logger.exception(f"Unexpected error optimizing field {task.fieldKey}")
                    summary = FieldSummary(
                        fieldKey=task.fieldKey,
                        fieldName=task.fieldName,
                        accuracyBefore=task.accuracyBefore,
                        sampledDocIds=list(task.sampledDocIds),
                        outcome=FieldOutcome.FAILED,
                        iterations=task.iterationCount,
                        error=str(e),
                        errorCategory=self.error_classifier.categorize(e),
                    )
                if summary is None:
                    continue
                with self._lock:
                    self._run.fieldSummaries.append(summary)
                self._notify()

        self._sort_summaries()

    def _build_task(self, field: FieldComparison, sampling: SamplingResult) -> FieldTask:
        task = FieldTask(
            fieldKey=field.fieldKey,
            fieldName=field.fieldName,
            fieldType=field.fieldType,
            currentInstruction=field.currentPrompt,
            maxIterations=self.config.max_iterations,
            historyLimit=self.config.history_limit,
            options=list(field.options),
            accuracyBefore=field.accuracy,
            failures=list(field.failures),
            successes=list(field.successes),
            sampledDocIds=list(sampling.fieldFailures.get(field.fieldKey, [])),
        )
        for previous in field.promptHistory:
            task.remember(previous)

        if is_counter_party_field(field.fieldName):
            task.set_exclusion_entity(
                self.config.generation.exclusion_entity or detect_exclusion_entity(field.failures)
            )
        return task

    def _optimize_field(self, task: FieldTask, document_type: Optional[str]) -> Optional[FieldSummary]:
        # Field boundary: fields not yet started are dropped on cancellation
        if self._cancel_event.is_set():
            logger.info(f"Skipping field {task.fieldKey}: run cancelled")
            return None

        sampled = set(task.sampledDocIds)
        failures = sorted(task.failures, key=lambda f: f.docId not in sampled)
        context = GenerationRequestContext(
            fieldKey=task.fieldKey,
            fieldName=task.fieldName,
            fieldType=task.fieldType,
            currentInstruction=task.currentInstruction,
            failures=failures,
            successes=task.successes,
            options=task.options,
            documentType=document_type,
            exclusionEntity=task.exclusionEntity,
            maxIterations=task.maxIterations,
            theories=self._theories_for(task.fieldKey),
            customInstructions=self.config.generation.custom_instructions,
        )

        logger.info(f"Optimizing field {task.fieldKey} (accuracy {task.accuracyBefore:.1%})")
        outcome = self.repair_loop.run(task, context)
        logger.info(f"Field {task.fieldKey} finished: {outcome.outcome.value} after {outcome.iterations} iterations")
        return FieldSummary.from_outcome(task, outcome)

    def _theories_for(self, field_key: str) -> list[str]:
        return [
            f"{doc.docName}: {doc.theories[field_key]}"
            for doc in self._run.sampledDocs
            if field_key in doc.theories
        ]

    def _sort_summaries(self) -> None:
        position = {key: i for i, key in enumerate(self._field_order)}
        with self._lock:
            self._run.fieldSummaries.sort(key=lambda s: position.get(s.fieldKey, len(position)))

