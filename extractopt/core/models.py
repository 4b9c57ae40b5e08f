"""Core data models for extractopt"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from extractopt.core.constants import DEFAULT_HISTORY_LIMIT, DEFAULT_MAX_ITERATIONS


__all__ = [
    "ComparisonResults",
    "DocumentTheory",
    # Error Handling
    "ErrorCategory",
    "ErrorContext",
    # Field work
    "FailureExample",
    "FieldComparison",
    "FieldContext",
    "FieldFailureDetail",
    "FieldOutcome",
    "FieldSummary",
    "FieldTask",
    "GenerationRequestContext",
    # Optimizer run
    "OptimizerRun",
    "OptimizerRunStatus",
    "OptimizerRunSummary",
    "PromptValidation",
    "RepairOutcome",
    "ResolvedPrompt",
    "RetryConfig",
    "SampledDocument",
    "SamplingResult",
    "SuccessExample",
]


def _utc_now_iso() -> str:
    """Return current UTC time as ISO 8601 string"""
    return datetime.now(timezone.utc).isoformat()


# ============================================================================
# Error Handling Models
# ============================================================================


class ErrorCategory(str, Enum):
    """Failure taxonomy shared by the call layer, the resolver and the repair loop"""

    TRANSIENT_NETWORK = "transient-network"
    TRANSIENT_SERVER = "transient-server"  # 5xx
    TIMEOUT = "timeout"
    AUTHENTICATION = "authentication"  # 401, missing token
    PERMISSION = "permission"  # 403
    NOT_FOUND = "not-found"  # 404
    RATE_LIMIT = "rate-limit"  # 429
    MALFORMED_REQUEST = "malformed-request"  # other 4xx
    CONTENT_TOO_LARGE = "content-too-large"  # 413
    PARSE_FAILURE = "parse-failure"
    VALIDATION_FAILURE = "validation-failure"
    EXHAUSTED = "exhausted"


DEFAULT_RETRYABLE_CATEGORIES: frozenset[ErrorCategory] = frozenset(
    {
        ErrorCategory.TRANSIENT_NETWORK,
        ErrorCategory.TRANSIENT_SERVER,
        ErrorCategory.TIMEOUT,
        ErrorCategory.RATE_LIMIT,
    }
)


class ErrorContext(BaseModel):
    """Context information for an error"""

    category: ErrorCategory
    component: str  # Which component failed
    operation: str  # What operation failed
    errorMessage: str
    statusCode: Optional[int] = None
    stackTrace: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None
    timestamp: str = Field(default_factory=_utc_now_iso)
    retryable: bool


class RetryConfig(BaseModel):
    """Configuration for retry behavior"""

    model_config = ConfigDict(frozen=True)

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 30.0  # seconds
    exponential_base: float = 2.0
    jitter: bool = True
    attempt_timeout: Optional[float] = None  # seconds, per attempt
    retryable_categories: frozenset[ErrorCategory] = DEFAULT_RETRYABLE_CATEGORIES

    @field_validator("max_attempts")
    @classmethod
    def validate_max_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_attempts must be at least 1")
        return v

    @field_validator("base_delay", "max_delay")
    @classmethod
    def validate_delays(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Delay must be positive")
        return v

    @field_validator("exponential_base")
    @classmethod
    def validate_exponential_base(cls, v: float) -> float:
        if v < 1.0:
            raise ValueError("exponential_base must be >= 1.0")
        return v

    @field_validator("attempt_timeout")
    @classmethod
    def validate_attempt_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("attempt_timeout must be positive")
        return v

    @model_validator(mode="after")
    def validate_delay_bounds(self) -> RetryConfig:
        if self.base_delay > self.max_delay:
            raise ValueError("base_delay cannot exceed max_delay")
        return self


# ============================================================================
# Comparison Input
# ============================================================================


class FailureExample(BaseModel):
    """A document where the extracted value disagreed with ground truth"""

    model_config = ConfigDict(frozen=True)

    docId: str
    docName: Optional[str] = None
    predicted: str
    expected: str


class SuccessExample(BaseModel):
    """A document where the extracted value matched ground truth"""

    model_config = ConfigDict(frozen=True)

    docId: str
    docName: Optional[str] = None
    value: str


class FieldComparison(BaseModel):
    """Per-field comparison metrics handed over by the comparison engine"""

    fieldKey: str
    fieldName: str
    fieldType: str = "string"
    currentPrompt: Optional[str] = None
    promptHistory: list[str] = Field(default_factory=list)
    options: list[str] = Field(default_factory=list)
    accuracy: float = 0.0
    failures: list[FailureExample] = Field(default_factory=list)
    successes: list[SuccessExample] = Field(default_factory=list)

    @field_validator("accuracy")
    @classmethod
    def validate_accuracy(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("accuracy must be between 0.0 and 1.0")
        return v


class ComparisonResults(BaseModel):
    """Comparison results for one extraction template"""

    templateKey: Optional[str] = None
    documentType: Optional[str] = None
    fields: list[FieldComparison] = Field(default_factory=list)
    documentNames: dict[str, str] = Field(default_factory=dict)

    def get_field(self, field_key: str) -> Optional[FieldComparison]:
        for field in self.fields:
            if field.fieldKey == field_key:
                return field
        return None


# ============================================================================
# Sampling & Diagnostics
# ============================================================================


class FieldFailureDetail(BaseModel):
    """One failing (document, field) pair in the failure map"""

    model_config = ConfigDict(frozen=True)

    fieldKey: str
    fieldName: str
    groundTruth: str
    extractedValue: str


class SampledDocument(BaseModel):
    docId: str
    docName: str
    failingFieldKeys: list[str] = Field(default_factory=list)


class SamplingResult(BaseModel):
    """Documents chosen for diagnosis plus the fields they cover"""

    sampledDocs: list[SampledDocument] = Field(default_factory=list)
    fieldFailures: dict[str, list[str]] = Field(default_factory=dict)  # fieldKey -> docIds
    docFailures: dict[str, list[FieldFailureDetail]] = Field(default_factory=dict)  # docId -> details

    @property
    def isEmpty(self) -> bool:
        return not self.fieldFailures


class DocumentTheory(BaseModel):
    """Why the model got a sampled document wrong, per field"""

    docId: str
    docName: str
    theories: dict[str, str] = Field(default_factory=dict)  # fieldKey -> theory
    error: Optional[str] = None


# ============================================================================
# Field Work
# ============================================================================


class FieldContext(BaseModel):
    """The subset of a field the template library and resolver need"""

    model_config = ConfigDict(frozen=True)

    fieldKey: str
    fieldName: str
    fieldType: str = "string"
    options: tuple[str, ...] = ()
    exclusionEntity: Optional[str] = None


class FieldTask(BaseModel):
    """Mutable per-field work item owned by a single worker"""

    fieldKey: str
    fieldName: str
    fieldType: str = "string"
    currentInstruction: Optional[str] = None
    previousInstructions: list[str] = Field(default_factory=list)
    iterationCount: int = 0
    maxIterations: int = DEFAULT_MAX_ITERATIONS
    historyLimit: int = DEFAULT_HISTORY_LIMIT
    options: list[str] = Field(default_factory=list)
    exclusionEntity: Optional[str] = None
    accuracyBefore: float = 0.0
    failures: list[FailureExample] = Field(default_factory=list)
    successes: list[SuccessExample] = Field(default_factory=list)
    sampledDocIds: list[str] = Field(default_factory=list)

    @field_validator("maxIterations", "historyLimit")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @property
    def iterationsRemaining(self) -> int:
        return self.maxIterations - self.iterationCount

    def begin_iteration(self) -> int:
        """Consume one unit of the iteration budget and return the 1-indexed iteration"""
        from extractopt.core.exceptions import IterationBudgetExceeded

        if self.iterationCount >= self.maxIterations:
            raise IterationBudgetExceeded(
                f"Field {self.fieldKey} already used {self.iterationCount}/{self.maxIterations} iterations"
            )
        self.iterationCount += 1
        return self.iterationCount

    def remember(self, instruction: str) -> None:
        """Record a rejected instruction, most recent last, deduplicated and bounded"""
        text = instruction.strip()
        if not text:
            return
        self.previousInstructions = [p for p in self.previousInstructions if p != text]
        self.previousInstructions.append(text)
        if len(self.previousInstructions) > self.historyLimit:
            self.previousInstructions = self.previousInstructions[-self.historyLimit :]

    def set_exclusion_entity(self, entity: Optional[str]) -> Optional[str]:
        """Set the exclusion hint once; later calls keep the first value"""
        if self.exclusionEntity is None and entity:
            self.exclusionEntity = entity
        return self.exclusionEntity

    def to_field_context(self) -> FieldContext:
        return FieldContext(
            fieldKey=self.fieldKey,
            fieldName=self.fieldName,
            fieldType=self.fieldType,
            options=tuple(self.options),
            exclusionEntity=self.exclusionEntity,
        )


class GenerationRequestContext(BaseModel):
    """Everything the request builder needs for one generation request"""

    fieldKey: str
    fieldName: str
    fieldType: str = "string"
    currentInstruction: Optional[str] = None
    failures: list[FailureExample] = Field(default_factory=list)
    successes: list[SuccessExample] = Field(default_factory=list)
    options: list[str] = Field(default_factory=list)
    documentType: Optional[str] = None
    exclusionEntity: Optional[str] = None
    iteration: int = 1
    maxIterations: int = DEFAULT_MAX_ITERATIONS
    previousInstructions: list[str] = Field(default_factory=list)
    theories: list[str] = Field(default_factory=list)
    customInstructions: Optional[str] = None


class PromptValidation(BaseModel):
    """Result of checking an instruction against the quality rules"""

    isValid: bool
    defects: list[str] = Field(default_factory=list)
    charCount: int
    meetsMinLength: bool
    isGeneric: bool
    hasLocation: bool
    hasSynonyms: bool
    hasFormat: bool
    hasDisambiguation: bool
    hasNotFound: bool
    synonymCount: int = 0

    @property
    def elementCount(self) -> int:
        return sum(
            [
                self.hasLocation,
                self.hasSynonyms,
                self.hasFormat,
                self.hasDisambiguation,
                self.hasNotFound,
            ]
        )


class ResolvedPrompt(BaseModel):
    """Instruction recovered from a raw generation response"""

    instruction: str
    rationale: str
    usedFallback: bool = False
    fallbackReason: Optional[str] = None
    strategy: str = "json"  # json | regex | loose | fallback


class FieldOutcome(str, Enum):
    SUCCESS = "success"  # Validator accepted a generated instruction
    FALLBACK = "fallback"  # Resolver substituted a fallback template
    EXHAUSTED = "exhausted"  # Budget spent, fallback template substituted
    FAILED = "failed"  # Non-retryable error, no instruction


class RepairOutcome(BaseModel):
    """Result of driving one field through the repair loop"""

    outcome: FieldOutcome
    instruction: Optional[str] = None
    rationale: Optional[str] = None
    iterations: int = 0
    usedFallback: bool = False
    defects: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    errorCategory: Optional[ErrorCategory] = None


class FieldSummary(BaseModel):
    """Per-field result shown to the operator at review time"""

    fieldKey: str
    fieldName: str
    accuracyBefore: float = 0.0
    sampledDocIds: list[str] = Field(default_factory=list)
    newPrompt: Optional[str] = None
    promptTheory: Optional[str] = None
    outcome: FieldOutcome
    iterations: int = 0
    usedFallback: bool = False
    defects: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    errorCategory: Optional[ErrorCategory] = None

    @classmethod
    def from_outcome(cls, task: FieldTask, outcome: RepairOutcome) -> FieldSummary:
        return cls(
            fieldKey=task.fieldKey,
            fieldName=task.fieldName,
            accuracyBefore=task.accuracyBefore,
            sampledDocIds=list(task.sampledDocIds),
            newPrompt=outcome.instruction,
            promptTheory=outcome.rationale,
            outcome=outcome.outcome,
            iterations=outcome.iterations,
            usedFallback=outcome.usedFallback,
            defects=list(outcome.defects),
            error=outcome.error,
            errorCategory=outcome.errorCategory,
        )


# ============================================================================
# Optimizer Run
# ============================================================================


class OptimizerRunStatus(str, Enum):
    IDLE = "idle"
    PRECHECK = "precheck"
    SAMPLING = "sampling"
    DIAGNOSTICS = "diagnostics"
    PROMPTING = "prompting"
    REVIEW = "review"
    ERROR = "error"


class OptimizerRunSummary(BaseModel):
    """Review-stage output of a run"""

    runId: str
    sampledDocs: list[DocumentTheory] = Field(default_factory=list)
    fieldSummaries: list[FieldSummary] = Field(default_factory=list)
    startedAt: str
    completedAt: Optional[str] = None
    skippedReason: Optional[str] = None


class OptimizerRun(BaseModel):
    """Live state of one optimizer run"""

    runId: str = Field(default_factory=lambda: str(uuid.uuid4()))
    status: OptimizerRunStatus = OptimizerRunStatus.IDLE
    stepIndex: int = 0
    startedAt: Optional[str] = None
    completedAt: Optional[str] = None
    errorMessage: Optional[str] = None
    cancelled: bool = False
    skippedReason: Optional[str] = None
    sampledDocs: list[DocumentTheory] = Field(default_factory=list)
    fieldSummaries: list[FieldSummary] = Field(default_factory=list)

    def to_summary(self) -> OptimizerRunSummary:
        return OptimizerRunSummary(
            runId=self.runId,
            sampledDocs=list(self.sampledDocs),
            fieldSummaries=list(self.fieldSummaries),
            startedAt=self.startedAt or _utc_now_iso(),
            completedAt=self.completedAt,
            skippedReason=self.skippedReason,
        )
