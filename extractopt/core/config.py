"""Configuration classes for extractopt optimizer runs

These dataclasses externalize magic numbers from the codebase to enable:
- Runtime configuration from a YAML file without code changes
- Per-template tuning of quality rules and iteration budgets
- Clear documentation of parameter meanings and defaults
"""

from dataclasses import dataclass, field, fields
from typing import Any, Optional

from extractopt.core import constants
from extractopt.core.models import RetryConfig


@dataclass
class ValidatorConfig:
    """Settings for the prompt quality rules.

    Used by PromptValidator and the resolver's genericity pre-check.

    Attributes:
        min_length: Minimum instruction length in characters. Shorter
            instructions are rejected regardless of their other elements.
        min_synonyms: Distinct quoted alternative phrases required for the
            synonyms element. Two fewer are accepted with an explicit cue
            such as "phrases like" or "variations".
        min_elements: How many of the five quality elements must be present.
        max_defects: How many defects a valid instruction may still carry.
    """

    min_length: int = constants.MIN_PROMPT_LENGTH
    min_synonyms: int = constants.MIN_SYNONYM_PHRASES
    min_elements: int = constants.MIN_PROMPT_ELEMENTS
    max_defects: int = constants.MAX_PROMPT_DEFECTS

    def __post_init__(self) -> None:
        if self.min_length < 1:
            raise ValueError("min_length must be positive")
        if self.min_synonyms < 1:
            raise ValueError("min_synonyms must be positive")
        if not 1 <= self.min_elements <= 5:
            raise ValueError("min_elements must be between 1 and 5")
        if self.max_defects < 0:
            raise ValueError("max_defects cannot be negative")


@dataclass
class SamplingConfig:
    """Settings for choosing which failing documents get diagnosed.

    Attributes:
        max_docs: Upper bound on documents sampled for the whole run.
        max_docs_per_field: Each field is covered by at most this many docs.
        perfect_accuracy: Fields at or above this accuracy are skipped.
    """

    max_docs: int = constants.MAX_SAMPLED_DOCS
    max_docs_per_field: int = constants.MAX_DOCS_PER_FIELD
    perfect_accuracy: float = constants.PERFECT_ACCURACY


@dataclass
class GenerationConfig:
    """Settings for requests sent to the generative backend.

    Attributes:
        model: Backend model identifier for instruction generation.
        diagnostics_model: Model for per-document failure theories. Defaults
            to ``model`` when unset.
        prompt_item_id: File reference attached to instruction-generation
            requests. The text-gen endpoint requires one item even when the
            request is document-independent. When unset, a blank placeholder
            file is found or uploaded in ``placeholder_folder_id``.
        placeholder_folder_id: Folder holding the blank placeholder file.
        custom_instructions: Operator-supplied text that replaces the generic
            task header of each generation request.
        document_type: Explicit document type; inferred from the template
            key when unset.
        exclusion_entity: Company the counter-party fields must never return.
            Derived from repeated wrong predictions when unset.
        api_base_url: Base URL of the backend REST API.
    """

    model: str = constants.DEFAULT_GENERATION_MODEL
    diagnostics_model: Optional[str] = None
    prompt_item_id: Optional[str] = None
    placeholder_folder_id: str = constants.PLACEHOLDER_FOLDER_ID
    custom_instructions: Optional[str] = None
    document_type: Optional[str] = None
    exclusion_entity: Optional[str] = None
    api_base_url: str = constants.DEFAULT_API_BASE_URL


@dataclass
class OptimizerConfig:
    """Top-level settings for an optimizer run.

    Attributes:
        max_iterations: Generation plus repair attempts allowed per field.
        field_concurrency: Fields optimized in parallel.
        history_limit: Rejected instructions remembered per field.
        retry: Retry policy for every backend call.
        validator: Prompt quality rules.
        sampling: Document sampling limits.
        generation: Backend request settings.
    """

    max_iterations: int = constants.DEFAULT_MAX_ITERATIONS
    field_concurrency: int = constants.DEFAULT_FIELD_CONCURRENCY
    history_limit: int = constants.DEFAULT_HISTORY_LIMIT
    retry: RetryConfig = field(
        default_factory=lambda: RetryConfig(
            max_attempts=3,
            base_delay=1.0,
            max_delay=30.0,
            attempt_timeout=constants.DEFAULT_ATTEMPT_TIMEOUT,
        )
    )
    validator: ValidatorConfig = field(default_factory=ValidatorConfig)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    generation: GenerationConfig = field(default_factory=GenerationConfig)

    def __post_init__(self) -> None:
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")
        if self.field_concurrency < 1:
            raise ValueError("field_concurrency must be at least 1")
        if self.history_limit < 1:
            raise ValueError("history_limit must be at least 1")

    @classmethod
    def from_dict(cls, data: Optional[dict[str, Any]]) -> "OptimizerConfig":
        """Build a config from a parsed YAML mapping.

        Unknown keys are rejected so typos surface instead of silently
        falling back to defaults.

        Example YAML::

            max_iterations: 3
            field_concurrency: 2
            retry:
              max_attempts: 4
              attempt_timeout: 20
            validator:
              min_synonyms: 6
            generation:
              model: azure__openai__gpt_4o_mini
              prompt_item_id: "123456"
        """
        data = dict(data or {})
        sections = {
            "validator": ValidatorConfig,
            "sampling": SamplingConfig,
            "generation": GenerationConfig,
        }
        kwargs: dict[str, Any] = {}
        for name, section_cls in sections.items():
            if name in data:
                kwargs[name] = _build_section(section_cls, data.pop(name) or {}, name)
        if "retry" in data:
            kwargs["retry"] = _build_retry(data.pop("retry") or {})
        kwargs.update(_check_keys(cls, data, "optimizer"))
        return cls(**kwargs)


def _check_keys(section_cls: type, values: dict[str, Any], section: str) -> dict[str, Any]:
    known = {f.name for f in fields(section_cls)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown {section} config keys: {', '.join(sorted(unknown))}")
    return values


def _build_section(section_cls: type, values: dict[str, Any], section: str) -> Any:
    return section_cls(**_check_keys(section_cls, values, section))


def _build_retry(values: dict[str, Any]) -> RetryConfig:
    unknown = set(values) - set(RetryConfig.model_fields)
    if unknown:
        raise ValueError(f"Unknown retry config keys: {', '.join(sorted(unknown))}")
    return RetryConfig(**{"attempt_timeout": constants.DEFAULT_ATTEMPT_TIMEOUT, **values})
