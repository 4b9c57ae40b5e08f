"""Builds generation and repair requests for the instruction-writing model."""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Callable, Sequence
from typing import Optional

from extractopt.core import constants
from extractopt.core.config import ValidatorConfig
from extractopt.core.models import (
    FailureExample,
    FieldContext,
    GenerationRequestContext,
    PromptValidation,
)
from extractopt.services.prompt_optimization.templates import (
    ENUM_TYPES,
    FallbackTemplateLibrary,
    is_counter_party_field,
)
from extractopt.services.prompt_optimization.validator import quoted_phrases


logger = logging.getLogger(__name__)

COMPANY_SUFFIX_PATTERN = re.compile(r"\b(Inc\.?|LLC|Corp\.?|Co\.?|Ltd\.?|Limited|Corporation)(?=\W|$)")

# Order matters: "master" must win over the generic "contract"
DOCUMENT_TYPE_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("nda", "confidential", "non-disclosure"), "Non-Disclosure Agreement (NDA)"),
    (("msa", "master"), "Master Services Agreement (MSA)"),
    (("sow", "statement"), "Statement of Work (SOW)"),
    (("lease", "rental"), "Lease Agreement"),
    (("amendment",), "Contract Amendment"),
    (("invoice",), "Invoice"),
    (("contract", "agreement"), "Contract"),
)

JSON_CONTRACT = '{"newPrompt": "<the complete new instruction>", "reasoning": "<one or two sentences>"}'


def truncate(text: Optional[str], limit: int) -> str:
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit] + "..."


def infer_document_type(template_key: Optional[str]) -> Optional[str]:
    """Guess the document type from a template name such as ``nda_template_v2``."""
    if not template_key:
        return None
    key = template_key.lower()
    for keywords, document_type in DOCUMENT_TYPE_KEYWORDS:
        if any(k in key for k in keywords):
            return document_type
    return None


def detect_exclusion_entity(failures: Sequence[FailureExample]) -> Optional[str]:
    """Find the company a counter-party field keeps returning by mistake.

    The most common wrong prediction wins when it appears at least twice.
    Otherwise a lone prediction is used only when it looks like a company name.
    """
    candidates = [
        f.predicted.strip()
        for f in failures
        if f.predicted
        and f.predicted.strip() != constants.NOT_PRESENT
        and len(f.predicted.strip()) >= constants.MIN_EXCLUSION_VALUE_CHARS
    ]
    if not candidates:
        return None

    value, count = Counter(candidates).most_common(1)[0]
    if count >= constants.MIN_EXCLUSION_REPEATS:
        return value

    first = candidates[0]
    if COMPANY_SUFFIX_PATTERN.search(first):
        return first
    return None


# ============================================================================
# Field guidance
# ============================================================================


def _is_amount(name: str, _type: str) -> bool:
    return any(k in name for k in ("amount", "total", "price", "cost")) and "tax" not in name


FIELD_GUIDANCE: tuple[tuple[Callable[[str, str], bool], str], ...] = (
    (
        lambda name, _type: is_counter_party_field(name),
        "The counter party is the OTHER party to the agreement, never the company running the extraction. "
        "In an agreement between Company A and Company B where Company A extracts, Company B is the counter party.",
    ),
    (
        lambda name, _type: "end date" in name,
        "End dates are often not stated outright. The instruction should tell the model to calculate "
        "Effective Date + Term when only a duration is given.",
    ),
    (
        lambda name, _type: "termination" in name and "convenience" in name,
        "Termination for convenience needs no reason or breach. It is different from termination for cause, "
        "which requires a default.",
    ),
    (
        lambda name, _type: "renewal" in name,
        "Distinguish automatic renewal, renewal that requires action, evergreen terms and no renewal. "
        "Contrast wording such as automatically renew, may renew and shall not renew.",
    ),
    (
        lambda name, _type: "vendor" in name or "supplier" in name,
        "On invoices the vendor SENDS the invoice. Point the model at the header, logo, From and Remit To areas, "
        "and away from the Bill To customer.",
    ),
    (
        lambda name, _type: "sales tax" in name or "tax amount" in name,
        "Sales tax is a currency amount shown near the subtotal, not a percentage. Keep the cents.",
    ),
    (
        _is_amount,
        "Numbers must keep their exact cents and must not be rounded: $1,234.99 becomes 1234.99.",
    ),
    (
        lambda name, _type: "freight" in name or "shipping" in name,
        "Freight shown as $0.00, Included or Prepaid should come back as 0, not as Not Present.",
    ),
    (
        lambda name, _type: "po number" in name or "purchase order" in name,
        "PO numbers are customer references and are distinct from invoice numbers, which often start with INV.",
    ),
    (
        lambda name, _type: "term" in name and "termination" not in name,
        "Payment terms use a standard form such as NET 30 or Due on Receipt, without extra words like DAYS.",
    ),
    (
        lambda name, _type: any(k in name for k in ("description", "memo", "subject")),
        "The description should capture the purpose of the transaction, not the word INVOICE or the title.",
    ),
    (
        lambda name, field_type: "item" in name and ("line" in name or field_type == "multiselect"),
        "Line items are the rows of the main invoice table. Headers, subtotals and tax rows are not items.",
    ),
)


def field_guidance(field_name: str, field_type: str) -> Optional[str]:
    name = (field_name or "").lower()
    type_key = (field_type or "").lower()
    for predicate, guidance in FIELD_GUIDANCE:
        if predicate(name, type_key):
            return guidance
    return None


# ============================================================================
# Builder
# ============================================================================


class RequestBuilder:
    """Turns field context into requests for the instruction-writing model."""

    def __init__(
        self,
        template_library: Optional[FallbackTemplateLibrary] = None,
        validator_config: Optional[ValidatorConfig] = None,
    ) -> None:
        self.templates = template_library or FallbackTemplateLibrary()
        self.validator_config = validator_config or ValidatorConfig()

    def build_generation_request(self, ctx: GenerationRequestContext) -> str:
        """Build the first-attempt request for a field."""
        sections: list[str] = []

        if ctx.documentType:
            sections.append(
                f"## DOCUMENT TYPE\nThese are {ctx.documentType} documents. Use locations and wording that are "
                f"typical for {ctx.documentType} documents."
            )

        if ctx.customInstructions:
            sections.append(f"## TASK\n{ctx.customInstructions.strip()}")
        else:
            example = self.templates.render(self._field_context(ctx))
            sections.append(
                f'## TASK\nWrite a better extraction instruction for the field "{ctx.fieldName}" '
                f"(type: {ctx.fieldType}). An AI model will follow your instruction to pull this value "
                "out of each document."
            )
            sections.append(
                "## EXAMPLE OF A GOOD INSTRUCTION (style reference only, adapt it to this field)\n" + example
            )

        sections.append(f"## CURRENT INSTRUCTION\n{ctx.currentInstruction or f'Extract the {ctx.fieldName}'}")

        if ctx.failures:
            lines = [
                f"{i}. Document: {f.docName or f.docId} | Extracted: \"{truncate(f.predicted, constants.FAILURE_VALUE_TRUNCATE)}\""
                f" | Expected: \"{truncate(f.expected, constants.FAILURE_VALUE_TRUNCATE)}\""
                for i, f in enumerate(ctx.failures[: constants.MAX_FAILURE_EXAMPLES], start=1)
            ]
            sections.append("## FAILURES TO FIX\n" + "\n".join(lines))

        if ctx.theories:
            sections.append("## WHY THE MODEL FAILED\n" + "\n".join(f"- {t}" for t in ctx.theories))

        if ctx.successes:
            lines = [
                f"- \"{truncate(s.value, constants.SUCCESS_VALUE_TRUNCATE)}\""
                for s in ctx.successes[: constants.MAX_SUCCESS_EXAMPLES]
            ]
            sections.append("## SUCCESSES (keep these working)\n" + "\n".join(lines))

        if ctx.fieldType.lower() in ENUM_TYPES and ctx.options:
            sample = ", ".join(ctx.options[: constants.MAX_ENUM_SAMPLE_OPTIONS])
            more = ", ..." if len(ctx.options) > constants.MAX_ENUM_SAMPLE_OPTIONS else ""
            sections.append(
                f"## ALLOWED VALUES\nOptions include: {sample}{more}\n"
                "The instruction must tell the model to return only one of the allowed option values."
            )

        if ctx.exclusionEntity and is_counter_party_field(ctx.fieldName):
            sections.append(
                "## CRITICAL: COMPANY TO EXCLUDE\n"
                f'"{ctx.exclusionEntity}" is our own company and appears in every document. The counter party '
                f'is the OTHER party. The new instruction must explicitly say: Do NOT return "{ctx.exclusionEntity}".'
            )

        if ctx.iteration > 1 and ctx.previousInstructions:
            recent = ctx.previousInstructions[-constants.MAX_PREVIOUS_INSTRUCTIONS :]
            lines = [
                f"{i}. {truncate(p, constants.PREVIOUS_INSTRUCTION_TRUNCATE)}" for i, p in enumerate(recent, start=1)
            ]
            sections.append("## PREVIOUS ATTEMPTS THAT FAILED (do not repeat them)\n" + "\n".join(lines))

        guidance = field_guidance(ctx.fieldName, ctx.fieldType)
        if guidance:
            sections.append(f"## FIELD-SPECIFIC GUIDANCE\n{guidance}")

        if ctx.iteration >= constants.URGENCY_ITERATION:
            sections.append(
                f"## URGENCY\nThis is attempt {ctx.iteration} of {ctx.maxIterations}. Earlier attempts did not fix "
                "the failures. Take a substantially different approach."
            )

        sections.append(self._requirements())
        sections.append(self._output_contract())
        return "\n\n".join(sections)

    def build_repair_request(
        self,
        instruction: str,
        validation: PromptValidation,
        ctx: GenerationRequestContext,
    ) -> str:
        """Ask the model to fix a rejected instruction, naming each defect."""
        cfg = self.validator_config
        sections = [
            "The extraction instruction below was rejected by the quality checks. Rewrite it so every issue "
            "is fixed while keeping what already works.",
            f"## REJECTED INSTRUCTION\n{instruction}",
        ]

        if validation.defects:
            issues = "\n".join(f"{i}. {d}" for i, d in enumerate(validation.defects, start=1))
            sections.append(f"## ISSUES\n{issues}")

        fixes: list[str] = []
        if not validation.hasSynonyms:
            examples = ", ".join(
                f'"{p}"' for p in quoted_phrases(self.templates.render(self._field_context(ctx)))[: cfg.min_synonyms]
            )
            fixes.append(
                f"- SYNONYMS: need {cfg.min_synonyms} distinct quoted phrases, currently have "
                f"{validation.synonymCount}. Put each alternative phrase IN QUOTES, for example: {examples}"
            )
        if not validation.meetsMinLength:
            fixes.append(f"- LENGTH: at least {cfg.min_length} characters, currently {validation.charCount}")
        if not validation.hasLocation:
            fixes.append("- LOCATION: add 'Look in (1) ..., (2) ..., (3) ...' naming concrete sections")
        if not validation.hasFormat:
            fixes.append("- FORMAT: state the exact output format, e.g. 'Return the date in YYYY-MM-DD format'")
        if not validation.hasDisambiguation:
            fixes.append("- DISAMBIGUATION: add a 'Do NOT return ...' sentence for the most likely wrong value")
        if not validation.hasNotFound:
            fixes.append(f"- NOT-FOUND: end with 'If ... is not found, return \"{constants.NOT_PRESENT}\"'")
        if validation.isGeneric:
            fixes.append("- SPECIFICITY: replace the bare 'Extract the ...' line with concrete guidance")
        if fixes:
            sections.append("## REQUIRED FIXES\n" + "\n".join(fixes))

        field_lines = [f"Name: {ctx.fieldName}", f"Type: {ctx.fieldType}"]
        if ctx.options:
            field_lines.append(f"Options: {', '.join(ctx.options[: constants.MAX_ENUM_SAMPLE_OPTIONS])}"
                               f"{', ...' if len(ctx.options) > constants.MAX_ENUM_SAMPLE_OPTIONS else ''}")
        if ctx.exclusionEntity and is_counter_party_field(ctx.fieldName):
            field_lines.append(f'Must exclude: Do NOT return "{ctx.exclusionEntity}"')
        sections.append("## FIELD\n" + "\n".join(field_lines))

        sections.append(self._output_contract())
        return "\n\n".join(sections)

    def _field_context(self, ctx: GenerationRequestContext) -> FieldContext:
        return FieldContext(
            fieldKey=ctx.fieldKey,
            fieldName=ctx.fieldName,
            fieldType=ctx.fieldType,
            options=tuple(ctx.options),
            exclusionEntity=ctx.exclusionEntity,
        )

    def _requirements(self) -> str:
        cfg = self.validator_config
        return (
            "## REQUIREMENTS\nThe new instruction must:\n"
            f"1. Be at least {cfg.min_length} characters long\n"
            "2. Say WHERE to look (LOCATION), naming concrete sections\n"
            f"3. List {cfg.min_synonyms}+ alternative phrases IN QUOTES (SYNONYMS)\n"
            "4. State the exact output FORMAT\n"
            "5. Say what NOT to return (DISAMBIGUATION)\n"
            f'6. Say to return "{constants.NOT_PRESENT}" when the value is absent'
        )

    def _output_contract(self) -> str:
        return (
            "## OUTPUT\nRespond with ONLY a JSON object, with no markdown and no other text:\n" + JSON_CONTRACT
        )
