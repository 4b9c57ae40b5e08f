"""
Response Resolver

Recovers the new instruction from a raw generation response. Models wrap
their JSON in markdown, escape it twice, or break it outright, so several
extraction strategies are tried in order before falling back to a template.
"""

import json
import logging
import re
from typing import Optional

from extractopt.core.exceptions import PromptParseError
from extractopt.core.models import FieldContext, ResolvedPrompt
from extractopt.services.prompt_optimization.templates import FallbackTemplateLibrary
from extractopt.services.prompt_optimization.validator import PromptValidator


logger = logging.getLogger(__name__)

FENCE_PATTERN = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)
PROMPT_FIELD_PATTERN = re.compile(r'"newPrompt"\s*:\s*"((?:[^"\\]|\\.)*)"')
REASONING_FIELD_PATTERN = re.compile(r'"reasoning"\s*:\s*"((?:[^"\\]|\\.)*)"')
LOOSE_PROMPT_PATTERN = re.compile(r'\{[\s\S]*?"newPrompt"\s*:\s*"([\s\S]*?)"[\s\S]*?\}')

DEFAULT_RATIONALE = "Generated instruction accepted"


def strip_fences(raw: str) -> str:
    return FENCE_PATTERN.sub("", raw.strip()).strip()


def _unescape(value: str) -> str:
    """Decode a JSON string body, tolerating escapes that are not strictly valid."""
    try:
        return json.loads(f'"{value}"')
    except json.JSONDecodeError:
        return value.replace('\\"', '"').replace("\\n", "\n").replace("\\t", "\t").replace("\\\\", "\\")


class ResponseResolver:
    """
    Resolves raw generation responses into a trusted instruction

    Strategies, in order:
    1. JSON object (after removing markdown fences)
    2. Field regex over escaped JSON text
    3. Looser JSON-fragment regex

    An instruction the validator accepts is returned unchanged. Anything else
    must pass the validator's light pre-check so the repair loop can work on
    it. When it does not, or nothing is extracted, the field's fallback
    template is used.
    """

    def __init__(
        self,
        validator: Optional[PromptValidator] = None,
        template_library: Optional[FallbackTemplateLibrary] = None,
    ):
        self.validator = validator or PromptValidator()
        self.templates = template_library or FallbackTemplateLibrary()

    def resolve(self, raw: Optional[str], field_context: Optional[FieldContext] = None) -> ResolvedPrompt:
        """
        Resolve a raw response.

        Args:
            raw: Response text from the backend
            field_context: Field the instruction is for; enables fallback substitution

        Returns:
            ResolvedPrompt with the instruction and a rationale

        Raises:
            PromptParseError: Nothing trustworthy was found and no field context was given
        """
        text = raw or ""
        extracted = self._extract(text)

        if extracted is None:
            return self._fallback(text, field_context, "no instruction could be parsed from the response")

        strategy, instruction, reasoning = extracted
        instruction = instruction.strip()
        if not self.validator.validate(instruction).isValid:
            passed, reason = self.validator.precheck(instruction)
            if not passed:
                return self._fallback(text, field_context, reason or "generated instruction failed the pre-check")

        logger.debug(f"Resolved instruction via {strategy} ({len(instruction)} chars)")
        return ResolvedPrompt(
            instruction=instruction,
            rationale=(reasoning or "").strip() or DEFAULT_RATIONALE,
            usedFallback=False,
            strategy=strategy,
        )

    def _extract(self, text: str) -> Optional[tuple[str, str, Optional[str]]]:
        cleaned = strip_fences(text)

        try:
            data = json.loads(cleaned)
        except json.JSONDecodeError:
            data = None
        if isinstance(data, dict) and isinstance(data.get("newPrompt"), str):
            reasoning = data.get("reasoning")
            return "json", data["newPrompt"], reasoning if isinstance(reasoning, str) else None

        match = PROMPT_FIELD_PATTERN.search(text)
        if match:
            reasoning_match = REASONING_FIELD_PATTERN.search(text)
            return (
                "regex",
                _unescape(match.group(1)),
                _unescape(reasoning_match.group(1)) if reasoning_match else None,
            )

        match = LOOSE_PROMPT_PATTERN.search(text)
        if match:
            return "loose", match.group(1).replace('\\"', '"').replace("\\n", "\n"), None

        return None

    def _fallback(self, raw: str, field_context: Optional[FieldContext], reason: str) -> ResolvedPrompt:
        if field_context is None:
            logger.error(f"Could not resolve generation response: {reason}")
            raise PromptParseError(f"Could not resolve generation response: {reason}", raw_response=raw)

        instruction = self.templates.render(field_context)
        logger.warning(f"Using fallback template for {field_context.fieldKey}: {reason}")
        return ResolvedPrompt(
            instruction=instruction,
            rationale=f"Used fallback template because {reason}",
            usedFallback=True,
            fallbackReason=reason,
            strategy="fallback",
        )
