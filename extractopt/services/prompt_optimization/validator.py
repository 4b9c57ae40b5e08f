"""Quality rules for extraction instructions."""

from __future__ import annotations

import logging
import re
from typing import Optional

from extractopt.core.config import ValidatorConfig
from extractopt.core.constants import MIN_QUOTED_PHRASE_CHARS, PRECHECK_MIN_HEURISTICS
from extractopt.core.models import PromptValidation


logger = logging.getLogger(__name__)

GENERIC_PATTERN = re.compile(r"^extract the .{1,50}(from this document)?\.?$", re.IGNORECASE)

# Any length here; quoted_phrases() applies the minimum
QUOTED_PHRASE_PATTERN = re.compile(r'["“]([^"“”]*)["”]')

_LOCATION_TARGETS = r"(section|paragraph|header|footer|signature|block|area|field|table|page)"

LOCATION_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        rf"look in[^.]*{_LOCATION_TARGETS}",
        rf"search in[^.]*{_LOCATION_TARGETS}",
        r"check (the )?(opening|closing|first|last|header|footer|signature|notices?)",
        r"(opening|closing|first|last)\s+(paragraph|section|page)",
        r"\(\d+\)[^.]*(section|paragraph|block|area)",
        r"signature block|header area|footer area|notices section",
        r"look in|search in|find in|check the|located in",
    )
)

SYNONYM_CUE_PATTERN = re.compile(
    r"((look for|search for|phrases like)[^.]*,[^.]*,)|phrases like|variations|synonyms",
    re.IGNORECASE,
)

FORMAT_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"return.*(format|YYYY|MM|DD|exactly|only the|single line|complete)",
        r"format.*(as|to|should|must)",
        r"output.*(format|as)",
        r"YYYY-MM-DD",
        r"decimal|cents|digits|numeric",
        r"exactly as|exactly one|exact value",
        r"including (street|city|state|zip|suffix)",
        r"full (legal |entity )?name",
    )
)

DISAMBIGUATION_PATTERN = re.compile(
    r"do not|don't|not confuse|not return|not include|not extract|avoid|exclude|instead of|rather than",
    re.IGNORECASE,
)

NOT_FOUND_PATTERN = re.compile(
    r"not present|not found|missing|if no|if not|cannot find|doesn't exist|does not exist",
    re.IGNORECASE,
)

# Cheaper heuristics used by the response resolver before trusting a generation
PRECHECK_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p, re.IGNORECASE)
    for p in (
        r"look in|search in|find in|check the|located in",
        r"look for|search for|phrases like|variations|synonyms",
        r"return|format|output|provide",
        NOT_FOUND_PATTERN.pattern,
    )
)


def quoted_phrases(text: str) -> list[str]:
    """Distinct quoted phrases, lowercased, in order of first appearance."""
    seen: dict[str, None] = {}
    for match in QUOTED_PHRASE_PATTERN.finditer(text):
        phrase = match.group(1).strip().lower()
        if len(phrase) >= MIN_QUOTED_PHRASE_CHARS:
            seen.setdefault(phrase, None)
    return list(seen)


def is_generic(text: str) -> bool:
    return bool(GENERIC_PATTERN.match(text.strip()))


class PromptValidator:
    """Checks extraction instructions against the quality rules.

    An instruction is valid when it is long enough, is not a bare
    "Extract the X" line, has at least ``min_elements`` of the five elements
    (location, synonyms, format, disambiguation, not-found) and carries at
    most ``max_defects`` defects. Validation is pure: the same text always
    yields the same result.
    """

    def __init__(self, config: Optional[ValidatorConfig] = None) -> None:
        self.config = config or ValidatorConfig()

    def validate(self, text: str) -> PromptValidation:
        """Validate an instruction and describe every defect found."""
        text = text or ""
        cfg = self.config
        stripped = text.strip()
        char_count = len(stripped)
        defects: list[str] = []

        meets_min_length = char_count >= cfg.min_length
        if not meets_min_length:
            defects.append(f"Too short - {char_count} characters, need {cfg.min_length}+")

        generic = is_generic(stripped)
        if generic:
            defects.append("Too generic - a bare 'Extract the X' instruction gives the model nothing to work with")

        has_location = any(p.search(stripped) for p in LOCATION_PATTERNS)
        if not has_location:
            defects.append(
                "Missing LOCATION - say where to look, e.g. 'Look in (1) the opening paragraph, "
                "(2) the signature block'"
            )

        phrases = quoted_phrases(stripped)
        synonym_count = len(phrases)
        has_synonyms = synonym_count >= cfg.min_synonyms or (
            synonym_count >= max(1, cfg.min_synonyms - 2) and bool(SYNONYM_CUE_PATTERN.search(stripped))
        )
        if not has_synonyms:
            if synonym_count == 0:
                defects.append(
                    f"Missing SYNONYMS - list {cfg.min_synonyms}+ alternative phrases in quotes, "
                    'e.g. "effective date", "commencement date", "start date"'
                )
            else:
                defects.append(
                    f"Insufficient SYNONYMS - found {synonym_count} phrases, "
                    f"need {cfg.min_synonyms}+ distinct alternatives"
                )

        has_format = any(p.search(stripped) for p in FORMAT_PATTERNS)
        if not has_format:
            defects.append("Missing FORMAT - state the exact output format, e.g. 'Return in YYYY-MM-DD format'")

        has_disambiguation = bool(DISAMBIGUATION_PATTERN.search(stripped))
        if not has_disambiguation:
            defects.append("Missing DISAMBIGUATION - say what NOT to return, e.g. 'Do NOT confuse with ...'")

        has_not_found = bool(NOT_FOUND_PATTERN.search(stripped))
        if not has_not_found:
            defects.append("Missing NOT-FOUND handling - say what to return when absent, e.g. 'Return \"Not Present\"'")

        element_count = sum([has_location, has_synonyms, has_format, has_disambiguation, has_not_found])
        is_valid = (
            meets_min_length
            and not generic
            and element_count >= cfg.min_elements
            and len(defects) <= cfg.max_defects
        )

        return PromptValidation(
            isValid=is_valid,
            defects=defects,
            charCount=char_count,
            meetsMinLength=meets_min_length,
            isGeneric=generic,
            hasLocation=has_location,
            hasSynonyms=has_synonyms,
            hasFormat=has_format,
            hasDisambiguation=has_disambiguation,
            hasNotFound=has_not_found,
            synonymCount=synonym_count,
        )

    def precheck(self, text: str) -> tuple[bool, Optional[str]]:
        """Light genericity check applied by the resolver to raw generations.

        Returns:
            (passed, reason) where reason explains a failure.
        """
        stripped = (text or "").strip()
        if len(stripped) < self.config.min_length:
            return False, (
                f"generated instruction was {len(stripped)} characters, needed {self.config.min_length}+"
            )
        if is_generic(stripped):
            return False, "generated instruction was a generic 'Extract the X' line"
        hits = sum(1 for p in PRECHECK_PATTERNS if p.search(stripped))
        if hits < PRECHECK_MIN_HEURISTICS:
            return False, (
                f"generated instruction had {hits} of {len(PRECHECK_PATTERNS)} required elements, "
                f"needed {PRECHECK_MIN_HEURISTICS}"
            )
        return True, None


_default_validator = PromptValidator()


def validate_prompt(text: str) -> PromptValidation:
    """Validate with the default rules."""
    return _default_validator.validate(text)
