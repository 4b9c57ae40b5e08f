"""Tests for resolving raw generation responses"""

import json

import pytest

from extractopt.core.exceptions import PromptParseError
from extractopt.core.models import FieldContext
from extractopt.services.prompt_optimization.resolver import ResponseResolver, strip_fences
from extractopt.services.prompt_optimization.templates import FallbackTemplateLibrary
from extractopt.services.prompt_optimization.validator import validate_prompt
from tests.mocks.sample_instructions import COMPLETE, PLAIN_WORDED_DATE, as_response


@pytest.fixture
def resolver():
    return ResponseResolver()


@pytest.fixture
def vendor_context():
    return FieldContext(fieldKey="vendor_name", fieldName="Vendor Name", fieldType="string")


def test_strip_fences():
    """Test removal of markdown code fences"""
    assert strip_fences('```json\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_fences('```\n{"a": 1}\n```') == '{"a": 1}'
    assert strip_fences('{"a": 1}') == '{"a": 1}'


def test_short_instruction_uses_fallback(resolver, vendor_context):
    """Test that a bare one-line instruction is replaced by the field template"""
    resolved = resolver.resolve(as_response("Extract the vendor name."), vendor_context)

    assert resolved.usedFallback is True
    assert resolved.strategy == "fallback"
    assert resolved.instruction == FallbackTemplateLibrary().render(vendor_context)
    assert resolved.rationale.startswith("Used fallback template because")
    assert "24 characters" in resolved.rationale


def test_fenced_json_returned_unchanged(resolver, vendor_context):
    """Test that a fenced JSON answer yields its instruction verbatim"""
    raw = f"```json\n{as_response(COMPLETE, 'Added synonyms and a not-found rule')}\n```"

    resolved = resolver.resolve(raw, vendor_context)

    assert resolved.usedFallback is False
    assert resolved.strategy == "json"
    assert resolved.instruction == COMPLETE
    assert resolved.rationale == "Added synonyms and a not-found rule"


def test_resolution_is_idempotent(resolver, vendor_context):
    """Test that resolving the same response twice gives the same result"""
    for raw in (as_response(COMPLETE), "Extract the vendor name.", "{broken"):
        assert resolver.resolve(raw, vendor_context) == resolver.resolve(raw, vendor_context)


def test_invalid_json_recovered_by_regex(resolver, vendor_context):
    """Test the field regex on JSON with a trailing comma"""
    raw = '{"newPrompt": ' + json.dumps(COMPLETE) + ', "reasoning": "Tightened wording",}'

    resolved = resolver.resolve(raw, vendor_context)

    assert resolved.strategy == "regex"
    assert resolved.instruction == COMPLETE
    assert resolved.rationale == "Tightened wording"


def test_prose_response_uses_fallback(resolver, vendor_context):
    """Test that an answer outside the JSON shape is never taken as the instruction"""
    raw = "Sure! Here is the improved instruction you asked for:\n\n" + COMPLETE

    resolved = resolver.resolve(raw, vendor_context)

    assert resolved.usedFallback is True
    assert resolved.fallbackReason == "no instruction could be parsed from the response"
    assert not resolved.instruction.startswith("Sure!")


def test_valid_instruction_without_cue_words_returned_unchanged(resolver):
    """Test that an instruction the validator accepts skips the lighter pre-check"""
    ctx = FieldContext(fieldKey="effective_date", fieldName="Effective Date", fieldType="date")
    assert validate_prompt(PLAIN_WORDED_DATE).isValid
    assert resolver.validator.precheck(PLAIN_WORDED_DATE)[0] is False

    resolved = resolver.resolve(as_response(PLAIN_WORDED_DATE, "Reworded the labels"), ctx)

    assert resolved.usedFallback is False
    assert resolved.strategy == "json"
    assert resolved.instruction == PLAIN_WORDED_DATE
    assert resolved.rationale == "Reworded the labels"


def test_missing_reasoning_gets_default_rationale(resolver, vendor_context):
    """Test the default rationale when the response gives none"""
    resolved = resolver.resolve(json.dumps({"newPrompt": COMPLETE}), vendor_context)

    assert resolved.rationale == "Generated instruction accepted"


def test_unparseable_response_uses_fallback(resolver, vendor_context):
    """Test fallback when no instruction can be found"""
    resolved = resolver.resolve('{"answer": 42}', vendor_context)

    assert resolved.usedFallback is True
    assert resolved.fallbackReason == "no instruction could be parsed from the response"


def test_fallback_respects_exclusion_entity(resolver):
    """Test that the fallback template carries the exclusion hint"""
    ctx = FieldContext(fieldKey="cp", fieldName="Counter Party Name", exclusionEntity="Acme Corp")

    resolved = resolver.resolve("", ctx)

    assert resolved.usedFallback is True
    assert 'Do NOT return "Acme Corp"' in resolved.instruction


def test_no_field_context_raises(resolver):
    """Test that resolution without a field context cannot fall back"""
    with pytest.raises(PromptParseError) as exc_info:
        resolver.resolve('{"answer": 42}')

    assert exc_info.value.raw_response == '{"answer": 42}'
