"""Tests for the optimizer run state machine"""

import json
import threading
from unittest.mock import Mock

import pytest

from extractopt.core.config import OptimizerConfig
from extractopt.core.exceptions import InvalidTransitionError
from extractopt.core.models import (
    ComparisonResults,
    ErrorCategory,
    FailureExample,
    FieldComparison,
    FieldOutcome,
    OptimizerRunStatus,
    RetryConfig,
)
from extractopt.services.ai_client import ResilientAIClient
from extractopt.services.generation_backend import BoxAIBackend, StaticTokenProvider
from extractopt.services.prompt_optimization.diagnostics import DiagnosticsService
from extractopt.services.prompt_optimization.orchestrator import OptimizerRunStateMachine
from extractopt.services.prompt_optimization.repair_loop import RepairLoop
from extractopt.services.retry_handler import RetryHandler
from tests.mocks import MockGenerationBackend
from tests.mocks.sample_instructions import COMPLETE, MISSING_SYNONYMS_AND_DISAMBIGUATION, as_response


VENDOR_REQUEST = 'for the field "Vendor Name"'
DATE_REQUEST = 'for the field "Invoice Date"'


def _comparison(**overrides) -> ComparisonResults:
    values = {
        "templateKey": "vendor_invoices",
        "documentNames": {"d1": "inv-1.pdf", "d2": "inv-2.pdf"},
        "fields": [
            FieldComparison(
                fieldKey="vendor_name",
                fieldName="Vendor Name",
                currentPrompt="Extract the vendor name.",
                accuracy=0.5,
                failures=[
                    FailureExample(docId="d1", predicted="Acme Corp", expected="Globex LLC"),
                    FailureExample(docId="d2", predicted="Acme Corp", expected="Initech Inc."),
                ],
            ),
            FieldComparison(
                fieldKey="invoice_date",
                fieldName="Invoice Date",
                fieldType="date",
                accuracy=0.6,
                failures=[FailureExample(docId="d2", predicted="2024-02-01", expected="2024-01-15")],
            ),
            FieldComparison(fieldKey="po_number", fieldName="PO Number", accuracy=1.0),
        ],
    }
    values.update(overrides)
    return ComparisonResults(**values)


def _respond(prompt: str) -> str:
    if "Ground truth value" in prompt:
        return json.dumps({"vendor_name": "Bill To block read first", "invoice_date": "Due date is nearer the top"})
    if VENDOR_REQUEST in prompt:
        return as_response(COMPLETE, "Listed vendor labels")
    return "Extract the invoice date."


def _machine(backend: MockGenerationBackend, field_concurrency: int = 2, **kwargs) -> OptimizerRunStateMachine:
    config = OptimizerConfig(
        max_iterations=3,
        field_concurrency=field_concurrency,
        retry=RetryConfig(max_attempts=1),
    )
    client = ResilientAIClient(
        backend,
        StaticTokenProvider("test-token"),
        retry_config=config.retry,
        retry_handler=RetryHandler(sleep=lambda _delay: None),
        default_item_id="prompt-file",
    )
    return OptimizerRunStateMachine(client, config, **kwargs)


def test_full_run_reaches_review():
    """Test a run from precheck to review"""
    backend = MockGenerationBackend(responder=_respond)
    statuses: list[OptimizerRunStatus] = []
    machine = _machine(backend, on_progress=lambda run: statuses.append(run.status))

    summary = machine.run(_comparison())

    assert machine.status == OptimizerRunStatus.REVIEW
    assert machine.run_state.stepIndex == 4
    assert summary.completedAt is not None
    assert summary.skippedReason is None

    deduped = [s for i, s in enumerate(statuses) if i == 0 or statuses[i - 1] != s]
    assert deduped == [
        OptimizerRunStatus.PRECHECK,
        OptimizerRunStatus.SAMPLING,
        OptimizerRunStatus.DIAGNOSTICS,
        OptimizerRunStatus.PROMPTING,
        OptimizerRunStatus.REVIEW,
    ]

    assert [d.docId for d in summary.sampledDocs] == ["d2"]
    assert summary.sampledDocs[0].theories["vendor_name"] == "Bill To block read first"

    assert [s.fieldKey for s in summary.fieldSummaries] == ["vendor_name", "invoice_date"]
    vendor, invoice_date = summary.fieldSummaries
    assert vendor.outcome == FieldOutcome.SUCCESS
    assert vendor.newPrompt == COMPLETE
    assert vendor.promptTheory == "Listed vendor labels"
    assert vendor.accuracyBefore == 0.5
    assert vendor.sampledDocIds == ["d2"]
    assert invoice_date.outcome == FieldOutcome.FALLBACK
    assert invoice_date.usedFallback is True


def test_requests_carry_theories_and_document_type():
    """Test that diagnostics output and document type reach the field requests"""
    backend = MockGenerationBackend(responder=_respond)
    machine = _machine(backend)

    machine.run(_comparison())

    vendor_prompt = next(p for p in backend.prompts if VENDOR_REQUEST in p)
    assert "## WHY THE MODEL FAILED\n- inv-2.pdf: Bill To block read first" in vendor_prompt
    assert "These are Invoice documents." in vendor_prompt
    assert "d2" in backend.item_ids
    assert "prompt-file" in backend.item_ids


def test_missing_comparison_fails_precheck():
    """Test that a run without comparison results moves to error"""
    backend = MockGenerationBackend()
    machine = _machine(backend)

    machine.run(None)

    assert machine.status == OptimizerRunStatus.ERROR
    assert machine.run_state.errorMessage == "Run a comparison before starting the optimizer"
    assert backend.call_count == 0


def test_missing_template_fails_precheck():
    """Test that a run without a selected template moves to error"""
    machine = _machine(MockGenerationBackend())

    machine.run(_comparison(templateKey=None))

    assert machine.status == OptimizerRunStatus.ERROR
    assert machine.run_state.errorMessage == "Select an extraction template before starting the optimizer"


def test_no_failing_fields_skips_to_review():
    """Test that a perfect comparison finishes without backend calls"""
    backend = MockGenerationBackend()
    machine = _machine(backend)
    comparison = _comparison(fields=[FieldComparison(fieldKey="po_number", fieldName="PO Number", accuracy=1.0)])

    summary = machine.run(comparison)

    assert machine.status == OptimizerRunStatus.REVIEW
    assert summary.skippedReason == "No failing fields to optimize"
    assert summary.fieldSummaries == []
    assert backend.call_count == 0


def test_exhausted_field_does_not_abort_run():
    """Test that one field running out of iterations leaves the others intact"""

    def respond(prompt: str) -> str:
        if "Ground truth value" in prompt:
            return "{}"
        if VENDOR_REQUEST in prompt or "Name: Vendor Name" in prompt:
            return as_response(MISSING_SYNONYMS_AND_DISAMBIGUATION)
        return as_response(COMPLETE)

    backend = MockGenerationBackend(responder=respond)
    machine = _machine(backend)

    summary = machine.run(_comparison())

    assert machine.status == OptimizerRunStatus.REVIEW
    vendor, invoice_date = summary.fieldSummaries
    assert vendor.outcome == FieldOutcome.EXHAUSTED
    assert vendor.iterations == 3
    assert vendor.errorCategory == ErrorCategory.EXHAUSTED
    assert vendor.newPrompt is not None
    assert invoice_date.outcome == FieldOutcome.SUCCESS


def test_unexpected_field_error_recorded_on_summary():
    """Test that a crash while optimizing one field fails only that field"""
    repair_loop = Mock(spec=RepairLoop)
    repair_loop.run.side_effect = RuntimeError("boom")
    machine = _machine(MockGenerationBackend(responder=_respond), repair_loop=repair_loop)

    summary = machine.run(_comparison())

    assert machine.status == OptimizerRunStatus.REVIEW
    assert [s.outcome for s in summary.fieldSummaries] == [FieldOutcome.FAILED, FieldOutcome.FAILED]
    assert summary.fieldSummaries[0].error == "boom"


def test_stage_error_moves_run_to_error():
    """Test that an unexpected stage failure ends the run in error"""
    diagnostics = Mock(spec=DiagnosticsService)
    diagnostics.diagnose.side_effect = RuntimeError("diagnostics unavailable")
    machine = _machine(MockGenerationBackend(responder=_respond), diagnostics=diagnostics)

    summary = machine.run(_comparison())

    assert machine.status == OptimizerRunStatus.ERROR
    assert machine.run_state.errorMessage == "diagnostics unavailable"
    assert machine.run_state.cancelled is False
    assert summary.fieldSummaries == []


def test_cancellation_keeps_finished_fields():
    """Test that cancelling stops at the next field and keeps partial results"""
    machine = None

    def cancel_on_vendor(prompt: str) -> None:
        if VENDOR_REQUEST in prompt:
            machine.cancel()

    backend = MockGenerationBackend(responder=_respond, on_call=cancel_on_vendor)
    machine = _machine(backend, field_concurrency=1)

    summary = machine.run(_comparison())

    assert machine.status == OptimizerRunStatus.ERROR
    assert machine.run_state.cancelled is True
    assert [s.fieldKey for s in summary.fieldSummaries] == ["vendor_name"]
    assert not any(DATE_REQUEST in p for p in backend.prompts)


def test_second_run_requires_acknowledge():
    """Test that a finished run must be acknowledged before another starts"""
    machine = _machine(MockGenerationBackend(responder=_respond))
    first = machine.run(_comparison())

    with pytest.raises(InvalidTransitionError):
        machine.run(_comparison())

    machine.acknowledge()
    assert machine.status == OptimizerRunStatus.IDLE
    assert machine.run_state.runId != first.runId
    assert machine.run_state.fieldSummaries == []


def test_acknowledge_from_idle_is_invalid():
    """Test that idle cannot transition to idle"""
    machine = _machine(MockGenerationBackend())

    with pytest.raises(InvalidTransitionError):
        machine.acknowledge()


def test_default_config_with_box_backend_generates_instructions():
    """Test that fields get instructions when no prompt item id is configured"""

    def box_response(body):
        response = Mock()
        response.ok = True
        response.status_code = 200
        response.json.return_value = body
        return response

    session = Mock()
    session.get.return_value = box_response(
        {"total_count": 1, "entries": [{"type": "file", "id": "ph-1", "name": "extractopt-blank-placeholder.txt"}]}
    )
    session.post.side_effect = lambda url, **kwargs: box_response({"answer": _respond(kwargs["json"]["prompt"])})

    config = OptimizerConfig(retry=RetryConfig(max_attempts=1))
    client = ResilientAIClient(
        BoxAIBackend(session=session),
        StaticTokenProvider("test-token"),
        retry_config=config.retry,
        retry_handler=RetryHandler(sleep=lambda _delay: None),
    )
    machine = OptimizerRunStateMachine(client, config)

    summary = machine.run(_comparison())

    assert machine.status == OptimizerRunStatus.REVIEW
    outcomes = {s.fieldKey: s.outcome for s in summary.fieldSummaries}
    assert outcomes == {"vendor_name": FieldOutcome.SUCCESS, "invoice_date": FieldOutcome.FALLBACK}
    assert all(s.newPrompt for s in summary.fieldSummaries)
    item_ids = [call.kwargs["json"]["items"][0]["id"] for call in session.post.call_args_list]
    assert "d2" in item_ids
    assert "ph-1" in item_ids


def test_cancel_before_run_is_honoured():
    """Test that a cancellation requested before the run starts is not lost"""
    backend = MockGenerationBackend(responder=_respond)
    machine = _machine(backend)

    machine.cancel()
    summary = machine.run(_comparison())

    assert machine.status == OptimizerRunStatus.ERROR
    assert machine.run_state.cancelled is True
    assert summary.fieldSummaries == []
    assert backend.call_count == 0

    machine.acknowledge()
    machine.run(_comparison())
    assert machine.status == OptimizerRunStatus.REVIEW


def test_field_concurrency_limits_fields_in_flight():
    """Test that no more than field_concurrency fields call the backend at once"""
    lock = threading.Lock()
    both_in_flight = threading.Event()
    in_flight = 0
    peak = 0

    def track(prompt: str) -> None:
        nonlocal in_flight, peak
        if "Ground truth value" in prompt:
            return
        with lock:
            in_flight += 1
            peak = max(peak, in_flight)
            if in_flight >= 2:
                both_in_flight.set()
        both_in_flight.wait(timeout=2)
        with lock:
            in_flight -= 1

    comparison = _comparison()
    comparison.fields.append(
        FieldComparison(
            fieldKey="total_amount",
            fieldName="Total Amount",
            fieldType="number",
            accuracy=0.5,
            failures=[FailureExample(docId="d1", predicted="100.00", expected="110.00")],
        )
    )
    machine = _machine(MockGenerationBackend(responder=_respond, on_call=track), field_concurrency=2)

    summary = machine.run(comparison)

    assert machine.status == OptimizerRunStatus.REVIEW
    assert len(summary.fieldSummaries) == 3
    assert peak == 2
