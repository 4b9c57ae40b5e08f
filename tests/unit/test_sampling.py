"""Tests for failing-document sampling"""

from extractopt.core.config import SamplingConfig
from extractopt.core.models import ComparisonResults, FailureExample, FieldComparison
from extractopt.services.prompt_optimization.sampling import (
    build_field_failure_map,
    failing_fields,
    select_docs_for_optimizer,
)


DOC_NAMES = {"d1": "Alpha.pdf", "d2": "Beta.pdf", "d3": "Gamma.pdf", "d4": "Delta.pdf"}


def _failure(doc_id: str) -> FailureExample:
    return FailureExample(docId=doc_id, predicted="wrong", expected="right")


def _comparison() -> ComparisonResults:
    return ComparisonResults(
        templateKey="vendor_invoices",
        documentNames=DOC_NAMES,
        fields=[
            FieldComparison(
                fieldKey="vendor", fieldName="Vendor", accuracy=0.5, failures=[_failure("d1"), _failure("d2")]
            ),
            FieldComparison(
                fieldKey="total", fieldName="Total", accuracy=0.5, failures=[_failure("d2"), _failure("d3")]
            ),
            FieldComparison(fieldKey="po", fieldName="PO Number", accuracy=1.0),
            FieldComparison(fieldKey="tax", fieldName="Sales Tax", accuracy=0.75, failures=[_failure("d4")]),
        ],
    )


def test_failing_fields_skip_perfect_fields():
    """Test that only fields below perfect accuracy with failures are selected"""
    keys = [f.fieldKey for f in failing_fields(_comparison(), SamplingConfig())]

    assert keys == ["vendor", "total", "tax"]


def test_failure_map_uses_document_names():
    """Test that failures fall back to the comparison's document names"""
    failure_map = build_field_failure_map(_comparison(), SamplingConfig())

    doc_id, doc_name, detail = failure_map["total"][1]
    assert (doc_id, doc_name) == ("d3", "Gamma.pdf")
    assert detail.groundTruth == "right"
    assert detail.extractedValue == "wrong"


def test_greedy_selection_covers_all_fields():
    """Test that the widest-covering document is picked first"""
    result = select_docs_for_optimizer(_comparison(), SamplingConfig())

    assert [d.docId for d in result.sampledDocs] == ["d2", "d1", "d4"]
    assert result.sampledDocs[0].failingFieldKeys == ["vendor", "total"]
    assert set(result.fieldFailures) == {"vendor", "total", "tax"}
    assert all(result.fieldFailures[key] for key in result.fieldFailures)
    assert "po" not in result.fieldFailures
    assert not result.isEmpty


def test_selection_respects_document_limit():
    """Test that sampling stops at max_docs"""
    result = select_docs_for_optimizer(_comparison(), SamplingConfig(max_docs=1))

    assert [d.docId for d in result.sampledDocs] == ["d2"]
    assert result.fieldFailures["tax"] == []
    assert set(result.docFailures) == {"d2"}


def test_selection_respects_per_field_quota():
    """Test that no field is covered by more documents than its quota"""
    result = select_docs_for_optimizer(_comparison(), SamplingConfig(max_docs_per_field=1))

    assert all(len(docs) <= 1 for docs in result.fieldFailures.values())


def test_perfect_comparison_is_empty():
    """Test that nothing is sampled when every field is perfect"""
    comparison = ComparisonResults(
        templateKey="t",
        fields=[FieldComparison(fieldKey="a", fieldName="A", accuracy=1.0)],
    )

    result = select_docs_for_optimizer(comparison, SamplingConfig())

    assert result.isEmpty
    assert result.sampledDocs == []
