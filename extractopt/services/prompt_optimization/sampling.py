"""Chooses which failing documents to diagnose before prompting."""

import logging

from extractopt.core.config import SamplingConfig
from extractopt.core.models import (
    ComparisonResults,
    FieldComparison,
    FieldFailureDetail,
    SampledDocument,
    SamplingResult,
)


logger = logging.getLogger(__name__)


def failing_fields(comparison: ComparisonResults, config: SamplingConfig) -> list[FieldComparison]:
    """Fields below perfect accuracy that have at least one recorded failure."""
    return [f for f in comparison.fields if f.accuracy < config.perfect_accuracy and f.failures]


def build_field_failure_map(
    comparison: ComparisonResults, config: SamplingConfig
) -> dict[str, list[tuple[str, str, FieldFailureDetail]]]:
    """Map each failing field to its (docId, docName, detail) failures."""
    failure_map: dict[str, list[tuple[str, str, FieldFailureDetail]]] = {}
    for field in failing_fields(comparison, config):
        entries = []
        for failure in field.failures:
            doc_name = failure.docName or comparison.documentNames.get(failure.docId, failure.docId)
            detail = FieldFailureDetail(
                fieldKey=field.fieldKey,
                fieldName=field.fieldName,
                groundTruth=failure.expected,
                extractedValue=failure.predicted,
            )
            entries.append((failure.docId, doc_name, detail))
        failure_map[field.fieldKey] = entries
    return failure_map


def select_docs_for_optimizer(comparison: ComparisonResults, config: SamplingConfig) -> SamplingResult:
    """Greedy document selection.

    Repeatedly picks the document that covers the most fields still below
    their per-field quota, breaking ties by document name, until every failing
    field is covered or ``max_docs`` is reached.
    """
    failure_map = build_field_failure_map(comparison, config)

    coverage: dict[str, tuple[str, list[str]]] = {}
    doc_failures: dict[str, list[FieldFailureDetail]] = {}
    for field_key, entries in failure_map.items():
        for doc_id, doc_name, detail in entries:
            _name, keys = coverage.setdefault(doc_id, (doc_name, []))
            if field_key not in keys:
                keys.append(field_key)
            doc_failures.setdefault(doc_id, []).append(detail)

    field_to_docs: dict[str, list[str]] = {key: [] for key in failure_map}
    uncovered = set(failure_map)
    sampled: list[SampledDocument] = []

    def open_fields(doc_id: str) -> list[str]:
        return [k for k in coverage[doc_id][1] if len(field_to_docs[k]) < config.max_docs_per_field]

    while len(sampled) < config.max_docs and uncovered:
        chosen = {d.docId for d in sampled}
        candidates = [
            (len(open_fields(doc_id)), name, doc_id)
            for doc_id, (name, _keys) in coverage.items()
            if doc_id not in chosen
        ]
        candidates = [c for c in candidates if c[0] > 0]
        if not candidates:
            break

        # Highest score first, then smallest name
        _score, name, best = min(candidates, key=lambda c: (-c[0], c[1], c[2]))
        applied = open_fields(best)
        for key in applied:
            field_to_docs[key].append(best)
            uncovered.discard(key)
        sampled.append(SampledDocument(docId=best, docName=name, failingFieldKeys=applied))

    logger.info(
        f"Sampled {len(sampled)} documents covering {len(failure_map) - len(uncovered)}/{len(failure_map)} "
        "failing fields"
    )

    return SamplingResult(
        sampledDocs=sampled,
        fieldFailures=field_to_docs,
        docFailures={d.docId: doc_failures[d.docId] for d in sampled},
    )
