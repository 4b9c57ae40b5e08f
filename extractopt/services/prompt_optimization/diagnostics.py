"""Per-document failure theories that feed the generation requests."""

import json
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from extractopt.core import constants
from extractopt.core.exceptions import PromptParseError
from extractopt.core.models import (
    DocumentTheory,
    FieldFailureDetail,
    RetryConfig,
    SampledDocument,
    SamplingResult,
)
from extractopt.services.ai_client import ResilientAIClient
from extractopt.services.prompt_optimization.resolver import strip_fences
from extractopt.services.retry_handler import RetryHandler


logger = logging.getLogger(__name__)


def truncate_theory(theory: str) -> str:
    text = (theory or "").strip()
    if len(text) <= constants.MAX_THEORY_CHARS:
        return text
    return text[: constants.MAX_THEORY_CHARS - 1].rstrip() + constants.THEORY_ELLIPSIS


def build_theory_prompt(failures: list[FieldFailureDetail]) -> str:
    """Ask why the model got each failing field of one document wrong."""
    blocks = [
        "\n".join(
            [
                f"Field key: {f.fieldKey} ({f.fieldName})",
                f'Ground truth value: "{f.groundTruth}"',
                f'Model value: "{f.extractedValue}"',
            ]
        )
        for f in failures
    ]
    return (
        "An extraction model returned the wrong value for the fields below in this document.\n\n"
        + "\n\n".join(blocks)
        + "\n\nFor each field, explain in <=200 characters why the model value might be wrong. "
        "Focus on document patterns or context clues, not generic advice.\n"
        'Respond with ONLY a JSON object mapping each field key to its explanation, e.g. {"field_key": "..."}'
    )


def parse_theories(raw: str, field_keys: list[str]) -> dict[str, str]:
    try:
        data = json.loads(strip_fences(raw))
    except json.JSONDecodeError as e:
        raise PromptParseError(f"Diagnostics response is not JSON: {e}", raw_response=raw) from e
    if not isinstance(data, dict):
        raise PromptParseError("Diagnostics response is not a JSON object", raw_response=raw)
    return {
        key: truncate_theory(value)
        for key, value in data.items()
        if key in field_keys and isinstance(value, str) and value.strip()
    }


class DiagnosticsService:
    """Generates failure theories for sampled documents.

    A failure on one document is recorded on its DocumentTheory and never
    stops the other documents.
    """

    def __init__(
        self,
        client: ResilientAIClient,
        model: Optional[str] = None,
        concurrency: int = constants.DEFAULT_FIELD_CONCURRENCY,
        retry_config: RetryConfig = RetryHandler.DIAGNOSTICS_RETRY_CONFIG,
    ):
        self.client = client
        self.model = model
        self.retry_config = retry_config
        self.concurrency = max(1, concurrency)

    def diagnose(self, sampling: SamplingResult) -> list[DocumentTheory]:
        if not sampling.sampledDocs:
            return []
        with ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix="extractopt-diag") as executor:
            return list(
                executor.map(
                    lambda doc: self.diagnose_document(doc, sampling.docFailures.get(doc.docId, [])),
                    sampling.sampledDocs,
                )
            )

    def diagnose_document(self, doc: SampledDocument, failures: list[FieldFailureDetail]) -> DocumentTheory:
        relevant = [f for f in failures if f.fieldKey in doc.failingFieldKeys] or failures
        if not relevant:
            return DocumentTheory(docId=doc.docId, docName=doc.docName)

        try:
            raw = self.client.invoke(
                build_theory_prompt(relevant),
                item_id=doc.docId,
                model=self.model,
                component="diagnostics",
                operation="theory",
                retry_config=self.retry_config,
            )
            theories = parse_theories(raw, [f.fieldKey for f in relevant])
        except Exception as e:
            logger.error(f"Diagnostics failed for document {doc.docId}: {e}")
            return DocumentTheory(docId=doc.docId, docName=doc.docName, error=str(e) or type(e).__name__)

        logger.info(f"Diagnostics produced {len(theories)} theories for document {doc.docId}")
        return DocumentTheory(docId=doc.docId, docName=doc.docName, theories=theories)
