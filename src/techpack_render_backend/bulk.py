"""
Multi-document generation.

The orchestrator runs every document through the full single-document
pipeline on a bounded number of worker threads. Workers never render
themselves; they submit to the shared RenderPool like any other request, so
bulk work cannot exceed the pool's concurrency cap. One document's failure is
recorded in its result entry and never aborts the batch.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Callable, List, Optional, Sequence

from .errors import TechPackRenderError
from .models import BulkDocumentResult, BulkResult, BulkSummary, GeneratedDocument, RenderOptions

logger = logging.getLogger(__name__)

GenerateFn = Callable[[str, RenderOptions], GeneratedDocument]
# Receives a generated document and returns the reference reported to the caller.
ArtifactSink = Callable[[GeneratedDocument], str]


def default_artifact_ref(document: GeneratedDocument) -> str:
    return f"{document.document_id}/{document.filename}"


class BulkOrchestrator:
    """
    Args:
        generate_one: Single-document pipeline, without admission control
        max_parallelism: Upper bound on concurrent documents, normally the pool size
    """

    def __init__(self, generate_one: GenerateFn, max_parallelism: int) -> None:
        self._generate_one = generate_one
        self.max_parallelism = max(1, max_parallelism)

    def run_bulk(
        self,
        document_ids: Sequence[str],
        options: Any = None,
        sink: Optional[ArtifactSink] = None,
    ) -> BulkResult:
        """
        Generate several documents and summarise the outcome.

        Results are in input order regardless of completion order.

        Raises:
            InvalidOptionsError: If the shared options cannot be parsed
        """
        ids = list(document_ids)
        render_options = RenderOptions.parse(options)
        sink = sink or default_artifact_ref
        results: List[Optional[BulkDocumentResult]] = [None] * len(ids)

        if ids:
            workers = min(len(ids), self.max_parallelism)
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="bulk") as executor:
                futures = {
                    executor.submit(self._run_one, document_id, render_options, sink): index
                    for index, document_id in enumerate(ids)
                }
                for future in as_completed(futures):
                    results[futures[future]] = future.result()

        final = [result for result in results if result is not None]
        successful = sum(1 for result in final if result.success)
        summary = BulkSummary(total=len(final), successful=successful, failed=len(final) - successful)
        logger.info(f"Bulk run finished: {summary.successful}/{summary.total} succeeded, {summary.failed} failed")
        return BulkResult(results=final, summary=summary)

    def _run_one(self, document_id: str, options: RenderOptions, sink: ArtifactSink) -> BulkDocumentResult:
        try:
            document = self._generate_one(document_id, options)
            artifact_ref = sink(document)
        except TechPackRenderError as exc:
            logger.warning(f"Bulk generation failed for {document_id}: {exc.message}")
            return BulkDocumentResult(document_id=document_id, success=False, error=exc.message, error_code=exc.code)
        except Exception as exc:  # noqa: BLE001
            logger.exception(f"Unexpected error generating {document_id}")
            return BulkDocumentResult(document_id=document_id, success=False, error=str(exc), error_code="internal_error")
        return BulkDocumentResult(
            document_id=document_id,
            success=True,
            artifact_ref=artifact_ref,
            pages=document.pages,
            size=document.size,
        )
