"""Request-level wrapper around :class:`HybridRetriever`.

Adds what the HTTP and CLI surfaces need on top of the bare retriever:
a request id, input validation against configured limits, latency
measurement, a query log row and preview formatting.
"""

from __future__ import annotations

import time
import uuid

import structlog

from runbook_rag.models.pipeline import LogStatus, RetrievalPreview
from runbook_rag.models.rag import RetrievalCandidate
from runbook_rag.services.event_recorder import RequestEventRecorder
from runbook_rag.services.retrieval.hybrid_retriever import HybridRetriever
from runbook_rag.utils.errors import InputValidationError, RunbookRagError

logger = structlog.get_logger(logger_name=__name__)


def to_preview(candidate: RetrievalCandidate, max_chars: int = 200) -> RetrievalPreview:
    return RetrievalPreview(
        id=candidate.chunk_id,
        filename=candidate.filename,
        chunk_index=candidate.chunk_index,
        text_preview=candidate.preview(max_chars),
        distance=candidate.distance,
        keyword_score=candidate.keyword_score,
    )


class QueryService:
    """Runs a search and records it."""

    def __init__(self, retriever: HybridRetriever, recorder: RequestEventRecorder) -> None:
        self._retriever = retriever
        self._recorder = recorder

    @property
    def default_top_k(self) -> int:
        return self._retriever.tuning.default_top_k

    async def search(
        self,
        query: str,
        top_k: int | None = None,
        filename_scope: list[str] | None = None,
        request_id: str | None = None,
    ) -> tuple[str, list[RetrievalPreview], float]:
        """Search and return ``(request_id, previews, latency_ms)``.

        Raises
        ------
        RunbookRagError
            Any failure, with ``request_id`` attached.
        """
        request_id = request_id or str(uuid.uuid4())
        tuning = self._retriever.tuning
        effective_top_k = top_k if top_k is not None else tuning.default_top_k
        started = time.perf_counter()

        try:
            if effective_top_k < 1 or effective_top_k > tuning.max_top_k:
                raise InputValidationError(
                    message=f"top_k must be between 1 and {tuning.max_top_k}",
                    stage="search",
                )
            candidates = await self._retriever.search(query, effective_top_k, filename_scope)
        except RunbookRagError as exc:
            latency_ms = (time.perf_counter() - started) * 1000
            await self._recorder.query_finished(
                request_id,
                query,
                effective_top_k,
                [],
                latency_ms,
                LogStatus.ERROR.value,
                str(exc),
            )
            exc.attach_context(request_id=request_id)
            raise

        latency_ms = (time.perf_counter() - started) * 1000
        await self._recorder.query_finished(
            request_id,
            query,
            effective_top_k,
            [c.chunk_id for c in candidates],
            latency_ms,
            LogStatus.SUCCESS.value,
        )
        previews = [to_preview(c, tuning.preview_chars) for c in candidates]
        return request_id, previews, round(latency_ms, 2)
