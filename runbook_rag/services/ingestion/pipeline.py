"""Staged ingestion pipeline: validate, extract, chunk, embed, persist, verify.

Request flow::

    validate ── schema_check ──┬─ file 1: extract → chunk → embed → persist
                               ├─ file 2: ...
                               └─ file N: ...
                                           └── verify (optional, fail-soft)

Request-level checks (file count, byte total, empty files, unsupported
types, embedding configuration, schema probe) run before any extraction or
embedding work and fail the whole request.  After that, files are processed
sequentially and best effort: a per-file failure marks that file
``failed(stage, reason)`` and the loop moves on.

Every network-bound stage runs under :func:`with_timeout` with the smaller
of its own budget and the time left in the request budget.  Stage timings
are kept per file and summed per request; they are returned to the caller
and written to the upload log.

Raw bytes are optionally copied to an object store in background tasks.
That write and the self-verification search are the only fail-soft
operations; everything else surfaces in the result or as an exception.
"""

from __future__ import annotations

import asyncio
import re
import time
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field

import structlog

from runbook_rag.config.loader import IngestionLimits, StageTimeouts
from runbook_rag.interfaces.document_store import IDocumentStore
from runbook_rag.interfaces.object_store import IObjectStore
from runbook_rag.models.pipeline import (
    ErrorDetail,
    FileResult,
    FileState,
    FileStatus,
    IngestionResult,
    LogStatus,
    RequestStatus,
    RetrievalPreview,
)
from runbook_rag.models.rag import ChunkRecord, DocumentKind, IncomingFile
from runbook_rag.services.embedding_client import EmbeddingClient
from runbook_rag.services.event_recorder import RequestEventRecorder
from runbook_rag.services.ingestion.chunker import TextChunker
from runbook_rag.services.ingestion.stage_tracker import StageTracker
from runbook_rag.services.ingestion.text_extractor import TextExtractor
from runbook_rag.services.ingestion.url_fetcher import UrlFetcher
from runbook_rag.services.retrieval.hybrid_retriever import HybridRetriever
from runbook_rag.services.retrieval.query_service import to_preview
from runbook_rag.services.schema_guard import SchemaGuard
from runbook_rag.utils.concurrency import with_timeout
from runbook_rag.utils.errors import (
    ConfigurationError,
    ExtractionError,
    InputValidationError,
    RunbookRagError,
    StageTimeoutError,
)

logger = structlog.get_logger(logger_name=__name__)

_HEADING_RE = re.compile(r"^#{1,6}\s+(.*)$")
_SENTENCE_END_RE = re.compile(r"(?<=[.!?])\s+|\n")
_VERIFY_QUERY_WORDS = 12

# The stage that runs when a file leaves each state.
_NEXT_STAGE: dict[FileState, str] = {
    FileState.RECEIVED: "validate",
    FileState.VALIDATED: "extract",
    FileState.TEXT_EXTRACTED: "chunk",
    FileState.CHUNKED: "embed",
    FileState.EMBEDDED: "persist",
}


def derive_verification_query(text: str) -> str:
    """Build a deterministic probe query from freshly ingested text.

    Uses the first Markdown heading when there is one, otherwise the first
    sentence, capped at twelve words.
    """
    for line in text.splitlines():
        match = _HEADING_RE.match(line.strip())
        if match and match.group(1).strip():
            return " ".join(match.group(1).split()[:_VERIFY_QUERY_WORDS])

    stripped = text.strip()
    if not stripped:
        return ""
    first = _SENTENCE_END_RE.split(stripped, maxsplit=1)[0]
    return " ".join(first.split()[:_VERIFY_QUERY_WORDS])


@dataclass
class _FileOutcome:
    result: FileResult
    text: str | None = None
    tracker: StageTracker = field(default_factory=StageTracker)


class IngestionPipeline:
    """Orchestrates extraction, chunking, embedding and persistence.

    Parameters
    ----------
    extractor, chunker, embedding_client, store:
        Stage collaborators.
    schema_guard:
        Process-wide cache for the filename uniqueness probe.
    recorder:
        Telemetry side channel; never raises.
    limits:
        Per-request caps and verification settings.
    timeouts:
        Per-stage and overall time budgets.
    retriever:
        Used for the optional self-verification search.
    object_store:
        Optional raw-file retention target.
    url_fetcher:
        Required only for :meth:`ingest_urls`.
    """

    def __init__(
        self,
        extractor: TextExtractor,
        chunker: TextChunker,
        embedding_client: EmbeddingClient,
        store: IDocumentStore,
        schema_guard: SchemaGuard,
        recorder: RequestEventRecorder,
        limits: IngestionLimits | None = None,
        timeouts: StageTimeouts | None = None,
        retriever: HybridRetriever | None = None,
        object_store: IObjectStore | None = None,
        url_fetcher: UrlFetcher | None = None,
    ) -> None:
        self._extractor = extractor
        self._chunker = chunker
        self._embedding_client = embedding_client
        self._store = store
        self._schema_guard = schema_guard
        self._recorder = recorder
        self._limits = limits or IngestionLimits()
        self._timeouts = timeouts or StageTimeouts()
        self._retriever = retriever
        self._object_store = object_store
        self._url_fetcher = url_fetcher
        self._background: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def ingest(
        self,
        files: list[IncomingFile],
        request_id: str | None = None,
    ) -> IngestionResult:
        """Ingest *files* and return a per-file and per-stage report.

        Raises
        ------
        InputValidationError, ConfigurationError, SchemaError, StageTimeoutError
            Request-level failures, raised before any file is processed.
            ``request_id`` and partial ``stage_timings`` are attached.
        """

        async def _given() -> list[IncomingFile]:
            return files

        return await self._run(request_id or str(uuid.uuid4()), _given)

    async def ingest_urls(
        self,
        urls: list[str],
        request_id: str | None = None,
    ) -> IngestionResult:
        """Download *urls* and ingest them like uploaded files."""
        if self._url_fetcher is None:
            raise ConfigurationError(message="URL ingestion is not configured")
        fetcher = self._url_fetcher

        async def _download() -> list[IncomingFile]:
            return await fetcher.fetch_all(urls, self._timeouts.download)

        return await self._run(request_id or str(uuid.uuid4()), _download, download_stage=True)

    async def record_rejection(
        self,
        request_id: str,
        exc: RunbookRagError,
        elapsed_ms: float,
    ) -> None:
        """Log a request rejected while its uploads were still being read.

        Writes the same started/error upload log rows as :meth:`ingest` and
        attaches ``request_id`` and a ``validate`` timing to *exc*.
        """
        tracker = StageTracker()
        tracker.add("validate", elapsed_ms)
        exc.with_stage("validate")
        exc.attach_context(request_id=request_id, stage_timings=tracker.payload())
        logger.warning(
            "ingestion_request_rejected",
            request_id=request_id,
            code=exc.code,
            error=exc.message,
        )
        await self._recorder.upload_started(request_id)
        await self._recorder.upload_finished(
            request_id,
            LogStatus.ERROR.value,
            elapsed_ms,
            f"[{exc.code}] {exc.message}",
            tracker.payload(),
        )

    async def drain_background(self, timeout: float | None = None) -> None:
        """Wait for outstanding raw-file writes."""
        if self._background:
            await asyncio.wait(set(self._background), timeout=timeout)

    # ------------------------------------------------------------------
    # Request orchestration
    # ------------------------------------------------------------------

    async def _run(
        self,
        request_id: str,
        load_files: Callable[[], Awaitable[list[IncomingFile]]],
        download_stage: bool = False,
    ) -> IngestionResult:
        started = time.perf_counter()
        deadline = started + self._timeouts.request
        tracker = StageTracker()

        with structlog.contextvars.bound_contextvars(request_id=request_id):
            await self._recorder.upload_started(request_id)
            try:
                if download_stage:
                    with tracker.measure("download") as counts:
                        files = await load_files()
                        counts["files"] = len(files)
                        counts["bytes"] = sum(f.size for f in files)
                    self._emit(request_id, tracker, "download")
                else:
                    files = await load_files()

                with tracker.measure("validate") as counts:
                    kinds = self._validate(files)
                    counts["files"] = len(files)
                    counts["bytes"] = sum(f.size for f in files)
                self._emit(request_id, tracker, "validate")

                self._embedding_client.ensure_configured()

                with tracker.measure("schema_check"):
                    await with_timeout(
                        "schema_check",
                        self._schema_guard.ensure(self._store),
                        self._budget("schema_check", deadline),
                    )
                self._emit(request_id, tracker, "schema_check")

                result = await self._process(request_id, files, kinds, tracker, started, deadline)
            except RunbookRagError as exc:
                latency_ms = (time.perf_counter() - started) * 1000
                exc.attach_context(request_id=request_id, stage_timings=tracker.payload())
                logger.warning(
                    "ingestion_request_failed",
                    code=exc.code,
                    stage=exc.stage,
                    error=exc.message,
                )
                await self._recorder.upload_finished(
                    request_id,
                    LogStatus.ERROR.value,
                    latency_ms,
                    f"[{exc.code}] {exc.message}",
                    tracker.payload(),
                )
                raise
            except Exception as exc:
                latency_ms = (time.perf_counter() - started) * 1000
                await self._recorder.upload_finished(
                    request_id,
                    LogStatus.ERROR.value,
                    latency_ms,
                    f"Unexpected error: {exc}",
                    tracker.payload(),
                )
                raise

        await self._recorder.upload_finished(
            request_id,
            LogStatus.SUCCESS.value if result.files_processed else LogStatus.ERROR.value,
            result.latency_ms,
            self._failure_summary(result),
            result.timings_payload(),
        )
        return result

    async def _process(
        self,
        request_id: str,
        files: list[IncomingFile],
        kinds: list[DocumentKind],
        tracker: StageTracker,
        started: float,
        deadline: float,
    ) -> IngestionResult:
        chunk_budget = self._limits.max_chunks_per_request
        results: list[FileResult] = []
        inserted: list[str] = []
        verification_text: str | None = None

        for incoming, kind in zip(files, kinds):
            if time.perf_counter() >= deadline:
                results.append(
                    self._failed_result(
                        incoming.filename,
                        StageTimeoutError(stage="request", timeout_seconds=self._timeouts.request),
                        StageTracker(),
                    )
                )
                continue

            outcome = await self._ingest_file(request_id, incoming, kind, chunk_budget, deadline)
            tracker.merge(outcome.tracker)
            results.append(outcome.result)

            if outcome.result.status is FileStatus.INGESTED:
                chunk_budget -= outcome.result.chunks
                inserted.append(incoming.filename)
                if verification_text is None:
                    verification_text = outcome.text

        verified, preview = await self._verify(
            request_id, inserted, verification_text, tracker, deadline
        )
        hit_files = {p.filename for p in preview}

        final: list[FileResult] = []
        for result in results:
            if result.status is FileStatus.INGESTED:
                state = result.state
                found = result.filename in hit_files
                if found:
                    state = self._transition(result.filename, state, FileState.VERIFIED)
                self._transition(result.filename, state, FileState.DONE)
                result = result.model_copy(update={"state": FileState.DONE, "verified": found})
            final.append(result)

        files_processed = sum(1 for r in final if r.status is FileStatus.INGESTED)
        problems = sum(1 for r in final if r.status is not FileStatus.INGESTED)
        if files_processed == 0:
            status = RequestStatus.ERROR
        elif problems:
            status = RequestStatus.PARTIAL
        else:
            status = RequestStatus.SUCCESS

        result = IngestionResult(
            request_id=request_id,
            status=status,
            files_processed=files_processed,
            total_chunks=sum(r.chunks for r in final),
            chunks_skipped=sum(r.chunks_skipped for r in final),
            inserted_filenames=inserted,
            verified_searchable=verified,
            top_retrieval_preview=preview,
            per_file=final,
            stage_timings=tracker.snapshot(),
            latency_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        logger.info(
            "ingestion_complete",
            status=status.value,
            files_processed=files_processed,
            total_chunks=result.total_chunks,
            chunks_skipped=result.chunks_skipped,
            verified_searchable=verified,
            latency_ms=result.latency_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Per-file stages
    # ------------------------------------------------------------------

    async def _ingest_file(
        self,
        request_id: str,
        incoming: IncomingFile,
        kind: DocumentKind,
        chunk_budget: int,
        deadline: float,
    ) -> _FileOutcome:
        filename = incoming.filename
        file_tracker = StageTracker()
        state = FileState.VALIDATED
        chars_truncated = 0
        chunks_skipped = 0

        self._schedule_raw_copy(incoming)

        try:
            with file_tracker.measure("extract") as counts:
                text = await with_timeout(
                    "extract",
                    asyncio.to_thread(self._extractor.extract, incoming.data, kind, filename),
                    self._budget("extract", deadline),
                )
                counts["bytes"] = incoming.size
                if len(text) > self._limits.max_chars_per_file:
                    chars_truncated = len(text) - self._limits.max_chars_per_file
                    text = text[: self._limits.max_chars_per_file]
                    counts["chars_truncated"] = chars_truncated
                counts["chars"] = len(text)
            state = self._transition(filename, state, FileState.TEXT_EXTRACTED)
            self._emit(request_id, file_tracker, "extract", filename)

            with file_tracker.measure("chunk") as counts:
                chunks = self._chunker.chunk(text, heading_aware=kind is DocumentKind.MARKDOWN)
                if not chunks:
                    raise ExtractionError(
                        message=f"'{filename}' produced no chunks",
                        stage="chunk",
                    )
                kept = chunks[: max(chunk_budget, 0)]
                chunks_skipped = len(chunks) - len(kept)
                counts["chunks"] = len(kept)
                if chunks_skipped:
                    counts["chunks_skipped"] = chunks_skipped
            state = self._transition(filename, state, FileState.CHUNKED)
            self._emit(request_id, file_tracker, "chunk", filename)

            if not kept:
                logger.warning(
                    "chunk_budget_exhausted",
                    filename=filename,
                    chunks_skipped=chunks_skipped,
                )
                return _FileOutcome(
                    result=FileResult(
                        filename=filename,
                        status=FileStatus.SKIPPED,
                        state=state,
                        chunks_skipped=chunks_skipped,
                        chars_truncated=chars_truncated,
                        stage_timings=file_tracker.snapshot(),
                    ),
                    tracker=file_tracker,
                )

            with file_tracker.measure("embed") as counts:
                vectors = await with_timeout(
                    "embed",
                    self._embedding_client.embed_batch(kept),
                    self._budget("embed", deadline),
                )
                counts["vectors"] = len(vectors)
            state = self._transition(filename, state, FileState.EMBEDDED)
            self._emit(request_id, file_tracker, "embed", filename)

            records = [
                ChunkRecord(chunk_index=index, text=chunk_text, embedding=vector)
                for index, (chunk_text, vector) in enumerate(zip(kept, vectors))
            ]
            with file_tracker.measure("persist") as counts:
                document_id, inserted_rows = await with_timeout(
                    "persist",
                    self._store.replace_document_chunks(filename, records),
                    self._budget("persist", deadline),
                )
                counts["rows"] = inserted_rows
            state = self._transition(filename, state, FileState.PERSISTED)
            self._emit(request_id, file_tracker, "persist", filename)

        except RunbookRagError as exc:
            exc.with_stage(_NEXT_STAGE.get(state, "unknown"))
            self._emit(request_id, file_tracker, exc.stage or "unknown", filename, failed=True)
            result = self._failed_result(
                filename,
                exc,
                file_tracker,
                chunks_skipped=chunks_skipped,
                chars_truncated=chars_truncated,
            )
            return _FileOutcome(result=result, tracker=file_tracker)

        logger.info(
            "file_ingested",
            filename=filename,
            document_id=document_id,
            chunks=inserted_rows,
            chunks_skipped=chunks_skipped,
            chars_truncated=chars_truncated,
        )
        return _FileOutcome(
            result=FileResult(
                filename=filename,
                status=FileStatus.INGESTED,
                state=state,
                chunks=inserted_rows,
                chunks_skipped=chunks_skipped,
                chars_truncated=chars_truncated,
                document_id=document_id,
                stage_timings=file_tracker.snapshot(),
            ),
            text=text,
            tracker=file_tracker,
        )

    async def _verify(
        self,
        request_id: str,
        inserted: list[str],
        text: str | None,
        tracker: StageTracker,
        deadline: float,
    ) -> tuple[bool, list[RetrievalPreview]]:
        """Search the fresh content, scoped to this request's files.  Fail-soft."""
        if not self._limits.verification_enabled or self._retriever is None:
            return False, []
        if not inserted or not text:
            return False, []

        query = derive_verification_query(text)
        if not query:
            return False, []

        try:
            with tracker.measure("verify") as counts:
                hits = await with_timeout(
                    "verify",
                    self._retriever.search(query, self._limits.verification_top_k, inserted),
                    self._budget("verify", deadline),
                )
                counts["hits"] = len(hits)
        except Exception as exc:  # noqa: BLE001
            logger.warning("self_verification_failed", query=query, error=str(exc))
            self._emit(request_id, tracker, "verify", failed=True)
            return False, []

        self._emit(request_id, tracker, "verify")
        preview_chars = self._retriever.tuning.preview_chars
        preview = [to_preview(hit, preview_chars) for hit in hits]
        logger.info("self_verification_complete", query=query, hits=len(hits))
        return bool(hits), preview

    # ------------------------------------------------------------------
    # Raw file retention
    # ------------------------------------------------------------------

    def _schedule_raw_copy(self, incoming: IncomingFile) -> None:
        if self._object_store is None:
            return
        task = asyncio.create_task(self._retain_raw(incoming))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _retain_raw(self, incoming: IncomingFile) -> None:
        store = self._object_store
        if store is None:
            return
        try:
            await with_timeout(
                "blob_store",
                store.put(incoming.filename, incoming.data, incoming.content_type),
                self._timeouts.blob_store,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "raw_file_retention_failed",
                filename=incoming.filename,
                provider=store.get_provider_name(),
                error=str(exc),
            )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _validate(self, files: list[IncomingFile]) -> list[DocumentKind]:
        limits = self._limits
        if not files:
            raise InputValidationError(message="No files provided")
        if len(files) > limits.max_files:
            raise InputValidationError(
                message=f"Too many files: {len(files)} submitted, maximum is {limits.max_files}",
            )

        total_bytes = sum(f.size for f in files)
        if total_bytes > limits.max_total_bytes:
            raise InputValidationError(
                message=f"Total upload size {total_bytes} bytes exceeds the "
                f"{limits.max_total_bytes} byte limit",
            )

        seen: set[str] = set()
        kinds: list[DocumentKind] = []
        for incoming in files:
            if incoming.filename in seen:
                raise InputValidationError(
                    message=f"Duplicate filename in request: '{incoming.filename}'",
                )
            seen.add(incoming.filename)
            if incoming.size == 0:
                raise InputValidationError(message=f"File '{incoming.filename}' is empty (0 bytes)")
            kinds.append(DocumentKind.detect(incoming.filename, incoming.content_type))
        return kinds

    def _budget(self, stage: str, deadline: float) -> float:
        return min(self._timeouts.for_stage(stage), deadline - time.perf_counter())

    def _emit(
        self,
        request_id: str,
        tracker: StageTracker,
        stage: str,
        filename: str | None = None,
        failed: bool = False,
    ) -> None:
        self._recorder.record_stage_event(
            request_id,
            stage,
            tracker.elapsed_ms(stage),
            tracker.counts(stage),
            filename=filename,
            failed=failed,
        )

    @staticmethod
    def _transition(filename: str, current: FileState, target: FileState) -> FileState:
        logger.debug("file_state_changed", filename=filename, from_state=current.value, to_state=target.value)
        return target

    @staticmethod
    def _failed_result(
        filename: str,
        exc: RunbookRagError,
        tracker: StageTracker,
        chunks_skipped: int = 0,
        chars_truncated: int = 0,
    ) -> FileResult:
        logger.warning(
            "file_ingestion_failed",
            filename=filename,
            code=exc.code,
            stage=exc.stage,
            error=exc.message,
        )
        return FileResult(
            filename=filename,
            status=FileStatus.FAILED,
            state=FileState.FAILED,
            chunks_skipped=chunks_skipped,
            chars_truncated=chars_truncated,
            error=ErrorDetail(
                code=exc.code,
                message=exc.message,
                stage=exc.stage,
                provider=exc.provider_name,
            ),
            stage_timings=tracker.snapshot(),
        )

    @staticmethod
    def _failure_summary(result: IngestionResult) -> str | None:
        problems = [
            f"{r.filename}: {r.error.code} at {r.error.stage}: {r.error.message}"
            if r.error
            else f"{r.filename}: skipped ({r.chunks_skipped} chunks over budget)"
            for r in result.per_file
            if r.status is not FileStatus.INGESTED
        ]
        return "; ".join(problems) or None
