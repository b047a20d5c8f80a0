"""Integration tests for the ingestion pipeline over a real SQLite store.

Uses the deterministic bag-of-words embedding provider so retrieval during
self-verification behaves like a real model without network access.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest

from runbook_rag.config.loader import IngestionLimits, RetrievalTuning, StageTimeouts
from runbook_rag.models.pipeline import FileState, FileStatus, RequestStatus
from runbook_rag.models.rag import IncomingFile
from runbook_rag.providers.document_store.sqlite_store import SQLiteDocumentStore
from runbook_rag.providers.object_store.local_object_store import LocalObjectStore
from runbook_rag.providers.request_log.sqlite_request_log import SQLiteRequestLogStore
from runbook_rag.services.demo_seed import DemoSeeder
from runbook_rag.services.embedding_client import EmbeddingClient
from runbook_rag.services.event_recorder import RequestEventRecorder
from runbook_rag.services.ingestion.chunker import TextChunker
from runbook_rag.services.ingestion.pipeline import IngestionPipeline
from runbook_rag.services.ingestion.text_extractor import TextExtractor
from runbook_rag.services.ingestion.url_fetcher import UrlFetcher
from runbook_rag.services.retrieval.hybrid_retriever import HybridRetriever
from runbook_rag.services.schema_guard import SchemaGuard
from runbook_rag.utils.errors import (
    ConfigurationError,
    InputValidationError,
    SchemaError,
    StageTimeoutError,
)
from tests.conftest import MockEmbeddingProvider


def _markdown(name: str, data: bytes) -> IncomingFile:
    return IncomingFile(filename=name, data=data, content_type="text/markdown")


def _pdf(name: str, data: bytes) -> IncomingFile:
    return IncomingFile(filename=name, data=data, content_type="application/pdf")


class _SlowEmbeddingProvider(MockEmbeddingProvider):
    """Stalls on any batch that mentions *marker*."""

    def __init__(self, marker: str, delay: float) -> None:
        super().__init__()
        self.marker = marker
        self.delay = delay

    async def embed(self, texts: list[str]) -> list[list[float]]:
        if any(self.marker in text for text in texts):
            await asyncio.sleep(self.delay)
        return await super().embed(texts)


def _build_pipeline(
    store: SQLiteDocumentStore,
    request_log: SQLiteRequestLogStore | None = None,
    provider: MockEmbeddingProvider | None = None,
    limits: IngestionLimits | None = None,
    timeouts: StageTimeouts | None = None,
    tuning: RetrievalTuning | None = None,
    **extra,
) -> IngestionPipeline:
    limits = limits or IngestionLimits(chunk_max_size=200, chunk_overlap=20)
    client = EmbeddingClient(provider or MockEmbeddingProvider(), batch_size=4, concurrency=2)
    return IngestionPipeline(
        extractor=TextExtractor(),
        chunker=TextChunker(max_size=limits.chunk_max_size, overlap=limits.chunk_overlap),
        embedding_client=client,
        store=store,
        schema_guard=SchemaGuard(),
        recorder=RequestEventRecorder(log_store=request_log),
        limits=limits,
        timeouts=timeouts,
        retriever=HybridRetriever(embedding_client=client, store=store, tuning=tuning),
        **extra,
    )


# ======================================================================
# Happy path
# ======================================================================


class TestSuccessfulIngestion:
    @pytest.mark.asyncio
    async def test_markdown_and_pdf_are_indexed_and_verified(
        self,
        pipeline: IngestionPipeline,
        sqlite_store: SQLiteDocumentStore,
        sample_markdown_bytes: bytes,
        sample_pdf_bytes: bytes,
    ) -> None:
        result = await pipeline.ingest(
            [_markdown("redis.md", sample_markdown_bytes), _pdf("kafka.pdf", sample_pdf_bytes)]
        )

        assert result.status is RequestStatus.SUCCESS
        assert result.files_processed == 2
        assert result.inserted_filenames == ["redis.md", "kafka.pdf"]
        assert all(f.state is FileState.DONE for f in result.per_file)
        assert all(f.document_id for f in result.per_file)

        stats = await sqlite_store.get_stats()
        assert stats.total_chunks == result.total_chunks
        assert set(stats.chunks_per_filename) == {"redis.md", "kafka.pdf"}

        assert result.verified_searchable is True
        assert result.top_retrieval_preview
        assert result.top_retrieval_preview[0].filename == "redis.md"
        verified_files = {f.filename for f in result.per_file if f.verified}
        assert "redis.md" in verified_files
        assert verified_files == {p.filename for p in result.top_retrieval_preview}

    @pytest.mark.asyncio
    async def test_stage_timings_cover_every_stage(
        self, pipeline: IngestionPipeline, sample_markdown_bytes: bytes
    ) -> None:
        result = await pipeline.ingest([_markdown("redis.md", sample_markdown_bytes)])

        for stage in ("validate", "schema_check", "extract", "chunk", "embed", "persist", "verify"):
            assert stage in result.stage_timings
        assert result.stage_timings["embed"].counts["vectors"] == result.total_chunks
        assert result.per_file[0].stage_timings["persist"].counts["rows"] == result.total_chunks

    @pytest.mark.asyncio
    async def test_reupload_replaces_chunks_under_same_document(
        self,
        pipeline: IngestionPipeline,
        sqlite_store: SQLiteDocumentStore,
        sample_markdown_bytes: bytes,
    ) -> None:
        first = await pipeline.ingest([_markdown("redis.md", sample_markdown_bytes)])
        second = await pipeline.ingest([_markdown("redis.md", b"# Redis\nShort replacement.")])

        assert first.per_file[0].document_id == second.per_file[0].document_id
        stats = await sqlite_store.get_stats()
        assert stats.total_documents == 1
        assert stats.total_chunks == second.total_chunks == 1

    @pytest.mark.asyncio
    async def test_upload_log_records_success(
        self,
        pipeline: IngestionPipeline,
        request_log: SQLiteRequestLogStore,
        sample_markdown_bytes: bytes,
    ) -> None:
        result = await pipeline.ingest([_markdown("redis.md", sample_markdown_bytes)], request_id="req-ok")

        row = await request_log.get_upload("req-ok")
        assert result.request_id == "req-ok"
        assert row is not None
        assert row["status"] == "success"
        assert row["error_message"] is None
        assert "embed" in row["stage_timings"]

    @pytest.mark.asyncio
    async def test_verification_preview_uses_configured_length(
        self, sqlite_store: SQLiteDocumentStore, sample_markdown_bytes: bytes
    ) -> None:
        pipeline = _build_pipeline(sqlite_store, tuning=RetrievalTuning(preview_chars=10))

        result = await pipeline.ingest([_markdown("redis.md", sample_markdown_bytes)])

        assert result.top_retrieval_preview
        for preview in result.top_retrieval_preview:
            assert len(preview.text_preview) <= 13
            assert preview.text_preview.endswith("...")

    @pytest.mark.asyncio
    async def test_long_text_is_truncated(self, sqlite_store: SQLiteDocumentStore) -> None:
        limits = IngestionLimits(max_chars_per_file=300, chunk_max_size=200, chunk_overlap=20)
        pipeline = _build_pipeline(sqlite_store, limits=limits)

        result = await pipeline.ingest([_markdown("long.md", b"# Long\n" + b"word " * 200)])

        assert result.per_file[0].chars_truncated > 0
        assert result.per_file[0].status is FileStatus.INGESTED


# ======================================================================
# Per-file failures and budgets
# ======================================================================


class TestBestEffort:
    @pytest.mark.asyncio
    async def test_bad_pdf_fails_alone(
        self, pipeline: IngestionPipeline, sample_markdown_bytes: bytes
    ) -> None:
        result = await pipeline.ingest(
            [_pdf("broken.pdf", b"not a pdf at all"), _markdown("redis.md", sample_markdown_bytes)]
        )

        assert result.status is RequestStatus.PARTIAL
        assert result.files_processed == 1
        broken = result.per_file[0]
        assert broken.status is FileStatus.FAILED
        assert broken.state is FileState.FAILED
        assert broken.error is not None
        assert broken.error.code == "EXTRACTION_ERROR"
        assert broken.error.stage == "extract"

    @pytest.mark.asyncio
    async def test_embedding_failure_is_reported_at_embed_stage(
        self,
        sqlite_store: SQLiteDocumentStore,
        request_log: SQLiteRequestLogStore,
        sample_markdown_bytes: bytes,
    ) -> None:
        pipeline = _build_pipeline(
            sqlite_store, request_log, provider=MockEmbeddingProvider(fail=True)
        )

        result = await pipeline.ingest([_markdown("redis.md", sample_markdown_bytes)], request_id="req-e")

        assert result.status is RequestStatus.ERROR
        assert result.files_processed == 0
        assert result.verified_searchable is False
        error = result.per_file[0].error
        assert error is not None
        assert error.code == "EMBEDDING_ERROR"
        assert error.stage == "embed"
        assert (await sqlite_store.get_stats()).total_chunks == 0

        row = await request_log.get_upload("req-e")
        assert row["status"] == "error"
        assert "EMBEDDING_ERROR" in row["error_message"]

    @pytest.mark.asyncio
    async def test_chunk_budget_skips_later_files(
        self,
        sqlite_store: SQLiteDocumentStore,
        sample_markdown_bytes: bytes,
        sample_pdf_bytes: bytes,
    ) -> None:
        limits = IngestionLimits(max_chunks_per_request=1, chunk_max_size=200, chunk_overlap=20)
        pipeline = _build_pipeline(sqlite_store, limits=limits)

        result = await pipeline.ingest(
            [_markdown("redis.md", sample_markdown_bytes), _pdf("kafka.pdf", sample_pdf_bytes)]
        )

        first, second = result.per_file
        assert first.status is FileStatus.INGESTED
        assert first.chunks == 1
        assert first.chunks_skipped >= 1
        assert second.status is FileStatus.SKIPPED
        assert second.chunks_skipped >= 1
        assert result.status is RequestStatus.PARTIAL
        assert result.total_chunks == 1
        assert (await sqlite_store.get_stats()).chunks_per_filename == {"redis.md": 1}

    @pytest.mark.asyncio
    async def test_embed_timeout_fails_one_file_and_the_next_continues(
        self, sqlite_store: SQLiteDocumentStore
    ) -> None:
        provider = _SlowEmbeddingProvider(marker="glacier", delay=2.0)
        pipeline = _build_pipeline(
            sqlite_store, provider=provider, timeouts=StageTimeouts(embed=0.2)
        )

        result = await pipeline.ingest(
            [
                _markdown("slow.md", b"# Glacier\n\nThe glacier archive restore is stuck."),
                _markdown("ok.md", b"# Disk\n\nFree space on the data volume."),
            ]
        )

        slow, ok = result.per_file
        assert slow.status is FileStatus.FAILED
        assert slow.error is not None
        assert slow.error.code == "STAGE_TIMEOUT"
        assert slow.error.stage == "embed"
        assert ok.status is FileStatus.INGESTED
        assert result.status is RequestStatus.PARTIAL
        assert result.inserted_filenames == ["ok.md"]
        assert (await sqlite_store.get_stats()).chunks_per_filename == {"ok.md": ok.chunks}

    @pytest.mark.asyncio
    async def test_files_not_started_before_deadline_fail_at_request_stage(
        self, sqlite_store: SQLiteDocumentStore
    ) -> None:
        provider = _SlowEmbeddingProvider(marker="glacier", delay=5.0)
        pipeline = _build_pipeline(
            sqlite_store, provider=provider, timeouts=StageTimeouts(request=0.5)
        )

        result = await pipeline.ingest(
            [
                _markdown("ok.md", b"# Disk\n\nFree space on the data volume."),
                _markdown("slow.md", b"# Glacier\n\nThe glacier archive restore is stuck."),
                _markdown("late.md", b"# Kafka\n\nConsumer lag keeps growing."),
            ]
        )

        ok, slow, late = result.per_file
        assert ok.status is FileStatus.INGESTED
        assert slow.status is FileStatus.FAILED
        assert slow.error is not None
        assert slow.error.stage == "embed"
        assert late.status is FileStatus.FAILED
        assert late.error is not None
        assert late.error.code == "STAGE_TIMEOUT"
        assert late.error.stage == "request"
        assert result.status is RequestStatus.PARTIAL
        assert result.inserted_filenames == ["ok.md"]


# ======================================================================
# Request-level failures
# ======================================================================


class TestRequestValidation:
    @pytest.mark.asyncio
    async def test_too_many_files(
        self, pipeline: IngestionPipeline, request_log: SQLiteRequestLogStore
    ) -> None:
        files = [_markdown(f"r{i}.md", b"# R") for i in range(4)]

        with pytest.raises(InputValidationError, match="Too many files") as exc_info:
            await pipeline.ingest(files, request_id="req-many")

        assert exc_info.value.request_id == "req-many"
        assert exc_info.value.stage == "validate"
        row = await request_log.get_upload("req-many")
        assert row["status"] == "error"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("files", "message"),
        [
            ([], "No files"),
            ([_markdown("empty.md", b"")], "empty"),
            ([IncomingFile(filename="notes.txt", data=b"x", content_type="text/plain")], "Unsupported"),
            ([_markdown("a.md", b"# A"), _markdown("a.md", b"# B")], "Duplicate"),
        ],
    )
    async def test_invalid_requests_fail_before_any_work(
        self,
        pipeline: IngestionPipeline,
        sqlite_store: SQLiteDocumentStore,
        mock_embedding_provider: MockEmbeddingProvider,
        files: list[IncomingFile],
        message: str,
    ) -> None:
        with pytest.raises(InputValidationError, match=message) as exc_info:
            await pipeline.ingest(files)

        assert exc_info.value.request_id
        assert "validate" in exc_info.value.stage_timings
        assert mock_embedding_provider.calls == []
        assert (await sqlite_store.get_stats()).total_documents == 0

    @pytest.mark.asyncio
    async def test_byte_total_is_capped(self, sqlite_store: SQLiteDocumentStore) -> None:
        pipeline = _build_pipeline(sqlite_store, limits=IngestionLimits(max_total_bytes=10))

        with pytest.raises(InputValidationError, match="exceeds"):
            await pipeline.ingest([_markdown("big.md", b"# " + b"x" * 20)])

    @pytest.mark.asyncio
    async def test_unconfigured_embeddings(self, sqlite_store: SQLiteDocumentStore) -> None:
        pipeline = _build_pipeline(sqlite_store, provider=MockEmbeddingProvider(available=False))

        with pytest.raises(ConfigurationError):
            await pipeline.ingest([_markdown("a.md", b"# A")])

    @pytest.mark.asyncio
    async def test_missing_unique_constraint_fails_schema_check(self, tmp_path: Path) -> None:
        store = SQLiteDocumentStore(db_path=tmp_path / "uninitialized.db")
        pipeline = _build_pipeline(store)

        with pytest.raises(SchemaError) as exc_info:
            await pipeline.ingest([_markdown("a.md", b"# A")])

        assert exc_info.value.stage == "schema_check"
        assert "schema_check" in exc_info.value.stage_timings

    @pytest.mark.asyncio
    async def test_exhausted_request_budget(self, sqlite_store: SQLiteDocumentStore) -> None:
        pipeline = _build_pipeline(sqlite_store, timeouts=StageTimeouts(request=0.0))

        with pytest.raises(StageTimeoutError) as exc_info:
            await pipeline.ingest([_markdown("a.md", b"# A")])

        assert exc_info.value.stage == "schema_check"


# ======================================================================
# URL ingestion, raw retention and demo seeding
# ======================================================================


class TestUrlIngestion:
    @pytest.mark.asyncio
    async def test_urls_are_downloaded_and_ingested(
        self, sqlite_store: SQLiteDocumentStore, sample_markdown_bytes: bytes
    ) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, content=sample_markdown_bytes, headers={"content-type": "text/markdown"}
            )

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = UrlFetcher(client, max_files=3, max_total_bytes=1_000_000)
            pipeline = _build_pipeline(sqlite_store, url_fetcher=fetcher)
            result = await pipeline.ingest_urls(["https://blobs.test/runbooks/redis.md"])

        assert result.status is RequestStatus.SUCCESS
        assert result.inserted_filenames == ["redis.md"]
        assert result.stage_timings["download"].counts["files"] == 1

    @pytest.mark.asyncio
    async def test_without_fetcher_is_a_configuration_error(
        self, pipeline: IngestionPipeline
    ) -> None:
        with pytest.raises(ConfigurationError):
            await pipeline.ingest_urls(["https://blobs.test/a.md"])


class TestRawRetention:
    @pytest.mark.asyncio
    async def test_raw_bytes_are_copied_in_background(
        self, sqlite_store: SQLiteDocumentStore, tmp_path: Path, sample_markdown_bytes: bytes
    ) -> None:
        pipeline = _build_pipeline(sqlite_store, object_store=LocalObjectStore(tmp_path / "raw"))

        await pipeline.ingest([_markdown("redis.md", sample_markdown_bytes)])
        await pipeline.drain_background(timeout=5.0)

        assert (tmp_path / "raw" / "redis.md").read_bytes() == sample_markdown_bytes


class TestDemoSeeding:
    @pytest.mark.asyncio
    async def test_seeding_twice_replaces_the_same_documents(
        self, sqlite_store: SQLiteDocumentStore
    ) -> None:
        pipeline = _build_pipeline(sqlite_store)
        seeder = DemoSeeder(
            pipeline=pipeline,
            store=sqlite_store,
            embedding_client=EmbeddingClient(MockEmbeddingProvider()),
        )

        deleted_first, first = await seeder.seed()
        deleted_second, second = await seeder.seed()

        assert deleted_first == 0
        assert deleted_second == 6
        assert first.files_processed == second.files_processed == 6
        assert (await sqlite_store.get_stats()).total_documents == 6

    @pytest.mark.asyncio
    async def test_unconfigured_embeddings_delete_nothing(
        self, sqlite_store: SQLiteDocumentStore
    ) -> None:
        pipeline = _build_pipeline(sqlite_store)
        await DemoSeeder(pipeline, sqlite_store, EmbeddingClient(MockEmbeddingProvider())).seed()

        seeder = DemoSeeder(
            pipeline, sqlite_store, EmbeddingClient(MockEmbeddingProvider(available=False))
        )
        with pytest.raises(ConfigurationError):
            await seeder.seed()

        assert (await sqlite_store.get_stats()).total_documents == 6
