"""Replaces the bundled demo runbooks in the corpus."""

from __future__ import annotations

import uuid

import structlog

from runbook_rag.config.demo_runbooks import demo_filenames, demo_files
from runbook_rag.interfaces.document_store import IDocumentStore
from runbook_rag.models.pipeline import IngestionResult
from runbook_rag.services.embedding_client import EmbeddingClient
from runbook_rag.services.ingestion.pipeline import IngestionPipeline

logger = structlog.get_logger(logger_name=__name__)


class DemoSeeder:
    """Deletes any existing demo documents, then ingests them again.

    The embedding configuration is checked before anything is deleted so a
    misconfigured deployment keeps its current demo corpus.
    """

    def __init__(
        self,
        pipeline: IngestionPipeline,
        store: IDocumentStore,
        embedding_client: EmbeddingClient,
    ) -> None:
        self._pipeline = pipeline
        self._store = store
        self._embedding_client = embedding_client

    async def seed(self, request_id: str | None = None) -> tuple[int, IngestionResult]:
        """Return ``(documents_deleted, ingestion_result)``."""
        request_id = request_id or str(uuid.uuid4())
        self._embedding_client.ensure_configured()

        deleted = 0
        for filename in demo_filenames():
            if await self._store.delete_document(filename):
                deleted += 1

        result = await self._pipeline.ingest(demo_files(), request_id=request_id)
        logger.info(
            "demo_corpus_seeded",
            request_id=request_id,
            deleted=deleted,
            inserted=len(result.inserted_filenames),
            chunks=result.total_chunks,
        )
        return deleted, result
