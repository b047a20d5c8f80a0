"""Pydantic request/response schemas for the runbook-rag API.

Ingestion responses reuse :class:`IngestionResult` from the domain models
directly; the schemas here cover everything else.

Convention: request schemas end with ``Request``, response schemas end with
``Response``.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from runbook_rag.models.pipeline import ErrorDetail, IngestionResult, RetrievalPreview


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class SearchRequest(BaseModel):
    """Body for ``POST /search``."""

    query: str = Field(min_length=1, max_length=2000, description="Natural-language query.")
    top_k: int | None = Field(default=None, ge=1, description="Results wanted; server default when omitted.")
    filename_scope: list[str] | None = Field(
        default=None,
        description="Restrict results to these filenames.",
    )


class IngestUrlsRequest(BaseModel):
    """Body for ``POST /documents/ingest-urls``."""

    urls: list[str] = Field(min_length=1, description="http(s) URLs of PDF or Markdown files.")


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


class SearchResponse(BaseModel):
    request_id: str
    query: str
    top_k: int
    results: list[RetrievalPreview] = Field(default_factory=list)
    latency_ms: float


class DocumentResponse(BaseModel):
    id: str
    filename: str
    uploaded_at: datetime | None = None
    chunk_count: int = 0


class DocumentListResponse(BaseModel):
    documents: list[DocumentResponse] = Field(default_factory=list)
    total: int = 0


class DeleteDocumentResponse(BaseModel):
    filename: str
    deleted: bool


class CorpusStatsResponse(BaseModel):
    total_documents: int = 0
    total_unique_filenames: int = 0
    total_chunks: int = 0
    chunks_per_filename: dict[str, int] = Field(default_factory=dict)


class HealthResponse(BaseModel):
    """``status`` is ``ok`` only when the store, schema and embeddings are all usable."""

    status: str
    db_ok: bool
    schema_ok: bool
    embedding_configured: bool
    version: str


class SeedResponse(BaseModel):
    deleted: int = Field(description="Existing demo documents removed before re-ingestion.")
    result: IngestionResult


class ErrorResponse(BaseModel):
    """Error envelope returned for every domain error."""

    request_id: str
    error: ErrorDetail
    stage_timings: dict[str, Any] = Field(default_factory=dict)
    latency_ms: float = 0.0
