"""FastAPI routes for ingestion, search and corpus management.

Endpoint                              Method  Description
------------------------------------  ------  -----------------------------------
/api/v1/documents/upload              POST    Multipart PDF/Markdown upload
/api/v1/documents/ingest-urls         POST    Download and ingest files by URL
/api/v1/documents                     GET     List indexed documents
/api/v1/documents/{filename}          DELETE  Remove a document and its chunks
/api/v1/search                        POST    Hybrid vector + keyword search
/api/v1/corpus/stats                  GET     Corpus counts
/api/v1/health                        GET     Store, schema and embedding status
/api/v1/demo/seed                     POST    Replace the bundled demo runbooks

Components are read from ``app.state`` (populated at startup by
``main._lifespan``) through ``Depends`` helpers using the ``Annotated``
pattern.  Domain errors are raised, not caught; ``ErrorHandlingMiddleware``
renders them.
"""

from __future__ import annotations

import time
import uuid
from typing import Annotated

import structlog
from fastapi import APIRouter, Depends, File, Request, UploadFile
from fastapi.responses import JSONResponse

from runbook_rag import __version__
from runbook_rag.api.schemas import (
    CorpusStatsResponse,
    DeleteDocumentResponse,
    DocumentListResponse,
    DocumentResponse,
    ErrorResponse,
    HealthResponse,
    IngestUrlsRequest,
    SearchRequest,
    SearchResponse,
    SeedResponse,
)
from runbook_rag.config.loader import IngestionLimits
from runbook_rag.interfaces.document_store import IDocumentStore
from runbook_rag.models.pipeline import IngestionResult, RequestStatus
from runbook_rag.models.rag import IncomingFile
from runbook_rag.services.demo_seed import DemoSeeder
from runbook_rag.services.embedding_client import EmbeddingClient
from runbook_rag.services.ingestion.pipeline import IngestionPipeline
from runbook_rag.services.retrieval.query_service import QueryService
from runbook_rag.utils.errors import DocumentNotFoundError, InputValidationError
from runbook_rag.utils.logging import get_logger

_logger: structlog.BoundLogger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

# Uploads are read in 64 KB pieces so an oversized request is rejected
# without buffering it whole.
_UPLOAD_CHUNK_SIZE = 64 * 1024

_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
    504: {"model": ErrorResponse},
}


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------


def _get_pipeline(request: Request) -> IngestionPipeline:
    return request.app.state.pipeline


def _get_query_service(request: Request) -> QueryService:
    return request.app.state.query_service


def _get_document_store(request: Request) -> IDocumentStore:
    return request.app.state.document_store


def _get_embedding_client(request: Request) -> EmbeddingClient:
    return request.app.state.embedding_client


def _get_limits(request: Request) -> IngestionLimits:
    return request.app.state.limits


def _get_demo_seeder(request: Request) -> DemoSeeder:
    return request.app.state.demo_seeder


PipelineDep = Annotated[IngestionPipeline, Depends(_get_pipeline)]
QueryServiceDep = Annotated[QueryService, Depends(_get_query_service)]
StoreDep = Annotated[IDocumentStore, Depends(_get_document_store)]
EmbeddingDep = Annotated[EmbeddingClient, Depends(_get_embedding_client)]
LimitsDep = Annotated[IngestionLimits, Depends(_get_limits)]
SeederDep = Annotated[DemoSeeder, Depends(_get_demo_seeder)]


def _ingestion_response(result: IngestionResult) -> JSONResponse:
    """200 when anything was ingested, 422 with the full report when nothing was."""
    status_code = 422 if result.status is RequestStatus.ERROR else 200
    return JSONResponse(status_code=status_code, content=result.model_dump(mode="json"))


async def _read_uploads(files: list[UploadFile], limits: IngestionLimits) -> list[IncomingFile]:
    if len(files) > limits.max_files:
        raise InputValidationError(
            message=f"Too many files: {len(files)} submitted, maximum is {limits.max_files}",
        )

    incoming: list[IncomingFile] = []
    total = 0
    for upload in files:
        parts: list[bytes] = []
        while True:
            part = await upload.read(_UPLOAD_CHUNK_SIZE)
            if not part:
                break
            total += len(part)
            if total > limits.max_total_bytes:
                raise InputValidationError(
                    message=f"Total upload size exceeds the {limits.max_total_bytes} byte limit",
                )
            parts.append(part)
        incoming.append(
            IncomingFile(
                filename=upload.filename or "upload",
                data=b"".join(parts),
                content_type=upload.content_type,
            )
        )
    return incoming


# ---------------------------------------------------------------------------
# Ingestion endpoints
# ---------------------------------------------------------------------------


@router.post(
    "/documents/upload",
    response_model=IngestionResult,
    responses={**_ERROR_RESPONSES, 422: {"model": IngestionResult}},
    summary="Upload PDF or Markdown runbooks for indexing",
)
async def upload_documents(
    files: Annotated[list[UploadFile], File(description="PDF or Markdown files.")],
    pipeline: PipelineDep,
    limits: LimitsDep,
) -> JSONResponse:
    """Extract, chunk, embed and store each file; report per-file outcomes."""
    request_id = str(uuid.uuid4())
    started = time.perf_counter()
    try:
        incoming = await _read_uploads(files, limits)
    except InputValidationError as exc:
        await pipeline.record_rejection(request_id, exc, (time.perf_counter() - started) * 1000)
        raise
    result = await pipeline.ingest(incoming, request_id=request_id)
    return _ingestion_response(result)


@router.post(
    "/documents/ingest-urls",
    response_model=IngestionResult,
    responses={**_ERROR_RESPONSES, 422: {"model": IngestionResult}},
    summary="Download files by URL and index them",
)
async def ingest_urls(body: IngestUrlsRequest, pipeline: PipelineDep) -> JSONResponse:
    result = await pipeline.ingest_urls(body.urls)
    return _ingestion_response(result)


# ---------------------------------------------------------------------------
# Corpus endpoints
# ---------------------------------------------------------------------------


@router.get(
    "/documents",
    response_model=DocumentListResponse,
    responses={503: {"model": ErrorResponse}},
    summary="List indexed documents",
)
async def list_documents(store: StoreDep) -> DocumentListResponse:
    documents = await store.list_documents()
    return DocumentListResponse(
        documents=[DocumentResponse(**doc.model_dump()) for doc in documents],
        total=len(documents),
    )


@router.delete(
    "/documents/{filename}",
    response_model=DeleteDocumentResponse,
    responses={404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
    summary="Delete a document and all of its chunks",
)
async def delete_document(filename: str, store: StoreDep) -> DeleteDocumentResponse:
    deleted = await store.delete_document(filename)
    if not deleted:
        raise DocumentNotFoundError(filename)
    return DeleteDocumentResponse(filename=filename, deleted=True)


@router.get(
    "/corpus/stats",
    response_model=CorpusStatsResponse,
    responses={503: {"model": ErrorResponse}},
    summary="Corpus statistics",
)
async def corpus_stats(store: StoreDep) -> CorpusStatsResponse:
    stats = await store.get_stats()
    return CorpusStatsResponse(**stats.model_dump())


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------


@router.post(
    "/search",
    response_model=SearchResponse,
    responses=_ERROR_RESPONSES,
    summary="Hybrid search over indexed runbooks",
)
async def search(body: SearchRequest, query_service: QueryServiceDep) -> SearchResponse:
    request_id, previews, latency_ms = await query_service.search(
        body.query,
        top_k=body.top_k,
        filename_scope=body.filename_scope,
    )
    return SearchResponse(
        request_id=request_id,
        query=body.query,
        top_k=body.top_k or query_service.default_top_k,
        results=previews,
        latency_ms=latency_ms,
    )


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------


@router.get("/health", response_model=HealthResponse, summary="Health check")
async def health(store: StoreDep, embedding_client: EmbeddingDep) -> HealthResponse:
    """Report store reachability, the filename constraint and embedding configuration.

    Never fails: a broken dependency is reported as ``false``.
    """
    db_ok = False
    schema_ok = False
    try:
        db_ok = await store.ping()
        schema_ok = db_ok and await store.has_filename_unique_constraint()
    except Exception as exc:  # noqa: BLE001
        _logger.warning("health_check_store_failed", error=str(exc))

    embedding_configured = embedding_client.is_configured()
    status = "ok" if db_ok and schema_ok and embedding_configured else "degraded"
    return HealthResponse(
        status=status,
        db_ok=db_ok,
        schema_ok=schema_ok,
        embedding_configured=embedding_configured,
        version=__version__,
    )


@router.post(
    "/demo/seed",
    response_model=SeedResponse,
    responses=_ERROR_RESPONSES,
    summary="Replace the bundled demo runbooks",
)
async def seed_demo(seeder: SeederDep) -> SeedResponse:
    deleted, result = await seeder.seed()
    return SeedResponse(deleted=deleted, result=result)
