"""Shared pytest fixtures for the runbook-rag test suite."""

from __future__ import annotations

import hashlib
import math
import re
from pathlib import Path
from typing import Any

import fitz
import pytest
import pytest_asyncio

from runbook_rag.config.loader import IngestionLimits, RetrievalTuning, StageTimeouts
from runbook_rag.config.settings import Settings
from runbook_rag.interfaces.embedding_provider import IEmbeddingProvider
from runbook_rag.providers.document_store.sqlite_store import SQLiteDocumentStore
from runbook_rag.providers.request_log.sqlite_request_log import SQLiteRequestLogStore
from runbook_rag.services.embedding_client import EmbeddingClient
from runbook_rag.services.event_recorder import RequestEventRecorder
from runbook_rag.services.ingestion.chunker import TextChunker
from runbook_rag.services.ingestion.pipeline import IngestionPipeline
from runbook_rag.services.ingestion.text_extractor import TextExtractor
from runbook_rag.services.retrieval.hybrid_retriever import HybridRetriever
from runbook_rag.services.schema_guard import SchemaGuard
from runbook_rag.utils.errors import EmbeddingError

# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

EMBEDDING_DIM = 64

_TOKEN_RE = re.compile(r"[a-z0-9]+")


def bag_of_words_vector(text: str, dim: int = EMBEDDING_DIM) -> list[float]:
    """Deterministic unit vector: each token increments a SHA-256-chosen bucket.

    Texts that share words end up close in cosine distance, so retrieval
    tests behave like a real embedding model without a network call.
    """
    values = [0.0] * dim
    for token in _TOKEN_RE.findall(text.lower()):
        bucket = int.from_bytes(hashlib.sha256(token.encode("utf-8")).digest()[:4], "big") % dim
        values[bucket] += 1.0
    magnitude = math.sqrt(sum(v * v for v in values))
    if magnitude == 0:
        values[0] = 1.0
        return values
    return [v / magnitude for v in values]


class MockEmbeddingProvider(IEmbeddingProvider):
    """In-memory deterministic embedding provider for tests.

    Parameters
    ----------
    wrong_count:
        Return one vector fewer than requested.
    fail:
        Raise :class:`EmbeddingError` on every call.
    available:
        Value reported by :meth:`is_available`.
    """

    def __init__(
        self,
        dim: int = EMBEDDING_DIM,
        wrong_count: bool = False,
        fail: bool = False,
        available: bool = True,
    ) -> None:
        self.dim = dim
        self.wrong_count = wrong_count
        self.fail = fail
        self.available = available
        self.calls: list[list[str]] = []

    async def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail:
            raise EmbeddingError(message="mock provider failure", provider_name="mock-embedding")
        vectors = [bag_of_words_vector(t, self.dim) for t in texts]
        if self.wrong_count:
            return vectors[:-1]
        return vectors

    def get_dimension(self) -> int:
        return self.dim

    def get_provider_name(self) -> str:
        return "mock-embedding"

    def is_available(self) -> bool:
        return self.available


@pytest.fixture
def mock_embedding_provider() -> MockEmbeddingProvider:
    return MockEmbeddingProvider()


@pytest.fixture
def embedding_client(mock_embedding_provider: MockEmbeddingProvider) -> EmbeddingClient:
    return EmbeddingClient(provider=mock_embedding_provider, batch_size=4, concurrency=2)


# ---------------------------------------------------------------------------
# Sample documents
# ---------------------------------------------------------------------------

SAMPLE_MARKDOWN = """# Redis Failover

Redis primary is unreachable and clients report READONLY errors.

## Diagnosis
Check sentinel status with redis-cli -p 26379 sentinel masters.
Confirm replication lag on every replica before promoting one.

## Recovery
Promote the healthiest replica and repoint the application connection string.
Restart the sentinel quorum if it lost track of the primary.
"""

SAMPLE_PDF_TEXT = (
    "Kafka consumer lag runbook.\n"
    "When consumer lag grows, check partition assignment and broker health.\n"
    "Scale the consumer group or increase partitions if throughput is too low."
)


def make_pdf(text: str) -> bytes:
    """Build a one-page PDF containing *text* with PyMuPDF."""
    doc = fitz.open()
    page = doc.new_page()
    page.insert_text((72, 72), text, fontsize=11)
    data = doc.tobytes()
    doc.close()
    return data


@pytest.fixture
def sample_markdown() -> str:
    return SAMPLE_MARKDOWN


@pytest.fixture
def sample_markdown_bytes() -> bytes:
    return SAMPLE_MARKDOWN.encode("utf-8")


@pytest.fixture
def sample_pdf_bytes() -> bytes:
    return make_pdf(SAMPLE_PDF_TEXT)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings pointing every local resource at ``tmp_path``."""
    return Settings(
        _env_file=None,
        embedding_provider="openai",
        openai_api_key="sk-test",
        store_backend="sqlite",
        sqlite_db_path=str(tmp_path / "runbook_rag.db"),
        object_store_backend="none",
        config_path=str(tmp_path / "missing-config.yaml"),
        log_level="WARNING",
    )


@pytest.fixture
def tuning_config() -> dict[str, Any]:
    """A small resolved config dict, as returned by ``load_config``."""
    return {
        "ingestion": {
            "max_files": 3,
            "max_total_bytes": 1_000_000,
            "max_chars_per_file": 50_000,
            "max_chunks_per_request": 200,
        },
        "chunking": {"max_size": 200, "overlap": 20},
        "embedding": {"batch_size": 4, "concurrency": 2},
        "verification": {"enabled": True, "top_k": 3},
        "retrieval": {"default_top_k": 5, "max_top_k": 20},
    }


@pytest.fixture
def limits(tuning_config: dict[str, Any]) -> IngestionLimits:
    return IngestionLimits.from_config(tuning_config)


@pytest.fixture
def timeouts() -> StageTimeouts:
    return StageTimeouts()


@pytest.fixture
def tuning(tuning_config: dict[str, Any]) -> RetrievalTuning:
    return RetrievalTuning.from_config(tuning_config)


# ---------------------------------------------------------------------------
# Stores and services
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def sqlite_store(tmp_path: Path) -> SQLiteDocumentStore:
    store = SQLiteDocumentStore(db_path=tmp_path / "store.db")
    await store.initialize()
    return store


@pytest_asyncio.fixture
async def request_log(sqlite_store: SQLiteDocumentStore) -> SQLiteRequestLogStore:
    log_store = SQLiteRequestLogStore(db_path=sqlite_store.db_path)
    await log_store.initialize()
    return log_store


@pytest.fixture
def retriever(
    embedding_client: EmbeddingClient,
    sqlite_store: SQLiteDocumentStore,
    tuning: RetrievalTuning,
    timeouts: StageTimeouts,
) -> HybridRetriever:
    return HybridRetriever(
        embedding_client=embedding_client,
        store=sqlite_store,
        tuning=tuning,
        timeouts=timeouts,
    )


@pytest.fixture
def pipeline(
    embedding_client: EmbeddingClient,
    sqlite_store: SQLiteDocumentStore,
    request_log: SQLiteRequestLogStore,
    retriever: HybridRetriever,
    limits: IngestionLimits,
    timeouts: StageTimeouts,
) -> IngestionPipeline:
    return IngestionPipeline(
        extractor=TextExtractor(),
        chunker=TextChunker(max_size=limits.chunk_max_size, overlap=limits.chunk_overlap),
        embedding_client=embedding_client,
        store=sqlite_store,
        schema_guard=SchemaGuard(),
        recorder=RequestEventRecorder(log_store=request_log),
        limits=limits,
        timeouts=timeouts,
        retriever=retriever,
    )
