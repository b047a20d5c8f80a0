"""Component assembly shared by the HTTP app and the CLI.

Selects the embedding provider, document store, request log and object
store from :class:`Settings`, builds the typed tuning views from the YAML
config, and wires every service with explicit constructor injection.

Returns a flat dict of named components; the app copies it onto
``app.state`` and the CLI reads it directly.
"""

from __future__ import annotations

from typing import Any

import httpx
import structlog

from runbook_rag.config.loader import IngestionLimits, RetrievalTuning, StageTimeouts
from runbook_rag.config.settings import Settings
from runbook_rag.interfaces.document_store import IDocumentStore
from runbook_rag.interfaces.embedding_provider import IEmbeddingProvider
from runbook_rag.interfaces.object_store import IObjectStore
from runbook_rag.interfaces.request_log_store import IRequestLogStore
from runbook_rag.services.demo_seed import DemoSeeder
from runbook_rag.services.embedding_client import EmbeddingClient
from runbook_rag.services.event_recorder import RequestEventRecorder
from runbook_rag.services.ingestion.chunker import TextChunker
from runbook_rag.services.ingestion.pipeline import IngestionPipeline
from runbook_rag.services.ingestion.text_extractor import TextExtractor
from runbook_rag.services.ingestion.url_fetcher import UrlFetcher
from runbook_rag.services.retrieval.hybrid_retriever import HybridRetriever
from runbook_rag.services.retrieval.query_service import QueryService
from runbook_rag.services.schema_guard import SchemaGuard
from runbook_rag.utils.errors import ConfigurationError

logger = structlog.get_logger(logger_name=__name__)


# ---------------------------------------------------------------------------
# Provider selection
# ---------------------------------------------------------------------------


def _build_embedding_provider(app_settings: Settings) -> IEmbeddingProvider:
    """Return the provider named by ``EMBEDDING_PROVIDER``.

    An unconfigured provider is still returned; requests that need it fail
    with a :class:`ConfigurationError` before doing any work.
    """
    if app_settings.embedding_provider == "ollama":
        from runbook_rag.providers.embedding.ollama_embedding_provider import (
            OllamaEmbeddingProvider,
        )

        return OllamaEmbeddingProvider(settings=app_settings)

    if app_settings.embedding_provider != "openai":
        raise ConfigurationError(
            message=f"Unknown EMBEDDING_PROVIDER '{app_settings.embedding_provider}'",
        )

    from runbook_rag.providers.embedding.openai_embedding_provider import (
        OpenAIEmbeddingProvider,
    )

    return OpenAIEmbeddingProvider(settings=app_settings)


def _build_stores(
    app_settings: Settings,
    dimension: int,
) -> tuple[IDocumentStore, IRequestLogStore]:
    if app_settings.store_backend == "sqlite":
        from runbook_rag.providers.document_store.sqlite_store import SQLiteDocumentStore
        from runbook_rag.providers.request_log.sqlite_request_log import (
            SQLiteRequestLogStore,
        )

        return (
            SQLiteDocumentStore(db_path=app_settings.sqlite_db_path),
            SQLiteRequestLogStore(db_path=app_settings.sqlite_db_path),
        )

    if app_settings.store_backend != "postgres":
        raise ConfigurationError(
            message=f"Unknown STORE_BACKEND '{app_settings.store_backend}'",
        )

    from runbook_rag.providers.document_store.postgres_store import PostgresDocumentStore
    from runbook_rag.providers.postgres_pool import PostgresConnectionManager
    from runbook_rag.providers.request_log.postgres_request_log import (
        PostgresRequestLogStore,
    )

    connections = PostgresConnectionManager(
        dsn=app_settings.database_url,
        min_size=app_settings.db_pool_min_size,
        max_size=app_settings.db_pool_max_size,
    )
    return (
        PostgresDocumentStore(connections=connections, dimension=dimension),
        PostgresRequestLogStore(connections=connections),
    )


def _build_object_store(
    app_settings: Settings,
    http_client: httpx.AsyncClient,
) -> IObjectStore | None:
    backend = app_settings.object_store_backend
    if backend == "none":
        return None
    if backend == "local":
        from runbook_rag.providers.object_store.local_object_store import LocalObjectStore

        return LocalObjectStore(base_dir=app_settings.object_store_dir)
    if backend == "http":
        from runbook_rag.providers.object_store.http_object_store import HttpObjectStore

        return HttpObjectStore(
            http_client=http_client,
            base_url=app_settings.object_store_url,
            token=app_settings.object_store_token,
        )
    raise ConfigurationError(message=f"Unknown OBJECT_STORE_BACKEND '{backend}'")


# ---------------------------------------------------------------------------
# Full assembly
# ---------------------------------------------------------------------------


def build_components(app_settings: Settings, config: dict[str, Any]) -> dict[str, Any]:
    """Construct every provider and service for one process.

    Parameters
    ----------
    app_settings:
        Secrets, connection strings and backend choices.
    config:
        Resolved tuning dict from :func:`runbook_rag.config.loader.load_config`.

    Raises
    ------
    ConfigurationError
        If a backend name is unknown or Postgres is selected without a
        ``DATABASE_URL``.
    """
    limits = IngestionLimits.from_config(config)
    timeouts = StageTimeouts.from_config(config)
    tuning = RetrievalTuning.from_config(config)

    # -- Shared resources --
    http_client = httpx.AsyncClient(timeout=30.0)
    schema_guard = SchemaGuard()

    # -- Providers --
    embedding_provider = _build_embedding_provider(app_settings)
    store, log_store = _build_stores(app_settings, embedding_provider.get_dimension())
    object_store = _build_object_store(app_settings, http_client)

    # -- Services --
    embedding_client = EmbeddingClient(
        provider=embedding_provider,
        batch_size=limits.embedding_batch_size,
        concurrency=limits.embedding_concurrency,
    )
    recorder = RequestEventRecorder(log_store=log_store)
    retriever = HybridRetriever(
        embedding_client=embedding_client,
        store=store,
        tuning=tuning,
        timeouts=timeouts,
    )
    url_fetcher = UrlFetcher(
        http_client=http_client,
        max_files=limits.max_files,
        max_total_bytes=limits.max_total_bytes,
    )
    pipeline = IngestionPipeline(
        extractor=TextExtractor(),
        chunker=TextChunker(max_size=limits.chunk_max_size, overlap=limits.chunk_overlap),
        embedding_client=embedding_client,
        store=store,
        schema_guard=schema_guard,
        recorder=recorder,
        limits=limits,
        timeouts=timeouts,
        retriever=retriever,
        object_store=object_store,
        url_fetcher=url_fetcher,
    )
    query_service = QueryService(retriever=retriever, recorder=recorder)
    demo_seeder = DemoSeeder(pipeline=pipeline, store=store, embedding_client=embedding_client)

    logger.info(
        "components_built",
        embedding_provider=embedding_client.provider_name,
        embedding_configured=embedding_client.is_configured(),
        store_backend=app_settings.store_backend,
        object_store=object_store.get_provider_name() if object_store else None,
    )

    return {
        "settings": app_settings,
        "http_client": http_client,
        "limits": limits,
        "timeouts": timeouts,
        "tuning": tuning,
        "schema_guard": schema_guard,
        "embedding_client": embedding_client,
        "document_store": store,
        "request_log_store": log_store,
        "object_store": object_store,
        "recorder": recorder,
        "retriever": retriever,
        "pipeline": pipeline,
        "query_service": query_service,
        "demo_seeder": demo_seeder,
    }


async def initialize_stores(components: dict[str, Any]) -> None:
    """Create tables, indexes and constraints for the document and log stores."""
    store: IDocumentStore = components["document_store"]
    log_store: IRequestLogStore = components["request_log_store"]
    await store.initialize()
    await log_store.initialize()
    components["schema_guard"].reset()


async def close_components(components: dict[str, Any], drain_timeout: float = 10.0) -> None:
    """Drain background writes, then release pools and the HTTP client."""
    pipeline: IngestionPipeline = components["pipeline"]
    await pipeline.drain_background(timeout=drain_timeout)

    store: IDocumentStore = components["document_store"]
    await store.close()

    http_client: httpx.AsyncClient = components["http_client"]
    await http_client.aclose()
    logger.info("components_closed")
