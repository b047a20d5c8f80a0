"""Batched, order-preserving embedding client.

Sits between the pipeline/retriever and an :class:`IEmbeddingProvider`.
Texts are split into batches of at most ``batch_size``; at most
``concurrency`` batches are in flight at once.  Results are reassembled in
input order and the vector count is checked against the input count for
every batch: a mismatch would silently misalign chunks and vectors, so it
is always an :class:`EmbeddingError`.
"""

from __future__ import annotations

import asyncio
import time

import structlog

from runbook_rag.interfaces.embedding_provider import IEmbeddingProvider
from runbook_rag.utils.concurrency import throttled_gather
from runbook_rag.utils.errors import ConfigurationError, EmbeddingError, RunbookRagError

logger = structlog.get_logger(logger_name=__name__)


class EmbeddingClient:
    """Embeds single texts or batches through a provider with bounded concurrency.

    Parameters
    ----------
    provider:
        The embedding backend.
    batch_size:
        Maximum texts per provider call.
    concurrency:
        Maximum provider calls in flight at once for one :meth:`embed_batch`.
    """

    def __init__(
        self,
        provider: IEmbeddingProvider,
        batch_size: int = 100,
        concurrency: int = 2,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self._provider = provider
        self._batch_size = batch_size
        self._concurrency = concurrency

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def provider_name(self) -> str:
        return self._provider.get_provider_name()

    @property
    def dimension(self) -> int:
        return self._provider.get_dimension()

    def is_configured(self) -> bool:
        return self._provider.is_available()

    def ensure_configured(self) -> None:
        """Raise :class:`ConfigurationError` if the provider cannot be used."""
        if not self._provider.is_available():
            raise ConfigurationError(
                message=f"Embedding provider '{self.provider_name}' is not configured "
                "(check OPENAI_API_KEY or EMBEDDING_PROVIDER)",
                provider_name=self.provider_name,
            )

    async def embed(self, text: str) -> list[float]:
        """Embed one text."""
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts*, returning one vector per text in input order.

        Raises
        ------
        EmbeddingError
            If the provider fails or returns a different number of vectors
            than texts sent.
        """
        if not texts:
            return []

        batches = [
            texts[start : start + self._batch_size]
            for start in range(0, len(texts), self._batch_size)
        ]
        semaphore = asyncio.Semaphore(self._concurrency)
        started = time.perf_counter()

        results = await throttled_gather(
            [self._embed_one_batch(idx, batch) for idx, batch in enumerate(batches)],
            semaphore=semaphore,
            return_exceptions=True,
        )

        vectors: list[list[float]] = []
        for result in results:
            if isinstance(result, RunbookRagError):
                raise result
            if isinstance(result, BaseException):
                raise EmbeddingError(
                    message=f"Embedding batch failed: {result}",
                    provider_name=self.provider_name,
                ) from result
            vectors.extend(result)

        if len(vectors) != len(texts):
            raise EmbeddingError(
                message=f"Embedding count mismatch: sent {len(texts)} texts, "
                f"received {len(vectors)} vectors",
                provider_name=self.provider_name,
            )

        logger.info(
            "embedding_batch_complete",
            provider=self.provider_name,
            texts=len(texts),
            batches=len(batches),
            elapsed_ms=round((time.perf_counter() - started) * 1000, 1),
        )
        return vectors

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _embed_one_batch(self, index: int, batch: list[str]) -> list[list[float]]:
        vectors = await self._provider.embed(batch)
        if len(vectors) != len(batch):
            raise EmbeddingError(
                message=f"Embedding count mismatch in batch {index}: sent {len(batch)} "
                f"texts, received {len(vectors)} vectors",
                provider_name=self.provider_name,
            )
        return vectors
