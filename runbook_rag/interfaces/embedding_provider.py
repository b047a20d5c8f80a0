"""Abstract base class for text-embedding service providers.

Implementations wrap a single embedding backend (OpenAI
``text-embedding-3-small``, ``nomic-embed-text`` served by Ollama, ...).
Batching across calls and bounded concurrency are handled one level up by
:class:`~runbook_rag.services.embedding_client.EmbeddingClient`; a provider
only has to turn one list of texts into one list of vectors.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


# Concrete implementations:
#   OpenAIEmbeddingProvider  -- OpenAI or any OpenAI-compatible gateway
#   OllamaEmbeddingProvider  -- local nomic-embed-text via Ollama
# Located in: runbook_rag/providers/embedding/
class IEmbeddingProvider(ABC):
    """Contract for text-embedding services used by ingestion and search."""

    @abstractmethod
    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Generate embedding vectors for one provider call.

        Parameters
        ----------
        texts:
            Text strings to embed in a single request.

        Returns
        -------
        list[list[float]]
            Embedding vectors corresponding positionally to *texts*.

        Raises
        ------
        runbook_rag.utils.errors.EmbeddingError
            If the embedding API call fails.
        """

    @abstractmethod
    def get_dimension(self) -> int:
        """Return the dimensionality of the embedding vectors.

        Must match the ``vector(N)`` column of the chunk table.
        """

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier, e.g. ``"openai_embedding"``."""

    @abstractmethod
    def is_available(self) -> bool:
        """Return ``True`` if the provider has the configuration it needs.

        Must not make a network call that generates embeddings.
        """
