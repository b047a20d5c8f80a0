"""Abstract base class for the document + chunk store.

Defines the persistence contract for indexed documents: idempotent document
upsert keyed by filename, chunk replacement, bulk chunk insert and cosine
nearest-neighbour candidate search.  The production implementation is
Postgres with the pgvector extension; a SQLite implementation backs local
development and the test suite.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from runbook_rag.models.rag import ChunkRecord, CorpusStats, Document, RetrievalCandidate


# Concrete implementations:
#   PostgresDocumentStore  -- psycopg 3 + pgvector (production)
#   SQLiteDocumentStore    -- aiosqlite, cosine distance computed in-process
# Located in: runbook_rag/providers/document_store/
class IDocumentStore(ABC):
    """Contract for document and chunk persistence.

    All methods are async.  Database failures surface as
    :class:`~runbook_rag.utils.errors.StoreError`.
    """

    @abstractmethod
    async def initialize(self) -> None:
        """Create tables, indexes and constraints if they do not exist."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections held by the store."""

    @abstractmethod
    async def ping(self) -> bool:
        """Return ``True`` if the database answers a trivial query."""

    @abstractmethod
    async def has_filename_unique_constraint(self) -> bool:
        """Return ``True`` if ``documents.filename`` is covered by a unique constraint.

        Document upserts rely on this constraint for their conflict target;
        without it re-uploads would create duplicate documents.
        """

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @abstractmethod
    async def upsert_document(self, filename: str) -> str:
        """Insert or touch the document for *filename* and return its id.

        The same filename always yields the same id.
        """

    @abstractmethod
    async def delete_chunks(self, document_id: str) -> int:
        """Delete all chunks of a document.  Returns the number removed."""

    @abstractmethod
    async def bulk_insert_chunks(self, document_id: str, chunks: list[ChunkRecord]) -> int:
        """Insert *chunks* for a document with multi-row statements.

        Returns the number of rows inserted.
        """

    @abstractmethod
    async def replace_document_chunks(
        self,
        filename: str,
        chunks: list[ChunkRecord],
    ) -> tuple[str, int]:
        """Upsert the document, delete its chunks and insert *chunks* atomically.

        Either the new chunk set is fully visible or the previous one is left
        untouched.  Returns ``(document_id, inserted_count)``.
        """

    @abstractmethod
    async def delete_document(self, filename: str) -> bool:
        """Delete a document and, by cascade, its chunks.

        Returns ``False`` if no document had that filename.
        """

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @abstractmethod
    async def search_candidates(
        self,
        embedding: list[float],
        limit: int,
        filenames: list[str] | None = None,
    ) -> list[RetrievalCandidate]:
        """Return up to *limit* chunks ordered by ascending cosine distance.

        Parameters
        ----------
        embedding:
            Query vector.
        limit:
            Maximum rows to return.
        filenames:
            When given, only chunks of these documents are considered.
        """

    @abstractmethod
    async def list_documents(self) -> list[Document]:
        """Return all documents with their chunk counts, newest first."""

    @abstractmethod
    async def get_stats(self) -> CorpusStats:
        """Return aggregate corpus counts."""
