"""Postgres + pgvector document store.

Implements :class:`IDocumentStore` over psycopg 3 (async) with the pgvector
adapter.  Documents are keyed by a unique filename; chunks reference their
document with ``ON DELETE CASCADE`` and carry a ``vector(N)`` embedding
searched by cosine distance (``<=>``) through an ivfflat index.
"""

from __future__ import annotations

import numpy as np
import structlog

from runbook_rag.interfaces.document_store import IDocumentStore
from runbook_rag.models.rag import ChunkRecord, CorpusStats, Document, RetrievalCandidate
from runbook_rag.providers.postgres_pool import PostgresConnectionManager

logger = structlog.get_logger(logger_name=__name__)

# Rows per INSERT statement; keeps parameter count well under the
# 65535-parameter protocol limit.
_INSERT_GROUP_SIZE = 1000

_CREATE_DOCUMENTS_SQL = """\
CREATE TABLE IF NOT EXISTS documents (
    id          UUID        PRIMARY KEY DEFAULT gen_random_uuid(),
    filename    TEXT        NOT NULL,
    uploaded_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT documents_filename_unique UNIQUE (filename)
);
"""

# Tables created before the constraint existed get it added here.
_ADD_FILENAME_CONSTRAINT_SQL = """\
DO $$
BEGIN
    IF NOT EXISTS (
        SELECT 1 FROM pg_constraint WHERE conname = 'documents_filename_unique'
    ) THEN
        ALTER TABLE documents
            ADD CONSTRAINT documents_filename_unique UNIQUE (filename);
    END IF;
END $$;
"""

_CREATE_CHUNKS_SQL = """\
CREATE TABLE IF NOT EXISTS chunks (
    id          UUID    PRIMARY KEY DEFAULT gen_random_uuid(),
    document_id UUID    NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    chunk_index INTEGER NOT NULL,
    text        TEXT    NOT NULL,
    embedding   vector({dimension}),
    CONSTRAINT chunks_document_index_unique UNIQUE (document_id, chunk_index)
);
"""

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS chunks_document_id_idx ON chunks(document_id);",
    "CREATE INDEX IF NOT EXISTS chunks_embedding_idx ON chunks "
    "USING ivfflat (embedding vector_cosine_ops) WITH (lists = 100);",
]

_UNIQUE_FILENAME_PROBE_SQL = """\
SELECT
    EXISTS (
        SELECT 1
        FROM pg_constraint c
        JOIN pg_class t ON t.oid = c.conrelid
        JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY (c.conkey)
        WHERE t.relname = 'documents'
          AND c.contype IN ('u', 'p')
          AND a.attname = 'filename'
          AND array_length(c.conkey, 1) = 1
    )
    OR EXISTS (
        SELECT 1
        FROM pg_index i
        JOIN pg_class t ON t.oid = i.indrelid
        JOIN pg_attribute a ON a.attrelid = t.oid AND a.attnum = ANY (i.indkey)
        WHERE t.relname = 'documents'
          AND i.indisunique
          AND i.indnkeyatts = 1
          AND a.attname = 'filename'
    );
"""

_UPSERT_DOCUMENT_SQL = """\
INSERT INTO documents (filename)
VALUES (%s)
ON CONFLICT (filename) DO UPDATE SET uploaded_at = now()
RETURNING id;
"""

_DELETE_CHUNKS_SQL = "DELETE FROM chunks WHERE document_id = %s;"

_INSERT_CHUNKS_PREFIX = "INSERT INTO chunks (document_id, chunk_index, text, embedding) VALUES "

_SEARCH_SQL = """\
SELECT c.id, c.text, c.chunk_index, d.filename,
       c.embedding <=> %(query)s AS distance
FROM chunks c
JOIN documents d ON d.id = c.document_id
WHERE c.embedding IS NOT NULL{scope}
ORDER BY c.embedding <=> %(query)s
LIMIT %(limit)s;
"""

_LIST_DOCUMENTS_SQL = """\
SELECT d.id, d.filename, d.uploaded_at, count(c.id) AS chunk_count
FROM documents d
LEFT JOIN chunks c ON c.document_id = d.id
GROUP BY d.id, d.filename, d.uploaded_at
ORDER BY d.uploaded_at DESC;
"""


class PostgresDocumentStore(IDocumentStore):
    """pgvector-backed document store.

    Parameters
    ----------
    connections:
        Shared pool manager (also used by the Postgres request-log store).
    dimension:
        Embedding dimensionality for the ``vector(N)`` column.
    """

    def __init__(self, connections: PostgresConnectionManager, dimension: int = 1536) -> None:
        self._db = connections
        self._dimension = dimension

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        await self._db.ensure_extensions()
        async with self._db.connection("initialize schema") as conn:
            await conn.execute(_CREATE_DOCUMENTS_SQL)
            await conn.execute(_ADD_FILENAME_CONSTRAINT_SQL)
            await conn.execute(_CREATE_CHUNKS_SQL.format(dimension=int(self._dimension)))
            for idx_sql in _CREATE_INDICES_SQL:
                await conn.execute(idx_sql)
        logger.info("document_store_initialized", backend="postgres", dimension=self._dimension)

    async def close(self) -> None:
        await self._db.close()

    async def ping(self) -> bool:
        async with self._db.connection("ping") as conn:
            cur = await conn.execute("SELECT 1;")
            row = await cur.fetchone()
        return row is not None and row[0] == 1

    async def has_filename_unique_constraint(self) -> bool:
        async with self._db.connection("schema probe") as conn:
            cur = await conn.execute(_UNIQUE_FILENAME_PROBE_SQL)
            row = await cur.fetchone()
        return bool(row and row[0])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert_document(self, filename: str) -> str:
        async with self._db.connection("upsert document") as conn:
            return await self._upsert(conn, filename)

    async def delete_chunks(self, document_id: str) -> int:
        async with self._db.connection("delete chunks") as conn:
            cur = await conn.execute(_DELETE_CHUNKS_SQL, (document_id,))
            return cur.rowcount

    async def bulk_insert_chunks(self, document_id: str, chunks: list[ChunkRecord]) -> int:
        if not chunks:
            return 0
        async with self._db.connection("bulk insert chunks") as conn:
            async with conn.transaction():
                return await self._insert(conn, document_id, chunks)

    async def replace_document_chunks(
        self,
        filename: str,
        chunks: list[ChunkRecord],
    ) -> tuple[str, int]:
        async with self._db.connection("replace document chunks") as conn:
            async with conn.transaction():
                document_id = await self._upsert(conn, filename)
                cur = await conn.execute(_DELETE_CHUNKS_SQL, (document_id,))
                deleted = cur.rowcount
                inserted = await self._insert(conn, document_id, chunks)

        logger.info(
            "document_chunks_replaced",
            filename=filename,
            document_id=document_id,
            deleted=deleted,
            inserted=inserted,
        )
        return document_id, inserted

    async def delete_document(self, filename: str) -> bool:
        async with self._db.connection("delete document") as conn:
            cur = await conn.execute("DELETE FROM documents WHERE filename = %s;", (filename,))
            deleted = cur.rowcount > 0
        logger.info("document_deleted", filename=filename, deleted=deleted)
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def search_candidates(
        self,
        embedding: list[float],
        limit: int,
        filenames: list[str] | None = None,
    ) -> list[RetrievalCandidate]:
        if filenames is not None and not filenames:
            return []

        params: dict = {"query": np.asarray(embedding, dtype=np.float32), "limit": limit}
        scope = ""
        if filenames:
            scope = "\n  AND d.filename = ANY(%(filenames)s)"
            params["filenames"] = list(filenames)

        async with self._db.connection("vector search") as conn:
            cur = await conn.execute(_SEARCH_SQL.format(scope=scope), params)
            rows = await cur.fetchall()

        return [
            RetrievalCandidate(
                chunk_id=str(row[0]),
                text=row[1],
                chunk_index=row[2],
                filename=row[3],
                distance=float(row[4]),
            )
            for row in rows
        ]

    async def list_documents(self) -> list[Document]:
        async with self._db.connection("list documents") as conn:
            cur = await conn.execute(_LIST_DOCUMENTS_SQL)
            rows = await cur.fetchall()
        return [
            Document(id=str(row[0]), filename=row[1], uploaded_at=row[2], chunk_count=row[3])
            for row in rows
        ]

    async def get_stats(self) -> CorpusStats:
        async with self._db.connection("corpus stats") as conn:
            cur = await conn.execute(
                "SELECT count(*), count(DISTINCT filename) FROM documents;"
            )
            doc_row = await cur.fetchone()
            cur = await conn.execute("SELECT count(*) FROM chunks;")
            chunk_row = await cur.fetchone()
            cur = await conn.execute(
                "SELECT d.filename, count(c.id) FROM documents d "
                "LEFT JOIN chunks c ON c.document_id = d.id "
                "GROUP BY d.filename ORDER BY d.filename;"
            )
            per_file = await cur.fetchall()

        return CorpusStats(
            total_documents=doc_row[0] if doc_row else 0,
            total_unique_filenames=doc_row[1] if doc_row else 0,
            total_chunks=chunk_row[0] if chunk_row else 0,
            chunks_per_filename={row[0]: row[1] for row in per_file},
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    async def _upsert(conn, filename: str) -> str:  # noqa: ANN001
        cur = await conn.execute(_UPSERT_DOCUMENT_SQL, (filename,))
        row = await cur.fetchone()
        return str(row[0])

    @staticmethod
    async def _insert(conn, document_id: str, chunks: list[ChunkRecord]) -> int:  # noqa: ANN001
        inserted = 0
        for start in range(0, len(chunks), _INSERT_GROUP_SIZE):
            group = chunks[start : start + _INSERT_GROUP_SIZE]
            placeholders = ", ".join(["(%s, %s, %s, %s)"] * len(group))
            params: list = []
            for chunk in group:
                params.extend(
                    [
                        document_id,
                        chunk.chunk_index,
                        chunk.text,
                        np.asarray(chunk.embedding, dtype=np.float32),
                    ]
                )
            cur = await conn.execute(_INSERT_CHUNKS_PREFIX + placeholders, params)
            inserted += cur.rowcount
        return inserted
