"""SQLite-backed document store for local development and tests.

Implements :class:`IDocumentStore` with ``aiosqlite``.  The schema mirrors
the Postgres one (unique filename, cascading chunk FK, unique
``(document_id, chunk_index)``).  Embeddings are stored as JSON text and
cosine distance is computed in-process with numpy, which is fine for the
corpus sizes a laptop or a test run deals with.
"""

from __future__ import annotations

import json
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator

import aiosqlite
import numpy as np
import structlog

from runbook_rag.interfaces.document_store import IDocumentStore
from runbook_rag.models.rag import ChunkRecord, CorpusStats, Document, RetrievalCandidate
from runbook_rag.utils.errors import StoreError

logger = structlog.get_logger(logger_name=__name__)

_DEFAULT_DB_PATH = Path("data/runbook_rag.db")

# 5 bound parameters per row; stays under SQLITE_MAX_VARIABLE_NUMBER on
# older builds (999).
_INSERT_GROUP_SIZE = 150

_CREATE_DOCUMENTS_SQL = """\
CREATE TABLE IF NOT EXISTS documents (
    id          TEXT PRIMARY KEY,
    filename    TEXT NOT NULL UNIQUE,
    uploaded_at TEXT NOT NULL
);
"""

_CREATE_CHUNKS_SQL = """\
CREATE TABLE IF NOT EXISTS chunks (
    id          TEXT    PRIMARY KEY,
    document_id TEXT    NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    chunk_index INTEGER NOT NULL,
    text        TEXT    NOT NULL,
    embedding   TEXT    NOT NULL,
    UNIQUE(document_id, chunk_index)
);
"""

_CREATE_INDICES_SQL = [
    "CREATE INDEX IF NOT EXISTS idx_chunks_document ON chunks(document_id);",
]

_UPSERT_DOCUMENT_SQL = """\
INSERT INTO documents (id, filename, uploaded_at)
VALUES (?, ?, ?)
ON CONFLICT(filename) DO UPDATE SET uploaded_at = excluded.uploaded_at;
"""

_SEARCH_SQL = """\
SELECT c.id, c.text, c.chunk_index, d.filename, c.embedding
FROM chunks c
JOIN documents d ON d.id = c.document_id
"""


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()


class SQLiteDocumentStore(IDocumentStore):
    """SQLite document store with in-process cosine search."""

    def __init__(self, db_path: str | Path = _DEFAULT_DB_PATH) -> None:
        self._db_path = Path(db_path)

    @property
    def db_path(self) -> Path:
        return self._db_path

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        async with self._connect("initialize schema") as db:
            await db.execute(_CREATE_DOCUMENTS_SQL)
            await db.execute(_CREATE_CHUNKS_SQL)
            for idx_sql in _CREATE_INDICES_SQL:
                await db.execute(idx_sql)
            await db.commit()
        logger.info("document_store_initialized", backend="sqlite", path=str(self._db_path))

    async def close(self) -> None:
        """Connections are per-operation; nothing to release."""

    async def ping(self) -> bool:
        async with self._connect("ping") as db:
            cursor = await db.execute("SELECT 1;")
            row = await cursor.fetchone()
        return row is not None and row[0] == 1

    async def has_filename_unique_constraint(self) -> bool:
        async with self._connect("schema probe") as db:
            cursor = await db.execute("PRAGMA index_list('documents');")
            indexes = await cursor.fetchall()
            for index in indexes:
                # (seq, name, unique, origin, partial)
                if not index[2]:
                    continue
                name = str(index[1]).replace("'", "''")
                cursor = await db.execute(f"PRAGMA index_info('{name}');")
                columns = await cursor.fetchall()
                if len(columns) == 1 and columns[0][2] == "filename":
                    return True
        return False

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def upsert_document(self, filename: str) -> str:
        async with self._connect("upsert document") as db:
            document_id = await self._upsert(db, filename)
            await db.commit()
        return document_id

    async def delete_chunks(self, document_id: str) -> int:
        async with self._connect("delete chunks") as db:
            cursor = await db.execute("DELETE FROM chunks WHERE document_id = ?;", (document_id,))
            await db.commit()
        return cursor.rowcount

    async def bulk_insert_chunks(self, document_id: str, chunks: list[ChunkRecord]) -> int:
        if not chunks:
            return 0
        async with self._connect("bulk insert chunks") as db:
            try:
                inserted = await self._insert(db, document_id, chunks)
                await db.commit()
            except aiosqlite.Error:
                await db.rollback()
                raise
        return inserted

    async def replace_document_chunks(
        self,
        filename: str,
        chunks: list[ChunkRecord],
    ) -> tuple[str, int]:
        async with self._connect("replace document chunks") as db:
            try:
                document_id = await self._upsert(db, filename)
                cursor = await db.execute(
                    "DELETE FROM chunks WHERE document_id = ?;", (document_id,)
                )
                deleted = cursor.rowcount
                inserted = await self._insert(db, document_id, chunks)
                await db.commit()
            except aiosqlite.Error:
                await db.rollback()
                raise

        logger.info(
            "document_chunks_replaced",
            filename=filename,
            document_id=document_id,
            deleted=deleted,
            inserted=inserted,
        )
        return document_id, inserted

    async def delete_document(self, filename: str) -> bool:
        async with self._connect("delete document") as db:
            cursor = await db.execute("DELETE FROM documents WHERE filename = ?;", (filename,))
            await db.commit()
        deleted = cursor.rowcount > 0
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

        sql = _SEARCH_SQL
        params: tuple = ()
        if filenames:
            placeholders = ", ".join("?" for _ in filenames)
            sql += f"WHERE d.filename IN ({placeholders})"
            params = tuple(filenames)

        async with self._connect("vector search") as db:
            cursor = await db.execute(sql, params)
            rows = await cursor.fetchall()

        if not rows:
            return []

        vectors = [json.loads(row[4]) for row in rows]
        query = np.asarray(embedding, dtype=np.float64)
        if any(len(vector) != query.shape[0] for vector in vectors):
            raise StoreError(
                message=f"vector search failed: stored embeddings do not match "
                f"query dimension {query.shape[0]}",
                provider_name="sqlite",
            )
        matrix = np.array(vectors, dtype=np.float64)
        norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
        with np.errstate(divide="ignore", invalid="ignore"):
            similarity = np.where(norms > 0, (matrix @ query) / norms, 0.0)
        distances = 1.0 - similarity

        order = np.argsort(distances, kind="stable")[:limit]
        return [
            RetrievalCandidate(
                chunk_id=rows[i][0],
                text=rows[i][1],
                chunk_index=rows[i][2],
                filename=rows[i][3],
                distance=float(distances[i]),
            )
            for i in order
        ]

    async def list_documents(self) -> list[Document]:
        async with self._connect("list documents") as db:
            cursor = await db.execute(
                "SELECT d.id, d.filename, d.uploaded_at, count(c.id) "
                "FROM documents d LEFT JOIN chunks c ON c.document_id = d.id "
                "GROUP BY d.id ORDER BY d.uploaded_at DESC"
            )
            rows = await cursor.fetchall()
        return [
            Document(
                id=row[0],
                filename=row[1],
                uploaded_at=datetime.fromisoformat(row[2]),
                chunk_count=row[3],
            )
            for row in rows
        ]

    async def get_stats(self) -> CorpusStats:
        async with self._connect("corpus stats") as db:
            cursor = await db.execute("SELECT count(*), count(DISTINCT filename) FROM documents")
            doc_row = await cursor.fetchone()
            cursor = await db.execute("SELECT count(*) FROM chunks")
            chunk_row = await cursor.fetchone()
            cursor = await db.execute(
                "SELECT d.filename, count(c.id) FROM documents d "
                "LEFT JOIN chunks c ON c.document_id = d.id "
                "GROUP BY d.filename ORDER BY d.filename"
            )
            per_file = await cursor.fetchall()

        return CorpusStats(
            total_documents=doc_row[0] if doc_row else 0,
            total_unique_filenames=doc_row[1] if doc_row else 0,
            total_chunks=chunk_row[0] if chunk_row else 0,
            chunks_per_filename={row[0]: row[1] for row in per_file},
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _connect(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        try:
            async with aiosqlite.connect(str(self._db_path)) as db:
                await db.execute("PRAGMA foreign_keys = ON;")
                yield db
        except aiosqlite.Error as exc:
            raise StoreError(
                message=f"{operation} failed: {exc}",
                provider_name="sqlite",
            ) from exc

    @staticmethod
    async def _upsert(db: aiosqlite.Connection, filename: str) -> str:
        await db.execute(_UPSERT_DOCUMENT_SQL, (str(uuid.uuid4()), filename, _utc_now()))
        cursor = await db.execute("SELECT id FROM documents WHERE filename = ?;", (filename,))
        row = await cursor.fetchone()
        return row[0]

    @staticmethod
    async def _insert(db: aiosqlite.Connection, document_id: str, chunks: list[ChunkRecord]) -> int:
        inserted = 0
        for start in range(0, len(chunks), _INSERT_GROUP_SIZE):
            group = chunks[start : start + _INSERT_GROUP_SIZE]
            placeholders = ", ".join(["(?, ?, ?, ?, ?)"] * len(group))
            params: list = []
            for chunk in group:
                params.extend(
                    [
                        str(uuid.uuid4()),
                        document_id,
                        chunk.chunk_index,
                        chunk.text,
                        json.dumps(chunk.embedding),
                    ]
                )
            cursor = await db.execute(
                "INSERT INTO chunks (id, document_id, chunk_index, text, embedding) "
                f"VALUES {placeholders}",
                params,
            )
            inserted += cursor.rowcount
        return inserted
