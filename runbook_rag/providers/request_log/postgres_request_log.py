"""Postgres-backed upload and query logs.

Shares the connection pool with :class:`PostgresDocumentStore`.  Stage
timings are stored as ``jsonb``.
"""

from __future__ import annotations

from typing import Any

import structlog
from psycopg.types.json import Jsonb

from runbook_rag.interfaces.request_log_store import IRequestLogStore
from runbook_rag.providers.postgres_pool import PostgresConnectionManager

logger = structlog.get_logger(logger_name=__name__)

_CREATE_TABLES_SQL = [
    """\
CREATE TABLE IF NOT EXISTS upload_logs (
    request_id    TEXT        PRIMARY KEY,
    status        TEXT        NOT NULL,
    latency_ms    INTEGER,
    error_message TEXT,
    stage_timings JSONB,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT now()
);
""",
    """\
CREATE TABLE IF NOT EXISTS query_logs (
    request_id    TEXT        PRIMARY KEY,
    query         TEXT        NOT NULL,
    top_k         INTEGER     NOT NULL,
    chunk_ids     JSONB       NOT NULL DEFAULT '[]'::jsonb,
    latency_ms    INTEGER,
    status        TEXT        NOT NULL,
    error_message TEXT,
    created_at    TIMESTAMPTZ NOT NULL DEFAULT now()
);
""",
    "ALTER TABLE upload_logs ADD COLUMN IF NOT EXISTS stage_timings JSONB;",
]

_INSERT_UPLOAD_SQL = """\
INSERT INTO upload_logs (request_id, status)
VALUES (%s, %s)
ON CONFLICT (request_id) DO NOTHING;
"""

_UPDATE_UPLOAD_SQL = """\
UPDATE upload_logs
SET status = %s, latency_ms = %s, error_message = %s,
    stage_timings = %s, updated_at = now()
WHERE request_id = %s;
"""

_INSERT_QUERY_SQL = """\
INSERT INTO query_logs (request_id, query, top_k, chunk_ids, latency_ms, status, error_message)
VALUES (%s, %s, %s, %s, %s, %s, %s);
"""

_STAGE_TIMINGS_COLUMN_SQL = """\
SELECT EXISTS (
    SELECT 1 FROM information_schema.columns
    WHERE table_name = 'upload_logs' AND column_name = 'stage_timings'
);
"""


class PostgresRequestLogStore(IRequestLogStore):
    """Upload/query log persistence in Postgres."""

    def __init__(self, connections: PostgresConnectionManager) -> None:
        self._db = connections

    async def initialize(self) -> None:
        async with self._db.connection("initialize log tables") as conn:
            for sql in _CREATE_TABLES_SQL:
                await conn.execute(sql)
        logger.info("request_log_initialized", backend="postgres")

    async def insert_upload(self, request_id: str, status: str) -> None:
        async with self._db.connection("insert upload log") as conn:
            await conn.execute(_INSERT_UPLOAD_SQL, (request_id, status))

    async def update_upload(
        self,
        request_id: str,
        status: str,
        latency_ms: int,
        error_message: str | None,
        stage_timings: dict[str, Any],
    ) -> None:
        async with self._db.connection("update upload log") as conn:
            await conn.execute(
                _UPDATE_UPLOAD_SQL,
                (status, latency_ms, error_message, Jsonb(stage_timings), request_id),
            )

    async def insert_query(
        self,
        request_id: str,
        query: str,
        top_k: int,
        chunk_ids: list[str],
        latency_ms: int,
        status: str,
        error_message: str | None,
    ) -> None:
        async with self._db.connection("insert query log") as conn:
            await conn.execute(
                _INSERT_QUERY_SQL,
                (request_id, query, top_k, Jsonb(chunk_ids), latency_ms, status, error_message),
            )

    async def has_stage_timings_column(self) -> bool:
        async with self._db.connection("log schema probe") as conn:
            cur = await conn.execute(_STAGE_TIMINGS_COLUMN_SQL)
            row = await cur.fetchone()
        return bool(row and row[0])
