"""SQLite-backed upload and query logs.

Uses the same database file as :class:`SQLiteDocumentStore`.  JSON columns
are stored as text.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from runbook_rag.interfaces.request_log_store import IRequestLogStore
from runbook_rag.utils.errors import StoreError

logger = structlog.get_logger(logger_name=__name__)

_CREATE_TABLES_SQL = [
    """\
CREATE TABLE IF NOT EXISTS upload_logs (
    request_id    TEXT PRIMARY KEY,
    status        TEXT NOT NULL,
    latency_ms    INTEGER,
    error_message TEXT,
    stage_timings TEXT,
    created_at    TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at    TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
""",
    """\
CREATE TABLE IF NOT EXISTS query_logs (
    request_id    TEXT PRIMARY KEY,
    query         TEXT NOT NULL,
    top_k         INTEGER NOT NULL,
    chunk_ids     TEXT NOT NULL DEFAULT '[]',
    latency_ms    INTEGER,
    status        TEXT NOT NULL,
    error_message TEXT,
    created_at    TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
""",
]

_UPDATE_UPLOAD_SQL = """\
UPDATE upload_logs
SET status = ?, latency_ms = ?, error_message = ?, stage_timings = ?,
    updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
WHERE request_id = ?;
"""


class SQLiteRequestLogStore(IRequestLogStore):
    """Upload/query log persistence in SQLite."""

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)

    async def initialize(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            async with aiosqlite.connect(str(self._db_path)) as db:
                for sql in _CREATE_TABLES_SQL:
                    await db.execute(sql)
                await db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(message=f"initialize log tables failed: {exc}", provider_name="sqlite") from exc
        logger.info("request_log_initialized", backend="sqlite", path=str(self._db_path))

    async def insert_upload(self, request_id: str, status: str) -> None:
        await self._write(
            "insert upload log",
            "INSERT OR IGNORE INTO upload_logs (request_id, status) VALUES (?, ?)",
            (request_id, status),
        )

    async def update_upload(
        self,
        request_id: str,
        status: str,
        latency_ms: int,
        error_message: str | None,
        stage_timings: dict[str, Any],
    ) -> None:
        await self._write(
            "update upload log",
            _UPDATE_UPLOAD_SQL,
            (status, latency_ms, error_message, json.dumps(stage_timings), request_id),
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
        await self._write(
            "insert query log",
            "INSERT INTO query_logs "
            "(request_id, query, top_k, chunk_ids, latency_ms, status, error_message) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (request_id, query, top_k, json.dumps(chunk_ids), latency_ms, status, error_message),
        )

    async def has_stage_timings_column(self) -> bool:
        try:
            async with aiosqlite.connect(str(self._db_path)) as db:
                cursor = await db.execute("PRAGMA table_info('upload_logs');")
                columns = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StoreError(message=f"log schema probe failed: {exc}", provider_name="sqlite") from exc
        return any(col[1] == "stage_timings" for col in columns)

    # ------------------------------------------------------------------
    # Read helpers (CLI and tests)
    # ------------------------------------------------------------------

    async def get_upload(self, request_id: str) -> dict[str, Any] | None:
        """Return the upload log row for *request_id*, or ``None``."""
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM upload_logs WHERE request_id = ?", (request_id,)
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        result = dict(row)
        if result.get("stage_timings"):
            result["stage_timings"] = json.loads(result["stage_timings"])
        return result

    async def get_query(self, request_id: str) -> dict[str, Any] | None:
        """Return the query log row for *request_id*, or ``None``."""
        async with aiosqlite.connect(str(self._db_path)) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(
                "SELECT * FROM query_logs WHERE request_id = ?", (request_id,)
            )
            row = await cursor.fetchone()
        if row is None:
            return None
        result = dict(row)
        result["chunk_ids"] = json.loads(result["chunk_ids"])
        return result

    async def _write(self, operation: str, sql: str, params: tuple) -> None:
        try:
            async with aiosqlite.connect(str(self._db_path)) as db:
                await db.execute(sql, params)
                await db.commit()
        except aiosqlite.Error as exc:
            raise StoreError(message=f"{operation} failed: {exc}", provider_name="sqlite") from exc
