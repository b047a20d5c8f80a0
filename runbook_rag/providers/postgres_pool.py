"""Shared async Postgres connection pool.

Owns one :class:`psycopg_pool.AsyncConnectionPool` per process.  Every new
connection has the pgvector adapter registered so ``numpy`` arrays bind to
``vector`` columns.  Driver and pool failures raised inside
:meth:`PostgresConnectionManager.connection` are translated to
:class:`StoreError` with the failing operation named.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

import psycopg
import structlog
from pgvector.psycopg import register_vector_async
from psycopg_pool import AsyncConnectionPool, PoolTimeout

from runbook_rag.utils.errors import ConfigurationError, StoreError

logger = structlog.get_logger(logger_name=__name__)

_CREATE_EXTENSIONS_SQL = [
    "CREATE EXTENSION IF NOT EXISTS vector",
    "CREATE EXTENSION IF NOT EXISTS pgcrypto",
]


class PostgresConnectionManager:
    """Lazily-opened connection pool shared by the Postgres stores.

    Parameters
    ----------
    dsn:
        libpq connection string, e.g. ``postgresql://user:pw@host/db``.
    min_size, max_size:
        Pool bounds.  Serverless deployments run with ``max_size`` close
        to the number of concurrent requests per instance.
    """

    def __init__(self, dsn: str, min_size: int = 1, max_size: int = 4) -> None:
        if not dsn:
            raise ConfigurationError(
                message="DATABASE_URL is not set",
                provider_name="postgres",
            )
        self._dsn = dsn
        self._pool = AsyncConnectionPool(
            conninfo=dsn,
            min_size=min_size,
            max_size=max_size,
            open=False,
            configure=register_vector_async,
        )
        self._opened = False

    async def ensure_extensions(self) -> None:
        """Create the ``vector`` and ``pgcrypto`` extensions.

        Runs on a standalone autocommit connection because pooled
        connections register the vector type on connect, which fails until
        the extension exists.
        """
        try:
            async with await psycopg.AsyncConnection.connect(self._dsn, autocommit=True) as conn:
                for sql in _CREATE_EXTENSIONS_SQL:
                    await conn.execute(sql)
        except psycopg.Error as exc:
            raise StoreError(
                message=f"Creating extensions failed: {exc}",
                provider_name="postgres",
            ) from exc

    async def open(self) -> None:
        if self._opened:
            return
        try:
            await self._pool.open(wait=True, timeout=30.0)
        except (psycopg.Error, PoolTimeout) as exc:
            raise StoreError(
                message=f"Opening connection pool failed: {exc}",
                provider_name="postgres",
            ) from exc
        self._opened = True
        logger.info("postgres_pool_opened", max_size=self._pool.max_size)

    async def close(self) -> None:
        if self._opened:
            await self._pool.close()
            self._opened = False
            logger.info("postgres_pool_closed")

    @asynccontextmanager
    async def connection(self, operation: str) -> AsyncIterator[psycopg.AsyncConnection]:
        """Yield a pooled connection; commits on success, rolls back on error."""
        await self.open()
        try:
            async with self._pool.connection() as conn:
                yield conn
        except (psycopg.Error, PoolTimeout) as exc:
            raise StoreError(
                message=f"{operation} failed: {exc}",
                provider_name="postgres",
            ) from exc
