"""Abstract base class for upload and query observability logs.

Upload rows are inserted with status ``started`` when a request begins and
updated when it finishes, so a request that dies mid-way still leaves a
trace.  Query rows are written once per search.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class IRequestLogStore(ABC):
    """Contract for the ``upload_logs`` and ``query_logs`` tables."""

    @abstractmethod
    async def initialize(self) -> None:
        """Create the log tables if they do not exist."""

    @abstractmethod
    async def insert_upload(self, request_id: str, status: str) -> None:
        """Insert the initial upload row for *request_id*."""

    @abstractmethod
    async def update_upload(
        self,
        request_id: str,
        status: str,
        latency_ms: int,
        error_message: str | None,
        stage_timings: dict[str, Any],
    ) -> None:
        """Record the final outcome of an upload request."""

    @abstractmethod
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
        """Record one search request."""

    @abstractmethod
    async def has_stage_timings_column(self) -> bool:
        """Return ``True`` if ``upload_logs`` can store stage timings."""
