"""Side channel for request telemetry that never raises.

Upload and query log writes, and per-stage events, are diagnostics rather
than business data.  Every method here catches its own failures and logs a
warning, so callers can record events inline without guarding each call.
"""

from __future__ import annotations

from typing import Any

import structlog

from runbook_rag.interfaces.request_log_store import IRequestLogStore

logger = structlog.get_logger(logger_name=__name__)


class RequestEventRecorder:
    """Writes upload/query log rows and stage events, swallowing failures.

    Parameters
    ----------
    log_store:
        Backing store.  ``None`` turns persistence off; stage events are
        still logged.
    """

    def __init__(self, log_store: IRequestLogStore | None = None) -> None:
        self._log_store = log_store

    async def upload_started(self, request_id: str) -> None:
        if self._log_store is None:
            return
        try:
            await self._log_store.insert_upload(request_id, "started")
        except Exception as exc:  # noqa: BLE001
            logger.warning("upload_log_insert_failed", request_id=request_id, error=str(exc))

    async def upload_finished(
        self,
        request_id: str,
        status: str,
        latency_ms: float,
        error_message: str | None = None,
        stage_timings: dict[str, Any] | None = None,
    ) -> None:
        logger.info(
            "upload_finished",
            request_id=request_id,
            status=status,
            latency_ms=round(latency_ms),
            error=error_message,
        )
        if self._log_store is None:
            return
        try:
            await self._log_store.update_upload(
                request_id,
                status,
                int(latency_ms),
                error_message,
                stage_timings or {},
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("upload_log_update_failed", request_id=request_id, error=str(exc))

    async def query_finished(
        self,
        request_id: str,
        query: str,
        top_k: int,
        chunk_ids: list[str],
        latency_ms: float,
        status: str,
        error_message: str | None = None,
    ) -> None:
        logger.info(
            "query_finished",
            request_id=request_id,
            top_k=top_k,
            results=len(chunk_ids),
            latency_ms=round(latency_ms),
            status=status,
        )
        if self._log_store is None:
            return
        try:
            await self._log_store.insert_query(
                request_id,
                query,
                top_k,
                chunk_ids,
                int(latency_ms),
                status,
                error_message,
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning("query_log_insert_failed", request_id=request_id, error=str(exc))

    def record_stage_event(
        self,
        request_id: str,
        stage: str,
        ms: float,
        counts: dict[str, int] | None = None,
        filename: str | None = None,
        failed: bool = False,
    ) -> None:
        """Emit one structured ``stage_completed`` event."""
        try:
            logger.info(
                "stage_completed",
                request_id=request_id,
                stage=stage,
                ms=round(ms, 1),
                counts=counts or {},
                filename=filename,
                failed=failed,
            )
        except Exception:  # noqa: BLE001
            # A broken log sink has nowhere else to report to.
            pass
