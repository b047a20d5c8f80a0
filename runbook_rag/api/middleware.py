"""API middleware: CORS, request logging and error handling.

Starlette middleware is a stack (last added, first executed).  ``main.py``
adds ``ErrorHandlingMiddleware`` first and ``RequestLoggingMiddleware``
second, so requests flow::

    client -> RequestLogging -> ErrorHandling -> route handler

and the logging middleware sees the final status code after a domain error
has been converted into an :class:`ErrorResponse`.
"""

from __future__ import annotations

import time
import uuid

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from runbook_rag.api.schemas import ErrorResponse
from runbook_rag.models.pipeline import ErrorDetail
from runbook_rag.utils.errors import InputValidationError, RunbookRagError
from runbook_rag.utils.logging import get_logger

_logger: structlog.BoundLogger = get_logger(__name__)


def error_response(
    exc: RunbookRagError,
    latency_ms: float = 0.0,
) -> JSONResponse:
    """Render *exc* as the JSON error envelope with its own HTTP status."""
    body = ErrorResponse(
        request_id=exc.request_id or str(uuid.uuid4()),
        error=ErrorDetail(
            code=exc.code,
            message=exc.message,
            stage=exc.stage,
            provider=exc.provider_name,
        ),
        stage_timings=exc.stage_timings,
        latency_ms=round(latency_ms, 2),
    )
    return JSONResponse(status_code=exc.http_status, content=body.model_dump(mode="json"))


# ---------------------------------------------------------------------------
# CORS
# ---------------------------------------------------------------------------


def configure_cors(app: FastAPI, *, allowed_origins: list[str] | None = None) -> None:
    """Add CORS middleware to the FastAPI application.

    Parameters
    ----------
    app:
        The FastAPI application instance.
    allowed_origins:
        Explicit list of allowed origins.  Defaults to ``["*"]``.
    """
    origins = allowed_origins or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=origins != ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )


# ---------------------------------------------------------------------------
# Request Logging
# ---------------------------------------------------------------------------


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every HTTP request with method, path, status code, and duration."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        start = time.perf_counter()
        response: Response | None = None

        try:
            response = await call_next(request)
            return response
        finally:
            duration_ms = round((time.perf_counter() - start) * 1000, 2)
            status_code = response.status_code if response else 500
            _logger.info(
                "http_request",
                method=request.method,
                path=str(request.url.path),
                status=status_code,
                duration_ms=duration_ms,
            )


# ---------------------------------------------------------------------------
# Error Handling
# ---------------------------------------------------------------------------


class ErrorHandlingMiddleware(BaseHTTPMiddleware):
    """Convert :class:`RunbookRagError` subclasses into :class:`ErrorResponse` bodies.

    The HTTP status comes from the error class.  Stack traces stay in the
    server log.  Other exceptions fall through to FastAPI's default 500
    handler.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        start = time.perf_counter()
        try:
            return await call_next(request)
        except RunbookRagError as exc:
            latency_ms = (time.perf_counter() - start) * 1000
            log = _logger.error if exc.http_status >= 500 else _logger.warning
            log(
                "application_error",
                error_type=type(exc).__name__,
                code=exc.code,
                message=exc.message,
                stage=exc.stage,
                provider=exc.provider_name,
                request_id=exc.request_id,
                path=str(request.url.path),
            )
            return error_response(exc, latency_ms)


def register_validation_handler(app: FastAPI) -> None:
    """Answer malformed request bodies with the standard 400 envelope."""

    async def _handle(request: Request, exc: RequestValidationError) -> JSONResponse:
        first = exc.errors()[0] if exc.errors() else {}
        location = ".".join(str(part) for part in first.get("loc", ()))
        message = first.get("msg", "Invalid request")
        error = InputValidationError(
            message=f"{location}: {message}" if location else message,
            stage="validate",
        )
        return error_response(error)

    app.add_exception_handler(RequestValidationError, _handle)
