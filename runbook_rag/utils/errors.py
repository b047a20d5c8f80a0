"""Custom exception hierarchy for runbook-rag.

All application exceptions inherit from :class:`RunbookRagError`, which
carries an optional ``provider_name`` (which external service failed), an
optional ``stage`` (which pipeline stage was running) and a stable ``code``
discriminator that the API returns to clients.

    RunbookRagError  (base -- catch-all, INTERNAL_ERROR)
    +-- InputValidationError  (bad input shape or size -- caller's fault)
    |   +-- DocumentNotFoundError (unknown filename, HTTP 404)
    +-- UnauthorizedError     (caller lacks a required capability)
    +-- ConfigurationError    (missing external configuration -- operator's fault)
    +-- SchemaError           (storage lacks expected structure)
    +-- ExtractionError       (unparseable file content)
    +-- EmbeddingError        (provider failure or mismatched output)
    +-- StoreError            (database operation failed)
    +-- StageTimeoutError     (a labelled pipeline stage ran out of time)

The pipeline attaches request context (``request_id`` and the partial
``stage_timings``) to an error before re-raising it, so the HTTP layer can
build a diagnosable response from the exception alone.
"""

from __future__ import annotations

from typing import Any


class RunbookRagError(Exception):
    """Base exception for all runbook-rag errors.

    The ``__str__`` method prefixes the provider name in brackets for log
    scanning, e.g. ``[openai] Rate limit exceeded``.
    """

    code: str = "INTERNAL_ERROR"
    http_status: int = 500

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        provider_name: str | None = None,
        stage: str | None = None,
    ) -> None:
        self._message = message
        self._provider_name = provider_name
        self._stage = stage
        self._request_id: str | None = None
        self._stage_timings: dict[str, Any] = {}
        super().__init__(self._message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    @property
    def stage(self) -> str | None:
        return self._stage

    @property
    def request_id(self) -> str | None:
        return self._request_id

    @property
    def stage_timings(self) -> dict[str, Any]:
        return self._stage_timings

    def with_stage(self, stage: str) -> RunbookRagError:
        """Label the error with *stage* unless a stage is already set."""
        if self._stage is None:
            self._stage = stage
        return self

    def attach_context(
        self,
        request_id: str | None = None,
        stage_timings: dict[str, Any] | None = None,
    ) -> RunbookRagError:
        """Attach request correlation data; existing values are kept."""
        if request_id and self._request_id is None:
            self._request_id = request_id
        if stage_timings and not self._stage_timings:
            self._stage_timings = dict(stage_timings)
        return self

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


# ---------------------------------------------------------------------------
# Caller errors
# ---------------------------------------------------------------------------


class InputValidationError(RunbookRagError):
    """Raised when a request has a bad shape or exceeds a configured cap."""

    code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str = "Invalid request",
        provider_name: str | None = None,
        stage: str | None = "validate",
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, stage=stage)


class UnauthorizedError(RunbookRagError):
    """Raised when the caller lacks the capability an operation requires."""

    code = "UNAUTHORIZED"
    http_status = 401

    def __init__(
        self,
        message: str = "Unauthorized",
        provider_name: str | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, stage=stage)


# ---------------------------------------------------------------------------
# Operator errors
# ---------------------------------------------------------------------------


class ConfigurationError(RunbookRagError):
    """Raised when required configuration is missing or invalid."""

    code = "CONFIG_ERROR"
    http_status = 500

    def __init__(
        self,
        message: str = "Invalid or missing configuration",
        provider_name: str | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, stage=stage)


class SchemaError(RunbookRagError):
    """Raised when the store is missing the tables or constraints it needs."""

    code = "SCHEMA_ERROR"
    http_status = 500

    def __init__(
        self,
        message: str = "Database schema is missing required structure",
        provider_name: str | None = None,
        stage: str | None = "schema_check",
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, stage=stage)


# ---------------------------------------------------------------------------
# Pipeline errors
# ---------------------------------------------------------------------------


class ExtractionError(RunbookRagError):
    """Raised when text cannot be extracted from an uploaded file."""

    code = "EXTRACTION_ERROR"
    http_status = 422

    def __init__(
        self,
        message: str = "Text extraction failed",
        provider_name: str | None = None,
        stage: str | None = "extract",
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, stage=stage)


class EmbeddingError(RunbookRagError):
    """Raised when an embedding call fails or returns the wrong vector count."""

    code = "EMBEDDING_ERROR"
    http_status = 502

    def __init__(
        self,
        message: str = "Embedding generation failed",
        provider_name: str | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, stage=stage)


class StoreError(RunbookRagError):
    """Raised when a database operation fails."""

    code = "STORE_ERROR"
    http_status = 503

    def __init__(
        self,
        message: str = "Document store operation failed",
        provider_name: str | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(message=message, provider_name=provider_name, stage=stage)


class StageTimeoutError(RunbookRagError):
    """Raised when a labelled stage exceeds its time budget."""

    code = "STAGE_TIMEOUT"
    http_status = 504

    def __init__(
        self,
        stage: str,
        timeout_seconds: float,
        provider_name: str | None = None,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        super().__init__(
            message=f"Stage '{stage}' timed out after {timeout_seconds:.1f}s",
            provider_name=provider_name,
            stage=stage,
        )

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds


class DocumentNotFoundError(InputValidationError):
    """Raised when an operation names a filename that is not in the corpus."""

    http_status = 404

    def __init__(self, filename: str) -> None:
        self._filename = filename
        super().__init__(message=f"No document named '{filename}'", stage=None)

    @property
    def filename(self) -> str:
        return self._filename
