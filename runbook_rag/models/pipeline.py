"""Ingestion pipeline state and result models.

Each file moves through :class:`FileState` in order:

    RECEIVED -> VALIDATED -> TEXT_EXTRACTED -> CHUNKED -> EMBEDDED
             -> PERSISTED -> (VERIFIED) -> DONE

with FAILED reachable from any state.  The pipeline records the stage at
which a file failed alongside the error code and message.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FileState(str, Enum):
    """Per-file lifecycle states."""

    RECEIVED = "received"
    VALIDATED = "validated"
    TEXT_EXTRACTED = "text_extracted"
    CHUNKED = "chunked"
    EMBEDDED = "embedded"
    PERSISTED = "persisted"
    VERIFIED = "verified"
    DONE = "done"
    FAILED = "failed"


class FileStatus(str, Enum):
    """Outcome reported for one file."""

    INGESTED = "ingested"
    SKIPPED = "skipped"
    FAILED = "failed"


class RequestStatus(str, Enum):
    """Outcome reported for a whole ingestion request."""

    SUCCESS = "success"
    PARTIAL = "partial"
    ERROR = "error"


class LogStatus(str, Enum):
    """Status values stored in the upload and query log tables."""

    STARTED = "started"
    SUCCESS = "success"
    ERROR = "error"


# ---------------------------------------------------------------------------
# Stage timings
# ---------------------------------------------------------------------------
class StageTiming(BaseModel):
    """Elapsed time and counters for one stage."""

    model_config = ConfigDict(frozen=True)

    ms: float = Field(default=0.0, ge=0.0, description="Elapsed wall time in milliseconds.")
    counts: dict[str, int] = Field(
        default_factory=dict,
        description="Stage counters, e.g. chunks produced or characters truncated.",
    )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------
class ErrorDetail(BaseModel):
    """A structured error entry attached to a failed file or response."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    stage: str | None = None
    provider: str | None = None


class FileResult(BaseModel):
    """Per-file ingestion outcome."""

    model_config = ConfigDict(frozen=True)

    filename: str
    status: FileStatus
    state: FileState
    chunks: int = Field(default=0, ge=0, description="Chunks persisted for this file.")
    chunks_skipped: int = Field(default=0, ge=0, description="Chunks dropped by the request budget.")
    chars_truncated: int = Field(default=0, ge=0)
    document_id: str | None = None
    verified: bool = Field(default=False, description="Returned by the self-verification search.")
    error: ErrorDetail | None = None
    stage_timings: dict[str, StageTiming] = Field(default_factory=dict)


class RetrievalPreview(BaseModel):
    """A short view of a search hit."""

    model_config = ConfigDict(frozen=True)

    id: str
    filename: str
    chunk_index: int
    text_preview: str
    distance: float | None = None
    keyword_score: int | None = None


class IngestionResult(BaseModel):
    """Everything the caller learns about one ingestion request."""

    model_config = ConfigDict(frozen=True)

    request_id: str
    status: RequestStatus
    files_processed: int = Field(default=0, ge=0)
    total_chunks: int = Field(default=0, ge=0)
    chunks_skipped: int = Field(default=0, ge=0)
    inserted_filenames: list[str] = Field(default_factory=list)
    verified_searchable: bool = False
    top_retrieval_preview: list[RetrievalPreview] = Field(default_factory=list)
    per_file: list[FileResult] = Field(default_factory=list)
    stage_timings: dict[str, StageTiming] = Field(default_factory=dict)
    latency_ms: float = 0.0

    def timings_payload(self) -> dict[str, Any]:
        """Return stage timings as plain dicts for JSON persistence."""
        return {name: timing.model_dump() for name, timing in self.stage_timings.items()}
