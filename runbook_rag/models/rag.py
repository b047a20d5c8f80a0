"""Document, chunk and retrieval data models.

Pydantic v2 models for the indexed corpus.  All models use frozen config so
values passed between the pipeline, stores and retriever cannot be mutated
in place.

Data model in brief:

    Document   one row per unique filename; re-uploading a filename reuses
               the same id and replaces its chunks wholesale.
    Chunk      an ordered slice of a document's text plus its embedding,
               owned exclusively by its document (cascade delete).
    RetrievalCandidate
               a transient search hit; never persisted.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from pathlib import PurePosixPath

from pydantic import BaseModel, ConfigDict, Field

from runbook_rag.utils.errors import InputValidationError

_PDF_EXTENSIONS = {".pdf"}
_MARKDOWN_EXTENSIONS = {".md", ".markdown"}
_PDF_CONTENT_TYPES = {"application/pdf"}
_MARKDOWN_CONTENT_TYPES = {"text/markdown", "text/x-markdown"}


class DocumentKind(str, Enum):
    """Supported upload formats."""

    PDF = "pdf"
    MARKDOWN = "markdown"

    @classmethod
    def detect(cls, filename: str, content_type: str | None = None) -> DocumentKind:
        """Classify a file by extension, falling back to its content type.

        Raises
        ------
        InputValidationError
            If neither the extension nor the content type is supported.
        """
        suffix = PurePosixPath(filename.lower()).suffix
        if suffix in _PDF_EXTENSIONS:
            return cls.PDF
        if suffix in _MARKDOWN_EXTENSIONS:
            return cls.MARKDOWN

        mime = (content_type or "").split(";", 1)[0].strip().lower()
        if mime in _PDF_CONTENT_TYPES:
            return cls.PDF
        if mime in _MARKDOWN_CONTENT_TYPES:
            return cls.MARKDOWN

        raise InputValidationError(
            message=(
                f"Unsupported file type for '{filename}'. "
                "Only PDF (.pdf) and Markdown (.md, .markdown) are accepted."
            ),
        )


class IncomingFile(BaseModel):
    """A named file submitted for ingestion."""

    model_config = ConfigDict(frozen=True)

    filename: str = Field(min_length=1, description="Original filename; the document identity.")
    data: bytes = Field(description="Raw file bytes.")
    content_type: str | None = Field(default=None, description="MIME type reported by the client.")

    @property
    def size(self) -> int:
        return len(self.data)


class Document(BaseModel):
    """A stored document record."""

    model_config = ConfigDict(frozen=True)

    id: str
    filename: str
    uploaded_at: datetime | None = None
    chunk_count: int = Field(default=0, ge=0)


class ChunkRecord(BaseModel):
    """A chunk ready for bulk insert: position, text and its embedding."""

    model_config = ConfigDict(frozen=True)

    chunk_index: int = Field(ge=0, description="0-based position within the document.")
    text: str = Field(min_length=1)
    embedding: list[float]


class RetrievalCandidate(BaseModel):
    """A nearest-neighbour hit, optionally scored for keyword overlap."""

    model_config = ConfigDict(frozen=True)

    chunk_id: str
    text: str
    filename: str
    chunk_index: int = Field(ge=0)
    distance: float = Field(description="Cosine distance to the query; smaller is closer.")
    keyword_score: int = Field(default=0, ge=0, description="Query keywords found in the text.")

    def preview(self, max_chars: int = 200) -> str:
        """Return the first *max_chars* characters, with ``...`` when cut."""
        if len(self.text) <= max_chars:
            return self.text
        return self.text[:max_chars] + "..."


class CorpusStats(BaseModel):
    """Aggregate counts over the indexed corpus."""

    model_config = ConfigDict(frozen=True)

    total_documents: int = Field(default=0, ge=0)
    total_unique_filenames: int = Field(default=0, ge=0)
    total_chunks: int = Field(default=0, ge=0)
    chunks_per_filename: dict[str, int] = Field(default_factory=dict)
