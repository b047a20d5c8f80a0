"""Plain-text extraction from uploaded PDF and Markdown bytes.

Markdown is decoded directly as UTF-8 with no parsing.  PDFs are read with
PyMuPDF (fitz) page by page.  The PDF header is checked before the bytes
reach the native library, since malformed input otherwise fails with
opaque errors; every failure message carries the buffer length and the
header bytes actually observed.
"""

from __future__ import annotations

import fitz  # PyMuPDF -- the "fitz" import name is a PyMuPDF convention
import structlog

from runbook_rag.models.rag import DocumentKind
from runbook_rag.utils.errors import ExtractionError

logger = structlog.get_logger(logger_name=__name__)

_PDF_MAGIC = b"%PDF"
_HEADER_PREVIEW_BYTES = 8


class TextExtractor:
    """Converts raw file bytes into plain text.

    The extractor is synchronous and CPU-bound; the pipeline runs it in a
    worker thread under the ``extract`` stage timeout.
    """

    def extract(self, data: bytes, kind: DocumentKind, filename: str = "") -> str:
        """Return the text content of *data*.

        Parameters
        ----------
        data:
            Raw file bytes.
        kind:
            How to interpret the bytes.
        filename:
            Used only to make error messages and logs traceable.

        Raises
        ------
        ExtractionError
            If *data* is empty, a PDF lacks the ``%PDF`` header, the PDF
            library cannot parse the file, or the extracted text is empty
            or whitespace-only.
        """
        if not data:
            raise ExtractionError(message=f"File '{filename}' is empty (0 bytes)")

        if kind is DocumentKind.PDF:
            text = self._extract_pdf(data, filename)
        else:
            text = data.decode("utf-8", errors="replace")

        if not text.strip():
            raise ExtractionError(
                message=f"No text could be extracted from '{filename}' "
                f"({len(data)} bytes, kind={kind.value})",
            )

        logger.debug(
            "text_extracted",
            filename=filename,
            kind=kind.value,
            bytes=len(data),
            chars=len(text),
        )
        return text

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _describe(data: bytes) -> str:
        header = data[:_HEADER_PREVIEW_BYTES]
        return f"length={len(data)} bytes, header={header!r}"

    def _extract_pdf(self, data: bytes, filename: str) -> str:
        if not data.startswith(_PDF_MAGIC):
            raise ExtractionError(
                message=f"'{filename}' is not a valid PDF: missing %PDF header "
                f"({self._describe(data)})",
                provider_name="pymupdf",
            )

        try:
            with fitz.open(stream=data, filetype="pdf") as doc:
                pages = [page.get_text("text") for page in doc]
        except (RuntimeError, ValueError) as exc:  # fitz.FileDataError is a RuntimeError
            raise ExtractionError(
                message=f"PDF parsing failed for '{filename}' ({self._describe(data)}): {exc}",
                provider_name="pymupdf",
            ) from exc

        logger.debug("pdf_pages_read", filename=filename, pages=len(pages))
        return "\n".join(pages)
