"""Unit tests for TextExtractor -- Markdown decoding and PyMuPDF extraction."""

from __future__ import annotations

import pytest

from runbook_rag.models.rag import DocumentKind
from runbook_rag.services.ingestion.text_extractor import TextExtractor
from runbook_rag.utils.errors import ExtractionError


@pytest.fixture
def extractor() -> TextExtractor:
    return TextExtractor()


class TestMarkdown:
    def test_decodes_utf8(self, extractor: TextExtractor, sample_markdown_bytes: bytes) -> None:
        text = extractor.extract(sample_markdown_bytes, DocumentKind.MARKDOWN, "redis.md")
        assert text.startswith("# Redis Failover")

    def test_invalid_bytes_are_replaced(self, extractor: TextExtractor) -> None:
        text = extractor.extract(b"disk \xff full", DocumentKind.MARKDOWN, "disk.md")
        assert "�" in text
        assert text.startswith("disk ")

    def test_whitespace_only_is_an_error(self, extractor: TextExtractor) -> None:
        with pytest.raises(ExtractionError) as exc_info:
            extractor.extract(b"  \n\n\t", DocumentKind.MARKDOWN, "blank.md")
        assert exc_info.value.stage == "extract"
        assert "blank.md" in exc_info.value.message


class TestPdf:
    def test_extracts_page_text(self, extractor: TextExtractor, sample_pdf_bytes: bytes) -> None:
        text = extractor.extract(sample_pdf_bytes, DocumentKind.PDF, "kafka.pdf")
        assert "Kafka consumer lag" in text

    def test_missing_header_reports_length_and_header(self, extractor: TextExtractor) -> None:
        with pytest.raises(ExtractionError) as exc_info:
            extractor.extract(b"hello", DocumentKind.PDF, "fake.pdf")

        message = exc_info.value.message
        assert "%PDF" in message
        assert "length=5" in message
        assert "b'hello'" in message
        assert exc_info.value.provider_name == "pymupdf"

    def test_corrupt_pdf_is_an_extraction_error(self, extractor: TextExtractor) -> None:
        with pytest.raises(ExtractionError):
            extractor.extract(b"%PDF-1.4\nthis is not really a pdf", DocumentKind.PDF, "broken.pdf")


def test_empty_bytes_fail_before_parsing(extractor: TextExtractor) -> None:
    with pytest.raises(ExtractionError) as exc_info:
        extractor.extract(b"", DocumentKind.PDF, "empty.pdf")
    assert "0 bytes" in exc_info.value.message
