"""Unit tests for URL downloads feeding the ingestion pipeline."""

from __future__ import annotations

import httpx
import pytest

from runbook_rag.services.ingestion.url_fetcher import UrlFetcher, filename_from_url
from runbook_rag.utils.errors import InputValidationError

_BODIES = {
    "/runbooks/Disk%20Space%20Full.md": (b"# Disk Space Full\nclean /var/log", "text/markdown"),
    "/runbooks/big.pdf": (b"%PDF-" + b"x" * 200, "application/pdf"),
}


def _handler(request: httpx.Request) -> httpx.Response:
    body = _BODIES.get(request.url.raw_path.decode())
    if body is None:
        return httpx.Response(404)
    data, content_type = body
    return httpx.Response(200, content=data, headers={"content-type": content_type})


def _fetcher(max_files: int = 3, max_total_bytes: int = 1000) -> UrlFetcher:
    client = httpx.AsyncClient(transport=httpx.MockTransport(_handler))
    return UrlFetcher(client, max_files=max_files, max_total_bytes=max_total_bytes)


class TestFilenameFromUrl:
    def test_last_segment_is_decoded(self) -> None:
        assert filename_from_url("https://x.io/a/Disk%20Space%20Full.md") == "Disk Space Full.md"

    def test_non_http_scheme_rejected(self) -> None:
        with pytest.raises(InputValidationError) as exc_info:
            filename_from_url("file:///etc/passwd")
        assert exc_info.value.stage == "download"

    def test_missing_filename_rejected(self) -> None:
        with pytest.raises(InputValidationError):
            filename_from_url("https://x.io/")


class TestFetchAll:
    @pytest.mark.asyncio
    async def test_downloads_in_order(self) -> None:
        files = await _fetcher().fetch_all(
            [
                "https://blobs.test/runbooks/Disk%20Space%20Full.md",
                "https://blobs.test/runbooks/big.pdf",
            ],
            timeout_seconds=5.0,
        )

        assert [f.filename for f in files] == ["Disk Space Full.md", "big.pdf"]
        assert files[0].content_type == "text/markdown"
        assert files[1].data.startswith(b"%PDF-")

    @pytest.mark.asyncio
    async def test_empty_list_rejected(self) -> None:
        with pytest.raises(InputValidationError, match="No URLs"):
            await _fetcher().fetch_all([], timeout_seconds=5.0)

    @pytest.mark.asyncio
    async def test_too_many_urls_rejected(self) -> None:
        urls = [f"https://blobs.test/runbooks/{i}.md" for i in range(4)]
        with pytest.raises(InputValidationError, match="Too many files"):
            await _fetcher(max_files=3).fetch_all(urls, timeout_seconds=5.0)

    @pytest.mark.asyncio
    async def test_byte_cap_enforced_while_streaming(self) -> None:
        with pytest.raises(InputValidationError, match="exceeds 100 bytes"):
            await _fetcher(max_total_bytes=100).fetch_all(
                ["https://blobs.test/runbooks/big.pdf"], timeout_seconds=5.0
            )

    @pytest.mark.asyncio
    async def test_http_error_is_a_validation_error(self) -> None:
        with pytest.raises(InputValidationError) as exc_info:
            await _fetcher().fetch_all(["https://blobs.test/runbooks/missing.md"], timeout_seconds=5.0)

        assert exc_info.value.stage == "download"
        assert "missing.md" in exc_info.value.message
