"""Downloads files referenced by URL so they can enter the ingestion pipeline.

Large uploads are often pushed to blob storage first and handed to the
service as URLs.  Each download is streamed so the per-request byte cap is
enforced while reading, not after the whole body has been buffered.
"""

from __future__ import annotations

from pathlib import PurePosixPath
from urllib.parse import unquote, urlparse

import httpx
import structlog

from runbook_rag.models.rag import IncomingFile
from runbook_rag.utils.concurrency import with_timeout
from runbook_rag.utils.errors import InputValidationError

logger = structlog.get_logger(logger_name=__name__)


def filename_from_url(url: str) -> str:
    """Return the last path segment of *url*, percent-decoded."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        raise InputValidationError(
            message=f"Only http(s) URLs can be ingested, got '{url}'",
            stage="download",
        )
    name = unquote(PurePosixPath(parsed.path).name)
    if not name:
        raise InputValidationError(
            message=f"Cannot derive a filename from '{url}'",
            stage="download",
        )
    return name


class UrlFetcher:
    """Streams URLs into :class:`IncomingFile` objects under a shared byte cap."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        max_files: int,
        max_total_bytes: int,
    ) -> None:
        self._http = http_client
        self._max_files = max_files
        self._max_total_bytes = max_total_bytes

    async def fetch_all(self, urls: list[str], timeout_seconds: float) -> list[IncomingFile]:
        """Download every URL in order.

        Raises
        ------
        InputValidationError
            If there are no URLs or too many, a URL is not usable, a
            download fails, or the combined size exceeds the byte cap.
        StageTimeoutError
            If one download exceeds *timeout_seconds*.
        """
        if not urls:
            raise InputValidationError(message="No URLs provided")
        if len(urls) > self._max_files:
            raise InputValidationError(
                message=f"Too many files: {len(urls)} submitted, maximum is {self._max_files}",
            )

        files: list[IncomingFile] = []
        total = 0
        for url in urls:
            filename = filename_from_url(url)
            remaining = self._max_total_bytes - total
            data, content_type = await with_timeout(
                "download",
                self._download(url, remaining),
                timeout_seconds,
            )
            total += len(data)
            files.append(IncomingFile(filename=filename, data=data, content_type=content_type))
            logger.info("url_downloaded", url=url, filename=filename, bytes=len(data))
        return files

    async def _download(self, url: str, remaining: int) -> tuple[bytes, str | None]:
        buffer = bytearray()
        try:
            async with self._http.stream("GET", url, follow_redirects=True) as response:
                response.raise_for_status()
                content_type = response.headers.get("content-type")
                async for part in response.aiter_bytes():
                    buffer.extend(part)
                    if len(buffer) > remaining:
                        raise InputValidationError(
                            message=f"Total upload size exceeds {self._max_total_bytes} bytes "
                            f"while downloading '{url}'",
                            stage="download",
                        )
        except httpx.HTTPError as exc:
            raise InputValidationError(
                message=f"Download failed for '{url}': {exc}",
                stage="download",
            ) from exc
        return bytes(buffer), content_type
