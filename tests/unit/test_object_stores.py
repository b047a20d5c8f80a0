"""Unit tests for raw file retention backends."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock

import httpx
import pytest

from runbook_rag.providers.object_store.http_object_store import HttpObjectStore
from runbook_rag.providers.object_store.local_object_store import LocalObjectStore, safe_key
from runbook_rag.utils.errors import ConfigurationError, StoreError


class TestSafeKey:
    @pytest.mark.parametrize(
        ("key", "expected"),
        [
            ("runbook.md", "runbook.md"),
            ("../../etc/passwd", "etc/passwd"),
            ("/abs/path.pdf", "abs/path.pdf"),
            ("dir\\win.md", "dir/win.md"),
            ("High Memory Usage.md", "High_Memory_Usage.md"),
            ("..", "unnamed"),
        ],
    )
    def test_reduces_to_relative_path(self, key: str, expected: str) -> None:
        assert safe_key(key) == expected


class TestLocalObjectStore:
    @pytest.mark.asyncio
    async def test_writes_under_base_dir(self, tmp_path: Path) -> None:
        store = LocalObjectStore(tmp_path / "uploads")

        location = await store.put("../escape.md", b"# hi", "text/markdown")

        target = tmp_path / "uploads" / "escape.md"
        assert location == str(target)
        assert target.read_bytes() == b"# hi"
        assert store.get_provider_name() == "local_object_store"


class TestHttpObjectStore:
    @pytest.mark.asyncio
    async def test_puts_with_bearer_token(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(201)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            store = HttpObjectStore(client, "https://blobs.example.com/raw/", token="t0k")
            url = await store.put("Disk Space Full.md", b"data", "text/markdown")

        assert url == "https://blobs.example.com/raw/Disk_Space_Full.md"
        assert seen[0].method == "PUT"
        assert seen[0].headers["Authorization"] == "Bearer t0k"
        assert seen[0].headers["Content-Type"] == "text/markdown"
        assert seen[0].content == b"data"

    @pytest.mark.asyncio
    async def test_http_error_becomes_store_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(500)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            store = HttpObjectStore(client, "https://blobs.example.com")
            with pytest.raises(StoreError) as exc_info:
                await store.put("a.pdf", b"%PDF")

        assert exc_info.value.provider_name == "http_object_store"

    def test_base_url_is_required(self) -> None:
        with pytest.raises(ConfigurationError):
            HttpObjectStore(MagicMock(), "")
