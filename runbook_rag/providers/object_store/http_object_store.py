"""HTTP object store: ``PUT {base_url}/{key}`` with an optional bearer token.

Works with any blob service that accepts authenticated PUT uploads (a
pre-signed bucket endpoint, a storage gateway, ...).
"""

from __future__ import annotations

from urllib.parse import quote

import httpx
import structlog

from runbook_rag.interfaces.object_store import IObjectStore
from runbook_rag.providers.object_store.local_object_store import safe_key
from runbook_rag.utils.errors import ConfigurationError, StoreError

logger = structlog.get_logger(logger_name=__name__)


class HttpObjectStore(IObjectStore):
    """Uploads objects to an HTTP endpoint.

    Parameters
    ----------
    http_client:
        Shared ``httpx.AsyncClient`` owned by the application.
    base_url:
        Endpoint prefix; the object key is appended as the final path.
    token:
        Optional bearer token sent in ``Authorization``.
    """

    def __init__(self, http_client: httpx.AsyncClient, base_url: str, token: str = "") -> None:
        if not base_url:
            raise ConfigurationError(
                message="OBJECT_STORE_URL is required for the http object store",
                provider_name="http_object_store",
            )
        self._http = http_client
        self._base_url = base_url.rstrip("/")
        self._token = token

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> str:
        url = f"{self._base_url}/{quote(safe_key(key))}"
        headers = {"Content-Type": content_type or "application/octet-stream"}
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"

        try:
            response = await self._http.put(url, content=data, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise StoreError(
                message=f"Object upload to {url} failed: {exc}",
                provider_name=self.get_provider_name(),
            ) from exc

        logger.info("object_stored", backend="http", url=url, bytes=len(data))
        return url

    def get_provider_name(self) -> str:
        return "http_object_store"
