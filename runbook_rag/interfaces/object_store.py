"""Abstract base class for raw-file retention backends.

Retention is optional and best effort: the ingestion pipeline never lets an
object-store failure fail an upload.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class IObjectStore(ABC):
    """Contract for storing the original bytes of uploaded files."""

    @abstractmethod
    async def put(self, key: str, data: bytes, content_type: str | None = None) -> str:
        """Store *data* under *key* and return its location (path or URL)."""

    @abstractmethod
    def get_provider_name(self) -> str:
        """Return a short identifier, e.g. ``"local_object_store"``."""
