"""Filesystem object store for raw upload retention.

Files land under a base directory at ``<base>/<key>``.  Keys are reduced to
safe relative paths so a crafted filename cannot escape the base directory.
"""

from __future__ import annotations

import asyncio
import re
from pathlib import Path, PurePosixPath

import structlog

from runbook_rag.interfaces.object_store import IObjectStore

logger = structlog.get_logger(logger_name=__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_key(key: str) -> str:
    """Return *key* as a relative POSIX path with no ``..`` or empty parts."""
    parts = []
    for part in PurePosixPath(key.replace("\\", "/")).parts:
        if part in ("", ".", "..", "/"):
            continue
        cleaned = _UNSAFE_CHARS.sub("_", part).strip("._") or "_"
        parts.append(cleaned)
    return "/".join(parts) or "unnamed"


class LocalObjectStore(IObjectStore):
    """Writes objects to a local directory."""

    def __init__(self, base_dir: str | Path) -> None:
        self._base_dir = Path(base_dir)

    async def put(self, key: str, data: bytes, content_type: str | None = None) -> str:
        target = self._base_dir / safe_key(key)
        await asyncio.to_thread(self._write, target, data)
        logger.info("object_stored", backend="local", path=str(target), bytes=len(data))
        return str(target)

    def get_provider_name(self) -> str:
        return "local_object_store"

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
