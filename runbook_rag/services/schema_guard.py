"""Process-wide cache for the filename-uniqueness schema probe.

Document upserts use ``ON CONFLICT (filename)`` and are only idempotent if
``documents.filename`` carries a unique constraint.  The guard probes the
store once and remembers a positive answer for the rest of the process.

Lifecycle: one instance is created by the component factory at startup and
passed to every pipeline.  A successful probe is never invalidated.  A
failed probe is not cached, so applying the migration while the process is
running takes effect on the next request.  :meth:`reset` exists for tests
and for ``init-db``.
"""

from __future__ import annotations

import structlog

from runbook_rag.interfaces.document_store import IDocumentStore
from runbook_rag.utils.errors import SchemaError

logger = structlog.get_logger(logger_name=__name__)


class SchemaGuard:
    """Caches the result of :meth:`IDocumentStore.has_filename_unique_constraint`."""

    def __init__(self) -> None:
        self._verified = False
        self._probe_count = 0

    @property
    def verified(self) -> bool:
        return self._verified

    @property
    def probe_count(self) -> int:
        """Number of times the store was actually probed."""
        return self._probe_count

    async def ensure(self, store: IDocumentStore) -> None:
        """Probe *store* unless a previous probe succeeded.

        Raises
        ------
        SchemaError
            If the unique constraint on ``documents.filename`` is missing.
        """
        if self._verified:
            return

        self._probe_count += 1
        has_constraint = await store.has_filename_unique_constraint()
        if not has_constraint:
            logger.error("schema_check_failed", missing="documents_filename_unique")
            raise SchemaError(
                message="documents.filename has no unique constraint; re-uploads would "
                "duplicate documents. Run `runbook-rag init-db` to apply the schema.",
            )

        self._verified = True
        logger.info("schema_check_passed")

    def reset(self) -> None:
        self._verified = False
