"""Hybrid vector + keyword retrieval over the chunk store.

Pure vector similarity over short, jargon-heavy runbook chunks tends to
surface topically adjacent chunks that miss the query's actual terms.  The
retriever therefore over-fetches nearest neighbours and reranks them by
keyword overlap:

1. Embed the query.
2. Fetch ``max(top_k * candidate_multiplier, min_candidates)`` candidates
   by cosine distance, optionally restricted to a set of filenames.
3. Drop duplicates by chunk id and by ``(filename, chunk_index)``.
4. Extract up to ``max_keywords`` distinct lowercase alphanumeric tokens of
   at least ``min_keyword_length`` characters from the query.
5. Score each candidate by how many keywords occur in its text.
6. Sort by keyword score (desc), then distance (asc).
7. Return the first ``top_k``.

Store and embedding errors propagate: an empty list always means the store
had nothing to return, never that a dependency failed.
"""

from __future__ import annotations

import re

import structlog

from runbook_rag.config.loader import RetrievalTuning, StageTimeouts
from runbook_rag.interfaces.document_store import IDocumentStore
from runbook_rag.models.rag import RetrievalCandidate
from runbook_rag.services.embedding_client import EmbeddingClient
from runbook_rag.utils.concurrency import with_timeout
from runbook_rag.utils.errors import InputValidationError

logger = structlog.get_logger(logger_name=__name__)

_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def extract_keywords(query: str, min_length: int = 4, max_keywords: int = 8) -> list[str]:
    """Return distinct query tokens in first-seen order.

    Tokens are lowercase runs of ``[a-z0-9]``; shorter than *min_length*
    are dropped and at most *max_keywords* are kept.
    """
    keywords: list[str] = []
    seen: set[str] = set()
    for token in _TOKEN_SPLIT_RE.split(query.lower()):
        if len(token) < min_length or token in seen:
            continue
        seen.add(token)
        keywords.append(token)
        if len(keywords) >= max_keywords:
            break
    return keywords


def keyword_score(text: str, keywords: list[str]) -> int:
    """Count how many *keywords* occur as substrings of *text* (case-insensitive)."""
    lowered = text.lower()
    return sum(1 for keyword in keywords if keyword in lowered)


def dedupe_candidates(candidates: list[RetrievalCandidate]) -> list[RetrievalCandidate]:
    """Keep the first occurrence of each chunk id and each ``(filename, chunk_index)``."""
    seen_ids: set[str] = set()
    seen_positions: set[tuple[str, int]] = set()
    unique: list[RetrievalCandidate] = []
    for candidate in candidates:
        position = (candidate.filename, candidate.chunk_index)
        if candidate.chunk_id in seen_ids or position in seen_positions:
            continue
        seen_ids.add(candidate.chunk_id)
        seen_positions.add(position)
        unique.append(candidate)
    return unique


def rerank(candidates: list[RetrievalCandidate], keywords: list[str]) -> list[RetrievalCandidate]:
    """Score *candidates* and sort by keyword score desc, then distance asc."""
    scored = [
        candidate.model_copy(update={"keyword_score": keyword_score(candidate.text, keywords)})
        for candidate in candidates
    ]
    scored.sort(key=lambda c: (-c.keyword_score, c.distance))
    return scored


# ---------------------------------------------------------------------------
# Retriever
# ---------------------------------------------------------------------------


class HybridRetriever:
    """Embeds a query, pulls nearest-neighbour candidates and reranks them.

    Parameters
    ----------
    embedding_client:
        Used to embed the query text.
    store:
        Source of nearest-neighbour candidates.
    tuning:
        Candidate pool sizing and keyword extraction limits.
    timeouts:
        ``query_embed`` and ``vector_search`` stage budgets.
    """

    def __init__(
        self,
        embedding_client: EmbeddingClient,
        store: IDocumentStore,
        tuning: RetrievalTuning | None = None,
        timeouts: StageTimeouts | None = None,
    ) -> None:
        self._embedding_client = embedding_client
        self._store = store
        self._tuning = tuning or RetrievalTuning()
        self._timeouts = timeouts or StageTimeouts()

    @property
    def tuning(self) -> RetrievalTuning:
        return self._tuning

    def candidate_pool_size(self, top_k: int) -> int:
        return max(top_k * self._tuning.candidate_multiplier, self._tuning.min_candidates)

    async def search(
        self,
        query: str,
        top_k: int,
        filename_scope: list[str] | None = None,
    ) -> list[RetrievalCandidate]:
        """Return up to *top_k* reranked candidates for *query*.

        Parameters
        ----------
        query:
            Natural-language query.
        top_k:
            Number of results wanted.
        filename_scope:
            Restrict candidates to these filenames.

        Raises
        ------
        InputValidationError
            If *query* is blank or *top_k* is below 1.
        EmbeddingError, StoreError, StageTimeoutError
            Propagated from the embedding call or the store.
        """
        if not query or not query.strip():
            raise InputValidationError(message="Query must not be empty", stage="search")
        if top_k < 1:
            raise InputValidationError(message="top_k must be at least 1", stage="search")

        vector = await with_timeout(
            "query_embed",
            self._embedding_client.embed(query),
            self._timeouts.query_embed,
        )

        pool_size = self.candidate_pool_size(top_k)
        candidates = await with_timeout(
            "vector_search",
            self._store.search_candidates(vector, pool_size, filename_scope),
            self._timeouts.vector_search,
        )

        unique = dedupe_candidates(candidates)
        keywords = extract_keywords(
            query,
            min_length=self._tuning.min_keyword_length,
            max_keywords=self._tuning.max_keywords,
        )
        ranked = rerank(unique, keywords)[:top_k]

        logger.info(
            "hybrid_search_complete",
            top_k=top_k,
            candidates=len(candidates),
            unique=len(unique),
            keywords=keywords,
            returned=len(ranked),
            scoped=filename_scope is not None,
        )
        return ranked
