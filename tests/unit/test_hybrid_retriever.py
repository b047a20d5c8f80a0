"""Unit tests for the hybrid retriever's keyword rerank and candidate handling."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from runbook_rag.config.loader import RetrievalTuning
from runbook_rag.models.rag import RetrievalCandidate
from runbook_rag.services.embedding_client import EmbeddingClient
from runbook_rag.services.retrieval.hybrid_retriever import (
    HybridRetriever,
    dedupe_candidates,
    extract_keywords,
    keyword_score,
    rerank,
)
from runbook_rag.utils.errors import InputValidationError, StoreError
from tests.conftest import MockEmbeddingProvider, bag_of_words_vector


def _candidate(chunk_id: str, text: str, distance: float, filename: str = "a.md", index: int = 0):
    return RetrievalCandidate(
        chunk_id=chunk_id,
        text=text,
        filename=filename,
        chunk_index=index,
        distance=distance,
    )


# ======================================================================
# Pure helpers
# ======================================================================


class TestExtractKeywords:
    def test_lowercases_and_drops_short_tokens(self) -> None:
        assert extract_keywords("Postgres connection is DOWN on db-01") == [
            "postgres",
            "connection",
            "down",
        ]

    def test_duplicates_kept_once_in_first_seen_order(self) -> None:
        assert extract_keywords("disk disk full DISK usage") == ["disk", "full", "usage"]

    def test_caps_keyword_count(self) -> None:
        query = " ".join(f"word{i}" for i in range(20))
        assert len(extract_keywords(query, max_keywords=8)) == 8

    def test_punctuation_only_query_has_no_keywords(self) -> None:
        assert extract_keywords("?? !! ...") == []


class TestKeywordScore:
    def test_counts_substring_matches_case_insensitively(self) -> None:
        text = "Restart the Postgres primary after the CONNECTION pool drains."
        assert keyword_score(text, ["postgres", "connection", "redis"]) == 2

    def test_no_keywords_scores_zero(self) -> None:
        assert keyword_score("anything", []) == 0


class TestDedupe:
    def test_drops_repeated_chunk_ids_and_positions(self) -> None:
        candidates = [
            _candidate("c1", "first", 0.1, index=0),
            _candidate("c1", "first again", 0.2, index=5),
            _candidate("c2", "same position", 0.3, index=0),
            _candidate("c3", "other file", 0.4, filename="b.md", index=0),
        ]

        unique = dedupe_candidates(candidates)

        assert [c.chunk_id for c in unique] == ["c1", "c3"]


class TestRerank:
    def test_keyword_score_beats_distance(self) -> None:
        near = _candidate("near", "unrelated content", 0.05, index=0)
        far = _candidate("far", "memory leak in the heap", 0.40, index=1)

        ranked = rerank([near, far], ["memory", "leak"])

        assert [c.chunk_id for c in ranked] == ["far", "near"]
        assert ranked[0].keyword_score == 2
        assert ranked[1].keyword_score == 0

    def test_ties_break_on_distance(self) -> None:
        a = _candidate("a", "disk full", 0.30, index=0)
        b = _candidate("b", "disk pressure", 0.10, index=1)

        ranked = rerank([a, b], ["disk"])

        assert [c.chunk_id for c in ranked] == ["b", "a"]

    def test_inputs_are_not_mutated(self) -> None:
        original = _candidate("a", "disk full", 0.3)
        rerank([original], ["disk"])
        assert original.keyword_score == 0


# ======================================================================
# HybridRetriever
# ======================================================================


@pytest.fixture
def mock_store() -> AsyncMock:
    store = AsyncMock()
    store.search_candidates = AsyncMock(return_value=[])
    return store


@pytest.fixture
def hybrid(mock_store: AsyncMock) -> HybridRetriever:
    client = EmbeddingClient(MockEmbeddingProvider())
    return HybridRetriever(embedding_client=client, store=mock_store, tuning=RetrievalTuning())


class TestHybridRetriever:
    def test_candidate_pool_size(self, hybrid: HybridRetriever) -> None:
        assert hybrid.candidate_pool_size(3) == 25
        assert hybrid.candidate_pool_size(10) == 50

    @pytest.mark.asyncio
    async def test_search_embeds_query_and_passes_scope(
        self, hybrid: HybridRetriever, mock_store: AsyncMock
    ) -> None:
        await hybrid.search("redis failover", top_k=2, filename_scope=["redis.md"])

        mock_store.search_candidates.assert_awaited_once_with(
            bag_of_words_vector("redis failover"), 25, ["redis.md"]
        )

    @pytest.mark.asyncio
    async def test_search_reranks_and_truncates(
        self, hybrid: HybridRetriever, mock_store: AsyncMock
    ) -> None:
        mock_store.search_candidates.return_value = [
            _candidate("c1", "generic troubleshooting notes", 0.10, index=0),
            _candidate("c2", "redis failover procedure", 0.30, index=1),
            _candidate("c3", "redis sentinel quorum", 0.20, index=2),
            _candidate("c1", "generic troubleshooting notes", 0.10, index=0),
        ]

        results = await hybrid.search("redis failover", top_k=2)

        assert [c.chunk_id for c in results] == ["c2", "c3"]
        assert [c.keyword_score for c in results] == [2, 1]

    @pytest.mark.asyncio
    async def test_empty_store_returns_empty_list(self, hybrid: HybridRetriever) -> None:
        assert await hybrid.search("anything at all", top_k=5) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("query", ["", "   "])
    async def test_blank_query_rejected(self, hybrid: HybridRetriever, query: str) -> None:
        with pytest.raises(InputValidationError):
            await hybrid.search(query, top_k=5)

    @pytest.mark.asyncio
    async def test_top_k_below_one_rejected(self, hybrid: HybridRetriever) -> None:
        with pytest.raises(InputValidationError, match="top_k"):
            await hybrid.search("disk", top_k=0)

    @pytest.mark.asyncio
    async def test_store_errors_propagate(
        self, hybrid: HybridRetriever, mock_store: AsyncMock
    ) -> None:
        mock_store.search_candidates.side_effect = StoreError(message="connection reset")

        with pytest.raises(StoreError):
            await hybrid.search("disk full", top_k=3)
