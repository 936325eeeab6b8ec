"""Tests for the hybrid search manager."""

import pytest

from tabstash.common.config import SearchConfig
from tabstash.search.base import LexicalCandidate, VectorCandidate
from tabstash.search.fusion import SearchWeights
from tabstash.search.search_manager import SearchManager, analyze_query
from tests.conftest import InMemoryTabStore, StubEmbeddingClient, make_record


@pytest.fixture
def store():
    return InMemoryTabStore(
        [
            make_record("a", title="Rust async book", url="https://rust-lang.github.io/async-book"),
            make_record("b", title="Tokio tutorial", url="https://tokio.rs/tutorial"),
            make_record("c", title="Python asyncio", url="https://docs.python.org/3/library/asyncio.html"),
            make_record("z", title="Someone else's async tab", user_id="user-2"),
        ]
    )


@pytest.fixture
def embedding_client():
    return StubEmbeddingClient()


@pytest.fixture
def manager(store, embedding_client, clock, metrics):
    return SearchManager(
        SearchConfig(),
        embedding_client,
        lexical_index=store,
        vector_index=store,
        record_source=store,
        metrics=metrics,
        clock=clock,
    )


def _vec(store, record_id, distance):
    return VectorCandidate(record=store.records[record_id], distance=distance)


def _lex(store, record_id, score):
    return LexicalCandidate(record=store.records[record_id], bm25_score=score)


class TestQueryAnalysis:

    def test_regular_query_uses_both(self):
        analysis = analyze_query("rust async runtime")
        assert analysis.use_vector and analysis.use_text

    def test_short_query_is_lexical_only(self):
        analysis = analyze_query("rs")
        assert analysis.is_short
        assert not analysis.use_vector
        assert analysis.use_text

    def test_url_query_is_lexical_only(self):
        for query in ("https://github.com/tokio-rs", "www.rust-lang.org"):
            analysis = analyze_query(query)
            assert analysis.is_url
            assert not analysis.use_vector
            assert analysis.use_text

    def test_digits_only_skip_vector(self):
        analysis = analyze_query("2024")
        assert not analysis.use_vector
        assert analysis.use_text

    def test_symbols_only_skip_both(self):
        analysis = analyze_query("?!*")
        assert not analysis.use_vector
        assert not analysis.use_text


class TestSearchManager:
    """Hybrid search behavior and degradation."""

    def test_candidate_limit(self, manager):
        assert manager.candidate_limit(20) == 30
        assert manager.candidate_limit(10) == 15
        assert manager.candidate_limit(3) == 4
        assert manager.candidate_limit(1) == 1

    @pytest.mark.asyncio
    async def test_empty_query_returns_nothing(self, manager, store, embedding_client):
        assert await manager.search("   ", "user-1") == []
        assert store.vector_calls == 0
        assert store.lexical_calls == 0
        assert embedding_client.calls == []

    @pytest.mark.asyncio
    async def test_hybrid_results_fused_with_rrf(self, manager, store, embedding_client):
        store.vector_results = [_vec(store, "a", 0.1), _vec(store, "b", 0.2)]
        store.lexical_results = [_lex(store, "b", -3.0), _lex(store, "c", -1.0)]

        hits = await manager.search("async runtimes", "user-1")

        assert [h.record_id for h in hits] == ["b", "a", "c"]
        assert all(h.fusion_algorithm == "rrf" for h in hits)
        assert embedding_client.calls == [("async runtimes", "retrieval.query")]

    @pytest.mark.asyncio
    async def test_distance_threshold_is_inclusive(self, manager, store):
        """0.70 is kept and 0.71 is dropped."""
        store.vector_results = [
            _vec(store, "a", 0.2),
            _vec(store, "b", 0.70),
            _vec(store, "c", 0.71),
        ]

        hits = await manager.search("async runtimes", "user-1")

        assert [h.record_id for h in hits] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_threshold_override(self, store, embedding_client, clock):
        strict = SearchManager(
            SearchConfig(),
            embedding_client,
            store,
            store,
            store,
            clock=clock,
            distance_threshold=0.3,
        )
        store.vector_results = [_vec(store, "a", 0.2), _vec(store, "b", 0.5)]

        hits = await strict.search("async runtimes", "user-1")
        assert [h.record_id for h in hits] == ["a"]

    @pytest.mark.asyncio
    async def test_degenerate_rrf_uses_weighted_fusion(self, manager, store):
        store.vector_results = [_vec(store, "a", 0.3)]
        store.lexical_results = [_lex(store, "b", -2.0)]

        hits = await manager.search("async runtimes", "user-1")

        assert [h.record_id for h in hits] == ["a", "b"]
        assert all(h.fusion_algorithm == "weighted" for h in hits)
        assert hits[0].fused_score == pytest.approx(0.35)

    @pytest.mark.asyncio
    async def test_short_query_skips_vector_search(self, manager, store, embedding_client):
        store.lexical_results = [_lex(store, "a", -1.0)]

        hits = await manager.search("rs", "user-1")

        assert [h.record_id for h in hits] == ["a"]
        assert store.vector_calls == 0
        assert embedding_client.calls == []

    @pytest.mark.asyncio
    async def test_url_query_skips_vector_search(self, manager, store):
        store.lexical_results = [_lex(store, "b", -1.0)]

        hits = await manager.search("https://tokio.rs/tutorial", "user-1")

        assert [h.record_id for h in hits] == ["b"]
        assert store.vector_calls == 0

    @pytest.mark.asyncio
    async def test_zero_weight_disables_method(self, manager, store):
        store.vector_results = [_vec(store, "a", 0.1)]
        store.lexical_results = [_lex(store, "b", -1.0)]

        hits = await manager.search("async runtimes", "user-1", weights=SearchWeights(vector=0.0, text=1.0))

        assert [h.record_id for h in hits] == ["b"]
        assert store.vector_calls == 0

    @pytest.mark.asyncio
    async def test_lexical_failure_degrades_to_vector(self, manager, store):
        store.fail_lexical = True
        store.vector_results = [_vec(store, "c", 0.4)]

        hits = await manager.search("async runtimes", "user-1")

        assert [h.record_id for h in hits] == ["c"]

    @pytest.mark.asyncio
    async def test_both_failing_uses_substring_fallback(self, manager, store, metrics):
        store.fail_lexical = True
        store.fail_vector = True

        hits = await manager.search("ASYNC", "user-1")

        assert {h.record_id for h in hits} == {"a", "c"}
        assert all(h.fusion_algorithm == "substring" for h in hits)
        assert 'tabstash_search_requests_total{mode="fallback"} 1.0' in metrics.get_metrics()

    @pytest.mark.asyncio
    async def test_fallback_matches_url_and_respects_limit(self, manager, store):
        store.fail_lexical = True
        store.fail_vector = True

        hits = await manager.search("https://", "user-1", limit=2)
        assert len(hits) == 2

    @pytest.mark.asyncio
    async def test_fallback_failure_returns_empty(self, manager, store):
        store.fail_lexical = True
        store.fail_vector = True
        store.fail_list = True

        assert await manager.search("async", "user-1") == []

    @pytest.mark.asyncio
    async def test_limit_truncates_fused_results(self, manager, store):
        store.lexical_results = [_lex(store, rid, -float(i + 1)) for i, rid in enumerate(("a", "b", "c"))]

        hits = await manager.search("async runtimes", "user-1", limit=2)
        assert len(hits) == 2

    @pytest.mark.asyncio
    async def test_health_check_reports_breaker_state(self, manager):
        assert await manager.health_check() == {"embedding_provider": "closed"}
