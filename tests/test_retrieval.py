"""Tests for RRF fusion and the hybrid retriever."""
from __future__ import annotations

from unittest.mock import Mock

import numpy as np
import pytest

from hybridrag.errors import ConfigurationError, EmbeddingFailedError
from hybridrag.hashing import document_id
from hybridrag.models import Document, SearchFilters, SourceRecord, SourceType
from hybridrag.retrieval import HybridRanker, HybridRetriever, rrf_fuse
from hybridrag.store.sqlite_store import DualIndexStore

from conftest import FakeEmbedder, make_embedder


class TestRrfFusion:
    """Tests for Reciprocal Rank Fusion."""

    def test_score_formula(self):
        hits = rrf_fuse(["a", "b"], ["b", "c"], k=10, rrf_k=60)
        by_id = {h.id: h for h in hits}
        assert by_id["b"].score == pytest.approx(1 / 62 + 1 / 61)
        assert by_id["a"].score == pytest.approx(1 / 61)
        assert by_id["c"].score == pytest.approx(1 / 62)

    def test_found_by_both_beats_found_by_one(self):
        """An id in both lists outranks ids at the same positions in only one."""
        hits = rrf_fuse(["x", "both"], ["y", "both"], k=10)
        assert hits[0].id == "both"
        assert hits[0].vector_rank == 2
        assert hits[0].keyword_rank == 2

    def test_ties_break_on_best_rank_then_id(self):
        hits = rrf_fuse(["b", "d"], ["a", "c"], k=10)
        # a/b tie at rank 1, c/d tie at rank 2; id breaks the tie
        assert [h.id for h in hits] == ["a", "b", "c", "d"]

    def test_deterministic(self):
        v = [f"v{i}" for i in range(20)]
        kw = [f"v{i}" for i in range(19, -1, -1)]
        runs = [[(h.id, h.score) for h in rrf_fuse(v, kw, k=20)] for _ in range(5)]
        assert all(r == runs[0] for r in runs)

    def test_truncates_to_k(self):
        assert len(rrf_fuse(list("abcdef"), list("ghij"), k=3)) == 3
        assert rrf_fuse(list("abc"), [], k=0) == []

    def test_empty_inputs(self):
        assert rrf_fuse([], [], k=5) == []

    def test_single_list(self):
        hits = rrf_fuse([], ["k1", "k2"], k=5)
        assert [h.id for h in hits] == ["k1", "k2"]
        assert all(h.vector_rank is None for h in hits)

    def test_invalid_rrf_k(self):
        with pytest.raises(ValueError):
            HybridRanker(rrf_k=0)


def _seed(store: DualIndexStore, embedder: FakeEmbedder, origin: str, texts: list[str], **kw) -> None:
    source_type = kw.get("source_type", SourceType.FILE)
    docs = [
        Document(
            id=document_id(origin, i),
            origin=origin,
            chunk_index=i,
            source_type=source_type,
            text=t,
            content_hash="h",
            framework=kw.get("framework"),
            title=origin,
            embedding=embedder.embed(t),
        )
        for i, t in enumerate(texts)
    ]
    store.replace_origin(SourceRecord(origin=origin, source_type=source_type, content_hash="h",
                                      framework=kw.get("framework")), docs, model_id=embedder.model_id)


class TestHybridRetriever:
    """Tests for HybridRetriever.search over a real store."""

    @pytest.fixture
    def retriever(self, store: DualIndexStore, fake_embedder: FakeEmbedder) -> HybridRetriever:
        _seed(store, fake_embedder, "/guide.md", [
            "configure the database connection pool size",
            "the weather in spring is mild",
            "routing requests to controllers",
        ], framework="django")
        _seed(store, fake_embedder, "https://docs.dev/pool", [
            "connection pool tuning for postgres database servers",
        ], source_type=SourceType.URL, framework="rails")
        return HybridRetriever(store=store, embedder=make_embedder(fake_embedder))

    def test_hybrid_returns_ranked_hits(self, retriever: HybridRetriever):
        hits = retriever.search("database connection pool", k=3)
        assert [h.rank for h in hits] == [1, 2, 3][:len(hits)]
        assert {hits[0].document.id, hits[1].document.id} == {
            document_id("/guide.md", 0), document_id("https://docs.dev/pool", 0)
        }
        assert hits[0].method == "hybrid"
        assert hits[0].score >= hits[-1].score

    def test_same_query_same_order(self, retriever: HybridRetriever):
        a = [h.document.id for h in retriever.search("database pool routing", k=5)]
        b = [h.document.id for h in retriever.search("database pool routing", k=5)]
        assert a == b

    def test_filters_apply_to_both_indexes(self, retriever: HybridRetriever):
        hits = retriever.search("database connection pool", k=5,
                                filters=SearchFilters(source_types=(SourceType.URL,)))
        assert [h.document.origin for h in hits] == ["https://docs.dev/pool"]

    def test_framework_filter(self, retriever: HybridRetriever):
        hits = retriever.search("database connection pool", k=5, filters=SearchFilters(framework="django"))
        assert {h.document.framework for h in hits} == {"django"}

    def test_keyword_mode_needs_no_embedder(self, store: DualIndexStore, fake_embedder: FakeEmbedder):
        _seed(store, fake_embedder, "/a.md", ["alpha beta", "gamma delta"])
        r = HybridRetriever(store=store, embedder=None)
        hits = r.search("gamma", k=5, mode="keyword")
        assert [h.document.text for h in hits] == ["gamma delta"]
        assert hits[0].method == "keyword"
        with pytest.raises(ConfigurationError):
            r.search("gamma", k=5, mode="vector")

    def test_vector_mode(self, retriever: HybridRetriever):
        hits = retriever.search("weather spring", k=1, mode="vector")
        assert hits[0].document.text == "the weather in spring is mild"
        assert hits[0].method == "vector"

    def test_empty_query_and_zero_k(self, retriever: HybridRetriever):
        assert retriever.search("   ", k=5) == []
        assert retriever.search("database", k=0) == []

    def test_invalid_mode(self, retriever: HybridRetriever):
        with pytest.raises(ValueError, match="Invalid search mode"):
            retriever.search("x", mode="fuzzy")

    def test_candidates_are_k_times_multiplier(self, store: DualIndexStore):
        store_mock = Mock(wraps=store)
        embedder = make_embedder(FakeEmbedder())
        r = HybridRetriever(store=store_mock, embedder=embedder, candidate_multiplier=3)
        r.search("anything", k=4)
        assert store_mock.vector_search.call_args.kwargs["k"] == 12
        assert store_mock.keyword_search.call_args.kwargs["k"] == 12

    def test_query_embedding_failure_propagates(self, store: DualIndexStore):
        inner = FakeEmbedder(fail_on="boom")
        inner.embed_query = inner.embed
        r = HybridRetriever(store=store, embedder=make_embedder(inner))
        with pytest.raises(EmbeddingFailedError):
            r.search("boom", k=3)

    def test_zero_vector_query_still_returns_keyword_hits(self, store: DualIndexStore, fake_embedder):
        _seed(store, fake_embedder, "/a.md", ["unique keyword here"])
        embedder = Mock()
        embedder.embed_query.return_value = np.zeros(fake_embedder.dims, dtype=np.float32)
        r = HybridRetriever(store=store, embedder=embedder)
        hits = r.search("unique", k=3)
        assert hits[0].document.text == "unique keyword here"
