"""
Tests for the Hybrid Search Engine
==================================
Fusion profiles, score normalization, graph signals, context propagation
and graceful degradation when a candidate source fails.
"""

import pytest
from hypothesis import assume, given, settings, strategies as st

from notegraph.core.candidates import VectorIndex
from notegraph.core.config import ProjectionConfig, SearchConfig
from notegraph.core.exceptions import ConfigurationError
from notegraph.core.graph.projection import GraphProjectionStore
from notegraph.core.hybrid_search import (
    DEFAULT_FUSION_CONFIGS,
    Candidate,
    FusionConfig,
    FusionWeights,
    GraphSignal,
    HybridSearchEngine,
    ScoredCandidate,
    compute_graph_signal,
    effective_weights,
    fuse_scores,
    graph_relevance,
    normalize_scores,
    propagate_context,
    resolve_fusion_config,
    traverse,
)
from notegraph.core.store import InMemoryGraphStore

from tests.conftest import make_edge, make_entity
from tests.mocks import FailingSource, StaticSource


ENTITIES = [
    make_entity("A", "Arya", summary="Faceless assassin"),
    make_entity("B", "Bran", summary="Three-eyed raven"),
    make_entity("C", "Cersei", summary="Queen regent"),
    make_entity("D", "Dany", summary="Mother of dragons"),
]
EDGES = [make_edge("ab", "A", "B"), make_edge("bc", "B", "C")]


@pytest.fixture
def projection():
    store = GraphProjectionStore(ProjectionConfig(confidence_threshold=0.0))
    store.build_from_cache(ENTITIES, EDGES)
    return store


@pytest.fixture
def records():
    return InMemoryGraphStore(entities=ENTITIES)


# =============================================================================
# Fusion configuration
# =============================================================================

class TestFusionConfig:

    def test_profiles(self):
        assert set(DEFAULT_FUSION_CONFIGS) == {"semantic", "relational", "balanced", "contextual"}
        relational = DEFAULT_FUSION_CONFIGS["relational"]
        assert relational.graph_weight == 0.6
        assert relational.max_hops == 3

    def test_weights_are_clamped(self):
        config = FusionConfig(vector_weight=-1.0, graph_weight=2.0, max_hops=-3)
        assert config.vector_weight == 0.0
        assert config.graph_weight == 1.0
        assert config.max_hops == 0

    def test_resolve(self):
        assert resolve_fusion_config(None) is DEFAULT_FUSION_CONFIGS["balanced"]
        assert resolve_fusion_config(None, "semantic").intent == "semantic"
        custom = FusionConfig(intent="custom")
        assert resolve_fusion_config(custom) is custom

        merged = resolve_fusion_config({"intent": "semantic", "max_hops": 4})
        assert merged.vector_weight == 0.7
        assert merged.max_hops == 4

    def test_resolve_rejects_unknown(self):
        with pytest.raises(ConfigurationError):
            resolve_fusion_config("vibes")
        with pytest.raises(ConfigurationError):
            resolve_fusion_config({"intent": "balanced", "temperature": 1})


class TestEffectiveWeights:

    def test_missing_family_is_redistributed(self):
        weights = effective_weights(DEFAULT_FUSION_CONFIGS["balanced"], has_lexical=True, has_vector=False)
        assert weights.vector == 0.0
        assert weights.lexical == pytest.approx(0.2 + 0.4 * 0.2 / 0.6)
        assert weights.graph == pytest.approx(0.4 + 0.4 * 0.4 / 0.6)
        assert weights.lexical + weights.graph == pytest.approx(1.0)

    def test_non_adaptive_profile_keeps_weights(self):
        weights = effective_weights(DEFAULT_FUSION_CONFIGS["semantic"], has_lexical=True, has_vector=False)
        assert weights == FusionWeights(lexical=0.1, vector=0.7, graph=0.2)

    def test_all_present_is_unchanged(self):
        weights = effective_weights(DEFAULT_FUSION_CONFIGS["balanced"], True, True)
        assert weights == FusionWeights(lexical=0.2, vector=0.4, graph=0.4)


# =============================================================================
# Scoring helpers
# =============================================================================

class TestNormalization:

    def test_min_max(self):
        scores = normalize_scores([Candidate("a", 10.0), Candidate("b", 5.0), Candidate("c", 0.0)])
        assert scores == {"a": 1.0, "b": 0.5, "c": 0.0}

    def test_flat_scores(self):
        assert normalize_scores([Candidate("a", 3.0), Candidate("b", 3.0)]) == {"a": 1.0, "b": 1.0}
        assert normalize_scores([Candidate("a", 0.0)]) == {"a": 0.0}
        assert normalize_scores([]) == {}

    def test_duplicates_keep_best_score(self):
        scores = normalize_scores([Candidate("a", 1.0), Candidate("a", 9.0), Candidate("b", 1.0)])
        assert scores == {"a": 1.0, "b": 0.0}

    def test_graph_relevance_is_bounded(self):
        maxed = GraphSignal(
            node_id="x", degree=500, centrality=3.0, avg_edge_weight=7.0, avg_path_weight=2.0,
            connected_to_candidates=99, temporal_score=4.0, causal_score=5.0,
        )
        assert graph_relevance(maxed) == pytest.approx(1.0)
        assert graph_relevance(GraphSignal(node_id="x")) == 0.0


class TestFusionMonotonicity:

    @settings(max_examples=100, deadline=None)
    @given(
        scores=st.lists(st.floats(0.0, 100.0, allow_nan=False), min_size=1, max_size=8),
        index=st.integers(min_value=0, max_value=7),
        delta=st.floats(0.0, 50.0, allow_nan=False),
        weights=st.tuples(st.floats(0.0, 1.0), st.floats(0.0, 1.0), st.floats(0.0, 1.0)),
    )
    def test_raising_a_lexical_score_never_lowers_the_fused_score(self, scores, index, delta, weights):
        assume(index < len(scores))
        fusion_weights = FusionWeights(*weights)
        before = [Candidate(f"n{i}", s) for i, s in enumerate(scores)]
        after = [Candidate(c.id, c.score + delta if i == index else c.score) for i, c in enumerate(before)]
        graph_scores = {c.id: 0.5 for c in before}

        target = f"n{index}"
        old = {c.node_id: c.score for c in fuse_scores(before, [], graph_scores, fusion_weights)}[target]
        new = {c.node_id: c.score for c in fuse_scores(after, [], graph_scores, fusion_weights)}[target]
        assert new >= old

    def test_candidates_from_both_sources_are_combined(self):
        fused = fuse_scores(
            [Candidate("a", 2.0), Candidate("b", 1.0)],
            [Candidate("b", 0.9), Candidate("c", 0.1)],
            {"a": 0.0, "b": 1.0, "c": 0.0},
            FusionWeights(lexical=0.5, vector=0.3, graph=0.2),
        )
        by_id = {c.node_id: c for c in fused}
        assert [c.node_id for c in fused] == ["a", "b", "c"]
        assert by_id["b"].score == pytest.approx(0.3 * 1.0 + 0.2 * 1.0)
        assert by_id["c"].vector_score == 0.0


# =============================================================================
# Graph reads
# =============================================================================

class TestGraphSignals:

    def test_traverse_respects_hops_and_weights(self):
        store = GraphProjectionStore(ProjectionConfig(confidence_threshold=0.0))
        store.build_from_cache(ENTITIES, [
            make_edge("ab", "A", "B", weight=0.5),
            make_edge("bc", "B", "C", weight=3.0),
            make_edge("cd", "C", "D", weight=0.1),
        ])
        reached = traverse(store, "A", max_hops=3, min_edge_weight=0.2)
        assert reached == {"B": (1, 0.5), "C": (2, 0.5)}
        assert traverse(store, "A", max_hops=1, min_edge_weight=0.0) == {"B": (1, 0.5)}

    def test_traverse_follows_direction(self):
        store = GraphProjectionStore(ProjectionConfig(confidence_threshold=0.0))
        store.build_from_cache(ENTITIES, [make_edge("ab", "A", "B", bidirectional=False)])
        assert traverse(store, "A", 2, 0.0) == {"B": (1, 1.0)}
        assert traverse(store, "B", 2, 0.0) == {}

    def test_signal_for_projected_node(self, projection):
        signal = compute_graph_signal(projection, "B", {"A", "B", "D"}, DEFAULT_FUSION_CONFIGS["balanced"])
        assert signal.degree == 2
        assert signal.connected_to_candidates == 1
        assert signal.reachable_nodes == 2
        assert signal.avg_edge_weight == pytest.approx(1.0)
        assert signal.centrality == pytest.approx(projection.get_centrality("B").composite)

    def test_signal_for_unknown_node_is_empty(self, projection):
        signal = compute_graph_signal(projection, "ghost", {"ghost"}, DEFAULT_FUSION_CONFIGS["balanced"])
        assert signal == GraphSignal(node_id="ghost")

    def test_temporal_and_causal_signals(self):
        store = GraphProjectionStore(ProjectionConfig(confidence_threshold=0.0))
        store.build_from_cache(ENTITIES, [
            make_edge("ab", "A", "B", temporal_confidence=0.4, causal_strength=0.8),
            make_edge("ac", "A", "C", temporal_confidence=0.6),
        ])
        signal = compute_graph_signal(store, "A", set(), DEFAULT_FUSION_CONFIGS["semantic"])
        assert signal.temporal_score == pytest.approx(0.5)
        assert signal.causal_score == pytest.approx(0.8)
        # single-hop profiles skip traversal
        assert signal.reachable_nodes == 0


class TestPropagation:

    def test_neighbors_are_boosted_and_clamped(self, projection):
        results = [
            ScoredCandidate("A", 0.9),
            ScoredCandidate("B", 0.5),
            ScoredCandidate("C", 0.2),
        ]
        applied = propagate_context(results, projection, min_anchors=3)
        by_id = {r.node_id: r for r in results}

        assert by_id["A"].score == 1.0
        assert by_id["B"].score == pytest.approx(0.8)
        assert by_id["C"].score == pytest.approx(0.35)
        assert applied == pytest.approx({"A": 0.15, "B": 0.3, "C": 0.15})

    def test_only_anchors_spread_boosts(self, projection):
        results = [ScoredCandidate("D", 0.9), ScoredCandidate("A", 0.5), ScoredCandidate("B", 0.1)]
        propagate_context(results, projection, anchor_fraction=0.0, min_anchors=1)
        assert [r.score for r in results] == [0.9, 0.5, 0.1]

    def test_reverse_edge_uses_fallback_boost(self):
        store = GraphProjectionStore(ProjectionConfig(confidence_threshold=0.0))
        store.build_from_cache(ENTITIES, [make_edge("ab", "A", "B", weight=0.5, bidirectional=False)])
        results = [ScoredCandidate("B", 0.6), ScoredCandidate("A", 0.2)]
        propagate_context(results, store, min_anchors=1)
        assert results[1].boost == pytest.approx(0.1)

    @settings(max_examples=50, deadline=None)
    @given(st.lists(st.floats(0.0, 1.0), min_size=4, max_size=4))
    def test_scores_never_drop_or_exceed_one(self, scores):
        store = GraphProjectionStore(ProjectionConfig(confidence_threshold=0.0))
        store.build_from_cache(ENTITIES, EDGES + [make_edge("ac", "A", "C", weight=9.0)])
        results = sorted(
            [ScoredCandidate(e.id, s) for e, s in zip(ENTITIES, scores)],
            key=lambda r: -r.score,
        )
        before = {r.node_id: r.score for r in results}
        propagate_context(results, store)
        for r in results:
            assert before[r.node_id] <= r.score <= 1.0


# =============================================================================
# Engine
# =============================================================================

class TestHybridSearchEngine:

    @pytest.mark.asyncio
    async def test_failing_vector_source_degrades_to_lexical_and_graph(self, projection, records):
        lexical = StaticSource([{"id": "A", "score": 2.0}, {"id": "D", "score": 1.0}])
        vector = FailingSource()
        engine = HybridSearchEngine(projection, lexical_source=lexical, vector_source=vector, record_source=records)

        results = await engine.search("arya", query_embedding=[0.1, 0.2], k=5)

        assert [r.node_id for r in results] == ["A", "D"]
        assert all(r.vector_score == 0.0 for r in results)
        assert results[0].lexical_score == 1.0
        assert results[0].graph_score > 0.0
        assert results[0].label == "Arya"
        assert results[0].content == "Faceless assassin"
        assert vector.calls == 1
        assert engine.get_stats()["source_failures"]["vector"] == 1

    @pytest.mark.asyncio
    async def test_over_fetches_from_sources(self, projection):
        lexical = StaticSource([])
        engine = HybridSearchEngine(projection, lexical_source=lexical, config=SearchConfig(overfetch_factor=4))
        assert await engine.search("anything", k=3) == []
        assert lexical.calls == [("anything", 12, None)]
        assert engine.get_stats()["empty_searches"] == 1

    @pytest.mark.asyncio
    async def test_non_positive_k_returns_nothing(self, projection):
        lexical = StaticSource([{"id": "A", "score": 1.0}])
        engine = HybridSearchEngine(projection, lexical_source=lexical)
        assert await engine.search("arya", k=0) == []
        assert lexical.calls == []

    @pytest.mark.asyncio
    async def test_vector_only_search(self, projection):
        index = VectorIndex()
        index.add("A", [1.0, 0.0])
        index.add("D", [0.0, 1.0])
        engine = HybridSearchEngine(projection, vector_source=index)

        results = await engine.search("", query_embedding=[1.0, 0.1], k=2, config="semantic")

        assert results[0].node_id == "A"
        assert results[0].vector_score == 1.0
        assert results[1].vector_score == 0.0
        assert results[0].metadata["intent"] == "semantic"

    @pytest.mark.asyncio
    async def test_connected_results_are_boosted(self, projection):
        lexical = StaticSource([{"id": "A", "score": 3.0}, {"id": "B", "score": 1.0}, {"id": "D", "score": 1.0}])
        engine = HybridSearchEngine(projection, lexical_source=lexical)

        results = await engine.search("stark", k=3, config="balanced")
        by_id = {r.node_id: r for r in results}

        assert by_id["B"].metadata["boost"] == pytest.approx(0.15)
        assert by_id["D"].metadata["boost"] == 0.0
        assert by_id["B"].score > by_id["D"].score

    @pytest.mark.asyncio
    async def test_results_are_sorted_and_truncated(self, projection):
        lexical = StaticSource([{"id": i, "score": s} for i, s in zip("ABCD", (1.0, 4.0, 2.0, 3.0))])
        engine = HybridSearchEngine(projection, lexical_source=lexical)

        results = await engine.search("q", k=2, config={"intent": "balanced", "boost_connected": False})
        assert len(results) == 2
        assert results[0].score >= results[1].score

    @pytest.mark.asyncio
    async def test_unresolvable_candidates_are_dropped(self, projection, records):
        lexical = StaticSource([{"id": "A", "score": 2.0}, {"id": "ghost", "score": 5.0}])
        engine = HybridSearchEngine(projection, lexical_source=lexical, record_source=records)
        results = await engine.search("q", k=5)
        assert [r.node_id for r in results] == ["A"]

    @pytest.mark.asyncio
    async def test_record_source_failure_falls_back_to_labels(self, projection):
        class BrokenRecords:
            async def fetch_records(self, ids):
                raise RuntimeError("db locked")

        lexical = StaticSource([{"id": "C", "score": 1.0}])
        engine = HybridSearchEngine(projection, lexical_source=lexical, record_source=BrokenRecords())
        [result] = await engine.search("q", k=1)

        assert result.label == "Cersei"
        assert result.content == ""
        assert result.metadata["type"] == "extracted_entity"
        assert result.metadata["entity_kind"] == "CHARACTER"
        assert engine.get_stats()["source_failures"]["records"] == 1

    @pytest.mark.asyncio
    async def test_unknown_profile_raises(self, projection):
        engine = HybridSearchEngine(projection, lexical_source=StaticSource([]))
        with pytest.raises(ConfigurationError):
            await engine.search("q", config="vibes")
