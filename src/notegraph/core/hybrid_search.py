"""
Hybrid Search Engine (Lexical + Vector + Graph)
===============================================
Answers a query with one ranked list fusing three signal families:

    lexical  BM25-style term match from a lexical candidate source
    vector   embedding similarity from a vector candidate source
    graph    structural relevance read from the GraphProjectionStore

Pipeline:
    1. Over-fetch ``overfetch_factor * k`` candidates from each source,
       concurrently. A failing source is logged and treated as empty.
    2. Compute a GraphSignal per candidate from the in-memory projection.
    3. Min-max normalize lexical and vector scores independently; collapse
       the graph signal into one relevance score in [0, 1].
    4. Fuse: ``lw * lexical + vw * vector + gw * graph`` using a FusionConfig
       profile ("semantic", "relational", "balanced", "contextual").
    5. Optionally boost direct neighbors of the top results (anchors).
    6. Sort, truncate to k, hydrate content from the record source.

The engine only reads from the projection; it never mutates it.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Awaitable, Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Set, Tuple, Union

from loguru import logger

from notegraph.core.config import SearchConfig
from notegraph.core.exceptions import CandidateSourceError, ConfigurationError
from notegraph.core.graph.projection import GraphProjectionStore


# =============================================================================
# Fusion configuration
# =============================================================================

@dataclass(frozen=True)
class FusionConfig:
    """Signal weights and traversal bounds for one search intent."""
    intent: str = "balanced"
    vector_weight: float = 0.4
    graph_weight: float = 0.4
    lexical_weight: float = 0.2
    max_hops: int = 2
    min_edge_weight: float = 0.2
    adaptive_weights: bool = True
    boost_connected: bool = True

    def __post_init__(self):
        # Weights must be non-negative for fusion to stay monotone.
        for name in ("vector_weight", "graph_weight", "lexical_weight"):
            object.__setattr__(self, name, min(1.0, max(0.0, float(getattr(self, name)))))
        object.__setattr__(self, "max_hops", max(0, int(self.max_hops)))


DEFAULT_FUSION_CONFIGS: Dict[str, FusionConfig] = {
    "semantic": FusionConfig(
        intent="semantic", vector_weight=0.7, graph_weight=0.2, lexical_weight=0.1,
        max_hops=1, min_edge_weight=0.3, adaptive_weights=False, boost_connected=False,
    ),
    "relational": FusionConfig(
        intent="relational", vector_weight=0.2, graph_weight=0.6, lexical_weight=0.2,
        max_hops=3, min_edge_weight=0.1, adaptive_weights=True, boost_connected=True,
    ),
    "balanced": FusionConfig(
        intent="balanced", vector_weight=0.4, graph_weight=0.4, lexical_weight=0.2,
        max_hops=2, min_edge_weight=0.2, adaptive_weights=True, boost_connected=True,
    ),
    "contextual": FusionConfig(
        intent="contextual", vector_weight=0.5, graph_weight=0.3, lexical_weight=0.2,
        max_hops=2, min_edge_weight=0.2, adaptive_weights=True, boost_connected=True,
    ),
}

FusionConfigLike = Union[None, str, FusionConfig, Mapping[str, Any]]


def resolve_fusion_config(config: FusionConfigLike, default_profile: str = "balanced") -> FusionConfig:
    """
    Accept a profile name, a FusionConfig, or a mapping of overrides.

    A mapping may name a base profile under ``intent``; remaining keys
    override that profile's fields.
    """
    if isinstance(config, FusionConfig):
        return config
    if config is None:
        config = default_profile
    if isinstance(config, str):
        try:
            return DEFAULT_FUSION_CONFIGS[config]
        except KeyError:
            raise ConfigurationError("search.profile", f"unknown fusion profile '{config}'")
    overrides = dict(config)
    base = resolve_fusion_config(overrides.get("intent", default_profile))
    unknown = set(overrides) - set(asdict(base))
    if unknown:
        raise ConfigurationError("search.profile", f"unknown fusion fields {sorted(unknown)}")
    return replace(base, **overrides)


@dataclass(frozen=True)
class FusionWeights:
    lexical: float
    vector: float
    graph: float


def effective_weights(config: FusionConfig, has_lexical: bool, has_vector: bool) -> FusionWeights:
    """
    Profile weights, with the weight of an empty signal family spread
    proportionally over the families that did produce candidates.
    """
    weights = {"lexical": config.lexical_weight, "vector": config.vector_weight, "graph": config.graph_weight}
    if not config.adaptive_weights:
        return FusionWeights(**weights)
    present = {"lexical": has_lexical, "vector": has_vector, "graph": True}
    freed = sum(w for name, w in weights.items() if not present[name])
    live_total = sum(w for name, w in weights.items() if present[name])
    if freed <= 0 or live_total <= 0:
        return FusionWeights(**weights)
    return FusionWeights(**{
        name: (w + freed * w / live_total) if present[name] else 0.0
        for name, w in weights.items()
    })


# =============================================================================
# Data structures
# =============================================================================

@dataclass
class Candidate:
    id: str
    score: float


@dataclass
class GraphSignal:
    """Raw structural signals for one candidate."""
    node_id: str
    degree: int = 0
    centrality: float = 0.0
    avg_edge_weight: float = 0.0
    reachable_nodes: int = 0
    avg_path_weight: float = 0.0
    connected_to_candidates: int = 0
    temporal_score: float = 0.0
    causal_score: float = 0.0


@dataclass
class ScoredCandidate:
    node_id: str
    score: float
    lexical_score: float = 0.0
    vector_score: float = 0.0
    graph_score: float = 0.0
    graph_signal: Optional[GraphSignal] = None
    boost: float = 0.0


@dataclass
class SearchResult:
    """A hydrated, fused search hit."""
    node_id: str
    label: str
    content: str
    score: float
    lexical_score: float = 0.0
    vector_score: float = 0.0
    graph_score: float = 0.0
    source: str = "hybrid"
    graph_signal: Optional[GraphSignal] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        self.score = float(self.score)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class LexicalSource(Protocol):
    def search(self, query: str, limit: int) -> Awaitable[List[Dict[str, Any]]]: ...


class VectorSource(Protocol):
    def search(self, embedding: Sequence[float], limit: int, model_tier: str) -> Awaitable[List[Dict[str, Any]]]: ...


class RecordSource(Protocol):
    def fetch_records(self, ids: Sequence[str]) -> Awaitable[Dict[str, Dict[str, Any]]]: ...


# =============================================================================
# Pure scoring helpers
# =============================================================================

GRAPH_RELEVANCE_WEIGHTS: Dict[str, float] = {
    "degree": 0.15,
    "centrality": 0.25,
    "avg_edge_weight": 0.2,
    "avg_path_weight": 0.15,
    "connected_to_candidates": 0.15,
    "temporal_score": 0.05,
    "causal_score": 0.05,
}


def _unit(value: float) -> float:
    return min(1.0, max(0.0, value))


def normalize_scores(candidates: Iterable[Candidate]) -> Dict[str, float]:
    """
    Min-max scale raw scores to [0, 1].

    Duplicate ids keep their best raw score. When every score is equal the
    set maps to 1.0 if that score is positive and 0.0 otherwise.
    """
    best: Dict[str, float] = {}
    for c in candidates:
        if c.id not in best or c.score > best[c.id]:
            best[c.id] = c.score
    if not best:
        return {}
    hi, lo = max(best.values()), min(best.values())
    if hi == lo:
        flat = 1.0 if hi > 0 else 0.0
        return {cid: flat for cid in best}
    span = hi - lo
    return {cid: (score - lo) / span for cid, score in best.items()}


def graph_relevance(signal: GraphSignal, degree_cap: int = 20, connectivity_cap: int = 10) -> float:
    """Weighted sum of the graph signals, each first mapped into [0, 1]."""
    normalized = {
        "degree": min(signal.degree / degree_cap, 1.0) if degree_cap > 0 else 0.0,
        "centrality": _unit(signal.centrality),
        "avg_edge_weight": _unit(signal.avg_edge_weight),
        "avg_path_weight": _unit(signal.avg_path_weight),
        "connected_to_candidates": (
            min(signal.connected_to_candidates / connectivity_cap, 1.0) if connectivity_cap > 0 else 0.0
        ),
        "temporal_score": _unit(signal.temporal_score),
        "causal_score": _unit(signal.causal_score),
    }
    return sum(weight * normalized[name] for name, weight in GRAPH_RELEVANCE_WEIGHTS.items())


def fuse_scores(
    lexical: Sequence[Candidate],
    vector: Sequence[Candidate],
    graph_scores: Mapping[str, float],
    weights: FusionWeights,
) -> List[ScoredCandidate]:
    """Normalize both candidate lists and combine with the graph scores."""
    lexical_norm = normalize_scores(lexical)
    vector_norm = normalize_scores(vector)
    ordered_ids = list(dict.fromkeys([c.id for c in lexical] + [c.id for c in vector]))
    fused = []
    for node_id in ordered_ids:
        lex = lexical_norm.get(node_id, 0.0)
        vec = vector_norm.get(node_id, 0.0)
        gra = graph_scores.get(node_id, 0.0)
        fused.append(ScoredCandidate(
            node_id=node_id,
            score=weights.lexical * lex + weights.vector * vec + weights.graph * gra,
            lexical_score=lex,
            vector_score=vec,
            graph_score=gra,
        ))
    return fused


def _rank(results: List[ScoredCandidate]) -> None:
    results.sort(key=lambda r: (-r.score, r.node_id))


# =============================================================================
# Graph reads
# =============================================================================

def traverse(
    store: GraphProjectionStore,
    start_id: str,
    max_hops: int,
    min_edge_weight: float,
) -> Dict[str, Tuple[int, float]]:
    """
    Bounded BFS from ``start_id``.

    Follows edges traversable from the current node with weight at least
    ``min_edge_weight``. Path weight is the product of edge weights, each
    capped at 1. Returns ``{node_id: (distance, path_weight)}`` excluding
    the start node.
    """
    start_id = store.resolve_id(start_id)
    incident = store.projection.incident_edges
    if start_id not in incident:
        return {}
    reached: Dict[str, Tuple[int, float]] = {start_id: (0, 1.0)}
    queue = deque([start_id])
    while queue:
        current = queue.popleft()
        distance, path_weight = reached[current]
        if distance >= max_hops:
            continue
        for edge in sorted(incident.get(current, {}).values(), key=lambda e: e.id):
            if edge.weight < min_edge_weight or not edge.traversable_from(current):
                continue
            nxt = edge.other(current)
            if nxt in reached:
                continue
            reached[nxt] = (distance + 1, path_weight * min(edge.weight, 1.0))
            queue.append(nxt)
    del reached[start_id]
    return reached


def compute_graph_signal(
    store: GraphProjectionStore,
    node_id: str,
    candidate_node_ids: Set[str],
    config: FusionConfig,
) -> GraphSignal:
    """Graph signal for one candidate; empty signal if it is not projected."""
    resolved = store.resolve_id(node_id)
    if store.get_node(resolved) is None:
        return GraphSignal(node_id=node_id)

    edges = store.get_incident_edges(resolved)
    neighbors = store.projection.adjacency.get(resolved, set())
    signal = GraphSignal(
        node_id=node_id,
        degree=len(neighbors),
        centrality=store.get_centrality(resolved).composite,
        avg_edge_weight=sum(e.weight for e in edges) / len(edges) if edges else 0.0,
        connected_to_candidates=len((candidate_node_ids - {resolved}) & neighbors),
    )

    if config.max_hops > 1:
        reached = traverse(store, resolved, config.max_hops, config.min_edge_weight)
        signal.reachable_nodes = len(reached)
        if reached:
            signal.avg_path_weight = sum(w for _, w in reached.values()) / len(reached)

    temporal = [e.temporal_confidence for e in edges if e.temporal_confidence is not None]
    causal = [e.causal_strength for e in edges if e.causal_strength is not None]
    signal.temporal_score = sum(temporal) / len(temporal) if temporal else 0.0
    signal.causal_score = sum(causal) / len(causal) if causal else 0.0
    return signal


def propagate_context(
    results: List[ScoredCandidate],
    store: GraphProjectionStore,
    anchor_fraction: float = 0.2,
    min_anchors: int = 3,
    edge_boost: float = 0.15,
    fallback_boost: float = 0.1,
) -> Dict[str, float]:
    """
    Boost direct neighbors of the top-ranked results.

    ``results`` must already be sorted. The anchors are the first
    ``max(min_anchors, floor(n * anchor_fraction))`` entries. Each neighbor
    reachable along an anchor's edge gains ``edge_boost * weight`` (weight
    capped at 1); neighbors joined only by an edge pointing at the anchor
    gain ``fallback_boost``. Boosted scores are clamped to 1.0.
    Returns the applied boosts by node id.
    """
    if not results:
        return {}
    anchor_count = max(min_anchors, math.floor(len(results) * anchor_fraction))
    incident = store.projection.incident_edges
    boosts: Dict[str, float] = {}
    for anchor in results[:anchor_count]:
        anchor_id = store.resolve_id(anchor.node_id)
        per_neighbor: Dict[str, float] = {}
        for edge in incident.get(anchor_id, {}).values():
            neighbor = edge.other(anchor_id)
            if edge.traversable_from(anchor_id):
                boost = edge_boost * min(edge.weight, 1.0)
            else:
                boost = fallback_boost
            per_neighbor[neighbor] = max(per_neighbor.get(neighbor, 0.0), boost)
        for neighbor, boost in per_neighbor.items():
            boosts[neighbor] = boosts.get(neighbor, 0.0) + boost

    applied: Dict[str, float] = {}
    for result in results:
        boost = boosts.get(store.resolve_id(result.node_id), 0.0)
        if boost <= 0:
            continue
        result.boost = boost
        result.score = max(result.score, min(1.0, result.score + boost))
        applied[result.node_id] = boost
    return applied


# =============================================================================
# Engine
# =============================================================================

class HybridSearchEngine:
    """
    Fuses lexical, vector and graph relevance into one ranked list.

    Example:
        engine = HybridSearchEngine(projection_store, lexical_source=bm25,
                                    vector_source=vectors, record_source=store)
        results = await engine.search("dragon glass", query_embedding=emb, k=5,
                                      config="relational")
    """

    def __init__(
        self,
        projection_store: GraphProjectionStore,
        lexical_source: Optional[LexicalSource] = None,
        vector_source: Optional[VectorSource] = None,
        record_source: Optional[RecordSource] = None,
        config: Optional[SearchConfig] = None,
    ):
        self.projection_store = projection_store
        self.lexical_source = lexical_source
        self.vector_source = vector_source
        self.record_source = record_source
        self.config = config or SearchConfig()
        self._stats: Dict[str, Any] = {
            "searches": 0,
            "empty_searches": 0,
            "source_failures": {"lexical": 0, "vector": 0, "records": 0},
            "last_elapsed_ms": 0.0,
            "last_candidate_count": 0,
        }

    async def search(
        self,
        query: str,
        query_embedding: Optional[Sequence[float]] = None,
        k: int = 10,
        config: FusionConfigLike = None,
    ) -> List[SearchResult]:
        fusion = resolve_fusion_config(config, self.config.default_profile)
        if k <= 0:
            return []
        started = time.perf_counter()
        self._stats["searches"] += 1
        limit = k * self.config.overfetch_factor

        lexical, vector = await asyncio.gather(
            self._lexical_candidates(query, limit),
            self._vector_candidates(query_embedding, limit),
        )
        candidate_ids = list(dict.fromkeys([c.id for c in lexical] + [c.id for c in vector]))
        self._stats["last_candidate_count"] = len(candidate_ids)
        if not candidate_ids:
            self._stats["empty_searches"] += 1
            logger.debug(f"[HybridSearch] No candidates for '{query}'")
            return []

        store = self.projection_store
        candidate_nodes = {store.resolve_id(cid) for cid in candidate_ids}
        signals = {
            cid: compute_graph_signal(store, cid, candidate_nodes, fusion)
            for cid in candidate_ids
        }
        graph_scores = {
            cid: graph_relevance(sig, self.config.degree_cap, self.config.connectivity_cap)
            for cid, sig in signals.items()
        }
        weights = effective_weights(fusion, bool(lexical), bool(vector))
        fused = fuse_scores(lexical, vector, graph_scores, weights)
        for item in fused:
            item.graph_signal = signals[item.node_id]

        _rank(fused)
        if fusion.boost_connected:
            propagate_context(
                fused,
                store,
                anchor_fraction=self.config.anchor_fraction,
                min_anchors=self.config.min_anchors,
                edge_boost=self.config.propagation_boost,
                fallback_boost=self.config.fallback_boost,
            )
            _rank(fused)

        results = await self._hydrate(fused[:k], fusion, weights)
        elapsed_ms = (time.perf_counter() - started) * 1000
        self._stats["last_elapsed_ms"] = elapsed_ms
        logger.debug(
            f"[HybridSearch] '{query}' intent={fusion.intent} candidates={len(candidate_ids)} "
            f"(lexical={len(lexical)}, vector={len(vector)}) -> {len(results)} results "
            f"in {elapsed_ms:.1f}ms"
        )
        return results

    # ── candidate sources ───────────────────────────────────────────

    async def _lexical_candidates(self, query: str, limit: int) -> List[Candidate]:
        if self.lexical_source is None or not query:
            return []
        return await self._call_source("lexical", self.lexical_source.search(query, limit))

    async def _vector_candidates(self, embedding: Optional[Sequence[float]], limit: int) -> List[Candidate]:
        if self.vector_source is None or embedding is None:
            return []
        return await self._call_source(
            "vector", self.vector_source.search(embedding, limit, self.config.model_tier)
        )

    async def _call_source(self, name: str, pending: Awaitable[List[Dict[str, Any]]]) -> List[Candidate]:
        try:
            raw = await pending
            return [_to_candidate(item) for item in raw]
        except Exception as exc:
            error = CandidateSourceError(name, str(exc) or type(exc).__name__)
            self._stats["source_failures"][name] += 1
            logger.warning(f"[HybridSearch] {error}; continuing without {name} candidates")
            return []

    # ── hydration ───────────────────────────────────────────────────

    async def _hydrate(
        self,
        ranked: List[ScoredCandidate],
        fusion: FusionConfig,
        weights: FusionWeights,
    ) -> List[SearchResult]:
        if not ranked:
            return []
        records: Dict[str, Dict[str, Any]] = {}
        if self.record_source is not None:
            try:
                records = await self.record_source.fetch_records([r.node_id for r in ranked])
            except Exception as exc:
                self._stats["source_failures"]["records"] += 1
                logger.warning(f"[HybridSearch] Record hydration failed, using graph labels: {exc}")

        results = []
        for item in ranked:
            record = records.get(item.node_id)
            node = self.projection_store.get_node(item.node_id)
            if record is None and node is None:
                logger.debug(f"[HybridSearch] Dropping unresolvable candidate {item.node_id}")
                continue
            record = record or {}
            results.append(SearchResult(
                node_id=item.node_id,
                label=record.get("title") or record.get("label") or (node.label if node else item.node_id),
                content=record.get("content") or "",
                score=item.score,
                lexical_score=item.lexical_score,
                vector_score=item.vector_score,
                graph_score=item.graph_score,
                graph_signal=item.graph_signal,
                metadata={
                    "type": node.node_type.value if node else None,
                    "entity_kind": node.kind if node else record.get("kind"),
                    "entity_subtype": node.subtype if node else None,
                    "intent": fusion.intent,
                    "boost": item.boost,
                    "weights": asdict(weights),
                },
            ))
        return results

    def get_stats(self) -> Dict[str, Any]:
        return {
            **self._stats,
            "source_failures": dict(self._stats["source_failures"]),
            "has_lexical_source": self.lexical_source is not None,
            "has_vector_source": self.vector_source is not None,
            "default_profile": self.config.default_profile,
        }


def _to_candidate(item: Mapping[str, Any]) -> Candidate:
    node_id = item.get("id") or item.get("node_id")
    if node_id is None:
        raise ValueError(f"candidate without id: {item!r}")
    return Candidate(id=str(node_id), score=float(item.get("score", 0.0)))
