"""
Edge Weighter
=============
Turns SyncEdge records into GraphEdge primitives.

- edge source is inferred from the edge type (``WIKILINK`` -> wikilink,
  ``co_occurrence`` -> cooccurrence, ...); unknown types are explicit
  relations and count as ``blueprint_relation``
- effective confidence = record confidence x EDGE_CONFIDENCE_WEIGHTS[source]
- ``is_high_confidence`` marks edges at or above the projection threshold
- edges already invalidated (``invalid_at <= now``) or with a negative
  or non-finite weight are dropped
"""

import math
from typing import Dict, Iterable, List, Mapping, Optional

from notegraph.core._utils import now_ms
from notegraph.core.types import (
    EDGE_CONFIDENCE_WEIGHTS,
    EdgeSource,
    GraphEdge,
    SyncEdge,
)

_EDGE_TYPE_ALIASES: Dict[str, EdgeSource] = {
    "co_occurrence": EdgeSource.COOCCURRENCE,
    "co_occurs": EdgeSource.COOCCURRENCE,
    "mentions": EdgeSource.NER_COOCCURRENCE,
    "ner": EdgeSource.NER_COOCCURRENCE,
    "llm": EdgeSource.LLM_EXTRACTION,
    "similar_to": EdgeSource.SEMANTIC,
    "before": EdgeSource.TEMPORAL,
    "after": EdgeSource.TEMPORAL,
    "located_in": EdgeSource.SPATIAL,
    "near": EdgeSource.SPATIAL,
}


class EdgeWeighter:
    """Stateless edge weighting and filtering."""

    def infer_source(self, edge_type: str) -> EdgeSource:
        key = (edge_type or "").strip().lower()
        try:
            return EdgeSource(key)
        except ValueError:
            return _EDGE_TYPE_ALIASES.get(key, EdgeSource.BLUEPRINT_RELATION)

    def effective_confidence(self, edge: SyncEdge) -> float:
        weight = EDGE_CONFIDENCE_WEIGHTS[self.infer_source(edge.edge_type)]
        return max(0.0, min(1.0, edge.confidence * weight))

    def width_for(self, weight: float) -> float:
        """Rendered stroke width, log-scaled so heavy edges stay readable."""
        return min(1.0 + math.log1p(max(weight, 0.0)) * 2.0, 8.0)

    def is_valid(self, edge: SyncEdge, at_ms: Optional[int] = None) -> bool:
        if not math.isfinite(edge.weight) or edge.weight < 0:
            return False
        if edge.source_id == edge.target_id:
            return False
        if edge.invalid_at is not None:
            return edge.invalid_at > (at_ms if at_ms is not None else now_ms())
        return True

    def to_graph_edge(
        self,
        edge: SyncEdge,
        threshold: float,
        *,
        source: Optional[str] = None,
        target: Optional[str] = None,
    ) -> GraphEdge:
        """
        Build the GraphEdge for ``edge``.

        ``source`` / ``target`` override the endpoints (used when an endpoint
        entity was merged into another canonical node).
        """
        confidence = self.effective_confidence(edge)
        return GraphEdge(
            id=edge.id,
            source=source or edge.source_id,
            target=target or edge.target_id,
            edge_type=edge.edge_type,
            weight=edge.weight,
            width=self.width_for(edge.weight),
            edge_source=self.infer_source(edge.edge_type),
            confidence=confidence,
            is_high_confidence=confidence >= threshold,
            bidirectional=edge.bidirectional,
            valid_at=edge.valid_at,
            invalid_at=edge.invalid_at,
            episode_ids=list(edge.episode_ids),
            note_ids=list(edge.note_ids),
            temporal_confidence=edge.temporal_confidence,
            causal_strength=edge.causal_strength,
        )

    def process_edges(
        self,
        edges: Iterable[SyncEdge],
        threshold: float,
        id_map: Optional[Mapping[str, str]] = None,
        at_ms: Optional[int] = None,
    ) -> List[GraphEdge]:
        """
        Weight and filter a batch of edges.

        Endpoints are rewritten through ``id_map``; an edge that collapses
        into a self-loop after rewriting is dropped.
        """
        id_map = id_map or {}
        at_ms = at_ms if at_ms is not None else now_ms()
        result = []
        for edge in edges:
            if not self.is_valid(edge, at_ms):
                continue
            source = id_map.get(edge.source_id, edge.source_id)
            target = id_map.get(edge.target_id, edge.target_id)
            if source == target:
                continue
            result.append(self.to_graph_edge(edge, threshold, source=source, target=target))
        return result


edge_weighter = EdgeWeighter()
