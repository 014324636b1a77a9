"""
Confidence filtering for the analytics subgraph.

A node is kept when its confidence meets the threshold (and its type is not
excluded); an edge is kept when its confidence meets the threshold and both
endpoints were kept. Raising the threshold can therefore only shrink the
result.
"""

from dataclasses import dataclass
from typing import Iterable, List, Tuple

from notegraph.core.types import GraphEdge, GraphNode, NodeType


@dataclass(frozen=True)
class FilterOptions:
    include_extracted_entities: bool = True
    include_concepts: bool = True


class CentralityFilter:

    def filter_high_confidence_subgraph(
        self,
        nodes: Iterable[GraphNode],
        edges: Iterable[GraphEdge],
        threshold: float,
        options: FilterOptions = FilterOptions(),
    ) -> Tuple[List[GraphNode], List[GraphEdge]]:
        kept_nodes = [n for n in nodes if self._keep_node(n, threshold, options)]
        kept_ids = {n.id for n in kept_nodes}
        kept_edges = [
            e for e in edges
            if e.confidence >= threshold and e.source in kept_ids and e.target in kept_ids
        ]
        return kept_nodes, kept_edges

    def _keep_node(self, node: GraphNode, threshold: float, options: FilterOptions) -> bool:
        if node.node_type is NodeType.EXTRACTED_ENTITY and not options.include_extracted_entities:
            return False
        if node.node_type is NodeType.CONCEPT and not options.include_concepts:
            return False
        return node.confidence >= threshold


centrality_filter = CentralityFilter()
