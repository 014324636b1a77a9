"""
Graph transforms, centrality analytics and the projection store.
"""

from .centrality import compute_centrality
from .centrality_filter import CentralityFilter, FilterOptions, centrality_filter
from .edge_weighter import EdgeWeighter, edge_weighter
from .node_merger import NodeMerger, MergedEntity, merge_key, node_merger
from .projection import GraphProjectionStore

__all__ = [
    "compute_centrality",
    "CentralityFilter",
    "FilterOptions",
    "centrality_filter",
    "EdgeWeighter",
    "edge_weighter",
    "NodeMerger",
    "MergedEntity",
    "merge_key",
    "node_merger",
    "GraphProjectionStore",
]
