"""
Centrality Analytics
====================
Unweighted centrality over the confidence-filtered subgraph, on networkx.

- degree:      |adj(v)| / (n - 1)
- betweenness: for every unordered pair (s, t), walk the predecessor chain of
               t in the BFS tree rooted at s and credit each intermediate
               node once; normalized by (n - 1)(n - 2) / 2
- closeness:   (reachable / total_distance) * (reachable / (n - 1)), which is
               networkx's Wasserman-Faust closeness

Betweenness follows a single BFS tree per source (neighbors visited in
sorted order), not the Brandes split over all shortest paths.

Betweenness and closeness cost one BFS per node, so they are only computed
when the subgraph has at most ``node_ceiling`` nodes; above that they stay 0
and ``CentralityScores.exhaustive`` is False.
"""

from typing import Dict, Iterable, Tuple

import networkx as nx
from loguru import logger

from notegraph.core.types import CentralityScores, GraphEdge, GraphNode


def build_graph(node_ids: Iterable[str], edges: Iterable[GraphEdge]) -> nx.Graph:
    """Undirected simple graph; edges with an endpoint outside ``node_ids`` are skipped."""
    graph = nx.Graph()
    graph.add_nodes_from(node_ids)
    graph.add_edges_from(
        (edge.source, edge.target)
        for edge in edges
        if edge.source in graph and edge.target in graph and edge.source != edge.target
    )
    return graph


def degree_centrality(graph: nx.Graph) -> Dict[str, float]:
    if graph.number_of_nodes() <= 1:
        return {node: 0.0 for node in graph}
    return nx.degree_centrality(graph)


def tree_betweenness(graph: nx.Graph) -> Dict[str, float]:
    nodes = sorted(graph)
    n = len(nodes)
    betweenness = {node: 0.0 for node in nodes}
    if n <= 2:
        return betweenness

    for i, source in enumerate(nodes):
        predecessor = dict(nx.bfs_predecessors(graph, source, sort_neighbors=sorted))
        for target in nodes[i + 1:]:
            hop = predecessor.get(target)
            while hop is not None and hop != source:
                betweenness[hop] += 1.0
                hop = predecessor.get(hop)

    norm = (n - 1) * (n - 2) / 2
    return {node: value / norm for node, value in betweenness.items()}


def betweenness_and_closeness(graph: nx.Graph) -> Tuple[Dict[str, float], Dict[str, float]]:
    if graph.number_of_nodes() <= 1:
        zeros = {node: 0.0 for node in graph}
        return zeros, dict(zeros)
    return tree_betweenness(graph), nx.closeness_centrality(graph, wf_improved=True)


def compute_centrality(
    nodes: Iterable[GraphNode],
    edges: Iterable[GraphEdge],
    node_ceiling: int = 100,
) -> Dict[str, CentralityScores]:
    """Centrality scores for every node of the given subgraph."""
    graph = build_graph((n.id for n in nodes), edges)
    degree = degree_centrality(graph)

    exhaustive = graph.number_of_nodes() <= node_ceiling
    if exhaustive:
        betweenness, closeness = betweenness_and_closeness(graph)
    else:
        logger.debug(
            f"Subgraph has {graph.number_of_nodes()} nodes (ceiling {node_ceiling}); "
            "skipping betweenness/closeness"
        )
        betweenness = closeness = {}

    return {
        node: CentralityScores(
            degree=degree[node],
            betweenness=betweenness.get(node, 0.0),
            closeness=closeness.get(node, 0.0),
            exhaustive=exhaustive,
        )
        for node in graph
    }
