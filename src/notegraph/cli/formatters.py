"""
CLI Output Formatters

Tables for search hits, neighbors and centrality rankings.
"""

from typing import Any, Dict, List, Sequence, Tuple

from tabulate import tabulate

from notegraph.core.hybrid_search import SearchResult
from notegraph.core.types import CentralityScores, GraphEdge, GraphNode


def _preview(text: str, width: int = 60) -> str:
    text = " ".join((text or "").split())
    return text[:width] + "..." if len(text) > width else text


def format_results(results: Sequence[SearchResult]) -> str:
    if not results:
        return "No results."
    headers = ["ID", "Label", "Score", "Lexical", "Vector", "Graph", "Content"]
    rows = [
        [
            r.node_id[:12],
            _preview(r.label, 30),
            f"{r.score:.3f}",
            f"{r.lexical_score:.2f}",
            f"{r.vector_score:.2f}",
            f"{r.graph_score:.2f}",
            _preview(r.content),
        ]
        for r in results
    ]
    return tabulate(rows, headers=headers, tablefmt="grid")


def format_neighbors(node: GraphNode, neighbors: Sequence[Tuple[GraphNode, List[GraphEdge]]]) -> str:
    header = f"{node.label} [{node.kind}] - {len(neighbors)} neighbors"
    if not neighbors:
        return header
    rows = [
        [
            n.id[:12],
            _preview(n.label, 30),
            n.kind,
            ", ".join(sorted({e.edge_type for e in edges})),
            f"{max(e.weight for e in edges):.2f}",
        ]
        for n, edges in neighbors
    ]
    return header + "\n" + tabulate(rows, headers=["ID", "Label", "Kind", "Edge types", "Weight"], tablefmt="grid")


def format_centrality(ranked: Sequence[Tuple[GraphNode, CentralityScores]]) -> str:
    if not ranked:
        return "Projection is empty."
    rows = [
        [
            i,
            _preview(node.label, 30),
            node.kind,
            f"{s.degree:.3f}",
            f"{s.betweenness:.3f}" if s.exhaustive else "-",
            f"{s.closeness:.3f}" if s.exhaustive else "-",
            f"{s.composite:.3f}",
        ]
        for i, (node, s) in enumerate(ranked, start=1)
    ]
    headers = ["#", "Label", "Kind", "Degree", "Betweenness", "Closeness", "Composite"]
    return tabulate(rows, headers=headers, tablefmt="grid")


def format_stats(stats: Dict[str, Dict[str, Any]]) -> str:
    sections = []
    for title, values in stats.items():
        rows = [[key, f"{value:.3f}" if isinstance(value, float) else value] for key, value in values.items()]
        sections.append(title + "\n" + tabulate(rows, tablefmt="simple"))
    return "\n\n".join(sections)
