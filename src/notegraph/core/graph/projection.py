"""
Graph Projection Store
======================
Owns the live in-memory mirror of the knowledge graph: nodes, edges,
adjacency, secondary indices and centrality analytics.

Structure vs analytics:
    Structural changes (on_*_change) are applied immediately so reads see
    the new nodes/edges/adjacency at once. Analytics (confidence-filtered
    subgraph + centrality) are recomputed by a trailing-edge debounce, so a
    burst of changes costs one recompute that reflects the final state.
    Between a change and that recompute ``projection.is_dirty`` is True and
    centrality may be stale.

Entity merging:
    Entities are grouped by (normalized label, kind). Each group projects to
    one node whose id is the group's primary entity id; edges pointing at any
    member are rewired onto that node. Edges whose endpoints do not resolve
    to a projected node are kept as raw records but never wired.

Adjacency is undirected: ``adjacency[a]`` holds ``b`` while at least one
retained edge joins them. Direction is available per edge
(``GraphEdge.bidirectional``) for traversals that care.
"""

from __future__ import annotations

import time
from collections import deque
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple

from loguru import logger

from notegraph.core._utils import Debouncer, now_ms
from notegraph.core.config import ProjectionConfig
from notegraph.core.graph.centrality import compute_centrality
from notegraph.core.graph.centrality_filter import CentralityFilter, FilterOptions, centrality_filter
from notegraph.core.graph.edge_weighter import EdgeWeighter, edge_weighter
from notegraph.core.graph.node_merger import MergeKey, NodeMerger, merge_key, node_merger
from notegraph.core.types import (
    CentralityScores,
    ChangeType,
    DEFAULT_NODE_COLOR,
    FOLDER_KIND,
    GraphEdge,
    GraphNode,
    GraphProjection,
    NOTE_KIND,
    NOTE_NODE_COLOR,
    NodeType,
    SyncEdge,
    SyncEntity,
    SyncFolder,
    SyncNote,
)


def note_node(note: SyncNote) -> GraphNode:
    return GraphNode(
        id=note.id,
        label=note.title,
        node_type=NodeType.NOTE,
        kind=NOTE_KIND,
        subtype=note.entity_kind,
        frequency=1,
        note_ids=[note.id],
        size=12,
        color=NOTE_NODE_COLOR,
        confidence=1.0,
        provenance=["system"],
        parent_id=note.folder_id,
        is_canonical=note.is_canonical_entity,
    )


def folder_node(folder: SyncFolder) -> GraphNode:
    return GraphNode(
        id=folder.id,
        label=folder.name,
        node_type=NodeType.FOLDER,
        kind=FOLDER_KIND,
        subtype=folder.entity_kind,
        frequency=1,
        size=14,
        color=folder.color or DEFAULT_NODE_COLOR,
        confidence=1.0,
        provenance=["system"],
        parent_id=folder.parent_id,
    )


class GraphProjectionStore:
    """
    Single owner of projection state.

    Callers mutate it only through build_from_cache / on_*_change /
    set_confidence_threshold and read it through the accessor methods.
    """

    def __init__(
        self,
        config: Optional[ProjectionConfig] = None,
        *,
        merger: NodeMerger = node_merger,
        weighter: EdgeWeighter = edge_weighter,
        subgraph_filter: CentralityFilter = centrality_filter,
        on_recompute: Optional[Callable[[GraphProjection], None]] = None,
    ):
        self.config = config or ProjectionConfig()
        self._merger = merger
        self._weighter = weighter
        self._filter = subgraph_filter
        self._filter_options = FilterOptions(
            include_extracted_entities=self.config.include_extracted_entities,
            include_concepts=self.config.include_concepts,
        )
        self._on_recompute = on_recompute
        self._recompute_timer = Debouncer(
            self._recompute_analytics,
            self.config.rebuild_delay_ms,
            restart=True,
            name="projection-recompute",
        )
        self.recompute_count = 0
        self._reset(self.config.confidence_threshold)

    def _reset(self, threshold: float) -> None:
        self._projection = GraphProjection(confidence_threshold=threshold)
        # Raw records mirrored from the sync engine's change notifications.
        self._notes: Dict[str, SyncNote] = {}
        self._folders: Dict[str, SyncFolder] = {}
        self._entities: Dict[str, SyncEntity] = {}
        self._edges: Dict[str, SyncEdge] = {}
        # Merge bookkeeping.
        self._groups: Dict[MergeKey, Dict[str, SyncEntity]] = {}
        self._group_node: Dict[MergeKey, str] = {}
        self._canonical: Dict[str, str] = {}
        # Raw endpoint id -> raw edge ids, for rewiring after re-merges.
        self._edges_by_endpoint: Dict[str, Set[str]] = {}
        # Unordered node pair -> projected edge ids joining it.
        self._pair_edges: Dict[FrozenSet[str], Set[str]] = {}

    # ══════════════════════════════════════════════════════════════════
    # Full rebuild
    # ══════════════════════════════════════════════════════════════════

    def build_from_cache(
        self,
        entities: Iterable[SyncEntity],
        edges: Iterable[SyncEdge],
        notes: Iterable[SyncNote] = (),
        folders: Iterable[SyncFolder] = (),
    ) -> GraphProjection:
        """Rebuild everything from complete record snapshots."""
        started = time.perf_counter()
        self._recompute_timer.cancel()
        self._reset(self._projection.confidence_threshold)

        for folder in folders:
            self._folders[folder.id] = folder
            self._add_node(folder_node(folder))
        for note in notes:
            self._notes[note.id] = note
            self._add_node(note_node(note))

        entities = list(entities)
        for entity in entities:
            self._entities[entity.id] = entity
            self._groups.setdefault(merge_key(entity), {})[entity.id] = entity
        nodes, id_map = self._merger.merge_all(entities)
        for node in nodes:
            self._add_node(node)
        for entity in entities:
            node_id = id_map[entity.id]
            self._canonical[entity.id] = node_id
            self._group_node[merge_key(entity)] = node_id

        for edge in edges:
            self._index_raw_edge(edge)
        p = self._projection
        weighted = self._weighter.process_edges(
            list(self._edges.values()), p.confidence_threshold, id_map=self._canonical
        )
        for graph_edge in weighted:
            if graph_edge.source in p.node_by_id and graph_edge.target in p.node_by_id:
                self._wire_edge(graph_edge)

        self._recompute_analytics()
        logger.info(
            f"Projection built: {len(self._projection.node_by_id)} nodes, "
            f"{len(self._projection.edge_by_id)} edges "
            f"({len(entities)} entities merged into {len(nodes)}) "
            f"in {(time.perf_counter() - started) * 1000:.1f}ms"
        )
        return self._projection

    def rebuild(self) -> GraphProjection:
        """Full rebuild from the raw records already held."""
        return self.build_from_cache(
            list(self._entities.values()),
            list(self._edges.values()),
            list(self._notes.values()),
            list(self._folders.values()),
        )

    # ══════════════════════════════════════════════════════════════════
    # Incremental updates
    # ══════════════════════════════════════════════════════════════════

    def on_entity_change(self, entity: SyncEntity, change_type) -> None:
        change_type = ChangeType(change_type)
        keys: List[MergeKey] = []

        previous = self._entities.pop(entity.id, None)
        if previous is not None:
            old_key = merge_key(previous)
            group = self._groups.get(old_key, {})
            group.pop(entity.id, None)
            if not group:
                self._groups.pop(old_key, None)
            keys.append(old_key)

        if change_type is ChangeType.DELETE:
            self._canonical.pop(entity.id, None)
        else:
            self._entities[entity.id] = entity
            new_key = merge_key(entity)
            self._groups.setdefault(new_key, {})[entity.id] = entity
            if new_key not in keys:
                keys.append(new_key)

        affected = {entity.id}
        for key in keys:
            affected |= self._remerge(key)
        self._rewire(affected)
        self._mark_dirty()

    def on_edge_change(self, edge: SyncEdge, change_type) -> None:
        change_type = ChangeType(change_type)
        self._unindex_raw_edge(edge.id)
        self._detach_edge(edge.id)
        if change_type is not ChangeType.DELETE:
            self._index_raw_edge(edge)
            self._attach_edge(edge)
        self._mark_dirty()

    def on_note_change(self, note: SyncNote, change_type) -> None:
        change_type = ChangeType(change_type)
        self._remove_node(note.id)
        self._notes.pop(note.id, None)
        if change_type is not ChangeType.DELETE:
            self._notes[note.id] = note
            self._add_node(note_node(note))
            self._rewire({note.id})
        self._mark_dirty()

    def on_folder_change(self, folder: SyncFolder, change_type) -> None:
        change_type = ChangeType(change_type)
        self._remove_node(folder.id)
        self._folders.pop(folder.id, None)
        if change_type is not ChangeType.DELETE:
            self._folders[folder.id] = folder
            self._add_node(folder_node(folder))
            self._rewire({folder.id})
        self._mark_dirty()

    def set_confidence_threshold(self, threshold: float) -> None:
        threshold = max(0.0, min(1.0, float(threshold)))
        self._projection.confidence_threshold = threshold
        for edge in self._projection.edge_by_id.values():
            edge.is_high_confidence = edge.confidence >= threshold
        self._recompute_timer.cancel()
        self._recompute_analytics()

    def flush_pending_recompute(self) -> bool:
        """Run a scheduled recompute now. Returns True if one was pending."""
        if not self._recompute_timer.pending:
            return False
        self._recompute_timer.flush()
        return True

    def cancel_pending_recompute(self) -> None:
        self._recompute_timer.cancel()

    # ══════════════════════════════════════════════════════════════════
    # Reads
    # ══════════════════════════════════════════════════════════════════

    @property
    def projection(self) -> GraphProjection:
        return self._projection

    @property
    def is_dirty(self) -> bool:
        return self._projection.is_dirty

    @property
    def last_updated(self) -> int:
        return self._projection.last_updated

    @property
    def confidence_threshold(self) -> float:
        return self._projection.confidence_threshold

    def resolve_id(self, record_id: str) -> str:
        """Canonical node id for a raw entity/note/folder id."""
        return self._canonical.get(record_id, record_id)

    def get_node(self, node_id: str) -> Optional[GraphNode]:
        return self._projection.node_by_id.get(self.resolve_id(node_id))

    def get_neighbors(self, node_id: str) -> List[GraphNode]:
        node_id = self.resolve_id(node_id)
        node_by_id = self._projection.node_by_id
        return [node_by_id[n] for n in sorted(self._projection.adjacency.get(node_id, ()))]

    def get_degree(self, node_id: str) -> int:
        return len(self._projection.adjacency.get(self.resolve_id(node_id), ()))

    def get_incident_edges(self, node_id: str) -> List[GraphEdge]:
        return list(self._projection.incident_edges.get(self.resolve_id(node_id), {}).values())

    def edges_between(self, a: str, b: str) -> List[GraphEdge]:
        pair = frozenset((self.resolve_id(a), self.resolve_id(b)))
        edge_by_id = self._projection.edge_by_id
        return [edge_by_id[e] for e in self._pair_edges.get(pair, ())]

    def get_centrality(self, node_id: str) -> CentralityScores:
        return self._projection.centrality.get(self.resolve_id(node_id), CentralityScores())

    def get_nodes_by_kind(self, kind: str) -> List[GraphNode]:
        return list(self._projection.nodes_by_kind.get(kind, []))

    def get_nodes_by_type(self, node_type: NodeType) -> List[GraphNode]:
        return list(self._projection.nodes_by_type.get(NodeType(node_type), []))

    def get_nodes_in_folder(self, folder_id: str) -> List[GraphNode]:
        return list(self._projection.nodes_by_folder.get(folder_id, []))

    def get_subgraph(self, node_ids: Iterable[str]) -> Tuple[List[GraphNode], List[GraphEdge]]:
        wanted = {self.resolve_id(i) for i in node_ids}
        node_by_id = self._projection.node_by_id
        nodes = [node_by_id[i] for i in node_by_id if i in wanted]
        edges = [
            e for e in self._projection.edge_by_id.values()
            if e.source in wanted and e.target in wanted
        ]
        return nodes, edges

    def get_connected_subgraph(
        self, seed_id: str, max_depth: int = 2
    ) -> Tuple[List[GraphNode], List[GraphEdge]]:
        """Everything within ``max_depth`` hops of ``seed_id``."""
        seed_id = self.resolve_id(seed_id)
        if seed_id not in self._projection.node_by_id:
            return [], []
        adjacency = self._projection.adjacency
        visited = {seed_id}
        queue = deque([(seed_id, 0)])
        while queue:
            current, depth = queue.popleft()
            if depth >= max_depth:
                continue
            for nxt in adjacency.get(current, ()):
                if nxt not in visited:
                    visited.add(nxt)
                    queue.append((nxt, depth + 1))
        return self.get_subgraph(visited)

    def get_filtered_subgraph(self) -> Tuple[List[GraphNode], List[GraphEdge]]:
        """Confidence-filtered subgraph as of the last analytics pass."""
        p = self._projection
        return (
            [p.node_by_id[i] for i in p.node_by_id if i in p.filtered_node_ids],
            [p.edge_by_id[i] for i in p.edge_by_id if i in p.filtered_edge_ids],
        )

    def top_central(self, limit: int = 10) -> List[Tuple[GraphNode, CentralityScores]]:
        ranked = sorted(
            self._projection.centrality.items(),
            key=lambda item: (-item[1].composite, -item[1].degree, item[0]),
        )
        node_by_id = self._projection.node_by_id
        return [(node_by_id[i], s) for i, s in ranked[:limit] if i in node_by_id]

    # ══════════════════════════════════════════════════════════════════
    # Internals: nodes
    # ══════════════════════════════════════════════════════════════════

    def _add_node(self, node: GraphNode) -> None:
        p = self._projection
        p.node_by_id[node.id] = node
        p.adjacency.setdefault(node.id, set())
        p.incident_edges.setdefault(node.id, {})
        p.nodes_by_kind.setdefault(node.kind, []).append(node)
        p.nodes_by_type.setdefault(node.node_type, []).append(node)
        if node.node_type is NodeType.NOTE and node.parent_id:
            p.nodes_by_folder.setdefault(node.parent_id, []).append(node)

    def _remove_node(self, node_id: str) -> None:
        p = self._projection
        node = p.node_by_id.pop(node_id, None)
        if node is None:
            return
        for edge_id in list(p.incident_edges.get(node_id, {})):
            self._detach_edge(edge_id)
        p.incident_edges.pop(node_id, None)
        p.adjacency.pop(node_id, None)
        p.centrality.pop(node_id, None)
        _drop_from(p.nodes_by_kind, node.kind, node_id)
        _drop_from(p.nodes_by_type, node.node_type, node_id)
        if node.node_type is NodeType.NOTE and node.parent_id:
            _drop_from(p.nodes_by_folder, node.parent_id, node_id)

    def _remerge(self, key: MergeKey) -> Set[str]:
        """Re-project one merge group. Returns every raw id it touched."""
        touched: Set[str] = set()
        old_id = self._group_node.pop(key, None)
        if old_id is not None:
            touched.add(old_id)
            self._remove_node(old_id)

        members = self._groups.get(key)
        if members:
            node = self._merger.to_graph_node(self._merger.merge_group(list(members.values())))
            self._add_node(node)
            self._group_node[key] = node.id
            for entity_id in members:
                self._canonical[entity_id] = node.id
            touched.update(members)
        return touched

    # ══════════════════════════════════════════════════════════════════
    # Internals: edges
    # ══════════════════════════════════════════════════════════════════

    def _index_raw_edge(self, edge: SyncEdge) -> None:
        self._edges[edge.id] = edge
        self._edges_by_endpoint.setdefault(edge.source_id, set()).add(edge.id)
        self._edges_by_endpoint.setdefault(edge.target_id, set()).add(edge.id)

    def _unindex_raw_edge(self, edge_id: str) -> None:
        edge = self._edges.pop(edge_id, None)
        if edge is None:
            return
        for endpoint in (edge.source_id, edge.target_id):
            ids = self._edges_by_endpoint.get(endpoint)
            if ids is not None:
                ids.discard(edge_id)
                if not ids:
                    del self._edges_by_endpoint[endpoint]

    def _rewire(self, raw_ids: Iterable[str]) -> None:
        edge_ids: Set[str] = set()
        for raw_id in raw_ids:
            edge_ids |= self._edges_by_endpoint.get(raw_id, set())
        for edge_id in sorted(edge_ids):
            self._attach_edge(self._edges[edge_id])

    def _attach_edge(self, edge: SyncEdge) -> bool:
        """Wire ``edge`` into the projection if both endpoints resolve."""
        self._detach_edge(edge.id)
        if not self._weighter.is_valid(edge):
            return False
        source = self.resolve_id(edge.source_id)
        target = self.resolve_id(edge.target_id)
        p = self._projection
        if source == target or source not in p.node_by_id or target not in p.node_by_id:
            return False

        self._wire_edge(self._weighter.to_graph_edge(
            edge, p.confidence_threshold, source=source, target=target
        ))
        return True

    def _wire_edge(self, graph_edge: GraphEdge) -> None:
        p = self._projection
        source, target = graph_edge.source, graph_edge.target
        p.edge_by_id[graph_edge.id] = graph_edge
        p.incident_edges[source][graph_edge.id] = graph_edge
        p.incident_edges[target][graph_edge.id] = graph_edge
        self._pair_edges.setdefault(frozenset((source, target)), set()).add(graph_edge.id)
        p.adjacency[source].add(target)
        p.adjacency[target].add(source)

    def _detach_edge(self, edge_id: str) -> None:
        p = self._projection
        edge = p.edge_by_id.pop(edge_id, None)
        if edge is None:
            return
        for endpoint in (edge.source, edge.target):
            p.incident_edges.get(endpoint, {}).pop(edge_id, None)
        pair = frozenset((edge.source, edge.target))
        remaining = self._pair_edges.get(pair)
        if remaining is not None:
            remaining.discard(edge_id)
            if remaining:
                return
            del self._pair_edges[pair]
        p.adjacency.get(edge.source, set()).discard(edge.target)
        p.adjacency.get(edge.target, set()).discard(edge.source)

    # ══════════════════════════════════════════════════════════════════
    # Analytics
    # ══════════════════════════════════════════════════════════════════

    def _mark_dirty(self) -> None:
        self._projection.is_dirty = True
        self._recompute_timer.schedule()

    def _recompute_analytics(self) -> None:
        started = time.perf_counter()
        p = self._projection
        nodes, edges = self._filter.filter_high_confidence_subgraph(
            p.node_by_id.values(), p.edge_by_id.values(), p.confidence_threshold, self._filter_options
        )
        p.centrality = compute_centrality(nodes, edges, self.config.centrality_node_ceiling)
        p.filtered_node_ids = {n.id for n in nodes}
        p.filtered_edge_ids = {e.id for e in edges}
        p.is_dirty = False
        p.last_updated = now_ms()
        self.recompute_count += 1
        logger.debug(
            f"Analytics recomputed over {len(nodes)}/{len(p.node_by_id)} nodes "
            f"(threshold={p.confidence_threshold:.2f}) in "
            f"{(time.perf_counter() - started) * 1000:.1f}ms"
        )
        if self._on_recompute is not None:
            try:
                self._on_recompute(p)
            except Exception as exc:
                logger.opt(exception=exc).error(f"Projection recompute listener failed: {exc}")


def _drop_from(index: dict, key, node_id: str) -> None:
    bucket = index.get(key)
    if bucket is None:
        return
    bucket[:] = [n for n in bucket if n.id != node_id]
    if not bucket:
        del index[key]
