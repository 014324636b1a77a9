"""
NoteGraph Data Model
====================
Records held by the sync engine's caches (SyncNote, SyncFolder, SyncEntity,
SyncEdge), the graph primitives owned by the projection store (GraphNode,
GraphEdge, GraphProjection) and the mutation envelope passed to the write
buffer.

Timestamps are epoch milliseconds throughout.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Optional, Set


# ═══════════════════════════════════════════════════════════════════════
# Enums
# ═══════════════════════════════════════════════════════════════════════

class NodeType(str, Enum):
    NOTE = "note"
    FOLDER = "folder"
    EXTRACTED_ENTITY = "extracted_entity"
    BLUEPRINT_ENTITY = "blueprint_entity"
    CONCEPT = "concept"


class MutationType(str, Enum):
    CREATE_NOTE = "CREATE_NOTE"
    UPDATE_NOTE = "UPDATE_NOTE"
    DELETE_NOTE = "DELETE_NOTE"
    CREATE_FOLDER = "CREATE_FOLDER"
    UPDATE_FOLDER = "UPDATE_FOLDER"
    DELETE_FOLDER = "DELETE_FOLDER"
    UPSERT_ENTITY = "UPSERT_ENTITY"
    DELETE_ENTITY = "DELETE_ENTITY"
    CREATE_EDGE = "CREATE_EDGE"
    DELETE_EDGE = "DELETE_EDGE"


class MutationStatus(str, Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    FAILED = "failed"


class ChangeType(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


class EntitySource(str, Enum):
    BLUEPRINT = "blueprint"
    MANUAL = "manual"
    EXTRACTED = "extracted"
    CONCEPT = "concept"


class ScopeType(str, Enum):
    NOTE = "note"
    FOLDER = "folder"
    VAULT = "vault"


class EdgeSource(str, Enum):
    BLUEPRINT_RELATION = "blueprint_relation"
    WIKILINK = "wikilink"
    LLM_EXTRACTION = "llm_extraction"
    NER_COOCCURRENCE = "ner_cooccurrence"
    SEMANTIC = "semantic"
    TEMPORAL = "temporal"
    SPATIAL = "spatial"
    COOCCURRENCE = "cooccurrence"


EDGE_CONFIDENCE_WEIGHTS: Dict[EdgeSource, float] = {
    EdgeSource.BLUEPRINT_RELATION: 1.0,
    EdgeSource.WIKILINK: 0.95,
    EdgeSource.LLM_EXTRACTION: 0.8,
    EdgeSource.NER_COOCCURRENCE: 0.7,
    EdgeSource.SEMANTIC: 0.6,
    EdgeSource.TEMPORAL: 0.5,
    EdgeSource.SPATIAL: 0.5,
    EdgeSource.COOCCURRENCE: 0.4,
}

NOTE_KIND = "NOTE"
FOLDER_KIND = "FOLDER"
DEFAULT_NODE_COLOR = "#6b7280"
NOTE_NODE_COLOR = "#3b82f6"

ENTITY_COLORS: Dict[str, str] = {
    "CHARACTER": "#a855f7",
    "LOCATION": "#22c55e",
    "ORGANIZATION": "#f97316",
    "ITEM": "#eab308",
    "EVENT": "#ef4444",
    "CONCEPT": "#06b6d4",
    "FACTION": "#ec4899",
    "SCENE": "#8b5cf6",
}


# ═══════════════════════════════════════════════════════════════════════
# Cached records (owned by the sync engine)
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class SyncNote:
    id: str
    title: str
    content: str = ""
    content_text: str = ""
    folder_id: Optional[str] = None
    created_at: int = 0
    updated_at: int = 0
    entity_kind: Optional[str] = None
    entity_subtype: Optional[str] = None
    entity_label: Optional[str] = None
    is_canonical_entity: bool = False
    is_pinned: bool = False
    is_favorite: bool = False
    tags: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SyncFolder:
    id: str
    name: str
    path: str = ""
    parent_id: Optional[str] = None
    created_at: int = 0
    color: Optional[str] = None
    entity_kind: Optional[str] = None
    entity_subtype: Optional[str] = None
    entity_label: Optional[str] = None
    is_typed_root: bool = False
    is_subtype_root: bool = False
    inherited_kind: Optional[str] = None
    inherited_subtype: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProvenanceRecord:
    """Where an entity observation came from (ner, llm, regex, wikilink...)."""
    source: str
    confidence: float = 1.0
    timestamp: int = 0
    extractor_version: Optional[str] = None
    note_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProvenanceRecord":
        return cls(
            source=str(data.get("source", "manual")),
            confidence=float(data.get("confidence", 1.0)),
            timestamp=int(data.get("timestamp", 0) or 0),
            extractor_version=data.get("extractor_version"),
            note_id=data.get("note_id"),
        )


@dataclass
class AlternateType:
    """A losing type interpretation kept after a merge."""
    entity_kind: str
    source: str
    confidence: float
    entity_subtype: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AlternateType":
        return cls(
            entity_kind=str(data.get("entity_kind", "")),
            source=str(data.get("source", "")),
            confidence=float(data.get("confidence", 0.0)),
            entity_subtype=data.get("entity_subtype"),
            reason=data.get("reason"),
        )


@dataclass
class SyncEntity:
    id: str
    name: str
    normalized_name: str
    entity_kind: str
    entity_subtype: Optional[str] = None
    group_id: str = "vault"
    scope_type: ScopeType = ScopeType.VAULT
    frequency: int = 1
    canonical_note_id: Optional[str] = None
    aliases: List[str] = field(default_factory=list)
    summary: Optional[str] = None
    created_at: int = 0
    extraction_method: str = "manual"
    source: EntitySource = EntitySource.MANUAL
    confidence: float = 1.0
    blueprint_type_id: Optional[str] = None
    blueprint_version_id: Optional[str] = None
    blueprint_fields: Optional[Dict[str, Any]] = None
    provenance_data: List[ProvenanceRecord] = field(default_factory=list)
    alternate_types: List[AlternateType] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["scope_type"] = self.scope_type.value
        data["source"] = self.source.value
        return data


@dataclass
class SyncEdge:
    id: str
    source_id: str
    target_id: str
    edge_type: str
    weight: float = 1.0
    group_id: str = "vault"
    scope_type: ScopeType = ScopeType.VAULT
    created_at: int = 0
    valid_at: int = 0
    invalid_at: Optional[int] = None
    confidence: float = 1.0
    fact: Optional[str] = None
    episode_ids: List[str] = field(default_factory=list)
    note_ids: List[str] = field(default_factory=list)
    bidirectional: bool = True
    temporal_confidence: Optional[float] = None
    causal_strength: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["scope_type"] = self.scope_type.value
        return data


# ═══════════════════════════════════════════════════════════════════════
# Graph primitives (owned by the projection store)
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class GraphNode:
    id: str
    label: str
    node_type: NodeType
    kind: str
    subtype: Optional[str] = None
    frequency: int = 1
    note_ids: List[str] = field(default_factory=list)
    size: float = 10.0
    color: str = DEFAULT_NODE_COLOR
    confidence: float = 1.0
    provenance: List[str] = field(default_factory=list)
    alternate_types: List[AlternateType] = field(default_factory=list)
    aliases: List[str] = field(default_factory=list)
    blueprint_type_id: Optional[str] = None
    blueprint_fields: Optional[Dict[str, Any]] = None
    parent_id: Optional[str] = None
    is_canonical: bool = False
    member_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["node_type"] = self.node_type.value
        return data


@dataclass
class GraphEdge:
    id: str
    source: str
    target: str
    edge_type: str
    weight: float
    width: float
    edge_source: EdgeSource
    confidence: float
    is_high_confidence: bool
    bidirectional: bool = True
    valid_at: int = 0
    invalid_at: Optional[int] = None
    episode_ids: List[str] = field(default_factory=list)
    note_ids: List[str] = field(default_factory=list)
    temporal_confidence: Optional[float] = None
    causal_strength: Optional[float] = None

    def other(self, node_id: str) -> str:
        """Endpoint opposite ``node_id``."""
        return self.target if self.source == node_id else self.source

    def traversable_from(self, node_id: str) -> bool:
        return self.source == node_id or (self.bidirectional and self.target == node_id)


@dataclass
class CentralityScores:
    degree: float = 0.0
    betweenness: float = 0.0
    closeness: float = 0.0
    exhaustive: bool = False

    @property
    def composite(self) -> float:
        """Single [0,1] summary: mean of all three when computed, else degree."""
        if self.exhaustive:
            return (self.degree + self.betweenness + self.closeness) / 3.0
        return self.degree


@dataclass
class GraphProjection:
    """
    Analytics-annotated mirror of the graph.

    ``node_by_id`` / ``edge_by_id`` are the primary maps (insertion
    ordered); ``nodes`` / ``edges`` are list views over them.
    """
    node_by_id: Dict[str, GraphNode] = field(default_factory=dict)
    edge_by_id: Dict[str, GraphEdge] = field(default_factory=dict)
    adjacency: Dict[str, Set[str]] = field(default_factory=dict)
    incident_edges: Dict[str, Dict[str, GraphEdge]] = field(default_factory=dict)
    nodes_by_kind: Dict[str, List[GraphNode]] = field(default_factory=dict)
    nodes_by_type: Dict[NodeType, List[GraphNode]] = field(default_factory=dict)
    nodes_by_folder: Dict[str, List[GraphNode]] = field(default_factory=dict)
    centrality: Dict[str, CentralityScores] = field(default_factory=dict)
    filtered_node_ids: Set[str] = field(default_factory=set)
    filtered_edge_ids: Set[str] = field(default_factory=set)
    confidence_threshold: float = 0.5
    last_updated: int = 0
    is_dirty: bool = False

    @property
    def nodes(self) -> List[GraphNode]:
        return list(self.node_by_id.values())

    @property
    def edges(self) -> List[GraphEdge]:
        return list(self.edge_by_id.values())

    def stats(self) -> Dict[str, Any]:
        return {
            "nodes": len(self.node_by_id),
            "edges": len(self.edge_by_id),
            "filtered_nodes": len(self.filtered_node_ids),
            "filtered_edges": len(self.filtered_edge_ids),
            "confidence_threshold": self.confidence_threshold,
            "last_updated": self.last_updated,
            "is_dirty": self.is_dirty,
        }


# ═══════════════════════════════════════════════════════════════════════
# Sync envelope
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class Mutation:
    id: str
    type: MutationType
    payload: Any
    timestamp: int
    status: MutationStatus = MutationStatus.PENDING


@dataclass
class SyncMetrics:
    flush_count: int = 0
    avg_flush_time_ms: float = 0.0
    total_mutations: int = 0
    failed_mutations: int = 0
    cache_hits: int = 0
    cache_misses: int = 0

    def record_flush(self, elapsed_ms: float) -> None:
        self.flush_count += 1
        self.avg_flush_time_ms += (elapsed_ms - self.avg_flush_time_ms) / self.flush_count

    @property
    def hit_rate(self) -> float:
        total = self.cache_hits + self.cache_misses
        return self.cache_hits / total if total else 0.0


@dataclass(frozen=True)
class AppState:
    """Snapshot handed to subscribers after every local change."""
    notes: List[SyncNote]
    folders: List[SyncFolder]
    entities: List[SyncEntity]
    edges: List[SyncEdge]
    graph_projection: GraphProjection
    is_hydrated: bool
    last_sync_at: Optional[int]


def node_size_for_frequency(frequency: int) -> float:
    return min(10 + math.log(frequency + 1) * 5, 30)
