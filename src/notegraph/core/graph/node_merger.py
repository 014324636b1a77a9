"""
Node Merger
===========
Folds duplicate entity records into one canonical graph node per
(normalized label, kind).

Extraction routinely produces the same entity several times (a regex hit, an
NER hit, a manual blueprint instance). The merger groups those records and
reduces each group into a MergedEntity:

- primary record: highest source priority, then highest confidence; its id
  becomes the canonical node id
- confidence: source-priority weighted average, capped at 1
- subtype conflicts: winner by priority then confidence, the rest kept as
  AlternateType interpretations
- frequency summed, aliases and provenance unioned

Everything here is pure: no state survives between calls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from functools import reduce
from itertools import groupby
from typing import Dict, Iterable, List, Optional, Tuple

from notegraph.core.converters import normalize_label
from notegraph.core.types import (
    AlternateType,
    DEFAULT_NODE_COLOR,
    ENTITY_COLORS,
    EntitySource,
    GraphNode,
    NodeType,
    SyncEntity,
    node_size_for_frequency,
)

SOURCE_PRIORITY: Dict[EntitySource, int] = {
    EntitySource.BLUEPRINT: 100,
    EntitySource.MANUAL: 90,
    EntitySource.EXTRACTED: 50,
    EntitySource.CONCEPT: 30,
}

PROVENANCE_PRIORITY: Dict[str, int] = {
    "manual": 100,
    "title": 90,
    "regex": 80,
    "blueprint": 70,
    "llm": 60,
    "ner": 50,
    "wikilink": 40,
}

MergeKey = Tuple[str, str]


def merge_key(entity: SyncEntity) -> MergeKey:
    """(normalized label, kind) identity used for deduplication."""
    return (normalize_label(entity.normalized_name or entity.name), entity.entity_kind)


@dataclass
class MergedEntity:
    id: str
    name: str
    normalized_name: str
    entity_kind: str
    entity_subtype: Optional[str]
    confidence: float
    provenance: List[str]
    alternate_types: List[AlternateType]
    frequency: int
    aliases: List[str]
    note_ids: List[str]
    source_entities: List[SyncEntity] = field(default_factory=list)
    is_canonical: bool = False
    blueprint_type_id: Optional[str] = None
    blueprint_fields: Optional[dict] = None

    @property
    def member_ids(self) -> List[str]:
        return [e.id for e in self.source_entities]


def _priority(entity: SyncEntity) -> int:
    return SOURCE_PRIORITY.get(entity.source, 0)


def _rank(entity: SyncEntity) -> Tuple[int, float, str]:
    # id as last tiebreaker keeps the canonical id deterministic
    return (-_priority(entity), -entity.confidence, entity.id)


class NodeMerger:
    """Stateless entity deduplication."""

    def group(self, entities: Iterable[SyncEntity]) -> Dict[MergeKey, List[SyncEntity]]:
        groups: Dict[MergeKey, List[SyncEntity]] = {}
        for entity in entities:
            groups.setdefault(merge_key(entity), []).append(entity)
        return groups

    def select_primary(self, entities: List[SyncEntity]) -> SyncEntity:
        return min(entities, key=_rank)

    def aggregate_confidence(self, entities: List[SyncEntity]) -> float:
        if not entities:
            return 0.0
        if len(entities) == 1:
            return entities[0].confidence
        weights = [SOURCE_PRIORITY.get(e.source, 50) / 100 for e in entities]
        total = sum(weights)
        if total <= 0:
            return 0.0
        weighted = sum(e.confidence * w for e, w in zip(entities, weights))
        return min(1.0, weighted / total)

    def collect_provenance(self, entities: List[SyncEntity]) -> List[str]:
        sources = set()
        for entity in entities:
            sources.add(entity.source.value)
            sources.update(record.source for record in entity.provenance_data)
        return sorted(sources, key=lambda s: (-PROVENANCE_PRIORITY.get(s, 0), s))

    def resolve_type_conflict(
        self, entities: List[SyncEntity]
    ) -> Tuple[str, Optional[str], List[AlternateType]]:
        """Pick the winning (kind, subtype); losers become alternates."""

        def type_of(e: SyncEntity) -> Tuple[str, str]:
            return (e.entity_kind, e.entity_subtype or "")

        ranked = []
        for (kind, subtype), members in groupby(sorted(entities, key=type_of), key=type_of):
            members = list(members)
            ranked.append((
                -max(_priority(m) for m in members),
                -max(m.confidence for m in members),
                kind,
                subtype,
                members,
            ))
        ranked.sort(key=lambda r: r[:4])

        _, _, kind, subtype, _ = ranked[0]
        alternates = []
        for _, neg_conf, alt_kind, alt_subtype, members in ranked[1:]:
            lead = self.select_primary(members)
            alternates.append(AlternateType(
                entity_kind=alt_kind,
                entity_subtype=alt_subtype or None,
                source=lead.source.value,
                confidence=-neg_conf,
                reason=f"Alternative interpretation from {lead.source.value}",
            ))
        return kind, subtype or None, alternates

    def merge_group(self, entities: List[SyncEntity]) -> MergedEntity:
        if not entities:
            raise ValueError("Cannot merge empty entity group")

        primary = self.select_primary(entities)
        kind, subtype, alternates = self.resolve_type_conflict(entities)
        if len(entities) == 1:
            alternates = list(primary.alternate_types)

        def fold_names(acc: List[str], e: SyncEntity) -> List[str]:
            for name in (e.name, *e.aliases):
                if name and name != primary.name and name not in acc:
                    acc.append(name)
            return acc

        def fold_notes(acc: List[str], e: SyncEntity) -> List[str]:
            candidates = [e.canonical_note_id] + [p.note_id for p in e.provenance_data]
            for note_id in candidates:
                if note_id and note_id not in acc:
                    acc.append(note_id)
            return acc

        members = sorted(entities, key=_rank)
        return MergedEntity(
            id=primary.id,
            name=primary.name,
            normalized_name=merge_key(primary)[0],
            entity_kind=kind,
            entity_subtype=subtype,
            confidence=self.aggregate_confidence(entities),
            provenance=self.collect_provenance(entities),
            alternate_types=alternates,
            frequency=sum(e.frequency for e in entities),
            aliases=reduce(fold_names, members, []),
            note_ids=reduce(fold_notes, members, []),
            source_entities=members,
            is_canonical=any(
                e.source in (EntitySource.BLUEPRINT, EntitySource.MANUAL) for e in entities
            ),
            blueprint_type_id=primary.blueprint_type_id,
            blueprint_fields=primary.blueprint_fields,
        )

    def determine_node_type(self, merged: MergedEntity) -> NodeType:
        if merged.blueprint_type_id:
            return NodeType.BLUEPRINT_ENTITY
        if any(e.source is EntitySource.CONCEPT for e in merged.source_entities):
            return NodeType.CONCEPT
        if merged.is_canonical:
            return NodeType.BLUEPRINT_ENTITY
        return NodeType.EXTRACTED_ENTITY

    def to_graph_node(self, merged: MergedEntity) -> GraphNode:
        return GraphNode(
            id=merged.id,
            label=merged.name,
            node_type=self.determine_node_type(merged),
            kind=merged.entity_kind,
            subtype=merged.entity_subtype,
            frequency=merged.frequency,
            note_ids=list(merged.note_ids),
            size=node_size_for_frequency(merged.frequency),
            color=ENTITY_COLORS.get(merged.entity_kind, DEFAULT_NODE_COLOR),
            confidence=merged.confidence,
            provenance=list(merged.provenance),
            alternate_types=list(merged.alternate_types),
            aliases=list(merged.aliases),
            blueprint_type_id=merged.blueprint_type_id,
            blueprint_fields=merged.blueprint_fields,
            is_canonical=merged.is_canonical,
            member_ids=merged.member_ids,
        )

    def merge_all(self, entities: Iterable[SyncEntity]) -> Tuple[List[GraphNode], Dict[str, str]]:
        """
        Merge every group.

        Returns:
            (nodes, id_map) where id_map sends each entity id to the id of
            the canonical node that absorbed it.
        """
        nodes: List[GraphNode] = []
        id_map: Dict[str, str] = {}
        for group in self.group(entities).values():
            node = self.to_graph_node(self.merge_group(group))
            nodes.append(node)
            for entity in group:
                id_map[entity.id] = node.id
        return nodes, id_map


node_merger = NodeMerger()
