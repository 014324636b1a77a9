"""
Record Converters
=================
Row <-> record conversion for the persistent store, plus the small text
helpers the sync engine needs (plain-text extraction from rich-text JSON,
folder paths, label normalization).

Rows are positional tuples in the order of the ``*_COLUMNS`` constants;
list/dict fields are stored as JSON text.
"""

import json
import re
from typing import Any, List, Mapping, Optional, Sequence, Tuple

from notegraph.core.types import (
    AlternateType,
    EntitySource,
    ProvenanceRecord,
    ScopeType,
    SyncEdge,
    SyncEntity,
    SyncFolder,
    SyncNote,
)

NOTE_COLUMNS: Tuple[str, ...] = (
    "id", "title", "content", "content_text", "folder_id", "created_at",
    "updated_at", "entity_kind", "entity_subtype", "entity_label",
    "is_canonical_entity", "is_pinned", "is_favorite", "tags",
)

FOLDER_COLUMNS: Tuple[str, ...] = (
    "id", "name", "path", "parent_id", "created_at", "color", "entity_kind",
    "entity_subtype", "entity_label", "is_typed_root", "is_subtype_root",
    "inherited_kind", "inherited_subtype",
)

ENTITY_COLUMNS: Tuple[str, ...] = (
    "id", "name", "normalized_name", "entity_kind", "entity_subtype",
    "group_id", "scope_type", "created_at", "extraction_method", "summary",
    "aliases", "canonical_note_id", "frequency", "source", "confidence",
    "blueprint_type_id", "blueprint_version_id", "blueprint_fields",
    "provenance_data", "alternate_types",
)

EDGE_COLUMNS: Tuple[str, ...] = (
    "id", "source_id", "target_id", "edge_type", "weight", "group_id",
    "scope_type", "created_at", "valid_at", "invalid_at", "confidence",
    "fact", "episode_ids", "note_ids", "bidirectional",
    "temporal_confidence", "causal_strength",
)

_WHITESPACE = re.compile(r"\s+")


# =============================================================================
# Text helpers
# =============================================================================

def normalize_label(label: str) -> str:
    """Case-fold and collapse whitespace: ``"  Jon  SNOW "`` -> ``"jon snow"``."""
    return _WHITESPACE.sub(" ", (label or "").strip()).casefold()


def extract_plain_text(content: str) -> str:
    """
    Flatten a rich-text JSON document to plain text.

    Text nodes (``{"type": "text", "text": ...}``) are joined with single
    spaces in document order. Content that is not JSON is returned as-is.
    """
    if not content:
        return ""
    try:
        doc = json.loads(content)
    except (TypeError, ValueError):
        return content
    if not isinstance(doc, (dict, list)):
        return content
    return _text_from_node(doc)


def _text_from_node(node: Any) -> str:
    if isinstance(node, list):
        return " ".join(part for part in (_text_from_node(child) for child in node) if part)
    if not isinstance(node, dict):
        return ""
    if node.get("type") == "text" and isinstance(node.get("text"), str):
        return node["text"]
    children = node.get("content")
    if isinstance(children, list):
        return _text_from_node(children)
    return ""


def compute_folder_path(
    name: str,
    parent_id: Optional[str],
    folders_by_id: Mapping[str, SyncFolder],
) -> str:
    """Absolute folder path built by walking the parent chain."""
    parts = [name]
    seen = set()
    current = parent_id
    while current and current not in seen:
        seen.add(current)
        parent = folders_by_id.get(current)
        if parent is None:
            break
        parts.insert(0, parent.name)
        current = parent.parent_id
    return "/" + "/".join(parts)


# =============================================================================
# JSON column helpers
# =============================================================================

def _load_json(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    if isinstance(value, (list, dict)):
        return value
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


def _dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, sort_keys=True)


def _str_list(value: Any) -> List[str]:
    loaded = _load_json(value, [])
    return [str(v) for v in loaded] if isinstance(loaded, list) else []


def _opt_float(value: Any) -> Optional[float]:
    return None if value is None else float(value)


def _scope(value: Any) -> ScopeType:
    try:
        return ScopeType(value or ScopeType.VAULT.value)
    except ValueError:
        return ScopeType.VAULT


def _entity_source(value: Any) -> EntitySource:
    try:
        return EntitySource(value or EntitySource.EXTRACTED.value)
    except ValueError:
        return EntitySource.EXTRACTED


# =============================================================================
# Row parsers
# =============================================================================

def parse_note_row(row: Sequence[Any]) -> SyncNote:
    (id_, title, content, content_text, folder_id, created_at, updated_at,
     entity_kind, entity_subtype, entity_label, is_canonical, is_pinned,
     is_favorite, tags) = row
    if content is not None and not isinstance(content, str):
        content = json.dumps(content)
    return SyncNote(
        id=id_,
        title=title or "",
        content=content or "",
        content_text=content_text or "",
        folder_id=folder_id or None,
        created_at=int(created_at or 0),
        updated_at=int(updated_at or 0),
        entity_kind=entity_kind or None,
        entity_subtype=entity_subtype or None,
        entity_label=entity_label or None,
        is_canonical_entity=bool(is_canonical),
        is_pinned=bool(is_pinned),
        is_favorite=bool(is_favorite),
        tags=_str_list(tags),
    )


def parse_folder_row(row: Sequence[Any]) -> SyncFolder:
    (id_, name, path, parent_id, created_at, color, entity_kind,
     entity_subtype, entity_label, is_typed_root, is_subtype_root,
     inherited_kind, inherited_subtype) = row
    return SyncFolder(
        id=id_,
        name=name or "",
        path=path or "/",
        parent_id=parent_id or None,
        created_at=int(created_at or 0),
        color=color or None,
        entity_kind=entity_kind or None,
        entity_subtype=entity_subtype or None,
        entity_label=entity_label or None,
        is_typed_root=bool(is_typed_root),
        is_subtype_root=bool(is_subtype_root),
        inherited_kind=inherited_kind or None,
        inherited_subtype=inherited_subtype or None,
    )


def parse_entity_row(row: Sequence[Any]) -> SyncEntity:
    (id_, name, normalized_name, entity_kind, entity_subtype, group_id,
     scope_type, created_at, extraction_method, summary, aliases,
     canonical_note_id, frequency, source, confidence, blueprint_type_id,
     blueprint_version_id, blueprint_fields, provenance_data,
     alternate_types) = row
    provenance = _load_json(provenance_data, [])
    alternates = _load_json(alternate_types, [])
    return SyncEntity(
        id=id_,
        name=name or "",
        normalized_name=normalized_name or normalize_label(name or ""),
        entity_kind=entity_kind or "",
        entity_subtype=entity_subtype or None,
        group_id=group_id or "vault",
        scope_type=_scope(scope_type),
        created_at=int(created_at or 0),
        extraction_method=extraction_method or "regex",
        summary=summary or None,
        aliases=_str_list(aliases),
        canonical_note_id=canonical_note_id or None,
        frequency=int(frequency or 1),
        source=_entity_source(source),
        confidence=float(1.0 if confidence is None else confidence),
        blueprint_type_id=blueprint_type_id or None,
        blueprint_version_id=blueprint_version_id or None,
        blueprint_fields=_load_json(blueprint_fields, None),
        provenance_data=[ProvenanceRecord.from_dict(p) for p in provenance if isinstance(p, dict)],
        alternate_types=[AlternateType.from_dict(a) for a in alternates if isinstance(a, dict)],
    )


def parse_edge_row(row: Sequence[Any]) -> SyncEdge:
    (id_, source_id, target_id, edge_type, weight, group_id, scope_type,
     created_at, valid_at, invalid_at, confidence, fact, episode_ids,
     note_ids, bidirectional, temporal_confidence, causal_strength) = row
    return SyncEdge(
        id=id_,
        source_id=source_id,
        target_id=target_id,
        edge_type=edge_type or "RELATED_TO",
        weight=float(1.0 if weight is None else weight),
        group_id=group_id or "vault",
        scope_type=_scope(scope_type),
        created_at=int(created_at or 0),
        valid_at=int(valid_at or created_at or 0),
        invalid_at=None if invalid_at is None else int(invalid_at),
        confidence=float(1.0 if confidence is None else confidence),
        fact=fact or None,
        episode_ids=_str_list(episode_ids),
        note_ids=_str_list(note_ids),
        bidirectional=True if bidirectional is None else bool(bidirectional),
        temporal_confidence=_opt_float(temporal_confidence),
        causal_strength=_opt_float(causal_strength),
    )


# =============================================================================
# Record -> row
# =============================================================================

def note_to_row(note: SyncNote) -> Tuple[Any, ...]:
    return (
        note.id, note.title, note.content, note.content_text, note.folder_id,
        note.created_at, note.updated_at, note.entity_kind, note.entity_subtype,
        note.entity_label, int(note.is_canonical_entity), int(note.is_pinned),
        int(note.is_favorite), _dump_json(note.tags),
    )


def folder_to_row(folder: SyncFolder) -> Tuple[Any, ...]:
    return (
        folder.id, folder.name, folder.path, folder.parent_id, folder.created_at,
        folder.color, folder.entity_kind, folder.entity_subtype,
        folder.entity_label, int(folder.is_typed_root),
        int(folder.is_subtype_root), folder.inherited_kind,
        folder.inherited_subtype,
    )


def entity_to_row(entity: SyncEntity) -> Tuple[Any, ...]:
    data = entity.to_dict()
    return (
        entity.id, entity.name, entity.normalized_name, entity.entity_kind,
        entity.entity_subtype, entity.group_id, entity.scope_type.value,
        entity.created_at, entity.extraction_method, entity.summary,
        _dump_json(entity.aliases), entity.canonical_note_id, entity.frequency,
        entity.source.value, entity.confidence, entity.blueprint_type_id,
        entity.blueprint_version_id, _dump_json(entity.blueprint_fields),
        _dump_json(data["provenance_data"]), _dump_json(data["alternate_types"]),
    )


def edge_to_row(edge: SyncEdge) -> Tuple[Any, ...]:
    return (
        edge.id, edge.source_id, edge.target_id, edge.edge_type, edge.weight,
        edge.group_id, edge.scope_type.value, edge.created_at, edge.valid_at,
        edge.invalid_at, edge.confidence, edge.fact,
        _dump_json(edge.episode_ids), _dump_json(edge.note_ids),
        int(edge.bidirectional), edge.temporal_confidence, edge.causal_strength,
    )
