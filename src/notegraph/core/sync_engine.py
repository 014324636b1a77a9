"""
Sync Engine
===========
Single source of truth for local reads and the only entry point for
mutations.

Write path (synchronous, before any I/O):
    validate payload -> update cache -> enqueue Mutation on the WriteBuffer
    -> notify the GraphProjectionStore -> broadcast AppState to subscribers

Persistence happens later when the WriteBuffer flushes: the batch executor
replays each mutation, in enqueue order, against the GraphStore.

Failure policy (full resync):
    If a flush raises, every mutation of that batch is marked failed, any
    still-queued mutations are dropped, all caches and the projection are
    re-hydrated from the store, and subscribers get the restored state.
    Mutations issued while the resync is awaiting the store are dropped
    as well, so the restored caches and the store agree.

Error taxonomy at the public API:
    ValidationError   -> logged as error, no-op, returns None/False
    NotFoundError     -> logged as warning, no-op, returns None/False
    SyncNotReadyError -> raised (initialize() was not awaited)
"""

from __future__ import annotations

import asyncio
import copy
import functools
import math
import time
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from loguru import logger

from notegraph.core._utils import generate_id, now_ms
from notegraph.core.config import NoteGraphConfig, get_config
from notegraph.core.converters import compute_folder_path, extract_plain_text, normalize_label
from notegraph.core.events import SyncEvents
from notegraph.core.exceptions import (
    HydrationError,
    NotFoundError,
    SyncNotReadyError,
    ValidationError,
)
from notegraph.core.graph.projection import GraphProjectionStore
from notegraph.core.store import GraphStore
from notegraph.core.types import (
    AlternateType,
    AppState,
    ChangeType,
    EntitySource,
    GraphProjection,
    Mutation,
    MutationStatus,
    MutationType,
    ProvenanceRecord,
    ScopeType,
    SyncEdge,
    SyncEntity,
    SyncFolder,
    SyncMetrics,
    SyncNote,
)
from notegraph.core.write_buffer import WriteBuffer

StateListener = Callable[[AppState], None]

EMPTY_DOC = '{"type": "doc", "content": [{"type": "paragraph", "content": []}]}'

_NOTE_PATCHABLE = {
    "title", "content", "content_text", "folder_id", "entity_kind",
    "entity_subtype", "entity_label", "is_canonical_entity", "is_pinned",
    "is_favorite", "tags",
}
_FOLDER_PATCHABLE = {
    "name", "parent_id", "color", "entity_kind", "entity_subtype",
    "entity_label", "is_typed_root", "is_subtype_root", "inherited_kind",
    "inherited_subtype",
}


def _mutation_api(default: Any = None):
    """Guard a public mutation: hydration check plus no-op on bad input."""

    def decorator(fn):
        @functools.wraps(fn)
        def wrapper(self: "SyncEngine", *args, **kwargs):
            self._ensure_ready(fn.__name__)
            try:
                return fn(self, *args, **kwargs)
            except ValidationError as exc:
                logger.error(f"[SyncEngine] {fn.__name__} rejected: {exc}")
            except NotFoundError as exc:
                logger.warning(f"[SyncEngine] {fn.__name__} skipped: {exc}")
            return default

        return wrapper

    return decorator


# ═══════════════════════════════════════════════════════════════════════
# Payload validation helpers
# ═══════════════════════════════════════════════════════════════════════

def _required_str(payload: Mapping[str, Any], field: str) -> str:
    value = payload.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(field, "required non-empty string", value)
    return value


def _unit_float(payload: Mapping[str, Any], field: str, default: float) -> float:
    value = payload.get(field, default)
    try:
        value = float(value)
    except (TypeError, ValueError):
        raise ValidationError(field, "must be a number", value)
    if not 0.0 <= value <= 1.0:
        raise ValidationError(field, "must be within [0, 1]", value)
    return value


def _optional_unit_float(payload: Mapping[str, Any], field: str) -> Optional[float]:
    if payload.get(field) is None:
        return None
    return _unit_float(payload, field, 0.0)


def _reject_unknown(patch: Mapping[str, Any], allowed: set) -> None:
    unknown = set(patch) - allowed
    if unknown:
        raise ValidationError(sorted(unknown)[0], "field cannot be patched", sorted(unknown))


def _enum(enum_cls, payload: Mapping[str, Any], field: str, default):
    value = payload.get(field, default)
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(field, f"must be one of {[e.value for e in enum_cls]}", value)


def _provenance(items: Iterable[Any]) -> List[ProvenanceRecord]:
    return [i if isinstance(i, ProvenanceRecord) else ProvenanceRecord.from_dict(i) for i in items]


def _alternates(items: Iterable[Any]) -> List[AlternateType]:
    return [i if isinstance(i, AlternateType) else AlternateType.from_dict(i) for i in items]


class SyncEngine:
    """
    Orchestrates local caches, the WriteBuffer and the GraphProjectionStore.

    Example:
        engine = SyncEngine(SQLiteGraphStore("vault.db"))
        await engine.initialize()
        note = engine.create_note({"title": "Winterfell"})
        assert engine.get_note(note.id).title == "Winterfell"
        await engine.flush_now()
    """

    def __init__(
        self,
        store: GraphStore,
        config: Optional[NoteGraphConfig] = None,
        *,
        projection: Optional[GraphProjectionStore] = None,
        events: Optional[SyncEvents] = None,
    ):
        self.config = config or get_config()
        self._store = store
        self.events = events or SyncEvents()
        self._projection = projection or GraphProjectionStore(
            self.config.projection,
            on_recompute=self._on_projection_recomputed,
        )
        self._write_buffer = WriteBuffer(
            self._execute_batch,
            self._rollback_mutations,
            flush_delay_ms=self.config.sync.flush_delay_ms,
        )

        self._notes: Dict[str, SyncNote] = {}
        self._folders: Dict[str, SyncFolder] = {}
        self._entities: Dict[str, SyncEntity] = {}
        self._edges: Dict[str, SyncEdge] = {}

        self._subscribers: Dict[int, StateListener] = {}
        self._next_subscriber = 0
        self._is_hydrated = False
        self._last_sync_at: Optional[int] = None
        self._metrics = SyncMetrics()

        self._persisters = {
            MutationType.CREATE_NOTE: store.upsert_note,
            MutationType.UPDATE_NOTE: store.upsert_note,
            MutationType.DELETE_NOTE: store.delete_note,
            MutationType.CREATE_FOLDER: store.upsert_folder,
            MutationType.UPDATE_FOLDER: store.upsert_folder,
            MutationType.DELETE_FOLDER: store.delete_folder,
            MutationType.UPSERT_ENTITY: store.upsert_entity,
            MutationType.DELETE_ENTITY: store.delete_entity,
            MutationType.CREATE_EDGE: store.upsert_edge,
            MutationType.DELETE_EDGE: store.delete_edge,
        }

    # ══════════════════════════════════════════════════════════════════
    # Lifecycle
    # ══════════════════════════════════════════════════════════════════

    async def initialize(self) -> None:
        """Hydrate caches and the projection. Safe to call twice."""
        if self._is_hydrated:
            return
        await self._hydrate()
        self.events.publish("sync.hydrated", self._counts())
        self._notify_subscribers()

    async def _hydrate(self) -> None:
        started = time.perf_counter()
        try:
            notes, folders, entities, edges = await asyncio.gather(
                self._store.fetch_notes(),
                self._store.fetch_folders(),
                self._store.fetch_entities(),
                self._store.fetch_edges(),
            )
        except Exception as exc:
            raise HydrationError(str(exc), {"store": type(self._store).__name__}) from exc

        self._notes = {n.id: n for n in notes}
        self._folders = {f.id: f for f in folders}
        self._entities = {e.id: e for e in entities}
        self._edges = {e.id: e for e in edges}
        self._projection.build_from_cache(entities, edges, notes, folders)
        self._is_hydrated = True
        self._last_sync_at = now_ms()
        logger.info(
            f"[SyncEngine] Hydrated {len(notes)} notes, {len(folders)} folders, "
            f"{len(entities)} entities, {len(edges)} edges in "
            f"{(time.perf_counter() - started) * 1000:.1f}ms"
        )

    async def flush_now(self) -> None:
        await self._write_buffer.flush_now()

    async def close(self) -> None:
        """Flush outstanding writes and stop the projection timer."""
        await self._write_buffer.flush_now()
        self._projection.cancel_pending_recompute()
        await self._store.close()

    def _ensure_ready(self, operation: str) -> None:
        if not self._is_hydrated:
            raise SyncNotReadyError(operation)

    # ══════════════════════════════════════════════════════════════════
    # Reads
    # ══════════════════════════════════════════════════════════════════

    @property
    def is_ready(self) -> bool:
        return self._is_hydrated

    @property
    def projection_store(self) -> GraphProjectionStore:
        return self._projection

    @property
    def store(self) -> GraphStore:
        return self._store

    def _lookup(self, cache: Dict[str, Any], record_id: str):
        record = cache.get(record_id)
        if record is None:
            self._metrics.cache_misses += 1
        else:
            self._metrics.cache_hits += 1
        return record

    def get_note(self, note_id: str) -> Optional[SyncNote]:
        return self._lookup(self._notes, note_id)

    def peek_note(self, note_id: str) -> Optional[SyncNote]:
        """Cache read that does not count toward hit/miss metrics."""
        return self._notes.get(note_id)

    def get_notes(self) -> List[SyncNote]:
        return list(self._notes.values())

    def get_notes_in_folder(self, folder_id: Optional[str]) -> List[SyncNote]:
        return [n for n in self._notes.values() if n.folder_id == folder_id]

    def get_folder(self, folder_id: str) -> Optional[SyncFolder]:
        return self._lookup(self._folders, folder_id)

    def get_folders(self) -> List[SyncFolder]:
        return list(self._folders.values())

    def get_entity(self, entity_id: str) -> Optional[SyncEntity]:
        return self._lookup(self._entities, entity_id)

    def peek_entity(self, entity_id: str) -> Optional[SyncEntity]:
        return self._entities.get(entity_id)

    def get_entities(self) -> List[SyncEntity]:
        return list(self._entities.values())

    def get_edge(self, edge_id: str) -> Optional[SyncEdge]:
        return self._lookup(self._edges, edge_id)

    def get_edges(self) -> List[SyncEdge]:
        return list(self._edges.values())

    def get_edges_for(self, record_id: str) -> List[SyncEdge]:
        return [e for e in self._edges.values() if record_id in (e.source_id, e.target_id)]

    def find_entity_by_normalized_name(self, name: str, kind: Optional[str] = None) -> Optional[SyncEntity]:
        normalized = normalize_label(name)
        for entity in self._entities.values():
            if entity.normalized_name == normalized and (kind is None or entity.entity_kind == kind):
                return entity
        return None

    def get_entities_by_source(self, source) -> List[SyncEntity]:
        source = EntitySource(source)
        return [e for e in self._entities.values() if e.source is source]

    def get_graph_projection(self) -> GraphProjection:
        return self._projection.projection

    def get_state(self) -> AppState:
        return AppState(
            notes=list(self._notes.values()),
            folders=list(self._folders.values()),
            entities=list(self._entities.values()),
            edges=list(self._edges.values()),
            graph_projection=self._projection.projection,
            is_hydrated=self._is_hydrated,
            last_sync_at=self._last_sync_at,
        )

    def get_metrics(self) -> SyncMetrics:
        return copy.copy(self._metrics)

    def has_pending_writes(self) -> bool:
        return self._write_buffer.has_pending()

    # ══════════════════════════════════════════════════════════════════
    # Subscribers
    # ══════════════════════════════════════════════════════════════════

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register ``listener``; the returned callable unsubscribes it."""
        token = self._next_subscriber
        self._next_subscriber += 1
        self._subscribers[token] = listener

        def unsubscribe() -> None:
            self._subscribers.pop(token, None)

        return unsubscribe

    def _notify_subscribers(self) -> None:
        if not self._subscribers:
            return
        state = self.get_state()
        for listener in list(self._subscribers.values()):
            try:
                listener(state)
            except Exception as exc:
                logger.opt(exception=exc).error(f"[SyncEngine] Subscriber failed: {exc}")

    def _enqueue(self, mutation_type: MutationType, payload: Any) -> Mutation:
        mutation = Mutation(
            id=generate_id(),
            type=mutation_type,
            payload=copy.deepcopy(payload),
            timestamp=now_ms(),
        )
        self._write_buffer.enqueue(mutation)
        self._metrics.total_mutations += 1
        return mutation

    # ══════════════════════════════════════════════════════════════════
    # Notes
    # ══════════════════════════════════════════════════════════════════

    def _require_folder(self, folder_id: Optional[str]) -> None:
        if folder_id is not None and folder_id not in self._folders:
            raise NotFoundError("Folder", folder_id)

    @_mutation_api()
    def create_note(self, payload: Mapping[str, Any]) -> Optional[SyncNote]:
        title = _required_str(payload, "title")
        self._require_folder(payload.get("folder_id"))
        now = now_ms()
        content = payload.get("content") or EMPTY_DOC
        note = SyncNote(
            id=payload.get("id") or generate_id(),
            title=title,
            content=content,
            content_text=extract_plain_text(content),
            folder_id=payload.get("folder_id"),
            created_at=now,
            updated_at=now,
            entity_kind=payload.get("entity_kind"),
            entity_subtype=payload.get("entity_subtype"),
            entity_label=payload.get("entity_label"),
            is_canonical_entity=bool(payload.get("is_canonical_entity", False)),
            is_pinned=bool(payload.get("is_pinned", False)),
            is_favorite=bool(payload.get("is_favorite", False)),
            tags=list(payload.get("tags") or []),
        )
        self._notes[note.id] = note
        self._enqueue(MutationType.CREATE_NOTE, note)
        self._projection.on_note_change(note, ChangeType.ADD)
        self._notify_subscribers()
        self.events.publish("note.created", {"id": note.id, "title": note.title})
        return note

    @_mutation_api()
    def update_note(self, note_id: str, patch: Mapping[str, Any]) -> Optional[SyncNote]:
        existing = self._notes.get(note_id)
        if existing is None:
            raise NotFoundError("Note", note_id)
        _reject_unknown(patch, _NOTE_PATCHABLE)
        if "title" in patch:
            _required_str(patch, "title")
        if "folder_id" in patch:
            self._require_folder(patch["folder_id"])

        updated = _replace(existing, patch)
        if "content" in patch and "content_text" not in patch:
            updated.content_text = extract_plain_text(updated.content)
        updated.updated_at = max(now_ms(), existing.updated_at)

        self._apply_note_update(updated)
        return updated

    def _apply_note_update(self, note: SyncNote) -> None:
        self._notes[note.id] = note
        self._enqueue(MutationType.UPDATE_NOTE, note)
        self._projection.on_note_change(note, ChangeType.UPDATE)
        self._notify_subscribers()
        self.events.publish("note.updated", {"id": note.id, "title": note.title})

    @_mutation_api(default=False)
    def delete_note(self, note_id: str) -> bool:
        note = self._notes.get(note_id)
        if note is None:
            raise NotFoundError("Note", note_id)
        self._cascade_edges(note_id)
        del self._notes[note_id]
        self._enqueue(MutationType.DELETE_NOTE, note_id)
        self._projection.on_note_change(note, ChangeType.DELETE)
        self._notify_subscribers()
        self.events.publish("note.deleted", {"id": note_id})
        return True

    # ══════════════════════════════════════════════════════════════════
    # Folders
    # ══════════════════════════════════════════════════════════════════

    def _descendant_folder_ids(self, folder_id: str) -> List[str]:
        found, frontier = [], [folder_id]
        while frontier:
            current = frontier.pop()
            for folder in self._folders.values():
                if folder.parent_id == current and folder.id not in found:
                    found.append(folder.id)
                    frontier.append(folder.id)
        return found

    @_mutation_api()
    def create_folder(self, payload: Mapping[str, Any]) -> Optional[SyncFolder]:
        name = _required_str(payload, "name")
        parent_id = payload.get("parent_id")
        self._require_folder(parent_id)
        folder = SyncFolder(
            id=payload.get("id") or generate_id(),
            name=name,
            path=compute_folder_path(name, parent_id, self._folders),
            parent_id=parent_id,
            created_at=now_ms(),
            color=payload.get("color"),
            entity_kind=payload.get("entity_kind"),
            entity_subtype=payload.get("entity_subtype"),
            entity_label=payload.get("entity_label"),
            is_typed_root=bool(payload.get("is_typed_root", False)),
            is_subtype_root=bool(payload.get("is_subtype_root", False)),
            inherited_kind=payload.get("inherited_kind"),
            inherited_subtype=payload.get("inherited_subtype"),
        )
        self._folders[folder.id] = folder
        self._enqueue(MutationType.CREATE_FOLDER, folder)
        self._projection.on_folder_change(folder, ChangeType.ADD)
        self._notify_subscribers()
        self.events.publish("folder.created", {"id": folder.id, "name": folder.name})
        return folder

    @_mutation_api()
    def update_folder(self, folder_id: str, patch: Mapping[str, Any]) -> Optional[SyncFolder]:
        existing = self._folders.get(folder_id)
        if existing is None:
            raise NotFoundError("Folder", folder_id)
        _reject_unknown(patch, _FOLDER_PATCHABLE)
        if "name" in patch:
            _required_str(patch, "name")
        if "parent_id" in patch:
            parent_id = patch["parent_id"]
            self._require_folder(parent_id)
            if parent_id == folder_id or parent_id in self._descendant_folder_ids(folder_id):
                raise ValidationError("parent_id", "would create a folder cycle", parent_id)

        updated = _replace(existing, patch)
        self._folders[folder_id] = updated
        moved = "name" in patch or "parent_id" in patch
        targets = [folder_id] + (self._descendant_folder_ids(folder_id) if moved else [])
        for target_id in targets:
            folder = self._folders[target_id]
            if moved:
                folder.path = compute_folder_path(folder.name, folder.parent_id, self._folders)
            self._enqueue(MutationType.UPDATE_FOLDER, folder)
            self._projection.on_folder_change(folder, ChangeType.UPDATE)
        self._notify_subscribers()
        self.events.publish("folder.updated", {"id": folder_id, "name": updated.name})
        return updated

    @_mutation_api(default=False)
    def delete_folder(self, folder_id: str) -> bool:
        """Delete a folder; its notes and child folders move to the root."""
        folder = self._folders.get(folder_id)
        if folder is None:
            raise NotFoundError("Folder", folder_id)

        for note in self.get_notes_in_folder(folder_id):
            detached = _replace(note, {"folder_id": None})
            detached.updated_at = now_ms()
            self._apply_note_update(detached)

        self._cascade_edges(folder_id)
        del self._folders[folder_id]

        for child in [f for f in self._folders.values() if f.parent_id == folder_id]:
            child.parent_id = None
            for target_id in [child.id] + self._descendant_folder_ids(child.id):
                moved = self._folders[target_id]
                moved.path = compute_folder_path(moved.name, moved.parent_id, self._folders)
                self._enqueue(MutationType.UPDATE_FOLDER, moved)
                self._projection.on_folder_change(moved, ChangeType.UPDATE)

        self._enqueue(MutationType.DELETE_FOLDER, folder_id)
        self._projection.on_folder_change(folder, ChangeType.DELETE)
        self._notify_subscribers()
        self.events.publish("folder.deleted", {"id": folder_id})
        return True

    # ══════════════════════════════════════════════════════════════════
    # Entities
    # ══════════════════════════════════════════════════════════════════

    @_mutation_api()
    def upsert_entity(self, payload: Mapping[str, Any]) -> Optional[SyncEntity]:
        name = _required_str(payload, "name")
        kind = _required_str(payload, "entity_kind")
        entity_id = payload.get("id") or generate_id()
        existing = self._entities.get(entity_id)
        frequency = payload.get("frequency", 1)
        if not isinstance(frequency, int) or frequency < 0:
            raise ValidationError("frequency", "must be a non-negative integer", frequency)

        entity = SyncEntity(
            id=entity_id,
            name=name,
            normalized_name=normalize_label(name),
            entity_kind=kind,
            entity_subtype=payload.get("entity_subtype"),
            group_id=payload.get("group_id") or "vault",
            scope_type=_enum(ScopeType, payload, "scope_type", ScopeType.VAULT),
            frequency=frequency,
            canonical_note_id=payload.get("canonical_note_id"),
            aliases=list(payload.get("aliases") or []),
            summary=payload.get("summary"),
            created_at=existing.created_at if existing else now_ms(),
            extraction_method=payload.get("extraction_method") or "manual",
            source=_enum(EntitySource, payload, "source", EntitySource.MANUAL),
            confidence=_unit_float(payload, "confidence", 1.0),
            blueprint_type_id=payload.get("blueprint_type_id"),
            blueprint_version_id=payload.get("blueprint_version_id"),
            blueprint_fields=payload.get("blueprint_fields"),
            provenance_data=_provenance(payload.get("provenance_data") or []),
            alternate_types=_alternates(payload.get("alternate_types") or []),
        )
        self._entities[entity.id] = entity
        self._enqueue(MutationType.UPSERT_ENTITY, entity)
        self._projection.on_entity_change(entity, ChangeType.UPDATE if existing else ChangeType.ADD)
        self._notify_subscribers()
        self.events.publish("entity.upserted", {"id": entity.id, "name": entity.name, "created": existing is None})
        return entity

    @_mutation_api(default=False)
    def delete_entity(self, entity_id: str) -> bool:
        entity = self._entities.get(entity_id)
        if entity is None:
            raise NotFoundError("Entity", entity_id)
        removed = self._cascade_edges(entity_id)
        del self._entities[entity_id]
        self._enqueue(MutationType.DELETE_ENTITY, entity_id)
        self._projection.on_entity_change(entity, ChangeType.DELETE)
        self._notify_subscribers()
        self.events.publish("entity.deleted", {"id": entity_id, "cascaded_edges": removed})
        return True

    # ══════════════════════════════════════════════════════════════════
    # Edges
    # ══════════════════════════════════════════════════════════════════

    def _require_endpoint(self, record_id: str) -> None:
        if record_id not in self._entities and record_id not in self._notes and record_id not in self._folders:
            raise NotFoundError("Node", record_id)

    @_mutation_api()
    def create_edge(self, payload: Mapping[str, Any]) -> Optional[SyncEdge]:
        source_id = _required_str(payload, "source_id")
        target_id = _required_str(payload, "target_id")
        edge_type = _required_str(payload, "edge_type")
        if source_id == target_id:
            raise ValidationError("target_id", "self-loops are not allowed", target_id)
        self._require_endpoint(source_id)
        self._require_endpoint(target_id)
        weight = payload.get("weight", 1.0)
        if not isinstance(weight, (int, float)) or not math.isfinite(weight) or weight < 0:
            raise ValidationError("weight", "must be a finite non-negative number", weight)

        now = now_ms()
        edge = SyncEdge(
            id=payload.get("id") or generate_id(),
            source_id=source_id,
            target_id=target_id,
            edge_type=edge_type,
            weight=float(weight),
            group_id=payload.get("group_id") or "vault",
            scope_type=_enum(ScopeType, payload, "scope_type", ScopeType.VAULT),
            created_at=now,
            valid_at=payload.get("valid_at") or now,
            invalid_at=payload.get("invalid_at"),
            confidence=_unit_float(payload, "confidence", 1.0),
            fact=payload.get("fact"),
            episode_ids=list(payload.get("episode_ids") or []),
            note_ids=list(payload.get("note_ids") or []),
            bidirectional=bool(payload.get("bidirectional", True)),
            temporal_confidence=_optional_unit_float(payload, "temporal_confidence"),
            causal_strength=_optional_unit_float(payload, "causal_strength"),
        )
        self._edges[edge.id] = edge
        self._enqueue(MutationType.CREATE_EDGE, edge)
        self._projection.on_edge_change(edge, ChangeType.ADD)
        self._notify_subscribers()
        self.events.publish("edge.created", {"id": edge.id, "source": source_id, "target": target_id})
        return edge

    @_mutation_api(default=False)
    def delete_edge(self, edge_id: str) -> bool:
        edge = self._edges.get(edge_id)
        if edge is None:
            raise NotFoundError("Edge", edge_id)
        self._remove_edge(edge)
        self._notify_subscribers()
        return True

    def _remove_edge(self, edge: SyncEdge) -> None:
        del self._edges[edge.id]
        self._enqueue(MutationType.DELETE_EDGE, edge.id)
        self._projection.on_edge_change(edge, ChangeType.DELETE)
        self.events.publish("edge.deleted", {"id": edge.id})

    def _cascade_edges(self, record_id: str) -> int:
        """Delete every edge touching ``record_id``. Returns how many."""
        doomed = self.get_edges_for(record_id)
        for edge in doomed:
            self._remove_edge(edge)
        return len(doomed)

    # ══════════════════════════════════════════════════════════════════
    # Persistence
    # ══════════════════════════════════════════════════════════════════

    async def _execute_batch(self, mutations: List[Mutation]) -> None:
        started = time.perf_counter()
        for mutation in mutations:
            await self._persisters[mutation.type](mutation.payload)
        elapsed_ms = (time.perf_counter() - started) * 1000
        self._metrics.record_flush(elapsed_ms)
        self._last_sync_at = now_ms()
        logger.debug(f"[SyncEngine] Persisted {len(mutations)} mutations in {elapsed_ms:.1f}ms")
        self.events.publish("sync.flushed", {"count": len(mutations), "elapsed_ms": elapsed_ms})

    async def _rollback_mutations(self, mutations: List[Mutation], exc: BaseException) -> None:
        self._metrics.failed_mutations += len(mutations)
        dropped = self._write_buffer.discard_pending()
        for mutation in dropped:
            mutation.status = MutationStatus.FAILED
        logger.warning(
            f"[SyncEngine] Batch of {len(mutations)} mutations failed ({exc}); "
            f"dropping {len(dropped)} queued mutations and resyncing from store"
        )
        try:
            await self._hydrate()
        except HydrationError as hydrate_exc:
            logger.error(f"[SyncEngine] Resync after failed flush did not complete: {hydrate_exc}")
            self.events.publish("sync.resync_failed", {"error": str(hydrate_exc)})
            return
        # Writes made while the resync awaited the store targeted caches it replaced
        late = self._write_buffer.discard_pending()
        for mutation in late:
            mutation.status = MutationStatus.FAILED
        if late:
            logger.warning(f"[SyncEngine] Dropping {len(late)} mutations issued during resync")
            dropped.extend(late)
        self._notify_subscribers()
        self.events.publish("sync.rollback", {
            "failed": len(mutations),
            "dropped": len(dropped),
            "mutation_ids": [m.id for m in mutations],
        })

    def _on_projection_recomputed(self, projection: GraphProjection) -> None:
        self.events.publish("projection.recomputed", projection.stats())

    def _counts(self) -> Dict[str, int]:
        return {
            "notes": len(self._notes),
            "folders": len(self._folders),
            "entities": len(self._entities),
            "edges": len(self._edges),
        }


def _replace(record, patch: Mapping[str, Any]):
    updated = copy.copy(record)
    for key, value in patch.items():
        setattr(updated, key, copy.deepcopy(value))
    return updated
