"""
Persistent Graph Stores
=======================
The sync engine talks to persistence only through the GraphStore interface:

- bulk fetches used at hydration time (complete snapshots)
- per-record upserts/deletes issued from the flush executor; every upsert is
  idempotent on the primary key
- fetch_records(), used by search to hydrate result content

Deletes never cascade inside a store; the sync engine issues the dependent
deletes itself.

Two implementations ship:
    InMemoryGraphStore  - dict backed, for tests and ephemeral sessions
    SQLiteGraphStore    - stdlib sqlite3, run off the event loop
"""

import copy
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Sequence

from loguru import logger

from notegraph.core._utils import run_in_thread
from notegraph.core.converters import (
    EDGE_COLUMNS,
    ENTITY_COLUMNS,
    FOLDER_COLUMNS,
    NOTE_COLUMNS,
    edge_to_row,
    entity_to_row,
    folder_to_row,
    note_to_row,
    parse_edge_row,
    parse_entity_row,
    parse_folder_row,
    parse_note_row,
)
from notegraph.core.exceptions import PersistenceError
from notegraph.core.types import SyncEdge, SyncEntity, SyncFolder, SyncNote


class GraphStore(ABC):
    """Persistent graph store contract."""

    # --- hydration ---------------------------------------------------------

    @abstractmethod
    async def fetch_notes(self) -> List[SyncNote]: ...

    @abstractmethod
    async def fetch_folders(self) -> List[SyncFolder]: ...

    @abstractmethod
    async def fetch_entities(self) -> List[SyncEntity]: ...

    @abstractmethod
    async def fetch_edges(self) -> List[SyncEdge]: ...

    # --- per-mutation writes -----------------------------------------------

    @abstractmethod
    async def upsert_note(self, note: SyncNote) -> None: ...

    @abstractmethod
    async def delete_note(self, note_id: str) -> None: ...

    @abstractmethod
    async def upsert_folder(self, folder: SyncFolder) -> None: ...

    @abstractmethod
    async def delete_folder(self, folder_id: str) -> None: ...

    @abstractmethod
    async def upsert_entity(self, entity: SyncEntity) -> None: ...

    @abstractmethod
    async def delete_entity(self, entity_id: str) -> None: ...

    @abstractmethod
    async def upsert_edge(self, edge: SyncEdge) -> None: ...

    @abstractmethod
    async def delete_edge(self, edge_id: str) -> None: ...

    # --- search hydration ----------------------------------------------------

    @abstractmethod
    async def fetch_records(self, ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """Display records ({id, title, content, kind}) for notes/entities."""

    async def close(self) -> None:
        return None


def _note_record(note: SyncNote) -> Dict[str, Any]:
    return {
        "id": note.id,
        "title": note.title,
        "content": note.content_text,
        "kind": "note",
        "folder_id": note.folder_id,
        "tags": list(note.tags),
    }


def _entity_record(entity: SyncEntity) -> Dict[str, Any]:
    return {
        "id": entity.id,
        "title": entity.name,
        "content": entity.summary or "",
        "kind": entity.entity_kind,
        "aliases": list(entity.aliases),
    }


# ═══════════════════════════════════════════════════════════════════════
# In-memory
# ═══════════════════════════════════════════════════════════════════════

class InMemoryGraphStore(GraphStore):
    """
    Dict-backed store. Records are deep-copied on the way in and out so the
    caller's caches and the "persisted" state never alias.
    """

    def __init__(
        self,
        notes: Iterable[SyncNote] = (),
        folders: Iterable[SyncFolder] = (),
        entities: Iterable[SyncEntity] = (),
        edges: Iterable[SyncEdge] = (),
    ):
        self.notes: Dict[str, SyncNote] = {n.id: copy.deepcopy(n) for n in notes}
        self.folders: Dict[str, SyncFolder] = {f.id: copy.deepcopy(f) for f in folders}
        self.entities: Dict[str, SyncEntity] = {e.id: copy.deepcopy(e) for e in entities}
        self.edges: Dict[str, SyncEdge] = {e.id: copy.deepcopy(e) for e in edges}
        self.write_count = 0

    async def fetch_notes(self) -> List[SyncNote]:
        return [copy.deepcopy(n) for n in self.notes.values()]

    async def fetch_folders(self) -> List[SyncFolder]:
        return [copy.deepcopy(f) for f in self.folders.values()]

    async def fetch_entities(self) -> List[SyncEntity]:
        return [copy.deepcopy(e) for e in self.entities.values()]

    async def fetch_edges(self) -> List[SyncEdge]:
        return [copy.deepcopy(e) for e in self.edges.values()]

    async def upsert_note(self, note: SyncNote) -> None:
        self.write_count += 1
        self.notes[note.id] = copy.deepcopy(note)

    async def delete_note(self, note_id: str) -> None:
        self.write_count += 1
        self.notes.pop(note_id, None)

    async def upsert_folder(self, folder: SyncFolder) -> None:
        self.write_count += 1
        self.folders[folder.id] = copy.deepcopy(folder)

    async def delete_folder(self, folder_id: str) -> None:
        self.write_count += 1
        self.folders.pop(folder_id, None)

    async def upsert_entity(self, entity: SyncEntity) -> None:
        self.write_count += 1
        self.entities[entity.id] = copy.deepcopy(entity)

    async def delete_entity(self, entity_id: str) -> None:
        self.write_count += 1
        self.entities.pop(entity_id, None)

    async def upsert_edge(self, edge: SyncEdge) -> None:
        self.write_count += 1
        self.edges[edge.id] = copy.deepcopy(edge)

    async def delete_edge(self, edge_id: str) -> None:
        self.write_count += 1
        self.edges.pop(edge_id, None)

    async def fetch_records(self, ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        records = {}
        for record_id in ids:
            if record_id in self.notes:
                records[record_id] = _note_record(self.notes[record_id])
            elif record_id in self.entities:
                records[record_id] = _entity_record(self.entities[record_id])
        return records


# ═══════════════════════════════════════════════════════════════════════
# SQLite
# ═══════════════════════════════════════════════════════════════════════

_TABLES = {
    "notes": NOTE_COLUMNS,
    "folders": FOLDER_COLUMNS,
    "entities": ENTITY_COLUMNS,
    "edges": EDGE_COLUMNS,
}

_SCHEMA = """
CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    content TEXT,
    content_text TEXT,
    folder_id TEXT,
    created_at INTEGER,
    updated_at INTEGER,
    entity_kind TEXT,
    entity_subtype TEXT,
    entity_label TEXT,
    is_canonical_entity INTEGER DEFAULT 0,
    is_pinned INTEGER DEFAULT 0,
    is_favorite INTEGER DEFAULT 0,
    tags TEXT
);
CREATE TABLE IF NOT EXISTS folders (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    path TEXT,
    parent_id TEXT,
    created_at INTEGER,
    color TEXT,
    entity_kind TEXT,
    entity_subtype TEXT,
    entity_label TEXT,
    is_typed_root INTEGER DEFAULT 0,
    is_subtype_root INTEGER DEFAULT 0,
    inherited_kind TEXT,
    inherited_subtype TEXT
);
CREATE TABLE IF NOT EXISTS entities (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    normalized_name TEXT NOT NULL,
    entity_kind TEXT NOT NULL,
    entity_subtype TEXT,
    group_id TEXT,
    scope_type TEXT,
    created_at INTEGER,
    extraction_method TEXT,
    summary TEXT,
    aliases TEXT,
    canonical_note_id TEXT,
    frequency INTEGER DEFAULT 1,
    source TEXT,
    confidence REAL DEFAULT 1.0,
    blueprint_type_id TEXT,
    blueprint_version_id TEXT,
    blueprint_fields TEXT,
    provenance_data TEXT,
    alternate_types TEXT
);
CREATE TABLE IF NOT EXISTS edges (
    id TEXT PRIMARY KEY,
    source_id TEXT NOT NULL,
    target_id TEXT NOT NULL,
    edge_type TEXT NOT NULL,
    weight REAL DEFAULT 1.0,
    group_id TEXT,
    scope_type TEXT,
    created_at INTEGER,
    valid_at INTEGER,
    invalid_at INTEGER,
    confidence REAL DEFAULT 1.0,
    fact TEXT,
    episode_ids TEXT,
    note_ids TEXT,
    bidirectional INTEGER DEFAULT 1,
    temporal_confidence REAL,
    causal_strength REAL
);
CREATE INDEX IF NOT EXISTS idx_entities_normalized ON entities (normalized_name, entity_kind);
CREATE INDEX IF NOT EXISTS idx_edges_source ON edges (source_id);
CREATE INDEX IF NOT EXISTS idx_edges_target ON edges (target_id);
CREATE INDEX IF NOT EXISTS idx_notes_folder ON notes (folder_id);
"""


def _upsert_sql(table: str, columns: Sequence[str]) -> str:
    placeholders = ", ".join("?" for _ in columns)
    updates = ", ".join(f"{c} = excluded.{c}" for c in columns if c != "id")
    return (
        f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders}) "
        f"ON CONFLICT(id) DO UPDATE SET {updates}"
    )


class SQLiteGraphStore(GraphStore):
    """
    sqlite3-backed store.

    Each call opens a short-lived connection inside a worker thread, so the
    event loop never blocks on disk I/O. ``db_path`` must be a file path
    (connections are not shared, so ":memory:" would lose data). sqlite3
    errors surface as PersistenceError.
    """

    def __init__(self, db_path: str, timeout: float = 30.0):
        self.db_path = str(db_path)
        self.timeout = timeout
        self._init_db()

    def _init_db(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(_SCHEMA)
        logger.debug(f"SQLite graph store ready at {self.db_path}")

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _select_all(self, table: str) -> List[tuple]:
        columns = ", ".join(_TABLES[table])
        try:
            with self._connection() as conn:
                return conn.execute(f"SELECT {columns} FROM {table}").fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError(f"select:{table}", str(exc)) from exc

    def _write(self, operation: str, sql: str, params: tuple) -> None:
        try:
            with self._connection() as conn:
                conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise PersistenceError(operation, str(exc), {"id": params[0]}) from exc

    async def _upsert(self, table: str, row: tuple) -> None:
        await run_in_thread(self._write, f"upsert:{table}", _upsert_sql(table, _TABLES[table]), row)

    async def _delete(self, table: str, record_id: str) -> None:
        await run_in_thread(self._write, f"delete:{table}", f"DELETE FROM {table} WHERE id = ?", (record_id,))

    async def fetch_notes(self) -> List[SyncNote]:
        return [parse_note_row(r) for r in await run_in_thread(self._select_all, "notes")]

    async def fetch_folders(self) -> List[SyncFolder]:
        return [parse_folder_row(r) for r in await run_in_thread(self._select_all, "folders")]

    async def fetch_entities(self) -> List[SyncEntity]:
        return [parse_entity_row(r) for r in await run_in_thread(self._select_all, "entities")]

    async def fetch_edges(self) -> List[SyncEdge]:
        return [parse_edge_row(r) for r in await run_in_thread(self._select_all, "edges")]

    async def upsert_note(self, note: SyncNote) -> None:
        await self._upsert("notes", note_to_row(note))

    async def delete_note(self, note_id: str) -> None:
        await self._delete("notes", note_id)

    async def upsert_folder(self, folder: SyncFolder) -> None:
        await self._upsert("folders", folder_to_row(folder))

    async def delete_folder(self, folder_id: str) -> None:
        await self._delete("folders", folder_id)

    async def upsert_entity(self, entity: SyncEntity) -> None:
        await self._upsert("entities", entity_to_row(entity))

    async def delete_entity(self, entity_id: str) -> None:
        await self._delete("entities", entity_id)

    async def upsert_edge(self, edge: SyncEdge) -> None:
        await self._upsert("edges", edge_to_row(edge))

    async def delete_edge(self, edge_id: str) -> None:
        await self._delete("edges", edge_id)

    def _fetch_records_sync(self, ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        if not ids:
            return {}
        marks = ", ".join("?" for _ in ids)
        try:
            with self._connection() as conn:
                note_rows = conn.execute(
                    f"SELECT {', '.join(NOTE_COLUMNS)} FROM notes WHERE id IN ({marks})", tuple(ids)
                ).fetchall()
                entity_rows = conn.execute(
                    f"SELECT {', '.join(ENTITY_COLUMNS)} FROM entities WHERE id IN ({marks})", tuple(ids)
                ).fetchall()
        except sqlite3.Error as exc:
            raise PersistenceError("fetch_records", str(exc)) from exc
        records = {row[0]: _entity_record(parse_entity_row(row)) for row in entity_rows}
        records.update({row[0]: _note_record(parse_note_row(row)) for row in note_rows})
        return records

    async def fetch_records(self, ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        return await run_in_thread(self._fetch_records_sync, list(ids))
