"""
Tests for the persistent graph stores.

The same contract runs against InMemoryGraphStore and SQLiteGraphStore.
"""

import sqlite3

import pytest

from notegraph.core.exceptions import PersistenceError
from notegraph.core.store import InMemoryGraphStore, SQLiteGraphStore
from notegraph.core.sync_engine import SyncEngine
from notegraph.core.types import (
    AlternateType,
    EntitySource,
    ProvenanceRecord,
    ScopeType,
    SyncFolder,
)

from tests.conftest import make_edge, make_entity, make_note


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        return InMemoryGraphStore()
    return SQLiteGraphStore(tmp_path / "graph.db", timeout=5.0)


# =============================================================================
# Contract
# =============================================================================

class TestStoreContract:

    @pytest.mark.asyncio
    async def test_empty_store(self, store):
        assert await store.fetch_notes() == []
        assert await store.fetch_folders() == []
        assert await store.fetch_entities() == []
        assert await store.fetch_edges() == []

    @pytest.mark.asyncio
    async def test_note_round_trip(self, store):
        note = make_note(
            "n1", "Winterfell", content='{"type": "doc"}', content_text="cold",
            folder_id="f1", created_at=1, updated_at=2, tags=["north", "castle"], is_pinned=True,
        )
        await store.upsert_note(note)
        assert await store.fetch_notes() == [note]

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, store):
        await store.upsert_note(make_note("n1", "Draft"))
        await store.upsert_note(make_note("n1", "Final"))
        notes = await store.fetch_notes()
        assert [(n.id, n.title) for n in notes] == [("n1", "Final")]

    @pytest.mark.asyncio
    async def test_folder_round_trip(self, store):
        folder = SyncFolder(id="f1", name="North", path="/North", created_at=5, color="#fff", is_typed_root=True)
        await store.upsert_folder(folder)
        assert await store.fetch_folders() == [folder]
        await store.delete_folder("f1")
        assert await store.fetch_folders() == []

    @pytest.mark.asyncio
    async def test_entity_round_trip(self, store):
        entity = make_entity(
            "e1", "Jon Snow",
            entity_subtype="LORD",
            scope_type=ScopeType.FOLDER,
            source=EntitySource.BLUEPRINT,
            confidence=0.75,
            aliases=["Lord Snow"],
            blueprint_fields={"house": "Stark"},
            provenance_data=[ProvenanceRecord(source="ner", confidence=0.6, timestamp=3, note_id="n1")],
            alternate_types=[AlternateType(entity_kind="ITEM", source="llm", confidence=0.1)],
        )
        await store.upsert_entity(entity)
        assert await store.fetch_entities() == [entity]

    @pytest.mark.asyncio
    async def test_edge_round_trip(self, store):
        edge = make_edge(
            "x", "a", "b", weight=0.5, confidence=0.9, invalid_at=99, fact="sworn to",
            note_ids=["n1"], bidirectional=False, temporal_confidence=0.2,
        )
        await store.upsert_edge(edge)
        assert await store.fetch_edges() == [edge]
        await store.delete_edge("x")
        assert await store.fetch_edges() == []

    @pytest.mark.asyncio
    async def test_deletes_do_not_cascade(self, store):
        await store.upsert_entity(make_entity("a"))
        await store.upsert_edge(make_edge("x", "a", "b"))
        await store.delete_entity("a")
        assert [e.id for e in await store.fetch_edges()] == ["x"]

    @pytest.mark.asyncio
    async def test_delete_missing_is_a_noop(self, store):
        await store.delete_note("nope")
        assert await store.fetch_notes() == []

    @pytest.mark.asyncio
    async def test_fetch_records(self, store):
        await store.upsert_note(make_note("n1", "Winterfell", content_text="Seat of House Stark"))
        await store.upsert_entity(make_entity("e1", "Jon Snow", summary="Bastard of Winterfell"))

        records = await store.fetch_records(["n1", "e1", "missing"])

        assert set(records) == {"n1", "e1"}
        assert records["n1"]["title"] == "Winterfell"
        assert records["n1"]["content"] == "Seat of House Stark"
        assert records["n1"]["kind"] == "note"
        assert records["e1"]["kind"] == "CHARACTER"
        assert records["e1"]["content"] == "Bastard of Winterfell"
        assert await store.fetch_records([]) == {}


# =============================================================================
# Store specifics
# =============================================================================

class TestInMemoryGraphStore:

    @pytest.mark.asyncio
    async def test_records_are_copied(self):
        note = make_note("n1", "Original")
        store = InMemoryGraphStore(notes=[note])
        note.title = "changed"
        [fetched] = await store.fetch_notes()
        fetched.title = "also changed"
        assert store.notes["n1"].title == "Original"


@pytest.mark.integration
class TestSQLiteGraphStore:

    @pytest.mark.asyncio
    async def test_data_survives_reopen(self, tmp_path):
        path = tmp_path / "vault" / "graph.db"
        await SQLiteGraphStore(path).upsert_note(make_note("n1", "Persisted"))
        assert [n.title for n in await SQLiteGraphStore(path).fetch_notes()] == ["Persisted"]

    @pytest.mark.asyncio
    async def test_sqlite_errors_become_persistence_errors(self, tmp_path):
        store = SQLiteGraphStore(tmp_path / "graph.db")
        with sqlite3.connect(store.db_path) as conn:
            conn.execute("DROP TABLE notes")
        with pytest.raises(PersistenceError):
            await store.fetch_notes()

    @pytest.mark.asyncio
    async def test_engine_round_trip(self, tmp_path, fast_config):
        path = tmp_path / "graph.db"
        engine = SyncEngine(SQLiteGraphStore(path), fast_config)
        await engine.initialize()
        folder = engine.create_folder({"name": "North"})
        note = engine.create_note({"title": "Winterfell", "folder_id": folder.id})
        entity = engine.upsert_entity({"name": "Ned", "entity_kind": "CHARACTER"})
        engine.create_edge({"source_id": note.id, "target_id": entity.id, "edge_type": "MENTIONS"})
        await engine.close()

        reopened = SyncEngine(SQLiteGraphStore(path), fast_config)
        await reopened.initialize()
        assert reopened.get_note(note.id).folder_id == folder.id
        assert reopened.get_folder(folder.id).path == "/North"
        assert reopened.projection_store.get_degree(entity.id) == 1
