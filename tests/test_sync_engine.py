"""
Tests for SyncEngine
====================
Hydration, the synchronous write path, batching into the store, cascades,
input validation and full-resync rollback.
"""

import asyncio
import json

import pytest

from notegraph.core.exceptions import HydrationError, SyncNotReadyError
from notegraph.core.sync_engine import SyncEngine
from notegraph.core.types import EntitySource, NodeType, ScopeType

from tests.conftest import make_edge, make_entity, make_note
from tests.mocks import FlakyGraphStore


@pytest.fixture
def make_engine(fast_config):
    async def factory(store=None):
        engine = SyncEngine(store if store is not None else FlakyGraphStore(), fast_config)
        await engine.initialize()
        return engine
    return factory


def _doc(*paragraphs: str) -> str:
    return json.dumps({
        "type": "doc",
        "content": [
            {"type": "paragraph", "content": [{"type": "text", "text": p}]} for p in paragraphs
        ],
    })


# =============================================================================
# Lifecycle
# =============================================================================

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_hydrates_caches_and_projection(self, make_engine):
        store = FlakyGraphStore(
            notes=[make_note("n1", "Winterfell")],
            entities=[make_entity("e1", "Ned"), make_entity("e2", "Robb")],
            edges=[make_edge("x", "e1", "e2")],
        )
        engine = await make_engine(store)

        assert engine.is_ready
        assert engine.get_note("n1").title == "Winterfell"
        assert len(engine.get_entities()) == 2
        assert engine.projection_store.get_degree("e1") == 1
        assert engine.get_state().is_hydrated is True

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, make_engine):
        engine = await make_engine()
        hydrated = []
        engine.events.subscribe("sync.hydrated", hydrated.append)
        await engine.initialize()
        assert hydrated == []

    @pytest.mark.asyncio
    async def test_hydration_failure_raises(self, fast_config):
        store = FlakyGraphStore()
        store.fail_fetches = 1
        engine = SyncEngine(store, fast_config)

        with pytest.raises(HydrationError):
            await engine.initialize()
        assert engine.is_ready is False

    def test_mutation_before_initialize_raises(self, fast_config):
        engine = SyncEngine(FlakyGraphStore(), fast_config)
        with pytest.raises(SyncNotReadyError):
            engine.create_note({"title": "too early"})

    @pytest.mark.asyncio
    async def test_close_flushes_pending_writes(self, make_engine):
        engine = await make_engine()
        note = engine.create_note({"title": "Draft"})
        await engine.close()
        assert note.id in engine.store.notes


# =============================================================================
# Write path
# =============================================================================

class TestReadYourWrites:

    @pytest.mark.asyncio
    async def test_create_is_visible_before_flush(self, make_engine):
        engine = await make_engine()
        note = engine.create_note({"title": "The Wall"})

        assert engine.get_note(note.id).title == "The Wall"
        assert engine.projection_store.get_node(note.id).node_type is NodeType.NOTE
        assert note.id not in engine.store.notes
        assert engine.has_pending_writes()

        await engine.flush_now()
        assert note.id in engine.store.notes
        assert engine.has_pending_writes() is False

    @pytest.mark.asyncio
    async def test_burst_is_persisted_in_one_flush(self, make_engine):
        engine = await make_engine()
        for i in range(3):
            engine.create_note({"title": f"note {i}"})

        await asyncio.sleep(0.08)

        metrics = engine.get_metrics()
        assert metrics.flush_count == 1
        assert metrics.total_mutations == 3
        assert engine.store.write_count == 3

    @pytest.mark.asyncio
    async def test_store_sees_mutations_in_order(self, make_engine):
        engine = await make_engine()
        note = engine.create_note({"title": "Ephemeral"})
        engine.update_note(note.id, {"title": "Still ephemeral"})
        engine.delete_note(note.id)
        await engine.flush_now()

        assert engine.store.calls == [
            ("upsert_note", note.id),
            ("upsert_note", note.id),
            ("delete_note", note.id),
        ]
        assert note.id not in engine.store.notes

    @pytest.mark.asyncio
    async def test_queued_payload_is_a_snapshot(self, make_engine):
        engine = await make_engine()
        note = engine.create_note({"title": "Original"})
        note.title = "mutated by caller"
        await engine.flush_now()
        assert engine.store.notes[note.id].title == "Original"


class TestNotes:

    @pytest.mark.asyncio
    async def test_content_text_is_extracted(self, make_engine):
        engine = await make_engine()
        note = engine.create_note({"title": "Oath", "content": _doc("Night gathers", "and now my watch begins")})
        assert note.content_text == "Night gathers and now my watch begins"

        updated = engine.update_note(note.id, {"content": _doc("It shall not end")})
        assert updated.content_text == "It shall not end"
        assert updated.updated_at >= note.updated_at

    @pytest.mark.asyncio
    async def test_default_content_is_empty_document(self, make_engine):
        engine = await make_engine()
        note = engine.create_note({"title": "Blank"})
        assert json.loads(note.content)["type"] == "doc"
        assert note.content_text == ""

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, make_engine):
        engine = await make_engine()
        note = engine.create_note({"title": "Oath"})
        assert engine.update_note(note.id, {"created_at": 0}) is None
        assert engine.get_note(note.id).created_at == note.created_at

    @pytest.mark.asyncio
    async def test_invalid_payloads_are_noops(self, make_engine):
        engine = await make_engine()

        assert engine.create_note({}) is None
        assert engine.create_note({"title": "   "}) is None
        assert engine.create_note({"title": "Lost", "folder_id": "nope"}) is None
        assert engine.update_note("nope", {"title": "x"}) is None
        assert engine.delete_note("nope") is False
        assert engine.get_notes() == []
        assert engine.get_metrics().total_mutations == 0

    @pytest.mark.asyncio
    async def test_delete_cascades_edges(self, make_engine):
        engine = await make_engine()
        note = engine.create_note({"title": "Battle of the Bastards"})
        entity = engine.upsert_entity({"name": "Jon Snow", "entity_kind": "CHARACTER"})
        edge = engine.create_edge({"source_id": note.id, "target_id": entity.id, "edge_type": "MENTIONS"})

        assert engine.delete_note(note.id) is True
        assert engine.get_edge(edge.id) is None
        assert engine.projection_store.get_degree(entity.id) == 0

        await engine.flush_now()
        assert edge.id not in engine.store.edges


class TestFolders:

    @pytest.mark.asyncio
    async def test_paths_follow_the_parent_chain(self, make_engine):
        engine = await make_engine()
        root = engine.create_folder({"name": "Westeros"})
        child = engine.create_folder({"name": "North", "parent_id": root.id})
        assert child.path == "/Westeros/North"

        engine.update_folder(root.id, {"name": "Known World"})
        assert engine.get_folder(child.id).path == "/Known World/North"

    @pytest.mark.asyncio
    async def test_cycles_are_rejected(self, make_engine):
        engine = await make_engine()
        root = engine.create_folder({"name": "A"})
        child = engine.create_folder({"name": "B", "parent_id": root.id})

        assert engine.update_folder(root.id, {"parent_id": child.id}) is None
        assert engine.update_folder(root.id, {"parent_id": root.id}) is None
        assert engine.get_folder(root.id).parent_id is None

    @pytest.mark.asyncio
    async def test_delete_detaches_notes_and_children(self, make_engine):
        engine = await make_engine()
        root = engine.create_folder({"name": "Houses"})
        child = engine.create_folder({"name": "Stark", "parent_id": root.id})
        note = engine.create_note({"title": "Sigils", "folder_id": root.id})

        assert engine.delete_folder(root.id) is True

        assert engine.get_folder(root.id) is None
        assert engine.get_note(note.id).folder_id is None
        moved = engine.get_folder(child.id)
        assert moved.parent_id is None
        assert moved.path == "/Stark"
        assert engine.projection_store.get_nodes_in_folder(root.id) == []

        await engine.flush_now()
        assert root.id not in engine.store.folders
        assert engine.store.notes[note.id].folder_id is None
        assert engine.store.folders[child.id].path == "/Stark"


class TestEntities:

    @pytest.mark.asyncio
    async def test_upsert_normalizes_and_preserves_created_at(self, make_engine):
        engine = await make_engine()
        first = engine.upsert_entity({"id": "e1", "name": "  Jon   Snow", "entity_kind": "CHARACTER"})
        second = engine.upsert_entity({
            "id": "e1", "name": "Jon Snow", "entity_kind": "CHARACTER", "summary": "Lord Commander",
        })

        assert first.normalized_name == "jon snow"
        assert second.created_at == first.created_at
        assert engine.get_entity("e1").summary == "Lord Commander"
        assert engine.find_entity_by_normalized_name("JON SNOW").id == "e1"
        assert engine.find_entity_by_normalized_name("jon snow", kind="LOCATION") is None

    @pytest.mark.asyncio
    async def test_coerces_nested_records(self, make_engine):
        engine = await make_engine()
        entity = engine.upsert_entity({
            "name": "Ghost",
            "entity_kind": "CHARACTER",
            "source": "extracted",
            "scope_type": "note",
            "provenance_data": [{"source": "ner", "confidence": 0.7, "note_id": "n1"}],
            "alternate_types": [{"entity_kind": "ITEM", "source": "llm", "confidence": 0.2}],
        })
        assert entity.source is EntitySource.EXTRACTED
        assert entity.scope_type is ScopeType.NOTE
        assert entity.provenance_data[0].note_id == "n1"
        assert entity.alternate_types[0].entity_kind == "ITEM"
        assert engine.get_entities_by_source("extracted") == [entity]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [
        {"entity_kind": "CHARACTER"},
        {"name": "Ghost"},
        {"name": "Ghost", "entity_kind": "CHARACTER", "confidence": 1.5},
        {"name": "Ghost", "entity_kind": "CHARACTER", "frequency": -1},
        {"name": "Ghost", "entity_kind": "CHARACTER", "source": "rumor"},
    ])
    async def test_invalid_entities_are_rejected(self, make_engine, payload):
        engine = await make_engine()
        assert engine.upsert_entity(payload) is None
        assert engine.get_entities() == []

    @pytest.mark.asyncio
    async def test_duplicates_merge_in_projection(self, make_engine):
        engine = await make_engine()
        a = engine.upsert_entity({"name": "Ned", "entity_kind": "CHARACTER", "source": "extracted"})
        b = engine.upsert_entity({"name": "ned", "entity_kind": "CHARACTER", "source": "manual"})

        projection = engine.projection_store
        assert projection.resolve_id(a.id) == b.id
        assert projection.get_node(b.id).frequency == 2
        assert len(projection.get_nodes_by_kind("CHARACTER")) == 1

    @pytest.mark.asyncio
    async def test_delete_cascades_edges(self, make_engine):
        engine = await make_engine()
        a = engine.upsert_entity({"name": "Ned", "entity_kind": "CHARACTER"})
        b = engine.upsert_entity({"name": "Catelyn", "entity_kind": "CHARACTER"})
        engine.create_edge({"source_id": a.id, "target_id": b.id, "edge_type": "MARRIED_TO"})

        deleted = []
        engine.events.subscribe("entity.deleted", deleted.append)
        assert engine.delete_entity(a.id) is True
        assert engine.get_edges() == []
        assert deleted[0].data["cascaded_edges"] == 1


class TestEdges:

    @pytest.mark.asyncio
    async def test_create_edge_updates_projection(self, make_engine):
        engine = await make_engine()
        a = engine.upsert_entity({"name": "Ned", "entity_kind": "CHARACTER"})
        b = engine.upsert_entity({"name": "Winterfell", "entity_kind": "LOCATION"})
        edge = engine.create_edge({
            "source_id": a.id, "target_id": b.id, "edge_type": "located_in",
            "weight": 0.8, "confidence": 0.9,
        })

        graph_edge = engine.get_graph_projection().edge_by_id[edge.id]
        assert graph_edge.confidence == pytest.approx(0.9 * 0.5)
        assert engine.get_edges_for(a.id) == [edge]

    @pytest.mark.asyncio
    async def test_invalid_edges_are_rejected(self, make_engine):
        engine = await make_engine()
        a = engine.upsert_entity({"name": "Ned", "entity_kind": "CHARACTER"})
        b = engine.upsert_entity({"name": "Robb", "entity_kind": "CHARACTER"})

        assert engine.create_edge({"source_id": a.id, "target_id": a.id, "edge_type": "X"}) is None
        assert engine.create_edge({"source_id": a.id, "target_id": "ghost", "edge_type": "X"}) is None
        assert engine.create_edge({"source_id": a.id, "target_id": b.id}) is None
        assert engine.create_edge({"source_id": a.id, "target_id": b.id, "edge_type": "X", "weight": -1}) is None
        assert engine.create_edge({
            "source_id": a.id, "target_id": b.id, "edge_type": "X", "weight": float("nan"),
        }) is None
        assert engine.create_edge({
            "source_id": a.id, "target_id": b.id, "edge_type": "X", "weight": float("inf"),
        }) is None
        assert engine.get_edges_for(a.id) == []
        assert engine.create_edge({
            "source_id": a.id, "target_id": b.id, "edge_type": "X", "confidence": 2,
        }) is None
        assert engine.delete_edge("nope") is False
        assert engine.get_edges() == []


# =============================================================================
# Notifications
# =============================================================================

class TestNotifications:

    @pytest.mark.asyncio
    async def test_subscribers_receive_state(self, make_engine):
        engine = await make_engine()
        states = []
        unsubscribe = engine.subscribe(states.append)

        note = engine.create_note({"title": "Raven"})
        assert [n.id for n in states[-1].notes] == [note.id]
        assert note.id in states[-1].graph_projection.node_by_id

        unsubscribe()
        engine.create_note({"title": "Another raven"})
        assert len(states) == 1

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_block_writes(self, make_engine):
        engine = await make_engine()
        received = []

        def broken(_state):
            raise RuntimeError("listener broke")

        engine.subscribe(broken)
        engine.subscribe(received.append)
        assert engine.create_note({"title": "Raven"}) is not None
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_events_are_published(self, make_engine):
        engine = await make_engine()
        seen = []
        engine.events.subscribe("*", lambda e: seen.append(e.type))

        note = engine.create_note({"title": "Raven"})
        engine.update_note(note.id, {"is_pinned": True})
        engine.delete_note(note.id)
        await engine.flush_now()

        assert seen[:3] == ["note.created", "note.updated", "note.deleted"]
        assert "sync.flushed" in seen

    @pytest.mark.asyncio
    async def test_cache_metrics(self, make_engine):
        engine = await make_engine()
        note = engine.create_note({"title": "Raven"})
        engine.get_note(note.id)
        engine.get_note("missing")
        metrics = engine.get_metrics()
        assert metrics.cache_hits == 1
        assert metrics.cache_misses == 1
        assert metrics.hit_rate == pytest.approx(0.5)


# =============================================================================
# Failure handling
# =============================================================================

class TestRollback:

    @pytest.mark.asyncio
    async def test_failed_flush_resyncs_from_store(self, make_engine):
        store = FlakyGraphStore(notes=[make_note("kept", "Persisted")])
        engine = await make_engine(store)
        rollbacks = []
        engine.events.subscribe("sync.rollback", rollbacks.append)
        states = []
        engine.subscribe(states.append)

        store.fail_writes = 1
        first = engine.create_note({"title": "Lost 1"})
        second = engine.create_note({"title": "Lost 2"})
        await engine.flush_now()

        metrics = engine.get_metrics()
        assert metrics.failed_mutations == 2
        assert engine.get_note(first.id) is None
        assert engine.get_note(second.id) is None
        assert engine.get_note("kept").title == "Persisted"
        assert engine.projection_store.get_node(first.id) is None
        assert rollbacks[0].data["failed"] == 2
        assert [n.id for n in states[-1].notes] == ["kept"]

    @pytest.mark.asyncio
    async def test_engine_keeps_working_after_rollback(self, make_engine):
        store = FlakyGraphStore()
        engine = await make_engine(store)
        store.fail_writes = 1
        engine.create_note({"title": "Lost"})
        await engine.flush_now()

        note = engine.create_note({"title": "Saved"})
        await engine.flush_now()
        assert note.id in store.notes
        assert engine.get_metrics().failed_mutations == 1

    @pytest.mark.asyncio
    async def test_write_during_resync_is_dropped_everywhere(self, make_engine):
        store = FlakyGraphStore(notes=[make_note("kept", "Persisted")])
        engine = await make_engine(store)
        rollbacks = []
        engine.events.subscribe("sync.rollback", rollbacks.append)
        late = []

        def write_once():
            if not late:
                late.append(engine.create_note({"title": "Written during resync"}))

        store.on_fetch = write_once
        store.fail_writes = 1
        engine.create_note({"title": "Lost"})
        await engine.flush_now()
        store.on_fetch = None
        await engine.flush_now()

        written = late[0]
        assert written is not None
        assert engine.get_note(written.id) is None
        assert written.id not in store.notes
        assert [n.id for n in engine.get_notes()] == ["kept"]
        assert rollbacks[0].data["dropped"] == 1
        assert not engine.has_pending_writes()

    @pytest.mark.asyncio
    async def test_failed_resync_is_reported_not_raised(self, make_engine):
        store = FlakyGraphStore()
        engine = await make_engine(store)
        failures = []
        engine.events.subscribe("sync.resync_failed", failures.append)

        store.fail_writes = 1
        store.fail_fetches = 1
        engine.create_note({"title": "Lost"})
        await engine.flush_now()

        assert len(failures) == 1
        assert engine.is_ready
