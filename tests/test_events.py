"""
Tests for SyncEvents
====================
Pattern matching, filters, unsubscribe and handler error isolation.
"""

import pytest

from notegraph.core.events import Event, SyncEvents


@pytest.fixture
def events():
    return SyncEvents()


class TestSubscribe:

    def test_exact_and_wildcard_patterns(self, events):
        received = []
        events.subscribe("note.created", lambda e: received.append(("exact", e.type)))
        events.subscribe("note.*", lambda e: received.append(("notes", e.type)))
        events.subscribe("*", lambda e: received.append(("all", e.type)))

        events.publish("note.created", {"id": "n1"})
        events.publish("edge.deleted", {"id": "x"})

        assert received == [
            ("exact", "note.created"),
            ("notes", "note.created"),
            ("all", "note.created"),
            ("all", "edge.deleted"),
        ]

    def test_filter(self, events):
        received = []
        events.subscribe(
            "entity.*",
            lambda e: received.append(e.data["id"]),
            event_filter=lambda e: e.data.get("kind") == "CHARACTER",
        )
        events.publish("entity.upserted", {"id": "a", "kind": "CHARACTER"})
        events.publish("entity.upserted", {"id": "b", "kind": "LOCATION"})
        assert received == ["a"]

    def test_unsubscribe(self, events):
        received = []
        sub_id = events.subscribe("*", received.append)
        assert events.unsubscribe(sub_id) is True
        assert events.unsubscribe(sub_id) is False
        events.publish("note.created")
        assert received == []


class TestPublish:

    def test_publish_returns_event(self, events):
        event = events.publish("sync.flushed", {"count": 3})
        assert isinstance(event, Event)
        assert event.id.startswith("evt_")
        assert event.to_dict()["data"] == {"count": 3}
        assert events.publish("sync.flushed").data == {}

    def test_handler_errors_are_isolated(self, events):
        received = []

        def broken(event):
            raise RuntimeError("boom")

        events.subscribe("*", broken)
        events.subscribe("*", received.append)

        events.publish("note.created", {"id": "n1"})

        assert len(received) == 1
        metrics = events.get_metrics()
        assert metrics["events_published"] == 1
        assert metrics["events_delivered"] == 1
        assert metrics["delivery_errors"] == 1
        assert metrics["subscriptions"] == 2

    def test_handler_may_unsubscribe_during_publish(self, events):
        received = []
        sub_ids = {}

        def once(event):
            received.append(event.type)
            events.unsubscribe(sub_ids["once"])

        sub_ids["once"] = events.subscribe("*", once)
        events.publish("a")
        events.publish("b")
        assert received == ["a"]
