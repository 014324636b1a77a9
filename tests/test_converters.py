"""
Tests for record converters and text helpers.
"""

import json

import pytest

from notegraph.core.converters import (
    compute_folder_path,
    edge_to_row,
    entity_to_row,
    extract_plain_text,
    normalize_label,
    parse_edge_row,
    parse_entity_row,
    parse_note_row,
)
from notegraph.core.types import EntitySource, ProvenanceRecord, ScopeType, SyncFolder

from tests.conftest import make_edge, make_entity


class TestNormalizeLabel:

    @pytest.mark.parametrize("raw,expected", [
        ("  Jon  SNOW ", "jon snow"),
        ("Winterfell", "winterfell"),
        ("Straße", "strasse"),
        ("", ""),
        (None, ""),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_label(raw) == expected


class TestExtractPlainText:

    def test_flattens_rich_text(self):
        doc = {
            "type": "doc",
            "content": [
                {"type": "paragraph", "content": [
                    {"type": "text", "text": "Winter"},
                    {"type": "text", "text": "is coming"},
                ]},
                {"type": "paragraph"},
                {"type": "heading", "content": [{"type": "text", "text": "Stark"}]},
            ],
        }
        assert extract_plain_text(json.dumps(doc)) == "Winter is coming Stark"

    def test_plain_text_is_returned_as_is(self):
        assert extract_plain_text("just words") == "just words"
        assert extract_plain_text("42") == "42"

    def test_empty(self):
        assert extract_plain_text("") == ""
        assert extract_plain_text(json.dumps({"type": "doc"})) == ""


class TestComputeFolderPath:

    def test_root_folder(self):
        assert compute_folder_path("North", None, {}) == "/North"

    def test_nested_folder(self):
        folders = {
            "f1": SyncFolder(id="f1", name="Westeros"),
            "f2": SyncFolder(id="f2", name="North", parent_id="f1"),
        }
        assert compute_folder_path("Winterfell", "f2", folders) == "/Westeros/North/Winterfell"

    def test_missing_parent_stops_the_walk(self):
        folders = {"f2": SyncFolder(id="f2", name="North", parent_id="gone")}
        assert compute_folder_path("Winterfell", "f2", folders) == "/North/Winterfell"

    def test_cycle_terminates(self):
        folders = {
            "a": SyncFolder(id="a", name="A", parent_id="b"),
            "b": SyncFolder(id="b", name="B", parent_id="a"),
        }
        assert compute_folder_path("C", "a", folders) == "/B/A/C"


class TestRowConversion:

    def test_entity_row_encodes_json_columns(self):
        entity = make_entity(
            "e1", "Arya", aliases=["No One"],
            provenance_data=[ProvenanceRecord(source="llm", confidence=0.8)],
        )
        row = entity_to_row(entity)
        assert json.loads(row[10]) == ["No One"]
        assert json.loads(row[18])[0]["source"] == "llm"
        assert parse_entity_row(row) == entity

    def test_entity_row_defaults(self):
        row = ("e1", "Arya", None, "CHARACTER", None, None, "galaxy", None, None, None,
               "not json", None, None, "mystery", None, None, None, None, None, None)
        entity = parse_entity_row(row)
        assert entity.normalized_name == "arya"
        assert entity.scope_type is ScopeType.VAULT
        assert entity.source is EntitySource.EXTRACTED
        assert entity.aliases == []
        assert entity.frequency == 1
        assert entity.confidence == 1.0

    def test_edge_row(self):
        edge = make_edge("x", "a", "b", weight=0.4, bidirectional=False, causal_strength=0.3)
        row = edge_to_row(edge)
        assert row[14] == 0
        assert parse_edge_row(row) == edge

    def test_edge_valid_at_falls_back_to_created_at(self):
        row = ("x", "a", "b", None, None, None, None, 50, None, None, None,
               None, None, None, None, None, None)
        edge = parse_edge_row(row)
        assert edge.edge_type == "RELATED_TO"
        assert edge.valid_at == 50
        assert edge.bidirectional is True
        assert edge.temporal_confidence is None

    def test_note_row_tolerates_structured_content(self):
        row = ("n1", None, {"type": "doc"}, None, "", None, None, None, None, None, 0, 1, 0, '["a"]')
        note = parse_note_row(row)
        assert note.title == ""
        assert json.loads(note.content) == {"type": "doc"}
        assert note.folder_id is None
        assert note.is_pinned is True
        assert note.tags == ["a"]
