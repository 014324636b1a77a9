import sys
from pathlib import Path

import pytest


# Ensure local src/ package imports work without editable install.
ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from notegraph.core.config import (  # noqa: E402
    NoteGraphConfig,
    ProjectionConfig,
    SyncConfig,
    reset_config,
)
from notegraph.core.converters import normalize_label  # noqa: E402
from notegraph.core.types import EntitySource, SyncEdge, SyncEntity, SyncNote  # noqa: E402


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow-running (use pytest -m 'not slow' to skip)"
    )
    config.addinivalue_line(
        "markers",
        "integration: mark test as touching the on-disk SQLite store"
    )


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch):
    """Keep NOTEGRAPH_* environment and the config singleton out of tests."""
    import os
    for key in list(os.environ):
        if key.startswith("NOTEGRAPH_"):
            monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    reset_config()


# =============================================================================
# Record factories
# =============================================================================

def make_entity(entity_id: str, name: str = None, kind: str = "CHARACTER", **kwargs) -> SyncEntity:
    name = name or entity_id
    kwargs.setdefault("source", EntitySource.EXTRACTED)
    return SyncEntity(
        id=entity_id,
        name=name,
        normalized_name=normalize_label(name),
        entity_kind=kind,
        **kwargs,
    )


def make_edge(edge_id: str, source: str, target: str, weight: float = 1.0, **kwargs) -> SyncEdge:
    kwargs.setdefault("edge_type", "RELATED_TO")
    return SyncEdge(id=edge_id, source_id=source, target_id=target, weight=weight, **kwargs)


def make_note(note_id: str, title: str = None, **kwargs) -> SyncNote:
    return SyncNote(id=note_id, title=title or note_id, **kwargs)


@pytest.fixture
def fast_config() -> NoteGraphConfig:
    """Config with short timers so debounce behaviour is observable in tests."""
    return NoteGraphConfig(
        sync=SyncConfig(flush_delay_ms=10),
        projection=ProjectionConfig(confidence_threshold=0.0, rebuild_delay_ms=20),
    )
