"""
Test doubles for NoteGraph
==========================
In-memory stores and candidate sources with switchable failures.

Usage:
    from tests.mocks import FlakyGraphStore, StaticSource, FailingSource
"""

from .flaky_store import FlakyGraphStore
from .sources import FailingSource, StaticSource

__all__ = ["FlakyGraphStore", "StaticSource", "FailingSource"]
