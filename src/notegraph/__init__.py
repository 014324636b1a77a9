"""
NoteGraph - Knowledge Graph Sync and Hybrid Retrieval for Note Vaults
=====================================================================

Keeps notes, folders, entities and relationships in a local cache that
reads are served from, persists changes through a debounced write buffer,
and maintains an in-memory graph projection used for centrality analytics
and graph-aware search.

Key Features:
    - Optimistic local writes with batched, ordered persistence
    - Full resync from the store when a batch fails to persist
    - Entity merging by (normalized name, kind) with provenance tracking
    - Confidence-filtered subgraph with degree/betweenness/closeness
    - Hybrid search fusing BM25, vector similarity and graph signals

Main Packages:
    - core: sync engine, write buffer, stores, search, configuration
    - core.graph: node merging, edge weighting, centrality, projection
    - cli: Command-line interface

Quick Start:
    from notegraph.core import InMemoryGraphStore, SyncEngine

    engine = SyncEngine(InMemoryGraphStore())
    await engine.initialize()
    note = engine.create_note({"title": "Winterfell"})

Version: 0.3.0
"""

__version__ = "0.3.0"
