"""
NoteGraph Core Module
=====================

Sync:
    - SyncEngine: local caches, mutation API, hydration and resync
    - WriteBuffer: debounced, ordered batch persistence
    - GraphStore / InMemoryGraphStore / SQLiteGraphStore: persistence

Graph (see ``notegraph.core.graph``):
    - NodeMerger, EdgeWeighter, CentralityFilter: pure transforms
    - GraphProjectionStore: live projection with debounced analytics

Retrieval:
    - HybridSearchEngine: lexical + vector + graph fusion
    - BM25Index / VectorIndex: in-memory candidate sources
    - SearchService / SearchCache: cached, filtered search API

Configuration:
    Settings load from config.yaml (``notegraph:`` root key) with
    NOTEGRAPH_* environment overrides. See ``notegraph.core.config``.
"""

from .candidates import BM25Index, VectorIndex
from .config import NoteGraphConfig, get_config, load_config, reset_config
from .events import Event, SyncEvents
from .exceptions import (
    CandidateSourceError,
    ConfigurationError,
    HydrationError,
    NoteGraphError,
    NotFoundError,
    PersistenceError,
    SyncNotReadyError,
    ValidationError,
)
from .graph import GraphProjectionStore
from .hybrid_search import DEFAULT_FUSION_CONFIGS, FusionConfig, HybridSearchEngine, SearchResult
from .search_cache import SearchCache
from .search_service import SearchOptions, SearchService
from .store import GraphStore, InMemoryGraphStore, SQLiteGraphStore
from .sync_engine import SyncEngine
from .write_buffer import WriteBuffer

__all__ = [
    "BM25Index",
    "VectorIndex",
    "NoteGraphConfig",
    "get_config",
    "load_config",
    "reset_config",
    "Event",
    "SyncEvents",
    "CandidateSourceError",
    "ConfigurationError",
    "HydrationError",
    "NoteGraphError",
    "NotFoundError",
    "PersistenceError",
    "SyncNotReadyError",
    "ValidationError",
    "GraphProjectionStore",
    "DEFAULT_FUSION_CONFIGS",
    "FusionConfig",
    "HybridSearchEngine",
    "SearchResult",
    "SearchCache",
    "SearchOptions",
    "SearchService",
    "GraphStore",
    "InMemoryGraphStore",
    "SQLiteGraphStore",
    "SyncEngine",
    "WriteBuffer",
]
