"""
Search Service
==============
Caller-facing search API over the HybridSearchEngine.

Adds on top of the engine:
    - modes: "lexical", "semantic" (vector only) and "hybrid"
    - post-filters on node type, kind and minimum score
    - a SearchCache keyed by the JSON of the request
    - attach(sync_engine): cache invalidation on every state change, and
      incremental BM25 maintenance from sync events when the lexical source
      is a BM25Index
"""

import hashlib
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

from notegraph.core.candidates import BM25Index
from notegraph.core.config import NoteGraphConfig, get_config
from notegraph.core.exceptions import ValidationError
from notegraph.core.hybrid_search import FusionConfig, HybridSearchEngine, SearchResult, resolve_fusion_config
from notegraph.core.search_cache import SearchCache

SEARCH_MODES = ("lexical", "semantic", "hybrid")


@dataclass
class SearchOptions:
    mode: str = "hybrid"
    k: int = 10
    profile: Optional[str] = None
    node_types: Tuple[str, ...] = ()
    kinds: Tuple[str, ...] = ()
    min_score: float = 0.0
    use_cache: bool = True

    def __post_init__(self):
        if self.mode not in SEARCH_MODES:
            raise ValidationError("mode", f"must be one of {SEARCH_MODES}", self.mode)
        if self.k < 0:
            raise ValidationError("k", "must be >= 0", self.k)
        self.node_types = tuple(self.node_types)
        self.kinds = tuple(self.kinds)

    @property
    def has_filters(self) -> bool:
        return bool(self.node_types or self.kinds or self.min_score > 0)


def _embedding_digest(embedding: Optional[Sequence[float]]) -> Optional[str]:
    if embedding is None:
        return None
    return hashlib.sha1(np.asarray(embedding, dtype=np.float32).tobytes()).hexdigest()


class SearchService:
    def __init__(
        self,
        engine: HybridSearchEngine,
        config: Optional[NoteGraphConfig] = None,
        cache: Optional[SearchCache] = None,
    ):
        self.config = config or get_config()
        self.engine = engine
        self.cache = cache or SearchCache(
            max_size=self.config.search_cache.max_entries,
            ttl_seconds=self.config.search_cache.ttl_seconds,
        )
        self._detachers: List[Callable[[], None]] = []
        self.searches = 0

    def _fusion_for(self, options: SearchOptions) -> FusionConfig:
        base = resolve_fusion_config(options.profile, self.config.search.default_profile)
        if options.mode == "lexical":
            return FusionConfig(
                intent=base.intent, lexical_weight=1.0, vector_weight=0.0, graph_weight=0.0,
                max_hops=0, adaptive_weights=False, boost_connected=False,
            )
        if options.mode == "semantic":
            return FusionConfig(
                intent=base.intent, lexical_weight=0.0, vector_weight=1.0, graph_weight=0.0,
                max_hops=0, adaptive_weights=False, boost_connected=False,
            )
        return base

    async def search(
        self,
        query: str,
        query_embedding: Optional[Sequence[float]] = None,
        options: Optional[SearchOptions] = None,
    ) -> List[SearchResult]:
        options = options or SearchOptions()
        self.searches += 1
        key = SearchCache.make_key(query=query, embedding=_embedding_digest(query_embedding), **asdict(options))
        if options.use_cache:
            cached = self.cache.get(key)
            if cached is not None:
                return list(cached)

        fusion = self._fusion_for(options)
        if options.mode == "semantic" and query_embedding is None:
            logger.warning("[SearchService] Semantic search without an embedding returns nothing")
            results: List[SearchResult] = []
        else:
            fetch_k = options.k * self.config.search.overfetch_factor if options.has_filters else options.k
            results = await self.engine.search(
                query if options.mode != "semantic" else "",
                query_embedding if options.mode != "lexical" else None,
                k=fetch_k,
                config=fusion,
            )
            results = self._apply_filters(results, options)[: options.k]

        if options.use_cache:
            self.cache.set(key, list(results))
        return results

    @staticmethod
    def _apply_filters(results: List[SearchResult], options: SearchOptions) -> List[SearchResult]:
        filtered = []
        for result in results:
            if result.score < options.min_score:
                continue
            if options.node_types and result.metadata.get("type") not in options.node_types:
                continue
            if options.kinds and result.metadata.get("entity_kind") not in options.kinds:
                continue
            filtered.append(result)
        return filtered

    # ══════════════════════════════════════════════════════════════════
    # Sync integration
    # ══════════════════════════════════════════════════════════════════

    def attach(self, sync_engine) -> Callable[[], None]:
        """
        Keep this service consistent with ``sync_engine``.

        Every state broadcast and every analytics recompute clears the
        cache, so no result outlives the centrality it was scored on. When
        the engine's lexical
        source is a BM25Index it is rebuilt from the current records and then
        maintained from note/entity events. Returns a detach callable.
        """
        unsubscribe_state = sync_engine.subscribe(lambda _state: self.invalidate())
        events = sync_engine.events
        subscription_ids: List[str] = [
            events.subscribe("projection.recomputed", lambda _event: self.invalidate()),
        ]

        index = self.engine.lexical_source
        if isinstance(index, BM25Index):
            index_sync_engine(index, sync_engine)

            def on_note(event) -> None:
                note = sync_engine.peek_note(event.data["id"])
                if note is None:
                    index.remove(event.data["id"])
                else:
                    index.index(note.id, _note_text(note))

            def on_entity(event) -> None:
                entity = sync_engine.peek_entity(event.data["id"])
                if entity is None:
                    index.remove(event.data["id"])
                else:
                    index.index(entity.id, _entity_text(entity))

            subscription_ids += [
                events.subscribe("note.*", on_note),
                events.subscribe("entity.*", on_entity),
                events.subscribe("sync.hydrated", lambda _event: index_sync_engine(index, sync_engine)),
                events.subscribe("sync.rollback", lambda _event: index_sync_engine(index, sync_engine)),
            ]

        def detach() -> None:
            unsubscribe_state()
            for sub_id in subscription_ids:
                events.unsubscribe(sub_id)
            if detach in self._detachers:
                self._detachers.remove(detach)

        self._detachers.append(detach)
        return detach

    def detach_all(self) -> None:
        for detach in list(self._detachers):
            detach()

    def invalidate(self) -> None:
        self.cache.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "searches": self.searches,
            "cache": self.cache.stats,
            "engine": self.engine.get_stats(),
        }


def _note_text(note) -> str:
    return f"{note.title} {note.content_text}"


def _entity_text(entity) -> str:
    return " ".join([entity.name, *entity.aliases, entity.summary or ""])


def index_sync_engine(index: BM25Index, sync_engine) -> int:
    """(Re)build ``index`` from every note and entity the engine holds."""
    documents = [(n.id, _note_text(n)) for n in sync_engine.get_notes()]
    documents += [(e.id, _entity_text(e)) for e in sync_engine.get_entities()]
    live = {doc_id for doc_id, _ in documents}
    for doc_id in index.doc_ids():
        if doc_id not in live:
            index.remove(doc_id)
    index.index_batch(documents)
    return len(documents)
