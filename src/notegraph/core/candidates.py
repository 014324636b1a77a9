"""
Candidate Sources
=================
In-memory lexical (BM25) and vector (cosine) candidate sources for the
hybrid search engine.

Both satisfy the source protocols the engine expects:
    lexical: ``await search(query, limit) -> [{"id", "score"}]``
    vector:  ``await search(embedding, limit, model_tier) -> [{"id", "score"}]``
"""

import re
from collections import Counter, defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from loguru import logger

_TOKEN = re.compile(r"\b\w+\b")


def tokenize(text: str) -> List[str]:
    return _TOKEN.findall((text or "").lower())


class BM25Index:
    """
    Incremental BM25 index.

    Document frequencies and lengths are maintained on index()/remove(),
    so the corpus statistics always reflect the current document set.
    """

    def __init__(self, k1: float = 1.5, b: float = 0.75):
        self.k1 = k1
        self.b = b
        self._term_counts: Dict[str, Counter] = {}
        self._lengths: Dict[str, int] = {}
        self.doc_freqs: Dict[str, int] = defaultdict(int)
        self._total_length = 0

    def __len__(self) -> int:
        return len(self._term_counts)

    def __contains__(self, doc_id: str) -> bool:
        return doc_id in self._term_counts

    def doc_ids(self) -> List[str]:
        return list(self._term_counts)

    @property
    def avg_doc_length(self) -> float:
        return self._total_length / len(self._lengths) if self._lengths else 1.0

    @property
    def vocabulary_size(self) -> int:
        return len(self.doc_freqs)

    def index(self, doc_id: str, text: str) -> None:
        """Add or replace a document."""
        if doc_id in self._term_counts:
            self.remove(doc_id)
        tokens = tokenize(text)
        counts = Counter(tokens)
        self._term_counts[doc_id] = counts
        self._lengths[doc_id] = len(tokens)
        self._total_length += len(tokens)
        for token in counts:
            self.doc_freqs[token] += 1

    def index_batch(self, documents: Iterable[Tuple[str, str]]) -> None:
        count = 0
        for doc_id, text in documents:
            self.index(doc_id, text)
            count += 1
        logger.info(
            f"BM25Index indexed {count} documents, vocab size: {self.vocabulary_size}, "
            f"avg doc length: {self.avg_doc_length:.1f}"
        )

    def remove(self, doc_id: str) -> bool:
        counts = self._term_counts.pop(doc_id, None)
        if counts is None:
            return False
        self._total_length -= self._lengths.pop(doc_id)
        for token in counts:
            self.doc_freqs[token] -= 1
            if self.doc_freqs[token] <= 0:
                del self.doc_freqs[token]
        return True

    def idf(self, token: str) -> float:
        df = self.doc_freqs.get(token, 0)
        total = len(self._term_counts)
        return float(np.log((total - df + 0.5) / (df + 0.5) + 1.0))

    def compute_scores(self, query: str) -> Dict[str, float]:
        """BM25 score for every document sharing at least one query term."""
        query_tokens = set(tokenize(query))
        if not query_tokens or not self._term_counts:
            return {}
        avg_len = self.avg_doc_length or 1.0
        idf = {t: self.idf(t) for t in query_tokens if t in self.doc_freqs}
        scores: Dict[str, float] = {}
        for doc_id, counts in self._term_counts.items():
            score = 0.0
            doc_length = self._lengths[doc_id]
            for token, token_idf in idf.items():
                tf = counts.get(token, 0)
                if not tf:
                    continue
                score += token_idf * (tf * (self.k1 + 1)) / (
                    tf + self.k1 * (1 - self.b + self.b * doc_length / avg_len)
                )
            if score > 0:
                scores[doc_id] = score
        return scores

    async def search(self, query: str, limit: int) -> List[Dict[str, float]]:
        ranked = sorted(self.compute_scores(query).items(), key=lambda x: (-x[1], x[0]))
        return [{"id": doc_id, "score": score} for doc_id, score in ranked[:limit]]


class VectorIndex:
    """
    Brute-force cosine similarity over unit-normalized float32 vectors.

    Vectors are grouped per model tier; all vectors in a tier must share
    the same dimension.
    """

    def __init__(self, default_tier: str = "small"):
        self.default_tier = default_tier
        self._vectors: Dict[str, Dict[str, np.ndarray]] = defaultdict(dict)

    def __len__(self) -> int:
        return sum(len(v) for v in self._vectors.values())

    def add(self, doc_id: str, embedding: Sequence[float], model_tier: Optional[str] = None) -> None:
        tier = model_tier or self.default_tier
        vec = np.asarray(embedding, dtype=np.float32)
        if vec.ndim != 1 or vec.size == 0:
            raise ValueError(f"embedding for {doc_id} must be a non-empty 1-D vector")
        existing = next(iter(self._vectors[tier].values()), None)
        if existing is not None and existing.shape != vec.shape:
            raise ValueError(
                f"embedding for {doc_id} has dimension {vec.size}, tier '{tier}' uses {existing.size}"
            )
        norm = np.linalg.norm(vec)
        self._vectors[tier][doc_id] = vec / norm if norm > 0 else vec

    def remove(self, doc_id: str, model_tier: Optional[str] = None) -> bool:
        tiers = [model_tier] if model_tier else list(self._vectors)
        removed = False
        for tier in tiers:
            removed = self._vectors.get(tier, {}).pop(doc_id, None) is not None or removed
        return removed

    async def search(
        self,
        embedding: Sequence[float],
        limit: int,
        model_tier: Optional[str] = None,
    ) -> List[Dict[str, float]]:
        vectors = self._vectors.get(model_tier or self.default_tier)
        if not vectors:
            return []
        query = np.asarray(embedding, dtype=np.float32)
        norm = np.linalg.norm(query)
        if norm == 0:
            return []
        ids = list(vectors)
        matrix = np.stack([vectors[i] for i in ids])
        if matrix.shape[1] != query.shape[0]:
            raise ValueError(f"query dimension {query.shape[0]} != index dimension {matrix.shape[1]}")
        sims = matrix @ (query / norm)
        order = np.argsort(-sims, kind="stable")[:limit]
        return [{"id": ids[i], "score": float(sims[i])} for i in order]
