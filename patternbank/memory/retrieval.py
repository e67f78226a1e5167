"""Retrieval: composite scoring plus diversity-aware top-k selection.

Scoring formula (weights from EngineConfig):
    base_score = 0.65 * similarity + 0.15 * recency + 0.20 * reliability
    similarity = cosine(query, pattern)
    recency = exp(-age_days / 30), age from last_used_at or created_at
    reliability = min(confidence * sqrt(usage_count / 10), 1.0)

Selection is a simplified maximal-marginal-relevance pass: after each
pick, every remaining candidate is re-scored as
    base_score - 0.10 * max(cosine(candidate, selected_i))
so near-duplicates of what is already chosen sink.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence

import numpy as np

from ..config import EngineConfig
from ..db.schema import Pattern, parse_ts, utcnow
from ..errors import ValidationError
from ..logging_config import get_logger
from .embeddings import check_vector, cosine, similarity_matrix

log = get_logger("patternbank.retrieval")


@dataclass
class ScoredPattern:
    """A retrieved pattern with its score breakdown."""
    pattern: Pattern
    similarity: float
    recency: float
    reliability: float
    base_score: float
    diversity_penalty: float = 0.0
    score: float = 0.0

    @property
    def id(self) -> str:
        return self.pattern.id

    def to_dict(self) -> dict:
        d = self.pattern.to_dict()
        d["score"] = round(self.score, 6)
        d["breakdown"] = {
            "similarity": round(self.similarity, 6),
            "recency": round(self.recency, 6),
            "reliability": round(self.reliability, 6),
            "base_score": round(self.base_score, 6),
            "diversity_penalty": round(self.diversity_penalty, 6),
        }
        return d


def recency_score(last_activity, now: datetime, tau_days: float = 30.0) -> float:
    """exp(-age_days / tau). Future timestamps count as age 0."""
    ts = parse_ts(last_activity)
    if ts is None:
        return 0.0
    age_days = max((now - ts).total_seconds() / 86400.0, 0.0)
    return math.exp(-age_days / tau_days)


def reliability_score(confidence: float, usage_count: int, usage_scale: float = 10.0) -> float:
    """Confidence discounted until the pattern has been used enough. In [0, 1]."""
    if usage_count <= 0:
        return 0.0
    return min(confidence * math.sqrt(usage_count / usage_scale), 1.0)


def score_candidate(pattern: Pattern, query_embedding: Sequence[float], now: datetime,
                    config: EngineConfig) -> ScoredPattern:
    """Base score for one candidate, before diversity adjustment."""
    sim = cosine(query_embedding, pattern.embedding)
    rec = recency_score(pattern.last_activity, now, config.recency_tau_days)
    rel = reliability_score(pattern.confidence, pattern.usage_count, config.reliability_usage_scale)
    base = (config.similarity_weight * sim
            + config.recency_weight * rec
            + config.reliability_weight * rel)
    return ScoredPattern(pattern=pattern, similarity=sim, recency=rec, reliability=rel,
                         base_score=base, score=base)


def _recency_key(sp: ScoredPattern) -> float:
    ts = parse_ts(sp.pattern.last_activity)
    return ts.timestamp() if ts else float("-inf")


def select_diverse(scored: List[ScoredPattern], k: int, diversity_weight: float) -> List[ScoredPattern]:
    """Greedy diversity-aware selection of up to k items.

    Each remaining candidate's penalty is the max cosine to any selected
    item, recomputed after every pick. Anti-correlated candidates carry a
    negative penalty and gain score. The first pick has no penalty. Ties on
    adjusted score go to the most recently active pattern, then the smaller id.
    """
    if not scored or k <= 0:
        return []

    sims = similarity_matrix([sp.pattern.embedding for sp in scored])
    base = np.array([sp.base_score for sp in scored])
    penalty = np.zeros(len(scored))
    remaining = list(range(len(scored)))
    selected = []

    while remaining and len(selected) < k:
        def key(i):
            return (-(base[i] - diversity_weight * penalty[i]), -_recency_key(scored[i]), scored[i].id)

        best = min(remaining, key=key)
        remaining.remove(best)

        pick = scored[best]
        pick.diversity_penalty = float(penalty[best])
        pick.score = float(base[best] - diversity_weight * penalty[best])
        selected.append(pick)

        penalty = sims[best].copy() if len(selected) == 1 else np.maximum(penalty, sims[best])

    return selected


class Retriever:
    """Read-only: scores a snapshot of candidates, never writes."""

    def __init__(self, store, config: Optional[EngineConfig] = None):
        self.store = store
        self.config = config or EngineConfig()

    def retrieve(
        self,
        namespace: str,
        query_embedding: Sequence[float],
        k: Optional[int] = None,
        domain: Optional[str] = None,
        now=None,
    ) -> List[ScoredPattern]:
        """Top-k patterns for a query, in descending adjusted-score order.

        Args:
            namespace: Partition to search
            query_embedding: Query vector from the embedding provider
            k: Number of results (default config.default_k)
            domain: Optional domain filter
            now: Reference time for recency (default: current UTC time)

        Returns an empty list when the namespace has no candidates.
        Raises EmbeddingError for an unusable query vector.
        """
        k = self.config.default_k if k is None else k
        if k <= 0:
            raise ValidationError("k must be >= 1", k=k)

        query = check_vector(query_embedding, self.config.embedding_dim)
        now = parse_ts(now) or utcnow()

        candidates = self.store.get_candidates(namespace, domain=domain)
        if not candidates:
            return []

        scored = []
        skipped = 0
        for p in candidates:
            if len(p.embedding) != len(query):
                skipped += 1
                continue
            scored.append(score_candidate(p, query, now, self.config))
        if skipped:
            log.warning("Skipped %d candidates with mismatched embedding dimension in '%s'",
                        skipped, namespace)

        # Stable input order so selection never depends on store ordering
        scored.sort(key=lambda sp: sp.id)
        results = select_diverse(scored, k, self.config.diversity_weight)
        log.debug("Retrieved %d/%d patterns from '%s'", len(results), len(candidates), namespace)
        return results
