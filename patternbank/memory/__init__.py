"""Memory engine components: store, retrieval, reinforcement, distillation, consolidation."""

from .embeddings import (
    Embedder, HashEmbedder, SentenceTransformerEmbedder,
    cosine, similarity_matrix, check_vector, embed_checked,
)
from .store import PatternStore
from .retrieval import Retriever, ScoredPattern, recency_score, reliability_score, select_diverse
from .reinforce import Reinforcer, ReinforceReport, next_confidence
from .distill import Distiller, DistillResult, scrub_pii, make_pattern_id
from .consolidate import Consolidator, ConsolidationReport, choose_winner

__all__ = [
    # Embeddings
    'Embedder', 'HashEmbedder', 'SentenceTransformerEmbedder',
    'cosine', 'similarity_matrix', 'check_vector', 'embed_checked',
    # Store
    'PatternStore',
    # Retrieval
    'Retriever', 'ScoredPattern', 'recency_score', 'reliability_score', 'select_diverse',
    # Reinforcement
    'Reinforcer', 'ReinforceReport', 'next_confidence',
    # Distillation
    'Distiller', 'DistillResult', 'scrub_pii', 'make_pattern_id',
    # Consolidation
    'Consolidator', 'ConsolidationReport', 'choose_winner',
]
