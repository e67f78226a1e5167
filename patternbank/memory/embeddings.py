"""Semantic embeddings for meaning-based retrieval.

The engine only sees the Embedder interface: ``embed(text, namespace)``
returning a fixed-length vector. Backends are injected at construction:

- HashEmbedder: deterministic feature hashing, no model download
- SentenceTransformerEmbedder: sentence-transformers (all-MiniLM-L6-v2,
  384 dims by default), loaded lazily on first use

A backend that cannot produce a usable vector raises EmbeddingError;
it never returns None or a zero vector in its place.
"""

import hashlib
import re
import threading
from functools import lru_cache
from typing import Optional, Protocol, Sequence, Tuple

import numpy as np

from ..errors import EmbeddingError
from ..logging_config import get_logger

log = get_logger("patternbank.embeddings")

Vector = Tuple[float, ...]

DEFAULT_MODEL = "all-MiniLM-L6-v2"
HASH_DIM = 256

# Max text length (~500 tokens)
MAX_TEXT_CHARS = 2000

_TOKEN = re.compile(r"[a-z0-9]+")


class Embedder(Protocol):
    """Embedding provider contract."""

    def embed(self, text: str, namespace: str) -> Vector: ...


def cosine(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector has zero norm."""
    v1 = np.asarray(a, dtype=np.float64)
    v2 = np.asarray(b, dtype=np.float64)
    if v1.shape != v2.shape or v1.size == 0:
        return 0.0
    norm_product = np.linalg.norm(v1) * np.linalg.norm(v2)
    if norm_product == 0:
        return 0.0
    return float(np.clip(np.dot(v1, v2) / norm_product, -1.0, 1.0))


def similarity_matrix(vectors: Sequence[Sequence[float]]) -> np.ndarray:
    """Pairwise cosine similarities for equal-length vectors (n x n)."""
    if len(vectors) == 0:
        return np.zeros((0, 0))
    matrix = np.asarray(vectors, dtype=np.float64)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms = np.where(norms == 0, 1, norms)  # zero rows stay zero
    normalized = matrix / norms
    return np.clip(normalized @ normalized.T, -1.0, 1.0)


def check_vector(vector, dim: Optional[int] = None) -> Vector:
    """Validate a provider result and return it as a tuple of floats.

    Raises EmbeddingError for missing, empty, non-finite, all-zero or
    wrong-dimension vectors.
    """
    if vector is None:
        raise EmbeddingError("Embedding provider returned no vector")
    arr = np.asarray(vector, dtype=np.float64).ravel()
    if arr.size == 0:
        raise EmbeddingError("Embedding provider returned an empty vector")
    if dim is not None and arr.size != dim:
        raise EmbeddingError("Embedding has wrong dimension", expected=dim, actual=arr.size)
    if not np.all(np.isfinite(arr)):
        raise EmbeddingError("Embedding contains non-finite values")
    if not np.any(arr):
        raise EmbeddingError("Embedding is a zero vector")
    return tuple(float(x) for x in arr)


@lru_cache(maxsize=2000)
def _hash_embed(text: str, dim: int) -> Vector:
    vec = np.zeros(dim, dtype=np.float64)
    tokens = _TOKEN.findall(text) or [text]
    for token in tokens:
        h = hashlib.sha256(token.encode("utf-8")).digest()
        idx = int.from_bytes(h[:4], "little") % dim
        sign = 1.0 if h[4] & 1 else -1.0
        vec[idx] += sign
    norm = np.linalg.norm(vec)
    if norm == 0:
        raise EmbeddingError("Hash embedding collapsed to zero", text=text[:40])
    return tuple(float(x) for x in vec / norm)


class HashEmbedder:
    """Deterministic bag-of-tokens embedding via signed feature hashing.

    Texts sharing tokens land close together, identical texts map to the
    identical unit vector. Namespace is ignored.
    """

    def __init__(self, dim: int = HASH_DIM):
        if dim < 1:
            raise ValueError("dim must be >= 1")
        self.dim = dim

    def embed(self, text: str, namespace: str = "") -> Vector:
        if text is None or not text.strip():
            raise EmbeddingError("Cannot embed empty text")
        return _hash_embed(text[:MAX_TEXT_CHARS].lower(), self.dim)


class SentenceTransformerEmbedder:
    """sentence-transformers backed embedder.

    The model is loaded on first use. Results are cached by text.
    """

    def __init__(self, model_name: str = DEFAULT_MODEL, normalize: bool = True,
                 cache_size: int = 2000):
        self.model_name = model_name
        self.normalize = normalize
        self._model = None
        self._load_lock = threading.Lock()
        self._cached = lru_cache(maxsize=cache_size)(self._encode)

    def _load(self):
        """Lazy load embedding model."""
        if self._model is not None:
            return self._model
        with self._load_lock:
            if self._model is None:
                try:
                    from sentence_transformers import SentenceTransformer
                except ImportError as e:
                    raise EmbeddingError(
                        "sentence-transformers is not installed; "
                        "install patternbank[embeddings]"
                    ) from e
                try:
                    self._model = SentenceTransformer(self.model_name)
                except Exception as e:
                    raise EmbeddingError("Failed to load embedding model", model=self.model_name) from e
                log.debug("Loaded embedding model %s", self.model_name)
        return self._model

    @property
    def dimension(self) -> Optional[int]:
        model = self._load()
        dim = model.get_sentence_embedding_dimension()
        return int(dim) if dim is not None else None

    def _encode(self, text: str) -> Vector:
        model = self._load()
        try:
            vec = model.encode([text], normalize_embeddings=self.normalize, convert_to_numpy=True)[0]
        except Exception as e:
            raise EmbeddingError("Embedding model failed to encode text", model=self.model_name) from e
        return check_vector(vec)

    def embed(self, text: str, namespace: str = "") -> Vector:
        if text is None or not text.strip():
            raise EmbeddingError("Cannot embed empty text")
        if len(text) > MAX_TEXT_CHARS:
            text = text[:MAX_TEXT_CHARS]
        return self._cached(text)


def embed_checked(embedder: Embedder, text: str, namespace: str, dim: Optional[int] = None) -> Vector:
    """Call a provider and validate its result.

    Provider exceptions other than EmbeddingError are wrapped so callers
    handle a single error type.
    """
    try:
        vector = embedder.embed(text, namespace)
    except EmbeddingError:
        raise
    except Exception as e:
        raise EmbeddingError(f"Embedding provider failed: {e}", namespace=namespace) from e
    return check_vector(vector, dim)


