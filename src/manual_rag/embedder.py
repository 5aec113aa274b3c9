"""
embedder.py — Word vectors for semantic scoring
================================================

Why word vectors (and not passage embeddings):
  The retriever compares the AVERAGE vector of a query's content words
  with the average vector of a chunk's content words. That is crude next
  to a passage encoder, but it is cheap, runs offline, and needs no index:
  a manual has a few hundred chunks and we score all of them per query.

Providers:
  - SpacyWordEmbedding: static vectors shipped with spaCy's md/lg models.
    Words outside the vocabulary have NO vector, and that is fine: the
    retriever averages whatever vectors it gets and falls back to word
    overlap when it gets none.
  - SentenceTransformerEmbedding: encodes each word with a
    sentence-transformers model. Every word gets a vector. Encoded words
    are cached, since manuals repeat their vocabulary endlessly.

A provider is constructed once by the caller and passed in. Nothing here is
a module-level singleton.

Usage:
  emb = SpacyWordEmbedding("en_core_web_md")
  vec = emb.vector("coolant")          # np.ndarray or None
"""

import logging
import threading
from abc import ABC, abstractmethod

import numpy as np

from manual_rag.keywords import load_spacy

logger = logging.getLogger(__name__)


class EmbeddingProvider(ABC):
    """word -> optional vector. A missing vector is not an error."""

    @abstractmethod
    def vector(self, word: str) -> np.ndarray | None:
        ...

    def vectors(self, words: list[str]) -> list[np.ndarray | None]:
        return [self.vector(w) for w in words]


class SpacyWordEmbedding(EmbeddingProvider):
    """Static word vectors from a spaCy model's vocabulary."""

    def __init__(self, model_name: str = "en_core_web_md"):
        self.model_name = model_name
        self.nlp = load_spacy(model_name)
        if not self.nlp.vocab.vectors.shape[0]:
            logger.warning("spaCy model %s ships no word vectors; "
                           "semantic scores will fall back to word overlap", model_name)

    def vector(self, word: str) -> np.ndarray | None:
        lexeme = self.nlp.vocab[word]
        if not lexeme.has_vector:
            return None
        return np.asarray(lexeme.vector, dtype=np.float32)


class SentenceTransformerEmbedding(EmbeddingProvider):
    """
    Encode single words with sentence-transformers.

    IMPORTANT DETAIL — caching:
      Encoding is by far the slowest step of a query. The cache is keyed by
      the exact word and guarded by a lock, because ingestion embeds chunks
      from several worker threads at once.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", batch_size: int = 64,
                 normalize: bool = True):
        from sentence_transformers import SentenceTransformer

        self.model_name = model_name
        self.batch_size = batch_size
        self.normalize = normalize

        logger.info("Loading embedding model: %s", model_name)
        self.model = SentenceTransformer(model_name)
        self.dim = self.model.get_sentence_embedding_dimension()
        self._cache: dict[str, np.ndarray] = {}
        self._lock = threading.Lock()

    def _encode(self, words: list[str]) -> None:
        encoded = self.model.encode(
            words,
            batch_size=self.batch_size,
            normalize_embeddings=self.normalize,
            show_progress_bar=False,
        )
        with self._lock:
            for word, vec in zip(words, encoded):
                self._cache[word] = np.asarray(vec, dtype=np.float32)

    def vectors(self, words: list[str]) -> list[np.ndarray | None]:
        with self._lock:
            missing = list(dict.fromkeys(w for w in words if w not in self._cache))
        if missing:
            self._encode(missing)
        with self._lock:
            return [self._cache[w] for w in words]

    def vector(self, word: str) -> np.ndarray | None:
        return self.vectors([word])[0]


def create_embedding_provider(backend: str, model_name: str | None = None) -> EmbeddingProvider | None:
    """Factory — 'spacy', 'sentence-transformers' or 'none'."""
    if backend == "none":
        return None
    if backend == "spacy":
        return SpacyWordEmbedding(model_name or "en_core_web_md")
    if backend == "sentence-transformers":
        return SentenceTransformerEmbedding(model_name or "all-MiniLM-L6-v2")
    raise ValueError(f"Unknown embedding backend: {backend!r}. "
                     "Use: spacy, sentence-transformers, none")


# ==================== VECTOR MATH ====================

def average_vector(vectors: list[np.ndarray]) -> np.ndarray | None:
    """Element-wise mean, or None for an empty list."""
    if not vectors:
        return None
    return np.mean(np.stack(vectors), axis=0)


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity between two vectors; 0.0 if either has zero length."""
    if a.shape != b.shape:
        return 0.0
    denominator = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denominator == 0.0:
        return 0.0
    return float(np.dot(a, b) / denominator)
