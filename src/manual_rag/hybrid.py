"""
hybrid.py — Hybrid keyword + embedding retrieval
=================================================

Why hybrid:
  Keyword matching is precise ("torque", "5W-30") but blind to phrasing:
  "how often should I change the oil" never says "interval". Word vectors
  catch the paraphrase but happily match "engine" to "motor" in a chunk
  about the windshield washer motor. Each covers the other's blind spot.

How the score is built (per chunk):

  keyword_score   for each query content word:
                    2.0  if it is one of the chunk's keywords
                    1.0  else if the word occurs in the chunk at all
                    0.0  otherwise
                  summed, divided by the number of query words, capped at 1.0

  semantic_score  cosine(avg(query word vectors), avg(chunk word vectors)),
                  chunk side sampled to its first 100 content words.
                  Without vectors on either side: |Q ∩ C| / |Q|.

  relevance       0.4 * keyword_score + 0.6 * semantic_score

  match_type      "hybrid"   both scores > 0.3
                  "keyword"  keyword_score > semantic_score
                  "semantic" otherwise

Unlike rank fusion, these are absolute scores in [0, 1]: the orchestrator
reports their mean as the confidence of the evidence set.

Usage:
  retriever = HybridRetriever(tagger, embeddings=None)
  results = retriever.retrieve("how often should I change the oil", doc.chunks)
"""

import enum
import logging
import re
import threading
from collections import OrderedDict
from dataclasses import dataclass

import numpy as np

from manual_rag.embedder import EmbeddingProvider, average_vector, cosine_similarity
from manual_rag.keywords import ADJ_TAGS, NOUN_TAGS, VERB_TAGS, PosTagger, content_words
from manual_rag.models import Chunk

logger = logging.getLogger(__name__)

KEYWORD_WEIGHT = 0.4
SEMANTIC_WEIGHT = 0.6
HYBRID_THRESHOLD = 0.3
KEYWORD_HIT = 2.0
CONTENT_HIT = 1.0
CHUNK_WORD_SAMPLE = 100
QUERY_WORD_MIN_LEN = 3        # strictly longer than 2
CHUNK_CACHE_SIZE = 20_000     # chunks whose content words are kept

QUERY_TAGS = NOUN_TAGS | VERB_TAGS | ADJ_TAGS

_WORD = re.compile(r"[\w'-]+")


class MatchType(str, enum.Enum):
    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


@dataclass
class SearchResult:
    """One scored chunk."""
    chunk: Chunk
    relevance_score: float
    keyword_score: float
    semantic_score: float
    match_type: MatchType

    def __repr__(self):
        return (f"SearchResult(pos={self.chunk.position}, score={self.relevance_score:.3f}, "
                f"kw={self.keyword_score:.2f}, sem={self.semantic_score:.2f}, "
                f"type={self.match_type.value})")


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def classify_match(keyword_score: float, semantic_score: float) -> MatchType:
    if keyword_score > HYBRID_THRESHOLD and semantic_score > HYBRID_THRESHOLD:
        return MatchType.HYBRID
    if keyword_score > semantic_score:
        return MatchType.KEYWORD
    return MatchType.SEMANTIC


class HybridRetriever:
    """
    Score every candidate chunk against a query and keep the best `top_k`.

    The embedding provider is optional; without one every semantic score is
    the word-overlap fallback. Content words of each chunk are tagged once
    and cached by chunk id, since a manual is queried many times. The cache
    keeps the `cache_size` most recently used chunks; forget() drops the
    chunks of a deleted document right away.
    """

    def __init__(self, tagger: PosTagger, embeddings: EmbeddingProvider | None = None,
                 cache_size: int = CHUNK_CACHE_SIZE):
        self.tagger = tagger
        self.embeddings = embeddings
        self.cache_size = cache_size
        self._chunk_words: OrderedDict[str, list[str]] = OrderedDict()
        self._lock = threading.Lock()

    # ---------- words ----------

    def query_words(self, text: str) -> list[str]:
        """Nouns, verbs and adjectives longer than 2 chars, lower-cased, in order."""
        return content_words(self.tagger.tag(text), QUERY_TAGS, QUERY_WORD_MIN_LEN)

    def _words_for(self, chunk: Chunk) -> list[str]:
        with self._lock:
            cached = self._chunk_words.get(chunk.id)
            if cached is not None:
                self._chunk_words.move_to_end(chunk.id)
                return cached
        words = self.query_words(chunk.content)
        with self._lock:
            self._chunk_words[chunk.id] = words
            while len(self._chunk_words) > self.cache_size:
                self._chunk_words.popitem(last=False)
        return words

    def forget(self, chunk_ids) -> None:
        """Drop cached content words for these chunks."""
        with self._lock:
            for chunk_id in chunk_ids:
                self._chunk_words.pop(chunk_id, None)

    @property
    def cached_chunks(self) -> int:
        with self._lock:
            return len(self._chunk_words)

    # ---------- vectors ----------

    def _average(self, words: list[str]) -> np.ndarray | None:
        if self.embeddings is None or not words:
            return None
        return average_vector([v for v in self.embeddings.vectors(words) if v is not None])

    def chunk_embedding(self, text: str) -> list[float] | None:
        """Averaged vector of a passage's first 100 content words, for storing on a Chunk."""
        vec = self._average(self.query_words(text)[:CHUNK_WORD_SAMPLE])
        return None if vec is None else vec.astype(float).tolist()

    # ---------- scores ----------

    def keyword_score(self, query_words: list[str], chunk: Chunk) -> float:
        if not query_words:
            return 0.0
        keywords = set(chunk.keywords)
        tokens = set(_WORD.findall(chunk.content.lower()))

        total = 0.0
        for word in query_words:
            if word in keywords:
                total += KEYWORD_HIT
            elif word in tokens:
                total += CONTENT_HIT
        return _clamp(total / len(query_words))

    def semantic_score(self, query_words: list[str], chunk: Chunk,
                       query_vec: np.ndarray | None = None) -> float:
        chunk_words = self._words_for(chunk)

        chunk_vec = None
        if query_vec is not None:
            if chunk.embedding is not None:
                chunk_vec = np.asarray(chunk.embedding, dtype=np.float32)
            # a stored vector from another embedding model is recomputed
            if chunk_vec is None or chunk_vec.shape != query_vec.shape:
                chunk_vec = self._average(chunk_words[:CHUNK_WORD_SAMPLE])

        if query_vec is None or chunk_vec is None:
            return self.word_overlap(query_words, chunk_words)
        return _clamp(cosine_similarity(query_vec, chunk_vec))

    @staticmethod
    def word_overlap(query_words: list[str], chunk_words: list[str]) -> float:
        query_set = set(query_words)
        if not query_set:
            return 0.0
        return len(query_set & set(chunk_words)) / len(query_set)

    def score(self, query_words: list[str], chunk: Chunk,
              query_vec: np.ndarray | None = None) -> SearchResult:
        kw = self.keyword_score(query_words, chunk)
        sem = self.semantic_score(query_words, chunk, query_vec)
        return SearchResult(
            chunk=chunk,
            relevance_score=_clamp(KEYWORD_WEIGHT * kw + SEMANTIC_WEIGHT * sem),
            keyword_score=kw,
            semantic_score=sem,
            match_type=classify_match(kw, sem),
        )

    # ---------- search ----------

    def retrieve(self, query: str, chunks: list[Chunk], top_k: int = 5) -> list[SearchResult]:
        """
        Rank chunks by relevance to the query.

        Returns at most `top_k` results, best first. Equal scores keep the
        order the chunks were given in.
        """
        if not chunks or top_k <= 0:
            return []

        words = self.query_words(query)
        query_vec = self._average(words)

        results = [self.score(words, chunk, query_vec) for chunk in chunks]
        results.sort(key=lambda r: r.relevance_score, reverse=True)
        top = results[:top_k]

        logger.debug("Retrieved %d/%d chunks for %r (query words: %s)",
                     len(top), len(chunks), query[:80], words)
        return top


# ==================== LOOKUPS ====================

def find_chunks_on_page(page_number: int, chunks: list[Chunk]) -> list[Chunk]:
    return [c for c in chunks if page_number in c.page_numbers]


def find_chunks_with_heading(heading: str, chunks: list[Chunk]) -> list[Chunk]:
    """Chunks whose heading contains `heading`, ignoring case."""
    needle = heading.casefold()
    return [c for c in chunks if c.heading and needle in c.heading.casefold()]
