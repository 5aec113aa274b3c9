"""
keywords.py — Part-of-speech tagging and keyword extraction
===========================================================

Keywords are the cheap half of hybrid retrieval: a handful of words per
chunk that say what it is ABOUT. A query word that hits a chunk keyword
counts double in the keyword score (see hybrid.py).

How keywords are picked:
  1. Tag the chunk with a part-of-speech tagger
  2. Keep nouns and verbs longer than 3 chars, lower-cased, minus stop words
  3. Rank by frequency; ties go to the word that appeared first
  4. Keep the top 10

The tagger is an interface (PosTagger) so that the retriever, the extractor
and tests can share one tagging implementation. SpacyTagger is the real one.
"""

import logging
from abc import ABC, abstractmethod
from collections import Counter
from functools import lru_cache

import spacy

logger = logging.getLogger(__name__)

MAX_KEYWORDS = 10
KEYWORD_MIN_LEN = 4           # strictly longer than 3

NOUN_TAGS = frozenset({"NOUN", "PROPN"})
VERB_TAGS = frozenset({"VERB"})
ADJ_TAGS = frozenset({"ADJ"})
KEYWORD_TAGS = NOUN_TAGS | VERB_TAGS

STOP_WORDS = frozenset({
    "this", "that", "with", "from", "have", "will", "your", "more",
    "about", "should", "could", "would", "their", "there", "these",
    "those", "when", "where", "which", "while", "being", "been",
    "make", "sure", "also", "into", "then", "than", "they", "them",
    "does", "done", "page", "refer", "following",
})


# ==================== TAGGERS ====================

class PosTagger(ABC):
    """
    Word-level part-of-speech tagging.

    tag() returns (token, tag) pairs using universal POS tags ("NOUN",
    "VERB", "ADJ", ...). Punctuation and whitespace tokens are omitted.
    """

    @abstractmethod
    def tag(self, text: str) -> list[tuple[str, str]]:
        ...


@lru_cache(maxsize=4)
def load_spacy(model_name: str):
    """Load and cache a spaCy pipeline, keeping only what tagging needs."""
    logger.info("Loading spaCy model: %s", model_name)
    nlp = spacy.load(model_name)
    unused = [p for p in ("parser", "ner", "lemmatizer") if p in nlp.pipe_names]
    nlp.select_pipes(disable=unused)
    return nlp


class SpacyTagger(PosTagger):
    """Universal POS tags from a spaCy pipeline (en_core_web_sm by default)."""

    def __init__(self, model_name: str = "en_core_web_sm"):
        self.model_name = model_name
        self.nlp = load_spacy(model_name)

    def tag(self, text: str) -> list[tuple[str, str]]:
        return [
            (token.text, token.pos_)
            for token in self.nlp(text)
            if not (token.is_punct or token.is_space)
        ]


def content_words(tagged: list[tuple[str, str]], tags: frozenset, min_len: int) -> list[str]:
    """Lower-cased tokens with one of `tags` and at least `min_len` characters, in order."""
    return [
        word.lower() for word, tag in tagged
        if tag in tags and len(word) >= min_len
    ]


# ==================== EXTRACTOR ====================

class KeywordExtractor:
    """Top nouns and verbs of a passage, by frequency."""

    def __init__(self, tagger: PosTagger, max_keywords: int = MAX_KEYWORDS,
                 stop_words: frozenset = STOP_WORDS):
        self.tagger = tagger
        self.max_keywords = max_keywords
        self.stop_words = stop_words

    def extract(self, text: str) -> list[str]:
        words = [
            w for w in content_words(self.tagger.tag(text), KEYWORD_TAGS, KEYWORD_MIN_LEN)
            if w not in self.stop_words
        ]
        # Counter keeps first-insertion order and most_common() sorts stably,
        # so equal counts stay in order of first occurrence
        return [w for w, _ in Counter(words).most_common(self.max_keywords)]
