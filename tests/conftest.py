"""
Shared fakes for the test suite.

Nothing here needs the network or a downloaded spaCy model:
  - LexiconTagger     word lists instead of a statistical tagger
  - ScriptedBackend   an LLMBackend that replays canned responses
  - DictEmbedding     word -> vector from a dict
  - make_pdf()        real PDF bytes written with PyMuPDF
  - store             a file-backed SQLite ManualStore per test
"""

import json
import re
import time

import fitz  # PyMuPDF
import numpy as np
import pytest

from manual_rag.embedder import EmbeddingProvider
from manual_rag.generator import AnswerGenerator, AvailabilityState, LLMBackend
from manual_rag.keywords import PosTagger
from manual_rag.store import ManualStore

FUNCTION_WORDS = {
    "a", "an", "the", "and", "or", "but", "of", "to", "in", "on", "at", "by", "for",
    "with", "from", "into", "as", "is", "are", "be", "was", "were", "it", "its",
    "this", "that", "these", "those", "i", "you", "your", "we", "he", "she", "they",
    "how", "what", "when", "where", "which", "why", "often", "should", "can", "do",
    "does", "will", "would", "could", "may", "must", "not", "every", "each", "if",
    "then", "than", "also", "there", "all", "any", "more", "most", "very", "after",
    "before", "about", "make", "sure",
}

VERBS = {
    "change", "replace", "check", "drain", "install", "remove", "tighten", "press",
    "hold", "adjust", "inspect", "rotate", "drive", "start", "turn", "use", "fill",
    "connect", "pair", "tap", "select", "display", "park", "open", "close", "refer",
}

ADJECTIVES = {
    "new", "old", "hot", "cold", "low", "high", "recommended", "synthetic", "severe",
    "normal", "front", "rear", "proper", "correct", "wireless",
}

_TOKEN = re.compile(r"[A-Za-z0-9][A-Za-z0-9'-]*")


class LexiconTagger(PosTagger):
    """Deterministic tagger: function words, a verb list, an adjective list, the rest nouns."""

    def tag(self, text: str) -> list[tuple[str, str]]:
        tagged = []
        for token in _TOKEN.findall(text):
            lower = token.lower()
            if token[0].isdigit():
                tag = "NUM"
            elif lower in FUNCTION_WORDS:
                tag = "X"
            elif lower in VERBS:
                tag = "VERB"
            elif lower in ADJECTIVES:
                tag = "ADJ"
            else:
                tag = "NOUN"
            tagged.append((token, tag))
        return tagged


class DictEmbedding(EmbeddingProvider):
    def __init__(self, table: dict[str, list[float]]):
        self.table = {w: np.asarray(v, dtype=np.float32) for w, v in table.items()}

    def vector(self, word: str):
        return self.table.get(word)


class ScriptedBackend(LLMBackend):
    """Replays `responses` in order (the last one repeats). Raises if a response is an exception."""

    def __init__(self, responses=None, state=AvailabilityState.AVAILABLE, delay: float = 0.0):
        self.responses = list(responses or [])
        self.state = state
        self.delay = delay
        self.calls: list[tuple[str, str]] = []
        self.probes = 0

    @property
    def name(self) -> str:
        return "scripted"

    def probe(self) -> AvailabilityState:
        self.probes += 1
        return self.state

    def call(self, system: str, user: str) -> tuple[str, dict]:
        self.calls.append((system, user))
        if self.delay:
            time.sleep(self.delay)
        response = self.responses[min(len(self.calls), len(self.responses)) - 1]
        if isinstance(response, Exception):
            raise response
        return response, {"input_tokens": len(user) // 4, "output_tokens": len(response) // 4}


def answer_json(answer="Change the oil every 5,000 miles.", pages=(2,), confidence="high",
                follow_ups=None) -> str:
    return json.dumps({
        "answer": answer,
        "source_pages": list(pages),
        "confidence": confidence,
        "suggested_follow_ups": follow_ups,
    })


def make_pdf(pages: list[list[str]], title: str | None = None) -> bytes:
    """A PDF with one page per entry; each entry is a list of text lines."""
    doc = fitz.open()
    for lines in pages:
        page = doc.new_page()
        if lines:
            page.insert_text((50, 60), "\n".join(lines), fontsize=10)
    if title:
        doc.set_metadata({"title": title})
    data = doc.tobytes()
    doc.close()
    return data


MANUAL_PAGES = [
    [
        "INTRODUCTION",
        "Thank you for choosing this vehicle.",
        "Read this manual carefully before you drive.",
    ],
    [
        "ENGINE OIL",
        "Change the engine oil every 5000 miles under normal conditions.",
        "Replace the oil filter at every oil change.",
        "Use synthetic oil of the recommended viscosity.",
    ],
    [
        "INFOTAINMENT SYSTEM",
        "The touchscreen display shows radio and navigation.",
        "Tap the touchscreen icon to pair a phone with the infotainment unit.",
    ],
    [
        "TIRE PRESSURE",
        "Check tire pressure monthly when the tires are cold.",
        "The recommended pressure is printed on the door jamb label.",
    ],
]


@pytest.fixture
def tagger():
    return LexiconTagger()


@pytest.fixture
def manual_pdf() -> bytes:
    return make_pdf(MANUAL_PAGES, title="Owner's Manual")


@pytest.fixture
def store(tmp_path):
    s = ManualStore(f"sqlite:///{tmp_path / 'manual_rag.db'}")
    yield s
    s.close()


@pytest.fixture
def backend():
    return ScriptedBackend([answer_json()])


@pytest.fixture
def generator(backend):
    return AnswerGenerator(backend)
