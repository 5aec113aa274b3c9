"""
chunkers.py — Sentence-boundary chunking with overlap
=====================================================

HOW IT WORKS:
  Each section is split into sentences. Sentences are appended to a running
  buffer; when the next sentence would push the buffer past `max_size`, the
  buffer becomes a chunk and the next buffer starts with the last `overlap`
  characters of that chunk, followed by the sentence.

WHY OVERLAP:
  A question often hits the boundary between two passages ("...drain the
  oil. Then replace the filter..."). Carrying the tail of the previous chunk
  means either chunk can answer it on its own.

SIZES:
  Everything is measured in characters as a proxy for tokens (~4 chars per
  token). The default profile targets ~400 tokens with ~50 tokens of
  overlap; LARGE_PROFILE doubles every bound.

KNOWN EXCEPTIONS TO THE SIZE BOUNDS:
  - The last chunk of a section may be shorter than `min_size`.
  - A single sentence longer than `max_size` becomes an oversized chunk.
    It is never cut or truncated.

PAGE ATTRIBUTION:
  A chunk is attributed to every page whose text contains the chunk's first
  100 characters. This is approximate: repeated boilerplate can match
  several pages, and text that was reflowed across a page break may match
  none.
"""

import re
from dataclasses import dataclass

from manual_rag.models import Chunk
from manual_rag.sections import Section

PAGE_SAMPLE_CHARS = 100


# ==================== CONFIGURATION ====================

@dataclass(frozen=True)
class ChunkingProfile:
    """Character-based chunk size bounds."""
    target_size: int = 1600     # ~400 tokens
    min_size: int = 800         # ~200 tokens
    max_size: int = 3200        # ~800 tokens
    overlap: int = 200          # ~50 tokens

    def __post_init__(self):
        if self.overlap >= self.max_size:
            raise ValueError("overlap must be less than max_size")
        if self.min_size > self.max_size:
            raise ValueError("min_size must not exceed max_size")
        if not self.min_size <= self.target_size <= self.max_size:
            raise ValueError("target_size must lie between min_size and max_size")

    def scaled(self, factor: int) -> "ChunkingProfile":
        return ChunkingProfile(
            target_size=self.target_size * factor,
            min_size=self.min_size * factor,
            max_size=self.max_size * factor,
            overlap=self.overlap * factor,
        )


DEFAULT_PROFILE = ChunkingProfile()
LARGE_PROFILE = DEFAULT_PROFILE.scaled(2)

PROFILES = {
    "default": DEFAULT_PROFILE,
    "large": LARGE_PROFILE,
}


def get_profile(name: str) -> ChunkingProfile:
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(f"Unknown chunking profile: {name!r}. Use: {', '.join(PROFILES)}") from None


# ==================== SENTENCES ====================

ABBREVIATIONS = {
    "e.g", "i.e", "etc", "approx", "fig", "no", "vol", "vs", "min", "max",
    "ref", "incl", "dept", "mr", "mrs", "ms", "dr", "st", "ca", "cf",
}

# terminal punctuation, optional closing quote/bracket, then whitespace
_SENTENCE_END = re.compile(r'[.!?]+["\')\]]*\s+')


def split_sentences(text: str) -> list[str]:
    """
    Split text into sentences that concatenate back to `text` exactly.

    Each sentence keeps its trailing whitespace. A period after a known
    abbreviation ("e.g.", "approx.") does not end a sentence, and neither
    does a decimal point ("5.7 L") since it is not followed by whitespace.
    """
    sentences = []
    start = 0
    for match in _SENTENCE_END.finditer(text):
        before = text[start:match.start()].strip()
        last_word = before.rsplit(None, 1)[-1].lower().lstrip('("\'') if before else ""
        if match.group().rstrip() == '.' and last_word in ABBREVIATIONS:
            continue
        sentences.append(text[start:match.end()])
        start = match.end()

    if start < len(text):
        sentences.append(text[start:])
    return sentences


# ==================== PAGES ====================

def find_page_numbers(content: str, page_texts: dict[int, str]) -> list[int]:
    """Pages whose text contains the first 100 characters of `content`, ascending."""
    sample = content[:PAGE_SAMPLE_CHARS]
    if not sample.strip():
        return []
    return sorted({page for page, text in page_texts.items() if sample in text})


# ==================== CHUNKER ====================

class PassageChunker:
    """
    Split one section into overlapping, size-bounded passages.

    The chunker knows nothing about the rest of the document: positions are
    local to the section (0, 1, 2, ...) and get renumbered document-wide by
    assign_positions() once every section is done. That keeps sections
    independent, so they can be chunked in parallel.
    """

    def __init__(self, profile: ChunkingProfile = DEFAULT_PROFILE):
        self.profile = profile

    def _overlap_text(self, chunk_text: str) -> str:
        if len(chunk_text) <= self.profile.overlap:
            return chunk_text
        return chunk_text[-self.profile.overlap:]

    def split(self, text: str) -> list[str]:
        """Chunk texts for one section, before any metadata is attached."""
        max_size = self.profile.max_size
        pieces = []
        buffer = ""

        for sentence in split_sentences(text):
            if buffer and len(buffer) + len(sentence) > max_size:
                pieces.append(buffer)
                buffer = self._overlap_text(buffer) + sentence
            else:
                # an empty buffer takes the sentence even if it alone exceeds max_size
                buffer += sentence

        if buffer:
            pieces.append(buffer)
        return pieces

    def chunk_section(self, section: Section, page_texts: dict[int, str]) -> list[Chunk]:
        return [
            Chunk(
                content=piece,
                position=i,
                heading=section.heading,
                page_numbers=find_page_numbers(piece, page_texts),
            )
            for i, piece in enumerate(self.split(section.content))
        ]


def assign_positions(section_chunks: list[list[Chunk]]) -> list[Chunk]:
    """Flatten per-section chunk lists in section order and number them 0..n-1."""
    chunks = [c for group in section_chunks for c in group]
    for position, chunk in enumerate(chunks):
        chunk.position = position
    return chunks


# ==================== STATS ====================

def chunk_stats(chunks: list[Chunk]) -> dict:
    """Compute statistics about a set of chunks."""
    if not chunks:
        return {"count": 0}

    sizes = [c.char_count for c in chunks]
    mean = sum(sizes) / len(sizes)

    return {
        "count": len(chunks),
        "total_chars": sum(sizes),
        "total_tokens": sum(c.token_count for c in chunks),
        "avg_chars": round(mean),
        "min_chars": min(sizes),
        "max_chars": max(sizes),
        "std_chars": round((sum((s - mean) ** 2 for s in sizes) / len(sizes)) ** 0.5),
        "with_pages": sum(1 for c in chunks if c.page_numbers),
    }
