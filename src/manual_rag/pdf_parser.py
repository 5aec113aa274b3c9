"""
pdf_parser.py — Extract per-page text from owner's manual PDFs
==============================================================

Why this matters for RAG:
  Garbage in, garbage out. Every chunk, every page citation and every
  keyword downstream is computed from the text this module returns.

  Page attribution works by looking chunk text up in the per-page texts,
  so each page is cleaned on its own and the full text is built from the
  cleaned pages. Cleaning the full text afterwards would break the lookup.

  Manuals are hard in their own ways:
  - Ligatures and typographic quotes from the layout engine
  - Words hyphenated across line breaks
  - Ragged whitespace from multi-column spec tables
  - Scanned pages with no text layer (we do NOT OCR; they come back empty)

Usage:
  uv run manual-parse manual.pdf
"""

import logging
import re
import sys
from dataclasses import dataclass, field
from pathlib import Path

import fitz  # PyMuPDF

from manual_rag.errors import DocumentEmpty, DocumentUnreadable

logger = logging.getLogger(__name__)


# ==================== DATA STRUCTURES ====================

@dataclass
class ExtractedPdf:
    """Text of a PDF, page by page, plus document metadata."""
    page_count: int
    full_text: str
    page_texts: dict[int, str] = field(default_factory=dict)   # 1-indexed
    metadata: dict = field(default_factory=dict)

    @property
    def pages_with_text(self) -> int:
        return sum(1 for t in self.page_texts.values() if t)

    def __repr__(self):
        return (f"ExtractedPdf(pages={self.page_count}, with_text={self.pages_with_text}, "
                f"chars={len(self.full_text)})")


# ==================== CLEANING ====================

REPLACEMENTS = {
    'ﬁ': 'fi', 'ﬂ': 'fl', 'ﬀ': 'ff', 'ﬃ': 'ffi', 'ﬄ': 'ffl',
    '\u2019': "'", '\u2018': "'", '\u201c': '"', '\u201d': '"',
    '\u2013': '-', '\u2014': '--', '\u00a0': ' ',
}


def _fix_artifacts(text: str) -> str:
    """Fix common PDF extraction artifacts."""
    # "lubri-\ncant" -> "lubricant"
    text = re.sub(r'(\w)-\n(\w)', r'\1\2', text)
    for old, new in REPLACEMENTS.items():
        text = text.replace(old, new)
    return text


def normalize_page_text(text: str) -> str:
    """Trim every line and drop blank lines."""
    lines = (line.strip() for line in _fix_artifacts(text).splitlines())
    return '\n'.join(line for line in lines if line)


# ==================== EXTRACTION ====================

def _open(data: bytes) -> fitz.Document:
    if not data:
        raise DocumentUnreadable("no data")
    try:
        return fitz.open(stream=data, filetype="pdf")
    except (RuntimeError, ValueError) as e:
        # FileDataError / EmptyFileError are RuntimeError subclasses
        raise DocumentUnreadable(str(e)) from e


def _metadata(doc: fitz.Document) -> dict:
    pdf_meta = doc.metadata or {}
    return {
        "title": pdf_meta.get("title") or None,
        "author": pdf_meta.get("author") or None,
        "subject": pdf_meta.get("subject") or None,
        "creator": pdf_meta.get("creator") or None,
        "producer": pdf_meta.get("producer") or None,
        "creation_date": pdf_meta.get("creationDate") or None,
        "modification_date": pdf_meta.get("modDate") or None,
    }


def extract_pdf(data: bytes) -> ExtractedPdf:
    """
    Extract normalized text from raw PDF bytes.

    Steps:
      1. Open the bytes with PyMuPDF (DocumentUnreadable if that fails)
      2. Reject zero-page documents (DocumentEmpty)
      3. Clean each page on its own; pages without a text layer -> ""
      4. Join the non-empty pages with a blank line into the full text
    """
    doc = _open(data)
    try:
        page_count = len(doc)
        if page_count == 0:
            raise DocumentEmpty()

        page_texts = {}
        for page_num in range(page_count):
            raw = doc[page_num].get_text("text") or ""
            page_texts[page_num + 1] = normalize_page_text(raw)

        metadata = _metadata(doc)
    finally:
        doc.close()

    full_text = '\n\n'.join(t for t in page_texts.values() if t).strip()
    result = ExtractedPdf(
        page_count=page_count,
        full_text=full_text,
        page_texts=page_texts,
        metadata=metadata,
    )
    logger.info("Extracted %d pages (%d with text, %d chars)",
                page_count, result.pages_with_text, len(full_text))
    return result


def extract_page_range(data: bytes, first: int, last: int) -> str:
    """Normalized text of pages first..last (1-indexed, inclusive). Out-of-range pages are skipped."""
    doc = _open(data)
    try:
        texts = []
        for page_number in range(first, last + 1):
            index = page_number - 1
            if index < 0 or index >= len(doc):
                continue
            text = normalize_page_text(doc[index].get_text("text") or "")
            if text:
                texts.append(text)
    finally:
        doc.close()
    return '\n\n'.join(texts)


def search_pages(data: bytes, needle: str) -> list[int]:
    """1-indexed pages whose text contains `needle`, ignoring case."""
    needle = needle.casefold()
    doc = _open(data)
    try:
        return [
            i + 1 for i in range(len(doc))
            if needle in (doc[i].get_text("text") or "").casefold()
        ]
    finally:
        doc.close()


# ==================== CLI ====================

def print_structure(name: str, extracted: ExtractedPdf, sections: list, chunks: list):
    """Print extraction, section and chunk overview."""
    from manual_rag.chunkers import chunk_stats

    title = extracted.metadata.get("title") or name
    print(f"Document: {title}")
    print(f"File: {name} ({extracted.page_count} pages, {extracted.pages_with_text} with text)")
    print(f"Total chars: {len(extracted.full_text):,}")
    print(f"Sections: {len(sections)}")
    print()
    for s in sections:
        heading = s.heading or "(no heading)"
        print(f"  {heading[:60]} ({len(s.content):,} chars)")

    stats = chunk_stats(chunks)
    print(f"\nChunks: {stats['count']}")
    if stats["count"]:
        print(f"  avg {stats['avg_chars']} chars, min {stats['min_chars']}, "
              f"max {stats['max_chars']}, ~{stats['total_tokens']:,} tokens total")


def main():
    """Entry point for `uv run manual-parse <manual.pdf> [--large]`"""
    from manual_rag.chunkers import PassageChunker, assign_positions, get_profile
    from manual_rag.logging_setup import setup_logging
    from manual_rag.sections import split_sections

    args = [a for a in sys.argv[1:] if not a.startswith("--")]
    if not args:
        print("Usage: uv run manual-parse <manual.pdf> [--large]")
        sys.exit(1)

    filepath = Path(args[0])
    if not filepath.exists():
        print(f"PDF not found: {filepath}")
        sys.exit(1)

    setup_logging(level="WARNING")
    profile = get_profile("large" if "--large" in sys.argv else "default")
    try:
        extracted = extract_pdf(filepath.read_bytes())
    except (DocumentUnreadable, DocumentEmpty) as e:
        print(f"Could not read {filepath.name}: {e}")
        sys.exit(1)
    sections = split_sections(extracted.full_text)
    chunker = PassageChunker(profile)
    chunks = assign_positions(
        [chunker.chunk_section(s, extracted.page_texts) for s in sections]
    )
    print_structure(filepath.name, extracted, sections, chunks)
