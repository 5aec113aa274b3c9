"""
Tests for PDF text extraction: per-page cleaning, metadata, failure modes.
"""

import fitz
import pytest

from conftest import make_pdf
from manual_rag.errors import DocumentEmpty, DocumentUnreadable, IngestError
from manual_rag.pdf_parser import (
    extract_page_range, extract_pdf, normalize_page_text, search_pages,
)


def test_extracts_every_page_one_indexed(manual_pdf):
    extracted = extract_pdf(manual_pdf)

    assert extracted.page_count == 4
    assert sorted(extracted.page_texts) == [1, 2, 3, 4]
    assert extracted.page_texts[2].startswith("ENGINE OIL")
    assert "5000 miles" in extracted.page_texts[2]
    assert extracted.pages_with_text == 4


def test_full_text_joins_pages_with_blank_line(manual_pdf):
    extracted = extract_pdf(manual_pdf)
    assert extracted.full_text == "\n\n".join(extracted.page_texts[p] for p in range(1, 5))


def test_page_without_text_is_empty_and_skipped_in_full_text():
    data = make_pdf([["FIRST PAGE", "Some text here."], [], ["Last page text."]])
    extracted = extract_pdf(data)

    assert extracted.page_count == 3
    assert extracted.page_texts[2] == ""
    assert extracted.pages_with_text == 2
    assert "\n\n\n\n" not in extracted.full_text


def test_metadata_title(manual_pdf):
    assert extract_pdf(manual_pdf).metadata["title"] == "Owner's Manual"


def test_corrupt_bytes_are_unreadable():
    with pytest.raises(DocumentUnreadable):
        extract_pdf(b"this is definitely not a pdf file")


def test_empty_bytes_are_unreadable():
    with pytest.raises(DocumentUnreadable) as excinfo:
        extract_pdf(b"")
    assert isinstance(excinfo.value, IngestError)


class _ZeroPageDoc:
    metadata = {}

    def __len__(self):
        return 0

    def close(self):
        pass


def test_zero_pages_is_empty(monkeypatch):
    monkeypatch.setattr(fitz, "open", lambda *args, **kwargs: _ZeroPageDoc())
    with pytest.raises(DocumentEmpty):
        extract_pdf(b"%PDF-1.7 zero pages")


def test_normalize_trims_lines_and_drops_blank_ones():
    assert normalize_page_text("  ENGINE OIL  \n\n   Check level.  \n") == "ENGINE OIL\nCheck level."


def test_normalize_fixes_ligatures_and_hyphenation():
    raw = "Use the ﬁlter with lubri-\ncant — see “specs”"
    assert normalize_page_text(raw) == 'Use the filter with lubricant -- see "specs"'


def test_search_pages_ignores_case(manual_pdf):
    assert search_pages(manual_pdf, "TOUCHSCREEN") == [3]
    assert search_pages(manual_pdf, "windshield") == []


def test_extract_page_range_skips_out_of_range_pages(manual_pdf):
    text = extract_page_range(manual_pdf, 3, 9)
    assert text.startswith("INFOTAINMENT SYSTEM")
    assert "TIRE PRESSURE" in text
    assert "ENGINE OIL" not in text
