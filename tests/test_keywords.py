"""
Tests for keyword extraction on top of a POS tagger.
"""

import pytest
import spacy

from manual_rag.keywords import (
    KEYWORD_TAGS, MAX_KEYWORDS, KeywordExtractor, SpacyTagger, content_words,
)


def test_ranked_by_frequency_ties_by_first_occurrence(tagger):
    text = ("Replace the filter. Replace the gasket. "
            "Check the filter and the gasket and the filter.")
    assert KeywordExtractor(tagger).extract(text) == ["filter", "replace", "gasket", "check"]


def test_short_words_and_stop_words_are_dropped(tagger):
    # "oil" is too short; "refer" and "page" are stop words; adjectives are not keywords
    text = "Refer to page 12. Drain the hot oil into the pan."
    assert KeywordExtractor(tagger).extract(text) == ["drain"]


def test_keywords_are_lower_cased(tagger):
    assert KeywordExtractor(tagger).extract("Coolant COOLANT coolant Radiator") == [
        "coolant", "radiator"
    ]


def test_at_most_ten_keywords(tagger):
    words = " ".join(f"widget{chr(97 + i)}" for i in range(15))
    keywords = KeywordExtractor(tagger).extract(words)
    assert len(keywords) == MAX_KEYWORDS
    assert keywords[0] == "widgeta"


def test_deterministic(tagger):
    text = "Inspect the brake pads. Replace worn brake pads. Inspect the rotors."
    extractor = KeywordExtractor(tagger)
    assert extractor.extract(text) == extractor.extract(text)


def test_empty_text(tagger):
    assert KeywordExtractor(tagger).extract("") == []


def test_content_words_filters_by_tag_and_length():
    tagged = [("Tire", "NOUN"), ("is", "AUX"), ("low", "ADJ"), ("Rotate", "VERB"), ("car", "NOUN")]
    assert content_words(tagged, KEYWORD_TAGS, 4) == ["tire", "rotate"]


@pytest.mark.skipif(not spacy.util.is_package("en_core_web_sm"),
                    reason="en_core_web_sm not installed")
def test_spacy_tagger_tags_nouns_and_verbs():
    tagged = dict(SpacyTagger("en_core_web_sm").tag("Replace the engine oil filter."))
    assert tagged["Replace"] == "VERB"
    assert tagged["filter"] == "NOUN"
    assert "." not in tagged
