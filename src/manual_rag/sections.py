"""
sections.py — Split a manual into heading-delimited sections
============================================================

Why sections:
  A chunk saying "Replace every 5,000 miles" is much more useful when we
  know it came from "ENGINE OIL" and not from "CABIN AIR FILTER". Sections
  give every chunk a heading to cite, and they keep chunks from straddling
  two unrelated topics.

How headings are detected:
  Manuals don't give us a structure tree, only lines of text. A line is a
  heading when it LOOKS like one:
    (a) ALL CAPS, shorter than 80 chars, no trailing "." or ","
    (b) starts with a digit ("4.2 Tire pressure"), same length/punctuation rules
    (c) mentions a typical manual keyword (WARNING, MAINTENANCE, ...)

  Rule (c) is deliberately loose: "CAUTION" boxes and "Note:" lines open a
  section of their own, which is how manuals tend to read anyway.
"""

from dataclasses import dataclass

HEADING_MAX_LEN = 80

HEADING_KEYWORDS = (
    "chapter", "section", "warning", "caution", "note",
    "maintenance", "specifications", "safety", "important",
    "introduction", "overview", "procedure", "operation",
)


@dataclass
class Section:
    """A run of manual text under one (optional) heading."""
    heading: str | None
    content: str

    def __repr__(self):
        preview = self.content[:60].replace('\n', ' ')
        return f"Section(heading={self.heading!r}, chars={len(self.content)}, preview={preview!r}...)"


def is_heading(line: str) -> bool:
    """True if a single line of text looks like a section heading."""
    line = line.strip()
    if not line:
        return False

    short = len(line) < HEADING_MAX_LEN
    unterminated = not line.endswith(('.', ','))
    all_caps = line.upper() == line and line.lower() != line
    starts_with_digit = line[0].isdigit()
    lowered = line.lower()
    has_keyword = any(k in lowered for k in HEADING_KEYWORDS)

    return ((all_caps and short and unterminated)
            or (starts_with_digit and short and unterminated)
            or has_keyword)


def split_sections(text: str) -> list[Section]:
    """
    Group lines under the most recent heading.

    Never returns an empty list for text with any content: if no heading
    is found, the whole text comes back as one unheaded section.
    """
    if not text.strip():
        return []

    sections = []
    heading = None
    lines: list[str] = []

    def close():
        content = '\n'.join(lines).strip()
        if content:
            sections.append(Section(heading=heading, content=content))

    for line in text.splitlines():
        if is_heading(line):
            close()
            heading = line.strip()
            lines = []
        else:
            lines.append(line)
    close()

    if not sections:
        return [Section(heading=None, content=text.strip())]
    return sections
