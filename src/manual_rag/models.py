"""
models.py — Domain objects: Document, Chunk, QueryRecord
=========================================================

Plain dataclasses. The store (store.py) maps them to database rows; nothing
else in the package knows about the database.

Lifecycle:
  - Document + Chunks are created together by one ingestion and written in
    one transaction with processed=True.
  - A QueryRecord is written only after a successful generation.
  - Deleting a Document deletes its Chunks and QueryRecords.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone


def new_id() -> str:
    return uuid.uuid4().hex


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class VehicleInfo:
    """Optional vehicle the manual belongs to."""
    make: str | None = None
    model: str | None = None
    year: int | None = None

    @property
    def label(self) -> str:
        parts = [str(self.year) if self.year else "", self.make or "", self.model or ""]
        return " ".join(p for p in parts if p)

    def is_empty(self) -> bool:
        return not (self.make or self.model or self.year)


@dataclass
class Chunk:
    """A bounded, citable passage of a manual."""
    content: str
    position: int = 0
    page_numbers: list[int] = field(default_factory=list)
    heading: str | None = None
    keywords: list[str] = field(default_factory=list)
    embedding: list[float] | None = None
    document_id: str | None = None
    id: str = field(default_factory=new_id)

    @property
    def token_count(self) -> int:
        # ~4 characters per token
        return len(self.content) // 4

    @property
    def char_count(self) -> int:
        return len(self.content)

    def __repr__(self):
        preview = self.content[:60].replace('\n', ' ')
        return (f"Chunk(pos={self.position}, pages={self.page_numbers}, "
                f"heading={self.heading!r}, text={preview!r}...)")


@dataclass
class Document:
    """An ingested manual with its chunks."""
    name: str
    full_text: str = ""
    page_count: int = 0
    chunks: list[Chunk] = field(default_factory=list)
    vehicle: VehicleInfo | None = None
    processed: bool = False
    processing_error: str | None = None
    file_size: int = 0
    metadata: dict = field(default_factory=dict)
    uploaded_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    @property
    def display_name(self) -> str:
        if self.vehicle and not self.vehicle.is_empty():
            return f"{self.name} ({self.vehicle.label})"
        return self.name

    def __repr__(self):
        return (f"Document(id={self.id[:8]}, name={self.name!r}, pages={self.page_count}, "
                f"chunks={len(self.chunks)}, processed={self.processed})")


@dataclass
class QueryRecord:
    """One answered question and the evidence it was answered from."""
    query: str
    answer: str
    document_id: str
    chunks: list[Chunk] = field(default_factory=list)
    relevance_score: float = 0.0
    source_pages: list[int] = field(default_factory=list)
    confidence: str = "low"
    suggested_follow_ups: list[str] | None = None
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    @property
    def chunk_ids(self) -> list[str]:
        return [c.id for c in self.chunks]
