"""
store.py — Persistent store for manuals, chunks and answered questions
======================================================================

SQLAlchemy ORM over any SQL database (SQLite by default). The rest of the
package works with the dataclasses in models.py; rows never leave this
module.

Tables:
  documents             one row per ingested manual
  chunks                passages, FK → documents (ON DELETE CASCADE)
  query_records         answered questions, FK → documents (ON DELETE CASCADE)
  query_record_chunks   which chunks an answer was built from, in rank order

Guarantees:
  - add_document writes the document and ALL its chunks in one transaction.
    Either everything is there afterwards or nothing is.
  - delete_document removes the document, its chunks and its query records.
  - Any database error comes out as PersistenceFailed.

Usage:
  store = ManualStore("sqlite:///manual_rag.db")
  store.add_document(doc)
  doc = store.get_document(doc.id)
"""

import logging
from contextlib import contextmanager

from sqlalchemy import (
    JSON, Boolean, Column, DateTime, ForeignKey, Float, Index, Integer, String, Table, Text,
    create_engine, event, insert, select,
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import declarative_base, relationship, selectinload, sessionmaker

from manual_rag.errors import PersistenceFailed
from manual_rag.models import Chunk, Document, QueryRecord, VehicleInfo

logger = logging.getLogger(__name__)

Base = declarative_base()


# ==================== TABLES ====================

query_record_chunks = Table(
    "query_record_chunks",
    Base.metadata,
    Column("query_record_id", String(32), ForeignKey("query_records.id", ondelete="CASCADE"),
           primary_key=True),
    Column("chunk_id", String(32), ForeignKey("chunks.id", ondelete="CASCADE"),
           primary_key=True),
    # position of the chunk in the ranked evidence, 0 = best
    Column("rank", Integer, nullable=False),
)


class DocumentRow(Base):
    __tablename__ = "documents"

    id = Column(String(32), primary_key=True)
    name = Column(String(512), nullable=False, index=True)
    full_text = Column(Text, nullable=False, default="")
    page_count = Column(Integer, nullable=False, default=0)
    file_size = Column(Integer, nullable=False, default=0)
    processed = Column(Boolean, nullable=False, default=False)
    processing_error = Column(Text, nullable=True)
    vehicle_make = Column(String(128), nullable=True)
    vehicle_model = Column(String(128), nullable=True)
    vehicle_year = Column(Integer, nullable=True)
    # "metadata" is reserved on declarative classes
    pdf_metadata = Column("metadata", JSON, nullable=False, default=dict)
    uploaded_at = Column(DateTime(timezone=True), nullable=False)

    chunks = relationship("ChunkRow", back_populates="document", order_by="ChunkRow.position",
                          cascade="all, delete-orphan", passive_deletes=True)
    query_records = relationship("QueryRecordRow", back_populates="document",
                                 cascade="all, delete-orphan", passive_deletes=True)


class ChunkRow(Base):
    __tablename__ = "chunks"

    id = Column(String(32), primary_key=True)
    document_id = Column(String(32), ForeignKey("documents.id", ondelete="CASCADE"),
                         nullable=False, index=True)
    position = Column(Integer, nullable=False)
    content = Column(Text, nullable=False)
    heading = Column(Text, nullable=True)
    page_numbers = Column(JSON, nullable=False, default=list)
    keywords = Column(JSON, nullable=False, default=list)
    embedding = Column(JSON, nullable=True)

    document = relationship("DocumentRow", back_populates="chunks")

    __table_args__ = (
        Index("ix_chunks_doc_position", "document_id", "position"),
    )


class QueryRecordRow(Base):
    __tablename__ = "query_records"

    id = Column(String(32), primary_key=True)
    document_id = Column(String(32), ForeignKey("documents.id", ondelete="CASCADE"),
                         nullable=False, index=True)
    query = Column(Text, nullable=False)
    answer = Column(Text, nullable=False)
    relevance_score = Column(Float, nullable=False, default=0.0)
    source_pages = Column(JSON, nullable=False, default=list)
    confidence = Column(String(16), nullable=False, default="low")
    suggested_follow_ups = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    document = relationship("DocumentRow", back_populates="query_records")
    chunks = relationship("ChunkRow", secondary=query_record_chunks,
                          order_by=query_record_chunks.c.rank, viewonly=True)


# ==================== ROW <-> MODEL ====================

def _chunk_to_row(chunk: Chunk, document_id: str) -> ChunkRow:
    return ChunkRow(
        id=chunk.id,
        document_id=document_id,
        position=chunk.position,
        content=chunk.content,
        heading=chunk.heading,
        page_numbers=list(chunk.page_numbers),
        keywords=list(chunk.keywords),
        embedding=list(chunk.embedding) if chunk.embedding is not None else None,
    )


def _chunk_from_row(row: ChunkRow) -> Chunk:
    return Chunk(
        id=row.id,
        document_id=row.document_id,
        position=row.position,
        content=row.content,
        heading=row.heading,
        page_numbers=list(row.page_numbers or []),
        keywords=list(row.keywords or []),
        embedding=list(row.embedding) if row.embedding is not None else None,
    )


def _document_from_row(row: DocumentRow, with_chunks: bool = True) -> Document:
    vehicle = None
    if row.vehicle_make or row.vehicle_model or row.vehicle_year:
        vehicle = VehicleInfo(make=row.vehicle_make, model=row.vehicle_model,
                              year=row.vehicle_year)
    return Document(
        id=row.id,
        name=row.name,
        full_text=row.full_text,
        page_count=row.page_count,
        file_size=row.file_size,
        processed=row.processed,
        processing_error=row.processing_error,
        vehicle=vehicle,
        metadata=dict(row.pdf_metadata or {}),
        uploaded_at=row.uploaded_at,
        chunks=[_chunk_from_row(c) for c in row.chunks] if with_chunks else [],
    )


def _record_from_row(row: QueryRecordRow) -> QueryRecord:
    return QueryRecord(
        id=row.id,
        document_id=row.document_id,
        query=row.query,
        answer=row.answer,
        relevance_score=row.relevance_score,
        source_pages=list(row.source_pages or []),
        confidence=row.confidence,
        suggested_follow_ups=(list(row.suggested_follow_ups)
                              if row.suggested_follow_ups is not None else None),
        created_at=row.created_at,
        chunks=[_chunk_from_row(c) for c in row.chunks],
    )


# ==================== STORE ====================

def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class ManualStore:
    """Documents, chunks and query records behind one SQLAlchemy engine."""

    def __init__(self, url: str = "sqlite:///manual_rag.db", echo: bool = False):
        self.url = url
        kwargs = {"echo": echo}
        if url.startswith("sqlite"):
            # sessions are opened from worker threads
            kwargs["connect_args"] = {"check_same_thread": False}
        try:
            self.engine = create_engine(url, **kwargs)
            if self.engine.dialect.name == "sqlite":
                event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            raise PersistenceFailed("open the database", str(e)) from e
        self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)
        logger.info("Store ready: %s", self.engine.url.render_as_string(hide_password=True))

    @contextmanager
    def _session(self, operation: str):
        session = self._sessions()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Database error during %s: %s", operation, e)
            raise PersistenceFailed(operation, str(e)) from e
        except BaseException:
            session.rollback()
            raise
        finally:
            session.close()

    # ---------- documents ----------

    def add_document(self, document: Document) -> Document:
        """Write a document and every one of its chunks atomically."""
        with self._session("save the document") as session:
            vehicle = document.vehicle or VehicleInfo()
            row = DocumentRow(
                id=document.id,
                name=document.name,
                full_text=document.full_text,
                page_count=document.page_count,
                file_size=document.file_size,
                processed=document.processed,
                processing_error=document.processing_error,
                vehicle_make=vehicle.make,
                vehicle_model=vehicle.model,
                vehicle_year=vehicle.year,
                pdf_metadata=dict(document.metadata),
                uploaded_at=document.uploaded_at,
            )
            row.chunks = [_chunk_to_row(c, document.id) for c in document.chunks]
            session.add(row)
        for chunk in document.chunks:
            chunk.document_id = document.id
        logger.info("Saved document %s (%s) with %d chunks",
                    document.id[:8], document.name, len(document.chunks))
        return document

    def get_document(self, document_id: str) -> Document | None:
        with self._session("load the document") as session:
            row = session.get(DocumentRow, document_id, options=[selectinload(DocumentRow.chunks)])
            return _document_from_row(row) if row is not None else None

    def find_document_by_name(self, name: str) -> Document | None:
        """Most recently uploaded document with this name."""
        with self._session("find the document") as session:
            stmt = (select(DocumentRow).where(DocumentRow.name == name)
                    .order_by(DocumentRow.uploaded_at.desc()).limit(1)
                    .options(selectinload(DocumentRow.chunks)))
            row = session.scalars(stmt).first()
            return _document_from_row(row) if row is not None else None

    def list_documents(self) -> list[Document]:
        """All documents, newest first, without their chunks."""
        with self._session("list documents") as session:
            rows = session.scalars(select(DocumentRow).order_by(DocumentRow.uploaded_at.desc()))
            return [_document_from_row(r, with_chunks=False) for r in rows]

    def delete_document(self, document_id: str) -> bool:
        """Delete a document with its chunks and query records. False if it did not exist."""
        with self._session("delete the document") as session:
            row = session.get(DocumentRow, document_id)
            if row is None:
                return False
            session.delete(row)
        logger.info("Deleted document %s", document_id[:8])
        return True

    # ---------- query records ----------

    def add_query_record(self, record: QueryRecord) -> QueryRecord:
        with self._session("save the query record") as session:
            row = QueryRecordRow(
                id=record.id,
                document_id=record.document_id,
                query=record.query,
                answer=record.answer,
                relevance_score=record.relevance_score,
                source_pages=list(record.source_pages),
                confidence=record.confidence,
                suggested_follow_ups=(list(record.suggested_follow_ups)
                                      if record.suggested_follow_ups is not None else None),
                created_at=record.created_at,
            )
            session.add(row)
            if record.chunk_ids:
                session.flush()
                session.execute(insert(query_record_chunks), [
                    {"query_record_id": record.id, "chunk_id": chunk_id, "rank": rank}
                    for rank, chunk_id in enumerate(record.chunk_ids)
                ])
        return record

    def list_query_records(self, document_id: str | None = None) -> list[QueryRecord]:
        """Query records, oldest first, optionally for one document."""
        with self._session("list query records") as session:
            stmt = (select(QueryRecordRow).order_by(QueryRecordRow.created_at)
                    .options(selectinload(QueryRecordRow.chunks)))
            if document_id is not None:
                stmt = stmt.where(QueryRecordRow.document_id == document_id)
            return [_record_from_row(r) for r in session.scalars(stmt)]

    def close(self):
        self.engine.dispose()
