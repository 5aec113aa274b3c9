"""
orchestrator.py — Ingest manuals, answer questions about them
==============================================================

The full pipeline, end to end:

  INGEST   PDF bytes → pages → sections → chunks (+ keywords, + embedding)
           → one atomic write with processed=True

  QUERY    question → readiness check → hybrid retrieval (top 5)
           → numbered context → structured answer → QueryRecord

Concurrency:
  Everything CPU-bound (extraction, tagging, chunking) runs in worker
  threads via asyncio.to_thread, so an event loop serving other requests
  never blocks on a 300-page manual. Sections are independent and are
  processed concurrently; positions are assigned in section order only
  after all of them are done, so the result is deterministic.

Failure policy:
  - An ingestion either persists the whole Document or nothing.
  - A query either persists a QueryRecord or raises a QueryError.
    There is no fallback answer; errors carry a `suggestion` for the user.
  - Nothing is retried here.

Generator readiness:
  AvailabilityState starts in CHECKING and only changes when
  refresh_availability() is called. query() refuses to run unless the
  state is AVAILABLE.
"""

import asyncio
import logging
import time

from manual_rag.chunkers import DEFAULT_PROFILE, ChunkingProfile, PassageChunker, assign_positions
from manual_rag.embedder import EmbeddingProvider
from manual_rag.errors import (
    DocumentNotFound, GeneratorTimeout, GeneratorUnavailable, NoRelevantContent, NotProcessed,
)
from manual_rag.generator import (
    AnswerGenerator, AvailabilityState, build_context_block, build_user_message,
)
from manual_rag.hybrid import HybridRetriever
from manual_rag.keywords import KeywordExtractor, PosTagger
from manual_rag.models import Chunk, Document, QueryRecord, VehicleInfo
from manual_rag.pdf_parser import extract_pdf
from manual_rag.sections import Section, split_sections
from manual_rag.store import ManualStore

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 5
DEFAULT_GENERATION_TIMEOUT = 30.0


class RagOrchestrator:
    """Owns the pipeline; the store, generator, tagger and embeddings are injected."""

    def __init__(
        self,
        store: ManualStore,
        generator: AnswerGenerator,
        tagger: PosTagger,
        embeddings: EmbeddingProvider | None = None,
        profile: ChunkingProfile = DEFAULT_PROFILE,
        top_k: int = DEFAULT_TOP_K,
        generation_timeout: float = DEFAULT_GENERATION_TIMEOUT,
    ):
        self.store = store
        self.generator = generator
        self.chunker = PassageChunker(profile)
        self.keyword_extractor = KeywordExtractor(tagger)
        self.retriever = HybridRetriever(tagger, embeddings)
        self.top_k = top_k
        self.generation_timeout = generation_timeout
        self._availability = AvailabilityState.CHECKING

    # ==================== AVAILABILITY ====================

    @property
    def availability(self) -> AvailabilityState:
        return self._availability

    async def refresh_availability(self) -> AvailabilityState:
        """Re-probe the generator. The only way the state ever changes."""
        self._availability = AvailabilityState.CHECKING
        try:
            state = await asyncio.to_thread(self.generator.probe)
        except Exception as e:
            logger.error("Availability probe for %s raised: %s", self.generator.name, e)
            state = AvailabilityState.UNAVAILABLE
        self._availability = state
        logger.info("Generator %s is %s", self.generator.name, state.value)
        return state

    def _require_generator(self):
        if not self._availability.is_available:
            raise GeneratorUnavailable(self._availability)

    async def _generate(self, fn, prompt: str):
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn, prompt),
                                          timeout=self.generation_timeout)
        except asyncio.TimeoutError:
            logger.error("Generation timed out after %.1fs", self.generation_timeout)
            raise GeneratorTimeout(self.generation_timeout) from None

    # ==================== INGESTION ====================

    def _process_section(self, section: Section, page_texts: dict[int, str]) -> list[Chunk]:
        chunks = self.chunker.chunk_section(section, page_texts)
        for chunk in chunks:
            chunk.keywords = self.keyword_extractor.extract(chunk.content)
            if self.retriever.embeddings is not None:
                chunk.embedding = self.retriever.chunk_embedding(chunk.content)
        return chunks

    async def ingest(self, data: bytes, name: str, vehicle: VehicleInfo | None = None,
                     metadata: dict | None = None) -> Document:
        """
        Turn PDF bytes into a processed, persisted Document.

        Raises DocumentUnreadable / DocumentEmpty / PersistenceFailed.
        On any failure nothing is persisted.
        """
        t0 = time.perf_counter()
        try:
            extracted = await asyncio.to_thread(extract_pdf, data)
            sections = split_sections(extracted.full_text)
            per_section = await asyncio.gather(*(
                asyncio.to_thread(self._process_section, s, extracted.page_texts)
                for s in sections
            ))
            chunks = assign_positions(list(per_section))
        except Exception as e:
            logger.error("Processing %r failed: %s", name, e)
            raise

        if not chunks:
            logger.warning("%r has %d pages but no extractable text", name, extracted.page_count)

        document = Document(
            name=name,
            full_text=extracted.full_text,
            page_count=extracted.page_count,
            chunks=chunks,
            vehicle=vehicle,
            processed=True,
            file_size=len(data),
            metadata={**extracted.metadata, **(metadata or {})},
        )
        for chunk in chunks:
            chunk.document_id = document.id

        await asyncio.to_thread(self.store.add_document, document)
        logger.info("Ingested %r: %d pages, %d sections, %d chunks in %.2fs",
                    name, document.page_count, len(sections), len(chunks),
                    time.perf_counter() - t0)
        return document

    # ==================== QUERYING ====================

    async def query(self, text: str, document: Document) -> QueryRecord:
        """
        Answer a question from one manual and record it.

        Raises NotProcessed, GeneratorUnavailable, NoRelevantContent,
        GeneratorFailed (GeneratorTimeout included) or PersistenceFailed.
        """
        if not document.processed:
            raise NotProcessed(document.name)
        self._require_generator()

        t0 = time.perf_counter()
        results = await asyncio.to_thread(self.retriever.retrieve, text, document.chunks, self.top_k)
        if not results:
            logger.info("No chunks to search in %r for %r", document.name, text[:80])
            raise NoRelevantContent()
        t_retrieve = time.perf_counter() - t0

        prompt = build_user_message(document.display_name, text, build_context_block(results))
        answer = await self._generate(self.generator.generate_answer, prompt)
        t_total = time.perf_counter() - t0

        record = QueryRecord(
            query=text,
            answer=answer.answer,
            document_id=document.id,
            chunks=[r.chunk for r in results],
            relevance_score=sum(r.relevance_score for r in results) / len(results),
            source_pages=list(answer.source_pages),
            confidence=answer.confidence.value,
            suggested_follow_ups=answer.suggested_follow_ups,
        )
        await asyncio.to_thread(self.store.add_query_record, record)
        logger.info("Answered %r from %d chunks (mean relevance %.3f, confidence %s) "
                    "retrieval %.2fs, total %.2fs",
                    text[:80], len(results), record.relevance_score, record.confidence,
                    t_retrieve, t_total)
        return record

    async def answer_general_question(self, text: str) -> str:
        """Free-text answer without a manual. Nothing is recorded."""
        self._require_generator()
        return await self._generate(self.generator.generate_text, text)

    # ==================== CONSUMER API ====================

    async def ingest_document(self, data: bytes, name: str, vehicle: VehicleInfo | None = None,
                              metadata: dict | None = None) -> Document:
        return await self.ingest(data, name, vehicle, metadata)

    async def query_document(self, text: str, document_id: str) -> QueryRecord:
        document = await asyncio.to_thread(self.store.get_document, document_id)
        if document is None:
            raise DocumentNotFound(document_id)
        return await self.query(text, document)

    async def check_generator_availability(self) -> AvailabilityState:
        return await self.refresh_availability()

    def delete_document(self, document_id: str) -> bool:
        document = self.store.get_document(document_id)
        if not self.store.delete_document(document_id):
            return False
        if document is not None:
            self.retriever.forget(c.id for c in document.chunks)
        return True

    def list_documents(self) -> list[Document]:
        return self.store.list_documents()

    def query_history(self, document_id: str | None = None) -> list[QueryRecord]:
        return self.store.list_query_records(document_id)


def build_orchestrator(settings=None, preset: str | None = None,
                       database_url: str | None = None) -> RagOrchestrator:
    """Wire a RagOrchestrator from Settings (environment / .env)."""
    from manual_rag.chunkers import get_profile
    from manual_rag.config import get_settings
    from manual_rag.embedder import create_embedding_provider
    from manual_rag.generator import backend_from_preset
    from manual_rag.keywords import SpacyTagger

    settings = settings or get_settings()
    backend = backend_from_preset(preset or settings.GENERATOR_PRESET,
                                  max_tokens=settings.MAX_OUTPUT_TOKENS,
                                  temperature=settings.TEMPERATURE)
    return RagOrchestrator(
        store=ManualStore(database_url or settings.DATABASE_URL),
        generator=AnswerGenerator(backend),
        tagger=SpacyTagger(settings.SPACY_MODEL),
        embeddings=create_embedding_provider(settings.EMBEDDING_BACKEND, settings.EMBEDDING_MODEL),
        profile=get_profile(settings.CHUNK_PROFILE),
        top_k=settings.RETRIEVAL_TOP_K,
        generation_timeout=settings.GENERATION_TIMEOUT,
    )
