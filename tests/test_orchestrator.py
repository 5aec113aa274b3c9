"""
End-to-end tests for ingestion and querying through RagOrchestrator.

Async code is driven with asyncio.run; the generator is a ScriptedBackend.
"""

import asyncio
import threading

import fitz
import pytest

from conftest import DictEmbedding, LexiconTagger, ScriptedBackend, answer_json
from manual_rag.errors import (
    DocumentEmpty, DocumentNotFound, DocumentUnreadable, GeneratorFailed, GeneratorTimeout,
    GeneratorUnavailable, NoRelevantContent, NotProcessed, QueryError,
)
from manual_rag.generator import AnswerGenerator, AvailabilityState
from manual_rag.models import Document, VehicleInfo
from manual_rag.orchestrator import RagOrchestrator

QUESTION = "How often should I change the oil?"


def _orchestrator(store, backend, tagger, ready=True, **kwargs) -> RagOrchestrator:
    orchestrator = RagOrchestrator(store, AnswerGenerator(backend), tagger, **kwargs)
    if ready:
        asyncio.run(orchestrator.refresh_availability())
    return orchestrator


# ==================== INGESTION ====================

def test_ingest_builds_and_persists_processed_document(store, backend, tagger, manual_pdf):
    rag = _orchestrator(store, backend, tagger)
    doc = asyncio.run(rag.ingest(manual_pdf, "owners-manual.pdf",
                                 vehicle=VehicleInfo(make="Toyota", model="Corolla", year=2021)))

    assert doc.processed
    assert doc.page_count == 4
    assert doc.file_size == len(manual_pdf)
    assert [c.heading for c in doc.chunks] == [
        "INTRODUCTION", "ENGINE OIL", "INFOTAINMENT SYSTEM", "TIRE PRESSURE"
    ]
    assert [c.position for c in doc.chunks] == [0, 1, 2, 3]
    assert [c.page_numbers for c in doc.chunks] == [[1], [2], [3], [4]]
    assert all(c.keywords for c in doc.chunks)
    assert all(c.document_id == doc.id for c in doc.chunks)
    assert all(c.embedding is None for c in doc.chunks)

    stored = store.get_document(doc.id)
    assert stored.processed
    assert [c.content for c in stored.chunks] == [c.content for c in doc.chunks]
    assert stored.display_name == "owners-manual.pdf (2021 Toyota Corolla)"


def test_ingest_precomputes_embeddings_when_available(store, backend, tagger, manual_pdf):
    embeddings = DictEmbedding({"engine": [1.0, 0.0], "touchscreen": [0.0, 1.0]})
    rag = _orchestrator(store, backend, tagger, embeddings=embeddings)
    doc = asyncio.run(rag.ingest(manual_pdf, "manual.pdf"))

    oil = next(c for c in doc.chunks if c.heading == "ENGINE OIL")
    assert oil.embedding == pytest.approx([1.0, 0.0])
    assert store.get_document(doc.id).chunks[1].embedding == pytest.approx([1.0, 0.0])


def test_corrupt_pdf_persists_nothing(store, backend, tagger):
    rag = _orchestrator(store, backend, tagger)
    with pytest.raises(DocumentUnreadable):
        asyncio.run(rag.ingest(b"not a pdf at all", "broken.pdf"))
    assert rag.list_documents() == []


class _ZeroPageDoc:
    metadata = {}

    def __len__(self):
        return 0

    def close(self):
        pass


def test_zero_page_pdf_persists_nothing(store, backend, tagger, monkeypatch):
    rag = _orchestrator(store, backend, tagger)
    monkeypatch.setattr(fitz, "open", lambda *args, **kwargs: _ZeroPageDoc())
    with pytest.raises(DocumentEmpty):
        asyncio.run(rag.ingest(b"%PDF-1.7", "empty.pdf"))
    assert rag.list_documents() == []


def test_reingesting_same_bytes_is_deterministic(store, backend, tagger, manual_pdf):
    rag = _orchestrator(store, backend, tagger)
    first = asyncio.run(rag.ingest(manual_pdf, "a.pdf"))
    second = asyncio.run(rag.ingest(manual_pdf, "b.pdf"))

    assert len(first.chunks) == len(second.chunks)
    assert [c.content for c in first.chunks] == [c.content for c in second.chunks]
    assert [c.keywords for c in first.chunks] == [c.keywords for c in second.chunks]
    assert [c.page_numbers for c in first.chunks] == [c.page_numbers for c in second.chunks]
    assert first.id != second.id


class _BlockingTagger(LexiconTagger):
    """Holds every tagging call until `release` is set."""

    def __init__(self):
        self.started = threading.Event()
        self.release = threading.Event()

    def tag(self, text):
        self.started.set()
        self.release.wait(5)
        return super().tag(text)


def test_cancelled_ingest_persists_nothing(store, backend, manual_pdf):
    tagger = _BlockingTagger()
    rag = _orchestrator(store, backend, tagger)

    async def cancel_mid_ingest():
        task = asyncio.create_task(rag.ingest(manual_pdf, "slow.pdf"))
        assert await asyncio.to_thread(tagger.started.wait, 5)
        task.cancel()
        tagger.release.set()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(cancel_mid_ingest())
    assert rag.list_documents() == []
    assert store.find_document_by_name("slow.pdf") is None


# ==================== AVAILABILITY ====================

def test_availability_starts_checking_and_changes_only_on_refresh(store, tagger):
    backend = ScriptedBackend([answer_json()], state=AvailabilityState.DISABLED)
    rag = _orchestrator(store, backend, tagger, ready=False)
    assert rag.availability is AvailabilityState.CHECKING
    assert backend.probes == 0

    assert asyncio.run(rag.check_generator_availability()) is AvailabilityState.DISABLED
    backend.state = AvailabilityState.AVAILABLE
    assert rag.availability is AvailabilityState.DISABLED

    assert asyncio.run(rag.refresh_availability()) is AvailabilityState.AVAILABLE
    assert backend.probes == 2


def test_probe_exception_means_unavailable(store, tagger):
    class Broken(ScriptedBackend):
        def probe(self):
            raise RuntimeError("boom")

    rag = _orchestrator(store, Broken(), tagger, ready=False)
    assert asyncio.run(rag.refresh_availability()) is AvailabilityState.UNAVAILABLE


# ==================== QUERYING ====================

def test_query_answers_and_records(store, backend, tagger, manual_pdf):
    rag = _orchestrator(store, backend, tagger)
    doc = asyncio.run(rag.ingest(manual_pdf, "owners-manual.pdf"))

    record = asyncio.run(rag.query(QUESTION, doc))

    assert record.answer == "Change the oil every 5,000 miles."
    assert record.confidence == "high"
    assert record.source_pages == [2]
    assert record.chunks[0].heading == "ENGINE OIL"
    assert len(record.chunks) == 4          # fewer chunks than top_k

    expected = rag.retriever.retrieve(QUESTION, doc.chunks, 5)
    mean = sum(r.relevance_score for r in expected) / len(expected)
    assert record.relevance_score == pytest.approx(mean)

    system, prompt = backend.calls[0]
    assert "expert automotive assistant" in system
    assert "owners-manual.pdf" in prompt
    assert QUESTION in prompt
    assert "Section: ENGINE OIL" in prompt
    assert "Pages: 2" in prompt

    [stored] = rag.query_history(doc.id)
    assert stored.id == record.id
    assert stored.chunk_ids == record.chunk_ids


def test_query_respects_top_k(store, backend, tagger, manual_pdf):
    rag = _orchestrator(store, backend, tagger, top_k=2)
    doc = asyncio.run(rag.ingest(manual_pdf, "manual.pdf"))
    assert len(asyncio.run(rag.query(QUESTION, doc)).chunks) == 2


def test_unprocessed_document_is_rejected(store, backend, tagger):
    rag = _orchestrator(store, backend, tagger)
    doc = Document(name="pending.pdf", processed=False)

    with pytest.raises(NotProcessed):
        asyncio.run(rag.query(QUESTION, doc))
    assert backend.calls == []
    assert rag.query_history() == []


def test_query_requires_available_generator(store, tagger, manual_pdf):
    backend = ScriptedBackend([answer_json()], state=AvailabilityState.DISABLED)
    rag = _orchestrator(store, backend, tagger, ready=False)
    doc = asyncio.run(rag.ingest(manual_pdf, "manual.pdf"))

    with pytest.raises(GeneratorUnavailable) as excinfo:
        asyncio.run(rag.query(QUESTION, doc))
    assert excinfo.value.state is AvailabilityState.CHECKING

    asyncio.run(rag.refresh_availability())
    with pytest.raises(GeneratorUnavailable) as excinfo:
        asyncio.run(rag.query(QUESTION, doc))
    assert excinfo.value.state is AvailabilityState.DISABLED
    assert excinfo.value.suggestion == AvailabilityState.DISABLED.remediation
    assert backend.calls == []


def test_document_without_chunks_has_no_relevant_content(store, backend, tagger):
    rag = _orchestrator(store, backend, tagger)
    doc = Document(name="scanned.pdf", processed=True, chunks=[])

    with pytest.raises(NoRelevantContent) as excinfo:
        asyncio.run(rag.query(QUESTION, doc))
    assert "rephrasing" in excinfo.value.suggestion
    assert backend.calls == []


def test_generator_failure_records_nothing(store, tagger, manual_pdf):
    backend = ScriptedBackend([RuntimeError("rate limited")])
    rag = _orchestrator(store, backend, tagger)
    doc = asyncio.run(rag.ingest(manual_pdf, "manual.pdf"))

    with pytest.raises(GeneratorFailed, match="rate limited"):
        asyncio.run(rag.query(QUESTION, doc))
    assert rag.query_history(doc.id) == []


def test_malformed_answer_records_nothing(store, tagger, manual_pdf):
    backend = ScriptedBackend(["Every 5000 miles, probably."])
    rag = _orchestrator(store, backend, tagger)
    doc = asyncio.run(rag.ingest(manual_pdf, "manual.pdf"))

    with pytest.raises(GeneratorFailed):
        asyncio.run(rag.query(QUESTION, doc))
    assert rag.query_history(doc.id) == []


def test_slow_generator_times_out(store, tagger, manual_pdf):
    backend = ScriptedBackend([answer_json()], delay=0.5)
    rag = _orchestrator(store, backend, tagger, generation_timeout=0.05)
    doc = asyncio.run(rag.ingest(manual_pdf, "manual.pdf"))

    with pytest.raises(GeneratorTimeout) as excinfo:
        asyncio.run(rag.query(QUESTION, doc))
    assert isinstance(excinfo.value, GeneratorFailed)
    assert rag.query_history(doc.id) == []


# ==================== CONSUMER API ====================

def test_query_document_by_id(store, backend, tagger, manual_pdf):
    rag = _orchestrator(store, backend, tagger)
    doc = asyncio.run(rag.ingest_document(manual_pdf, "manual.pdf"))

    record = asyncio.run(rag.query_document(QUESTION, doc.id))
    assert record.document_id == doc.id

    with pytest.raises(DocumentNotFound) as excinfo:
        asyncio.run(rag.query_document(QUESTION, "missing"))
    assert isinstance(excinfo.value, QueryError)
    assert "Upload" in excinfo.value.suggestion


def test_delete_document_removes_history(store, backend, tagger, manual_pdf):
    rag = _orchestrator(store, backend, tagger)
    doc = asyncio.run(rag.ingest_document(manual_pdf, "manual.pdf"))
    asyncio.run(rag.query(QUESTION, doc))

    assert rag.retriever.cached_chunks == len(doc.chunks)

    assert rag.delete_document(doc.id) is True
    assert rag.list_documents() == []
    assert rag.query_history() == []
    assert rag.retriever.cached_chunks == 0
    assert rag.delete_document(doc.id) is False


def test_general_question_is_not_recorded(store, tagger):
    backend = ScriptedBackend(["Most cars need an oil change every 5,000 to 7,500 miles."])
    rag = _orchestrator(store, backend, tagger)

    text = asyncio.run(rag.answer_general_question("How often do cars need oil changes?"))
    assert text.startswith("Most cars")
    assert rag.query_history() == []


def test_general_question_requires_available_generator(store, tagger):
    rag = _orchestrator(store, ScriptedBackend(["x"]), tagger, ready=False)
    with pytest.raises(GeneratorUnavailable):
        asyncio.run(rag.answer_general_question("Hello?"))
