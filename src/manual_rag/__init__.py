"""
Manual RAG
==========
Question answering over vehicle owner's manuals, built piece by piece.

Modules:
  1. pdf_parser   — PDF ingestion, per-page text cleaning
  2. sections     — Heading detection, section splitting
  3. chunkers     — Sentence-boundary chunking with overlap, page attribution
  4. keywords     — POS tagging (spaCy) and keyword extraction
  5. embedder     — Word vectors for semantic scoring
  6. hybrid       — Keyword + embedding retrieval
  7. generator    — LLM backends, structured answers, availability
  8. store        — SQLAlchemy persistence for documents and answers
  9. orchestrator — Ingest and query, end to end

Usage:
  uv run manual-parse manual.pdf               # parse & show structure
  uv run manual-ask manual.pdf "question"      # ask with citations
"""
