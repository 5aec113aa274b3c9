"""
ask.py — Owner's manual Q&A: question in, cited answer out
===========================================================

Usage:
  uv run manual-ask manuals/corolla-2021.pdf "How often should I change the oil?"

  # Switch models with --model
  uv run manual-ask manuals/corolla-2021.pdf "query" --model claude
  uv run manual-ask manuals/corolla-2021.pdf "query" --model llama3

  # Interactive mode (keep asking without re-ingesting)
  uv run manual-ask manuals/corolla-2021.pdf --model gpt4o-mini

  # Store somewhere else / name the manual
  uv run manual-ask manual.pdf --db sqlite:///garage.db --name "Corolla 2021"

  # List available presets
  uv run manual-ask --list-models

A manual is ingested once: if the database already holds a processed
document with the same name, it is reused.
"""

import asyncio
import sys
from pathlib import Path

from manual_rag.config import get_settings
from manual_rag.errors import ManualRagError, QueryError
from manual_rag.generator import AnswerGenerator, backend_from_preset, list_presets
from manual_rag.logging_setup import setup_logging
from manual_rag.models import Document, QueryRecord
from manual_rag.orchestrator import RagOrchestrator, build_orchestrator


def parse_args(argv: list[str]) -> dict:
    """
    Simple arg parser (no argparse dependency for clarity).

    Parses:
      manual-ask <manual.pdf> [query] [--model preset] [--db url] [--name name] [--list-models]
    """
    args = {
        "filepath": None,
        "query": None,
        "model": None,       # None → GENERATOR_PRESET
        "db": None,          # None → DATABASE_URL
        "name": None,
        "list_models": False,
    }
    valued = {"--model": "model", "--db": "db", "--name": "name"}

    positional = []
    i = 0
    while i < len(argv):
        if argv[i] in valued and i + 1 < len(argv):
            args[valued[argv[i]]] = argv[i + 1]
            i += 2
        elif argv[i] == "--list-models":
            args["list_models"] = True
            i += 1
        elif argv[i].startswith("--"):
            i += 1  # skip unknown flags
        else:
            positional.append(argv[i])
            i += 1

    if len(positional) >= 1:
        args["filepath"] = positional[0]
    if len(positional) >= 2:
        args["query"] = positional[1]

    return args


def print_record(record: QueryRecord):
    """Pretty-print an answer with its evidence."""
    print(f"\n{'='*70}")
    print(f"  ANSWER  (confidence: {record.confidence})")
    print(f"{'='*70}\n")
    print(record.answer)

    if record.source_pages:
        print(f"\n  Source pages: {', '.join(str(p) for p in record.source_pages)}")

    print(f"\n  Evidence ({len(record.chunks)} chunks, mean relevance {record.relevance_score:.3f}):")
    for i, chunk in enumerate(record.chunks, 1):
        heading = (chunk.heading or "—")[:40]
        pages = ", ".join(str(p) for p in chunk.page_numbers) or "?"
        print(f"    [{i}] {heading:<40} pages {pages}")

    if record.suggested_follow_ups:
        print("\n  You might also ask:")
        for q in record.suggested_follow_ups:
            print(f"    - {q}")
    print()


def print_error(error: ManualRagError):
    print(f"\n  ✗ {error}")
    if error.suggestion:
        print(f"    Suggestion: {error.suggestion}")


async def load_document(orchestrator: RagOrchestrator, filepath: Path, name: str) -> Document:
    existing = orchestrator.store.find_document_by_name(name)
    if existing is not None and existing.processed:
        print(f"\n  Using stored manual {name!r} ({len(existing.chunks)} chunks)")
        return existing

    print(f"\n  Ingesting {filepath.name}...")
    document = await orchestrator.ingest_document(filepath.read_bytes(), name)
    print(f"  {document.page_count} pages, {len(document.chunks)} chunks")
    return document


async def ask(query: str, orchestrator: RagOrchestrator, document: Document):
    """Run the full pipeline for a single question."""
    print(f"\n{'─'*70}")
    print(f"  Retrieving and generating...")
    try:
        record = await orchestrator.query(query, document)
    except QueryError as e:
        print_error(e)
        return None
    print_record(record)
    return record


async def run(args: dict) -> int:
    settings = get_settings()
    filepath = Path(args["filepath"])
    if not filepath.exists():
        print(f"PDF not found: {filepath}")
        return 1

    preset = args["model"] or settings.GENERATOR_PRESET
    name = args["name"] or filepath.stem

    print(f"\n{'='*70}")
    print(f"  OWNER'S MANUAL ASSISTANT")
    print(f"  Manual: {filepath.name}")
    print(f"  Model:  {preset}")
    print(f"{'='*70}")

    try:
        orchestrator = build_orchestrator(settings, preset=preset, database_url=args["db"])
        document = await load_document(orchestrator, filepath, name)
    except ManualRagError as e:
        print_error(e)
        return 1

    state = await orchestrator.check_generator_availability()
    if not state.is_available:
        print(f"\n  ⚠ {state.message}\n    {state.remediation}")

    # Single query mode
    if args["query"]:
        record = await ask(args["query"], orchestrator, document)
        return 0 if record is not None else 2

    # Interactive mode
    print(f"\n{'='*70}")
    print(f"  Ready! Ask questions about the manual. (model: {preset})")
    print(f"  Type 'quit' to stop, 'switch <preset>' to change model, 'models' to list them.")
    print(f"{'='*70}")

    while True:
        try:
            user_input = input("\n> ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nBye!")
            break

        if not user_input:
            continue
        if user_input.lower() in ("quit", "exit", "q"):
            print("Bye!")
            break

        # Allow switching models mid-session
        if user_input.lower().startswith("switch "):
            new_preset = user_input.split(None, 1)[1].strip()
            try:
                backend = backend_from_preset(new_preset, settings.MAX_OUTPUT_TOKENS,
                                              settings.TEMPERATURE)
            except (ValueError, ImportError) as e:
                print(f"  Error: {e}")
                continue
            orchestrator.generator = AnswerGenerator(backend)
            state = await orchestrator.refresh_availability()
            print(f"  Switched to {new_preset} ({state.value})")
            continue

        if user_input.lower() == "models":
            print(list_presets())
            continue

        await ask(user_input, orchestrator, document)

    return 0


def main():
    """Entry point for `uv run manual-ask`"""
    args = parse_args(sys.argv[1:])

    # List models and exit
    if args["list_models"]:
        print(list_presets())
        print("\nUsage: uv run manual-ask manual.pdf \"query\" --model <preset>")
        sys.exit(0)

    if not args["filepath"]:
        print("Usage:")
        print('  uv run manual-ask manual.pdf "How often should I change the oil?"')
        print('  uv run manual-ask manual.pdf "query" --model llama3')
        print('  uv run manual-ask manual.pdf --db sqlite:///garage.db')
        print('  uv run manual-ask --list-models')
        sys.exit(1)

    settings = get_settings()
    setup_logging(settings.LOG_DIR, settings.LOG_LEVEL)
    sys.exit(asyncio.run(run(args)))
