"""
errors.py — Typed failures for ingestion and querying
======================================================

Ingestion errors abort the whole ingestion: the caller sees one typed error
and no Document exists afterwards.

Query errors never mutate state. Each carries a `suggestion`: static user
guidance ("try rephrasing", "upload a manual") that is NOT an answer and must
never be shown as one.
"""


class ManualRagError(Exception):
    """Base class for everything this package raises on purpose."""

    suggestion: str = ""


# ==================== INGESTION ====================

class IngestError(ManualRagError):
    """Ingestion failed before anything was persisted."""


class DocumentUnreadable(IngestError):
    def __init__(self, detail: str = ""):
        message = "The file is not a valid PDF document"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class DocumentEmpty(IngestError):
    def __init__(self):
        super().__init__("The PDF document contains no pages")


# ==================== QUERYING ====================

class QueryError(ManualRagError):
    """A query could not be answered. No QueryRecord was written."""


class NotProcessed(QueryError):
    suggestion = "Wait for the manual to finish processing, then ask again."

    def __init__(self, document_name: str = ""):
        name = f" {document_name!r}" if document_name else ""
        super().__init__(
            f"Document{name} hasn't been processed yet. "
            "Please wait for processing to complete."
        )


class DocumentNotFound(QueryError):
    suggestion = "Upload your owner's manual to ask questions about it."

    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(f"No document with id {document_id!r}")


class NoRelevantContent(QueryError):
    suggestion = (
        "Try rephrasing your question with terms your manual is likely to use, "
        "or check that the right manual is selected."
    )

    def __init__(self):
        super().__init__(
            "I couldn't find relevant information in the manual to answer your question."
        )


class GeneratorUnavailable(QueryError):
    """The answer generator is not in the AVAILABLE state."""

    def __init__(self, state, reason: str = ""):
        self.state = state
        self.reason = reason or getattr(state, "message", str(state))
        self.suggestion = getattr(state, "remediation", "")
        super().__init__(self.reason)


class GeneratorFailed(QueryError):
    suggestion = "Please try again. If it keeps failing, rephrase the question."

    def __init__(self, message: str):
        self.message = message
        super().__init__(f"Processing failed: {message}")


class GeneratorTimeout(GeneratorFailed):
    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"answer generation timed out after {timeout:g}s")


class SchemaParseError(ManualRagError):
    """Generator output did not conform to the Answer schema."""

    def __init__(self, message: str, raw: str = ""):
        self.raw = raw
        super().__init__(message)


# ==================== STORAGE ====================

class PersistenceFailed(ManualRagError):
    def __init__(self, operation: str, detail: str = ""):
        self.operation = operation
        message = f"Could not {operation}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
