# sheet_analyst/errors.py

from typing import Optional


class SheetAnalystError(Exception):
    """Base class for every failure raised by the analysis pipeline."""


# ──────────────────────────────────────────────────────────────────────────────
# Ingestion
# ──────────────────────────────────────────────────────────────────────────────

class IngestError(SheetAnalystError):
    """An uploaded file could not be turned into a dataset."""


class UnsupportedFormat(IngestError):
    pass


class EmptyDataset(IngestError):
    pass


class ParseError(IngestError):
    pass


# ──────────────────────────────────────────────────────────────────────────────
# Embedded engine
# ──────────────────────────────────────────────────────────────────────────────

class EngineError(SheetAnalystError):
    """The embedded query engine rejected or failed a request."""


class EngineInitError(EngineError):
    pass


class EngineNotReady(EngineError):
    pass


class LoadError(EngineError):
    pass


class QueryError(EngineError):
    """
    A query could not be executed.

    `sql` keeps the offending statement (when known) so callers can show it.
    """

    def __init__(self, message: str, sql: Optional[str] = None) -> None:
        super().__init__(message)
        self.sql = sql


# ──────────────────────────────────────────────────────────────────────────────
# Language model
# ──────────────────────────────────────────────────────────────────────────────

class InferenceError(SheetAnalystError):
    """
    The language-model collaborator was unavailable or returned output that
    does not match the expected structure.
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


# ──────────────────────────────────────────────────────────────────────────────
# Conversation
# ──────────────────────────────────────────────────────────────────────────────

class TurnCancelled(SheetAnalystError):
    """A turn outlived the dataset it started on (reset or new upload)."""
