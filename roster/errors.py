from __future__ import annotations
from typing import Optional, Sequence


class RosterImportError(Exception):
    """Base class for errors raised by the roster import pipeline."""


class MalformedInputError(RosterImportError):
    # Fatal: the upload cannot be turned into a table at all
    def __init__(self, message: str, *, source_name: str = ""):
        super().__init__(message)
        self.message = message
        self.source_name = source_name

    def __str__(self) -> str:
        if self.source_name:
            return f"{self.source_name}: {self.message}"
        return self.message


class MappingConflictError(RosterImportError, ValueError):
    pass


class MappingAmbiguityWarning(UserWarning):
    """
    A target field could not be mapped with confidence.
    Never raised: collected on the mapping proposal for the human reviewer.
    """

    def __init__(self, field: str, message: str, candidates: Sequence[tuple[str, float]] = ()):
        super().__init__(message)
        self.field = field
        self.message = message
        self.candidates = tuple(candidates)

    def __str__(self) -> str:
        return self.message


class RowValidationError(RosterImportError):
    # Row lacks required identity fields; the row is skipped
    def __init__(self, row_index: int, message: str):
        super().__init__(message)
        self.row_index = row_index
        self.message = message


class RowCommitError(RosterImportError):
    # Persistence failed for one row; that row is rolled back on its own
    def __init__(self, row_index: int, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.row_index = row_index
        self.message = message
        self.cause = cause
