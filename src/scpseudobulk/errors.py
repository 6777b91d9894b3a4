# src/scpseudobulk/errors.py
from __future__ import annotations

from typing import Optional


class PseudobulkError(Exception):
    """Base class for pipeline errors."""


class DataFormatError(PseudobulkError):
    """A sample label, cell annotation or count value cannot be interpreted."""

    def __init__(self, message: str, *, label: Optional[str] = None):
        super().__init__(message)
        self.label = label


class DataAlignmentError(PseudobulkError):
    """Count-matrix columns and metadata rows disagree."""

    def __init__(self, message: str, *, position: Optional[int] = None):
        super().__init__(message)
        self.position = position


class MissingContrastGroupError(PseudobulkError):
    """A cell type has no pseudo-samples for one side of the contrast."""

    def __init__(self, cell_type: str, group: str):
        super().__init__(
            f"cell type {cell_type!r}: contrast group {group!r} not present in metadata"
        )
        self.cell_type = cell_type
        self.group = group
