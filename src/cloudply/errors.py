"""
Error Taxonomy
==============
Every failure of a read or write call is reported through one of these
exceptions. Parse-time errors carry the file name and the header/body line
that triggered them.
"""
from __future__ import annotations

from typing import Optional


class PlyError(Exception):
    """Base class for all codec errors."""

    def __init__(
        self,
        message: str,
        filename: Optional[str] = None,
        line: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.filename = filename
        self.line = line

    def located(self, filename: Optional[str], line: Optional[int]) -> PlyError:
        """Fill in missing position data and return the same exception."""
        if self.filename is None:
            self.filename = filename
        if self.line is None:
            self.line = line
        return self

    def __str__(self) -> str:
        if self.filename is None:
            return self.message
        if self.line is None:
            return f"{self.filename}: {self.message}"
        return f"{self.filename}:{self.line}: {self.message}"


class PlyIOError(PlyError):
    """File missing, unreadable or unwritable."""


class HeaderSyntaxError(PlyError):
    """A header line could not be tokenized."""


class SchemaError(PlyError):
    """Declared datatypes are unsupported or inconsistent with the row layout."""


class TruncatedBodyError(PlyError):
    """The body ended before every declared element instance was read."""


class ValueFormatError(PlyError):
    """An ASCII token is not parsable as its declared type."""
