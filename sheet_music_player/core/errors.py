"""
Parse diagnostics shared by every notation parser.

Parsers never let these escape as exceptions. They are collected on the
result object so a caller always gets a (possibly empty) score back.
"""

from __future__ import annotations


class NotationError(Exception):
    """Base class for parser diagnostics."""

    severity = "error"

    def __init__(self, message: str, line: int = 0, column: int = 0):
        super().__init__(message)
        self.message = message
        self.line = line
        self.column = column

    def __str__(self) -> str:
        if self.line:
            return f"line {self.line}, col {self.column}: {self.message}"
        return self.message

    def __eq__(self, other) -> bool:
        if type(self) is not type(other):
            return NotImplemented
        return (self.message, self.line, self.column) == (other.message, other.line, other.column)

    def __hash__(self) -> int:
        return hash((type(self).__name__, self.message, self.line, self.column))


class StructuralError(NotationError):
    """Input is unusable (bad signature, bad length, missing root)."""

    severity = "error"


class GrammarWarning(NotationError):
    """An unrecognised token or field was skipped."""

    severity = "warning"


class RangeWarning(NotationError):
    """A value was outside its legal range and has been clamped."""

    severity = "warning"


class UnsupportedFormatError(ValueError):
    """Raised by the loader for a file type no parser handles."""
