"""
Errors raised while reading, writing or building quantized embedding chunks.
"""

from __future__ import annotations
from typing import Optional, Union


class CodecError(Exception):
    """Base class of all errors raised by this package."""


class ChunkIOError(CodecError):
    """Failure of the underlying stream while processing a chunk field."""

    def __init__(self, context: str, cause: Optional[BaseException] = None) -> None:
        msg = context if cause is None else f"{context}: {cause}"
        super().__init__(msg)
        self.context = context
        self.cause = cause


class TypeMismatchError(CodecError):
    """A chunk or element type tag differs from the one that was expected."""

    def __init__(self, what: str, expected: Union[int, str], found: Union[int, str]) -> None:
        super().__init__(f"Invalid {what}, expected: {expected}, got: {found}")
        self.what = what
        self.expected = expected
        self.found = found


class ShapeError(CodecError, ValueError):
    """Dimensions that are inconsistent with each other."""
