"""
svctaint.errors
===============

Exception hierarchy.

No taint condition is ever raised: vulnerabilities become findings, and
analysis limits degrade to conservative fallbacks.  The exceptions below
signal *infrastructure* problems: a program model that violates its
structural contract, or a listing that cannot be parsed.
"""

from __future__ import annotations

from typing import Optional


class SvcTaintError(Exception):
    """Base class of every error raised by svctaint."""


class MalformedProgramError(SvcTaintError):
    """The program model violates its structural contract.

    Raised by :meth:`svctaint.program.Program.validate` for missing successor
    blocks, unknown entry blocks and duplicate block ids.
    """

    def __init__(self, procedure: str, message: str) -> None:
        super().__init__(f"{procedure}: {message}")
        self.procedure = procedure
        self.detail = message


class ListingSyntaxError(SvcTaintError):
    """A program listing could not be parsed."""

    def __init__(self, message: str, line: Optional[int] = None,
                 column: Optional[int] = None,
                 filename: str = "<listing>") -> None:
        self.line = line
        self.column = column
        self.filename = filename
        self.detail = message
        if line is not None:
            where = f"{filename}:{line}:{column or 0}"
        else:
            where = filename
        super().__init__(f"{where}: {message}")


__all__ = [
    "SvcTaintError",
    "MalformedProgramError",
    "ListingSyntaxError",
]
