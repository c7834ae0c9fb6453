# catflow/errors.py
"""
Error types for the catflow front-end, configuration loader and CLI.

The analysis core (classifier, engine, optimizer) never raises: violations
of its expectations are logged and skipped.  The exceptions below are used
by the pieces around it that read user input.

Hierarchy
─────────
    CatflowError (base)
    ├── IRParseError        - textual IR does not match the grammar
    ├── IRValidationError   - IR parsed but is structurally invalid
    └── ConfigError         - bad configuration file or option
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence


@dataclass(frozen=True)
class SourceSpan:
    """Location of an error inside a source text (1-based)."""

    file: str = "<input>"
    line: int = 0
    column: int = 0

    def __str__(self) -> str:
        if self.line:
            return f"{self.file}:{self.line}:{self.column}"
        return self.file


class CatflowError(Exception):
    """Base exception for all catflow errors."""

    def __init__(
        self,
        message: str,
        span: Optional[SourceSpan] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.span = span
        self.cause = cause

    def __str__(self) -> str:
        if self.span is not None:
            return f"{self.span}: {self.message}"
        return self.message


class IRParseError(CatflowError):
    """The textual IR could not be parsed."""


class IRValidationError(CatflowError):
    """The IR was parsed but violates a structural rule.

    Attributes
    ----------
    problems : list[str]
        One entry per violation found.
    """

    def __init__(
        self,
        problems: Sequence[str],
        span: Optional[SourceSpan] = None,
    ) -> None:
        self.problems: List[str] = list(problems)
        summary = self.problems[0] if len(self.problems) == 1 else (
            f"{len(self.problems)} problems; first: {self.problems[0]}"
            if self.problems else "invalid IR"
        )
        super().__init__(summary, span=span)


class ConfigError(CatflowError):
    """Invalid configuration value or file."""
