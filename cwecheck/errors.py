"""
cwecheck/errors.py
══════════════════

Exception types for the cwecheck pipeline.

Error Hierarchy
───────────────

  CweCheckError (base)
  ├── IRParseError            - textual IR term does not match the grammar
  ├── ProgramFormatError      - malformed program / ELF input document
  ├── ConfigError             - invalid analysis configuration
  ├── UnknownUnitError        - selection of a non-registered analysis unit
  └── InternalInvariantError  - engine defect (fixpoint did not converge)

Only the input boundary (parsing, loading, configuration, unit selection)
and engine defects raise.  Degraded, unsupported and malformed input seen
*inside* the analysis core is reported through explicit result values and
:class:`cwecheck.report.Diagnostic` records instead.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CweCheckError(Exception):
    """Base class of all cwecheck errors."""

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = dict(context)

    def __str__(self) -> str:
        if not self.context:
            return self.message
        extra = ", ".join(f"{k}={v!r}" for k, v in sorted(self.context.items()))
        return f"{self.message} ({extra})"


class IRParseError(CweCheckError):
    """A textual IR term could not be parsed."""

    def __init__(self, text: str, position: Optional[int] = None, reason: str = "") -> None:
        message = f"cannot parse IR term {text!r}"
        if reason:
            message += f": {reason}"
        super().__init__(message, position=position)
        self.text = text
        self.position = position


class ProgramFormatError(CweCheckError):
    """The program document (or binary metadata) is structurally invalid."""


class ConfigError(CweCheckError):
    """The analysis configuration is invalid."""


class UnknownUnitError(CweCheckError):
    """An analysis unit name is not registered."""

    def __init__(self, name: str) -> None:
        super().__init__(f"unknown analysis unit {name!r}", unit=name)
        self.name = name


class InternalInvariantError(CweCheckError):
    """An internal invariant of the engine was violated.

    This signals a defect in cwecheck itself, never a problem with the
    analysed binary, and aborts the run.
    """


__all__ = [
    "CweCheckError",
    "IRParseError",
    "ProgramFormatError",
    "ConfigError",
    "UnknownUnitError",
    "InternalInvariantError",
]
