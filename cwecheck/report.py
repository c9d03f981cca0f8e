"""
cwecheck/report.py
══════════════════

Findings, diagnostics and the report document.

Serialization is deterministic: fields are emitted in a fixed order,
addresses as lower-case ``0x`` strings, findings sorted by function
address, detector and discovery order.  ``Report.from_json`` accepts
exactly what ``to_json`` emits, so a report survives a
serialize → deserialize → serialize cycle byte for byte.

Document layout::

    {
      "format_version": 1,
      "tool":          {"name": ..., "version": ...},
      "binary":        {"name": ..., "sha256": ...},
      "architecture":  "x86_64-64-sysv-little",
      "units":         ["Symbols", ...],
      "findings":      [ {...}, ... ],
      "diagnostics":   [ {...}, ... ]
    }
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from cwecheck.errors import ProgramFormatError

FORMAT_VERSION = 1


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — FINDING MODEL
# ═════════════════════════════════════════════════════════════════════════

class Severity(Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class Confidence(Enum):
    """
    How certain we are that the finding is a true positive.

    HIGH:   the defect exists on at least one path through the function
    MEDIUM: supported by the analysis, but types or targets are uncertain
    LOW:    pattern-based
    """
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class CodeLocation:
    """An instruction inside a function.  Names are absent for stripped code."""
    function_address: int
    address: int
    function_name: Optional[str] = None

    def __str__(self) -> str:
        fn = self.function_name or f"{self.function_address:#x}"
        return f"{fn}@{self.address:#x}"


@dataclass(frozen=True)
class Finding:
    """
    A single detected weakness.

    Attributes
    ----------
    cwe_id      : e.g. ``"CWE-476"``
    detector    : name of the unit that produced it
    location    : where the weakness manifests
    severity    : Severity
    confidence  : Confidence
    description : human-readable message
    evidence    : addresses supporting the finding, in causal order
    sequence    : discovery order within its function and detector
    """
    cwe_id: str
    detector: str
    location: CodeLocation
    severity: Severity
    confidence: Confidence
    description: str
    evidence: Tuple[int, ...] = ()
    sequence: int = 0

    @property
    def sort_key(self) -> Tuple[int, str, int, int]:
        return (self.location.function_address, self.detector, self.sequence, self.location.address)

    def __str__(self) -> str:
        return f"[{self.cwe_id}] {self.location}: {self.description}"


class DiagnosticKind(Enum):
    MISSING_SYMBOLS = "missing-symbols"
    MISSING_DYNAMIC_SYMBOLS = "missing-dynamic-symbols"
    UNMAPPED_SYMBOLS = "unmapped-symbols"
    UNSUPPORTED_CALLING_CONVENTION = "unsupported-calling-convention"
    MALFORMED_FUNCTION = "malformed-function"
    SKIPPED_DETECTOR = "skipped-detector"


@dataclass(frozen=True)
class Diagnostic:
    """A recoverable problem: something was missing or skipped, and why."""
    kind: DiagnosticKind
    message: str
    unit: Optional[str] = None
    function_address: Optional[int] = None

    @property
    def sort_key(self) -> Tuple[int, str, str, str]:
        addr = -1 if self.function_address is None else self.function_address
        return (addr, self.kind.value, self.unit or "", self.message)

    def __str__(self) -> str:
        where = "" if self.function_address is None else f" [{self.function_address:#x}]"
        return f"{self.kind.value}{where}: {self.message}"


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — REPORT
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class ReportMetadata:
    binary_name: str
    architecture: str
    tool_name: str
    tool_version: str
    binary_sha256: Optional[str] = None


@dataclass(frozen=True)
class Report:
    metadata: ReportMetadata
    findings: Tuple[Finding, ...] = ()
    diagnostics: Tuple[Diagnostic, ...] = ()
    units: Tuple[str, ...] = ()

    @classmethod
    def build(
        cls,
        metadata: ReportMetadata,
        findings: Sequence[Finding],
        diagnostics: Sequence[Diagnostic],
        units: Sequence[str] = (),
    ) -> "Report":
        """Order findings and diagnostics canonically."""
        return cls(
            metadata,
            tuple(sorted(findings, key=lambda f: f.sort_key)),
            tuple(sorted(set(diagnostics), key=lambda d: d.sort_key)),
            tuple(units),
        )

    def findings_for(self, cwe_id: str) -> List[Finding]:
        return [f for f in self.findings if f.cwe_id == cwe_id]

    def diagnostics_of(self, kind: DiagnosticKind) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.kind is kind]

    # ── serialization ────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        md = self.metadata
        return {
            "format_version": FORMAT_VERSION,
            "tool": {"name": md.tool_name, "version": md.tool_version},
            "binary": {"name": md.binary_name, "sha256": md.binary_sha256},
            "architecture": md.architecture,
            "units": list(self.units),
            "findings": [_finding_to_dict(f) for f in self.findings],
            "diagnostics": [_diagnostic_to_dict(d) for d in self.diagnostics],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, ensure_ascii=True) + "\n"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Report":
        try:
            version = data["format_version"]
            if version != FORMAT_VERSION:
                raise ProgramFormatError("unsupported report format version", version=version)
            metadata = ReportMetadata(
                binary_name=data["binary"]["name"],
                binary_sha256=data["binary"]["sha256"],
                architecture=data["architecture"],
                tool_name=data["tool"]["name"],
                tool_version=data["tool"]["version"],
            )
            findings = tuple(_finding_from_dict(f) for f in data["findings"])
            diagnostics = tuple(_diagnostic_from_dict(d) for d in data["diagnostics"])
            units = tuple(data["units"])
        except (KeyError, TypeError, ValueError) as exc:
            raise ProgramFormatError(f"malformed report: {exc}") from exc
        return cls(metadata, findings, diagnostics, units)

    @classmethod
    def from_json(cls, text: str) -> "Report":
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise ProgramFormatError(f"invalid report JSON: {exc.msg}", line=exc.lineno) from exc
        return cls.from_dict(data)

    def to_text(self) -> str:
        """Human-readable summary, one line per finding."""
        lines = [str(f) for f in self.findings]
        lines.extend(f"note: {d}" for d in self.diagnostics)
        return "\n".join(lines) + ("\n" if lines else "")


def _hex(value: int) -> str:
    return f"{value:#x}"


def _unhex(value: str) -> int:
    if not isinstance(value, str) or not value.startswith("0x"):
        raise ValueError(f"expected a hex address string, got {value!r}")
    return int(value, 16)


def _finding_to_dict(finding: Finding) -> Dict[str, Any]:
    loc = finding.location
    return {
        "cwe_id": finding.cwe_id,
        "detector": finding.detector,
        "location": {
            "function_address": _hex(loc.function_address),
            "function_name": loc.function_name,
            "address": _hex(loc.address),
        },
        "severity": finding.severity.value,
        "confidence": finding.confidence.value,
        "description": finding.description,
        "evidence": [_hex(a) for a in finding.evidence],
        "sequence": finding.sequence,
    }


def _finding_from_dict(data: Mapping[str, Any]) -> Finding:
    loc = data["location"]
    return Finding(
        cwe_id=data["cwe_id"],
        detector=data["detector"],
        location=CodeLocation(
            function_address=_unhex(loc["function_address"]),
            address=_unhex(loc["address"]),
            function_name=loc["function_name"],
        ),
        severity=Severity(data["severity"]),
        confidence=Confidence(data["confidence"]),
        description=data["description"],
        evidence=tuple(_unhex(a) for a in data["evidence"]),
        sequence=int(data["sequence"]),
    )


def _diagnostic_to_dict(diag: Diagnostic) -> Dict[str, Any]:
    return {
        "kind": diag.kind.value,
        "unit": diag.unit,
        "function_address": None if diag.function_address is None else _hex(diag.function_address),
        "message": diag.message,
    }


def _diagnostic_from_dict(data: Mapping[str, Any]) -> Diagnostic:
    addr = data["function_address"]
    return Diagnostic(
        kind=DiagnosticKind(data["kind"]),
        message=data["message"],
        unit=data["unit"],
        function_address=None if addr is None else _unhex(addr),
    )


__all__ = [
    "Severity",
    "Confidence",
    "CodeLocation",
    "Finding",
    "DiagnosticKind",
    "Diagnostic",
    "ReportMetadata",
    "Report",
    "FORMAT_VERSION",
]
