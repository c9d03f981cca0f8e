"""
cwecheck/pipeline.py
════════════════════

Named analysis units and the pipeline that runs them.

Units
─────

  Name            Scope      Requires
  ─────────────── ────────── ──────────────────────────────────────
  AddrTrans       program    -
  Symbols         program    AddrTrans
  DynSyms         program    AddrTrans
  Cconv           program    -
  MemRegion       function   AddrTrans Symbols DynSyms Cconv
  TypeInference   function   MemRegion
  CWE476          function   Symbols DynSyms Cconv MemRegion TypeInference
  CWE560          function   Symbols DynSyms Cconv MemRegion
  CWE367          function   Symbols DynSyms Cconv
  CWE676          function   Symbols DynSyms Cconv
  SerdeJson       report     -

Selecting a unit pulls in its dependencies.  Units always run in
registration order, which is a topological order of ``requires``.

Execution
─────────
Program-scope units run once.  Function-scope units then run for every
function, on a thread pool when ``jobs > 1``; each function gets its own
context and checker instances, and results are merged in function-address
order, so the report does not depend on ``jobs``.

Functions that fail structural validation are skipped with a
``malformed-function`` diagnostic.  Detectors that need a calling
convention are skipped with a ``skipped-detector`` diagnostic when the
convention is Unsupported.  An :class:`InternalInvariantError` is logged
with its function and unit and aborts the run.
"""

from __future__ import annotations

import enum
import logging
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Iterable, List, Optional, Tuple, Type

from cwecheck.address_translation import AddressTranslator
from cwecheck.calling_convention import (
    CallingConvention,
    CallingConventionResult,
    Unsupported,
    recover_calling_convention,
)
from cwecheck.checkers import ALL_CHECKERS, Checker, CheckerContext
from cwecheck.config import AnalysisConfig
from cwecheck.errors import InternalInvariantError, UnknownUnitError
from cwecheck.ir import Function, Program, function_problems
from cwecheck.memory_regions import MemoryRegionClassifier
from cwecheck.report import (
    Diagnostic,
    DiagnosticKind,
    Finding,
    Report,
    ReportMetadata,
)
from cwecheck.symbols import (
    CallTargetResolver,
    DynamicSymbolResolver,
    DynamicSymbols,
    SymbolMap,
    SymbolResolver,
)
from cwecheck.type_inference import TypeInferenceEngine

logger = logging.getLogger(__name__)

TOOL_NAME = "cwecheck"


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — CONTEXTS
# ═════════════════════════════════════════════════════════════════════════

class Scope(enum.Enum):
    PROGRAM = "program"
    FUNCTION = "function"
    REPORT = "report"


@dataclass
class ProgramContext:
    """
    Program-wide state shared by all units.

    Attributes
    ----------
    program     : the Program under analysis (never modified)
    config      : AnalysisConfig
    facts       : results of program-scope units, keyed by unit name
    diagnostics : recoverable problems found so far
    """
    program: Program
    config: AnalysisConfig
    facts: Dict[str, Any] = field(default_factory=dict)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    def __post_init__(self) -> None:
        self._calls: Optional[CallTargetResolver] = None
        self._classifier: Optional[MemoryRegionClassifier] = None
        self._type_engine: Optional[TypeInferenceEngine] = None

    @property
    def translator(self) -> AddressTranslator:
        translator = self.facts.get("AddrTrans")
        if translator is None:
            translator = AddressTranslator.from_program(self.program)
            self.facts["AddrTrans"] = translator
        return translator

    @property
    def cconv(self) -> CallingConventionResult:
        cconv = self.facts.get("Cconv")
        if cconv is None:
            cconv = recover_calling_convention(self.program.architecture)
        return cconv

    @property
    def calls(self) -> CallTargetResolver:
        if self._calls is None:
            self._calls = CallTargetResolver(
                self.facts.get("Symbols", SymbolMap()),
                self.facts.get("DynSyms", DynamicSymbols()),
            )
        return self._calls

    @property
    def region_classifier(self) -> MemoryRegionClassifier:
        if self._classifier is None:
            self._classifier = MemoryRegionClassifier(
                self.program, self.cconv, self.calls, self.config, self.translator,
            )
        return self._classifier

    @property
    def type_engine(self) -> TypeInferenceEngine:
        if self._type_engine is None:
            self._type_engine = TypeInferenceEngine(self.region_classifier, self.calls, self.config)
        return self._type_engine

    def prepare(self) -> None:
        """Build shared helpers before functions are analysed in parallel."""
        _ = self.type_engine

    def note(self, kind: DiagnosticKind, message: str, unit: Optional[str] = None,
             function_address: Optional[int] = None) -> None:
        logger.warning("%s: %s", kind.value, message)
        self.diagnostics.append(Diagnostic(kind, message, unit, function_address))


@dataclass
class FunctionContext:
    """Per-function state; one instance per function and thread."""
    program_ctx: ProgramContext
    function: Function
    facts: Dict[str, Any] = field(default_factory=dict)

    @property
    def function_name(self) -> Optional[str]:
        return self.program_ctx.calls.function_name(self.function)

    def checker_context(self) -> CheckerContext:
        pctx = self.program_ctx
        return CheckerContext(
            program=pctx.program,
            function=self.function,
            function_name=self.function_name,
            calls=pctx.calls,
            cconv=pctx.cconv,
            config=pctx.config,
            regions=self.facts.get("MemRegion"),
            types=self.facts.get("TypeInference"),
        )


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — UNITS
# ═════════════════════════════════════════════════════════════════════════

class AnalysisUnit(ABC):
    """A named, independently selectable analysis step."""

    name: ClassVar[str] = ""
    scope: ClassVar[Scope] = Scope.PROGRAM
    requires: ClassVar[Tuple[str, ...]] = ()
    description: ClassVar[str] = ""

    @abstractmethod
    def run(self, ctx: Any) -> Any:
        ...


class AddrTransUnit(AnalysisUnit):
    name = "AddrTrans"
    description = "address translation between link, load and file offsets"

    def run(self, ctx: ProgramContext) -> AddressTranslator:
        return AddressTranslator.from_program(ctx.program)


class SymbolsUnit(AnalysisUnit):
    name = "Symbols"
    requires = ("AddrTrans",)
    description = "static symbol table"

    def run(self, ctx: ProgramContext) -> SymbolMap:
        symbols = SymbolResolver(ctx.translator).resolve(ctx.program)
        if not symbols.table_present:
            ctx.note(DiagnosticKind.MISSING_SYMBOLS,
                     "no static symbol table; functions are reported by address", self.name)
        elif symbols.is_empty:
            ctx.note(DiagnosticKind.MISSING_SYMBOLS,
                     "static symbol table is empty; functions are reported by address", self.name)
        if symbols.unmapped:
            ctx.note(DiagnosticKind.UNMAPPED_SYMBOLS,
                     f"{len(symbols.unmapped)} static symbols lie outside all sections", self.name)
        return symbols


class DynSymsUnit(AnalysisUnit):
    name = "DynSyms"
    requires = ("AddrTrans",)
    description = "dynamic symbols: import slots and stubs"

    def run(self, ctx: ProgramContext) -> DynamicSymbols:
        dynsyms = DynamicSymbolResolver(ctx.translator).resolve(ctx.program)
        if not dynsyms.table_present:
            ctx.note(DiagnosticKind.MISSING_DYNAMIC_SYMBOLS,
                     "no dynamic linking metadata; imported calls stay anonymous", self.name)
        if dynsyms.slots.unmapped:
            ctx.note(DiagnosticKind.UNMAPPED_SYMBOLS,
                     f"{len(dynsyms.slots.unmapped)} relocations lie outside all sections", self.name)
        return dynsyms


class CconvUnit(AnalysisUnit):
    name = "Cconv"
    description = "calling convention of the architecture/ABI pair"

    def run(self, ctx: ProgramContext) -> CallingConventionResult:
        cconv = recover_calling_convention(ctx.program.architecture)
        if isinstance(cconv, Unsupported):
            ctx.note(DiagnosticKind.UNSUPPORTED_CALLING_CONVENTION, str(cconv), self.name)
        return cconv


class MemRegionUnit(AnalysisUnit):
    name = "MemRegion"
    scope = Scope.FUNCTION
    requires = ("AddrTrans", "Symbols", "DynSyms", "Cconv")
    description = "stack/heap/global classification of values"

    def run(self, ctx: FunctionContext):
        return ctx.program_ctx.region_classifier.classify(ctx.function)


class TypeInferenceUnit(AnalysisUnit):
    name = "TypeInference"
    scope = Scope.FUNCTION
    requires = ("MemRegion",)
    description = "pointer/integer type inference"

    def run(self, ctx: FunctionContext):
        return ctx.program_ctx.type_engine.infer(ctx.function, ctx.facts["MemRegion"])


class DetectorUnit(AnalysisUnit):
    """Runs one :class:`Checker` on a function."""

    scope = Scope.FUNCTION
    checker: ClassVar[Type[Checker]]

    def run(self, ctx: FunctionContext) -> List[Finding]:
        return self.checker().run(ctx.checker_context())


def detector_unit(checker_cls: Type[Checker]) -> Type[DetectorUnit]:
    """Wrap a checker class into a registrable unit."""
    return type(
        f"{checker_cls.__name__}Unit",
        (DetectorUnit,),
        {
            "name": checker_cls.name,
            "checker": checker_cls,
            "requires": ("Symbols", "DynSyms", "Cconv") + tuple(checker_cls.requires),
            "description": checker_cls.description,
        },
    )


class SerdeJsonUnit(AnalysisUnit):
    name = "SerdeJson"
    scope = Scope.REPORT
    description = "deterministic JSON report serialization"

    def run(self, report: Report) -> str:
        return report.to_json()


# ═════════════════════════════════════════════════════════════════════════
#  PART 3 — REGISTRY
# ═════════════════════════════════════════════════════════════════════════

class UnitRegistry:
    """
    Registry of analysis units by stable name.

    Usage
    -----
    >>> registry = UnitRegistry()
    >>> registry.register(CconvUnit)
    >>> [u.name for u in registry.resolve(["Cconv"])]
    ['Cconv']
    """

    def __init__(self) -> None:
        self._units: Dict[str, Type[AnalysisUnit]] = {}

    def register(self, unit_cls: Type[AnalysisUnit]) -> Type[AnalysisUnit]:
        for dep in unit_cls.requires:
            if dep not in self._units:
                raise UnknownUnitError(dep)
        self._units[unit_cls.name] = unit_cls
        return unit_cls

    def get(self, name: str) -> Type[AnalysisUnit]:
        try:
            return self._units[name]
        except KeyError:
            raise UnknownUnitError(name) from None

    @property
    def names(self) -> List[str]:
        return list(self._units)

    def resolve(self, names: Optional[Iterable[str]] = None) -> List[Type[AnalysisUnit]]:
        """Selected units plus their dependencies, in registration order."""
        if names is None:
            return list(self._units.values())
        wanted = set()
        pending = list(names)
        while pending:
            name = pending.pop()
            if name in wanted:
                continue
            pending.extend(self.get(name).requires)
            wanted.add(name)
        return [cls for name, cls in self._units.items() if name in wanted]


def default_registry() -> UnitRegistry:
    registry = UnitRegistry()
    for unit in (AddrTransUnit, SymbolsUnit, DynSymsUnit, CconvUnit, MemRegionUnit, TypeInferenceUnit):
        registry.register(unit)
    for checker_cls in ALL_CHECKERS:
        registry.register(detector_unit(checker_cls))
    registry.register(SerdeJsonUnit)
    return registry


# ═════════════════════════════════════════════════════════════════════════
#  PART 4 — PIPELINE
# ═════════════════════════════════════════════════════════════════════════

@dataclass
class FunctionOutcome:
    address: int
    findings: List[Finding] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    facts: Dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineResult:
    """
    Attributes
    ----------
    report         : the Report
    facts          : program-scope unit results by unit name
    function_facts : function-scope unit results by function address
    serialized     : JSON text when SerdeJson was selected
    elapsed_seconds: wall-clock time of the run
    """
    report: Report
    facts: Dict[str, Any]
    function_facts: Dict[int, Dict[str, Any]]
    serialized: Optional[str] = None
    elapsed_seconds: float = 0.0


def _requires_cconv(unit_cls: Type[AnalysisUnit]) -> bool:
    return issubclass(unit_cls, DetectorUnit) and unit_cls.checker.requires_calling_convention


class Pipeline:
    """Runs selected units over a program and assembles the report."""

    def __init__(self, config: Optional[AnalysisConfig] = None,
                 registry: Optional[UnitRegistry] = None) -> None:
        self.config = config or AnalysisConfig()
        self.registry = registry or default_registry()

    def run(self, program: Program, units: Optional[Iterable[str]] = None,
            jobs: Optional[int] = None) -> PipelineResult:
        t0 = time.monotonic()
        selected = self.registry.resolve(units)
        jobs = jobs or self.config.jobs
        logger.info(
            "analysing %s with %s (%d jobs)",
            program.binary.name, ", ".join(u.name for u in selected), jobs,
        )

        pctx = ProgramContext(program, self.config)
        for unit_cls in selected:
            if unit_cls.scope is Scope.PROGRAM:
                logger.debug("running %s", unit_cls.name)
                pctx.facts[unit_cls.name] = unit_cls().run(pctx)

        fn_units = [u for u in selected if u.scope is Scope.FUNCTION]
        if fn_units and not isinstance(pctx.cconv, CallingConvention):
            for unit_cls in [u for u in fn_units if _requires_cconv(u)]:
                pctx.note(
                    DiagnosticKind.SKIPPED_DETECTOR,
                    f"{unit_cls.name} needs a calling convention ({pctx.cconv})",
                    unit_cls.name,
                )
                fn_units.remove(unit_cls)

        outcomes: List[FunctionOutcome] = []
        if fn_units:
            pctx.prepare()
            functions = sorted(program.functions, key=lambda f: f.address)
            if jobs > 1 and len(functions) > 1:
                with ThreadPoolExecutor(max_workers=jobs, thread_name_prefix="cwecheck") as pool:
                    outcomes = list(pool.map(lambda fn: self._analyze(pctx, fn, fn_units), functions))
            else:
                outcomes = [self._analyze(pctx, fn, fn_units) for fn in functions]

        findings: List[Finding] = []
        diagnostics = list(pctx.diagnostics)
        for outcome in outcomes:
            findings.extend(outcome.findings)
            diagnostics.extend(outcome.diagnostics)

        report = Report.build(
            self._metadata(program),
            findings,
            diagnostics,
            [u.name for u in selected],
        )
        serialized = None
        for unit_cls in selected:
            if unit_cls.scope is Scope.REPORT:
                serialized = unit_cls().run(report)

        elapsed = time.monotonic() - t0
        logger.info(
            "%s: %d findings, %d diagnostics in %.3fs",
            program.binary.name, len(report.findings), len(report.diagnostics), elapsed,
        )
        return PipelineResult(
            report=report,
            facts=dict(pctx.facts),
            function_facts={o.address: o.facts for o in outcomes},
            serialized=serialized,
            elapsed_seconds=elapsed,
        )

    def _analyze(self, pctx: ProgramContext, function: Function,
                 units: List[Type[AnalysisUnit]]) -> FunctionOutcome:
        outcome = FunctionOutcome(function.address)
        problems = function_problems(pctx.program, function, pctx.translator)
        if problems:
            message = "; ".join(problems)
            logger.warning("skipping function %#x: %s", function.address, message)
            outcome.diagnostics.append(Diagnostic(
                DiagnosticKind.MALFORMED_FUNCTION, message, None, function.address,
            ))
            return outcome

        fctx = FunctionContext(pctx, function, outcome.facts)
        for unit_cls in units:
            try:
                result = unit_cls().run(fctx)
            except InternalInvariantError:
                logger.error(
                    "internal invariant violated in %s while analysing function %#x",
                    unit_cls.name, function.address,
                )
                raise
            if issubclass(unit_cls, DetectorUnit):
                outcome.findings.extend(result)
            else:
                fctx.facts[unit_cls.name] = result
        return outcome

    @staticmethod
    def _metadata(program: Program) -> ReportMetadata:
        from cwecheck import __version__

        return ReportMetadata(
            binary_name=program.binary.name,
            binary_sha256=program.binary.sha256,
            architecture=str(program.architecture),
            tool_name=TOOL_NAME,
            tool_version=__version__,
        )


__all__ = [
    "Scope",
    "ProgramContext",
    "FunctionContext",
    "AnalysisUnit",
    "DetectorUnit",
    "UnitRegistry",
    "default_registry",
    "Pipeline",
    "PipelineResult",
    "FunctionOutcome",
    "TOOL_NAME",
]
