"""
cwecheck/checkers.py
════════════════════

CWE detectors over one function at a time.

Each detector is a :class:`Checker` that consumes the derived facts of a
function (region classification, type inference, call naming) and emits
:class:`cwecheck.report.Finding` objects.

Architecture
────────────

  ┌──────────────────────────────────────────────────────────────┐
  │                        Pipeline                              │
  │  ┌────────────┐ ┌────────────┐ ┌────────────┐ ┌────────────┐ │
  │  │  CWE476    │ │  CWE560    │ │  CWE367    │ │  CWE676    │ │
  │  │ null deref │ │ umask use  │ │ TOCTOU     │ │ dangerous  │ │
  │  └─────┬──────┘ └─────┬──────┘ └─────┬──────┘ └─────┬──────┘ │
  │        │              │              │              │        │
  │  ┌─────▼──────────────▼──────────────▼──────────────▼──────┐ │
  │  │                   CheckerContext                        │ │
  │  │  RegionFacts │ TypeFacts │ CallTargetResolver │ cconv   │ │
  │  └─────────────────────────────────────────────────────────┘ │
  └──────────────────────────────────────────────────────────────┘

Each Checker follows a three-phase lifecycle:

  1. **configure()**        : read thresholds and function lists
  2. **collect_evidence()** : run or consume analyses, gather sites
  3. **diagnose()**         : turn evidence into Findings

A fresh checker instance is created for every function, so detectors
hold no state across functions and may run in parallel.
"""

from __future__ import annotations

import enum
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import (
    Callable,
    ClassVar,
    Dict,
    FrozenSet,
    Iterator,
    List,
    Optional,
    Set,
    Tuple,
    Type,
)

from cwecheck.calling_convention import (
    CallingConvention,
    CallingConventionResult,
    RegisterLocation,
    StackLocation,
)
from cwecheck.config import AnalysisConfig
from cwecheck.dataflow_engine import (
    EnvLattice,
    FlatLattice,
    Lattice,
    PowersetLattice,
    ProductLattice,
    WorklistSolver,
    iteration_bound,
)
from cwecheck.ir import (
    BasicBlock,
    BinOp,
    Call,
    CondGoto,
    Const,
    Def,
    Expr,
    Function,
    Goto,
    Load,
    Program,
    Store,
    Term,
    UnOp,
    Var,
    expr_loads,
)
from cwecheck.memory_regions import Location, Region, RegionEnv, RegionFacts, StackSlot
from cwecheck.report import CodeLocation, Confidence, Finding, Severity
from cwecheck.symbols import CallTargetResolver
from cwecheck.type_inference import TypeFacts, TypeTag

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — CHECKER BASE
# ═════════════════════════════════════════════════════════════════════════

@dataclass
class CheckerContext:
    """
    Everything a checker may consult about one function.

    Attributes
    ----------
    program       : the whole Program (read-only)
    function      : the function under analysis
    function_name : resolved name, ``None`` for stripped code
    calls         : names call targets
    cconv         : calling convention or Unsupported
    config        : AnalysisConfig
    regions       : region facts, when MemRegion ran
    types         : type facts, when TypeInference ran
    """
    program: Program
    function: Function
    function_name: Optional[str]
    calls: CallTargetResolver
    cconv: CallingConventionResult
    config: AnalysisConfig
    regions: Optional[RegionFacts] = None
    types: Optional[TypeFacts] = None

    @property
    def calling_convention(self) -> Optional[CallingConvention]:
        return self.cconv if isinstance(self.cconv, CallingConvention) else None

    def location(self, address: int) -> CodeLocation:
        return CodeLocation(self.function.address, address, self.function_name)

    def iter_calls(self) -> Iterator[Tuple[BasicBlock, int, Call, Optional[str]]]:
        """All calls in block-address order with their resolved callee name."""
        for blk, idx, term in self.function.iter_terms():
            if isinstance(term, Call):
                yield blk, idx, term, self.calls.callee_name(term)


class Checker(ABC):
    """
    Abstract base class for all detectors.

    Subclass Contract
    ─────────────────
      - Override ``name``, ``cwe_id`` and ``description``
      - Set ``requires_calling_convention`` when argument or return
        locations are needed
      - Implement ``collect_evidence()`` and ``diagnose()``
    """

    name: ClassVar[str] = "base-checker"
    cwe_id: ClassVar[str] = ""
    description: ClassVar[str] = ""
    default_severity: ClassVar[Severity] = Severity.WARNING
    requires_calling_convention: ClassVar[bool] = False
    requires: ClassVar[Tuple[str, ...]] = ()

    def __init__(self) -> None:
        self._findings: List[Finding] = []

    @property
    def findings(self) -> List[Finding]:
        return list(self._findings)

    def configure(self, ctx: CheckerContext) -> None:
        """Called before evidence collection.  Default does nothing."""
        pass

    @abstractmethod
    def collect_evidence(self, ctx: CheckerContext) -> None:
        ...

    @abstractmethod
    def diagnose(self, ctx: CheckerContext) -> None:
        ...

    def report(self, ctx: CheckerContext) -> List[Finding]:
        return list(self._findings)

    def run(self, ctx: CheckerContext) -> List[Finding]:
        self.configure(ctx)
        self.collect_evidence(ctx)
        self.diagnose(ctx)
        return self.report(ctx)

    def _emit(
        self,
        ctx: CheckerContext,
        address: int,
        message: str,
        evidence: Tuple[int, ...] = (),
        severity: Optional[Severity] = None,
        confidence: Confidence = Confidence.MEDIUM,
    ) -> None:
        """Helper to create and store a finding."""
        self._findings.append(Finding(
            cwe_id=self.cwe_id,
            detector=self.name,
            location=ctx.location(address),
            severity=severity or self.default_severity,
            confidence=confidence,
            description=message,
            evidence=evidence,
            sequence=len(self._findings),
        ))

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__} '{self.name}'>"


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — NULLNESS LATTICE
# ═════════════════════════════════════════════════════════════════════════

class Nullness(enum.Enum):
    """Ordered NotNull ⊑ Unknown ⊑ MaybeNull."""
    NOT_NULL = 0
    UNKNOWN = 1
    MAYBE_NULL = 2


@dataclass(frozen=True)
class NullValue:
    state: Nullness
    source: Optional[int] = None    # call that produced a MaybeNull value

    def __str__(self) -> str:
        if self.state is Nullness.MAYBE_NULL:
            return f"maybe-null({self.source:#x})"
        return self.state.name.lower().replace("_", "-")


NOT_NULL = NullValue(Nullness.NOT_NULL)
UNKNOWN_NULLNESS = NullValue(Nullness.UNKNOWN)


class NullnessLattice(Lattice[NullValue]):
    """Three-state chain; MaybeNull values from different calls keep the earliest."""

    height = 3

    def join(self, a: NullValue, b: NullValue) -> NullValue:
        if a == b:
            return a
        if a.state is Nullness.MAYBE_NULL and b.state is Nullness.MAYBE_NULL:
            return NullValue(Nullness.MAYBE_NULL, min(a.source, b.source))
        return a if a.state.value > b.state.value else b

    def leq(self, a: NullValue, b: NullValue) -> bool:
        if a.state is not b.state:
            return a.state.value < b.state.value
        if a.state is Nullness.MAYBE_NULL:
            return b.source <= a.source
        return True


NullEnv = Dict[Location, NullValue]
TestEnv = Dict[Location, FrozenSet[Location]]
NullState = Tuple[NullEnv, TestEnv]

# (term, dereferenced location, its value, callee name for call arguments)
DerefCallback = Callable[[Term, Location, NullValue, Optional[str]], None]


# ═════════════════════════════════════════════════════════════════════════
#  PART 3 — CWE-476: NULL POINTER DEREFERENCE
# ═════════════════════════════════════════════════════════════════════════

class NullDerefChecker(Checker):
    """
    Detects return values of possibly-failing calls that are dereferenced
    without an intervening check.

    Sources are calls listed in ``AnalysisConfig.null_returning``; their
    return register becomes MaybeNull.  The value is tracked through
    register copies, stack spills and reloads.  A conditional branch
    reading the value, a copy of it, or a flag computed from it marks the
    value NotNull on every successor.  A memory access whose base is a
    MaybeNull value, or passing it as a parameter a known library
    function dereferences, is reported once per source call.

    CWE-476: NULL Pointer Dereference
    """

    name: ClassVar[str] = "CWE476"
    cwe_id: ClassVar[str] = "CWE-476"
    description: ClassVar[str] = "NULL pointer dereference of unchecked return values"
    default_severity: ClassVar[Severity] = Severity.ERROR
    requires_calling_convention: ClassVar[bool] = True
    requires: ClassVar[Tuple[str, ...]] = ("MemRegion", "TypeInference")

    def __init__(self) -> None:
        super().__init__()
        self._sites: List[Tuple[BasicBlock, int, Term, Location, NullValue, Optional[str]]] = []
        self._source_names: Dict[int, Optional[str]] = {}

    def configure(self, ctx: CheckerContext) -> None:
        self._ctx = ctx
        self._cconv = ctx.calling_convention
        self._regions = ctx.regions
        self._classifier = ctx.regions.classifier
        self._lattice = ProductLattice(
            EnvLattice(NullnessLattice(), UNKNOWN_NULLNESS),
            EnvLattice(FlatLattice(frozenset()), frozenset()),
        )

    # ── expression helpers ──────────────────────────────────────────

    def _root(self, expr: Expr, regions: RegionEnv) -> Optional[Location]:
        """Location holding the pointer an address expression is based on."""
        if isinstance(expr, (Var, Load)):
            return self._classifier.location_of(expr, regions)
        if isinstance(expr, BinOp) and expr.op in ("+", "-"):
            if isinstance(expr.lhs, Const):
                return self._root(expr.rhs, regions) if expr.op == "+" else None
            return self._root(expr.lhs, regions)
        return None

    def _reads(self, expr: Expr, regions: RegionEnv) -> Set[Location]:
        if isinstance(expr, Var):
            return {self._classifier.canonical(expr.name)}
        if isinstance(expr, Load):
            slot = self._classifier.location_of(expr, regions)
            if slot is not None:
                return {slot}
            return self._reads(expr.address, regions)
        if isinstance(expr, BinOp):
            return self._reads(expr.lhs, regions) | self._reads(expr.rhs, regions)
        if isinstance(expr, UnOp):
            return self._reads(expr.operand, regions)
        return set()

    @staticmethod
    def _is_copy(expr: Expr) -> bool:
        if isinstance(expr, (Var, Load)):
            return True
        if isinstance(expr, BinOp) and expr.op in ("+", "-") and isinstance(expr.rhs, Const):
            return NullDerefChecker._is_copy(expr.lhs)
        return False

    # ── transfer ────────────────────────────────────────────────────

    def _check(
        self,
        term: Term,
        address: Expr,
        values: NullEnv,
        regions: RegionEnv,
        on_deref: Optional[DerefCallback],
        callee: Optional[str] = None,
    ) -> None:
        root = self._root(address, regions)
        if root is None:
            return
        value = values.get(root, UNKNOWN_NULLNESS)
        if value.state is not Nullness.MAYBE_NULL:
            return
        if on_deref is not None:
            on_deref(term, root, value, callee)
        values[root] = NOT_NULL

    def _check_loads(self, term: Term, exprs: List[Expr], values: NullEnv, regions: RegionEnv, on_deref) -> None:
        for expr in exprs:
            for load in expr_loads(expr):
                self._check(term, load.address, values, regions, on_deref)

    def _kill(self, tests: TestEnv, location: Location) -> None:
        tests.pop(location, None)
        for key in [k for k, locs in tests.items() if location in locs]:
            del tests[key]

    def _record_test(self, tests: TestEnv, location: Location, reads: Set[Location]) -> None:
        expanded: Set[Location] = set(reads)
        for loc in reads:
            expanded |= tests.get(loc, frozenset())
        expanded.discard(location)
        if expanded:
            tests[location] = frozenset(expanded)

    def step(
        self,
        term: Term,
        state: NullState,
        regions: RegionEnv,
        on_deref: Optional[DerefCallback] = None,
    ) -> NullState:
        values, tests = dict(state[0]), dict(state[1])

        if isinstance(term, Def):
            self._check_loads(term, [term.value], values, regions, on_deref)
            var = self._classifier.canonical(term.var)
            reads = self._reads(term.value, regions)
            new_value = UNKNOWN_NULLNESS
            if self._is_copy(term.value):
                root = self._root(term.value, regions)
                if root is not None:
                    new_value = values.get(root, UNKNOWN_NULLNESS)
            self._kill(tests, var)
            self._record_test(tests, var, reads)
            _assign(values, var, new_value)

        elif isinstance(term, Store):
            self._check(term, term.target, values, regions, on_deref)
            self._check_loads(term, [term.target, term.value], values, regions, on_deref)
            target = self._classifier.evaluate(term.target, regions)
            if target.region is Region.STACK:
                if target.offset is None:
                    for key in [k for k in values if isinstance(k, StackSlot)]:
                        del values[key]
                    for key in [k for k in tests if isinstance(k, StackSlot)]:
                        del tests[key]
                else:
                    slot = StackSlot(target.offset)
                    new_value = UNKNOWN_NULLNESS
                    if self._is_copy(term.value):
                        root = self._root(term.value, regions)
                        if root is not None:
                            new_value = values.get(root, UNKNOWN_NULLNESS)
                    self._kill(tests, slot)
                    self._record_test(tests, slot, self._reads(term.value, regions))
                    _assign(values, slot, new_value)

        elif isinstance(term, CondGoto):
            self._check_loads(term, [term.condition, term.target], values, regions, on_deref)
            tested: Set[Location] = set()
            for loc in self._reads(term.condition, regions):
                tested.add(loc)
                tested |= tests.get(loc, frozenset())
            checked = {
                values[loc].source for loc in tested
                if values.get(loc, UNKNOWN_NULLNESS).state is Nullness.MAYBE_NULL
            }
            # copies of a checked value are checked too
            for loc, value in list(values.items()):
                if value.state is Nullness.MAYBE_NULL and value.source in checked:
                    values[loc] = NOT_NULL

        elif isinstance(term, Goto):
            self._check_loads(term, [term.target], values, regions, on_deref)

        elif isinstance(term, Call):
            if term.target is not None:
                self._check_loads(term, [term.target], values, regions, on_deref)
            self._call(term, values, tests, regions, on_deref)

        return values, tests

    def _call(self, call: Call, values: NullEnv, tests: TestEnv, regions: RegionEnv, on_deref) -> None:
        cconv = self._cconv
        name = self._ctx.calls.callee_name(call)
        signature = self._ctx.config.signature_of(name)
        if signature is not None:
            for idx in sorted(signature.dereferenced):
                loc = cconv.parameter_location(idx)
                if isinstance(loc, RegisterLocation):
                    self._check(call, Var(loc.register), values, regions, on_deref, callee=name)
                else:
                    slot = self._argument_slot(loc, regions)
                    if slot is not None:
                        self._check_slot(call, slot, values, on_deref, name)

        for key in [k for k in values if isinstance(k, str) and cconv.clobbered_by_call(k)]:
            del values[key]
        for key in [k for k in tests if isinstance(k, str) and cconv.clobbered_by_call(k)]:
            self._kill(tests, key)

        if name is not None and name in self._ctx.config.null_returning:
            ret = cconv.return_register
            self._kill(tests, ret)
            values[ret] = NullValue(Nullness.MAYBE_NULL, call.address)
            self._source_names[call.address] = name

    def _argument_slot(self, location: StackLocation, regions: RegionEnv) -> Optional[StackSlot]:
        sp = self._classifier.stack_pointer
        if sp is None:
            return None
        sp_value = self._classifier.evaluate(Var(sp), regions)
        if sp_value.region is not Region.STACK or sp_value.offset is None:
            return None
        return StackSlot(sp_value.offset + location.offset)

    @staticmethod
    def _check_slot(call: Call, slot: StackSlot, values: NullEnv, on_deref, name: Optional[str]) -> None:
        value = values.get(slot, UNKNOWN_NULLNESS)
        if value.state is Nullness.MAYBE_NULL:
            if on_deref is not None:
                on_deref(call, slot, value, name)
            values[slot] = NOT_NULL

    def _transfer(self, block: BasicBlock, state: NullState) -> NullState:
        region_states = self._regions.states(block)
        for idx, term in enumerate(block.terms):
            state = self.step(term, state, region_states[idx] if region_states else {})
        return state

    # ── lifecycle ────────────────────────────────────────────────────

    def collect_evidence(self, ctx: CheckerContext) -> None:
        fn = ctx.function
        bound = iteration_bound(fn, self._lattice.height) * ctx.config.iteration_bound_scale
        result = WorklistSolver(
            fn, self._lattice, self._transfer, ({}, {}),
            max_iterations=bound, name=self.name,
        ).solve()

        for block in sorted(fn.blocks, key=lambda b: b.address):
            state = result.fact_at(block)
            if state is None:
                continue
            region_states = self._regions.states(block)
            for idx, term in enumerate(block.terms):
                def record(t, root, value, callee, _blk=block, _idx=idx):
                    self._sites.append((_blk, _idx, t, root, value, callee))
                state = self.step(term, state, region_states[idx], record)

    def diagnose(self, ctx: CheckerContext) -> None:
        reported: Set[int] = set()
        for block, idx, term, root, value, callee in self._sites:
            if value.source in reported:
                continue
            reported.add(value.source)
            source_name = self._source_names.get(value.source) or "call"
            if callee is not None:
                what = f"passed to {callee}()"
            else:
                what = "dereferenced"
            confidence = Confidence.MEDIUM
            if ctx.types is not None:
                env = ctx.types.states(block)
                if env and env[idx].get(root) is TypeTag.POINTER:
                    confidence = Confidence.HIGH
            self._emit(
                ctx,
                term.address,
                f"return value of {source_name}() at {value.source:#x} may be NULL "
                f"and is {what} via {root} without a check",
                evidence=(value.source, term.address),
                confidence=confidence,
            )


def _assign(env: NullEnv, location: Location, value: NullValue) -> None:
    if value == UNKNOWN_NULLNESS:
        env.pop(location, None)
    else:
        env[location] = value


# ═════════════════════════════════════════════════════════════════════════
#  PART 4 — CALL ORDERING
# ═════════════════════════════════════════════════════════════════════════

def calls_preceded_by(
    ctx: CheckerContext,
    first: FrozenSet[str],
    second: FrozenSet[str],
) -> List[Tuple[Call, Optional[str], FrozenSet[int]]]:
    """Calls to ``second`` that some path reaches after a call to ``first``.

    Returns ``(call, name, earlier_first_call_addresses)`` in address order.
    """
    fn = ctx.function
    names: Dict[int, Optional[str]] = {
        call.address: name for _, _, call, name in ctx.iter_calls()
    }
    firsts = [addr for addr, name in names.items() if name in first]
    if not firsts:
        return []

    def transfer(block: BasicBlock, seen: FrozenSet[int]) -> FrozenSet[int]:
        for term in block.terms:
            if isinstance(term, Call) and names.get(term.address) in first:
                seen = seen | {term.address}
        return seen

    lattice = PowersetLattice(len(firsts))
    bound = iteration_bound(fn, lattice.height) * ctx.config.iteration_bound_scale
    result = WorklistSolver(fn, lattice, transfer, frozenset(), max_iterations=bound, name="call-order").solve()

    pairs = []
    for block in sorted(fn.blocks, key=lambda b: b.address):
        seen = result.fact_at(block)
        if seen is None:
            continue
        for term in block.terms:
            if not isinstance(term, Call):
                continue
            name = names.get(term.address)
            if name in second and seen:
                pairs.append((term, name, seen))
            if name in first:
                seen = seen | {term.address}
    return pairs


def _constant_argument(
    ctx: CheckerContext, block: BasicBlock, index: int, position: int
) -> Optional[int]:
    """Constant passed as argument ``position`` of the call at ``index``.

    Only the block containing the call is inspected.
    """
    cconv = ctx.calling_convention
    if cconv is None:
        return None
    loc = cconv.parameter_location(position)
    terms = block.terms[:index]
    if isinstance(loc, RegisterLocation):
        wanted = loc.register
        for term in reversed(terms):
            if isinstance(term, Call):
                return None
            if isinstance(term, Def) and cconv.canonical(term.var) == wanted:
                if isinstance(term.value, Const):
                    return term.value.value
                if isinstance(term.value, Var):
                    wanted = cconv.canonical(term.value.name)
                    continue
                return None
        return None
    if ctx.regions is None:
        return None
    slot = ctx.regions.stack_argument_slot(block, index, loc)
    if slot is None:
        return None
    for j in range(len(terms) - 1, -1, -1):
        term = terms[j]
        if isinstance(term, Call):
            return None
        if isinstance(term, Store):
            target = ctx.regions.value_of(block, j, term.target)
            if target.region is Region.STACK and target.offset == slot.offset:
                return term.value.value if isinstance(term.value, Const) else None
    return None


# ═════════════════════════════════════════════════════════════════════════
#  PART 5 — CWE-560: UMASK WITH CHMOD-STYLE ARGUMENT
# ═════════════════════════════════════════════════════════════════════════

# Owner permission bits; a mask clearing them is almost always a mode
# passed by mistake (umask(0666) instead of umask(0111)).
_OWNER_BITS = 0o700
_MAX_MODE = 0o7777


def is_chmod_style_mask(mode: int) -> bool:
    return 0 < mode <= _MAX_MODE and bool(mode & _OWNER_BITS)


class UmaskChecker(Checker):
    """
    Detects insecure permission-mask handling.

    Two patterns are reported:

      - ``umask()`` called with a constant that looks like a file mode
        (owner bits set, e.g. ``0666``) instead of a mask
      - ``umask()`` called after a file or other resource was already
        created in the same function, so the mask does not apply to it

    CWE-560: Use of umask() with chmod-style Argument
    """

    name: ClassVar[str] = "CWE560"
    cwe_id: ClassVar[str] = "CWE-560"
    description: ClassVar[str] = "umask() with chmod-style argument or called too late"
    requires_calling_convention: ClassVar[bool] = True
    requires: ClassVar[Tuple[str, ...]] = ("MemRegion",)

    def __init__(self) -> None:
        super().__init__()
        self._mask_calls: List[Tuple[Call, str, Optional[int]]] = []
        self._late_calls: List[Tuple[Call, str, FrozenSet[int]]] = []

    def collect_evidence(self, ctx: CheckerContext) -> None:
        masks = ctx.config.permission_masks
        for block, idx, call, name in ctx.iter_calls():
            if name in masks:
                self._mask_calls.append((call, name, _constant_argument(ctx, block, idx, 0)))
        if self._mask_calls:
            self._late_calls = [
                (call, name, seen)
                for call, name, seen in calls_preceded_by(ctx, ctx.config.resource_creators, masks)
            ]

    def diagnose(self, ctx: CheckerContext) -> None:
        for call, name, mode in self._mask_calls:
            if mode is not None and is_chmod_style_mask(mode):
                self._emit(
                    ctx, call.address,
                    f"{name}() called with chmod-style argument {mode:#o}",
                    evidence=(call.address,),
                    confidence=Confidence.HIGH,
                )
        creators = {c.address: n for _, _, c, n in ctx.iter_calls()}
        for call, name, seen in self._late_calls:
            first = min(seen)
            self._emit(
                ctx, call.address,
                f"{name}() called after {creators.get(first) or 'resource creation'}() at {first:#x}; "
                f"the mask does not apply to resources already created",
                evidence=(first, call.address),
            )


# ═════════════════════════════════════════════════════════════════════════
#  PART 6 — CWE-367: TIME-OF-CHECK TIME-OF-USE
# ═════════════════════════════════════════════════════════════════════════

class ToctouChecker(Checker):
    """
    Reports file-state checks (``access``, ``stat``) followed on some path
    by a use of the file (``open``, ``chmod``, ``unlink``...).

    CWE-367: Time-of-check Time-of-use (TOCTOU) Race Condition
    """

    name: ClassVar[str] = "CWE367"
    cwe_id: ClassVar[str] = "CWE-367"
    description: ClassVar[str] = "file check followed by file use"

    def __init__(self) -> None:
        super().__init__()
        self._pairs: List[Tuple[Call, Optional[str], FrozenSet[int]]] = []

    def collect_evidence(self, ctx: CheckerContext) -> None:
        self._pairs = calls_preceded_by(ctx, ctx.config.toctou_checks, ctx.config.toctou_uses)

    def diagnose(self, ctx: CheckerContext) -> None:
        names = {c.address: n for _, _, c, n in ctx.iter_calls()}
        for call, name, seen in self._pairs:
            check = min(seen)
            self._emit(
                ctx, call.address,
                f"{name}() at {call.address:#x} uses a file checked by "
                f"{names.get(check)}() at {check:#x}; the file may change in between",
                evidence=(check, call.address),
                confidence=Confidence.LOW,
            )


# ═════════════════════════════════════════════════════════════════════════
#  PART 7 — CWE-676: DANGEROUS FUNCTIONS
# ═════════════════════════════════════════════════════════════════════════

class DangerousFunctionChecker(Checker):
    """
    Flags every call to a function that cannot be used safely (``gets``,
    ``strcpy``, ``sprintf``...).

    CWE-676: Use of Potentially Dangerous Function
    """

    name: ClassVar[str] = "CWE676"
    cwe_id: ClassVar[str] = "CWE-676"
    description: ClassVar[str] = "call to a potentially dangerous function"

    def __init__(self) -> None:
        super().__init__()
        self._calls: List[Tuple[Call, str]] = []

    def collect_evidence(self, ctx: CheckerContext) -> None:
        dangerous = ctx.config.dangerous_functions
        self._calls = [
            (call, name) for _, _, call, name in ctx.iter_calls() if name in dangerous
        ]

    def diagnose(self, ctx: CheckerContext) -> None:
        for call, name in self._calls:
            self._emit(
                ctx, call.address,
                f"call to potentially dangerous function {name}()",
                evidence=(call.address,),
                confidence=Confidence.HIGH,
            )


ALL_CHECKERS: Tuple[Type[Checker], ...] = (
    NullDerefChecker,
    UmaskChecker,
    ToctouChecker,
    DangerousFunctionChecker,
)


__all__ = [
    "CheckerContext",
    "Checker",
    "Nullness",
    "NullValue",
    "NullnessLattice",
    "NullDerefChecker",
    "UmaskChecker",
    "ToctouChecker",
    "DangerousFunctionChecker",
    "calls_preceded_by",
    "is_chmod_style_mask",
    "ALL_CHECKERS",
]
