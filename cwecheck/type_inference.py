"""
cwecheck/type_inference.py
══════════════════════════

Pointer / integer type inference over registers and stack slots.

Every location holds one of ``Pointer``, ``Integer`` or ``Unknown``.
Unreached program points carry no fact at all.  ``Pointer`` and
``Integer`` are incomparable, so where incoming paths disagree the
location becomes ``Unknown``; the lattice has height 2 and the fixpoint
always terminates.

Evidence used
─────────────
  * values the region classifier places in stack, heap or global memory
  * registers used as the base of a memory access
  * arithmetic: pointer ± integer is a pointer, comparisons are integers
  * extern signatures: call arguments and return values of known library
    functions (needs a calling convention)
"""

from __future__ import annotations

import enum
import logging
from typing import Dict, List, Optional, Sequence, Set

from cwecheck.calling_convention import CallingConvention, RegisterLocation
from cwecheck.config import AnalysisConfig
from cwecheck.dataflow_engine import (
    DataflowResult,
    EnvLattice,
    FlatLattice,
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
    Load,
    Store,
    Term,
    UnOp,
    Var,
    expr_loads,
)
from cwecheck.memory_regions import (
    Location,
    MemoryRegionClassifier,
    Region,
    RegionEnv,
    RegionFacts,
    StackSlot,
)
from cwecheck.symbols import CallTargetResolver

logger = logging.getLogger(__name__)


class TypeTag(enum.Enum):
    POINTER = "pointer"
    INTEGER = "integer"
    UNKNOWN = "unknown"


_SIGNATURE_TAGS = {"ptr": TypeTag.POINTER, "int": TypeTag.INTEGER, "any": TypeTag.UNKNOWN}

_INTEGER_OPS = frozenset({"*", "/", "%", "<<", ">>", "|", "^", "==", "!=", "<", "<=", ">", ">="})

TypeEnv = Dict[Location, TypeTag]


def _base_var(address: Expr) -> Optional[str]:
    """Register forming the base of an address expression."""
    if isinstance(address, Var):
        return address.name
    if isinstance(address, BinOp) and address.op in ("+", "-"):
        if isinstance(address.lhs, Var):
            return address.lhs.name
        if address.op == "+" and isinstance(address.rhs, Var) and isinstance(address.lhs, Const):
            return address.rhs.name
    return None


# ═════════════════════════════════════════════════════════════════════════
#  RESULT
# ═════════════════════════════════════════════════════════════════════════

class TypeFacts:
    """Inferred types of one function at every program point."""

    def __init__(self, engine: "TypeInferenceEngine", regions: RegionFacts, result: DataflowResult) -> None:
        self.engine = engine
        self.regions = regions
        self.result = result
        self._states: Dict[int, List[TypeEnv]] = {}

    @property
    def iterations(self) -> int:
        return self.result.iterations

    def states(self, block: BasicBlock) -> List[TypeEnv]:
        cached = self._states.get(block.address)
        if cached is not None:
            return cached
        env = self.result.fact_at(block)
        states: List[TypeEnv] = []
        if env is not None:
            states.append(env)
            region_states = self.regions.states(block)
            for idx, term in enumerate(block.terms):
                env = self.engine.step(term, env, region_states[idx], block, idx, region_states)
                states.append(env)
        self._states[block.address] = states
        return states

    def type_at_entry(self, block: BasicBlock, location: Location) -> Optional[TypeTag]:
        """Type of ``location`` on entry to ``block``; ``None`` if unreached."""
        env = self.result.fact_at(block)
        if env is None:
            return None
        return env.get(location, TypeTag.UNKNOWN)

    def type_of(self, block: BasicBlock, index: int, expr: Expr) -> TypeTag:
        """Type of ``expr`` just before term ``index``."""
        states = self.states(block)
        if not states:
            return TypeTag.UNKNOWN
        return self.engine.evaluate(expr, states[index], self.regions.states(block)[index])


# ═════════════════════════════════════════════════════════════════════════
#  ENGINE
# ═════════════════════════════════════════════════════════════════════════

class TypeInferenceEngine:
    """Worklist type inference, run after region classification."""

    def __init__(
        self,
        classifier: MemoryRegionClassifier,
        calls: CallTargetResolver,
        config: Optional[AnalysisConfig] = None,
    ) -> None:
        self.classifier = classifier
        self.cconv: Optional[CallingConvention] = classifier.cconv
        self.calls = calls
        self.config = config or AnalysisConfig()
        self.lattice = EnvLattice(FlatLattice(TypeTag.UNKNOWN), TypeTag.UNKNOWN)

    def canonical(self, register: str) -> str:
        return self.classifier.canonical(register)

    # ── evaluation ───────────────────────────────────────────────────

    def evaluate(self, expr: Expr, env: TypeEnv, regions: RegionEnv) -> TypeTag:
        if self.classifier.evaluate(expr, regions).is_pointer:
            return TypeTag.POINTER
        if isinstance(expr, Var):
            return env.get(self.canonical(expr.name), TypeTag.UNKNOWN)
        if isinstance(expr, Const):
            return TypeTag.INTEGER
        if isinstance(expr, Load):
            slot = self.classifier.location_of(expr, regions)
            if isinstance(slot, StackSlot):
                return env.get(slot, TypeTag.UNKNOWN)
            return TypeTag.UNKNOWN
        if isinstance(expr, UnOp):
            return TypeTag.INTEGER
        if isinstance(expr, BinOp):
            if expr.op in _INTEGER_OPS:
                return TypeTag.INTEGER
            lhs = self.evaluate(expr.lhs, env, regions)
            rhs = self.evaluate(expr.rhs, env, regions)
            if expr.op == "+":
                if {lhs, rhs} == {TypeTag.POINTER, TypeTag.INTEGER}:
                    return TypeTag.POINTER
            elif expr.op == "-":
                if lhs is TypeTag.POINTER and rhs is TypeTag.INTEGER:
                    return TypeTag.POINTER
                if lhs is TypeTag.POINTER and rhs is TypeTag.POINTER:
                    return TypeTag.INTEGER
            elif expr.op == "&" and lhs is TypeTag.POINTER and rhs is TypeTag.INTEGER:
                return TypeTag.POINTER
            if lhs is TypeTag.INTEGER and rhs is TypeTag.INTEGER:
                return TypeTag.INTEGER
        return TypeTag.UNKNOWN

    # ── transfer ─────────────────────────────────────────────────────

    def _mark_bases(self, env: TypeEnv, exprs: List[Expr]) -> None:
        for expr in exprs:
            for load in expr_loads(expr):
                base = _base_var(load.address)
                if base is not None:
                    env[self.canonical(base)] = TypeTag.POINTER

    def step(
        self,
        term: Term,
        env: TypeEnv,
        regions: RegionEnv,
        block: Optional[BasicBlock] = None,
        index: int = 0,
        region_states: Sequence[RegionEnv] = (),
    ) -> TypeEnv:
        """Types after ``term``; ``regions`` is the region state before it.

        When ``block`` is given, ``term`` is its ``index``-th term and
        ``region_states`` are the region states before each of its terms.
        Register arguments of a call are then traced back to the locations
        they were copied from.
        """
        if isinstance(term, Def):
            value = self.evaluate(term.value, env, regions)
            new = dict(env)
            self._mark_bases(new, [term.value])
            _assign(new, self.canonical(term.var), value)
            return new
        if isinstance(term, Store):
            new = dict(env)
            target_base = _base_var(term.target)
            if target_base is not None:
                new[self.canonical(target_base)] = TypeTag.POINTER
            self._mark_bases(new, [term.target, term.value])
            target = self.classifier.evaluate(term.target, regions)
            if target.region is Region.STACK:
                if target.offset is None:
                    for key in [k for k in new if isinstance(k, StackSlot)]:
                        del new[key]
                else:
                    _assign(new, StackSlot(target.offset), self.evaluate(term.value, env, regions))
            return new
        if isinstance(term, CondGoto):
            new = dict(env)
            self._mark_bases(new, [term.condition])
            return new
        if isinstance(term, Call):
            return self._after_call(term, env, regions, block, index, region_states)
        return env

    def _survives_call(self, location: Location) -> bool:
        if isinstance(location, StackSlot) or location == self.classifier.stack_pointer:
            return True
        return self.cconv is not None and not self.cconv.clobbered_by_call(location)

    def _copy_sources(
        self,
        register: str,
        block: BasicBlock,
        index: int,
        region_states: Sequence[RegionEnv],
    ) -> List[Location]:
        """Locations ``register`` was copied from before term ``index``.

        Walks the block backwards along plain copies.  A location written
        after it was copied from ends the chain, and so does an earlier call
        or a store to an unknown stack offset.
        """
        sources: List[Location] = []
        target: Location = self.canonical(register)
        written: Set[Location] = set()
        for idx in range(index - 1, -1, -1):
            term = block.terms[idx]
            regions = region_states[idx] if idx < len(region_states) else {}
            if isinstance(term, Call):
                break
            if isinstance(term, Def):
                dest: Optional[Location] = self.canonical(term.var)
            elif isinstance(term, Store):
                dest = self.classifier.location_of(Load(term.target), regions)
                if dest is None:
                    if self.classifier.evaluate(term.target, regions).region is Region.STACK:
                        break
                    continue
            else:
                continue
            if dest != target:
                written.add(dest)
                continue
            source = self.classifier.location_of(term.value, regions)
            if source is None or source in written:
                break
            sources.append(source)
            target = source
        return sources

    def _after_call(
        self,
        call: Call,
        env: TypeEnv,
        regions: RegionEnv,
        block: Optional[BasicBlock] = None,
        index: int = 0,
        region_states: Sequence[RegionEnv] = (),
    ) -> TypeEnv:
        new: TypeEnv = {key: value for key, value in env.items() if self._survives_call(key)}
        if self.cconv is None:
            return new
        sp = self.classifier.stack_pointer
        signature = self.config.signature_of(self.calls.callee_name(call))
        if signature is not None:
            sp_value = self.classifier.evaluate(Var(sp), regions) if sp else None
            for idx, tag in enumerate(signature.parameters):
                if tag != "ptr":
                    continue
                loc = self.cconv.parameter_location(idx)
                if isinstance(loc, RegisterLocation):
                    if block is None:
                        continue
                    # the register itself is clobbered; its copies are not
                    for source in self._copy_sources(loc.register, block, index, region_states):
                        if self._survives_call(source):
                            new[source] = TypeTag.POINTER
                elif sp_value is not None and sp_value.region is Region.STACK and sp_value.offset is not None:
                    # stack-passed arguments stay in the caller's frame after the call
                    new[StackSlot(sp_value.offset + loc.offset)] = TypeTag.POINTER
            if signature.returns is not None:
                _assign(new, self.cconv.return_register, _SIGNATURE_TAGS[signature.returns])
        return new

    def transfer_with(self, regions: RegionFacts):
        def transfer(block: BasicBlock, env: TypeEnv) -> TypeEnv:
            region_states = regions.states(block)
            for idx, term in enumerate(block.terms):
                env = self.step(
                    term, env, region_states[idx] if region_states else {},
                    block, idx, region_states,
                )
            return env
        return transfer

    def initial_state(self, function: Function) -> TypeEnv:
        env: TypeEnv = {}
        sp = self.classifier.stack_pointer
        if sp is not None:
            env[sp] = TypeTag.POINTER
        signature = self.config.signature_of(self.calls.function_name(function))
        if signature is not None and self.cconv is not None:
            for idx, tag in enumerate(signature.parameters):
                loc = self.cconv.parameter_location(idx)
                if isinstance(loc, RegisterLocation):
                    _assign(env, loc.register, _SIGNATURE_TAGS[tag])
        return env

    # ── driver ───────────────────────────────────────────────────────

    def infer(self, function: Function, regions: RegionFacts) -> TypeFacts:
        bound = iteration_bound(function, self.lattice.height) * self.config.iteration_bound_scale
        solver = WorklistSolver(
            function,
            self.lattice,
            self.transfer_with(regions),
            self.initial_state(function),
            max_iterations=bound,
            name="TypeInference",
        )
        return TypeFacts(self, regions, solver.solve())


def _assign(env: TypeEnv, location: Location, value: TypeTag) -> None:
    if value is TypeTag.UNKNOWN:
        env.pop(location, None)
    else:
        env[location] = value


__all__ = [
    "TypeTag",
    "TypeFacts",
    "TypeInferenceEngine",
]
