"""
cwecheck/memory_regions.py
══════════════════════════

Memory region classification: for each program point and each register
or stack slot, whether the value held there points into the stack, the
heap, global data, or somewhere unknown.

Value lattice
─────────────

                 Unknown
             /      |      \\
       Stack(?)  Heap(?)  Global(?)
          |         |         |
       Stack(k)  Heap(k)  Global(a)

``Stack(k)`` is an offset from the stack pointer at function entry,
``Global(a)`` an address inside a data section.  Offsets that disagree at
a merge collapse to ``?``; regions that disagree collapse to Unknown.
Facts only ever move up, so a value that became Unknown stays Unknown for
the rest of the pass.

Seeds
─────
  * the stack pointer at entry is ``Stack(0)``
  * constants inside non-executable sections are ``Global``
  * return values of allocator calls are ``Heap`` (needs a calling
    convention to know the return register)

Stack slots are tracked as locations of their own, so a pointer spilled
to ``[RSP+8]`` and reloaded keeps its region.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from cwecheck.address_translation import AddressTranslator
from cwecheck.calling_convention import (
    CallingConvention,
    CallingConventionResult,
    StackLocation,
    stack_pointer_of,
)
from cwecheck.config import AnalysisConfig
from cwecheck.dataflow_engine import (
    DataflowResult,
    EnvLattice,
    Lattice,
    WorklistSolver,
    iteration_bound,
)
from cwecheck.ir import (
    BasicBlock,
    BinOp,
    Call,
    Const,
    Def,
    Expr,
    Function,
    Load,
    Program,
    Store,
    Term,
    Var,
)
from cwecheck.symbols import CallTargetResolver

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — VALUES AND LOCATIONS
# ═════════════════════════════════════════════════════════════════════════

class Region(enum.Enum):
    STACK = "stack"
    HEAP = "heap"
    GLOBAL = "global"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class RegionValue:
    region: Region
    offset: Optional[int] = None

    @property
    def is_pointer(self) -> bool:
        return self.region is not Region.UNKNOWN

    def shifted(self, delta: int) -> "RegionValue":
        if self.offset is None or self.region is Region.UNKNOWN:
            return self
        return RegionValue(self.region, self.offset + delta)

    def widened(self) -> "RegionValue":
        return RegionValue(self.region) if self.region is not Region.UNKNOWN else self

    def __str__(self) -> str:
        if self.region is Region.UNKNOWN:
            return "unknown"
        if self.offset is None:
            return f"{self.region.value}(?)"
        return f"{self.region.value}({self.offset:+#x})"


UNKNOWN_REGION = RegionValue(Region.UNKNOWN)


@dataclass(frozen=True)
class StackSlot:
    """A stack location, as an offset from the stack pointer at entry."""
    offset: int

    def __str__(self) -> str:
        return f"stack[{self.offset:+#x}]"


Location = Union[str, StackSlot]
RegionEnv = Dict[Location, RegionValue]


class RegionLattice(Lattice[RegionValue]):
    height = 2

    def join(self, a: RegionValue, b: RegionValue) -> RegionValue:
        if a == b:
            return a
        if a.region is b.region and a.region is not Region.UNKNOWN:
            return RegionValue(a.region)
        return UNKNOWN_REGION

    def leq(self, a: RegionValue, b: RegionValue) -> bool:
        if a == b or b.region is Region.UNKNOWN:
            return True
        return a.region is b.region and b.offset is None


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — PER-FUNCTION RESULT
# ═════════════════════════════════════════════════════════════════════════

class RegionFacts:
    """Region classification of one function at every program point."""

    def __init__(
        self,
        classifier: "MemoryRegionClassifier",
        function: Function,
        result: DataflowResult,
    ) -> None:
        self.classifier = classifier
        self.function = function
        self.result = result
        self._states: Dict[int, List[RegionEnv]] = {}

    @property
    def stack_pointer(self) -> Optional[str]:
        return self.classifier.stack_pointer

    def reached(self, block: BasicBlock) -> bool:
        return self.result.reached(block)

    def states(self, block: BasicBlock) -> List[RegionEnv]:
        """State before each term of ``block``, then the state after it.

        Empty for unreached blocks.
        """
        cached = self._states.get(block.address)
        if cached is not None:
            return cached
        env = self.result.fact_at(block)
        states: List[RegionEnv] = []
        if env is not None:
            states.append(env)
            for term in block.terms:
                env = self.classifier.step(term, env)
                states.append(env)
        self._states[block.address] = states
        return states

    def state_before(self, block: BasicBlock, index: int) -> Optional[RegionEnv]:
        states = self.states(block)
        return states[index] if states else None

    def value_of(self, block: BasicBlock, index: int, expr: Expr) -> RegionValue:
        """Region of ``expr`` evaluated just before term ``index``."""
        env = self.state_before(block, index)
        if env is None:
            return UNKNOWN_REGION
        return self.classifier.evaluate(expr, env)

    def location_of(self, block: BasicBlock, index: int, expr: Expr) -> Optional[Location]:
        """The register or stack slot ``expr`` reads, if it reads exactly one."""
        env = self.state_before(block, index)
        if env is None:
            return None
        return self.classifier.location_of(expr, env)

    def stack_argument_slot(
        self, block: BasicBlock, index: int, location: StackLocation
    ) -> Optional[StackSlot]:
        """Slot of a stack-passed call argument at call term ``index``."""
        sp = self.stack_pointer
        if sp is None:
            return None
        value = self.value_of(block, index, Var(sp))
        if value.region is not Region.STACK or value.offset is None:
            return None
        return StackSlot(value.offset + location.offset)


# ═════════════════════════════════════════════════════════════════════════
#  PART 3 — CLASSIFIER
# ═════════════════════════════════════════════════════════════════════════

class MemoryRegionClassifier:
    """Forward region analysis over one function at a time.

    Parameters
    ----------
    program : Program
    cconv : CallingConvention or Unsupported
        Without a convention, calls clobber every register except the
        stack pointer and allocator results stay Unknown.
    calls : CallTargetResolver
        Names call targets, to recognise allocators.
    config : AnalysisConfig
    """

    def __init__(
        self,
        program: Program,
        cconv: CallingConventionResult,
        calls: CallTargetResolver,
        config: Optional[AnalysisConfig] = None,
        translator: Optional[AddressTranslator] = None,
    ) -> None:
        self.program = program
        self.cconv = cconv if isinstance(cconv, CallingConvention) else None
        self.calls = calls
        self.config = config or AnalysisConfig()
        self.translator = translator or AddressTranslator.from_program(program)
        self.stack_pointer = stack_pointer_of(program.architecture, cconv)
        self.lattice = EnvLattice(RegionLattice(), UNKNOWN_REGION)
        if self.stack_pointer is None:
            logger.warning(
                "%s: unknown stack pointer for %s, stack regions disabled",
                program.binary.name, program.architecture,
            )

    # ── helpers ──────────────────────────────────────────────────────

    def canonical(self, register: str) -> str:
        return self.cconv.canonical(register) if self.cconv else register

    def is_global_address(self, address: int) -> bool:
        sec = self.translator.section_for(address - self.translator.delta)
        return sec is not None and sec.is_data

    def initial_state(self) -> RegionEnv:
        if self.stack_pointer is None:
            return {}
        return {self.stack_pointer: RegionValue(Region.STACK, 0)}

    # ── evaluation ───────────────────────────────────────────────────

    def evaluate(self, expr: Expr, env: RegionEnv) -> RegionValue:
        if isinstance(expr, Var):
            return env.get(self.canonical(expr.name), UNKNOWN_REGION)
        if isinstance(expr, Const):
            if self.is_global_address(expr.value):
                return RegionValue(Region.GLOBAL, expr.value)
            return UNKNOWN_REGION
        if isinstance(expr, Load):
            slot = self._slot_of(expr.address, env)
            if slot is None:
                return UNKNOWN_REGION
            return env.get(slot, UNKNOWN_REGION)
        if isinstance(expr, BinOp):
            return self._evaluate_binop(expr, env)
        return UNKNOWN_REGION

    def _evaluate_binop(self, expr: BinOp, env: RegionEnv) -> RegionValue:
        lhs = self.evaluate(expr.lhs, env)
        rhs = self.evaluate(expr.rhs, env)
        if expr.op == "+":
            if lhs.is_pointer and rhs.is_pointer:
                return UNKNOWN_REGION
            if lhs.is_pointer:
                return self._displace(lhs, expr.rhs, 1)
            if rhs.is_pointer:
                return self._displace(rhs, expr.lhs, 1)
            return UNKNOWN_REGION
        if expr.op == "-":
            if lhs.is_pointer and not rhs.is_pointer:
                return self._displace(lhs, expr.rhs, -1)
            return UNKNOWN_REGION
        if expr.op == "&" and lhs.region is Region.STACK and isinstance(expr.rhs, Const):
            # stack realignment
            return lhs.widened()
        return UNKNOWN_REGION

    @staticmethod
    def _displace(base: RegionValue, operand: Expr, sign: int) -> RegionValue:
        if isinstance(operand, Const):
            return base.shifted(sign * operand.value)
        return base.widened()

    def _slot_of(self, address: Expr, env: RegionEnv) -> Optional[StackSlot]:
        value = self.evaluate(address, env)
        if value.region is Region.STACK and value.offset is not None:
            return StackSlot(value.offset)
        return None

    def location_of(self, expr: Expr, env: RegionEnv) -> Optional[Location]:
        if isinstance(expr, Var):
            return self.canonical(expr.name)
        if isinstance(expr, Load):
            return self._slot_of(expr.address, env)
        return None

    # ── transfer ─────────────────────────────────────────────────────

    def step(self, term: Term, env: RegionEnv) -> RegionEnv:
        """State after ``term``; ``env`` is not modified."""
        if isinstance(term, Def):
            value = self.evaluate(term.value, env)
            new = dict(env)
            _assign(new, self.canonical(term.var), value)
            return new
        if isinstance(term, Store):
            target = self.evaluate(term.target, env)
            if target.region is not Region.STACK:
                return env
            new = dict(env)
            if target.offset is None:
                for key in [k for k in new if isinstance(k, StackSlot)]:
                    del new[key]
            else:
                _assign(new, StackSlot(target.offset), self.evaluate(term.value, env))
            return new
        if isinstance(term, Call):
            return self._after_call(term, env)
        return env

    def _after_call(self, call: Call, env: RegionEnv) -> RegionEnv:
        new: RegionEnv = {}
        for key, value in env.items():
            if isinstance(key, StackSlot):
                new[key] = value
            elif key == self.stack_pointer:
                new[key] = value
            elif self.cconv is not None and not self.cconv.clobbered_by_call(key):
                new[key] = value
        if self.cconv is not None:
            name = self.calls.callee_name(call)
            if name is not None and name in self.config.allocators:
                new[self.cconv.return_register] = RegionValue(Region.HEAP, 0)
        return new

    def transfer(self, block: BasicBlock, env: RegionEnv) -> RegionEnv:
        for term in block.terms:
            env = self.step(term, env)
        return env

    # ── driver ───────────────────────────────────────────────────────

    def classify(self, function: Function) -> RegionFacts:
        bound = iteration_bound(function, self.lattice.height) * self.config.iteration_bound_scale
        solver = WorklistSolver(
            function,
            self.lattice,
            self.transfer,
            self.initial_state(),
            max_iterations=bound,
            name="MemRegion",
        )
        return RegionFacts(self, function, solver.solve())


def _assign(env: RegionEnv, location: Location, value: RegionValue) -> None:
    if value.region is Region.UNKNOWN:
        env.pop(location, None)
    else:
        env[location] = value


__all__ = [
    "Region",
    "RegionValue",
    "UNKNOWN_REGION",
    "StackSlot",
    "Location",
    "RegionLattice",
    "RegionFacts",
    "MemoryRegionClassifier",
]
