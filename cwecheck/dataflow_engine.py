"""
cwecheck.dataflow_engine
========================

A generic, lattice-based forward dataflow framework over the basic blocks
of one :class:`cwecheck.ir.Function`.

This module provides the fixpoint computation used by the memory region
classifier, the type inference engine and the dataflow detectors.

Theory
------
A dataflow analysis is defined by:

1.  A **lattice** ``(L, ⊑, ⊔)`` of finite height.
2.  A **transfer function** ``f : Block × L → L``.
3.  An **initial value** for the entry block.

Facts are computed per block entry; unreached blocks have no fact (the
implicit ``⊥``).  The engine joins the previous entry fact into every new
one (``in' = in ⊔ merged``), so entry facts only ever grow.  Together
with the finite lattice height this bounds the number of block visits:

    visits ≤ blocks × (height × locations + 1)

The bound is checked.  Exceeding it means a transfer function or a
lattice violated monotonicity, which is a defect in the engine and is
reported as :class:`cwecheck.errors.InternalInvariantError`.

Worklist
--------
Blocks are processed in **reverse post-order** (predecessors before
successors) using a priority worklist with a membership set, so each
block is queued at most once at a time.

Public API
----------
    Lattice             - abstract base for lattice definitions
    EnvLattice          - map lattice ``location → value`` with a default
    FlatLattice         - concrete values below a single top
    PowersetLattice     - sets ordered by inclusion
    ProductLattice      - tuples of lattice values
    DataflowResult      - container for analysis results
    WorklistSolver      - single-function fixpoint engine
    reverse_post_order  - block ordering helper
    iteration_bound     - visit bound for a function
"""

from __future__ import annotations

import abc
import heapq
import logging
import time
from dataclasses import dataclass, field
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    Generic,
    Hashable,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    TypeVar,
)

from cwecheck.errors import InternalInvariantError
from cwecheck.ir import BasicBlock, Def, Function, Store, term_reads

logger = logging.getLogger(__name__)

L = TypeVar("L")          # Lattice value type
V = TypeVar("V")          # Value type (for EnvLattice)


# ===========================================================================
# LATTICE — ABSTRACT BASE
# ===========================================================================

class Lattice(abc.ABC, Generic[L]):
    """Abstract base class for a dataflow lattice.

    A lattice must provide:

    - ``join(a, b)`` → the least upper bound ``a ⊔ b``.
    - ``leq(a, b)``  → ``True`` iff ``a ⊑ b``.
    - ``height``     → length of the longest strictly ascending chain.
    """

    height: int = 1

    @abc.abstractmethod
    def join(self, a: L, b: L) -> L:
        """Return the least upper bound ``a ⊔ b``."""
        ...

    @abc.abstractmethod
    def leq(self, a: L, b: L) -> bool:
        """Return ``True`` iff ``a ⊑ b``."""
        ...

    def eq(self, a: L, b: L) -> bool:
        """Equality: ``a = b`` iff ``a ⊑ b`` and ``b ⊑ a``."""
        return self.leq(a, b) and self.leq(b, a)


# ---------- EnvLattice ------------------------------------------------------

class EnvLattice(Lattice[Dict[Hashable, V]]):
    """Lattice of environments ``location → value``.

    Locations missing from an environment implicitly hold ``default``.
    Entries equal to ``default`` are dropped after every join, so two
    environments are equal exactly when their dicts are equal.

    Parameters
    ----------
    value_lattice : Lattice
        The lattice for individual values.
    default : value
        The value of locations that are not mentioned.
    """

    def __init__(self, value_lattice: Lattice, default: Any) -> None:
        self.value_lattice = value_lattice
        self.default = default
        self.height = value_lattice.height

    def join(self, a: Mapping, b: Mapping) -> Dict:
        vl = self.value_lattice
        result: Dict = {}
        for k in set(a) | set(b):
            joined = vl.join(a.get(k, self.default), b.get(k, self.default))
            if joined != self.default:
                result[k] = joined
        return result

    def leq(self, a: Mapping, b: Mapping) -> bool:
        vl = self.value_lattice
        for k in set(a) | set(b):
            if not vl.leq(a.get(k, self.default), b.get(k, self.default)):
                return False
        return True

    def normalize(self, env: Mapping) -> Dict:
        """Drop entries that hold the default value."""
        return {k: v for k, v in env.items() if v != self.default}


# ---------- FlatLattice -----------------------------------------------------

class FlatLattice(Lattice):
    """A flat lattice over concrete values with an explicit top.

    ::

            ⊤
          / | \\
         a  b  c  ...

    Any two distinct concrete values are incomparable; their join is ⊤.
    Bottom is the absent fact of an unreached block.
    """

    height = 1

    def __init__(self, top: Any) -> None:
        self.top = top

    def join(self, a, b):
        if a == b:
            return a
        return self.top

    def leq(self, a, b) -> bool:
        return a == b or b == self.top


# ---------- PowersetLattice -------------------------------------------------

class PowersetLattice(Lattice[FrozenSet]):
    """Powerset lattice: ``(2^U, ⊆, ∅, ∪)``.

    Parameters
    ----------
    universe_size : int
        Number of distinct elements that can occur; used as the height.
    """

    def __init__(self, universe_size: int = 1) -> None:
        self.height = max(universe_size, 1)

    def join(self, a: FrozenSet, b: FrozenSet) -> FrozenSet:
        return a | b

    def leq(self, a: FrozenSet, b: FrozenSet) -> bool:
        return a <= b


# ---------- ProductLattice --------------------------------------------------

class ProductLattice(Lattice[Tuple]):
    """Product of ``n`` lattices.  Values are tuples of length ``n``.

    Parameters
    ----------
    *lattices : Lattice
        The component lattices.
    """

    def __init__(self, *lattices: Lattice) -> None:
        self.lattices: Tuple[Lattice, ...] = lattices
        self.height = sum(lat.height for lat in lattices)

    def join(self, a: Tuple, b: Tuple) -> Tuple:
        return tuple(
            lat.join(av, bv)
            for lat, av, bv in zip(self.lattices, a, b)
        )

    def leq(self, a: Tuple, b: Tuple) -> bool:
        return all(
            lat.leq(av, bv)
            for lat, av, bv in zip(self.lattices, a, b)
        )


# ===========================================================================
# DATAFLOW RESULT
# ===========================================================================

@dataclass
class DataflowResult(Generic[L]):
    """Container for dataflow analysis results.

    Attributes
    ----------
    facts_in : dict
        Map from block address → fact at block entry.
    facts_out : dict
        Map from block address → fact at block exit.
    iterations : int
        Number of block visits performed.
    bound : int
        The visit bound the run was checked against.
    elapsed_seconds : float
        Wall-clock time.
    """
    facts_in: Dict[int, L] = field(default_factory=dict)
    facts_out: Dict[int, L] = field(default_factory=dict)
    iterations: int = 0
    bound: int = 0
    elapsed_seconds: float = 0.0

    def fact_at(self, block: BasicBlock, *, before: bool = True) -> Optional[L]:
        """Return the fact at a block; ``None`` for unreached blocks."""
        if before:
            return self.facts_in.get(block.address)
        return self.facts_out.get(block.address)

    def reached(self, block: BasicBlock) -> bool:
        return block.address in self.facts_in


# ===========================================================================
# ORDERING AND BOUNDS
# ===========================================================================

def reverse_post_order(function: Function) -> List[BasicBlock]:
    """Reverse post-order of the blocks reachable from the entry block.

    Iterative DFS; unreachable blocks are appended in address order.
    """
    entry = function.entry
    if entry is None:
        return []
    post: List[BasicBlock] = []
    visited: Set[int] = {entry.address}
    stack = [(entry, iter(function.successors(entry)))]
    while stack:
        block, succs = stack[-1]
        advanced = False
        for succ in succs:
            if succ.address not in visited:
                visited.add(succ.address)
                stack.append((succ, iter(function.successors(succ))))
                advanced = True
                break
        if not advanced:
            post.append(block)
            stack.pop()
    order = list(reversed(post))
    order.extend(sorted(
        (b for b in function.blocks if b.address not in visited),
        key=lambda b: b.address,
    ))
    return order


# Registers a call may touch without naming them in the IR.
_IMPLICIT_LOCATION_SLACK = 64


def iteration_bound(function: Function, height: int) -> int:
    """Upper bound on block visits for a lattice of the given height."""
    locations: Set[Any] = set()
    for blk, idx, term in function.iter_terms():
        locations |= term_reads(term)
        if isinstance(term, Def):
            locations.add(term.var)
        elif isinstance(term, Store):
            locations.add(("store", blk.address, idx))
    locations_count = len(locations) + _IMPLICIT_LOCATION_SLACK
    return len(function.blocks) * (height * locations_count + 1) + 1


# ===========================================================================
# INTRAPROCEDURAL SOLVER
# ===========================================================================

class WorklistSolver(Generic[L]):
    """Fixpoint engine for forward intraprocedural dataflow analysis.

    Parameters
    ----------
    function : Function
        The function whose CFG is analysed.
    lattice : Lattice[L]
        The dataflow lattice.
    transfer : callable(block, L) → L
        The block transfer function.  Must be monotone.
    initial_value : L
        Fact at the entry block.
    max_iterations : int, optional
        Visit bound; defaults to :func:`iteration_bound`.
    name : str
        Analysis name used in logs and errors.
    """

    def __init__(
        self,
        function: Function,
        lattice: Lattice[L],
        transfer: Callable[[BasicBlock, L], L],
        initial_value: L,
        max_iterations: Optional[int] = None,
        name: str = "dataflow",
    ) -> None:
        self.function = function
        self.lattice = lattice
        self.transfer = transfer
        self.initial_value = initial_value
        self.max_iterations = (
            max_iterations if max_iterations is not None
            else iteration_bound(function, lattice.height)
        )
        self.name = name

    def solve(self) -> DataflowResult[L]:
        """Run the analysis to fixpoint.

        Raises
        ------
        InternalInvariantError
            If the visit bound is exceeded.
        """
        t0 = time.monotonic()
        fn = self.function
        lat = self.lattice
        result: DataflowResult[L] = DataflowResult(bound=self.max_iterations)
        entry = fn.entry
        if entry is None:
            return result

        order = reverse_post_order(fn)
        rank = {blk.address: idx for idx, blk in enumerate(order)}

        facts_in = result.facts_in
        facts_out = result.facts_out
        facts_in[entry.address] = self.initial_value

        worklist: List[tuple] = [(rank[entry.address], entry.address)]
        queued: Set[int] = {entry.address}
        iterations = 0

        while worklist:
            _, addr = heapq.heappop(worklist)
            queued.discard(addr)
            iterations += 1
            if iterations > self.max_iterations:
                logger.error(
                    "%s: no fixpoint for function %#x after %d visits",
                    self.name, fn.address, iterations - 1,
                )
                raise InternalInvariantError(
                    f"{self.name} did not converge within its bound",
                    function=hex(fn.address),
                    bound=self.max_iterations,
                )

            block = fn.block_map[addr]
            out = self.transfer(block, facts_in[addr])
            facts_out[addr] = out

            for succ in fn.successors(block):
                old = facts_in.get(succ.address)
                new = out if old is None else lat.join(old, out)
                if old is not None and lat.leq(new, old):
                    continue
                facts_in[succ.address] = new
                if succ.address not in queued:
                    queued.add(succ.address)
                    heapq.heappush(worklist, (rank[succ.address], succ.address))

        result.iterations = iterations
        result.elapsed_seconds = time.monotonic() - t0
        logger.debug(
            "%s: function %#x converged after %d visits (bound %d)",
            self.name, fn.address, iterations, self.max_iterations,
        )
        return result


__all__ = [
    "Lattice",
    "EnvLattice",
    "FlatLattice",
    "PowersetLattice",
    "ProductLattice",
    "DataflowResult",
    "WorklistSolver",
    "reverse_post_order",
    "iteration_bound",
]
