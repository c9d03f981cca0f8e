"""
cwecheck/ir.py
══════════════

Immutable program representation consumed by every analysis unit.

The lifter that produces this structure is an external collaborator; the
model below is the contract between it and the analysis core.

Model
─────

  Program
  ├── BinaryInfo            identity of the analysed file
  ├── Architecture          instruction set, bit width, format, endianness
  ├── sections              Section table (may be empty)
  ├── symbols               static symbol table (None when stripped)
  ├── relocations           relocation/import table (None when absent)
  └── functions
      └── Function          address, optional name, CFG of BasicBlocks
          └── BasicBlock    address, ordered IR terms

Expressions
───────────

  e ::= Var(name) | Const(value) | BinOp(op, e, e) | UnOp(op, e)
      | Load(e) | UnknownExpr

Terms
─────

  Def(var := e)   Store(mem[e] := e)   Goto(e)   CondGoto(e, e)
  Call(target, return_to)   Return

A block ends with zero or more jumps.  Only a block whose last jump is a
CondGoto falls through to the next block (by address) of the same
function.  A block without jumps marks a point where control-flow
recovery failed and is a dead end.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, replace
from functools import cached_property
from typing import (
    Dict,
    FrozenSet,
    Iterator,
    List,
    Optional,
    Tuple,
    Union,
)


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — ARCHITECTURE AND BINARY METADATA
# ═════════════════════════════════════════════════════════════════════════

class BinaryFormat(enum.Enum):
    """Container format reported by the loader."""
    ELF = "elf"
    PE = "pe"
    MACHO = "macho"
    UNKNOWN = "unknown"


class Endianness(enum.Enum):
    LITTLE = "little"
    BIG = "big"


# ABI variant implied by the container format.
_FORMAT_ABI: Dict[BinaryFormat, str] = {
    BinaryFormat.ELF: "sysv",
    BinaryFormat.PE: "windows",
    BinaryFormat.MACHO: "darwin",
}


@dataclass(frozen=True)
class Architecture:
    """Architecture tag of a program.

    ``isa`` uses the canonical names ``x86``, ``x86_64``, ``arm``,
    ``aarch64``, ``mips``, ``mips64``, ``ppc`` and ``ppc64``; other
    strings are accepted and simply have no calling convention.

    The ABI variant comes from loader metadata: an explicit ``abi`` wins,
    otherwise it is implied by the binary format.  It is never guessed
    from code patterns.
    """
    isa: str
    bits: int
    binary_format: BinaryFormat = BinaryFormat.ELF
    endianness: Endianness = Endianness.LITTLE
    abi: Optional[str] = None

    @property
    def abi_variant(self) -> str:
        if self.abi:
            return self.abi
        return _FORMAT_ABI.get(self.binary_format, "unknown")

    @property
    def pointer_size(self) -> int:
        return self.bits // 8

    def __str__(self) -> str:
        return f"{self.isa}-{self.bits}-{self.abi_variant}-{self.endianness.value}"


@dataclass(frozen=True)
class BinaryInfo:
    """Identity of the analysed binary."""
    name: str
    sha256: Optional[str] = None


@dataclass(frozen=True)
class Section:
    """A loaded section: virtual address range plus file offset."""
    name: str
    address: int
    size: int
    offset: Optional[int] = None
    readable: bool = True
    writable: bool = False
    executable: bool = False

    @property
    def end(self) -> int:
        return self.address + self.size

    def contains(self, address: int) -> bool:
        return self.address <= address < self.end

    @property
    def is_data(self) -> bool:
        """Global data lives in allocated, non-executable sections."""
        return not self.executable and self.size > 0


class SymbolKind(enum.Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"


@dataclass(frozen=True)
class Symbol:
    address: int
    name: str
    kind: SymbolKind = SymbolKind.STATIC
    is_function: bool = True
    size: int = 0


@dataclass(frozen=True)
class Relocation:
    """An import slot: the address that the loader patches with ``name``."""
    address: int
    name: str
    type: str = ""


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — EXPRESSIONS
# ═════════════════════════════════════════════════════════════════════════

BINARY_OPERATORS: FrozenSet[str] = frozenset({
    "+", "-", "*", "/", "%", "&", "|", "^", "<<", ">>",
    "==", "!=", "<", "<=", ">", ">=",
})
COMPARISON_OPERATORS: FrozenSet[str] = frozenset({
    "==", "!=", "<", "<=", ">", ">=",
})
UNARY_OPERATORS: FrozenSet[str] = frozenset({"-", "~", "!"})


@dataclass(frozen=True)
class Var:
    name: str

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Const:
    value: int

    def __str__(self) -> str:
        if self.value < 0:
            return f"-{-self.value:#x}"
        return f"{self.value:#x}"


@dataclass(frozen=True)
class BinOp:
    op: str
    lhs: "Expr"
    rhs: "Expr"

    def __str__(self) -> str:
        return f"({self.lhs} {self.op} {self.rhs})"


@dataclass(frozen=True)
class UnOp:
    op: str
    operand: "Expr"

    def __str__(self) -> str:
        return f"{self.op}{self.operand}"


@dataclass(frozen=True)
class Load:
    address: "Expr"

    def __str__(self) -> str:
        return f"mem[{self.address}]"


@dataclass(frozen=True)
class UnknownExpr:
    """An expression the lifter could not translate."""
    text: str = ""

    def __str__(self) -> str:
        return "unknown" if not self.text else f"unknown({self.text})"


Expr = Union[Var, Const, BinOp, UnOp, Load, UnknownExpr]


def expr_vars(expr: Expr) -> FrozenSet[str]:
    """Names of all registers read by ``expr`` (including inside loads)."""
    if isinstance(expr, Var):
        return frozenset((expr.name,))
    if isinstance(expr, BinOp):
        return expr_vars(expr.lhs) | expr_vars(expr.rhs)
    if isinstance(expr, UnOp):
        return expr_vars(expr.operand)
    if isinstance(expr, Load):
        return expr_vars(expr.address)
    return frozenset()


def expr_loads(expr: Expr) -> List[Load]:
    """All ``Load`` sub-expressions, innermost first."""
    found: List[Load] = []

    def _walk(e: Expr) -> None:
        if isinstance(e, BinOp):
            _walk(e.lhs)
            _walk(e.rhs)
        elif isinstance(e, UnOp):
            _walk(e.operand)
        elif isinstance(e, Load):
            _walk(e.address)
            found.append(e)

    _walk(expr)
    return found


def address_vars(expr: Expr) -> FrozenSet[str]:
    """Registers used as (part of) a dereferenced address inside ``expr``."""
    result: FrozenSet[str] = frozenset()
    for load in expr_loads(expr):
        result |= expr_vars(load.address)
    return result


# ═════════════════════════════════════════════════════════════════════════
#  PART 3 — TERMS
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Def:
    address: int
    var: str
    value: Expr

    def __str__(self) -> str:
        return f"{self.var} := {self.value}"


@dataclass(frozen=True)
class Store:
    address: int
    target: Expr
    value: Expr

    def __str__(self) -> str:
        return f"mem[{self.target}] := {self.value}"


@dataclass(frozen=True)
class Goto:
    address: int
    target: Expr

    def __str__(self) -> str:
        return f"goto {self.target}"


@dataclass(frozen=True)
class CondGoto:
    address: int
    condition: Expr
    target: Expr

    def __str__(self) -> str:
        return f"when {self.condition} goto {self.target}"


@dataclass(frozen=True)
class Call:
    """A call.  ``extern`` names the callee when the lifter already knows it."""
    address: int
    target: Optional[Expr] = None
    extern: Optional[str] = None
    return_to: Optional[int] = None

    @property
    def direct_target(self) -> Optional[int]:
        if isinstance(self.target, Const):
            return self.target.value
        return None

    def __str__(self) -> str:
        callee = f"@{self.extern}" if self.extern else str(self.target)
        if self.return_to is None:
            return f"call {callee}"
        return f"call {callee} returns {self.return_to:#x}"


@dataclass(frozen=True)
class Return:
    address: int

    def __str__(self) -> str:
        return "return"


Term = Union[Def, Store, Goto, CondGoto, Call, Return]
JUMP_TERMS = (Goto, CondGoto, Call, Return)


def term_reads(term: Term) -> FrozenSet[str]:
    """Registers read by a term."""
    if isinstance(term, Def):
        return expr_vars(term.value)
    if isinstance(term, Store):
        return expr_vars(term.target) | expr_vars(term.value)
    if isinstance(term, Goto):
        return expr_vars(term.target)
    if isinstance(term, CondGoto):
        return expr_vars(term.condition) | expr_vars(term.target)
    if isinstance(term, Call) and term.target is not None:
        return expr_vars(term.target)
    return frozenset()


# ═════════════════════════════════════════════════════════════════════════
#  PART 4 — BLOCKS, FUNCTIONS, PROGRAM
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class BasicBlock:
    address: int
    terms: Tuple[Term, ...] = ()

    @property
    def jumps(self) -> Tuple[Term, ...]:
        return tuple(t for t in self.terms if isinstance(t, JUMP_TERMS))

    @property
    def calls(self) -> Tuple[Call, ...]:
        return tuple(t for t in self.terms if isinstance(t, Call))


@dataclass(frozen=True)
class Function:
    """A function and its control-flow graph.

    The entry block is the block at ``address``; when the lifter did not
    emit one, the lowest block is used.
    """
    address: int
    blocks: Tuple[BasicBlock, ...] = ()
    name: Optional[str] = None

    @cached_property
    def block_map(self) -> Dict[int, BasicBlock]:
        return {blk.address: blk for blk in self.blocks}

    @property
    def entry(self) -> Optional[BasicBlock]:
        if not self.blocks:
            return None
        return self.block_map.get(self.address, min(self.blocks, key=lambda b: b.address))

    def block_at(self, address: int) -> Optional[BasicBlock]:
        return self.block_map.get(address)

    @cached_property
    def _fallthrough(self) -> Dict[int, Optional[int]]:
        ordered = sorted(self.block_map)
        nxt: Dict[int, Optional[int]] = {}
        for idx, addr in enumerate(ordered):
            nxt[addr] = ordered[idx + 1] if idx + 1 < len(ordered) else None
        return nxt

    def jump_targets(self, block: BasicBlock) -> List[int]:
        """Direct jump targets of ``block``, whether or not they are blocks."""
        targets: List[int] = []
        for jmp in block.jumps:
            if isinstance(jmp, (Goto, CondGoto)) and isinstance(jmp.target, Const):
                targets.append(jmp.target.value)
            elif isinstance(jmp, Call) and jmp.return_to is not None:
                targets.append(jmp.return_to)
        return targets

    def successors(self, block: BasicBlock) -> List[BasicBlock]:
        """Intraprocedural successors in a deterministic order.

        Calls are stepped over to their return block.  Indirect jumps,
        returns, targets outside the function and blocks without jumps are
        dead ends.
        """
        succ_addrs: List[int] = []
        jumps = block.jumps
        for jmp in jumps:
            if isinstance(jmp, (Goto, CondGoto)) and isinstance(jmp.target, Const):
                succ_addrs.append(jmp.target.value)
            elif isinstance(jmp, Call) and jmp.return_to is not None:
                succ_addrs.append(jmp.return_to)
        if jumps and isinstance(jumps[-1], CondGoto):
            nxt = self._fallthrough.get(block.address)
            if nxt is not None:
                succ_addrs.append(nxt)
        result: List[BasicBlock] = []
        seen = set()
        for addr in succ_addrs:
            blk = self.block_map.get(addr)
            if blk is not None and addr not in seen:
                seen.add(addr)
                result.append(blk)
        return result

    @cached_property
    def predecessor_map(self) -> Dict[int, List[BasicBlock]]:
        preds: Dict[int, List[BasicBlock]] = {blk.address: [] for blk in self.blocks}
        for blk in sorted(self.blocks, key=lambda b: b.address):
            for succ in self.successors(blk):
                preds[succ.address].append(blk)
        return preds

    def predecessors(self, block: BasicBlock) -> List[BasicBlock]:
        return self.predecessor_map.get(block.address, [])

    def iter_terms(self) -> Iterator[Tuple[BasicBlock, int, Term]]:
        for blk in sorted(self.blocks, key=lambda b: b.address):
            for idx, term in enumerate(blk.terms):
                yield blk, idx, term

    def contains_address(self, address: int) -> bool:
        """Whether ``address`` is a term address of this function."""
        if address == self.address:
            return True
        return any(t.address == address for _, _, t in self.iter_terms())


@dataclass(frozen=True)
class Program:
    binary: BinaryInfo
    architecture: Architecture
    functions: Tuple[Function, ...] = ()
    sections: Tuple[Section, ...] = ()
    symbols: Optional[Tuple[Symbol, ...]] = None
    relocations: Optional[Tuple[Relocation, ...]] = None
    link_base: int = 0
    load_base: Optional[int] = None

    @cached_property
    def function_map(self) -> Dict[int, Function]:
        return {fn.address: fn for fn in self.functions}

    def function_at(self, address: int) -> Optional[Function]:
        return self.function_map.get(address)

    def section_of(self, address: int) -> Optional[Section]:
        for sec in self.sections:
            if sec.contains(address):
                return sec
        return None

    def with_metadata(self, **changes) -> "Program":
        """Return a copy with loader metadata (symbols, sections, ...) replaced."""
        return replace(self, **changes)


def function_problems(program: Program, function: Function, translator=None) -> List[str]:
    """Structural problems that make a function unanalysable.

    An empty list means the function is well formed.  Jump targets are
    load addresses; ``translator`` (an AddressTranslator, built from
    ``program`` when omitted) maps them back to the section table.
    """
    from cwecheck.address_translation import AddressTranslator, Translated  # imports this module

    if translator is None:
        translator = AddressTranslator.from_program(program)
    problems: List[str] = []
    if not function.blocks:
        problems.append("function has no basic blocks")
        return problems
    if len(function.block_map) != len(function.blocks):
        problems.append("duplicate basic block addresses")
    for blk in function.blocks:
        for target in function.jump_targets(blk):
            if target in function.block_map or target in program.function_map:
                continue
            if isinstance(translator.to_link_address(target), Translated):
                continue
            problems.append(
                f"block {blk.address:#x} jumps to {target:#x} outside any known block or section"
            )
    return problems


__all__ = [
    "Architecture", "BinaryFormat", "Endianness", "BinaryInfo",
    "Section", "Symbol", "SymbolKind", "Relocation",
    "Var", "Const", "BinOp", "UnOp", "Load", "UnknownExpr", "Expr",
    "BINARY_OPERATORS", "COMPARISON_OPERATORS", "UNARY_OPERATORS",
    "expr_vars", "expr_loads", "address_vars",
    "Def", "Store", "Goto", "CondGoto", "Call", "Return", "Term",
    "JUMP_TERMS", "term_reads",
    "BasicBlock", "Function", "Program", "function_problems",
]
