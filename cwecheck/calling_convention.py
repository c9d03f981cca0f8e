"""
cwecheck/calling_convention.py
══════════════════════════════

Calling-convention recovery from a fixed catalog of (ISA, ABI) pairs.

Catalog
───────

  ISA       ABI       convention          first int arg   return
  ───────── ───────── ─────────────────── ─────────────── ───────
  x86_64    sysv      System V AMD64      RDI             RAX
  x86_64    windows   Microsoft x64       RCX             RAX
  x86       sysv      cdecl               [ESP+0] (call)  EAX
  x86       windows   cdecl (MinGW)       [ESP+0] (call)  EAX
  arm       sysv      AAPCS               R0              R0
  aarch64   sysv      AAPCS64             X0              X0
  mips      sysv      o32                 A0              V0
  mips64    sysv      n64                 A0              V0
  ppc       sysv      PowerPC SysV        R3              R3
  ppc64     sysv      PowerPC64 ELF       R3              R3

The ABI variant is taken from loader metadata (see
:attr:`cwecheck.ir.Architecture.abi_variant`).  Any other pair yields an
explicit :class:`Unsupported` value; there is no fallback guess.

Stack locations
───────────────
Stack-passed arguments are described from the caller's point of view: the
offset is relative to the stack pointer at the call instruction.  On x86
the ``call`` pushes a return address, so the callee sees the same slot at
``offset + return_address_size``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union

from cwecheck.ir import Architecture

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════
#  PART 1 — LOCATIONS AND TABLES
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class RegisterLocation:
    register: str

    def __str__(self) -> str:
        return self.register


@dataclass(frozen=True)
class StackLocation:
    """Stack slot relative to the stack pointer at the call instruction."""
    offset: int

    def __str__(self) -> str:
        return f"stack[{self.offset:+#x}]"


ArgumentLocation = Union[RegisterLocation, StackLocation]


@dataclass(frozen=True)
class CallingConvention:
    """Immutable parameter/return table of one (ISA, ABI) pair."""
    name: str
    isa: str
    abi: str
    bits: int
    integer_parameters: Tuple[str, ...]
    return_register: str
    stack_pointer: str
    callee_saved: FrozenSet[str]
    caller_saved: FrozenSet[str]
    stack_parameter_offset: int = 0
    stack_slot_size: int = 4
    return_address_size: int = 0
    frame_pointer: Optional[str] = None
    link_register: Optional[str] = None
    aliases: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def canonical(self, register: str) -> str:
        """Full register name for an architecture-specific alias."""
        return self.aliases.get(register, register)

    def parameter_location(self, index: int) -> ArgumentLocation:
        """Location of the ``index``-th (0-based) integer-class argument."""
        if index < 0:
            raise ValueError(f"negative argument index {index}")
        if index < len(self.integer_parameters):
            return RegisterLocation(self.integer_parameters[index])
        stack_index = index - len(self.integer_parameters)
        return StackLocation(self.stack_parameter_offset + stack_index * self.stack_slot_size)

    def parameter_locations(self, count: int) -> List[ArgumentLocation]:
        return [self.parameter_location(i) for i in range(count)]

    def callee_view(self, location: StackLocation) -> StackLocation:
        """The same slot relative to the stack pointer at function entry."""
        return StackLocation(location.offset + self.return_address_size)

    @property
    def return_location(self) -> RegisterLocation:
        return RegisterLocation(self.return_register)

    def is_callee_saved(self, register: str) -> bool:
        return self.canonical(register) in self.callee_saved

    def clobbered_by_call(self, register: str) -> bool:
        """Whether a call may change ``register``.

        Registers that are neither callee- nor caller-saved (flags,
        temporaries of the lifter) are treated as clobbered.
        """
        reg = self.canonical(register)
        if reg == self.stack_pointer:
            return False
        return reg not in self.callee_saved

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Unsupported:
    """No calling convention is known for this architecture/ABI pair."""
    isa: str
    abi: str
    bits: int
    reason: str = "no calling convention in catalog"

    def __str__(self) -> str:
        return f"unsupported {self.isa}-{self.bits}/{self.abi}: {self.reason}"


CallingConventionResult = Union[CallingConvention, Unsupported]


# ═════════════════════════════════════════════════════════════════════════
#  PART 2 — CATALOG
# ═════════════════════════════════════════════════════════════════════════

def _regs(prefix: str, numbers: Iterable[int]) -> Tuple[str, ...]:
    return tuple(f"{prefix}{n}" for n in numbers)


def _aliases(pairs: Iterable[Tuple[str, str]]) -> Mapping[str, str]:
    return MappingProxyType(dict(pairs))


_X86_64_GPR = ("RAX", "RBX", "RCX", "RDX", "RSI", "RDI", "RBP", "RSP") + _regs("R", range(8, 16))
_X86_64_ALIASES = _aliases(
    [("E" + r[1:], r) for r in _X86_64_GPR[:8]]
    + [(f"R{n}D", f"R{n}") for n in range(8, 16)]
)
_X86_ALIASES = _aliases(
    (r, "E" + r) for r in ("AX", "BX", "CX", "DX", "SI", "DI", "BP", "SP")
)
_ARM_ALIASES = _aliases([("R13", "SP"), ("R14", "LR"), ("R15", "PC"), ("FP", "R11"), ("IP", "R12")])
_AARCH64_ALIASES = _aliases(
    [(f"W{n}", f"X{n}") for n in range(31)] + [("FP", "X29"), ("LR", "X30"), ("WSP", "SP")]
)

# MIPS register numbers; n64 renames $8-$11 to A4-A7.
_MIPS_O32_NAMES = (
    "ZERO", "AT", "V0", "V1", "A0", "A1", "A2", "A3",
    "T0", "T1", "T2", "T3", "T4", "T5", "T6", "T7",
    "S0", "S1", "S2", "S3", "S4", "S5", "S6", "S7",
    "T8", "T9", "K0", "K1", "GP", "SP", "FP", "RA",
)
_MIPS_N64_NAMES = _MIPS_O32_NAMES[:8] + ("A4", "A5", "A6", "A7", "T0", "T1", "T2", "T3") + _MIPS_O32_NAMES[16:]


def _mips_aliases(names: Tuple[str, ...]) -> Mapping[str, str]:
    pairs = [(f"${i}", n) for i, n in enumerate(names)] + [(f"R{i}", n) for i, n in enumerate(names)]
    pairs.append(("S8", "FP"))
    return _aliases(pairs)


_PPC_ALIASES = _aliases([("SP", "R1"), ("TOC", "R2")])

_CATALOG: Dict[Tuple[str, str], CallingConvention] = {}


def _register(cc: CallingConvention) -> None:
    _CATALOG[(cc.isa, cc.abi)] = cc


_register(CallingConvention(
    name="x86_64-sysv",
    isa="x86_64", abi="sysv", bits=64,
    integer_parameters=("RDI", "RSI", "RDX", "RCX", "R8", "R9"),
    return_register="RAX",
    stack_pointer="RSP",
    callee_saved=frozenset({"RBX", "RBP", "RSP", "R12", "R13", "R14", "R15"}),
    caller_saved=frozenset({"RAX", "RCX", "RDX", "RSI", "RDI", "R8", "R9", "R10", "R11"}),
    stack_parameter_offset=0, stack_slot_size=8, return_address_size=8,
    frame_pointer="RBP",
    aliases=_X86_64_ALIASES,
))

_register(CallingConvention(
    name="x86_64-windows",
    isa="x86_64", abi="windows", bits=64,
    integer_parameters=("RCX", "RDX", "R8", "R9"),
    return_register="RAX",
    stack_pointer="RSP",
    callee_saved=frozenset({"RBX", "RBP", "RDI", "RSI", "RSP", "R12", "R13", "R14", "R15"}),
    caller_saved=frozenset({"RAX", "RCX", "RDX", "R8", "R9", "R10", "R11"}),
    # 32 bytes of shadow space precede the fifth argument
    stack_parameter_offset=0x20, stack_slot_size=8, return_address_size=8,
    frame_pointer="RBP",
    aliases=_X86_64_ALIASES,
))

_register(CallingConvention(
    name="x86-cdecl",
    isa="x86", abi="sysv", bits=32,
    integer_parameters=(),
    return_register="EAX",
    stack_pointer="ESP",
    callee_saved=frozenset({"EBX", "ESI", "EDI", "EBP", "ESP"}),
    caller_saved=frozenset({"EAX", "ECX", "EDX"}),
    stack_parameter_offset=0, stack_slot_size=4, return_address_size=4,
    frame_pointer="EBP",
    aliases=_X86_ALIASES,
))

_register(CallingConvention(
    name="x86-windows-cdecl",
    isa="x86", abi="windows", bits=32,
    integer_parameters=(),
    return_register="EAX",
    stack_pointer="ESP",
    callee_saved=frozenset({"EBX", "ESI", "EDI", "EBP", "ESP"}),
    caller_saved=frozenset({"EAX", "ECX", "EDX"}),
    stack_parameter_offset=0, stack_slot_size=4, return_address_size=4,
    frame_pointer="EBP",
    aliases=_X86_ALIASES,
))

_register(CallingConvention(
    name="arm-aapcs",
    isa="arm", abi="sysv", bits=32,
    integer_parameters=("R0", "R1", "R2", "R3"),
    return_register="R0",
    stack_pointer="SP",
    callee_saved=frozenset(_regs("R", range(4, 12)) + ("SP",)),
    caller_saved=frozenset(_regs("R", range(0, 4)) + ("R12", "LR")),
    stack_parameter_offset=0, stack_slot_size=4, return_address_size=0,
    frame_pointer="R11", link_register="LR",
    aliases=_ARM_ALIASES,
))

_register(CallingConvention(
    name="aarch64-aapcs64",
    isa="aarch64", abi="sysv", bits=64,
    integer_parameters=_regs("X", range(0, 8)),
    return_register="X0",
    stack_pointer="SP",
    callee_saved=frozenset(_regs("X", range(19, 30)) + ("SP",)),
    caller_saved=frozenset(_regs("X", range(0, 19)) + ("X30",)),
    stack_parameter_offset=0, stack_slot_size=8, return_address_size=0,
    frame_pointer="X29", link_register="X30",
    aliases=_AARCH64_ALIASES,
))

_register(CallingConvention(
    name="mips-o32",
    isa="mips", abi="sysv", bits=32,
    integer_parameters=("A0", "A1", "A2", "A3"),
    return_register="V0",
    stack_pointer="SP",
    callee_saved=frozenset(_regs("S", range(0, 8)) + ("FP", "SP", "GP")),
    caller_saved=frozenset(("AT", "V0", "V1", "A0", "A1", "A2", "A3", "T8", "T9", "RA")
                           + _regs("T", range(0, 8))),
    # the caller reserves 16 bytes of home space for A0-A3
    stack_parameter_offset=16, stack_slot_size=4, return_address_size=0,
    frame_pointer="FP", link_register="RA",
    aliases=_mips_aliases(_MIPS_O32_NAMES),
))

_register(CallingConvention(
    name="mips64-n64",
    isa="mips64", abi="sysv", bits=64,
    integer_parameters=_regs("A", range(0, 8)),
    return_register="V0",
    stack_pointer="SP",
    callee_saved=frozenset(_regs("S", range(0, 8)) + ("FP", "SP", "GP")),
    caller_saved=frozenset(("AT", "V0", "V1", "T8", "T9", "RA")
                           + _regs("A", range(0, 8)) + _regs("T", range(0, 4))),
    stack_parameter_offset=0, stack_slot_size=8, return_address_size=0,
    frame_pointer="FP", link_register="RA",
    aliases=_mips_aliases(_MIPS_N64_NAMES),
))

_register(CallingConvention(
    name="ppc-sysv",
    isa="ppc", abi="sysv", bits=32,
    integer_parameters=_regs("R", range(3, 11)),
    return_register="R3",
    stack_pointer="R1",
    callee_saved=frozenset(_regs("R", range(14, 32)) + ("R1",)),
    caller_saved=frozenset(("R0",) + _regs("R", range(3, 13)) + ("LR", "CTR")),
    # back chain word and LR save word come first
    stack_parameter_offset=8, stack_slot_size=4, return_address_size=0,
    link_register="LR",
    aliases=_PPC_ALIASES,
))

_register(CallingConvention(
    name="ppc64-elf",
    isa="ppc64", abi="sysv", bits=64,
    integer_parameters=_regs("R", range(3, 11)),
    return_register="R3",
    stack_pointer="R1",
    callee_saved=frozenset(_regs("R", range(14, 32)) + ("R1", "R2")),
    caller_saved=frozenset(("R0",) + _regs("R", range(3, 13)) + ("LR", "CTR")),
    # 48-byte frame header plus the save area of the eight register arguments
    stack_parameter_offset=112, stack_slot_size=8, return_address_size=0,
    link_register="LR",
    aliases=_PPC_ALIASES,
))


# Stack pointers of ISAs, used when no convention is known.
_STACK_POINTERS: Dict[str, str] = {
    "x86_64": "RSP", "x86": "ESP", "arm": "SP", "aarch64": "SP",
    "mips": "SP", "mips64": "SP", "ppc": "R1", "ppc64": "R1",
    "riscv": "SP", "riscv64": "SP", "sparc": "O6", "m68k": "SP",
}


# ═════════════════════════════════════════════════════════════════════════
#  PART 3 — RECOVERY
# ═════════════════════════════════════════════════════════════════════════

def supported_pairs() -> List[Tuple[str, str]]:
    """All (ISA, ABI) pairs in the catalog, sorted."""
    return sorted(_CATALOG)


def recover_calling_convention(architecture: Architecture) -> CallingConventionResult:
    """Look up the calling convention of ``architecture``.

    Returns :class:`Unsupported` for pairs outside the catalog and for
    tags whose bit width contradicts the ISA.
    """
    isa = architecture.isa
    abi = architecture.abi_variant
    cc = _CATALOG.get((isa, abi))
    if cc is None:
        logger.warning("no calling convention for %s/%s", isa, abi)
        return Unsupported(isa, abi, architecture.bits)
    if cc.bits != architecture.bits:
        logger.warning(
            "calling convention %s expects %d-bit code, got %d-bit",
            cc.name, cc.bits, architecture.bits,
        )
        return Unsupported(
            isa, abi, architecture.bits,
            reason=f"{cc.name} requires {cc.bits}-bit code",
        )
    return cc


def stack_pointer_of(architecture: Architecture, cconv: CallingConventionResult) -> Optional[str]:
    """The stack pointer register, even when no convention is known."""
    if isinstance(cconv, CallingConvention):
        return cconv.stack_pointer
    return _STACK_POINTERS.get(architecture.isa)


__all__ = [
    "RegisterLocation",
    "StackLocation",
    "ArgumentLocation",
    "CallingConvention",
    "Unsupported",
    "CallingConventionResult",
    "recover_calling_convention",
    "supported_pairs",
    "stack_pointer_of",
]
