"""
cwecheck/symbols.py
═══════════════════

Static and dynamic symbol resolution.

  SymbolResolver         .symtab-style table      → address → name
  DynamicSymbolResolver  relocation/import table  → slot / stub → name
  CallTargetResolver     overlay of both, used to name call targets

Missing tables are normal for stripped or statically linked binaries and
produce empty maps; lookups of unmapped addresses return ``None``.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from cwecheck.address_translation import AddressTranslator, Unmapped
from cwecheck.ir import (
    Call,
    Const,
    Def,
    Function,
    Goto,
    Load,
    Program,
    Symbol,
    Var,
)

logger = logging.getLogger(__name__)

_VERSION_SUFFIX = re.compile(r"@@?[^@]*$")

# ISAs whose function symbols carry the Thumb bit.
_THUMB_ISAS = frozenset({"arm"})


def normalize_symbol_name(name: str) -> str:
    """Strip symbol versioning (``puts@GLIBC_2.2.5`` → ``puts``)."""
    stripped = _VERSION_SUFFIX.sub("", name)
    return stripped or name


def _is_valid_symbol(symbol: Symbol) -> bool:
    # "$a", "$t", "$d" are ARM mapping symbols, not names
    return bool(symbol.name) and not symbol.name.startswith("$")


# ═════════════════════════════════════════════════════════════════════════
#  SYMBOL MAP
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class SymbolMap:
    """Immutable ``address → name`` mapping.

    Attributes
    ----------
    entries       : the mapping itself
    table_present : whether the source table existed at all
    unmapped      : link-time addresses dropped because they could not be
                    translated into the load address space
    """
    entries: Mapping[int, str] = field(default_factory=lambda: MappingProxyType({}))
    table_present: bool = False
    unmapped: Tuple[int, ...] = ()

    def lookup(self, address: int) -> Optional[str]:
        return self.entries.get(address)

    def __contains__(self, address: object) -> bool:
        return address in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[int]:
        return iter(sorted(self.entries))

    def items(self) -> List[Tuple[int, str]]:
        return sorted(self.entries.items())

    @property
    def is_empty(self) -> bool:
        return not self.entries


def _translate_all(
    pairs: Iterable[Tuple[int, str, bool]],
    translator: Optional[AddressTranslator],
) -> Tuple[Dict[int, List[Tuple[bool, str]]], List[int]]:
    by_address: Dict[int, List[Tuple[bool, str]]] = {}
    unmapped: List[int] = []
    for address, name, is_function in pairs:
        if translator is not None and translator.delta != 0:
            result = translator.to_load_address(address)
            if isinstance(result, Unmapped):
                unmapped.append(address)
                continue
            address = result.address
        by_address.setdefault(address, []).append((is_function, name))
    return by_address, unmapped


def _pick_name(candidates: List[Tuple[bool, str]]) -> str:
    # function symbols win, then the smallest name
    return min(candidates, key=lambda c: (not c[0], c[1]))[1]


# ═════════════════════════════════════════════════════════════════════════
#  STATIC SYMBOLS
# ═════════════════════════════════════════════════════════════════════════

class SymbolResolver:
    """Builds the static ``address → name`` map of a program."""

    def __init__(self, translator: Optional[AddressTranslator] = None) -> None:
        self.translator = translator

    def resolve(self, program: Program) -> SymbolMap:
        if program.symbols is None:
            logger.info("%s: no static symbol table", program.binary.name)
            return SymbolMap()

        thumb = program.architecture.isa in _THUMB_ISAS
        pairs = []
        for sym in program.symbols:
            if not _is_valid_symbol(sym):
                continue
            address = sym.address & ~1 if (thumb and sym.is_function) else sym.address
            pairs.append((address, normalize_symbol_name(sym.name), sym.is_function))

        by_address, unmapped = _translate_all(pairs, self.translator)
        entries = {addr: _pick_name(cands) for addr, cands in by_address.items()}
        if unmapped:
            logger.warning(
                "%s: %d static symbols outside all sections after rebasing",
                program.binary.name, len(unmapped),
            )
        logger.debug("%s: %d static symbols", program.binary.name, len(entries))
        return SymbolMap(MappingProxyType(entries), True, tuple(sorted(unmapped)))


# ═════════════════════════════════════════════════════════════════════════
#  DYNAMIC SYMBOLS
# ═════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class DynamicSymbols:
    """Import slots and the stub functions that jump through them."""
    slots: SymbolMap = field(default_factory=SymbolMap)
    stubs: SymbolMap = field(default_factory=SymbolMap)

    @property
    def table_present(self) -> bool:
        return self.slots.table_present

    def lookup(self, address: int) -> Optional[str]:
        return self.stubs.lookup(address) or self.slots.lookup(address)

    def __len__(self) -> int:
        return len(self.slots) + len(self.stubs)


class DynamicSymbolResolver:
    """Builds the ``address → name`` map for externally resolved symbols.

    Two kinds of addresses are named:

    * relocation slots (GOT / IAT entries) patched by the loader, and
    * stub functions (PLT entries) whose first jump is an indirect jump
      through such a slot.
    """

    def __init__(self, translator: Optional[AddressTranslator] = None) -> None:
        self.translator = translator

    def resolve(self, program: Program) -> DynamicSymbols:
        if program.relocations is None:
            logger.info("%s: no dynamic linking metadata", program.binary.name)
            return DynamicSymbols()

        pairs = [
            (rel.address, normalize_symbol_name(rel.name), True)
            for rel in program.relocations
            if rel.name
        ]
        by_address, unmapped = _translate_all(pairs, self.translator)
        slot_entries = {addr: _pick_name(c) for addr, c in by_address.items()}
        slots = SymbolMap(MappingProxyType(slot_entries), True, tuple(sorted(unmapped)))

        stub_entries: Dict[int, str] = {}
        for fn in program.functions:
            slot = _stub_slot(fn)
            if slot is not None and slot in slot_entries:
                stub_entries[fn.address] = slot_entries[slot]
        stubs = SymbolMap(MappingProxyType(stub_entries), True)
        logger.debug(
            "%s: %d import slots, %d stubs",
            program.binary.name, len(slots), len(stubs),
        )
        return DynamicSymbols(slots, stubs)


def _stub_slot(function: Function) -> Optional[int]:
    """The import slot a PLT-style stub jumps through, if it is one.

    Only the terms up to the first jump of the entry block are inspected:
    x86 stubs jump through ``mem[slot]`` directly, RISC stubs load the
    slot into a scratch register first.
    """
    entry = function.entry
    if entry is None:
        return None
    slot_regs: Dict[str, int] = {}
    for term in entry.terms:
        if isinstance(term, Def):
            value = term.value
            if isinstance(value, Load) and isinstance(value.address, Const):
                slot_regs[term.var] = value.address.value
            else:
                slot_regs.pop(term.var, None)
            continue
        if isinstance(term, (Goto, Call)):
            target = term.target
            if isinstance(term, Call) and term.return_to is not None:
                return None
            if isinstance(target, Load) and isinstance(target.address, Const):
                return target.address.value
            if isinstance(target, Var):
                return slot_regs.get(target.name)
            return None
    return None


# ═════════════════════════════════════════════════════════════════════════
#  CALL TARGET NAMING
# ═════════════════════════════════════════════════════════════════════════

class CallTargetResolver:
    """Names call targets by overlaying dynamic and static symbols.

    Resolution order: extern name on the call term, dynamic symbol (stub
    or slot), static symbol.
    """

    def __init__(self, static: SymbolMap, dynamic: DynamicSymbols) -> None:
        self.static = static
        self.dynamic = dynamic

    def callee_name(self, call: Call) -> Optional[str]:
        if call.extern:
            return normalize_symbol_name(call.extern)
        target = call.target
        if isinstance(target, Const):
            return self.dynamic.lookup(target.value) or self.static.lookup(target.value)
        if isinstance(target, Load) and isinstance(target.address, Const):
            return self.dynamic.slots.lookup(target.address.value)
        return None

    def function_name(self, function: Function) -> Optional[str]:
        if function.name:
            return function.name
        return self.static.lookup(function.address) or self.dynamic.stubs.lookup(function.address)


__all__ = [
    "SymbolMap",
    "SymbolResolver",
    "DynamicSymbols",
    "DynamicSymbolResolver",
    "CallTargetResolver",
    "normalize_symbol_name",
]
