"""
cwecheck/address_translation.py
═══════════════════════════════

Mapping between virtual addresses, file offsets and the load-address
space the lifter used.

Symbol tables and relocations are expressed in link-time virtual
addresses.  A position-independent binary may be lifted at a different
base (``Program.load_base``), so their addresses must be shifted by
``load_base - link_base`` before they can be compared with IR addresses.

All translations are pure.  An address outside every known section yields
an explicit :class:`Unmapped` result, never a guess.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Union

from cwecheck.ir import Program, Section

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Translated:
    """A successful translation."""
    address: int
    section: str


@dataclass(frozen=True)
class Unmapped:
    """The input address is not covered by any known section."""
    address: int
    reason: str = "outside all known sections"


TranslationResult = Union[Translated, Unmapped]


class AddressTranslator:
    """Translate addresses using a section table.

    Parameters
    ----------
    sections:
        Section table in link-time addresses.
    link_base:
        Base address the sections were linked at.
    load_base:
        Base address the code was lifted at; ``None`` means "same as
        link_base".
    """

    def __init__(
        self,
        sections: Sequence[Section],
        link_base: int = 0,
        load_base: Optional[int] = None,
    ) -> None:
        self._sections: List[Section] = sorted(
            (s for s in sections if s.size > 0), key=lambda s: s.address
        )
        self._starts = [s.address for s in self._sections]
        self.link_base = link_base
        self.load_base = link_base if load_base is None else load_base
        if self.delta:
            logger.debug("rebasing by %#x (link %#x, load %#x)", self.delta, self.link_base, self.load_base)

    @classmethod
    def from_program(cls, program: Program) -> "AddressTranslator":
        return cls(program.sections, program.link_base, program.load_base)

    @property
    def delta(self) -> int:
        """Offset added to a link-time address to obtain its load address."""
        return self.load_base - self.link_base

    @property
    def sections(self) -> List[Section]:
        return list(self._sections)

    def section_for(self, address: int) -> Optional[Section]:
        """The section containing a link-time ``address``."""
        idx = bisect.bisect_right(self._starts, address) - 1
        # sections may overlap (.tbss), so keep scanning towards lower starts
        while idx >= 0:
            sec = self._sections[idx]
            if sec.contains(address):
                return sec
            idx -= 1
        return None

    # ── virtual address ⇄ file offset ─────────────────────────────────

    def to_file_offset(self, address: int) -> TranslationResult:
        sec = self.section_for(address)
        if sec is None:
            return Unmapped(address)
        if sec.offset is None:
            return Unmapped(address, f"section {sec.name} has no file data")
        return Translated(sec.offset + (address - sec.address), sec.name)

    def from_file_offset(self, offset: int) -> TranslationResult:
        for sec in self._sections:
            if sec.offset is None:
                continue
            if sec.offset <= offset < sec.offset + sec.size:
                return Translated(sec.address + (offset - sec.offset), sec.name)
        return Unmapped(offset, "file offset outside all file-backed sections")

    # ── link-time address ⇄ load address ─────────────────────────────

    def to_load_address(self, address: int) -> TranslationResult:
        sec = self.section_for(address)
        if sec is None:
            return Unmapped(address)
        return Translated(address + self.delta, sec.name)

    def to_link_address(self, address: int) -> TranslationResult:
        link_addr = address - self.delta
        sec = self.section_for(link_addr)
        if sec is None:
            return Unmapped(address)
        return Translated(link_addr, sec.name)


__all__ = [
    "AddressTranslator",
    "Translated",
    "Unmapped",
    "TranslationResult",
]
