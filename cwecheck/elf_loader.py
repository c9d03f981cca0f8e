"""
cwecheck/elf_loader.py
══════════════════════

Reads loader metadata from an ELF file with pyelftools: the architecture
tag, the section table, ``.symtab`` symbols and PLT/GOT relocations.

The lifter provides code; this module provides the tables a lifter may
not export.  :meth:`ElfMetadata.apply_to` merges them into a Program.
"""

from __future__ import annotations

import hashlib
import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Tuple

from elftools.common.exceptions import ELFError
from elftools.elf.constants import SH_FLAGS
from elftools.elf.elffile import ELFFile
from elftools.elf.relocation import RelocationSection

from cwecheck.errors import ProgramFormatError
from cwecheck.ir import (
    Architecture,
    BinaryFormat,
    BinaryInfo,
    Endianness,
    Program,
    Relocation,
    Section,
    Symbol,
    SymbolKind,
)

logger = logging.getLogger(__name__)

# e_machine → ISA name (bit width refines MIPS and PowerPC).
_MACHINES = {
    "EM_X86_64": "x86_64",
    "EM_386": "x86",
    "EM_ARM": "arm",
    "EM_AARCH64": "aarch64",
    "EM_MIPS": "mips",
    "EM_PPC": "ppc",
    "EM_PPC64": "ppc64",
    "EM_RISCV": "riscv",
    "EM_SPARC": "sparc",
}

_IMPORT_RELOCATION_SECTIONS = (".rela.plt", ".rel.plt", ".rela.dyn", ".rel.dyn")

_HASH_CHUNK = 1 << 16


@dataclass(frozen=True)
class ElfMetadata:
    binary: BinaryInfo
    architecture: Architecture
    sections: Tuple[Section, ...]
    symbols: Optional[Tuple[Symbol, ...]]
    relocations: Optional[Tuple[Relocation, ...]]
    link_base: int = 0

    def apply_to(self, program: Program) -> Program:
        """Replace the program's loader metadata with this file's."""
        return program.with_metadata(
            binary=self.binary,
            architecture=self.architecture,
            sections=self.sections,
            symbols=self.symbols,
            relocations=self.relocations,
            link_base=self.link_base,
        )


def _isa(machine: str, elfclass: int) -> str:
    isa = _MACHINES.get(machine, machine.lower().replace("em_", ""))
    if elfclass == 64 and isa in ("mips", "riscv", "sparc"):
        return isa + "64"
    return isa


def _sha256(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_HASH_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _sections(elffile: ELFFile) -> Tuple[Section, ...]:
    result: List[Section] = []
    for section in elffile.iter_sections():
        flags = section["sh_flags"]
        if not flags & SH_FLAGS.SHF_ALLOC or not section.name:
            continue
        nobits = section["sh_type"] == "SHT_NOBITS"
        result.append(Section(
            name=section.name,
            address=section["sh_addr"],
            size=section["sh_size"],
            offset=None if nobits else section["sh_offset"],
            readable=True,
            writable=bool(flags & SH_FLAGS.SHF_WRITE),
            executable=bool(flags & SH_FLAGS.SHF_EXECINSTR),
        ))
    return tuple(result)


def _symbols(elffile: ELFFile) -> Optional[Tuple[Symbol, ...]]:
    symtab = elffile.get_section_by_name(".symtab")
    if symtab is None:
        return None
    result: List[Symbol] = []
    for sym in symtab.iter_symbols():
        sym_type = sym["st_info"]["type"]
        if sym_type not in ("STT_FUNC", "STT_OBJECT"):
            continue
        if sym["st_shndx"] == "SHN_UNDEF" or not sym.name:
            continue
        result.append(Symbol(
            address=sym["st_value"],
            name=sym.name,
            kind=SymbolKind.STATIC,
            is_function=sym_type == "STT_FUNC",
            size=sym["st_size"],
        ))
    return tuple(result)


def _relocations(elffile: ELFFile) -> Optional[Tuple[Relocation, ...]]:
    found = False
    result: List[Relocation] = []
    for name in _IMPORT_RELOCATION_SECTIONS:
        section = elffile.get_section_by_name(name)
        if not isinstance(section, RelocationSection):
            continue
        found = True
        symtab = elffile.get_section(section["sh_link"])
        for reloc in section.iter_relocations():
            sym_index = reloc["r_info_sym"]
            if sym_index == 0:
                continue
            sym = symtab.get_symbol(sym_index)
            if not sym.name:
                continue
            result.append(Relocation(
                address=reloc["r_offset"],
                name=sym.name,
                type=str(reloc["r_info_type"]),
            ))
    return tuple(result) if found else None


def _link_base(elffile: ELFFile) -> int:
    bases = [
        seg["p_vaddr"] - seg["p_offset"]
        for seg in elffile.iter_segments()
        if seg["p_type"] == "PT_LOAD"
    ]
    return max(min(bases), 0) if bases else 0


def read_elf_metadata(path: str) -> ElfMetadata:
    """Read loader metadata of the ELF file at ``path``.

    Raises
    ------
    ProgramFormatError
        If the file cannot be read or is not a valid ELF file.
    """
    try:
        with open(path, "rb") as fh:
            elffile = ELFFile(fh)
            architecture = Architecture(
                isa=_isa(elffile["e_machine"], elffile.elfclass),
                bits=elffile.elfclass,
                binary_format=BinaryFormat.ELF,
                endianness=Endianness.LITTLE if elffile.little_endian else Endianness.BIG,
            )
            sections = _sections(elffile)
            symbols = _symbols(elffile)
            relocations = _relocations(elffile)
            link_base = _link_base(elffile)
        digest = _sha256(path)
    except (OSError, ELFError) as exc:
        raise ProgramFormatError(f"cannot read ELF metadata: {exc}", path=path) from exc

    logger.info(
        "%s: %s, %d sections, %s symbols, %s relocations",
        path, architecture, len(sections),
        "no" if symbols is None else len(symbols),
        "no" if relocations is None else len(relocations),
    )
    return ElfMetadata(
        binary=BinaryInfo(os.path.basename(path), digest),
        architecture=architecture,
        sections=sections,
        symbols=symbols,
        relocations=relocations,
        link_base=link_base,
    )


__all__ = ["ElfMetadata", "read_elf_metadata"]
