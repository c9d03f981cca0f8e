"""
cwecheck/loader.py
══════════════════

Build a :class:`cwecheck.ir.Program` from a JSON program document.

Document shape::

    {
      "binary":       {"name": "a.out", "sha256": "..."},
      "architecture": {"isa": "x86_64", "bits": 64, "format": "elf",
                       "endianness": "little", "abi": null},
      "link_base": "0x0", "load_base": null,
      "sections":    [{"name": ".text", "address": "0x401000", "size": 256,
                       "offset": 4096, "writable": false, "executable": true}],
      "symbols":     [{"address": "0x401000", "name": "main", "function": true}],
      "relocations": [{"address": "0x404018", "name": "malloc"}],
      "functions":   [{"address": "0x401000", "name": "main",
                       "blocks": [{"address": "0x401000",
                                   "terms": [["0x401000", "RDI := 0x10"], ...]}]}]
    }

Addresses may be integers or ``0x`` strings.  ``symbols`` and
``relocations`` may be omitted or ``null`` (stripped / static binaries).
Problems with the document raise :class:`ProgramFormatError`; problems
with the code it describes are left to the pipeline's diagnostics.
"""

from __future__ import annotations

import json
import logging
from typing import Any, List, Mapping, Optional, Tuple

from cwecheck.errors import IRParseError, ProgramFormatError
from cwecheck.ir import (
    Architecture,
    BasicBlock,
    BinaryFormat,
    BinaryInfo,
    Endianness,
    Function,
    Program,
    Relocation,
    Section,
    Symbol,
    SymbolKind,
)
from cwecheck.ir_parser import parse_address, parse_block

logger = logging.getLogger(__name__)


def _require(doc: Mapping[str, Any], key: str, where: str) -> Any:
    if not isinstance(doc, Mapping):
        raise ProgramFormatError(f"{where} must be an object")
    if key not in doc:
        raise ProgramFormatError(f"{where}: missing '{key}'")
    return doc[key]


def _address(value: Any, where: str) -> int:
    try:
        addr = parse_address(value)
    except (TypeError, ValueError) as exc:
        raise ProgramFormatError(f"{where}: bad address {value!r}") from exc
    if addr is None or addr < 0:
        raise ProgramFormatError(f"{where}: bad address {value!r}")
    return addr


def _list(value: Any, where: str) -> list:
    if not isinstance(value, list):
        raise ProgramFormatError(f"{where} must be a list")
    return value


def _architecture(doc: Mapping[str, Any]) -> Architecture:
    isa = _require(doc, "isa", "architecture")
    bits = _require(doc, "bits", "architecture")
    if not isinstance(isa, str) or not isinstance(bits, int):
        raise ProgramFormatError("architecture: 'isa' must be a string and 'bits' an integer")
    try:
        fmt = BinaryFormat(doc.get("format", "elf"))
        endian = Endianness(doc.get("endianness", "little"))
    except ValueError as exc:
        raise ProgramFormatError(f"architecture: {exc}") from exc
    return Architecture(isa.lower(), bits, fmt, endian, doc.get("abi"))


def _sections(items: list) -> Tuple[Section, ...]:
    result: List[Section] = []
    for i, item in enumerate(items):
        where = f"sections[{i}]"
        offset = item.get("offset") if isinstance(item, Mapping) else None
        result.append(Section(
            name=str(_require(item, "name", where)),
            address=_address(_require(item, "address", where), where),
            size=_address(_require(item, "size", where), f"{where}.size"),
            offset=None if offset is None else _address(offset, where),
            readable=bool(item.get("readable", True)),
            writable=bool(item.get("writable", False)),
            executable=bool(item.get("executable", False)),
        ))
    return tuple(result)


def _symbols(items: Optional[list]) -> Optional[Tuple[Symbol, ...]]:
    if items is None:
        return None
    result = []
    for i, item in enumerate(_list(items, "symbols")):
        where = f"symbols[{i}]"
        result.append(Symbol(
            address=_address(_require(item, "address", where), where),
            name=str(_require(item, "name", where)),
            kind=SymbolKind.STATIC,
            is_function=bool(item.get("function", True)),
            size=_address(item.get("size", 0), f"{where}.size"),
        ))
    return tuple(result)


def _relocations(items: Optional[list]) -> Optional[Tuple[Relocation, ...]]:
    if items is None:
        return None
    result = []
    for i, item in enumerate(_list(items, "relocations")):
        where = f"relocations[{i}]"
        result.append(Relocation(
            address=_address(_require(item, "address", where), where),
            name=str(_require(item, "name", where)),
            type=str(item.get("type", "")),
        ))
    return tuple(result)


def _block(item: Mapping[str, Any], where: str) -> BasicBlock:
    address = _address(_require(item, "address", where), where)
    terms = []
    for j, entry in enumerate(_list(item.get("terms", []), f"{where}.terms")):
        if isinstance(entry, str):
            terms.append(entry)
        elif isinstance(entry, list) and len(entry) == 2 and isinstance(entry[1], str):
            terms.append((_address(entry[0], f"{where}.terms[{j}]"), entry[1]))
        else:
            raise ProgramFormatError(f"{where}.terms[{j}] must be \"text\" or [address, \"text\"]")
    try:
        return parse_block(address, terms)
    except IRParseError as exc:
        raise ProgramFormatError(f"{where}: {exc}") from exc


def _functions(items: list) -> Tuple[Function, ...]:
    result = []
    for i, item in enumerate(_list(items, "functions")):
        where = f"functions[{i}]"
        address = _address(_require(item, "address", where), where)
        blocks = tuple(
            _block(b, f"{where}.blocks[{j}]")
            for j, b in enumerate(_list(item.get("blocks", []), f"{where}.blocks"))
        )
        result.append(Function(address, blocks, item.get("name")))
    return tuple(result)


def load_program(doc: Mapping[str, Any]) -> Program:
    """Build a Program from a parsed JSON document."""
    if not isinstance(doc, Mapping):
        raise ProgramFormatError("program document must be a JSON object")
    binary_doc = _require(doc, "binary", "document")
    binary = BinaryInfo(str(_require(binary_doc, "name", "binary")), binary_doc.get("sha256"))
    architecture = _architecture(_require(doc, "architecture", "document"))
    load_base = doc.get("load_base")
    program = Program(
        binary=binary,
        architecture=architecture,
        functions=_functions(doc.get("functions", [])),
        sections=_sections(_list(doc.get("sections", []), "sections")),
        symbols=_symbols(doc.get("symbols")),
        relocations=_relocations(doc.get("relocations")),
        link_base=_address(doc.get("link_base", 0), "link_base"),
        load_base=None if load_base is None else _address(load_base, "load_base"),
    )
    logger.info(
        "loaded %s (%s): %d functions, %d sections",
        binary.name, architecture, len(program.functions), len(program.sections),
    )
    return program


def load_program_file(path: str) -> Program:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            doc = json.load(fh)
    except OSError as exc:
        raise ProgramFormatError(f"cannot read program: {exc.strerror}", path=path) from exc
    except json.JSONDecodeError as exc:
        raise ProgramFormatError(f"invalid JSON: {exc.msg}", path=path, line=exc.lineno) from exc
    return load_program(doc)


__all__ = ["load_program", "load_program_file"]
