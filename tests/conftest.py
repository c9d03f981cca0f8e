# tests/conftest.py
"""
Shared builders for cwecheck tests.

Functions are written in the textual IR: a block is ``(address, terms)``
where each term is ``"text"`` or ``(instruction_address, "text")``.
"""

from typing import Iterable, Optional, Sequence, Tuple

from cwecheck.calling_convention import recover_calling_convention
from cwecheck.checkers import CheckerContext
from cwecheck.config import AnalysisConfig
from cwecheck.ir import (
    Architecture,
    BinaryFormat,
    BinaryInfo,
    Function,
    Program,
    Relocation,
    Section,
    Symbol,
)
from cwecheck.ir_parser import parse_block
from cwecheck.memory_regions import MemoryRegionClassifier
from cwecheck.symbols import CallTargetResolver, DynamicSymbols, SymbolMap
from cwecheck.type_inference import TypeInferenceEngine

TEXT = Section(".text", 0x401000, 0x1000, offset=0x1000, executable=True)
RODATA = Section(".rodata", 0x402000, 0x100, offset=0x2000)
DATA = Section(".data", 0x404000, 0x100, offset=0x3000, writable=True)
GOT = Section(".got.plt", 0x404100, 0x100, offset=0x3100, writable=True)
BSS = Section(".bss", 0x404200, 0x100, offset=None, writable=True)

DEFAULT_SECTIONS = (TEXT, RODATA, DATA, GOT, BSS)


def make_arch(isa: str = "x86_64", bits: int = 64,
              binary_format: BinaryFormat = BinaryFormat.ELF,
              abi: Optional[str] = None) -> Architecture:
    return Architecture(isa, bits, binary_format, abi=abi)


def make_function(address: int, blocks: Sequence[Tuple[int, Iterable]],
                  name: Optional[str] = None) -> Function:
    return Function(
        address,
        tuple(parse_block(addr, terms) for addr, terms in blocks),
        name,
    )


def make_program(functions: Sequence[Function] = (),
                 arch: Optional[Architecture] = None,
                 sections: Sequence[Section] = DEFAULT_SECTIONS,
                 symbols: Optional[Sequence[Symbol]] = None,
                 relocations: Optional[Sequence[Relocation]] = None,
                 name: str = "a.out",
                 link_base: int = 0,
                 load_base: Optional[int] = None) -> Program:
    return Program(
        binary=BinaryInfo(name, "00" * 32),
        architecture=arch or make_arch(),
        functions=tuple(functions),
        sections=tuple(sections),
        symbols=None if symbols is None else tuple(symbols),
        relocations=None if relocations is None else tuple(relocations),
        link_base=link_base,
        load_base=load_base,
    )


def no_symbols() -> CallTargetResolver:
    return CallTargetResolver(SymbolMap(), DynamicSymbols())


def region_facts(program: Program, function: Function,
                 config: Optional[AnalysisConfig] = None):
    cconv = recover_calling_convention(program.architecture)
    classifier = MemoryRegionClassifier(program, cconv, no_symbols(), config)
    return classifier, classifier.classify(function)


def type_facts(program: Program, function: Function,
               config: Optional[AnalysisConfig] = None):
    classifier, regions = region_facts(program, function, config)
    engine = TypeInferenceEngine(classifier, no_symbols(), config)
    return regions, engine.infer(function, regions)


def block(function: Function, address: int):
    return function.block_map[address]


def run_detector(checker_cls, function: Function,
                 arch: Optional[Architecture] = None,
                 config: Optional[AnalysisConfig] = None,
                 calls: Optional[CallTargetResolver] = None):
    """Run one detector over ``function`` with freshly computed facts."""
    program = make_program([function], arch=arch)
    config = config or AnalysisConfig()
    regions, types = type_facts(program, function, config)
    ctx = CheckerContext(
        program=program,
        function=function,
        function_name=function.name,
        calls=calls or no_symbols(),
        cconv=recover_calling_convention(program.architecture),
        config=config,
        regions=regions,
        types=types,
    )
    return checker_cls().run(ctx)


# malloc(16) stored through without a check
UNCHECKED_MALLOC = make_function(0x401000, [
    (0x401000, [(0x401000, "RDI := 0x10"),
                (0x401005, "call @malloc returns 0x40100a")]),
    (0x40100a, [(0x40100a, "mem[RAX] := 0x1"),
                (0x40100e, "return")]),
], name="main")

# malloc(16) compared against NULL before use
CHECKED_MALLOC = make_function(0x401000, [
    (0x401000, [(0x401000, "RDI := 0x10"),
                (0x401005, "call @malloc returns 0x40100a")]),
    (0x40100a, [(0x40100a, "ZF := RAX == 0"),
                (0x40100d, "when ZF goto 0x401020")]),
    (0x401010, [(0x401010, "mem[RAX] := 0x1"),
                (0x401014, "return")]),
    (0x401020, [(0x401020, "return")]),
], name="main")

# gets() and strcpy() calls
DANGEROUS_CALLS = make_function(0x401100, [
    (0x401100, [(0x401100, "RDI := RSP + 0x10"),
                (0x401105, "call @gets returns 0x40110a")]),
    (0x40110a, [(0x40110a, "RDI := RSP + 0x20"),
                (0x40110e, "RSI := RSP + 0x10"),
                (0x401112, "call @strcpy returns 0x401117")]),
    (0x401117, [(0x401117, "return")]),
], name="copy")
