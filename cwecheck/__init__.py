"""
cwecheck — CWE Checks over Lifted Binary Code
=============================================

This package finds common weakness patterns (CWEs) in disassembled
binaries.  It consumes the intermediate representation (IR) a lifter
emits for each function, recovers the facts the checks need (symbols,
calling convention, memory regions, pointer types) and produces a
deterministic report of findings.

Core modules
------------
ir
    Program / Function / BasicBlock / Term / Expression model.
ir_parser
    Grammar for the textual term syntax used in program documents.
dataflow_engine
    Lattices and the bounded worklist fixpoint solver.
address_translation
    Link address ↔ load address ↔ file offset mapping.
symbols
    Static and dynamic symbol maps, call target naming.
calling_convention
    Per architecture/ABI parameter and return locations.
memory_regions
    Stack / heap / global classification of values.
type_inference
    Pointer / integer inference over registers and stack slots.
checkers
    The CWE detectors.
pipeline
    Named analysis units, dependency resolution and the driver.
report
    Findings, diagnostics and JSON serialization.
loader, elf_loader
    Program documents and ELF metadata.
config, errors
    Analysis configuration and the exception hierarchy.

Quick start
-----------
>>> from cwecheck import Pipeline, load_program_file
>>> result = Pipeline().run(load_program_file("a.out.json"))
>>> print(result.report.to_text())

Package layout
--------------
::

    cwecheck/
    ├── __init__.py            ← this file
    ├── __main__.py            ← command line
    ├── errors.py
    ├── config.py
    ├── ir.py
    ├── ir_parser.py
    ├── dataflow_engine.py
    ├── address_translation.py
    ├── symbols.py
    ├── calling_convention.py
    ├── memory_regions.py
    ├── type_inference.py
    ├── checkers.py
    ├── report.py
    ├── pipeline.py
    ├── loader.py
    └── elf_loader.py
"""

from __future__ import annotations

import importlib
import sys
from typing import TYPE_CHECKING, List

# ---------------------------------------------------------------------------
# Package metadata
# ---------------------------------------------------------------------------

__version__ = "0.4.0"
__author__ = "cwecheck contributors"
__license__ = "MIT"
__all__: List[str] = []          # populated incrementally below


# ---------------------------------------------------------------------------
# Internal registry: module_name → names to re-export
#
# Order matters: a module may only depend on modules listed before it.
# ---------------------------------------------------------------------------

_CORE_MODULES = {
    "errors": [
        "CweCheckError",
        "IRParseError",
        "ProgramFormatError",
        "ConfigError",
        "UnknownUnitError",
        "InternalInvariantError",
    ],
    "ir": [
        "Architecture",
        "BinaryInfo",
        "Section",
        "Symbol",
        "Relocation",
        "BasicBlock",
        "Function",
        "Program",
    ],
    "ir_parser": [
        "parse_term",
        "parse_expr",
        "parse_block",
    ],
    "config": [
        "AnalysisConfig",
        "ExternSignature",
        "load_config",
    ],
    "dataflow_engine": [
        "Lattice",
        "WorklistSolver",
        "DataflowResult",
    ],
    "address_translation": [
        "AddressTranslator",
        "Translated",
        "Unmapped",
    ],
    "symbols": [
        "SymbolMap",
        "DynamicSymbols",
        "CallTargetResolver",
    ],
    "calling_convention": [
        "CallingConvention",
        "Unsupported",
        "recover_calling_convention",
    ],
    "memory_regions": [
        "Region",
        "RegionValue",
        "MemoryRegionClassifier",
    ],
    "type_inference": [
        "TypeTag",
        "TypeInferenceEngine",
    ],
    "report": [
        "Finding",
        "Diagnostic",
        "DiagnosticKind",
        "Report",
    ],
    "checkers": [
        "Checker",
        "ALL_CHECKERS",
    ],
    "pipeline": [
        "Pipeline",
        "PipelineResult",
        "UnitRegistry",
        "default_registry",
    ],
    "loader": [
        "load_program",
        "load_program_file",
    ],
    "elf_loader": [
        "read_elf_metadata",
    ],
}


def _import_names(module_rel_name: str, names: List[str]) -> None:
    """Import *names* from a submodule and bind them in the package namespace.

    An ``ImportError`` or a missing name propagates: every submodule is
    required.
    """
    fq_name = f"{__name__}.{module_rel_name}"
    try:
        mod = importlib.import_module(fq_name)
    except ImportError as exc:
        raise ImportError(
            f"cwecheck: required submodule '{module_rel_name}' "
            f"failed to import: {exc}"
        ) from exc

    current_module = sys.modules[__name__]
    for name in names:
        if not hasattr(mod, name):
            raise AttributeError(f"cwecheck.{module_rel_name} does not export '{name}'")
        setattr(current_module, name, getattr(mod, name))
        __all__.append(name)

    # cwecheck.report.Report works as well as cwecheck.Report
    setattr(current_module, module_rel_name, mod)
    if module_rel_name not in __all__:
        __all__.append(module_rel_name)


for _mod, _names in _CORE_MODULES.items():
    _import_names(_mod, _names)

del _mod, _names


def list_submodules() -> List[str]:
    """Return the names of all re-exported submodules."""
    return sorted(_CORE_MODULES)


__all__ += ["list_submodules", "__version__"]

if TYPE_CHECKING:
    from .errors import (
        CweCheckError as CweCheckError,
        IRParseError as IRParseError,
        ProgramFormatError as ProgramFormatError,
        ConfigError as ConfigError,
        UnknownUnitError as UnknownUnitError,
        InternalInvariantError as InternalInvariantError,
    )
    from .ir import (
        Architecture as Architecture,
        BinaryInfo as BinaryInfo,
        Section as Section,
        Symbol as Symbol,
        Relocation as Relocation,
        BasicBlock as BasicBlock,
        Function as Function,
        Program as Program,
    )
    from .config import (
        AnalysisConfig as AnalysisConfig,
        ExternSignature as ExternSignature,
        load_config as load_config,
    )
    from .pipeline import (
        Pipeline as Pipeline,
        PipelineResult as PipelineResult,
        UnitRegistry as UnitRegistry,
        default_registry as default_registry,
    )
    from .report import (
        Finding as Finding,
        Diagnostic as Diagnostic,
        DiagnosticKind as DiagnosticKind,
        Report as Report,
    )
    from .loader import (
        load_program as load_program,
        load_program_file as load_program_file,
    )
    from .elf_loader import read_elf_metadata as read_elf_metadata
