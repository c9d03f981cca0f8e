# tests/test_pipeline.py
"""
Tests for the unit registry and the end-to-end analysis pipeline.
"""

import json

import pytest

from cwecheck.config import AnalysisConfig
from cwecheck.errors import InternalInvariantError, UnknownUnitError
from cwecheck.ir import Function, Relocation, Symbol
from cwecheck.memory_regions import RegionFacts
from cwecheck.pipeline import (
    AddrTransUnit,
    AnalysisUnit,
    CconvUnit,
    Pipeline,
    Scope,
    SymbolsUnit,
    UnitRegistry,
    default_registry,
)
from cwecheck.report import DiagnosticKind, Report
from cwecheck.symbols import SymbolMap
from tests.conftest import (
    CHECKED_MALLOC,
    DANGEROUS_CALLS,
    UNCHECKED_MALLOC,
    make_arch,
    make_function,
    make_program,
)

SYMBOLS = [Symbol(0x401000, "main"), Symbol(0x401100, "copy")]
RELOCATIONS = [Relocation(0x404118, "malloc", "R_X86_64_JUMP_SLOT")]

ALL_UNITS = [
    "AddrTrans", "Symbols", "DynSyms", "Cconv", "MemRegion", "TypeInference",
    "CWE476", "CWE560", "CWE367", "CWE676", "SerdeJson",
]


def sample_program(**kwargs):
    kwargs.setdefault("symbols", SYMBOLS)
    kwargs.setdefault("relocations", RELOCATIONS)
    return make_program([DANGEROUS_CALLS, UNCHECKED_MALLOC], **kwargs)


class TestRegistry:

    def test_default_order(self):
        assert default_registry().names == ALL_UNITS

    def test_dependencies_pulled_in(self):
        units = default_registry().resolve(["CWE476"])
        assert [u.name for u in units] == [
            "AddrTrans", "Symbols", "DynSyms", "Cconv", "MemRegion", "TypeInference", "CWE476",
        ]

    def test_unknown_unit(self):
        with pytest.raises(UnknownUnitError) as info:
            default_registry().resolve(["CWE999"])
        assert info.value.name == "CWE999"

    def test_register_requires_dependencies_first(self):
        registry = UnitRegistry()
        with pytest.raises(UnknownUnitError):
            registry.register(SymbolsUnit)
        registry.register(AddrTransUnit)
        registry.register(SymbolsUnit)
        assert registry.names == ["AddrTrans", "Symbols"]


class TestPipelineRun:

    def test_full_run(self):
        result = Pipeline().run(sample_program())
        report = result.report
        assert report.units == tuple(ALL_UNITS)
        assert [f.location.address for f in report.findings_for("CWE-676")] == [0x401105, 0x401112]
        null_derefs = report.findings_for("CWE-476")
        assert [f.location.address for f in null_derefs] == [0x40100a]
        assert null_derefs[0].location.function_name == "main"
        assert report.diagnostics == ()
        assert result.serialized == report.to_json()
        assert Report.from_json(result.serialized) == report

    def test_metadata(self):
        report = Pipeline().run(sample_program(name="prog")).report
        doc = json.loads(report.to_json())
        assert doc["binary"] == {"name": "prog", "sha256": "00" * 32}
        assert doc["architecture"] == "x86_64-64-sysv-little"
        assert doc["tool"]["name"] == "cwecheck"

    def test_facts_are_kept(self):
        result = Pipeline().run(sample_program())
        assert isinstance(result.facts["Symbols"], SymbolMap)
        assert isinstance(result.function_facts[0x401000]["MemRegion"], RegionFacts)
        assert set(result.function_facts) == {0x401000, 0x401100}

    def test_checked_program_is_clean(self):
        program = make_program([CHECKED_MALLOC], symbols=SYMBOLS, relocations=RELOCATIONS)
        assert Pipeline().run(program).report.findings == ()

    def test_selected_units_only(self):
        result = Pipeline().run(sample_program(), units=["CWE676"])
        assert result.report.units == ("AddrTrans", "Symbols", "DynSyms", "Cconv", "CWE676")
        assert {f.cwe_id for f in result.report.findings} == {"CWE-676"}
        assert result.serialized is None
        assert "MemRegion" not in result.function_facts[0x401000]

    def test_unknown_unit(self):
        with pytest.raises(UnknownUnitError):
            Pipeline().run(sample_program(), units=["Nope"])

    def test_jobs_do_not_change_output(self):
        functions = [
            make_function(0x401000 + i * 0x20, [
                (0x401000 + i * 0x20, [
                    "call @malloc returns %#x" % (0x401000 + i * 0x20 + 0x8),
                ]),
                (0x401000 + i * 0x20 + 0x8, ["mem[RAX] := 0x0", "call @gets", "return"]),
            ])
            for i in range(12)
        ]
        program = make_program(functions)
        serial = Pipeline().run(program, jobs=1).report.to_json()
        parallel = Pipeline().run(program, jobs=4).report.to_json()
        assert serial == parallel
        assert len(json.loads(serial)["findings"]) == 24

    def test_jobs_from_config(self):
        config = AnalysisConfig(jobs=3)
        result = Pipeline(config).run(sample_program())
        assert len(result.report.findings) == 3


class TestDiagnostics:

    def test_stripped_binary(self):
        result = Pipeline().run(sample_program(symbols=None, relocations=None))
        report = result.report
        assert len(report.diagnostics_of(DiagnosticKind.MISSING_SYMBOLS)) == 1
        assert len(report.diagnostics_of(DiagnosticKind.MISSING_DYNAMIC_SYMBOLS)) == 1
        # extern calls are named in the IR itself
        assert len(report.findings_for("CWE-676")) == 2

    def test_stripped_binary_reports_addresses_only(self):
        functions = [Function(fn.address, fn.blocks) for fn in (DANGEROUS_CALLS, UNCHECKED_MALLOC)]
        program = make_program(functions, symbols=None, relocations=None)
        report = Pipeline().run(program).report
        assert len(report.diagnostics_of(DiagnosticKind.MISSING_SYMBOLS)) == 1
        assert len(report.findings) == 3
        assert all(f.location.function_name is None for f in report.findings)
        assert {f.location.function_address for f in report.findings} == {0x401000, 0x401100}
        assert "main" not in report.to_json()

    def test_empty_symbol_table(self):
        report = Pipeline().run(sample_program(symbols=[])).report
        [diag] = report.diagnostics_of(DiagnosticKind.MISSING_SYMBOLS)
        assert "empty" in diag.message

    def test_unnamed_function_uses_symbol_table(self):
        unnamed = Function(DANGEROUS_CALLS.address, DANGEROUS_CALLS.blocks)
        program = make_program([unnamed], symbols=SYMBOLS, relocations=RELOCATIONS)
        findings = Pipeline().run(program, units=["CWE676"]).report.findings
        assert {f.location.function_name for f in findings} == {"copy"}

    def test_unsupported_calling_convention(self):
        result = Pipeline().run(sample_program(arch=make_arch("riscv64", 64)))
        report = result.report
        assert len(report.diagnostics_of(DiagnosticKind.UNSUPPORTED_CALLING_CONVENTION)) == 1
        skipped = report.diagnostics_of(DiagnosticKind.SKIPPED_DETECTOR)
        assert sorted(d.unit for d in skipped) == ["CWE476", "CWE560"]
        assert report.findings_for("CWE-476") == []
        assert len(report.findings_for("CWE-676")) == 2

    def test_malformed_functions_are_skipped(self):
        empty = Function(0x401300, (), "empty")
        wild = make_function(0x401400, [(0x401400, ["goto 0x900000"])], name="wild")
        program = make_program([empty, wild, DANGEROUS_CALLS], symbols=SYMBOLS, relocations=RELOCATIONS)
        report = Pipeline().run(program).report
        malformed = report.diagnostics_of(DiagnosticKind.MALFORMED_FUNCTION)
        assert [d.function_address for d in malformed] == [0x401300, 0x401400]
        assert "0x900000" in malformed[1].message
        assert len(report.findings_for("CWE-676")) == 2

    def test_internal_invariant_aborts(self):
        class Exploding(AnalysisUnit):
            name = "Exploding"
            scope = Scope.FUNCTION

            def run(self, ctx):
                raise InternalInvariantError("exploded", function=hex(ctx.function.address))

        registry = UnitRegistry()
        registry.register(CconvUnit)
        registry.register(Exploding)
        with pytest.raises(InternalInvariantError):
            Pipeline(registry=registry).run(sample_program())
