# tests/test_cwe676.py
"""
Tests for the dangerous function detector.
"""

from cwecheck.checkers import DangerousFunctionChecker
from cwecheck.config import AnalysisConfig
from cwecheck.report import Confidence
from cwecheck.symbols import CallTargetResolver, DynamicSymbols, SymbolMap
from tests.conftest import DANGEROUS_CALLS, make_arch, make_function, run_detector


class TestDangerousFunctions:

    def test_every_call_reported(self):
        findings = run_detector(DangerousFunctionChecker, DANGEROUS_CALLS)
        assert [f.location.address for f in findings] == [0x401105, 0x401112]
        assert all(f.cwe_id == "CWE-676" for f in findings)
        assert all(f.confidence is Confidence.HIGH for f in findings)
        assert findings[0].description == "call to potentially dangerous function gets()"
        assert str(findings[1]) == (
            "[CWE-676] copy@0x401112: call to potentially dangerous function strcpy()"
        )

    def test_remove_from_list(self):
        config = AnalysisConfig.from_mapping({"dangerous_functions": {"remove": ["strcpy"]}})
        findings = run_detector(DangerousFunctionChecker, DANGEROUS_CALLS, config=config)
        assert [f.location.address for f in findings] == [0x401105]

    def test_call_to_named_static_function(self):
        fn = make_function(0x401000, [
            (0x401000, ["call 0x401200 returns 0x401008"]),
            (0x401008, ["return"]),
        ])
        calls = CallTargetResolver(SymbolMap({0x401200: "sprintf"}, True), DynamicSymbols())
        findings = run_detector(DangerousFunctionChecker, fn, calls=calls)
        assert len(findings) == 1
        assert "sprintf()" in findings[0].description

    def test_unnamed_call_is_ignored(self):
        fn = make_function(0x401000, [
            (0x401000, ["call RAX returns 0x401008"]),
            (0x401008, ["return"]),
        ])
        assert run_detector(DangerousFunctionChecker, fn) == []

    def test_runs_without_calling_convention(self):
        findings = run_detector(
            DangerousFunctionChecker, DANGEROUS_CALLS, arch=make_arch("riscv64", 64)
        )
        assert len(findings) == 2
