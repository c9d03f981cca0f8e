# tests/test_cwe560.py
"""
Tests for the umask detector: chmod-style arguments and late calls.
"""

import pytest

from cwecheck.checkers import UmaskChecker, is_chmod_style_mask
from cwecheck.config import AnalysisConfig
from cwecheck.report import Confidence
from tests.conftest import make_arch, make_function, run_detector


def umask_call(argument, setup=()):
    return make_function(0x401000, [
        (0x401000, list(setup) + [
            (0x401000, f"RDI := {argument}"),
            (0x401005, "call @umask returns 0x40100a"),
        ]),
        (0x40100a, ["return"]),
    ], name="setup_files")


class TestMaskShape:

    @pytest.mark.parametrize("mode,expected", [
        (0o666, True),
        (0o777, True),
        (0o644, True),
        (0o022, False),
        (0o077, False),
        (0, False),
        (0o10000, False),
    ])
    def test_chmod_style(self, mode, expected):
        assert is_chmod_style_mask(mode) is expected


class TestChmodStyleArgument:

    def test_flags_file_mode(self):
        findings = run_detector(UmaskChecker, umask_call("0o666"))
        assert len(findings) == 1
        f = findings[0]
        assert f.cwe_id == "CWE-560"
        assert f.location.address == 0x401005
        assert f.confidence is Confidence.HIGH
        assert f.evidence == (0x401005,)
        assert "0o666" in f.description

    def test_ordinary_mask_is_fine(self):
        assert run_detector(UmaskChecker, umask_call("0o022")) == []

    def test_argument_through_copy(self):
        fn = make_function(0x401000, [
            (0x401000, [
                "RCX := 0x1b6",
                "RDI := RCX",
                "call @umask returns 0x40100a",
            ]),
            (0x40100a, ["return"]),
        ])
        assert len(run_detector(UmaskChecker, fn)) == 1

    def test_non_constant_argument(self):
        fn = make_function(0x401000, [
            (0x401000, ["RDI := mem[RSP + 0x8]", "call @umask returns 0x40100a"]),
            (0x40100a, ["return"]),
        ])
        assert run_detector(UmaskChecker, fn) == []

    def test_stack_argument_on_x86(self):
        fn = make_function(0x401000, [
            (0x401000, [
                "ESP := ESP - 0x4",
                "mem[ESP] := 0o666",
                (0x401008, "call @umask returns 0x401010"),
            ]),
            (0x401010, ["return"]),
        ])
        findings = run_detector(UmaskChecker, fn, arch=make_arch("x86", 32))
        assert [f.location.address for f in findings] == [0x401008]

    def test_configured_mask_function(self):
        fn = make_function(0x401000, [
            (0x401000, ["RDI := 0o666", "call @my_umask returns 0x40100a"]),
            (0x40100a, ["return"]),
        ])
        config = AnalysisConfig.from_mapping({"permission_masks": {"add": ["my_umask"]}})
        assert len(run_detector(UmaskChecker, fn, config=config)) == 1


class TestLateUmask:

    def test_umask_after_open(self):
        fn = make_function(0x401000, [
            (0x401000, ["call @open returns 0x401008"]),
            (0x401008, ["RDI := 0o022", "call @umask returns 0x401010"]),
            (0x401010, ["return"]),
        ])
        findings = run_detector(UmaskChecker, fn)
        assert len(findings) == 1
        f = findings[0]
        assert f.evidence == (0x401000, 0x401008)
        assert f.confidence is Confidence.MEDIUM
        assert "open()" in f.description

    def test_umask_before_open(self):
        fn = make_function(0x401000, [
            (0x401000, ["RDI := 0o022", "call @umask returns 0x401008"]),
            (0x401008, ["call @open returns 0x401010"]),
            (0x401010, ["return"]),
        ])
        assert run_detector(UmaskChecker, fn) == []

    def test_creation_on_one_branch(self):
        fn = make_function(0x401000, [
            (0x401000, ["when RSI goto 0x401010"]),
            (0x401008, ["call @fopen returns 0x401010"]),
            (0x401010, ["RDI := 0o022", "call @umask returns 0x401018"]),
            (0x401018, ["return"]),
        ])
        findings = run_detector(UmaskChecker, fn)
        assert [f.evidence for f in findings] == [(0x401008, 0x401010)]

    def test_both_patterns(self):
        fn = make_function(0x401000, [
            (0x401000, ["call @creat returns 0x401008"]),
            (0x401008, ["RDI := 0o666", "call @umask returns 0x401010"]),
            (0x401010, ["return"]),
        ])
        findings = run_detector(UmaskChecker, fn)
        assert [f.confidence for f in findings] == [Confidence.HIGH, Confidence.MEDIUM]
