# tests/test_cwe367.py
"""
Tests for the check-then-use (TOCTOU) detector.
"""

from cwecheck.checkers import ToctouChecker
from cwecheck.config import AnalysisConfig
from cwecheck.report import Confidence
from tests.conftest import make_function, run_detector


class TestToctou:

    def test_access_then_open(self):
        fn = make_function(0x401000, [
            (0x401000, ["call @access returns 0x401008"]),
            (0x401008, ["when RAX goto 0x401020"]),
            (0x401010, ["call @open returns 0x401018"]),
            (0x401018, ["return"]),
            (0x401020, ["return"]),
        ], name="open_if_allowed")
        findings = run_detector(ToctouChecker, fn)
        assert len(findings) == 1
        f = findings[0]
        assert f.cwe_id == "CWE-367"
        assert f.location.address == 0x401010
        assert f.evidence == (0x401000, 0x401010)
        assert f.confidence is Confidence.LOW
        assert "access()" in f.description

    def test_use_before_check(self):
        fn = make_function(0x401000, [
            (0x401000, ["call @unlink returns 0x401008"]),
            (0x401008, ["call @stat returns 0x401010"]),
            (0x401010, ["return"]),
        ])
        assert run_detector(ToctouChecker, fn) == []

    def test_same_block(self):
        fn = make_function(0x401000, [
            (0x401000, [
                (0x401000, "call @stat"),
                (0x401005, "call @chmod returns 0x40100a"),
            ]),
            (0x40100a, ["return"]),
        ])
        findings = run_detector(ToctouChecker, fn)
        assert [f.evidence for f in findings] == [(0x401000, 0x401005)]

    def test_earliest_check_reported(self):
        fn = make_function(0x401000, [
            (0x401000, ["when RDI goto 0x401010"]),
            (0x401008, ["call @stat returns 0x401018"]),
            (0x401010, ["call @access returns 0x401018"]),
            (0x401018, ["call @fopen returns 0x401020"]),
            (0x401020, ["return"]),
        ])
        findings = run_detector(ToctouChecker, fn)
        assert len(findings) == 1
        assert findings[0].evidence == (0x401008, 0x401018)

    def test_check_inside_loop(self):
        fn = make_function(0x401000, [
            (0x401000, ["call @open returns 0x401008"]),
            (0x401008, ["call @access returns 0x401010"]),
            (0x401010, ["when RAX goto 0x401000"]),
            (0x401018, ["return"]),
        ])
        findings = run_detector(ToctouChecker, fn)
        assert [f.location.address for f in findings] == [0x401000]

    def test_lists_are_configurable(self):
        fn = make_function(0x401000, [
            (0x401000, ["call @access returns 0x401008"]),
            (0x401008, ["call @open returns 0x401010"]),
            (0x401010, ["return"]),
        ])
        config = AnalysisConfig.from_mapping({"toctou_uses": {"remove": ["open"]}})
        assert run_detector(ToctouChecker, fn, config=config) == []
