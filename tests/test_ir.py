# tests/test_ir.py
"""
Tests for control-flow successors and structural checks on functions.
"""

from cwecheck.address_translation import AddressTranslator
from cwecheck.ir import Section, function_problems
from tests.conftest import block, make_function, make_program

PIE_TEXT = Section(".text", 0x1000, 0x1000, offset=0x1000, executable=True)
PIE_PLT = Section(".plt", 0x3000, 0x100, offset=0x3000, executable=True)
PIE_BASE = 0x555555554000


def _successors(fn, address):
    return [b.address for b in fn.successors(block(fn, address))]


class TestSuccessors:

    FN = make_function(0x401000, [
        (0x401000, ["when RDI goto 0x401020"]),
        (0x401008, ["RAX := 0x1"]),
        (0x401010, ["goto 0x401020"]),
        (0x401018, ["call @puts returns 0x401020"]),
        (0x401020, ["return"]),
    ])

    def test_conditional_jump_falls_through(self):
        assert _successors(self.FN, 0x401000) == [0x401020, 0x401008]

    def test_block_without_jumps_is_dead_end(self):
        assert _successors(self.FN, 0x401008) == []
        assert self.FN.predecessors(block(self.FN, 0x401010)) == []

    def test_unconditional_jump_does_not_fall_through(self):
        assert _successors(self.FN, 0x401010) == [0x401020]

    def test_call_steps_to_return_block(self):
        assert _successors(self.FN, 0x401018) == [0x401020]
        assert _successors(self.FN, 0x401020) == []


class TestFunctionProblems:

    def test_well_formed(self):
        fn = make_function(0x401000, [(0x401000, ["goto 0x401010"]), (0x401010, ["return"])])
        assert function_problems(make_program([fn]), fn) == []

    def test_jump_outside_sections(self):
        fn = make_function(0x401000, [(0x401000, ["goto 0x900000"])])
        [problem] = function_problems(make_program([fn]), fn)
        assert "0x900000" in problem

    def test_rebased_jump_into_section(self):
        fn = make_function(PIE_BASE + 0x1000, [
            (PIE_BASE + 0x1000, [f"goto {PIE_BASE + 0x3010:#x}"]),
        ])
        program = make_program([fn], sections=[PIE_TEXT, PIE_PLT], load_base=PIE_BASE)
        assert function_problems(program, fn) == []
        assert function_problems(program, fn, AddressTranslator.from_program(program)) == []

    def test_link_address_target_of_rebased_program(self):
        fn = make_function(PIE_BASE + 0x1000, [(PIE_BASE + 0x1000, ["goto 0x3010"])])
        program = make_program([fn], sections=[PIE_TEXT, PIE_PLT], load_base=PIE_BASE)
        assert len(function_problems(program, fn)) == 1
