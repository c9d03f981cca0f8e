# tests/test_dynsyms.py
"""
Tests for import slot and stub naming.
"""

from cwecheck.ir import Call, Const, Load, Relocation
from cwecheck.symbols import CallTargetResolver, DynamicSymbolResolver, SymbolMap
from tests.conftest import make_arch, make_function, make_program

# x86 PLT entry: jmp *[slot]
X86_STUB = make_function(0x401020, [(0x401020, ["goto mem[0x404118]"])])

# RISC-style stub: load the slot, then jump through the register
RISC_STUB = make_function(0x401040, [(0x401040, [
    "T9 := mem[0x404120]",
    "goto T9",
])])

# Ordinary function that happens to jump indirectly after a call
NOT_A_STUB = make_function(0x401060, [(0x401060, [
    "call @puts returns 0x401068",
])])

RELOCATIONS = [
    Relocation(0x404118, "malloc@GLIBC_2.2.5", "R_X86_64_JUMP_SLOT"),
    Relocation(0x404120, "fopen", "R_X86_64_JUMP_SLOT"),
]


class TestDynamicSymbolResolver:

    def test_missing_relocations(self):
        dynsyms = DynamicSymbolResolver().resolve(make_program(relocations=None))
        assert not dynsyms.table_present
        assert len(dynsyms) == 0

    def test_slots_are_named(self):
        program = make_program(relocations=RELOCATIONS)
        dynsyms = DynamicSymbolResolver().resolve(program)
        assert dynsyms.table_present
        assert dynsyms.slots.lookup(0x404118) == "malloc"
        assert dynsyms.lookup(0x404120) == "fopen"

    def test_stubs_are_named(self):
        program = make_program([X86_STUB, RISC_STUB, NOT_A_STUB], relocations=RELOCATIONS)
        dynsyms = DynamicSymbolResolver().resolve(program)
        assert dynsyms.stubs.items() == [(0x401020, "malloc"), (0x401040, "fopen")]

    def test_riscv_stub_with_unrelated_register(self):
        stub = make_function(0x401080, [(0x401080, [
            "T9 := mem[0x404120]",
            "T9 := T9 + 4",
            "goto T9",
        ])])
        program = make_program([stub], arch=make_arch("mips", 32), relocations=RELOCATIONS)
        dynsyms = DynamicSymbolResolver().resolve(program)
        assert dynsyms.stubs.lookup(0x401080) is None


class TestCallNaming:

    def _calls(self):
        program = make_program([X86_STUB], relocations=RELOCATIONS)
        return CallTargetResolver(SymbolMap(), DynamicSymbolResolver().resolve(program))

    def test_call_to_stub(self):
        assert self._calls().callee_name(Call(0, target=Const(0x401020))) == "malloc"

    def test_call_through_slot(self):
        assert self._calls().callee_name(Call(0, target=Load(Const(0x404120)))) == "fopen"

    def test_dynamic_name_overrides_static(self):
        program = make_program([X86_STUB], relocations=RELOCATIONS)
        static = SymbolMap({0x401020: "malloc@plt"}, True)
        calls = CallTargetResolver(static, DynamicSymbolResolver().resolve(program))
        assert calls.callee_name(Call(0, target=Const(0x401020))) == "malloc"
