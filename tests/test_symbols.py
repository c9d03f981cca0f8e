# tests/test_symbols.py
"""
Tests for static symbol resolution and call-target naming.
"""

from cwecheck.address_translation import AddressTranslator
from cwecheck.ir import Call, Const, Section, Symbol
from cwecheck.symbols import (
    CallTargetResolver,
    DynamicSymbols,
    SymbolMap,
    SymbolResolver,
    normalize_symbol_name,
)
from tests.conftest import make_arch, make_function, make_program

HELPER = make_function(0x401100, [(0x401100, ["return"])])


class TestNormalization:

    def test_strips_version(self):
        assert normalize_symbol_name("puts@GLIBC_2.2.5") == "puts"
        assert normalize_symbol_name("memcpy@@GLIBC_2.14") == "memcpy"

    def test_keeps_plain_names(self):
        assert normalize_symbol_name("main") == "main"


class TestSymbolResolver:

    def test_missing_table(self):
        symbols = SymbolResolver().resolve(make_program(symbols=None))
        assert not symbols.table_present
        assert symbols.is_empty
        assert symbols.lookup(0x401000) is None

    def test_empty_table_is_present(self):
        symbols = SymbolResolver().resolve(make_program(symbols=[]))
        assert symbols.table_present
        assert symbols.is_empty

    def test_function_symbol_wins(self):
        program = make_program(symbols=[
            Symbol(0x401000, "_start_data", is_function=False),
            Symbol(0x401000, "main"),
            Symbol(0x401100, "helper@@VERS_1"),
        ])
        symbols = SymbolResolver().resolve(program)
        assert symbols.lookup(0x401000) == "main"
        assert symbols.lookup(0x401100) == "helper"
        assert symbols.items() == [(0x401000, "main"), (0x401100, "helper")]

    def test_arm_mapping_symbols_and_thumb_bit(self):
        program = make_program(
            arch=make_arch("arm", 32),
            symbols=[Symbol(0x401001, "thumb_fn"), Symbol(0x401000, "$t")],
        )
        symbols = SymbolResolver().resolve(program)
        assert symbols.items() == [(0x401000, "thumb_fn")]

    def test_rebased_symbols(self):
        sections = [Section(".text", 0x1000, 0x100, offset=0x1000, executable=True)]
        program = make_program(
            sections=sections,
            symbols=[Symbol(0x1010, "main"), Symbol(0x9000, "stray")],
            load_base=0x400000,
        )
        symbols = SymbolResolver(AddressTranslator.from_program(program)).resolve(program)
        assert symbols.lookup(0x401010) == "main"
        assert symbols.unmapped == (0x9000,)


class TestCallTargetResolver:

    def test_extern_name_is_normalized(self):
        calls = CallTargetResolver(SymbolMap(), DynamicSymbols())
        assert calls.callee_name(Call(0, extern="puts@GLIBC_2.2.5")) == "puts"

    def test_direct_call_uses_static_symbols(self):
        static = SymbolMap({0x401100: "helper"}, True)
        calls = CallTargetResolver(static, DynamicSymbols())
        assert calls.callee_name(Call(0, target=Const(0x401100))) == "helper"
        assert calls.callee_name(Call(0, target=Const(0x401200))) is None

    def test_function_name_prefers_ir_name(self):
        static = SymbolMap({0x401100: "helper"}, True)
        calls = CallTargetResolver(static, DynamicSymbols())
        named = make_function(0x401100, [(0x401100, ["return"])], name="from_ir")
        assert calls.function_name(named) == "from_ir"
        assert calls.function_name(HELPER) == "helper"

    def test_stripped_function_has_no_name(self):
        calls = CallTargetResolver(SymbolMap(), DynamicSymbols())
        assert calls.function_name(HELPER) is None
