# tests/test_calling_convention.py
"""
Tests for calling-convention recovery from the architecture tag.
"""

import pytest

from cwecheck.calling_convention import (
    CallingConvention,
    RegisterLocation,
    StackLocation,
    Unsupported,
    recover_calling_convention,
    stack_pointer_of,
    supported_pairs,
)
from cwecheck.ir import BinaryFormat
from tests.conftest import make_arch

FIRST_ARGUMENT = [
    ("x86_64", 64, BinaryFormat.ELF, RegisterLocation("RDI"), "RAX"),
    ("x86_64", 64, BinaryFormat.PE, RegisterLocation("RCX"), "RAX"),
    ("x86", 32, BinaryFormat.ELF, StackLocation(0), "EAX"),
    ("arm", 32, BinaryFormat.ELF, RegisterLocation("R0"), "R0"),
    ("aarch64", 64, BinaryFormat.ELF, RegisterLocation("X0"), "X0"),
    ("mips", 32, BinaryFormat.ELF, RegisterLocation("A0"), "V0"),
    ("ppc", 32, BinaryFormat.ELF, RegisterLocation("R3"), "R3"),
]


class TestRecovery:

    @pytest.mark.parametrize("isa,bits,fmt,first,ret", FIRST_ARGUMENT)
    def test_first_argument_and_return(self, isa, bits, fmt, first, ret):
        cc = recover_calling_convention(make_arch(isa, bits, fmt))
        assert isinstance(cc, CallingConvention)
        assert cc.parameter_location(0) == first
        assert cc.return_location == RegisterLocation(ret)

    def test_unknown_isa(self):
        result = recover_calling_convention(make_arch("riscv64", 64))
        assert isinstance(result, Unsupported)
        assert result.isa == "riscv64"

    def test_unknown_abi(self):
        result = recover_calling_convention(make_arch("x86_64", 64, BinaryFormat.MACHO))
        assert isinstance(result, Unsupported)
        assert result.abi == "darwin"

    def test_bit_width_mismatch(self):
        result = recover_calling_convention(make_arch("x86_64", 32))
        assert isinstance(result, Unsupported)
        assert "64-bit" in result.reason

    def test_explicit_abi_overrides_format(self):
        cc = recover_calling_convention(make_arch("x86_64", 64, BinaryFormat.ELF, abi="windows"))
        assert cc.name == "x86_64-windows"

    def test_catalog_is_listed(self):
        pairs = supported_pairs()
        assert ("x86_64", "sysv") in pairs
        assert pairs == sorted(pairs)


class TestLocations:

    def test_stack_arguments_after_registers(self):
        cc = recover_calling_convention(make_arch())
        assert cc.parameter_location(6) == StackLocation(0)
        assert cc.parameter_location(7) == StackLocation(8)

    def test_windows_shadow_space(self):
        cc = recover_calling_convention(make_arch("x86_64", 64, BinaryFormat.PE))
        assert cc.parameter_location(4) == StackLocation(0x20)

    def test_x86_arguments_on_stack(self):
        cc = recover_calling_convention(make_arch("x86", 32))
        assert cc.parameter_locations(2) == [StackLocation(0), StackLocation(4)]
        assert cc.callee_view(StackLocation(0)) == StackLocation(4)

    def test_negative_index(self):
        cc = recover_calling_convention(make_arch())
        with pytest.raises(ValueError):
            cc.parameter_location(-1)


class TestRegisters:

    def test_aliases(self):
        cc = recover_calling_convention(make_arch("aarch64", 64))
        assert cc.canonical("W0") == "X0"
        assert cc.canonical("X0") == "X0"

    def test_clobbers(self):
        cc = recover_calling_convention(make_arch())
        assert cc.clobbered_by_call("RAX")
        assert cc.clobbered_by_call("ZF")
        assert not cc.clobbered_by_call("RBX")
        assert not cc.clobbered_by_call("RSP")
        assert not cc.clobbered_by_call("EBX")

    def test_stack_pointer_without_convention(self):
        arch = make_arch("riscv64", 64)
        assert stack_pointer_of(arch, recover_calling_convention(arch)) == "SP"
        assert stack_pointer_of(make_arch("vax", 32), Unsupported("vax", "sysv", 32)) is None
