# tests/test_address_translation.py
"""
Tests for link address / load address / file offset translation.
"""

import pytest

from cwecheck.address_translation import AddressTranslator, Translated, Unmapped
from cwecheck.ir import Section
from tests.conftest import BSS, DATA, DEFAULT_SECTIONS, TEXT, make_program


class TestFileOffsets:

    def test_round_trip_inside_text(self):
        tr = AddressTranslator(DEFAULT_SECTIONS)
        result = tr.to_file_offset(0x401234)
        assert result == Translated(0x1234, ".text")
        assert tr.from_file_offset(0x1234) == Translated(0x401234, ".text")

    def test_nobits_section_has_no_offset(self):
        tr = AddressTranslator(DEFAULT_SECTIONS)
        result = tr.to_file_offset(BSS.address + 4)
        assert isinstance(result, Unmapped)
        assert ".bss" in result.reason

    def test_address_outside_sections(self):
        tr = AddressTranslator(DEFAULT_SECTIONS)
        assert tr.to_file_offset(0x10) == Unmapped(0x10)
        assert isinstance(tr.from_file_offset(0x900000), Unmapped)

    def test_empty_section_table(self):
        tr = AddressTranslator([])
        assert isinstance(tr.to_file_offset(0x401000), Unmapped)
        assert tr.section_for(0x401000) is None

    def test_empty_sections_are_ignored(self):
        tr = AddressTranslator([Section(".empty", 0x401000, 0), TEXT])
        assert tr.section_for(0x401000).name == ".text"


class TestRebasing:

    @pytest.fixture
    def pie(self):
        return AddressTranslator([Section(".text", 0x1000, 0x100, offset=0x1000, executable=True)],
                                 link_base=0, load_base=0x555555554000)

    def test_delta(self, pie):
        assert pie.delta == 0x555555554000

    def test_to_load_address(self, pie):
        assert pie.to_load_address(0x1010) == Translated(0x555555555010, ".text")

    def test_to_link_address(self, pie):
        assert pie.to_link_address(0x555555555010) == Translated(0x1010, ".text")

    def test_unmapped_link_address(self, pie):
        assert isinstance(pie.to_load_address(0x2000), Unmapped)

    def test_from_program_defaults_load_base(self):
        tr = AddressTranslator.from_program(make_program(link_base=0x400000))
        assert tr.delta == 0
        assert tr.to_load_address(DATA.address) == Translated(DATA.address, ".data")
