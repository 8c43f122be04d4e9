import io

import pytest

from gblink.diagnostics import Diagnostics, LinkError
from gblink.linkdefs import MemoryMap, SectionModifier, SectionType
from gblink.section import Patch, Section, SectionTable

FRAG = SectionModifier.FRAGMENT
UNION = SectionModifier.UNION


def make_diag():
    out = io.StringIO()
    return Diagnostics(out), out


def test_add_and_get():
    table = SectionTable()
    sect = Section("main", SectionType.ROM0, size=4)
    table.add(sect)
    assert table.get("main") is sect
    assert table.get("missing") is None
    assert len(table) == 1
    assert list(table) == [sect]


def test_duplicate_normal_rejected():
    table = SectionTable()
    table.add(Section("a", SectionType.ROM0))
    with pytest.raises(LinkError, match='Section name "a" is already in use'):
        table.add(Section("a", SectionType.ROM0))


def test_modifier_mismatch():
    table = SectionTable()
    table.add(Section("v", SectionType.WRAM0, UNION))
    with pytest.raises(LinkError, match="defined as fragment and union"):
        table.add(Section("v", SectionType.WRAM0, FRAG))


def test_rom_union_rejected():
    with pytest.raises(LinkError, match="cannot be unionized"):
        SectionTable().add(Section("u", SectionType.ROMX, UNION))


def test_union_takes_largest_size():
    table = SectionTable()
    first = Section("vars", SectionType.WRAM0, UNION, size=4)
    second = Section("vars", SectionType.WRAM0, UNION, size=8)
    table.add(first)
    table.add(second)
    assert first.size == max(4, 8)
    assert list(first.pieces()) == [first, second]


def test_union_conflicting_addresses():
    table = SectionTable()
    table.add(Section("u", SectionType.HRAM, UNION, org=0xFF80, is_address_fixed=True))
    with pytest.raises(LinkError, match="conflicting addresses"):
        table.add(Section("u", SectionType.HRAM, UNION, org=0xFF90, is_address_fixed=True))


def test_fragments_concatenate():
    table = SectionTable()
    data1, data2 = b"\x01\x02", b"\x03\x04\x05"
    patch = Patch(offset=0, pc_offset=1)
    first = Section("code", SectionType.ROM0, FRAG, size=len(data1), data=bytearray(data1))
    second = Section("code", SectionType.ROM0, FRAG, size=len(data2),
                     data=bytearray(data2), patches=[patch])
    table.add(first)
    table.add(second)
    assert table.get("code") is first
    assert first.size == len(data1) + len(data2)
    assert bytes(first.data) == data1 + data2
    assert second.offset == len(data1)
    assert patch.pc_offset == 1 + len(data1)
    assert list(first.pieces()) == [first, second]


def test_fragment_fixed_address_propagates_back():
    table = SectionTable()
    first = Section("f", SectionType.ROM0, FRAG, size=0x10)
    table.add(first)
    table.add(Section("f", SectionType.ROM0, FRAG, size=2, org=0x100, is_address_fixed=True))
    assert first.is_address_fixed
    assert first.org == 0x100 - 0x10


def test_conflicting_types():
    table = SectionTable()
    table.add(Section("t", SectionType.ROM0, FRAG))
    with pytest.raises(LinkError, match="conflicting types ROM0 and ROMX"):
        table.add(Section("t", SectionType.ROMX, FRAG))


def test_conflicting_banks():
    table = SectionTable()
    table.add(Section("w", SectionType.WRAMX, UNION, bank=1, is_bank_fixed=True))
    with pytest.raises(LinkError, match="conflicting banks 1 and 2"):
        table.add(Section("w", SectionType.WRAMX, UNION, bank=2, is_bank_fixed=True))


def test_sanity_32k_turns_romx_into_rom0():
    table = SectionTable()
    sect = Section("x", SectionType.ROMX, size=4)
    table.add(sect)
    diag, _ = make_diag()
    table.sanity_check(MemoryMap.for_modes(True, False, False), diag)
    assert sect.type == SectionType.ROM0
    assert sect.is_bank_fixed and sect.bank == 0
    assert diag.error_count == 0


def test_sanity_32k_rejects_romx_bank():
    table = SectionTable()
    table.add(Section("x", SectionType.ROMX, bank=2, is_bank_fixed=True))
    diag, out = make_diag()
    table.sanity_check(MemoryMap.for_modes(True, False, False), diag)
    assert diag.error_count == 1
    assert "ROMX sections must be in bank 1" in out.getvalue()


def test_sanity_invalid_type():
    table = SectionTable()
    table.add(Section("q", None))
    diag, out = make_diag()
    table.sanity_check(MemoryMap(), diag)
    assert out.getvalue() == 'error: Section "q" has an invalid type\n'


def test_sanity_too_big():
    table = SectionTable()
    table.add(Section("h", SectionType.HRAM, size=0x100))
    diag, out = make_diag()
    table.sanity_check(MemoryMap(), diag)
    assert diag.error_count == 1
    assert "is bigger than the max size for that type" in out.getvalue()


def test_sanity_address_out_of_range():
    table = SectionTable()
    table.add(Section("w", SectionType.WRAM0, org=0x100, is_address_fixed=True))
    diag, out = make_diag()
    table.sanity_check(MemoryMap(), diag)
    assert "is outside of range" in out.getvalue()


def test_sanity_drops_alignment_with_fixed_address():
    table = SectionTable()
    sect = Section("a", SectionType.ROM0, org=0x100, is_address_fixed=True,
                   is_align_fixed=True, align_mask=0xFF, align_ofs=0)
    table.add(sect)
    diag, _ = make_diag()
    table.sanity_check(MemoryMap(), diag)
    assert not sect.is_align_fixed
    assert diag.error_count == 0