import random

import pytest

from gblink.assign import FreeSpace, SectionAssigner, assign_sections
from gblink.diagnostics import LinkError
from gblink.linkdefs import MemoryMap, SectionModifier, SectionType
from gblink.options import LinkOptions
from gblink.output import OutputLayout
from gblink.section import Section, SectionTable


def make_assigner(**kwargs):
    memory_map = MemoryMap()
    layout = OutputLayout(memory_map)
    return SectionAssigner(memory_map, layout, **kwargs), layout, memory_map


def table(*sections):
    result = SectionTable()
    for section in sections:
        result.add(section)
    return result


def test_single_floating_rom0_goes_to_start():
    assigner, layout, memory_map = make_assigner()
    section = Section("code", type=SectionType.ROM0, size=0x10)
    assigner.assign(table(section), overlay=False)
    assert section.org == memory_map.info(SectionType.ROM0).start_addr
    assert section.bank == 0
    assert layout.banks[SectionType.ROM0][0].sections == [section]
    assert assigner.remaining == 0


def test_larger_section_is_placed_first():
    assigner, _, _ = make_assigner()
    small = Section("small", type=SectionType.ROM0, size=0x10)
    big = Section("big", type=SectionType.ROM0, size=0x100)
    assigner.assign(table(small, big), overlay=False)
    assert big.org == 0
    assert small.org == big.size


def test_fixed_address_splits_free_space():
    assigner, _, _ = make_assigner()
    fixed = Section("fixed", type=SectionType.ROM0, size=0x10, org=0x100,
                    is_address_fixed=True, is_bank_fixed=True)
    floating = Section("floating", type=SectionType.ROM0, size=0x20)
    assigner.assign(table(fixed, floating), overlay=False)
    assert fixed.org == 0x100
    assert floating.org == 0
    spaces = assigner.free_space(SectionType.ROM0, 0)
    assert spaces[0] == FreeSpace(0x20, 0x100 - 0x20)
    assert spaces[1].address == 0x110


def test_aligned_section_skips_to_boundary():
    assigner, _, _ = make_assigner()
    fixed = Section("fixed", type=SectionType.ROM0, size=0x10, org=0,
                    is_address_fixed=True, is_bank_fixed=True)
    aligned = Section("aligned", type=SectionType.ROM0, size=0x10,
                      is_align_fixed=True, align_mask=0xFF, align_ofs=0)
    assigner.assign(table(fixed, aligned), overlay=False)
    assert aligned.org == 0x100
    assert aligned.org & aligned.align_mask == 0


def test_zero_size_section_takes_no_space():
    assigner, _, memory_map = make_assigner()
    empty = Section("empty", type=SectionType.WRAM0, size=0)
    data = Section("data", type=SectionType.WRAM0, size=0x40)
    assigner.assign(table(empty, data), overlay=False)
    start = memory_map.info(SectionType.WRAM0).start_addr
    assert empty.org == start
    assert data.org == start


def test_romx_goes_to_first_bank_then_next():
    assigner, _, memory_map = make_assigner()
    info = memory_map.info(SectionType.ROMX)
    first = Section("first", type=SectionType.ROMX, size=info.size)
    second = Section("second", type=SectionType.ROMX, size=0x10)
    assigner.assign(table(first, second), overlay=False)
    assert (first.bank, first.org) == (info.first_bank, info.start_addr)
    assert (second.bank, second.org) == (info.first_bank + 1, info.start_addr)


def test_union_pieces_share_location():
    assigner, _, _ = make_assigner()
    one = Section("u", type=SectionType.WRAM0, size=4, modifier=SectionModifier.UNION)
    two = Section("u", type=SectionType.WRAM0, size=8, modifier=SectionModifier.UNION)
    sections = table(one, two)
    assigner.assign(sections, overlay=False)
    assert [(p.org, p.bank) for p in one.pieces()] == [(one.org, one.bank)] * 2


def test_overlapping_fixed_sections_report_overlap():
    assigner, _, _ = make_assigner()
    a = Section("a", type=SectionType.ROM0, size=0x10, org=0x200,
                is_address_fixed=True, is_bank_fixed=True)
    b = Section("b", type=SectionType.ROM0, size=0x08, org=0x204,
                is_address_fixed=True, is_bank_fixed=True)
    with pytest.raises(LinkError, match='section overlaps with "a"'):
        assigner.assign(table(a, b), overlay=False)


def test_fixed_section_past_region_end():
    assigner, _, _ = make_assigner()
    section = Section("late", type=SectionType.ROM0, size=0x20, org=0x3FF0,
                      is_address_fixed=True, is_bank_fixed=True)
    with pytest.raises(LinkError, match="section runs past end of region"):
        assigner.place_section(section)


def test_floating_section_too_big_fails_anywhere():
    assigner, _, _ = make_assigner()
    section = Section("huge", type=SectionType.HRAM, size=0x100)
    with pytest.raises(LinkError, match='Unable to place "huge" \\(HRAM section\\) anywhere'):
        assigner.place_section(section)


def test_overlay_requires_fixed_sections():
    assigner, _, _ = make_assigner()
    fixed = Section("fixed", type=SectionType.ROM0, size=0x10, org=0,
                    is_address_fixed=True, is_bank_fixed=True)
    loose = Section("loose", type=SectionType.ROM0, size=0x10)
    with pytest.raises(LinkError, match='overlay file; "loose" isn\'t'):
        assigner.assign(table(fixed, loose), overlay=True)


def test_overlay_with_only_fixed_sections_succeeds():
    assigner, _, _ = make_assigner()
    fixed = Section("fixed", type=SectionType.ROM0, size=0x10, org=0x40,
                    is_address_fixed=True, is_bank_fixed=True)
    assigner.assign(table(fixed), overlay=True)
    assert fixed.org == 0x40
    assert assigner.remaining == 0


def test_scrambled_romx_uses_several_banks():
    assigner, _, _ = make_assigner(scramble_romx=3)
    sections = [Section(f"s{i}", type=SectionType.ROMX, size=0x10 * (i + 1)) for i in range(3)]
    assigner.assign(table(*sections), overlay=False)
    assert sorted(s.bank for s in sections) == [1, 2, 3]


def test_assign_sections_uses_options():
    memory_map = MemoryMap()
    layout = OutputLayout(memory_map)
    options = LinkOptions(scramble_wramx=2)
    sections = [Section(f"w{i}", type=SectionType.WRAMX, size=0x10 + i) for i in range(2)]
    assigner = assign_sections(table(*sections), layout, memory_map, options)
    assert sorted(s.bank for s in sections) == [1, 2]
    assert assigner.remaining == 0


def test_random_sections_never_overlap():
    rng = random.Random(1234)
    assigner, _, memory_map = make_assigner()
    sections = [Section(f"s{i}", type=SectionType.ROMX, size=rng.randint(1, 0x800))
                for i in range(40)]
    assigner.assign(table(*sections), overlay=False)
    info = memory_map.info(SectionType.ROMX)
    by_bank = {}
    for section in sections:
        assert info.start_addr <= section.org
        assert section.org + section.size <= info.start_addr + info.size
        by_bank.setdefault(section.bank, []).append(section)
    for placed in by_bank.values():
        placed.sort(key=lambda s: s.org)
        for left, right in zip(placed, placed[1:]):
            assert left.org + left.size <= right.org