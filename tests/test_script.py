import io

import pytest

from gblink.diagnostics import Diagnostics, LinkError
from gblink.linkdefs import MemoryMap, SectionModifier, SectionType
from gblink.script import (
    LinkerScript,
    SectionPlacement,
    apply_placements,
    parse_number,
)
from gblink.section import Section, SectionTable


def make_section(name, size, section_type=SectionType.ROM0, **overrides):
    fields = dict(
        name=name,
        type=section_type,
        modifier=SectionModifier.NORMAL,
        size=size,
        org=0,
        bank=0,
        is_address_fixed=False,
        is_bank_fixed=False,
        is_align_fixed=False,
        align_mask=0,
        align_ofs=0,
        offset=0,
        data=bytearray(size),
        patches=[],
        symbols=[],
    )
    fields.update(overrides)
    return Section(**fields)


def table_of(*sections):
    table = SectionTable()
    for section in sections:
        table.add(section)
    return table


def run(text, table):
    return list(LinkerScript(io.StringIO(text), "test.ld", table, MemoryMap()))


@pytest.mark.parametrize(
    "text, expected",
    [("42", 42), ("$1F", 0x1F), ("$ff", 0xFF), ("0", 0)],
)
def test_parse_number_valid(text, expected):
    assert parse_number(text) == expected


@pytest.mark.parametrize("text", ["", "$", "12A", "$G", "1.5"])
def test_parse_number_invalid(text):
    assert parse_number(text) is None


def test_sections_follow_each_other():
    table = table_of(make_section("A", 0x10), make_section("B", 4))
    placements = run('ROM0\nORG $100\n"A"\n"B"\n', table)
    assert [(p.section.name, p.org, p.bank) for p in placements] == [
        ("A", 0x100, 0),
        ("B", 0x100 + 0x10, 0),
    ]
    assert all(p.type == SectionType.ROM0 for p in placements)


def test_bank_number_selects_bank():
    table = table_of(make_section("C", 8, SectionType.ROMX))
    (placement,) = run('ROMX 2\n"C"\n', table)
    assert placement.bank == 2
    assert placement.org == MemoryMap().info(SectionType.ROMX).start_addr


def test_align_rounds_up():
    table = table_of(make_section("A", 1))
    (placement,) = run('ROM0\nORG $101\nALIGN 8\n"A"\n', table)
    assert placement.org == 0x200


def test_comments_and_crlf():
    table = table_of(make_section("A", 2))
    (placement,) = run('rom0 ; region\r\n"A" ; trailing\r\n', table)
    assert placement.section.name == "A"
    assert placement.org == 0


def test_string_escapes():
    table = table_of(make_section('q"x', 1))
    (placement,) = run('ROM0\n"q\\"x"\n', table)
    assert placement.section.name == 'q"x'


def test_include(tmp_path):
    included = tmp_path / "inc.ld"
    included.write_text('"A"\n')
    table = table_of(make_section("A", 3), make_section("B", 1))
    placements = run(f'ROM0\nINCLUDE "{included.as_posix()}"\n"B"\n', table)
    assert [(p.section.name, p.org) for p in placements] == [("A", 0), ("B", 3)]


def test_include_missing_file(tmp_path):
    missing = (tmp_path / "nope.ld").as_posix()
    with pytest.raises(LinkError, match="Could not open"):
        run(f'INCLUDE "{missing}"\n', SectionTable())


def test_unknown_section_reports_line():
    with pytest.raises(LinkError, match=r"test\.ld\(2\): Unknown section"):
        run('ROM0\n"Z"\n', SectionTable())


def test_section_without_location():
    table = table_of(make_section("A", 1))
    with pytest.raises(LinkError, match="Didn't specify a location before the section"):
        run('"A"\n', table)


def test_command_without_location():
    with pytest.raises(LinkError, match="before the command"):
        run("ORG $100\n", SectionTable())


def test_command_without_argument():
    with pytest.raises(LinkError, match="without an argument"):
        run("ROM0\nORG\n", SectionTable())


def test_org_cannot_go_backwards():
    with pytest.raises(LinkError, match="cannot be used to go backwards"):
        run("ROM0\nORG $100\nORG $80\n", SectionTable())


def test_missing_bank_number():
    with pytest.raises(LinkError, match="Didn't specify a bank number"):
        run("ROMX\n", SectionTable())


def test_bank_number_too_low():
    with pytest.raises(LinkError, match="too low"):
        run("ROMX 0\n", SectionTable())


def test_bank_number_too_high():
    with pytest.raises(LinkError, match="too high"):
        run("WRAMX 8\n", SectionTable())


def test_unknown_token_is_uppercased():
    with pytest.raises(LinkError, match='Unknown token "FOO"'):
        run("foo\n", SectionTable())


def test_stray_number():
    with pytest.raises(LinkError, match="stray number"):
        run("12\n", SectionTable())


def test_unterminated_string():
    with pytest.raises(LinkError, match="Unterminated string"):
        run('ROM0\n"abc\n', SectionTable())


def test_illegal_escape():
    with pytest.raises(LinkError, match="Illegal character escape"):
        run('ROM0\n"a\\qb"\n', SectionTable())


def test_unexpected_token_at_line_end():
    table = table_of(make_section("A", 1), make_section("B", 1))
    with pytest.raises(LinkError, match="Unexpected string at the end of the line"):
        run('ROM0\n"A" "B"\n', table)


def test_sections_past_region_end():
    table = table_of(make_section("A", 4))
    with pytest.raises(LinkError, match="extend past the end of ROM0"):
        run('ROM0\nORG $3FFE\n"A"\n', table)


def test_apply_placements_fixes_sections():
    section = make_section("A", 2, is_align_fixed=True, align_mask=0xF)
    placement = SectionPlacement(section, 0x120, 0, SectionType.ROM0)
    diagnostics = Diagnostics()
    apply_placements([placement], diagnostics)
    assert section.is_address_fixed and section.is_bank_fixed
    assert (section.org, section.bank) == (0x120, 0)
    assert section.is_align_fixed is False
    diagnostics.raise_if_errors()


def test_apply_placements_sets_unknown_type():
    section = make_section("A", 2, section_type=None)
    apply_placements([SectionPlacement(section, 0x4000, 3, SectionType.ROMX)], Diagnostics())
    assert section.type == SectionType.ROMX
    assert section.bank == 3


def test_apply_placements_reports_type_contradiction():
    section = make_section("A", 2, SectionType.ROMX)
    diagnostics = Diagnostics()
    apply_placements([SectionPlacement(section, 0, 0, SectionType.ROM0)], diagnostics)
    with pytest.raises(LinkError):
        diagnostics.raise_if_errors()


def test_apply_placements_reports_address_contradiction():
    section = make_section("A", 2, org=0x50, is_address_fixed=True)
    diagnostics = Diagnostics()
    apply_placements([SectionPlacement(section, 0x60, 0, SectionType.ROM0)], diagnostics)
    assert section.org == 0x60
    with pytest.raises(LinkError):
        diagnostics.raise_if_errors()