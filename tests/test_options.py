import io

from gblink.diagnostics import Diagnostics
from gblink.linkdefs import SectionType
from gblink.options import LinkOptions, parse_pad_value, parse_scramble_spec


def make_diag():
    stream = io.StringIO()
    return Diagnostics(stream), stream


def test_default_memory_map_uses_small_regions():
    memory_map = LinkOptions().memory_map()
    assert memory_map.info(SectionType.ROM0).size == 0x4000
    assert memory_map.info(SectionType.WRAM0).size == 0x1000


def test_modes_change_memory_map():
    memory_map = LinkOptions(is_32k=True, is_wra0=True, is_dmg=True).memory_map()
    assert memory_map.info(SectionType.ROM0).size == 0x8000
    assert memory_map.info(SectionType.WRAM0).size == 0x2000
    assert memory_map.info(SectionType.VRAM).last_bank == 0


def test_scramble_single_region():
    diag, _ = make_diag()
    options = LinkOptions()
    parse_scramble_spec("romx=16", options, diag)
    assert options.scramble_romx == 16
    assert diag.error_count == 0


def test_scramble_multiple_regions_with_blanks_and_case():
    diag, _ = make_diag()
    options = LinkOptions()
    parse_scramble_spec("  ROMX=3, sram = 4", options, diag)
    assert (options.scramble_romx, options.scramble_sram) == (3, 4)
    assert diag.error_count == 0


def test_scramble_wramx_is_implied():
    diag, _ = make_diag()
    options = LinkOptions()
    parse_scramble_spec("wramx", options, diag)
    assert options.scramble_wramx == 7
    assert diag.error_count == 0


def test_scramble_prefix_matches_region():
    diag, _ = make_diag()
    options = LinkOptions()
    parse_scramble_spec("r=2", options, diag)
    assert options.scramble_romx == 2


def test_scramble_cannot_imply_sram():
    diag, stream = make_diag()
    options = LinkOptions()
    parse_scramble_spec("sram", options, diag)
    assert diag.error_count == 1
    assert 'Cannot imply limit for region "sram"' in stream.getvalue()
    assert options.scramble_sram == 0


def test_scramble_unknown_region():
    diag, stream = make_diag()
    options = LinkOptions()
    parse_scramble_spec("foo=3", options, diag)
    assert 'Unknown region "foo"' in stream.getvalue()
    assert (options.scramble_romx, options.scramble_sram, options.scramble_wramx) == (0, 0, 0)


def test_scramble_limit_is_clamped():
    diag, stream = make_diag()
    options = LinkOptions()
    parse_scramble_spec("wramx=9", options, diag)
    assert options.scramble_wramx == 7
    assert "may not exceed 7" in stream.getvalue()


def test_scramble_non_numeric_limit():
    diag, stream = make_diag()
    options = LinkOptions()
    parse_scramble_spec("romx=abc", options, diag)
    assert 'Invalid non-numeric limit for region "romx"' in stream.getvalue()
    assert diag.error_count == 1


def test_scramble_missing_region_name():
    diag, stream = make_diag()
    options = LinkOptions()
    parse_scramble_spec("=5,sram=2", options, diag)
    assert "Missing region name" in stream.getvalue()
    assert options.scramble_sram == 2


def test_scramble_empty_limit():
    diag, stream = make_diag()
    options = LinkOptions()
    parse_scramble_spec("romx=", options, diag)
    assert 'Empty limit for region "romx"' in stream.getvalue()
    assert options.scramble_romx == 0


def test_pad_value_bases():
    diag, _ = make_diag()
    assert parse_pad_value("200", diag) == 200
    assert parse_pad_value("0x10", diag) == 0x10
    assert parse_pad_value("010", diag) == 0o10
    assert diag.error_count == 0


def test_pad_value_too_large():
    diag, stream = make_diag()
    assert parse_pad_value("256", diag) == 0xFF
    assert "must be a byte" in stream.getvalue()


def test_pad_value_invalid_text():
    diag, _ = make_diag()
    assert parse_pad_value("zz", diag) == 0xFF
    assert parse_pad_value("", diag) == 0xFF
    assert diag.error_count == 2