"""Linker options and the parsers for their more involved arguments."""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple

from gblink.diagnostics import Diagnostics
from gblink.linkdefs import MemoryMap

_BLANKS = " \t"
_C_WHITESPACE = " \t\n\v\f\r"
_DIGITS = "0123456789abcdefghijklmnopqrstuvwxyz"


@dataclass
class LinkOptions:
    """Everything the command line can set."""

    is_dmg: bool = False
    linker_script: str | None = None
    map_file: str | None = None
    no_sym_in_map: bool = False
    sym_file: str | None = None
    overlay_file: str | None = None
    output_file: str | None = None
    pad_value: int = 0
    # A scramble limit of 0 disables scrambling for that region
    scramble_romx: int = 0
    scramble_wramx: int = 0
    scramble_sram: int = 0
    is_32k: bool = False
    verbose: bool = False
    is_wra0: bool = False
    disable_padding: bool = False

    def memory_map(self) -> MemoryMap:
        """The region table these options call for."""
        return MemoryMap.for_modes(self.is_32k, self.is_wra0, self.is_dmg)


class _Region(NamedTuple):
    name: str
    max: int
    attr: str


_SCRAMBLE_REGIONS = (
    _Region("romx", 65535, "scramble_romx"),
    _Region("sram", 255, "scramble_sram"),
    _Region("wramx", 7, "scramble_wramx"),
)


def _char(text: str, pos: int) -> str:
    return text[pos] if pos < len(text) else ""


def _span(text: str, pos: int, chars: str) -> int:
    while pos < len(text) and text[pos] in chars:
        pos += 1
    return pos


def _cspan(text: str, pos: int, chars: str) -> int:
    while pos < len(text) and text[pos] not in chars:
        pos += 1
    return pos


def _digit_value(char: str) -> int | None:
    index = _DIGITS.find(char.lower()) if char.isascii() and char else -1
    return index if index >= 0 else None


def _strtoul(text: str, start: int, base: int) -> tuple[int, int]:
    """Parse an unsigned number the way the C library does; return it and its end."""
    pos = _span(text, start, _C_WHITESPACE)
    negative = False
    if _char(text, pos) in ("+", "-") and _char(text, pos):
        negative = text[pos] == "-"
        pos += 1
    if base == 0:
        if (text.startswith(("0x", "0X"), pos)
                and (_digit_value(_char(text, pos + 2)) or 99) < 16):
            base = 16
            pos += 2
        elif _char(text, pos) == "0":
            base = 8
        else:
            base = 10
    digits_start = pos
    value = 0
    while pos < len(text):
        digit = _digit_value(text[pos])
        if digit is None or digit >= base:
            break
        value = value * base + digit
        pos += 1
    if pos == digits_start:
        return 0, start
    if negative:
        value = -value % (1 << 64)
    return value, pos


def _parse_region(spec: str, pos: int, options: LinkOptions,
                  diagnostics: Diagnostics) -> int | None:
    name_end = _cspan(spec, pos, "=, \t")
    name = spec[pos:name_end]
    if not name:
        diagnostics.arg_error("S", "Missing region name")
        if _char(spec, pos) == "=":
            comma = spec.find(",", pos + 1)
            return comma if comma >= 0 else None
        return pos

    pos = _span(spec, name_end, _BLANKS)
    if _char(spec, pos) not in ("", ",", "="):
        diagnostics.arg_error("S", f"Unexpected '{spec[pos]}' after region name \"{name}\"")
        pos = _cspan(spec, pos + 1, ",=")

    region = next(
        (r for r in _SCRAMBLE_REGIONS if r.name.startswith(name.lower())), None
    )
    if region is None:
        diagnostics.arg_error("S", f'Unknown region "{name}"')

    if _char(spec, pos) == "=":
        pos += 1
        if _char(spec, pos) in ("", ","):
            diagnostics.arg_error("S", f'Empty limit for region "{name}"')
            return pos
        limit, end = _strtoul(spec, pos, 10)
        end = _span(spec, end, _BLANKS)
        next_pos: int | None = end
        if _char(spec, end) not in ("", ","):
            diagnostics.arg_error("S", f'Invalid non-numeric limit for region "{name}"')
            comma = spec.find(",", end)
            next_pos = comma if comma >= 0 else None
        if region is not None:
            if limit >= region.max:
                diagnostics.arg_error(
                    "S", f'Limit for region "{name}" may not exceed {region.max}'
                )
                limit = region.max
            setattr(options, region.attr, limit)
        return next_pos

    if region is not None and region.name == "wramx":
        # Only WRAMX can be implied, since ROMX and SRAM sizes may vary
        options.scramble_wramx = 7
    else:
        diagnostics.arg_error("S", f'Cannot imply limit for region "{name}"')
    return pos


def parse_scramble_spec(spec: str, options: LinkOptions, diagnostics: Diagnostics) -> None:
    """Apply a comma-separated list of ``region[=limit]`` scramble settings."""
    pos: int | None = _span(spec, 0, _BLANKS)
    while pos is not None:
        pos = _parse_region(spec, pos, options, diagnostics)
        if pos is None:
            break
        if _char(spec, pos) == ",":
            pos = _span(spec, pos + 1, _BLANKS)
        if _char(spec, pos) == "":
            break


def parse_pad_value(text: str, diagnostics: Diagnostics) -> int:
    """Parse the padding byte; invalid values are reported and replaced by 0xFF."""
    value, end = _strtoul(text, 0, 0)
    if text == "" or end != len(text):
        diagnostics.arg_error("p", "")
        value = 0xFF
    if value > 0xFF:
        diagnostics.arg_error("p", "Argument for 'p' must be a byte (between 0 and 0xFF)")
        value = 0xFF
    return value