"""Laying out placed sections and writing the ROM, sym and map files."""

from __future__ import annotations

import bisect
import heapq
import io
import sys
from dataclasses import dataclass, field
from itertools import chain
from typing import BinaryIO, Iterator, TextIO

from gblink.diagnostics import LinkError
from gblink.linkdefs import MemoryMap, SectionModifier, SectionType
from gblink.section import Section

BANK_SIZE = 0x4000

_UNBOUNDED = 0xFFFFFFFF
_MAX_NB_BANKS = {
    SectionType.ROM0: 1,
    SectionType.ROMX: _UNBOUNDED,
    SectionType.VRAM: 2,
    SectionType.SRAM: _UNBOUNDED,
    SectionType.WRAM0: 1,
    SectionType.WRAMX: 7,
    SectionType.OAM: 1,
    SectionType.HRAM: 1,
}

# Order in which regions appear in the sym and map files
_TYPE_ORDER = (
    SectionType.ROM0,
    SectionType.ROMX,
    SectionType.VRAM,
    SectionType.SRAM,
    SectionType.WRAM0,
    SectionType.WRAMX,
    SectionType.OAM,
    SectionType.HRAM,
)

_SYM_START = frozenset("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz_")
_SYM_LEGAL = frozenset(b"ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789_@#$.")


def _plural(count: int) -> str:
    return "" if count == 1 else "s"


def _hex4(value: int) -> str:
    return f"{value & 0xFFFFFFFF:04x}"


@dataclass
class BankContents:
    """The sections of one bank, each list kept sorted by address."""

    sections: list[Section] = field(default_factory=list)
    zero_len_sections: list[Section] = field(default_factory=list)

    def ordered(self) -> Iterator[Section]:
        """All sections by address; empty ones come first on ties."""
        return heapq.merge(self.zero_len_sections, self.sections, key=lambda s: s.org)


def _insert_sorted(sections: list[Section], section: Section) -> None:
    index = bisect.bisect_left(sections, section.org, key=lambda s: s.org)
    sections.insert(index, section)


def _decode_codepoint(data: bytes, pos: int) -> tuple[int, int]:
    """Decode one UTF-8 sequence; invalid ones give U+FFFD and are skipped."""
    lead = data[pos]
    if lead < 0x80:
        return lead, pos + 1
    if 0xC2 <= lead <= 0xDF:
        count, low, high, codepoint = 1, 0x80, 0xBF, lead & 0x1F
    elif lead == 0xE0:
        count, low, high, codepoint = 2, 0xA0, 0xBF, lead & 0x0F
    elif 0xE1 <= lead <= 0xEC or 0xEE <= lead <= 0xEF:
        count, low, high, codepoint = 2, 0x80, 0xBF, lead & 0x0F
    elif lead == 0xED:
        count, low, high, codepoint = 2, 0x80, 0x9F, lead & 0x0F
    elif lead == 0xF0:
        count, low, high, codepoint = 3, 0x90, 0xBF, lead & 0x07
    elif 0xF1 <= lead <= 0xF3:
        count, low, high, codepoint = 3, 0x80, 0xBF, lead & 0x07
    elif lead == 0xF4:
        count, low, high, codepoint = 3, 0x80, 0x8F, lead & 0x07
    else:
        return 0xFFFD, _skip_continuations(data, pos + 1)

    pos += 1
    for index in range(count):
        byte = data[pos] if pos < len(data) else None
        lo, hi = (low, high) if index == 0 else (0x80, 0xBF)
        if byte is None or not lo <= byte <= hi:
            return 0xFFFD, _skip_continuations(data, pos)
        codepoint = (codepoint << 6) | (byte & 0x3F)
        pos += 1
    return codepoint, pos


def _skip_continuations(data: bytes, pos: int) -> int:
    while pos < len(data) and data[pos] & 0xC0 == 0x80:
        pos += 1
    return pos


def format_sym_name(name: str | bytes) -> str:
    """Render a symbol name for a sym file, escaping illegal characters."""
    data = name.encode("utf-8", "surrogateescape") if isinstance(name, str) else bytes(name)
    parts = []
    pos = 0
    while pos < len(data):
        if data[pos] in _SYM_LEGAL:
            parts.append(chr(data[pos]))
            pos += 1
            continue
        codepoint, pos = _decode_codepoint(data, pos)
        parts.append(f"\\u{codepoint:04x}" if codepoint <= 0xFFFF else f"\\U{codepoint:08x}")
    return "".join(parts)


def check_overlay_size(overlay_size: int, is_32k: bool) -> int:
    """Validate an overlay's size and return how many ROM banks it holds."""
    if overlay_size % BANK_SIZE:
        raise LinkError("Overlay file must have a size multiple of 0x4000")
    nb_banks = overlay_size // BANK_SIZE
    if is_32k and nb_banks != 2:
        raise LinkError("Overlay must be exactly 0x8000 bytes large")
    if nb_banks < 2:
        raise LinkError("Overlay must be at least 0x8000 bytes large")
    return nb_banks


def _filler(overlay: BinaryIO | None, count: int, pad_value: int) -> bytes:
    if overlay is None:
        return bytes([pad_value & 0xFF]) * count
    chunk = overlay.read(count) or b""
    return chunk + b"\xff" * (count - len(chunk))


class OutputLayout:
    """Placed sections grouped by region and bank."""

    def __init__(self, memory_map: MemoryMap) -> None:
        self.memory_map = memory_map
        self.banks: dict[SectionType, list[BankContents]] = {t: [] for t in SectionType}

    def add_section(self, section: Section) -> None:
        """Record a placed section in its bank."""
        info = self.memory_map.info(section.type)
        target = section.bank - info.first_bank
        max_banks = _MAX_NB_BANKS[section.type]
        if target < 0 or target + 1 > max_banks:
            raise LinkError(
                f'Section "{section.name}" has an invalid bank range '
                f"({section.bank} > {max_banks - 1})"
            )
        banks = self.banks[section.type]
        while len(banks) <= target:
            banks.append(BankContents())
        contents = banks[target]
        _insert_sorted(contents.sections if section.size else contents.zero_len_sections, section)

    def overlapping_section(self, section: Section) -> Section | None:
        """The first placed section in the same bank that overlaps this one."""
        banks = self.banks[section.type]
        index = section.bank - self.memory_map.info(section.type).first_bank
        if not 0 <= index < len(banks):
            return None
        for other in banks[index].sections:
            if other.org < section.org + section.size and section.org < other.org + other.size:
                return other
        return None

    def cover_overlay_banks(self, nb_overlay_banks: int) -> None:
        """Make sure every bank of the overlay gets written out."""
        nb_rom0_banks = self.memory_map.info(SectionType.ROM0).size // BANK_SIZE
        romx = self.banks[SectionType.ROMX]
        while len(romx) < nb_overlay_banks - nb_rom0_banks:
            romx.append(BankContents())

    def _overlay_banks(self, overlay: BinaryIO) -> int:
        try:
            size = overlay.seek(0, io.SEEK_END)
            overlay.seek(0)
        except OSError:
            sys.stderr.write("warning: Overlay file is not seekable, cannot check if properly formed\n")
            return 0
        return check_overlay_size(size, self.memory_map.is_32k)

    def write_rom(self, output: BinaryIO | None, overlay: BinaryIO | None,
                  pad_value: int, disable_padding: bool) -> None:
        """Write the ROM image, filling gaps from the overlay or with padding."""
        if overlay is not None:
            nb_overlay_banks = self._overlay_banks(overlay)
            if nb_overlay_banks > 0:
                self.cover_overlay_banks(nb_overlay_banks)
        if output is None:
            return

        rom0 = self.memory_map.info(SectionType.ROM0)
        rom0_banks = self.banks[SectionType.ROM0]
        self._write_bank(output, overlay, rom0_banks[0].sections if rom0_banks else [],
                         rom0.start_addr, rom0.size, pad_value, disable_padding)
        romx = self.memory_map.info(SectionType.ROMX)
        for contents in self.banks[SectionType.ROMX]:
            self._write_bank(output, overlay, contents.sections,
                             romx.start_addr, romx.size, pad_value, disable_padding)

    @staticmethod
    def _write_bank(output: BinaryIO, overlay: BinaryIO | None, sections: list[Section],
                    base: int, size: int, pad_value: int, disable_padding: bool) -> None:
        offset = 0
        for section in sections:
            gap = section.org - (base + offset)
            if gap > 0:
                output.write(_filler(overlay, gap, pad_value))
                offset += gap
            data = bytes(section.data or b"")[: section.size].ljust(section.size, b"\0")
            output.write(data)
            if overlay is not None:
                overlay.read(section.size)
            offset += section.size
        if not disable_padding and offset < size:
            output.write(_filler(overlay, size - offset, pad_value))

    def write_sym(self, out: TextIO) -> None:
        """Write the symbol file listing every labelled address."""
        out.write("; File generated by rgblink\n")
        for section_type in _TYPE_ORDER:
            first_bank = self.memory_map.info(section_type).first_bank
            for index, contents in enumerate(self.banks[section_type]):
                entries = [
                    ((symbol.offset + piece.org) & 0xFFFF, symbol.name)
                    for head in chain(contents.zero_len_sections, contents.sections)
                    for piece in head.pieces()
                    for symbol in piece.symbols
                    if symbol.name and symbol.name[0] in _SYM_START
                ]
                entries.sort(key=lambda entry: entry[0])
                for address, name in entries:
                    out.write(f"{index + first_bank:02x}:{address:04x} {format_sym_name(name)}\n")

    def write_map(self, out: TextIO, no_sym_in_map: bool) -> None:
        """Write the map file: every bank's layout, then a usage summary."""
        used_by_type = {
            section_type: sum(
                self._write_map_bank(out, contents, section_type, index, no_sym_in_map)
                for index, contents in enumerate(self.banks[section_type])
            )
            for section_type in _TYPE_ORDER
        }
        self._write_summary(out, used_by_type)

    @staticmethod
    def _write_empty_space(out: TextIO, begin: int, end: int) -> None:
        if begin < end:
            length = end - begin
            out.write(f"\tEMPTY: ${_hex4(begin)}-${_hex4(end - 1)} (${_hex4(length)} byte{_plural(length)})\n")

    def _write_map_bank(self, out: TextIO, contents: BankContents, section_type: SectionType,
                        index: int, no_sym_in_map: bool) -> int:
        info = self.memory_map.info(section_type)
        out.write(f"{info.name} bank #{index + info.first_bank}:\n")
        used = 0
        prev_end = info.start_addr
        for section in contents.ordered():
            used += section.size
            self._write_empty_space(out, prev_end, section.org)
            prev_end = (section.org + section.size) & 0xFFFF
            if section.size:
                out.write(
                    f"\tSECTION: ${_hex4(section.org)}-${_hex4(prev_end - 1)} "
                    f"(${_hex4(section.size)} byte{_plural(section.size)}) [\"{section.name}\"]\n"
                )
            else:
                out.write(f"\tSECTION: ${_hex4(section.org)} (0 bytes) [\"{section.name}\"]\n")
            if not no_sym_in_map:
                for piece in section.pieces():
                    for symbol in piece.symbols:
                        out.write(f"\t         ${_hex4(symbol.offset + section.org)} = {symbol.name}\n")
                    if piece.nextu is not None:
                        if piece.nextu.modifier == SectionModifier.UNION:
                            out.write("\t         ; Next union\n")
                        elif piece.nextu.modifier == SectionModifier.FRAGMENT:
                            out.write("\t         ; Next fragment\n")

        if used == 0:
            out.write("\tEMPTY\n\n")
        else:
            self._write_empty_space(out, prev_end, (info.start_addr + info.size) & 0xFFFF)
            slack = (info.size - used) & 0xFFFF
            out.write(f"\tTOTAL EMPTY: ${_hex4(slack)} byte{_plural(slack)}\n\n")
        return used

    def _write_summary(self, out: TextIO, used_by_type: dict[SectionType, int]) -> None:
        out.write("SUMMARY:\n")
        for section_type in _TYPE_ORDER:
            if section_type in (SectionType.VRAM, SectionType.OAM):
                continue
            nb_banks = len(self.banks[section_type])
            if nb_banks == 0:
                continue
            info = self.memory_map.info(section_type)
            used = used_by_type[section_type]
            line = (f"\t{info.name}: {used} byte{_plural(used)} used / "
                    f"{nb_banks * info.size - used} free")
            if info.first_bank != info.last_bank or nb_banks > 1:
                line += f" in {nb_banks} bank{_plural(nb_banks)}"
            out.write(line + "\n")