"""Sections, their merging rules and sanity checks."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterator

from gblink.diagnostics import Diagnostics, FileStackNode, LinkError
from gblink.linkdefs import (
    MemoryMap,
    PatchType,
    SectionModifier,
    SectionType,
    has_data,
)


@dataclass(eq=False)
class Patch:
    """A spot in a section's data to be filled with an RPN expression's value."""

    offset: int = 0
    type: PatchType = PatchType.BYTE
    rpn_expression: bytes = b""
    src: FileStackNode | None = None
    line_no: int = 0
    pc_section_id: int = -1
    pc_section: Section | None = None
    pc_offset: int = 0


@dataclass(eq=False)
class Section:
    """A named chunk of code or data; unions and fragments chain via ``nextu``."""

    name: str
    type: SectionType | None = None
    modifier: SectionModifier = SectionModifier.NORMAL
    size: int = 0
    org: int = 0
    bank: int = 0
    is_address_fixed: bool = False
    is_bank_fixed: bool = False
    is_align_fixed: bool = False
    align_mask: int = 0
    align_ofs: int = 0
    offset: int = 0
    data: bytearray | None = None
    patches: list[Patch] = field(default_factory=list)
    symbols: list[Any] = field(default_factory=list)
    file_symbols: list[Any] = field(default_factory=list)
    nextu: Section | None = None

    def pieces(self) -> Iterator[Section]:
        """This section followed by every union or fragment merged into it."""
        section: Section | None = self
        while section is not None:
            yield section
            section = section.nextu


def _type_name(section_type: SectionType | None) -> str:
    return section_type.name if isinstance(section_type, SectionType) else "INVALID"


def _alt_hex(value: int) -> str:
    return "0" if value == 0 else f"{value:#x}"


def _check_union_compat(target: Section, other: Section) -> None:
    if other.is_address_fixed:
        if target.is_address_fixed:
            if target.org != other.org:
                raise LinkError(
                    f'Section "{other.name}" is defined with conflicting addresses '
                    f"${target.org:04x} and ${other.org:04x}"
                )
        elif target.is_align_fixed:
            if (other.org - target.align_ofs) & target.align_mask:
                raise LinkError(
                    f'Section "{other.name}" is defined with conflicting '
                    f"{target.align_mask + 1}-byte alignment (offset {target.align_ofs}) "
                    f"and address ${other.org:04x}"
                )
        target.is_address_fixed = True
        target.org = other.org
    elif other.is_align_fixed:
        if target.is_address_fixed:
            if (target.org - other.align_ofs) & other.align_mask:
                raise LinkError(
                    f'Section "{other.name}" is defined with conflicting address '
                    f"${target.org:04x} and {other.align_mask + 1}-byte alignment "
                    f"(offset {other.align_ofs})"
                )
        elif target.is_align_fixed and (
            (other.align_mask & target.align_ofs) != (target.align_mask & other.align_ofs)
        ):
            raise LinkError(
                f'Section "{other.name}" is defined with conflicting '
                f"{target.align_mask + 1}-byte alignment (offset {target.align_ofs}) and "
                f"{other.align_mask + 1}-byte alignment (offset {other.align_ofs})"
            )
        elif not target.is_align_fixed or other.align_mask > target.align_mask:
            target.is_align_fixed = True
            target.align_mask = other.align_mask


def _check_fragment_compat(target: Section, other: Section) -> None:
    if other.is_address_fixed:
        org = (other.org - target.size) & 0xFFFF
        if target.is_address_fixed:
            if target.org != org:
                raise LinkError(
                    f'Section "{other.name}" is defined with conflicting addresses '
                    f"${target.org:04x} and ${other.org:04x}"
                )
        elif target.is_align_fixed:
            if (org - target.align_ofs) & target.align_mask:
                raise LinkError(
                    f'Section "{other.name}" is defined with conflicting '
                    f"{target.align_mask + 1}-byte alignment (offset {target.align_ofs}) "
                    f"and address ${other.org:04x}"
                )
        target.is_address_fixed = True
        target.org = org
    elif other.is_align_fixed:
        ofs = (other.align_ofs - target.size) % (other.align_mask + 1)
        if target.is_address_fixed:
            if (target.org - ofs) & other.align_mask:
                raise LinkError(
                    f'Section "{other.name}" is defined with conflicting address '
                    f"${target.org:04x} and {other.align_mask + 1}-byte alignment "
                    f"(offset {other.align_ofs})"
                )
        elif target.is_align_fixed and (
            (other.align_mask & target.align_ofs) != (target.align_mask & ofs)
        ):
            raise LinkError(
                f'Section "{other.name}" is defined with conflicting '
                f"{target.align_mask + 1}-byte alignment (offset {target.align_ofs}) and "
                f"{other.align_mask + 1}-byte alignment (offset {other.align_ofs})"
            )
        elif not target.is_align_fixed or other.align_mask > target.align_mask:
            target.is_align_fixed = True
            target.align_mask = other.align_mask
            target.align_ofs = ofs


def _merge_sections(target: Section, other: Section, modifier: SectionModifier) -> None:
    if target.type != other.type:
        raise LinkError(
            f'Section "{other.name}" is defined with conflicting types '
            f"{_type_name(target.type)} and {_type_name(other.type)}"
        )

    if other.is_bank_fixed:
        if not target.is_bank_fixed:
            target.is_bank_fixed = True
            target.bank = other.bank
        elif target.bank != other.bank:
            raise LinkError(
                f'Section "{other.name}" is defined with conflicting banks '
                f"{target.bank} and {other.bank}"
            )

    if modifier == SectionModifier.UNION:
        _check_union_compat(target, other)
        target.size = max(target.size, other.size)
    elif modifier == SectionModifier.FRAGMENT:
        _check_fragment_compat(target, other)
        other.offset = target.size
        target.size += other.size
        if other.data is not None:
            if target.data is not None:
                head = bytearray(target.data[: other.offset]).ljust(other.offset, b"\0")
                target.data = head + bytearray(other.data)
            else:
                target.data = other.data
                other.data = None
            for patch in other.patches:
                patch.pc_offset += other.offset
    else:
        raise ValueError("regular sections cannot be merged")

    other.nextu = target.nextu
    target.nextu = other


class SectionTable:
    """All sections by name, merging unions and fragments as they arrive."""

    def __init__(self) -> None:
        self._sections: dict[str, Section] = {}

    def add(self, section: Section) -> None:
        other = self._sections.get(section.name)
        if other is not None:
            if section.modifier != other.modifier:
                raise LinkError(
                    f'Section "{section.name}" defined as {section.modifier.label} '
                    f"and {other.modifier.label}"
                )
            if section.modifier == SectionModifier.NORMAL:
                raise LinkError(f'Section name "{section.name}" is already in use')
            _merge_sections(other, section, section.modifier)
        elif section.modifier == SectionModifier.UNION and has_data(section.type):
            raise LinkError(
                f'Section "{section.name}" is of type {_type_name(section.type)}, '
                "which cannot be unionized"
            )
        else:
            self._sections[section.name] = section

    def get(self, name: str) -> Section | None:
        return self._sections.get(name)

    def __iter__(self) -> Iterator[Section]:
        return iter(list(self._sections.values()))

    def __len__(self) -> int:
        return len(self._sections)

    def sanity_check(self, memory_map: MemoryMap, diagnostics: Diagnostics) -> None:
        """Check every section against the memory map, tightening constraints."""
        for section in self:
            _check_section(section, memory_map, diagnostics)


def _check_section(section: Section, memory_map: MemoryMap, diag: Diagnostics) -> None:
    name = section.name
    if not isinstance(section.type, SectionType):
        diag.error(None, 0, f'Section "{name}" has an invalid type')
        return

    if memory_map.is_32k and section.type == SectionType.ROMX:
        if section.is_bank_fixed and section.bank != 1:
            diag.error(None, 0, f"{name}: ROMX sections must be in bank 1 (if any) with option -t")
        else:
            section.type = SectionType.ROM0
    if memory_map.is_wra0 and section.type == SectionType.WRAMX:
        if section.is_bank_fixed and section.bank != 1:
            diag.error(None, 0, f"{name}: WRAMX sections must be in bank 1 with options -w or -d")
        else:
            section.type = SectionType.WRAM0
    if memory_map.is_dmg and section.type == SectionType.VRAM and section.bank == 1:
        diag.error(None, 0, f"{name}: VRAM bank 1 can't be used with option -d")

    if section.is_align_fixed and section.align_mask == 0:
        section.is_align_fixed = False

    info = memory_map.info(section.type)
    if section.is_align_fixed and section.align_mask & info.start_addr:
        diag.error(
            None, 0,
            f"{name}: {info.name} sections cannot be aligned to ${section.align_mask + 1:04x} bytes",
        )

    if section.size > info.size:
        diag.error(
            None, 0,
            f'Section "{name}" is bigger than the max size for that type: '
            f"{_alt_hex(section.size)} > {_alt_hex(info.size)}",
        )

    if info.first_bank == info.last_bank:
        section.bank = info.first_bank
        section.is_bank_fixed = True

    if section.is_address_fixed:
        if section.is_align_fixed:
            if (section.org & section.align_mask) != section.align_ofs:
                diag.error(None, 0, f"Section \"{name}\"'s fixed address doesn't match its alignment")
            section.is_align_fixed = False

        end = memory_map.end_address(section.type)
        if section.org < info.start_addr or section.org > end:
            diag.error(
                None, 0,
                f"Section \"{name}\"'s fixed address {_alt_hex(section.org)} is outside of range "
                f"[{_alt_hex(info.start_addr)}; {_alt_hex(end)}]",
            )
        if section.org + section.size > end + 1:
            diag.error(
                None, 0,
                f"Section \"{name}\"'s end address {_alt_hex(section.org + section.size)} "
                f"is greater than last address {_alt_hex(end + 1)}",
            )