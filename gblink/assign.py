"""Placing sections into banks and addresses with first-fit decreasing."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from gblink.diagnostics import LinkError
from gblink.linkdefs import MemoryMap, SectionType
from gblink.output import OutputLayout
from gblink.section import Section

_BANK_CONSTRAINED = 1 << 2
_ORG_CONSTRAINED = 1 << 1
_ALIGN_CONSTRAINED = 1 << 0

_MAX_LISTED_SECTIONS = 10


@dataclass
class FreeSpace:
    """A run of unused addresses inside one bank."""

    address: int
    size: int

    @property
    def end(self) -> int:
        return self.address + self.size


def _constraints(section: Section) -> int:
    constraints = 0
    if section.is_bank_fixed:
        constraints |= _BANK_CONSTRAINED
    if section.is_address_fixed:
        constraints |= _ORG_CONSTRAINED
    elif section.is_align_fixed:
        constraints |= _ALIGN_CONSTRAINED
    return constraints


def _is_location_suitable(section: Section, space: FreeSpace, address: int) -> bool:
    if section.is_address_fixed and section.org != address:
        return False
    if section.is_align_fixed and (address - section.align_ofs) & section.align_mask:
        return False
    if address < space.address:
        return False
    return address + section.size <= space.end


class SectionAssigner:
    """Tracks free space per bank and gives each section a bank and address."""

    def __init__(self, memory_map: MemoryMap, layout: OutputLayout,
                 scramble_romx: int = 0, scramble_wramx: int = 0,
                 scramble_sram: int = 0) -> None:
        self.memory_map = memory_map
        self.layout = layout
        self.scramble_romx = scramble_romx
        self.scramble_wramx = scramble_wramx
        self.scramble_sram = scramble_sram
        self._next_romx = 1
        self._next_wramx = 1
        self._next_sram = 1
        self._free: dict[tuple[SectionType, int], list[FreeSpace]] = {}
        self.remaining = 0

    def free_space(self, section_type: SectionType, bank: int) -> list[FreeSpace]:
        """The free-space list of one bank, created whole on first use."""
        key = (section_type, bank)
        spaces = self._free.get(key)
        if spaces is None:
            info = self.memory_map.info(section_type)
            spaces = [FreeSpace(info.start_addr, info.size)]
            self._free[key] = spaces
        return spaces

    def _assign_to(self, section: Section, bank: int, address: int) -> None:
        for piece in section.pieces():
            piece.org = address
            piece.bank = bank
        self.remaining -= 1
        self.layout.add_section(section)

    def _starting_bank(self, section: Section) -> int:
        if section.is_bank_fixed:
            return section.bank
        if self.scramble_romx and section.type == SectionType.ROMX:
            bank = self._next_romx
            self._next_romx += 1
            if self._next_romx > self.scramble_romx:
                self._next_romx = 1
            return bank
        if self.scramble_wramx and section.type == SectionType.WRAMX:
            bank = self._next_wramx
            self._next_wramx += 1
            if self._next_wramx > self.scramble_wramx:
                self._next_wramx = 1
            return bank
        if self.scramble_sram and section.type == SectionType.SRAM:
            bank = self._next_sram
            self._next_sram += 1
            if self._next_sram > self.scramble_sram:
                self._next_sram = 0
            return bank
        return self.memory_map.info(section.type).first_bank

    def _find_placement(self, section: Section) -> tuple[int, int, list[FreeSpace], int] | None:
        """Find (bank, address, free list, index of enclosing space), or None."""
        info = self.memory_map.info(section.type)
        bank = self._starting_bank(section)
        address = 0
        while True:
            spaces = self.free_space(section.type, bank - info.first_bank)
            index = 0
            if spaces:
                address = spaces[0].address
            while index < len(spaces):
                if _is_location_suitable(section, spaces[index], address):
                    return bank, address, spaces, index

                if section.is_address_fixed:
                    # Only one candidate block per bank for a fixed address
                    if address < section.org:
                        address = section.org
                    else:
                        index = len(spaces)
                elif section.is_align_fixed:
                    address -= section.align_ofs
                    address &= ~section.align_mask
                    address += section.align_mask + 1 + section.align_ofs
                else:
                    index += 1
                    if index < len(spaces):
                        address = spaces[index].address

                while index < len(spaces) and address >= spaces[index].end:
                    index += 1

            if section.is_bank_fixed:
                return None
            bank += 1
            if bank > info.last_bank:
                return None

    def place_section(self, section: Section) -> None:
        """Place one section, carving its room out of the free space."""
        info = self.memory_map.info(section.type)
        if section.size == 0:
            address = section.org if section.is_address_fixed else info.start_addr
            bank = section.bank if section.is_bank_fixed else info.first_bank
            self._assign_to(section, bank, address)
            return

        placement = self._find_placement(section)
        if placement is None:
            raise LinkError(self._failure_message(section))

        bank, address, spaces, index = placement
        self._assign_to(section, bank, address)

        space = spaces[index]
        no_left = space.address == section.org
        no_right = space.end == section.org + section.size
        if no_left and no_right:
            del spaces[index]
        elif not no_left and not no_right:
            right = FreeSpace(section.org + section.size, space.end - (section.org + section.size))
            space.size = section.org - space.address
            spaces.insert(index + 1, right)
        else:
            space.size -= section.size
            if no_left:
                space.address += section.size

    def _where(self, section: Section) -> str:
        if section.is_bank_fixed and self.memory_map.nb_banks(section.type) != 1:
            if section.is_address_fixed:
                return f"at ${section.bank:02x}:{section.org:04x}"
            if section.is_align_fixed:
                return (f"in bank ${section.bank:02x} with align mask "
                        f"{~section.align_mask & 0xFFFF:x}")
            return f"in bank ${section.bank:02x}"
        if section.is_address_fixed:
            return f"at address ${section.org:04x}"
        if section.is_align_fixed:
            return (f"with align mask {~section.align_mask & 0xFFFF:x} "
                    f"and offset {section.align_ofs:x}")
        return "anywhere"

    def _failure_message(self, section: Section) -> str:
        info = self.memory_map.info(section.type)
        base = f'Unable to place "{section.name}" ({info.name} section) {self._where(section)}'
        if not section.is_bank_fixed or not section.is_address_fixed:
            return base
        region_end = self.memory_map.end_address(section.type) + 1
        if section.org + section.size > region_end:
            return (f"{base}: section runs past end of region "
                    f"(${section.org + section.size:04x} > ${region_end:04x})")
        other = self.layout.overlapping_section(section)
        other_name = other.name if other is not None else ""
        return f'{base}: section overlaps with "{other_name}"'

    def assign(self, sections: Iterable[Section], overlay: bool) -> None:
        """Place every section, the most constrained ones first."""
        buckets: list[list[Section]] = [[] for _ in range(1 << 3)]
        self.remaining = 0
        for section in sections:
            bucket = buckets[_constraints(section)]
            # Keep sorted by decreasing size; newcomers go before equal sizes
            position = next(
                (i for i, other in enumerate(bucket) if other.size <= section.size),
                len(bucket),
            )
            bucket.insert(position, section)
            self.remaining += 1

        for section in buckets[_BANK_CONSTRAINED | _ORG_CONSTRAINED]:
            self.place_section(section)

        if not self.remaining:
            return

        order = range(_BANK_CONSTRAINED | _ALIGN_CONSTRAINED, -1, -1)
        if overlay:
            unfixed = [s for c in order for s in buckets[c]][:_MAX_LISTED_SECTIONS]
            listed = "".join(
                f'{";" if i == 0 else ","} "{s.name}"' for i, s in enumerate(unfixed)
            )
            more = (f" and {self.remaining - len(unfixed)} more"
                    if self.remaining != len(unfixed) else "")
            verb = "is" if self.remaining == 1 else "are"
            raise LinkError(
                f"All sections must be fixed when using an overlay file{listed}{more} {verb}n't"
            )

        for constraints in order:
            for section in buckets[constraints]:
                self.place_section(section)
            if not self.remaining:
                return


def assign_sections(sections: Iterable[Section], layout: OutputLayout,
                    memory_map: MemoryMap, options) -> SectionAssigner:
    """Place all sections as the link options ask and return the assigner."""
    assigner = SectionAssigner(
        memory_map,
        layout,
        scramble_romx=options.scramble_romx,
        scramble_wramx=options.scramble_wramx,
        scramble_sram=options.scramble_sram,
    )
    assigner.assign(sections, overlay=options.overlay_file is not None)
    return assigner