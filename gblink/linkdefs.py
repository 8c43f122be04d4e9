"""Section types, memory regions and object-file enumerations."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import IntEnum


class SectionType(IntEnum):
    """Memory region a section lives in, numbered as in object files."""

    WRAM0 = 0
    VRAM = 1
    ROMX = 2
    ROM0 = 3
    HRAM = 4
    WRAMX = 5
    SRAM = 6
    OAM = 7


class SectionModifier(IntEnum):
    """How a section combines with others of the same name."""

    NORMAL = 0
    UNION = 1
    FRAGMENT = 2

    @property
    def label(self) -> str:
        """The word used for this modifier in messages."""
        return _MODIFIER_LABELS[self]


_MODIFIER_LABELS = {
    SectionModifier.NORMAL: "regular",
    SectionModifier.UNION: "union",
    SectionModifier.FRAGMENT: "fragment",
}


class SymbolType(IntEnum):
    LOCAL = 0
    IMPORT = 1
    EXPORT = 2


class PatchType(IntEnum):
    BYTE = 0
    WORD = 1
    LONG = 2
    JR = 3


class AssertionType(IntEnum):
    WARN = 0
    ERROR = 1
    FATAL = 2


class RPNCommand(IntEnum):
    ADD = 0x00
    SUB = 0x01
    MUL = 0x02
    DIV = 0x03
    MOD = 0x04
    UNSUB = 0x05
    EXP = 0x06

    OR = 0x10
    AND = 0x11
    XOR = 0x12
    UNNOT = 0x13

    LOGAND = 0x21
    LOGOR = 0x22
    LOGUNNOT = 0x23

    LOGEQ = 0x30
    LOGNE = 0x31
    LOGGT = 0x32
    LOGLT = 0x33
    LOGGE = 0x34
    LOGLE = 0x35

    SHL = 0x40
    SHR = 0x41
    USHR = 0x42

    BANK_SYM = 0x50
    BANK_SECT = 0x51
    BANK_SELF = 0x52
    SIZEOF_SECT = 0x53
    STARTOF_SECT = 0x54

    HRAM = 0x60
    RST = 0x61

    CONST = 0x80
    SYM = 0x81


@dataclass(frozen=True)
class SectionTypeInfo:
    """Address range and bank range of one memory region."""

    name: str
    start_addr: int
    size: int
    first_bank: int
    last_bank: int


_DEFAULT_INFO = {
    SectionType.ROM0: SectionTypeInfo("ROM0", 0x0000, 0x8000, 0, 0),
    SectionType.ROMX: SectionTypeInfo("ROMX", 0x4000, 0x4000, 1, 65535),
    SectionType.VRAM: SectionTypeInfo("VRAM", 0x8000, 0x2000, 0, 1),
    SectionType.SRAM: SectionTypeInfo("SRAM", 0xA000, 0x2000, 0, 255),
    SectionType.WRAM0: SectionTypeInfo("WRAM0", 0xC000, 0x2000, 0, 0),
    SectionType.WRAMX: SectionTypeInfo("WRAMX", 0xD000, 0x1000, 1, 7),
    SectionType.OAM: SectionTypeInfo("OAM", 0xFE00, 0x00A0, 0, 0),
    SectionType.HRAM: SectionTypeInfo("HRAM", 0xFF80, 0x007F, 0, 0),
}


def has_data(section_type: SectionType | None) -> bool:
    """Whether sections of this type carry bytes in the ROM image."""
    return section_type in (SectionType.ROM0, SectionType.ROMX)


def default_section_types() -> dict[SectionType, SectionTypeInfo]:
    """The most lax region table, before any mode restricts it."""
    return {section_type: _DEFAULT_INFO[section_type] for section_type in SectionType}


@dataclass
class MemoryMap:
    """Region table adjusted for the chosen hardware modes."""

    is_32k: bool = False
    is_wra0: bool = False
    is_dmg: bool = False
    types: dict[SectionType, SectionTypeInfo] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        types = default_section_types()
        if not self.is_32k:
            types[SectionType.ROM0] = replace(types[SectionType.ROM0], size=0x4000)
        if not self.is_wra0:
            types[SectionType.WRAM0] = replace(types[SectionType.WRAM0], size=0x1000)
        if self.is_dmg:
            types[SectionType.VRAM] = replace(types[SectionType.VRAM], last_bank=0)
        self.types = types

    @classmethod
    def for_modes(cls, is_32k: bool, is_wra0: bool, is_dmg: bool) -> MemoryMap:
        return cls(is_32k=is_32k, is_wra0=is_wra0, is_dmg=is_dmg)

    def info(self, section_type: SectionType) -> SectionTypeInfo:
        return self.types[section_type]

    def nb_banks(self, section_type: SectionType) -> int:
        info = self.types[section_type]
        return info.last_bank - info.first_bank + 1

    def end_address(self, section_type: SectionType) -> int:
        info = self.types[section_type]
        return info.start_addr + info.size - 1