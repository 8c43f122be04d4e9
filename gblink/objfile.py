"""Reading RGBDS object files into the linker's section and symbol tables."""

from __future__ import annotations

import bisect
import sys
from typing import BinaryIO

from gblink.diagnostics import Diagnostics, FileStackNode, LinkError, NodeType
from gblink.linkdefs import (
    AssertionType,
    PatchType,
    SectionModifier,
    SectionType,
    SymbolType,
    has_data,
)
from gblink.opmath import to_int32
from gblink.patch import Assertion
from gblink.section import Patch, Section, SectionTable
from gblink.symbol import Symbol, SymbolTable

OBJECT_MAGIC = b"RGB9"
OBJECT_REV = 9

_NO_ID = 0xFFFFFFFF
_UINT16_MAX = 0xFFFF
_UNEXPECTED_EOF = "Unexpected end of file"


class _Cursor:
    """Sequential little-endian reads over an object file's bytes."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.pos = 0

    def _take(self, count: int, what: str) -> bytes:
        end = self.pos + count
        if end > len(self.data):
            raise LinkError(f"{what}: {_UNEXPECTED_EOF}")
        chunk = self.data[self.pos:end]
        self.pos = end
        return chunk

    def long(self, what: str) -> int:
        return int.from_bytes(self._take(4, what), "little")

    def signed_long(self, what: str) -> int:
        return to_int32(self.long(what))

    def byte(self, what: str) -> int:
        return self._take(1, what)[0]

    def bytes(self, count: int, what: str) -> bytes:
        return self._take(count, what)

    def string(self, what: str) -> str:
        end = self.data.find(b"\0", self.pos)
        if end < 0:
            raise LinkError(f"{what}: {_UNEXPECTED_EOF}")
        raw = self.data[self.pos:end]
        self.pos = end + 1
        return raw.decode("utf-8", "surrogateescape")


class ObjectReader:
    """Reads object files, registering their sections, symbols and assertions."""

    def __init__(self, sections: SectionTable | None = None,
                 symbols: SymbolTable | None = None,
                 diagnostics: Diagnostics | None = None,
                 verbose: bool = False) -> None:
        self.sections = sections if sections is not None else SectionTable()
        self.symbols = symbols if symbols is not None else SymbolTable()
        self.diagnostics = diagnostics if diagnostics is not None else Diagnostics()
        self.verbose = verbose
        self.assertions: list[Assertion] = []
        self.file_nodes: list[list[FileStackNode]] = []
        self.nb_sections = 0

    def _verbose(self, message: str) -> None:
        if self.verbose:
            self.diagnostics.stream.write(message + "\n")

    def read_file(self, path: str) -> None:
        """Read one object file by path; "-" means standard input."""
        if path == "-":
            self.read(sys.stdin.buffer, path)
            return
        try:
            with open(path, "rb") as stream:
                self.read(stream, path)
        except OSError as exc:
            raise LinkError(f"Could not open file {path}: {exc.strerror}") from exc

    def read(self, stream: BinaryIO, file_name: str) -> None:
        """Read one object file from an open binary stream."""
        cursor = _Cursor(stream.read())
        if not cursor.data:
            self.diagnostics.fatal(None, 0, f'File "{file_name}" is empty!')
        if cursor.data[:1] != b"R":
            raise LinkError(f'"{file_name}" is not a RGBDS object file')
        if cursor.data[:len(OBJECT_MAGIC)] != OBJECT_MAGIC:
            raise LinkError(f'"{file_name}" is not a RGBDS object file')
        cursor.pos = len(OBJECT_MAGIC)

        self._verbose(f"Reading object file {file_name}")
        rev = cursor.long(f"{file_name}: Cannot read revision number")
        if rev != OBJECT_REV:
            raise LinkError(
                f"{file_name} is a revision 0x{rev:04x} object file; "
                f"only 0x{OBJECT_REV:04x} is supported"
            )

        nb_symbols = cursor.long(f"{file_name}: Cannot read number of symbols")
        nb_sections = cursor.long(f"{file_name}: Cannot read number of sections")
        self.nb_sections += nb_sections

        nb_nodes = cursor.long(f"{file_name}: Cannot read number of nodes")
        self._verbose(f"Reading {nb_nodes} nodes...")
        nodes = self._read_nodes(cursor, nb_nodes, file_name)
        self.file_nodes.append(nodes)

        self._verbose(f"Reading {nb_symbols} symbols...")
        file_symbols = [self._read_symbol(cursor, file_name, nodes) for _ in range(nb_symbols)]
        for symbol in file_symbols:
            if symbol.type == SymbolType.EXPORT:
                self.symbols.add(symbol)

        self._verbose(f"Reading {nb_sections} sections...")
        file_sections: list[Section] = []
        pc_ids: list[list[int]] = []
        for _ in range(nb_sections):
            section, ids = self._read_section(cursor, file_name, nodes)
            section.file_symbols = file_symbols
            file_sections.append(section)
            pc_ids.append(ids)
            self.sections.add(section)

        for section, ids in zip(file_sections, pc_ids):
            for patch, pc_id in zip(section.patches, ids):
                patch.pc_section = self._pc_section(pc_id, file_sections, file_name)

        for symbol in file_symbols:
            self._link_symbol(symbol, file_sections, file_name)

        nb_asserts = cursor.long(f"{file_name}: Cannot read number of assertions")
        self._verbose(f"Reading {nb_asserts} assertions...")
        for i in range(nb_asserts):
            patch, pc_id = self._read_patch(cursor, file_name, f"Assertion #{i}", 0, nodes,
                                            assertion=True)
            message = cursor.string(f"{file_name}: Cannot read assertion's message")
            patch.pc_section = self._pc_section(pc_id, file_sections, file_name)
            # Assertions are checked most recent first
            self.assertions.insert(
                0, Assertion(patch=patch, message=message, file_symbols=file_symbols)
            )

    def _read_nodes(self, cursor: _Cursor, count: int,
                    file_name: str) -> list[FileStackNode]:
        nodes = [FileStackNode(NodeType.FILE) for _ in range(count)]
        for i in reversed(range(count)):
            node = nodes[i]
            prefix = f"{file_name}: Cannot read node #{i}'s"
            parent_id = cursor.long(f"{prefix} parent ID")
            if parent_id == _NO_ID:
                node.parent = None
            elif parent_id < count:
                node.parent = nodes[parent_id]
            else:
                raise LinkError(f"{file_name}: node #{i}'s parent ID {parent_id} is out of range")
            node.line_no = cursor.long(f"{prefix} line number")
            raw_type = cursor.byte(f"{prefix} type")
            try:
                node.type = NodeType(raw_type)
            except ValueError:
                raise LinkError(f"{file_name}: node #{i} has an invalid type {raw_type}") from None
            if node.type == NodeType.REPT:
                depth = cursor.long(f"{prefix} rept depth")
                node.iters = [cursor.long(f"{prefix} iter #{k}") for k in range(depth)]
                if node.parent is None:
                    self.diagnostics.fatal(
                        None, 0,
                        f"{file_name} is not a valid object file: "
                        f"root node (#{i}) may not be REPT",
                    )
            else:
                node.name = cursor.string(f"{prefix} file name")
        return nodes

    @staticmethod
    def _node(nodes: list[FileStackNode], node_id: int, file_name: str) -> FileStackNode:
        if node_id >= len(nodes):
            raise LinkError(f"{file_name}: node ID {node_id} is out of range")
        return nodes[node_id]

    def _read_symbol(self, cursor: _Cursor, file_name: str,
                     nodes: list[FileStackNode]) -> Symbol:
        name = cursor.string(f"{file_name}: Cannot read symbol name")
        raw_type = cursor.byte(f'{file_name}: Cannot read "{name}"\'s type')
        try:
            symbol_type = SymbolType(raw_type)
        except ValueError:
            raise LinkError(f'{file_name}: "{name}" has an invalid type {raw_type}') from None
        symbol = Symbol(name=name, type=symbol_type)
        if symbol_type == SymbolType.IMPORT:
            symbol.section_id = -1
            return symbol
        symbol.obj_file_name = file_name
        node_id = cursor.long(f'{file_name}: Cannot read "{name}"\'s node ID')
        symbol.src = self._node(nodes, node_id, file_name)
        symbol.line_no = cursor.long(f'{file_name}: Cannot read "{name}"\'s line number')
        symbol.section_id = cursor.signed_long(f'{file_name}: Cannot read "{name}"\'s section ID')
        symbol.offset = cursor.signed_long(f'{file_name}: Cannot read "{name}"\'s value')
        return symbol

    def _read_patch(self, cursor: _Cursor, file_name: str, sect_name: str, i: int,
                    nodes: list[FileStackNode], assertion: bool = False) -> tuple[Patch, int]:
        prefix = f'{file_name}: Unable to read "{sect_name}"\'s patch #{i}\'s'
        node_id = cursor.long(f"{prefix} node ID")
        src = self._node(nodes, node_id, file_name)
        line_no = cursor.long(f"{prefix} line number")
        offset = cursor.long(f"{prefix} offset")
        pc_section_id = cursor.long(f"{prefix} PC offset")
        pc_offset = cursor.long(f"{prefix} PC offset")
        raw_type = cursor.byte(f"{prefix} type")
        try:
            patch_type = AssertionType(raw_type) if assertion else PatchType(raw_type)
        except ValueError:
            raise LinkError(f"{prefix[:-2]} type {raw_type} is invalid") from None
        rpn_size = cursor.long(f"{prefix} RPN size")
        rpn = cursor.bytes(
            rpn_size, f'{file_name}: Cannot read "{sect_name}"\'s patch #{i}\'s RPN expression'
        )
        patch = Patch(src=src, line_no=line_no, offset=offset, pc_offset=pc_offset,
                      type=patch_type, rpn_expression=rpn)
        return patch, pc_section_id

    def _read_section(self, cursor: _Cursor, file_name: str,
                      nodes: list[FileStackNode]) -> tuple[Section, list[int]]:
        name = cursor.string(f"{file_name}: Cannot read section name")
        prefix = f'{file_name}: Cannot read "{name}"\'s'
        size = cursor.signed_long(f"{prefix}' size")
        if size < 0 or size > _UINT16_MAX:
            raise LinkError(f'"{name}"\'s section size ({size}) is invalid')

        raw_type = cursor.byte(f"{prefix} type")
        try:
            section_type = SectionType(raw_type & 0x3F)
        except ValueError:
            self.diagnostics.fatal(None, 0, f'Section "{name}" has an invalid type')
        if raw_type >> 7:
            modifier = SectionModifier.UNION
        elif raw_type >> 6:
            modifier = SectionModifier.FRAGMENT
        else:
            modifier = SectionModifier.NORMAL

        org = cursor.signed_long(f"{prefix} org")
        is_address_fixed = org >= 0
        if org > _UINT16_MAX:
            self.diagnostics.error(None, 0, f'"{name}"\'s org is too large ({org})')
            org = _UINT16_MAX
        bank = cursor.signed_long(f"{prefix} bank")
        is_bank_fixed = bank >= 0

        align = min(cursor.byte(f"{prefix} alignment"), 16)
        align_ofs = cursor.signed_long(f"{prefix} alignment offset")
        if align_ofs > _UINT16_MAX:
            self.diagnostics.error(
                None, 0, f'"{name}"\'s alignment offset is too large ({align_ofs})'
            )
            align_ofs = _UINT16_MAX

        data: bytearray | None = None
        patches: list[Patch] = []
        pc_ids: list[int] = []
        if has_data(section_type):
            data = bytearray(cursor.bytes(size, f"{prefix} data"))
            nb_patches = cursor.long(f"{prefix} number of patches")
            for i in range(nb_patches):
                patch, pc_id = self._read_patch(cursor, file_name, name, i, nodes)
                patches.append(patch)
                pc_ids.append(pc_id)

        section = Section(
            name=name,
            type=section_type,
            modifier=modifier,
            size=size,
            org=org & _UINT16_MAX,
            bank=bank & 0xFFFFFFFF,
            is_address_fixed=is_address_fixed,
            is_bank_fixed=is_bank_fixed,
            is_align_fixed=align != 0,
            align_mask=(1 << align) - 1,
            align_ofs=align_ofs & _UINT16_MAX,
            offset=0,
            data=data,
            patches=patches,
            symbols=[],
        )
        return section, pc_ids

    @staticmethod
    def _pc_section(pc_id: int, file_sections: list[Section],
                    file_name: str) -> Section | None:
        if pc_id == _NO_ID:
            return None
        if pc_id >= len(file_sections):
            raise LinkError(f"{file_name}: PC section ID {pc_id} is out of range")
        return file_sections[pc_id]

    def _link_symbol(self, symbol: Symbol, file_sections: list[Section],
                     file_name: str) -> None:
        if symbol.section_id == -1:
            symbol.section = None
            return
        if not 0 <= symbol.section_id < len(file_sections):
            raise LinkError(
                f'{file_name}: "{symbol.name}"\'s section ID {symbol.section_id} is out of range'
            )
        section = file_sections[symbol.section_id]
        # Keep the section's symbols sorted by offset, later ones after equals
        bisect.insort_right(section.symbols, symbol, key=lambda s: s.offset)
        if section.modifier != SectionModifier.NORMAL:
            if section.modifier == SectionModifier.FRAGMENT:
                symbol.offset += section.offset
            section = self.sections.get(section.name)
        symbol.section = section