"""Exported symbols and the global symbol table."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterator

from gblink.diagnostics import FileStackNode, LinkError
from gblink.linkdefs import SymbolType

if TYPE_CHECKING:
    from gblink.section import Section


@dataclass(eq=False)
class Symbol:
    """A symbol read from an object file.

    ``offset`` is relative to ``section`` when there is one, otherwise it is
    the symbol's constant value; ``value`` names the same number.
    """

    name: str
    type: SymbolType = SymbolType.LOCAL
    obj_file_name: str = ""
    src: FileStackNode | None = None
    line_no: int = 0
    section_id: int = -1
    offset: int = 0
    section: Section | None = None

    @property
    def value(self) -> int:
        return self.offset

    @value.setter
    def value(self, value: int) -> None:
        self.offset = value


def _origin(symbol: Symbol) -> str:
    stack = symbol.src.dump() if symbol.src is not None else ""
    return f"{symbol.obj_file_name} from {stack}({symbol.line_no})"


class SymbolTable:
    """Exported symbols by name; each name may be defined only once."""

    def __init__(self) -> None:
        self._symbols: dict[str, Symbol] = {}

    def add(self, symbol: Symbol) -> None:
        other = self._symbols.get(symbol.name)
        if other is not None:
            raise LinkError(
                f'"{symbol.name}" both in {_origin(symbol)} and in {_origin(other)}'
            )
        self._symbols[symbol.name] = symbol

    def get(self, name: str) -> Symbol | None:
        return self._symbols.get(name)

    def __iter__(self) -> Iterator[Symbol]:
        return iter(list(self._symbols.values()))

    def __len__(self) -> int:
        return len(self._symbols)