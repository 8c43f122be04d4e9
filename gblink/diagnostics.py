"""Diagnostic reporting with file-stack locations."""

from __future__ import annotations

import sys
from dataclasses import dataclass, field
from enum import IntEnum
from typing import NoReturn, TextIO

_UINT32_MAX = 0xFFFFFFFF


class NodeType(IntEnum):
    REPT = 0
    FILE = 1
    MACRO = 2


@dataclass(eq=False)
class FileStackNode:
    """One level of the assembler's include/macro/REPT stack."""

    type: NodeType
    name: str = ""
    line_no: int = 0
    parent: FileStackNode | None = None
    iters: list[int] = field(default_factory=list)

    def dump(self) -> str:
        """Render the whole stack leading to this node."""
        return self._dump()[0]

    def _dump(self) -> tuple[str, str]:
        if self.parent is None:
            if self.type == NodeType.REPT:
                raise ValueError("a REPT node cannot be the root of a file stack")
            return self.name, self.name
        text, last_name = self.parent._dump()
        if self.type != NodeType.REPT:
            last_name = self.name
        text += f"({self.line_no}) -> {last_name}"
        if self.type == NodeType.REPT:
            text += "".join(f"::REPT~{i}" for i in self.iters)
        return text, last_name


class LinkError(Exception):
    """Linking cannot continue."""


def format_location(where: FileStackNode | None, line_no: int) -> str:
    """The location prefix put before a message, empty without a node."""
    if where is None:
        return ""
    return f"{where.dump()}({line_no}): "


def _count_errors(count: int) -> str:
    """Render an error count with the noun agreeing in number."""
    noun = "error" if count == 1 else "errors"
    return f"{count} {noun}"


class Diagnostics:
    """Writes warnings and errors, and counts the errors."""

    def __init__(self, stream: TextIO | None = None) -> None:
        self._stream = stream
        self.error_count = 0

    @property
    def stream(self) -> TextIO:
        return self._stream if self._stream is not None else sys.stderr

    def _count_error(self) -> None:
        if self.error_count != _UINT32_MAX:
            self.error_count += 1

    def _report(self, prefix: str, where: FileStackNode | None, line_no: int,
                message: str) -> str:
        text = f"{format_location(where, line_no)}{message}"
        self.stream.write(f"{prefix}: {text}\n")
        return text

    def warning(self, where: FileStackNode | None, line_no: int, message: str) -> None:
        self._report("warning", where, line_no, message)

    def error(self, where: FileStackNode | None, line_no: int, message: str) -> None:
        self._report("error", where, line_no, message)
        self._count_error()

    def arg_error(self, flag: str, message: str) -> None:
        self.stream.write(f"error: Invalid argument for option '{flag}': {message}\n")
        self._count_error()

    def fatal(self, where: FileStackNode | None, line_no: int, message: str) -> NoReturn:
        text = self._report("FATAL", where, line_no, message)
        self._count_error()
        self.stream.write(f"Linking aborted after {_count_errors(self.error_count)}\n")
        raise LinkError(text)

    def raise_if_errors(self) -> None:
        """Stop linking if any error has been reported."""
        if self.error_count:
            message = f"Linking failed with {_count_errors(self.error_count)}"
            self.stream.write(message + "\n")
            raise LinkError(message)