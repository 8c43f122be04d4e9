"""Reading linker scripts that pin sections to banks and addresses."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, TextIO

from gblink.diagnostics import Diagnostics, LinkError
from gblink.linkdefs import MemoryMap, SectionType
from gblink.section import Section, SectionTable

_DIGITS = "0123456789ABCDEF"
_COMMANDS = ("ORG", "ALIGN")
_ESCAPES = {"n": "\n", "r": "\r", "t": "\t", "\\": "\\", '"': '"'}
_WORD_ENDS = " \t\r\n;"


class TokenType(Enum):
    """Kinds of linker script tokens, valued by how messages name them."""

    NEWLINE = "newline"
    COMMAND = "command"
    BANK = "bank command"
    INCLUDE = "include"
    NUMBER = "number"
    STRING = "string"
    EOF = "end of file"


@dataclass(frozen=True)
class Token:
    """One lexed token and its payload (command, region, number or text)."""

    type: TokenType
    value: object = None


@dataclass
class SectionPlacement:
    """Where the script puts one section."""

    section: Section
    org: int
    bank: int
    type: SectionType


class _State(Enum):
    LINE_START = "line start"
    INCLUDE = "include"
    LINE_END = "line end"


@dataclass
class _Source:
    stream: TextIO
    name: str
    line_no: int = 1
    pushback: str | None = None
    owned: bool = False


def _ascii_upper(char: str) -> str:
    return char.upper() if char.isascii() else char


def parse_number(text: str) -> int | None:
    """Parse a decimal number, or a hexadecimal one after '$'; None if invalid."""
    base = 10
    if text.startswith("$"):
        text = text[1:]
        base = 16
    if not text:
        return None
    value = 0
    for char in text:
        digit = _DIGITS.find(_ascii_upper(char))
        if digit < 0 or digit >= base:
            return None
        value = (value * base + digit) & 0xFFFFFFFF
    return value


class LinkerScript:
    """Iterates over the section placements a linker script describes."""

    def __init__(self, stream: TextIO, name: str, sections: SectionTable,
                 memory_map: MemoryMap) -> None:
        self.sections = sections
        self.memory_map = memory_map
        self._source = _Source(stream, name)
        self._stack: list[_Source] = []

    # Error reporting and file stack

    def _fail(self, message: str):
        raise LinkError(f"{self._source.name}({self._source.line_no}): {message}")

    def _push_file(self, file_name: str) -> None:
        try:
            stream = open(file_name, encoding="utf-8", errors="surrogateescape", newline="")
        except OSError as exc:
            self._fail(f'Could not open "{file_name}": {exc.strerror}')
        self._stack.append(self._source)
        self._source = _Source(stream, file_name, owned=True)

    def _pop_file(self) -> bool:
        if not self._stack:
            return False
        if self._source.owned:
            self._source.stream.close()
        self._source = self._stack.pop()
        return True

    def _close_all(self) -> None:
        while self._stack:
            self._pop_file()

    # Lexing

    def _next_char(self) -> str:
        source = self._source
        if source.pushback is not None:
            char, source.pushback = source.pushback, None
            return char
        try:
            return source.stream.read(1)
        except (OSError, ValueError) as exc:
            self._fail(f"Unexpected error in nextChar: {exc}")

    def _unread(self, char: str) -> None:
        if char:
            self._source.pushback = char

    def _read_string(self) -> str:
        chars = []
        while True:
            char = self._next_char()
            if char == "" or char in "\r\n":
                self._fail("Unterminated string")
            if char == '"':
                return "".join(chars)
            if char == "\\":
                char = self._next_char()
                if char == "" or char in "\r\n":
                    self._fail("Unterminated string")
                escaped = _ESCAPES.get(char)
                if escaped is None:
                    self._fail("Illegal character escape")
                char = escaped
            chars.append(char)

    def _read_word(self, first: str) -> Token:
        chars = [first]
        while True:
            char = self._next_char()
            if char == "":
                break
            if char in _WORD_ENDS:
                self._unread(char)
                break
            chars.append(char)
        word = "".join(_ascii_upper(char) for char in chars)

        if word in _COMMANDS:
            return Token(TokenType.COMMAND, word)
        for section_type in SectionType:
            if self.memory_map.info(section_type).name == word:
                return Token(TokenType.BANK, section_type)
        if word == "INCLUDE":
            return Token(TokenType.INCLUDE)
        number = parse_number(word)
        if number is None:
            self._fail(f'Unknown token "{word}"')
        return Token(TokenType.NUMBER, number)

    def _next_token(self) -> Token:
        char = self._next_char()
        while char in (" ", "\t"):
            char = self._next_char()
        if char == ";":
            while char not in ("", "\r", "\n"):
                char = self._next_char()
        if char == "":
            return Token(TokenType.EOF)
        if char in "\r\n":
            if char == "\r":
                following = self._next_char()
                if following != "\n":
                    self._unread(following)
            return Token(TokenType.NEWLINE)
        if char == '"':
            return Token(TokenType.STRING, self._read_string())
        return self._read_word(char)

    # Parsing

    def _check_pc(self, section_type: SectionType, pc: int) -> None:
        info = self.memory_map.info(section_type)
        end = self.memory_map.end_address(section_type)
        if pc > end + 1:
            self._fail(f"Sections would extend past the end of {info.name} "
                       f"(${pc:04x} > ${end:04x})")
        if pc < info.start_addr:
            self._fail(f"PC underflowed (${pc:04x} < ${info.start_addr:04x})")

    def _process_command(self, command: str, arg: int, pc: int) -> int:
        arg &= 0xFFFF
        if command == "ALIGN":
            if arg >= 16:
                arg = 0
            else:
                mask = (1 << arg) - 1
                arg = (pc + mask) & ~mask & 0xFFFF
        if arg < pc:
            self._fail(f"`{command}` cannot be used to go backwards (currently at ${pc:x})")
        return arg

    def _end_line(self, token: Token) -> _State | None:
        self._source.line_no += 1
        if token.type is TokenType.EOF:
            if not self._pop_file():
                return None
            return _State.LINE_END
        if token.type is not TokenType.NEWLINE:
            self._fail(f"Unexpected {token.type.value} at the end of the line")
        return _State.LINE_START

    def _select_bank(self, section_type: SectionType, has_arg: bool, arg: int) -> int:
        info = self.memory_map.info(section_type)
        if not has_arg:
            if self.memory_map.nb_banks(section_type) != 1:
                self._fail("Didn't specify a bank number")
            return info.first_bank
        if arg < info.first_bank:
            self._fail(f"specified bank number is too low ({arg} < {info.first_bank})")
        if arg > info.last_bank:
            self._fail(f"specified bank number is too high ({arg} > {info.last_bank})")
        return arg

    def __iter__(self) -> Iterator[SectionPlacement]:
        try:
            yield from self._placements()
        finally:
            self._close_all()

    def _placements(self) -> Iterator[SectionPlacement]:
        pcs: dict[tuple[SectionType, int], int] = {}
        current_type: SectionType | None = None
        bank = 0
        bank_id = 0

        def pc_of(section_type: SectionType) -> int:
            return pcs.get((section_type, bank_id),
                           self.memory_map.info(section_type).start_addr)

        state = _State.LINE_START
        while True:
            token = self._next_token()
            if current_type is not None:
                self._check_pc(current_type, pc_of(current_type))

            if state is _State.INCLUDE:
                if token.type is not TokenType.STRING:
                    self._fail("Expected a file name after INCLUDE")
                self._push_file(token.value)
                state = _State.LINE_START
                continue

            if state is _State.LINE_END:
                state = self._end_line(token)
                if state is None:
                    return
                continue

            kind = token.type
            if kind is TokenType.EOF:
                if not self._pop_file():
                    return
                state = _State.LINE_END
            elif kind is TokenType.NUMBER:
                self._fail(f'stray number "{token.value}"')
            elif kind is TokenType.NEWLINE:
                self._source.line_no += 1
            elif kind is TokenType.STRING:
                state = _State.LINE_END
                if current_type is None:
                    self._fail("Didn't specify a location before the section")
                section = self.sections.get(token.value)
                if section is None:
                    self._fail(f'Unknown section "{token.value}"')
                org = pc_of(current_type)
                pcs[(current_type, bank_id)] = (org + section.size) & 0xFFFF
                yield SectionPlacement(section, org, bank, current_type)
            elif kind is TokenType.INCLUDE:
                state = _State.INCLUDE
            else:
                arg_token = self._next_token()
                has_arg = arg_token.type is TokenType.NUMBER
                arg = arg_token.value if has_arg else 0
                if kind is TokenType.COMMAND:
                    if current_type is None:
                        self._fail("Didn't specify a location before the command")
                    if not has_arg:
                        self._fail("Command specified without an argument")
                    pcs[(current_type, bank_id)] = self._process_command(
                        token.value, arg, pc_of(current_type)
                    )
                else:
                    current_type = token.value
                    bank = self._select_bank(current_type, has_arg, arg)
                    bank_id = bank - self.memory_map.info(current_type).first_bank
                if not has_arg:
                    state = self._end_line(arg_token)
                    if state is None:
                        return


def apply_placements(placements: Iterable[SectionPlacement],
                     diagnostics: Diagnostics) -> None:
    """Fix each placed section where the script says, reporting contradictions."""
    for placement in placements:
        section = placement.section
        if section.type is None:
            for piece in section.pieces():
                piece.type = placement.type
        elif section.type != placement.type:
            diagnostics.error(None, 0, f'Linker script contradicts "{section.name}"\'s type')
        if section.is_bank_fixed and placement.bank != section.bank:
            diagnostics.error(
                None, 0, f'Linker script contradicts "{section.name}"\'s bank placement'
            )
        if section.is_address_fixed and placement.org != section.org:
            diagnostics.error(
                None, 0, f'Linker script contradicts "{section.name}"\'s address placement'
            )
        if section.is_align_fixed and placement.org & section.align_mask:
            diagnostics.error(
                None, 0, f'Linker script contradicts "{section.name}"\'s alignment'
            )

        section.is_address_fixed = True
        section.org = placement.org
        section.is_bank_fixed = True
        section.bank = placement.bank
        section.is_align_fixed = False