"""Evaluating RPN expressions, filling in patches and checking assertions."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable

from gblink.diagnostics import Diagnostics
from gblink.linkdefs import AssertionType, PatchType, RPNCommand, SymbolType, has_data
from gblink.opmath import (
    op_divide,
    op_exponent,
    op_modulo,
    op_shift_left,
    op_shift_right,
    op_shift_right_unsigned,
    to_int32,
)
from gblink.section import Patch, Section, SectionTable
from gblink.symbol import Symbol, SymbolTable

_INT32_MIN = -0x80000000
_INT32_MAX = 0x7FFFFFFF
_PC_SYMBOL_ID = -1

# Operators whose operands carry no error checks: (lhs, rhs) -> result
_BINARY_OPS = {
    RPNCommand.ADD: lambda a, b: a + b,
    RPNCommand.SUB: lambda a, b: a - b,
    RPNCommand.MUL: lambda a, b: a * b,
    RPNCommand.OR: lambda a, b: a | b,
    RPNCommand.AND: lambda a, b: a & b,
    RPNCommand.XOR: lambda a, b: a ^ b,
    RPNCommand.LOGAND: lambda a, b: int(bool(a) and bool(b)),
    RPNCommand.LOGOR: lambda a, b: int(bool(a) or bool(b)),
    RPNCommand.LOGEQ: lambda a, b: int(a == b),
    RPNCommand.LOGNE: lambda a, b: int(a != b),
    RPNCommand.LOGGT: lambda a, b: int(a > b),
    RPNCommand.LOGLT: lambda a, b: int(a < b),
    RPNCommand.LOGGE: lambda a, b: int(a >= b),
    RPNCommand.LOGLE: lambda a, b: int(a <= b),
    RPNCommand.SHL: op_shift_left,
    RPNCommand.SHR: op_shift_right,
    RPNCommand.USHR: op_shift_right_unsigned,
}

_UNARY_OPS = {
    RPNCommand.UNSUB: lambda a: -a,
    RPNCommand.UNNOT: lambda a: ~a,
    RPNCommand.LOGUNNOT: lambda a: int(not a),
}

# Patch type -> (byte count, minimum, maximum)
_PATCH_SIZES = {
    PatchType.BYTE: (1, -128, 255),
    PatchType.WORD: (2, -32768, 65536),
    PatchType.LONG: (4, _INT32_MIN, _INT32_MAX),
}


def _to_int16(value: int) -> int:
    return ((value + 0x8000) & 0xFFFF) - 0x8000


@dataclass(eq=False)
class Assertion:
    """A condition checked once every section has been placed."""

    patch: Patch
    message: str = ""
    file_symbols: list[Any] = field(default_factory=list)


class _Evaluation:
    """State of one expression being computed."""

    def __init__(self, evaluator: RPNEvaluator, patch: Patch,
                 file_symbols: list[Symbol]) -> None:
        self.evaluator = evaluator
        self.patch = patch
        self.file_symbols = file_symbols
        self.expression = bytes(patch.rpn_expression)
        self.pos = 0
        self.stack: list[tuple[int, bool]] = []
        self.is_error = False

    @property
    def diagnostics(self) -> Diagnostics:
        return self.evaluator.diagnostics

    def error(self, message: str) -> None:
        self.diagnostics.error(self.patch.src, self.patch.line_no, message)

    def fatal(self, message: str):
        self.diagnostics.fatal(self.patch.src, self.patch.line_no, message)

    def byte(self) -> int:
        if self.pos >= len(self.expression):
            self.fatal("Internal error, RPN expression overread")
        value = self.expression[self.pos]
        self.pos += 1
        return value

    def long(self) -> int:
        value = 0
        for shift in range(0, 32, 8):
            value |= self.byte() << shift
        return to_int32(value)

    def string(self) -> str:
        raw = bytearray()
        while (byte := self.byte()) != 0:
            raw.append(byte)
        return raw.decode("utf-8", "surrogateescape")

    def push(self, value: int, from_error: bool) -> None:
        self.stack.append((to_int32(value), from_error))

    def pop(self) -> int:
        if not self.stack:
            self.fatal("Internal error, RPN stack empty")
        value, flag = self.stack.pop()
        self.is_error |= flag
        return value

    def file_symbol(self, index: int) -> Symbol:
        if not 0 <= index < len(self.file_symbols):
            self.fatal(f"Internal error, symbol ID {index} is out of range")
        return self.file_symbols[index]

    def resolve(self, index: int) -> Symbol | None:
        symbol = self.file_symbol(index)
        if symbol.type == SymbolType.IMPORT:
            return self.evaluator.symbols.get(symbol.name)
        return symbol

    def run(self) -> tuple[int, bool]:
        while self.pos < len(self.expression):
            byte = self.byte()
            try:
                command = RPNCommand(byte)
            except ValueError:
                self.fatal(f"Internal error, unknown RPN command 0x{byte:02x}")
            self.is_error = False
            value = self.step(command)
            self.push(value, self.is_error)

        if len(self.stack) > 1:
            self.error(f"RPN stack has {len(self.stack)} entries on exit, not 1")
        self.is_error = False
        value = self.pop()
        return value, self.is_error

    def _checked_division(self, operation, message: str, fallback: int,
                          reject) -> int:
        rhs = self.pop()
        if reject(rhs):
            if not self.is_error:
                self.error(message)
            self.is_error = True
            self.pop()
            return fallback
        return operation(self.pop(), rhs)

    def _section_value(self, what: str, attribute: str) -> int:
        name = self.string()
        section = self.evaluator.sections.get(name)
        if section is None:
            self.error(f'Requested {what}() of section "{name}", which was not found')
            self.is_error = True
            return 1
        return getattr(section, attribute)

    def step(self, command: RPNCommand) -> int:
        if command in _BINARY_OPS:
            rhs = self.pop()
            lhs = self.pop()
            return to_int32(_BINARY_OPS[command](lhs, rhs))
        if command in _UNARY_OPS:
            return to_int32(_UNARY_OPS[command](self.pop()))

        if command == RPNCommand.DIV:
            return self._checked_division(op_divide, "Division by 0", _INT32_MAX,
                                          lambda v: v == 0)
        if command == RPNCommand.MOD:
            return self._checked_division(op_modulo, "Modulo by 0", 0, lambda v: v == 0)
        if command == RPNCommand.EXP:
            return self._checked_division(op_exponent, "Exponent by negative", 0,
                                          lambda v: v < 0)

        if command == RPNCommand.BANK_SYM:
            index = self.long()
            symbol = self.resolve(index)
            name = self.file_symbol(index).name
            if symbol is None:
                self.error(f'Requested BANK() of symbol "{name}", which was not found')
                self.is_error = True
                return 1
            if symbol.section is None:
                self.error(f'Requested BANK() of non-label symbol "{name}"')
                self.is_error = True
                return 1
            return symbol.section.bank
        if command == RPNCommand.BANK_SECT:
            return self._section_value("BANK", "bank")
        if command == RPNCommand.BANK_SELF:
            if self.patch.pc_section is None:
                self.error("PC has no bank outside a section")
                self.is_error = True
                return 1
            return self.patch.pc_section.bank
        if command == RPNCommand.SIZEOF_SECT:
            return self._section_value("SIZEOF", "size")
        if command == RPNCommand.STARTOF_SECT:
            return self._section_value("STARTOF", "org")

        if command == RPNCommand.HRAM:
            value = self.pop()
            if not self.is_error and (value < 0 or 0xFF < value < 0xFF00 or value > 0xFFFF):
                self.error(f"Value {value} is not in HRAM range")
                self.is_error = True
            return value & 0xFF
        if command == RPNCommand.RST:
            value = self.pop()
            # Only 0x00, 0x08, ..., 0x38 are valid vectors
            if value & ~0x38:
                if not self.is_error:
                    self.error(f"Value {value} is not a RST vector")
                self.is_error = True
            return value | 0xC7

        if command == RPNCommand.CONST:
            return self.long()

        # RPNCommand.SYM
        value = self.long()
        if value == _PC_SYMBOL_ID:
            if self.patch.pc_section is None:
                self.error("PC has no value outside a section")
                self.is_error = True
                return 0
            return self.patch.pc_offset + self.patch.pc_section.org
        symbol = self.resolve(value)
        if symbol is None:
            self.error(f'Unknown symbol "{self.file_symbol(value).name}"')
            self.is_error = True
            return value
        result = symbol.value
        if symbol.section is not None:
            result += symbol.section.org
        return result


class RPNEvaluator:
    """Computes the value of patch expressions against the linked program."""

    def __init__(self, sections: SectionTable, symbols: SymbolTable,
                 diagnostics: Diagnostics) -> None:
        self.sections = sections
        self.symbols = symbols
        self.diagnostics = diagnostics

    def evaluate(self, patch: Patch, file_symbols: list[Symbol]) -> tuple[int, bool]:
        """Return the expression's value and whether it stems from an error.

        When the flag is set, an error has already been reported and further
        complaints about the value should be suppressed.
        """
        return _Evaluation(self, patch, file_symbols).run()


def _apply_file_patches(evaluator: RPNEvaluator, section: Section,
                        data_section: Section) -> None:
    diagnostics = evaluator.diagnostics
    data = data_section.data
    if data is None:
        data = bytearray(data_section.size)
        data_section.data = data
    for patch in section.patches:
        value, is_error = evaluator.evaluate(patch, section.file_symbols)
        offset = (patch.offset + section.offset) & 0xFFFF

        if patch.type == PatchType.JR:
            # Relative to the byte after the operand
            address = (patch.pc_section.org + patch.pc_offset + 2) & 0xFFFF
            jump = _to_int16(value - address)
            if not is_error and not -128 <= jump <= 127:
                diagnostics.error(
                    patch.src, patch.line_no,
                    f"jr target out of reach (expected -129 < {jump} < 128)",
                )
            data[offset] = jump & 0xFF
            continue

        size, minimum, maximum = _PATCH_SIZES[PatchType(patch.type)]
        if not is_error and not minimum <= value <= maximum:
            shown = value & 0xFFFFFFFF
            hex_text = "0" if shown == 0 else f"{shown:#x}"
            hint = " (maybe negative?)" if value < 0 else ""
            diagnostics.error(patch.src, patch.line_no,
                              f"Value {hex_text}{hint} is not {size * 8}-bit")
        for i in range(size):
            data[offset + i] = value & 0xFF
            value >>= 8


def apply_patches(sections: SectionTable, symbols: SymbolTable,
                  diagnostics: Diagnostics) -> None:
    """Fill every patch of every ROM section with its computed value."""
    evaluator = RPNEvaluator(sections, symbols, diagnostics)
    for section in sections:
        if not has_data(section.type):
            continue
        for piece in section.pieces():
            _apply_file_patches(evaluator, piece, section)


def check_assertions(assertions: Iterable[Assertion], sections: SectionTable,
                     symbols: SymbolTable, diagnostics: Diagnostics) -> None:
    """Evaluate every assertion, reporting those that fail."""
    evaluator = RPNEvaluator(sections, symbols, diagnostics)
    for assertion in assertions:
        patch = assertion.patch
        value, is_error = evaluator.evaluate(patch, assertion.file_symbols)
        kind = AssertionType(int(patch.type))
        message = assertion.message or "assert failure"

        if not is_error and not value:
            if kind == AssertionType.FATAL:
                diagnostics.fatal(patch.src, patch.line_no, message)
            elif kind == AssertionType.ERROR:
                diagnostics.error(patch.src, patch.line_no, message)
            else:
                diagnostics.warning(patch.src, patch.line_no, message)
        elif is_error and kind == AssertionType.FATAL:
            suffix = f": {assertion.message}" if assertion.message else ""
            diagnostics.fatal(patch.src, patch.line_no,
                              f"couldn't evaluate assertion{suffix}")