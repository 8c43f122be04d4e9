"""Signed 32-bit arithmetic with the linker's own rounding and shift rules."""

_MASK32 = 0xFFFFFFFF


def to_int32(value: int) -> int:
    """Wrap an integer to a signed 32-bit value."""
    value &= _MASK32
    return value - (1 << 32) if value & 0x80000000 else value


def _truncating_divmod(dividend: int, divisor: int) -> tuple[int, int]:
    quotient = abs(dividend) // abs(divisor)
    if (dividend < 0) != (divisor < 0):
        quotient = -quotient
    return quotient, dividend - divisor * quotient


def op_divide(dividend: int, divisor: int) -> int:
    """Divide, adjusting the truncated quotient toward negative infinity."""
    quotient, remainder = _truncating_divmod(to_int32(dividend), to_int32(divisor))
    return to_int32(quotient - ((remainder < 0) != (divisor < 0)))


def op_modulo(dividend: int, divisor: int) -> int:
    """Remainder that takes the sign of the divisor."""
    divisor = to_int32(divisor)
    _, remainder = _truncating_divmod(to_int32(dividend), divisor)
    return to_int32(remainder + divisor * ((remainder < 0) != (divisor < 0)))


def op_exponent(base: int, power: int) -> int:
    """Raise to an unsigned power with 32-bit wrap-around."""
    return to_int32(pow(to_int32(base), power & _MASK32, 1 << 32))


def op_shift_left(value: int, amount: int) -> int:
    value = to_int32(value)
    if amount == 0:
        return value
    if value == 0 or amount >= 32:
        return 0
    if amount < -31:
        return -1 if value < 0 else 0
    if amount < 0:
        return op_shift_right(value, -amount)
    return to_int32(value << amount)


def op_shift_right(value: int, amount: int) -> int:
    """Arithmetic right shift; negative amounts shift left."""
    value = to_int32(value)
    if amount == 0:
        return value
    if value == 0 or amount <= -32:
        return 0
    if amount > 31:
        return -1 if value < 0 else 0
    if amount < 0:
        return op_shift_left(value, -amount)
    return value >> amount


def op_shift_right_unsigned(value: int, amount: int) -> int:
    """Logical right shift; negative amounts shift left."""
    value = to_int32(value)
    if amount == 0:
        return value
    if value == 0 or amount <= -32:
        return 0
    if amount > 31:
        return -1 if value < 0 else 0
    if amount < 0:
        return op_shift_left(value, -amount)
    return (value & _MASK32) >> amount