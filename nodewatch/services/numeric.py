from typing import Any


def is_hex(value: Any) -> bool:
    return isinstance(value, str) and value.startswith("0x")


def to_number_string(value: Any) -> Any:
    """Return hex quantities as canonical decimal strings; pass anything else through."""
    if is_hex(value):
        return str(int(value, 16))
    return value


def to_int(value: Any) -> int:
    """Narrow a wire quantity to an int.

    Used for block numbers, timestamps and peer counts. Python ints are
    unbounded so nothing is lost, but callers should still only use this
    where the value is known to be a quantity.
    """
    return int(to_number_string(value))


def to_hex(value: int) -> str:
    if value < 0:
        raise ValueError(f"Quantities are non-negative: {value}")
    return hex(value)
