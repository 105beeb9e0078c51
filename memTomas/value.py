import ctypes
import math
import struct
from dataclasses import dataclass
from enum import Enum
from typing import Union

Number = Union[int, float]


class ValueKind(Enum):
    INT = "int"
    FLOAT = "float"


def fround(x: float) -> float:
    """Rounds a Python float to the nearest float32. Overflow gives +/-inf."""
    return ctypes.c_float(x).value


def wrap_signed(value: int, bits: int = 64) -> int:
    """Interprets the low `bits` bits of value as a two's complement integer."""
    mask = (1 << bits) - 1
    value &= mask
    if value & (1 << (bits - 1)):
        value -= 1 << bits
    return value


@dataclass(frozen=True)
class Value:
    """
    A register or operand value that remembers what it is.

    kind says whether the number is an integer or a floating-point value and
    width gives its precision in bits (32 for single precision / word loads,
    64 otherwise). Presentation code decides how to render it; the engine only
    needs the kind and width to encode it back into memory bytes.
    """
    kind: ValueKind
    number: Number
    width: int = 64

    @classmethod
    def integer(cls, number: Number, width: int = 64) -> "Value":
        return cls(ValueKind.INT, wrap_signed(int(number), 64), width)

    @classmethod
    def floating(cls, number: Number, width: int = 64) -> "Value":
        number = float(number)
        if width == 32:
            number = fround(number)
        return cls(ValueKind.FLOAT, number, width)

    @property
    def is_float(self) -> bool:
        return self.kind is ValueKind.FLOAT

    def as_int(self) -> int:
        if self.is_float:
            return int(self.number) if math.isfinite(self.number) else 0
        return self.number

    def as_float(self) -> float:
        return float(self.number)

    def encode(self, num_bytes: int) -> bytes:
        """Raw little-endian bit pattern of this value, num_bytes wide (4 or 8)."""
        if self.is_float:
            if num_bytes == 8:
                return struct.pack("<d", self.number)
            return struct.pack("<f", fround(self.number))
        # Ints are masked to the width, so negative values keep their two's complement pattern
        return (self.number & ((1 << (num_bytes * 8)) - 1)).to_bytes(num_bytes, "little")

    @classmethod
    def decode(cls, raw: bytes, kind: ValueKind) -> "Value":
        """Inverse of encode(); 4-byte integers are sign-extended."""
        num_bytes = len(raw)
        if num_bytes not in (4, 8):
            raise ValueError(f"Cannot decode a {num_bytes}-byte value.")

        # Assemble from two 32-bit little-endian words
        lower = int.from_bytes(raw[:4], "little")
        upper = int.from_bytes(raw[4:8], "little") if num_bytes == 8 else 0
        bits = lower | (upper << 32)

        if kind is ValueKind.FLOAT:
            if num_bytes == 8:
                return cls.floating(struct.unpack("<d", bits.to_bytes(8, "little"))[0], 64)
            return cls.floating(struct.unpack("<f", bits.to_bytes(4, "little"))[0], 32)
        return cls.integer(wrap_signed(bits, num_bytes * 8), num_bytes * 8)

    def __str__(self) -> str:
        if self.is_float:
            return f"{self.number:g}"
        return str(self.number)


ZERO = Value.integer(0)
