"""
Conversion between fixed-width big-endian chunks and Python integers,
plus modular exponentiation and private exponent generation.

Python's int is the arbitrary-precision backend; pow(b, e, m) is its
fastest modular exponentiation.
"""

from __future__ import annotations

from typing import Union

from ikedh.common.utils import RandomnessUnavailable


class ChunkOverflow(ValueError):
    pass


def bytes_to_integer(chunk: Union[bytes, bytearray, memoryview]) -> int:
    """Big-endian unsigned; leading zero bytes do not change the value."""
    return int.from_bytes(bytes(chunk), "big")


def integer_to_bytes(value: int, width: int) -> bytes:
    """Exactly `width` bytes, big-endian, left-padded with zeros."""
    if value < 0:
        raise ChunkOverflow("Negative values have no chunk encoding")
    try:
        return value.to_bytes(width, "big")
    except OverflowError as e:
        raise ChunkOverflow(
            f"Value needs {(value.bit_length() + 7) // 8} bytes, chunk width is {width}"
        ) from e


def mod_pow(base: int, exponent: int, modulus: int) -> int:
    if modulus <= 0:
        raise ValueError("modulus must be positive")
    if base < 0 or exponent < 0:
        raise ValueError("base and exponent must be non-negative")
    return pow(base, exponent, modulus)


def generate_exponent(width: int, random_source) -> int:
    """
    Draw a private exponent of exactly `width` bytes from `random_source`.
    The top bit is forced on so the exponent is never shorter than the modulus.
    """
    if width <= 0:
        raise ValueError("width must be positive")
    raw = bytearray(random_source.get_bytes(width))
    if len(raw) != width:
        raise RandomnessUnavailable(f"Random source returned {len(raw)} of {width} bytes")
    raw[0] |= 0x80
    try:
        return int.from_bytes(raw, "big")
    finally:
        for i in range(width):
            raw[i] = 0
