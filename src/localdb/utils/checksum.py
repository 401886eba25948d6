"""
localdb — checksum utilities

File: src/localdb/utils/checksum.py

Purpose
- Derive stable 32-bit application identifiers from schema scripts.

Functional requirements
- CRC-32C (Castagnoli) so identifiers match databases created by other
  implementations of the same schema.
- Results are reinterpreted as signed int32, the type of SQLite's
  ``application_id`` header field.

Non-functional requirements
- Standard library only; the lookup table is built once at import and never mutated.
"""

from __future__ import annotations

from typing import Final

_CASTAGNOLI_POLYNOMIAL: Final[int] = 0x82F63B78
_MASK32: Final[int] = 0xFFFFFFFF

__all__ = [
    "CRC32C_TABLE",
    "application_id_for",
    "crc32c",
    "to_int32",
]


def _build_table(polynomial: int) -> tuple[int, ...]:
    table: list[int] = []
    for index in range(256):
        value = index
        for _ in range(8):
            if value & 1:
                value = (value >> 1) ^ polynomial
            else:
                value >>= 1
        table.append(value)
    return tuple(table)


CRC32C_TABLE: Final[tuple[int, ...]] = _build_table(_CASTAGNOLI_POLYNOMIAL)


def crc32c(data: bytes, value: int = 0) -> int:
    """Return the unsigned CRC-32C of ``data``, continuing from ``value``."""

    crc = ~value & _MASK32
    table = CRC32C_TABLE
    for byte in data:
        crc = table[(crc ^ byte) & 0xFF] ^ (crc >> 8)
    return ~crc & _MASK32


def to_int32(value: int) -> int:
    """Reinterpret the low 32 bits of ``value`` as a signed integer."""

    value &= _MASK32
    if value >= 0x80000000:
        return value - 0x1_0000_0000
    return value


def application_id_for(script: str) -> int:
    """Return the signed CRC-32C of a UTF-8 encoded schema script."""

    return to_int32(crc32c(script.encode("utf-8")))
