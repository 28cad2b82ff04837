"""Bitfield parsing and utilities for piece availability."""

from __future__ import annotations

from collections.abc import Iterable


def bitfield_length(num_pieces: int) -> int:
    """Number of bytes a bitfield for ``num_pieces`` occupies."""
    return (num_pieces + 7) // 8


def parse_bitfield(bitfield: bytes, num_pieces: int) -> set[int]:
    """Parse a bitfield into a set of piece indices (bits set to 1).

    Bits are numbered big-endian within each byte as in BEP 3.
    """
    pieces: set[int] = set()
    if not bitfield or num_pieces <= 0:
        return pieces
    for byte_idx, byte_val in enumerate(bitfield):
        for bit_idx in range(8):
            piece_idx = byte_idx * 8 + bit_idx
            if piece_idx >= num_pieces:
                return pieces
            if byte_val & (1 << (7 - bit_idx)):
                pieces.add(piece_idx)
    return pieces


def validate_bitfield(bitfield: bytes, num_pieces: int) -> None:
    """Raise ValueError for a bitfield of the wrong size or with spare bits set."""
    expected = bitfield_length(num_pieces)
    if len(bitfield) != expected:
        msg = f"Bitfield is {len(bitfield)} bytes, expected {expected}"
        raise ValueError(msg)
    spare = expected * 8 - num_pieces
    if spare and bitfield[-1] & ((1 << spare) - 1):
        msg = "Bitfield has spare bits set"
        raise ValueError(msg)


def encode_bitfield(pieces: Iterable[int], num_pieces: int) -> bytes:
    """Build a bitfield with the given piece indices set."""
    out = bytearray(bitfield_length(num_pieces))
    for idx in pieces:
        if 0 <= idx < num_pieces:
            out[idx // 8] |= 1 << (7 - idx % 8)
    return bytes(out)


def count_bits(bitfield: bytes) -> int:
    """Count the number of set bits in a bitfield."""
    if not bitfield:
        return 0
    return sum(bin(b).count("1") for b in bitfield)
