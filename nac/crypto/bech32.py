"""
Bech32 (BIP-173) encoding for human-readable keys (NIP-19).

Format: ``<prefix> "1" <data> <6-char checksum>`` over a 32-symbol alphabet.
The checksum is the BCH polynomial remainder over GF(32) seeded with the
expanded prefix; a valid string leaves a residue of exactly 1.
"""

from __future__ import annotations

from typing import Iterable

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
_CHARSET_MAP = {c: i for i, c in enumerate(CHARSET)}

_GENERATOR = (0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3)
_CHECKSUM_CONST = 1
CHECKSUM_LENGTH = 6
SEPARATOR = "1"


class Bech32Error(ValueError):
    """Malformed bech32 string or invalid bit regrouping."""


def polymod(values: Iterable[int]) -> int:
    """BCH checksum remainder over the 5-bit symbol stream."""
    chk = 1
    for value in values:
        top = chk >> 25
        chk = ((chk & 0x1FFFFFF) << 5) ^ value
        for i in range(5):
            if (top >> i) & 1:
                chk ^= _GENERATOR[i]
    return chk


def hrp_expand(hrp: str) -> list[int]:
    """Expand the prefix: high bits of each char, a zero, then low bits."""
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def create_checksum(hrp: str, data: list[int]) -> list[int]:
    values = hrp_expand(hrp) + data + [0] * CHECKSUM_LENGTH
    mod = polymod(values) ^ _CHECKSUM_CONST
    return [(mod >> 5 * (5 - i)) & 31 for i in range(CHECKSUM_LENGTH)]


def verify_checksum(hrp: str, data: list[int]) -> bool:
    return polymod(hrp_expand(hrp) + data) == _CHECKSUM_CONST


def convert_bits(data: Iterable[int], from_bits: int, to_bits: int, pad: bool) -> list[int]:
    """Regroup a stream of ``from_bits``-wide values into ``to_bits``-wide values.

    With ``pad`` the final partial group is zero-filled. Without it, any
    leftover must be shorter than ``from_bits`` and all zero, otherwise
    Bech32Error is raised.
    """
    acc = 0
    bits = 0
    ret: list[int] = []
    maxv = (1 << to_bits) - 1
    max_acc = (1 << (from_bits + to_bits - 1)) - 1
    for value in data:
        if value < 0 or value >> from_bits:
            raise Bech32Error(f"Value {value} does not fit in {from_bits} bits")
        acc = ((acc << from_bits) | value) & max_acc
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            ret.append((acc >> bits) & maxv)
    if pad:
        if bits:
            ret.append((acc << (to_bits - bits)) & maxv)
    elif bits >= from_bits or ((acc << (to_bits - bits)) & maxv):
        raise Bech32Error("Invalid padding in bech32 data")
    return ret


def bech32_encode(hrp: str, data: list[int]) -> str:
    """Join prefix, separator, 5-bit data and checksum."""
    combined = data + create_checksum(hrp, data)
    return hrp + SEPARATOR + "".join(CHARSET[d] for d in combined)


def bech32_decode(bech: str) -> tuple[str, list[int]]:
    """Split a bech32 string into (prefix, 5-bit data without checksum).

    Raises Bech32Error on a missing or misplaced separator, a character
    outside the alphabet, or a checksum mismatch.
    """
    if not isinstance(bech, str):
        raise Bech32Error("bech32 input must be a string")
    if any(ord(c) < 33 or ord(c) > 126 for c in bech):
        raise Bech32Error("bech32 string contains non-printable characters")

    bech = bech.lower()
    pos = bech.rfind(SEPARATOR)
    if pos < 1 or pos + CHECKSUM_LENGTH + 1 > len(bech):
        raise Bech32Error("Missing or misplaced bech32 separator")

    hrp = bech[:pos]
    data: list[int] = []
    for c in bech[pos + 1:]:
        if c not in _CHARSET_MAP:
            raise Bech32Error(f"Invalid bech32 character: {c!r}")
        data.append(_CHARSET_MAP[c])

    if not verify_checksum(hrp, data):
        raise Bech32Error("bech32 checksum mismatch")
    return hrp, data[:-CHECKSUM_LENGTH]


def encode(prefix: str, payload: bytes) -> str:
    """Encode raw bytes under a human-readable prefix (e.g. ``npub``)."""
    return bech32_encode(prefix, convert_bits(payload, 8, 5, pad=True))


def decode(bech: str) -> tuple[str, bytes]:
    """Decode a bech32 string into (prefix, raw bytes)."""
    hrp, data = bech32_decode(bech)
    return hrp, bytes(convert_bits(data, 5, 8, pad=False))
