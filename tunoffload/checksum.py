"""Internet (ones' complement) checksum helpers."""

from __future__ import annotations

import struct

__all__ = ["checksum_no_fold", "checksum", "pseudo_header_checksum_no_fold"]


def checksum_no_fold(data: bytes, initial: int = 0) -> int:
    """Sum *data* as big-endian words onto *initial* without folding carries.

    Whole 32-bit words are added first, then a trailing 16-bit word, then a
    final odd byte shifted into the high half of a 16-bit word.
    """
    view = memoryview(data).cast("B")
    total = initial
    words = len(view) // 4
    if words:
        total += sum(struct.unpack_from(f">{words}I", view, 0))
    rest = view[words * 4:]
    if len(rest) >= 2:
        total += (rest[0] << 8) | rest[1]
        rest = rest[2:]
    if len(rest) == 1:
        total += rest[0] << 8
    return total


def checksum(data: bytes, initial: int = 0) -> int:
    """Return the folded 16-bit ones' complement sum of *data*."""
    total = checksum_no_fold(data, initial)
    while total > 0xFFFF:
        total = (total >> 16) + (total & 0xFFFF)
    return total


def pseudo_header_checksum_no_fold(
    protocol: int, src_addr: bytes, dst_addr: bytes, total_len: int
) -> int:
    """Unfolded sum of a TCP/UDP pseudo header."""
    total = checksum_no_fold(src_addr, 0)
    total = checksum_no_fold(dst_addr, total)
    total = checksum_no_fold(bytes((0, protocol & 0xFF)), total)
    return checksum_no_fold((total_len & 0xFFFF).to_bytes(2, "big"), total)