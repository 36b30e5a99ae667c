"""Internet (RFC 1071) ones' complement checksums."""

from __future__ import annotations

_MASK64 = (1 << 64) - 1
_ONES16 = 0xFFFF


def checksum_no_fold(data: bytes | bytearray | memoryview, initial: int = 0) -> int:
    """Return the unfolded ones' complement sum of ``data`` added to ``initial``.

    The result fits in 64 bits and is congruent, in ones' complement terms,
    to the sum of ``initial`` and the big-endian 16-bit words of ``data``.
    An odd trailing byte is padded with a zero byte.
    """
    raw = bytes(data)
    if len(raw) % 2:
        raw += b"\x00"
    total = int.from_bytes(raw, "big")
    if total:
        # 2**16 is congruent to 1 modulo 0xffff, so this is the folded word sum.
        total = total % _ONES16 or _ONES16
    total += initial
    while total > _MASK64:
        total = (total & _MASK64) + (total >> 64)
    return total


def checksum(data: bytes | bytearray | memoryview, initial: int = 0) -> int:
    """Return the 16-bit folded ones' complement sum of ``data`` and ``initial``."""
    total = checksum_no_fold(data, initial)
    while total >> 16:
        total = (total >> 16) + (total & _ONES16)
    return total


def pseudo_header_checksum_no_fold(
    protocol: int,
    src_addr: bytes | bytearray | memoryview,
    dst_addr: bytes | bytearray | memoryview,
    total_len: int,
) -> int:
    """Return the unfolded sum of a TCP/UDP pseudo header."""
    total = checksum_no_fold(src_addr, 0)
    total = checksum_no_fold(dst_addr, total)
    total = checksum_no_fold(bytes((0, protocol & 0xFF)), total)
    return checksum_no_fold((total_len & 0xFFFF).to_bytes(2, "big"), total)