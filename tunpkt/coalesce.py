"""Decisions and buffer merging for coalescing TCP and UDP packets."""

from __future__ import annotations

import enum
from typing import MutableSequence, Union

from .checksum import checksum, pseudo_header_checksum_no_fold
from .flows import TcpGroItem, UdpGroItem
from .virtio import (
    IPPROTO_TCP,
    IPPROTO_UDP,
    IPV4_SRC_ADDR_OFFSET,
    IPV6_SRC_ADDR_OFFSET,
    TCP_FLAG_PSH,
    TCP_FLAGS_OFFSET,
    UDP_HEADER_LEN,
)

Buffer = Union[bytes, bytearray, memoryview]

# Packet buffers are assumed able to grow to this many bytes; a merge that
# would need more is refused rather than reallocated.
BUFFER_CAPACITY = 65535


class CanCoalesce(enum.IntEnum):
    """Whether, and on which side, a packet can join a tracked packet."""

    PREPEND = -1
    UNAVAILABLE = 0
    APPEND = 1


class CoalesceResult(enum.IntEnum):
    """Outcome of an attempt to merge two packets."""

    INSUFFICIENT_CAP = 0
    PSH_ENDING = 1
    ITEM_INVALID_CSUM = 2
    PKT_INVALID_CSUM = 3
    SUCCESS = 4


def _room(buf: Buffer, bufs_offset: int) -> int:
    return max(len(buf), BUFFER_CAPACITY) - 2 * bufs_offset


def _tail_len(buf: Buffer, start: int) -> int:
    return max(len(buf) - start, 0)


def ip_headers_can_coalesce(pkt_a: Buffer, pkt_b: Buffer) -> bool:
    """Return True if the IP headers of the two packets allow merging them."""
    if len(pkt_a) < 9 or len(pkt_b) < 9:
        return False
    if pkt_a[0] >> 4 == 6:
        # Version and traffic class, then hop limit.
        if pkt_a[0] != pkt_b[0] or pkt_a[1] >> 4 != pkt_b[1] >> 4:
            return False
        if pkt_a[7] != pkt_b[7]:
            return False
    else:
        # ToS, then DF and reserved bits (MF is checked elsewhere), then TTL.
        if pkt_a[1] != pkt_b[1]:
            return False
        if pkt_a[6] >> 5 != pkt_b[6] >> 5:
            return False
        if pkt_a[8] != pkt_b[8]:
            return False
    return True


def udp_packets_can_coalesce(
    pkt: Buffer,
    iph_len: int,
    gso_size: int,
    item: UdpGroItem,
    bufs: MutableSequence[Buffer],
    bufs_offset: int,
) -> CanCoalesce:
    """Decide whether ``pkt`` can be appended to the packet tracked by ``item``."""
    target = bufs[item.bufs_index][bufs_offset:]
    if not ip_headers_can_coalesce(pkt, target):
        return CanCoalesce.UNAVAILABLE
    if _tail_len(target, iph_len + UDP_HEADER_LEN) % item.gso_size != 0:
        # A smaller segment was appended before; nothing may follow it.
        return CanCoalesce.UNAVAILABLE
    if gso_size > item.gso_size:
        return CanCoalesce.UNAVAILABLE
    return CanCoalesce.APPEND


def tcp_packets_can_coalesce(
    pkt: Buffer,
    iph_len: int,
    tcph_len: int,
    seq: int,
    psh_set: bool,
    gso_size: int,
    item: TcpGroItem,
    bufs: MutableSequence[Buffer],
    bufs_offset: int,
) -> CanCoalesce:
    """Decide whether ``pkt`` can join the packet tracked by ``item``, and on which side."""
    target = bufs[item.bufs_index][bufs_offset:]
    if tcph_len != item.tcph_len:
        return CanCoalesce.UNAVAILABLE
    if tcph_len > 20:
        options = bytes(pkt[iph_len + 20:iph_len + tcph_len])
        target_options = bytes(target[item.iph_len + 20:iph_len + tcph_len])
        if options != target_options:
            return CanCoalesce.UNAVAILABLE
    if not ip_headers_can_coalesce(pkt, target):
        return CanCoalesce.UNAVAILABLE

    lhs_len = (item.gso_size + item.num_merged * item.gso_size) & 0xFFFF
    if seq == (item.sent_seq + lhs_len) & 0xFFFFFFFF:
        if item.psh_set:
            # PSH may only be set on the last segment of a merged group.
            return CanCoalesce.UNAVAILABLE
        if _tail_len(target, iph_len + tcph_len) % item.gso_size != 0:
            return CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size:
            return CanCoalesce.UNAVAILABLE
        return CanCoalesce.APPEND
    if (seq + gso_size) & 0xFFFFFFFF == item.sent_seq:
        if psh_set:
            return CanCoalesce.UNAVAILABLE
        if gso_size < item.gso_size:
            return CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size and item.num_merged > 0:
            # Would leave several smaller segments at the end.
            return CanCoalesce.UNAVAILABLE
        return CanCoalesce.PREPEND
    return CanCoalesce.UNAVAILABLE


def checksum_valid(pkt: Buffer, iph_len: int, proto: int, is_v6: bool) -> bool:
    """Return True if the transport checksum of the IP packet ``pkt`` verifies."""
    if is_v6:
        src_at, addr_size = IPV6_SRC_ADDR_OFFSET, 16
    else:
        src_at, addr_size = IPV4_SRC_ADDR_OFFSET, 4
    len_for_pseudo = (len(pkt) - iph_len) & 0xFFFF
    pseudo = pseudo_header_checksum_no_fold(
        proto,
        pkt[src_at:src_at + addr_size],
        pkt[src_at + addr_size:src_at + 2 * addr_size],
        len_for_pseudo,
    )
    return ~checksum(pkt[iph_len:], pseudo) & 0xFFFF == 0


def coalesce_udp_packets(
    pkt: Buffer,
    item: UdpGroItem,
    bufs: MutableSequence[Buffer],
    bufs_offset: int,
    is_v6: bool,
) -> CoalesceResult:
    """Append the payload of ``pkt`` to the packet tracked by ``item``.

    On success ``bufs[item.bufs_index]`` is replaced by the grown packet and
    ``item`` is updated.
    """
    head_buf = bufs[item.bufs_index]
    headers_len = (item.iph_len + UDP_HEADER_LEN) & 0xFF
    coalesced_len = _tail_len(head_buf, bufs_offset) + len(pkt) - headers_len

    if _room(head_buf, bufs_offset) < coalesced_len:
        return CoalesceResult.INSUFFICIENT_CAP
    if item.num_merged == 0:
        if item.csum_known_invalid or not checksum_valid(
            head_buf[bufs_offset:], item.iph_len, IPPROTO_UDP, is_v6
        ):
            return CoalesceResult.ITEM_INVALID_CSUM
    if not checksum_valid(pkt, item.iph_len, IPPROTO_UDP, is_v6):
        return CoalesceResult.PKT_INVALID_CSUM

    bufs[item.bufs_index] = bytearray(head_buf) + bytes(pkt[headers_len:])
    item.num_merged = (item.num_merged + 1) & 0xFFFF
    return CoalesceResult.SUCCESS


def coalesce_tcp_packets(
    mode: CanCoalesce,
    pkt: Buffer,
    pkt_bufs_index: int,
    gso_size: int,
    seq: int,
    psh_set: bool,
    item: TcpGroItem,
    bufs: MutableSequence[Buffer],
    bufs_offset: int,
    is_v6: bool,
) -> CoalesceResult:
    """Merge ``pkt`` with the packet tracked by ``item``.

    On a prepend the merged packet is built in ``pkt``'s buffer and the two
    entries of ``bufs`` are swapped, so the merged packet always ends up at
    ``item.bufs_index``.
    """
    item_buf = bufs[item.bufs_index]
    headers_len = (item.iph_len + item.tcph_len) & 0xFF
    coalesced_len = _tail_len(item_buf, bufs_offset) + len(pkt) - headers_len

    if mode == CanCoalesce.PREPEND:
        if _room(bufs[pkt_bufs_index], bufs_offset) < coalesced_len:
            return CoalesceResult.INSUFFICIENT_CAP
        if psh_set:
            return CoalesceResult.PSH_ENDING
        if item.num_merged == 0 and not checksum_valid(
            item_buf[bufs_offset:], item.iph_len, IPPROTO_TCP, is_v6
        ):
            return CoalesceResult.ITEM_INVALID_CSUM
        if not checksum_valid(pkt, item.iph_len, IPPROTO_TCP, is_v6):
            return CoalesceResult.PKT_INVALID_CSUM
        item.sent_seq = seq
        merged = bytearray(bufs[pkt_bufs_index]) + bytes(item_buf[bufs_offset + headers_len:])
        bufs[item.bufs_index], bufs[pkt_bufs_index] = merged, item_buf
    else:
        if _room(item_buf, bufs_offset) < coalesced_len:
            return CoalesceResult.INSUFFICIENT_CAP
        if item.num_merged == 0 and not checksum_valid(
            item_buf[bufs_offset:], item.iph_len, IPPROTO_TCP, is_v6
        ):
            return CoalesceResult.ITEM_INVALID_CSUM
        if not checksum_valid(pkt, item.iph_len, IPPROTO_TCP, is_v6):
            return CoalesceResult.PKT_INVALID_CSUM
        merged = bytearray(item_buf)
        if psh_set:
            item.psh_set = True
            merged[bufs_offset + item.iph_len + TCP_FLAGS_OFFSET] |= TCP_FLAG_PSH
        merged += bytes(pkt[headers_len:])
        bufs[item.bufs_index] = merged

    if gso_size > item.gso_size:
        item.gso_size = gso_size
    item.num_merged = (item.num_merged + 1) & 0xFFFF
    return CoalesceResult.SUCCESS