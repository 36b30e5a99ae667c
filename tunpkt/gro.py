"""Generic receive offload: coalescing batches of packets before writing to a TUN."""

from __future__ import annotations

import dataclasses
import enum
from typing import MutableSequence

from .accounting import apply_tcp_coalesce_accounting, apply_udp_coalesce_accounting
from .coalesce import (
    CanCoalesce,
    CoalesceResult,
    coalesce_tcp_packets,
    coalesce_udp_packets,
    tcp_packets_can_coalesce,
    udp_packets_can_coalesce,
)
from .flows import TcpGroTable, UdpGroTable
from .virtio import (
    IPPROTO_TCP,
    IPPROTO_UDP,
    IPV4_SRC_ADDR_OFFSET,
    IPV6_SRC_ADDR_OFFSET,
    TCP_FLAG_ACK,
    TCP_FLAG_PSH,
    TCP_FLAGS_OFFSET,
    UDP_HEADER_LEN,
    VIRTIO_NET_HDR_LEN,
    VirtioNetHdr,
)

IPV4_FLAG_MORE_FRAGMENTS = 0x20
MAX_UINT16 = (1 << 16) - 1


class GroResult(enum.IntEnum):
    """What GRO evaluation did with a packet."""

    NOOP = 0
    TABLE_INSERT = 1
    COALESCED = 2


class GroCandidate(enum.IntEnum):
    """The kind of GRO a packet is eligible for."""

    NOT_CANDIDATE = 0
    TCP4 = 1
    TCP6 = 2
    UDP4 = 3
    UDP6 = 4


def _u16(pkt, at: int) -> int:
    return int.from_bytes(bytes(pkt[at:at + 2]), "big")


def _ip_lengths_ok(pkt, is_v6: bool) -> int:
    """Return the IP header length, or 0 if the length fields do not match ``pkt``."""
    if len(pkt) > MAX_UINT16:
        return 0
    if is_v6:
        iph_len = 40
        if _u16(pkt, 4) != len(pkt) - iph_len:
            return 0
    else:
        iph_len = (pkt[0] & 0x0F) * 4
        if _u16(pkt, 2) != len(pkt):
            return 0
    if len(pkt) < iph_len:
        return 0
    return iph_len


def _is_fragment(pkt) -> bool:
    return bool(pkt[6] & IPV4_FLAG_MORE_FRAGMENTS) or ((pkt[6] << 3) & 0xFF) != 0 or pkt[7] != 0


def _addr_layout(is_v6: bool) -> tuple[int, int]:
    return (IPV6_SRC_ADDR_OFFSET, 16) if is_v6 else (IPV4_SRC_ADDR_OFFSET, 4)


def tcp_gro(
    bufs: MutableSequence[bytearray], offset: int, pkt_index: int, table: TcpGroTable, is_v6: bool
) -> GroResult:
    """Try to coalesce the TCP packet ``bufs[pkt_index]`` with packets in ``table``."""
    pkt = bufs[pkt_index][offset:]
    iph_len = _ip_lengths_ok(pkt, is_v6)
    if not iph_len or len(pkt) <= iph_len + 12:
        return GroResult.NOOP
    tcph_len = (pkt[iph_len + 12] >> 4) * 4
    if tcph_len < 20 or tcph_len > 60:
        return GroResult.NOOP
    if len(pkt) < iph_len + tcph_len:
        return GroResult.NOOP
    if not is_v6 and _is_fragment(pkt):
        return GroResult.NOOP
    tcp_flags = pkt[iph_len + TCP_FLAGS_OFFSET]
    psh_set = False
    # Only plain ACK or PSH+ACK segments are candidates.
    if tcp_flags != TCP_FLAG_ACK:
        if tcp_flags != TCP_FLAG_ACK | TCP_FLAG_PSH:
            return GroResult.NOOP
        psh_set = True
    gso_size = len(pkt) - tcph_len - iph_len
    if gso_size < 1:
        return GroResult.NOOP
    seq = int.from_bytes(bytes(pkt[iph_len + 4:iph_len + 8]), "big")
    src_addr_offset, addr_len = _addr_layout(is_v6)
    dst_addr_offset = src_addr_offset + addr_len

    items = table.lookup_or_insert(
        pkt, src_addr_offset, dst_addr_offset, iph_len, tcph_len, pkt_index
    )
    if items is None:
        return GroResult.TABLE_INSERT
    # Newest first: in-order arrival matches quickly, and deleting the
    # current index leaves the lower ones untouched.
    for i in reversed(range(len(items))):
        item = dataclasses.replace(items[i])
        can = tcp_packets_can_coalesce(
            pkt, iph_len, tcph_len, seq, psh_set, gso_size, item, bufs, offset
        )
        if can == CanCoalesce.UNAVAILABLE:
            continue
        result = coalesce_tcp_packets(
            can, pkt, pkt_index, gso_size, seq, psh_set, item, bufs, offset, is_v6
        )
        if result == CoalesceResult.SUCCESS:
            table.update_at(item, i)
            return GroResult.COALESCED
        if result == CoalesceResult.ITEM_INVALID_CSUM:
            table.delete_at(item.key, i)
        elif result == CoalesceResult.PKT_INVALID_CSUM:
            return GroResult.NOOP
    table.insert(pkt, src_addr_offset, dst_addr_offset, iph_len, tcph_len, pkt_index)
    return GroResult.TABLE_INSERT


def udp_gro(
    bufs: MutableSequence[bytearray], offset: int, pkt_index: int, table: UdpGroTable, is_v6: bool
) -> GroResult:
    """Try to coalesce the UDP packet ``bufs[pkt_index]`` with the last packet of its flow."""
    pkt = bufs[pkt_index][offset:]
    iph_len = _ip_lengths_ok(pkt, is_v6)
    if not iph_len or len(pkt) < iph_len + UDP_HEADER_LEN:
        return GroResult.NOOP
    if not is_v6 and _is_fragment(pkt):
        return GroResult.NOOP
    gso_size = len(pkt) - UDP_HEADER_LEN - iph_len
    if gso_size < 1:
        return GroResult.NOOP
    src_addr_offset, addr_len = _addr_layout(is_v6)
    dst_addr_offset = src_addr_offset + addr_len

    items = table.lookup_or_insert(pkt, src_addr_offset, dst_addr_offset, iph_len, pkt_index)
    if items is None:
        return GroResult.TABLE_INSERT
    # Only the last item is considered so datagrams are never reordered.
    last = len(items) - 1
    item = dataclasses.replace(items[last])
    can = udp_packets_can_coalesce(pkt, iph_len, gso_size, item, bufs, offset)
    csum_known_invalid = False
    if can == CanCoalesce.APPEND:
        result = coalesce_udp_packets(pkt, item, bufs, offset, is_v6)
        if result == CoalesceResult.SUCCESS:
            table.update_at(item, last)
            return GroResult.COALESCED
        if result == CoalesceResult.PKT_INVALID_CSUM:
            csum_known_invalid = True
    table.insert(
        pkt, src_addr_offset, dst_addr_offset, iph_len, pkt_index, csum_known_invalid
    )
    return GroResult.TABLE_INSERT


def packet_is_gro_candidate(data, can_udp_gro: bool) -> GroCandidate:
    """Classify the IP packet ``data`` for GRO."""
    if len(data) < 28:
        return GroCandidate.NOT_CANDIDATE
    version = data[0] >> 4
    if version == 4:
        if data[0] & 0x0F != 5:
            # IPv4 packets with options do not coalesce.
            return GroCandidate.NOT_CANDIDATE
        if data[9] == IPPROTO_TCP and len(data) >= 40:
            return GroCandidate.TCP4
        if data[9] == IPPROTO_UDP and can_udp_gro:
            return GroCandidate.UDP4
    elif version == 6:
        if data[6] == IPPROTO_TCP and len(data) >= 60:
            return GroCandidate.TCP6
        if data[6] == IPPROTO_UDP and len(data) >= 48 and can_udp_gro:
            return GroCandidate.UDP6
    return GroCandidate.NOT_CANDIDATE


def handle_gro(
    bufs: MutableSequence[bytearray],
    offset: int,
    tcp_table: TcpGroTable,
    udp_table: UdpGroTable,
    can_udp_gro: bool,
) -> list[int]:
    """Coalesce the packets in ``bufs`` and return the indices of those to write.

    Each packet starts ``offset`` bytes into its buffer; the virtio-net header
    is written just before it. Buffers may be replaced or swapped in ``bufs``.
    """
    to_write: list[int] = []
    for i in range(len(bufs)):
        if offset < VIRTIO_NET_HDR_LEN or offset > len(bufs[i]) - 1:
            raise ValueError("invalid offset")
        if not isinstance(bufs[i], bytearray):
            bufs[i] = bytearray(bufs[i])
        candidate = packet_is_gro_candidate(bufs[i][offset:], can_udp_gro)
        if candidate == GroCandidate.TCP4:
            result = tcp_gro(bufs, offset, i, tcp_table, False)
        elif candidate == GroCandidate.TCP6:
            result = tcp_gro(bufs, offset, i, tcp_table, True)
        elif candidate == GroCandidate.UDP4:
            result = udp_gro(bufs, offset, i, udp_table, False)
        elif candidate == GroCandidate.UDP6:
            result = udp_gro(bufs, offset, i, udp_table, True)
        else:
            result = GroResult.NOOP

        if result == GroResult.NOOP:
            raw = bytearray(VIRTIO_NET_HDR_LEN)
            VirtioNetHdr().encode(raw)
            bufs[i][offset - VIRTIO_NET_HDR_LEN:offset] = raw
            to_write.append(i)
        elif result == GroResult.TABLE_INSERT:
            to_write.append(i)
    apply_tcp_coalesce_accounting(bufs, offset, tcp_table)
    apply_udp_coalesce_accounting(bufs, offset, udp_table)
    return to_write