"""Rewriting coalesced packets so that the kernel can segment them again."""

from __future__ import annotations

from typing import MutableSequence

from .checksum import checksum, pseudo_header_checksum_no_fold
from .flows import TcpGroTable, UdpGroTable
from .virtio import (
    IPPROTO_TCP,
    IPPROTO_UDP,
    IPV4_SRC_ADDR_OFFSET,
    IPV6_SRC_ADDR_OFFSET,
    UDP_HEADER_LEN,
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_LEN,
    GsoType,
    VirtioNetHdr,
)

TCP_CSUM_OFFSET = 16
UDP_CSUM_OFFSET = 6


def _put_u16(buf: bytearray, at: int, value: int) -> None:
    buf[at:at + 2] = (value & 0xFFFF).to_bytes(2, "big")


def _write_virtio_hdr(buf: bytearray, offset: int, hdr: VirtioNetHdr) -> None:
    start = offset - VIRTIO_NET_HDR_LEN
    if start < 0 or len(buf) - start < VIRTIO_NET_HDR_LEN:
        raise ValueError("short buffer")
    raw = bytearray(VIRTIO_NET_HDR_LEN)
    hdr.encode(raw)
    buf[start:offset] = raw


def _fix_ip_header(buf: bytearray, offset: int, iph_len: int, is_v6: bool) -> None:
    """Set the IPv6 payload length, or the IPv4 total length and header checksum."""
    pkt_len = len(buf) - offset
    if is_v6:
        _put_u16(buf, offset + 4, pkt_len - iph_len)
    else:
        buf[offset + 10:offset + 12] = b"\x00\x00"
        _put_u16(buf, offset + 2, pkt_len)
        _put_u16(buf, offset + 10, ~checksum(buf[offset:offset + iph_len], 0))


def _place_pseudo_checksum(
    buf: bytearray, offset: int, protocol: int, iph_len: int, csum_at: int, is_v6: bool
) -> None:
    """Store the folded pseudo-header sum where the transport checksum goes."""
    if is_v6:
        addr_len, addr_offset = 16, IPV6_SRC_ADDR_OFFSET
    else:
        addr_len, addr_offset = 4, IPV4_SRC_ADDR_OFFSET
    src_at = offset + addr_offset
    psum = pseudo_header_checksum_no_fold(
        protocol,
        buf[src_at:src_at + addr_len],
        buf[src_at + addr_len:src_at + 2 * addr_len],
        len(buf) - offset - iph_len,
    )
    _put_u16(buf, offset + csum_at, checksum(b"", psum))


def apply_tcp_coalesce_accounting(
    bufs: MutableSequence[bytearray], offset: int, table: TcpGroTable
) -> None:
    """Fix headers of the TCP packets tracked in ``table`` and prefix virtio headers.

    Merged packets get a GSO virtio header, corrected IP lengths and a
    pseudo-header sum in their checksum field; the rest get an empty header.
    """
    for item in table:
        buf = bufs[item.bufs_index]
        if item.num_merged == 0:
            _write_virtio_hdr(buf, offset, VirtioNetHdr())
            continue
        is_v6 = item.key.is_v6
        hdr = VirtioNetHdr(
            flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
            gso_type=GsoType.TCPV6 if is_v6 else GsoType.TCPV4,
            hdr_len=item.iph_len + item.tcph_len,
            gso_size=item.gso_size,
            csum_start=item.iph_len,
            csum_offset=TCP_CSUM_OFFSET,
        )
        _fix_ip_header(buf, offset, item.iph_len, is_v6)
        _write_virtio_hdr(buf, offset, hdr)
        _place_pseudo_checksum(
            buf, offset, IPPROTO_TCP, item.iph_len, hdr.csum_start + hdr.csum_offset, is_v6
        )


def apply_udp_coalesce_accounting(
    bufs: MutableSequence[bytearray], offset: int, table: UdpGroTable
) -> None:
    """Fix headers of the UDP packets tracked in ``table`` and prefix virtio headers."""
    for item in table:
        buf = bufs[item.bufs_index]
        if item.num_merged == 0:
            _write_virtio_hdr(buf, offset, VirtioNetHdr())
            continue
        is_v6 = item.key.is_v6
        hdr = VirtioNetHdr(
            flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
            gso_type=GsoType.UDP_L4,
            hdr_len=item.iph_len + UDP_HEADER_LEN,
            gso_size=item.gso_size,
            csum_start=item.iph_len,
            csum_offset=UDP_CSUM_OFFSET,
        )
        _fix_ip_header(buf, offset, item.iph_len, is_v6)
        _write_virtio_hdr(buf, offset, hdr)
        _put_u16(buf, offset + item.iph_len + 4, len(buf) - offset - item.iph_len)
        _place_pseudo_checksum(
            buf, offset, IPPROTO_UDP, item.iph_len, hdr.csum_start + hdr.csum_offset, is_v6
        )