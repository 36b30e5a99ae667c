"""virtio-net headers and the segmentation of offloaded packets read from a TUN."""

from __future__ import annotations

import dataclasses
import enum
import struct
from typing import MutableSequence, Sequence, Union

from .checksum import checksum, pseudo_header_checksum_no_fold
from .device import TooManySegmentsError

Buffer = Union[bytes, bytearray, memoryview]

VIRTIO_NET_HDR_F_NEEDS_CSUM = 1

IPPROTO_TCP = 6
IPPROTO_UDP = 17

TCP_FLAGS_OFFSET = 13
TCP_FLAG_FIN = 0x01
TCP_FLAG_PSH = 0x08
TCP_FLAG_ACK = 0x10

IPV4_SRC_ADDR_OFFSET = 12
IPV6_SRC_ADDR_OFFSET = 8

UDP_HEADER_LEN = 8

# Native byte order with standard sizes and no padding matches the kernel ABI.
_HDR_STRUCT = struct.Struct("=BBHHHH")

VIRTIO_NET_HDR_LEN = _HDR_STRUCT.size


class GsoType(enum.IntEnum):
    """Generic segmentation offload types of a virtio-net header."""

    NONE = 0
    TCPV4 = 1
    UDP = 3
    TCPV6 = 4
    UDP_L4 = 5


@dataclasses.dataclass
class VirtioNetHdr:
    """The ``virtio_net_hdr`` prefix of packets on a TUN with IFF_VNET_HDR."""

    flags: int = 0
    gso_type: int = GsoType.NONE
    hdr_len: int = 0
    gso_size: int = 0
    csum_start: int = 0
    csum_offset: int = 0

    @classmethod
    def decode(cls, data: Buffer) -> "VirtioNetHdr":
        """Parse a header from the first bytes of ``data``."""
        if len(data) < VIRTIO_NET_HDR_LEN:
            raise ValueError("short buffer")
        return cls(*_HDR_STRUCT.unpack_from(bytes(data[:VIRTIO_NET_HDR_LEN])))

    def encode(self, buf: Union[bytearray, memoryview]) -> None:
        """Write the header into the first bytes of ``buf``."""
        if len(buf) < VIRTIO_NET_HDR_LEN:
            raise ValueError("short buffer")
        _HDR_STRUCT.pack_into(
            buf,
            0,
            self.flags & 0xFF,
            self.gso_type & 0xFF,
            self.hdr_len & 0xFFFF,
            self.gso_size & 0xFFFF,
            self.csum_start & 0xFFFF,
            self.csum_offset & 0xFFFF,
        )


def _put_u16(buf, at: int, value: int) -> None:
    buf[at:at + 2] = (value & 0xFFFF).to_bytes(2, "big")


def _get_u16(buf, at: int) -> int:
    return int.from_bytes(bytes(buf[at:at + 2]), "big")


def gso_split(
    data: bytearray,
    hdr: VirtioNetHdr,
    out_bufs: Sequence[bytearray],
    out_offset: int,
    is_v6: bool,
) -> list[int]:
    """Split the offloaded packet ``data`` into segments placed in ``out_bufs``.

    Each segment is written at ``out_offset`` within its buffer. Returns the
    size of every segment written. ``data`` has its checksum fields cleared.
    Raises :class:`TooManySegmentsError` if ``out_bufs`` is too short; the
    exception's ``sizes`` attribute holds the sizes reported so far.
    """
    iph_len = hdr.csum_start
    if is_v6:
        src_addr_offset, addr_len = IPV6_SRC_ADDR_OFFSET, 16
    else:
        data[10:12] = b"\x00\x00"
        src_addr_offset, addr_len = IPV4_SRC_ADDR_OFFSET, 4
    csum_start = hdr.csum_start
    hdr_len = hdr.hdr_len
    gso_size = hdr.gso_size
    transport_csum_at = csum_start + hdr.csum_offset
    data[transport_csum_at:transport_csum_at + 2] = b"\x00\x00"

    if hdr.gso_type in (GsoType.TCPV4, GsoType.TCPV6):
        protocol = IPPROTO_TCP
        first_seq = int.from_bytes(bytes(data[csum_start + 4:csum_start + 8]), "big")
    else:
        protocol = IPPROTO_UDP
        first_seq = 0

    src_addr = bytes(data[src_addr_offset:src_addr_offset + addr_len])
    dst_addr = bytes(data[src_addr_offset + addr_len:src_addr_offset + 2 * addr_len])
    transport_header_len = hdr_len - csum_start

    sizes: list[int] = []
    next_data_at = hdr_len
    index = 0
    while next_data_at < len(data):
        if index == len(out_bufs):
            err = TooManySegmentsError()
            err.sizes = sizes[:max(index - 1, 0)]
            raise err
        segment_end = min(next_data_at + gso_size, len(data))
        segment_len = segment_end - next_data_at
        total_len = hdr_len + segment_len
        out = memoryview(out_bufs[index])[out_offset:]

        out[:iph_len] = data[:iph_len]
        if is_v6:
            _put_u16(out, 4, total_len - iph_len)
        else:
            if index > 0:
                _put_u16(out, 4, _get_u16(out, 4) + index)
            _put_u16(out, 2, total_len)
            _put_u16(out, 10, ~checksum(out[:iph_len], 0))

        out[csum_start:hdr_len] = data[csum_start:hdr_len]

        if protocol == IPPROTO_TCP:
            seq = (first_seq + ((gso_size * index) & 0xFFFF)) & 0xFFFFFFFF
            out[csum_start + 4:csum_start + 8] = seq.to_bytes(4, "big")
            if segment_end != len(data):
                # FIN and PSH belong on the last segment only.
                flags_at = csum_start + TCP_FLAGS_OFFSET
                out[flags_at] &= ~(TCP_FLAG_FIN | TCP_FLAG_PSH) & 0xFF
        else:
            _put_u16(out, csum_start + 4, segment_len + transport_header_len)

        out[hdr_len:hdr_len + segment_len] = data[next_data_at:segment_end]

        pseudo = pseudo_header_checksum_no_fold(
            protocol, src_addr, dst_addr, transport_header_len + segment_len
        )
        _put_u16(out, transport_csum_at, ~checksum(out[csum_start:total_len], pseudo))

        sizes.append(total_len)
        next_data_at += gso_size
        index += 1
    return sizes


def gso_none_checksum(data: bytearray, csum_start: int, csum_offset: int) -> None:
    """Complete a partial checksum in place.

    The value already at the checksum field, typically the pseudo-header sum,
    is folded into the checksum computed from ``csum_start`` onwards.
    """
    csum_at = (csum_start + csum_offset) & 0xFFFF
    initial = _get_u16(data, csum_at)
    data[csum_at:csum_at + 2] = b"\x00\x00"
    _put_u16(data, csum_at, ~checksum(data[csum_start:], initial))


def handle_virtio_read(
    data: Buffer, bufs: Sequence[MutableSequence[int]], offset: int
) -> list[int]:
    """Split a read carrying a virtio-net header into packets in ``bufs``.

    Each packet is placed ``offset`` bytes into its buffer. Returns the size
    of each packet produced.
    """
    hdr = VirtioNetHdr.decode(data)
    packet = bytearray(data[VIRTIO_NET_HDR_LEN:])

    if hdr.gso_type == GsoType.NONE:
        if hdr.flags & VIRTIO_NET_HDR_F_NEEDS_CSUM:
            gso_none_checksum(packet, hdr.csum_start, hdr.csum_offset)
        room = max(len(bufs[0]) - offset, 0)
        if len(packet) > room:
            raise ValueError(f"read len {len(packet)} overflows bufs element len {room}")
        bufs[0][offset:offset + len(packet)] = packet
        return [len(packet)]

    if hdr.gso_type not in (GsoType.TCPV4, GsoType.TCPV6, GsoType.UDP_L4):
        raise ValueError(f"unsupported virtio GSO type: {hdr.gso_type}")
    if not packet:
        raise ValueError("packet is too short")

    ip_version = packet[0] >> 4
    if ip_version == 4:
        if hdr.gso_type not in (GsoType.TCPV4, GsoType.UDP_L4):
            raise ValueError(f"ip header version: {ip_version}, GSO type: {hdr.gso_type}")
    elif ip_version == 6:
        if hdr.gso_type not in (GsoType.TCPV6, GsoType.UDP_L4):
            raise ValueError(f"ip header version: {ip_version}, GSO type: {hdr.gso_type}")
    else:
        raise ValueError(f"invalid ip header version: {ip_version}")

    # The kernel's hdr_len may cover the whole first packet on a forwarding
    # path, so derive it from the transport header instead.
    if hdr.gso_type == GsoType.UDP_L4:
        hdr_len = (hdr.csum_start + UDP_HEADER_LEN) & 0xFFFF
    else:
        if len(packet) <= hdr.csum_start + 12:
            raise ValueError("packet is too short")
        tcp_hlen = (packet[hdr.csum_start + 12] >> 4) * 4
        if tcp_hlen < 20 or tcp_hlen > 60:
            raise ValueError(f"tcp header len is invalid: {tcp_hlen}")
        hdr_len = (hdr.csum_start + tcp_hlen) & 0xFFFF
    hdr = dataclasses.replace(hdr, hdr_len=hdr_len)

    if len(packet) < hdr.hdr_len:
        raise ValueError(
            f"length of packet ({len(packet)}) < virtioNetHdr.hdrLen ({hdr.hdr_len})"
        )
    if hdr.hdr_len < hdr.csum_start:
        raise ValueError(
            f"virtioNetHdr.hdrLen ({hdr.hdr_len}) < virtioNetHdr.csumStart ({hdr.csum_start})"
        )
    csum_at = hdr.csum_start + hdr.csum_offset
    if csum_at + 1 >= len(packet):
        raise ValueError(
            f"end of checksum offset ({csum_at + 1}) exceeds packet length ({len(packet)})"
        )

    return gso_split(packet, hdr, bufs, offset, ip_version == 6)