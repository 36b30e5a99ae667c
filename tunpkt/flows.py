"""Per-flow bookkeeping for TCP and UDP generic receive offload."""

from __future__ import annotations

import dataclasses
from typing import Iterator, Optional, Union

from .virtio import TCP_FLAG_PSH, TCP_FLAGS_OFFSET, UDP_HEADER_LEN

Buffer = Union[bytes, bytearray, memoryview]


def _u16(pkt: Buffer, at: int) -> int:
    return int.from_bytes(bytes(pkt[at:at + 2]), "big")


def _u32(pkt: Buffer, at: int) -> int:
    return int.from_bytes(bytes(pkt[at:at + 4]), "big")


def _addresses(pkt: Buffer, src_addr_offset: int, dst_addr_offset: int) -> tuple[bytes, bytes, int]:
    addr_size = dst_addr_offset - src_addr_offset
    src = bytes(pkt[src_addr_offset:dst_addr_offset])
    dst = bytes(pkt[dst_addr_offset:dst_addr_offset + addr_size])
    return src, dst, addr_size


@dataclasses.dataclass(frozen=True)
class TcpFlowKey:
    """Identifies a TCP flow; packets with differing ACK numbers are separate flows."""

    src_addr: bytes
    dst_addr: bytes
    src_port: int
    dst_port: int
    rx_ack: int
    is_v6: bool

    @classmethod
    def from_packet(
        cls, pkt: Buffer, src_addr_offset: int, dst_addr_offset: int, tcph_offset: int
    ) -> "TcpFlowKey":
        """Build the key of the IP packet ``pkt`` whose TCP header is at ``tcph_offset``."""
        src, dst, addr_size = _addresses(pkt, src_addr_offset, dst_addr_offset)
        return cls(
            src_addr=src,
            dst_addr=dst,
            src_port=_u16(pkt, tcph_offset),
            dst_port=_u16(pkt, tcph_offset + 2),
            rx_ack=_u32(pkt, tcph_offset + 8),
            is_v6=addr_size == 16,
        )


@dataclasses.dataclass
class TcpGroItem:
    """A TCP packet tracked while a batch of packets is evaluated for coalescing."""

    key: TcpFlowKey
    bufs_index: int = 0
    gso_size: int = 0
    iph_len: int = 0
    tcph_len: int = 0
    sent_seq: int = 0
    psh_set: bool = False
    num_merged: int = 0


class TcpGroTable:
    """TCP flows and the packets tracked for each of them."""

    def __init__(self) -> None:
        self.items_by_flow: dict[TcpFlowKey, list[TcpGroItem]] = {}

    def lookup_or_insert(
        self,
        pkt: Buffer,
        src_addr_offset: int,
        dst_addr_offset: int,
        tcph_offset: int,
        tcph_len: int,
        bufs_index: int,
    ) -> Optional[list[TcpGroItem]]:
        """Return the live item list of the packet's flow.

        If the flow is not yet known, the packet is inserted as its first item
        and None is returned.
        """
        key = TcpFlowKey.from_packet(pkt, src_addr_offset, dst_addr_offset, tcph_offset)
        items = self.items_by_flow.get(key)
        if items is not None:
            return items
        self.insert(pkt, src_addr_offset, dst_addr_offset, tcph_offset, tcph_len, bufs_index)
        return None

    def insert(
        self,
        pkt: Buffer,
        src_addr_offset: int,
        dst_addr_offset: int,
        tcph_offset: int,
        tcph_len: int,
        bufs_index: int,
    ) -> None:
        """Append an item describing ``pkt`` to its flow."""
        key = TcpFlowKey.from_packet(pkt, src_addr_offset, dst_addr_offset, tcph_offset)
        item = TcpGroItem(
            key=key,
            bufs_index=bufs_index & 0xFFFF,
            gso_size=max(len(pkt) - (tcph_offset + tcph_len), 0) & 0xFFFF,
            iph_len=tcph_offset & 0xFF,
            tcph_len=tcph_len & 0xFF,
            sent_seq=_u32(pkt, tcph_offset + 4),
            psh_set=bool(pkt[tcph_offset + TCP_FLAGS_OFFSET] & TCP_FLAG_PSH),
        )
        self.items_by_flow.setdefault(key, []).append(item)

    def update_at(self, item: TcpGroItem, i: int) -> None:
        """Replace the ``i``-th item of ``item``'s flow with ``item``."""
        self.items_by_flow[item.key][i] = item

    def delete_at(self, key: TcpFlowKey, i: int) -> None:
        """Remove the ``i``-th item of the flow ``key``."""
        del self.items_by_flow[key][i]

    def reset(self) -> None:
        """Forget every flow."""
        self.items_by_flow.clear()

    def __iter__(self) -> Iterator[TcpGroItem]:
        for items in self.items_by_flow.values():
            yield from items


@dataclasses.dataclass(frozen=True)
class UdpFlowKey:
    """Identifies a UDP flow."""

    src_addr: bytes
    dst_addr: bytes
    src_port: int
    dst_port: int
    is_v6: bool

    @classmethod
    def from_packet(
        cls, pkt: Buffer, src_addr_offset: int, dst_addr_offset: int, udph_offset: int
    ) -> "UdpFlowKey":
        """Build the key of the IP packet ``pkt`` whose UDP header is at ``udph_offset``."""
        src, dst, addr_size = _addresses(pkt, src_addr_offset, dst_addr_offset)
        return cls(
            src_addr=src,
            dst_addr=dst,
            src_port=_u16(pkt, udph_offset),
            dst_port=_u16(pkt, udph_offset + 2),
            is_v6=addr_size == 16,
        )


@dataclasses.dataclass
class UdpGroItem:
    """A UDP packet tracked while a batch of packets is evaluated for coalescing.

    ``csum_known_invalid`` being False does not mean the checksum is valid,
    only that it has not been found invalid.
    """

    key: UdpFlowKey
    bufs_index: int = 0
    gso_size: int = 0
    iph_len: int = 0
    csum_known_invalid: bool = False
    num_merged: int = 0


class UdpGroTable:
    """UDP flows and the packets tracked for each of them."""

    def __init__(self) -> None:
        self.items_by_flow: dict[UdpFlowKey, list[UdpGroItem]] = {}

    def lookup_or_insert(
        self,
        pkt: Buffer,
        src_addr_offset: int,
        dst_addr_offset: int,
        udph_offset: int,
        bufs_index: int,
    ) -> Optional[list[UdpGroItem]]:
        """Return the live item list of the packet's flow.

        If the flow is not yet known, the packet is inserted as its first item
        and None is returned.
        """
        key = UdpFlowKey.from_packet(pkt, src_addr_offset, dst_addr_offset, udph_offset)
        items = self.items_by_flow.get(key)
        if items is not None:
            return items
        self.insert(pkt, src_addr_offset, dst_addr_offset, udph_offset, bufs_index, False)
        return None

    def insert(
        self,
        pkt: Buffer,
        src_addr_offset: int,
        dst_addr_offset: int,
        udph_offset: int,
        bufs_index: int,
        csum_known_invalid: bool,
    ) -> None:
        """Append an item describing ``pkt`` to its flow."""
        key = UdpFlowKey.from_packet(pkt, src_addr_offset, dst_addr_offset, udph_offset)
        item = UdpGroItem(
            key=key,
            bufs_index=bufs_index & 0xFFFF,
            gso_size=max(len(pkt) - (udph_offset + UDP_HEADER_LEN), 0) & 0xFFFF,
            iph_len=udph_offset & 0xFF,
            csum_known_invalid=csum_known_invalid,
        )
        self.items_by_flow.setdefault(key, []).append(item)

    def update_at(self, item: UdpGroItem, i: int) -> None:
        """Replace the ``i``-th item of ``item``'s flow with ``item``."""
        self.items_by_flow[item.key][i] = item

    def reset(self) -> None:
        """Forget every flow."""
        self.items_by_flow.clear()

    def __iter__(self) -> Iterator[UdpGroItem]:
        for items in self.items_by_flow.values():
            yield from items