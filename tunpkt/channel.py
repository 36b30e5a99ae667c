"""An in-memory TUN device backed by queues, for tests and loopback use."""

from __future__ import annotations

import errno
import ipaddress
import queue
import threading
from typing import Iterator, Optional, Sequence

from .device import Device, Event

DEFAULT_MTU = 1420

_POLL_INTERVAL = 0.05

_ICMPV4_PROTOCOL_NUMBER = 1
_ICMPV4_ECHO = 8
_ICMPV4_CHECKSUM_OFFSET = 2
_ICMPV4_SIZE = 8
_IPV4_SIZE = 20
_IPV4_TOTAL_LEN_OFFSET = 2
_IPV4_CHECKSUM_OFFSET = 10
_TTL = 65
_HEADER_SIZE = _IPV4_SIZE + _ICMPV4_SIZE


def _internet_checksum(buf: bytes, initial: int) -> int:
    """Return the complemented RFC 1071 checksum of ``buf`` seeded with ``initial``."""
    padded = bytes(buf) + (b"\x00" if len(buf) % 2 else b"")
    total = initial + sum(
        int.from_bytes(padded[i:i + 2], "big") for i in range(0, len(padded), 2)
    )
    while total > 0xFFFF:
        total = (total >> 16) + (total & 0xFFFF)
    return ~total & 0xFFFF


def _gen_icmpv4(payload: bytes, dst: ipaddress.IPv4Address, src: ipaddress.IPv4Address) -> bytes:
    pkt = bytearray(_HEADER_SIZE + len(payload))

    icmp = bytearray(_ICMPV4_SIZE)
    icmp[0] = _ICMPV4_ECHO
    icmp[1] = 0
    csum = ~_internet_checksum(icmp, _internet_checksum(payload, 0)) & 0xFFFF
    icmp[_ICMPV4_CHECKSUM_OFFSET:_ICMPV4_CHECKSUM_OFFSET + 2] = csum.to_bytes(2, "big")

    ip = bytearray(_IPV4_SIZE)
    ip[0] = (4 << 4) | (_IPV4_SIZE // 4)
    ip[_IPV4_TOTAL_LEN_OFFSET:_IPV4_TOTAL_LEN_OFFSET + 2] = len(pkt).to_bytes(2, "big")
    ip[8] = _TTL
    ip[9] = _ICMPV4_PROTOCOL_NUMBER
    ip[12:16] = src.packed
    ip[16:20] = dst.packed
    csum = ~_internet_checksum(ip, 0) & 0xFFFF
    ip[_IPV4_CHECKSUM_OFFSET:_IPV4_CHECKSUM_OFFSET + 2] = csum.to_bytes(2, "big")

    pkt[:_IPV4_SIZE] = ip
    pkt[_IPV4_SIZE:_HEADER_SIZE] = icmp
    pkt[_HEADER_SIZE:] = payload
    return bytes(pkt)


def ping(dst, src) -> bytes:
    """Build an ICMPv4 echo request packet from ``src`` to ``dst``."""
    dst_addr = ipaddress.IPv4Address(dst)
    src_addr = ipaddress.IPv4Address(src)
    local_port = 1337
    seq = 0
    payload = local_port.to_bytes(2, "big") + seq.to_bytes(2, "big")
    return _gen_icmpv4(payload, dst_addr, src_addr)


def _closed_error() -> OSError:
    return OSError(errno.EBADF, "file already closed")


class ChannelTUN:
    """A pair of packet queues exposed as a TUN device.

    Packets written to the device appear on :attr:`inbound`; packets put on
    :attr:`outbound` are returned by the device's reads.
    """

    def __init__(self) -> None:
        self.inbound: "queue.Queue[bytes]" = queue.Queue()
        self.outbound: "queue.Queue[bytes]" = queue.Queue()
        self._closed = threading.Event()
        self._close_lock = threading.Lock()
        self._events: "queue.Queue[Optional[Event]]" = queue.Queue()
        self._events.put(Event.UP)
        self._device = ChannelDevice(self)

    def tun(self) -> "ChannelDevice":
        """Return the device view of this channel."""
        return self._device

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _close(self) -> None:
        with self._close_lock:
            if self._closed.is_set():
                return
            self._closed.set()
            self._events.put(None)


class ChannelDevice(Device):
    """The :class:`Device` side of a :class:`ChannelTUN`."""

    def __init__(self, channel: ChannelTUN) -> None:
        self._channel = channel

    def file(self):
        return None

    def read(self, bufs: Sequence[bytearray], offset: int) -> list[int]:
        """Wait for one outbound packet and copy it into ``bufs[0]``."""
        channel = self._channel
        while True:
            if channel.closed:
                raise _closed_error()
            try:
                msg = channel.outbound.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                continue
            target = bufs[0]
            n = max(0, min(len(msg), len(target) - offset))
            target[offset:offset + n] = msg[:n]
            return [n]

    def write(self, bufs: Sequence[bytes], offset: int) -> int:
        """Deliver each packet, without its first ``offset`` bytes, to ``inbound``."""
        channel = self._channel
        for data in bufs:
            if channel.closed:
                raise _closed_error()
            channel.inbound.put(bytes(data[offset:]))
        return len(bufs)

    def mtu(self) -> int:
        return DEFAULT_MTU

    def name(self) -> str:
        return "loopbackTun1"

    def events(self) -> Iterator[Event]:
        events = self._channel._events
        while True:
            event = events.get()
            if event is None:
                events.put(None)
                return
            yield event

    def close(self) -> None:
        self._channel._close()

    def batch_size(self) -> int:
        return 1