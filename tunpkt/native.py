"""A Linux TUN device, with virtio-net offloads when the kernel offers them."""

from __future__ import annotations

import errno
import fcntl
import os
import queue
import select
import socket
import struct
import threading
from typing import BinaryIO, Iterator, MutableSequence, Optional, Sequence

from .device import Device, Event
from .flows import TcpGroTable, UdpGroTable
from .gro import handle_gro
from .virtio import VIRTIO_NET_HDR_LEN, handle_virtio_read

CLONE_DEVICE_PATH = "/dev/net/tun"
IFNAMSIZ = 16
IFREQ_SIZE = IFNAMSIZ + 64
IDEAL_BATCH_SIZE = 128

TUNSETIFF = 0x400454CA
TUNGETIFF = 0x800454D2
TUNSETOFFLOAD = 0x400454D0
SIOCGIFMTU = 0x8921
SIOCSIFMTU = 0x8922
SIOCGIFINDEX = 0x8933

IFF_TUN = 0x0001
IFF_NO_PI = 0x1000
IFF_VNET_HDR = 0x4000
IFF_RUNNING = 0x40

TUN_F_CSUM = 0x01
TUN_F_TSO4 = 0x02
TUN_F_TSO6 = 0x04
TUN_F_USO4 = 0x20
TUN_F_USO6 = 0x40
TUN_TCP_OFFLOADS = TUN_F_CSUM | TUN_F_TSO4 | TUN_F_TSO6
TUN_UDP_OFFLOADS = TUN_F_USO4 | TUN_F_USO6

NETLINK_ROUTE = 0
RTMGRP_LINK = 0x1
RTMGRP_IPV4_IFADDR = 0x10
RTMGRP_IPV6_IFADDR = 0x100
NLMSG_DONE = 3
RTM_NEWLINK = 16

_NLMSGHDR = struct.Struct("=IHHII")
_IFINFOMSG = struct.Struct("=BBHiII")

_POLL_INTERVAL = 0.1
_HACK_UP = 1
_HACK_DOWN = 2


def _closed_error() -> OSError:
    return OSError(errno.EBADF, "file already closed")


def _ifreq(name: str) -> bytearray:
    encoded = name.encode()
    if len(encoded) >= IFNAMSIZ:
        raise ValueError("interface name too long")
    return bytearray(encoded.ljust(IFREQ_SIZE, b"\x00"))


def _get_if_index(name: str) -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        ifr = _ifreq(name)
        fcntl.ioctl(sock.fileno(), SIOCGIFINDEX, ifr, True)
        return struct.unpack_from("=i", ifr, IFNAMSIZ)[0]


def _create_netlink_socket() -> socket.socket:
    sock = socket.socket(socket.AF_NETLINK, socket.SOCK_RAW, NETLINK_ROUTE)
    try:
        sock.bind((0, RTMGRP_LINK | RTMGRP_IPV4_IFADDR | RTMGRP_IPV6_IFADDR))
    except OSError:
        sock.close()
        raise
    return sock


def _parse_link_events(msg: bytes, index: int) -> list[Event]:
    """Return the events that the rtnetlink message ``msg`` implies for ``index``."""
    events: list[Event] = []
    was_ever_up = False
    pos = 0
    while len(msg) - pos >= _NLMSGHDR.size:
        length, msg_type = _NLMSGHDR.unpack_from(msg, pos)[:2]
        if length > len(msg) - pos or length < _NLMSGHDR.size:
            break
        if msg_type == NLMSG_DONE:
            break
        if msg_type == RTM_NEWLINK and length >= _NLMSGHDR.size + _IFINFOMSG.size:
            if_index, flags = _IFINFOMSG.unpack_from(msg, pos + _NLMSGHDR.size)[3:5]
            if if_index == index:
                if flags & IFF_RUNNING:
                    events.append(Event.UP)
                    was_ever_up = True
                elif was_ever_up:
                    # No DOWN before an UP, to avoid racing the write probe.
                    events.append(Event.DOWN)
                events.append(Event.MTU_UPDATE)
        pos += length
    return events


class NativeTun(Device):
    """A TUN device backed by a file opened on the kernel's TUN driver."""

    def __init__(
        self,
        tun_file: BinaryIO,
        *,
        name: Optional[str] = None,
        vnet_hdr: bool = False,
        udp_gso: bool = False,
        batch_size: int = 1,
    ) -> None:
        self._file = tun_file
        self._name_cache = name
        self._name_err: Optional[OSError] = None
        self._name_lock = threading.Lock()
        self._vnet_hdr = vnet_hdr
        self._udp_gso = udp_gso
        self._batch_size = batch_size

        self._events: "queue.Queue[Optional[Event]]" = queue.Queue()
        self._errors: "queue.Queue[BaseException]" = queue.Queue()

        self._read_lock = threading.Lock()
        self._read_buff = bytearray(VIRTIO_NET_HDR_LEN + 65535)
        self._write_lock = threading.Lock()
        self._tcp_gro_table = TcpGroTable()
        self._udp_gro_table = UdpGroTable()

        self._close_lock = threading.Lock()
        self._closed = False

        self._index = 0
        self._netlink_sock: Optional[socket.socket] = None
        self._status_shutdown: Optional[threading.Event] = None
        self._hack_done = threading.Event()
        self._cancel_lock = threading.Lock()
        self._cancel_r: Optional[int] = None
        self._cancel_w: Optional[int] = None

    # Device interface

    def file(self) -> BinaryIO:
        return self._file

    def name(self) -> str:
        with self._name_lock:
            if self._name_cache is None and self._name_err is None:
                try:
                    self._name_cache = self._name_slow()
                except OSError as exc:
                    self._name_err = exc
        if self._name_err is not None:
            raise self._name_err
        return self._name_cache

    def mtu(self) -> int:
        name = self.name()
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            ifr = _ifreq(name)
            try:
                fcntl.ioctl(sock.fileno(), SIOCGIFMTU, ifr, True)
            except OSError as exc:
                raise OSError(exc.errno, f"failed to get MTU of TUN device: {exc.strerror}") from exc
            return struct.unpack_from("=i", ifr, IFNAMSIZ)[0]

    def events(self) -> Iterator[Event]:
        while True:
            event = self._events.get()
            if event is None:
                self._events.put(None)
                return
            yield event

    def batch_size(self) -> int:
        return self._batch_size

    def read(self, bufs: Sequence[bytearray], offset: int) -> list[int]:
        """Read one datagram from the device, splitting it if it is offloaded."""
        with self._read_lock:
            try:
                err = self._errors.get_nowait()
            except queue.Empty:
                pass
            else:
                raise err
            if self._vnet_hdr:
                with memoryview(self._read_buff) as view:
                    n = self._read_into(view)
                return handle_virtio_read(bytes(self._read_buff[:n]), bufs, offset)
            with memoryview(bufs[0]) as view:
                n = self._read_into(view[offset:])
            return [n]

    def write(self, bufs: MutableSequence[bytearray], offset: int) -> int:
        """Write the packets in ``bufs`` and return the number of bytes written.

        With offloads enabled the packets are coalesced first, which may
        replace or reorder the entries of ``bufs``. If some writes fail, an
        OSError is raised whose ``written`` attribute holds the byte count of
        the writes that succeeded.
        """
        with self._write_lock:
            try:
                if self._vnet_hdr:
                    to_write: Sequence[int] = handle_gro(
                        bufs, offset, self._tcp_gro_table, self._udp_gro_table, self._udp_gso
                    )
                    offset -= VIRTIO_NET_HDR_LEN
                else:
                    to_write = range(len(bufs))
                total = 0
                failures: list[OSError] = []
                for i in to_write:
                    try:
                        n = self._write_packet(bytes(bufs[i][offset:]))
                    except OSError as exc:
                        if exc.errno in (errno.EBADFD, errno.EBADF):
                            closed = _closed_error()
                            closed.written = total
                            raise closed from exc
                        failures.append(exc)
                        continue
                    total += n
                if failures:
                    joined = OSError(failures[0].errno, "; ".join(str(e) for e in failures))
                    joined.written = total
                    raise joined
                return total
            finally:
                self._tcp_gro_table.reset()
                self._udp_gro_table.reset()

    def close(self) -> None:
        first_err: Optional[BaseException] = None
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
            if self._status_shutdown is not None:
                try:
                    self._stop_listeners()
                except OSError as exc:
                    first_err = exc
            else:
                self._events.put(None)
            try:
                self._file.close()
            except OSError as exc:
                if first_err is None:
                    first_err = exc
        if first_err is not None:
            raise first_err

    # File I/O

    def _fileno(self) -> int:
        try:
            return self._file.fileno()
        except (ValueError, OSError) as exc:
            raise _closed_error() from exc

    def _wait(self, for_write: bool) -> None:
        fd = self._fileno()
        if for_write:
            select.select([], [fd], [], _POLL_INTERVAL)
        else:
            select.select([fd], [], [], _POLL_INTERVAL)

    def _read_into(self, view: memoryview) -> int:
        while True:
            try:
                n = self._file.readinto(view)
            except ValueError as exc:
                raise _closed_error() from exc
            except OSError as exc:
                if exc.errno == errno.EBADFD:
                    raise _closed_error() from exc
                raise
            if n is not None:
                return n
            self._wait(for_write=False)

    def _write_packet(self, data: bytes) -> int:
        while True:
            try:
                n = self._file.write(data)
            except ValueError as exc:
                raise _closed_error() from exc
            if n is not None:
                return n
            self._wait(for_write=True)

    # Kernel configuration

    def _name_slow(self) -> str:
        ifr = bytearray(IFREQ_SIZE)
        try:
            fcntl.ioctl(self._fileno(), TUNGETIFF, ifr, True)
        except OSError as exc:
            raise OSError(exc.errno, f"failed to get name of TUN device: {exc.strerror}") from exc
        return ifr.split(b"\x00", 1)[0].decode()

    def _set_mtu(self, mtu: int) -> None:
        name = self.name()
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
            ifr = _ifreq(name)
            struct.pack_into("=I", ifr, IFNAMSIZ, mtu & 0xFFFFFFFF)
            try:
                fcntl.ioctl(sock.fileno(), SIOCSIFMTU, ifr, True)
            except OSError as exc:
                raise OSError(exc.errno, f"failed to set MTU of TUN device: {exc.strerror}") from exc

    def _init_from_flags(self, name: str) -> None:
        fd = self._fileno()
        ifr = _ifreq(name)
        fcntl.ioctl(fd, TUNGETIFF, ifr, True)
        flags = struct.unpack_from("=H", ifr, IFNAMSIZ)[0]
        if flags & IFF_VNET_HDR:
            # TCP offloads are required whenever virtio-net headers are on.
            fcntl.ioctl(fd, TUNSETOFFLOAD, TUN_TCP_OFFLOADS)
            self._vnet_hdr = True
            self._batch_size = IDEAL_BATCH_SIZE
            try:
                fcntl.ioctl(fd, TUNSETOFFLOAD, TUN_TCP_OFFLOADS | TUN_UDP_OFFLOADS)
            except OSError:
                self._udp_gso = False
            else:
                self._udp_gso = True
        else:
            self._batch_size = 1

    # Status listeners

    def _start_listeners(self, index: int, sock: socket.socket) -> None:
        self._index = index
        self._netlink_sock = sock
        self._cancel_r, self._cancel_w = os.pipe()
        self._status_shutdown = threading.Event()
        threading.Thread(target=self._netlink_listener, daemon=True).start()
        threading.Thread(target=self._hack_listener, daemon=True).start()

    def _stop_listeners(self) -> None:
        assert self._status_shutdown is not None
        self._status_shutdown.set()
        with self._cancel_lock:
            if self._cancel_w is not None:
                os.write(self._cancel_w, b"\x00")

    def _hack_listener(self) -> None:
        # An empty write reports EINVAL when the link is up and EIO when it is
        # down; this works across network namespaces.
        last = 0
        try:
            while True:
                try:
                    fd = self._file.fileno()
                except (ValueError, OSError):
                    return
                try:
                    os.write(fd, b"")
                    return
                except OSError as exc:
                    code = exc.errno
                if code == errno.EINVAL:
                    if last != _HACK_UP:
                        self._events.put(Event.UP)
                        last = _HACK_UP
                elif code == errno.EIO:
                    if last != _HACK_DOWN:
                        self._events.put(Event.DOWN)
                        last = _HACK_DOWN
                else:
                    return
                if self._status_shutdown.wait(1.0):
                    return
        finally:
            self._hack_done.set()

    def _netlink_listener(self) -> None:
        sock = self._netlink_sock
        cancel_r = self._cancel_r
        try:
            while True:
                try:
                    readable, _, _ = select.select([sock, cancel_r], [], [])
                except OSError as exc:
                    self._errors.put(OSError(exc.errno, f"netlink socket closed: {exc.strerror}"))
                    return
                if cancel_r in readable:
                    self._errors.put(OSError("netlink socket closed"))
                    return
                try:
                    msg = sock.recv(1 << 16)
                except (InterruptedError, BlockingIOError):
                    continue
                except OSError as exc:
                    self._errors.put(
                        OSError(exc.errno, f"failed to receive netlink message: {exc.strerror}")
                    )
                    return
                if self._status_shutdown.is_set():
                    return
                for event in _parse_link_events(msg, self._index):
                    self._events.put(event)
        finally:
            sock.close()
            self._hack_done.wait()
            self._events.put(None)
            with self._cancel_lock:
                for fd in (self._cancel_r, self._cancel_w):
                    if fd is not None:
                        os.close(fd)
                self._cancel_r = self._cancel_w = None


def create_tun(name: str, mtu: int) -> NativeTun:
    """Create a TUN interface called ``name`` with the given MTU."""
    try:
        fd = os.open(CLONE_DEVICE_PATH, os.O_RDWR | os.O_CLOEXEC)
    except FileNotFoundError as exc:
        raise FileNotFoundError(
            errno.ENOENT, f"create_tun({name!r}) failed; {CLONE_DEVICE_PATH} does not exist"
        ) from exc
    try:
        ifr = _ifreq(name)
        struct.pack_into("=H", ifr, IFNAMSIZ, IFF_TUN | IFF_NO_PI | IFF_VNET_HDR)
        fcntl.ioctl(fd, TUNSETIFF, ifr, True)
        os.set_blocking(fd, False)
    except BaseException:
        os.close(fd)
        raise
    return create_tun_from_file(os.fdopen(fd, "r+b", buffering=0), mtu)


def create_tun_from_file(file: BinaryIO, mtu: int) -> NativeTun:
    """Wrap an open TUN file, start watching its link state and set its MTU."""
    tun = NativeTun(file)
    name = tun.name()
    tun._init_from_flags(name)
    index = _get_if_index(name)
    sock = _create_netlink_socket()
    tun._start_listeners(index, sock)
    try:
        tun._set_mtu(mtu)
    except OSError:
        tun._stop_listeners()
        raise
    return tun


def create_unmonitored_tun_from_fd(fd: int) -> tuple[NativeTun, str]:
    """Wrap the TUN file descriptor ``fd`` without watching its link state.

    Returns the device and its interface name.
    """
    os.set_blocking(fd, False)
    file = os.fdopen(fd, "r+b", buffering=0)
    tun = NativeTun(file)
    name = tun.name()
    tun._init_from_flags(name)
    return tun, name