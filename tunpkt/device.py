"""The TUN device interface shared by all device implementations."""

from __future__ import annotations

import abc
import enum
from typing import BinaryIO, Iterator, Optional, Sequence


class Event(enum.IntFlag):
    """Device events delivered through :meth:`Device.events`."""

    UP = 1
    DOWN = 2
    MTU_UPDATE = 4


class TooManySegmentsError(Exception):
    """Segmentation produced more packets than the supplied buffers can hold.

    Reads may continue after this error.
    """

    def __init__(self, message: str = "too many segments") -> None:
        super().__init__(message)


class Device(abc.ABC):
    """A TUN device that reads and writes batches of IP packets."""

    @abc.abstractmethod
    def file(self) -> Optional[BinaryIO]:
        """Return the file backing the device, or None if there is none."""

    @abc.abstractmethod
    def read(self, bufs: Sequence[bytearray], offset: int) -> list[int]:
        """Read packets into ``bufs`` starting at ``offset`` in each buffer.

        Returns the size of each packet read; the number of packets read is
        the length of the returned list.
        """

    @abc.abstractmethod
    def write(self, bufs: Sequence[bytes], offset: int) -> int:
        """Write the packets in ``bufs``, each starting at ``offset``.

        Returns the number of packets written.
        """

    @abc.abstractmethod
    def mtu(self) -> int:
        """Return the MTU of the device."""

    @abc.abstractmethod
    def name(self) -> str:
        """Return the current name of the device."""

    @abc.abstractmethod
    def events(self) -> Iterator[Event]:
        """Iterate over device events until the device is closed."""

    @abc.abstractmethod
    def close(self) -> None:
        """Stop the device and end its event stream."""

    @abc.abstractmethod
    def batch_size(self) -> int:
        """Return the preferred maximum number of packets per read or write."""

    def __enter__(self) -> "Device":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()