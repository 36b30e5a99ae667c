"""TUN device packet handling: checksums, devices, virtio-net GSO splitting and GRO coalescing."""

__version__ = "0.1.0"

__all__ = [
    "accounting",
    "channel",
    "checksum",
    "coalesce",
    "device",
    "flows",
    "gro",
    "native",
    "virtio",
]