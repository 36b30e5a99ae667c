# tunpkt

Packet handling for TUN devices, in pure Python with no dependencies beyond
the standard library.

| Module | What it holds |
| --- | --- |
| `tunpkt.checksum` | `checksum`, `checksum_no_fold` and `pseudo_header_checksum_no_fold`: RFC 1071 ones' complement sums |
| `tunpkt.device` | the abstract `Device` interface, the `Event` flags (`UP`, `DOWN`, `MTU_UPDATE`) and `TooManySegmentsError` |
| `tunpkt.channel` | `ChannelTUN`, an in-memory device backed by queues, and `ping`, an ICMPv4 echo request builder |
| `tunpkt.virtio` | `VirtioNetHdr`, `GsoType`, `gso_split`, `gso_none_checksum` and `handle_virtio_read` |
| `tunpkt.flows` | per-flow tables for generic receive offload: `TcpGroTable`, `UdpGroTable` and their keys and items |
| `tunpkt.coalesce` | the rules for merging packets: `tcp_packets_can_coalesce`, `udp_packets_can_coalesce`, `coalesce_tcp_packets`, `coalesce_udp_packets`, `checksum_valid` |
| `tunpkt.accounting` | `apply_tcp_coalesce_accounting` and `apply_udp_coalesce_accounting`, which fix headers of merged packets |
| `tunpkt.gro` | `handle_gro`, which coalesces a batch of packets, and the per-protocol `tcp_gro` and `udp_gro` |
| `tunpkt.native` | `NativeTun`, a Linux TUN device, opened with `create_tun`, `create_tun_from_file` or `create_unmonitored_tun_from_fd` |

## Installing

```
pip install tunpkt
```

Opening a real TUN device needs Linux and the rights to use `/dev/net/tun`.
Everything else works on any platform.

## Checksums

```python
from tunpkt.checksum import checksum, pseudo_header_checksum_no_fold

partial = pseudo_header_checksum_no_fold(6, src_addr, dst_addr, len(segment))
value = checksum(segment, partial) ^ 0xFFFF
```

`checksum` returns the folded 16-bit sum; complement it to get the value that
goes in a header.

## Coalescing a batch before writing

Each buffer holds an IP packet after `offset` bytes of headroom; `offset` must
be at least `VIRTIO_NET_HDR_LEN`, since the virtio-net header is written just
before the packet:

```python
from tunpkt.flows import TcpGroTable, UdpGroTable
from tunpkt.gro import handle_gro
from tunpkt.virtio import VIRTIO_NET_HDR_LEN

to_write = handle_gro(bufs, offset, TcpGroTable(), UdpGroTable(), True)
for index in to_write:
    device_file.write(bufs[index][offset - VIRTIO_NET_HDR_LEN:])
```

`handle_gro` returns the indices of the packets to write. It may replace or
swap entries of `bufs`, so read the packets from `bufs` after the call. It
raises `ValueError` for an offset that does not fit a buffer.

## Splitting a read

```python
from tunpkt.virtio import handle_virtio_read

sizes = handle_virtio_read(raw, bufs, offset)
```

`raw` starts with a virtio-net header. `handle_virtio_read` places each packet
`offset` bytes into its buffer and returns their sizes. It raises
`TooManySegmentsError` when `bufs` is too short for the segments, and
`ValueError` for malformed input.

## Devices

Every device implements `Device`: `read(bufs, offset)` returns the list of
packet sizes read, `write(bufs, offset)` sends packets, and `events()` yields
`Event` values until the device is closed. Devices are context managers.

`ChannelTUN` connects a device to two queues: packets written to
`channel.tun()` appear on `channel.inbound`, and packets put on
`channel.outbound` are returned by its reads.

```python
from tunpkt.channel import ChannelTUN, ping

channel = ChannelTUN()
device = channel.tun()
device.write([ping("192.0.2.2", "192.0.2.1")], 0)
packet = channel.inbound.get()
```

`NativeTun.write` returns the number of bytes written. When the kernel offers
virtio-net headers, `NativeTun` splits offloaded reads and coalesces writes
with the functions above.

## What it does not do

`tunpkt` is a library only: it has no command-line program, and it does not
run a VPN or any tunnel protocol. Assigning addresses and routes to an
interface is left to the system's own tools. `NativeTun` works on Linux only.

## Running the tests

```
pip install tunpkt[test]
pytest
```