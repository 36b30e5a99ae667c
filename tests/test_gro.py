import ipaddress

import pytest

from tunpkt.checksum import checksum, pseudo_header_checksum_no_fold
from tunpkt.coalesce import checksum_valid
from tunpkt.flows import TcpGroTable, UdpGroTable
from tunpkt.gro import (
    GroCandidate,
    GroResult,
    handle_gro,
    packet_is_gro_candidate,
    tcp_gro,
    udp_gro,
)
from tunpkt.virtio import IPPROTO_TCP, IPPROTO_UDP, VIRTIO_NET_HDR_LEN, handle_virtio_read

OFF = VIRTIO_NET_HDR_LEN
ACK = 0x10
PSH = 0x08
IPPROTO_GRE = 47

IP4_A = ipaddress.IPv4Address("192.0.2.1").packed
IP4_B = ipaddress.IPv4Address("192.0.2.2").packed
IP4_C = ipaddress.IPv4Address("192.0.2.3").packed
IP6_A = ipaddress.IPv6Address("2001:db8::1").packed
IP6_B = ipaddress.IPv6Address("2001:db8::2").packed
IP6_C = ipaddress.IPv6Address("2001:db8::3").packed


def _csum_field(segment, proto, src, dst, at):
    pseudo = pseudo_header_checksum_no_fold(proto, src, dst, len(segment))
    segment[at:at + 2] = (~checksum(segment, pseudo) & 0xFFFF).to_bytes(2, "big")


def _ipv4(total_len, proto, src, dst, ttl=64, tos=0, flags=0):
    hdr = bytearray(20)
    hdr[0] = 0x45
    hdr[1] = tos
    hdr[2:4] = total_len.to_bytes(2, "big")
    hdr[6:8] = (flags << 13).to_bytes(2, "big")
    hdr[8] = ttl
    hdr[9] = proto
    hdr[12:16] = src
    hdr[16:20] = dst
    hdr[10:12] = (~checksum(hdr, 0) & 0xFFFF).to_bytes(2, "big")
    return hdr


def _ipv6(payload_len, proto, src, dst, hop_limit=64, traffic_class=0):
    hdr = bytearray(40)
    hdr[0] = 0x60 | (traffic_class >> 4)
    hdr[1] = (traffic_class & 0x0F) << 4
    hdr[4:6] = payload_len.to_bytes(2, "big")
    hdr[6] = proto
    hdr[7] = hop_limit
    hdr[8:24] = src
    hdr[24:40] = dst
    return hdr


def _tcp_segment(flags, payload_len, seq):
    seg = bytearray(20 + payload_len)
    seg[0:2] = (1).to_bytes(2, "big")
    seg[2:4] = (1).to_bytes(2, "big")
    seg[4:8] = seq.to_bytes(4, "big")
    seg[8:12] = (1).to_bytes(4, "big")
    seg[12] = 5 << 4
    seg[13] = flags
    seg[14:16] = (3000).to_bytes(2, "big")
    return seg


def _udp_segment(payload_len):
    seg = bytearray(8 + payload_len)
    seg[0:2] = (1).to_bytes(2, "big")
    seg[2:4] = (1).to_bytes(2, "big")
    seg[4:6] = len(seg).to_bytes(2, "big")
    return seg


def tcp4(dst, flags, size, seq, **ip):
    seg = _tcp_segment(flags, size, seq)
    _csum_field(seg, IPPROTO_TCP, IP4_A, dst, 16)
    return bytearray(OFF) + _ipv4(20 + len(seg), IPPROTO_TCP, IP4_A, dst, **ip) + seg


def tcp6(dst, flags, size, seq, **ip):
    seg = _tcp_segment(flags, size, seq)
    _csum_field(seg, IPPROTO_TCP, IP6_A, dst, 16)
    return bytearray(OFF) + _ipv6(len(seg), IPPROTO_TCP, IP6_A, dst, **ip) + seg


def udp4(dst, size, **ip):
    seg = _udp_segment(size)
    _csum_field(seg, IPPROTO_UDP, IP4_A, dst, 6)
    return bytearray(OFF) + _ipv4(20 + len(seg), IPPROTO_UDP, IP4_A, dst, **ip) + seg


def udp6(dst, size, **ip):
    seg = _udp_segment(size)
    _csum_field(seg, IPPROTO_UDP, IP6_A, dst, 6)
    return bytearray(OFF) + _ipv6(len(seg), IPPROTO_UDP, IP6_A, dst, **ip) + seg


def flip_tcp4_checksum(b):
    at = OFF + 20 + 16
    b[at] ^= 0xFF
    b[at + 1] ^= 0xFF
    return b


def flip_udp4_checksum(b):
    at = OFF + 20 + 6
    b[at] ^= 0xFF
    b[at + 1] ^= 0xFF
    return b


def _mixed_flows():
    return [
        tcp4(IP4_B, ACK, 100, 1),
        udp4(IP4_B, 100),
        udp4(IP4_C, 100),
        tcp4(IP4_B, ACK, 100, 101),
        tcp4(IP4_C, ACK, 100, 201),
        tcp6(IP6_B, ACK, 100, 1),
        tcp6(IP6_B, ACK, 100, 101),
        tcp6(IP6_C, ACK, 100, 201),
        udp4(IP4_B, 100),
        udp6(IP6_B, 100),
        udp6(IP6_B, 100),
    ]


HANDLE_GRO_CASES = [
    (
        "multiple protocols and flows",
        _mixed_flows,
        True,
        [0, 1, 2, 4, 5, 7, 9],
        [240, 228, 128, 140, 260, 160, 248],
    ),
    (
        "multiple protocols and flows no UDP GRO",
        _mixed_flows,
        False,
        [0, 1, 2, 4, 5, 7, 8, 9, 10],
        [240, 128, 128, 140, 260, 160, 128, 148, 148],
    ),
    (
        "PSH interleaved",
        lambda: [
            tcp4(IP4_B, ACK, 100, 1),
            tcp4(IP4_B, ACK | PSH, 100, 101),
            tcp4(IP4_B, ACK, 100, 201),
            tcp4(IP4_B, ACK, 100, 301),
            tcp6(IP6_B, ACK, 100, 1),
            tcp6(IP6_B, ACK | PSH, 100, 101),
            tcp6(IP6_B, ACK, 100, 201),
            tcp6(IP6_B, ACK, 100, 301),
        ],
        True,
        [0, 2, 4, 6],
        [240, 240, 260, 260],
    ),
    (
        "coalesceItemInvalidCSum",
        lambda: [
            flip_tcp4_checksum(tcp4(IP4_B, ACK, 100, 1)),
            tcp4(IP4_B, ACK, 100, 101),
            tcp4(IP4_B, ACK, 100, 201),
            flip_udp4_checksum(udp4(IP4_B, 100)),
            udp4(IP4_B, 100),
            udp4(IP4_B, 100),
        ],
        True,
        [0, 1, 3, 4],
        [140, 240, 128, 228],
    ),
    (
        "out of order",
        lambda: [
            tcp4(IP4_B, ACK, 100, 101),
            tcp4(IP4_B, ACK, 100, 1),
            tcp4(IP4_B, ACK, 100, 201),
        ],
        True,
        [0],
        [340],
    ),
    (
        "unequal TTL",
        lambda: [
            tcp4(IP4_B, ACK, 100, 1),
            tcp4(IP4_B, ACK, 100, 101, ttl=65),
            udp4(IP4_B, 100),
            udp4(IP4_B, 100, ttl=65),
        ],
        True,
        [0, 1, 2, 3],
        [140, 140, 128, 128],
    ),
    (
        "unequal ToS",
        lambda: [
            tcp4(IP4_B, ACK, 100, 1),
            tcp4(IP4_B, ACK, 100, 101, tos=1),
            udp4(IP4_B, 100),
            udp4(IP4_B, 100, tos=1),
        ],
        True,
        [0, 1, 2, 3],
        [140, 140, 128, 128],
    ),
    (
        "unequal flags more fragments set",
        lambda: [
            tcp4(IP4_B, ACK, 100, 1),
            tcp4(IP4_B, ACK, 100, 101, flags=1),
            udp4(IP4_B, 100),
            udp4(IP4_B, 100, flags=1),
        ],
        True,
        [0, 1, 2, 3],
        [140, 140, 128, 128],
    ),
    (
        "unequal flags DF set",
        lambda: [
            tcp4(IP4_B, ACK, 100, 1),
            tcp4(IP4_B, ACK, 100, 101, flags=2),
            udp4(IP4_B, 100),
            udp4(IP4_B, 100, flags=2),
        ],
        True,
        [0, 1, 2, 3],
        [140, 140, 128, 128],
    ),
    (
        "ipv6 unequal hop limit",
        lambda: [
            tcp6(IP6_B, ACK, 100, 1),
            tcp6(IP6_B, ACK, 100, 101, hop_limit=65),
            udp6(IP6_B, 100),
            udp6(IP6_B, 100, hop_limit=65),
        ],
        True,
        [0, 1, 2, 3],
        [160, 160, 148, 148],
    ),
    (
        "ipv6 unequal traffic class",
        lambda: [
            tcp6(IP6_B, ACK, 100, 1),
            tcp6(IP6_B, ACK, 100, 101, traffic_class=1),
            udp6(IP6_B, 100),
            udp6(IP6_B, 100, traffic_class=1),
        ],
        True,
        [0, 1, 2, 3],
        [160, 160, 148, 148],
    ),
]


def test_handle_gro_fuzz_seed_invariants():
    pkts = [
        tcp4(IP4_B, ACK, 100, 1),
        tcp4(IP4_B, ACK, 100, 101),
        tcp4(IP4_C, ACK, 100, 201),
        tcp6(IP6_B, ACK, 100, 1),
        tcp6(IP6_B, ACK, 100, 101),
        tcp6(IP6_C, ACK, 100, 201),
        udp4(IP4_B, 100),
        udp4(IP4_B, 100),
        udp4(IP4_C, 100),
        udp6(IP6_B, 100),
        udp6(IP6_B, 100),
        udp6(IP6_C, 100),
    ]
    to_write = handle_gro(pkts, OFF, TcpGroTable(), UdpGroTable(), True)
    assert len(to_write) <= len(pkts)
    assert len(set(to_write)) == len(to_write)
    assert all(0 <= i < len(pkts) for i in to_write)


@pytest.mark.parametrize("bad_offset", [0, OFF - 1, OFF + 1000])
def test_handle_gro_invalid_offset(bad_offset):
    with pytest.raises(ValueError, match="invalid offset"):
        handle_gro([tcp4(IP4_B, ACK, 100, 1)], bad_offset, TcpGroTable(), UdpGroTable(), True)


def test_handle_gro_then_split_restores_segments():
    pkts = [tcp4(IP4_B, ACK, 100, 1), tcp4(IP4_B, ACK, 100, 101)]
    assert handle_gro(pkts, OFF, TcpGroTable(), UdpGroTable(), True) == [0]
    out = [bytearray(65535) for _ in range(4)]
    sizes = handle_virtio_read(pkts[0], out, OFF)
    assert sizes == [140, 140]
    for buf, size in zip(out, sizes):
        segment = buf[OFF:OFF + size]
        assert checksum(segment[:20], 0) == 0xFFFF
        assert checksum_valid(segment, 20, IPPROTO_TCP, False)
    assert int.from_bytes(out[1][OFF + 24:OFF + 28], "big") == 101


def test_tcp_gro_results():
    bufs = [tcp4(IP4_B, ACK, 100, 1), tcp4(IP4_B, ACK, 100, 101), tcp4(IP4_B, ACK, 0, 201)]
    table = TcpGroTable()
    assert tcp_gro(bufs, OFF, 0, table, False) == GroResult.TABLE_INSERT
    assert tcp_gro(bufs, OFF, 1, table, False) == GroResult.COALESCED
    assert tcp_gro(bufs, OFF, 2, table, False) == GroResult.NOOP
    assert len(bufs[0]) - OFF == 240


def test_tcp_gro_rejects_mismatched_total_length():
    pkt = tcp4(IP4_B, ACK, 100, 1)
    pkt[OFF + 2:OFF + 4] = (10).to_bytes(2, "big")
    assert tcp_gro([pkt], OFF, 0, TcpGroTable(), False) == GroResult.NOOP


def test_tcp_gro_rejects_syn():
    table = TcpGroTable()
    assert tcp_gro([tcp4(IP4_B, 0x02, 100, 1)], OFF, 0, table, False) == GroResult.NOOP
    assert table.items_by_flow == {}


def test_udp_gro_results():
    bufs = [udp6(IP6_B, 100), udp6(IP6_B, 100), udp6(IP6_B, 0)]
    table = UdpGroTable()
    assert udp_gro(bufs, OFF, 0, table, True) == GroResult.TABLE_INSERT
    assert udp_gro(bufs, OFF, 1, table, True) == GroResult.COALESCED
    assert udp_gro(bufs, OFF, 2, table, True) == GroResult.NOOP
    assert len(bufs[0]) - OFF == 248


def test_udp_gro_pkt_invalid_csum_marks_item():
    bufs = [udp4(IP4_B, 100), flip_udp4_checksum(udp4(IP4_B, 100))]
    table = UdpGroTable()
    udp_gro(bufs, OFF, 0, table, False)
    assert udp_gro(bufs, OFF, 1, table, False) == GroResult.TABLE_INSERT
    items = list(table)
    assert [item.csum_known_invalid for item in items] == [False, True]


def _candidate_cases():
    tcp4_pkt = tcp4(IP4_B, ACK, 100, 1)[OFF:]
    ip4_invalid_header_len = bytearray(tcp4_pkt)
    ip4_invalid_header_len[0] = 0x46
    ip4_invalid_protocol = bytearray(tcp4_pkt)
    ip4_invalid_protocol[9] = IPPROTO_GRE
    tcp6_pkt = tcp6(IP6_B, ACK, 100, 1)[OFF:]
    ip6_invalid_protocol = bytearray(tcp6_pkt)
    ip6_invalid_protocol[6] = IPPROTO_GRE
    udp4_pkt = udp4(IP4_B, 100)[OFF:]
    udp6_pkt = udp6(IP6_B, 100)[OFF:]
    return [
        ("tcp4", tcp4_pkt, True, GroCandidate.TCP4),
        ("tcp6", tcp6_pkt, True, GroCandidate.TCP6),
        ("udp4", udp4_pkt, True, GroCandidate.UDP4),
        ("udp4 no support", udp4_pkt, False, GroCandidate.NOT_CANDIDATE),
        ("udp6", udp6_pkt, True, GroCandidate.UDP6),
        ("udp6 no support", udp6_pkt, False, GroCandidate.NOT_CANDIDATE),
        ("udp4 too short", udp4_pkt[:27], True, GroCandidate.NOT_CANDIDATE),
        ("udp6 too short", udp6_pkt[:47], True, GroCandidate.NOT_CANDIDATE),
        ("tcp4 too short", tcp4_pkt[:39], True, GroCandidate.NOT_CANDIDATE),
        ("tcp6 too short", tcp6_pkt[:59], True, GroCandidate.NOT_CANDIDATE),
        ("invalid IP version", bytes([0x00]), True, GroCandidate.NOT_CANDIDATE),
        ("invalid IP header len", ip4_invalid_header_len, True, GroCandidate.NOT_CANDIDATE),
        ("ip4 invalid protocol", ip4_invalid_protocol, True, GroCandidate.NOT_CANDIDATE),
        ("ip6 invalid protocol", ip6_invalid_protocol, True, GroCandidate.NOT_CANDIDATE),
    ]


@pytest.mark.parametrize(
    "data,can_udp_gro,want",
    [case[1:] for case in _candidate_cases()],
    ids=[case[0] for case in _candidate_cases()],
)
def test_packet_is_gro_candidate(data, can_udp_gro, want):
    assert packet_is_gro_candidate(data, can_udp_gro) == want