import struct

import pytest

from tunoffload.checksum import checksum, pseudo_header_checksum_no_fold
from tunoffload.coalesce import (
    CanCoalesce,
    CoalesceResult,
    GroResult,
    checksum_valid,
    coalesce_udp_packets,
    ip_headers_can_coalesce,
    tcp_gro,
    tcp_packets_can_coalesce,
    udp_gro,
    udp_packets_can_coalesce,
)
from tunoffload.flows import PacketBuffer, TcpGroTable, UdpGroTable
from tunoffload.virtio import VIRTIO_NET_HDR_LEN

SRC = bytes([10, 0, 0, 1])
DST = bytes([10, 0, 0, 2])
OFFSET = VIRTIO_NET_HDR_LEN
ACK = 0x10
PSH = 0x08
SYN = 0x02
DF = 0x4000
MF = 0x2000


def ipv4_header(total_len, proto, ttl=64, frag=DF):
    hdr = bytearray(
        struct.pack(">BBHHHBBH4s4s", 0x45, 0, total_len, 1, frag, ttl, proto, 0, SRC, DST)
    )
    hdr[10:12] = (~checksum(bytes(hdr)) & 0xFFFF).to_bytes(2, "big")
    return bytes(hdr)


def tcp_packet(payload, seq, flags=ACK, ttl=64, frag=DF):
    tcp = bytearray(struct.pack(">HHIIBBHHH", 1234, 80, seq, 1, 0x50, flags, 65535, 0, 0))
    tcp += payload
    pseudo = pseudo_header_checksum_no_fold(6, SRC, DST, len(tcp))
    tcp[16:18] = (~checksum(bytes(tcp), pseudo) & 0xFFFF).to_bytes(2, "big")
    return ipv4_header(20 + len(tcp), 6, ttl, frag) + bytes(tcp)


def udp_packet(payload):
    udp = bytearray(struct.pack(">HHHH", 5000, 53, 8 + len(payload), 0)) + payload
    pseudo = pseudo_header_checksum_no_fold(17, SRC, DST, len(udp))
    udp[6:8] = (~checksum(bytes(udp), pseudo) & 0xFFFF).to_bytes(2, "big")
    return ipv4_header(20 + len(udp), 17) + bytes(udp)


def buf(pkt, capacity=4096):
    return PacketBuffer(bytes(OFFSET) + pkt, capacity=capacity)


def test_ip_headers_can_coalesce_ipv4():
    a = tcp_packet(b"x" * 10, 1)
    assert ip_headers_can_coalesce(a, tcp_packet(b"y" * 10, 11))
    assert not ip_headers_can_coalesce(a, tcp_packet(b"y" * 10, 11, ttl=32))
    assert not ip_headers_can_coalesce(a, tcp_packet(b"y" * 10, 11, frag=0))
    assert not ip_headers_can_coalesce(a[:8], a)


def test_ip_headers_can_coalesce_ipv6_hop_limit():
    a = bytes([0x60, 0, 0, 0, 0, 0, 6, 64]) + bytes(32)
    b = bytes([0x60, 0, 0, 0, 0, 0, 6, 63]) + bytes(32)
    assert ip_headers_can_coalesce(a, a)
    assert not ip_headers_can_coalesce(a, b)


def test_checksum_valid_detects_corruption():
    pkt = tcp_packet(b"hello world", 7)
    assert checksum_valid(pkt, 20, 6, False)
    bad = bytearray(pkt)
    bad[-1] ^= 0xFF
    assert not checksum_valid(bytes(bad), 20, 6, False)


def test_tcp_gro_append():
    p1 = tcp_packet(b"a" * 100, 1000)
    p2 = tcp_packet(b"b" * 100, 1100)
    bufs = [buf(p1), buf(p2)]
    table = TcpGroTable()
    assert tcp_gro(bufs, OFFSET, 0, table, False) is GroResult.TABLE_INSERT
    assert tcp_gro(bufs, OFFSET, 1, table, False) is GroResult.COALESCED
    assert bytes(bufs[0][OFFSET:]) == p1 + b"b" * 100
    [item] = list(table.items())
    assert item.num_merged == 1
    assert item.bufs_index == 0


def test_tcp_gro_prepend_swaps_buffers():
    late = tcp_packet(b"b" * 100, 1100)
    early = tcp_packet(b"a" * 100, 1000)
    bufs = [buf(late), buf(early)]
    table = TcpGroTable()
    assert tcp_gro(bufs, OFFSET, 0, table, False) is GroResult.TABLE_INSERT
    assert tcp_gro(bufs, OFFSET, 1, table, False) is GroResult.COALESCED
    assert bytes(bufs[0][OFFSET:]) == early + b"b" * 100
    assert bytes(bufs[1][OFFSET:]) == late
    [item] = list(table.items())
    assert item.sent_seq == 1000
    assert item.num_merged == 1


def test_tcp_gro_psh_item_blocks_append():
    p1 = tcp_packet(b"a" * 100, 1000, flags=ACK | PSH)
    p2 = tcp_packet(b"b" * 100, 1100)
    bufs = [buf(p1), buf(p2)]
    table = TcpGroTable()
    tcp_gro(bufs, OFFSET, 0, table, False)
    assert tcp_gro(bufs, OFFSET, 1, table, False) is GroResult.TABLE_INSERT
    assert len(list(table.items())) == 2
    assert bytes(bufs[0][OFFSET:]) == p1


def test_tcp_gro_append_psh_marks_item():
    p1 = tcp_packet(b"a" * 100, 1000)
    p2 = tcp_packet(b"b" * 100, 1100, flags=ACK | PSH)
    bufs = [buf(p1), buf(p2)]
    table = TcpGroTable()
    tcp_gro(bufs, OFFSET, 0, table, False)
    assert tcp_gro(bufs, OFFSET, 1, table, False) is GroResult.COALESCED
    [item] = list(table.items())
    assert item.psh_set
    assert bufs[0][OFFSET + 20 + 13] == ACK | PSH


@pytest.mark.parametrize(
    "pkt",
    [
        tcp_packet(b"a" * 10, 1, flags=SYN),
        tcp_packet(b"a" * 10, 1, frag=MF),
        tcp_packet(b"", 1),
    ],
)
def test_tcp_gro_noop_cases(pkt):
    table = TcpGroTable()
    assert tcp_gro([buf(pkt)], OFFSET, 0, table, False) is GroResult.NOOP
    assert list(table.items()) == []


def test_tcp_gro_length_mismatch_is_noop():
    pkt = tcp_packet(b"a" * 10, 1) + b"trailing"
    table = TcpGroTable()
    assert tcp_gro([buf(pkt)], OFFSET, 0, table, False) is GroResult.NOOP


def test_tcp_gro_insufficient_capacity_inserts():
    p1 = tcp_packet(b"a" * 100, 1000)
    p2 = tcp_packet(b"b" * 100, 1100)
    bufs = [buf(p1, capacity=0), buf(p2, capacity=0)]
    table = TcpGroTable()
    tcp_gro(bufs, OFFSET, 0, table, False)
    assert tcp_gro(bufs, OFFSET, 1, table, False) is GroResult.TABLE_INSERT
    assert len(list(table.items())) == 2
    assert bytes(bufs[0][OFFSET:]) == p1


def test_tcp_gro_invalid_packet_checksum_is_noop():
    p1 = tcp_packet(b"a" * 100, 1000)
    p2 = bytearray(tcp_packet(b"b" * 100, 1100))
    p2[-1] ^= 0xFF
    bufs = [buf(p1), buf(bytes(p2))]
    table = TcpGroTable()
    tcp_gro(bufs, OFFSET, 0, table, False)
    assert tcp_gro(bufs, OFFSET, 1, table, False) is GroResult.NOOP
    assert len(list(table.items())) == 1


def test_tcp_packets_can_coalesce_direct():
    p1 = tcp_packet(b"a" * 100, 1000)
    p2 = tcp_packet(b"b" * 100, 1100)
    bufs = [buf(p1), buf(p2)]
    table = TcpGroTable()
    table.insert(p1, 12, 16, 20, 20, 0)
    [item] = list(table.items())
    assert tcp_packets_can_coalesce(p2, 20, 20, 1100, False, 100, item, bufs, OFFSET) is CanCoalesce.APPEND
    assert tcp_packets_can_coalesce(p2, 20, 20, 900, False, 100, item, bufs, OFFSET) is CanCoalesce.PREPEND
    assert tcp_packets_can_coalesce(p2, 20, 20, 5000, False, 100, item, bufs, OFFSET) is CanCoalesce.UNAVAILABLE
    assert tcp_packets_can_coalesce(p2, 20, 24, 1100, False, 100, item, bufs, OFFSET) is CanCoalesce.UNAVAILABLE


def test_udp_gro_coalesces_equal_sizes_and_rejects_larger():
    p1 = udp_packet(b"a" * 50)
    p2 = udp_packet(b"b" * 50)
    p3 = udp_packet(b"c" * 80)
    bufs = [buf(p1), buf(p2), buf(p3)]
    table = UdpGroTable()
    assert udp_gro(bufs, OFFSET, 0, table, False) is GroResult.TABLE_INSERT
    assert udp_gro(bufs, OFFSET, 1, table, False) is GroResult.COALESCED
    assert bytes(bufs[0][OFFSET:]) == p1 + b"b" * 50
    assert udp_gro(bufs, OFFSET, 2, table, False) is GroResult.TABLE_INSERT
    assert [i.bufs_index for i in table.items()] == [0, 2]


def test_udp_nothing_follows_smaller_packet():
    p1 = udp_packet(b"a" * 50)
    p2 = udp_packet(b"b" * 30)
    p3 = udp_packet(b"c" * 50)
    bufs = [buf(p1), buf(p2), buf(p3)]
    table = UdpGroTable()
    udp_gro(bufs, OFFSET, 0, table, False)
    assert udp_gro(bufs, OFFSET, 1, table, False) is GroResult.COALESCED
    [item] = list(table.items())
    assert udp_packets_can_coalesce(p3, 20, 50, item, bufs, OFFSET) is CanCoalesce.UNAVAILABLE
    assert udp_gro(bufs, OFFSET, 2, table, False) is GroResult.TABLE_INSERT


def test_udp_gro_marks_invalid_packet_checksum():
    p1 = udp_packet(b"a" * 50)
    p2 = bytearray(udp_packet(b"b" * 50))
    p2[-1] ^= 0xFF
    bufs = [buf(p1), buf(bytes(p2))]
    table = UdpGroTable()
    udp_gro(bufs, OFFSET, 0, table, False)
    assert udp_gro(bufs, OFFSET, 1, table, False) is GroResult.TABLE_INSERT
    items = list(table.items())
    assert [i.csum_known_invalid for i in items] == [False, True]


def test_coalesce_udp_item_known_invalid():
    p1 = udp_packet(b"a" * 50)
    p2 = udp_packet(b"b" * 50)
    bufs = [buf(p1), buf(p2)]
    table = UdpGroTable()
    table.insert(p1, 12, 16, 20, 0, True)
    [item] = list(table.items())
    assert coalesce_udp_packets(p2, item, bufs, OFFSET, False) is CoalesceResult.ITEM_INVALID_CSUM
    assert bytes(bufs[0][OFFSET:]) == p1
    assert item.num_merged == 0


def test_coalesce_udp_insufficient_capacity():
    p1 = udp_packet(b"a" * 50)
    p2 = udp_packet(b"b" * 50)
    bufs = [buf(p1, capacity=0), buf(p2)]
    table = UdpGroTable()
    table.insert(p1, 12, 16, 20, 0, False)
    [item] = list(table.items())
    assert coalesce_udp_packets(p2, item, bufs, OFFSET, False) is CoalesceResult.INSUFFICIENT_CAP
    assert bytes(bufs[0][OFFSET:]) == p1