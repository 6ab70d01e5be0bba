"""Batch GRO evaluation and virtio header accounting for writes to a TUN device."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import MutableSequence

from tunoffload.checksum import checksum, pseudo_header_checksum_no_fold
from tunoffload.coalesce import GroResult, tcp_gro, udp_gro
from tunoffload.flows import TcpGroTable, UdpGroTable
from tunoffload.virtio import (
    IPPROTO_TCP,
    IPPROTO_UDP,
    IPV4_SRC_ADDR_OFFSET,
    IPV6_SRC_ADDR_OFFSET,
    UDP_H_LEN,
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_GSO_UDP_L4,
    VIRTIO_NET_HDR_LEN,
    OffloadError,
    VirtioNetHdr,
)

__all__ = [
    "GroCandidate",
    "GroTable",
    "packet_is_gro_candidate",
    "apply_tcp_coalesce_accounting",
    "apply_udp_coalesce_accounting",
    "handle_gro",
]


class GroCandidate(enum.Enum):
    """Which kind of GRO, if any, a packet is eligible for."""

    NOT_GRO = enum.auto()
    TCP4_GRO = enum.auto()
    TCP6_GRO = enum.auto()
    UDP4_GRO = enum.auto()
    UDP6_GRO = enum.auto()


@dataclass
class GroTable:
    """Reusable state for coalescing a batch of packets before writing."""

    to_write: list[int] = field(default_factory=list)
    tcp_table: TcpGroTable = field(default_factory=TcpGroTable)
    udp_table: UdpGroTable = field(default_factory=UdpGroTable)

    def reset(self) -> None:
        """Clear the pending write list and both flow tables."""
        self.to_write.clear()
        self.tcp_table.reset()
        self.udp_table.reset()


def packet_is_gro_candidate(packet: bytes, can_udp_gro: bool) -> GroCandidate:
    """Classify *packet* as a TCP/UDP, IPv4/IPv6 GRO candidate."""
    if len(packet) < 28:
        return GroCandidate.NOT_GRO
    version = packet[0] >> 4
    if version == 4:
        if packet[0] & 0x0F != 5:
            # IPv4 packets with IP options do not coalesce.
            return GroCandidate.NOT_GRO
        proto = packet[9]
        if proto == IPPROTO_TCP and len(packet) >= 40:
            return GroCandidate.TCP4_GRO
        if proto == IPPROTO_UDP and can_udp_gro:
            return GroCandidate.UDP4_GRO
    elif version == 6:
        proto = packet[6]
        if proto == IPPROTO_TCP and len(packet) >= 60:
            return GroCandidate.TCP6_GRO
        if proto == IPPROTO_UDP and len(packet) >= 48 and can_udp_gro:
            return GroCandidate.UDP6_GRO
    return GroCandidate.NOT_GRO


def _put16(buf: bytearray, at: int, value: int) -> None:
    buf[at:at + 2] = (value & 0xFFFF).to_bytes(2, "big")


def _finish_merged(
    buf: bytearray,
    offset: int,
    hdr: VirtioNetHdr,
    iph_len: int,
    is_v6: bool,
    proto: int,
) -> None:
    """Fix lengths and checksums of a merged packet and write its virtio header."""
    pkt_len = len(buf) - offset
    src_at, addr_len = (IPV6_SRC_ADDR_OFFSET, 16) if is_v6 else (IPV4_SRC_ADDR_OFFSET, 4)
    src_addr = bytes(buf[offset + src_at:offset + src_at + addr_len])
    dst_addr = bytes(buf[offset + src_at + addr_len:offset + src_at + 2 * addr_len])

    if is_v6:
        _put16(buf, offset + 4, pkt_len - iph_len)
    else:
        buf[offset + 10:offset + 12] = b"\x00\x00"
        _put16(buf, offset + 2, pkt_len)
        _put16(buf, offset + 10, ~checksum(bytes(buf[offset:offset + iph_len]), 0))

    hdr.encode_into(buf, offset - VIRTIO_NET_HDR_LEN)

    if proto == IPPROTO_UDP:
        _put16(buf, offset + iph_len + 4, pkt_len - iph_len)

    # Only the pseudo-header sum goes in; checksum offload completes it.
    psum = pseudo_header_checksum_no_fold(
        proto, src_addr, dst_addr, (pkt_len - iph_len) & 0xFFFF
    )
    _put16(buf, offset + hdr.csum_start + hdr.csum_offset, checksum(b"", psum))


def apply_tcp_coalesce_accounting(
    bufs: MutableSequence[bytearray], offset: int, table: TcpGroTable
) -> None:
    """Write virtio headers and fix up packets for every item of the TCP table."""
    for item in table.items():
        buf = bufs[item.bufs_index]
        if item.num_merged > 0:
            hdr = VirtioNetHdr(
                flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
                gso_type=VIRTIO_NET_HDR_GSO_TCPV6 if item.key.is_v6 else VIRTIO_NET_HDR_GSO_TCPV4,
                hdr_len=item.iph_len + item.tcph_len,
                gso_size=item.gso_size,
                csum_start=item.iph_len,
                csum_offset=16,
            )
            _finish_merged(buf, offset, hdr, item.iph_len, item.key.is_v6, IPPROTO_TCP)
        else:
            VirtioNetHdr().encode_into(buf, offset - VIRTIO_NET_HDR_LEN)


def apply_udp_coalesce_accounting(
    bufs: MutableSequence[bytearray], offset: int, table: UdpGroTable
) -> None:
    """Write virtio headers and fix up packets for every item of the UDP table."""
    for item in table.items():
        buf = bufs[item.bufs_index]
        if item.num_merged > 0:
            hdr = VirtioNetHdr(
                flags=VIRTIO_NET_HDR_F_NEEDS_CSUM,
                gso_type=VIRTIO_NET_HDR_GSO_UDP_L4,
                hdr_len=item.iph_len + UDP_H_LEN,
                gso_size=item.gso_size,
                csum_start=item.iph_len,
                csum_offset=6,
            )
            _finish_merged(buf, offset, hdr, item.iph_len, item.key.is_v6, IPPROTO_UDP)
        else:
            VirtioNetHdr().encode_into(buf, offset - VIRTIO_NET_HDR_LEN)


def handle_gro(
    bufs: MutableSequence[bytearray],
    offset: int,
    tcp_table: TcpGroTable,
    udp_table: UdpGroTable,
    can_udp_gro: bool,
) -> list[int]:
    """Coalesce the packets in *bufs* and return the indices that must be written.

    Each packet starts at *offset*; the virtio header is written into the
    bytes just before it, so *offset* must leave room for it. Entries of
    *bufs* may be swapped or grown in place.
    """
    to_write: list[int] = []
    for i in range(len(bufs)):
        if offset < VIRTIO_NET_HDR_LEN or offset > len(bufs[i]) - 1:
            raise OffloadError("invalid offset")

        candidate = packet_is_gro_candidate(bytes(bufs[i][offset:]), can_udp_gro)
        if candidate is GroCandidate.TCP4_GRO:
            result = tcp_gro(bufs, offset, i, tcp_table, False)
        elif candidate is GroCandidate.TCP6_GRO:
            result = tcp_gro(bufs, offset, i, tcp_table, True)
        elif candidate is GroCandidate.UDP4_GRO:
            result = udp_gro(bufs, offset, i, udp_table, False)
        elif candidate is GroCandidate.UDP6_GRO:
            result = udp_gro(bufs, offset, i, udp_table, True)
        else:
            result = GroResult.NOOP

        if result is GroResult.NOOP:
            VirtioNetHdr().encode_into(bufs[i], offset - VIRTIO_NET_HDR_LEN)
            to_write.append(i)
        elif result is GroResult.TABLE_INSERT:
            to_write.append(i)

    apply_tcp_coalesce_accounting(bufs, offset, tcp_table)
    apply_udp_coalesce_accounting(bufs, offset, udp_table)
    return to_write