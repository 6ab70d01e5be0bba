"""The virtio-net header and splitting of GSO super-packets."""

from __future__ import annotations

import struct
from dataclasses import dataclass

from tunoffload.checksum import checksum, pseudo_header_checksum_no_fold

__all__ = [
    "OffloadError",
    "VirtioNetHdr",
    "gso_split",
    "gso_none_checksum",
    "VIRTIO_NET_HDR_LEN",
    "VIRTIO_NET_HDR_GSO_NONE",
    "VIRTIO_NET_HDR_F_NEEDS_CSUM",
    "VIRTIO_NET_HDR_GSO_TCPV4",
    "VIRTIO_NET_HDR_GSO_TCPV6",
    "VIRTIO_NET_HDR_GSO_UDP_L4",
    "IDEAL_BATCH_SIZE",
]

VIRTIO_NET_HDR_GSO_NONE = 0
VIRTIO_NET_HDR_F_NEEDS_CSUM = 1
VIRTIO_NET_HDR_GSO_TCPV4 = 1
VIRTIO_NET_HDR_GSO_TCPV6 = 4
VIRTIO_NET_HDR_GSO_UDP_L4 = 5

#: Maximum number of packets handled per read and write.
IDEAL_BATCH_SIZE = 128

TCP_FLAGS_OFFSET = 13
TCP_FLAG_FIN = 0x01
TCP_FLAG_PSH = 0x08
TCP_FLAG_ACK = 0x10

IPPROTO_TCP = 6
IPPROTO_UDP = 17

IPV4_SRC_ADDR_OFFSET = 12
IPV6_SRC_ADDR_OFFSET = 8
IPV4_FLAG_MORE_FRAGMENTS = 0x20
UDP_H_LEN = 8

# Native byte order, standard sizes: matches the kernel's struct virtio_net_hdr.
_HDR_STRUCT = struct.Struct("=BBHHHH")
VIRTIO_NET_HDR_LEN = _HDR_STRUCT.size


class OffloadError(ValueError):
    """Raised when offload metadata or packet data is malformed."""


@dataclass
class VirtioNetHdr:
    """The kernel's ``virtio_net_hdr`` prepended to packets on a vnet-hdr TUN."""

    flags: int = 0
    gso_type: int = 0
    hdr_len: int = 0
    gso_size: int = 0
    csum_start: int = 0
    csum_offset: int = 0

    @classmethod
    def decode(cls, buf: bytes) -> "VirtioNetHdr":
        """Parse a header from the first bytes of *buf*."""
        if len(buf) < VIRTIO_NET_HDR_LEN:
            raise OffloadError("too short")
        return cls(*_HDR_STRUCT.unpack_from(buf, 0))

    def encode(self) -> bytes:
        """Return the header's wire form."""
        return _HDR_STRUCT.pack(
            self.flags,
            self.gso_type,
            self.hdr_len,
            self.gso_size,
            self.csum_start,
            self.csum_offset,
        )

    def encode_into(self, buf: bytearray, offset: int = 0) -> None:
        """Write the header into *buf* starting at *offset*."""
        if offset < 0 or len(buf) - offset < VIRTIO_NET_HDR_LEN:
            raise OffloadError("too short")
        buf[offset:offset + VIRTIO_NET_HDR_LEN] = self.encode()


def _put16(buf: bytearray, at: int, value: int) -> None:
    buf[at:at + 2] = (value & 0xFFFF).to_bytes(2, "big")


def gso_split(
    packet: bytes, hdr: VirtioNetHdr, is_v6: bool, max_segments: int
) -> list[bytes]:
    """Split a GSO super-packet into individual IP packets.

    Each segment gets its own IP header (length, IPv4 id and header checksum
    fixed up) and a recomputed transport checksum. Raises ``OffloadError`` if
    more than *max_segments* segments would be produced.
    """
    data = bytearray(packet)
    iph_len = hdr.csum_start
    if is_v6:
        src_at, addr_len = IPV6_SRC_ADDR_OFFSET, 16
    else:
        data[10:12] = b"\x00\x00"
        src_at, addr_len = IPV4_SRC_ADDR_OFFSET, 4
    src_addr = bytes(data[src_at:src_at + addr_len])
    dst_addr = bytes(data[src_at + addr_len:src_at + 2 * addr_len])

    csum_at = hdr.csum_start + hdr.csum_offset
    data[csum_at:csum_at + 2] = b"\x00\x00"

    if hdr.gso_type in (VIRTIO_NET_HDR_GSO_TCPV4, VIRTIO_NET_HDR_GSO_TCPV6):
        protocol = IPPROTO_TCP
        first_seq = int.from_bytes(data[hdr.csum_start + 4:hdr.csum_start + 8], "big")
    else:
        protocol = IPPROTO_UDP
        first_seq = 0

    transport_hdr_len = hdr.hdr_len - hdr.csum_start
    segments: list[bytes] = []
    next_at = hdr.hdr_len
    while next_at < len(data):
        index = len(segments)
        if index == max_segments:
            raise OffloadError("too many segments")
        end = min(next_at + hdr.gso_size, len(data))
        seg_len = end - next_at
        total_len = hdr.hdr_len + seg_len
        out = bytearray(total_len)
        out[:iph_len] = data[:iph_len]

        if is_v6:
            _put16(out, 4, total_len - iph_len)
        else:
            if index > 0:
                _put16(out, 4, int.from_bytes(out[4:6], "big") + index)
            _put16(out, 2, total_len)
            _put16(out, 10, ~checksum(bytes(out[:iph_len]), 0))

        out[hdr.csum_start:hdr.hdr_len] = data[hdr.csum_start:hdr.hdr_len]

        if protocol == IPPROTO_TCP:
            seq = (first_seq + hdr.gso_size * index) & 0xFFFFFFFF
            out[hdr.csum_start + 4:hdr.csum_start + 8] = seq.to_bytes(4, "big")
            if end != len(data):
                out[hdr.csum_start + TCP_FLAGS_OFFSET] &= ~(TCP_FLAG_FIN | TCP_FLAG_PSH) & 0xFF
        else:
            _put16(out, hdr.csum_start + 4, seg_len + transport_hdr_len)

        out[hdr.hdr_len:total_len] = data[next_at:end]

        pseudo = pseudo_header_checksum_no_fold(
            protocol, src_addr, dst_addr, transport_hdr_len + seg_len
        )
        _put16(out, csum_at, ~checksum(bytes(out[hdr.csum_start:total_len]), pseudo))

        segments.append(bytes(out))
        next_at += hdr.gso_size
    return segments


def gso_none_checksum(buf: bytearray, csum_start: int, csum_offset: int) -> None:
    """Complete a partial transport checksum in place.

    The value already at the checksum field (normally the pseudo-header sum)
    is folded into the checksum computed from *csum_start* to the end.
    """
    csum_at = csum_start + csum_offset
    initial = int.from_bytes(buf[csum_at:csum_at + 2], "big")
    buf[csum_at:csum_at + 2] = b"\x00\x00"
    computed = checksum(bytes(buf[csum_start:]), initial)
    _put16(buf, csum_at, ~computed)