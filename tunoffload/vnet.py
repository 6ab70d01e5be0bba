"""Turning raw vnet-hdr reads into IP packets, and preparing batches for writing."""

from __future__ import annotations

import dataclasses
from typing import MutableSequence

from tunoffload.batch import GroTable, handle_gro
from tunoffload.virtio import (
    VIRTIO_NET_HDR_F_NEEDS_CSUM,
    VIRTIO_NET_HDR_GSO_NONE,
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_GSO_UDP_L4,
    VIRTIO_NET_HDR_LEN,
    OffloadError,
    VirtioNetHdr,
    gso_none_checksum,
    gso_split,
)

__all__ = ["handle_virtio_read", "split_received", "prepare_batch"]

_SUPPORTED_GSO = (
    VIRTIO_NET_HDR_GSO_TCPV4,
    VIRTIO_NET_HDR_GSO_TCPV6,
    VIRTIO_NET_HDR_GSO_UDP_L4,
)


def handle_virtio_read(hdr: VirtioNetHdr, data: bytes, max_segments: int) -> list[bytes]:
    """Turn a packet read after its virtio header into individual IP packets.

    A non-GSO packet is returned alone, with its checksum completed if the
    header asks for it. A GSO super-packet is split into at most
    *max_segments* packets. Malformed input raises ``OffloadError``.
    """
    if max_segments < 1:
        raise OffloadError("no room for any packet")
    packet = bytearray(data)
    length = len(packet)

    if hdr.gso_type == VIRTIO_NET_HDR_GSO_NONE:
        if hdr.flags & VIRTIO_NET_HDR_F_NEEDS_CSUM:
            # CHECKSUM_PARTIAL: complete the checksum at csum_start + csum_offset.
            gso_none_checksum(packet, hdr.csum_start, hdr.csum_offset)
        return [bytes(packet)]

    if hdr.gso_type not in _SUPPORTED_GSO:
        raise OffloadError(f"unsupported virtio GSO type: {hdr.gso_type}")
    if not packet:
        raise OffloadError("packet is too short")

    ip_version = packet[0] >> 4
    if ip_version == 4:
        if hdr.gso_type not in (VIRTIO_NET_HDR_GSO_TCPV4, VIRTIO_NET_HDR_GSO_UDP_L4):
            raise OffloadError(f"ip header version: 4, GSO type: {hdr.gso_type}")
    elif ip_version == 6:
        if hdr.gso_type not in (VIRTIO_NET_HDR_GSO_TCPV6, VIRTIO_NET_HDR_GSO_UDP_L4):
            raise OffloadError(f"ip header version: 6, GSO type: {hdr.gso_type}")
    else:
        raise OffloadError(f"invalid ip header version: {ip_version}")

    # The kernel's hdr_len may cover the whole first packet on the forward
    # path, so derive it from csum_start and the transport header instead.
    if hdr.gso_type == VIRTIO_NET_HDR_GSO_UDP_L4:
        hdr_len = hdr.csum_start + 8
    else:
        if length <= hdr.csum_start + 12:
            raise OffloadError("packet is too short")
        tcp_h_len = (packet[hdr.csum_start + 12] >> 4) * 4
        if not 20 <= tcp_h_len <= 60:
            raise OffloadError(f"tcp header len is invalid: {tcp_h_len}")
        hdr_len = hdr.csum_start + tcp_h_len
    hdr = dataclasses.replace(hdr, hdr_len=hdr_len)

    if length < hdr.hdr_len:
        raise OffloadError(
            f"length of packet ({length}) < virtioNetHdr.hdr_len ({hdr.hdr_len})"
        )
    if hdr.hdr_len < hdr.csum_start:
        raise OffloadError(
            f"virtioNetHdr.hdrLen ({hdr.hdr_len}) < "
            f"virtioNetHdr.csumStart ({hdr.csum_start})"
        )
    csum_at = hdr.csum_start + hdr.csum_offset
    if csum_at + 1 >= length:
        raise OffloadError(
            f"end of checksum offset ({csum_at + 1}) exceeds packet length ({length})"
        )
    return gso_split(bytes(packet), hdr, ip_version == 6, max_segments)


def split_received(raw: bytes, max_segments: int) -> list[bytes]:
    """Decode the virtio header at the front of *raw* and split what follows."""
    if len(raw) <= VIRTIO_NET_HDR_LEN:
        raise OffloadError(
            f"length of packet ({len(raw)}) <= VIRTIO_NET_HDR_LEN ({VIRTIO_NET_HDR_LEN})"
        )
    hdr = VirtioNetHdr.decode(raw[:VIRTIO_NET_HDR_LEN])
    return handle_virtio_read(hdr, raw[VIRTIO_NET_HDR_LEN:], max_segments)


def prepare_batch(
    gro_table: GroTable,
    bufs: MutableSequence[bytearray],
    offset: int,
    vnet_hdr: bool,
    udp_gso: bool,
) -> list[bytes]:
    """Return the byte strings to write to the device for the packets in *bufs*.

    Each packet starts at *offset* in its buffer. With *vnet_hdr* the batch is
    coalesced and every returned string begins with its virtio header, which
    occupies the bytes just before *offset*. The indices written are left in
    ``gro_table.to_write``.
    """
    gro_table.reset()
    if vnet_hdr:
        gro_table.to_write.extend(
            handle_gro(bufs, offset, gro_table.tcp_table, gro_table.udp_table, udp_gso)
        )
        offset -= VIRTIO_NET_HDR_LEN
    else:
        gro_table.to_write.extend(range(len(bufs)))
    return [bytes(bufs[i][offset:]) for i in gro_table.to_write]