"""Deciding whether packets can be merged, and merging them, for TCP and UDP GRO."""

from __future__ import annotations

import enum
from typing import MutableSequence

from tunoffload.checksum import checksum, pseudo_header_checksum_no_fold
from tunoffload.flows import TcpGroItem, TcpGroTable, UdpGroItem, UdpGroTable
from tunoffload.virtio import (
    IPPROTO_TCP,
    IPPROTO_UDP,
    IPV4_FLAG_MORE_FRAGMENTS,
    IPV4_SRC_ADDR_OFFSET,
    IPV6_SRC_ADDR_OFFSET,
    TCP_FLAG_ACK,
    TCP_FLAG_PSH,
    TCP_FLAGS_OFFSET,
    UDP_H_LEN,
)

__all__ = [
    "CanCoalesce",
    "CoalesceResult",
    "GroResult",
    "ip_headers_can_coalesce",
    "checksum_valid",
    "udp_packets_can_coalesce",
    "tcp_packets_can_coalesce",
    "coalesce_udp_packets",
    "coalesce_tcp_packets",
    "tcp_gro",
    "udp_gro",
]


class CanCoalesce(enum.Enum):
    """Whether, and where, a packet can join an existing item."""

    PREPEND = enum.auto()
    UNAVAILABLE = enum.auto()
    APPEND = enum.auto()


class CoalesceResult(enum.Enum):
    """Outcome of an attempt to merge two packets."""

    INSUFFICIENT_CAP = enum.auto()
    PSH_ENDING = enum.auto()
    ITEM_INVALID_CSUM = enum.auto()
    PKT_INVALID_CSUM = enum.auto()
    SUCCESS = enum.auto()


class GroResult(enum.Enum):
    """What GRO evaluation did with a packet."""

    NOOP = enum.auto()
    TABLE_INSERT = enum.auto()
    COALESCED = enum.auto()


def _capacity(buf: bytearray) -> int:
    return getattr(buf, "capacity", len(buf))


def _addr_layout(is_v6: bool) -> tuple[int, int]:
    return (IPV6_SRC_ADDR_OFFSET, 16) if is_v6 else (IPV4_SRC_ADDR_OFFSET, 4)


def ip_headers_can_coalesce(pkt_a: bytes, pkt_b: bytes) -> bool:
    """Return True if the IP headers of the two packets allow merging."""
    if len(pkt_a) < 9 or len(pkt_b) < 9:
        return False
    if pkt_a[0] >> 4 == 6:
        # Traffic class and hop limit must match.
        if pkt_a[0] != pkt_b[0] or pkt_a[1] >> 4 != pkt_b[1] >> 4:
            return False
        if pkt_a[7] != pkt_b[7]:
            return False
    else:
        # ToS, DF/reserved bits and TTL must match.
        if pkt_a[1] != pkt_b[1]:
            return False
        if pkt_a[6] >> 5 != pkt_b[6] >> 5:
            return False
        if pkt_a[8] != pkt_b[8]:
            return False
    return True


def checksum_valid(pkt: bytes, iph_len: int, proto: int, is_v6: bool) -> bool:
    """Return True if the transport checksum of *pkt* verifies."""
    src_at, addr_size = _addr_layout(is_v6)
    len_for_pseudo = max((len(pkt) & 0xFFFF) - iph_len, 0)
    pseudo = pseudo_header_checksum_no_fold(
        proto,
        bytes(pkt[src_at:src_at + addr_size]),
        bytes(pkt[src_at + addr_size:src_at + 2 * addr_size]),
        len_for_pseudo,
    )
    return checksum(bytes(pkt[iph_len:]), pseudo) == 0xFFFF


def udp_packets_can_coalesce(
    pkt: bytes,
    iph_len: int,
    gso_size: int,
    item: UdpGroItem,
    bufs: MutableSequence[bytearray],
    bufs_offset: int,
) -> CanCoalesce:
    """Check whether UDP *pkt* can be appended to the packet tracked by *item*."""
    target = bufs[item.bufs_index][bufs_offset:]
    if not ip_headers_can_coalesce(pkt, target):
        return CanCoalesce.UNAVAILABLE
    if len(target[iph_len + UDP_H_LEN:]) % item.gso_size != 0:
        # A smaller packet was appended earlier; nothing may follow it.
        return CanCoalesce.UNAVAILABLE
    if gso_size > item.gso_size:
        return CanCoalesce.UNAVAILABLE
    return CanCoalesce.APPEND


def tcp_packets_can_coalesce(
    pkt: bytes,
    iph_len: int,
    tcph_len: int,
    seq: int,
    psh_set: bool,
    gso_size: int,
    item: TcpGroItem,
    bufs: MutableSequence[bytearray],
    bufs_offset: int,
) -> CanCoalesce:
    """Check whether TCP *pkt* can be merged before or after *item*'s packet."""
    target = bufs[item.bufs_index][bufs_offset:]
    if tcph_len != item.tcph_len:
        return CanCoalesce.UNAVAILABLE
    if tcph_len > 20 and bytes(pkt[iph_len + 20:iph_len + tcph_len]) != bytes(
        target[item.iph_len + 20:item.iph_len + tcph_len]
    ):
        return CanCoalesce.UNAVAILABLE
    if not ip_headers_can_coalesce(pkt, target):
        return CanCoalesce.UNAVAILABLE

    lhs_len = item.gso_size + item.num_merged * item.gso_size
    if seq == (item.sent_seq + lhs_len) & 0xFFFFFFFF:
        if item.psh_set:
            # PSH may only be set on the final segment.
            return CanCoalesce.UNAVAILABLE
        if len(target[iph_len + tcph_len:]) % item.gso_size != 0:
            return CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size:
            return CanCoalesce.UNAVAILABLE
        return CanCoalesce.APPEND
    if (seq + gso_size) & 0xFFFFFFFF == item.sent_seq:
        if psh_set:
            return CanCoalesce.UNAVAILABLE
        if gso_size < item.gso_size:
            return CanCoalesce.UNAVAILABLE
        if gso_size > item.gso_size and item.num_merged > 0:
            return CanCoalesce.UNAVAILABLE
        return CanCoalesce.PREPEND
    return CanCoalesce.UNAVAILABLE


def coalesce_udp_packets(
    pkt: bytes,
    item: UdpGroItem,
    bufs: MutableSequence[bytearray],
    bufs_offset: int,
    is_v6: bool,
) -> CoalesceResult:
    """Append the payload of UDP *pkt* to *item*'s buffer if possible."""
    buf = bufs[item.bufs_index]
    headers_len = item.iph_len + UDP_H_LEN
    coalesced_len = len(buf) - bufs_offset + len(pkt) - headers_len
    if _capacity(buf) < bufs_offset * 2 + coalesced_len:
        return CoalesceResult.INSUFFICIENT_CAP
    if item.num_merged == 0 and (
        item.csum_known_invalid
        or not checksum_valid(buf[bufs_offset:], item.iph_len, IPPROTO_UDP, is_v6)
    ):
        return CoalesceResult.ITEM_INVALID_CSUM
    if not checksum_valid(pkt, item.iph_len, IPPROTO_UDP, is_v6):
        return CoalesceResult.PKT_INVALID_CSUM
    buf.extend(pkt[headers_len:])
    item.num_merged += 1
    return CoalesceResult.SUCCESS


def coalesce_tcp_packets(
    mode: CanCoalesce,
    pkt: bytes,
    pkt_bufs_index: int,
    gso_size: int,
    seq: int,
    psh_set: bool,
    item: TcpGroItem,
    bufs: MutableSequence[bytearray],
    bufs_offset: int,
    is_v6: bool,
) -> CoalesceResult:
    """Merge TCP *pkt* with *item*'s packet.

    On a prepend the two entries of *bufs* are swapped so that the merged
    packet sits at the index already tracked by *item*.
    """
    item_buf = bufs[item.bufs_index]
    headers_len = item.iph_len + item.tcph_len
    coalesced_len = len(item_buf) - bufs_offset + len(pkt) - headers_len

    if mode is CanCoalesce.PREPEND:
        pkt_buf = bufs[pkt_bufs_index]
        if _capacity(pkt_buf) < 2 * bufs_offset + coalesced_len:
            return CoalesceResult.INSUFFICIENT_CAP
        if psh_set:
            return CoalesceResult.PSH_ENDING
        if item.num_merged == 0 and not checksum_valid(
            item_buf[bufs_offset:], item.iph_len, IPPROTO_TCP, is_v6
        ):
            return CoalesceResult.ITEM_INVALID_CSUM
        if not checksum_valid(pkt, item.iph_len, IPPROTO_TCP, is_v6):
            return CoalesceResult.PKT_INVALID_CSUM
        item.sent_seq = seq
        extend_by = coalesced_len - len(pkt)
        tail = bytes(item_buf[bufs_offset + headers_len:bufs_offset + headers_len + extend_by])
        del pkt_buf[bufs_offset + len(pkt):]
        pkt_buf.extend(tail)
        bufs[item.bufs_index], bufs[pkt_bufs_index] = pkt_buf, item_buf
    else:
        if _capacity(item_buf) < 2 * bufs_offset + coalesced_len:
            return CoalesceResult.INSUFFICIENT_CAP
        if item.num_merged == 0 and not checksum_valid(
            item_buf[bufs_offset:], item.iph_len, IPPROTO_TCP, is_v6
        ):
            return CoalesceResult.ITEM_INVALID_CSUM
        if not checksum_valid(pkt, item.iph_len, IPPROTO_TCP, is_v6):
            return CoalesceResult.PKT_INVALID_CSUM
        if psh_set:
            item.psh_set = True
            item_buf[bufs_offset + item.iph_len + TCP_FLAGS_OFFSET] |= TCP_FLAG_PSH
        item_buf.extend(pkt[headers_len:])

    if gso_size > item.gso_size:
        item.gso_size = gso_size
    item.num_merged += 1
    return CoalesceResult.SUCCESS


def _ip_lengths_match(pkt: bytes, iph_len: int, is_v6: bool) -> bool:
    if is_v6:
        return int.from_bytes(pkt[4:6], "big") == len(pkt) - iph_len
    return int.from_bytes(pkt[2:4], "big") == len(pkt)


def _is_fragment(pkt: bytes) -> bool:
    return bool(
        pkt[6] & IPV4_FLAG_MORE_FRAGMENTS or (pkt[6] << 3) & 0xFF or pkt[7]
    )


def tcp_gro(
    bufs: MutableSequence[bytearray],
    offset: int,
    pkt_index: int,
    table: TcpGroTable,
    is_v6: bool,
) -> GroResult:
    """Evaluate the TCP packet at *pkt_index* for coalescing with *table*."""
    pkt = bytes(bufs[pkt_index][offset:])
    if len(pkt) > 0xFFFF:
        return GroResult.NOOP

    iph_len = 40 if is_v6 else (pkt[0] & 0x0F) * 4
    if not _ip_lengths_match(pkt, iph_len, is_v6):
        return GroResult.NOOP
    if len(pkt) < iph_len:
        return GroResult.NOOP

    tcph_len = (pkt[iph_len + 12] >> 4) * 4
    if not 20 <= tcph_len <= 60:
        return GroResult.NOOP
    if len(pkt) < iph_len + tcph_len:
        return GroResult.NOOP
    if not is_v6 and _is_fragment(pkt):
        return GroResult.NOOP

    tcp_flags = pkt[iph_len + TCP_FLAGS_OFFSET]
    psh_set = False
    if tcp_flags != TCP_FLAG_ACK:
        if tcp_flags != TCP_FLAG_ACK | TCP_FLAG_PSH:
            return GroResult.NOOP
        psh_set = True

    gso_size = len(pkt) - tcph_len - iph_len
    if gso_size < 1:
        return GroResult.NOOP

    seq = int.from_bytes(pkt[iph_len + 4:iph_len + 8], "big")
    src_at, addr_len = _addr_layout(is_v6)

    items = table.lookup_or_insert(
        pkt, src_at, src_at + addr_len, iph_len, tcph_len, pkt_index
    )
    if items is None:
        return GroResult.TABLE_INSERT

    # Newest items first: in-order arrivals usually match the last one, and
    # removing an entry does not disturb the indices still to be visited.
    for i in reversed(range(len(items))):
        item = items[i]
        can = tcp_packets_can_coalesce(
            pkt, iph_len, tcph_len, seq, psh_set, gso_size, item, bufs, offset
        )
        if can is CanCoalesce.UNAVAILABLE:
            continue
        result = coalesce_tcp_packets(
            can, pkt, pkt_index, gso_size, seq, psh_set, item, bufs, offset, is_v6
        )
        if result is CoalesceResult.SUCCESS:
            return GroResult.COALESCED
        if result is CoalesceResult.ITEM_INVALID_CSUM:
            del items[i]
        elif result is CoalesceResult.PKT_INVALID_CSUM:
            return GroResult.NOOP

    table.insert(pkt, src_at, src_at + addr_len, iph_len, tcph_len, pkt_index)
    return GroResult.TABLE_INSERT


def udp_gro(
    bufs: MutableSequence[bytearray],
    offset: int,
    pkt_index: int,
    table: UdpGroTable,
    is_v6: bool,
) -> GroResult:
    """Evaluate the UDP packet at *pkt_index* for coalescing with *table*."""
    pkt = bytes(bufs[pkt_index][offset:])
    if len(pkt) > 0xFFFF:
        return GroResult.NOOP

    iph_len = 40 if is_v6 else (pkt[0] & 0x0F) * 4
    if not _ip_lengths_match(pkt, iph_len, is_v6):
        return GroResult.NOOP
    if len(pkt) < iph_len + UDP_H_LEN:
        return GroResult.NOOP
    if not is_v6 and _is_fragment(pkt):
        return GroResult.NOOP

    gso_size = len(pkt) - UDP_H_LEN - iph_len
    if gso_size < 1:
        return GroResult.NOOP

    src_at, addr_len = _addr_layout(is_v6)
    items = table.lookup_or_insert(pkt, src_at, src_at + addr_len, iph_len, pkt_index)
    if items is None:
        return GroResult.TABLE_INSERT

    # Only the last item is considered, so packets of a flow are never reordered.
    item = items[-1]
    can = udp_packets_can_coalesce(pkt, iph_len, gso_size, item, bufs, offset)
    pkt_csum_known_invalid = False
    if can is CanCoalesce.APPEND:
        result = coalesce_udp_packets(pkt, item, bufs, offset, is_v6)
        if result is CoalesceResult.SUCCESS:
            return GroResult.COALESCED
        if result is CoalesceResult.PKT_INVALID_CSUM:
            pkt_csum_known_invalid = True

    table.insert(
        pkt, src_at, src_at + addr_len, iph_len, pkt_index, pkt_csum_known_invalid
    )
    return GroResult.TABLE_INSERT