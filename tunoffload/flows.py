"""Flow keys, bookkeeping items and tables used for GRO coalescing."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Optional

from tunoffload.virtio import (
    OffloadError,
    TCP_FLAG_PSH,
    TCP_FLAGS_OFFSET,
    UDP_H_LEN,
)

__all__ = [
    "PacketBuffer",
    "TcpFlowKey",
    "UdpFlowKey",
    "TcpGroItem",
    "UdpGroItem",
    "TcpGroTable",
    "UdpGroTable",
]


class PacketBuffer(bytearray):
    """A packet buffer with a fixed capacity that coalescing may grow into.

    Coalescing never grows a buffer beyond its capacity; it refuses to merge
    instead. The capacity is never smaller than the current length.
    """

    def __init__(self, data: bytes = b"", capacity: Optional[int] = None) -> None:
        super().__init__(data)
        self._capacity = len(self) if capacity is None else capacity

    @property
    def capacity(self) -> int:
        """Bytes the buffer may hold without reallocating."""
        return max(self._capacity, len(self))

    def extend_within_capacity(self, data: bytes) -> None:
        """Append *data*, raising ``OffloadError`` if it would exceed capacity."""
        if len(self) + len(data) > self.capacity:
            raise OffloadError("insufficient buffer capacity")
        self.extend(data)

    def __repr__(self) -> str:
        return f"PacketBuffer({bytes(self)!r}, capacity={self.capacity})"


def _u16(pkt: bytes, at: int) -> int:
    return int.from_bytes(pkt[at:at + 2], "big")


def _u32(pkt: bytes, at: int) -> int:
    return int.from_bytes(pkt[at:at + 4], "big")


def _addresses(pkt: bytes, src_addr_offset: int, dst_addr_offset: int) -> tuple[bytes, bytes]:
    size = dst_addr_offset - src_addr_offset
    return (
        bytes(pkt[src_addr_offset:dst_addr_offset]),
        bytes(pkt[dst_addr_offset:dst_addr_offset + size]),
    )


@dataclass(frozen=True)
class TcpFlowKey:
    """Identifies a TCP flow; differing ACK values are treated as separate flows."""

    src_addr: bytes
    dst_addr: bytes
    src_port: int
    dst_port: int
    rx_ack: int
    is_v6: bool

    @classmethod
    def from_packet(
        cls, pkt: bytes, src_addr_offset: int, dst_addr_offset: int, tcph_offset: int
    ) -> "TcpFlowKey":
        """Build the key of the TCP packet *pkt*."""
        src, dst = _addresses(pkt, src_addr_offset, dst_addr_offset)
        return cls(
            src_addr=src,
            dst_addr=dst,
            src_port=_u16(pkt, tcph_offset),
            dst_port=_u16(pkt, tcph_offset + 2),
            rx_ack=_u32(pkt, tcph_offset + 8),
            is_v6=len(src) == 16,
        )


@dataclass(frozen=True)
class UdpFlowKey:
    """Identifies a UDP flow."""

    src_addr: bytes
    dst_addr: bytes
    src_port: int
    dst_port: int
    is_v6: bool

    @classmethod
    def from_packet(
        cls, pkt: bytes, src_addr_offset: int, dst_addr_offset: int, udph_offset: int
    ) -> "UdpFlowKey":
        """Build the key of the UDP packet *pkt*."""
        src, dst = _addresses(pkt, src_addr_offset, dst_addr_offset)
        return cls(
            src_addr=src,
            dst_addr=dst,
            src_port=_u16(pkt, udph_offset),
            dst_port=_u16(pkt, udph_offset + 2),
            is_v6=len(src) == 16,
        )


@dataclass
class TcpGroItem:
    """Bookkeeping for one TCP packet during a GRO evaluation."""

    key: TcpFlowKey
    sent_seq: int
    bufs_index: int
    num_merged: int
    gso_size: int
    iph_len: int
    tcph_len: int
    psh_set: bool


@dataclass
class UdpGroItem:
    """Bookkeeping for one UDP packet during a GRO evaluation.

    ``csum_known_invalid`` being false does not imply the checksum is valid,
    only that it is unknown.
    """

    key: UdpFlowKey
    bufs_index: int
    num_merged: int
    gso_size: int
    iph_len: int
    csum_known_invalid: bool


@dataclass
class TcpGroTable:
    """Flow and coalescing information for TCP GRO."""

    items_by_flow: dict[TcpFlowKey, list[TcpGroItem]] = field(default_factory=dict)

    def lookup_or_insert(
        self,
        pkt: bytes,
        src_addr_offset: int,
        dst_addr_offset: int,
        tcph_offset: int,
        tcph_len: int,
        bufs_index: int,
    ) -> Optional[list[TcpGroItem]]:
        """Return the items of the packet's flow, or insert it and return ``None``."""
        key = TcpFlowKey.from_packet(pkt, src_addr_offset, dst_addr_offset, tcph_offset)
        items = self.items_by_flow.get(key)
        if items is not None:
            return items
        self.insert(pkt, src_addr_offset, dst_addr_offset, tcph_offset, tcph_len, bufs_index)
        return None

    def insert(
        self,
        pkt: bytes,
        src_addr_offset: int,
        dst_addr_offset: int,
        tcph_offset: int,
        tcph_len: int,
        bufs_index: int,
    ) -> None:
        """Add an item for *pkt* to its flow."""
        key = TcpFlowKey.from_packet(pkt, src_addr_offset, dst_addr_offset, tcph_offset)
        item = TcpGroItem(
            key=key,
            sent_seq=_u32(pkt, tcph_offset + 4),
            bufs_index=bufs_index,
            num_merged=0,
            gso_size=len(pkt) - (tcph_offset + tcph_len),
            iph_len=tcph_offset,
            tcph_len=tcph_len,
            psh_set=bool(pkt[tcph_offset + TCP_FLAGS_OFFSET] & TCP_FLAG_PSH),
        )
        self.items_by_flow.setdefault(key, []).append(item)

    def items(self) -> Iterator[TcpGroItem]:
        """Iterate over every tracked item, flow by flow."""
        for flow_items in self.items_by_flow.values():
            yield from flow_items

    def reset(self) -> None:
        """Forget every flow."""
        self.items_by_flow.clear()


@dataclass
class UdpGroTable:
    """Flow and coalescing information for UDP GRO."""

    items_by_flow: dict[UdpFlowKey, list[UdpGroItem]] = field(default_factory=dict)

    def lookup_or_insert(
        self,
        pkt: bytes,
        src_addr_offset: int,
        dst_addr_offset: int,
        udph_offset: int,
        bufs_index: int,
    ) -> Optional[list[UdpGroItem]]:
        """Return the items of the packet's flow, or insert it and return ``None``."""
        key = UdpFlowKey.from_packet(pkt, src_addr_offset, dst_addr_offset, udph_offset)
        items = self.items_by_flow.get(key)
        if items is not None:
            return items
        self.insert(pkt, src_addr_offset, dst_addr_offset, udph_offset, bufs_index, False)
        return None

    def insert(
        self,
        pkt: bytes,
        src_addr_offset: int,
        dst_addr_offset: int,
        udph_offset: int,
        bufs_index: int,
        csum_known_invalid: bool,
    ) -> None:
        """Add an item for *pkt* to its flow."""
        key = UdpFlowKey.from_packet(pkt, src_addr_offset, dst_addr_offset, udph_offset)
        item = UdpGroItem(
            key=key,
            bufs_index=bufs_index,
            num_merged=0,
            gso_size=len(pkt) - (udph_offset + UDP_H_LEN),
            iph_len=udph_offset,
            csum_known_invalid=csum_known_invalid,
        )
        self.items_by_flow.setdefault(key, []).append(item)

    def items(self) -> Iterator[UdpGroItem]:
        """Iterate over every tracked item, flow by flow."""
        for flow_items in self.items_by_flow.values():
            yield from flow_items

    def reset(self) -> None:
        """Forget every flow."""
        self.items_by_flow.clear()